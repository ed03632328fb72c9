#!/usr/bin/env python3
"""Extraction strategies and the policy that chooses between them.

Two strategies share one interface:

* :class:`AIExtractionStrategy` – sends the text through the
  :class:`~freight_intake.utils.ai_router.AIExtractionRouter` with the
  extraction JSON schema.
* :class:`PatternExtractionStrategy` – the regex extractor in
  :mod:`freight_intake.utils.pattern_extractor`.

:class:`ExtractionStrategySelector` tries AI first and falls back to patterns
when the AI path raises or returns nothing.
"""

import logging
import types
import typing
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Type

from pydantic import BaseModel

from freight_intake.config import settings
from freight_intake.exceptions import AIExtractionError, RateLimitExceeded
from freight_intake.schemas import ExtractionData, ExtractionMetadata, ExtractionResult, is_empty_value
from freight_intake.utils.ai_router import AIExtractionRouter
from freight_intake.utils.pattern_extractor import extract_patterns

logger = logging.getLogger(__name__)


class ExtractionMethod(str, Enum):
    AI_BASED = "ai"
    PATTERN_BASED = "pattern"


# Field weights for the coverage-based confidence score
CONFIDENCE_WEIGHTS: Dict[str, Dict[str, int]] = {
    "vehicle": {
        "brand": 15,
        "model": 15,
        "year": 10,
        "vin": 20,
        "engine_cc": 5,
        "fuel_type": 5,
        "dimensions": 10,
        "weight_kg": 5,
    },
    "contact": {"email": 10, "phone": 5, "name": 3, "company": 2},
    "shipment": {"origin": 8, "destination": 8, "shipping_type": 4},
}


def calculate_confidence(data: ExtractionData) -> float:
    """Weighted share of key fields that were populated, in ``[0, 1]``."""
    score = 0
    max_score = 0
    for section, weights in CONFIDENCE_WEIGHTS.items():
        values = getattr(data, section)
        for field, weight in weights.items():
            max_score += weight
            if not is_empty_value(getattr(values, field)):
                score += weight
    return round(score / max_score, 2) if max_score else 0.0


# ---------------------------------------------------------------------------
# JSON schema for AI extraction
# ---------------------------------------------------------------------------

_JSON_TYPES = {str: "string", int: "integer", float: "number", bool: "boolean"}


def _field_schema(annotation: Any) -> Dict[str, Any]:
    origin = typing.get_origin(annotation)
    args = [a for a in typing.get_args(annotation) if a is not type(None)]
    nullable = origin in (typing.Union, types.UnionType) and len(args) < len(typing.get_args(annotation))

    if origin in (typing.Union, types.UnionType):
        inner = _field_schema(args[0])
        if not nullable:
            return inner
        if "properties" in inner:
            return {"anyOf": [inner, {"type": "null"}]}
        return {**inner, "type": [inner["type"], "null"]}
    if origin in (list, typing.List):
        return {"type": "array", "items": _field_schema(args[0] if args else str)}
    if isinstance(annotation, type) and issubclass(annotation, BaseModel):
        return model_json_schema(annotation)
    return {"type": _JSON_TYPES.get(annotation, "string")}


def model_json_schema(model: Type[BaseModel]) -> Dict[str, Any]:
    """Closed JSON schema for *model*: every property required, nullable where optional."""
    properties = {name: _field_schema(field.annotation) for name, field in model.model_fields.items()}
    return {
        "type": "object",
        "properties": properties,
        "required": list(properties),
        "additionalProperties": False,
    }


EXTRACTION_SCHEMA: Dict[str, Any] = model_json_schema(ExtractionData)


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class ExtractionStrategy(ABC):
    method: ExtractionMethod

    @abstractmethod
    def extract(self, text: str, source_type: Optional[str] = None) -> ExtractionResult:
        """Extract structured shipment data from *text*."""

    def _result(self, data: ExtractionData) -> ExtractionResult:
        return ExtractionResult(
            data=data,
            metadata=ExtractionMetadata(method=self.method.value, confidence=calculate_confidence(data), timestamp=_now()),
        )


class AIExtractionStrategy(ExtractionStrategy):
    method = ExtractionMethod.AI_BASED

    def __init__(self, router: Optional[AIExtractionRouter] = None, schema: Optional[Dict[str, Any]] = None) -> None:
        self.router = router or AIExtractionRouter()
        self.schema = schema if schema is not None else EXTRACTION_SCHEMA

    def extract(self, text: str, source_type: Optional[str] = None) -> ExtractionResult:
        payload = self.router.extract(text, self.schema, {"source_type": source_type} if source_type else None)
        return self._result(ExtractionData.from_payload(payload))


class PatternExtractionStrategy(ExtractionStrategy):
    method = ExtractionMethod.PATTERN_BASED

    def extract(self, text: str, source_type: Optional[str] = None) -> ExtractionResult:
        return self._result(extract_patterns(text))


class ExtractionStrategySelector:
    """Try AI, fall back to patterns on AI errors, rate limiting or an empty AI result."""

    def __init__(
        self,
        ai_strategy: Optional[ExtractionStrategy] = None,
        pattern_strategy: Optional[ExtractionStrategy] = None,
        ai_enabled: Optional[bool] = None,
    ) -> None:
        self.ai_enabled = settings.ai_extraction_enabled if ai_enabled is None else ai_enabled
        self._ai_strategy = ai_strategy
        self.pattern_strategy = pattern_strategy or PatternExtractionStrategy()

    @property
    def ai_strategy(self) -> ExtractionStrategy:
        if self._ai_strategy is None:
            self._ai_strategy = AIExtractionStrategy()
        return self._ai_strategy

    def extract(self, text: str, source_type: Optional[str] = None) -> ExtractionResult:
        if not text or not text.strip():
            logger.info("No text to extract from; returning empty pattern result")
            return ExtractionResult(
                data=ExtractionData(),
                metadata=ExtractionMetadata(method=ExtractionMethod.PATTERN_BASED.value, confidence=0.0, timestamp=_now()),
            )

        if self.ai_enabled:
            try:
                result = self.ai_strategy.extract(text, source_type)
                if not result.data.is_empty():
                    return result
                logger.warning("AI extraction returned no fields; falling back to pattern extraction")
            except (AIExtractionError, RateLimitExceeded) as exc:
                logger.warning(f"AI extraction unavailable ({exc}); falling back to pattern extraction")

        return self.pattern_strategy.extract(text, source_type)
