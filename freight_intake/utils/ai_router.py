#!/usr/bin/env python3
"""Routes structured-extraction requests to an AI provider.

:meth:`AIExtractionRouter.extract` turns raw text (an email body or OCR
output) plus an optional JSON schema into a parsed JSON object:

1. Results are cached under a hash of ``(text, schema, options)``; a cache
   hit returns without any provider call.
2. Boilerplate (page footers, header/footer blocks, runs of whitespace) is
   trimmed before the input size is estimated at ~4 characters per token.
3. The cheap model is used unless the caller forces heavy, the input exceeds
   ``ai_cheap_max_input_tokens`` or reasoning mode demands the heavy model.
4. The output budget scales with the number of schema properties.
5. Transport failures get one retry after ``ai_retry_delay_ms``; any failure
   after that gets exactly one attempt against ``ai_fallback_service``.
6. Responses wrapped in code fences or prose are salvaged before giving up
   with :class:`~freight_intake.exceptions.InvalidAIResponseError`.
"""

import hashlib
import json
import logging
import math
import re
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

from freight_intake.config import settings
from freight_intake.exceptions import AIExtractionError, AIProviderError, InvalidAIResponseError
from freight_intake.utils.ai_provider import AIProvider, ProviderResponse, get_ai_provider
from freight_intake.utils.cache import RedisStore
from freight_intake.utils.rate_limit import SlidingWindowRateLimiter, get_rate_limiter

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are a precise logistics data extractor. "
    "Return ONLY valid JSON that matches the requested schema. "
    "Be concise. No prose, no explanations."
)

CACHE_KEY_PREFIX = "ai_extract:"

_BOILERPLATE_PATTERNS = [
    re.compile(r"Page \d+ of \d+", re.IGNORECASE),
    re.compile(r"Confidential.*?(?:©|\(c\)).*?\d{4}", re.IGNORECASE | re.DOTALL),
    re.compile(r"\[Header\].*?\[/Header\]", re.IGNORECASE | re.DOTALL),
    re.compile(r"\[Footer\].*?\[/Footer\]", re.IGNORECASE | re.DOTALL),
]

_BASE_OUTPUT_TOKENS = 300
_PER_FIELD_OUTPUT_TOKENS = 50


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


def build_cache_key(text: str, schema: Optional[Dict[str, Any]], options: Optional[Dict[str, Any]]) -> str:
    payload = json.dumps([text, schema or {}, options or {}], sort_keys=True, default=str, ensure_ascii=False)
    return CACHE_KEY_PREFIX + hashlib.sha256(payload.encode("utf-8")).hexdigest()


def trim_content(text: str) -> str:
    """Collapse whitespace and drop page-number footers and header/footer blocks."""
    text = re.sub(r"\s+", " ", text)
    for pattern in _BOILERPLATE_PATTERNS:
        text = pattern.sub("", text)
    return re.sub(r" {2,}", " ", text).strip()


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / 4)


def calculate_max_tokens(schema: Optional[Dict[str, Any]], cap: int) -> int:
    fields = len((schema or {}).get("properties") or {})
    return max(_BASE_OUTPUT_TOKENS, min(cap, fields * _PER_FIELD_OUTPUT_TOKENS + 100))


def ensure_json(raw: Optional[str]) -> Dict[str, Any]:
    """Parse *raw* as a JSON object, salvaging fenced or prose-wrapped output.

    Raises:
        InvalidAIResponseError: If no JSON object can be recovered.
    """
    text = (raw or "").strip()
    if text.startswith("```"):
        text = re.sub(r"^```[a-zA-Z]*\s*", "", text)
        text = re.sub(r"\s*```$", "", text).strip()

    try:
        decoded = json.loads(text)
        if isinstance(decoded, dict):
            return decoded
    except ValueError:
        pass

    # First balanced {...} block that parses
    decoder = json.JSONDecoder()
    start = text.find("{")
    while start != -1:
        try:
            decoded, _ = decoder.raw_decode(text, start)
            if isinstance(decoded, dict):
                return decoded
        except ValueError:
            pass
        start = text.find("{", start + 1)

    raise InvalidAIResponseError(raw)


def is_strict_compatible(schema: Dict[str, Any]) -> bool:
    """True when every object in *schema* closes ``additionalProperties`` and requires all its properties."""
    if schema.get("type") == "object" or "properties" in schema:
        properties = schema.get("properties") or {}
        if schema.get("additionalProperties") is not False:
            return False
        if set(schema.get("required") or []) != set(properties):
            return False
        return all(is_strict_compatible(sub) for sub in properties.values() if isinstance(sub, dict))
    if isinstance(schema.get("items"), dict):
        return is_strict_compatible(schema["items"])
    return True


# ---------------------------------------------------------------------------
# Router
# ---------------------------------------------------------------------------


class AIExtractionRouter:
    def __init__(
        self,
        providers: Optional[Dict[str, AIProvider]] = None,
        cache: Optional[Any] = None,
        rate_limiter: Optional[SlidingWindowRateLimiter] = None,
        primary_service: Optional[str] = None,
        fallback_service: Optional[str] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._providers: Dict[str, AIProvider] = dict(providers or {})
        self.cache = cache if cache is not None else RedisStore(prefix="ai:")
        self.rate_limiter = rate_limiter or get_rate_limiter("ai", settings.ai_rate_limit_per_minute)
        self.primary_service = primary_service or settings.ai_primary_service
        self.fallback_service = fallback_service if fallback_service is not None else settings.ai_fallback_service
        self._sleep = sleep

    def extract(
        self,
        text: str,
        schema: Optional[Dict[str, Any]] = None,
        options: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Extract a JSON object from *text*.

        Options: ``service``, ``model``, ``cheap`` (bool), ``reasoning`` (bool),
        ``temperature`` (float).

        Raises:
            AIExtractionError: If the primary and fallback services both fail.
            RateLimitExceeded: If the per-minute AI call budget is exhausted.
        """
        schema = schema or {}
        options = dict(options or {})

        cache_key = build_cache_key(text, schema, options)
        if settings.ai_cache_enabled:
            cached = self.cache.get(cache_key)
            if cached is not None:
                logger.info(f"AI extraction cache hit: {cache_key}")
                return cached

        prepared = trim_content(text) if settings.ai_content_trim_enabled else text
        service = options.get("service") or self.primary_service

        try:
            result = self._extract_with(service, prepared, schema, options)
        except AIExtractionError as exc:
            fallback = self.fallback_service
            if not fallback or fallback == service:
                raise
            logger.error(f"AI extraction failed on {service}, trying fallback {fallback}: {exc}")
            result = self._extract_with(fallback, prepared, schema, options)

        if settings.ai_cache_enabled:
            self.cache.put(cache_key, result, ttl=settings.ai_cache_ttl)
        return result

    # -- internals ---------------------------------------------------------

    def _get_provider(self, service: str) -> AIProvider:
        if service not in self._providers:
            try:
                self._providers[service] = get_ai_provider(service)
            except ValueError as exc:
                raise AIProviderError(service, str(exc)) from exc
        return self._providers[service]

    def _use_cheap_model(self, input_tokens: int, options: Dict[str, Any]) -> bool:
        if options.get("reasoning") and settings.ai_reasoning_force_heavy:
            return False
        if options.get("cheap") is not None:
            return bool(options["cheap"])
        return input_tokens <= settings.ai_cheap_max_input_tokens

    def _build_request(
        self, provider: AIProvider, text: str, schema: Dict[str, Any]
    ) -> Tuple[List[Dict[str, str]], Optional[Dict[str, Any]]]:
        if not schema:
            return [{"role": "system", "content": SYSTEM_PROMPT}, {"role": "user", "content": text}], None

        if provider.supports_json_schema:
            if settings.ai_structured_outputs and is_strict_compatible(schema):
                response_format = {
                    "type": "json_schema",
                    "json_schema": {"name": "extraction", "schema": schema, "strict": True},
                }
                return [{"role": "system", "content": SYSTEM_PROMPT}, {"role": "user", "content": text}], response_format
            system = f"{SYSTEM_PROMPT}\n\nReturn JSON matching this schema:\n{json.dumps(schema)}"
            return [{"role": "system", "content": system}, {"role": "user", "content": text}], {"type": "json_object"}

        prompt = (
            f"Schema (JSON Schema):\n{json.dumps(schema)}\n\n"
            "Return ONLY JSON matching the schema. No prose, no markdown.\n\n"
            f"Text:\n{text}"
        )
        return [{"role": "system", "content": SYSTEM_PROMPT}, {"role": "user", "content": prompt}], None

    def _call_with_retry(self, provider: AIProvider, **kwargs: Any) -> ProviderResponse:
        try:
            return provider.chat_completion(**kwargs)
        except AIProviderError as exc:
            logger.warning(f"AI call to {provider.name} failed, retrying once: {exc}")
            self._sleep(settings.ai_retry_delay_ms / 1000)
            return provider.chat_completion(**kwargs)

    def _extract_with(self, service: str, text: str, schema: Dict[str, Any], options: Dict[str, Any]) -> Dict[str, Any]:
        provider = self._get_provider(service)
        self.rate_limiter.acquire()

        input_tokens = estimate_tokens(text)
        cheap = self._use_cheap_model(input_tokens, options)
        model = options.get("model") or provider.model_for(cheap)
        messages, response_format = self._build_request(provider, text, schema)

        started = time.monotonic()
        response = self._call_with_retry(
            provider,
            messages=messages,
            model=model,
            temperature=float(options.get("temperature", settings.ai_temperature)),
            max_tokens=calculate_max_tokens(schema, settings.ai_max_output_tokens),
            response_format=response_format,
        )
        result = ensure_json(response.content)

        logger.info(
            f"AI extraction completed: service={service} model={model} "
            f"tier={'cheap' if cheap else 'heavy'} estimated_input_tokens={input_tokens} "
            f"duration={time.monotonic() - started:.2f}s"
        )
        self._log_usage(service, response.model or model, response.input_tokens, response.output_tokens)
        return result

    def _log_usage(self, service: str, model: str, input_tokens: int, output_tokens: int) -> None:
        pricing = settings.ai_pricing_per_million.get(service, {}).get(model)
        if not pricing:
            logger.info(f"AI usage: {service}/{model} input={input_tokens} output={output_tokens} (no pricing)")
            return
        cost = (input_tokens / 1_000_000) * pricing.get("input", 0.0) + (output_tokens / 1_000_000) * pricing.get(
            "output", 0.0
        )
        logger.info(
            f"AI usage: {service}/{model} input={input_tokens} output={output_tokens} estimated_cost=${cost:.6f}"
        )
