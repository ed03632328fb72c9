#!/usr/bin/env python3
"""AI provider clients used by the extraction router.

Two interchangeable providers are supported: OpenAI (via the ``openai`` SDK)
and Anthropic Claude (routed through LiteLLM).  Both reduce the vendor's
response envelope to a :class:`ProviderResponse` holding the text content
and token usage, and both translate SDK failures into
:class:`~freight_intake.exceptions.AIProviderError` so the router can retry
and fall back without knowing which SDK raised.
"""

import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from freight_intake.config import settings
from freight_intake.exceptions import AIProviderError, InvalidAIResponseError

logger = logging.getLogger(__name__)


@dataclass
class ProviderResponse:
    content: str
    input_tokens: int = 0
    output_tokens: int = 0
    model: str = ""


def _resolve_temperature(model: str, requested: float) -> Optional[float]:
    """Return a temperature the model accepts, or ``None`` to omit the parameter.

    o-series reasoning models reject ``temperature`` entirely; everything else
    gets the requested value.  A provider prefix such as ``openai/`` is ignored.
    """
    bare = model.lower().split("/")[-1]
    if re.match(r"^o\d+(-|$)", bare):
        logger.debug("Dropping temperature parameter for reasoning model '%s' (not supported)", model)
        return None
    return requested


def _first_text_block(content: Any) -> Optional[str]:
    """Return the text of the first text block when *content* is a list of blocks."""
    if content is None or isinstance(content, str):
        return content
    if isinstance(content, list):
        for block in content:
            if isinstance(block, dict):
                if block.get("type", "text") == "text" and block.get("text") is not None:
                    return block["text"]
            elif getattr(block, "text", None) is not None:
                return block.text
        return None
    return str(content)


def _require_text_content(content: Optional[str]) -> str:
    """Raise if the AI response carries no text, e.g. when the model issued a tool call."""
    if content is None:
        raise InvalidAIResponseError(None)
    return content


def _usage_tokens(usage: Any) -> tuple[int, int]:
    if usage is None:
        return 0, 0
    if isinstance(usage, dict):
        return int(usage.get("prompt_tokens") or 0), int(usage.get("completion_tokens") or 0)
    return int(getattr(usage, "prompt_tokens", 0) or 0), int(getattr(usage, "completion_tokens", 0) or 0)


class AIProvider(ABC):
    """Abstract base class for chat completion providers.

    Subclasses set :attr:`name` to the service key used in settings
    (``ai_primary_service`` / ``ai_fallback_service``) and declare whether they
    accept a strict ``json_schema`` response format.
    """

    name: str = "unknown"
    supports_json_schema: bool = False

    @abstractmethod
    def chat_completion(
        self,
        messages: List[Dict[str, str]],
        model: str,
        temperature: float = 0,
        max_tokens: Optional[int] = None,
        response_format: Optional[Dict[str, Any]] = None,
        **kwargs: Any,
    ) -> ProviderResponse:
        """Get a chat completion from the provider.

        Raises:
            AIProviderError: On transport, authentication or API errors.
            InvalidAIResponseError: If the response has no text content.
        """

    @abstractmethod
    def model_for(self, cheap: bool) -> str:
        """Return the configured cheap or heavy model name."""


class OpenAIProvider(AIProvider):
    """OpenAI provider using the ``openai`` Python SDK.

    SDK-level retries are disabled; the router owns the single transport retry.
    """

    name = "openai"
    supports_json_schema = True

    def __init__(
        self,
        api_key: str,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        model: Optional[str] = None,
        model_cheap: Optional[str] = None,
    ) -> None:
        import openai

        self._client = openai.OpenAI(
            api_key=api_key,
            base_url=base_url or "https://api.openai.com/v1",
            timeout=timeout or settings.ai_timeout_seconds,
            max_retries=0,
        )
        self._model = model or settings.openai_model
        self._model_cheap = model_cheap or settings.openai_model_cheap

    def model_for(self, cheap: bool) -> str:
        return self._model_cheap if cheap else self._model

    def chat_completion(
        self,
        messages: List[Dict[str, str]],
        model: str,
        temperature: float = 0,
        max_tokens: Optional[int] = None,
        response_format: Optional[Dict[str, Any]] = None,
        **kwargs: Any,
    ) -> ProviderResponse:
        import openai

        call_kwargs: Dict[str, Any] = {"model": model, "messages": messages}
        safe_temp = _resolve_temperature(model, temperature)
        if safe_temp is not None:
            call_kwargs["temperature"] = safe_temp
        if max_tokens:
            call_kwargs["max_tokens"] = max_tokens
        if response_format:
            call_kwargs["response_format"] = response_format
        call_kwargs.update(kwargs)

        try:
            completion = self._client.chat.completions.create(**call_kwargs)
        except openai.OpenAIError as exc:
            raise AIProviderError(self.name, str(exc)) from exc

        content = _first_text_block(completion.choices[0].message.content)
        input_tokens, output_tokens = _usage_tokens(completion.usage)
        return ProviderResponse(
            content=_require_text_content(content),
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            model=model,
        )


class AnthropicProvider(AIProvider):
    """Anthropic Claude provider routed via LiteLLM.

    Model names are in Anthropic format (e.g. ``claude-3-5-sonnet-20241022``);
    the ``anthropic/`` prefix is added automatically when absent.  Claude has
    no strict JSON-schema response format, so the router inlines the schema
    into the prompt.
    """

    name = "anthropic"
    supports_json_schema = False

    def __init__(
        self,
        api_key: str,
        timeout: Optional[float] = None,
        model: Optional[str] = None,
        model_cheap: Optional[str] = None,
    ) -> None:
        self._api_key = api_key
        self._timeout = timeout or settings.ai_timeout_seconds
        self._model = model or settings.anthropic_model
        self._model_cheap = model_cheap or settings.anthropic_model_cheap

    def model_for(self, cheap: bool) -> str:
        return self._model_cheap if cheap else self._model

    def chat_completion(
        self,
        messages: List[Dict[str, str]],
        model: str,
        temperature: float = 0,
        max_tokens: Optional[int] = None,
        response_format: Optional[Dict[str, Any]] = None,
        **kwargs: Any,
    ) -> ProviderResponse:
        import litellm

        model_name = model if model.startswith("anthropic/") else f"anthropic/{model}"
        call_kwargs: Dict[str, Any] = {
            "model": model_name,
            "messages": messages,
            "api_key": self._api_key,
            "timeout": self._timeout,
            "num_retries": 0,
        }
        safe_temp = _resolve_temperature(model, temperature)
        if safe_temp is not None:
            call_kwargs["temperature"] = safe_temp
        if max_tokens:
            call_kwargs["max_tokens"] = max_tokens
        call_kwargs.update(kwargs)

        try:
            response = litellm.completion(**call_kwargs)
        except Exception as exc:
            # litellm maps every vendor error onto its own exception types
            raise AIProviderError(self.name, str(exc)) from exc

        content = _first_text_block(response.choices[0].message.content)
        input_tokens, output_tokens = _usage_tokens(getattr(response, "usage", None))
        return ProviderResponse(
            content=_require_text_content(content),
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            model=model,
        )


def get_ai_provider(service: Optional[str] = None) -> AIProvider:
    """Create the provider for *service* (defaults to ``settings.ai_primary_service``).

    Raises:
        ValueError: If the service is unknown or its API key is not configured.
    """
    service = (service or settings.ai_primary_service).lower()
    logger.debug(f"Creating AI provider: {service}")

    if service == "openai":
        if not settings.openai_api_key:
            raise ValueError("OPENAI_API_KEY must be set to use the 'openai' AI service")
        return OpenAIProvider(api_key=settings.openai_api_key, base_url=settings.openai_base_url)
    elif service == "anthropic":
        if not settings.anthropic_api_key:
            raise ValueError("ANTHROPIC_API_KEY must be set to use the 'anthropic' AI service")
        return AnthropicProvider(api_key=settings.anthropic_api_key)
    else:
        raise ValueError(f"Unknown AI service: '{service}'. Supported services: openai, anthropic")
