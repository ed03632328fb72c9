"""
Tests for the AI extraction router: caching, model tiering, retry, fallback
and JSON salvage.
"""

import json
from typing import Any, Dict, List, Optional
from unittest.mock import patch

import pytest

from freight_intake.exceptions import AIProviderError, InvalidAIResponseError, RateLimitExceeded
from freight_intake.utils.ai_provider import AIProvider, ProviderResponse
from freight_intake.utils.ai_router import (
    CACHE_KEY_PREFIX,
    AIExtractionRouter,
    build_cache_key,
    calculate_max_tokens,
    ensure_json,
    estimate_tokens,
    is_strict_compatible,
    trim_content,
)
from freight_intake.utils.extraction_strategy import EXTRACTION_SCHEMA
from freight_intake.utils.rate_limit import SlidingWindowRateLimiter
from tests.conftest import MemoryStore

SCHEMA = {
    "type": "object",
    "properties": {"vin": {"type": ["string", "null"]}, "origin": {"type": ["string", "null"]}},
    "required": ["vin", "origin"],
    "additionalProperties": False,
}


class FakeProvider(AIProvider):
    def __init__(self, name: str, outcomes: List[Any], supports_json_schema: bool = True):
        self.name = name
        self.supports_json_schema = supports_json_schema
        self.outcomes = list(outcomes)
        self.calls: List[Dict[str, Any]] = []

    def model_for(self, cheap: bool) -> str:
        return f"{self.name}-{'cheap' if cheap else 'heavy'}"

    def chat_completion(self, messages, model, temperature=0, max_tokens=None, response_format=None, **kwargs):
        self.calls.append(
            {"messages": messages, "model": model, "max_tokens": max_tokens, "response_format": response_format}
        )
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return ProviderResponse(content=outcome, input_tokens=100, output_tokens=20, model=model)


def _router(primary: FakeProvider, fallback: Optional[FakeProvider] = None, **kwargs):
    providers = {primary.name: primary}
    if fallback:
        providers[fallback.name] = fallback
    kwargs.setdefault("cache", MemoryStore())
    kwargs.setdefault("rate_limiter", SlidingWindowRateLimiter("ai-test", per_minute=0))
    return AIExtractionRouter(
        providers=providers,
        primary_service=primary.name,
        fallback_service=fallback.name if fallback else "",
        sleep=lambda seconds: None,
        **kwargs,
    )


@pytest.mark.unit
class TestHelpers:
    def test_cache_key_is_stable_and_order_independent(self):
        a = build_cache_key("text", {"b": 1, "a": 2}, {"cheap": True})
        b = build_cache_key("text", {"a": 2, "b": 1}, {"cheap": True})
        assert a == b
        assert a.startswith(CACHE_KEY_PREFIX)
        assert a != build_cache_key("other", {"a": 2, "b": 1}, {"cheap": True})

    def test_trim_content_removes_boilerplate(self):
        text = "[Header]ACME Logistics[/Header]\n\nShip   car  Page 1 of 3\n[Footer]Confidential[/Footer]"
        assert trim_content(text) == "Ship car"

    def test_estimate_tokens(self):
        assert estimate_tokens("") == 0
        assert estimate_tokens("abcde") == 2

    def test_calculate_max_tokens(self):
        assert calculate_max_tokens({}, 900) == 300
        many = {"properties": {f"f{i}": {} for i in range(30)}}
        assert calculate_max_tokens(many, 900) == 900
        assert calculate_max_tokens({"properties": {f"f{i}": {} for i in range(6)}}, 900) == 400

    def test_ensure_json_plain_and_fenced(self):
        assert ensure_json('{"a": 1}') == {"a": 1}
        assert ensure_json('```json\n{"a": 1}\n```') == {"a": 1}

    def test_ensure_json_salvages_object_from_prose(self):
        assert ensure_json('Sure! Here you go: {"vin": "X"} Let me know.') == {"vin": "X"}

    def test_ensure_json_rejects_garbage(self):
        with pytest.raises(InvalidAIResponseError) as exc_info:
            ensure_json("I cannot help with that" + "!" * 500)
        assert len(exc_info.value.preview) == InvalidAIResponseError.PREVIEW_LENGTH

    def test_ensure_json_rejects_arrays(self):
        with pytest.raises(InvalidAIResponseError):
            ensure_json("[1, 2, 3]")

    def test_strict_compatibility(self):
        assert is_strict_compatible(SCHEMA)
        assert is_strict_compatible(EXTRACTION_SCHEMA)
        assert not is_strict_compatible({"type": "object", "properties": {"a": {}}, "required": []})
        assert not is_strict_compatible({"type": "object", "properties": {}})


@pytest.mark.unit
class TestRouting:
    def test_small_input_uses_cheap_model_with_strict_schema(self):
        primary = FakeProvider("openai", ['{"vin": "1HGCM82633A123456", "origin": null}'])
        result = _router(primary).extract("VIN 1HGCM82633A123456", SCHEMA)
        assert result == {"vin": "1HGCM82633A123456", "origin": None}
        call = primary.calls[0]
        assert call["model"] == "openai-cheap"
        assert call["response_format"]["type"] == "json_schema"
        assert call["response_format"]["json_schema"]["strict"] is True

    def test_large_input_uses_heavy_model(self):
        primary = FakeProvider("openai", ["{}"])
        _router(primary).extract("word " * 5000, SCHEMA)
        assert primary.calls[0]["model"] == "openai-heavy"

    def test_reasoning_forces_heavy_model(self):
        primary = FakeProvider("openai", ["{}"])
        _router(primary).extract("short", SCHEMA, {"reasoning": True, "cheap": True})
        assert primary.calls[0]["model"] == "openai-heavy"

    def test_explicit_model_wins(self):
        primary = FakeProvider("openai", ["{}"])
        _router(primary).extract("short", SCHEMA, {"model": "gpt-4.1"})
        assert primary.calls[0]["model"] == "gpt-4.1"

    def test_non_strict_schema_uses_json_object_mode(self):
        primary = FakeProvider("openai", ["{}"])
        loose = {"type": "object", "properties": {"vin": {"type": "string"}}}
        _router(primary).extract("short", loose)
        call = primary.calls[0]
        assert call["response_format"] == {"type": "json_object"}
        assert json.dumps(loose) in call["messages"][0]["content"]

    def test_provider_without_schema_support_gets_schema_in_prompt(self):
        primary = FakeProvider("anthropic", ['{"vin": null, "origin": "Antwerp"}'], supports_json_schema=False)
        result = _router(primary).extract("from Antwerp", SCHEMA)
        assert result["origin"] == "Antwerp"
        call = primary.calls[0]
        assert call["response_format"] is None
        assert "Schema (JSON Schema)" in call["messages"][1]["content"]
        assert "from Antwerp" in call["messages"][1]["content"]

    def test_content_is_trimmed_before_sending(self):
        primary = FakeProvider("openai", ["{}"])
        _router(primary).extract("Ship   it\nPage 2 of 9", SCHEMA)
        assert primary.calls[0]["messages"][1]["content"] == "Ship it"


@pytest.mark.unit
class TestRetryAndFallback:
    def test_transport_error_is_retried_once(self):
        primary = FakeProvider("openai", [AIProviderError("openai", "timeout"), '{"vin": "A"}'])
        sleeps = []
        router = _router(primary)
        router._sleep = sleeps.append
        assert router.extract("text", SCHEMA) == {"vin": "A"}
        assert len(primary.calls) == 2
        assert sleeps == [0.1]

    def test_fallback_after_retry_exhausted(self):
        primary = FakeProvider("openai", [AIProviderError("openai", "500"), AIProviderError("openai", "500")])
        fallback = FakeProvider("anthropic", ['{"vin": "B"}'], supports_json_schema=False)
        assert _router(primary, fallback).extract("text", SCHEMA) == {"vin": "B"}
        assert len(primary.calls) == 2
        assert len(fallback.calls) == 1

    def test_invalid_json_goes_straight_to_fallback(self):
        primary = FakeProvider("openai", ["not json at all"])
        fallback = FakeProvider("anthropic", ['{"vin": "C"}'], supports_json_schema=False)
        assert _router(primary, fallback).extract("text", SCHEMA) == {"vin": "C"}
        assert len(primary.calls) == 1

    def test_both_providers_failing_raises(self):
        primary = FakeProvider("openai", ["nope"])
        fallback = FakeProvider("anthropic", ["still nope"], supports_json_schema=False)
        with pytest.raises(InvalidAIResponseError):
            _router(primary, fallback).extract("text", SCHEMA)

    def test_no_fallback_configured_raises(self):
        primary = FakeProvider("openai", ["nope"])
        with pytest.raises(InvalidAIResponseError):
            _router(primary).extract("text", SCHEMA)

    def test_unconfigured_fallback_service_is_a_provider_error(self):
        primary = FakeProvider("openai", ["nope"])
        router = AIExtractionRouter(
            providers={"openai": primary},
            cache=MemoryStore(),
            rate_limiter=SlidingWindowRateLimiter("ai-test", per_minute=0),
            primary_service="openai",
            fallback_service="mistral",
        )
        with pytest.raises(AIProviderError):
            router.extract("text", SCHEMA)

    def test_rate_limit_is_not_swallowed(self):
        primary = FakeProvider("openai", ["{}", "{}"])
        router = _router(primary, rate_limiter=SlidingWindowRateLimiter("ai-limited", per_minute=1))
        router.extract("first", SCHEMA)
        with pytest.raises(RateLimitExceeded):
            router.extract("second", SCHEMA)


@pytest.mark.unit
class TestCaching:
    def test_cache_hit_skips_provider(self):
        cache = MemoryStore()
        primary = FakeProvider("openai", ['{"vin": "A"}'])
        router = _router(primary, cache=cache)
        first = router.extract("text", SCHEMA)
        second = router.extract("text", SCHEMA)
        assert first == second == {"vin": "A"}
        assert len(primary.calls) == 1
        assert list(cache.ttls.values()) == [3600]

    def test_failures_are_not_cached(self):
        cache = MemoryStore()
        primary = FakeProvider("openai", ["nope"])
        with pytest.raises(InvalidAIResponseError):
            _router(primary, cache=cache).extract("text", SCHEMA)
        assert cache.data == {}

    def test_cache_can_be_disabled(self):
        cache = MemoryStore()
        primary = FakeProvider("openai", ["{}", "{}"])
        with patch("freight_intake.utils.ai_router.settings.ai_cache_enabled", False):
            router = _router(primary, cache=cache)
            router.extract("text", SCHEMA)
            router.extract("text", SCHEMA)
        assert len(primary.calls) == 2
        assert cache.data == {}


@pytest.mark.unit
def test_usage_is_logged_with_cost(caplog):
    primary = FakeProvider("openai", ["{}"])
    router = _router(primary)
    with caplog.at_level("INFO", logger="freight_intake.utils.ai_router"):
        router._log_usage("openai", "gpt-4o-mini", 1_000_000, 1_000_000)
    assert "estimated_cost=$0.750000" in caplog.text
