from __future__ import annotations

import threading

import httpx
import openai
import pytest

from aha_digest.config import get_settings
from aha_digest.errors import (
    LlmTimeoutError,
    ProviderAuthError,
    ProviderError,
    ProviderParseError,
    RateLimitExceededError,
    ValidationError,
    classify_provider_error,
)
from aha_digest.schemas import LlmRequest, LlmRuntimeConfig
from aha_digest.services.llm_normalize import extract_json_object, normalize_response
from aha_digest.services.llm_router import CallRateLimiter, create_router

from fakes import FakeAnthropicClient, FakeOpenAIClient

REQUEST = LlmRequest(system="sys", user="hello", max_output_tokens=200)


def test_openai_call_is_normalized(isolated_env, monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    fake = FakeOpenAIClient('{"ok": true}')
    router = create_router(get_settings(), clients={"openai": fake})

    routed = router.route("triage", "normal")
    response = routed.call(LlmRequest(system="sys", user="hello", max_output_tokens=200, reasoning_effort="none"))

    assert routed.provider == "openai"
    assert routed.model == "gpt-4o-mini"
    assert routed.endpoint == "https://api.openai.com/v1/responses"
    assert response.text == '{"ok": true}'
    assert (response.input_tokens, response.output_tokens) == (120, 30)
    assert fake.calls[0]["max_output_tokens"] == 200
    assert "reasoning" not in fake.calls[0]
    assert fake.calls[0]["input"][0] == {"role": "system", "content": "sys"}


def test_reasoning_effort_forwarded(isolated_env):
    fake = FakeOpenAIClient("{}")
    router = create_router(get_settings(), runtime_config=LlmRuntimeConfig(reasoning_effort="high"),
                           clients={"openai": fake})

    router.route("triage", "high").call(REQUEST)

    assert fake.calls[0]["reasoning"] == {"effort": "high"}


def test_anthropic_defaults_max_tokens(isolated_env, monkeypatch):
    monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-ant")
    fake = FakeAnthropicClient("plain answer")
    router = create_router(get_settings(), clients={"anthropic": fake})

    response = router.route("triage", "low").call(LlmRequest(system="sys", user="hi"))

    assert response.provider == "anthropic"
    assert response.model == "claude-3-5-haiku-latest"
    assert response.endpoint == "https://api.anthropic.com/v1/messages"
    assert response.text == "plain answer"
    assert fake.calls[0]["max_tokens"] == 1024
    assert fake.calls[0]["system"] == "sys"


@pytest.mark.parametrize(
    "payload",
    [
        {"output_text": "hi", "usage": {"input_tokens": 3, "output_tokens": 1}},
        {
            "output": [{"type": "message", "role": "assistant", "content": [{"type": "output_text", "text": "hi"}]}],
            "usage": {"input_tokens": 3, "output_tokens": 1},
        },
        {"choices": [{"message": {"content": "hi"}}], "usage": {"prompt_tokens": 3, "completion_tokens": 1}},
        {"content": [{"type": "text", "text": "hi"}], "usage": {"input_tokens": 3, "output_tokens": 1}},
    ],
)
def test_response_shapes_normalize_identically(payload):
    response = normalize_response(payload, provider="p", model="m", endpoint="e")

    assert response.text == "hi"
    assert (response.input_tokens, response.output_tokens) == (3, 1)


def test_missing_text_is_provider_error():
    with pytest.raises(ProviderError):
        normalize_response({"output": []}, provider="p", model="m", endpoint="e")


def test_schema_violation_is_parse_error():
    with pytest.raises(ProviderParseError):
        normalize_response({"output_text": "no json here"}, provider="p", model="m", endpoint="e",
                           schema={"required": ["aha_score"]})


def test_json_extraction_from_fenced_block():
    assert extract_json_object('Sure:\n```json\n{"a": 1}\n```') == {"a": 1}
    assert extract_json_object('prefix {"b": 2} suffix') == {"b": 2}
    assert extract_json_object("nothing") is None


def test_sdk_auth_error_classified(isolated_env):
    request = httpx.Request("POST", "https://api.openai.com/v1/responses")

    def fail(kwargs):
        raise openai.AuthenticationError("bad key", response=httpx.Response(401, request=request), body=None)

    router = create_router(get_settings(), clients={"openai": FakeOpenAIClient(fail)})

    with pytest.raises(ProviderAuthError) as exc_info:
        router.route("triage", "normal").call(REQUEST)

    assert exc_info.value.kind == "PROVIDER_AUTH"
    assert exc_info.value.code == "AUTH_ERROR"


@pytest.mark.parametrize(
    ("exc", "kind"),
    [
        (RuntimeError("Could not resolve authentication method"), "PROVIDER_AUTH"),
        (RuntimeError("Please run /login"), "PROVIDER_AUTH"),
        (httpx.ReadTimeout("slow"), "PROVIDER_TIMEOUT"),
        (RuntimeError("boom"), "PROVIDER_ERROR"),
    ],
)
def test_classify_provider_error(exc, kind):
    assert classify_provider_error(exc).kind == kind


def test_timeout_raises_typed_error(isolated_env):
    release = threading.Event()

    def hang(kwargs):
        release.wait(5)
        return {"output_text": "late"}

    router = create_router(get_settings(), clients={"openai": FakeOpenAIClient(hang)}, timeout_seconds=0.05)
    try:
        with pytest.raises(LlmTimeoutError) as exc_info:
            router.route("triage", "normal").call(REQUEST)
    finally:
        release.set()

    assert isinstance(exc_info.value, TimeoutError)
    assert exc_info.value.timeout_seconds == 0.05
    assert exc_info.value.label == "openai:gpt-4o-mini:triage"


def test_rate_limiter_sliding_window():
    now = [0.0]
    limiter = CallRateLimiter(2, clock=lambda: now[0])

    limiter.acquire("openai")
    limiter.acquire("openai")
    with pytest.raises(RateLimitExceededError):
        limiter.acquire("openai")

    now[0] = 3600.0
    limiter.acquire("openai")
    assert limiter.used() == 1


def test_router_enforces_call_ceiling(isolated_env):
    router = create_router(
        get_settings(),
        runtime_config=LlmRuntimeConfig(calls_per_hour=1),
        clients={"openai": FakeOpenAIClient("{}")},
    )
    routed = router.route("triage", "normal")
    routed.call(REQUEST)

    with pytest.raises(RateLimitExceededError):
        routed.call(REQUEST)


def test_no_credentials_is_auth_error(isolated_env):
    router = create_router(get_settings())

    with pytest.raises(ProviderAuthError):
        router.route("triage", "normal")


def test_provider_resolution_order(isolated_env, monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-ant")
    assert create_router(get_settings()).resolve_provider("triage") == "anthropic"

    monkeypatch.setenv("LLM_PROVIDER", "openai")
    get_settings.cache_clear()
    assert create_router(get_settings()).resolve_provider("triage") == "openai"


def test_configured_provider_without_key_falls_through(isolated_env, monkeypatch):
    monkeypatch.setenv("LLM_PROVIDER", "openai")
    monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-ant")

    assert create_router(get_settings()).resolve_provider("triage") == "anthropic"


def test_explicit_runtime_provider_is_strict(isolated_env):
    settings = get_settings()

    with pytest.raises(ValidationError):
        create_router(settings, runtime_config=LlmRuntimeConfig(provider="mistral")).route("triage", "normal")
    with pytest.raises(ProviderAuthError):
        create_router(settings, runtime_config=LlmRuntimeConfig(provider="claude-subscription")).route(
            "triage", "normal"
        )


def test_model_resolution_prefers_purpose_tier_env(isolated_env, monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    monkeypatch.setenv("OPENAI_TRIAGE_MODEL_HIGH", "gpt-big")
    monkeypatch.setenv("OPENAI_MODEL", "gpt-global")
    router = create_router(get_settings())

    assert router.route("triage", "high").model == "gpt-big"
    assert router.route("triage", "low").model == "gpt-global"
    assert create_router(get_settings(), runtime_config=LlmRuntimeConfig(model="pinned")).route(
        "triage", "high"
    ).model == "pinned"


def test_unknown_tier_rejected(isolated_env):
    router = create_router(get_settings(), clients={"openai": FakeOpenAIClient()})

    with pytest.raises(ValidationError):
        router.route("triage", "ultra")
