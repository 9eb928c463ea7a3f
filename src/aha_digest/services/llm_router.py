from __future__ import annotations

import logging
import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from anthropic import Anthropic
from openai import OpenAI

from ..config import (
    KNOWN_PROVIDERS,
    PROVIDER_ANTHROPIC,
    PROVIDER_CLAUDE_SUBSCRIPTION,
    PROVIDER_CODEX_SUBSCRIPTION,
    PROVIDER_OPENAI,
    Settings,
)
from ..errors import (
    LlmError,
    ProviderAuthError,
    RateLimitExceededError,
    ValidationError,
    classify_provider_error,
)
from ..schemas import LlmRequest, LlmRuntimeConfig, NormalizedLlmResponse
from .llm_normalize import normalize_response
from .timeouts import with_timeout

logger = logging.getLogger(__name__)

PURPOSE_TRIAGE = "triage"
PURPOSE_SUMMARIZE = "summarize"
PURPOSES = (PURPOSE_TRIAGE, PURPOSE_SUMMARIZE)

TIER_LOW = "low"
TIER_NORMAL = "normal"
TIER_HIGH = "high"
TIERS = (TIER_LOW, TIER_NORMAL, TIER_HIGH)

_DEFAULT_MODELS = {
    PROVIDER_OPENAI: {TIER_LOW: "gpt-4o-mini", TIER_NORMAL: "gpt-4o-mini", TIER_HIGH: "gpt-4o"},
    PROVIDER_ANTHROPIC: {
        TIER_LOW: "claude-3-5-haiku-latest",
        TIER_NORMAL: "claude-sonnet-4-5",
        TIER_HIGH: "claude-sonnet-4-5",
    },
}

_OPENAI_FAMILY = {PROVIDER_OPENAI, PROVIDER_CODEX_SUBSCRIPTION}
_ANTHROPIC_DEFAULT_MAX_TOKENS = 1024
_HOUR_SECONDS = 3600.0


class CallRateLimiter:
    """Sliding one-hour call ceiling. Exceeding it fails instead of queueing."""

    def __init__(self, calls_per_hour: int, clock: Callable[[], float] = time.monotonic) -> None:
        self.calls_per_hour = calls_per_hour
        self._clock = clock
        self._calls: deque[float] = deque()
        self._lock = threading.Lock()

    def acquire(self, provider: str) -> None:
        with self._lock:
            now = self._clock()
            while self._calls and now - self._calls[0] >= _HOUR_SECONDS:
                self._calls.popleft()
            if len(self._calls) >= self.calls_per_hour:
                raise RateLimitExceededError(provider, self.calls_per_hour)
            self._calls.append(now)

    def used(self) -> int:
        with self._lock:
            return len(self._calls)


@dataclass(slots=True)
class RoutedModel:
    provider: str
    model: str
    endpoint: str
    purpose: str
    tier: str
    router: Router = field(repr=False)

    def call(self, request: LlmRequest, schema: dict[str, Any] | None = None) -> NormalizedLlmResponse:
        return self.router.call(self, request, schema)


def _first_env(env: dict[str, str], names: list[str]) -> str | None:
    for name in names:
        value = env.get(name)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _env_prefix(provider: str) -> str:
    if provider == PROVIDER_CLAUDE_SUBSCRIPTION:
        return "CLAUDE"
    if provider == PROVIDER_CODEX_SUBSCRIPTION:
        return "CODEX"
    return provider.upper()


class Router:
    def __init__(
        self,
        settings: Settings,
        runtime_config: LlmRuntimeConfig | None = None,
        clients: dict[str, Any] | None = None,
        timeout_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings
        self.runtime_config = runtime_config or LlmRuntimeConfig()
        self.timeout_seconds = timeout_seconds if timeout_seconds is not None else settings.llm_timeout_seconds
        self._clients: dict[str, Any] = dict(clients or {})
        self._clients_lock = threading.Lock()
        self._clock = clock
        self._limiters: dict[str, CallRateLimiter] = {}
        self._limiters_lock = threading.Lock()

    # provider / model resolution

    def _has_credentials(self, provider: str) -> bool:
        if provider in self._clients:
            return True
        if provider == PROVIDER_OPENAI:
            return bool(self.settings.openai_api_key)
        if provider == PROVIDER_ANTHROPIC:
            return bool(self.settings.anthropic_api_key)
        if provider == PROVIDER_CLAUDE_SUBSCRIPTION:
            return self.settings.claude_subscription_enabled
        if provider == PROVIDER_CODEX_SUBSCRIPTION:
            return self.settings.codex_subscription_enabled
        return False

    def _check_subscription_enabled(self, provider: str) -> None:
        if provider == PROVIDER_CLAUDE_SUBSCRIPTION and not self.settings.claude_subscription_enabled:
            raise ProviderAuthError(
                "Provider 'claude-subscription' selected but CLAUDE_USE_SUBSCRIPTION is not enabled"
            )
        if provider == PROVIDER_CODEX_SUBSCRIPTION and not self.settings.codex_subscription_enabled:
            raise ProviderAuthError(
                "Provider 'codex-subscription' selected but CODEX_USE_SUBSCRIPTION is not enabled"
            )

    def resolve_provider(self, purpose: str) -> str:
        explicit = (self.runtime_config.provider or "").strip().lower()
        if explicit:
            if explicit not in KNOWN_PROVIDERS:
                raise ValidationError(f"unknown LLM provider: {explicit}")
            self._check_subscription_enabled(explicit)
            return explicit

        env = self.settings.env
        for candidate in (self.settings.llm_provider, env.get(f"LLM_{purpose.upper()}_PROVIDER")):
            selected = (candidate or "").strip().lower()
            if selected not in KNOWN_PROVIDERS:
                continue
            if selected in {PROVIDER_CLAUDE_SUBSCRIPTION, PROVIDER_CODEX_SUBSCRIPTION}:
                self._check_subscription_enabled(selected)
                return selected
            if self._has_credentials(selected):
                return selected

        for provider in (
            PROVIDER_ANTHROPIC,
            PROVIDER_OPENAI,
            PROVIDER_CLAUDE_SUBSCRIPTION,
            PROVIDER_CODEX_SUBSCRIPTION,
        ):
            if self._has_credentials(provider):
                return provider
        raise ProviderAuthError(
            "No LLM provider configured: set OPENAI_API_KEY or ANTHROPIC_API_KEY, "
            "or enable CLAUDE_USE_SUBSCRIPTION / CODEX_USE_SUBSCRIPTION"
        )

    def resolve_model(self, provider: str, purpose: str, tier: str) -> str:
        if self.runtime_config.model:
            return self.runtime_config.model

        env = self.settings.env
        purpose_key = purpose.upper()
        tier_key = tier.upper()
        names = []
        if provider in {PROVIDER_CLAUDE_SUBSCRIPTION, PROVIDER_CODEX_SUBSCRIPTION}:
            prefix = _env_prefix(provider)
            names += [f"{prefix}_{purpose_key}_MODEL_{tier_key}", f"{prefix}_{purpose_key}_MODEL", f"{prefix}_MODEL"]

        family = PROVIDER_OPENAI if provider in _OPENAI_FAMILY else PROVIDER_ANTHROPIC
        base_prefix = family.upper()
        names += [f"{base_prefix}_{purpose_key}_MODEL_{tier_key}", f"{base_prefix}_{purpose_key}_MODEL"]
        found = _first_env(env, names)
        if found:
            return found

        global_model = self.settings.openai_model if family == PROVIDER_OPENAI else self.settings.anthropic_model
        if global_model:
            return global_model
        return _DEFAULT_MODELS[family].get(tier, _DEFAULT_MODELS[family][TIER_NORMAL])

    def _endpoint(self, provider: str) -> str:
        if provider == PROVIDER_OPENAI:
            return f"{self.settings.openai_base_url.rstrip('/')}/responses"
        if provider == PROVIDER_ANTHROPIC:
            return f"{self.settings.anthropic_base_url.rstrip('/')}/v1/messages"
        return provider

    def route(self, purpose: str, tier: str) -> RoutedModel:
        if tier not in TIERS:
            raise ValidationError(f"unknown budget tier: {tier}")
        provider = self.resolve_provider(purpose)
        return RoutedModel(
            provider=provider,
            model=self.resolve_model(provider, purpose, tier),
            endpoint=self._endpoint(provider),
            purpose=purpose,
            tier=tier,
            router=self,
        )

    # rate limiting

    def calls_per_hour(self, provider: str) -> int:
        if self.runtime_config.calls_per_hour:
            return self.runtime_config.calls_per_hour
        return self.settings.calls_per_hour(provider)

    def limiter(self, provider: str) -> CallRateLimiter:
        with self._limiters_lock:
            limiter = self._limiters.get(provider)
            if limiter is None:
                limiter = CallRateLimiter(self.calls_per_hour(provider), clock=self._clock)
                self._limiters[provider] = limiter
            return limiter

    # clients

    def _build_client(self, provider: str) -> Any:
        settings = self.settings
        if provider == PROVIDER_OPENAI:
            if not settings.openai_api_key:
                raise ProviderAuthError("OPENAI_API_KEY required when using the OpenAI provider")
            return OpenAI(api_key=settings.openai_api_key, base_url=settings.openai_base_url, max_retries=0)
        if provider == PROVIDER_CODEX_SUBSCRIPTION:
            if not settings.codex_subscription_token:
                raise ProviderAuthError("Codex subscription is not logged in; run `codex login` first")
            base_url = settings.env.get("CODEX_BASE_URL") or settings.openai_base_url
            return OpenAI(api_key=settings.codex_subscription_token, base_url=base_url, max_retries=0)
        if provider == PROVIDER_ANTHROPIC:
            if not settings.anthropic_api_key:
                raise ProviderAuthError("ANTHROPIC_API_KEY required when using the Anthropic provider")
            return Anthropic(api_key=settings.anthropic_api_key, base_url=settings.anthropic_base_url, max_retries=0)
        if provider == PROVIDER_CLAUDE_SUBSCRIPTION:
            if not settings.claude_subscription_token:
                raise ProviderAuthError("Claude subscription is not logged in; run `claude login` first")
            return Anthropic(
                auth_token=settings.claude_subscription_token,
                base_url=settings.anthropic_base_url,
                max_retries=0,
            )
        raise ValidationError(f"unknown LLM provider: {provider}")

    def client_for(self, provider: str) -> Any:
        with self._clients_lock:
            client = self._clients.get(provider)
            if client is None:
                client = self._build_client(provider)
                self._clients[provider] = client
            return client

    # calls

    def _invoke(self, routed: RoutedModel, request: LlmRequest) -> Any:
        client = self.client_for(routed.provider)
        max_tokens = request.max_output_tokens or self.runtime_config.max_output_tokens
        effort = request.reasoning_effort or self.runtime_config.reasoning_effort

        if routed.provider in _OPENAI_FAMILY:
            kwargs: dict[str, Any] = {
                "model": routed.model,
                "input": [
                    {"role": "system", "content": request.system},
                    {"role": "user", "content": request.user},
                ],
            }
            if max_tokens:
                kwargs["max_output_tokens"] = max_tokens
            if effort and effort != "none":
                kwargs["reasoning"] = {"effort": effort}
            if request.temperature is not None:
                kwargs["temperature"] = request.temperature
            return client.responses.create(**kwargs)

        kwargs = {
            "model": routed.model,
            "max_tokens": max_tokens or _ANTHROPIC_DEFAULT_MAX_TOKENS,
            "system": request.system,
            "messages": [{"role": "user", "content": request.user}],
        }
        if request.temperature is not None:
            kwargs["temperature"] = request.temperature
        return client.messages.create(**kwargs)

    def call(
        self,
        routed: RoutedModel,
        request: LlmRequest,
        schema: dict[str, Any] | None = None,
    ) -> NormalizedLlmResponse:
        self.limiter(routed.provider).acquire(routed.provider)
        label = f"{routed.provider}:{routed.model}:{routed.purpose}"
        try:
            response = with_timeout(lambda: self._invoke(routed, request), self.timeout_seconds, label)
        except LlmError:
            raise
        except Exception as exc:  # noqa: BLE001
            classified = classify_provider_error(exc, label=label, timeout_seconds=self.timeout_seconds)
            logger.warning(
                "llm call failed",
                extra={"provider": routed.provider, "model": routed.model, "error_kind": classified.kind},
            )
            raise classified from exc

        return normalize_response(
            response,
            provider=routed.provider,
            model=routed.model,
            endpoint=routed.endpoint,
            schema=schema,
        )


def create_router(
    settings: Settings,
    runtime_config: LlmRuntimeConfig | None = None,
    clients: dict[str, Any] | None = None,
    timeout_seconds: float | None = None,
) -> Router:
    return Router(settings, runtime_config=runtime_config, clients=clients, timeout_seconds=timeout_seconds)
