from __future__ import annotations

import re
from typing import TYPE_CHECKING

import anthropic
import httpx
import openai

if TYPE_CHECKING:
    from .schemas import CreditsStatus

KIND_VALIDATION = "VALIDATION"
KIND_PROVIDER_AUTH = "PROVIDER_AUTH"
KIND_PROVIDER_TIMEOUT = "PROVIDER_TIMEOUT"
KIND_PROVIDER_PARSE = "PROVIDER_PARSE"
KIND_PROVIDER_ERROR = "PROVIDER_ERROR"
KIND_RATE_LIMITED = "RATE_LIMITED"
KIND_BUDGET_EXCEEDED = "BUDGET_EXCEEDED"
KIND_STORAGE_FAILURE = "STORAGE_FAILURE"

AUTH_ERROR_MESSAGE = (
    "LLM authentication failed. Re-login for the selected provider or switch to an API-key provider."
)

_AUTH_ERROR_PATTERNS = [
    re.compile(r"could not resolve authentication method", re.IGNORECASE),
    re.compile(r"expected either api_?key or auth_?token to be set", re.IGNORECASE),
    re.compile(r"invalid api key", re.IGNORECASE),
    re.compile(r"incorrect api key", re.IGNORECASE),
    re.compile(r"api key.*required", re.IGNORECASE),
    re.compile(r"missing.*api key", re.IGNORECASE),
    re.compile(r"auth token", re.IGNORECASE),
    re.compile(r"authorization header:\s*false", re.IGNORECASE),
    re.compile(r"authentication failed", re.IGNORECASE),
    re.compile(r"unauthorized", re.IGNORECASE),
    re.compile(r"forbidden", re.IGNORECASE),
    re.compile(r"not logged in", re.IGNORECASE),
    re.compile(r"please run .*login", re.IGNORECASE),
    re.compile(r"login required", re.IGNORECASE),
]


class DigestError(Exception):
    kind = "ERROR"
    code = "ERROR"


class ValidationError(DigestError):
    kind = KIND_VALIDATION
    code = "VALIDATION_ERROR"


class StorageFailure(DigestError):
    kind = KIND_STORAGE_FAILURE
    code = "STORAGE_FAILURE"


class BudgetExceededError(DigestError):
    kind = KIND_BUDGET_EXCEEDED
    code = "BUDGET_EXCEEDED"

    def __init__(self, status: CreditsStatus) -> None:
        self.status = status
        daily = "unlimited"
        if status.daily_limit is not None:
            daily = f"{status.daily_used:.2f}/{status.daily_limit:.2f}"
        super().__init__(
            f"Paid LLM calls are blocked: monthly {status.monthly_used:.2f}/{status.monthly_limit:.2f}, "
            f"daily {daily}"
        )


class LlmError(DigestError):
    kind = KIND_PROVIDER_ERROR
    code = "PROVIDER_ERROR"


class ProviderError(LlmError):
    pass


class RateLimitExceededError(ProviderError):
    kind = KIND_RATE_LIMITED
    code = "RATE_LIMITED"

    def __init__(self, provider: str, calls_per_hour: int) -> None:
        self.provider = provider
        self.calls_per_hour = calls_per_hour
        super().__init__(f"{provider} call ceiling reached ({calls_per_hour} calls/hour)")


class ProviderAuthError(LlmError):
    kind = KIND_PROVIDER_AUTH
    code = "AUTH_ERROR"

    def __init__(self, message: str = AUTH_ERROR_MESSAGE, detail: str | None = None) -> None:
        self.detail = detail
        super().__init__(message)


class ProviderParseError(LlmError):
    kind = KIND_PROVIDER_PARSE
    code = "PARSE_ERROR"


class LlmTimeoutError(LlmError, TimeoutError):
    kind = KIND_PROVIDER_TIMEOUT
    code = "TIMEOUT"

    def __init__(self, label: str, timeout_seconds: float) -> None:
        self.label = label
        self.timeout_seconds = timeout_seconds
        super().__init__(f"{label} timed out after {timeout_seconds:g}s")


def is_auth_like_message(message: str) -> bool:
    return any(pattern.search(message or "") for pattern in _AUTH_ERROR_PATTERNS)


def error_kind(exc: BaseException) -> str:
    if isinstance(exc, DigestError):
        return exc.kind
    if isinstance(exc, TimeoutError):
        return KIND_PROVIDER_TIMEOUT
    return KIND_PROVIDER_ERROR


def classify_provider_error(
    exc: BaseException,
    label: str = "provider request",
    timeout_seconds: float = 0.0,
) -> LlmError:
    """Map an SDK or transport failure onto the LLM error taxonomy.

    Structured codes win over HTTP status, which wins over message patterns.
    """
    if isinstance(exc, LlmError):
        return exc

    message = str(exc) or exc.__class__.__name__
    code = getattr(exc, "code", None)
    if isinstance(code, str) and code.upper() in {"AUTH_ERROR", "LLM_AUTH_ERROR", "INVALID_API_KEY"}:
        return ProviderAuthError(detail=message)

    if isinstance(exc, (openai.AuthenticationError, openai.PermissionDeniedError)):
        return ProviderAuthError(detail=message)
    if isinstance(exc, (anthropic.AuthenticationError, anthropic.PermissionDeniedError)):
        return ProviderAuthError(detail=message)

    status_code = getattr(exc, "status_code", None)
    if isinstance(status_code, int) and status_code in {401, 403}:
        return ProviderAuthError(detail=message)

    if is_auth_like_message(message):
        return ProviderAuthError(detail=message)

    if isinstance(exc, (openai.APITimeoutError, anthropic.APITimeoutError, httpx.TimeoutException)):
        return LlmTimeoutError(label=label, timeout_seconds=timeout_seconds)
    if isinstance(exc, TimeoutError):
        return LlmTimeoutError(label=label, timeout_seconds=timeout_seconds)

    if isinstance(status_code, int):
        return ProviderError(f"HTTP {status_code}: {message}")
    return ProviderError(message)
