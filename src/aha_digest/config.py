from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv


DEFAULT_OPENAI_BASE_URL = "https://api.openai.com/v1"
DEFAULT_ANTHROPIC_BASE_URL = "https://api.anthropic.com"

PROVIDER_OPENAI = "openai"
PROVIDER_ANTHROPIC = "anthropic"
PROVIDER_CLAUDE_SUBSCRIPTION = "claude-subscription"
PROVIDER_CODEX_SUBSCRIPTION = "codex-subscription"
KNOWN_PROVIDERS = (
    PROVIDER_OPENAI,
    PROVIDER_ANTHROPIC,
    PROVIDER_CLAUDE_SUBSCRIPTION,
    PROVIDER_CODEX_SUBSCRIPTION,
)

POLICY_FIXED_3X_DAILY = "fixed_3x_daily"
POLICY_SINCE_LAST_RUN = "since_last_run"
DIGEST_POLICIES = (POLICY_FIXED_3X_DAILY, POLICY_SINCE_LAST_RUN)

REASONING_EFFORTS = ("none", "low", "medium", "high")


@dataclass(frozen=True)
class Settings:
    db_url: str
    llm_provider: str
    openai_api_key: str | None
    openai_base_url: str
    openai_model: str | None
    anthropic_api_key: str | None
    anthropic_base_url: str
    anthropic_model: str | None
    claude_subscription_enabled: bool
    claude_subscription_token: str | None
    codex_subscription_enabled: bool
    codex_subscription_token: str | None
    openai_calls_per_hour: int
    anthropic_calls_per_hour: int
    claude_calls_per_hour: int
    codex_calls_per_hour: int
    llm_timeout_seconds: float
    triage_reasoning_effort: str | None
    triage_max_output_tokens: int
    embed_model: str
    embed_timeout_seconds: float
    monthly_credits: float | None
    daily_throttle_credits: float | None
    digest_policy: str
    digest_max_items: int
    digest_candidate_pool: int
    triage_concurrency: int
    w_aha: float
    w_heuristic: float
    w_pref: float
    w_novelty: float
    w_signal: float
    novelty_lookback_days: int
    preference_ema_alpha: float
    preference_max_strength: float
    preference_saturation_samples: float
    deep_summary_reasoning_effort: str | None = None
    deep_summary_max_output_tokens: int | None = None
    digest_triage_max_calls_cap: int = 10000
    digest_deep_summary_max_calls_cap: int = 200
    manual_summary_max_input_chars: int = 100000
    source_type_weights: dict[str, float] = field(default_factory=dict)
    log_level: str = "INFO"
    env: dict[str, str] = field(default_factory=dict, repr=False)

    def resolved_llm_provider(self) -> str:
        provider = self.llm_provider.strip().lower()
        if provider in KNOWN_PROVIDERS:
            return provider
        if self.anthropic_api_key:
            return PROVIDER_ANTHROPIC
        if self.openai_api_key:
            return PROVIDER_OPENAI
        if self.claude_subscription_enabled:
            return PROVIDER_CLAUDE_SUBSCRIPTION
        if self.codex_subscription_enabled:
            return PROVIDER_CODEX_SUBSCRIPTION
        return "none"

    def calls_per_hour(self, provider: str) -> int:
        return {
            PROVIDER_OPENAI: self.openai_calls_per_hour,
            PROVIDER_ANTHROPIC: self.anthropic_calls_per_hour,
            PROVIDER_CLAUDE_SUBSCRIPTION: self.claude_calls_per_hour,
            PROVIDER_CODEX_SUBSCRIPTION: self.codex_calls_per_hour,
        }.get(provider, 0)

    def credit_rates(self, provider: str) -> tuple[float, float]:
        """Credits per 1K input/output tokens for a provider.

        Provider-specific variables win over the LLM_* fallbacks; anything
        unset counts as zero so cost tracking degrades to "free".
        """
        prefix = provider.upper().replace("-", "_")
        rate_in = _to_float(self.env.get(f"{prefix}_CREDITS_PER_1K_INPUT_TOKENS"), None)
        if rate_in is None:
            rate_in = _to_float(self.env.get("LLM_CREDITS_PER_1K_INPUT_TOKENS"), 0.0)
        rate_out = _to_float(self.env.get(f"{prefix}_CREDITS_PER_1K_OUTPUT_TOKENS"), None)
        if rate_out is None:
            rate_out = _to_float(self.env.get("LLM_CREDITS_PER_1K_OUTPUT_TOKENS"), 0.0)
        return rate_in or 0.0, rate_out or 0.0


def _to_int(raw: str | None, default: int) -> int:
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    if value <= 0:
        return default
    return value


def _to_float(raw: str | None, default: float | None) -> float | None:
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    if value != value or value in {float("inf"), float("-inf")}:
        return default
    return value


def _to_bool(raw: str | None, default: bool) -> bool:
    if raw is None:
        return default
    normalized = raw.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _to_weight(raw: str | None, default: float) -> float:
    value = _to_float(raw, default)
    if value is None or value < 0:
        return default
    return value


def _to_alpha(raw: str | None, default: float) -> float:
    value = _to_float(raw, default)
    if value is None or value <= 0 or value > 1:
        return default
    return value


def _parse_source_type_weights(raw: str | None) -> dict[str, float]:
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return {}
    if not isinstance(parsed, dict):
        return {}
    weights: dict[str, float] = {}
    for key, value in parsed.items():
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            weights[str(key)] = float(value)
    return weights


def _parse_reasoning_effort(raw: str | None) -> str | None:
    if not raw:
        return None
    value = raw.strip().lower()
    return value if value in REASONING_EFFORTS else None


def parse_digest_policy(raw: str | None) -> str:
    value = (raw or "").strip().lower()
    if value in DIGEST_POLICIES:
        return value
    return POLICY_FIXED_3X_DAILY


def _read_token(env_value: str | None, path_value: str | None) -> str | None:
    if env_value and env_value.strip():
        return env_value.strip()
    if not path_value:
        return None
    path = Path(path_value).expanduser()
    if not path.exists():
        return None
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return None
    if isinstance(payload, dict):
        for key in ("access_token", "accessToken", "token"):
            value = payload.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
    return None


def get_default_env_file() -> Path:
    custom_path = os.getenv("AHA_DIGEST_ENV_FILE", "").strip()
    if custom_path:
        return Path(custom_path).expanduser()

    xdg_root = os.getenv("XDG_CONFIG_HOME", "").strip()
    if xdg_root:
        return Path(xdg_root).expanduser() / "aha-digest" / ".env"
    return Path.home() / ".config" / "aha-digest" / ".env"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    # Prefer a local .env for development; fill missing values from global config.
    load_dotenv(override=False)
    load_dotenv(dotenv_path=get_default_env_file(), override=False)

    env = dict(os.environ)
    monthly = _to_float(os.getenv("MONTHLY_CREDITS"), None)
    daily = _to_float(os.getenv("DAILY_THROTTLE_CREDITS"), None)

    return Settings(
        db_url=os.getenv("AHA_DIGEST_DB_URL", "sqlite:///data/aha_digest.db"),
        llm_provider=os.getenv("LLM_PROVIDER", "auto"),
        openai_api_key=os.getenv("OPENAI_API_KEY") or None,
        openai_base_url=os.getenv("OPENAI_BASE_URL", DEFAULT_OPENAI_BASE_URL),
        openai_model=os.getenv("OPENAI_MODEL") or None,
        anthropic_api_key=os.getenv("ANTHROPIC_API_KEY") or None,
        anthropic_base_url=os.getenv("ANTHROPIC_BASE_URL", DEFAULT_ANTHROPIC_BASE_URL),
        anthropic_model=os.getenv("ANTHROPIC_MODEL") or None,
        claude_subscription_enabled=_to_bool(os.getenv("CLAUDE_USE_SUBSCRIPTION"), False),
        claude_subscription_token=_read_token(
            os.getenv("CLAUDE_SUBSCRIPTION_TOKEN"), os.getenv("CLAUDE_CREDENTIALS_FILE")
        ),
        codex_subscription_enabled=_to_bool(os.getenv("CODEX_USE_SUBSCRIPTION"), False),
        codex_subscription_token=_read_token(
            os.getenv("CODEX_SUBSCRIPTION_TOKEN"), os.getenv("CODEX_CREDENTIALS_FILE", "~/.codex/auth.json")
        ),
        openai_calls_per_hour=_to_int(os.getenv("OPENAI_CALLS_PER_HOUR"), 3600),
        anthropic_calls_per_hour=_to_int(os.getenv("ANTHROPIC_CALLS_PER_HOUR"), 3600),
        claude_calls_per_hour=_to_int(os.getenv("CLAUDE_CALLS_PER_HOUR"), 100),
        codex_calls_per_hour=_to_int(os.getenv("CODEX_CALLS_PER_HOUR"), 25),
        llm_timeout_seconds=_to_float(os.getenv("LLM_TIMEOUT_SECONDS"), 60.0) or 60.0,
        triage_reasoning_effort=_parse_reasoning_effort(os.getenv("TRIAGE_REASONING_EFFORT")),
        triage_max_output_tokens=_to_int(os.getenv("TRIAGE_MAX_OUTPUT_TOKENS"), 250),
        embed_model=os.getenv("OPENAI_EMBED_MODEL", "text-embedding-3-small"),
        embed_timeout_seconds=_to_float(os.getenv("EMBED_TIMEOUT_SECONDS"), 30.0) or 30.0,
        monthly_credits=monthly,
        daily_throttle_credits=daily,
        digest_policy=parse_digest_policy(os.getenv("DIGEST_POLICY")),
        digest_max_items=_to_int(os.getenv("DIGEST_MAX_ITEMS"), 20),
        digest_candidate_pool=_to_int(os.getenv("DIGEST_CANDIDATE_POOL"), 200),
        triage_concurrency=_to_int(os.getenv("TRIAGE_CONCURRENCY"), 4),
        w_aha=_to_weight(os.getenv("RANK_W_AHA"), 0.8),
        w_heuristic=_to_weight(os.getenv("RANK_W_HEURISTIC"), 0.15),
        w_pref=_to_weight(os.getenv("RANK_W_PREF"), 0.25),
        w_novelty=_to_weight(os.getenv("RANK_W_NOVELTY"), 0.05),
        w_signal=_to_weight(os.getenv("RANK_W_SIGNAL"), 0.05),
        novelty_lookback_days=_to_int(os.getenv("NOVELTY_LOOKBACK_DAYS"), 30),
        preference_ema_alpha=_to_alpha(os.getenv("PREFERENCE_EMA_ALPHA"), 0.2),
        preference_max_strength=_to_weight(os.getenv("PREFERENCE_MAX_STRENGTH"), 0.5),
        preference_saturation_samples=_to_weight(os.getenv("PREFERENCE_SATURATION_SAMPLES"), 20.0) or 20.0,
        deep_summary_reasoning_effort=_parse_reasoning_effort(os.getenv("DEEP_SUMMARY_REASONING_EFFORT")),
        deep_summary_max_output_tokens=_to_int(os.getenv("DEEP_SUMMARY_MAX_OUTPUT_TOKENS"), 0) or None,
        digest_triage_max_calls_cap=_to_int(os.getenv("DIGEST_TRIAGE_MAX_CALLS_HARD_CAP"), 10000),
        digest_deep_summary_max_calls_cap=_to_int(os.getenv("DIGEST_DEEP_SUMMARY_MAX_CALLS_HARD_CAP"), 200),
        manual_summary_max_input_chars=_to_int(os.getenv("MANUAL_SUMMARY_MAX_INPUT_CHARS"), 100000),
        source_type_weights=_parse_source_type_weights(os.getenv("SOURCE_TYPE_WEIGHTS_JSON")),
        log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO",
        env=env,
    )
