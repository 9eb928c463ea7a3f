from __future__ import annotations

from aha_digest.config import get_settings
from aha_digest.services.digest_assembler import DigestRuntime


def test_defaults_without_env(isolated_env):
    settings = get_settings()

    assert settings.db_url.startswith("sqlite:///")
    assert settings.llm_provider == "auto"
    assert settings.resolved_llm_provider() == "none"
    assert settings.monthly_credits is None
    assert settings.daily_throttle_credits is None
    assert settings.digest_policy == "fixed_3x_daily"
    assert settings.digest_max_items == 20
    assert settings.triage_concurrency == 4
    assert (settings.w_aha, settings.w_heuristic, settings.w_pref, settings.w_novelty, settings.w_signal) == (
        0.8,
        0.15,
        0.25,
        0.05,
        0.05,
    )
    assert settings.credit_rates("openai") == (0.0, 0.0)


def test_malformed_values_fall_back(isolated_env, monkeypatch):
    monkeypatch.setenv("DIGEST_MAX_ITEMS", "lots")
    monkeypatch.setenv("TRIAGE_CONCURRENCY", "-3")
    monkeypatch.setenv("RANK_W_AHA", "nan")
    monkeypatch.setenv("DIGEST_POLICY", "hourly")
    monkeypatch.setenv("TRIAGE_REASONING_EFFORT", "extreme")
    monkeypatch.setenv("SOURCE_TYPE_WEIGHTS_JSON", "[1, 2]")
    monkeypatch.setenv("CLAUDE_USE_SUBSCRIPTION", "maybe")

    settings = get_settings()

    assert settings.digest_max_items == 20
    assert settings.triage_concurrency == 4
    assert settings.w_aha == 0.8
    assert settings.digest_policy == "fixed_3x_daily"
    assert settings.triage_reasoning_effort is None
    assert settings.source_type_weights == {}
    assert settings.claude_subscription_enabled is False


def test_credit_rates_prefer_provider_specific(isolated_env, monkeypatch):
    monkeypatch.setenv("LLM_CREDITS_PER_1K_INPUT_TOKENS", "1")
    monkeypatch.setenv("LLM_CREDITS_PER_1K_OUTPUT_TOKENS", "2")
    monkeypatch.setenv("CLAUDE_SUBSCRIPTION_CREDITS_PER_1K_INPUT_TOKENS", "0")

    settings = get_settings()

    assert settings.credit_rates("openai") == (1.0, 2.0)
    assert settings.credit_rates("claude-subscription") == (0.0, 2.0)


def test_global_env_file_fills_missing_values(isolated_env, monkeypatch, tmp_path):
    (tmp_path / ".env").write_text("MONTHLY_CREDITS=250\nSOURCE_TYPE_WEIGHTS_JSON={\"reddit\": 0.5}\n", encoding="utf-8")
    monkeypatch.setenv("AHA_DIGEST_ENV_FILE", str(tmp_path / ".env"))

    settings = get_settings()

    assert settings.monthly_credits == 250.0
    assert settings.source_type_weights == {"reddit": 0.5}


def test_subscription_token_read_from_credentials_file(isolated_env, monkeypatch, tmp_path):
    creds = tmp_path / "codex_auth.json"
    creds.write_text('{"access_token": " tok-123 "}', encoding="utf-8")
    monkeypatch.setenv("CODEX_USE_SUBSCRIPTION", "true")

    settings = get_settings()

    assert settings.codex_subscription_enabled is True
    assert settings.codex_subscription_token == "tok-123"
    assert settings.resolved_llm_provider() == "codex-subscription"


def test_out_of_range_ema_alpha_uses_default(isolated_env, monkeypatch):
    for raw in ("0", "-0.5", "1.5", "abc"):
        monkeypatch.setenv("PREFERENCE_EMA_ALPHA", raw)
        get_settings.cache_clear()
        settings = get_settings()

        assert settings.preference_ema_alpha == 0.2
        assert DigestRuntime.from_settings(settings).profiles.alpha == 0.2

    monkeypatch.setenv("PREFERENCE_EMA_ALPHA", "1")
    get_settings.cache_clear()
    assert get_settings().preference_ema_alpha == 1.0
