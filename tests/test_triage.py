from __future__ import annotations

from datetime import datetime, timezone

import httpx
import openai
import pytest

from aha_digest.config import get_settings
from aha_digest.errors import ProviderAuthError, ProviderParseError
from aha_digest.schemas import CandidateRow
from aha_digest.services.llm_router import create_router
from aha_digest.services.triage import build_user_prompt, normalize_triage_output, triage_candidate

from fakes import FakeOpenAIClient, triage_json

START = datetime(2024, 6, 15, 0, tzinfo=timezone.utc)
END = datetime(2024, 6, 15, 8, tzinfo=timezone.utc)

CANDIDATE = CandidateRow(
    kind="item",
    candidate_id="item:7",
    candidate_at=datetime(2024, 6, 15, 3, tzinfo=timezone.utc),
    representative_content_item_id=7,
    source_id=1,
    source_type="rss",
    source_name="Lab blog",
    title="  New benchmark result  ",
    body_text="x" * 5000,
)


def _router(fake):
    return create_router(get_settings(), clients={"openai": fake})


def test_triage_returns_normalized_record(isolated_env, monkeypatch):
    monkeypatch.setenv("LLM_CREDITS_PER_1K_INPUT_TOKENS", "1.0")
    monkeypatch.setenv("LLM_CREDITS_PER_1K_OUTPUT_TOKENS", "2.0")
    fake = FakeOpenAIClient(triage_json(82.4, categories=["ml", " ", 3]))

    result = triage_candidate(_router(fake), "normal", CANDIDATE, START, END, reasoning_effort="low",
                              max_output_tokens=250)

    assert result.ai_score == pytest.approx(0.824)
    assert result.aha_score == 82
    assert result.categories == ("ml",)
    assert result.provider == "openai"
    assert (result.input_tokens, result.output_tokens) == (120, 30)
    assert result.credits == pytest.approx(0.12 + 0.06)
    assert fake.calls[0]["reasoning"] == {"effort": "low"}
    assert fake.calls[0]["max_output_tokens"] == 250


def test_invalid_output_retried_once(isolated_env):
    replies = iter(["not json at all", triage_json(40)])
    fake = FakeOpenAIClient(lambda kwargs: next(replies))

    result = triage_candidate(_router(fake), "normal", CANDIDATE, START, END)

    assert len(fake.calls) == 2
    assert "previous response was invalid" in fake.calls[1]["input"][0]["content"]
    assert result.ai_score == pytest.approx(0.4)
    assert result.input_tokens == 240


def test_second_invalid_output_raises_parse_error(isolated_env):
    fake = FakeOpenAIClient(triage_json(140))

    with pytest.raises(ProviderParseError) as exc_info:
        triage_candidate(_router(fake), "normal", CANDIDATE, START, END)

    assert len(fake.calls) == 2
    assert exc_info.value.input_tokens == 240
    assert exc_info.value.kind == "PROVIDER_PARSE"


def test_auth_failure_not_retried(isolated_env):
    request = httpx.Request("POST", "https://api.openai.com/v1/responses")

    def fail(kwargs):
        raise openai.PermissionDeniedError("nope", response=httpx.Response(403, request=request), body=None)

    fake = FakeOpenAIClient(fail)

    with pytest.raises(ProviderAuthError):
        triage_candidate(_router(fake), "normal", CANDIDATE, START, END)
    assert len(fake.calls) == 1


def test_user_prompt_clamps_candidate_text():
    prompt = build_user_prompt(CANDIDATE, "high", START, END)

    assert '"budget_tier": "high"' in prompt
    assert '"title": "New benchmark result"' in prompt
    assert "x" * 4000 in prompt
    assert "x" * 4001 not in prompt
    assert '"window_start": "2024-06-15T00:00:00.000Z"' in prompt


@pytest.mark.parametrize(
    "payload",
    [
        {"aha_score": "high", "reason": "r", "is_relevant": True, "is_novel": True, "should_deep_summarize": False},
        {"aha_score": 50, "reason": "", "is_relevant": True, "is_novel": True, "should_deep_summarize": False},
        {"aha_score": 50, "reason": "r", "is_relevant": "yes", "is_novel": True, "should_deep_summarize": False},
    ],
)
def test_normalize_rejects_bad_fields(payload):
    with pytest.raises(ProviderParseError):
        normalize_triage_output(payload)
