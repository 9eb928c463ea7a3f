from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any

from ..errors import ProviderParseError
from ..schemas import CandidateRow, LlmRequest, TriageResult
from ..time_utils import to_iso
from .credits import estimate_credits
from .llm_normalize import parse_structured
from .llm_router import PURPOSE_TRIAGE, Router

logger = logging.getLogger(__name__)

PROMPT_ID = "triage_v1"
SCHEMA_VERSION = "triage_v1"
MAX_TITLE_CHARS = 240
MAX_BODY_CHARS = 4000

TRIAGE_JSON_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "schema_version": {"type": "string", "const": SCHEMA_VERSION},
        "prompt_id": {"type": "string", "const": PROMPT_ID},
        "aha_score": {"type": "number", "minimum": 0, "maximum": 100},
        "reason": {"type": "string"},
        "is_relevant": {"type": "boolean"},
        "is_novel": {"type": "boolean"},
        "categories": {"type": "array", "items": {"type": "string"}},
        "should_deep_summarize": {"type": "boolean"},
    },
    "required": ["aha_score", "reason", "is_relevant", "is_novel", "categories", "should_deep_summarize"],
}


def clamp_text(value: str | None, max_chars: int) -> str | None:
    if not value:
        return None
    trimmed = value.strip()
    if not trimmed:
        return None
    return trimmed[:max_chars]


def build_system_prompt(provider: str, model: str, is_retry: bool) -> str:
    retry_note = (
        "The previous response was invalid. Fix it and return ONLY the JSON object."
        if is_retry
        else "Return ONLY the JSON object."
    )
    return (
        "You are a strict JSON generator for content triage.\n"
        f"{retry_note}\n"
        "Output must match this schema (no extra keys, no markdown, no code fences):\n"
        "{\n"
        f'  "schema_version": "{SCHEMA_VERSION}",\n'
        f'  "prompt_id": "{PROMPT_ID}",\n'
        f'  "provider": "{provider}",\n'
        f'  "model": "{model}",\n'
        '  "aha_score": 0,\n'
        '  "reason": "Short explanation of why this is (or is not) high-signal.",\n'
        '  "is_relevant": true,\n'
        '  "is_novel": true,\n'
        '  "categories": ["topic1", "topic2"],\n'
        '  "should_deep_summarize": false\n'
        "}\n"
        "Aha score range: 0-100 (0=low-signal noise, 100=rare high-signal). "
        "Keep reason concise and topic-agnostic. Categories should be short, generic labels."
    )


def build_user_prompt(candidate: CandidateRow, tier: str, window_start: datetime, window_end: datetime) -> str:
    payload = {
        "budget_tier": tier,
        "window_start": to_iso(window_start),
        "window_end": to_iso(window_end),
        "candidate": {
            "id": candidate.candidate_id,
            "source_type": candidate.source_type,
            "source_name": candidate.source_name,
            "title": clamp_text(candidate.title, MAX_TITLE_CHARS),
            "body_text": clamp_text(candidate.body_text, MAX_BODY_CHARS),
            "primary_url": candidate.canonical_url,
            "author": candidate.author,
            "published_at": to_iso(candidate.published_at) if candidate.published_at else None,
        },
    }
    return f"Input JSON:\n{json.dumps(payload, ensure_ascii=False)}"


def _as_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str) and value.strip():
        try:
            return float(value)
        except ValueError:
            return None
    return None


def _normalize_categories(value: Any) -> tuple[str, ...]:
    if not isinstance(value, list):
        return ()
    return tuple(entry.strip() for entry in value if isinstance(entry, str) and entry.strip())


def normalize_triage_output(payload: dict[str, Any]) -> dict[str, Any]:
    aha = _as_number(payload.get("aha_score"))
    if aha is None or aha < 0 or aha > 100:
        raise ProviderParseError("aha_score must be a number in [0, 100]")
    reason = payload.get("reason")
    if not isinstance(reason, str) or not reason.strip():
        raise ProviderParseError("reason must be a non-empty string")
    flags = {}
    for key in ("is_relevant", "is_novel", "should_deep_summarize"):
        value = payload.get(key)
        if not isinstance(value, bool):
            raise ProviderParseError(f"{key} must be a boolean")
        flags[key] = value
    return {
        "aha_score": aha,
        "reason": reason.strip(),
        "categories": _normalize_categories(payload.get("categories")),
        **flags,
    }


def triage_candidate(
    router: Router,
    tier: str,
    candidate: CandidateRow,
    window_start: datetime,
    window_end: datetime,
    reasoning_effort: str | None = None,
    max_output_tokens: int | None = None,
) -> TriageResult:
    """Judge one candidate and return an immutable triage record.

    A schema violation gets exactly one retry. Every other provider error is
    raised to the caller unchanged.
    """
    routed = router.route(PURPOSE_TRIAGE, tier)
    user_prompt = build_user_prompt(candidate, tier, window_start, window_end)

    input_tokens = 0
    output_tokens = 0
    last_error: ProviderParseError | None = None
    for attempt in range(2):
        request = LlmRequest(
            system=build_system_prompt(routed.provider, routed.model, is_retry=attempt > 0),
            user=user_prompt,
            max_output_tokens=max_output_tokens,
            reasoning_effort=reasoning_effort,
        )
        response = routed.call(request)
        input_tokens += response.input_tokens
        output_tokens += response.output_tokens
        try:
            normalized = normalize_triage_output(parse_structured(response.text, TRIAGE_JSON_SCHEMA))
        except ProviderParseError as exc:
            last_error = exc
            logger.info(
                "triage output invalid",
                extra={"candidate_id": candidate.candidate_id, "attempt": attempt + 1, "error": str(exc)},
            )
            continue

        credits = estimate_credits(input_tokens, output_tokens, router.settings.credit_rates(routed.provider))
        return TriageResult(
            ai_score=normalized["aha_score"] / 100.0,
            aha_score=int(round(normalized["aha_score"])),
            is_relevant=normalized["is_relevant"],
            is_novel=normalized["is_novel"],
            should_deep_summarize=normalized["should_deep_summarize"],
            reason=normalized["reason"],
            categories=normalized["categories"],
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            provider=response.provider,
            model=response.model,
            endpoint=response.endpoint,
            credits=credits,
        )

    error = ProviderParseError(f"triage output invalid after retry: {last_error}")
    error.input_tokens = input_tokens
    error.output_tokens = output_tokens
    raise error
