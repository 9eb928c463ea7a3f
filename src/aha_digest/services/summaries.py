from __future__ import annotations

import json
import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any

from sqlalchemy.orm import Session

from ..config import Settings
from ..errors import DigestError, ProviderParseError, ValidationError, classify_provider_error, error_kind
from ..models import CALL_STATUS_ERROR, CALL_STATUS_OK
from ..schemas import CandidateRow, LlmRequest, SummaryResult, SummarySection
from ..time_utils import to_iso, utcnow
from .credits import ensure_paid_calls_allowed, estimate_credits, record_provider_call
from .llm_normalize import parse_structured
from .llm_router import PURPOSE_SUMMARIZE, TIER_NORMAL, TIERS, Router
from .triage import clamp_text

logger = logging.getLogger(__name__)

DEEP_SUMMARY_PROMPT_ID = "deep_summary_v2"
MANUAL_SUMMARY_PROMPT_ID = "manual_summary_v3"
CALL_PURPOSE_DEEP_SUMMARY = "deep_summary"
CALL_PURPOSE_MANUAL_SUMMARY = "manual_summary"

MAX_TITLE_CHARS = 240
MAX_DEEP_BODY_CHARS = 8000
MAX_BULLETS = 20
MAX_SECTIONS = 6
MAX_SECTION_ITEMS = 10
DEFAULT_SECTIONS = ("Why It Matters", "Risks & Caveats", "Suggested Follow-ups")
MAX_OUTPUT_TOKENS_BY_EFFORT = {"none": 700, "low": 1200, "medium": 2500, "high": 5000}

SUMMARY_JSON_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "schema_version": {"type": "string"},
        "prompt_id": {"type": "string"},
        "one_liner": {"type": "string"},
        "bullets": {"type": "array", "items": {"type": "string"}},
        "discussion_highlights": {"type": "array", "items": {"type": "string"}},
        "sections": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {"title": {"type": "string"}, "items": {"type": "array", "items": {"type": "string"}}},
                "required": ["title", "items"],
            },
        },
    },
    "required": ["one_liner", "bullets", "sections"],
}


def max_output_tokens_for(effort: str | None, override: int | None = None) -> int:
    if override:
        return override
    return MAX_OUTPUT_TOKENS_BY_EFFORT.get(effort or "none", MAX_OUTPUT_TOKENS_BY_EFFORT["none"])


def build_system_prompt(prompt_id: str, provider: str, model: str, is_retry: bool) -> str:
    retry_note = (
        "The previous response was invalid. Fix it and return ONLY the JSON object."
        if is_retry
        else "Return ONLY the JSON object."
    )
    kind = "deep summaries" if prompt_id == DEEP_SUMMARY_PROMPT_ID else "content summaries"
    defaults = ", ".join(f'"{title}"' for title in DEFAULT_SECTIONS)
    return (
        f"You are a strict JSON generator for {kind}.\n"
        f"{retry_note}\n"
        "Output must match this schema (no extra keys, no markdown):\n"
        "{\n"
        f'  "schema_version": "{prompt_id}",\n'
        f'  "prompt_id": "{prompt_id}",\n'
        f'  "provider": "{provider}",\n'
        f'  "model": "{model}",\n'
        '  "one_liner": "One sentence summary.",\n'
        '  "bullets": ["Key point 1", "Key point 2"],\n'
        '  "discussion_highlights": ["Notable comment 1", "Notable comment 2"],\n'
        '  "sections": [\n'
        '    { "title": "Section Title", "items": ["Point 1", "Point 2"] }\n'
        "  ]\n"
        "}\n\n"
        "Rules:\n"
        "- one_liner: A single sentence capturing the essence.\n"
        "- bullets: 2-5 key factual points from the content.\n"
        "- discussion_highlights: Only include if the content has comments or discussion.\n"
        "- sections: 2-4 analysis sections.\n"
        f"Use these default sections: {defaults}.\n"
        "Be concise and factual."
    )


def build_deep_user_prompt(candidate: CandidateRow, tier: str, window_start: datetime, window_end: datetime) -> str:
    payload = {
        "budget_tier": tier,
        "window_start": to_iso(window_start),
        "window_end": to_iso(window_end),
        "candidate": {
            "id": candidate.candidate_id,
            "source_type": candidate.source_type,
            "source_name": candidate.source_name,
            "title": clamp_text(candidate.title, MAX_TITLE_CHARS),
            "body_text": clamp_text(candidate.body_text, MAX_DEEP_BODY_CHARS),
            "primary_url": candidate.canonical_url,
            "author": candidate.author,
            "published_at": to_iso(candidate.published_at) if candidate.published_at else None,
        },
    }
    return f"Input JSON:\n{json.dumps(payload, ensure_ascii=False)}"


def build_manual_user_prompt(
    text: str,
    tier: str,
    max_input_chars: int,
    title: str | None = None,
    author: str | None = None,
    url: str | None = None,
    source_type: str | None = None,
) -> str:
    payload = {
        "budget_tier": tier,
        "metadata": {
            "title": clamp_text(title, MAX_TITLE_CHARS),
            "author": author,
            "url": url,
            "source_type": source_type,
        },
        "pasted_content": clamp_text(text, max_input_chars),
    }
    return f"Input JSON:\n{json.dumps(payload, ensure_ascii=False)}"


def _string_list(value: Any, limit: int) -> list[str] | None:
    if not isinstance(value, list):
        return None
    out: list[str] = []
    for entry in value:
        if isinstance(entry, str) and entry.strip():
            out.append(entry.strip())
            if len(out) >= limit:
                break
    return out


def _sections(value: Any) -> list[SummarySection]:
    if not isinstance(value, list):
        return []
    out: list[SummarySection] = []
    for entry in value:
        if not isinstance(entry, dict):
            continue
        title = entry.get("title")
        items = _string_list(entry.get("items"), MAX_SECTION_ITEMS)
        if not isinstance(title, str) or not title.strip() or not items:
            continue
        out.append(SummarySection(title=title.strip(), items=tuple(items)))
        if len(out) >= MAX_SECTIONS:
            break
    return out


def normalize_summary_output(payload: dict[str, Any], prompt_id: str) -> dict[str, Any]:
    for key in ("schema_version", "prompt_id"):
        value = payload.get(key)
        if value is not None and value != prompt_id:
            raise ProviderParseError(f"{key} must be {prompt_id}")
    one_liner = payload.get("one_liner")
    if not isinstance(one_liner, str) or not one_liner.strip():
        raise ProviderParseError("one_liner must be a non-empty string")
    bullets = _string_list(payload.get("bullets"), MAX_BULLETS)
    if bullets is None:
        raise ProviderParseError("bullets must be a list of strings")
    sections = _sections(payload.get("sections"))
    if not sections:
        raise ProviderParseError("sections must hold at least one titled section with items")
    return {
        "one_liner": one_liner.strip(),
        "bullets": tuple(bullets),
        "discussion_highlights": tuple(_string_list(payload.get("discussion_highlights"), MAX_BULLETS) or ()),
        "sections": tuple(sections),
    }


def _summarize(
    router: Router,
    tier: str,
    prompt_id: str,
    user_prompt: str,
    label: str,
    reasoning_effort: str | None,
    max_output_tokens: int | None,
) -> SummaryResult:
    routed = router.route(PURPOSE_SUMMARIZE, tier)
    input_tokens = 0
    output_tokens = 0
    last_error: ProviderParseError | None = None
    for attempt in range(2):
        request = LlmRequest(
            system=build_system_prompt(prompt_id, routed.provider, routed.model, is_retry=attempt > 0),
            user=user_prompt,
            max_output_tokens=max_output_tokens_for(reasoning_effort, max_output_tokens),
            reasoning_effort=reasoning_effort,
        )
        response = routed.call(request)
        input_tokens += response.input_tokens
        output_tokens += response.output_tokens
        try:
            normalized = normalize_summary_output(parse_structured(response.text, SUMMARY_JSON_SCHEMA), prompt_id)
        except ProviderParseError as exc:
            last_error = exc
            logger.info(
                "summary output invalid",
                extra={"prompt_id": prompt_id, "label": label, "attempt": attempt + 1, "error": str(exc)},
            )
            continue

        return SummaryResult(
            prompt_id=prompt_id,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            provider=response.provider,
            model=response.model,
            endpoint=response.endpoint,
            credits=estimate_credits(input_tokens, output_tokens, router.settings.credit_rates(routed.provider)),
            **normalized,
        )

    error = ProviderParseError(f"summary output invalid after retry: {last_error}")
    error.input_tokens = input_tokens
    error.output_tokens = output_tokens
    raise error


def deep_summarize_candidate(
    router: Router,
    tier: str,
    candidate: CandidateRow,
    window_start: datetime,
    window_end: datetime,
    reasoning_effort: str | None = None,
    max_output_tokens: int | None = None,
) -> SummaryResult:
    """Write a structured deep summary for one selected digest candidate."""
    return _summarize(
        router,
        tier,
        DEEP_SUMMARY_PROMPT_ID,
        build_deep_user_prompt(candidate, tier, window_start, window_end),
        candidate.candidate_id,
        reasoning_effort,
        max_output_tokens,
    )


def _record_summary_call(
    session: Session,
    user_id: int,
    purpose: str,
    provider: str,
    model: str,
    started_at: datetime,
    meta: dict[str, Any],
    summary: SummaryResult | None = None,
    failure: BaseException | None = None,
) -> None:
    if summary is not None:
        record_provider_call(
            session,
            user_id=user_id,
            purpose=purpose,
            provider=summary.provider,
            model=summary.model,
            status=CALL_STATUS_OK,
            input_tokens=summary.input_tokens,
            output_tokens=summary.output_tokens,
            credits=summary.credits,
            started_at=started_at,
            meta=meta,
        )
        return
    record_provider_call(
        session,
        user_id=user_id,
        purpose=purpose,
        provider=provider,
        model=model,
        status=CALL_STATUS_ERROR,
        input_tokens=int(getattr(failure, "input_tokens", 0) or 0),
        output_tokens=int(getattr(failure, "output_tokens", 0) or 0),
        started_at=started_at,
        meta=meta,
        error={"kind": error_kind(failure), "message": str(failure)},
    )


def summarize_candidates(
    session: Session,
    router: Router,
    settings: Settings,
    user_id: int,
    tier: str,
    candidates: list[CandidateRow],
    window_start: datetime,
    window_end: datetime,
    limit: int,
    remaining_budget: Callable[[float], float | None] | None = None,
) -> tuple[dict[str, SummaryResult], float]:
    """Deep-summarize candidates in order until ``limit`` summaries are written.

    Returns the summaries by candidate id and the credits they cost. A failed
    call is recorded and skipped; the credit budget is checked before each call.
    """
    summaries: dict[str, SummaryResult] = {}
    spent = 0.0
    if limit <= 0 or not candidates:
        return summaries, spent
    routed = router.route(PURPOSE_SUMMARIZE, tier)

    for candidate in candidates:
        if len(summaries) >= limit:
            break
        if remaining_budget is not None:
            remaining = remaining_budget(spent)
            if remaining is not None and remaining <= 0:
                logger.warning(
                    "credit budget exhausted; skipping remaining deep summaries",
                    extra={"summarized": len(summaries), "credits_used": spent},
                )
                break

        started_at = utcnow()
        meta = {"candidate_id": candidate.candidate_id, "window_end": to_iso(window_end)}
        try:
            summary = deep_summarize_candidate(
                router,
                tier,
                candidate,
                window_start,
                window_end,
                reasoning_effort=settings.deep_summary_reasoning_effort,
                max_output_tokens=settings.deep_summary_max_output_tokens,
            )
        except Exception as exc:  # noqa: BLE001
            failure = exc if isinstance(exc, DigestError) else classify_provider_error(exc)
            _record_summary_call(
                session,
                user_id,
                CALL_PURPOSE_DEEP_SUMMARY,
                routed.provider,
                routed.model,
                started_at,
                meta,
                failure=failure,
            )
            logger.warning(
                "deep summary failed",
                extra={"candidate_id": candidate.candidate_id, "error_kind": error_kind(failure)},
            )
            continue

        summaries[candidate.candidate_id] = summary
        spent += summary.credits
        _record_summary_call(
            session, user_id, CALL_PURPOSE_DEEP_SUMMARY, routed.provider, routed.model, started_at, meta, summary
        )
    return summaries, spent


def summarize_text(
    session: Session,
    router: Router,
    settings: Settings,
    user_id: int,
    text: str,
    title: str | None = None,
    author: str | None = None,
    url: str | None = None,
    source_type: str | None = None,
    tier: str = TIER_NORMAL,
) -> SummaryResult:
    """Summarize pasted text on demand.

    The credit budget is checked before the paid call and raises
    ``BudgetExceededError`` when it is spent. The call is recorded either way;
    the caller commits.
    """
    if not text or not text.strip():
        raise ValidationError("text to summarize is empty")
    if tier not in TIERS:
        raise ValidationError(f"unknown tier: {tier}")
    if settings.monthly_credits is not None:
        ensure_paid_calls_allowed(
            session,
            user_id=user_id,
            monthly_limit=settings.monthly_credits,
            daily_limit=settings.daily_throttle_credits,
        )

    routed = router.route(PURPOSE_SUMMARIZE, tier)
    started_at = utcnow()
    meta = {"title": clamp_text(title, MAX_TITLE_CHARS), "url": url, "source_type": source_type}
    user_prompt = build_manual_user_prompt(
        text,
        tier,
        settings.manual_summary_max_input_chars,
        title=title,
        author=author,
        url=url,
        source_type=source_type,
    )
    try:
        summary = _summarize(
            router,
            tier,
            MANUAL_SUMMARY_PROMPT_ID,
            user_prompt,
            url or "pasted text",
            settings.deep_summary_reasoning_effort,
            settings.deep_summary_max_output_tokens,
        )
    except Exception as exc:  # noqa: BLE001
        failure = exc if isinstance(exc, DigestError) else classify_provider_error(exc)
        _record_summary_call(
            session, user_id, CALL_PURPOSE_MANUAL_SUMMARY, routed.provider, routed.model, started_at, meta,
            failure=failure,
        )
        if failure is exc:
            raise
        raise failure from exc

    _record_summary_call(
        session, user_id, CALL_PURPOSE_MANUAL_SUMMARY, routed.provider, routed.model, started_at, meta, summary
    )
    logger.info(
        "manual summary complete",
        extra={"user_id": user_id, "provider": summary.provider, "credits": summary.credits},
    )
    return summary
