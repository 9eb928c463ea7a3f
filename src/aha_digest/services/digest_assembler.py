from __future__ import annotations

import json
import logging
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import Settings
from ..errors import (
    KIND_BUDGET_EXCEEDED,
    KIND_STORAGE_FAILURE,
    DigestError,
    LlmError,
    StorageFailure,
    ValidationError,
    classify_provider_error,
    error_kind,
)
from ..models import (
    CALL_STATUS_ERROR,
    CALL_STATUS_OK,
    DIGEST_MODE_NORMAL,
    DIGEST_STATUS_COMPLETE,
    DIGEST_STATUS_FAILED,
    ContentItem,
    ContentItemEmbedding,
    Digest,
    DigestItem,
    Source,
    Topic,
)
from ..schemas import (
    AbtestRunResult,
    AbtestVariantConfig,
    CandidateRow,
    CreditsStatus,
    DigestItemView,
    DigestRunResult,
    DigestWindow,
    ScoreDebugRecord,
    SummaryResult,
    TriageResult,
)
from ..time_utils import ensure_aware, parse_iso, to_iso
from .abtest import build_variant_router, run_abtest_job
from .candidates import query_candidates
from .credits import (
    WARNING_APPROACHING,
    WARNING_CRITICAL,
    compute_credits_status,
    log_credits_warning,
    record_provider_call,
)
from .digest_plan import DigestPlan, allocate_triage_calls, apply_budget_scale, compile_digest_plan
from .embeddings import Embedder, embedding_text
from .job_queue import JOB_RUN_ABTEST, JOB_RUN_WINDOW, Job
from .llm_router import PURPOSE_TRIAGE, TIER_LOW, TIERS, Router, create_router
from .preference_profiles import PreferenceProfileStore, cosine_similarity
from .scoring import (
    PreferenceCurve,
    ScoreInputs,
    ScoringWeights,
    decay_hours_for,
    effective_source_weight,
    heuristic_inputs,
    heuristic_score,
    novelty01,
    rank_scored,
    score_candidate,
    signal01,
)
from .summaries import summarize_candidates
from .triage import triage_candidate

logger = logging.getLogger(__name__)

NOVELTY_HISTORY_LIMIT = 500
BUDGET_SCALE_BY_WARNING = {WARNING_APPROACHING: 0.5, WARNING_CRITICAL: 0.25}


@dataclass(slots=True)
class DigestRuntime:
    settings: Settings
    router: Router
    embedder: Embedder
    profiles: PreferenceProfileStore
    router_factory: Callable[[AbtestVariantConfig], Router]

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        router: Router | None = None,
        embedder: Embedder | None = None,
        router_factory: Callable[[AbtestVariantConfig], Router] | None = None,
    ) -> DigestRuntime:
        return cls(
            settings=settings,
            router=router or create_router(settings),
            embedder=embedder
            or Embedder(
                api_key=settings.openai_api_key,
                base_url=settings.openai_base_url,
                embed_model=settings.embed_model,
                timeout_seconds=settings.embed_timeout_seconds,
            ),
            profiles=PreferenceProfileStore(alpha=settings.preference_ema_alpha),
            router_factory=router_factory or (lambda variant: build_variant_router(settings, variant)),
        )


@dataclass(slots=True)
class _TriageOutcome:
    results: dict[str, TriageResult]
    failures: dict[str, str]
    credits_used: float


def _validate_window(window_start: datetime, window_end: datetime, mode: str) -> DigestWindow:
    if window_start is None or window_end is None:
        raise ValidationError("window_start and window_end are required")
    start = ensure_aware(window_start)
    end = ensure_aware(window_end)
    if end <= start:
        raise ValidationError("window_end must be after window_start")
    if mode not in TIERS:
        raise ValidationError(f"unknown digest mode: {mode}")
    return DigestWindow(window_start=start, window_end=end, mode=mode)


def _remaining_budget(status: CreditsStatus | None, spent: float) -> float | None:
    if status is None:
        return None
    remaining = status.monthly_remaining - spent
    if status.daily_remaining is not None:
        remaining = min(remaining, status.daily_remaining - spent)
    return remaining


def _novelty_history(
    session: Session,
    user_id: int,
    topic_id: int,
    window_start: datetime,
    lookback_days: int,
) -> list[list[float]]:
    lower = window_start - timedelta(days=lookback_days)
    effective_at = func.coalesce(ContentItem.published_at, ContentItem.fetched_at)
    rows = session.scalars(
        select(ContentItemEmbedding.vector_json)
        .join(ContentItem, ContentItem.id == ContentItemEmbedding.content_item_id)
        .join(Source, Source.id == ContentItem.source_id)
        .where(
            ContentItem.user_id == user_id,
            Source.topic_id == topic_id,
            ContentItem.deleted_at.is_(None),
            effective_at >= lower,
            effective_at < window_start,
        )
        .order_by(effective_at.desc())
        .limit(NOVELTY_HISTORY_LIMIT)
    ).all()
    return [[float(v) for v in json.loads(raw)] for raw in rows]


def _max_similarity(vector: list[float], history: list[list[float]]) -> float:
    best = 0.0
    for other in history:
        best = max(best, cosine_similarity(vector, other))
    return min(1.0, best)


def _triage_all(
    session: Session,
    runtime: DigestRuntime,
    user_id: int,
    tier: str,
    window: DigestWindow,
    candidates: list[CandidateRow],
    credits_status: CreditsStatus | None,
) -> _TriageOutcome:
    outcome = _TriageOutcome(results={}, failures={}, credits_used=0.0)
    settings = runtime.settings
    try:
        routed = runtime.router.route(PURPOSE_TRIAGE, tier)
    except LlmError as exc:
        logger.warning("triage unavailable; scoring without AI", extra={"error_kind": exc.kind, "error": str(exc)})
        outcome.failures = {c.candidate_id: exc.kind for c in candidates}
        return outcome

    def run_one(candidate: CandidateRow) -> TriageResult:
        return triage_candidate(
            runtime.router,
            tier,
            candidate,
            window.window_start,
            window.window_end,
            reasoning_effort=settings.triage_reasoning_effort,
            max_output_tokens=settings.triage_max_output_tokens,
        )

    batch_size = max(1, settings.triage_concurrency)
    with ThreadPoolExecutor(max_workers=batch_size, thread_name_prefix="triage") as executor:
        for offset in range(0, len(candidates), batch_size):
            remaining = _remaining_budget(credits_status, outcome.credits_used)
            if remaining is not None and remaining <= 0:
                skipped = candidates[offset:]
                for candidate in skipped:
                    outcome.failures[candidate.candidate_id] = KIND_BUDGET_EXCEEDED
                logger.warning(
                    "credit budget exhausted mid-run; remaining candidates scored without AI",
                    extra={"skipped": len(skipped), "credits_used": outcome.credits_used},
                )
                break

            batch = candidates[offset : offset + batch_size]
            futures = [(candidate, executor.submit(run_one, candidate)) for candidate in batch]
            for candidate, future in futures:
                meta = {"candidate_id": candidate.candidate_id, "window_end": to_iso(window.window_end)}
                try:
                    triage = future.result()
                except Exception as exc:  # noqa: BLE001
                    failure = exc if isinstance(exc, DigestError) else classify_provider_error(exc)
                    kind = error_kind(failure)
                    outcome.failures[candidate.candidate_id] = kind
                    record_provider_call(
                        session,
                        user_id=user_id,
                        purpose=PURPOSE_TRIAGE,
                        provider=routed.provider,
                        model=routed.model,
                        status=CALL_STATUS_ERROR,
                        input_tokens=int(getattr(exc, "input_tokens", 0) or 0),
                        output_tokens=int(getattr(exc, "output_tokens", 0) or 0),
                        meta=meta,
                        error={"kind": kind, "message": str(failure)},
                    )
                    continue

                outcome.results[candidate.candidate_id] = triage
                outcome.credits_used += triage.credits
                record_provider_call(
                    session,
                    user_id=user_id,
                    purpose=PURPOSE_TRIAGE,
                    provider=triage.provider,
                    model=triage.model,
                    status=CALL_STATUS_OK,
                    input_tokens=triage.input_tokens,
                    output_tokens=triage.output_tokens,
                    credits=triage.credits,
                    meta=meta,
                )
    return outcome


def _score_all(
    session: Session,
    runtime: DigestRuntime,
    user_id: int,
    topic: Topic,
    window: DigestWindow,
    candidates: list[CandidateRow],
    heuristics: dict[str, tuple[float, float]],
    outcome: _TriageOutcome,
) -> list[tuple[CandidateRow, ScoreDebugRecord]]:
    settings = runtime.settings
    profile = runtime.profiles.get_profile(session, user_id, topic.id)
    curve = PreferenceCurve(
        sample_count=profile.sample_count,
        max_strength=settings.preference_max_strength,
        saturation_samples=settings.preference_saturation_samples,
    )
    history = _novelty_history(session, user_id, topic.id, window.window_start, settings.novelty_lookback_days)
    source_weights = dict(
        session.execute(select(Source.id, Source.weight).where(Source.topic_id == topic.id)).all()
    )
    weights = ScoringWeights.from_settings(settings)
    decay_hours = decay_hours_for(topic.viewing_profile, topic.decay_hours)

    scored: list[tuple[CandidateRow, ScoreDebugRecord]] = []
    for candidate in candidates:
        vector = runtime.embedder.ensure_item_embedding(
            session,
            candidate.representative_content_item_id,
            embedding_text(candidate.title, candidate.body_text),
        )
        recency, engagement = heuristics[candidate.candidate_id]
        triage = outcome.results.get(candidate.candidate_id)
        inputs = ScoreInputs(
            candidate_id=candidate.candidate_id,
            ai_score=triage.ai_score if triage else None,
            recency01=recency,
            engagement01=engagement,
            preference_score=cosine_similarity(vector, profile.vector) if profile.vector else 0.0,
            novelty01=novelty01(_max_similarity(vector, history)),
            signal01=signal01(candidate.metadata),
            triage_error_kind=None if triage else outcome.failures.get(candidate.candidate_id),
        )
        record = score_candidate(
            inputs,
            weights,
            curve,
            source_weight=effective_source_weight(
                candidate.source_type, source_weights.get(candidate.source_id), settings.source_type_weights
            ),
            decay_hours=decay_hours,
            candidate_at=candidate.candidate_at,
            now=window.window_end,
        )
        scored.append((candidate, record))
    return rank_scored(scored)


def _find_digest(session: Session, user_id: int, topic_id: int, window: DigestWindow, mode: str) -> Digest | None:
    return session.scalar(
        select(Digest).where(
            Digest.user_id == user_id,
            Digest.topic_id == topic_id,
            Digest.window_start == window.window_start,
            Digest.window_end == window.window_end,
            Digest.mode == mode,
        )
    )


def _upsert_digest(session: Session, user_id: int, topic_id: int, window: DigestWindow, mode: str) -> Digest:
    digest = _find_digest(session, user_id, topic_id, window, mode)
    if digest is None:
        digest = Digest(
            user_id=user_id,
            topic_id=topic_id,
            window_start=window.window_start,
            window_end=window.window_end,
            mode=mode,
        )
        session.add(digest)
    return digest


def _enabled_source_count(session: Session, topic_id: int) -> int:
    count = session.scalar(
        select(func.count(Source.id)).where(Source.topic_id == topic_id, Source.is_enabled.is_(True))
    )
    return int(count or 0)


def _plan_for_run(
    settings: Settings,
    topic: Topic,
    tier: str,
    enabled_sources: int,
    credits_status: CreditsStatus | None,
) -> DigestPlan:
    plan = compile_digest_plan(
        tier,
        topic.digest_depth,
        enabled_sources,
        triage_max_calls_cap=settings.digest_triage_max_calls_cap,
        deep_summary_max_calls_cap=settings.digest_deep_summary_max_calls_cap,
    )
    if credits_status is not None:
        scale = BUDGET_SCALE_BY_WARNING.get(credits_status.warning_level)
        if scale is not None:
            plan = apply_budget_scale(plan, scale)
    return plan


def _triage_order(
    candidates: list[CandidateRow],
    heuristics: dict[str, tuple[float, float]],
    max_calls: int,
) -> list[CandidateRow]:
    scores = {cid: heuristic_score(recency, engagement) for cid, (recency, engagement) in heuristics.items()}
    allocation = allocate_triage_calls(candidates, scores, max_calls)
    by_id = {candidate.candidate_id: candidate for candidate in candidates}
    return [by_id[cid] for cid in allocation.order]


def _summarize_selected(
    session: Session,
    runtime: DigestRuntime,
    user_id: int,
    tier: str,
    window: DigestWindow,
    selected: list[tuple[CandidateRow, ScoreDebugRecord]],
    outcome: _TriageOutcome,
    plan: DigestPlan,
    credits_status: CreditsStatus | None,
) -> dict[str, SummaryResult]:
    if tier == TIER_LOW or plan.deep_summary_max_calls <= 0:
        return {}
    wanted = []
    for candidate, _record in selected:
        triage = outcome.results.get(candidate.candidate_id)
        if triage is not None and triage.should_deep_summarize:
            wanted.append(candidate)
    if not wanted:
        return {}

    spent_before = outcome.credits_used
    try:
        summaries, spent = summarize_candidates(
            session,
            runtime.router,
            runtime.settings,
            user_id,
            tier,
            wanted,
            window.window_start,
            window.window_end,
            limit=plan.deep_summary_max_calls,
            remaining_budget=lambda extra: _remaining_budget(credits_status, spent_before + extra),
        )
    except LlmError as exc:
        logger.warning("deep summaries unavailable", extra={"error_kind": exc.kind, "error": str(exc)})
        return {}
    outcome.credits_used += spent
    return summaries


def _persist_digest(
    session: Session,
    user_id: int,
    topic_id: int,
    window: DigestWindow,
    mode: str,
    result: DigestRunResult,
    selected: list[tuple[CandidateRow, ScoreDebugRecord]],
    outcome: _TriageOutcome,
    summaries: dict[str, SummaryResult],
) -> Digest:
    try:
        digest = _upsert_digest(session, user_id, topic_id, window, mode)
        digest.status = DIGEST_STATUS_COMPLETE
        digest.tier = result.tier
        digest.credits_used = outcome.credits_used
        digest.candidate_count = result.candidates
        digest.triaged_count = result.triaged
        digest.triage_failures = result.triage_failures
        digest.error_kind = None
        digest.error_message = None
        digest.items.clear()
        session.flush()
        for rank, (candidate, record) in enumerate(selected, start=1):
            triage = outcome.results.get(candidate.candidate_id)
            summary = summaries.get(candidate.candidate_id)
            digest.items.append(
                DigestItem(
                    rank=rank,
                    kind=candidate.kind,
                    candidate_id=candidate.candidate_id,
                    cluster_id=candidate.cluster_id,
                    content_item_id=candidate.representative_content_item_id,
                    candidate_at=candidate.candidate_at,
                    score=record.final_score,
                    triage_json=json.dumps(triage.to_dict(), ensure_ascii=False) if triage else None,
                    score_debug_json=json.dumps(record.to_dict(), ensure_ascii=False),
                    summary_json=json.dumps(summary.to_dict(), ensure_ascii=False) if summary else None,
                )
            )
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        raise StorageFailure(str(exc)) from exc
    return digest


def _mark_digest_failed(
    session: Session,
    user_id: int,
    topic_id: int,
    window: DigestWindow,
    mode: str,
    kind: str,
    message: str,
    owned_digest_id: int | None = None,
) -> int | None:
    """Record a failed run on its digest row.

    A row for the same key that this run did not start from belongs to another
    run and is left untouched.
    """
    try:
        existing = _find_digest(session, user_id, topic_id, window, mode)
        if existing is not None and existing.id != owned_digest_id:
            logger.warning(
                "digest owned by another run; failure not recorded on it",
                extra={"digest_id": existing.id, "user_id": user_id, "topic_id": topic_id},
            )
            return None
        digest = _upsert_digest(session, user_id, topic_id, window, mode)
        digest.status = DIGEST_STATUS_FAILED
        digest.error_kind = kind
        digest.error_message = message[:2000]
        session.commit()
        return digest.id
    except SQLAlchemyError as exc:
        session.rollback()
        logger.warning(
            "could not persist failed digest status",
            extra={"user_id": user_id, "topic_id": topic_id, "error": str(exc)},
        )
        return None


def _storage_failed(
    session: Session,
    result: DigestRunResult,
    user_id: int,
    topic_id: int,
    window: DigestWindow,
    mode: str,
    owned_digest_id: int | None,
    exc: Exception,
) -> DigestRunResult:
    cause = exc.__cause__ if isinstance(exc, StorageFailure) else exc
    if isinstance(cause, IntegrityError):
        winner = _find_digest(session, user_id, topic_id, window, mode)
        if winner is not None and winner.id != owned_digest_id:
            logger.info(
                "digest already written by a concurrent run",
                extra={"digest_id": winner.id, "user_id": user_id, "topic_id": topic_id, "status": winner.status},
            )
            result.status = winner.status
            result.digest_id = winner.id
            result.items = len(winner.items)
            return result

    logger.warning("digest storage failure", extra={"user_id": user_id, "topic_id": topic_id, "error": str(exc)})
    result.status = DIGEST_STATUS_FAILED
    result.error_kind = KIND_STORAGE_FAILURE
    result.error = str(exc)
    result.digest_id = _mark_digest_failed(
        session, user_id, topic_id, window, mode, KIND_STORAGE_FAILURE, str(exc), owned_digest_id
    )
    return result


def run_digest_for_window(
    session: Session,
    runtime: DigestRuntime,
    user_id: int,
    topic_id: int,
    window_start: datetime,
    window_end: datetime,
    mode: str | None = None,
) -> DigestRunResult:
    """Build and persist one digest for a (user, topic, window).

    Expected failures come back as a ``failed`` result with an error kind;
    per-candidate triage failures only degrade that candidate's score. When a
    concurrent run for the same key commits first, its digest is returned.
    """
    requested_mode = mode or DIGEST_MODE_NORMAL
    try:
        window = _validate_window(window_start, window_end, requested_mode)
    except ValidationError as exc:
        return DigestRunResult(
            status=DIGEST_STATUS_FAILED,
            window=None,
            mode=requested_mode,
            tier=requested_mode,
            error_kind=exc.kind,
            error=str(exc),
        )

    settings = runtime.settings
    result = DigestRunResult(status=DIGEST_STATUS_COMPLETE, window=window, mode=requested_mode, tier=requested_mode)
    owned_digest_id: int | None = None
    try:
        topic = session.get(Topic, topic_id)
        if topic is None or topic.user_id != user_id:
            raise ValidationError(f"topic {topic_id} does not belong to user {user_id}")
        prior = _find_digest(session, user_id, topic_id, window, requested_mode)
        owned_digest_id = prior.id if prior is not None else None

        triage_allowed = True
        if settings.monthly_credits is not None:
            result.credits_status = compute_credits_status(
                session,
                user_id=user_id,
                monthly_limit=settings.monthly_credits,
                daily_limit=settings.daily_throttle_credits,
                window_end=window.window_end,
            )
            log_credits_warning(result.credits_status)
            if not result.credits_status.paid_calls_allowed:
                triage_allowed = False
                result.tier = TIER_LOW

        plan = _plan_for_run(
            settings, topic, result.tier, _enabled_source_count(session, topic_id), result.credits_status
        )
        result.plan = plan.to_dict()

        candidates = query_candidates(
            session,
            user_id,
            topic_id,
            window.window_start,
            window.window_end,
            min(settings.digest_candidate_pool, plan.candidate_pool_max),
        )
        result.candidates = len(candidates)
        heuristics = heuristic_inputs(candidates, window.window_start, window.window_end)

        if triage_allowed and candidates:
            to_triage = _triage_order(candidates, heuristics, plan.triage_max_calls)
            outcome = _triage_all(session, runtime, user_id, result.tier, window, to_triage, result.credits_status)
        else:
            failures = {} if triage_allowed else {c.candidate_id: KIND_BUDGET_EXCEEDED for c in candidates}
            outcome = _TriageOutcome(results={}, failures=failures, credits_used=0.0)
        result.triaged = len(outcome.results)
        result.triage_failures = sum(1 for kind in outcome.failures.values() if kind != KIND_BUDGET_EXCEEDED)

        ranked = _score_all(session, runtime, user_id, topic, window, candidates, heuristics, outcome)
        selected = ranked[: min(settings.digest_max_items, plan.digest_max_items)]

        summaries = _summarize_selected(
            session, runtime, user_id, result.tier, window, selected, outcome, plan, result.credits_status
        )
        result.summarized = len(summaries)
        result.credits_used = outcome.credits_used

        digest = _persist_digest(
            session, user_id, topic_id, window, requested_mode, result, selected, outcome, summaries
        )
        result.digest_id = digest.id
        result.items = len(selected)
        logger.info(
            "digest complete",
            extra={
                "digest_id": digest.id,
                "user_id": user_id,
                "topic_id": topic_id,
                "window_start": to_iso(window.window_start),
                "window_end": to_iso(window.window_end),
                "tier": result.tier,
                "items": result.items,
                "triaged": result.triaged,
                "triage_failures": result.triage_failures,
                "summarized": result.summarized,
                "credits_used": result.credits_used,
            },
        )
        return result
    except ValidationError as exc:
        session.rollback()
        result.status = DIGEST_STATUS_FAILED
        result.error_kind = exc.kind
        result.error = str(exc)
        return result
    except (StorageFailure, SQLAlchemyError) as exc:
        session.rollback()
        return _storage_failed(session, result, user_id, topic_id, window, requested_mode, owned_digest_id, exc)


def process_job(session: Session, runtime: DigestRuntime, job: Job) -> DigestRunResult | AbtestRunResult:
    payload = job.payload
    if job.name == JOB_RUN_WINDOW:
        return run_digest_for_window(
            session,
            runtime,
            user_id=int(payload["user_id"]),
            topic_id=int(payload["topic_id"]),
            window_start=parse_iso(payload["window_start"]),
            window_end=parse_iso(payload["window_end"]),
            mode=payload.get("mode"),
        )
    if job.name == JOB_RUN_ABTEST:
        return run_abtest_job(session, runtime.router_factory, int(payload["run_id"]))
    raise ValidationError(f"unknown job: {job.name}")


def load_digest_items(session: Session, digest_id: int) -> list[DigestItemView]:
    rows = session.execute(
        select(DigestItem, ContentItem)
        .join(ContentItem, ContentItem.id == DigestItem.content_item_id, isouter=True)
        .where(DigestItem.digest_id == digest_id)
        .order_by(DigestItem.rank.asc())
    ).all()
    views: list[DigestItemView] = []
    for item, content in rows:
        triage = json.loads(item.triage_json) if item.triage_json else None
        summary = json.loads(item.summary_json) if item.summary_json else None
        views.append(
            DigestItemView(
                rank=item.rank,
                kind=item.kind,
                candidate_id=item.candidate_id,
                title=(content.title if content is not None else None) or "",
                url=(content.canonical_url if content is not None else None) or "",
                score=item.score,
                ai_score=triage.get("ai_score") if triage else None,
                triage_failed=triage is None,
                one_liner=summary.get("one_liner") if summary else None,
            )
        )
    return views
