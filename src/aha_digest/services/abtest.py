from __future__ import annotations

import json
import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import Settings
from ..errors import DigestError, ValidationError, classify_provider_error, error_kind
from ..models import (
    ABTEST_RESULT_ERROR,
    ABTEST_RESULT_OK,
    ABTEST_STATUS_COMPLETED,
    ABTEST_STATUS_FAILED,
    ABTEST_STATUS_PENDING,
    ABTEST_STATUS_RUNNING,
    CALL_STATUS_ERROR,
    CALL_STATUS_OK,
    AbtestItem,
    AbtestResult,
    AbtestRun,
    AbtestVariant,
)
from ..schemas import AbtestRunResult, AbtestVariantConfig, AbtestVariantSummary, LlmRuntimeConfig
from ..time_utils import ensure_aware, to_iso, utcnow
from .candidates import query_candidates
from .credits import record_provider_call
from .llm_router import TIER_NORMAL, Router, create_router
from .triage import triage_candidate

logger = logging.getLogger(__name__)

ABTEST_CALLS_PER_HOUR = 1000
DEFAULT_MAX_ITEMS = 50
PURPOSE_ABTEST_TRIAGE = "abtest_triage"

RouterFactory = Callable[[AbtestVariantConfig], Router]


def build_variant_router(
    settings: Settings,
    variant: AbtestVariantConfig,
    clients: dict[str, Any] | None = None,
) -> Router:
    config = LlmRuntimeConfig(
        provider=variant.provider,
        model=variant.model,
        reasoning_effort=variant.reasoning_effort or "none",
        max_output_tokens=variant.max_output_tokens,
        calls_per_hour=ABTEST_CALLS_PER_HOUR,
    )
    return create_router(settings, runtime_config=config, clients=clients)


def _variant_to_dict(variant: AbtestVariantConfig) -> dict[str, Any]:
    return {
        "name": variant.name,
        "provider": variant.provider,
        "model": variant.model,
        "reasoning_effort": variant.reasoning_effort,
        "max_output_tokens": variant.max_output_tokens,
        "order": variant.order,
    }


def variants_from_config(config_json: str | None) -> list[AbtestVariantConfig]:
    payload = json.loads(config_json or "{}")
    return [AbtestVariantConfig(**entry) for entry in payload.get("variants", [])]


def validate_variants(variants: list[AbtestVariantConfig]) -> None:
    if not variants:
        raise ValidationError("an A/B run needs at least one variant")
    names = [variant.name for variant in variants]
    if len(set(names)) != len(names):
        raise ValidationError("variant names must be unique")
    for variant in variants:
        if not variant.provider or not variant.model:
            raise ValidationError(f"variant {variant.name!r} needs a provider and a model")


def create_abtest_run(
    session: Session,
    user_id: int,
    topic_id: int,
    window_start: datetime,
    window_end: datetime,
    variants: list[AbtestVariantConfig],
    max_items: int = DEFAULT_MAX_ITEMS,
) -> AbtestRun:
    if ensure_aware(window_end) <= ensure_aware(window_start):
        raise ValidationError("window_end must be after window_start")
    validate_variants(variants)
    run = AbtestRun(
        user_id=user_id,
        topic_id=topic_id,
        window_start=ensure_aware(window_start),
        window_end=ensure_aware(window_end),
        status=ABTEST_STATUS_PENDING,
        config_json=json.dumps(
            {"variants": [_variant_to_dict(v) for v in variants], "max_items": max_items},
            ensure_ascii=False,
        ),
    )
    session.add(run)
    session.flush()
    return run


def _mark_failed(session: Session, run_id: int, message: str) -> None:
    try:
        run = session.get(AbtestRun, run_id)
        if run is None:
            return
        run.status = ABTEST_STATUS_FAILED
        run.error_message = message[:2000]
        run.completed_at = utcnow()
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        logger.warning("could not persist failed A/B status", extra={"run_id": run_id, "error": str(exc)})


def run_abtest_once(
    session: Session,
    router_factory: RouterFactory,
    run_id: int,
    user_id: int,
    topic_id: int,
    window_start: datetime,
    window_end: datetime,
    variants: list[AbtestVariantConfig],
    max_items: int = DEFAULT_MAX_ITEMS,
) -> AbtestRunResult:
    """Replay one frozen candidate set through every variant.

    Every (variant, item) pair gets exactly one result row. Calls are audited
    at zero credits and never consult the credit ledger.
    """
    result = AbtestRunResult(run_id=run_id, status=ABTEST_STATUS_RUNNING)
    try:
        validate_variants(variants)
        run = session.get(AbtestRun, run_id)
        if run is None:
            raise ValidationError(f"A/B run {run_id} not found")
        run.status = ABTEST_STATUS_RUNNING
        run.started_at = utcnow()
        session.commit()

        ordered = sorted(enumerate(variants), key=lambda pair: (pair[1].order, pair[0]))
        variant_rows: list[tuple[AbtestVariant, AbtestVariantConfig]] = []
        for position, (_, variant) in enumerate(ordered, start=1):
            row = AbtestVariant(
                run_id=run_id,
                name=variant.name,
                provider=variant.provider,
                model=variant.model,
                reasoning_effort=variant.reasoning_effort,
                max_output_tokens=variant.max_output_tokens,
                sort_order=position,
            )
            session.add(row)
            variant_rows.append((row, variant))

        candidates = query_candidates(session, user_id, topic_id, window_start, window_end, max_items)
        item_rows: list[AbtestItem] = []
        for candidate in candidates:
            row = AbtestItem(
                run_id=run_id,
                candidate_id=candidate.candidate_id,
                cluster_id=candidate.cluster_id,
                content_item_id=candidate.representative_content_item_id if candidate.cluster_id is None else None,
                representative_content_item_id=candidate.representative_content_item_id,
                source_id=candidate.source_id,
                source_type=candidate.source_type,
                source_name=candidate.source_name,
                title=candidate.title,
                url=candidate.canonical_url,
                author=candidate.author,
                published_at=candidate.published_at,
                body_text=candidate.body_text,
            )
            session.add(row)
            item_rows.append(row)
        session.commit()

        result.item_count = len(item_rows)
        result.variant_count = len(variant_rows)

        for variant_row, variant in variant_rows:
            router = router_factory(variant)
            for item_row, candidate in zip(item_rows, candidates, strict=True):
                meta = {
                    "abtest_run_id": run_id,
                    "variant_id": variant_row.id,
                    "variant": variant.name,
                    "abtest_item_id": item_row.id,
                    "candidate_id": candidate.candidate_id,
                }
                started_at = utcnow()
                try:
                    triage = triage_candidate(
                        router,
                        TIER_NORMAL,
                        candidate,
                        window_start,
                        window_end,
                        reasoning_effort=variant.reasoning_effort or "none",
                        max_output_tokens=variant.max_output_tokens,
                    )
                except Exception as exc:  # noqa: BLE001
                    failure = exc if isinstance(exc, DigestError) else classify_provider_error(exc)
                    input_tokens = int(getattr(exc, "input_tokens", 0) or 0)
                    output_tokens = int(getattr(exc, "output_tokens", 0) or 0)
                    error = {"kind": error_kind(failure), "message": str(failure)}
                    session.add(
                        AbtestResult(
                            abtest_item_id=item_row.id,
                            variant_id=variant_row.id,
                            status=ABTEST_RESULT_ERROR,
                            input_tokens=input_tokens,
                            output_tokens=output_tokens,
                            error_json=json.dumps(error, ensure_ascii=False),
                        )
                    )
                    record_provider_call(
                        session,
                        user_id=user_id,
                        purpose=PURPOSE_ABTEST_TRIAGE,
                        provider=variant.provider,
                        model=variant.model,
                        status=CALL_STATUS_ERROR,
                        input_tokens=input_tokens,
                        output_tokens=output_tokens,
                        credits=0.0,
                        started_at=started_at,
                        meta=meta,
                        error=error,
                    )
                    result.error_count += 1
                    result.result_count += 1
                    logger.info("A/B triage failed", extra={**meta, "error_kind": error["kind"]})
                    continue

                session.add(
                    AbtestResult(
                        abtest_item_id=item_row.id,
                        variant_id=variant_row.id,
                        status=ABTEST_RESULT_OK,
                        triage_json=json.dumps(triage.to_dict(), ensure_ascii=False),
                        input_tokens=triage.input_tokens,
                        output_tokens=triage.output_tokens,
                    )
                )
                record_provider_call(
                    session,
                    user_id=user_id,
                    purpose=PURPOSE_ABTEST_TRIAGE,
                    provider=triage.provider,
                    model=triage.model,
                    status=CALL_STATUS_OK,
                    input_tokens=triage.input_tokens,
                    output_tokens=triage.output_tokens,
                    credits=0.0,
                    started_at=started_at,
                    meta=meta,
                )
                result.result_count += 1
            session.commit()

        run = session.get(AbtestRun, run_id)
        run.status = ABTEST_STATUS_COMPLETED
        run.completed_at = utcnow()
        session.commit()
        result.status = ABTEST_STATUS_COMPLETED
        logger.info(
            "A/B run completed",
            extra={
                "run_id": run_id,
                "items": result.item_count,
                "variants": result.variant_count,
                "errors": result.error_count,
            },
        )
        return result
    except Exception as exc:  # noqa: BLE001
        session.rollback()
        logger.warning("A/B run failed", extra={"run_id": run_id, "error": str(exc)})
        _mark_failed(session, run_id, str(exc))
        result.status = ABTEST_STATUS_FAILED
        result.error = str(exc)
        return result


def run_abtest_job(session: Session, router_factory: RouterFactory, run_id: int) -> AbtestRunResult:
    run = session.get(AbtestRun, run_id)
    if run is None:
        return AbtestRunResult(run_id=run_id, status=ABTEST_STATUS_FAILED, error=f"A/B run {run_id} not found")
    config = json.loads(run.config_json or "{}")
    return run_abtest_once(
        session,
        router_factory,
        run_id=run.id,
        user_id=run.user_id,
        topic_id=run.topic_id,
        window_start=ensure_aware(run.window_start),
        window_end=ensure_aware(run.window_end),
        variants=variants_from_config(run.config_json),
        max_items=int(config.get("max_items") or DEFAULT_MAX_ITEMS),
    )


def summarize_abtest(session: Session, run_id: int) -> list[AbtestVariantSummary]:
    variants = session.scalars(
        select(AbtestVariant).where(AbtestVariant.run_id == run_id).order_by(AbtestVariant.sort_order.asc())
    ).all()
    summaries: list[AbtestVariantSummary] = []
    for variant in variants:
        rows = session.scalars(select(AbtestResult).where(AbtestResult.variant_id == variant.id)).all()
        scores: list[float] = []
        ok_count = 0
        for row in rows:
            if row.status != ABTEST_RESULT_OK:
                continue
            ok_count += 1
            payload = json.loads(row.triage_json or "{}")
            if isinstance(payload.get("ai_score"), (int, float)):
                scores.append(float(payload["ai_score"]))
        summaries.append(
            AbtestVariantSummary(
                name=variant.name,
                provider=variant.provider,
                model=variant.model,
                ok_count=ok_count,
                error_count=len(rows) - ok_count,
                mean_ai_score=sum(scores) / len(scores) if scores else None,
                input_tokens=sum(row.input_tokens for row in rows),
                output_tokens=sum(row.output_tokens for row in rows),
            )
        )
    return summaries


def describe_run(run: AbtestRun) -> dict[str, Any]:
    return {
        "run_id": run.id,
        "status": run.status,
        "window_start": to_iso(run.window_start),
        "window_end": to_iso(run.window_end),
        "started_at": to_iso(run.started_at) if run.started_at else None,
        "completed_at": to_iso(run.completed_at) if run.completed_at else None,
        "error": run.error_message,
    }
