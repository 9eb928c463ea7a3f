from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from ..errors import BudgetExceededError, ValidationError
from ..models import (
    BUDGET_PERIOD_DAILY,
    BUDGET_PERIOD_MONTHLY,
    CALL_STATUS_OK,
    BudgetReset,
    ProviderCall,
)
from ..schemas import CreditsStatus
from ..time_utils import ensure_aware, utc_day_start, utc_month_start, utcnow

logger = logging.getLogger(__name__)

WARNING_NONE = "none"
WARNING_APPROACHING = "approaching"
WARNING_CRITICAL = "critical"


def _sum_ok_credits(session: Session, user_id: int, since: datetime) -> float:
    total = session.scalar(
        select(func.coalesce(func.sum(ProviderCall.cost_estimate_credits), 0.0)).where(
            ProviderCall.user_id == user_id,
            ProviderCall.status == CALL_STATUS_OK,
            ProviderCall.started_at >= since,
        )
    )
    return float(total or 0.0)


def _sum_resets(session: Session, user_id: int, period: str, since: datetime) -> float:
    total = session.scalar(
        select(func.coalesce(func.sum(BudgetReset.credits_at_reset), 0.0)).where(
            BudgetReset.user_id == user_id,
            BudgetReset.period == period,
            BudgetReset.reset_at >= since,
        )
    )
    return float(total or 0.0)


def _warning_level(monthly_used: float, monthly_limit: float, daily_used: float, daily_limit: float | None) -> str:
    monthly_pct = monthly_used / monthly_limit if monthly_limit > 0 else 0.0
    daily_pct = daily_used / daily_limit if daily_limit else 0.0
    if monthly_pct >= 0.95 or daily_pct >= 0.95:
        return WARNING_CRITICAL
    if monthly_pct >= 0.8 or daily_pct >= 0.8:
        return WARNING_APPROACHING
    return WARNING_NONE


def compute_credits_status(
    session: Session,
    user_id: int,
    monthly_limit: float,
    daily_limit: float | None,
    window_end: datetime,
) -> CreditsStatus:
    """Aggregate spend for the UTC month and day that contain ``window_end``.

    Only successful provider calls count. Budget resets recorded in the same
    period are subtracted as offsets.
    """
    reference = ensure_aware(window_end)
    month_start = utc_month_start(reference)
    day_start = utc_day_start(reference)

    monthly_raw = _sum_ok_credits(session, user_id, month_start)
    monthly_offset = _sum_resets(session, user_id, BUDGET_PERIOD_MONTHLY, month_start)
    monthly_used = max(0.0, monthly_raw - monthly_offset)
    monthly_remaining = max(0.0, monthly_limit - monthly_used)

    daily_used: float | None = None
    daily_remaining: float | None = None
    raw_daily_used = 0.0
    if daily_limit is not None:
        daily_raw = _sum_ok_credits(session, user_id, day_start)
        daily_offset = _sum_resets(session, user_id, BUDGET_PERIOD_DAILY, day_start)
        raw_daily_used = max(0.0, daily_raw - daily_offset)
        daily_used = raw_daily_used
        daily_remaining = max(0.0, daily_limit - raw_daily_used)

    paid_calls_allowed = monthly_remaining > 0 and (daily_limit is None or (daily_remaining or 0.0) > 0)

    return CreditsStatus(
        monthly_used=monthly_used,
        monthly_limit=monthly_limit,
        monthly_remaining=monthly_remaining,
        daily_used=daily_used,
        daily_limit=daily_limit,
        daily_remaining=daily_remaining,
        paid_calls_allowed=paid_calls_allowed,
        warning_level=_warning_level(monthly_used, monthly_limit, raw_daily_used, daily_limit),
    )


def ensure_paid_calls_allowed(
    session: Session,
    user_id: int,
    monthly_limit: float,
    daily_limit: float | None,
    window_end: datetime | None = None,
) -> CreditsStatus:
    status = compute_credits_status(
        session,
        user_id=user_id,
        monthly_limit=monthly_limit,
        daily_limit=daily_limit,
        window_end=window_end or utcnow(),
    )
    if not status.paid_calls_allowed:
        raise BudgetExceededError(status)
    return status


def log_credits_warning(status: CreditsStatus) -> bool:
    if status.warning_level == WARNING_NONE:
        return False

    extra = {
        "monthly_used": status.monthly_used,
        "monthly_limit": status.monthly_limit,
        "daily_used": status.daily_used,
        "daily_limit": status.daily_limit,
    }
    if status.warning_level == WARNING_CRITICAL and not status.paid_calls_allowed:
        logger.warning("credits exhausted; paid calls disabled, falling back to heuristic-only digest", extra=extra)
    elif status.warning_level == WARNING_CRITICAL:
        logger.warning("credits critical (>=95%%)", extra=extra)
    else:
        logger.warning("credits approaching limit (>=80%%)", extra=extra)
    return True


def reset_budget(
    session: Session,
    user_id: int,
    period: str,
    monthly_limit: float,
    daily_limit: float | None,
    now: datetime | None = None,
) -> BudgetReset:
    if period not in {BUDGET_PERIOD_MONTHLY, BUDGET_PERIOD_DAILY}:
        raise ValidationError(f"unknown budget period: {period}")

    reference = ensure_aware(now) if now is not None else utcnow()
    status = compute_credits_status(
        session,
        user_id=user_id,
        monthly_limit=monthly_limit,
        daily_limit=daily_limit if daily_limit is not None else 0.0,
        window_end=reference,
    )
    offset = status.monthly_used if period == BUDGET_PERIOD_MONTHLY else (status.daily_used or 0.0)
    row = BudgetReset(user_id=user_id, period=period, credits_at_reset=offset, reset_at=reference)
    session.add(row)
    session.flush()
    logger.info("budget reset recorded", extra={"user_id": user_id, "period": period, "credits_reset": offset})
    return row


def estimate_credits(input_tokens: int, output_tokens: int, rates: tuple[float, float]) -> float:
    rate_in, rate_out = rates
    return (input_tokens / 1000.0) * rate_in + (output_tokens / 1000.0) * rate_out


def record_provider_call(
    session: Session,
    user_id: int,
    purpose: str,
    provider: str,
    model: str,
    status: str,
    input_tokens: int = 0,
    output_tokens: int = 0,
    credits: float = 0.0,
    started_at: datetime | None = None,
    ended_at: datetime | None = None,
    meta: dict[str, Any] | None = None,
    error: dict[str, Any] | None = None,
) -> ProviderCall:
    row = ProviderCall(
        user_id=user_id,
        purpose=purpose,
        provider=provider,
        model=model,
        status=status,
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        cost_estimate_credits=credits,
        started_at=started_at or utcnow(),
        ended_at=ended_at or utcnow(),
        meta_json=json.dumps(meta, ensure_ascii=False) if meta else None,
        error_json=json.dumps(error, ensure_ascii=False) if error else None,
    )
    session.add(row)
    return row
