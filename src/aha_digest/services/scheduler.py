from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..config import POLICY_FIXED_3X_DAILY, POLICY_SINCE_LAST_RUN, Settings, parse_digest_policy
from ..models import DIGEST_MODE_NORMAL, Digest, Topic, User
from ..schemas import DigestWindow
from ..time_utils import ensure_aware, fixed_bucket_bounds, to_iso
from .job_queue import JOB_RUN_WINDOW, JobQueue, make_job_id, scope_hash

logger = logging.getLogger(__name__)

MIN_WINDOW_SECONDS = 60
DEFAULT_LOOKBACK_HOURS = 24


@dataclass(slots=True, frozen=True)
class SchedulerConfig:
    policy: str = POLICY_FIXED_3X_DAILY
    min_window_seconds: int = MIN_WINDOW_SECONDS
    lookback_hours: int = DEFAULT_LOOKBACK_HOURS


@dataclass(slots=True, frozen=True)
class ScheduleTarget:
    user_id: int
    topic_id: int


def parse_scheduler_config(settings: Settings) -> SchedulerConfig:
    return SchedulerConfig(policy=parse_digest_policy(settings.digest_policy))


def get_schedulable_topics(session: Session) -> list[ScheduleTarget]:
    # Single-tenant: the first user account owns every schedulable topic.
    user_id = session.scalar(select(User.id).order_by(User.created_at.asc(), User.id.asc()).limit(1))
    if user_id is None:
        return []
    topic_ids = session.scalars(select(Topic.id).where(Topic.user_id == user_id).order_by(Topic.id.asc())).all()
    return [ScheduleTarget(user_id=user_id, topic_id=topic_id) for topic_id in topic_ids]


def _policy_for_topic(session: Session, topic_id: int, config: SchedulerConfig) -> str:
    override = session.scalar(select(Topic.digest_policy).where(Topic.id == topic_id))
    if override:
        return parse_digest_policy(override)
    return parse_digest_policy(config.policy)


def _fixed_window(session: Session, user_id: int, topic_id: int, now: datetime) -> list[DigestWindow]:
    start, end = fixed_bucket_bounds(now)
    existing = session.scalar(
        select(Digest.id).where(
            Digest.user_id == user_id,
            Digest.topic_id == topic_id,
            Digest.window_start == start,
            Digest.window_end == end,
            Digest.mode == DIGEST_MODE_NORMAL,
        )
    )
    if existing is not None:
        return []
    return [DigestWindow(window_start=start, window_end=end, mode=DIGEST_MODE_NORMAL)]


def _since_last_run_window(
    session: Session,
    user_id: int,
    topic_id: int,
    config: SchedulerConfig,
    now: datetime,
) -> list[DigestWindow]:
    last_end = session.scalar(
        select(Digest.window_end)
        .where(Digest.user_id == user_id, Digest.topic_id == topic_id)
        .order_by(Digest.window_end.desc())
        .limit(1)
    )
    start = ensure_aware(last_end) if last_end is not None else now - timedelta(hours=config.lookback_hours)
    if (now - start).total_seconds() < config.min_window_seconds:
        return []
    return [DigestWindow(window_start=start, window_end=now, mode=None)]


def generate_due_windows(
    session: Session,
    user_id: int,
    topic_id: int,
    config: SchedulerConfig,
    now: datetime,
) -> list[DigestWindow]:
    reference = ensure_aware(now)
    policy = _policy_for_topic(session, topic_id, config)
    if policy == POLICY_SINCE_LAST_RUN:
        return _since_last_run_window(session, user_id, topic_id, config, reference)
    return _fixed_window(session, user_id, topic_id, reference)


def schedule_due_windows(
    session: Session,
    queue: JobQueue,
    targets: list[ScheduleTarget],
    config: SchedulerConfig,
    now: datetime,
) -> list[tuple[ScheduleTarget, DigestWindow]]:
    """Enqueue one ``run_window`` job per due window across ``targets``."""
    enqueued: list[tuple[ScheduleTarget, DigestWindow]] = []
    for target in targets:
        for window in generate_due_windows(session, target.user_id, target.topic_id, config, now):
            scope = scope_hash(target.user_id, target.topic_id, window.mode or "")
            job_id = make_job_id(JOB_RUN_WINDOW, scope, window.window_end)
            payload = {
                "user_id": target.user_id,
                "topic_id": target.topic_id,
                "window_start": to_iso(window.window_start),
                "window_end": to_iso(window.window_end),
                "mode": window.mode,
            }
            if queue.enqueue(JOB_RUN_WINDOW, payload, job_id):
                enqueued.append((target, window))
                logger.info("window enqueued", extra={"job_id": job_id, **payload})
    return enqueued
