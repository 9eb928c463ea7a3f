from __future__ import annotations

import json
import logging
import math
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..errors import ValidationError
from ..models import (
    FEEDBACK_ACTIONS,
    FEEDBACK_DISLIKE,
    FEEDBACK_LIKE,
    FEEDBACK_SAVE,
    ContentItemEmbedding,
    FeedbackEvent,
    TopicPreferenceProfile,
)
from ..schemas import PreferenceProfile
from ..time_utils import ensure_aware, utcnow

logger = logging.getLogger(__name__)

DEFAULT_ALPHA = 0.2
ZERO_NORM_EPSILON = 1e-12


def normalize_vector(vector: list[float]) -> list[float]:
    norm = math.sqrt(sum(v * v for v in vector))
    if norm == 0:
        return list(vector)
    return [v / norm for v in vector]


def cosine_similarity(v1: list[float], v2: list[float]) -> float:
    if not v1 or not v2 or len(v1) != len(v2):
        return 0.0
    numerator = sum(a * b for a, b in zip(v1, v2, strict=True))
    denom1 = math.sqrt(sum(a * a for a in v1))
    denom2 = math.sqrt(sum(b * b for b in v2))
    if denom1 == 0 or denom2 == 0:
        return 0.0
    return numerator / (denom1 * denom2)


def ema_step(current: list[float] | None, action: str, embedding: list[float], alpha: float) -> list[float]:
    """One signed EMA update of a unit profile vector.

    ``like`` and ``save`` move toward the item, ``dislike`` moves away. An
    empty profile starts from the zero vector; a dimension change replaces
    the profile with the new item direction. An update that cancels the
    profile out keeps the previous vector.
    """
    target = normalize_vector([float(v) for v in embedding])
    if not current or len(current) != len(target):
        base = [0.0] * len(target)
    else:
        base = current

    sign = -1.0 if action == FEEDBACK_DISLIKE else 1.0
    mixed = [(1.0 - alpha) * b + sign * alpha * t for b, t in zip(base, target, strict=True)]
    if math.sqrt(sum(v * v for v in mixed)) < ZERO_NORM_EPSILON:
        return list(base)
    return normalize_vector(mixed)


def _affects_profile(action: str) -> bool:
    return action in {FEEDBACK_LIKE, FEEDBACK_SAVE, FEEDBACK_DISLIKE}


def _load_vector(raw: str | None) -> list[float]:
    if not raw:
        return []
    return [float(v) for v in json.loads(raw)]


def _item_embedding(session: Session, content_item_id: int) -> list[float] | None:
    row = session.get(ContentItemEmbedding, content_item_id)
    if row is None:
        return None
    vector = _load_vector(row.vector_json)
    return vector or None


class PreferenceProfileStore:
    def __init__(self, alpha: float = DEFAULT_ALPHA) -> None:
        if not 0.0 < alpha <= 1.0:
            raise ValidationError(f"preference alpha must be in (0, 1], got {alpha}")
        self.alpha = alpha

    def get_profile(self, session: Session, user_id: int, topic_id: int) -> PreferenceProfile:
        row = session.get(TopicPreferenceProfile, (user_id, topic_id))
        if row is None:
            return PreferenceProfile(vector=[], sample_count=0, updated_at=None)
        return PreferenceProfile(
            vector=_load_vector(row.vector_json),
            sample_count=row.sample_count,
            updated_at=ensure_aware(row.updated_at),
        )

    def _get_or_create(self, session: Session, user_id: int, topic_id: int) -> TopicPreferenceProfile:
        row = session.get(TopicPreferenceProfile, (user_id, topic_id))
        if row is None:
            row = TopicPreferenceProfile(user_id=user_id, topic_id=topic_id, vector_json=None, sample_count=0)
            session.add(row)
        return row

    def apply_feedback(
        self,
        session: Session,
        user_id: int,
        topic_id: int,
        action: str,
        embedding: list[float] | None,
    ) -> PreferenceProfile:
        if action not in FEEDBACK_ACTIONS:
            raise ValidationError(f"unknown feedback action: {action}")
        if not _affects_profile(action):
            return self.get_profile(session, user_id, topic_id)
        if not embedding:
            logger.info(
                "feedback item has no embedding; profile update skipped",
                extra={"user_id": user_id, "topic_id": topic_id, "action": action},
            )
            return self.get_profile(session, user_id, topic_id)

        row = self._get_or_create(session, user_id, topic_id)
        vector = ema_step(_load_vector(row.vector_json), action, embedding, self.alpha)
        row.vector_json = json.dumps(vector)
        row.sample_count = (row.sample_count or 0) + 1
        row.updated_at = utcnow()
        session.flush()
        return PreferenceProfile(vector=vector, sample_count=row.sample_count, updated_at=row.updated_at)

    def rebuild(self, session: Session, user_id: int, topic_id: int) -> PreferenceProfile:
        events = session.scalars(
            select(FeedbackEvent)
            .where(FeedbackEvent.user_id == user_id, FeedbackEvent.topic_id == topic_id)
            .order_by(FeedbackEvent.created_at.asc(), FeedbackEvent.id.asc())
        ).all()

        vector: list[float] = []
        sample_count = 0
        for event in events:
            if not _affects_profile(event.action):
                continue
            embedding = _item_embedding(session, event.content_item_id)
            if not embedding:
                continue
            vector = ema_step(vector, event.action, embedding, self.alpha)
            sample_count += 1

        row = self._get_or_create(session, user_id, topic_id)
        row.vector_json = json.dumps(vector) if vector else None
        row.sample_count = sample_count
        row.updated_at = utcnow()
        session.flush()
        logger.info(
            "preference profile rebuilt",
            extra={"user_id": user_id, "topic_id": topic_id, "events": len(events), "samples": sample_count},
        )
        return PreferenceProfile(vector=vector, sample_count=sample_count, updated_at=row.updated_at)

    def record_feedback(
        self,
        session: Session,
        user_id: int,
        topic_id: int,
        content_item_id: int,
        action: str,
        digest_id: int | None = None,
        created_at: datetime | None = None,
    ) -> FeedbackEvent:
        if action not in FEEDBACK_ACTIONS:
            raise ValidationError(f"unknown feedback action: {action}")
        event = FeedbackEvent(
            user_id=user_id,
            topic_id=topic_id,
            content_item_id=content_item_id,
            digest_id=digest_id,
            action=action,
            created_at=created_at or utcnow(),
        )
        session.add(event)
        session.flush()

        # Profile freshness is best-effort; the event row is already recorded.
        embedding = _item_embedding(session, content_item_id)
        self.apply_feedback(session, user_id, topic_id, action, embedding)
        return event

    def delete_feedback(self, session: Session, event_id: int) -> PreferenceProfile | None:
        event = session.get(FeedbackEvent, event_id)
        if event is None:
            return None
        user_id, topic_id = event.user_id, event.topic_id
        session.delete(event)
        session.flush()
        return self.rebuild(session, user_id, topic_id)
