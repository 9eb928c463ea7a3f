from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

import pytest

from aha_digest.errors import ValidationError
from aha_digest.models import FeedbackEvent
from aha_digest.services.preference_profiles import PreferenceProfileStore, cosine_similarity, ema_step

from conftest import seed_item, seed_source, seed_topic

T0 = datetime(2024, 6, 15, 9, tzinfo=timezone.utc)


def _setup(session):
    user, topic = seed_topic(session)
    source = seed_source(session, topic)
    items = [
        seed_item(session, source, "a", T0, embedding=[1.0, 0.0, 0.0]),
        seed_item(session, source, "b", T0, embedding=[0.0, 1.0, 0.0]),
        seed_item(session, source, "c", T0, embedding=[0.0, 0.0, 1.0]),
        seed_item(session, source, "d", T0, embedding=[0.6, 0.8, 0.0]),
    ]
    return user, topic, items


def test_ema_step_moves_toward_likes_and_away_from_dislikes():
    liked = ema_step([], "like", [1.0, 0.0], alpha=0.2)
    disliked = ema_step(liked, "dislike", [0.0, 1.0], alpha=0.2)

    assert liked == [1.0, 0.0]
    assert disliked[1] < 0
    assert cosine_similarity(disliked, [1.0, 0.0]) > 0.9


def test_rebuild_after_delete_matches_fresh_replay(session):
    user, topic, items = _setup(session)
    store = PreferenceProfileStore(alpha=0.3)
    actions = ["like", "save", "dislike", "like"]
    events = [
        store.record_feedback(session, user.id, topic.id, item.id, action, created_at=T0 + timedelta(minutes=i))
        for i, (item, action) in enumerate(zip(items, actions, strict=True))
    ]

    rebuilt = store.delete_feedback(session, events[1].id)

    expected: list[float] = []
    for item, action in [(items[0], "like"), (items[2], "dislike"), (items[3], "like")]:
        embedding = json.loads(item.embedding.vector_json)
        expected = ema_step(expected, action, embedding, alpha=0.3)

    assert rebuilt is not None
    assert rebuilt.sample_count == 3
    assert rebuilt.vector == pytest.approx(expected)
    assert store.get_profile(session, user.id, topic.id).vector == pytest.approx(expected)


def test_incremental_updates_match_rebuild(session):
    user, topic, items = _setup(session)
    store = PreferenceProfileStore(alpha=0.25)
    for i, (item, action) in enumerate(zip(items, ["like", "dislike", "save", "like"], strict=True)):
        store.record_feedback(session, user.id, topic.id, item.id, action, created_at=T0 + timedelta(minutes=i))
    incremental = store.get_profile(session, user.id, topic.id)

    rebuilt = store.rebuild(session, user.id, topic.id)

    assert rebuilt.sample_count == incremental.sample_count == 4
    assert rebuilt.vector == pytest.approx(incremental.vector)


def test_skip_records_event_without_touching_profile(session):
    user, topic, items = _setup(session)
    store = PreferenceProfileStore()

    store.record_feedback(session, user.id, topic.id, items[0].id, "skip")

    assert session.query(FeedbackEvent).count() == 1
    assert store.get_profile(session, user.id, topic.id).sample_count == 0


def test_missing_embedding_is_skipped(session):
    user, topic = seed_topic(session)
    source = seed_source(session, topic)
    bare = seed_item(session, source, "no vector", T0)
    store = PreferenceProfileStore()

    store.record_feedback(session, user.id, topic.id, bare.id, "like")
    profile = store.rebuild(session, user.id, topic.id)

    assert profile.vector == []
    assert profile.sample_count == 0


def test_unknown_action_rejected(session):
    user, topic, items = _setup(session)

    with pytest.raises(ValidationError):
        PreferenceProfileStore().record_feedback(session, user.id, topic.id, items[0].id, "love")


def test_delete_unknown_event_returns_none(session):
    assert PreferenceProfileStore().delete_feedback(session, 999) is None


def test_dislike_that_cancels_profile_keeps_previous_vector():
    liked = ema_step([], "like", [1.0, 0.0], alpha=0.5)
    cancelled = ema_step(liked, "dislike", [1.0, 0.0], alpha=0.5)

    assert cancelled == [1.0, 0.0]
    assert sum(v * v for v in cancelled) == pytest.approx(1.0)
