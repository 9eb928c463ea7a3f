from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path

import pytest

from aha_digest.config import get_settings
from aha_digest.db import dispose_engines, init_db, session_scope
from aha_digest.models import Cluster, ClusterItem, ContentItem, ContentItemEmbedding, Source, Topic, User

_SCRUBBED_ENV = (
    "OPENAI_API_KEY",
    "OPENAI_BASE_URL",
    "OPENAI_MODEL",
    "ANTHROPIC_API_KEY",
    "ANTHROPIC_BASE_URL",
    "ANTHROPIC_MODEL",
    "LLM_PROVIDER",
    "LLM_TRIAGE_PROVIDER",
    "CLAUDE_USE_SUBSCRIPTION",
    "CLAUDE_SUBSCRIPTION_TOKEN",
    "CODEX_USE_SUBSCRIPTION",
    "CODEX_SUBSCRIPTION_TOKEN",
    "MONTHLY_CREDITS",
    "DAILY_THROTTLE_CREDITS",
    "LLM_CREDITS_PER_1K_INPUT_TOKENS",
    "LLM_CREDITS_PER_1K_OUTPUT_TOKENS",
    "DIGEST_POLICY",
    "TRIAGE_CONCURRENCY",
    "SOURCE_TYPE_WEIGHTS_JSON",
    "DIGEST_MAX_ITEMS",
    "DIGEST_CANDIDATE_POOL",
    "DIGEST_TRIAGE_MAX_CALLS_HARD_CAP",
    "DIGEST_DEEP_SUMMARY_MAX_CALLS_HARD_CAP",
    "DEEP_SUMMARY_REASONING_EFFORT",
    "DEEP_SUMMARY_MAX_OUTPUT_TOKENS",
    "MANUAL_SUMMARY_MAX_INPUT_CHARS",
    "PREFERENCE_EMA_ALPHA",
    "TRIAGE_REASONING_EFFORT",
)


@pytest.fixture
def isolated_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
    db_path = tmp_path / "aha_digest_test.db"
    env_path = tmp_path / ".env"
    monkeypatch.setenv("AHA_DIGEST_DB_URL", f"sqlite:///{db_path}")
    monkeypatch.setenv("AHA_DIGEST_ENV_FILE", str(env_path))
    monkeypatch.setenv("CODEX_CREDENTIALS_FILE", str(tmp_path / "codex_auth.json"))
    monkeypatch.chdir(tmp_path)
    for name in _SCRUBBED_ENV:
        monkeypatch.delenv(name, raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
    dispose_engines()


@pytest.fixture
def session(isolated_env):
    settings = get_settings()
    init_db(settings)
    with session_scope(settings) as db_session:
        yield db_session


def seed_topic(session, name: str = "ai", viewing_profile: str | None = None, decay_hours: int | None = None):
    user = session.query(User).order_by(User.id.asc()).first()
    if user is None:
        user = User(email="reader@example.com")
        session.add(user)
        session.flush()
    topic = Topic(user_id=user.id, name=name, viewing_profile=viewing_profile, decay_hours=decay_hours)
    session.add(topic)
    session.flush()
    return user, topic


def seed_source(session, topic: Topic, source_type: str = "rss", name: str = "feed", weight: float | None = None):
    source = Source(user_id=topic.user_id, topic_id=topic.id, source_type=source_type, name=name, weight=weight)
    session.add(source)
    session.flush()
    return source


def seed_item(
    session,
    source: Source,
    title: str | None,
    published_at: datetime | None,
    body_text: str | None = "body",
    metadata: dict | None = None,
    fetched_at: datetime | None = None,
    embedding: list[float] | None = None,
    deleted_at: datetime | None = None,
):
    item = ContentItem(
        user_id=source.user_id,
        source_id=source.id,
        source_type=source.source_type,
        title=title,
        body_text=body_text,
        canonical_url=f"https://example.com/{(title or 'untitled').replace(' ', '-')}",
        published_at=published_at,
        metadata_json=json.dumps(metadata) if metadata else None,
        deleted_at=deleted_at,
    )
    if fetched_at or published_at:
        item.fetched_at = fetched_at or published_at
    session.add(item)
    session.flush()
    if embedding is not None:
        session.add(ContentItemEmbedding(content_item_id=item.id, vector_json=json.dumps(embedding), model="test"))
        session.flush()
    return item


def seed_cluster(session, representative: ContentItem, members: list[ContentItem]):
    cluster = Cluster(user_id=representative.user_id, representative_content_item_id=representative.id)
    session.add(cluster)
    session.flush()
    for member in members:
        session.add(ClusterItem(cluster_id=cluster.id, content_item_id=member.id))
    session.flush()
    return cluster
