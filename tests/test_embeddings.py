from __future__ import annotations

import json
import math
from datetime import datetime, timezone
from types import SimpleNamespace

import pytest

from aha_digest.models import ContentItemEmbedding
from aha_digest.services.embeddings import LOCAL_MODEL, Embedder, embedding_text

from conftest import seed_item, seed_source, seed_topic


class _FakeEmbeddings:
    def __init__(self, vector=None, error=None):
        self.vector = vector
        self.error = error
        self.calls = 0

    def create(self, model, input):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return SimpleNamespace(data=[SimpleNamespace(embedding=self.vector)])


def _client(**kwargs):
    return SimpleNamespace(embeddings=_FakeEmbeddings(**kwargs))


def test_local_embedding_is_deterministic_unit_vector():
    embedder = Embedder(api_key=None, base_url=None, embed_model="unused", vector_size=32)

    first = embedder.embed("new model release")
    second = embedder.embed("new model release")

    assert embedder.model_name == LOCAL_MODEL
    assert first == second
    assert len(first) == 32
    assert math.sqrt(sum(v * v for v in first)) == pytest.approx(1.0)
    assert first != embedder.embed("something else")


def test_remote_embedding_is_normalized():
    embedder = Embedder(api_key=None, base_url=None, embed_model="text-embedding-3-small", client=_client(vector=[3, 4]))

    assert embedder.embed("hello") == pytest.approx([0.6, 0.8])
    assert embedder.model_name == "text-embedding-3-small"


def test_failing_client_falls_back_to_local_hash():
    embedder = Embedder(
        api_key=None, base_url=None, embed_model="m", client=_client(error=RuntimeError("503")), vector_size=16
    )
    local = Embedder(api_key=None, base_url=None, embed_model="m", vector_size=16)

    assert embedder.embed("hello") == local.embed("hello")


def test_ensure_item_embedding_caches(session):
    _, topic = seed_topic(session)
    source = seed_source(session, topic)
    item = seed_item(session, source, "Title", datetime(2024, 6, 15, 1, tzinfo=timezone.utc))
    client = _client(vector=[1.0, 0.0])
    embedder = Embedder(api_key=None, base_url=None, embed_model="m", client=client)

    first = embedder.ensure_item_embedding(session, item.id, "Title\nbody")
    second = embedder.ensure_item_embedding(session, item.id, "Title\nbody")

    assert first == second == [1.0, 0.0]
    assert client.embeddings.calls == 1
    stored = session.get(ContentItemEmbedding, item.id)
    assert json.loads(stored.vector_json) == [1.0, 0.0]
    assert stored.model == "m"


def test_embedding_text_clamps_body():
    assert embedding_text("T", "x" * 50, max_chars=10) == "T\n" + "x" * 10
    assert embedding_text(None, None) == ""
