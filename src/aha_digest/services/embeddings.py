from __future__ import annotations

import hashlib
import json
import logging

from openai import OpenAI
from sqlalchemy.orm import Session

from ..models import ContentItemEmbedding
from .preference_profiles import normalize_vector
from .timeouts import with_timeout

logger = logging.getLogger(__name__)

LOCAL_MODEL = "local-hash"


class Embedder:
    def __init__(
        self,
        api_key: str | None,
        base_url: str | None,
        embed_model: str,
        timeout_seconds: float = 30.0,
        client: OpenAI | None = None,
        vector_size: int = 64,
    ) -> None:
        self.embed_model = embed_model
        self.timeout_seconds = timeout_seconds
        self.vector_size = vector_size
        if client is not None:
            self.client = client
        elif api_key:
            self.client = OpenAI(api_key=api_key, base_url=base_url, max_retries=0)
        else:
            self.client = None

    @property
    def model_name(self) -> str:
        return self.embed_model if self.client is not None else LOCAL_MODEL

    def embed(self, text: str) -> list[float]:
        if self.client is not None:
            try:
                response = with_timeout(
                    lambda: self.client.embeddings.create(model=self.embed_model, input=text),
                    self.timeout_seconds,
                    label="embeddings",
                )
                embedding = response.data[0].embedding
                return normalize_vector([float(v) for v in embedding])
            except Exception as exc:  # noqa: BLE001
                logger.warning("embedding call failed; using local hash", extra={"error": str(exc)})
        return self._local_embedding(text)

    def _local_embedding(self, text: str) -> list[float]:
        digest = hashlib.sha256(text.encode("utf-8")).digest()
        raw = [((digest[i % len(digest)] / 255.0) * 2.0) - 1.0 for i in range(self.vector_size)]
        return normalize_vector(raw)

    def ensure_item_embedding(self, session: Session, content_item_id: int, text: str) -> list[float]:
        existing = session.get(ContentItemEmbedding, content_item_id)
        if existing is not None:
            return [float(v) for v in json.loads(existing.vector_json)]

        vector = self.embed(text)
        session.add(
            ContentItemEmbedding(
                content_item_id=content_item_id,
                vector_json=json.dumps(vector),
                model=self.model_name,
            )
        )
        session.flush()
        return vector


def embedding_text(title: str | None, body_text: str | None, max_chars: int = 2000) -> str:
    return f"{title or ''}\n{(body_text or '')[:max_chars]}".strip()
