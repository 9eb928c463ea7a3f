from __future__ import annotations

import json
from datetime import datetime
from typing import Any

from sqlalchemy import exists, func, select
from sqlalchemy.orm import Session

from ..errors import ValidationError
from ..models import Cluster, ClusterItem, ContentItem, Source
from ..schemas import CandidateRow
from ..time_utils import ensure_aware, parse_iso

KIND_CLUSTER = "cluster"
KIND_ITEM = "item"


def cluster_candidate_id(cluster_id: int) -> str:
    return f"{KIND_CLUSTER}:{cluster_id}"


def item_candidate_id(content_item_id: int) -> str:
    return f"{KIND_ITEM}:{content_item_id}"


def _effective_at():
    return func.coalesce(ContentItem.published_at, ContentItem.fetched_at)


def _parse_metadata(raw: str | None) -> dict[str, Any]:
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return {}
    return parsed if isinstance(parsed, dict) else {}


def _window_filters(user_id: int, topic_id: int, window_start: datetime, window_end: datetime) -> list:
    effective_at = _effective_at()
    return [
        ContentItem.user_id == user_id,
        Source.user_id == user_id,
        Source.topic_id == topic_id,
        Source.is_enabled.is_(True),
        ContentItem.deleted_at.is_(None),
        ContentItem.duplicate_of_content_item_id.is_(None),
        effective_at >= window_start,
        effective_at < window_end,
    ]


def _row_from_item(
    kind: str,
    candidate_id: str,
    candidate_at: datetime,
    item: ContentItem,
    source: Source,
    cluster_id: int | None = None,
) -> CandidateRow:
    return CandidateRow(
        kind=kind,
        candidate_id=candidate_id,
        candidate_at=candidate_at,
        representative_content_item_id=item.id,
        cluster_id=cluster_id,
        source_id=source.id,
        source_type=source.source_type,
        source_name=source.name,
        title=item.title,
        body_text=item.body_text,
        canonical_url=item.canonical_url,
        author=item.author,
        published_at=ensure_aware(item.published_at),
        metadata=_parse_metadata(item.metadata_json),
    )


def _as_datetime(value: datetime | str) -> datetime:
    # Aggregates over coalesce() can come back as text on SQLite.
    if isinstance(value, str):
        return parse_iso(value)
    return ensure_aware(value)


def _has_title(row: CandidateRow) -> bool:
    return bool(row.title and row.title.strip())


def sort_candidates(rows: list[CandidateRow]) -> list[CandidateRow]:
    return sorted(
        rows,
        key=lambda row: (
            0 if _has_title(row) else 1,
            -ensure_aware(row.candidate_at).timestamp(),
            row.candidate_id,
        ),
    )


def query_candidates(
    session: Session,
    user_id: int,
    topic_id: int,
    window_start: datetime,
    window_end: datetime,
    limit: int,
) -> list[CandidateRow]:
    """Return one row per cluster and one per unclustered item in the window.

    Cluster rows carry the representative item's content and the latest
    in-window member timestamp. Read-only.
    """
    if limit <= 0:
        return []
    start = ensure_aware(window_start)
    end = ensure_aware(window_end)
    if end <= start:
        raise ValidationError("window_end must be after window_start")

    filters = _window_filters(user_id, topic_id, start, end)

    cluster_stmt = (
        select(ClusterItem.cluster_id, func.max(_effective_at()))
        .join(ContentItem, ContentItem.id == ClusterItem.content_item_id)
        .join(Source, Source.id == ContentItem.source_id)
        .where(*filters)
        .group_by(ClusterItem.cluster_id)
    )
    latest_by_cluster = {int(cluster_id): latest for cluster_id, latest in session.execute(cluster_stmt).all()}

    rows: list[CandidateRow] = []
    if latest_by_cluster:
        rep_stmt = (
            select(Cluster, ContentItem, Source)
            .join(ContentItem, ContentItem.id == Cluster.representative_content_item_id)
            .join(Source, Source.id == ContentItem.source_id)
            .where(
                Cluster.id.in_(list(latest_by_cluster)),
                Cluster.user_id == user_id,
                ContentItem.deleted_at.is_(None),
            )
        )
        for cluster, rep, source in session.execute(rep_stmt).all():
            rows.append(
                _row_from_item(
                    kind=KIND_CLUSTER,
                    candidate_id=cluster_candidate_id(cluster.id),
                    candidate_at=_as_datetime(latest_by_cluster[cluster.id]),
                    item=rep,
                    source=source,
                    cluster_id=cluster.id,
                )
            )

    singleton_stmt = (
        select(ContentItem, Source)
        .join(Source, Source.id == ContentItem.source_id)
        .where(*filters, ~exists().where(ClusterItem.content_item_id == ContentItem.id))
    )
    for item, source in session.execute(singleton_stmt).all():
        rows.append(
            _row_from_item(
                kind=KIND_ITEM,
                candidate_id=item_candidate_id(item.id),
                candidate_at=ensure_aware(item.published_at or item.fetched_at),
                item=item,
                source=source,
            )
        )

    return sort_candidates(rows)[:limit]
