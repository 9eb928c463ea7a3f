from __future__ import annotations

import hashlib
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

from ..time_utils import to_epoch_ms

logger = logging.getLogger(__name__)

JOB_RUN_WINDOW = "run_window"
JOB_RUN_ABTEST = "run_abtest"


@dataclass(slots=True)
class Job:
    name: str
    job_id: str
    payload: dict[str, Any] = field(default_factory=dict)


class JobQueue(Protocol):
    def enqueue(self, job_name: str, payload: dict[str, Any], job_id: str) -> bool:
        ...


def scope_hash(*parts: Any) -> str:
    raw = "|".join(str(part) for part in parts)
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:16]


def make_job_id(job_name: str, scope: str, timestamp: datetime) -> str:
    return f"{job_name}:{scope}:{to_epoch_ms(timestamp)}"


class InMemoryJobQueue:
    """Reference queue. Drops any job whose id was already enqueued."""

    def __init__(self) -> None:
        self._pending: deque[Job] = deque()
        self._seen: set[str] = set()

    def enqueue(self, job_name: str, payload: dict[str, Any], job_id: str) -> bool:
        if job_id in self._seen:
            logger.info("duplicate job dropped", extra={"job_id": job_id})
            return False
        self._seen.add(job_id)
        self._pending.append(Job(name=job_name, job_id=job_id, payload=dict(payload)))
        return True

    def drain(self) -> list[Job]:
        jobs = list(self._pending)
        self._pending.clear()
        return jobs

    def __len__(self) -> int:
        return len(self._pending)
