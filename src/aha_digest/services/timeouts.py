from __future__ import annotations

from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import TypeVar

from ..errors import LlmTimeoutError

T = TypeVar("T")


def with_timeout(fn: Callable[[], T], timeout_seconds: float | None, label: str) -> T:
    """Run ``fn`` and give up after ``timeout_seconds``.

    The worker thread is abandoned, not cancelled; only the caller stops
    waiting. A non-positive timeout runs ``fn`` inline.
    """
    if timeout_seconds is None or timeout_seconds <= 0:
        return fn()

    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="llm-call")
    future = executor.submit(fn)
    try:
        return future.result(timeout=timeout_seconds)
    except FutureTimeoutError as exc:
        raise LlmTimeoutError(label=label, timeout_seconds=timeout_seconds) from exc
    finally:
        executor.shutdown(wait=False, cancel_futures=True)
