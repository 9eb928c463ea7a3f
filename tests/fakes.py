from __future__ import annotations

import json
import threading
from collections.abc import Callable
from types import SimpleNamespace
from typing import Any


def triage_json(aha_score: float = 70, **overrides: Any) -> str:
    payload = {
        "schema_version": "triage_v1",
        "prompt_id": "triage_v1",
        "aha_score": aha_score,
        "reason": "Concrete, new result with numbers.",
        "is_relevant": True,
        "is_novel": True,
        "categories": ["research"],
        "should_deep_summarize": False,
    }
    payload.update(overrides)
    return json.dumps(payload)


def summary_json(prompt_id: str = "deep_summary_v2", **overrides: Any) -> str:
    payload = {
        "schema_version": prompt_id,
        "prompt_id": prompt_id,
        "one_liner": "A new open model matches the frontier on coding.",
        "bullets": ["Weights are public.", "Benchmarks include SWE-bench."],
        "sections": [
            {"title": "Why It Matters", "items": ["Cheaper self-hosting."]},
            {"title": "Risks & Caveats", "items": ["Benchmarks are self-reported."]},
        ],
    }
    payload.update(overrides)
    return json.dumps(payload)


def system_prompt(kwargs: dict[str, Any]) -> str:
    if "input" in kwargs:
        return kwargs["input"][0]["content"]
    return kwargs["system"]


class FakeOpenAIClient:
    """Stands in for ``openai.OpenAI``; ``reply`` receives the request kwargs."""

    def __init__(self, reply: Callable[[dict[str, Any]], Any] | str | None = None) -> None:
        self.calls: list[dict[str, Any]] = []
        self._reply = reply if reply is not None else triage_json()
        self._lock = threading.Lock()
        self.responses = SimpleNamespace(create=self._create)

    def _create(self, **kwargs: Any) -> Any:
        with self._lock:
            self.calls.append(kwargs)
        reply = self._reply(kwargs) if callable(self._reply) else self._reply
        if isinstance(reply, str):
            return {"output_text": reply, "usage": {"input_tokens": 120, "output_tokens": 30}}
        return reply


class FakeAnthropicClient:
    def __init__(self, reply: Callable[[dict[str, Any]], Any] | str | None = None) -> None:
        self.calls: list[dict[str, Any]] = []
        self._reply = reply if reply is not None else triage_json()
        self._lock = threading.Lock()
        self.messages = SimpleNamespace(create=self._create)

    def _create(self, **kwargs: Any) -> Any:
        with self._lock:
            self.calls.append(kwargs)
        reply = self._reply(kwargs) if callable(self._reply) else self._reply
        if isinstance(reply, str):
            return {
                "content": [{"type": "text", "text": reply}],
                "usage": {"input_tokens": 100, "output_tokens": 20},
            }
        return reply


def candidate_from_prompt(kwargs: dict[str, Any]) -> str:
    """Return the candidate id embedded in a triage user prompt."""
    if "input" in kwargs:
        user = kwargs["input"][-1]["content"]
    else:
        user = kwargs["messages"][-1]["content"]
    payload = json.loads(user.split("\n", 1)[1])
    return payload["candidate"]["id"]
