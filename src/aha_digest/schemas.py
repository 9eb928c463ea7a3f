from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any

from .time_utils import to_iso


@dataclass(slots=True)
class CandidateRow:
    kind: str
    candidate_id: str
    candidate_at: datetime
    representative_content_item_id: int
    source_id: int
    source_type: str
    cluster_id: int | None = None
    source_name: str | None = None
    title: str | None = None
    body_text: str | None = None
    canonical_url: str | None = None
    author: str | None = None
    published_at: datetime | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class DigestWindow:
    window_start: datetime
    window_end: datetime
    mode: str | None = None


@dataclass(slots=True, frozen=True)
class TriageResult:
    ai_score: float
    aha_score: int
    is_relevant: bool
    is_novel: bool
    should_deep_summarize: bool
    reason: str
    categories: tuple[str, ...]
    input_tokens: int
    output_tokens: int
    provider: str
    model: str
    endpoint: str
    credits: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["categories"] = list(self.categories)
        return payload


@dataclass(slots=True)
class ScoreDebugRecord:
    candidate_id: str
    inputs: dict[str, float]
    weights: dict[str, float]
    components: dict[str, float]
    base_score: float
    pre_weight_score: float
    multipliers: dict[str, float]
    final_score: float
    triage_failed: bool = False
    triage_error_kind: str | None = None
    age_hours: float = 0.0
    decay_hours: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class PreferenceProfile:
    vector: list[float]
    sample_count: int
    updated_at: datetime | None = None


@dataclass(slots=True)
class CreditsStatus:
    monthly_used: float
    monthly_limit: float
    monthly_remaining: float
    daily_used: float | None
    daily_limit: float | None
    daily_remaining: float | None
    paid_calls_allowed: bool
    warning_level: str = "none"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class LlmRuntimeConfig:
    provider: str | None = None
    model: str | None = None
    reasoning_effort: str | None = None
    max_output_tokens: int | None = None
    calls_per_hour: int | None = None


@dataclass(slots=True)
class LlmRequest:
    system: str
    user: str
    max_output_tokens: int | None = None
    reasoning_effort: str | None = None
    temperature: float | None = None


@dataclass(slots=True)
class NormalizedLlmResponse:
    text: str
    provider: str
    model: str
    endpoint: str
    input_tokens: int = 0
    output_tokens: int = 0
    structured: dict[str, Any] | None = None
    raw: Any = None


@dataclass(slots=True)
class AbtestVariantConfig:
    name: str
    provider: str
    model: str
    reasoning_effort: str | None = None
    max_output_tokens: int | None = None
    order: int = 1


@dataclass(slots=True)
class AbtestRunResult:
    run_id: int
    status: str
    item_count: int = 0
    variant_count: int = 0
    result_count: int = 0
    error_count: int = 0
    error: str | None = None


@dataclass(slots=True)
class AbtestVariantSummary:
    name: str
    provider: str
    model: str
    ok_count: int
    error_count: int
    mean_ai_score: float | None
    input_tokens: int
    output_tokens: int


@dataclass(slots=True)
class DigestItemView:
    rank: int
    kind: str
    candidate_id: str
    title: str
    url: str
    score: float
    ai_score: float | None
    triage_failed: bool
    one_liner: str | None = None


@dataclass(slots=True)
class DigestRunResult:
    status: str
    window: DigestWindow | None
    mode: str
    tier: str
    digest_id: int | None = None
    items: int = 0
    candidates: int = 0
    triaged: int = 0
    triage_failures: int = 0
    summarized: int = 0
    credits_used: float = 0.0
    plan: dict[str, Any] | None = None
    credits_status: CreditsStatus | None = None
    error_kind: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        if self.window is not None:
            payload["window"] = {
                "window_start": to_iso(self.window.window_start),
                "window_end": to_iso(self.window.window_end),
                "mode": self.window.mode,
            }
        return payload


@dataclass(slots=True, frozen=True)
class SummarySection:
    title: str
    items: tuple[str, ...]


@dataclass(slots=True, frozen=True)
class SummaryResult:
    prompt_id: str
    one_liner: str
    bullets: tuple[str, ...]
    sections: tuple[SummarySection, ...]
    input_tokens: int
    output_tokens: int
    provider: str
    model: str
    endpoint: str
    credits: float = 0.0
    discussion_highlights: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "prompt_id": self.prompt_id,
            "one_liner": self.one_liner,
            "bullets": list(self.bullets),
            "discussion_highlights": list(self.discussion_highlights),
            "sections": [{"title": s.title, "items": list(s.items)} for s in self.sections],
            "provider": self.provider,
            "model": self.model,
            "endpoint": self.endpoint,
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "credits": self.credits,
        }
