from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from ..config import Settings
from ..models import (
    VIEWING_PROFILE_CUSTOM,
    VIEWING_PROFILE_DAILY,
    VIEWING_PROFILE_POWER,
    VIEWING_PROFILE_RESEARCH,
    VIEWING_PROFILE_WEEKLY,
)
from ..schemas import CandidateRow, ScoreDebugRecord
from ..time_utils import ensure_aware

W_RECENCY = 0.6
W_ENGAGEMENT = 0.4
MIN_SOURCE_WEIGHT = 0.1
MAX_SOURCE_WEIGHT = 3.0
MIN_USER_PREFERENCE_WEIGHT = 0.5
MAX_USER_PREFERENCE_WEIGHT = 2.0
MAX_FINAL_SCORE = 10.0

DEFAULT_DECAY_HOURS = {
    VIEWING_PROFILE_POWER: 4,
    VIEWING_PROFILE_DAILY: 24,
    VIEWING_PROFILE_WEEKLY: 168,
    VIEWING_PROFILE_RESEARCH: 720,
    VIEWING_PROFILE_CUSTOM: 24,
}


@dataclass(slots=True, frozen=True)
class ScoringWeights:
    w_aha: float = 0.8
    w_heuristic: float = 0.15
    w_pref: float = 0.25
    w_novelty: float = 0.05
    w_signal: float = 0.05

    @classmethod
    def from_settings(cls, settings: Settings) -> ScoringWeights:
        return cls(
            w_aha=settings.w_aha,
            w_heuristic=settings.w_heuristic,
            w_pref=settings.w_pref,
            w_novelty=settings.w_novelty,
            w_signal=settings.w_signal,
        )

    def applied(self, triage_missing: bool) -> dict[str, float]:
        # Without triage the heuristic stands in for the AI term at full weight.
        return {
            "w_aha": 0.0 if triage_missing else self.w_aha,
            "w_heuristic": 1.0 if triage_missing else self.w_heuristic,
            "w_pref": self.w_pref,
            "w_novelty": self.w_novelty,
            "w_signal": self.w_signal,
        }


@dataclass(slots=True, frozen=True)
class PreferenceCurve:
    sample_count: int = 0
    max_strength: float = 0.5
    saturation_samples: float = 20.0


@dataclass(slots=True)
class ScoreInputs:
    candidate_id: str
    ai_score: float | None
    recency01: float
    engagement01: float
    preference_score: float = 0.0
    novelty01: float = 0.0
    signal01: float = 0.0
    triage_error_kind: str | None = None


def clamp(value: float, low: float, high: float) -> float:
    return min(high, max(low, value))


def clamp01(value: float) -> float:
    return clamp(value, 0.0, 1.0)


def recency01(candidate_at: datetime, window_start: datetime, window_end: datetime) -> float:
    window_seconds = max(1e-3, (ensure_aware(window_end) - ensure_aware(window_start)).total_seconds())
    age_seconds = max(0.0, (ensure_aware(window_end) - ensure_aware(candidate_at)).total_seconds())
    return clamp01(1.0 - age_seconds / window_seconds)


def _as_finite(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value) if math.isfinite(value) else None


def engagement_raw(metadata: dict[str, Any]) -> float:
    score = _as_finite(metadata.get("score"))
    if score is None:
        score = _as_finite(metadata.get("ups"))
    comments = _as_finite(metadata.get("num_comments"))
    if comments is None:
        comments = _as_finite(metadata.get("comment_count"))
    return math.log1p(max(0.0, score or 0.0)) + 0.25 * math.log1p(max(0.0, comments or 0.0))


def normalize01(values: list[float]) -> list[float]:
    if not values:
        return []
    low = min(values)
    high = max(values)
    span = high - low
    if not math.isfinite(span) or span < 1e-6:
        return [0.0 for _ in values]
    return [clamp01((v - low) / span) for v in values]


def heuristic_score(recency: float, engagement: float) -> float:
    return W_RECENCY * recency + W_ENGAGEMENT * engagement


def heuristic_inputs(
    candidates: list[CandidateRow],
    window_start: datetime,
    window_end: datetime,
) -> dict[str, tuple[float, float]]:
    """Recency and window-normalized engagement for every candidate."""
    recencies = [recency01(c.candidate_at, window_start, window_end) for c in candidates]
    engagements = normalize01([engagement_raw(c.metadata) for c in candidates])
    return {c.candidate_id: (r, e) for c, r, e in zip(candidates, recencies, engagements, strict=True)}


def signal01(metadata: dict[str, Any]) -> float:
    value = _as_finite(metadata.get("signal01"))
    if value is None:
        return 1.0 if metadata.get("signal_corroborated") is True else 0.0
    return clamp01(value)


def novelty01(max_similarity: float) -> float:
    return clamp01(1.0 - max_similarity)


def effective_source_weight(source_type: str, source_weight: float | None, type_weights: dict[str, float]) -> float:
    type_weight = type_weights.get(source_type, 1.0)
    raw = type_weight * (source_weight if source_weight is not None else 1.0)
    return clamp(raw, MIN_SOURCE_WEIGHT, MAX_SOURCE_WEIGHT)


def preference_strength(curve: PreferenceCurve) -> float:
    """Monotonic in sample count: 0 with no history, approaching ``max_strength``."""
    if curve.sample_count <= 0 or curve.saturation_samples <= 0:
        return 0.0
    return curve.max_strength * (1.0 - math.exp(-curve.sample_count / curve.saturation_samples))


def user_preference_weight(preference_score: float, curve: PreferenceCurve) -> float:
    raw = 1.0 + preference_strength(curve) * preference_score
    return clamp(raw, MIN_USER_PREFERENCE_WEIGHT, MAX_USER_PREFERENCE_WEIGHT)


def decay_hours_for(viewing_profile: str | None, decay_hours: int | float | None) -> float:
    if decay_hours is not None and decay_hours > 0:
        return float(decay_hours)
    return float(DEFAULT_DECAY_HOURS.get(viewing_profile or VIEWING_PROFILE_DAILY, 24))


def decay_multiplier(age_hours: float, decay_hours: float) -> float:
    if decay_hours <= 0:
        return 1.0
    return 0.5 ** (max(0.0, age_hours) / decay_hours)


def _combine(inputs: dict[str, float], weights: dict[str, float], multipliers: dict[str, float]) -> dict[str, Any]:
    heuristic = heuristic_score(inputs["recency01"], inputs["engagement01"])
    components = {
        "aha": weights["w_aha"] * inputs["ai_score"],
        "heuristic": weights["w_heuristic"] * heuristic,
        "preference": weights["w_pref"] * inputs["preference_score"],
        "novelty": weights["w_novelty"] * inputs["novelty01"],
        "signal": weights["w_signal"] * inputs["signal01"],
    }
    base = components["aha"] + components["heuristic"] + components["preference"] + components["novelty"]
    pre_weight = base + components["signal"]
    raw = pre_weight * multipliers["source_weight"] * multipliers["user_preference_weight"]
    raw = raw * multipliers["decay_multiplier"]
    return {
        "heuristic_score": heuristic,
        "components": components,
        "base_score": base,
        "pre_weight_score": pre_weight,
        "final_score": clamp(raw, 0.0, MAX_FINAL_SCORE),
    }


def score_candidate(
    inputs: ScoreInputs,
    weights: ScoringWeights,
    preference: PreferenceCurve,
    source_weight: float,
    decay_hours: float,
    candidate_at: datetime,
    now: datetime,
) -> ScoreDebugRecord:
    triage_missing = inputs.ai_score is None
    raw_inputs = {
        "ai_score": 0.0 if triage_missing else float(inputs.ai_score),
        "recency01": float(inputs.recency01),
        "engagement01": float(inputs.engagement01),
        "preference_score": float(inputs.preference_score),
        "novelty01": float(inputs.novelty01),
        "signal01": float(inputs.signal01),
    }
    applied = weights.applied(triage_missing)
    age_hours = max(0.0, (ensure_aware(now) - ensure_aware(candidate_at)).total_seconds() / 3600.0)
    multipliers = {
        "source_weight": float(source_weight),
        "user_preference_weight": user_preference_weight(raw_inputs["preference_score"], preference),
        "decay_multiplier": decay_multiplier(age_hours, decay_hours),
    }
    combined = _combine(raw_inputs, applied, multipliers)
    raw_inputs["heuristic_score"] = combined["heuristic_score"]

    return ScoreDebugRecord(
        candidate_id=inputs.candidate_id,
        inputs=raw_inputs,
        weights=applied,
        components=combined["components"],
        base_score=combined["base_score"],
        pre_weight_score=combined["pre_weight_score"],
        multipliers=multipliers,
        final_score=combined["final_score"],
        triage_failed=triage_missing,
        triage_error_kind=inputs.triage_error_kind,
        age_hours=age_hours,
        decay_hours=decay_hours,
    )


def recompute_final_score(record: dict[str, Any]) -> float:
    """Re-derive the final score from a stored debug record."""
    return _combine(record["inputs"], record["weights"], record["multipliers"])["final_score"]


def rank_scored(scored: list[tuple[CandidateRow, ScoreDebugRecord]]) -> list[tuple[CandidateRow, ScoreDebugRecord]]:
    return sorted(
        scored,
        key=lambda pair: (
            -pair[1].final_score,
            -ensure_aware(pair[0].candidate_at).timestamp(),
            pair[0].candidate_id,
        ),
    )
