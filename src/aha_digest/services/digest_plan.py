from __future__ import annotations

import logging
import math
from collections import Counter, defaultdict
from dataclasses import dataclass, field, replace

from ..errors import ValidationError
from ..schemas import CandidateRow
from .llm_router import TIER_HIGH, TIER_LOW, TIER_NORMAL

logger = logging.getLogger(__name__)

DIGEST_MAX_ITEMS_HARD_CAP = 2500
CANDIDATE_POOL_FLOOR = 500
CANDIDATE_POOL_CEILING = 10000
DEFAULT_DIGEST_DEPTH = 50
DEFAULT_EXPLORATION_FRACTION = 0.3


@dataclass(slots=True, frozen=True)
class ModeCoefficients:
    base: int
    per_source: int
    min_items: int
    max_items: int
    triage_multiplier: int
    deep_ratio: float
    deep_max: int


MODE_COEFFICIENTS: dict[str, ModeCoefficients] = {
    TIER_LOW: ModeCoefficients(30, 10, 25, 300, 2, 0.0, 0),
    TIER_NORMAL: ModeCoefficients(70, 20, 50, 700, 3, 0.15, 40),
    TIER_HIGH: ModeCoefficients(200, 60, 100, 2000, 5, 0.3, 150),
}


@dataclass(slots=True, frozen=True)
class DigestPlan:
    mode: str
    digest_depth: int
    enabled_source_count: int
    digest_max_items: int
    triage_max_calls: int
    deep_summary_max_calls: int
    candidate_pool_max: int

    def to_dict(self) -> dict[str, int | str]:
        return {
            "mode": self.mode,
            "digest_depth": self.digest_depth,
            "enabled_source_count": self.enabled_source_count,
            "digest_max_items": self.digest_max_items,
            "triage_max_calls": self.triage_max_calls,
            "deep_summary_max_calls": self.deep_summary_max_calls,
            "candidate_pool_max": self.candidate_pool_max,
        }


@dataclass(slots=True)
class TriageAllocation:
    order: list[str]
    exploration_slots: int = 0
    exploitation_slots: int = 0
    exploration_by_type: dict[str, int] = field(default_factory=dict)
    exploration_source_count: int = 0


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _clamp(low: float, high: float, value: float) -> float:
    return max(low, min(high, value))


def compile_digest_plan(
    mode: str,
    digest_depth: int | None,
    enabled_source_count: int,
    triage_max_calls_cap: int = 10000,
    deep_summary_max_calls_cap: int = 200,
) -> DigestPlan:
    """Size a digest run from its mode, topic depth and number of enabled sources.

    Depth 0..100 scales the mode's base size by 0.5x..2x. Triage and deep
    summary allowances are derived from the item count and bounded by the
    configured hard caps.
    """
    coefficients = MODE_COEFFICIENTS.get(mode)
    if coefficients is None:
        raise ValidationError(f"unknown digest mode: {mode}")

    depth = int(_clamp(0, 100, DEFAULT_DIGEST_DEPTH if digest_depth is None else digest_depth))
    sources = max(0, enabled_source_count)
    depth_factor = 0.5 + depth * 1.5 / 100

    raw_items = _round_half_up((coefficients.base + coefficients.per_source * sources) * depth_factor)
    digest_max_items = min(
        DIGEST_MAX_ITEMS_HARD_CAP,
        int(_clamp(coefficients.min_items, coefficients.max_items, raw_items)),
    )
    triage_max_calls = min(
        triage_max_calls_cap,
        int(_clamp(digest_max_items, 10000, digest_max_items * coefficients.triage_multiplier)),
    )
    deep_summary_max_calls = min(
        deep_summary_max_calls_cap,
        min(coefficients.deep_max, _round_half_up(digest_max_items * coefficients.deep_ratio)),
    )
    candidate_pool_max = min(CANDIDATE_POOL_CEILING, max(CANDIDATE_POOL_FLOOR, digest_max_items * 20))

    return DigestPlan(
        mode=mode,
        digest_depth=depth,
        enabled_source_count=sources,
        digest_max_items=digest_max_items,
        triage_max_calls=triage_max_calls,
        deep_summary_max_calls=deep_summary_max_calls,
        candidate_pool_max=candidate_pool_max,
    )


def apply_budget_scale(plan: DigestPlan, scale: float) -> DigestPlan:
    """Shrink a plan for a run that is close to its credit limit."""
    factor = _clamp(0.0, 1.0, scale)
    if factor >= 0.999:
        return plan
    digest_max_items = max(5, _round_half_up(plan.digest_max_items * factor))
    return replace(
        plan,
        digest_max_items=digest_max_items,
        triage_max_calls=max(digest_max_items, _round_half_up(plan.triage_max_calls * factor)),
        deep_summary_max_calls=max(0, _round_half_up(plan.deep_summary_max_calls * factor)),
        candidate_pool_max=max(100, _round_half_up(plan.candidate_pool_max * factor)),
    )


def allocate_triage_calls(
    candidates: list[CandidateRow],
    heuristic_scores: dict[str, float],
    max_calls: int,
    exploration_fraction: float = DEFAULT_EXPLORATION_FRACTION,
) -> TriageAllocation:
    """Choose which candidates get a triage call when there are more than allowed.

    A slice of the budget is spread across source types and, inside each type,
    across sources so no single feed crowds out the rest. The remainder goes to
    the best heuristic scores overall.
    """
    if not candidates or max_calls <= 0:
        return TriageAllocation(order=[])

    def score(candidate: CandidateRow) -> float:
        return heuristic_scores.get(candidate.candidate_id, 0.0)

    if len(candidates) <= max_calls:
        ranked = sorted(candidates, key=score, reverse=True)
        return TriageAllocation(
            order=[c.candidate_id for c in ranked],
            exploration_slots=len(ranked),
            exploration_by_type=dict(Counter(c.source_type for c in ranked)),
            exploration_source_count=len({c.source_id for c in ranked}),
        )

    exploration_budget = max(1, int(math.floor(max_calls * exploration_fraction)))
    by_type: dict[str, list[CandidateRow]] = defaultdict(list)
    for candidate in candidates:
        by_type[candidate.source_type].append(candidate)
    base_per_type = max(2, exploration_budget // len(by_type))

    picked: set[str] = set()
    exploration: list[CandidateRow] = []
    exploration_by_type: dict[str, int] = {}
    sources_touched: set[int] = set()
    for source_type, members in by_type.items():
        slots = min(base_per_type, len(members))
        by_source: dict[int, list[CandidateRow]] = defaultdict(list)
        for candidate in members:
            by_source[candidate.source_id].append(candidate)
        base_per_source = max(1, slots // len(by_source))
        taken = 0
        for source_id, source_members in by_source.items():
            room = slots - taken
            if room <= 0:
                break
            for candidate in sorted(source_members, key=score, reverse=True)[: min(base_per_source, room)]:
                exploration.append(candidate)
                picked.add(candidate.candidate_id)
                sources_touched.add(source_id)
                taken += 1
        exploration_by_type[source_type] = taken

    # The per-type floor can overshoot the exploration share; the final order is cut to max_calls.
    remaining = sorted((c for c in candidates if c.candidate_id not in picked), key=score, reverse=True)
    exploitation = remaining[: max(0, max_calls - exploration_budget)]

    exploration.sort(key=score, reverse=True)
    order = ([c.candidate_id for c in exploration] + [c.candidate_id for c in exploitation])[:max_calls]
    exploration_slots = min(len(exploration), max_calls)
    allocation = TriageAllocation(
        order=order,
        exploration_slots=exploration_slots,
        exploitation_slots=len(order) - exploration_slots,
        exploration_by_type=exploration_by_type,
        exploration_source_count=len(sources_touched),
    )
    logger.debug(
        "triage allocation",
        extra={
            "total_candidates": len(candidates),
            "max_triage_calls": max_calls,
            "exploration_slots": allocation.exploration_slots,
            "exploitation_slots": allocation.exploitation_slots,
        },
    )
    return allocation
