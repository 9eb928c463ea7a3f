from __future__ import annotations

from datetime import datetime, timezone

import pytest

from aha_digest.errors import ValidationError
from aha_digest.schemas import CandidateRow
from aha_digest.services.digest_plan import allocate_triage_calls, apply_budget_scale, compile_digest_plan

AT = datetime(2024, 6, 15, 4, tzinfo=timezone.utc)


def _candidate(cid: str, source_type: str, source_id: int) -> CandidateRow:
    return CandidateRow(
        kind="item",
        candidate_id=cid,
        candidate_at=AT,
        representative_content_item_id=1,
        source_id=source_id,
        source_type=source_type,
    )


def test_normal_plan_from_depth_and_sources():
    plan = compile_digest_plan("normal", 50, 1)

    assert plan.digest_max_items == 113
    assert plan.triage_max_calls == 339
    assert plan.deep_summary_max_calls == 17
    assert plan.candidate_pool_max == 2260


def test_low_plan_has_floor_and_no_deep_summaries():
    plan = compile_digest_plan("low", 0, 0)

    assert plan.digest_max_items == 25
    assert plan.triage_max_calls == 50
    assert plan.deep_summary_max_calls == 0
    assert plan.candidate_pool_max == 500


def test_high_plan_is_capped():
    plan = compile_digest_plan("high", 100, 30)

    assert plan.digest_max_items == 2000
    assert plan.triage_max_calls == 10000
    assert plan.deep_summary_max_calls == 150
    assert plan.candidate_pool_max == 10000


def test_plan_respects_configured_caps():
    plan = compile_digest_plan("normal", 50, 1, triage_max_calls_cap=200, deep_summary_max_calls_cap=5)

    assert plan.triage_max_calls == 200
    assert plan.deep_summary_max_calls == 5


def test_depth_is_clamped_and_defaulted():
    assert compile_digest_plan("normal", 150, 1) == compile_digest_plan("normal", 100, 1)
    assert compile_digest_plan("normal", None, 1).digest_depth == 50


def test_unknown_mode_rejected():
    with pytest.raises(ValidationError):
        compile_digest_plan("turbo", 50, 1)


def test_budget_scale_shrinks_plan():
    plan = compile_digest_plan("normal", 50, 1)

    half = apply_budget_scale(plan, 0.5)
    floor = apply_budget_scale(plan, 0.0)

    assert (half.digest_max_items, half.triage_max_calls) == (57, 170)
    assert (half.deep_summary_max_calls, half.candidate_pool_max) == (9, 1130)
    assert (floor.digest_max_items, floor.triage_max_calls) == (5, 5)
    assert (floor.deep_summary_max_calls, floor.candidate_pool_max) == (0, 100)
    assert apply_budget_scale(plan, 1.0) is plan
    assert apply_budget_scale(plan, 3.0) is plan


def test_allocation_takes_everything_when_it_fits():
    candidates = [_candidate("a", "rss", 1), _candidate("b", "rss", 1), _candidate("c", "reddit", 2)]

    allocation = allocate_triage_calls(candidates, {"a": 0.2, "b": 0.9, "c": 0.5}, max_calls=5)

    assert allocation.order == ["b", "c", "a"]
    assert allocation.exploration_source_count == 2


def test_allocation_empty_inputs():
    assert allocate_triage_calls([], {}, 5).order == []
    assert allocate_triage_calls([_candidate("a", "rss", 1)], {"a": 1.0}, 0).order == []


def test_allocation_keeps_quiet_source_types_in_play():
    loud = [_candidate(f"rss{i}", "rss", 1) for i in range(6)]
    quiet = [_candidate("hn0", "hn", 2), _candidate("hn1", "hn", 2)]
    scores = {f"rss{i}": 0.9 - i * 0.1 for i in range(6)}
    scores.update({"hn0": 0.1, "hn1": 0.05})

    allocation = allocate_triage_calls(loud + quiet, scores, max_calls=6)

    assert len(allocation.order) == 6
    assert allocation.order[:4] == ["rss0", "rss1", "hn0", "hn1"]
    assert allocation.order[4:] == ["rss2", "rss3"]
    assert allocation.exploration_by_type == {"rss": 2, "hn": 2}
    assert allocation.exploration_source_count == 2
    assert (allocation.exploration_slots, allocation.exploitation_slots) == (4, 2)
