"""Tests for stage progress aggregation, reachability and the in-memory tracker."""
from __future__ import annotations

import pytest

from leantrack.stages import (
    DEFAULT_STAGES,
    StageDefinition,
    StageProgress,
    ValidationTracker,
    is_reachable,
    journey_progress,
    load_catalog,
    overall_progress,
    stage_progress,
)
from leantrack.utils import round_percent

FOUR = StageDefinition("problem", "Problem", ("a", "b", "c", "d"))
THREE = StageDefinition("solution", "Solution", ("x", "y", "z"))


class TestRoundPercent:
    def test_half_up(self):
        assert round_percent(1, 8) == 13  # 12.5
        assert round_percent(1, 3) == 33
        assert round_percent(2, 3) == 67
        assert round_percent(5, 10) == 50

    def test_zero_whole(self):
        assert round_percent(0, 0) == 0


class TestStageProgress:
    def test_two_of_four(self):
        p = stage_progress(FOUR, {0: True, 1: True, 2: False, 3: False})
        assert (p.completed, p.total, p.percent) == (2, 4, 50)

    def test_empty_flags(self):
        p = stage_progress(FOUR, {})
        assert (p.completed, p.total, p.percent) == (0, 4, 0)

    def test_all_complete(self):
        p = stage_progress(FOUR, {0: True, 1: True, 2: True, 3: True})
        assert p.percent == 100

    def test_out_of_order_completion_counted(self):
        p = stage_progress(FOUR, {3: True})
        assert p.completed == 1
        assert p.percent == 25

    def test_extra_positions_ignored(self):
        p = stage_progress(FOUR, {0: True, 4: True, 9: True})
        assert p.completed == 1

    def test_zero_criteria(self):
        p = stage_progress(StageDefinition("empty", "Empty", ()), {0: True})
        assert (p.completed, p.total, p.percent) == (0, 0, 0)

    def test_percent_bounds(self):
        for n in range(5):
            flags = {i: True for i in range(n)}
            p = stage_progress(FOUR, flags)
            assert 0 <= p.percent <= 100
            assert p.percent == round_percent(p.completed, p.total)


class TestOverallProgress:
    def test_unweighted_sum(self):
        # 2 of 4 + 3 of 3 = 5 of 7 -> 71.4
        assert overall_progress([
            (FOUR, {0: True, 1: True}),
            (THREE, {0: True, 1: True, 2: True}),
        ]) == 71

    def test_no_stages(self):
        assert overall_progress([]) == 0

    def test_idempotent(self):
        stages = [(FOUR, {1: True}), (THREE, {2: True})]
        assert overall_progress(stages) == overall_progress(stages)

    def test_default_catalog_empty(self):
        assert overall_progress((s, {}) for s in DEFAULT_STAGES) == 0


class TestReachability:
    def test_first_stage_always_reachable(self):
        journey = journey_progress(DEFAULT_STAGES, {})
        assert journey.stages[0].reachable is True
        assert all(not s.reachable for s in journey.stages[1:])

    def test_previous_stage_at_threshold(self):
        journey = journey_progress(DEFAULT_STAGES, {"problem": {0: True, 1: True}})
        assert journey.for_stage("solution").reachable is True
        assert journey.for_stage("mvp").reachable is False

    def test_own_progress_makes_reachable(self):
        journey = journey_progress(DEFAULT_STAGES, {"mvp": {2: True}})
        mvp = journey.for_stage("mvp")
        assert mvp.reachable is True
        assert mvp.completed == 1

    def test_numbers_are_never_clamped(self):
        journey = journey_progress(DEFAULT_STAGES, {"growth": {0: True, 1: True, 2: True}}, reachable_threshold=100)
        growth = journey.for_stage("growth")
        assert growth.completed == 3
        assert growth.percent == 75

    def test_custom_threshold(self):
        previous = StageProgress("a", 1, 4, 25)
        current = StageProgress("b", 0, 4, 0)
        assert is_reachable(previous, current, threshold=25) is True
        assert is_reachable(previous, current, threshold=50) is False
        assert is_reachable(None, current) is True

    def test_journey_totals(self):
        journey = journey_progress(DEFAULT_STAGES, {"problem": {0: True}, "growth": {3: True}})
        assert journey.completed == 2
        assert journey.total == 24
        assert journey.overall == 8
        assert journey.for_stage("nope") is None


class TestLoadCatalog:
    def test_basic(self):
        catalog = load_catalog({"stages": [
            {"id": "discover", "label": "Discovery", "criteria": ["talk_to_users", {"id": "write_up", "label": "Write up findings"}]},
            {"id": "build", "criteria": ["prototype"]},
        ]})
        assert [s.id for s in catalog] == ["discover", "build"]
        assert catalog[0].total == 2
        assert catalog[0].criterion_label(0) == "Talk to users"
        assert catalog[0].criterion_label(1) == "Write up findings"
        assert catalog[1].label == "Build"

    def test_empty_raises(self):
        with pytest.raises(ValueError):
            load_catalog({"stages": []})
        with pytest.raises(ValueError):
            load_catalog({})

    def test_duplicate_raises(self):
        with pytest.raises(ValueError, match="Duplicate"):
            load_catalog({"stages": [{"id": "a", "criteria": ["x"]}, {"id": "a", "criteria": ["y"]}]})

    def test_stage_without_criteria_raises(self):
        with pytest.raises(ValueError, match="criterion"):
            load_catalog({"stages": [{"id": "a", "criteria": []}]})

    def test_default_labels(self):
        problem = DEFAULT_STAGES[0]
        assert problem.criterion_label(0) == "Hypotheses created"
        assert all(s.total == 4 for s in DEFAULT_STAGES)


class TestValidationTracker:
    def test_set_criterion_updates_percentages(self):
        tracker = ValidationTracker()
        update = tracker.set_criterion("problem", 0, True)
        assert update.stage.completed == 1
        assert update.stage.percent == 25
        assert update.overall == 4
        assert update.previous is False

    def test_round_trip(self):
        tracker = ValidationTracker(flags_by_stage={"problem": {0: True, 1: True}})
        before = tracker.progress()
        tracker.set_criterion("problem", 2, True)
        tracker.set_criterion("problem", 2, False)
        assert tracker.progress() == before

    def test_only_one_flag_changes(self):
        tracker = ValidationTracker(flags_by_stage={"solution": {1: True}})
        tracker.set_criterion("problem", 3, True)
        assert tracker.flags("solution") == {1: True}
        assert tracker.flags("problem") == {3: True}

    def test_previous_value_reported(self):
        tracker = ValidationTracker(flags_by_stage={"mvp": {0: True}})
        assert tracker.set_criterion("mvp", 0, False).previous is True

    def test_unknown_stage(self):
        with pytest.raises(ValueError, match="Unknown stage"):
            ValidationTracker().set_criterion("nope", 0, True)

    @pytest.mark.parametrize("index", [-1, 4, 10])
    def test_index_out_of_range(self, index):
        with pytest.raises(ValueError, match="out of range"):
            ValidationTracker().set_criterion("problem", index, True)

    def test_flags_are_copies(self):
        tracker = ValidationTracker()
        flags = tracker.flags("problem")
        flags[0] = True
        assert tracker.flags("problem") == {}

    def test_replace_flags(self):
        tracker = ValidationTracker(flags_by_stage={"problem": {0: True}})
        progress = tracker.replace_flags("problem", {1: True, 2: True})
        assert progress.completed == 2
        assert tracker.flags("problem") == {1: True, 2: True}

    def test_unknown_stages_in_input_ignored(self):
        tracker = ValidationTracker(flags_by_stage={"legacy": {0: True}})
        assert "legacy" not in tracker.flags_by_stage()
