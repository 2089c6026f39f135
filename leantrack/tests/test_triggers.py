"""Tests for pivot trigger correlation."""
from __future__ import annotations

from types import SimpleNamespace

from leantrack.classifier import Status
from leantrack.triggers import (
    active_triggers,
    at_risk_metrics,
    group_by_category,
    index_by_id,
    resolve,
    triggers_for_option,
)


def _metric(id, status, original_id=None, category="custom"):
    return SimpleNamespace(id=id, original_id=original_id, status=status, category=category)


def _option(id, original_id=None):
    return SimpleNamespace(id=id, original_id=original_id)


def _trigger(id, option_id, metric_id):
    return SimpleNamespace(id=id, pivot_option_id=option_id, metric_id=metric_id)


class TestResolve:
    def test_current_id_first(self):
        a = _metric("a", "success", original_id="b")
        b = _metric("b", "error")
        by_id, by_original = index_by_id([a, b])
        assert resolve("b", by_id, by_original) is b
        assert resolve("a", by_id, by_original) is a

    def test_original_id_fallback(self):
        m = _metric("new-id", "error", original_id="legacy-1")
        assert resolve("legacy-1", *index_by_id([m])) is m

    def test_missing(self):
        assert resolve("x", *index_by_id([])) is None
        assert resolve(None, *index_by_id([_metric("a", "error")])) is None


class TestActiveTriggers:
    def test_only_at_risk_metrics_trigger(self):
        metrics = [_metric("m1", "warning"), _metric("m2", "success"), _metric("m3", "error"),
                   _metric("m4", "not-started")]
        options = [_option("p1")]
        triggers = [_trigger(i, "p1", f"m{i}") for i in range(1, 5)]
        active = active_triggers(metrics, options, triggers)
        assert [a.metric.id for a in active] == ["m1", "m3"]
        assert all(a.pivot_option.id == "p1" for a in active)

    def test_accepts_status_enum(self):
        active = active_triggers([_metric("m1", Status.ERROR)], [_option("p1")], [_trigger(1, "p1", "m1")])
        assert len(active) == 1

    def test_orphans_dropped(self):
        metrics = [_metric("m1", "error")]
        options = [_option("p1")]
        triggers = [
            _trigger(1, "p1", "gone"),
            _trigger(2, "deleted", "m1"),
            _trigger(3, "p1", "m1"),
        ]
        active = active_triggers(metrics, options, triggers)
        assert [a.trigger.id for a in active] == [3]

    def test_original_ids_resolved(self):
        metrics = [_metric("m-new", "warning", original_id="m-old")]
        options = [_option("p-new", original_id="p-old")]
        active = active_triggers(metrics, options, [_trigger(1, "p-old", "m-old")])
        assert active[0].metric.id == "m-new"
        assert active[0].pivot_option.id == "p-new"

    def test_order_follows_triggers(self):
        metrics = [_metric("m1", "error"), _metric("m2", "error")]
        options = [_option("p1"), _option("p2")]
        triggers = [_trigger(1, "p2", "m2"), _trigger(2, "p1", "m1"), _trigger(3, "p1", "m2")]
        active = active_triggers(metrics, options, triggers)
        assert [a.trigger.id for a in active] == [1, 2, 3]

    def test_same_option_multiple_metrics(self):
        metrics = [_metric("m1", "error"), _metric("m2", "warning")]
        active = active_triggers(metrics, [_option("p1")], [_trigger(1, "p1", "m1"), _trigger(2, "p1", "m2")])
        assert len(active) == 2

    def test_empty_inputs(self):
        assert active_triggers([], [], []) == []


class TestHelpers:
    def test_at_risk_metrics(self):
        metrics = [_metric("a", "success"), _metric("b", "error"), _metric("c", "warning")]
        assert [m.id for m in at_risk_metrics(metrics)] == ["b", "c"]

    def test_triggers_for_option(self):
        option = _option("p1", original_id="legacy")
        triggers = [_trigger(1, "p1", "m"), _trigger(2, "legacy", "m"), _trigger(3, "p2", "m")]
        assert [t.id for t in triggers_for_option(option, triggers)] == [1, 2]

    def test_group_by_category(self):
        metrics = [
            _metric("a", "success", category="acquisition"),
            _metric("b", "success", category="revenue"),
            _metric("c", "success", category="acquisition"),
            _metric("d", "success", category=None),
        ]
        groups = group_by_category(metrics)
        assert [m.id for m in groups["acquisition"]] == ["a", "c"]
        assert [m.id for m in groups["revenue"]] == ["b"]
        assert [m.id for m in groups["custom"]] == ["d"]
