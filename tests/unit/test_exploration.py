"""
Unit tests for adaptive exploration.
"""

import time

import pytest

from config.constants import DiversifierConfig
from personalization.exploration import ExplorationStats, ExplorationTracker, adjust_level
from storage.document_store import InMemoryDocumentStore, TimeBoundedDocumentStore


@pytest.fixture
def tracker(store, clock, no_sleep):
    return ExplorationTracker(store, clock=clock, sleep=no_sleep)


class TestAdjustLevel:

    def test_nothing_shown_keeps_level(self):
        assert adjust_level(ExplorationStats(level=10)) == 10

    def test_high_success_raises(self):
        assert adjust_level(ExplorationStats(level=10, shown=10, succeeded=3)) == 12

    def test_low_success_lowers_after_enough_picks(self):
        assert adjust_level(ExplorationStats(level=10, shown=6, succeeded=0)) == 8

    def test_low_success_ignored_while_sample_is_small(self):
        assert adjust_level(ExplorationStats(level=10, shown=5, succeeded=0)) == 10

    def test_middling_success_holds(self):
        assert adjust_level(ExplorationStats(level=10, shown=10, succeeded=2)) == 10

    def test_bounds(self):
        assert adjust_level(ExplorationStats(level=25, shown=10, succeeded=10)) == 25
        assert adjust_level(ExplorationStats(level=5, shown=10, succeeded=0)) == 5


class TestExplorationTracker:

    def test_defaults(self, tracker):
        stats = tracker.get("user-1")

        assert stats.level == 10
        assert tracker.exploring_ratio("user-1") == 0.1

    def test_record_shown(self, tracker):
        stats = tracker.record_shown("user-1", ["a/b", "c/d"])

        assert stats.shown == 2
        assert [p["signature"] for p in stats.pending] == ["a/b", "c/d"]
        assert stats.level == 10

    def test_many_misses_lower_level(self, tracker):
        stats = tracker.record_shown("user-1", [f"sig-{i}" for i in range(6)])

        assert stats.level == 8

    def test_success_raises_level(self, tracker):
        tracker.record_shown("user-1", ["a/b", "c/d"])

        assert tracker.record_outcome("user-1", "a/b") is True
        stats = tracker.get("user-1")
        assert stats.succeeded == 1
        assert stats.level == 12
        assert [p["signature"] for p in stats.pending] == ["c/d"]

    def test_outcome_counts_once(self, tracker):
        tracker.record_shown("user-1", ["a/b"])
        tracker.record_outcome("user-1", "a/b")

        assert tracker.record_outcome("user-1", "a/b") is False
        assert tracker.get("user-1").succeeded == 1

    def test_unknown_signature_writes_nothing(self, tracker, store):
        assert tracker.record_outcome("user-1", "x/y") is False
        assert store.get("exploration", "user-1") is None

    def test_empty_shown_is_noop(self, tracker, store):
        tracker.record_shown("user-1", [])

        assert store.get("exploration", "user-1") is None

    def test_pending_is_capped(self, store, clock, no_sleep):
        tracker = ExplorationTracker(store, config=DiversifierConfig(EXPLORATION_MAX_PENDING=3), clock=clock, sleep=no_sleep)

        stats = tracker.record_shown("user-1", ["a", "b", "c", "d"])

        assert [p["signature"] for p in stats.pending] == ["b", "c", "d"]
        assert stats.shown == 4

    def test_reset(self, tracker):
        tracker.record_shown("user-1", ["a/b"])

        assert tracker.reset("user-1") is True
        assert tracker.get("user-1").shown == 0

    def test_timed_out_write_that_lands_is_not_counted_twice(self, clock):
        inner = InMemoryDocumentStore()
        original = inner.compare_and_set
        writes = []

        def slow_first_write(*args):
            writes.append(args)
            if len(writes) == 1:
                time.sleep(0.15)
            return original(*args)

        inner.compare_and_set = slow_first_write
        bounded = TimeBoundedDocumentStore(inner, timeout_seconds=0.05)
        tracker = ExplorationTracker(bounded, clock=clock, sleep=lambda _: time.sleep(0.3))
        try:
            stats = tracker.record_shown("user-1", ["a/b", "c/d"])
        finally:
            bounded.close()

        assert stats.shown == 2
        assert [p["signature"] for p in stats.pending] == ["a/b", "c/d"]
        assert ExplorationStats.from_dict(inner.get("exploration", "user-1").data, 10).shown == 2
        assert len(writes) == 1
