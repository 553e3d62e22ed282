"""
Unit tests for interaction session tracking.

Tests cover:
1. Outcome rules
2. Timer arming, cancellation and stale callbacks
3. Close notifications and shutdown
4. Timing metrics
"""

import threading
from datetime import datetime, timezone

import pytest

from config.constants import SessionConfig
from core.errors import ValidationError
from personalization.models import EventType, OutfitAttributes, SessionOutcome
from services.interaction_tracker import InteractionTracker, SessionAction, determine_outcome


@pytest.fixture
def closed():
    return []


@pytest.fixture
def tracker(clock, timers, closed):
    tracker = InteractionTracker(on_close=closed.append, clock=clock, timer_factory=timers)
    yield tracker
    tracker.shutdown()


def _actions(*types):
    at = datetime(2025, 3, 1, tzinfo=timezone.utc)
    return [SessionAction(i, EventType(t), at) for i, t in enumerate(types)]


# =============================================================================
# Outcome Rules
# =============================================================================

class TestDetermineOutcome:

    @pytest.mark.parametrize("types,expected", [
        ((), SessionOutcome.IN_PROGRESS),
        (("viewed",), SessionOutcome.IGNORED_ALL),
        (("viewed", "disliked"), SessionOutcome.IGNORED_ALL),
        (("liked",), SessionOutcome.LIKED_ONE),
        (("liked", "viewed", "liked"), SessionOutcome.LIKED_MULTIPLE),
        (("liked", "liked", "wore"), SessionOutcome.WORE_ONE),
        (("clicked_shopping",), SessionOutcome.IN_PROGRESS),
    ])
    def test_rules(self, types, expected):
        assert determine_outcome(_actions(*types)) == expected


# =============================================================================
# Lifecycle
# =============================================================================

class TestLifecycle:

    def test_start_arms_timer(self, tracker, timers):
        session = tracker.start_session("user-1", occasion="office")

        assert session.outcome == SessionOutcome.IN_PROGRESS
        assert session.season == "winter"
        assert session.session_id.startswith("s_")
        assert timers.last.started is True
        assert timers.last.interval == 300.0
        assert tracker.pending_timers() == 1

    def test_blank_user_rejected(self, tracker):
        with pytest.raises(ValidationError):
            tracker.start_session("  ")

    def test_duplicate_session_id_rejected(self, tracker):
        tracker.start_session("user-1", session_id="s1")

        with pytest.raises(ValidationError):
            tracker.start_session("user-1", session_id="s1")

    def test_action_restarts_timer(self, tracker, timers):
        session = tracker.start_session("user-1")
        first = timers.last

        tracker.record_action(session.session_id, "viewed", outfit_id="o1", duration_ms=800)

        assert first.cancelled is True
        assert timers.last is not first
        assert len(timers.live) == 1

    def test_terminal_action_cancels_timer(self, tracker, timers):
        session = tracker.start_session("user-1")

        tracker.record_action(session.session_id, "liked", outfit_id="o1")

        assert timers.live == []
        assert tracker.pending_timers() == 0
        assert session.outcome == SessionOutcome.LIKED_ONE

    def test_later_actions_refine_without_rearming(self, tracker, timers):
        session = tracker.start_session("user-1")
        tracker.record_action(session.session_id, "liked", outfit_id="o1")
        created = len(timers.timers)

        tracker.record_action(session.session_id, "viewed", outfit_id="o2")
        tracker.record_action(session.session_id, "liked", outfit_id="o2")

        assert len(timers.timers) == created
        assert session.outcome == SessionOutcome.LIKED_MULTIPLE

    def test_unknown_action_type(self, tracker):
        session = tracker.start_session("user-1")

        with pytest.raises(ValidationError):
            tracker.record_action(session.session_id, "teleported")

    def test_unknown_session(self, tracker):
        with pytest.raises(ValidationError):
            tracker.record_action("missing", "viewed")

    def test_sequence_numbers(self, tracker):
        session = tracker.start_session("user-1")

        _, a = tracker.record_action(session.session_id, "viewed")
        _, b = tracker.record_action(session.session_id, "viewed")

        assert (a.sequence, b.sequence) == (0, 1)


# =============================================================================
# Timeouts
# =============================================================================

class TestTimeout:

    def test_timeout_closes_as_ignored(self, tracker, timers, closed):
        session = tracker.start_session("user-1")
        tracker.record_action(session.session_id, "viewed", outfit_id="o1")

        timers.last.fire()

        assert closed == [session]
        assert session.outcome == SessionOutcome.IGNORED_ALL
        assert session.close_reason == "timeout"
        assert tracker.active_sessions() == 0
        assert tracker.get_session(session.session_id) is session

    def test_stale_timer_does_nothing(self, tracker, timers, closed):
        session = tracker.start_session("user-1")
        stale = timers.last
        tracker.record_action(session.session_id, "viewed")

        # Simulate a callback that was already running when the timer was replaced
        stale.callback()

        assert closed == []
        assert tracker.active_sessions() == 1

    def test_closed_session_rejects_actions(self, tracker, timers):
        session = tracker.start_session("user-1")
        timers.last.fire()

        with pytest.raises(ValidationError):
            tracker.record_action(session.session_id, "liked")

    def test_real_timer_fires(self, clock, closed):
        done = threading.Event()

        def on_close(session):
            closed.append(session)
            done.set()

        tracker = InteractionTracker(SessionConfig(INACTIVITY_TIMEOUT_SECONDS=0.05), on_close=on_close, clock=clock)
        try:
            tracker.start_session("user-1")

            assert done.wait(2.0)
            assert closed[0].outcome == SessionOutcome.IGNORED_ALL
        finally:
            tracker.shutdown()


# =============================================================================
# Closing
# =============================================================================

class TestClose:

    def test_explicit_close_keeps_decided_outcome(self, tracker, closed):
        session = tracker.start_session("user-1")
        tracker.record_action(session.session_id, "wore", outfit_id="o1")

        tracker.close_session(session.session_id)

        assert closed[0].outcome == SessionOutcome.WORE_ONE
        assert closed[0].close_reason == "explicit"

    def test_close_without_decision_is_ignored(self, tracker, closed):
        session = tracker.start_session("user-1")
        tracker.record_action(session.session_id, "clicked_shopping", outfit_id="o1")

        tracker.close_session(session.session_id)

        assert closed[0].outcome == SessionOutcome.IGNORED_ALL

    def test_close_twice(self, tracker, closed):
        session = tracker.start_session("user-1")

        assert tracker.close_session(session.session_id) is session
        assert tracker.close_session(session.session_id) is None
        assert len(closed) == 1

    def test_shutdown_cancels_everything(self, tracker, timers, closed):
        for _ in range(3):
            tracker.start_session("user-1")

        tracker.shutdown()

        assert timers.live == []
        assert tracker.pending_timers() == 0
        assert [s.close_reason for s in closed] == ["shutdown"] * 3

    def test_failing_handler_is_contained(self, clock, timers):
        def boom(session):
            raise RuntimeError("handler failed")

        tracker = InteractionTracker(on_close=boom, clock=clock, timer_factory=timers)
        session = tracker.start_session("user-1")

        assert tracker.close_session(session.session_id) is session

    def test_closed_history_is_bounded(self, clock, timers):
        tracker = InteractionTracker(SessionConfig(MAX_CLOSED_SESSIONS=2), clock=clock, timer_factory=timers)
        ids = [tracker.start_session("user-1").session_id for _ in range(3)]
        for session_id in ids:
            tracker.close_session(session_id)

        assert tracker.get_session(ids[0]) is None
        assert tracker.get_session(ids[2]) is not None


# =============================================================================
# Metrics
# =============================================================================

class TestMetrics:

    def test_empty_session(self, tracker):
        session = tracker.start_session("user-1")

        assert session.metrics() == {
            "time_to_first_action_ms": None,
            "time_to_decision_ms": None,
            "total_view_duration_ms": 0,
        }

    def test_timings(self, tracker, clock):
        session = tracker.start_session("user-1")
        clock.advance(seconds=2)
        tracker.record_action(session.session_id, "viewed", outfit_id="o1", duration_ms=1500)
        clock.advance(seconds=3)
        tracker.record_action(session.session_id, "viewed", outfit_id="o2", duration_ms=500)
        clock.advance(seconds=1)
        tracker.record_action(session.session_id, "liked", outfit_id="o2")

        assert session.metrics() == {
            "time_to_first_action_ms": 2000.0,
            "time_to_decision_ms": 6000.0,
            "total_view_duration_ms": 2000,
        }

    def test_to_dict(self, tracker):
        attrs = OutfitAttributes(colors=["navy"], styles=["classic"])
        session = tracker.start_session("user-1", recommended=[("o1", attrs)])
        tracker.record_action(session.session_id, "liked", outfit_id="o1")

        data = session.to_dict()

        assert data["outcome"] == "liked_one"
        assert data["recommended"][0]["attributes"]["colors"] == ["#000080"]
        assert data["actions"][0]["type"] == "liked"
        assert session.outfit("o1") == attrs
        assert session.outfit("nope") is None
