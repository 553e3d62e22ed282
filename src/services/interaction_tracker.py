"""
Interaction session tracking.

A session is opened per recommendation request and collects the user's
actions on the recommended outfits. Each session owns one inactivity
timer:

- every recorded action restarts the timer
- a terminal action (liked / wore / disliked) cancels it and fixes the
  outcome; later actions are still recorded and can refine it
  (liked_one -> liked_multiple) but never re-arm the timer
- if the timer fires, the session closes as ignored_all

Closing a session (timeout, explicit close or shutdown) always cancels
its timer, then notifies the on_close callback outside the lock.
"""

import threading
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from config.constants import DEFAULT_SESSION_CONFIG, SessionConfig
from core.errors import ValidationError
from core.logging import LoggerMixin, log_context
from core.utils import Clock, ensure_utc, utc_now
from personalization.models import EventType, OutfitAttributes, SessionOutcome
from personalization.normalization import season_for

TimerFactory = Callable[[float, Callable[[], None]], Any]

# Actions that show the user engaged with what was shown
_ENGAGED = frozenset({"liked", "wore", "selected", "clicked_shopping", "hovered_color"})


@dataclass
class SessionAction:
    """One action inside a session."""

    sequence: int
    type: EventType
    timestamp: datetime
    outfit_id: Optional[str] = None
    outfit_position: Optional[int] = None
    duration_ms: Optional[int] = None
    color_hex: Optional[str] = None
    platform: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sequence": self.sequence,
            "type": self.type.value,
            "timestamp": self.timestamp.isoformat(),
            "outfit_id": self.outfit_id,
            "outfit_position": self.outfit_position,
            "duration_ms": self.duration_ms,
            "color_hex": self.color_hex,
            "platform": self.platform,
        }


@dataclass
class InteractionSession:
    """Session metadata, recommended outfits and recorded actions."""

    session_id: str
    user_id: str
    started_at: datetime
    occasion: Optional[str] = None
    gender: Optional[str] = None
    weather: Optional[str] = None
    season: Optional[str] = None
    recommended: List[Tuple[str, OutfitAttributes]] = field(default_factory=list)
    actions: List[SessionAction] = field(default_factory=list)
    outcome: SessionOutcome = SessionOutcome.IN_PROGRESS
    decided: bool = False
    closed_at: Optional[datetime] = None
    close_reason: Optional[str] = None

    @property
    def is_closed(self) -> bool:
        return self.closed_at is not None

    def outfit(self, outfit_id: Optional[str]) -> Optional[OutfitAttributes]:
        for recommended_id, attributes in self.recommended:
            if recommended_id == outfit_id:
                return attributes
        return None

    def metrics(self) -> Dict[str, Optional[float]]:
        """
        Timing metrics in milliseconds: time to first action, time to the
        first like/wear, and the summed view duration.
        """
        if not self.actions:
            return {"time_to_first_action_ms": None, "time_to_decision_ms": None, "total_view_duration_ms": 0}

        ordered = sorted(self.actions, key=lambda a: (a.timestamp, a.sequence))
        first = ordered[0]
        decision = next((a for a in ordered if a.type in (EventType.LIKED, EventType.WORE)), None)

        def since_start(action: SessionAction) -> float:
            return (action.timestamp - self.started_at).total_seconds() * 1000

        return {
            "time_to_first_action_ms": since_start(first),
            "time_to_decision_ms": since_start(decision) if decision else None,
            "total_view_duration_ms": sum(
                a.duration_ms or 0 for a in self.actions if a.type == EventType.VIEWED
            ),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "user_id": self.user_id,
            "started_at": self.started_at.isoformat(),
            "occasion": self.occasion,
            "gender": self.gender,
            "weather": self.weather,
            "season": self.season,
            "recommended": [
                {"outfit_id": oid, "attributes": attrs.model_dump(mode="json")}
                for oid, attrs in self.recommended
            ],
            "actions": [a.to_dict() for a in self.actions],
            "outcome": self.outcome.value,
            "closed_at": self.closed_at.isoformat() if self.closed_at else None,
            "close_reason": self.close_reason,
            "metrics": self.metrics(),
        }


def determine_outcome(actions: Sequence[SessionAction]) -> SessionOutcome:
    """
    Outcome from the recorded actions.

    Any wear wins, then several likes, then a single like. Actions with no
    engagement at all (only views or dislikes) mean everything was
    ignored; no actions at all is still in progress.
    """
    types = [a.type.value for a in actions]
    if "wore" in types:
        return SessionOutcome.WORE_ONE
    likes = types.count("liked")
    if likes > 1:
        return SessionOutcome.LIKED_MULTIPLE
    if likes == 1:
        return SessionOutcome.LIKED_ONE
    if types and not any(t in _ENGAGED for t in types):
        return SessionOutcome.IGNORED_ALL
    return SessionOutcome.IN_PROGRESS


def _default_timer(interval: float, callback: Callable[[], None]) -> threading.Timer:
    timer = threading.Timer(interval, callback)
    timer.daemon = True
    return timer


class InteractionTracker(LoggerMixin):
    """
    Thread-safe tracker of open sessions and their inactivity timers.

    Usage:
        tracker = InteractionTracker(on_close=handle_closed)
        session_id = tracker.start_session("user_123", occasion="office")
        tracker.record_action(session_id, "viewed", outfit_id="o1", duration_ms=1200)
        tracker.record_action(session_id, "liked", outfit_id="o1")   # timer cancelled
        tracker.close_session(session_id)
        tracker.shutdown()
    """

    def __init__(
        self,
        config: SessionConfig = DEFAULT_SESSION_CONFIG,
        on_close: Optional[Callable[[InteractionSession], None]] = None,
        clock: Clock = utc_now,
        timer_factory: TimerFactory = _default_timer,
    ):
        self._config = config
        self.on_close = on_close
        self._clock = clock
        self._timer_factory = timer_factory
        self._lock = threading.RLock()

        self._sessions: Dict[str, InteractionSession] = {}
        self._closed: "OrderedDict[str, InteractionSession]" = OrderedDict()
        # session_id -> (timer, generation); stale callbacks compare generations
        self._timers: Dict[str, Tuple[Any, int]] = {}
        self._generation = 0

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def generate_session_id(self) -> str:
        return f"s_{int(self._clock().timestamp())}_{uuid.uuid4().hex[:8]}"

    def start_session(
        self,
        user_id: str,
        occasion: Optional[str] = None,
        gender: Optional[str] = None,
        weather: Optional[str] = None,
        season: Optional[str] = None,
        recommended: Optional[Sequence[Tuple[str, OutfitAttributes]]] = None,
        session_id: Optional[str] = None,
    ) -> InteractionSession:
        """Open a session and arm its inactivity timer."""
        if not user_id or not user_id.strip():
            raise ValidationError("session needs a user")

        now = self._clock()
        session = InteractionSession(
            session_id=session_id or self.generate_session_id(),
            user_id=user_id,
            started_at=now,
            occasion=occasion,
            gender=gender,
            weather=weather,
            season=season or season_for(now).value,
            recommended=list(recommended or []),
        )
        with self._lock:
            if session.session_id in self._sessions or session.session_id in self._closed:
                raise ValidationError("session id already used", details={"session_id": session.session_id})
            self._sessions[session.session_id] = session
            self._arm(session.session_id)

        with log_context(user_id=user_id, session_id=session.session_id):
            self.logger.debug("session started", occasion=occasion, recommended=len(session.recommended))
        return session

    def record_action(
        self,
        session_id: str,
        action_type: Any,
        outfit_id: Optional[str] = None,
        outfit_position: Optional[int] = None,
        duration_ms: Optional[int] = None,
        color_hex: Optional[str] = None,
        platform: Optional[str] = None,
        timestamp: Optional[datetime] = None,
    ) -> Tuple[InteractionSession, SessionAction]:
        """
        Append an action and restart (or cancel) the session's timer.

        Raises:
            ValidationError: unknown or closed session, unknown action type
        """
        try:
            event_type = EventType(action_type)
        except ValueError as e:
            raise ValidationError(f"unknown action type {action_type!r}") from e

        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                raise ValidationError("unknown or closed session", details={"session_id": session_id})

            action = SessionAction(
                sequence=len(session.actions),
                type=event_type,
                timestamp=ensure_utc(timestamp) if timestamp else self._clock(),
                outfit_id=outfit_id,
                outfit_position=outfit_position,
                duration_ms=duration_ms,
                color_hex=color_hex,
                platform=platform,
            )
            session.actions.append(action)

            if event_type.value in self._config.TERMINAL_ACTIONS:
                self._cancel(session_id)
                session.decided = True
            elif not session.decided:
                self._arm(session_id)

            if session.decided:
                session.outcome = determine_outcome(session.actions)

        return session, action

    def close_session(self, session_id: str, reason: str = "explicit") -> Optional[InteractionSession]:
        """
        Close a session now. Sessions without a terminal action close as
        ignored_all.

        Returns:
            The closed session, or None if it was not open
        """
        with self._lock:
            session = self._finish(session_id, reason)
        if session is not None:
            self._notify(session)
        return session

    def shutdown(self) -> None:
        """Cancel every timer and close all open sessions."""
        with self._lock:
            closed = [self._finish(sid, "shutdown") for sid in list(self._sessions)]
        for session in closed:
            if session is not None:
                self._notify(session)
        self.logger.debug("tracker shut down", closed=len(closed))

    # =========================================================================
    # Queries
    # =========================================================================

    def get_session(self, session_id: str) -> Optional[InteractionSession]:
        with self._lock:
            return self._sessions.get(session_id) or self._closed.get(session_id)

    def active_sessions(self) -> int:
        with self._lock:
            return len(self._sessions)

    def pending_timers(self) -> int:
        with self._lock:
            return len(self._timers)

    # =========================================================================
    # Timers
    # =========================================================================

    def _arm(self, session_id: str) -> None:
        self._cancel(session_id)
        self._generation += 1
        generation = self._generation
        timer = self._timer_factory(
            self._config.INACTIVITY_TIMEOUT_SECONDS,
            lambda: self._on_timeout(session_id, generation),
        )
        self._timers[session_id] = (timer, generation)
        timer.start()

    def _cancel(self, session_id: str) -> None:
        entry = self._timers.pop(session_id, None)
        if entry is not None:
            entry[0].cancel()

    def _on_timeout(self, session_id: str, generation: int) -> None:
        with self._lock:
            entry = self._timers.get(session_id)
            # A later action re-armed or cancelled the timer
            if entry is None or entry[1] != generation:
                return
            session = self._finish(session_id, "timeout")
        if session is not None:
            with log_context(user_id=session.user_id, session_id=session_id):
                self.logger.info("session timed out", actions=len(session.actions))
            self._notify(session)

    def _finish(self, session_id: str, reason: str) -> Optional[InteractionSession]:
        """Close under the lock; caller notifies afterwards."""
        self._cancel(session_id)
        session = self._sessions.pop(session_id, None)
        if session is None:
            return None
        if session.decided:
            session.outcome = determine_outcome(session.actions)
        else:
            session.outcome = SessionOutcome.IGNORED_ALL
        session.closed_at = self._clock()
        session.close_reason = reason

        self._closed[session_id] = session
        while len(self._closed) > self._config.MAX_CLOSED_SESSIONS:
            self._closed.popitem(last=False)
        return session

    def _notify(self, session: InteractionSession) -> None:
        if self.on_close is None:
            return
        try:
            self.on_close(session)
        except Exception:
            # Timer threads have no caller to report to
            self.logger.exception(
                "session close handler failed",
                user_id=session.user_id,
                session_id=session.session_id,
            )
