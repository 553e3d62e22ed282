"""
Interaction event log and session records.

Events are append-only and idempotent on (user_id, event_id). The log is
the source for accepted-outfit history (pattern lock detection) and for
replaying a user's interactions; aggregated weights live in the profile
document, not here.
"""

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError

from config.constants import EVENTS, SESSIONS
from core.logging import LoggerMixin
from core.utils import Clock, to_epoch, utc_now
from personalization.models import InteractionEvent, OutfitAttributes
from storage.document_store import DocumentStore


class EventStore(LoggerMixin):
    """Typed access to the EVENTS and SESSIONS collections."""

    def __init__(self, store: DocumentStore, clock: Clock = utc_now):
        self._store = store
        self._clock = clock

    @staticmethod
    def _event_key(event: InteractionEvent) -> str:
        return f"{event.user_id}:{event.event_id}"

    def append(self, event: InteractionEvent) -> bool:
        """
        Persist an event.

        Returns:
            False if this user already logged the event id
        """
        return self._store.append(
            EVENTS,
            event.user_id,
            self._event_key(event),
            to_epoch(event.timestamp),
            event.to_record(),
        )

    def events_for(
        self,
        user_id: str,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[InteractionEvent]:
        """A user's events, oldest first. Unreadable records are skipped."""
        records = self._store.query(
            EVENTS,
            user_id,
            since=to_epoch(since) if since else None,
            until=to_epoch(until) if until else None,
            limit=limit,
        )
        events = []
        for record in records:
            try:
                events.append(InteractionEvent.model_validate(record))
            except PydanticValidationError:
                self.logger.warning("unreadable event record skipped", user_id=user_id, event_id=record.get("event_id"))
        return events

    def accepted_outfits(self, user_id: str, limit: int, lookback_days: int = 180) -> List[OutfitAttributes]:
        """
        Outfits from the user's most recent positive events, oldest first.

        Only events carrying outfit attributes count.
        """
        since = self._clock() - timedelta(days=lookback_days)
        accepted = [
            e.outfit
            for e in self.events_for(user_id, since=since)
            if e.is_positive and e.outfit is not None and not e.outfit.is_empty()
        ]
        return accepted[-limit:] if limit > 0 else []

    def delete_user(self, user_id: str) -> int:
        return self._store.delete_user_records(EVENTS, user_id)

    # =========================================================================
    # Sessions
    # =========================================================================

    def save_session(self, session: Any) -> None:
        """Create or overwrite a session record (anything with to_dict())."""
        data = session.to_dict()
        self._store.upsert_record(
            SESSIONS,
            session.user_id,
            f"{session.user_id}:{session.session_id}",
            to_epoch(session.started_at),
            data,
        )

    def sessions_for(
        self,
        user_id: str,
        since: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        return self._store.query(
            SESSIONS,
            user_id,
            since=to_epoch(since) if since else None,
            limit=limit,
        )

    def delete_sessions(self, user_id: str) -> int:
        return self._store.delete_user_records(SESSIONS, user_id)
