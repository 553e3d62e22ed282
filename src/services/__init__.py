"""
Services module for business logic.

Provides interaction session tracking, the event log and the
personalization facade used by callers.
"""

from services.event_store import EventStore
from services.interaction_tracker import InteractionSession, InteractionTracker, determine_outcome
from services.personalization_service import (
    IngestResult,
    IngestStatus,
    PersonalizationService,
    get_personalization_service,
)

__all__ = [
    "EventStore",
    "InteractionSession",
    "InteractionTracker",
    "determine_outcome",
    "IngestResult",
    "IngestStatus",
    "PersonalizationService",
    "get_personalization_service",
]
