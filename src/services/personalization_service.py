"""
Personalization service.

Single entry point tying the engine together:

    ingest(event)        -> event log + preference aggregation
    get_profile(user)    -> cached ComprehensivePreferences
    recommend(user, ...) -> diversified, annotated candidates
    start_session / record_action / close_session -> interaction tracking
    block_attribute / soft_block / unblock_attribute -> blocklists
    reset_user_data      -> forget a user

The recommend path never fails because of the store: an unreachable or
contended store degrades to the last cached values, then to an empty
(non-personalized) profile. Ingestion reports such failures as DEFERRED
so the caller can retry; event ids make retries safe.
"""

import random
from dataclasses import dataclass
from enum import Enum
from functools import lru_cache
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

from pydantic import ValidationError as PydanticValidationError

from config.constants import (
    DEFAULT_AGGREGATOR_CONFIG,
    DEFAULT_BLOCKLIST_CONFIG,
    DEFAULT_DIVERSIFIER_CONFIG,
    DEFAULT_MATCH_SCORING_CONFIG,
    DEFAULT_SESSION_CONFIG,
    DEFAULT_STORE_CONFIG,
    AggregatorConfig,
    BlocklistConfig,
    DiversifierConfig,
    MatchScoringConfig,
    SessionConfig,
    StoreConfig,
)
from config.settings import Settings, get_settings
from config.validation import validate_configuration
from core.errors import PersonalizationError, TransientStoreError
from core.logging import LoggerMixin, configure_from_settings, log_context
from core.utils import Clock, utc_now
from personalization.aggregator import PreferenceAggregator, validate_event
from personalization.blocklist_manager import BlocklistManager
from personalization.diversifier import Diversifier
from personalization.exploration import ExplorationTracker
from personalization.match_scoring import MatchScorer
from personalization.models import (
    AnnotatedCandidate,
    Blocklists,
    Candidate,
    ComprehensivePreferences,
    Dimension,
    DiversificationResult,
    EventType,
    InteractionEvent,
    MatchCategory,
    OutfitAttributes,
    SessionOutcome,
)
from services.event_store import EventStore
from services.interaction_tracker import InteractionSession, InteractionTracker
from storage.document_store import DocumentStore, InMemoryDocumentStore, create_document_store
from storage.profile_cache import ProfileCache


class IngestStatus(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    DEFERRED = "deferred"      # store unavailable; safe to retry


@dataclass
class IngestResult:
    status: IngestStatus
    event_id: str
    user_id: str
    error: Optional[str] = None

    @property
    def applied(self) -> bool:
        return self.status == IngestStatus.APPLIED


class PersonalizationService(LoggerMixin):
    """
    Facade over aggregation, blocklists, diversification and sessions.

    Usage:
        service = PersonalizationService.from_settings()
        service.ingest({"event_id": "e1", "user_id": "u1", "type": "liked", ...})
        result = service.recommend("u1", candidates, slot_count=5)
        service.close()
    """

    def __init__(
        self,
        store: Optional[DocumentStore] = None,
        aggregator_config: AggregatorConfig = DEFAULT_AGGREGATOR_CONFIG,
        blocklist_config: BlocklistConfig = DEFAULT_BLOCKLIST_CONFIG,
        scoring_config: MatchScoringConfig = DEFAULT_MATCH_SCORING_CONFIG,
        diversifier_config: DiversifierConfig = DEFAULT_DIVERSIFIER_CONFIG,
        session_config: SessionConfig = DEFAULT_SESSION_CONFIG,
        store_config: StoreConfig = DEFAULT_STORE_CONFIG,
        clock: Clock = utc_now,
        sleep: Optional[Callable[[float], None]] = None,
        tracker: Optional[InteractionTracker] = None,
    ):
        validate_configuration(
            aggregator_config,
            blocklist_config,
            scoring_config,
            diversifier_config,
            session_timeout_seconds=session_config.INACTIVITY_TIMEOUT_SECONDS,
        )
        self.store = store or InMemoryDocumentStore()
        self._clock = clock
        self._diversifier_config = diversifier_config

        self.events = EventStore(self.store, clock)
        self.aggregator = PreferenceAggregator(self.store, aggregator_config, store_config, clock, sleep)
        self.blocklists = BlocklistManager(self.store, blocklist_config, store_config, clock, sleep)
        self.exploration = ExplorationTracker(self.store, diversifier_config, store_config, clock, sleep)
        self.diversifier = Diversifier(MatchScorer(scoring_config), diversifier_config, blocklist_config, clock)
        self.tracker = tracker or InteractionTracker(session_config, clock=clock)
        self.tracker.on_close = self._on_session_closed

        self.profile_cache: ProfileCache[ComprehensivePreferences] = ProfileCache(
            store_config.PROFILE_CACHE_TTL_SECONDS, store_config.PROFILE_CACHE_MAX_SIZE
        )
        self.blocklist_cache: ProfileCache[Blocklists] = ProfileCache(
            store_config.PROFILE_CACHE_TTL_SECONDS, store_config.PROFILE_CACHE_MAX_SIZE
        )

    @classmethod
    def from_settings(
        cls,
        settings: Optional[Settings] = None,
        store: Optional[DocumentStore] = None,
        **kwargs: Any,
    ) -> "PersonalizationService":
        """Build a service from Settings (defaults to get_settings())."""
        settings = settings or get_settings()
        return cls(
            store=store or create_document_store(settings),
            aggregator_config=settings.to_aggregator_config(),
            blocklist_config=settings.to_blocklist_config(),
            diversifier_config=settings.to_diversifier_config(),
            session_config=settings.to_session_config(),
            store_config=settings.to_store_config(),
            **kwargs,
        )

    def __enter__(self) -> "PersonalizationService":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def close(self) -> None:
        """Close open sessions, cancel their timers and release the store."""
        self.tracker.shutdown()
        self.store.close()

    # =========================================================================
    # Ingestion
    # =========================================================================

    def ingest(self, raw: Union[InteractionEvent, Dict[str, Any]]) -> IngestResult:
        """
        Validate, log and aggregate one interaction event.

        Raises:
            ValidationError: the event is malformed (never retried)
        """
        event = validate_event(raw, self._clock(), self.aggregator.config)
        user_id = event.user_id

        with log_context(user_id=user_id, event_id=event.event_id):
            try:
                self.events.append(event)
                applied = self.aggregator.ingest(
                    event, before_commit=lambda: self.profile_cache.invalidate(user_id)
                )
            except TransientStoreError as e:
                self.logger.warning("event ingestion deferred", event_type=event.type.value, error=e.message)
                return IngestResult(IngestStatus.DEFERRED, event.event_id, user_id, error=e.message)
            finally:
                self.profile_cache.invalidate(user_id)

            if applied and event.is_positive and event.outfit is not None:
                self._record_exploration_outcome(user_id, event.outfit)

            status = IngestStatus.APPLIED if applied else IngestStatus.DUPLICATE
            return IngestResult(status, event.event_id, user_id)

    def _record_exploration_outcome(self, user_id: str, outfit: OutfitAttributes) -> None:
        try:
            self.exploration.record_outcome(user_id, outfit.signature())
        except TransientStoreError as e:
            self.logger.warning("exploration outcome not recorded", error=e.message)

    # =========================================================================
    # Reads
    # =========================================================================

    def get_profile(self, user_id: str) -> ComprehensivePreferences:
        """
        The user's profile, served from cache when fresh.

        Falls back to a stale cached profile, then to an empty profile,
        when the store is unavailable.
        """
        cached = self.profile_cache.get(user_id)
        if cached is not None:
            return cached

        token = self.profile_cache.begin_read(user_id)
        try:
            profile = self.aggregator.compute_profile(user_id)
        except TransientStoreError as e:
            stale = self.profile_cache.get(user_id, allow_stale=True)
            self.logger.warning(
                "profile unavailable, degrading",
                user_id=user_id,
                error=e.message,
                fallback="stale" if stale is not None else "empty",
            )
            return stale if stale is not None else self.aggregator.empty_profile(user_id)

        self.profile_cache.put(user_id, profile, token)
        return profile

    def get_blocklists(self, user_id: str) -> Blocklists:
        cached = self.blocklist_cache.get(user_id)
        if cached is not None:
            return cached

        token = self.blocklist_cache.begin_read(user_id)
        try:
            lists = self.blocklists.get(user_id)
        except TransientStoreError as e:
            stale = self.blocklist_cache.get(user_id, allow_stale=True)
            self.logger.warning("blocklists unavailable, degrading", user_id=user_id, error=e.message)
            return stale if stale is not None else Blocklists()

        self.blocklist_cache.put(user_id, lists, token)
        return lists

    def recent_history(self, user_id: str) -> List[OutfitAttributes]:
        try:
            return self.events.accepted_outfits(
                user_id,
                self._diversifier_config.PATTERN_LOCK_WINDOW,
                self._diversifier_config.HISTORY_LOOKBACK_DAYS,
            )
        except TransientStoreError as e:
            self.logger.warning("history unavailable, pattern lock skipped", user_id=user_id, error=e.message)
            return []

    def exploration_level(self, user_id: str) -> Optional[int]:
        try:
            return self.exploration.get(user_id).level
        except TransientStoreError as e:
            self.logger.warning("exploration level unavailable", user_id=user_id, error=e.message)
            return None

    # =========================================================================
    # Recommendation
    # =========================================================================

    def recommend(
        self,
        user_id: str,
        candidates: Sequence[Union[Candidate, Dict[str, Any]]],
        slot_count: int = 5,
        rng: Optional[random.Random] = None,
        remember: bool = True,
    ) -> DiversificationResult:
        """
        Diversify and annotate upstream candidates for a user.

        Args:
            user_id: Requesting user
            candidates: Upstream candidates (models or dicts); unreadable
                ones are dropped with a warning
            slot_count: Number of outputs wanted
            rng: Randomizes exploring picks among equals
            remember: Record the returned combinations for anti-repetition
                and count exploring picks for adaptive exploration
        """
        with log_context(user_id=user_id):
            parsed = self._parse_candidates(candidates)
            profile = self.get_profile(user_id)
            blocklists = self.get_blocklists(user_id)
            history = self.recent_history(user_id)
            level = self.exploration_level(user_id)

            result = self.diversifier.select_and_annotate(
                parsed, profile, blocklists, history, slot_count, exploration_level=level, rng=rng
            )
            if remember and result.candidates:
                self._remember(user_id, result.candidates)

            self.logger.info(
                "recommendations served",
                tier=result.confidence_tier.value,
                returned=len(result.candidates),
                pattern_lock=result.pattern_lock.locked,
                insufficient_diversity=result.insufficient_diversity,
            )
            return result

    def _parse_candidates(self, candidates: Sequence[Union[Candidate, Dict[str, Any]]]) -> List[Candidate]:
        parsed = []
        for raw in candidates:
            if isinstance(raw, Candidate):
                parsed.append(raw)
                continue
            try:
                parsed.append(Candidate.model_validate(raw))
            except PydanticValidationError as e:
                self.logger.warning("unreadable candidate dropped", errors=e.error_count())
        return parsed

    def _remember(self, user_id: str, served: Sequence[AnnotatedCandidate]) -> None:
        signatures = [
            c.candidate.attributes.signature() for c in served if not c.candidate.attributes.is_empty()
        ]
        exploring = [
            c.candidate.attributes.signature()
            for c in served
            if c.slot == MatchCategory.EXPLORING and not c.candidate.attributes.is_empty()
        ]
        try:
            self.blocklists.add_temporary_many(
                user_id, signatures, before_commit=lambda: self.blocklist_cache.invalidate(user_id)
            )
        except TransientStoreError as e:
            self.logger.warning("anti-repetition entries not recorded", error=e.message)
        finally:
            self.blocklist_cache.invalidate(user_id)

        if exploring:
            try:
                self.exploration.record_shown(user_id, exploring)
            except TransientStoreError as e:
                self.logger.warning("exploring picks not counted", error=e.message)

    # =========================================================================
    # Blocklists
    # =========================================================================

    def block_attribute(
        self,
        user_id: str,
        dimension: Union[Dimension, str],
        value: str,
        reason: str = "not my style",
    ) -> Blocklists:
        """Hard-block a value ("not my style")."""
        try:
            return self.blocklists.add_hard(
                user_id, dimension, value, reason, before_commit=lambda: self.blocklist_cache.invalidate(user_id)
            )
        finally:
            self.blocklist_cache.invalidate(user_id)

    def soft_block(self, user_id: str, dimension: Union[Dimension, str], value: str, reason: str = "ignored") -> Blocklists:
        try:
            return self.blocklists.add_soft(
                user_id, dimension, value, reason, before_commit=lambda: self.blocklist_cache.invalidate(user_id)
            )
        finally:
            self.blocklist_cache.invalidate(user_id)

    def unblock_attribute(self, user_id: str, dimension: Union[Dimension, str], value: str) -> Blocklists:
        try:
            return self.blocklists.remove_hard(
                user_id, dimension, value, before_commit=lambda: self.blocklist_cache.invalidate(user_id)
            )
        finally:
            self.blocklist_cache.invalidate(user_id)

    # =========================================================================
    # Sessions
    # =========================================================================

    def start_session(
        self,
        user_id: str,
        recommended: Optional[Sequence[Union[Candidate, AnnotatedCandidate]]] = None,
        occasion: Optional[str] = None,
        gender: Optional[str] = None,
        weather: Optional[str] = None,
        season: Optional[str] = None,
    ) -> str:
        """Open an interaction session for the outfits just shown."""
        outfits: List[Tuple[str, OutfitAttributes]] = []
        for item in recommended or []:
            candidate = item.candidate if isinstance(item, AnnotatedCandidate) else item
            outfits.append((candidate.candidate_id, candidate.attributes))

        session = self.tracker.start_session(
            user_id, occasion=occasion, gender=gender, weather=weather, season=season, recommended=outfits
        )
        self._save_session(session)
        return session.session_id

    def record_action(
        self,
        session_id: str,
        action_type: Union[EventType, str],
        outfit_id: Optional[str] = None,
        outfit_position: Optional[int] = None,
        duration_ms: Optional[int] = None,
        color_hex: Optional[str] = None,
        platform: Optional[str] = None,
    ) -> IngestResult:
        """
        Record an action in a session and ingest it as an event.

        Raises:
            ValidationError: unknown or closed session, malformed action
        """
        session, action = self.tracker.record_action(
            session_id,
            action_type,
            outfit_id=outfit_id,
            outfit_position=outfit_position,
            duration_ms=duration_ms,
            color_hex=color_hex,
            platform=platform,
        )
        event = {
            "event_id": f"{session.session_id}:{action.sequence}",
            "user_id": session.user_id,
            "session_id": session.session_id,
            "type": action.type,
            "timestamp": action.timestamp,
            "outfit_id": outfit_id,
            "outfit_position": outfit_position,
            "color_hex": color_hex,
            "platform": platform,
            "duration_ms": duration_ms,
            "outfit": session.outfit(outfit_id),
        }
        result = self.ingest(event)
        if session.decided:
            self._save_session(session)
        return result

    def close_session(self, session_id: str) -> Optional[InteractionSession]:
        return self.tracker.close_session(session_id)

    def _on_session_closed(self, session: InteractionSession) -> None:
        with log_context(user_id=session.user_id, session_id=session.session_id):
            self._save_session(session)
            if session.outcome != SessionOutcome.IGNORED_ALL or not session.recommended:
                return

            touched = {a.outfit_id for a in session.actions if a.type != EventType.VIEWED}
            ignored = [(oid, attrs) for oid, attrs in session.recommended if oid not in touched]
            closed_at = session.closed_at or self._clock()
            try:
                for position, (outfit_id, attributes) in enumerate(ignored):
                    self.ingest({
                        "event_id": f"{session.session_id}:ignored:{outfit_id}",
                        "user_id": session.user_id,
                        "session_id": session.session_id,
                        "type": EventType.IGNORED,
                        "timestamp": closed_at,
                        "outfit_id": outfit_id,
                        "outfit_position": position,
                        "outfit": attributes,
                    })
                self.blocklists.analyze_ignored_session(
                    session.user_id,
                    [attrs for _, attrs in ignored],
                    before_commit=lambda: self.blocklist_cache.invalidate(session.user_id),
                )
            except PersonalizationError as e:
                self.logger.warning("ignored session not analyzed", error=e.message)
            finally:
                self.blocklist_cache.invalidate(session.user_id)

    def _save_session(self, session: InteractionSession) -> None:
        try:
            self.events.save_session(session)
        except TransientStoreError as e:
            self.logger.warning("session record not saved", session_id=session.session_id, error=e.message)

    # =========================================================================
    # Reset
    # =========================================================================

    def reset_user_data(self, user_id: str) -> Dict[str, Any]:
        """
        Forget everything stored for a user.

        Raises:
            TransientStoreError: the store was unavailable; nothing is
                guaranteed deleted and the call can be repeated
        """
        try:
            summary = {
                "profile": self.aggregator.reset(user_id),
                "blocklists": self.blocklists.reset(user_id),
                "exploration": self.exploration.reset(user_id),
                "events": self.events.delete_user(user_id),
                "sessions": self.events.delete_sessions(user_id),
            }
        finally:
            self.profile_cache.invalidate(user_id)
            self.blocklist_cache.invalidate(user_id)
        self.logger.info("user data reset", user_id=user_id, **summary)
        return summary


# =============================================================================
# Singleton
# =============================================================================

@lru_cache()
def get_personalization_service() -> PersonalizationService:
    """Process-wide service built from get_settings(); configures logging first."""
    settings = get_settings()
    configure_from_settings(settings)
    return PersonalizationService.from_settings(settings)
