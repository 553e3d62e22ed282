"""
Algorithm constants for the personalization engine.

These values don't depend on the environment but are meant to be tuned.
Each config is a frozen dataclass with a module-level default instance;
Settings.to_*_config() builds environment-driven variants.
"""

from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Tuple


# =============================================================================
# Preference Aggregation
# =============================================================================

@dataclass(frozen=True)
class AggregatorConfig:
    """Configuration for the preference aggregator."""

    # Outcome weight per event type (applied to every attribute of the outfit)
    OUTCOME_WEIGHTS: Dict[str, float] = field(default_factory=lambda: {
        "viewed": 0.0,
        "hovered_color": 0.25,
        "clicked_shopping": 1.0,
        "liked": 2.0,
        "selected": 3.0,
        "wore": 5.0,
        "ignored": -0.5,
        "disliked": -2.0,
    })

    # (max age in days, multiplier), checked in order
    RECENCY_TIERS: Tuple[Tuple[int, float], ...] = ((30, 1.0), (90, 0.75), (180, 0.5))
    RECENCY_FLOOR: float = 0.25
    # Events older than this still count as interactions but carry no weight
    MAX_DECAY_HORIZON_DAYS: int = 365

    # Event types that are signals but not interactions for confidence purposes
    NON_INTERACTION_TYPES: FrozenSet[str] = frozenset({"viewed", "hovered_color"})

    # Confidence bands: (exclusive upper bound on interactions, score percent)
    CONFIDENCE_BANDS: Tuple[Tuple[int, int], ...] = ((10, 20), (25, 50), (50, 75))
    TOP_CONFIDENCE_SCORE: int = 95

    TOP_N: int = 5
    # Negative mass needed before a value is reported as disliked
    DISLIKE_THRESHOLD: float = 2.0

    # Proven colour combinations
    COMBO_COLORS: int = 3
    PROVEN_COMBO_MIN_COUNT: int = 2
    PROVEN_COMBO_LIMIT: int = 5
    MAX_COMBINATION_KEYS: int = 200

    # Events stamped further than this into the future are rejected
    MAX_FUTURE_SKEW_SECONDS: float = 86_400.0

    # Idempotency ledger kept inside the profile document
    MAX_APPLIED_EVENT_IDS: int = 50_000

    @property
    def tracked_event_types(self) -> FrozenSet[str]:
        return frozenset(self.OUTCOME_WEIGHTS)


DEFAULT_AGGREGATOR_CONFIG = AggregatorConfig()


# =============================================================================
# Blocklists
# =============================================================================

@dataclass(frozen=True)
class BlocklistConfig:
    """Configuration for hard / soft / temporary blocklists."""

    SOFT_PENALTY: float = 0.5
    PROMOTION_THRESHOLD: int = 10
    TEMPORARY_TTL_DAYS: int = 30
    TEMPORARY_MAX_ENTRIES: int = 200

    # Ignored-session analysis
    IGNORED_SESSION_MIN_OUTFITS: int = 2
    IGNORED_SESSION_SHARE: float = 0.7


DEFAULT_BLOCKLIST_CONFIG = BlocklistConfig()


# =============================================================================
# Match Scoring
# =============================================================================

@dataclass(frozen=True)
class MatchScoringConfig:
    """Configuration for candidate-vs-profile match scoring (0-100)."""

    COMPONENT_WEIGHTS: Dict[str, float] = field(default_factory=lambda: {
        "color": 0.35,
        "style": 0.30,
        "occasion": 0.20,
        "season": 0.15,
    })

    # Matched value: MATCH_BASE + MATCH_SPAN * (weight / max weight)
    MATCH_BASE: float = 60.0
    MATCH_SPAN: float = 40.0
    DISLIKED_SCORE: float = 10.0
    NEUTRAL_SCORE: float = 45.0

    # Component scores when the profile has no data for that dimension
    NO_DATA_SCORES: Dict[str, float] = field(default_factory=lambda: {
        "color": 50.0,
        "style": 50.0,
        "occasion": 70.0,
        "season": 60.0,
    })

    # Multi-valued components blend best match and mean
    BEST_WEIGHT: float = 0.6
    MEAN_WEIGHT: float = 0.4

    PERFECT_MIN: float = 90.0
    GREAT_MIN: float = 70.0
    EXPLORING_MIN: float = 50.0


DEFAULT_MATCH_SCORING_CONFIG = MatchScoringConfig()


# =============================================================================
# Diversifier
# =============================================================================

@dataclass(frozen=True)
class DiversifierConfig:
    """Configuration for slot partitioning, pattern lock and exploration."""

    # (perfect, great, exploring) per confidence tier
    SLOT_RATIOS: Dict[str, Tuple[float, float, float]] = field(default_factory=lambda: {
        "low": (0.4, 0.2, 0.4),
        "medium": (0.6, 0.2, 0.2),
        "high": (0.7, 0.2, 0.1),
        "very_high": (0.7, 0.2, 0.1),
    })
    # Tiers whose exploring ratio follows the adaptive exploration level
    ADAPTIVE_TIERS: FrozenSet[str] = frozenset({"high", "very_high"})

    # Pattern lock
    PATTERN_LOCK_WINDOW: int = 10
    PATTERN_LOCK_SHARE: float = 0.8
    LOCKED_EXPLORING_RATIO: float = 0.4
    LOCKED_DIVERGENCE: float = 0.75
    NORMAL_DIVERGENCE: float = 0.34
    # How far back accepted outfits are read for lock detection
    HISTORY_LOOKBACK_DAYS: int = 180

    # Adaptive exploration level, in percent
    EXPLORATION_START: int = 10
    EXPLORATION_MIN: int = 5
    EXPLORATION_MAX: int = 25
    EXPLORATION_STEP: int = 2
    EXPLORATION_RAISE_RATE: float = 0.30
    EXPLORATION_LOWER_RATE: float = 0.15
    EXPLORATION_MIN_SHOWN: int = 5
    EXPLORATION_MAX_PENDING: int = 100


DEFAULT_DIVERSIFIER_CONFIG = DiversifierConfig()


# =============================================================================
# Sessions
# =============================================================================

@dataclass(frozen=True)
class SessionConfig:
    """Configuration for interaction session tracking."""

    INACTIVITY_TIMEOUT_SECONDS: float = 300.0
    TERMINAL_ACTIONS: FrozenSet[str] = frozenset({"liked", "wore", "disliked"})
    # Closed sessions kept in memory for outcome lookups
    MAX_CLOSED_SESSIONS: int = 1000


DEFAULT_SESSION_CONFIG = SessionConfig()


# =============================================================================
# Document Store
# =============================================================================

@dataclass(frozen=True)
class StoreConfig:
    """Configuration for store access: retries, timeouts and caching."""

    MAX_ATTEMPTS: int = 3
    BACKOFF_BASE_SECONDS: float = 0.1
    TIMEOUT_SECONDS: float = 2.0
    PROFILE_CACHE_TTL_SECONDS: float = 300.0
    PROFILE_CACHE_MAX_SIZE: int = 1024


DEFAULT_STORE_CONFIG = StoreConfig()


# =============================================================================
# Collections
# =============================================================================

PROFILES = "profiles"
BLOCKLISTS = "blocklists"
EXPLORATION = "exploration"
EVENTS = "events"
SESSIONS = "sessions"
