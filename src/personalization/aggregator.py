"""
Preference aggregation.

Turns interaction events into per-dimension weight maps and derives the
ComprehensivePreferences profile from them.

Update rule, applied to every attribute of the event's outfit:

    weight = max(0, weight + outcome_weight(type) * recency_multiplier(age))

The profile document is maintained incrementally: each event is folded
in with an atomic read-modify-write, and the event id is recorded in the
same write so replays are no-ops. compute_profile() only reads.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple, Union

from pydantic import ValidationError as PydanticValidationError

from config.constants import (
    DEFAULT_AGGREGATOR_CONFIG,
    DEFAULT_STORE_CONFIG,
    PROFILES,
    AggregatorConfig,
    StoreConfig,
)
from core.errors import ValidationError
from core.logging import LoggerMixin
from core.utils import Clock, to_epoch, utc_now
from personalization.models import (
    ColorPreferences,
    ComprehensivePreferences,
    ConfidenceTier,
    Dimension,
    EventType,
    InteractionEvent,
    OccasionPreferences,
    PreferenceWeight,
    SeasonalPreferences,
    ShoppingPreferences,
    StylePreferences,
    WeightedValue,
)
from personalization.normalization import (
    color_name,
    color_saturation,
    color_temperature,
    season_for,
)
from storage.atomic import atomic_merge
from storage.document_store import DocumentStore


# =============================================================================
# Pure helpers
# =============================================================================

def recency_multiplier(age_days: float, config: AggregatorConfig = DEFAULT_AGGREGATOR_CONFIG) -> float:
    """
    Tiered decay: full weight inside the first window, stepping down per
    tier, a floor up to the decay horizon and nothing beyond it.
    """
    age_days = max(0.0, age_days)
    for max_days, multiplier in config.RECENCY_TIERS:
        if age_days <= max_days:
            return multiplier
    if age_days <= config.MAX_DECAY_HORIZON_DAYS:
        return config.RECENCY_FLOOR
    return 0.0


def outcome_weight(event_type: Union[EventType, str], config: AggregatorConfig = DEFAULT_AGGREGATOR_CONFIG) -> float:
    key = event_type.value if isinstance(event_type, EventType) else event_type
    return config.OUTCOME_WEIGHTS[key]


def confidence_for(
    total_interactions: int,
    config: AggregatorConfig = DEFAULT_AGGREGATOR_CONFIG,
) -> Tuple[ConfidenceTier, int]:
    """
    Confidence tier and percent for an interaction count.

    <10 LOW (20), <25 MEDIUM (50), <50 HIGH (75), otherwise VERY_HIGH (95).
    """
    tiers = (ConfidenceTier.LOW, ConfidenceTier.MEDIUM, ConfidenceTier.HIGH)
    for tier, (bound, score) in zip(tiers, config.CONFIDENCE_BANDS):
        if total_interactions < bound:
            return tier, score
    return ConfidenceTier.VERY_HIGH, config.TOP_CONFIDENCE_SCORE


def rank_weights(weights: Iterable[PreferenceWeight]) -> List[PreferenceWeight]:
    """Highest weight first; ties by insertion order, then key."""
    return sorted(
        (w for w in weights if w.weight > 0),
        key=lambda w: (-w.weight, w.order, w.key),
    )


def validate_event(
    raw: Union[InteractionEvent, Dict[str, Any]],
    now: Optional[datetime] = None,
    config: AggregatorConfig = DEFAULT_AGGREGATOR_CONFIG,
) -> InteractionEvent:
    """
    Parse and check an event at the ingestion boundary.

    Raises:
        ValidationError: malformed shape, unknown type or attribute value,
            blank user, or a timestamp too far in the future
    """
    if isinstance(raw, InteractionEvent):
        event = raw
    else:
        try:
            event = InteractionEvent.model_validate(raw)
        except PydanticValidationError as e:
            fields = [".".join(str(p) for p in err["loc"]) for err in e.errors()]
            raise ValidationError(
                f"invalid interaction event: {e.error_count()} error(s)",
                details={"fields": fields, "errors": [err["msg"] for err in e.errors()]},
            ) from e

    if not event.user_id.strip():
        raise ValidationError("event has no user", details={"event_id": event.event_id})

    now = now or utc_now()
    if event.timestamp - now > timedelta(seconds=config.MAX_FUTURE_SKEW_SECONDS):
        raise ValidationError(
            "event timestamp is in the future",
            details={"event_id": event.event_id, "timestamp": event.timestamp.isoformat()},
        )
    return event


# =============================================================================
# Profile Document
# =============================================================================

WEIGHTED_DIMENSIONS = (
    Dimension.COLOR,
    Dimension.STYLE,
    Dimension.OCCASION,
    Dimension.SEASON,
    Dimension.PATTERN,
    Dimension.FIT,
)


@dataclass
class ProfileDocument:
    """Stored, incrementally maintained aggregation state for one user."""

    user_id: str
    weights: Dict[str, Dict[str, PreferenceWeight]] = field(
        default_factory=lambda: {d.value: {} for d in WEIGHTED_DIMENSIONS}
    )
    occasion_styles: Dict[str, Dict[str, float]] = field(default_factory=dict)
    seasonal_colors: Dict[str, Dict[str, float]] = field(default_factory=dict)
    platform_clicks: Dict[str, int] = field(default_factory=dict)
    combinations: Dict[str, float] = field(default_factory=dict)
    total_interactions: int = 0
    applied_event_ids: List[str] = field(default_factory=list)
    next_order: int = 0
    updated_at: Optional[float] = None
    _applied_index: Set[str] = field(default_factory=set, init=False, repr=False, compare=False)

    def __post_init__(self):
        self._applied_index = set(self.applied_event_ids)

    def dimension(self, dimension: Dimension) -> Dict[str, PreferenceWeight]:
        return self.weights.setdefault(dimension.value, {})

    def has_applied(self, event_id: str) -> bool:
        return event_id in self._applied_index

    def mark_applied(self, event_id: str, limit: int) -> None:
        """Remember an event id, forgetting the oldest beyond limit."""
        self.applied_event_ids.append(event_id)
        self._applied_index.add(event_id)
        overflow = len(self.applied_event_ids) - limit
        if overflow > 0:
            for old in self.applied_event_ids[:overflow]:
                self._applied_index.discard(old)
            del self.applied_event_ids[:overflow]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "weights": {
                dim: {k: w.to_dict() for k, w in values.items()}
                for dim, values in self.weights.items()
            },
            "occasion_styles": self.occasion_styles,
            "seasonal_colors": self.seasonal_colors,
            "platform_clicks": self.platform_clicks,
            "combinations": self.combinations,
            "total_interactions": self.total_interactions,
            "applied_event_ids": self.applied_event_ids,
            "next_order": self.next_order,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProfileDocument":
        doc = cls(user_id=data["user_id"], applied_event_ids=list(data.get("applied_event_ids", [])))
        for dim, values in data.get("weights", {}).items():
            doc.weights[dim] = {k: PreferenceWeight.from_dict(v) for k, v in values.items()}
        doc.occasion_styles = data.get("occasion_styles", {})
        doc.seasonal_colors = data.get("seasonal_colors", {})
        doc.platform_clicks = data.get("platform_clicks", {})
        doc.combinations = data.get("combinations", {})
        doc.total_interactions = int(data.get("total_interactions", 0))
        doc.next_order = int(data.get("next_order", 0))
        doc.updated_at = data.get("updated_at")
        return doc


# =============================================================================
# Aggregator
# =============================================================================

class PreferenceAggregator(LoggerMixin):
    """
    Folds events into profile documents and derives profiles.

    Usage:
        aggregator = PreferenceAggregator(store)
        aggregator.ingest(event)
        profile = aggregator.compute_profile("user_123")
    """

    def __init__(
        self,
        store: DocumentStore,
        config: AggregatorConfig = DEFAULT_AGGREGATOR_CONFIG,
        store_config: StoreConfig = DEFAULT_STORE_CONFIG,
        clock: Clock = utc_now,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        self._store = store
        self._config = config
        self._store_config = store_config
        self._clock = clock
        self._sleep = sleep

    @property
    def config(self) -> AggregatorConfig:
        return self._config

    # =========================================================================
    # Ingestion
    # =========================================================================

    def ingest(
        self,
        raw: Union[InteractionEvent, Dict[str, Any]],
        before_commit: Optional[Callable[[], None]] = None,
    ) -> bool:
        """
        Validate an event and fold it into the user's profile document.

        Returns:
            True if applied, False if the event id was already applied

        Raises:
            ValidationError: malformed event (never retried)
            TransientStoreError: the store stayed unavailable or contended
        """
        now = self._clock()
        event = validate_event(raw, now, self._config)

        def mutate(data: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
            doc = ProfileDocument.from_dict(data) if data else ProfileDocument(user_id=event.user_id)
            if not self.apply_event(doc, event, now):
                return None
            return doc.to_dict()

        kwargs = {"sleep": self._sleep} if self._sleep else {}
        result = atomic_merge(
            self._store,
            PROFILES,
            event.user_id,
            mutate,
            max_attempts=self._store_config.MAX_ATTEMPTS,
            backoff_base=self._store_config.BACKOFF_BASE_SECONDS,
            before_commit=before_commit,
            **kwargs,
        )
        if result.changed:
            self.logger.debug(
                "event aggregated",
                user_id=event.user_id,
                event_id=event.event_id,
                event_type=event.type.value,
                attempts=result.attempts,
            )
        else:
            self.logger.debug("duplicate event ignored", user_id=event.user_id, event_id=event.event_id)
        return result.changed

    def apply_event(self, doc: ProfileDocument, event: InteractionEvent, now: datetime) -> bool:
        """
        Fold one event into a document in place.

        Returns False without touching the document if the event id was
        already applied.
        """
        if doc.has_applied(event.event_id):
            return False
        doc.mark_applied(event.event_id, self._config.MAX_APPLIED_EVENT_IDS)

        if event.type.value not in self._config.NON_INTERACTION_TYPES:
            doc.total_interactions += 1

        age_days = (now - event.timestamp).total_seconds() / 86400
        delta = outcome_weight(event.type, self._config) * recency_multiplier(age_days, self._config)
        at = to_epoch(now)
        doc.updated_at = at

        if event.type == EventType.CLICKED_SHOPPING:
            platform = event.platform or "unknown"
            doc.platform_clicks[platform] = doc.platform_clicks.get(platform, 0) + 1

        if delta == 0:
            return True

        if event.type == EventType.HOVERED_COLOR:
            self._apply(doc, Dimension.COLOR, event.color_hex, delta, at)
            return True

        outfit = event.outfit
        if outfit is None or outfit.is_empty():
            return True

        season = outfit.season or season_for(event.timestamp)
        for dimension in WEIGHTED_DIMENSIONS:
            values = outfit.values(dimension)
            if dimension == Dimension.SEASON:
                values = [season.value]
            for value in values:
                self._apply(doc, dimension, value, delta, at)

        if delta > 0:
            occasion = outfit.occasion.value if outfit.occasion else "casual"
            styles = doc.occasion_styles.setdefault(occasion, {})
            for style in outfit.styles:
                styles[style.value] = styles.get(style.value, 0.0) + delta

            seasonal = doc.seasonal_colors.setdefault(season.value, {})
            for color in outfit.colors:
                seasonal[color] = seasonal.get(color, 0.0) + delta

            if event.is_positive:
                self._count_combination(doc, outfit.colors, 2 if event.type == EventType.WORE else 1)

        return True

    def _apply(self, doc: ProfileDocument, dimension: Dimension, key: str, delta: float, at: float) -> None:
        values = doc.dimension(dimension)
        weight = values.get(key)
        if weight is None:
            weight = PreferenceWeight(key=key, order=doc.next_order)
            doc.next_order += 1
            values[key] = weight
        weight.apply(delta, at)

    def _count_combination(self, doc: ProfileDocument, colors: List[str], count: int) -> None:
        palette = colors[: self._config.COMBO_COLORS]
        if len(palette) < 2:
            return
        key = "|".join(sorted(palette))
        doc.combinations[key] = doc.combinations.get(key, 0) + count
        if len(doc.combinations) > self._config.MAX_COMBINATION_KEYS:
            weakest = min(doc.combinations.items(), key=lambda kv: (kv[1], kv[0]))[0]
            if weakest != key:
                del doc.combinations[weakest]

    # =========================================================================
    # Profile
    # =========================================================================

    def load_document(self, user_id: str) -> ProfileDocument:
        stored = self._store.get(PROFILES, user_id)
        if stored is None:
            return ProfileDocument(user_id=user_id)
        return ProfileDocument.from_dict(stored.data)

    def compute_profile(self, user_id: str) -> ComprehensivePreferences:
        """
        Read the user's document and derive the full profile.

        A user with no document gets a well-formed empty LOW profile.
        """
        return self.build_profile(self.load_document(user_id))

    def empty_profile(self, user_id: str) -> ComprehensivePreferences:
        return self.build_profile(ProfileDocument(user_id=user_id))

    def build_profile(self, doc: ProfileDocument) -> ComprehensivePreferences:
        now = self._clock()
        tier, score = confidence_for(doc.total_interactions, self._config)

        colors = doc.dimension(Dimension.COLOR)
        styles = doc.dimension(Dimension.STYLE)
        occasions = doc.dimension(Dimension.OCCASION)
        seasons = doc.dimension(Dimension.SEASON)

        color_prefs = ColorPreferences(
            favorites=self._top(colors, named=True),
            weights=self._weights(colors),
            disliked=self._disliked(colors),
            proven_combinations=self._proven_combinations(doc),
            intensity=self._intensity(colors),
            temperature=self._temperature(colors),
        )
        style_prefs = StylePreferences(
            favorites=self._top(styles),
            weights=self._weights(styles),
            disliked=self._disliked(styles),
            by_occasion={
                occ: [k for k, _ in sorted(m.items(), key=lambda kv: (-kv[1], kv[0]))[:3]]
                for occ, m in sorted(doc.occasion_styles.items())
                if m
            },
            consistency=self._consistency(styles),
        )
        occasion_prefs = OccasionPreferences(
            favorites=self._top(occasions),
            weights=self._weights(occasions),
            disliked=self._disliked(occasions),
        )

        colors_by_season = {
            season: [k for k, _ in sorted(m.items(), key=lambda kv: (-kv[1], kv[0]))[: self._config.TOP_N]]
            for season, m in sorted(doc.seasonal_colors.items())
            if m
        }
        seasonal = SeasonalPreferences(
            current_season=season_for(now),
            weights=self._weights(seasons),
            colors_by_season=colors_by_season,
            shifts=self._seasonal_shifts(colors_by_season),
        )

        total_clicks = sum(doc.platform_clicks.values())
        shopping = ShoppingPreferences(
            total_clicks=total_clicks,
            platform_shares={
                platform: round(count / total_clicks * 100, 1)
                for platform, count in sorted(doc.platform_clicks.items(), key=lambda kv: (-kv[1], kv[0]))
            } if total_clicks else {},
        )

        return ComprehensivePreferences(
            user_id=doc.user_id,
            colors=color_prefs,
            styles=style_prefs,
            occasions=occasion_prefs,
            seasonal=seasonal,
            shopping=shopping,
            patterns=self._top(doc.dimension(Dimension.PATTERN)),
            fits=self._top(doc.dimension(Dimension.FIT)),
            confidence_tier=tier,
            confidence_score=score,
            total_interactions=doc.total_interactions,
            computed_at=now,
        )

    # -------------------------------------------------------------------------
    # Derived signals
    # -------------------------------------------------------------------------

    def _top(self, values: Dict[str, PreferenceWeight], named: bool = False) -> List[WeightedValue]:
        return [
            WeightedValue(
                key=w.key,
                name=color_name(w.key) if named else w.key,
                weight=round(w.weight, 4),
                frequency=w.frequency,
            )
            for w in rank_weights(values.values())[: self._config.TOP_N]
        ]

    @staticmethod
    def _weights(values: Dict[str, PreferenceWeight]) -> Dict[str, float]:
        return {w.key: w.weight for w in rank_weights(values.values())}

    def _disliked(self, values: Dict[str, PreferenceWeight]) -> List[str]:
        disliked = [
            w for w in values.values()
            if w.negative >= self._config.DISLIKE_THRESHOLD and w.negative > w.positive
        ]
        return [w.key for w in sorted(disliked, key=lambda w: (-w.negative, w.order, w.key))]

    def _proven_combinations(self, doc: ProfileDocument) -> List[List[str]]:
        proven = [
            (key, count) for key, count in doc.combinations.items()
            if count >= self._config.PROVEN_COMBO_MIN_COUNT
        ]
        proven.sort(key=lambda kv: (-kv[1], kv[0]))
        return [key.split("|") for key, _ in proven[: self._config.PROVEN_COMBO_LIMIT]]

    @staticmethod
    def _weighted_mean(values: Dict[str, PreferenceWeight], fn: Callable[[str], float]) -> Optional[float]:
        total = sum(w.weight for w in values.values())
        if total <= 0:
            return None
        return sum(fn(w.key) * w.weight for w in values.values()) / total

    def _intensity(self, colors: Dict[str, PreferenceWeight]) -> str:
        saturation = self._weighted_mean(colors, color_saturation)
        if saturation is None:
            return "balanced"
        if saturation > 0.7:
            return "vibrant"
        if saturation < 0.4:
            return "muted"
        return "balanced"

    def _temperature(self, colors: Dict[str, PreferenceWeight]) -> str:
        temperature = self._weighted_mean(colors, color_temperature)
        if temperature is None:
            return "neutral"
        if temperature > 0.3:
            return "warm"
        if temperature < -0.3:
            return "cool"
        return "neutral"

    @staticmethod
    def _consistency(styles: Dict[str, PreferenceWeight]) -> int:
        ranked = [w.weight for w in rank_weights(styles.values())]
        total = sum(ranked)
        if total <= 0:
            return 0
        return round(sum(ranked[:3]) / max(total, 1) * 100)

    @staticmethod
    def _seasonal_shifts(colors_by_season: Dict[str, List[str]]) -> List[str]:
        shifts = []
        seasons = [s for s in ("summer", "monsoon", "winter") if colors_by_season.get(s)]
        for i, first in enumerate(seasons):
            for second in seasons[i + 1:]:
                a, b = set(colors_by_season[first]), set(colors_by_season[second])
                if a - b and b - a:
                    shifts.append(f"Color preferences shift between {first} and {second}")
        return shifts

    # =========================================================================
    # Reset
    # =========================================================================

    def reset(self, user_id: str) -> bool:
        """Delete the user's profile document (explicit data reset)."""
        deleted = self._store.delete(PROFILES, user_id)
        self.logger.info("profile reset", user_id=user_id, existed=deleted)
        return deleted
