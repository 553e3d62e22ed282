"""
Data models for the personalization engine.

Models cover:
- Interaction events and outfit attributes (ingestion boundary)
- Stored preference weights and blocklists (documents with to_dict/from_dict)
- ComprehensivePreferences (the profile handed to consumers)
- Candidates and annotated, diversified output
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Set

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from core.utils import ensure_utc
from personalization.enums import (
    BlockTier,
    ConfidenceTier,
    Dimension,
    EventType,
    MatchCategory,
    OccasionCategory,
    Season,
    SessionOutcome,
    StyleCategory,
)
from personalization.normalization import (
    extract_keywords,
    normalize_color,
    normalize_colors,
    normalize_fits,
    normalize_occasion,
    normalize_patterns,
    normalize_season,
    normalize_styles,
)

__all__ = [
    "EventType",
    "SessionOutcome",
    "ConfidenceTier",
    "MatchCategory",
    "BlockTier",
    "Dimension",
    "StyleCategory",
    "OccasionCategory",
    "Season",
    "OutfitAttributes",
    "InteractionEvent",
    "Candidate",
    "PreferenceWeight",
    "WeightedValue",
    "ComprehensivePreferences",
    "HardBlock",
    "SoftBlock",
    "TemporaryBlock",
    "Blocklists",
    "BlocklistDecision",
    "MatchBreakdown",
    "AnnotatedCandidate",
    "PatternLockStatus",
    "DiversificationResult",
]


# =============================================================================
# Outfit Attributes
# =============================================================================

class OutfitAttributes(BaseModel):
    """
    Normalized attributes of one outfit.

    Constructing it directly is strict: unknown colors, styles, patterns
    or fits raise. Use lenient() for candidate data.
    """

    model_config = ConfigDict(frozen=True)

    colors: List[str] = Field(default_factory=list)     # canonical #rrggbb
    styles: List[StyleCategory] = Field(default_factory=list)
    occasion: Optional[OccasionCategory] = None
    season: Optional[Season] = None
    patterns: List[str] = Field(default_factory=list)
    fits: List[str] = Field(default_factory=list)

    @field_validator("colors", mode="before")
    @classmethod
    def _colors(cls, v):
        return normalize_colors(v or [])

    @field_validator("styles", mode="before")
    @classmethod
    def _styles(cls, v):
        return normalize_styles(v or [])

    @field_validator("occasion", mode="before")
    @classmethod
    def _occasion(cls, v):
        return None if v is None else normalize_occasion(v)

    @field_validator("season", mode="before")
    @classmethod
    def _season(cls, v):
        return None if v is None else normalize_season(v)

    @field_validator("patterns", mode="before")
    @classmethod
    def _patterns(cls, v):
        return normalize_patterns(v or [])

    @field_validator("fits", mode="before")
    @classmethod
    def _fits(cls, v):
        return normalize_fits(v or [])

    @classmethod
    def lenient(cls, raw: Optional[Dict[str, Any]], description: Optional[str] = None) -> "OutfitAttributes":
        """
        Build attributes, dropping values outside the known vocabulary.

        Missing styles/patterns/fits/colors fall back to keywords found
        in the description.
        """
        raw = dict(raw or {})
        extracted = extract_keywords(description) if description else {}
        colors = raw.get("colors") or raw.get("color_palette") or extracted.get("colors") or []
        season = normalize_season(raw["season"], strict=False) if raw.get("season") else None
        return cls(
            colors=normalize_colors(colors, strict=False),
            styles=normalize_styles(raw.get("styles") or extracted.get("styles") or [], strict=False),
            occasion=normalize_occasion(raw["occasion"]) if raw.get("occasion") else None,
            season=season,
            patterns=normalize_patterns(raw.get("patterns") or extracted.get("patterns") or [], strict=False),
            fits=normalize_fits(raw.get("fits") or extracted.get("fits") or [], strict=False),
        )

    def values(self, dimension: Dimension) -> List[str]:
        """Plain string values for one dimension."""
        if dimension == Dimension.COLOR:
            return list(self.colors)
        if dimension == Dimension.STYLE:
            return [s.value for s in self.styles]
        if dimension == Dimension.OCCASION:
            return [self.occasion.value] if self.occasion else []
        if dimension == Dimension.SEASON:
            return [self.season.value] if self.season else []
        if dimension == Dimension.PATTERN:
            return list(self.patterns)
        return list(self.fits)

    def tokens(self) -> Set[str]:
        """All values as 'dimension:value' tokens."""
        return {f"{d.value}:{v}" for d in Dimension for v in self.values(d)}

    def signature(self) -> str:
        """
        Exact-combination key used for anti-repetition: sorted colors,
        then sorted styles.
        """
        colors = "|".join(sorted(self.colors))
        styles = "|".join(sorted(s.value for s in self.styles))
        return f"{colors}/{styles}"

    def is_empty(self) -> bool:
        return not (self.colors or self.styles or self.occasion or self.season or self.patterns or self.fits)


# =============================================================================
# Interaction Events
# =============================================================================

class InteractionEvent(BaseModel):
    """Immutable record of one user interaction, deduplicated by event_id."""

    model_config = ConfigDict(frozen=True)

    event_id: str = Field(..., min_length=1)
    user_id: str = Field(..., min_length=1)
    session_id: Optional[str] = None
    type: EventType
    timestamp: datetime
    outfit_id: Optional[str] = None
    outfit_position: Optional[int] = Field(default=None, ge=0)
    color_hex: Optional[str] = None
    platform: Optional[str] = None
    duration_ms: Optional[int] = Field(default=None, ge=0)
    outfit: Optional[OutfitAttributes] = None

    @field_validator("timestamp")
    @classmethod
    def _utc(cls, v: datetime) -> datetime:
        return ensure_utc(v)

    @field_validator("color_hex", mode="before")
    @classmethod
    def _color_hex(cls, v):
        return None if v in (None, "") else normalize_color(v)

    @field_validator("platform", mode="before")
    @classmethod
    def _platform(cls, v):
        if v is None:
            return None
        v = str(v).strip().lower()
        return v or None

    @model_validator(mode="after")
    def _type_requirements(self) -> "InteractionEvent":
        if self.type == EventType.HOVERED_COLOR and not self.color_hex:
            raise ValueError("hovered_color events need color_hex")
        return self

    @property
    def is_positive(self) -> bool:
        return self.type in (EventType.LIKED, EventType.SELECTED, EventType.WORE)

    def to_record(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


# =============================================================================
# Candidates
# =============================================================================

class Candidate(BaseModel):
    """A recommendation candidate produced upstream."""

    candidate_id: str = Field(..., min_length=1)
    attributes: OutfitAttributes = Field(default_factory=OutfitAttributes)
    base_score: float = 0.0
    title: Optional[str] = None
    description: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _lenient_attributes(cls, data: Any) -> Any:
        if isinstance(data, dict):
            attrs = data.get("attributes")
            if not isinstance(attrs, OutfitAttributes):
                data = dict(data)
                data["attributes"] = OutfitAttributes.lenient(attrs, data.get("description"))
        return data


# =============================================================================
# Stored Preference Weights
# =============================================================================

@dataclass
class PreferenceWeight:
    """
    Accumulated weight for one normalized value.

    weight never goes below 0; positive/negative keep the gross sums so
    disliked values stay visible after the weight floors out.
    """

    key: str
    weight: float = 0.0
    frequency: int = 0
    last_updated_at: Optional[float] = None    # epoch seconds
    positive: float = 0.0
    negative: float = 0.0
    order: int = 0                             # insertion index for tie-breaks

    def apply(self, delta: float, at: float) -> None:
        self.weight = max(0.0, self.weight + delta)
        if delta > 0:
            self.positive += delta
        elif delta < 0:
            self.negative += -delta
        self.frequency += 1
        self.last_updated_at = at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "weight": self.weight,
            "frequency": self.frequency,
            "last_updated_at": self.last_updated_at,
            "positive": self.positive,
            "negative": self.negative,
            "order": self.order,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PreferenceWeight":
        return cls(
            key=data["key"],
            weight=float(data.get("weight", 0.0)),
            frequency=int(data.get("frequency", 0)),
            last_updated_at=data.get("last_updated_at"),
            positive=float(data.get("positive", 0.0)),
            negative=float(data.get("negative", 0.0)),
            order=int(data.get("order", 0)),
        )


# =============================================================================
# Comprehensive Preferences (profile output)
# =============================================================================

class WeightedValue(BaseModel):
    key: str
    name: str
    weight: float
    frequency: int


class ColorPreferences(BaseModel):
    favorites: List[WeightedValue] = Field(default_factory=list)
    weights: Dict[str, float] = Field(default_factory=dict)
    disliked: List[str] = Field(default_factory=list)
    proven_combinations: List[List[str]] = Field(default_factory=list)
    intensity: str = "balanced"        # vibrant / muted / balanced
    temperature: str = "neutral"       # warm / cool / neutral


class StylePreferences(BaseModel):
    favorites: List[WeightedValue] = Field(default_factory=list)
    weights: Dict[str, float] = Field(default_factory=dict)
    disliked: List[str] = Field(default_factory=list)
    by_occasion: Dict[str, List[str]] = Field(default_factory=dict)
    consistency: int = 0               # share of weight in the top 3, percent


class OccasionPreferences(BaseModel):
    favorites: List[WeightedValue] = Field(default_factory=list)
    weights: Dict[str, float] = Field(default_factory=dict)
    disliked: List[str] = Field(default_factory=list)


class SeasonalPreferences(BaseModel):
    current_season: Season
    weights: Dict[str, float] = Field(default_factory=dict)
    colors_by_season: Dict[str, List[str]] = Field(default_factory=dict)
    shifts: List[str] = Field(default_factory=list)


class ShoppingPreferences(BaseModel):
    total_clicks: int = 0
    platform_shares: Dict[str, float] = Field(default_factory=dict)   # percent


class ComprehensivePreferences(BaseModel):
    """Everything the engine knows about a user's taste."""

    user_id: str
    colors: ColorPreferences = Field(default_factory=ColorPreferences)
    styles: StylePreferences = Field(default_factory=StylePreferences)
    occasions: OccasionPreferences = Field(default_factory=OccasionPreferences)
    seasonal: SeasonalPreferences
    shopping: ShoppingPreferences = Field(default_factory=ShoppingPreferences)
    patterns: List[WeightedValue] = Field(default_factory=list)
    fits: List[WeightedValue] = Field(default_factory=list)
    confidence_tier: ConfidenceTier = ConfidenceTier.LOW
    confidence_score: int = 20
    total_interactions: int = 0
    computed_at: datetime

    @property
    def is_cold_start(self) -> bool:
        return self.total_interactions == 0

    @property
    def is_personalized(self) -> bool:
        """Whether explanations may claim the result reflects the user's taste."""
        return self.total_interactions > 0 and self.confidence_tier != ConfidenceTier.LOW

    def weights_for(self, dimension: Dimension) -> Dict[str, float]:
        if dimension == Dimension.COLOR:
            return self.colors.weights
        if dimension == Dimension.STYLE:
            return self.styles.weights
        if dimension == Dimension.OCCASION:
            return self.occasions.weights
        if dimension == Dimension.SEASON:
            return self.seasonal.weights
        if dimension == Dimension.PATTERN:
            return {v.key: v.weight for v in self.patterns}
        return {v.key: v.weight for v in self.fits}

    def disliked_for(self, dimension: Dimension) -> List[str]:
        if dimension == Dimension.COLOR:
            return self.colors.disliked
        if dimension == Dimension.STYLE:
            return self.styles.disliked
        if dimension == Dimension.OCCASION:
            return self.occasions.disliked
        return []


# =============================================================================
# Blocklists
# =============================================================================

@dataclass
class HardBlock:
    dimension: str
    value: str
    reason: str
    added_at: float

    def to_dict(self) -> Dict[str, Any]:
        return {"dimension": self.dimension, "value": self.value, "reason": self.reason, "added_at": self.added_at}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HardBlock":
        return cls(data["dimension"], data["value"], data.get("reason", ""), float(data["added_at"]))


@dataclass
class SoftBlock:
    dimension: str
    value: str
    ignore_count: int
    reason: str
    added_at: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "dimension": self.dimension,
            "value": self.value,
            "ignore_count": self.ignore_count,
            "reason": self.reason,
            "added_at": self.added_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SoftBlock":
        return cls(
            data["dimension"],
            data["value"],
            int(data.get("ignore_count", 1)),
            data.get("reason", ""),
            float(data["added_at"]),
        )


@dataclass
class TemporaryBlock:
    signature: str
    recommended_at: float
    expires_at: float

    def to_dict(self) -> Dict[str, Any]:
        return {"signature": self.signature, "recommended_at": self.recommended_at, "expires_at": self.expires_at}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TemporaryBlock":
        return cls(data["signature"], float(data["recommended_at"]), float(data["expires_at"]))


@dataclass
class Blocklists:
    """Hard, soft and temporary negative constraints for one user."""

    hard: List[HardBlock] = field(default_factory=list)
    soft: List[SoftBlock] = field(default_factory=list)
    temporary: List[TemporaryBlock] = field(default_factory=list)

    def hard_tokens(self) -> Set[str]:
        return {f"{b.dimension}:{b.value}" for b in self.hard}

    def soft_tokens(self) -> Set[str]:
        return {f"{b.dimension}:{b.value}" for b in self.soft}

    def active_signatures(self, now: float) -> Set[str]:
        """Unexpired temporary signatures; expired ones are simply ignored."""
        return {t.signature for t in self.temporary if t.expires_at >= now}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hard": [b.to_dict() for b in self.hard],
            "soft": [b.to_dict() for b in self.soft],
            "temporary": [t.to_dict() for t in self.temporary],
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "Blocklists":
        data = data or {}
        return cls(
            hard=[HardBlock.from_dict(d) for d in data.get("hard", [])],
            soft=[SoftBlock.from_dict(d) for d in data.get("soft", [])],
            temporary=[TemporaryBlock.from_dict(d) for d in data.get("temporary", [])],
        )


@dataclass(frozen=True)
class BlocklistDecision:
    """Result of evaluating one candidate against the blocklists."""

    excluded: bool
    penalty_multiplier: float
    matched_tier: BlockTier
    matched_values: tuple = ()


# =============================================================================
# Diversifier Output
# =============================================================================

class MatchBreakdown(BaseModel):
    color: float
    style: float
    occasion: float
    season: float
    top_color: Optional[str] = None
    top_style: Optional[str] = None
    top_occasion: Optional[str] = None


class AnnotatedCandidate(BaseModel):
    candidate: Candidate
    position: int                          # 1-based
    match_score: int                       # 0-100, after penalties
    raw_score: float
    match_category: MatchCategory
    slot: MatchCategory
    explanation: str
    blocklist_tier: BlockTier = BlockTier.NONE
    penalty_multiplier: float = 1.0
    relaxed: bool = False
    breakdown: MatchBreakdown

    @property
    def candidate_id(self) -> str:
        return self.candidate.candidate_id


class PatternLockStatus(BaseModel):
    locked: bool = False
    window: int = 0
    dominant_colors: List[str] = Field(default_factory=list)
    dominant_styles: List[str] = Field(default_factory=list)
    color_share: float = 0.0
    style_share: float = 0.0

    def tokens(self) -> Set[str]:
        return {f"color:{c}" for c in self.dominant_colors} | {f"style:{s}" for s in self.dominant_styles}


class DiversificationResult(BaseModel):
    candidates: List[AnnotatedCandidate] = Field(default_factory=list)
    insufficient_diversity: bool = False
    slot_plan: Dict[str, int] = Field(default_factory=dict)
    pattern_lock: PatternLockStatus = Field(default_factory=PatternLockStatus)
    excluded_ids: List[str] = Field(default_factory=list)       # hard-blocked
    held_back_ids: List[str] = Field(default_factory=list)      # temporary, not relaxed
    confidence_tier: ConfidenceTier = ConfidenceTier.LOW
