"""
Closed vocabularies used across the personalization engine.
"""

from enum import Enum


class EventType(str, Enum):
    """Interaction event types captured upstream."""
    VIEWED = "viewed"
    HOVERED_COLOR = "hovered_color"
    CLICKED_SHOPPING = "clicked_shopping"
    LIKED = "liked"
    SELECTED = "selected"            # Outfit picked for generation
    WORE = "wore"
    IGNORED = "ignored"
    DISLIKED = "disliked"            # Explicit "not my style"


class SessionOutcome(str, Enum):
    LIKED_ONE = "liked_one"
    WORE_ONE = "wore_one"
    LIKED_MULTIPLE = "liked_multiple"
    IGNORED_ALL = "ignored_all"
    IN_PROGRESS = "in_progress"


class ConfidenceTier(str, Enum):
    """Coarse reliability bucket derived from total interactions."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    VERY_HIGH = "very_high"


class MatchCategory(str, Enum):
    PERFECT = "perfect"              # score >= 90
    GREAT = "great"                  # 70-89
    EXPLORING = "exploring"          # 50-69 (and the fallback label below 50)


class BlockTier(str, Enum):
    HARD = "hard"
    SOFT = "soft"
    TEMPORARY = "temporary"
    NONE = "none"


class Dimension(str, Enum):
    """Attribute dimensions that can be weighted or blocked."""
    COLOR = "color"
    STYLE = "style"
    OCCASION = "occasion"
    SEASON = "season"
    PATTERN = "pattern"
    FIT = "fit"


class StyleCategory(str, Enum):
    CASUAL = "casual"
    FORMAL = "formal"
    MINIMALIST = "minimalist"
    BOHEMIAN = "bohemian"
    ETHNIC = "ethnic"
    FUSION = "fusion"
    STREETWEAR = "streetwear"
    VINTAGE = "vintage"
    MODERN = "modern"
    CLASSIC = "classic"
    CONTEMPORARY = "contemporary"
    TRADITIONAL = "traditional"
    CHIC = "chic"
    ELEGANT = "elegant"
    SPORTY = "sporty"
    EDGY = "edgy"
    ROMANTIC = "romantic"
    PREPPY = "preppy"
    TRENDY = "trendy"


class OccasionCategory(str, Enum):
    OFFICE = "office"
    CASUAL = "casual"
    PARTY = "party"
    ETHNIC = "ethnic"


class Season(str, Enum):
    SUMMER = "summer"
    MONSOON = "monsoon"
    WINTER = "winter"
