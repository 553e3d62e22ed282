"""
Normalization of raw attribute values into the engine's key space.

- Colors: names and #rgb / #rrggbb hex -> canonical lower-case #rrggbb
- Styles: keywords and aliases -> StyleCategory
- Occasions: free text -> OccasionCategory by keyword
- Seasons: names -> Season, plus the month-based current season
- Patterns / fits: closed keyword vocabularies

Every normalizer has a strict mode (unknown value raises ValueError,
used at the ingestion boundary) and a lenient mode (unknown value
returns None, used for candidates where a bad attribute should not sink
the whole candidate).
"""

import re
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from personalization.enums import Dimension, OccasionCategory, Season, StyleCategory


# =============================================================================
# Colors
# =============================================================================

COLOR_NAMES: Dict[str, str] = {
    "black": "#000000",
    "white": "#ffffff",
    "gray": "#808080",
    "grey": "#808080",
    "charcoal": "#36454f",
    "red": "#ff0000",
    "maroon": "#800000",
    "burgundy": "#800020",
    "blue": "#0000ff",
    "navy": "#000080",
    "navy blue": "#000080",
    "sky blue": "#87ceeb",
    "teal": "#008080",
    "green": "#008000",
    "olive": "#808000",
    "mint": "#98ff98",
    "yellow": "#ffff00",
    "mustard": "#e1ad01",
    "neon yellow": "#dfff00",
    "orange": "#ffa500",
    "rust": "#b7410e",
    "purple": "#800080",
    "lavender": "#e6e6fa",
    "pink": "#ffc0cb",
    "blush": "#de5d83",
    "brown": "#a52a2a",
    "tan": "#d2b48c",
    "khaki": "#c3b091",
    "beige": "#f5f5dc",
    "cream": "#fffdd0",
    "ivory": "#fffff0",
    "coral": "#ff7f50",
    "gold": "#ffd700",
    "silver": "#c0c0c0",
}

# First name listed wins for hex codes shared by aliases
HEX_NAMES: Dict[str, str] = {}
for _name, _hex in COLOR_NAMES.items():
    HEX_NAMES.setdefault(_hex, _name)
del _name, _hex

_HEX_RE = re.compile(r"^#?([0-9a-f]{3}|[0-9a-f]{6})$")


def normalize_color(value: str, strict: bool = True) -> Optional[str]:
    """
    Canonical lower-case #rrggbb for a color name or hex string.

    >>> normalize_color("Navy")
    '#000080'
    >>> normalize_color("#ABC")
    '#aabbcc'
    """
    if not isinstance(value, str) or not value.strip():
        if strict:
            raise ValueError(f"color must be a non-empty string, got {value!r}")
        return None

    text = value.strip().lower()
    key = re.sub(r"[\s_\-]+", " ", text)
    if key in COLOR_NAMES:
        return COLOR_NAMES[key]

    match = _HEX_RE.match(text)
    if match:
        digits = match.group(1)
        if len(digits) == 3:
            digits = "".join(c * 2 for c in digits)
        return f"#{digits}"

    if strict:
        raise ValueError(f"unknown color {value!r}")
    return None


def normalize_colors(values: Iterable[str], strict: bool = True) -> List[str]:
    """Normalize and de-duplicate colors, keeping first-seen order."""
    result: List[str] = []
    for value in values or []:
        hex_value = normalize_color(value, strict=strict)
        if hex_value and hex_value not in result:
            result.append(hex_value)
    return result


def color_name(hex_value: str) -> str:
    """Human name for a canonical hex, or the hex itself."""
    return HEX_NAMES.get(hex_value, hex_value)


def hex_to_rgb(hex_value: str) -> Tuple[int, int, int]:
    digits = hex_value.lstrip("#")
    return int(digits[0:2], 16), int(digits[2:4], 16), int(digits[4:6], 16)


def color_saturation(hex_value: str) -> float:
    """HSV saturation in [0, 1]."""
    r, g, b = hex_to_rgb(hex_value)
    high, low = max(r, g, b), min(r, g, b)
    if high == 0:
        return 0.0
    return (high - low) / high


def color_temperature(hex_value: str) -> float:
    """Red-minus-blue balance in [-1, 1]; positive is warm."""
    r, _, b = hex_to_rgb(hex_value)
    return (r - b) / 255


# =============================================================================
# Styles
# =============================================================================

STYLE_ALIASES: Dict[str, StyleCategory] = {
    "boho": StyleCategory.BOHEMIAN,
    "street": StyleCategory.STREETWEAR,
    "street style": StyleCategory.STREETWEAR,
    "urban": StyleCategory.STREETWEAR,
    "business": StyleCategory.FORMAL,
    "business formal": StyleCategory.FORMAL,
    "smart": StyleCategory.CLASSIC,
    "smart casual": StyleCategory.CLASSIC,
    "minimal": StyleCategory.MINIMALIST,
    "minimalistic": StyleCategory.MINIMALIST,
    "athleisure": StyleCategory.SPORTY,
    "athletic": StyleCategory.SPORTY,
    "retro": StyleCategory.VINTAGE,
    "indo western": StyleCategory.FUSION,
    "indo-western": StyleCategory.FUSION,
    "festive": StyleCategory.ETHNIC,
    "glam": StyleCategory.ELEGANT,
}


def normalize_style(value: str, strict: bool = True) -> Optional[StyleCategory]:
    if isinstance(value, StyleCategory):
        return value
    if not isinstance(value, str) or not value.strip():
        if strict:
            raise ValueError(f"style must be a non-empty string, got {value!r}")
        return None

    key = value.strip().lower()
    try:
        return StyleCategory(key.replace(" ", "_").replace("-", "_"))
    except ValueError:
        pass
    alias = STYLE_ALIASES.get(key) or STYLE_ALIASES.get(key.replace("-", " "))
    if alias is not None:
        return alias
    if strict:
        raise ValueError(f"unknown style {value!r}")
    return None


def normalize_styles(values: Iterable[str], strict: bool = True) -> List[StyleCategory]:
    result: List[StyleCategory] = []
    for value in values or []:
        style = normalize_style(value, strict=strict)
        if style is not None and style not in result:
            result.append(style)
    return result


# =============================================================================
# Occasions and Seasons
# =============================================================================

_OCCASION_KEYWORDS: Tuple[Tuple[OccasionCategory, Tuple[str, ...]], ...] = (
    (OccasionCategory.OFFICE, ("office", "work", "business", "meeting", "interview")),
    (OccasionCategory.PARTY, ("party", "wedding", "event", "date", "cocktail", "night out")),
    (OccasionCategory.ETHNIC, ("ethnic", "traditional", "festive", "festival", "puja")),
)


def normalize_occasion(value: Optional[str]) -> OccasionCategory:
    """
    Map free-text occasions onto the four categories by keyword.

    Anything unrecognized (including None) is casual.
    """
    if isinstance(value, OccasionCategory):
        return value
    text = (value or "").strip().lower()
    for category, keywords in _OCCASION_KEYWORDS:
        if any(k in text for k in keywords):
            return category
    return OccasionCategory.CASUAL


_SEASON_ALIASES: Dict[str, Season] = {
    "spring": Season.SUMMER,
    "rainy": Season.MONSOON,
    "rain": Season.MONSOON,
    "fall": Season.WINTER,
    "autumn": Season.WINTER,
}


def normalize_season(value: str, strict: bool = True) -> Optional[Season]:
    if isinstance(value, Season):
        return value
    key = (value or "").strip().lower() if isinstance(value, str) else ""
    try:
        return Season(key)
    except ValueError:
        pass
    if key in _SEASON_ALIASES:
        return _SEASON_ALIASES[key]
    if strict:
        raise ValueError(f"unknown season {value!r}")
    return None


def season_for(moment: datetime) -> Season:
    """Jun-Sep monsoon, Apr-May summer, otherwise winter."""
    if 6 <= moment.month <= 9:
        return Season.MONSOON
    if 4 <= moment.month <= 5:
        return Season.SUMMER
    return Season.WINTER


# =============================================================================
# Patterns and Fits
# =============================================================================

PATTERNS = frozenset({
    "solid", "plain", "floral", "geometric", "striped", "printed",
    "abstract", "checked", "plaid", "polka-dot", "paisley", "animal-print",
})
FITS = frozenset({
    "oversized", "fitted", "tailored", "loose", "relaxed", "slim", "regular",
})


def _normalize_keyword(value: str, vocabulary: frozenset, kind: str, strict: bool) -> Optional[str]:
    key = re.sub(r"[\s_]+", "-", value.strip().lower()) if isinstance(value, str) else ""
    if key in vocabulary:
        return key
    if strict:
        raise ValueError(f"unknown {kind} {value!r}")
    return None


def normalize_patterns(values: Iterable[str], strict: bool = True) -> List[str]:
    result: List[str] = []
    for value in values or []:
        key = _normalize_keyword(value, PATTERNS, "pattern", strict)
        if key and key not in result:
            result.append(key)
    return result


def normalize_fits(values: Iterable[str], strict: bool = True) -> List[str]:
    result: List[str] = []
    for value in values or []:
        key = _normalize_keyword(value, FITS, "fit", strict)
        if key and key not in result:
            result.append(key)
    return result


# =============================================================================
# Free-text extraction
# =============================================================================

def extract_keywords(text: Optional[str]) -> Dict[str, List[str]]:
    """
    Pull style, pattern, fit and color keywords out of a description.

    Used for candidates that arrive with prose but without structured
    attributes.
    """
    lowered = (text or "").lower()
    if not lowered:
        return {"styles": [], "patterns": [], "fits": [], "colors": []}

    words = set(re.findall(r"[a-z]+(?:-[a-z]+)?", lowered))
    styles = [s.value for s in StyleCategory if s.value.replace("_", " ") in lowered]
    styles += [alias for alias in STYLE_ALIASES if " " not in alias and alias in words]
    colors = [name for name in COLOR_NAMES if " " not in name and name in words]
    colors += [name for name in COLOR_NAMES if " " in name and name in lowered]
    return {
        "styles": styles,
        "patterns": [p for p in sorted(PATTERNS) if p in words],
        "fits": [f for f in sorted(FITS) if f in words],
        "colors": colors,
    }


def normalize_value(dimension: Dimension, value: str) -> str:
    """
    Canonical string for a single value of any dimension.

    Raises:
        ValueError: if the value is unknown for that dimension
    """
    dimension = Dimension(dimension)
    if dimension == Dimension.COLOR:
        return normalize_color(value)
    if dimension == Dimension.STYLE:
        return normalize_style(value).value
    if dimension == Dimension.OCCASION:
        return normalize_occasion(value).value
    if dimension == Dimension.SEASON:
        return normalize_season(value).value
    if dimension == Dimension.PATTERN:
        return _normalize_keyword(value, PATTERNS, "pattern", strict=True)
    return _normalize_keyword(value, FITS, "fit", strict=True)
