"""
Unit tests for attribute normalization.
"""

from datetime import datetime, timezone

import pytest

from personalization.enums import Dimension, OccasionCategory, Season, StyleCategory
from personalization.models import Candidate, OutfitAttributes
from personalization.normalization import (
    color_name,
    color_saturation,
    color_temperature,
    extract_keywords,
    normalize_color,
    normalize_occasion,
    normalize_season,
    normalize_style,
    normalize_value,
    season_for,
)


class TestColors:

    @pytest.mark.parametrize("raw,expected", [
        ("navy", "#000080"),
        ("Navy Blue", "#000080"),
        ("neon_yellow", "#dfff00"),
        ("neon-yellow", "#dfff00"),
        ("#FFF", "#ffffff"),
        ("00ff00", "#00ff00"),
    ])
    def test_normalize(self, raw, expected):
        assert normalize_color(raw) == expected

    def test_unknown_strict_raises(self):
        with pytest.raises(ValueError):
            normalize_color("blurple")

    def test_unknown_lenient_is_none(self):
        assert normalize_color("blurple", strict=False) is None

    def test_name_round_trip(self):
        assert color_name("#000080") == "navy"
        assert color_name("#123456") == "#123456"

    def test_saturation_and_temperature(self):
        assert color_saturation("#808080") == 0.0
        assert color_saturation("#ff0000") == 1.0
        assert color_temperature("#ff0000") > 0
        assert color_temperature("#0000ff") < 0


class TestStylesOccasionsSeasons:

    def test_style_aliases(self):
        assert normalize_style("boho") == StyleCategory.BOHEMIAN
        assert normalize_style("Smart Casual") == StyleCategory.CLASSIC
        assert normalize_style("indo-western") == StyleCategory.FUSION

    def test_unknown_style(self):
        with pytest.raises(ValueError):
            normalize_style("cyberpunk")
        assert normalize_style("cyberpunk", strict=False) is None

    @pytest.mark.parametrize("raw,expected", [
        ("Office meeting", OccasionCategory.OFFICE),
        ("wedding reception", OccasionCategory.PARTY),
        ("date night", OccasionCategory.PARTY),
        ("Diwali festive", OccasionCategory.ETHNIC),
        ("brunch", OccasionCategory.CASUAL),
        (None, OccasionCategory.CASUAL),
    ])
    def test_occasion_keywords(self, raw, expected):
        assert normalize_occasion(raw) == expected

    def test_season_aliases(self):
        assert normalize_season("autumn") == Season.WINTER
        assert normalize_season("spring") == Season.SUMMER
        assert normalize_season("Monsoon") == Season.MONSOON

    @pytest.mark.parametrize("month,expected", [
        (1, Season.WINTER),
        (4, Season.SUMMER),
        (7, Season.MONSOON),
        (10, Season.WINTER),
    ])
    def test_season_for_month(self, month, expected):
        assert season_for(datetime(2025, month, 15, tzinfo=timezone.utc)) == expected

    def test_normalize_value_per_dimension(self):
        assert normalize_value(Dimension.COLOR, "Cream") == "#fffdd0"
        assert normalize_value(Dimension.STYLE, "minimal") == "minimalist"
        assert normalize_value("pattern", "polka dot") == "polka-dot"
        with pytest.raises(ValueError):
            normalize_value(Dimension.FIT, "baggy-ish")


class TestOutfitAttributes:

    def test_strict_construction(self):
        attrs = OutfitAttributes(colors=["Navy", "navy blue", "cream"], styles=["minimal"], occasion="work")

        assert attrs.colors == ["#000080", "#fffdd0"]
        assert attrs.styles == [StyleCategory.MINIMALIST]
        assert attrs.occasion == OccasionCategory.OFFICE

    def test_signature_ignores_order(self):
        a = OutfitAttributes(colors=["navy", "cream"], styles=["classic", "minimalist"])
        b = OutfitAttributes(colors=["cream", "navy"], styles=["minimalist", "classic"])

        assert a.signature() == b.signature()

    def test_tokens(self):
        attrs = OutfitAttributes(colors=["black"], patterns=["striped"])

        assert attrs.tokens() == {"color:#000000", "pattern:striped"}

    def test_lenient_drops_unknown_values(self):
        attrs = OutfitAttributes.lenient({"colors": ["navy", "blurple"], "styles": ["cyberpunk", "edgy"]})

        assert attrs.colors == ["#000080"]
        assert attrs.styles == [StyleCategory.EDGY]

    def test_lenient_falls_back_to_description(self):
        attrs = OutfitAttributes.lenient({}, "A relaxed boho maxi dress in olive with floral print")

        assert "#808000" in attrs.colors
        assert StyleCategory.BOHEMIAN in attrs.styles
        assert attrs.patterns == ["floral"]
        assert attrs.fits == ["relaxed"]

    def test_candidate_is_lenient(self):
        candidate = Candidate(candidate_id="c1", attributes={"colors": ["not a color", "white"]})

        assert candidate.attributes.colors == ["#ffffff"]


class TestExtractKeywords:

    def test_empty(self):
        assert extract_keywords(None) == {"styles": [], "patterns": [], "fits": [], "colors": []}

    def test_multi_word_color(self):
        assert "navy blue" in extract_keywords("a navy blue blazer")["colors"]
