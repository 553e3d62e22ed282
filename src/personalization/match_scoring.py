"""
Candidate-vs-profile match scoring and explanations.

Each dimension scores 0-100:
- a value the profile likes:   MATCH_BASE + MATCH_SPAN * weight / max_weight
- a value the profile dislikes: DISLIKED_SCORE
- any other value:             NEUTRAL_SCORE
- profile or candidate has nothing for the dimension: NO_DATA_SCORES[dim]

Multi-valued dimensions blend the best value and the mean. The match
score is the weighted sum of the four components.

Usage::

    scorer = MatchScorer()
    raw, breakdown = scorer.score(candidate.attributes, profile)
    category = scorer.category_for(raw)
"""

from typing import Dict, List, Optional, Sequence, Set, Tuple

from config.constants import DEFAULT_MATCH_SCORING_CONFIG, MatchScoringConfig
from personalization.models import (
    ComprehensivePreferences,
    Dimension,
    MatchBreakdown,
    MatchCategory,
    OutfitAttributes,
    PatternLockStatus,
)
from personalization.normalization import color_name


def _human(dimension: Dimension, value: str) -> str:
    if dimension == Dimension.COLOR:
        return color_name(value)
    return value.replace("_", " ")


def _join(names: Sequence[str]) -> str:
    names = list(names)
    if len(names) <= 1:
        return "".join(names)
    return ", ".join(names[:-1]) + " and " + names[-1]


class MatchScorer:
    """Scores candidate attributes against a ComprehensivePreferences profile."""

    def __init__(self, config: MatchScoringConfig = DEFAULT_MATCH_SCORING_CONFIG):
        self.config = config

    # =========================================================
    # Components
    # =========================================================

    def component(
        self,
        dimension: Dimension,
        values: List[str],
        weights: Dict[str, float],
        disliked: Set[str],
    ) -> Tuple[float, Optional[str]]:
        """
        Score one dimension.

        Returns:
            (score, the profile value that matched best or None)
        """
        cfg = self.config
        no_data = cfg.NO_DATA_SCORES[dimension.value]
        if not values or (not weights and not disliked):
            return no_data, None

        max_weight = max(weights.values()) if weights else 0.0
        scored: List[Tuple[float, str]] = []
        for value in values:
            if value in disliked:
                scored.append((cfg.DISLIKED_SCORE, value))
            elif value in weights and max_weight > 0:
                scored.append((cfg.MATCH_BASE + cfg.MATCH_SPAN * weights[value] / max_weight, value))
            else:
                scored.append((cfg.NEUTRAL_SCORE, value))

        best_score, best_value = max(scored, key=lambda s: s[0])
        mean = sum(s for s, _ in scored) / len(scored)
        score = cfg.BEST_WEIGHT * best_score + cfg.MEAN_WEIGHT * mean
        matched = best_value if best_value in weights else None
        return score, matched

    def score(
        self,
        attributes: OutfitAttributes,
        profile: ComprehensivePreferences,
    ) -> Tuple[float, MatchBreakdown]:
        """Raw 0-100 alignment score and its per-dimension breakdown."""
        results = {}
        for dimension in (Dimension.COLOR, Dimension.STYLE, Dimension.OCCASION, Dimension.SEASON):
            results[dimension] = self.component(
                dimension,
                attributes.values(dimension),
                profile.weights_for(dimension),
                set(profile.disliked_for(dimension)),
            )

        weights = self.config.COMPONENT_WEIGHTS
        raw = sum(weights[d.value] * results[d][0] for d in results)
        breakdown = MatchBreakdown(
            color=round(results[Dimension.COLOR][0], 2),
            style=round(results[Dimension.STYLE][0], 2),
            occasion=round(results[Dimension.OCCASION][0], 2),
            season=round(results[Dimension.SEASON][0], 2),
            top_color=results[Dimension.COLOR][1],
            top_style=results[Dimension.STYLE][1],
            top_occasion=results[Dimension.OCCASION][1],
        )
        return min(100.0, max(0.0, raw)), breakdown

    def category_for(self, score: float) -> Optional[MatchCategory]:
        """Category for a score, or None below the exploring floor."""
        if score >= self.config.PERFECT_MIN:
            return MatchCategory.PERFECT
        if score >= self.config.GREAT_MIN:
            return MatchCategory.GREAT
        if score >= self.config.EXPLORING_MIN:
            return MatchCategory.EXPLORING
        return None

    # =========================================================
    # Explanations
    # =========================================================

    def explain(
        self,
        attributes: OutfitAttributes,
        breakdown: MatchBreakdown,
        slot: MatchCategory,
        profile: ComprehensivePreferences,
        lock: Optional[PatternLockStatus] = None,
    ) -> str:
        """
        One sentence on why this candidate is here.

        Profiles without enough signal get neutral descriptions that make
        no claim about the user's taste.
        """
        colors = _join([color_name(c) for c in attributes.colors[:2]]) or "a versatile palette"
        style = attributes.styles[0].value if attributes.styles else "easy"
        occasion = attributes.occasion.value if attributes.occasion else "everyday"

        if not profile.is_personalized:
            if slot == MatchCategory.EXPLORING:
                return f"A {style} look in {colors}, offered to discover new directions."
            return f"A {style} {occasion} outfit in {colors}."

        if slot == MatchCategory.EXPLORING:
            if lock is not None and lock.locked:
                recent = _join(
                    [color_name(c) for c in lock.dominant_colors] or lock.dominant_styles
                )
                return f"A deliberate break from your recent run of {recent} looks: {style} in {colors}."
            top = profile.colors.favorites[0].name if profile.colors.favorites else style
            return f"Something new to try alongside your usual {top}: {style} in {colors}."

        combo = self._proven_combination(attributes, profile)
        if combo:
            return f"Pairs {_join([color_name(c) for c in combo])}, a combination you have worn before."

        driver = self._driver(breakdown, profile)
        if driver is None:
            return f"A {style} {occasion} outfit in {colors} that fits your profile."
        dimension, value = driver
        name = _human(dimension, value)
        if slot == MatchCategory.GREAT:
            return f"Keeps the {name} you like, with some variation."
        if dimension == Dimension.COLOR:
            return f"Built around {name}, one of the colors you keep coming back to."
        if dimension == Dimension.STYLE:
            return f"Matches the {name} style you reach for most."
        return f"Fits the {name} looks you pick most often."

    def _driver(self, breakdown: MatchBreakdown, profile: ComprehensivePreferences) -> Optional[Tuple[Dimension, str]]:
        """The matched preference with the largest weighted contribution."""
        weights = self.config.COMPONENT_WEIGHTS
        options = [
            (weights["color"] * breakdown.color, Dimension.COLOR, breakdown.top_color),
            (weights["style"] * breakdown.style, Dimension.STYLE, breakdown.top_style),
            (weights["occasion"] * breakdown.occasion, Dimension.OCCASION, breakdown.top_occasion),
        ]
        matched = [o for o in options if o[2]]
        if not matched:
            return None
        _, dimension, value = max(matched, key=lambda o: o[0])
        return dimension, value

    @staticmethod
    def _proven_combination(attributes: OutfitAttributes, profile: ComprehensivePreferences) -> Optional[List[str]]:
        colors = set(attributes.colors)
        for combo in profile.colors.proven_combinations:
            if set(combo) <= colors:
                return combo
        return None
