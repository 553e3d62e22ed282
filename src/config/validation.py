"""
Startup validation of the weighting constants.

Runs once when the personalization service is constructed. A bad
constant is a deployment problem, so it fails loudly here and never on
the request path.
"""

import math
from typing import Optional

from config.constants import (
    AggregatorConfig,
    BlocklistConfig,
    DiversifierConfig,
    MatchScoringConfig,
)
from core.errors import ConfigurationError
from personalization.models import EventType


def validate_configuration(
    aggregator: AggregatorConfig,
    blocklist: BlocklistConfig,
    scoring: MatchScoringConfig,
    diversifier: DiversifierConfig,
    session_timeout_seconds: Optional[float] = None,
) -> None:
    """
    Check the algorithm configs for internal consistency.

    Raises:
        ConfigurationError: listing every problem found
    """
    problems = []

    missing = [t.value for t in EventType if t.value not in aggregator.OUTCOME_WEIGHTS]
    if missing:
        problems.append(f"outcome weights missing for event types: {', '.join(missing)}")

    if not aggregator.RECENCY_TIERS:
        problems.append("at least one recency tier is required")
    else:
        days = [d for d, _ in aggregator.RECENCY_TIERS]
        multipliers = [m for _, m in aggregator.RECENCY_TIERS]
        if any(b <= a for a, b in zip(days, days[1:])) or days[0] <= 0:
            problems.append(f"recency tier days must be positive and increasing: {days}")
        if any(b > a for a, b in zip(multipliers, multipliers[1:])):
            problems.append(f"recency multipliers must not increase with age: {multipliers}")
        if aggregator.RECENCY_FLOOR > multipliers[-1] or aggregator.RECENCY_FLOOR < 0:
            problems.append("recency floor must be between 0 and the last tier multiplier")
        if aggregator.MAX_DECAY_HORIZON_DAYS < days[-1]:
            problems.append("decay horizon must not be shorter than the last recency tier")

    bounds = [b for b, _ in aggregator.CONFIDENCE_BANDS]
    if len(bounds) != 3 or any(b <= a for a, b in zip(bounds, bounds[1:])):
        problems.append(f"confidence bands need three increasing bounds: {bounds}")

    if not 0 < blocklist.SOFT_PENALTY <= 1:
        problems.append("soft penalty must be in (0, 1]")
    if blocklist.PROMOTION_THRESHOLD < 1:
        problems.append("promotion threshold must be at least 1")
    if blocklist.TEMPORARY_MAX_ENTRIES < 1:
        problems.append("temporary blocklist cap must be at least 1")

    weight_keys = {"color", "style", "occasion", "season"}
    if set(scoring.COMPONENT_WEIGHTS) != weight_keys:
        problems.append(f"component weights must cover exactly {sorted(weight_keys)}")
    elif not math.isclose(sum(scoring.COMPONENT_WEIGHTS.values()), 1.0, abs_tol=1e-6):
        problems.append("component weights must sum to 1")
    if not scoring.EXPLORING_MIN < scoring.GREAT_MIN < scoring.PERFECT_MIN:
        problems.append("category thresholds must be increasing")

    for tier in ("low", "medium", "high", "very_high"):
        ratios = diversifier.SLOT_RATIOS.get(tier)
        if ratios is None:
            problems.append(f"slot ratios missing for tier {tier}")
        elif not math.isclose(sum(ratios), 1.0, abs_tol=1e-6) or min(ratios) < 0:
            problems.append(f"slot ratios for {tier} must be non-negative and sum to 1")
    if diversifier.PATTERN_LOCK_WINDOW < 2:
        problems.append("pattern lock window must be at least 2")
    if not diversifier.NORMAL_DIVERGENCE < diversifier.LOCKED_DIVERGENCE <= 1:
        problems.append("locked divergence must exceed the normal divergence")
    if not diversifier.EXPLORATION_MIN <= diversifier.EXPLORATION_START <= diversifier.EXPLORATION_MAX:
        problems.append("exploration start must lie within [min, max]")

    if session_timeout_seconds is not None and session_timeout_seconds <= 0:
        problems.append("session timeout must be positive")

    if problems:
        raise ConfigurationError("; ".join(problems), details={"problems": problems})
