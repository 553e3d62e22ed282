"""
Diversifier: selects, orders and annotates recommendation candidates.

Pipeline:
1. Blocklists: hard matches are dropped for good; temporary matches are
   held back; soft matches keep a penalized score.
2. Scoring: raw 0-100 alignment with the profile, times the soft penalty.
3. Slot plan: perfect / great / exploring counts from the confidence
   tier's ratios (adaptive exploring ratio for confident profiles,
   forced exploration under pattern lock).
4. Pattern lock: if the last K accepted outfits are dominated by one
   color or style, exploring picks must avoid it entirely.
5. Fill and annotate: score, category, explanation and position.

When a slot cannot be filled the pool is widened step by step: first the
soft penalty is lifted, then held-back temporary repeats are admitted.
Hard blocks are never relaxed. Whatever is still missing is back-filled
by score and the result is flagged insufficient_diversity.
"""

import math
import random
from collections import Counter
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Set, Tuple

from config.constants import (
    DEFAULT_BLOCKLIST_CONFIG,
    DEFAULT_DIVERSIFIER_CONFIG,
    BlocklistConfig,
    DiversifierConfig,
)
from core.logging import LoggerMixin
from core.utils import Clock, to_epoch, utc_now
from personalization.blocklist_manager import evaluate
from personalization.match_scoring import MatchScorer
from personalization.models import (
    AnnotatedCandidate,
    BlockTier,
    BlocklistDecision,
    Blocklists,
    Candidate,
    ComprehensivePreferences,
    ConfidenceTier,
    DiversificationResult,
    MatchBreakdown,
    MatchCategory,
    OutfitAttributes,
    PatternLockStatus,
)

SLOT_ORDER = (MatchCategory.PERFECT, MatchCategory.GREAT, MatchCategory.EXPLORING)


# =============================================================================
# Slot planning
# =============================================================================

def slot_ratios(
    tier: ConfidenceTier,
    locked: bool = False,
    exploration_level: Optional[int] = None,
    config: DiversifierConfig = DEFAULT_DIVERSIFIER_CONFIG,
) -> Tuple[float, float, float]:
    """(perfect, great, exploring) ratios for a tier."""
    perfect, great, exploring = config.SLOT_RATIOS[tier.value]
    if locked:
        target = max(exploring, config.LOCKED_EXPLORING_RATIO)
    elif exploration_level is not None and tier.value in config.ADAPTIVE_TIERS:
        target = exploration_level / 100
    else:
        return perfect, great, exploring

    rest = perfect + great
    scale = (1 - target) / rest if rest else 0.0
    return perfect * scale, great * scale, target


def allocate_slots(
    slot_count: int,
    ratios: Tuple[float, float, float],
    ceil_exploring: bool = False,
) -> Dict[MatchCategory, int]:
    """
    Turn ratios into whole slot counts summing to slot_count.

    The exploring count is ceil(ratio * n) when ceil_exploring is set
    (so a 40% policy never yields less than 40%), otherwise rounded half
    up. The rest is split between perfect and great by largest
    remainder. With three or more slots every category with a nonzero
    ratio gets at least one, taken from the largest. A ceiled exploring
    count is never given up.
    """
    if slot_count <= 0:
        return {c: 0 for c in SLOT_ORDER}

    perfect_ratio, great_ratio, exploring_ratio = ratios
    exact = exploring_ratio * slot_count
    exploring = math.ceil(exact - 1e-9) if ceil_exploring else math.floor(exact + 0.5)
    exploring = min(slot_count, max(0, exploring))

    remaining = slot_count - exploring
    aligned = perfect_ratio + great_ratio
    if aligned > 0:
        perfect_exact = remaining * perfect_ratio / aligned
        great_exact = remaining * great_ratio / aligned
    else:
        perfect_exact, great_exact = float(remaining), 0.0
    perfect, great = math.floor(perfect_exact), math.floor(great_exact)
    if remaining - perfect - great > 0:
        if (perfect_exact - perfect) >= (great_exact - great):
            perfect += 1
        else:
            great += 1
    perfect += remaining - perfect - great

    plan = {MatchCategory.PERFECT: perfect, MatchCategory.GREAT: great, MatchCategory.EXPLORING: exploring}
    if slot_count >= 3:
        donors = SLOT_ORDER[:2] if ceil_exploring else SLOT_ORDER
        for category, ratio in zip(SLOT_ORDER, ratios):
            if ratio > 0 and plan[category] == 0:
                donor = max(donors, key=lambda c: plan[c])
                if plan[donor] > 1:
                    plan[donor] -= 1
                    plan[category] += 1
    return plan


# =============================================================================
# Pattern lock
# =============================================================================

def _color_style_tokens(attributes: OutfitAttributes) -> Set[str]:
    return {f"color:{c}" for c in attributes.colors} | {f"style:{s.value}" for s in attributes.styles}


def divergence(attributes: OutfitAttributes, reference: Set[str]) -> float:
    """1 - Jaccard similarity over color/style tokens."""
    tokens = _color_style_tokens(attributes)
    union = tokens | reference
    if not union:
        return 1.0
    return 1 - len(tokens & reference) / len(union)


def detect_pattern_lock(
    history: Sequence[OutfitAttributes],
    config: DiversifierConfig = DEFAULT_DIVERSIFIER_CONFIG,
) -> PatternLockStatus:
    """
    Check whether the last PATTERN_LOCK_WINDOW accepted outfits share a
    dominant color or style at PATTERN_LOCK_SHARE or more.
    """
    window = list(history)[-config.PATTERN_LOCK_WINDOW:]
    if len(window) < config.PATTERN_LOCK_WINDOW:
        return PatternLockStatus(locked=False, window=len(window))

    size = len(window)
    colors = Counter(c for outfit in window for c in set(outfit.colors))
    styles = Counter(s.value for outfit in window for s in set(outfit.styles))

    def dominant(counts: Counter) -> List[str]:
        return [v for v, n in sorted(counts.items(), key=lambda kv: (-kv[1], kv[0])) if n / size >= config.PATTERN_LOCK_SHARE]

    dominant_colors = dominant(colors)
    dominant_styles = dominant(styles)
    return PatternLockStatus(
        locked=bool(dominant_colors or dominant_styles),
        window=size,
        dominant_colors=dominant_colors,
        dominant_styles=dominant_styles,
        color_share=round(max(colors.values()) / size, 3) if colors else 0.0,
        style_share=round(max(styles.values()) / size, 3) if styles else 0.0,
    )


def history_reference(history: Sequence[OutfitAttributes], window: int) -> Set[str]:
    """Most frequent color and style of the recent window."""
    recent = list(history)[-window:]
    if not recent:
        return set()
    colors = Counter(c for outfit in recent for c in set(outfit.colors))
    styles = Counter(s.value for outfit in recent for s in set(outfit.styles))
    reference = set()
    if colors:
        reference.add(f"color:{min(colors.items(), key=lambda kv: (-kv[1], kv[0]))[0]}")
    if styles:
        reference.add(f"style:{min(styles.items(), key=lambda kv: (-kv[1], kv[0]))[0]}")
    return reference


# =============================================================================
# Diversifier
# =============================================================================

@dataclass
class _Scored:
    index: int
    candidate: Candidate
    raw: float
    decision: BlocklistDecision
    breakdown: MatchBreakdown
    held: bool = False

    def score(self, relax_soft: bool) -> float:
        if relax_soft or self.decision.matched_tier != BlockTier.SOFT:
            return self.raw
        return self.raw * self.decision.penalty_multiplier

    def sort_key(self, relax_soft: bool) -> Tuple[bool, float, float, int]:
        # Admitted repeats rank after every fresh candidate
        return (self.held, -self.score(relax_soft), -self.raw, self.index)


class Diversifier(LoggerMixin):
    """
    Builds the final annotated list for one recommendation request.

    Usage:
        diversifier = Diversifier()
        result = diversifier.select_and_annotate(
            candidates, profile, blocklists, recent_history, slot_count=5
        )
    """

    def __init__(
        self,
        scorer: Optional[MatchScorer] = None,
        config: DiversifierConfig = DEFAULT_DIVERSIFIER_CONFIG,
        blocklist_config: BlocklistConfig = DEFAULT_BLOCKLIST_CONFIG,
        clock: Clock = utc_now,
    ):
        self.scorer = scorer or MatchScorer()
        self.config = config
        self.blocklist_config = blocklist_config
        self._clock = clock

    def select_and_annotate(
        self,
        candidates: Sequence[Candidate],
        profile: ComprehensivePreferences,
        blocklists: Optional[Blocklists],
        recent_history: Sequence[OutfitAttributes],
        slot_count: int,
        exploration_level: Optional[int] = None,
        rng: Optional[random.Random] = None,
    ) -> DiversificationResult:
        """
        Select up to slot_count candidates and annotate them.

        Args:
            candidates: Upstream candidates, in their original order
            profile: The user's profile (may be empty)
            blocklists: The user's blocklists (None means none)
            recent_history: Accepted outfits, oldest first
            slot_count: Number of outputs wanted
            exploration_level: Adaptive exploring percent, if tracked
            rng: Randomizes the choice among qualifying exploring picks

        Returns:
            DiversificationResult; never raises for empty input
        """
        blocklists = blocklists or Blocklists()
        now = to_epoch(self._clock())
        tier = profile.confidence_tier

        lock = detect_pattern_lock(recent_history, self.config)
        ratios = slot_ratios(tier, lock.locked, exploration_level, self.config)
        if profile.is_cold_start:
            # Every candidate scores neutrally, so no slot can be aligned
            ratios = (0.0, 0.0, 1.0)
        plan = allocate_slots(
            max(0, slot_count),
            ratios,
            ceil_exploring=lock.locked or tier == ConfidenceTier.LOW,
        )
        result = DiversificationResult(
            slot_plan={c.value: plan[c] for c in SLOT_ORDER},
            pattern_lock=lock,
            confidence_tier=tier,
        )
        if slot_count <= 0:
            return result

        eligible: List[_Scored] = []
        held: List[_Scored] = []
        for index, candidate in enumerate(candidates):
            decision = evaluate(blocklists, candidate.attributes, now, self.blocklist_config)
            if decision.matched_tier == BlockTier.HARD:
                result.excluded_ids.append(candidate.candidate_id)
                continue
            raw, breakdown = self.scorer.score(candidate.attributes, profile)
            entry = _Scored(index, candidate, raw, decision, breakdown)
            if decision.matched_tier == BlockTier.TEMPORARY:
                entry.held = True
                held.append(entry)
            else:
                eligible.append(entry)

        reference = lock.tokens() if lock.locked else history_reference(
            recent_history, self.config.PATTERN_LOCK_WINDOW
        )
        has_soft = any(e.decision.matched_tier == BlockTier.SOFT for e in eligible)

        # (relax soft penalty, admit temporary repeats)
        levels = [(False, False)]
        if has_soft:
            levels.append((True, False))
        if held:
            levels.append((True, True))

        picked: Dict[MatchCategory, List[_Scored]] = {}
        shortfall = 0
        relax_soft = admit_held = False
        for relax_soft, admit_held in levels:
            pool = eligible + held if admit_held else eligible
            picked, shortfall = self._fill(pool, plan, relax_soft, lock, reference, rng)
            if shortfall == 0:
                break

        if shortfall > 0:
            pool = eligible + held if admit_held else eligible
            self._back_fill(pool, plan, picked, relax_soft)

        if admit_held:
            used = {e.index for entries in picked.values() for e in entries}
            result.held_back_ids = [e.candidate.candidate_id for e in held if e.index not in used]
        else:
            result.held_back_ids = [e.candidate.candidate_id for e in held]

        result.candidates = self._annotate(picked, profile, relax_soft, lock)
        if len(result.candidates) < slot_count:
            result.insufficient_diversity = True

        self.logger.debug(
            "candidates diversified",
            user_id=profile.user_id,
            tier=tier.value,
            requested=slot_count,
            returned=len(result.candidates),
            excluded=len(result.excluded_ids),
            held_back=len(result.held_back_ids),
            pattern_lock=lock.locked,
            relaxed_soft=relax_soft,
            admitted_temporary=admit_held,
            insufficient_diversity=result.insufficient_diversity,
        )
        return result

    # =========================================================================
    # Filling
    # =========================================================================

    def _fill(
        self,
        pool: List[_Scored],
        plan: Dict[MatchCategory, int],
        relax_soft: bool,
        lock: PatternLockStatus,
        reference: Set[str],
        rng: Optional[random.Random],
    ) -> Tuple[Dict[MatchCategory, List[_Scored]], int]:
        ranked = sorted(pool, key=lambda e: e.sort_key(relax_soft))
        picked: Dict[MatchCategory, List[_Scored]] = {c: [] for c in SLOT_ORDER}
        used: Set[int] = set()

        # Lock-breaking picks may come from outside the exploring band, so
        # they are chosen before the aligned slots take their share.
        if lock.locked:
            picked[MatchCategory.EXPLORING] = self._pick_exploring(
                ranked, plan[MatchCategory.EXPLORING], relax_soft, lock, reference, rng
            )
            used.update(e.index for e in picked[MatchCategory.EXPLORING])

        for category in (MatchCategory.PERFECT, MatchCategory.GREAT):
            band = [
                e for e in ranked
                if e.index not in used and self.scorer.category_for(e.score(relax_soft)) == category
            ]
            picked[category] = band[: plan[category]]
            used.update(e.index for e in picked[category])

        if not lock.locked:
            remaining = [e for e in ranked if e.index not in used]
            picked[MatchCategory.EXPLORING] = self._pick_exploring(
                remaining, plan[MatchCategory.EXPLORING], relax_soft, lock, reference, rng
            )

        shortfall = sum(plan[c] - len(picked[c]) for c in SLOT_ORDER)
        return picked, shortfall

    def _breaks_lock(self, entry: _Scored, lock: PatternLockStatus) -> bool:
        attributes = entry.candidate.attributes
        if set(attributes.colors) & set(lock.dominant_colors):
            return False
        if {s.value for s in attributes.styles} & set(lock.dominant_styles):
            return False
        return divergence(attributes, lock.tokens()) >= self.config.LOCKED_DIVERGENCE

    def _pick_exploring(
        self,
        ranked: List[_Scored],
        count: int,
        relax_soft: bool,
        lock: PatternLockStatus,
        reference: Set[str],
        rng: Optional[random.Random],
    ) -> List[_Scored]:
        picks: List[_Scored] = []
        available = list(ranked)
        for _ in range(count):
            band = [
                e for e in available
                if self.scorer.category_for(e.score(relax_soft)) == MatchCategory.EXPLORING
            ]
            if lock.locked:
                qualifying = [e for e in band if self._breaks_lock(e, lock)]
                if not qualifying:
                    qualifying = [e for e in available if self._breaks_lock(e, lock)]
                if not qualifying and available:
                    reference_tokens = lock.tokens()
                    qualifying = [max(
                        available,
                        key=lambda e: (divergence(e.candidate.attributes, reference_tokens), e.score(relax_soft), -e.index),
                    )]
            else:
                qualifying = band
                if reference:
                    varied = [
                        e for e in band
                        if divergence(e.candidate.attributes, reference) >= self.config.NORMAL_DIVERGENCE
                    ]
                    qualifying = varied or band
            if not qualifying:
                break
            choice = rng.choice(qualifying) if rng is not None else qualifying[0]
            picks.append(choice)
            available.remove(choice)
        return picks

    @staticmethod
    def _back_fill(
        pool: List[_Scored],
        plan: Dict[MatchCategory, int],
        picked: Dict[MatchCategory, List[_Scored]],
        relax_soft: bool,
    ) -> None:
        used = {e.index for entries in picked.values() for e in entries}
        leftovers = [e for e in sorted(pool, key=lambda e: e.sort_key(relax_soft)) if e.index not in used]
        for category in SLOT_ORDER:
            while len(picked[category]) < plan[category] and leftovers:
                picked[category].append(leftovers.pop(0))

    # =========================================================================
    # Annotation
    # =========================================================================

    def _annotate(
        self,
        picked: Dict[MatchCategory, List[_Scored]],
        profile: ComprehensivePreferences,
        relax_soft: bool,
        lock: PatternLockStatus,
    ) -> List[AnnotatedCandidate]:
        annotated: List[AnnotatedCandidate] = []
        position = 1
        for slot in SLOT_ORDER:
            for entry in sorted(picked.get(slot, []), key=lambda e: e.sort_key(relax_soft)):
                score = entry.score(relax_soft)
                category = self.scorer.category_for(score) or MatchCategory.EXPLORING
                attributes = entry.candidate.attributes
                explain_as = MatchCategory.EXPLORING if slot == MatchCategory.EXPLORING else category
                relaxed = entry.held or (relax_soft and entry.decision.matched_tier == BlockTier.SOFT)
                annotated.append(AnnotatedCandidate(
                    candidate=entry.candidate,
                    position=position,
                    match_score=int(round(score)),
                    raw_score=round(entry.raw, 2),
                    match_category=category,
                    slot=slot,
                    explanation=self.scorer.explain(attributes, entry.breakdown, explain_as, profile, lock),
                    blocklist_tier=entry.decision.matched_tier,
                    penalty_multiplier=1.0 if relaxed else entry.decision.penalty_multiplier,
                    relaxed=relaxed,
                    breakdown=entry.breakdown,
                ))
                position += 1
        return annotated
