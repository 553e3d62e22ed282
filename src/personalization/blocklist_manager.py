"""Blocklist manager: hard, soft and temporary negative constraints.

Three tiers, evaluated in this order:
1. Hard: never shown, under any confidence tier or scarcity condition.
2. Temporary: exact attribute combination recommended within the rolling
   window; excluded for anti-repetition only (the diversifier may admit
   it as a last resort).
3. Soft: shown with the score multiplied by SOFT_PENALTY.  Every repeat
   ignore bumps ignore_count; reaching PROMOTION_THRESHOLD moves the
   value to the hard tier inside the same write.

Expired temporary entries are treated as absent on read and pruned on
the next write.  The temporary list is capped; the oldest entries go
first.
"""

import uuid
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from config.constants import (
    BLOCKLISTS,
    DEFAULT_BLOCKLIST_CONFIG,
    DEFAULT_STORE_CONFIG,
    BlocklistConfig,
    StoreConfig,
)
from core.errors import ValidationError
from core.logging import LoggerMixin
from core.utils import Clock, to_epoch, utc_now
from personalization.models import (
    BlockTier,
    BlocklistDecision,
    Blocklists,
    Dimension,
    HardBlock,
    OutfitAttributes,
    SoftBlock,
    TemporaryBlock,
)
from personalization.normalization import normalize_value
from storage.atomic import atomic_merge
from storage.document_store import DocumentStore

AUTO_PROMOTED = "auto-promoted"
IGNORED_IN_SESSION = "ignored in session"

# Dimensions checked by the ignored-session analysis
_SESSION_DIMENSIONS = (Dimension.COLOR, Dimension.STYLE, Dimension.PATTERN, Dimension.FIT)


# ============================================================================
# Evaluation (pure)
# ============================================================================

def evaluate(
    blocklists: Blocklists,
    attributes: OutfitAttributes,
    now: float,
    config: BlocklistConfig = DEFAULT_BLOCKLIST_CONFIG,
) -> BlocklistDecision:
    """Decide how a candidate's attributes interact with the blocklists.

    Args:
        blocklists: The user's blocklists
        attributes: Candidate attributes
        now: Epoch seconds, for temporary expiry

    Returns:
        Hard match -> excluded; unexpired temporary match -> excluded;
        soft match -> penalty; otherwise no effect.
    """
    tokens = attributes.tokens()

    hard = sorted(tokens & blocklists.hard_tokens())
    if hard:
        return BlocklistDecision(True, 0.0, BlockTier.HARD, tuple(hard))

    signature = attributes.signature()
    if signature in blocklists.active_signatures(now):
        return BlocklistDecision(True, 1.0, BlockTier.TEMPORARY, (signature,))

    soft = sorted(tokens & blocklists.soft_tokens())
    if soft:
        return BlocklistDecision(False, config.SOFT_PENALTY, BlockTier.SOFT, tuple(soft))

    return BlocklistDecision(False, 1.0, BlockTier.NONE)


def shared_values(
    outfits: Sequence[OutfitAttributes],
    share: float,
    dimensions: Iterable[Dimension] = _SESSION_DIMENSIONS,
) -> List[Tuple[Dimension, str]]:
    """Values present in at least `share` of the outfits."""
    counts: Dict[Tuple[Dimension, str], int] = {}
    for outfit in outfits:
        for dimension in dimensions:
            for value in set(outfit.values(dimension)):
                counts[(dimension, value)] = counts.get((dimension, value), 0) + 1
    needed = share * len(outfits)
    return sorted(
        (key for key, count in counts.items() if count >= needed),
        key=lambda key: (key[0].value, key[1]),
    )


# ============================================================================
# Manager
# ============================================================================

class BlocklistManager(LoggerMixin):
    """
    Reads and updates per-user blocklists with atomic merges.

    Every mutating method returns the committed Blocklists.
    """

    def __init__(
        self,
        store: DocumentStore,
        config: BlocklistConfig = DEFAULT_BLOCKLIST_CONFIG,
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
    def config(self) -> BlocklistConfig:
        return self._config

    def _now(self) -> float:
        return to_epoch(self._clock())

    def get(self, user_id: str) -> Blocklists:
        stored = self._store.get(BLOCKLISTS, user_id)
        return Blocklists.from_dict(stored.data if stored else None)

    def evaluate(self, blocklists: Blocklists, attributes: OutfitAttributes) -> BlocklistDecision:
        return evaluate(blocklists, attributes, self._now(), self._config)

    # ------------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------------

    def _merge(
        self,
        user_id: str,
        change: Callable[[Blocklists, float], bool],
        before_commit: Optional[Callable[[], None]] = None,
    ) -> Blocklists:
        now = self._now()

        def mutate(data):
            lists = Blocklists.from_dict(data)
            changed = change(lists, now)
            changed = self._prune_temporary(lists, now) or changed
            return lists.to_dict() if changed else None

        kwargs = {"sleep": self._sleep} if self._sleep else {}
        result = atomic_merge(
            self._store,
            BLOCKLISTS,
            user_id,
            mutate,
            max_attempts=self._store_config.MAX_ATTEMPTS,
            backoff_base=self._store_config.BACKOFF_BASE_SECONDS,
            before_commit=before_commit,
            operation_id=uuid.uuid4().hex,
            **kwargs,
        )
        return Blocklists.from_dict(result.data)

    @staticmethod
    def _normalize(dimension: Union[Dimension, str], value: str) -> Tuple[Dimension, str]:
        try:
            dimension = Dimension(dimension)
            return dimension, normalize_value(dimension, value)
        except ValueError as e:
            raise ValidationError(str(e), details={"dimension": str(dimension), "value": value}) from e

    def add_hard(
        self,
        user_id: str,
        dimension: Union[Dimension, str],
        value: str,
        reason: str = "not my style",
        before_commit: Optional[Callable[[], None]] = None,
    ) -> Blocklists:
        """Never show this value again. Removes any soft entry for it."""
        dimension, value = self._normalize(dimension, value)

        def change(lists: Blocklists, now: float) -> bool:
            return self._put_hard(lists, dimension.value, value, reason, now)

        lists = self._merge(user_id, change, before_commit)
        self.logger.info("hard block added", user_id=user_id, dimension=dimension.value, value=value)
        return lists

    def remove_hard(
        self,
        user_id: str,
        dimension: Union[Dimension, str],
        value: str,
        before_commit: Optional[Callable[[], None]] = None,
    ) -> Blocklists:
        dimension, value = self._normalize(dimension, value)

        def change(lists: Blocklists, now: float) -> bool:
            before = len(lists.hard)
            lists.hard = [b for b in lists.hard if (b.dimension, b.value) != (dimension.value, value)]
            return len(lists.hard) != before

        return self._merge(user_id, change, before_commit)

    def add_soft(
        self,
        user_id: str,
        dimension: Union[Dimension, str],
        value: str,
        reason: str = "ignored",
        before_commit: Optional[Callable[[], None]] = None,
    ) -> Blocklists:
        """
        Record one more ignore for a value.

        Creates the soft entry, or increments its ignore_count. When the
        count reaches the promotion threshold the entry moves to the hard
        tier with reason "auto-promoted". Values already hard-blocked are
        left alone.
        """
        dimension, value = self._normalize(dimension, value)
        promoted: List[Tuple[str, str]] = []

        def change(lists: Blocklists, now: float) -> bool:
            promoted.clear()
            return self._bump_soft(lists, dimension.value, value, reason, now, promoted)

        lists = self._merge(user_id, change, before_commit)
        self._log_promotions(user_id, promoted)
        return lists

    def add_temporary(
        self,
        user_id: str,
        signature: str,
        ttl_days: Optional[int] = None,
        before_commit: Optional[Callable[[], None]] = None,
    ) -> Blocklists:
        """Suppress an exact attribute combination for ttl_days (default 30)."""
        return self.add_temporary_many(user_id, [signature], ttl_days, before_commit)

    def add_temporary_many(
        self,
        user_id: str,
        signatures: Iterable[str],
        ttl_days: Optional[int] = None,
        before_commit: Optional[Callable[[], None]] = None,
    ) -> Blocklists:
        signatures = [s for s in dict.fromkeys(signatures) if s]
        if not signatures:
            return self.get(user_id)
        ttl_seconds = (ttl_days if ttl_days is not None else self._config.TEMPORARY_TTL_DAYS) * 86400

        def change(lists: Blocklists, now: float) -> bool:
            wanted = set(signatures)
            lists.temporary = [t for t in lists.temporary if t.signature not in wanted]
            for signature in signatures:
                lists.temporary.append(TemporaryBlock(signature, now, now + ttl_seconds))
            return True

        return self._merge(user_id, change, before_commit)

    def analyze_ignored_session(
        self,
        user_id: str,
        outfits: Sequence[OutfitAttributes],
        before_commit: Optional[Callable[[], None]] = None,
    ) -> List[str]:
        """
        Soft-block values common to an ignored session's outfits.

        Needs at least IGNORED_SESSION_MIN_OUTFITS outfits; a value must
        appear in IGNORED_SESSION_SHARE of them.

        Returns:
            'dimension:value' tokens that were soft-blocked
        """
        if len(outfits) < self._config.IGNORED_SESSION_MIN_OUTFITS:
            return []
        common = shared_values(outfits, self._config.IGNORED_SESSION_SHARE)
        if not common:
            return []

        promoted: List[Tuple[str, str]] = []

        def change(lists: Blocklists, now: float) -> bool:
            promoted.clear()
            changed = False
            for dimension, value in common:
                changed = self._bump_soft(lists, dimension.value, value, IGNORED_IN_SESSION, now, promoted) or changed
            return changed

        self._merge(user_id, change, before_commit)
        self._log_promotions(user_id, promoted)
        tokens = [f"{d.value}:{v}" for d, v in common]
        self.logger.info("ignored session analyzed", user_id=user_id, soft_blocked=tokens, outfits=len(outfits))
        return tokens

    def reset(self, user_id: str) -> bool:
        return self._store.delete(BLOCKLISTS, user_id)

    def _log_promotions(self, user_id: str, promoted: Sequence[Tuple[str, str]]) -> None:
        # Runs after the merge so a retried write logs each promotion once
        for dimension, value in promoted:
            self.logger.info(
                "soft block auto-promoted",
                user_id=user_id,
                dimension=dimension,
                value=value,
                threshold=self._config.PROMOTION_THRESHOLD,
            )

    # ------------------------------------------------------------------------
    # In-place helpers (run inside a merge)
    # ------------------------------------------------------------------------

    @staticmethod
    def _put_hard(lists: Blocklists, dimension: str, value: str, reason: str, now: float) -> bool:
        key = (dimension, value)
        soft_before = len(lists.soft)
        lists.soft = [b for b in lists.soft if (b.dimension, b.value) != key]
        if any((b.dimension, b.value) == key for b in lists.hard):
            return len(lists.soft) != soft_before
        lists.hard.append(HardBlock(dimension, value, reason, now))
        return True

    def _bump_soft(
        self,
        lists: Blocklists,
        dimension: str,
        value: str,
        reason: str,
        now: float,
        promoted: Optional[List[Tuple[str, str]]] = None,
    ) -> bool:
        key = (dimension, value)
        if any((b.dimension, b.value) == key for b in lists.hard):
            return False

        entry = next((b for b in lists.soft if (b.dimension, b.value) == key), None)
        if entry is None:
            entry = SoftBlock(dimension, value, 0, reason, now)
            lists.soft.append(entry)
        entry.ignore_count += 1

        if entry.ignore_count >= self._config.PROMOTION_THRESHOLD:
            self._put_hard(lists, dimension, value, AUTO_PROMOTED, now)
            if promoted is not None:
                promoted.append(key)
        return True

    def _prune_temporary(self, lists: Blocklists, now: float) -> bool:
        before = len(lists.temporary)
        live = [t for t in lists.temporary if t.expires_at >= now]
        overflow = len(live) - self._config.TEMPORARY_MAX_ENTRIES
        if overflow > 0:
            # Stable sort keeps insertion order among equal timestamps
            live.sort(key=lambda t: t.recommended_at)
            live = live[overflow:]
        lists.temporary = live
        return len(live) != before
