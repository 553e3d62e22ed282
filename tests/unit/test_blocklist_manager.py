"""
Unit tests for the blocklist manager.

Tests cover:
1. Decision precedence (hard > temporary > soft)
2. Soft ignore counting and auto-promotion
3. Temporary expiry and capping
4. Ignored-session analysis
"""

import time
from unittest.mock import MagicMock

import pytest
from structlog.testing import capture_logs

from config.constants import BlocklistConfig
from core.errors import ValidationError, WriteConflictError
from core.utils import to_epoch
from personalization.blocklist_manager import AUTO_PROMOTED, BlocklistManager, evaluate, shared_values
from personalization.models import (
    BlockTier,
    Blocklists,
    Dimension,
    HardBlock,
    OutfitAttributes,
    SoftBlock,
    TemporaryBlock,
)
from storage.document_store import InMemoryDocumentStore, TimeBoundedDocumentStore


@pytest.fixture
def manager(store, clock, no_sleep):
    return BlocklistManager(store, clock=clock, sleep=no_sleep)


NEON = OutfitAttributes(colors=["neon yellow", "black"], styles=["streetwear"])
NAVY_LOOK = OutfitAttributes(colors=["navy", "cream"], styles=["minimalist"])


# =============================================================================
# Evaluation
# =============================================================================

class TestEvaluate:

    def test_no_lists_no_effect(self):
        decision = evaluate(Blocklists(), NAVY_LOOK, now=0)

        assert decision.excluded is False
        assert decision.penalty_multiplier == 1.0
        assert decision.matched_tier == BlockTier.NONE

    def test_hard_excludes(self):
        lists = Blocklists(hard=[HardBlock("color", "#dfff00", "not my style", 0)])

        decision = evaluate(lists, NEON, now=0)

        assert decision.excluded is True
        assert decision.matched_tier == BlockTier.HARD
        assert decision.matched_values == ("color:#dfff00",)

    def test_hard_wins_over_soft_and_temporary(self):
        lists = Blocklists(
            hard=[HardBlock("style", "streetwear", "", 0)],
            soft=[SoftBlock("color", "#000000", 3, "ignored", 0)],
            temporary=[TemporaryBlock(NEON.signature(), 0, 100)],
        )

        assert evaluate(lists, NEON, now=10).matched_tier == BlockTier.HARD

    def test_temporary_wins_over_soft(self):
        lists = Blocklists(
            soft=[SoftBlock("color", "#000000", 3, "ignored", 0)],
            temporary=[TemporaryBlock(NEON.signature(), 0, 100)],
        )

        decision = evaluate(lists, NEON, now=10)

        assert decision.excluded is True
        assert decision.matched_tier == BlockTier.TEMPORARY

    def test_expired_temporary_is_absent(self):
        lists = Blocklists(temporary=[TemporaryBlock(NEON.signature(), 0, 100)])

        assert evaluate(lists, NEON, now=101).matched_tier == BlockTier.NONE

    def test_soft_penalizes(self):
        lists = Blocklists(soft=[SoftBlock("style", "streetwear", 1, "ignored", 0)])

        decision = evaluate(lists, NEON, now=0, config=BlocklistConfig(SOFT_PENALTY=0.3))

        assert decision.excluded is False
        assert decision.penalty_multiplier == 0.3
        assert decision.matched_tier == BlockTier.SOFT


# =============================================================================
# Hard Blocks
# =============================================================================

class TestHardBlocks:

    def test_add_normalizes_value(self, manager):
        lists = manager.add_hard("user-1", "color", "Neon Yellow")

        assert [(b.dimension, b.value, b.reason) for b in lists.hard] == [("color", "#dfff00", "not my style")]
        assert manager.get("user-1").hard_tokens() == {"color:#dfff00"}

    def test_add_is_idempotent(self, manager):
        manager.add_hard("user-1", "style", "streetwear")
        lists = manager.add_hard("user-1", "style", "street")

        assert len(lists.hard) == 1

    def test_hard_replaces_soft_entry(self, manager):
        manager.add_soft("user-1", "style", "streetwear")
        lists = manager.add_hard("user-1", "style", "streetwear")

        assert lists.soft == []
        assert lists.hard_tokens() == {"style:streetwear"}

    def test_remove(self, manager):
        manager.add_hard("user-1", "color", "navy")

        assert manager.remove_hard("user-1", "color", "navy").hard == []

    def test_unknown_value_rejected(self, manager):
        with pytest.raises(ValidationError):
            manager.add_hard("user-1", "color", "blurple")

    def test_unknown_dimension_rejected(self, manager):
        with pytest.raises(ValidationError):
            manager.add_hard("user-1", "texture", "velvet")

    def test_before_commit_called(self, manager):
        calls = []

        manager.add_hard("user-1", "color", "navy", before_commit=lambda: calls.append(1))

        assert calls == [1]


# =============================================================================
# Soft Blocks
# =============================================================================

class TestSoftBlocks:

    def test_ignore_count_increments(self, manager):
        manager.add_soft("user-1", "pattern", "animal print")
        lists = manager.add_soft("user-1", "pattern", "animal-print")

        assert [(b.value, b.ignore_count) for b in lists.soft] == [("animal-print", 2)]

    def test_tenth_ignore_promotes(self, manager):
        for _ in range(9):
            lists = manager.add_soft("user-1", "color", "orange")
        assert lists.soft[0].ignore_count == 9
        assert lists.hard == []

        lists = manager.add_soft("user-1", "color", "orange")

        assert lists.soft == []
        assert [(b.value, b.reason) for b in lists.hard] == [("#ffa500", AUTO_PROMOTED)]

    def test_custom_threshold(self, store, clock, no_sleep):
        manager = BlocklistManager(store, config=BlocklistConfig(PROMOTION_THRESHOLD=2), clock=clock, sleep=no_sleep)

        manager.add_soft("user-1", "fit", "oversized")
        lists = manager.add_soft("user-1", "fit", "oversized")

        assert lists.hard_tokens() == {"fit:oversized"}

    def test_hard_blocked_value_not_softened(self, manager):
        manager.add_hard("user-1", "color", "orange")
        lists = manager.add_soft("user-1", "color", "orange")

        assert lists.soft == []
        assert len(lists.hard) == 1


class SlowFirstWrite(InMemoryDocumentStore):
    """Commits the first write only after the caller has stopped waiting."""

    def __init__(self, delay: float):
        super().__init__()
        self._delay = delay
        self.writes = 0

    def compare_and_set(self, collection, key, data, expected_version):
        self.writes += 1
        if self.writes == 1:
            time.sleep(self._delay)
        return super().compare_and_set(collection, key, data, expected_version)


class TestRetriedWrites:

    def test_timed_out_write_that_lands_is_not_counted_twice(self, clock):
        inner = SlowFirstWrite(delay=0.15)
        bounded = TimeBoundedDocumentStore(inner, timeout_seconds=0.05)
        manager = BlocklistManager(bounded, clock=clock, sleep=lambda _: time.sleep(0.3))
        try:
            lists = manager.add_soft("user-1", "color", "navy")
        finally:
            bounded.close()

        assert [b.ignore_count for b in lists.soft] == [1]
        stored = Blocklists.from_dict(inner.get("blocklists", "user-1").data)
        assert [b.ignore_count for b in stored.soft] == [1]
        assert inner.writes == 1

    def test_promotion_logged_once_across_retries(self, store, clock, no_sleep):
        store.compare_and_set(
            "blocklists", "user-1", {"soft": [SoftBlock("color", "#ffa500", 9, "ignored", 0).to_dict()]}, None
        )
        flaky = MagicMock(wraps=store)
        real_cas = store.compare_and_set

        def cas(collection, key, data, expected):
            if flaky.compare_and_set.call_count < 3:
                raise WriteConflictError("conflict")
            return real_cas(collection, key, data, expected)

        flaky.compare_and_set.side_effect = cas
        manager = BlocklistManager(flaky, clock=clock, sleep=no_sleep)

        with capture_logs() as logs:
            lists = manager.add_soft("user-1", "color", "orange")

        assert [(b.value, b.reason) for b in lists.hard] == [("#ffa500", AUTO_PROMOTED)]
        promotions = [e for e in logs if e["event"] == "soft block auto-promoted"]
        assert len(promotions) == 1
        assert promotions[0]["value"] == "#ffa500"

    def test_no_promotion_no_log(self, manager):
        with capture_logs() as logs:
            manager.add_soft("user-1", "color", "orange")

        assert not [e for e in logs if e["event"] == "soft block auto-promoted"]


# =============================================================================
# Temporary Blocks
# =============================================================================

class TestTemporaryBlocks:

    def test_ttl(self, manager, clock):
        lists = manager.add_temporary("user-1", NAVY_LOOK.signature())

        entry = lists.temporary[0]
        assert entry.recommended_at == to_epoch(clock())
        assert entry.expires_at - entry.recommended_at == 30 * 86400

    def test_blocks_until_expiry(self, manager, clock):
        manager.add_temporary("user-1", NAVY_LOOK.signature(), ttl_days=1)

        assert manager.evaluate(manager.get("user-1"), NAVY_LOOK).matched_tier == BlockTier.TEMPORARY
        clock.advance(days=1, seconds=1)
        assert manager.evaluate(manager.get("user-1"), NAVY_LOOK).matched_tier == BlockTier.NONE

    def test_expired_entries_pruned_on_write(self, manager, clock):
        manager.add_temporary("user-1", "a/b", ttl_days=1)
        clock.advance(days=2)

        lists = manager.add_temporary("user-1", "c/d")

        assert [t.signature for t in lists.temporary] == ["c/d"]

    def test_re_adding_refreshes(self, manager, clock):
        manager.add_temporary("user-1", "a/b")
        clock.advance(days=10)

        lists = manager.add_temporary("user-1", "a/b")

        assert len(lists.temporary) == 1
        assert lists.temporary[0].recommended_at == to_epoch(clock())

    def test_cap_drops_oldest(self, store, clock, no_sleep):
        manager = BlocklistManager(store, config=BlocklistConfig(TEMPORARY_MAX_ENTRIES=3), clock=clock, sleep=no_sleep)
        for i in range(5):
            manager.add_temporary("user-1", f"sig-{i}")
            clock.advance(seconds=1)

        signatures = [t.signature for t in manager.get("user-1").temporary]

        assert signatures == ["sig-2", "sig-3", "sig-4"]

    def test_empty_signatures_skip_write(self, manager, store):
        manager.add_temporary_many("user-1", ["", ""])

        assert store.get("blocklists", "user-1") is None


# =============================================================================
# Ignored Sessions
# =============================================================================

class TestIgnoredSessions:

    def test_shared_values(self):
        outfits = [
            OutfitAttributes(colors=["black", "red"], styles=["edgy"]),
            OutfitAttributes(colors=["black"], styles=["edgy"], patterns=["striped"]),
            OutfitAttributes(colors=["black", "white"], styles=["classic"]),
        ]

        common = shared_values(outfits, 0.6)

        assert common == [(Dimension.COLOR, "#000000"), (Dimension.STYLE, "edgy")]

    def test_session_soft_blocks_common_values(self, manager):
        outfits = [
            OutfitAttributes(colors=["black", "red"], styles=["edgy"]),
            OutfitAttributes(colors=["black"], styles=["edgy"]),
            OutfitAttributes(colors=["black", "white"], styles=["edgy"]),
        ]

        tokens = manager.analyze_ignored_session("user-1", outfits)

        assert tokens == ["color:#000000", "style:edgy"]
        assert manager.get("user-1").soft_tokens() == {"color:#000000", "style:edgy"}

    def test_single_outfit_is_not_a_pattern(self, manager, store):
        assert manager.analyze_ignored_session("user-1", [NEON]) == []
        assert store.get("blocklists", "user-1") is None

    def test_nothing_in_common(self, manager):
        outfits = [NEON, NAVY_LOOK]

        assert manager.analyze_ignored_session("user-1", outfits) == []

    def test_reset(self, manager):
        manager.add_hard("user-1", "color", "navy")

        assert manager.reset("user-1") is True
        assert manager.get("user-1").hard == []
