"""
Adaptive exploration.

Tracks how often exploratory picks convert (liked / selected / wore) and
moves the user's exploring ratio between EXPLORATION_MIN and
EXPLORATION_MAX percent:

- success rate >= EXPLORATION_RAISE_RATE: level + EXPLORATION_STEP
- success rate <  EXPLORATION_LOWER_RATE after more than
  EXPLORATION_MIN_SHOWN picks: level - EXPLORATION_STEP
"""

import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional

from config.constants import (
    DEFAULT_DIVERSIFIER_CONFIG,
    DEFAULT_STORE_CONFIG,
    EXPLORATION,
    DiversifierConfig,
    StoreConfig,
)
from core.logging import LoggerMixin
from core.utils import Clock, to_epoch, utc_now
from storage.atomic import atomic_merge
from storage.document_store import DocumentStore


@dataclass
class ExplorationStats:
    """Per-user exploration counters."""

    level: int
    shown: int = 0
    succeeded: int = 0
    # Signatures of exploratory picks still waiting for a positive outcome
    pending: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def success_rate(self) -> float:
        return self.succeeded / self.shown if self.shown else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "level": self.level,
            "shown": self.shown,
            "succeeded": self.succeeded,
            "pending": self.pending,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]], default_level: int) -> "ExplorationStats":
        if not data:
            return cls(level=default_level)
        return cls(
            level=int(data.get("level", default_level)),
            shown=int(data.get("shown", 0)),
            succeeded=int(data.get("succeeded", 0)),
            pending=list(data.get("pending", [])),
        )


def adjust_level(stats: ExplorationStats, config: DiversifierConfig = DEFAULT_DIVERSIFIER_CONFIG) -> int:
    rate = stats.success_rate
    if stats.shown > 0 and rate >= config.EXPLORATION_RAISE_RATE:
        return min(config.EXPLORATION_MAX, stats.level + config.EXPLORATION_STEP)
    if stats.shown > config.EXPLORATION_MIN_SHOWN and rate < config.EXPLORATION_LOWER_RATE:
        return max(config.EXPLORATION_MIN, stats.level - config.EXPLORATION_STEP)
    return stats.level


class ExplorationTracker(LoggerMixin):
    """Persists ExplorationStats and applies the adjustment rule."""

    def __init__(
        self,
        store: DocumentStore,
        config: DiversifierConfig = DEFAULT_DIVERSIFIER_CONFIG,
        store_config: StoreConfig = DEFAULT_STORE_CONFIG,
        clock: Clock = utc_now,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        self._store = store
        self._config = config
        self._store_config = store_config
        self._clock = clock
        self._sleep = sleep

    def get(self, user_id: str) -> ExplorationStats:
        stored = self._store.get(EXPLORATION, user_id)
        return ExplorationStats.from_dict(stored.data if stored else None, self._config.EXPLORATION_START)

    def exploring_ratio(self, user_id: str) -> float:
        return self.get(user_id).level / 100

    def _merge(self, user_id: str, change: Callable[[ExplorationStats], bool]) -> ExplorationStats:
        def mutate(data):
            stats = ExplorationStats.from_dict(data, self._config.EXPLORATION_START)
            if not change(stats):
                return None
            stats.level = adjust_level(stats, self._config)
            return stats.to_dict()

        kwargs = {"sleep": self._sleep} if self._sleep else {}
        result = atomic_merge(
            self._store,
            EXPLORATION,
            user_id,
            mutate,
            max_attempts=self._store_config.MAX_ATTEMPTS,
            backoff_base=self._store_config.BACKOFF_BASE_SECONDS,
            operation_id=uuid.uuid4().hex,
            **kwargs,
        )
        return ExplorationStats.from_dict(result.data, self._config.EXPLORATION_START)

    def record_shown(self, user_id: str, signatures: Iterable[str]) -> ExplorationStats:
        """Count exploratory picks that were just recommended."""
        signatures = list(signatures)
        if not signatures:
            return self.get(user_id)
        now = to_epoch(self._clock())

        def change(stats: ExplorationStats) -> bool:
            stats.shown += len(signatures)
            stats.pending.extend({"signature": s, "shown_at": now} for s in signatures)
            overflow = len(stats.pending) - self._config.EXPLORATION_MAX_PENDING
            if overflow > 0:
                del stats.pending[:overflow]
            return True

        return self._merge(user_id, change)

    def record_outcome(self, user_id: str, signature: str) -> bool:
        """
        Mark a pending exploratory pick as successful.

        Returns:
            True if the signature matched a pending pick
        """
        matched = []

        def change(stats: ExplorationStats) -> bool:
            matched.clear()
            for i, entry in enumerate(stats.pending):
                if entry.get("signature") == signature:
                    del stats.pending[i]
                    stats.succeeded += 1
                    matched.append(signature)
                    return True
            return False

        stats = self._merge(user_id, change)
        if matched:
            self.logger.debug(
                "exploration success",
                user_id=user_id,
                level=stats.level,
                success_rate=round(stats.success_rate, 3),
            )
        return bool(matched)

    def reset(self, user_id: str) -> bool:
        return self._store.delete(EXPLORATION, user_id)
