"""
Per-user cache for derived documents (profiles, blocklists).

Bounded LRU with a TTL. Writers follow invalidate-before-commit:

    token = cache.begin_read(user_id)      # reader
    profile = compute(...)
    cache.put(user_id, profile, token)     # dropped if a writer invalidated meanwhile

    cache.invalidate(user_id)              # writer, before committing
    store.compare_and_set(...)
    cache.invalidate(user_id)              # and again after the commit

A reader that started before the write cannot overwrite the cache with
its stale result because invalidate() moves the user's generation past
the reader's token.
"""

import itertools
import threading
import time
from collections import OrderedDict
from typing import Any, Callable, Dict, Generic, Optional, Tuple, TypeVar

T = TypeVar("T")


class ProfileCache(Generic[T]):
    """Thread-safe TTL + LRU cache keyed by user id."""

    def __init__(
        self,
        ttl_seconds: float = 300.0,
        max_size: int = 1024,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._ttl = ttl_seconds
        self._max_size = max_size
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: "OrderedDict[str, Tuple[T, float]]" = OrderedDict()
        self._generations: "OrderedDict[str, int]" = OrderedDict()
        self._counter = itertools.count(1)
        # Generation reported for users whose own generation was pruned
        self._generation_floor = 0
        self._hits = 0
        self._misses = 0

    def begin_read(self, user_id: str) -> int:
        """Token to pass to put() after computing a fresh value."""
        with self._lock:
            return self._generations.get(user_id, self._generation_floor)

    def get(self, user_id: str, allow_stale: bool = False) -> Optional[T]:
        """
        Cached value, or None.

        allow_stale returns an expired entry too; used when the store is
        unavailable and an old profile beats an empty one.
        """
        with self._lock:
            entry = self._entries.get(user_id)
            if entry is None:
                self._misses += 1
                return None
            value, stored_at = entry
            if not allow_stale and self._clock() - stored_at > self._ttl:
                self._misses += 1
                return None
            self._entries.move_to_end(user_id)
            self._hits += 1
            return value

    def put(self, user_id: str, value: T, token: Optional[int] = None) -> bool:
        """
        Store a value. Returns False (and stores nothing) if the user was
        invalidated after the token was taken.
        """
        with self._lock:
            if token is not None and token != self._generations.get(user_id, self._generation_floor):
                return False
            self._entries[user_id] = (value, self._clock())
            self._entries.move_to_end(user_id)
            while len(self._entries) > self._max_size:
                self._entries.popitem(last=False)
            return True

    def invalidate(self, user_id: str) -> None:
        with self._lock:
            self._entries.pop(user_id, None)
            self._generations[user_id] = next(self._counter)
            self._generations.move_to_end(user_id)
            while len(self._generations) > self._max_size * 4:
                _, pruned = self._generations.popitem(last=False)
                self._generation_floor = max(self._generation_floor, pruned)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._generation_floor = next(self._counter)
            self._generations.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "size": len(self._entries),
                "max_size": self._max_size,
                "ttl_seconds": self._ttl,
                "hits": self._hits,
                "misses": self._misses,
            }
