"""
Generic versioned document store.

Two kinds of records are kept:

1. Keyed documents (profiles, blocklists, exploration stats) carrying a
   version number for optimistic concurrency. Writers read a document,
   compute the new state and call compare_and_set() with the version
   they read; a concurrent writer makes the call fail with
   WriteConflictError.
2. Indexed records (events, sessions) appended once under a caller key
   and queryable by (user_id, timestamp range).

Backends:
- InMemoryDocumentStore: thread-safe, for development and tests
- RedisDocumentStore: WATCH/MULTI transactions plus sorted-set indexes

TimeBoundedDocumentStore wraps either one so that no call blocks longer
than a configured timeout.
"""

import bisect
import copy
import json
import threading
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple, TypeVar

from core.errors import StoreTimeoutError, StoreUnavailableError, WriteConflictError
from core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass
class VersionedDocument:
    """A stored document and the version it was read at."""

    data: Dict[str, Any]
    version: int


class DocumentStore(ABC):
    """Interface every backend implements."""

    # -------------------------------------------------------------------------
    # Keyed documents
    # -------------------------------------------------------------------------

    @abstractmethod
    def get(self, collection: str, key: str) -> Optional[VersionedDocument]:
        """Fetch a document, or None if absent."""

    @abstractmethod
    def compare_and_set(
        self,
        collection: str,
        key: str,
        data: Dict[str, Any],
        expected_version: Optional[int],
    ) -> int:
        """
        Write a document if its current version equals expected_version.

        expected_version=None means the document must not exist yet.

        Returns:
            The new version

        Raises:
            WriteConflictError: if the version changed since it was read
        """

    @abstractmethod
    def delete(self, collection: str, key: str) -> bool:
        """Delete a keyed document. Returns True if it existed."""

    # -------------------------------------------------------------------------
    # Indexed records
    # -------------------------------------------------------------------------

    @abstractmethod
    def append(
        self,
        collection: str,
        user_id: str,
        key: str,
        timestamp: float,
        data: Dict[str, Any],
    ) -> bool:
        """
        Store a record under key if the key is new.

        Returns:
            False if a record with this key already exists
        """

    @abstractmethod
    def upsert_record(
        self,
        collection: str,
        user_id: str,
        key: str,
        timestamp: float,
        data: Dict[str, Any],
    ) -> None:
        """Create or overwrite an indexed record."""

    @abstractmethod
    def query(
        self,
        collection: str,
        user_id: str,
        since: Optional[float] = None,
        until: Optional[float] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """
        Records for a user with since <= timestamp <= until, oldest first.

        With a limit, the most recent `limit` records are returned
        (still oldest first).
        """

    @abstractmethod
    def delete_user_records(self, collection: str, user_id: str) -> int:
        """Delete every indexed record of a user. Returns the count."""

    def close(self) -> None:
        """Release backend resources."""


# =============================================================================
# In-Memory Backend
# =============================================================================

class InMemoryDocumentStore(DocumentStore):
    """
    Thread-safe in-memory store.

    Documents are deep-copied on the way in and out so callers can never
    mutate stored state without going through compare_and_set().
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._docs: Dict[Tuple[str, str], Tuple[Dict[str, Any], int]] = {}
        self._records: Dict[Tuple[str, str], Dict[str, Any]] = {}
        # (collection, user_id) -> sorted [(timestamp, key)]
        self._index: Dict[Tuple[str, str], List[Tuple[float, str]]] = {}
        self._record_owner: Dict[Tuple[str, str], Tuple[str, float]] = {}

    def get(self, collection: str, key: str) -> Optional[VersionedDocument]:
        with self._lock:
            entry = self._docs.get((collection, key))
            if entry is None:
                return None
            data, version = entry
            return VersionedDocument(data=copy.deepcopy(data), version=version)

    def compare_and_set(
        self,
        collection: str,
        key: str,
        data: Dict[str, Any],
        expected_version: Optional[int],
    ) -> int:
        with self._lock:
            entry = self._docs.get((collection, key))
            current = entry[1] if entry else None
            if current != expected_version:
                raise WriteConflictError(
                    f"{collection}/{key} changed (expected {expected_version}, found {current})",
                    details={"collection": collection, "key": key},
                )
            new_version = (current or 0) + 1
            self._docs[(collection, key)] = (copy.deepcopy(data), new_version)
            return new_version

    def delete(self, collection: str, key: str) -> bool:
        with self._lock:
            return self._docs.pop((collection, key), None) is not None

    def append(
        self,
        collection: str,
        user_id: str,
        key: str,
        timestamp: float,
        data: Dict[str, Any],
    ) -> bool:
        with self._lock:
            if (collection, key) in self._records:
                return False
            self._write_record(collection, user_id, key, timestamp, data)
            return True

    def upsert_record(
        self,
        collection: str,
        user_id: str,
        key: str,
        timestamp: float,
        data: Dict[str, Any],
    ) -> None:
        with self._lock:
            self._remove_record(collection, key)
            self._write_record(collection, user_id, key, timestamp, data)

    def query(
        self,
        collection: str,
        user_id: str,
        since: Optional[float] = None,
        until: Optional[float] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        with self._lock:
            index = self._index.get((collection, user_id), [])
            lo = 0 if since is None else bisect.bisect_left(index, (since, ""))
            hi = len(index)
            if until is not None:
                # Keys are strings; chr(0x10FFFF) sorts after any of them
                hi = bisect.bisect_right(index, (until, chr(0x10FFFF)))
            selected = index[lo:hi]
            if limit is not None:
                selected = selected[-limit:] if limit > 0 else []
            return [copy.deepcopy(self._records[(collection, key)]) for _, key in selected]

    def delete_user_records(self, collection: str, user_id: str) -> int:
        with self._lock:
            index = self._index.pop((collection, user_id), [])
            for _, key in index:
                self._records.pop((collection, key), None)
                self._record_owner.pop((collection, key), None)
            return len(index)

    def _write_record(self, collection, user_id, key, timestamp, data) -> None:
        self._records[(collection, key)] = copy.deepcopy(data)
        self._record_owner[(collection, key)] = (user_id, timestamp)
        bisect.insort(self._index.setdefault((collection, user_id), []), (timestamp, key))

    def _remove_record(self, collection, key) -> None:
        owner = self._record_owner.pop((collection, key), None)
        if owner is None:
            return
        user_id, timestamp = owner
        self._records.pop((collection, key), None)
        index = self._index.get((collection, user_id), [])
        pos = bisect.bisect_left(index, (timestamp, key))
        if pos < len(index) and index[pos] == (timestamp, key):
            index.pop(pos)


# =============================================================================
# Redis Backend
# =============================================================================

class RedisDocumentStore(DocumentStore):
    """
    Redis-based store for production.

    Keyed documents live in a hash {data, version}; writes run inside a
    WATCH/MULTI transaction so a concurrent writer aborts the commit.
    Indexed records are JSON strings indexed by a per-user sorted set
    scored by timestamp.

    Connection and protocol errors surface as StoreUnavailableError so
    callers handle them like any other transient store failure.

    Requires: pip install redis
    """

    def __init__(self, redis_url: Optional[str] = None, key_prefix: str = "pers", client: Any = None):
        """
        Initialize Redis backend.

        Args:
            redis_url: Redis connection URL
            key_prefix: Namespace for every key written
            client: Pre-built client (tests inject a mock here)
        """
        try:
            import redis
        except ImportError:
            raise ImportError("Redis backend requires 'redis' package. Install with: pip install redis")

        self._watch_error = redis.WatchError
        self._redis_error = redis.RedisError
        self._prefix = key_prefix
        if client is None:
            client = redis.from_url(redis_url or "redis://localhost:6379/0", decode_responses=True)
            client.ping()
            logger.info("connected to redis", url=(redis_url or "").split("@")[-1])
        self._redis = client

    def _doc_key(self, collection: str, key: str) -> str:
        return f"{self._prefix}:{collection}:doc:{key}"

    def _record_key(self, collection: str, key: str) -> str:
        return f"{self._prefix}:{collection}:rec:{key}"

    def _index_key(self, collection: str, user_id: str) -> str:
        return f"{self._prefix}:{collection}:idx:{user_id}"

    @contextmanager
    def _guard(self, op: str) -> Iterator[None]:
        try:
            yield
        except self._redis_error as e:
            raise StoreUnavailableError(f"redis {op} failed: {e}", details={"op": op}) from e

    def get(self, collection: str, key: str) -> Optional[VersionedDocument]:
        with self._guard("get"):
            raw = self._redis.hgetall(self._doc_key(collection, key))
        if not raw:
            return None
        return VersionedDocument(data=json.loads(raw["data"]), version=int(raw["version"]))

    def compare_and_set(
        self,
        collection: str,
        key: str,
        data: Dict[str, Any],
        expected_version: Optional[int],
    ) -> int:
        rkey = self._doc_key(collection, key)
        with self._guard("compare_and_set"), self._redis.pipeline() as pipe:
            try:
                pipe.watch(rkey)
                raw_version = pipe.hget(rkey, "version")
                current = int(raw_version) if raw_version is not None else None
                if current != expected_version:
                    raise WriteConflictError(
                        f"{collection}/{key} changed (expected {expected_version}, found {current})",
                        details={"collection": collection, "key": key},
                    )
                new_version = (current or 0) + 1
                pipe.multi()
                pipe.hset(rkey, mapping={"data": json.dumps(data), "version": new_version})
                pipe.execute()
                return new_version
            except self._watch_error:
                raise WriteConflictError(
                    f"{collection}/{key} modified during transaction",
                    details={"collection": collection, "key": key},
                )

    def delete(self, collection: str, key: str) -> bool:
        with self._guard("delete"):
            return bool(self._redis.delete(self._doc_key(collection, key)))

    def append(
        self,
        collection: str,
        user_id: str,
        key: str,
        timestamp: float,
        data: Dict[str, Any],
    ) -> bool:
        with self._guard("append"):
            # One MULTI: SET NX keeps the first writer, ZADD NX restores a
            # missing index entry without moving an existing one
            pipe = self._redis.pipeline()
            pipe.set(self._record_key(collection, key), json.dumps(data), nx=True)
            pipe.zadd(self._index_key(collection, user_id), {key: timestamp}, nx=True)
            created, _ = pipe.execute()
            return bool(created)

    def upsert_record(
        self,
        collection: str,
        user_id: str,
        key: str,
        timestamp: float,
        data: Dict[str, Any],
    ) -> None:
        with self._guard("upsert_record"):
            pipe = self._redis.pipeline()
            pipe.set(self._record_key(collection, key), json.dumps(data))
            pipe.zadd(self._index_key(collection, user_id), {key: timestamp})
            pipe.execute()

    def query(
        self,
        collection: str,
        user_id: str,
        since: Optional[float] = None,
        until: Optional[float] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        index_key = self._index_key(collection, user_id)
        with self._guard("query"):
            keys = self._redis.zrangebyscore(
                index_key,
                "-inf" if since is None else since,
                "+inf" if until is None else until,
            )
            if limit is not None:
                keys = keys[-limit:] if limit > 0 else []
            if not keys:
                return []
            raw = self._redis.mget([self._record_key(collection, k) for k in keys])
        return [json.loads(r) for r in raw if r is not None]

    def delete_user_records(self, collection: str, user_id: str) -> int:
        index_key = self._index_key(collection, user_id)
        with self._guard("delete_user_records"):
            keys = self._redis.zrange(index_key, 0, -1)
            if keys:
                self._redis.delete(*[self._record_key(collection, k) for k in keys])
            self._redis.delete(index_key)
        return len(keys)

    def close(self) -> None:
        self._redis.close()


# =============================================================================
# Time-Bounded Wrapper
# =============================================================================

class TimeBoundedDocumentStore(DocumentStore):
    """
    Runs every call of an inner store on a worker pool and waits at most
    timeout_seconds for the result.

    A call that times out raises StoreTimeoutError; the worker keeps
    running in the background, so a timed-out write may still land.
    Callers that retry writes pass an operation_id to atomic_merge.
    """

    def __init__(self, inner: DocumentStore, timeout_seconds: float = 2.0, max_workers: int = 8):
        self._inner = inner
        self._timeout = timeout_seconds
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="store")

    @property
    def inner(self) -> DocumentStore:
        return self._inner

    def _call(self, op: str, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        future = self._executor.submit(fn, *args, **kwargs)
        try:
            return future.result(timeout=self._timeout)
        except FutureTimeoutError:
            future.cancel()
            logger.warning("store call timed out", op=op, timeout_seconds=self._timeout)
            raise StoreTimeoutError(
                f"store {op} exceeded {self._timeout}s",
                details={"op": op, "timeout_seconds": self._timeout},
            )

    def get(self, collection, key):
        return self._call("get", self._inner.get, collection, key)

    def compare_and_set(self, collection, key, data, expected_version):
        return self._call(
            "compare_and_set", self._inner.compare_and_set, collection, key, data, expected_version
        )

    def delete(self, collection, key):
        return self._call("delete", self._inner.delete, collection, key)

    def append(self, collection, user_id, key, timestamp, data):
        return self._call("append", self._inner.append, collection, user_id, key, timestamp, data)

    def upsert_record(self, collection, user_id, key, timestamp, data):
        return self._call(
            "upsert_record", self._inner.upsert_record, collection, user_id, key, timestamp, data
        )

    def query(self, collection, user_id, since=None, until=None, limit=None):
        return self._call("query", self._inner.query, collection, user_id, since, until, limit)

    def delete_user_records(self, collection, user_id):
        return self._call("delete_user_records", self._inner.delete_user_records, collection, user_id)

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)
        self._inner.close()


# =============================================================================
# Factory
# =============================================================================

def create_document_store(settings: Any) -> DocumentStore:
    """
    Build the configured store, wrapped with the call timeout.

    backend "auto" tries Redis and falls back to memory when it is not
    reachable; "redis" fails hard.
    """
    backend = settings.store_backend
    if backend == "auto":
        try:
            inner: DocumentStore = RedisDocumentStore(settings.redis_url, settings.redis_key_prefix)
        except Exception as e:
            logger.warning("redis unavailable, using in-memory store", error=str(e))
            inner = InMemoryDocumentStore()
    elif backend == "redis":
        inner = RedisDocumentStore(settings.redis_url, settings.redis_key_prefix)
    else:
        inner = InMemoryDocumentStore()
    return TimeBoundedDocumentStore(inner, timeout_seconds=settings.store_timeout_seconds)
