"""
Optimistic read-modify-write over a DocumentStore.

atomic_merge() reads a document, lets the caller compute the new state,
and commits with compare_and_set(). Conflicts and timeouts are retried
with exponential backoff (base * 2^attempt); once attempts run out a
TransientStoreError is raised for the caller to degrade on.

A commit that timed out may still land after the caller gave up on it.
Passing an operation_id makes the merge exactly-once: the id is written
into the document with the change, and a retry that finds it there
returns the committed document instead of applying the change again.
"""

import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from core.errors import TransientStoreError
from core.logging import get_logger
from storage.document_store import DocumentStore

logger = get_logger(__name__)

# Returns the new document, or None to leave the stored one untouched
Mutator = Callable[[Optional[Dict[str, Any]]], Optional[Dict[str, Any]]]

# Reserved document field holding the ids of recently committed operations
APPLIED_OPS_FIELD = "_applied_ops"
MAX_APPLIED_OPS = 64


@dataclass
class MergeResult:
    """Outcome of an atomic merge."""

    data: Optional[Dict[str, Any]]
    changed: bool
    version: Optional[int]
    attempts: int


def _tag(new_data: Dict[str, Any], current_data: Optional[Dict[str, Any]], operation_id: str) -> Dict[str, Any]:
    previous = list((current_data or {}).get(APPLIED_OPS_FIELD, []))
    tagged = dict(new_data)
    tagged[APPLIED_OPS_FIELD] = (previous + [operation_id])[-MAX_APPLIED_OPS:]
    return tagged


def atomic_merge(
    store: DocumentStore,
    collection: str,
    key: str,
    mutate: Mutator,
    max_attempts: int = 3,
    backoff_base: float = 0.1,
    before_commit: Optional[Callable[[], None]] = None,
    sleep: Callable[[float], None] = time.sleep,
    operation_id: Optional[str] = None,
) -> MergeResult:
    """
    Apply mutate() to the current document and commit atomically.

    mutate may be called once per attempt, so it must be a pure function
    of the document it receives.

    Args:
        store: Backing store
        collection: Collection name
        key: Document key
        mutate: Maps the current document (None if absent) to the new one
        max_attempts: Attempts before giving up
        backoff_base: Sleep base in seconds
        before_commit: Called right before each commit (cache invalidation)
        sleep: Injected for tests
        operation_id: Unique id of this change; recorded in the document
            so a late-landing commit is never applied twice

    Raises:
        TransientStoreError: when every attempt conflicted or timed out
    """
    last_error: Optional[TransientStoreError] = None

    for attempt in range(max_attempts):
        try:
            current = store.get(collection, key)
            current_data = current.data if current else None
            expected = current.version if current else None

            if operation_id is not None and operation_id in (current_data or {}).get(APPLIED_OPS_FIELD, []):
                logger.debug(
                    "atomic merge already committed",
                    collection=collection,
                    key=key,
                    operation_id=operation_id,
                    attempt=attempt + 1,
                )
                return MergeResult(data=current_data, changed=True, version=expected, attempts=attempt + 1)

            new_data = mutate(current_data)
            if new_data is None:
                return MergeResult(data=current_data, changed=False, version=expected, attempts=attempt + 1)
            if operation_id is not None:
                new_data = _tag(new_data, current_data, operation_id)

            if before_commit is not None:
                before_commit()
            version = store.compare_and_set(collection, key, new_data, expected)
            return MergeResult(data=new_data, changed=True, version=version, attempts=attempt + 1)

        except TransientStoreError as e:
            last_error = e
            logger.debug(
                "atomic merge retry",
                collection=collection,
                key=key,
                attempt=attempt + 1,
                error=str(e),
            )
            if attempt + 1 < max_attempts:
                sleep(backoff_base * (2 ** attempt))

    logger.warning(
        "atomic merge exhausted retries",
        collection=collection,
        key=key,
        attempts=max_attempts,
    )
    raise TransientStoreError(
        f"could not commit {collection}/{key} after {max_attempts} attempts",
        details={"collection": collection, "key": key, "cause": str(last_error)},
    )
