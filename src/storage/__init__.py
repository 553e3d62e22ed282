"""
Storage layer: versioned document store, atomic merge, profile cache.
"""

from storage.atomic import MergeResult, atomic_merge
from storage.document_store import (
    DocumentStore,
    InMemoryDocumentStore,
    RedisDocumentStore,
    TimeBoundedDocumentStore,
    VersionedDocument,
    create_document_store,
)
from storage.profile_cache import ProfileCache

__all__ = [
    "DocumentStore",
    "InMemoryDocumentStore",
    "RedisDocumentStore",
    "TimeBoundedDocumentStore",
    "VersionedDocument",
    "create_document_store",
    "MergeResult",
    "atomic_merge",
    "ProfileCache",
]
