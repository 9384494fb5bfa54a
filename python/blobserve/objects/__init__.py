"""
blobserve object system.

Blob bytes are plain files on disk; the MetadataStore tracks which of them
are live objects in an index rebuilt from an append-only log.
"""

from .lock import ReadWriteLock
from .store import MetadataStore, Record, StoreState, guess_content_type

__all__ = [
    "MetadataStore",
    "Record",
    "StoreState",
    "ReadWriteLock",
    "guess_content_type",
]
