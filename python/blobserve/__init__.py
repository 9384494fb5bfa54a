"""
blobserve - object storage with presigned URLs.

Objects are plain files under a storage root, indexed by a MetadataStore
whose append-only log is replayed on startup. Capability tokens grant
time-limited access to a single path without server-side session state.
"""

from .errors import (
    AlreadyExistsError,
    BlobServeError,
    CorruptLogError,
    ExitingError,
    NotExistError,
    NotInitializedError,
    TokenExpiredError,
    TokenVerificationError,
)
from .objects import MetadataStore, Record, StoreState
from .signing import Permission, SignedURL, decode_token, encode_token

__version__ = "0.1.0"

__all__ = [
    "MetadataStore",
    "Record",
    "StoreState",
    "Permission",
    "SignedURL",
    "encode_token",
    "decode_token",
    "BlobServeError",
    "NotExistError",
    "AlreadyExistsError",
    "NotInitializedError",
    "ExitingError",
    "CorruptLogError",
    "TokenVerificationError",
    "TokenExpiredError",
]
