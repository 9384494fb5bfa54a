"""
Error types raised by the metadata store, the token codec and the config layer.

Each error carries the HTTP status the API server answers with.
"""

from typing import Optional


class BlobServeError(Exception):
    """Base class for all blobserve errors."""
    http_status = 500


class NotExistError(BlobServeError):
    """Unknown object id, or the backing file has vanished."""
    http_status = 404


class AlreadyExistsError(BlobServeError):
    """A live record already uses the requested path."""
    http_status = 400


class NotInitializedError(BlobServeError):
    """The store was used before its log was replayed."""
    http_status = 500


class ExitingError(BlobServeError):
    """A mutation was attempted after the store was closed."""
    http_status = 500


class CorruptLogError(BlobServeError):
    """The append-only log contains an entry that cannot be replayed."""
    http_status = 500

    def __init__(self, message: str, line_number: Optional[int] = None):
        super().__init__(message)
        self.line_number = line_number


class TokenVerificationError(BlobServeError):
    """A capability token is malformed or its signature does not match."""
    http_status = 400


class TokenExpiredError(BlobServeError):
    """A capability token verified correctly but is past its expiry."""
    http_status = 400


class PermissionDeniedError(BlobServeError):
    """A capability token does not grant the attempted operation."""
    http_status = 403


class InvalidPathError(BlobServeError):
    """A requested path resolves outside the storage root."""
    http_status = 400


class ConfigError(BlobServeError):
    """Invalid or incomplete server configuration."""


class BadRequestError(BlobServeError):
    """Malformed request."""
    http_status = 400
