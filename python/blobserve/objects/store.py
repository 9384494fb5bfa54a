"""
MetadataStore - append-only-log backed index of stored objects.

Blob bytes live as ordinary files on disk. The store tracks which files
exist as objects: every create appends an ADD entry to the log and every
delete appends a DEL entry. On startup the log is replayed from the first
line to rebuild the in-memory index, so the log is the source of truth and
the index is a cache of it.

Log format, one entry per line:

    ADD <id> {"id": ..., "path": ..., "created": ...}
    DEL <id> {}

Content updates are not logged; the log records existence, not contents.
"""

import json
import logging
import mimetypes
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import BinaryIO, Dict, Iterator, List, Optional, Tuple, Union

from ..errors import (
    AlreadyExistsError,
    CorruptLogError,
    ExitingError,
    NotExistError,
    NotInitializedError,
)
from ..signing import generate_id
from .lock import ReadWriteLock

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 64 * 1024

Content = Union[bytes, bytearray, str, BinaryIO]


@dataclass
class Record:
    """
    Metadata entry for one stored object.

    The record says where the bytes live and when the object was created;
    it never holds the bytes themselves.
    """
    id: str
    path: str
    created: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "path": self.path,
            "created": self.created.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Record":
        created = data["created"]
        if not isinstance(created, datetime):
            created = datetime.fromisoformat(created)
        return cls(id=data["id"], path=data["path"], created=created)

    def to_string(self) -> str:
        """Serialize to the JSON payload written to the log."""
        return json.dumps(self.to_dict())

    @classmethod
    def from_string(cls, s: str) -> "Record":
        return cls.from_dict(json.loads(s))

    def __repr__(self):
        return f"Record(id={self.id!r}, path={self.path!r})"


class StoreState(str, Enum):
    UNINITIALIZED = "uninitialized"
    READY = "ready"
    CLOSED = "closed"


def guess_content_type(path: str) -> str:
    """Content type inferred from the path's extension."""
    return mimetypes.guess_type(path)[0] or "application/octet-stream"


class MetadataStore:
    """
    Index of stored objects, backed by an append-only log.

    One ReadWriteLock guards the index and the log handle together.
    Mutations (create, update, copy, upsert, delete) hold it exclusively
    for their whole body, log append and fsync included. Reads (get, list,
    read) hold it shared and never touch the log.

    After close() mutations fail with ExitingError while reads keep being
    served from the index.

    Usage:
        store = MetadataStore("/var/lib/blobserve/_db")
        store.initialize()

        record = store.create("/var/lib/blobserve/a.txt", b"hello")
        data = store.read_bytes(record.id)
        store.delete(record.id)

        store.close()
    """

    ADD = "ADD"
    DEL = "DEL"

    def __init__(self, log_path: Union[str, Path], chunk_size: int = DEFAULT_CHUNK_SIZE):
        self.log_path = Path(log_path)
        self.chunk_size = chunk_size
        self._lock = ReadWriteLock()
        self._records: Dict[str, Record] = {}  # id -> Record
        self._log = None
        self._state = StoreState.UNINITIALIZED

    @property
    def state(self) -> StoreState:
        return self._state

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def initialize(self) -> None:
        """
        Rebuild the index by replaying the log, then open it for appending.

        A missing log file is created empty. Calling initialize() again
        replays the same file from scratch and yields the same index.

        Raises:
            CorruptLogError: an ADD payload does not decode as a Record,
                or a line carries an unknown action
        """
        with self._lock.write_locked():
            if self._log is not None:
                self._log.close()
                self._log = None
            self._records = {}
            self._state = StoreState.UNINITIALIZED

            records: Dict[str, Record] = {}
            if self.log_path.exists():
                self._replay(records)
            else:
                self.log_path.parent.mkdir(parents=True, exist_ok=True)

            self._log = open(self.log_path, "a", encoding="utf-8", newline="\n")
            self._records = records
            self._state = StoreState.READY
            logger.info("Replayed %s: %d live objects", self.log_path, len(records))

    def _replay(self, records: Dict[str, Record]) -> None:
        with open(self.log_path, "rb") as f:
            for line_number, raw in enumerate(f, start=1):
                if not raw.strip():
                    continue

                try:
                    line = raw.decode("utf-8")
                except UnicodeDecodeError:
                    logger.debug("Skipping undecodable log line %d: %r", line_number, raw)
                    continue

                parts = line.split(None, 2)
                if len(parts) < 3:
                    # Lenient: stray data that is not an entry at all is skipped
                    logger.debug("Skipping malformed log line %d: %r", line_number, line)
                    continue
                action, entry_id, payload = parts[0], parts[1], parts[2].strip()

                if action == self.ADD:
                    records[entry_id] = self._decode_add(line_number, entry_id, payload)
                elif action == self.DEL:
                    records.pop(entry_id, None)
                else:
                    raise CorruptLogError(
                        f"Log {self.log_path} is corrupt at line {line_number}: "
                        f"unknown action {action!r}",
                        line_number=line_number,
                    )

    def _decode_add(self, line_number: int, entry_id: str, payload: str) -> Record:
        try:
            data = json.loads(payload)
            if not isinstance(data, dict):
                raise ValueError("payload is not a JSON object")
            data.setdefault("id", entry_id)
            if not isinstance(data["id"], str):
                raise ValueError("id is not a string")
            if not isinstance(data.get("path"), str) or not data["path"]:
                raise ValueError("path is missing or not a string")
            record = Record.from_dict(data)
        except (ValueError, KeyError, TypeError) as e:
            raise CorruptLogError(
                f"Log {self.log_path} is corrupt at line {line_number}: "
                f"cannot decode ADD payload {payload!r}: {e}",
                line_number=line_number,
            ) from e
        if record.id != entry_id:
            raise CorruptLogError(
                f"Log {self.log_path} is corrupt at line {line_number}: "
                f"entry id {entry_id!r} does not match record id {record.id!r}",
                line_number=line_number,
            )
        return record

    def close(self) -> None:
        """
        Close the log. Mutations fail with ExitingError afterwards.

        Waits for any mutation already holding the lock to finish its
        fsync before the handle is closed.
        """
        with self._lock.write_locked():
            if self._log is not None:
                self._log.close()
                self._log = None
                logger.info("Closed object log %s", self.log_path)
            self._state = StoreState.CLOSED

    def __enter__(self) -> "MetadataStore":
        self.initialize()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    # ------------------------------------------------------------------
    # Reads (shared lock)
    # ------------------------------------------------------------------

    def get(self, id: str) -> Record:
        """
        Look up a record by id.

        Raises:
            NotExistError: unknown id
        """
        with self._lock.read_locked():
            return self._get_locked(id)

    def list(self) -> List[Record]:
        """All live records, in index insertion order."""
        with self._lock.read_locked():
            self._ensure_initialized()
            return list(self._records.values())

    def find_by_path(self, path: Union[str, Path]) -> Optional[Record]:
        """The live record stored at `path`, if any."""
        with self._lock.read_locked():
            self._ensure_initialized()
            return self._find_by_path_locked(_normalize(path))

    def open(self, id: str) -> Tuple[BinaryIO, str]:
        """
        Open an object's bytes for reading.

        The file is opened under the shared lock; the caller owns the
        returned handle and may read it after the lock is released.

        Returns:
            (binary file object, content type)

        Raises:
            NotExistError: unknown id, or the backing file has vanished
        """
        with self._lock.read_locked():
            record = self._get_locked(id)
            try:
                f = open(record.path, "rb")
            except FileNotFoundError as e:
                raise NotExistError(f"Backing file for object {id} is missing: {record.path}") from e
        return f, guess_content_type(record.path)

    def read(self, id: str) -> Iterator[bytes]:
        """Stream an object's bytes in chunks."""
        f, _ = self.open(id)
        return self._iter_file(f)

    def read_bytes(self, id: str) -> bytes:
        f, _ = self.open(id)
        with f:
            return f.read()

    def _iter_file(self, f: BinaryIO) -> Iterator[bytes]:
        with f:
            while True:
                chunk = f.read(self.chunk_size)
                if not chunk:
                    break
                yield chunk

    # ------------------------------------------------------------------
    # Mutations (exclusive lock)
    # ------------------------------------------------------------------

    def create(self, path: Union[str, Path], content: Content) -> Record:
        """
        Store `content` at `path` as a new object.

        Raises:
            AlreadyExistsError: a live record already has this path
            ExitingError: the store has been closed
        """
        with self._lock.write_locked():
            return self._create_locked(_normalize(path), content)

    def update(self, id: str, content: Content, overwrite: bool = False) -> None:
        """
        Replace (overwrite=True) or append to an object's bytes.

        The record itself is unchanged and nothing is logged.

        Raises:
            NotExistError: unknown id, or the backing file has vanished
        """
        with self._lock.write_locked():
            self._update_locked(id, content, overwrite)

    def copy(self, id: str) -> Record:
        """
        Duplicate an object next to its source as copy_<uuid>_<name>.

        Raises:
            NotExistError: unknown source id
        """
        with self._lock.write_locked():
            source = self._get_locked(id)
            self._ensure_writable()
            target = os.path.join(
                os.path.dirname(source.path),
                f"copy_{generate_id()}_{os.path.basename(source.path)}",
            )
            try:
                f = open(source.path, "rb")
            except FileNotFoundError as e:
                raise NotExistError(f"Backing file for object {id} is missing: {source.path}") from e
            with f:
                return self._create_locked(_normalize(target), f)

    def upsert(self, path: Union[str, Path], content: Content) -> Tuple[Record, bool]:
        """
        Create the object at `path`, or overwrite it if it already exists.

        Returns:
            (record, created) where created is False when an existing
            object was overwritten in place
        """
        path = _normalize(path)
        with self._lock.write_locked():
            self._ensure_writable()
            existing = self._find_by_path_locked(path)
            if existing is not None:
                self._update_locked(existing.id, content, overwrite=True)
                return existing, False
            return self._create_locked(path, content), True

    def delete(self, id: str) -> None:
        """
        Remove an object's file and its record.

        A DEL entry is logged even when removing the file fails; in that
        case the record stays in the index until the next replay.

        Raises:
            NotExistError: unknown id, or the backing file has vanished
        """
        with self._lock.write_locked():
            self._ensure_writable()
            record = self._get_locked(id)
            try:
                os.remove(record.path)
            except OSError as e:
                logger.warning("Failed to remove %s for object %s: %s", record.path, id, e)
                self._append(self.DEL, id, "{}")
                if isinstance(e, FileNotFoundError):
                    raise NotExistError(f"Backing file for object {id} is missing: {record.path}") from e
                raise
            del self._records[id]
            self._append(self.DEL, id, "{}")
            logger.debug("Deleted object %s at %s", id, record.path)

    # ------------------------------------------------------------------
    # Internals (caller holds the lock)
    # ------------------------------------------------------------------

    def _ensure_initialized(self) -> None:
        if self._state is StoreState.UNINITIALIZED:
            raise NotInitializedError("Object store has not been initialized")

    def _ensure_writable(self) -> None:
        self._ensure_initialized()
        if self._log is None:
            raise ExitingError("Object store is exiting")

    def _get_locked(self, id: str) -> Record:
        self._ensure_initialized()
        record = self._records.get(id)
        if record is None:
            raise NotExistError(f"Object {id} does not exist")
        return record

    def _find_by_path_locked(self, path: str) -> Optional[Record]:
        for record in self._records.values():
            if record.path == path:
                return record
        return None

    def _create_locked(self, path: str, content: Content) -> Record:
        self._ensure_writable()
        if self._find_by_path_locked(path) is not None:
            raise AlreadyExistsError(f"File with path '{path}' already exists")

        Path(path).parent.mkdir(parents=True, exist_ok=True)
        try:
            self._write(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, content)
        except BaseException:
            try:
                os.remove(path)
            except FileNotFoundError:
                pass
            raise

        record = Record(id=generate_id(), path=path)
        # Indexed before the fsync; the create is acknowledged only after it
        self._records[record.id] = record
        self._append(self.ADD, record.id, record.to_string())
        logger.debug("Created object %s at %s", record.id, path)
        return record

    def _update_locked(self, id: str, content: Content, overwrite: bool) -> None:
        self._ensure_writable()
        record = self._get_locked(id)
        flags = os.O_WRONLY | (os.O_TRUNC if overwrite else os.O_APPEND)
        try:
            self._write(record.path, flags, content)
        except FileNotFoundError as e:
            raise NotExistError(f"Backing file for object {id} is missing: {record.path}") from e

    def _write(self, path: str, flags: int, content: Content) -> None:
        fd = os.open(path, flags, 0o600)
        with os.fdopen(fd, "wb") as f:
            for chunk in self._chunks(content):
                f.write(chunk)

    def _chunks(self, content: Content) -> Iterator[bytes]:
        if isinstance(content, str):
            yield content.encode("utf-8")
        elif isinstance(content, (bytes, bytearray)):
            yield bytes(content)
        else:
            while True:
                chunk = content.read(self.chunk_size)
                if not chunk:
                    break
                if isinstance(chunk, str):
                    chunk = chunk.encode("utf-8")
                yield chunk

    def _append(self, action: str, id: str, payload: str) -> None:
        self._log.write(f"{action} {id} {payload}\n")
        self._log.flush()
        os.fsync(self._log.fileno())


def _normalize(path: Union[str, Path]) -> str:
    return os.path.abspath(os.fspath(path))
