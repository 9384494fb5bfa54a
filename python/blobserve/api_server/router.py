"""
API Server Router - HTTP surface of the object store.

This module provides the FastAPI application that maps object and
presigned-URL requests onto a MetadataStore, and republishes object
creation events to SSE subscribers.
"""

import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Iterable, List, Optional, Union

from fastapi import FastAPI, File, Request, Response, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel

from ..errors import (
    AlreadyExistsError,
    BadRequestError,
    BlobServeError,
    InvalidPathError,
    NotExistError,
    PermissionDeniedError,
    TokenExpiredError,
    TokenVerificationError,
)
from ..objects import MetadataStore, StoreState
from ..signing import (
    Permission,
    SignedURL,
    decode_token,
    parse_duration,
    to_url,
)
from .events import EventBroker, event_stream

logger = logging.getLogger(__name__)

DEFAULT_MAX_UPLOAD_SIZE = 10 << 20

_DENIED = {
    Permission.READ: "signed url does not support reading",
    Permission.WRITE: "signed url does not support writing",
}


# Pydantic models for API
class CreateObjectResponse(BaseModel):
    """Response for object creation and presigned uploads."""
    id: str


class RecordModel(BaseModel):
    """A stored object's metadata."""
    id: str
    path: str
    created: str


class CreateSignedURLRequest(BaseModel):
    """Request body for minting a presigned URL."""
    path: str
    expiryLength: Union[str, float]
    permission: Optional[Permission] = None


class SignedURLResponse(BaseModel):
    url: str


def resolve_path(root: Union[str, Path], name: str, reserved: Iterable[Union[str, Path]] = ()) -> str:
    """
    Absolute location of `name` beneath the storage root.

    Raises:
        InvalidPathError: the path escapes the root, names the root itself,
            or names a reserved file such as the object log
    """
    root_abs = os.path.abspath(root)
    candidate = os.path.abspath(os.path.join(root_abs, name.lstrip("/\\")))
    if candidate == root_abs or os.path.commonpath([root_abs, candidate]) != root_abs:
        raise InvalidPathError(f"Invalid path '{name}'")
    if any(candidate == os.path.abspath(r) for r in reserved):
        raise InvalidPathError(f"Invalid path '{name}'")
    return candidate


def create_app(
    store: MetadataStore,
    secret: bytes,
    root: Union[str, Path],
    broker: Optional[EventBroker] = None,
    max_upload_size: int = DEFAULT_MAX_UPLOAD_SIZE,
) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        store: Object store; replayed on startup if not yet initialized
        secret: HMAC key for presigned URLs
        root: Storage root that uploads and presigned paths resolve under
        broker: Optional EventBroker. If not provided, a new one is created.
        max_upload_size: Largest accepted request body, in bytes

    Returns:
        Configured FastAPI application
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if store.state is not StoreState.READY:
            await run_in_threadpool(store.initialize)
        yield
        app.state.events.close()
        await run_in_threadpool(store.close)

    app = FastAPI(
        title="blobserve",
        description="Object storage with presigned URLs",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.state.store = store
    app.state.events = broker or EventBroker()
    app.state.root = str(root)
    reserved = [store.log_path]

    @app.exception_handler(BlobServeError)
    async def blobserve_error_handler(request: Request, exc: BlobServeError):
        if exc.http_status >= 500:
            logger.error("Internal Server Error: '%s'", exc)
            return JSONResponse(status_code=500, content={"error": "Internal Error"})
        return JSONResponse(status_code=exc.http_status, content={"error": str(exc)})

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=400, content={"error": "Malformed request payload"})

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("Internal Server Error: '%s'", exc)
        return JSONResponse(status_code=500, content={"error": "Internal Error"})

    def check_size(size: Optional[int]) -> None:
        if size is not None and size > max_upload_size:
            raise BadRequestError(f"Request body exceeds {max_upload_size} bytes")

    def declared_size(request: Request) -> Optional[int]:
        content_length = request.headers.get("content-length")
        return int(content_length) if content_length and content_length.isdigit() else None

    async def read_body(request: Request) -> bytes:
        """Read the raw body, refusing it as soon as it outgrows the upload limit."""
        check_size(declared_size(request))
        body = bytearray()
        async for chunk in request.stream():
            body.extend(chunk)
            check_size(len(body))
        return bytes(body)

    def verify_claims(token: str, permission: Permission) -> SignedURL:
        try:
            claims = decode_token(secret, token)
        except TokenVerificationError:
            logger.info("Rejected presigned URL with invalid signature")
            raise
        if claims.is_expired():
            raise TokenExpiredError("link expired")
        if not claims.allows(permission):
            raise PermissionDeniedError(_DENIED[permission])
        return claims

    def stream_object(object_id: str) -> StreamingResponse:
        f, content_type = store.open(object_id)

        def iter_file():
            with f:
                while True:
                    chunk = f.read(store.chunk_size)
                    if not chunk:
                        break
                    yield chunk

        return StreamingResponse(iter_file(), media_type=content_type)

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {"status": "healthy", "state": store.state.value}

    # ------------------------------------------------------------------
    # Objects
    # ------------------------------------------------------------------

    @app.get("/objects/", response_model=List[RecordModel])
    def list_objects():
        """List all stored objects."""
        return [record.to_dict() for record in store.list()]

    @app.get("/objects/{object_id}")
    def get_object(object_id: str):
        """Stream an object's bytes."""
        return stream_object(object_id)

    @app.post("/objects/", status_code=201, response_model=CreateObjectResponse)
    def create_object(request: Request, file: Optional[UploadFile] = File(None)):
        """
        Upload a new object from the multipart field `file`.

        The object is stored under the storage root by its base file name.
        """
        check_size(declared_size(request))
        if file is None:
            raise BadRequestError("Malformed request payload: missing form field 'file'")
        check_size(getattr(file, "size", None))

        name = os.path.basename(file.filename or "")
        if not name:
            raise BadRequestError("Malformed request payload: missing file name")
        path = resolve_path(app.state.root, name, reserved)

        try:
            record = store.create(path, file.file)
        except AlreadyExistsError as e:
            raise AlreadyExistsError(f"File with name '{name}' already exists") from e

        app.state.events.publish_created(record.id)
        return CreateObjectResponse(id=record.id)

    @app.post("/objects/{object_id}/copy", response_model=RecordModel)
    def copy_object(object_id: str):
        """Copy an object next to its source."""
        record = store.copy(object_id)
        app.state.events.publish_created(record.id)
        return record.to_dict()

    @app.put("/objects/{object_id}")
    async def overwrite_object(object_id: str, request: Request):
        """Replace an object's content with the request body."""
        body = await read_body(request)
        await run_in_threadpool(store.update, object_id, body, True)
        return Response(status_code=200)

    @app.patch("/objects/{object_id}")
    async def append_object(object_id: str, request: Request):
        """Append the request body to an object's content."""
        body = await read_body(request)
        await run_in_threadpool(store.update, object_id, body, False)
        return Response(status_code=200)

    @app.delete("/objects/{object_id}")
    def delete_object(object_id: str):
        """Delete an object and its backing file."""
        store.delete(object_id)
        return Response(status_code=200)

    # ------------------------------------------------------------------
    # Presigned URLs
    # ------------------------------------------------------------------

    @app.post("/pre-signed", response_model=SignedURLResponse)
    @app.post("/pre-signed/", response_model=SignedURLResponse, include_in_schema=False)
    def create_presigned(request: CreateSignedURLRequest):
        """
        Mint a presigned URL for a path beneath the storage root.

        expiryLength is a duration such as "10s" or "1h30m", or seconds.
        """
        try:
            lifetime = parse_duration(request.expiryLength)
        except ValueError as e:
            raise BadRequestError(f"Failed to parse expiryLength due to '{e}'") from e
        resolve_path(app.state.root, request.path, reserved)

        claims = SignedURL.create(request.path, lifetime, request.permission)
        return SignedURLResponse(url=to_url(secret, claims))

    @app.put("/pre-signed/{token}")
    async def presigned_upload(token: str, request: Request):
        """Create or replace the object named by a presigned URL."""
        claims = verify_claims(token, Permission.WRITE)
        path = resolve_path(app.state.root, claims.path, reserved)

        body = await read_body(request)
        record, created = await run_in_threadpool(store.upsert, path, body)

        if created:
            app.state.events.publish_created(record.id)
        return JSONResponse(
            status_code=201 if created else 200,
            content={"id": record.id},
        )

    @app.get("/pre-signed/{token}")
    def presigned_download(token: str):
        """Stream the object named by a presigned URL."""
        claims = verify_claims(token, Permission.READ)
        path = resolve_path(app.state.root, claims.path, reserved)

        record = store.find_by_path(path)
        if record is None:
            raise NotExistError(f"No object at '{claims.path}'")
        return stream_object(record.id)

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    @app.get("/events")
    async def events():
        """
        Server-sent stream of {"event": "FileCreated", "id": ...} messages.

        New subscribers first receive the buffered history.
        """
        subscription = app.state.events.subscribe()
        return StreamingResponse(
            event_stream(subscription),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
            },
        )

    @app.post("/publish/{object_id}")
    def publish_created(object_id: str):
        """Re-emit a FileCreated event for an existing object."""
        store.get(object_id)
        app.state.events.publish_created(object_id)
        return Response(status_code=200)

    return app
