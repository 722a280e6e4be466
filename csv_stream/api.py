"""FastAPI application exposing chunked upload and row delivery endpoints."""
import logging
from typing import Optional

from fastapi import FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel
from fastapi.concurrency import run_in_threadpool

from .chunks import ChunkedUploadManager
from .config import ServerSettings
from .coordinator import RowDeliveryCoordinator
from .errors import EngineError, StreamServiceError
from .records import CsvRecordSource
from .tracker import UploadSessionStore

logger = logging.getLogger(__name__)

NO_CACHE = {"Cache-Control": "no-cache"}


class ChunkResponse(BaseModel):
    upload_id: str
    received_index: int
    next_index: int
    total_chunks: int


class FinalizeRequest(BaseModel):
    upload_id: str = ""


class FinalizeResponse(BaseModel):
    upload_id: str


def create_app(settings: Optional[ServerSettings] = None) -> FastAPI:
    """Build the application and its collaborators.

    Args:
        settings: Server settings, defaults when omitted

    Returns:
        Configured FastAPI application
    """
    settings = settings or ServerSettings()
    store = UploadSessionStore(settings.storage_dir)
    source = CsvRecordSource(enabled=settings.engine_enabled)
    manager = ChunkedUploadManager(store, source, session_ttl=settings.session_ttl)
    coordinator = RowDeliveryCoordinator(manager, source, settings)

    app = FastAPI(title="CSV Stream API")
    app.state.settings = settings
    app.state.manager = manager
    app.state.coordinator = coordinator

    @app.exception_handler(StreamServiceError)
    async def handle_service_error(request: Request, exc: StreamServiceError):
        if isinstance(exc, EngineError):
            logger.error(f"Engine error on {request.url.path}: {exc.detail}")
        return JSONResponse(status_code=exc.status_code, content=exc.to_payload())

    @app.exception_handler(RequestValidationError)
    async def handle_invalid_params(request: Request, exc: RequestValidationError):
        fields = [".".join(str(p) for p in err.get("loc", ())) for err in exc.errors()]
        return JSONResponse(
            status_code=400,
            content={"error": "Invalid request parameters", "fields": fields}
        )

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {"status": "healthy"}

    @app.post("/upload_chunk", response_model=ChunkResponse)
    async def upload_chunk(
        request: Request,
        upload_id: Optional[str] = None,
        name: str = "",
        index: int = -1,
        total: int = 0
    ):
        """
        Append the next chunk of a CSV upload.

        The first chunk (index 0, no upload_id) creates the session; every
        later chunk must carry the upload_id and the next expected index.
        """
        body = await request.body()
        receipt = await run_in_threadpool(
            manager.begin_or_continue, upload_id, name, index, total, body
        )
        return ChunkResponse(
            upload_id=receipt.upload_id,
            received_index=receipt.received_index,
            next_index=receipt.next_index,
            total_chunks=receipt.total_chunks
        )

    @app.post("/upload_complete", response_model=FinalizeResponse)
    async def upload_complete(payload: FinalizeRequest):
        """Finalize an upload after all chunks arrived."""
        result = await run_in_threadpool(manager.finalize, payload.upload_id)
        return FinalizeResponse(**result)

    @app.get("/poll_rows")
    def poll_rows(
        upload_id: str = "",
        offset: int = 0,
        limit: Optional[int] = None,
        compact: str = Query("0")
    ):
        """Return one batch of rows starting at a byte offset."""
        batch = coordinator.poll(upload_id, offset, limit)
        return JSONResponse(
            content=batch.to_payload(compact=compact in ("1", "true")),
            headers=NO_CACHE
        )

    @app.get("/stream_rows")
    async def stream_rows(
        request: Request,
        upload_id: str = "",
        offset: int = 0,
        limit: Optional[int] = None
    ):
        """
        Push rows as Server-Sent Events until the upload is exhausted.

        Events:
        - rows: newline-delimited JSON arrays
        - meta: {"next_offset", "has_more"}
        - end: stream finished, upload released
        - error: request or engine failure
        """
        async def event_generator():
            async for event in coordinator.stream(upload_id, offset, limit,
                                                  request.is_disconnected):
                yield event.encode()

        return StreamingResponse(
            event_generator(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no"
            }
        )

    return app
