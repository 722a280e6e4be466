"""
Module for delivering rows of an upload by poll or by server push.
"""
import asyncio
import json
import logging
from typing import AsyncIterator, Awaitable, Callable, Optional, Tuple

from fastapi.concurrency import run_in_threadpool

from .adaptive import AdaptiveBatchController, timed
from .chunks import ChunkedUploadManager
from .config import ServerSettings
from .errors import EngineError, StreamServiceError, ValidationError
from .models import RowBatch, StreamEvent
from .records import CsvRecordSource, RecordCursor, parse_batch_payload

logger = logging.getLogger(__name__)


class RowDeliveryCoordinator:
    """Reads rows at an offset for up to a limit, in one-shot or push mode.

    Both modes are addressed by byte offset, so replaying a request for the
    same offset returns the same rows.
    """

    def __init__(self, manager: ChunkedUploadManager, source: CsvRecordSource,
                 settings: Optional[ServerSettings] = None):
        """Initialize the coordinator.

        Args:
            manager: Upload manager owning the sessions
            source: Record engine
            settings: Server settings
        """
        self.manager = manager
        self.source = source
        self.settings = settings or ServerSettings()

    def clamp(self, offset: Optional[int], limit: Optional[int]) -> Tuple[int, int]:
        """Normalize a requested offset and limit."""
        offset = max(0, int(offset or 0))
        if limit is None:
            limit = self.settings.default_limit
        limit = max(self.settings.poll_limit_min, min(self.settings.poll_limit_max, int(limit)))
        return offset, limit

    def poll(self, upload_id: str, offset: Optional[int] = 0,
             limit: Optional[int] = None) -> RowBatch:
        """Read a single batch of rows.

        Args:
            upload_id: Upload to read
            offset: Byte offset to resume from
            limit: Requested number of rows, clamped to the configured range

        Returns:
            RowBatch whose has_more is never False while the upload is still in progress
        """
        if not upload_id:
            raise ValidationError("Missing upload_id")
        offset, limit = self.clamp(offset, limit)
        session = self.manager.get_session(upload_id)
        upload_complete = self.manager.upload_complete(session)

        try:
            batch = self.source.read(session.file_path, offset, limit,
                                     allow_partial_final_row=upload_complete)
        except EngineError as e:
            logger.error(f"Engine failed reading upload {upload_id} at {offset}: {e.detail}")
            raise

        if not batch.has_more and not upload_complete:
            batch.has_more = True
        return batch

    async def stream(self, upload_id: str, offset: Optional[int] = 0,
                     limit: Optional[int] = None,
                     is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None
                     ) -> AsyncIterator[StreamEvent]:
        """Push batches of rows until the upload is exhausted or the client leaves.

        Args:
            upload_id: Upload to read
            offset: Byte offset to start from
            limit: Initial batch size, adapted to read latency afterwards
            is_disconnected: Coroutine function reporting a client disconnect

        Yields:
            StreamEvent objects named rows, meta, end or error
        """
        try:
            if not upload_id:
                raise ValidationError("Missing upload_id")
            offset, limit = self.clamp(offset, limit)
            session = await run_in_threadpool(self.manager.get_session, upload_id)
            self.source.ensure_available()
        except StreamServiceError as e:
            yield self._error_event(e)
            return

        settings = self.settings
        controller = AdaptiveBatchController(
            initial=limit,
            minimum=min(settings.stream_limit_min, limit),
            maximum=max(settings.stream_limit_max, limit),
            target_ms=settings.target_ms
        )
        idle_ms = settings.idle_wait_start_ms
        cursor: Optional[RecordCursor] = None
        logger.info(f"Streaming upload {upload_id} from offset {offset}")

        try:
            await run_in_threadpool(self.manager.touch, upload_id)
            cursor = await run_in_threadpool(self.source.open_stream, session.file_path, offset)

            while True:
                if is_disconnected is not None and await is_disconnected():
                    logger.info(f"Client left stream for upload {upload_id}")
                    break

                upload_complete = await run_in_threadpool(self.manager.upload_complete, session)
                payload, elapsed_ms = await run_in_threadpool(
                    timed, cursor.next_batch, controller.limit, upload_complete
                )
                rows_ndjson, next_offset, has_more, row_count = parse_batch_payload(payload)
                controller.observe(elapsed_ms, row_count)

                if not has_more and not upload_complete:
                    has_more = True

                if row_count > 0:
                    yield StreamEvent('rows', rows_ndjson)
                    yield StreamEvent('meta', json.dumps({
                        'next_offset': next_offset,
                        'has_more': has_more
                    }))

                if not has_more:
                    await run_in_threadpool(self.manager.discard, upload_id)
                    logger.info(f"Stream finished for upload {upload_id} at offset {next_offset}")
                    yield StreamEvent('end', '{}')
                    break

                if row_count == 0:
                    await asyncio.sleep(idle_ms / 1000)
                    idle_ms = min(settings.idle_wait_max_ms, idle_ms + settings.idle_wait_step_ms)
                else:
                    idle_ms = settings.idle_wait_reset_ms
        except StreamServiceError as e:
            yield self._error_event(e)
        except Exception as e:
            logger.exception(f"Unexpected error streaming upload {upload_id}: {e}")
            yield StreamEvent('error', json.dumps({'error': "Error while streaming rows"}))
        finally:
            if cursor is not None:
                cursor.close()

    def _error_event(self, error: StreamServiceError) -> StreamEvent:
        if isinstance(error, EngineError):
            logger.error(f"Engine error while streaming: {error.detail}")
        else:
            logger.warning(f"Stream request rejected: {error.message}")
        return StreamEvent('error', json.dumps(error.to_payload()))
