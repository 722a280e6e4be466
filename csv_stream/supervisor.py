"""
Module coordinating the client side of a load: upload, preview, transports and delivery.
"""
import asyncio
import logging
import time
from pathlib import Path
from typing import Callable, List, Optional

import httpx

from .adaptive import AdaptiveBatchController
from .config import ClientSettings
from .delivery import DeliveryQueue, FrameScheduler, TablePainter, TextPainter, VirtualTable, VirtualViewport
from .errors import EngineError, TransportError, UploadError
from .models import ClientState, RowBatch, TransportMode
from .monitor import StallWatchdog
from .records import CsvRecordSource, header_names
from .transports import BatchSink, PollReader, StreamReader
from .uploader import ChunkUploader

logger = logging.getLogger(__name__)


class _SessionSink(BatchSink):
    """Routes reader output into the supervisor while its session is current."""

    def __init__(self, supervisor: "TransportSupervisor", session_id: int):
        self.supervisor = supervisor
        self.session_id = session_id

    def _live(self) -> bool:
        return self.supervisor.state.session_id == self.session_id

    def on_rows(self, rows: List[List[str]]) -> None:
        if not self._live() or not rows:
            return
        state = self.supervisor.state

        if state.header_pending:
            first, rows = rows[0], rows[1:]
            state.header_pending = False
            if not state.headers:
                state.headers = header_names(first)
                self.supervisor.schedule_render()

        state.metrics.rows_received += len(rows)
        self.supervisor.queue.enqueue(rows)
        self.supervisor.refresh_load_completion()

    def on_meta(self, next_offset: int, has_more: bool) -> None:
        if not self._live():
            return
        state = self.supervisor.state
        state.next_offset = max(state.next_offset, next_offset)
        state.has_more = has_more
        self.supervisor.refresh_load_completion()

    def on_end(self) -> None:
        if not self._live():
            return
        state = self.supervisor.state
        state.has_more = False
        state.metrics.stream_ended_at = self.supervisor.clock()
        self.supervisor.stop_watchdog()
        self.supervisor.refresh_load_completion()

    def on_poll(self, elapsed_ms: float) -> None:
        if not self._live():
            return
        metrics = self.supervisor.state.metrics
        metrics.poll_calls += 1
        metrics.poll_time_ms += elapsed_ms

    def should_pause(self) -> bool:
        if not self._live():
            return True
        return len(self.supervisor.queue) >= self.supervisor.settings.incoming_high_water

    @property
    def upload_finalized(self) -> bool:
        return self.supervisor.state.upload_finalized


class TransportSupervisor:
    """Drives one file load at a time from upload to a fully delivered row store.

    Rows are fetched through the push stream when preferred, falling back to
    polling on stream failure or stall. Every asynchronous continuation checks
    the session id it was started with, so loading a new file silently retires
    all work belonging to the previous one.
    """

    def __init__(self, client: httpx.AsyncClient, settings: Optional[ClientSettings] = None,
                 painter: Optional[TablePainter] = None,
                 uploader: Optional[ChunkUploader] = None,
                 source: Optional[CsvRecordSource] = None,
                 on_alert: Optional[Callable[[str], None]] = None,
                 on_progress: Optional[Callable[[int], None]] = None,
                 clock: Callable[[], float] = time.monotonic):
        """Initialize the supervisor.

        Args:
            client: HTTP client bound to the server base URL
            settings: Client settings
            painter: Output surface for the visible rows, text lines by default
            uploader: Chunk uploader, built from the client when omitted
            source: Record engine used for the local preview
            on_alert: Called with a user-facing message when a load fails
            on_progress: Called with upload progress percentages
            clock: Monotonic clock for metrics and stall detection
        """
        self.client = client
        self.settings = settings or ClientSettings()
        self.uploader = uploader or ChunkUploader(client, chunk_bytes=self.settings.chunk_bytes)
        self.source = source or CsvRecordSource()
        self.on_alert = on_alert
        self.on_progress = on_progress
        self.clock = clock

        settings = self.settings
        self.scheduler = FrameScheduler(settings.frame_interval_ms / 1000)
        self.table = VirtualTable(
            VirtualViewport(settings.row_height, settings.overscan,
                            settings.min_viewport_height, settings.max_scroll_px),
            painter or TextPainter()
        )
        self.state = ClientState()
        self.queue = self._new_queue()
        self.poll_controller = self._new_controller()
        self._upload_task: Optional[asyncio.Future] = None
        self._stream_task: Optional[asyncio.Future] = None
        self._poll_task: Optional[asyncio.Future] = None
        self._watchdog: Optional[StallWatchdog] = None
        self._done = asyncio.Event()

    def _new_queue(self) -> DeliveryQueue:
        return DeliveryQueue(
            self.state.rows,
            self.scheduler,
            max_per_frame=self.settings.max_append_per_frame,
            low_water=self.settings.incoming_low_water,
            on_applied=self._on_applied,
            on_drained=self._on_drained
        )

    def _new_controller(self) -> AdaptiveBatchController:
        settings = self.settings
        return AdaptiveBatchController(
            initial=settings.batch_rows,
            minimum=settings.poll_limit_min,
            maximum=settings.poll_limit_max,
            target_ms=settings.target_ms
        )

    def _is_current(self, session_id: int) -> bool:
        return session_id == self.state.session_id

    def reset(self) -> None:
        """Retire the current session: cancel transports and start from empty state."""
        self._cancel_transports()
        if self._upload_task is not None and not self._upload_task.done():
            self._upload_task.cancel()
        self._upload_task = None
        self.scheduler.cancel_all()

        self.state = ClientState(session_id=self.state.session_id + 1)
        self.queue = self._new_queue()
        self.poll_controller = self._new_controller()
        self.table.invalidate()
        self._done = asyncio.Event()

    def _cancel_transports(self) -> None:
        self.stop_watchdog()
        for task in (self._stream_task, self._poll_task):
            if task is not None and not task.done():
                task.cancel()
        self._stream_task = None
        self._poll_task = None

    def stop_watchdog(self) -> None:
        if self._watchdog is not None:
            self._watchdog.stop()
            self._watchdog = None

    async def close(self) -> None:
        """Cancel all work of the current session."""
        self._cancel_transports()
        if self._upload_task is not None and not self._upload_task.done():
            self._upload_task.cancel()
        self.scheduler.cancel_all()

    async def wait_until_complete(self, timeout: Optional[float] = None) -> ClientState:
        """Wait until the current load completed or failed."""
        await asyncio.wait_for(self._done.wait(), timeout)
        return self.state

    def _build_preview(self, path: Path) -> RowBatch:
        settings = self.settings
        try:
            return self.source.read(
                str(path), 0, settings.preview_rows,
                allow_partial_final_row=False,
                has_header=True,
                max_bytes=settings.preview_bytes
            )
        except EngineError as e:
            logger.warning(f"Local preview of {path.name} failed: {e.detail}")
            return RowBatch(rows=[], next_offset=0, has_more=True)

    async def load_file(self, path) -> ClientState:
        """Load a local CSV: show a preview, upload it, and fetch the remaining rows.

        Args:
            path: Local CSV file

        Returns:
            The state of the session started for this file
        """
        path = Path(path)
        if path.suffix.lower() != ".csv":
            self._alert("File must be a CSV")
            return self.state

        self.reset()
        session_id = self.state.session_id
        state = self.state
        state.mode = TransportMode.UPLOADING
        state.metrics.started_at = self.clock()
        preview_ready = False

        def on_upload_id(upload_id: str) -> None:
            if self._is_current(session_id) and not state.upload_id:
                state.upload_id = upload_id
                state.has_more = True

        def on_chunk_uploaded(upload_id: str, index: int, total: int) -> None:
            if preview_ready and self._is_current(session_id) and not self.settings.replace_preview:
                self.start_background_loading(session_id)

        upload_task = self._upload_task = asyncio.ensure_future(self.uploader.upload(
            path,
            on_progress=self.on_progress,
            on_upload_id=on_upload_id,
            on_chunk_uploaded=on_chunk_uploaded
        ))

        try:
            preview = await asyncio.get_running_loop().run_in_executor(None, self._build_preview, path)
            if not self._is_current(session_id):
                return state

            if preview.headers:
                state.headers = preview.headers
                state.rows.extend(preview.rows)
                state.preview_end_offset = preview.next_offset
                state.next_offset = preview.next_offset
                state.metrics.first_rows_at = self.clock()
                self.schedule_render()
                logger.info(f"Previewed {len(preview.rows)} rows of {path.name}")
            else:
                state.header_pending = True

            preview_ready = True
            if state.upload_id and not self.settings.replace_preview:
                self.start_background_loading(session_id)

            upload_id = await upload_task
        except asyncio.CancelledError:
            # reset() cancels the upload of a superseded session
            if self._is_current(session_id):
                raise
            return state
        except (UploadError, TransportError, httpx.HTTPError, OSError) as e:
            if self._is_current(session_id):
                self._fail(f"Upload of {path.name} failed: {e}")
            return state

        if not self._is_current(session_id):
            return state

        if not state.upload_id:
            state.upload_id = upload_id
            state.has_more = True
        state.upload_finalized = True
        state.metrics.upload_ended_at = self.clock()
        logger.info(f"Upload {state.upload_id} finalized")

        if self.settings.replace_preview:
            if preview.headers:
                self.queue.authoritative_replace = True
                state.next_offset = 0
                state.header_pending = True
            state.has_more = True

        self.refresh_load_completion()
        self.start_background_loading(session_id)
        return state

    def start_background_loading(self, session_id: Optional[int] = None) -> None:
        """Start the preferred transport for a session if rows remain to fetch."""
        if session_id is None:
            session_id = self.state.session_id
        state = self.state
        if not self._is_current(session_id) or not state.upload_id or not state.has_more:
            return

        if self.settings.prefer_stream and not state.force_polling:
            self._start_stream(session_id)
        else:
            self._start_polling(session_id)

    def _start_stream(self, session_id: int) -> None:
        if self._stream_task is not None and not self._stream_task.done():
            return

        state = self.state
        reader = StreamReader(self.client, state.upload_id, self.settings.batch_rows, clock=self.clock)
        state.mode = TransportMode.STREAMING
        state.metrics.stream_started_at = self.clock()
        self._stream_task = asyncio.ensure_future(
            self._run_stream(reader, session_id, _SessionSink(self, session_id))
        )

        self.stop_watchdog()
        self._watchdog = StallWatchdog(
            last_activity=lambda: reader.last_activity,
            is_armed=lambda: state.upload_finalized and state.has_more,
            on_stall=lambda: self._on_stall(session_id),
            stall_after=self.settings.stall_ms / 1000,
            check_interval=self.settings.watchdog_interval_ms / 1000,
            clock=self.clock
        )
        self._watchdog.start()
        logger.info(f"Streaming rows of upload {state.upload_id} from offset {state.next_offset}")

    async def _run_stream(self, reader: StreamReader, session_id: int, sink: _SessionSink) -> None:
        try:
            await reader.run(self.state.next_offset, sink)
        except TransportError as e:
            if not self._is_current(session_id):
                return
            logger.warning(f"Stream failed for upload {self.state.upload_id}, switching to polling: {e}")
            self._switch_to_polling(session_id)

    def _on_stall(self, session_id: int) -> None:
        if not self._is_current(session_id):
            return
        if self._stream_task is not None and not self._stream_task.done():
            self._stream_task.cancel()
        logger.warning(f"Stream stalled for upload {self.state.upload_id}, switching to polling")
        self._switch_to_polling(session_id)

    def _switch_to_polling(self, session_id: int) -> None:
        self.stop_watchdog()
        self._stream_task = None
        self.state.force_polling = True
        if self.state.has_more:
            self._start_polling(session_id)

    def _start_polling(self, session_id: int) -> None:
        if self._poll_task is not None and not self._poll_task.done():
            return

        state = self.state
        settings = self.settings
        reader = PollReader(
            self.client,
            state.upload_id,
            self.poll_controller,
            fast_ms=settings.poll_fast_ms,
            idle_ms=settings.poll_idle_ms,
            end_confirmations=settings.end_confirmations,
            max_failures=settings.max_poll_failures
        )
        state.mode = TransportMode.POLLING
        self._poll_task = asyncio.ensure_future(
            self._run_poll(reader, session_id, _SessionSink(self, session_id))
        )

    async def _run_poll(self, reader: PollReader, session_id: int, sink: _SessionSink) -> None:
        try:
            await reader.run(self.state.next_offset, sink)
        except TransportError as e:
            if self._is_current(session_id):
                self._fail(f"Could not read rows of upload {self.state.upload_id}: {e}")
        finally:
            if self._is_current(session_id):
                self.refresh_load_completion()

    def _on_applied(self, count: int) -> None:
        metrics = self.state.metrics
        metrics.apply_calls += 1
        if not metrics.first_rows_at:
            metrics.first_rows_at = self.clock()
        self.schedule_render()
        self.refresh_load_completion()

    def _on_drained(self) -> None:
        state = self.state
        if not state.has_more:
            return
        if self._poll_task is not None and not self._poll_task.done():
            return
        if state.force_polling or not self.settings.prefer_stream:
            self.start_background_loading(state.session_id)

    def schedule_render(self) -> None:
        self.scheduler.schedule("render", self._render)

    def _render(self) -> None:
        if self.table.render(self.state.headers, self.state.rows) == VirtualTable.PAINTED:
            self.state.metrics.render_calls += 1

    def scroll_to(self, scroll_top: float) -> None:
        self.table.scroll_top = max(0.0, scroll_top)
        self.schedule_render()

    def resize(self, viewport_height: float) -> None:
        self.table.viewport_height = viewport_height
        self.schedule_render()

    def refresh_load_completion(self) -> None:
        """Mark the load complete once nothing is left to fetch or apply."""
        state = self.state
        complete = state.upload_finalized and not state.has_more and len(self.queue) == 0
        if complete == state.load_complete:
            return

        state.load_complete = complete
        if complete:
            state.mode = TransportMode.COMPLETE
            self.stop_watchdog()
            self._log_summary()
            self._done.set()

    def _log_summary(self) -> None:
        metrics = self.state.metrics
        if metrics.complete_logged:
            return
        metrics.complete_logged = True
        upload_s = (metrics.upload_ended_at - metrics.started_at) if metrics.upload_ended_at else 0.0
        logger.info(
            f"Load complete for upload {self.state.upload_id}: "
            f"rows={len(self.state.rows)} upload_s={upload_s:.2f} "
            f"backend_s={metrics.poll_time_ms / 1000:.2f} poll_calls={metrics.poll_calls} "
            f"rows_received={metrics.rows_received} render_calls={metrics.render_calls} "
            f"apply_calls={metrics.apply_calls}"
        )

    def _alert(self, message: str) -> None:
        logger.error(message)
        if self.on_alert:
            self.on_alert(message)

    def _fail(self, message: str) -> None:
        done = self._done
        self._alert(message)
        self.reset()
        done.set()
        self._done.set()
