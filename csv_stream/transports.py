"""
Module implementing the two interchangeable row transports of the client.

Both readers resume from a byte offset and report into a ``BatchSink``; the
supervisor decides which one runs.
"""
import asyncio
import json
import logging
import time
from abc import ABC, abstractmethod
from typing import Callable, List, Optional, Tuple

import httpx

from .adaptive import AdaptiveBatchController
from .errors import TransportError
from .models import PollResult, TransportMode
from .records import parse_ndjson_rows

logger = logging.getLogger(__name__)


class BatchSink(ABC):
    """Receiver of rows and cursor updates from a reader."""

    @abstractmethod
    def on_rows(self, rows: List[List[str]]) -> None:
        """Rows arrived, in file order."""

    @abstractmethod
    def on_meta(self, next_offset: int, has_more: bool) -> None:
        """The server acknowledged a new resumption offset."""

    @abstractmethod
    def on_end(self) -> None:
        """No more rows will arrive."""

    def on_poll(self, elapsed_ms: float) -> None:
        """A poll request completed."""

    def should_pause(self) -> bool:
        """Whether a poll loop should park instead of requesting more rows."""
        return False

    @property
    def upload_finalized(self) -> bool:
        return True


class BatchReader(ABC):
    """Resumable reader delivering batches from an offset until the end."""

    mode = TransportMode.IDLE

    @abstractmethod
    async def run(self, offset: int, sink: BatchSink) -> None:
        """Deliver batches starting at ``offset``.

        Returns when the end was reached or the reader parked itself; raises
        TransportError when the transport failed.
        """


class SseParser:
    """Incremental Server-Sent Events parser fed one line at a time."""

    def __init__(self):
        self._event: Optional[str] = None
        self._data: List[str] = []

    def feed_line(self, line: str) -> Optional[Tuple[str, str]]:
        """Consume a line and return (event, data) when an event is complete."""
        line = line.rstrip("\r\n")
        if line == "":
            if self._event is None and not self._data:
                return None
            event = (self._event or "message", "\n".join(self._data))
            self._event = None
            self._data = []
            return event

        if line.startswith(":"):
            return None

        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if name == "event":
            self._event = value
        elif name == "data":
            self._data.append(value)
        return None


class StreamReader(BatchReader):
    """Push transport: one held-open request streaming rows as events."""

    mode = TransportMode.STREAMING

    def __init__(self, client: httpx.AsyncClient, upload_id: str, limit: int,
                 clock: Callable[[], float] = time.monotonic):
        self.client = client
        self.upload_id = upload_id
        self.limit = limit
        self._clock = clock
        self.last_activity = clock()

    async def run(self, offset: int, sink: BatchSink) -> None:
        params = {'upload_id': self.upload_id, 'offset': offset, 'limit': self.limit}
        parser = SseParser()
        pending: List[List[str]] = []
        self.last_activity = self._clock()

        try:
            async with self.client.stream(
                "GET", "/stream_rows", params=params,
                timeout=httpx.Timeout(30.0, read=None)
            ) as response:
                if response.status_code != 200:
                    raise TransportError(f"Stream request failed with status {response.status_code}")

                async for line in response.aiter_lines():
                    event = parser.feed_line(line)
                    if event is None:
                        continue
                    self.last_activity = self._clock()
                    name, data = event

                    # Rows are handed over only once their meta acknowledges the offset.
                    if name == "rows":
                        pending.extend(parse_ndjson_rows(data))
                    elif name == "meta":
                        try:
                            meta = json.loads(data)
                        except ValueError:
                            logger.warning(f"Ignoring malformed meta event: {data[:80]}")
                            continue
                        if pending:
                            sink.on_rows(pending)
                            pending = []
                        sink.on_meta(int(meta.get('next_offset', offset)), bool(meta.get('has_more')))
                    elif name == "end":
                        if pending:
                            sink.on_rows(pending)
                            pending = []
                        sink.on_end()
                        return
                    elif name == "error":
                        raise TransportError(_error_message(data))
        except httpx.HTTPError as e:
            raise TransportError(f"Stream connection failed: {e}") from e

        if pending:
            logger.warning(f"Dropping {len(pending)} unacknowledged rows of upload {self.upload_id}")
        raise TransportError("Stream closed before the end event")


def _error_message(data: str) -> str:
    try:
        payload = json.loads(data or "{}")
    except ValueError:
        return data or "Stream error"
    if isinstance(payload, dict) and payload.get('error'):
        return str(payload['error'])
    return "Stream error"


class PollReader(BatchReader):
    """Pull transport: repeated one-shot requests with a two-level delay."""

    mode = TransportMode.POLLING

    def __init__(self, client: httpx.AsyncClient, upload_id: str,
                 controller: AdaptiveBatchController,
                 fast_ms: float = 10.0, idle_ms: float = 220.0,
                 end_confirmations: int = 2, max_failures: int = 5):
        """Initialize the poll reader.

        Args:
            client: HTTP client bound to the server base URL
            upload_id: Upload to read
            controller: Adaptive limit shared across poll loops of one session
            fast_ms: Delay after a batch with rows, or once the upload is finalized
            idle_ms: Delay after an empty batch while the upload is still running
            end_confirmations: Consecutive end-of-data answers needed to finish
            max_failures: Consecutive failed requests before giving up
        """
        self.client = client
        self.upload_id = upload_id
        self.controller = controller
        self.fast_ms = fast_ms
        self.idle_ms = idle_ms
        self.end_confirmations = max(1, end_confirmations)
        self.max_failures = max(1, max_failures)

    async def fetch_once(self, offset: int, limit: int) -> PollResult:
        """Request a single batch in compact encoding.

        Raises:
            TransportError: On connection failure, error status or malformed body
        """
        params = {'upload_id': self.upload_id, 'offset': offset, 'limit': limit, 'compact': '1'}
        started = time.perf_counter()
        try:
            response = await self.client.get("/poll_rows", params=params)
        except httpx.HTTPError as e:
            raise TransportError(f"Poll request failed: {e}") from e

        try:
            payload = response.json()
        except ValueError:
            payload = None
        if response.is_error or not isinstance(payload, dict) or payload.get('error'):
            message = payload.get('error') if isinstance(payload, dict) else None
            raise TransportError(message or f"Poll failed with status {response.status_code}")

        rows = payload.get('r', payload.get('rows'))
        if not isinstance(rows, list):
            rows = []
        return PollResult(
            rows=rows,
            next_offset=int(payload.get('n', payload.get('next_offset', offset))),
            has_more=bool(payload.get('h', payload.get('has_more', False))),
            elapsed_ms=(time.perf_counter() - started) * 1000
        )

    async def run(self, offset: int, sink: BatchSink) -> None:
        end_signals = 0
        failures = 0

        while True:
            if sink.should_pause():
                logger.debug(f"Poll loop for upload {self.upload_id} parked at offset {offset}")
                return

            try:
                result = await self.fetch_once(offset, self.controller.limit)
            except TransportError as e:
                failures += 1
                if failures >= self.max_failures:
                    raise
                logger.warning(f"Poll attempt {failures} for upload {self.upload_id} failed: {e}")
                await asyncio.sleep(self.idle_ms / 1000)
                continue

            failures = 0
            sink.on_poll(result.elapsed_ms)
            self.controller.observe(result.elapsed_ms, len(result.rows))
            offset = result.next_offset
            sink.on_rows(result.rows)

            if result.has_more:
                end_signals = 0
            elif result.rows:
                end_signals = 1
            else:
                end_signals += 1

            if not result.has_more and end_signals >= self.end_confirmations:
                sink.on_meta(offset, False)
                sink.on_end()
                return

            sink.on_meta(offset, True)
            fast = bool(result.rows) or sink.upload_finalized
            await asyncio.sleep((self.fast_ms if fast else self.idle_ms) / 1000)
