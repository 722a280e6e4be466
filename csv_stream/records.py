"""
Module implementing the offset-addressed record source over CSV backing files.

Every read starts at a byte offset and returns the offset just past the last
row it consumed, so a later read can resume exactly where this one stopped.
A row that is ended by the end of the file instead of a line terminator is a
partial row: it is only returned when the caller allows it, which the
coordinator does once the backing file is known to be complete.
"""
import csv
import json
import logging
import os
import re
import sys
from typing import BinaryIO, Iterator, List, Optional, Tuple

from .errors import EngineError, ServiceUnavailableError
from .models import RowBatch

logger = logging.getLogger(__name__)

META_MARKER = "__META__ "

csv.field_size_limit(min(sys.maxsize, 2 ** 31 - 1))


_LINE_END = re.compile(rb"\r\n|\r|\n")


class _LineFeed:
    """Yields decoded lines from a binary handle while counting consumed bytes.

    A line ends at ``\\n``, ``\\r\\n`` or a lone ``\\r``.
    """

    def __init__(self, handle: BinaryIO, max_bytes: Optional[int] = None,
                 block_size: int = 64 * 1024):
        self._handle = handle
        self._remaining = max_bytes
        self._block_size = block_size
        self._pending = b""
        self._pos = 0
        self._eof = False
        self.consumed = 0
        self.partial = False

    def __iter__(self) -> Iterator[str]:
        return self

    def _fill(self) -> None:
        size = self._block_size
        if self._remaining is not None:
            size = min(size, self._remaining)
        block = self._handle.read(size) if size > 0 else b""
        if not block:
            self._eof = True
            return
        if self._remaining is not None:
            self._remaining -= len(block)
        self._pending = self._pending[self._pos:] + block
        self._pos = 0

    def _read_line(self) -> bytes:
        search_from = self._pos
        while True:
            match = _LINE_END.search(self._pending, search_from)
            # A trailing \r may be the first half of \r\n.
            if match and (match.end() < len(self._pending) or match.group() != b"\r" or self._eof):
                end = match.end()
                break
            if self._eof:
                end = len(self._pending)
                break
            scanned = len(self._pending) - self._pos
            self._fill()
            search_from = self._pos + max(0, scanned - 1)
        line = self._pending[self._pos:end]
        self._pos = end
        return line

    def __next__(self) -> str:
        line = self._read_line()

        if not line:
            # Only reached while a quoted field is still open.
            self.partial = True
            raise StopIteration

        if not line.endswith((b"\n", b"\r")):
            self.partial = True

        self.consumed += len(line)
        return line.decode("utf-8", errors="replace")


def header_names(record: List[str]) -> List[str]:
    return [value or f"Column {index + 1}" for index, value in enumerate(record)]


def _scan(handle: BinaryIO, offset: int, limit: int, allow_partial_final_row: bool,
          has_header: bool = False, max_bytes: Optional[int] = None) -> RowBatch:
    """Read up to ``limit`` rows from ``handle`` starting at ``offset``."""
    handle.seek(offset)
    feed = _LineFeed(handle, max_bytes)
    reader = csv.reader(feed)

    headers: List[str] = []
    rows: List[List[str]] = []
    next_offset = offset
    want_header = has_header and offset == 0

    try:
        for record in reader:
            if feed.partial and not allow_partial_final_row:
                break
            next_offset = offset + feed.consumed

            if not any(record):
                continue

            if want_header:
                headers = header_names(record)
                want_header = False
                continue

            rows.append(record)
            if limit > 0 and len(rows) >= limit:
                break
    except csv.Error as e:
        raise EngineError(f"Malformed CSV near byte {next_offset}: {e}")

    size = os.fstat(handle.fileno()).st_size
    return RowBatch(
        rows=rows,
        next_offset=next_offset,
        has_more=next_offset < size,
        headers=headers
    )


def encode_batch_payload(batch: RowBatch) -> str:
    """Encode a batch as newline-delimited rows followed by the metadata marker line."""
    lines = "".join(json.dumps(row) + "\n" for row in batch.rows)
    meta = json.dumps({'next_offset': batch.next_offset, 'has_more': batch.has_more})
    return f"{lines}{META_MARKER}{meta}"


def parse_batch_payload(payload: str) -> Tuple[str, int, bool, int]:
    """Split a cursor payload into its row lines and metadata.

    Args:
        payload: Text produced by ``RecordCursor.next_batch``

    Returns:
        Tuple of (rows_ndjson, next_offset, has_more, row_count)

    Raises:
        EngineError: If the metadata marker is missing or unreadable
    """
    marker = "\n" + META_MARKER
    pos = payload.rfind(marker)
    if pos >= 0:
        rows_part = payload[:pos]
        meta_raw = payload[pos + len(marker):]
    elif payload.startswith(META_MARKER):
        rows_part = ""
        meta_raw = payload[len(META_MARKER):]
    else:
        raise EngineError("Batch payload has no metadata marker")

    try:
        meta = json.loads(meta_raw.strip())
    except ValueError as e:
        raise EngineError(f"Invalid batch metadata: {e}")
    if not isinstance(meta, dict):
        raise EngineError("Invalid batch metadata: not an object")

    trimmed = rows_part.rstrip("\r\n")
    row_count = 0 if trimmed == "" else trimmed.count("\n") + 1
    return rows_part, int(meta.get('next_offset', 0)), bool(meta.get('has_more', False)), row_count


def parse_ndjson_rows(text: str) -> List[List[str]]:
    """Decode newline-delimited JSON rows, skipping lines that are not arrays."""
    rows = []
    for line in text.split("\n"):
        line = line.strip()
        if not line:
            continue
        try:
            parsed = json.loads(line)
        except ValueError:
            logger.warning(f"Skipping malformed row line: {line[:80]}")
            continue
        if isinstance(parsed, list):
            rows.append(parsed)
    return rows


def _check_path(path: str) -> None:
    if not str(path).lower().endswith(".csv"):
        raise EngineError(f"Record source only reads .csv files: {path}")


class RecordCursor:
    """Stateful reader that keeps its own offset across batches."""

    def __init__(self, path: str, offset: int = 0):
        _check_path(path)
        try:
            self._handle = open(path, "rb")
        except OSError as e:
            raise EngineError(f"Cannot open {path}: {e}")
        self.path = path
        self.offset = max(0, offset)

    def next_batch(self, limit: int, allow_partial_final_row: bool = True) -> str:
        """Read the next batch and return it in the wire shape.

        Args:
            limit: Maximum number of rows in the batch
            allow_partial_final_row: Whether a row ended by end-of-file may be returned

        Returns:
            Row lines followed by a ``__META__`` line with next_offset and has_more
        """
        if self._handle is None:
            raise EngineError("Cursor is closed")
        batch = _scan(self._handle, self.offset, limit, allow_partial_final_row)
        self.offset = batch.next_offset
        return encode_batch_payload(batch)

    def close(self) -> None:
        if self._handle is not None:
            self._handle.close()
            self._handle = None

    def __enter__(self) -> "RecordCursor":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


class CsvRecordSource:
    """In-process record engine exposing one-shot reads and cursors."""

    def __init__(self, enabled: bool = True):
        self.enabled = enabled

    def ensure_available(self) -> None:
        """Raise ServiceUnavailableError when the engine cannot serve requests."""
        if not self.enabled:
            raise ServiceUnavailableError(
                "Record engine unavailable",
                details={'engine_error': "engine disabled by configuration"}
            )

    def read(self, path: str, offset: int, limit: int,
             allow_partial_final_row: bool = True, has_header: bool = False,
             max_bytes: Optional[int] = None) -> RowBatch:
        """Read one batch of rows.

        Args:
            path: Backing file path
            offset: Byte offset to start from
            limit: Maximum number of rows, 0 for no limit
            allow_partial_final_row: Whether a row ended by end-of-file may be returned
            has_header: Treat the first record at offset 0 as headers
            max_bytes: Optional bound on the number of bytes read

        Returns:
            RowBatch with the resumable next offset
        """
        self.ensure_available()
        _check_path(path)
        try:
            with open(path, "rb") as handle:
                return _scan(handle, max(0, offset), limit, allow_partial_final_row,
                             has_header=has_header, max_bytes=max_bytes)
        except OSError as e:
            raise EngineError(f"Cannot read {path}: {e}")

    def open_stream(self, path: str, offset: int = 0) -> RecordCursor:
        self.ensure_available()
        return RecordCursor(path, offset)
