"""
Module for reassembling ordered chunked uploads into backing files.
"""
import logging
import os
import secrets
import time
from pathlib import Path
from typing import Callable, Dict, Optional

from .errors import ConflictError, NotFoundError, ValidationError
from .models import ChunkReceipt, ChunkState, UploadSession
from .records import CsvRecordSource
from .tracker import UploadSessionStore

logger = logging.getLogger(__name__)


def _unlink(path: str) -> None:
    try:
        os.unlink(path)
    except FileNotFoundError:
        pass


class ChunkedUploadManager:
    """Accepts sequential byte ranges of a CSV file and finalizes the session."""

    def __init__(self, store: UploadSessionStore, source: CsvRecordSource,
                 session_ttl: float = 3600.0,
                 clock: Callable[[], float] = time.time):
        """Initialize the upload manager.

        Args:
            store: Session metadata store
            source: Record engine, checked before a session is finalized
            session_ttl: Seconds of inactivity after which a session is purged
            clock: Time source, injectable for tests
        """
        self.store = store
        self.source = source
        self.session_ttl = session_ttl
        self._clock = clock

    @property
    def storage_dir(self) -> Path:
        return self.store.storage_dir

    def purge_expired(self) -> int:
        """Drop sessions whose backing file vanished or whose activity is older than the TTL.

        Returns:
            Number of sessions removed
        """
        now = self._clock()
        purged = 0
        for upload_id in self.store.all_ids():
            with self.store.lock(upload_id):
                session = self.store.get(upload_id)
                if session is None:
                    continue
                if not os.path.exists(session.file_path):
                    self.store.delete(upload_id)
                    purged += 1
                    continue
                if now - session.last_activity > self.session_ttl:
                    self._remove_files(session)
                    self.store.delete(upload_id)
                    logger.info(f"Purged expired upload {upload_id}")
                    purged += 1
        return purged

    def get_session(self, upload_id: str) -> UploadSession:
        """Look up a live session.

        Raises:
            NotFoundError: If the session is unknown, expired, or its file is gone
        """
        session = self.store.get(upload_id)
        if session is None:
            raise NotFoundError("Upload not found or expired")
        if not os.path.exists(session.file_path):
            raise NotFoundError("Backing file not found")
        return session

    def begin_or_continue(self, upload_id: Optional[str], file_name: str,
                          chunk_index: int, total_chunks: int,
                          body: bytes) -> ChunkReceipt:
        """Accept the next chunk of an upload.

        Args:
            upload_id: Existing upload id, or None/empty for the first chunk
            file_name: Client file name, must end in .csv
            chunk_index: Zero-based index of this chunk
            total_chunks: Number of chunks declared by the client
            body: Raw chunk bytes

        Returns:
            ChunkReceipt with the next expected index
        """
        if not file_name or os.path.splitext(file_name)[1].lower() != ".csv":
            raise ValidationError("File must have a .csv extension")
        if chunk_index < 0 or total_chunks <= 0 or chunk_index >= total_chunks:
            raise ValidationError("Invalid chunk parameters")

        self.purge_expired()

        if not upload_id:
            if chunk_index != 0:
                raise ValidationError("upload_id is required for chunks after the first")
            upload_id = self._create_session(file_name, total_chunks)

        with self.store.lock(upload_id):
            session = self.get_session(upload_id)
            state = session.chunk_state
            if state is None:
                raise ConflictError("Upload does not accept chunks")
            if state.complete:
                raise ConflictError("Upload was already finalized")
            if state.total_chunks != total_chunks:
                raise ValidationError(
                    "Total chunks does not match the session",
                    details={'total_chunks': state.total_chunks}
                )
            if chunk_index != state.expected_index:
                logger.warning(
                    f"Rejected chunk {chunk_index} for upload {upload_id}, "
                    f"expected {state.expected_index}"
                )
                raise ConflictError(
                    "Chunk out of order",
                    details={'expected_index': state.expected_index}
                )

            with open(session.file_path, "ab") as f:
                f.write(body)
            _unlink(session.marker_path)

            state.expected_index += 1
            session.last_activity = self._clock()
            self.store.save(session)

        logger.debug(f"Accepted chunk {chunk_index + 1}/{total_chunks} for upload {upload_id}")
        return ChunkReceipt(
            upload_id=upload_id,
            received_index=chunk_index,
            next_index=chunk_index + 1,
            total_chunks=total_chunks
        )

    def _create_session(self, file_name: str, total_chunks: int) -> str:
        upload_id = secrets.token_hex(16)
        file_path = self.storage_dir / f"{secrets.token_hex(8)}.csv"
        file_path.touch()

        now = self._clock()
        self.store.save(UploadSession(
            upload_id=upload_id,
            file_path=str(file_path),
            file_name=file_name,
            created_at=now,
            last_activity=now,
            chunk_state=ChunkState(expected_index=0, total_chunks=total_chunks)
        ))
        logger.info(f"Created upload {upload_id} for {file_name} ({total_chunks} chunks)")
        return upload_id

    def finalize(self, upload_id: str) -> Dict[str, str]:
        """Mark an upload as complete once every chunk has arrived.

        Args:
            upload_id: Upload to finalize

        Returns:
            Dictionary with the upload id
        """
        if not upload_id:
            raise ValidationError("Missing upload_id")

        with self.store.lock(upload_id):
            session = self.get_session(upload_id)
            state = session.chunk_state
            if state is None:
                raise ConflictError("Upload is not a chunked upload")
            if state.complete:
                raise ConflictError("Upload was already finalized")
            if state.total_chunks <= 0 or state.expected_index < state.total_chunks:
                raise ConflictError(
                    "Chunks are still missing",
                    details={
                        'received_chunks': state.expected_index,
                        'total_chunks': state.total_chunks
                    }
                )

            self.source.ensure_available()

            state.complete = True
            session.last_activity = self._clock()
            self.store.save(session)
            with open(session.marker_path, "w") as f:
                f.write("1")

        logger.info(f"Finalized upload {upload_id}")
        return {'upload_id': upload_id}

    def register_file(self, path: Path, file_name: Optional[str] = None) -> str:
        """Register an existing file as a non-chunked, already complete upload.

        Args:
            path: Existing CSV file
            file_name: Display name, defaults to the file name

        Returns:
            New upload id
        """
        upload_id = secrets.token_hex(16)
        now = self._clock()
        self.store.save(UploadSession(
            upload_id=upload_id,
            file_path=str(path),
            file_name=file_name or Path(path).name,
            created_at=now,
            last_activity=now
        ))
        return upload_id

    def upload_complete(self, session: UploadSession) -> bool:
        """Check whether no more bytes will be appended to a session's file.

        The completion marker is checked against the filesystem on every call,
        never from cached metadata.
        """
        if not session.chunked:
            return True
        return os.path.exists(session.marker_path)

    def touch(self, upload_id: str) -> None:
        """Refresh the activity timestamp of a session being read."""
        with self.store.lock(upload_id):
            session = self.store.get(upload_id)
            if session is not None:
                session.last_activity = self._clock()
                self.store.save(session)

    def discard(self, upload_id: str) -> None:
        """Delete a session together with its backing file and marker."""
        with self.store.lock(upload_id):
            session = self.store.get(upload_id)
            if session is not None:
                self._remove_files(session)
            self.store.delete(upload_id)
        logger.info(f"Discarded upload {upload_id}")

    def _remove_files(self, session: UploadSession) -> None:
        if session.chunked:
            _unlink(session.file_path)
        _unlink(session.marker_path)
