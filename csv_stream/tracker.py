"""
Module for persisting upload session metadata shared across request handlers.
"""
import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Dict, List, Optional

from .models import UploadSession

logger = logging.getLogger(__name__)

META_PREFIX = "csv_meta_"


class UploadSessionStore:
    """Durable upload id -> session mapping backed by one JSON file per id.

    Every handler reads the metadata file afresh, so independent requests (and
    processes sharing the directory) observe the same value. Mutations for one
    id are serialized through ``lock(upload_id)``.
    """

    def __init__(self, storage_dir: Path):
        """Initialize the session store.

        Args:
            storage_dir: Directory holding metadata and backing files
        """
        self.storage_dir = Path(storage_dir)
        self.storage_dir.mkdir(parents=True, exist_ok=True)
        self._locks: Dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()

    def _meta_path(self, upload_id: str) -> Path:
        return self.storage_dir / f"{META_PREFIX}{upload_id}.json"

    def lock(self, upload_id: str) -> threading.RLock:
        """Get the lock serializing writes for a single upload id.

        Only ids with a metadata record keep their lock; any other id gets a
        fresh lock that is not retained.
        """
        with self._locks_guard:
            lock = self._locks.get(upload_id)
            if lock is None:
                lock = threading.RLock()
                if upload_id and upload_id.isalnum() and self._meta_path(upload_id).exists():
                    self._locks[upload_id] = lock
            return lock

    def get(self, upload_id: str) -> Optional[UploadSession]:
        """Load a session.

        Args:
            upload_id: Unique identifier for the upload

        Returns:
            UploadSession if found and readable, None otherwise
        """
        if not upload_id or not upload_id.isalnum():
            return None

        meta_path = self._meta_path(upload_id)
        if not meta_path.exists():
            return None

        try:
            with open(meta_path, 'r') as f:
                data = json.load(f)
            return UploadSession.from_dict(data)
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.error(f"Error reading metadata for upload {upload_id}: {e}")
            return None

    def save(self, session: UploadSession) -> None:
        """Persist a session atomically.

        Args:
            session: Session to write
        """
        meta_path = self._meta_path(session.upload_id)
        fd, tmp_path = tempfile.mkstemp(dir=self.storage_dir, prefix=".meta_", suffix=".tmp")
        try:
            with os.fdopen(fd, 'w') as f:
                json.dump(session.to_dict(), f)
            os.replace(tmp_path, meta_path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

        logger.debug(f"Saved metadata for upload {session.upload_id}")

    def delete(self, upload_id: str) -> None:
        """Delete the metadata record of an upload."""
        try:
            self._meta_path(upload_id).unlink()
        except FileNotFoundError:
            pass
        with self._locks_guard:
            self._locks.pop(upload_id, None)

    def all_ids(self) -> List[str]:
        """List the ids of every persisted session."""
        return [
            p.name[len(META_PREFIX):-len(".json")]
            for p in self.storage_dir.glob(f"{META_PREFIX}*.json")
        ]
