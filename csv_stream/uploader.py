"""
Module for uploading a local CSV file to the server in ordered chunks.
"""
import logging
import math
from pathlib import Path
from typing import Any, Callable, Dict, Optional

import httpx
from tenacity import (
    AsyncRetrying,
    after_log,
    before_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from .errors import UploadError

logger = logging.getLogger(__name__)


def is_retryable_error(exception: BaseException) -> bool:
    """Check if an exception should trigger a retry.

    Args:
        exception: The exception to check

    Returns:
        True for transport failures and server errors other than 503
    """
    if isinstance(exception, httpx.TransportError):
        return True
    if isinstance(exception, UploadError) and exception.status_code is not None:
        return exception.status_code >= 500 and exception.status_code != 503
    return False


def _check_response(response: httpx.Response) -> Dict[str, Any]:
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if response.is_error or not isinstance(payload, dict) or payload.get('error'):
        body = payload if isinstance(payload, dict) else {}
        message = body.get('error') or f"Request failed with status {response.status_code}"
        raise UploadError(message, status_code=response.status_code, payload=body)
    return payload


class ChunkUploader:
    """Posts a file as sequential chunks and finalizes the upload."""

    def __init__(self, client: httpx.AsyncClient, chunk_bytes: int = 8 * 1024 * 1024,
                 attempts: int = 3, wait=None):
        """Initialize the chunk uploader.

        Args:
            client: HTTP client bound to the server base URL
            chunk_bytes: Size of each chunk in bytes
            attempts: Attempts per request for retryable failures
            wait: tenacity wait strategy between attempts
        """
        self.client = client
        self.chunk_bytes = chunk_bytes
        self.attempts = attempts
        self.wait = wait if wait is not None else wait_exponential(multiplier=1, min=4, max=10)

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            retry=retry_if_exception(is_retryable_error),
            stop=stop_after_attempt(self.attempts),
            wait=self.wait,
            before=before_log(logger, logging.DEBUG),
            after=after_log(logger, logging.DEBUG),
            reraise=True
        )

    async def _post_chunk(self, params: Dict[str, Any], body: bytes) -> Dict[str, Any]:
        async for attempt in self._retrying():
            with attempt:
                response = await self.client.post(
                    "/upload_chunk",
                    params=params,
                    content=body,
                    headers={'Content-Type': 'application/octet-stream'}
                )
                return _check_response(response)

    async def _finalize(self, upload_id: str) -> Dict[str, Any]:
        async for attempt in self._retrying():
            with attempt:
                response = await self.client.post("/upload_complete", json={'upload_id': upload_id})
                return _check_response(response)

    async def upload(self, path: Path,
                     on_progress: Optional[Callable[[int], None]] = None,
                     on_upload_id: Optional[Callable[[str], None]] = None,
                     on_chunk_uploaded: Optional[Callable[[str, int, int], None]] = None) -> str:
        """Upload a file chunk by chunk, then finalize it.

        Args:
            path: Local CSV file
            on_progress: Called with a percentage after each chunk and after finalize
            on_upload_id: Called with the upload id once the server assigned it
            on_chunk_uploaded: Called with (upload_id, index, total) after each chunk

        Returns:
            The upload id
        """
        path = Path(path)
        if path.suffix.lower() != ".csv":
            raise UploadError("File must be a CSV")

        size = path.stat().st_size
        total = max(1, math.ceil(size / self.chunk_bytes))
        upload_id = ""

        with open(path, "rb") as f:
            for index in range(total):
                f.seek(index * self.chunk_bytes)
                chunk = f.read(self.chunk_bytes)

                params: Dict[str, Any] = {'name': path.name, 'index': index, 'total': total}
                if upload_id:
                    params['upload_id'] = upload_id

                try:
                    payload = await self._post_chunk(params, chunk)
                except UploadError as e:
                    # A retried chunk whose first response was lost is already on the server.
                    if e.status_code == 409 and e.payload.get('expected_index') == index + 1:
                        logger.warning(f"Chunk {index} of upload {upload_id} already received")
                        payload = {'upload_id': upload_id}
                    else:
                        raise

                upload_id = payload.get('upload_id') or upload_id
                if on_upload_id:
                    on_upload_id(upload_id)
                if on_progress:
                    on_progress(min(99, round((index + 1) / total * 100)))
                if on_chunk_uploaded:
                    on_chunk_uploaded(upload_id, index, total)

        try:
            result = await self._finalize(upload_id)
        except UploadError as e:
            if e.status_code == 409 and 'received_chunks' not in e.payload:
                logger.warning(f"Upload {upload_id} was already finalized")
                result = {'upload_id': upload_id}
            else:
                raise

        if on_progress:
            on_progress(100)
        logger.info(f"Uploaded {path.name} as {upload_id} in {total} chunks")
        return result.get('upload_id') or upload_id
