"""
Exception taxonomy shared by the upload manager, the row coordinator and the HTTP layer.
"""
from typing import Any, Dict, Optional


class StreamServiceError(Exception):
    """Base error carrying the HTTP status it maps to."""

    status_code = 500

    def __init__(self, message: str = "An error occurred",
                 details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def to_payload(self) -> Dict[str, Any]:
        """Render the error as a JSON-serializable body."""
        payload = {"error": self.message}
        payload.update(self.details)
        return payload


class ValidationError(StreamServiceError):
    """Bad method, missing or invalid parameters, wrong extension."""

    status_code = 400


class NotFoundError(StreamServiceError):
    """Unknown or expired upload id, or missing backing file."""

    status_code = 404


class ConflictError(StreamServiceError):
    """Out-of-order chunk, premature or repeated finalize.

    ``details`` carries the expected state so the client can resynchronize.
    """

    status_code = 409


class ServiceUnavailableError(StreamServiceError):
    """The record engine cannot be used for this request."""

    status_code = 503


class EngineError(StreamServiceError):
    """The record engine failed or produced a malformed response.

    The detail is kept for logging; callers only see a generic message.
    """

    status_code = 500

    def __init__(self, detail: str, message: str = "Error reading rows"):
        self.detail = detail
        super().__init__(message)


class TransportError(Exception):
    """A client transport (stream or poll) failed."""


class UploadError(Exception):
    """The chunked upload could not be completed."""

    def __init__(self, message: str, status_code: Optional[int] = None,
                 payload: Optional[Dict[str, Any]] = None):
        self.status_code = status_code
        self.payload = payload or {}
        super().__init__(message)
