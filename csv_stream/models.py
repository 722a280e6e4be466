"""
Module containing data models for the streaming service and its client.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Dict, Any


@dataclass
class ChunkState:
    """Ordering state of a chunked upload."""
    expected_index: int
    total_chunks: int
    complete: bool = False


@dataclass
class UploadSession:
    """Represents an upload session and its backing file."""
    upload_id: str
    file_path: str
    file_name: str
    created_at: float
    last_activity: float
    chunk_state: Optional[ChunkState] = None

    @property
    def chunked(self) -> bool:
        return self.chunk_state is not None

    @property
    def marker_path(self) -> str:
        return self.file_path + ".complete"

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'upload_id': self.upload_id,
            'file_path': self.file_path,
            'file_name': self.file_name,
            'created_at': self.created_at,
            'last_activity': self.last_activity,
        }
        if self.chunk_state is not None:
            data['chunk_state'] = {
                'expected_index': self.chunk_state.expected_index,
                'total_chunks': self.chunk_state.total_chunks,
                'complete': self.chunk_state.complete,
            }
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UploadSession":
        state = data.get('chunk_state')
        return cls(
            upload_id=data['upload_id'],
            file_path=data['file_path'],
            file_name=data.get('file_name', ''),
            created_at=float(data.get('created_at', 0)),
            last_activity=float(data.get('last_activity', data.get('created_at', 0))),
            chunk_state=ChunkState(
                expected_index=int(state.get('expected_index', 0)),
                total_chunks=int(state.get('total_chunks', 0)),
                complete=bool(state.get('complete', False))
            ) if isinstance(state, dict) else None
        )


@dataclass
class RowBatch:
    """Rows read from a backing file plus the resumption cursor."""
    rows: List[List[str]]
    next_offset: int
    has_more: bool
    headers: List[str] = field(default_factory=list)

    def to_payload(self, compact: bool = False) -> Dict[str, Any]:
        if compact:
            return {'r': self.rows, 'n': self.next_offset, 'h': self.has_more}
        return {'rows': self.rows, 'next_offset': self.next_offset, 'has_more': self.has_more}


@dataclass
class ChunkReceipt:
    """Result of accepting a single chunk."""
    upload_id: str
    received_index: int
    next_index: int
    total_chunks: int


@dataclass
class StreamEvent:
    """A single server-push event."""
    event: str
    data: str

    def encode(self) -> str:
        """Encode as a Server-Sent Events frame, one data line per payload line."""
        lines = self.data.rstrip("\n").split("\n")
        body = "".join(f"data: {line}\n" for line in lines)
        return f"event: {self.event}\n{body}\n"


class TransportMode(str, Enum):
    """Client transport states."""
    IDLE = "idle"
    UPLOADING = "uploading"
    STREAMING = "streaming"
    POLLING = "polling"
    COMPLETE = "complete"


@dataclass
class PollResult:
    """Result of a single poll request."""
    rows: List[List[str]]
    next_offset: int
    has_more: bool
    elapsed_ms: float


@dataclass
class RenderWindow:
    """Visible slice of the row store plus spacer heights."""
    start: int
    end: int
    top_px: int
    bottom_px: int

    @property
    def key(self) -> str:
        return f"{self.start}:{self.end}"


@dataclass
class ClientMetrics:
    """Counters summarized once a load completes."""
    started_at: float = 0.0
    upload_ended_at: float = 0.0
    first_rows_at: float = 0.0
    stream_started_at: float = 0.0
    stream_ended_at: float = 0.0
    poll_calls: int = 0
    poll_time_ms: float = 0.0
    rows_received: int = 0
    render_calls: int = 0
    apply_calls: int = 0
    complete_logged: bool = False


@dataclass
class ClientState:
    """Per-session client state; replaced wholesale when a new file is loaded."""
    session_id: int = 0
    upload_id: str = ""
    headers: List[str] = field(default_factory=list)
    rows: List[List[str]] = field(default_factory=list)
    next_offset: int = 0
    preview_end_offset: int = 0
    mode: TransportMode = TransportMode.IDLE
    has_more: bool = False
    upload_finalized: bool = False
    load_complete: bool = False
    force_polling: bool = False
    header_pending: bool = False
    metrics: ClientMetrics = field(default_factory=ClientMetrics)
