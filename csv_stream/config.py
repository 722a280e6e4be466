"""
Module containing tunable settings for the server and the client.
"""
import json
import logging
import tempfile
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


def _default_storage_dir() -> Path:
    return Path(tempfile.gettempdir()) / "csv_stream"


def _from_dict(cls, data: Dict[str, Any]):
    known = {f.name for f in fields(cls)}
    return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class ServerSettings:
    """Settings for the upload manager and the row coordinator."""
    storage_dir: Path = field(default_factory=_default_storage_dir)
    session_ttl: float = 3600.0
    poll_limit_min: int = 50
    poll_limit_max: int = 200000
    default_limit: int = 200
    stream_limit_min: int = 20000
    stream_limit_max: int = 140000
    target_ms: float = 115.0
    idle_wait_start_ms: float = 30.0
    idle_wait_step_ms: float = 5.0
    idle_wait_max_ms: float = 80.0
    idle_wait_reset_ms: float = 20.0
    engine_enabled: bool = True

    def __post_init__(self):
        self.storage_dir = Path(self.storage_dir)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ServerSettings":
        return _from_dict(cls, data)


@dataclass
class ClientSettings:
    """Settings for the headless client: upload, transports, queue and viewport."""
    base_url: str = "http://localhost:8000"
    chunk_bytes: int = 8 * 1024 * 1024
    batch_rows: int = 70000
    poll_limit_min: int = 20000
    poll_limit_max: int = 140000
    target_ms: float = 115.0
    incoming_high_water: int = 140000
    incoming_low_water: int = 35000
    poll_fast_ms: float = 10.0
    poll_idle_ms: float = 220.0
    stall_ms: float = 8000.0
    watchdog_interval_ms: float = 1200.0
    prefer_stream: bool = True
    replace_preview: bool = False
    preview_rows: int = 5000
    preview_bytes: int = 16 * 1024 * 1024
    max_append_per_frame: int = 5000
    frame_interval_ms: float = 16.0
    row_height: int = 36
    overscan: int = 8
    min_viewport_height: int = 260
    max_scroll_px: int = 33000000
    end_confirmations: int = 2
    max_poll_failures: int = 5
    request_timeout: float = 30.0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ClientSettings":
        return _from_dict(cls, data)


@dataclass
class Settings:
    server: ServerSettings = field(default_factory=ServerSettings)
    client: ClientSettings = field(default_factory=ClientSettings)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Settings":
        return cls(
            server=ServerSettings.from_dict(data.get('server', {})),
            client=ClientSettings.from_dict(data.get('client', {}))
        )


def load_config(config_file: Optional[Path] = None) -> Settings:
    """Load settings from a JSON file.

    Args:
        config_file: Path to config file

    Returns:
        Settings built from the file, or defaults when absent or unreadable
    """
    if not config_file:
        return Settings()

    try:
        with open(config_file) as f:
            return Settings.from_dict(json.load(f))
    except Exception as e:
        logger.error(f"Error loading config file: {e}")
        return Settings()
