from .api import create_app
from .chunks import ChunkedUploadManager
from .config import ClientSettings, ServerSettings, Settings, load_config
from .coordinator import RowDeliveryCoordinator
from .records import CsvRecordSource
from .supervisor import TransportSupervisor
from .tracker import UploadSessionStore
from .uploader import ChunkUploader

__version__ = "0.1.0"

__all__ = [
    "create_app",
    "ChunkedUploadManager",
    "ClientSettings",
    "ServerSettings",
    "Settings",
    "load_config",
    "RowDeliveryCoordinator",
    "CsvRecordSource",
    "TransportSupervisor",
    "UploadSessionStore",
    "ChunkUploader",
]
