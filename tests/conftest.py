"""
Test fixtures for the CSV streaming service.
"""
import pytest
from fastapi.testclient import TestClient

from csv_stream.api import create_app
from csv_stream.chunks import ChunkedUploadManager
from csv_stream.config import ServerSettings
from csv_stream.coordinator import RowDeliveryCoordinator
from csv_stream.records import CsvRecordSource
from csv_stream.tracker import UploadSessionStore


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def storage_dir(tmp_path):
    """Create a temporary storage directory."""
    path = tmp_path / "storage"
    path.mkdir()
    return path

@pytest.fixture
def server_settings(storage_dir):
    """Server settings pointing at the temporary storage directory."""
    return ServerSettings(
        storage_dir=storage_dir,
        idle_wait_start_ms=1,
        idle_wait_step_ms=1,
        idle_wait_max_ms=2,
        idle_wait_reset_ms=1
    )

@pytest.fixture
def clock():
    return FakeClock()

@pytest.fixture
def session_store(storage_dir):
    return UploadSessionStore(storage_dir)

@pytest.fixture
def record_source():
    return CsvRecordSource()

@pytest.fixture
def upload_manager(session_store, record_source, clock):
    """Create an upload manager with a controllable clock."""
    return ChunkedUploadManager(session_store, record_source, session_ttl=3600, clock=clock)

@pytest.fixture
def coordinator(upload_manager, record_source, server_settings):
    return RowDeliveryCoordinator(upload_manager, record_source, server_settings)

@pytest.fixture
def csv_file(tmp_path):
    """Write a small CSV file with a header row."""
    path = tmp_path / "people.csv"
    path.write_bytes(b"name,age\nalice,30\nbob,41\ncarol,27\n")
    return path

@pytest.fixture
def app(server_settings):
    return create_app(server_settings)

@pytest.fixture
def api_client(app):
    """Synchronous test client for the HTTP surface."""
    with TestClient(app) as client:
        yield client

@pytest.fixture
def upload_chunks(upload_manager):
    """Push byte chunks through the manager and return the upload id."""
    def upload(chunks, name="data.csv", finalize=True):
        upload_id = None
        for index, chunk in enumerate(chunks):
            receipt = upload_manager.begin_or_continue(upload_id, name, index, len(chunks), chunk)
            upload_id = receipt.upload_id
        if finalize:
            upload_manager.finalize(upload_id)
        return upload_id
    return upload
