"""
Tests for the HTTP surface.
"""
from fastapi.testclient import TestClient

from csv_stream.api import create_app
from csv_stream.config import ServerSettings
from csv_stream.transports import SseParser


def post_chunk(client, body, index, total, upload_id=None, name="data.csv"):
    params = {"name": name, "index": index, "total": total}
    if upload_id:
        params["upload_id"] = upload_id
    return client.post("/upload_chunk", params=params, content=body,
                       headers={"Content-Type": "application/octet-stream"})

def upload(client, chunks, finalize=True):
    upload_id = None
    for index, chunk in enumerate(chunks):
        response = post_chunk(client, chunk, index, len(chunks), upload_id)
        assert response.status_code == 200
        upload_id = response.json()["upload_id"]
    if finalize:
        assert client.post("/upload_complete", json={"upload_id": upload_id}).status_code == 200
    return upload_id

def parse_sse(text):
    parser = SseParser()
    events = []
    for line in text.split("\n"):
        event = parser.feed_line(line)
        if event is not None:
            events.append(event)
    return events

def test_health(api_client):
    response = api_client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "healthy"}

def test_chunked_upload_and_finalize(api_client):
    """Test that chunks are accepted in order and the upload can be finalized."""
    first = post_chunk(api_client, b"a\nb\n", 0, 2)
    assert first.status_code == 200
    body = first.json()
    assert body["received_index"] == 0
    assert body["next_index"] == 1
    assert body["total_chunks"] == 2

    second = post_chunk(api_client, b"c\n", 1, 2, body["upload_id"])
    assert second.status_code == 200

    response = api_client.post("/upload_complete", json={"upload_id": body["upload_id"]})
    assert response.status_code == 200
    assert response.json() == {"upload_id": body["upload_id"]}

def test_out_of_order_chunk_returns_expected_index(api_client):
    upload_id = post_chunk(api_client, b"a\n", 0, 3).json()["upload_id"]

    response = post_chunk(api_client, b"c\n", 2, 3, upload_id)

    assert response.status_code == 409
    assert response.json() == {"error": "Chunk out of order", "expected_index": 1}

def test_wrong_extension_rejected(api_client):
    response = post_chunk(api_client, b"a\n", 0, 1, name="data.txt")
    assert response.status_code == 400
    assert "error" in response.json()

def test_malformed_parameters_rejected(api_client):
    response = api_client.post("/upload_chunk", params={"name": "data.csv", "index": "abc", "total": 1},
                               content=b"a\n")
    assert response.status_code == 400
    assert response.json()["error"] == "Invalid request parameters"

def test_premature_finalize_conflicts(api_client):
    partial_id = post_chunk(api_client, b"a\n", 0, 2).json()["upload_id"]

    response = api_client.post("/upload_complete", json={"upload_id": partial_id})

    assert response.status_code == 409
    assert response.json()["received_chunks"] == 1
    assert response.json()["total_chunks"] == 2

def test_double_finalize_conflicts(api_client):
    upload_id = upload(api_client, [b"a\n"])
    response = api_client.post("/upload_complete", json={"upload_id": upload_id})
    assert response.status_code == 409

def test_finalize_without_id_rejected(api_client):
    assert api_client.post("/upload_complete", json={}).status_code == 400

def test_poll_rows_full_and_compact(api_client):
    """Test both poll encodings and the no-cache header."""
    upload_id = upload(api_client, [b"a\nb\n", b"c,d\n", b"e\n"])

    full = api_client.get("/poll_rows", params={"upload_id": upload_id, "offset": 0, "limit": 50})
    assert full.status_code == 200
    assert full.headers["cache-control"] == "no-cache"
    assert full.json() == {
        "rows": [["a"], ["b"], ["c", "d"], ["e"]],
        "next_offset": 10,
        "has_more": False
    }

    compact = api_client.get("/poll_rows", params={"upload_id": upload_id, "offset": 4, "compact": "1"})
    assert compact.json() == {"r": [["c", "d"], ["e"]], "n": 10, "h": False}

def test_poll_before_finalize_reports_more(api_client):
    upload_id = upload(api_client, [b"a\n", b"b"], finalize=False)

    body = api_client.get("/poll_rows", params={"upload_id": upload_id}).json()

    assert body["rows"] == [["a"]]
    assert body["has_more"] is True

def test_poll_errors(api_client):
    assert api_client.get("/poll_rows").status_code == 400
    assert api_client.get("/poll_rows", params={"upload_id": "abc123"}).status_code == 404
    assert api_client.get("/poll_rows", params={"upload_id": "abc123", "offset": "x"}).status_code == 400

def test_engine_error_is_generic(app, api_client, tmp_path):
    path = tmp_path / "data.txt"
    path.write_text("a\n")
    upload_id = app.state.manager.register_file(path)

    response = api_client.get("/poll_rows", params={"upload_id": upload_id})

    assert response.status_code == 500
    assert response.json() == {"error": "Error reading rows"}

def test_stream_rows_emits_events(api_client):
    """Test the stream endpoint's headers and event sequence for a finalized upload."""
    upload_id = upload(api_client, [b"a\nb\n", b"c,d\n", b"e\n"])

    response = api_client.get("/stream_rows", params={"upload_id": upload_id, "limit": 50})

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    assert response.headers["cache-control"] == "no-cache"
    assert response.headers["x-accel-buffering"] == "no"

    events = parse_sse(response.text)
    assert [name for name, _ in events] == ["rows", "meta", "end"]
    assert events[0][1] == '["a"]\n["b"]\n["c", "d"]\n["e"]'

def test_stream_unknown_upload_emits_error(api_client):
    response = api_client.get("/stream_rows", params={"upload_id": "abc123"})
    events = parse_sse(response.text)
    assert [name for name, _ in events] == ["error"]

def test_engine_unavailable_blocks_finalize(storage_dir):
    app = create_app(ServerSettings(storage_dir=storage_dir, engine_enabled=False))
    with TestClient(app) as client:
        upload_id = upload(client, [b"a\n"], finalize=False)
        response = client.post("/upload_complete", json={"upload_id": upload_id})

    assert response.status_code == 503
    assert "engine_error" in response.json()
