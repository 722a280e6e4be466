"""
Tests for the stream and poll transports.
"""
import json

import httpx
import pytest

from csv_stream.adaptive import AdaptiveBatchController
from csv_stream.errors import TransportError
from csv_stream.transports import BatchSink, PollReader, SseParser, StreamReader


class RecordingSink(BatchSink):
    """Sink collecting everything a reader reports."""

    def __init__(self, pause_after=None):
        self.rows = []
        self.metas = []
        self.ended = False
        self.polls = 0
        self.pause_after = pause_after

    def on_rows(self, rows):
        self.rows.extend(rows)

    def on_meta(self, next_offset, has_more):
        self.metas.append((next_offset, has_more))

    def on_end(self):
        self.ended = True

    def on_poll(self, elapsed_ms):
        self.polls += 1

    def should_pause(self):
        return self.pause_after is not None and self.polls >= self.pause_after


def make_client(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://test")

def make_poll_reader(client, **kwargs):
    controller = AdaptiveBatchController(initial=70000, minimum=20000, maximum=140000)
    options = {"fast_ms": 0, "idle_ms": 0}
    options.update(kwargs)
    return PollReader(client, "abc123", controller, **options)

def scripted(responses, seen=None):
    """Handler answering each request with the next scripted response."""
    queue = list(responses)

    def handler(request):
        if seen is not None:
            seen.append(dict(request.url.params))
        status, body = queue.pop(0)
        if isinstance(body, str):
            return httpx.Response(status, text=body)
        return httpx.Response(status, json=body)
    return handler

def test_sse_parser_events():
    parser = SseParser()
    lines = [": comment", "event: rows", 'data: ["a"]', 'data: ["b"]', "",
             "data: plain", "", "", "event: end", "data: {}", ""]

    events = [e for e in (parser.feed_line(line) for line in lines) if e is not None]

    assert events == [("rows", '["a"]\n["b"]'), ("message", "plain"), ("end", "{}")]

@pytest.mark.asyncio
async def test_fetch_once_reads_compact_payload():
    seen = []
    async with make_client(scripted([(200, {"r": [["a"]], "n": 2, "h": True})], seen)) as client:
        result = await make_poll_reader(client).fetch_once(0, 500)

    assert result.rows == [["a"]]
    assert result.next_offset == 2
    assert result.has_more is True
    assert result.elapsed_ms >= 0
    assert seen == [{"upload_id": "abc123", "offset": "0", "limit": "500", "compact": "1"}]

@pytest.mark.asyncio
async def test_fetch_once_accepts_full_payload():
    body = {"rows": [["a"]], "next_offset": 2, "has_more": False}
    async with make_client(scripted([(200, body)])) as client:
        result = await make_poll_reader(client).fetch_once(0, 500)

    assert (result.rows, result.next_offset, result.has_more) == ([["a"]], 2, False)

@pytest.mark.asyncio
@pytest.mark.parametrize("status,body", [
    (404, {"error": "Upload not found or expired"}),
    (200, "not json"),
    (200, {"error": "Error reading rows"}),
])
async def test_fetch_once_failures(status, body):
    async with make_client(scripted([(status, body)])) as client:
        with pytest.raises(TransportError):
            await make_poll_reader(client).fetch_once(0, 500)

@pytest.mark.asyncio
async def test_poll_run_needs_two_end_signals():
    """Test that a final batch with rows is confirmed by one more empty answer."""
    responses = [
        (200, {"r": [["a"]], "n": 2, "h": True}),
        (200, {"r": [["b"]], "n": 4, "h": False}),
        (200, {"r": [], "n": 4, "h": False}),
    ]
    seen = []
    sink = RecordingSink()
    async with make_client(scripted(responses, seen)) as client:
        await make_poll_reader(client).run(0, sink)

    assert sink.rows == [["a"], ["b"]]
    assert sink.ended
    assert sink.metas == [(2, True), (4, True), (4, False)]
    assert [params["offset"] for params in seen] == ["0", "2", "4"]

@pytest.mark.asyncio
async def test_poll_run_resets_end_signals_on_more_data():
    responses = [
        (200, {"r": [], "n": 0, "h": False}),
        (200, {"r": [["a"]], "n": 2, "h": True}),
        (200, {"r": [], "n": 2, "h": False}),
        (200, {"r": [], "n": 2, "h": False}),
    ]
    sink = RecordingSink()
    async with make_client(scripted(responses)) as client:
        await make_poll_reader(client).run(0, sink)

    assert sink.rows == [["a"]]
    assert sink.polls == 4

@pytest.mark.asyncio
async def test_poll_run_retries_then_gives_up():
    responses = [(500, {"error": "boom"})] * 3
    async with make_client(scripted(responses)) as client:
        with pytest.raises(TransportError):
            await make_poll_reader(client, max_failures=3).run(0, RecordingSink())

@pytest.mark.asyncio
async def test_poll_run_recovers_after_failure():
    responses = [
        (500, {"error": "boom"}),
        (200, {"r": [["a"]], "n": 2, "h": False}),
        (200, {"r": [], "n": 2, "h": False}),
    ]
    sink = RecordingSink()
    async with make_client(scripted(responses)) as client:
        await make_poll_reader(client).run(0, sink)

    assert sink.rows == [["a"]]
    assert sink.ended

@pytest.mark.asyncio
async def test_poll_run_parks_when_sink_is_backlogged():
    responses = [(200, {"r": [["a"]], "n": 2, "h": True})]
    sink = RecordingSink(pause_after=1)
    async with make_client(scripted(responses)) as client:
        await make_poll_reader(client).run(0, sink)

    assert sink.polls == 1
    assert not sink.ended

def sse_body(*events):
    return "".join(f"event: {name}\n" + "".join(f"data: {line}\n" for line in data.split("\n")) + "\n"
                   for name, data in events)

@pytest.mark.asyncio
async def test_stream_run_dispatches_events():
    """Test that rows, meta and end events reach the sink in order."""
    seen = []
    body = sse_body(("rows", '["a"]\n["b", "c"]'), ("meta", json.dumps({"next_offset": 9, "has_more": False})),
                    ("end", "{}"))

    def handler(request):
        seen.append(request.url.path)
        return httpx.Response(200, text=body, headers={"Content-Type": "text/event-stream"})

    sink = RecordingSink()
    async with make_client(handler) as client:
        reader = StreamReader(client, "abc123", 70000)
        before = reader.last_activity
        await reader.run(0, sink)

    assert seen == ["/stream_rows"]
    assert sink.rows == [["a"], ["b", "c"]]
    assert sink.metas == [(9, False)]
    assert sink.ended
    assert reader.last_activity >= before

@pytest.mark.asyncio
async def test_stream_error_event_raises():
    body = sse_body(("error", json.dumps({"error": "Upload not found or expired"})))
    async with make_client(lambda request: httpx.Response(200, text=body)) as client:
        with pytest.raises(TransportError, match="Upload not found"):
            await StreamReader(client, "abc123", 70000).run(0, RecordingSink())

@pytest.mark.asyncio
async def test_stream_closed_without_end_raises():
    body = sse_body(("rows", '["a"]'), ("meta", json.dumps({"next_offset": 2, "has_more": True})),
                    ("rows", '["b"]'))
    sink = RecordingSink()
    async with make_client(lambda request: httpx.Response(200, text=body)) as client:
        with pytest.raises(TransportError):
            await StreamReader(client, "abc123", 70000).run(0, sink)
    assert sink.rows == [["a"]]
    assert sink.metas == [(2, True)]

@pytest.mark.asyncio
async def test_stream_connection_failure_raises():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    async with make_client(handler) as client:
        with pytest.raises(TransportError):
            await StreamReader(client, "abc123", 70000).run(0, RecordingSink())

@pytest.mark.asyncio
async def test_stream_error_status_raises():
    async with make_client(lambda request: httpx.Response(502, text="bad gateway")) as client:
        with pytest.raises(TransportError):
            await StreamReader(client, "abc123", 70000).run(0, RecordingSink())

@pytest.mark.asyncio
async def test_stream_rows_wait_for_their_meta():
    """Test that rows reach the sink together with the offset acknowledging them."""
    calls = []

    class OrderSink(RecordingSink):
        def on_rows(self, rows):
            calls.append(("rows", len(rows)))

        def on_meta(self, next_offset, has_more):
            calls.append(("meta", next_offset))

    body = sse_body(("rows", '["a"]'), ("rows", '["b"]'),
                    ("meta", json.dumps({"next_offset": 4, "has_more": True})),
                    ("rows", '["c"]'), ("end", "{}"))
    async with make_client(lambda request: httpx.Response(200, text=body)) as client:
        await StreamReader(client, "abc123", 70000).run(0, OrderSink())

    assert calls == [("rows", 2), ("meta", 4), ("rows", 1)]
