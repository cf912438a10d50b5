"""Tests for the incremental SSE decoder and the stream driver."""

import asyncio

import httpx
import pytest

from hitl_broker.clients.sse import SSEDecoder, stream_events
from hitl_broker.errors import TransportError


def _kind_only(payload):
    if isinstance(payload, dict) and isinstance(payload.get("kind"), str) and payload["kind"]:
        return payload
    return None


class TestSSEDecoder:
    def test_single_event(self):
        decoder = SSEDecoder(_kind_only)
        assert decoder.feed('data: {"kind": "a"}\n\n') == [{"kind": "a"}]

    def test_event_split_across_chunks(self):
        decoder = SSEDecoder(_kind_only)
        assert decoder.feed('data: {"ki') == []
        assert decoder.feed('nd": "a"}\n') == []
        assert decoder.feed("\n") == [{"kind": "a"}]

    def test_crlf_line_endings(self):
        decoder = SSEDecoder(_kind_only)
        assert decoder.feed('data: {"kind": "a"}\r\n\r\n') == [{"kind": "a"}]

    def test_comments_ignored(self):
        decoder = SSEDecoder(_kind_only)
        assert decoder.feed(': ping\n\n: ping\n\ndata: {"kind": "a"}\n\n') == [{"kind": "a"}]

    def test_multiline_data_joined(self):
        decoder = SSEDecoder(_kind_only)
        events = decoder.feed('data: {"kind":\ndata: "a"}\n\n')
        assert events == [{"kind": "a"}]

    def test_malformed_payload_dropped(self):
        decoder = SSEDecoder(_kind_only)
        events = decoder.feed('data: {nope\n\ndata: {"kind": ""}\n\ndata: {"kind": "b"}\n\n')
        assert events == [{"kind": "b"}]

    def test_other_fields_ignored(self):
        decoder = SSEDecoder(_kind_only)
        assert decoder.feed('event: x\nid: 4\ndata: {"kind": "a"}\n\n') == [{"kind": "a"}]

    def test_close_flushes_tail_once(self):
        decoder = SSEDecoder(_kind_only)
        assert decoder.feed('data: {"kind": "tail"}') == []
        assert decoder.close() == [{"kind": "tail"}]
        assert decoder.close() == []
        assert decoder.feed('data: {"kind": "late"}\n\n') == []

    def test_close_flushes_unterminated_event(self):
        decoder = SSEDecoder(_kind_only)
        decoder.feed('data: {"kind": "a"}\n')
        assert decoder.close() == [{"kind": "a"}]


async def _chunks(*parts: str):
    for part in parts:
        yield part.encode()


def _transport(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestStreamEvents:
    @pytest.mark.asyncio
    async def test_delivers_events_and_flushes_tail(self):
        seen_headers = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen_headers.update(request.headers)
            return httpx.Response(
                200,
                headers={"content-type": "text/event-stream"},
                content=_chunks('data: {"kind": "a"}\n\n: ping\n\n', 'data: {"kind": "b"}'),
            )

        received = []
        opened = []
        async with _transport(handler) as client:
            await stream_events(
                "http://rt/api/events",
                route="/api/events",
                parse=_kind_only,
                on_event=received.append,
                token="tok",
                on_open=lambda: opened.append(True),
                client=client,
            )

        assert received == [{"kind": "a"}, {"kind": "b"}]
        assert opened == [True]
        assert seen_headers["authorization"] == "Bearer tok"
        assert seen_headers["accept"] == "text/event-stream"

    @pytest.mark.asyncio
    async def test_async_callback_awaited(self):
        def handler(request):
            return httpx.Response(200, content=_chunks('data: {"kind": "a"}\n\n'))

        received = []

        async def on_event(event):
            await asyncio.sleep(0)
            received.append(event)

        async with _transport(handler) as client:
            await stream_events("http://rt/s", route="/s", parse=_kind_only, on_event=on_event, client=client)
        assert received == [{"kind": "a"}]

    @pytest.mark.asyncio
    async def test_non_2xx_raises_with_reason(self):
        def handler(request):
            return httpx.Response(503, json={"error": "runtime offline"})

        opened = []
        async with _transport(handler) as client:
            with pytest.raises(TransportError) as exc_info:
                await stream_events(
                    "http://rt/api/events",
                    route="/api/events",
                    parse=_kind_only,
                    on_event=lambda e: None,
                    on_open=lambda: opened.append(True),
                    client=client,
                )
        assert str(exc_info.value) == "GET /api/events failed (503): runtime offline"
        assert exc_info.value.status_code == 503
        assert opened == []

    @pytest.mark.asyncio
    async def test_preset_abort_returns_without_request(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200, content=b"")

        abort = asyncio.Event()
        abort.set()
        async with _transport(handler) as client:
            await stream_events(
                "http://rt/s", route="/s", parse=_kind_only, on_event=lambda e: None, abort=abort, client=client,
            )
        assert calls == []

    @pytest.mark.asyncio
    async def test_abort_mid_stream_returns_quietly(self):
        release = asyncio.Event()

        async def slow_body():
            yield b'data: {"kind": "a"}\n\n'
            await release.wait()
            yield b'data: {"kind": "never"}\n\n'

        def handler(request):
            return httpx.Response(200, content=slow_body())

        abort = asyncio.Event()
        received = []

        def on_event(event):
            received.append(event)
            abort.set()

        async with _transport(handler) as client:
            await asyncio.wait_for(
                stream_events(
                    "http://rt/s", route="/s", parse=_kind_only, on_event=on_event, abort=abort, client=client,
                ),
                timeout=2,
            )
        release.set()
        assert received == [{"kind": "a"}]
