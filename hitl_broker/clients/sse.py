"""Server-Sent Events consumption.

:class:`SSEDecoder` is an incremental parser fed with arbitrarily split
text chunks; it understands the subset of the SSE format that the broker
and the runtime emit (``data:`` lines, ``:`` comments, blank-line
terminators).  :func:`stream_events` drives a decoder from an httpx
streaming response and delivers validated events to a callback until the
server closes the body or the caller sets the ``abort`` event.

Malformed payloads are dropped where they are parsed so that a single bad
frame never ends a long-lived stream.
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import json
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any, Generic, TypeVar

import httpx

from hitl_broker.clients.http import auth_headers, get_client, read_response_error
from hitl_broker.errors import TransportError

logger = logging.getLogger(__name__)

T = TypeVar("T")

EventCallback = Callable[[Any], "Awaitable[None] | None"]

# Streams stay open indefinitely; only the connect phase is bounded.
STREAM_TIMEOUT = httpx.Timeout(None, connect=10.0)


class SSEDecoder(Generic[T]):
    """Incremental SSE parser.

    ``parse`` maps one decoded JSON payload to an event, or returns None
    when the payload is structurally invalid.
    """

    def __init__(self, parse: Callable[[Any], T | None]) -> None:
        self._parse = parse
        self._buffer = ""
        self._data_lines: list[str] = []
        self._closed = False

    def feed(self, chunk: str) -> list[T]:
        """Consume one chunk and return the events it completed."""
        if self._closed:
            return []
        self._buffer += chunk
        events: list[T] = []
        while True:
            newline = self._buffer.find("\n")
            if newline < 0:
                break
            line = self._buffer[:newline]
            self._buffer = self._buffer[newline + 1:]
            if line.endswith("\r"):
                line = line[:-1]
            self._handle_line(line, events)
        return events

    def close(self) -> list[T]:
        """Flush a trailing partial event once the body has ended.  Idempotent."""
        if self._closed:
            return []
        self._closed = True
        events: list[T] = []
        tail = self._buffer
        self._buffer = ""
        if tail.endswith("\r"):
            tail = tail[:-1]
        if tail:
            self._handle_line(tail, events)
        self._dispatch(events)
        return events

    def _handle_line(self, line: str, events: list[T]) -> None:
        if not line:
            self._dispatch(events)
        elif line.startswith(":"):
            return
        elif line.startswith("data:"):
            value = line[5:]
            if value.startswith(" "):
                value = value[1:]
            self._data_lines.append(value)

    def _dispatch(self, events: list[T]) -> None:
        if not self._data_lines:
            return
        payload = "\n".join(self._data_lines)
        self._data_lines = []
        try:
            decoded = json.loads(payload)
        except ValueError:
            logger.debug("Dropping malformed SSE payload: %.120s", payload)
            return
        event = self._parse(decoded)
        if event is not None:
            events.append(event)


class _Aborted(Exception):
    """Internal signal: the caller set the abort event mid-read."""


async def _next_chunk(chunks: AsyncIterator[str], abort: asyncio.Event | None) -> str | None:
    """Read the next chunk, racing it against *abort*.  None means end of body."""

    async def _read() -> str | None:
        try:
            return await chunks.__anext__()
        except StopAsyncIteration:
            return None

    if abort is None:
        return await _read()
    if abort.is_set():
        raise _Aborted

    read = asyncio.ensure_future(_read())
    aborted = asyncio.ensure_future(abort.wait())
    try:
        done, _ = await asyncio.wait({read, aborted}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        aborted.cancel()
        if not read.done():
            read.cancel()
    if read in done:
        return read.result()
    # The abandoned read may finish with any error; it no longer matters.
    with contextlib.suppress(asyncio.CancelledError, Exception):
        await read
    raise _Aborted


async def _deliver(on_event: EventCallback, event: Any) -> None:
    result = on_event(event)
    if inspect.isawaitable(result):
        await result


async def stream_events(
    url: str,
    *,
    route: str,
    parse: Callable[[Any], T | None],
    on_event: EventCallback,
    token: str | None = None,
    abort: asyncio.Event | None = None,
    on_open: Callable[[], None] | None = None,
    client: httpx.AsyncClient | None = None,
) -> None:
    """Consume an SSE endpoint until the body ends or *abort* is set.

    A caller-requested abort returns quietly.  Every other failure
    (non-2xx status, dropped connection, an exception raised by
    ``on_event``) propagates.  The response is released on every exit path.
    """
    if abort is not None and abort.is_set():
        return
    http = client or get_client()
    headers = {"Accept": "text/event-stream", **auth_headers(token)}

    try:
        async with http.stream("GET", url, headers=headers, timeout=STREAM_TIMEOUT) as response:
            if response.status_code >= 400:
                reason = await read_response_error(response)
                raise TransportError(
                    f"GET {route} failed ({response.status_code}): {reason}",
                    status_code=response.status_code,
                )
            if on_open is not None:
                on_open()

            decoder: SSEDecoder[T] = SSEDecoder(parse)
            chunks = response.aiter_text()
            while True:
                chunk = await _next_chunk(chunks, abort)
                if chunk is None:
                    break
                for event in decoder.feed(chunk):
                    await _deliver(on_event, event)
            for event in decoder.close():
                await _deliver(on_event, event)
    except _Aborted:
        logger.debug("Stream %s aborted by caller", route)
    except httpx.HTTPError as exc:
        if abort is not None and abort.is_set():
            return
        raise TransportError(f"GET {route} failed: {exc}") from exc
