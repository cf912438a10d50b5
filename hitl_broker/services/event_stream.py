"""Broker SSE push -- turns handshake-directory snapshots into change events.

Each ``GET /events`` connection owns one :class:`BrokerEventStream`.  On
open it replays every pending question as ``new_question``; afterwards two
tasks run for the lifetime of the connection:

* the poll task re-snapshots the directory every ``poll_interval`` seconds
  and diffs it against the previous snapshot;
* the heartbeat task writes a comment line every ``heartbeat_interval``
  seconds so that idle connections survive proxies.

Both tasks feed one queue that the response generator drains.  When the
connection ends, the generator's ``finally`` cancels both tasks.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator

from hitl_broker.config import BrokerOptions
from hitl_broker.store import BrokerStateRow, list_broker_state, list_questions

logger = logging.getLogger(__name__)

POLL_INTERVAL = 1.0
HEARTBEAT_INTERVAL = 15.0
HEARTBEAT_FRAME = ": ping\n\n"


def format_event(event: dict) -> str:
    return f"data: {json.dumps(event)}\n\n"


def diff_broker_state(
    previous: dict[str, BrokerStateRow],
    current: dict[str, BrokerStateRow],
) -> list[dict]:
    """Derive change events between two snapshots.

    A re-submitted question (newer marker mtime) is reported as
    ``new_question`` just like a brand-new key; operator UIs rely on that.
    Keys that disappeared (cancelled) produce nothing.
    """
    events: list[dict] = []
    for safe_key, row in current.items():
        prev = previous.get(safe_key)
        if prev is None:
            events.append({"type": "new_question", "key": row.key, "timestamp": row.timestamp})
            if row.answered:
                events.append({"type": "answered", "key": row.key, "timestamp": row.timestamp})
            continue
        if not prev.answered and row.answered:
            events.append({"type": "answered", "key": row.key, "timestamp": row.timestamp})
        if row.question_mtime_ms > prev.question_mtime_ms:
            events.append({"type": "new_question", "key": row.key, "timestamp": row.timestamp})
    return events


class BrokerEventStream:
    """One SSE connection: ``OPEN -> (tick)* -> CLOSED``."""

    def __init__(
        self,
        options: BrokerOptions,
        *,
        poll_interval: float = POLL_INTERVAL,
        heartbeat_interval: float = HEARTBEAT_INTERVAL,
    ) -> None:
        self._options = options
        self._poll_interval = poll_interval
        self._heartbeat_interval = heartbeat_interval
        self._queue: asyncio.Queue[str] = asyncio.Queue()
        self._tasks: list[asyncio.Task] = []
        self._previous: dict[str, BrokerStateRow] = {}

    @property
    def tasks(self) -> list[asyncio.Task]:
        return list(self._tasks)

    async def open(self) -> list[str]:
        """Capture the baseline snapshot and return the replay frames for pending questions."""
        self._previous = await list_broker_state(self._options)
        pending = [q for q in await list_questions(self._options) if not q.answered]
        pending.sort(key=lambda q: q.timestamp)
        return [
            format_event({"type": "new_question", "key": q.key, "timestamp": q.timestamp})
            for q in pending
        ]

    def start(self) -> None:
        if self._tasks:
            return
        self._tasks = [
            asyncio.create_task(self._poll_loop(), name="hitl-events-poll"),
            asyncio.create_task(self._heartbeat_loop(), name="hitl-events-heartbeat"),
        ]

    def close(self) -> None:
        """Cancel both per-connection tasks.  Safe to call more than once."""
        for task in self._tasks:
            task.cancel()

    async def frames(self) -> AsyncIterator[str]:
        """Response body generator for ``GET /events``."""
        try:
            for frame in await self.open():
                yield frame
            self.start()
            while True:
                yield await self._queue.get()
        finally:
            self.close()
            logger.debug("Event stream closed")

    async def tick(self) -> None:
        """Run one snapshot diff and enqueue the resulting frames.

        A failed snapshot is logged and swallowed; the loop keeps going.
        """
        try:
            current = await list_broker_state(self._options)
        except Exception:
            logger.warning("Event stream snapshot failed", exc_info=True)
            return
        try:
            for event in diff_broker_state(self._previous, current):
                self._queue.put_nowait(format_event(event))
        except Exception:
            logger.warning("Event stream diff failed", exc_info=True)
        finally:
            self._previous = current

    async def _poll_loop(self) -> None:
        while True:
            await asyncio.sleep(self._poll_interval)
            await self.tick()

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self._heartbeat_interval)
            self._queue.put_nowait(HEARTBEAT_FRAME)
