"""Tests for the broker's SSE change detection."""

import asyncio
import json
from unittest.mock import AsyncMock, patch

import pytest

from hitl_broker.services.event_stream import (
    HEARTBEAT_FRAME,
    BrokerEventStream,
    diff_broker_state,
    format_event,
)
from hitl_broker.store import BrokerStateRow, answer_question, submit_question

TS = 1708608000000


def _row(key="k", answered=False, mtime=1000, ts=TS):
    return BrokerStateRow(key=key, answered=answered, question_mtime_ms=mtime, timestamp=ts)


def _decode(frame: str) -> dict:
    assert frame.startswith("data: ") and frame.endswith("\n\n")
    return json.loads(frame[len("data: "):])


class TestDiff:
    def test_new_key(self):
        events = diff_broker_state({}, {"k": _row()})
        assert events == [{"type": "new_question", "key": "k", "timestamp": TS}]

    def test_new_key_already_answered(self):
        events = diff_broker_state({}, {"k": _row(answered=True)})
        assert [e["type"] for e in events] == ["new_question", "answered"]

    def test_answered_transition(self):
        events = diff_broker_state({"k": _row()}, {"k": _row(answered=True)})
        assert [e["type"] for e in events] == ["answered"]

    def test_resubmitted_question_reported_as_new(self):
        events = diff_broker_state({"k": _row(mtime=1000)}, {"k": _row(mtime=2000, ts=TS + 1)})
        assert events == [{"type": "new_question", "key": "k", "timestamp": TS + 1}]

    def test_unchanged_and_removed_are_silent(self):
        assert diff_broker_state({"k": _row()}, {"k": _row()}) == []
        assert diff_broker_state({"k": _row()}, {}) == []

    def test_answered_stays_answered(self):
        assert diff_broker_state({"k": _row(answered=True)}, {"k": _row(answered=True)}) == []


def test_format_event():
    frame = format_event({"type": "answered", "key": "k"})
    assert frame == 'data: {"type": "answered", "key": "k"}\n\n'


class TestBrokerEventStream:
    @pytest.mark.asyncio
    async def test_open_replays_pending_questions(self, broker_options):
        await submit_question("late", "b", broker_options, timestamp=TS + 10)
        await submit_question("early", "a", broker_options, timestamp=TS)
        await submit_question("done", "c", broker_options, timestamp=TS)
        await answer_question("done", "x", broker_options)

        frames = await BrokerEventStream(broker_options).open()

        assert [_decode(f)["key"] for f in frames] == ["early", "late"]
        assert all(_decode(f)["type"] == "new_question" for f in frames)

    @pytest.mark.asyncio
    async def test_tick_emits_changes(self, broker_options):
        stream = BrokerEventStream(broker_options)
        await stream.open()

        await submit_question("k", "Q?", broker_options, timestamp=TS)
        await stream.tick()
        await answer_question("k", "yes", broker_options)
        await stream.tick()
        await stream.tick()

        frames = []
        while not stream._queue.empty():
            frames.append(_decode(stream._queue.get_nowait()))
        assert frames == [
            {"type": "new_question", "key": "k", "timestamp": TS},
            {"type": "answered", "key": "k", "timestamp": TS},
        ]

    @pytest.mark.asyncio
    async def test_tick_swallows_snapshot_failure(self, broker_options):
        stream = BrokerEventStream(broker_options)
        await stream.open()
        with patch(
            "hitl_broker.services.event_stream.list_broker_state",
            new=AsyncMock(side_effect=OSError("disk gone")),
        ):
            await stream.tick()
        assert stream._queue.empty()

        await submit_question("k", "Q?", broker_options, timestamp=TS)
        await stream.tick()
        assert _decode(stream._queue.get_nowait())["type"] == "new_question"

    @pytest.mark.asyncio
    async def test_frames_streams_changes_and_heartbeats(self, broker_options):
        await submit_question("first", "Q?", broker_options, timestamp=TS)
        stream = BrokerEventStream(broker_options, poll_interval=0.01, heartbeat_interval=0.05)
        frames = stream.frames()

        assert _decode(await frames.__anext__())["key"] == "first"

        async def _submit_later():
            await asyncio.sleep(0.03)
            await submit_question("second", "Q?", broker_options, timestamp=TS + 1)

        writer = asyncio.create_task(_submit_later())
        seen = []
        for _ in range(20):
            frame = await asyncio.wait_for(frames.__anext__(), timeout=2)
            seen.append(frame)
            if HEARTBEAT_FRAME in seen and any(f != HEARTBEAT_FRAME for f in seen):
                break
        await writer

        data = [_decode(f) for f in seen if f != HEARTBEAT_FRAME]
        assert {"type": "new_question", "key": "second", "timestamp": TS + 1} in data
        assert HEARTBEAT_FRAME in seen

        tasks = stream.tasks
        await frames.aclose()
        await asyncio.gather(*tasks, return_exceptions=True)
        assert all(t.cancelled() for t in tasks)

    @pytest.mark.asyncio
    async def test_close_cancels_tasks(self, broker_options):
        stream = BrokerEventStream(broker_options, poll_interval=10, heartbeat_interval=10)
        await stream.open()
        stream.start()
        tasks = stream.tasks
        assert len(tasks) == 2

        stream.close()
        await asyncio.gather(*tasks, return_exceptions=True)
        assert all(t.cancelled() for t in tasks)
