"""Remote broker client -- operator side of the HTTP broker service.

Used by ``hitl-broker connect`` when the handshake directory lives on a
different host.  Mirrors the service's routes one function each.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any
from urllib.parse import quote

import httpx

from hitl_broker.clients.http import request_json, with_route
from hitl_broker.clients.payloads import as_number, as_record, as_string
from hitl_broker.clients.sse import EventCallback, stream_events

_LABEL = "broker url"


@dataclass(frozen=True)
class RemoteQuestion:
    key: str
    question: str
    timestamp: int | float
    pid: int | float | None = None
    age_seconds: int | float | None = None


@dataclass(frozen=True)
class BrokerEvent:
    """One ``/events`` frame: ``new_question`` or ``answered``."""

    type: str
    key: str
    timestamp: int | float | None = None


def _parse_remote_question(payload: Any) -> RemoteQuestion | None:
    row = as_record(payload)
    key = row.get("key")
    question = row.get("question")
    if not isinstance(key, str) or not isinstance(question, str):
        return None
    timestamp = as_number(row.get("timestamp"))
    return RemoteQuestion(
        key=key,
        question=question,
        timestamp=timestamp if timestamp is not None else int(time.time() * 1000),
        pid=as_number(row.get("pid")),
        age_seconds=as_number(row.get("ageSeconds")),
    )


def parse_broker_event(payload: Any) -> BrokerEvent | None:
    row = as_record(payload)
    event_type = as_string(row.get("type"))
    key = as_string(row.get("key"))
    if not event_type or not key:
        return None
    return BrokerEvent(type=event_type, key=key, timestamp=as_number(row.get("timestamp")))


async def list_remote_questions(
    base_url: str,
    token: str | None = None,
    *,
    client: httpx.AsyncClient | None = None,
) -> list[RemoteQuestion]:
    """Pending questions on the remote broker, oldest first."""
    payload = await request_json(base_url, "/questions", token=token, client=client, label=_LABEL)
    if not isinstance(payload, list):
        return []
    questions = [q for q in map(_parse_remote_question, payload) if q is not None]
    return sorted(questions, key=lambda q: q.timestamp)


async def get_remote_question_state(
    base_url: str,
    key: str,
    token: str | None = None,
    *,
    client: httpx.AsyncClient | None = None,
) -> dict[str, Any]:
    payload = await request_json(
        base_url, f"/questions/{quote(key, safe='')}", token=token, client=client, label=_LABEL,
    )
    return as_record(payload)


async def submit_remote_question(
    base_url: str,
    key: str,
    question: str,
    token: str | None = None,
    *,
    timestamp: int | None = None,
    pid: int | None = None,
    client: httpx.AsyncClient | None = None,
) -> dict[str, Any]:
    body: dict[str, Any] = {"key": key, "question": question}
    if timestamp is not None:
        body["timestamp"] = timestamp
    if pid is not None:
        body["pid"] = pid
    payload = await request_json(
        base_url, "/questions", method="POST", token=token, body=body, client=client, label=_LABEL,
    )
    return as_record(payload)


async def answer_remote_question(
    base_url: str,
    key: str,
    response_text: str,
    token: str | None = None,
    *,
    client: httpx.AsyncClient | None = None,
) -> None:
    await request_json(
        base_url,
        "/answer",
        method="POST",
        token=token,
        body={"key": key, "response": response_text},
        client=client,
        label=_LABEL,
    )


async def cancel_remote_question(
    base_url: str,
    key: str,
    token: str | None = None,
    *,
    client: httpx.AsyncClient | None = None,
) -> None:
    await request_json(
        base_url, "/cancel", method="POST", token=token, body={"key": key}, client=client, label=_LABEL,
    )


async def stream_broker_events(
    base_url: str,
    on_event: EventCallback,
    *,
    token: str | None = None,
    abort: asyncio.Event | None = None,
    on_open: Callable[[], None] | None = None,
    client: httpx.AsyncClient | None = None,
) -> None:
    """Follow the broker's ``/events`` stream until it ends or *abort* is set."""
    await stream_events(
        with_route(base_url, "/events", label=_LABEL),
        route="/events",
        parse=parse_broker_event,
        on_event=on_event,
        token=token,
        abort=abort,
        on_open=on_open,
        client=client,
    )
