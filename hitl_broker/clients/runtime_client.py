"""Runtime client -- agent registry, runs, run events and HITL input.

Talks to an external agent runtime's ``/api/agents/*`` surface and its
``/api/events`` SSE feed.  Every response is treated as untrusted: rows are
checked field by field and converted into the dataclasses below, and rows
missing a required identifier are skipped instead of failing the call.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import quote

import httpx

from hitl_broker.clients.http import request_json, with_route
from hitl_broker.clients.payloads import as_items, as_number, as_record, as_string, as_string_list
from hitl_broker.clients.sse import EventCallback, stream_events
from hitl_broker.errors import ConfigurationError

logger = logging.getLogger(__name__)

_LABEL = "runtime url"
_EPOCH_ISO = "1970-01-01T00:00:00.000Z"

DEFAULT_RUNS_LIMIT = 100
MAX_RUNS_LIMIT = 2000
DEFAULT_EVENTS_LIMIT = 200
MAX_EVENTS_LIMIT = 5000

TERMINAL_RUN_STATUSES = frozenset({"completed", "failed", "cancelled"})
TERMINAL_EVENT_KINDS = frozenset({
    "agent.run_completed",
    "agent.run_failed",
    "agent.run_cancelled",
})

DEFAULT_TRIGGER_ROUTE = "/cli/runtime-chat"
DEFAULT_TRIGGER_METHOD = "CLI"
DEFAULT_CALLER = "hitl-broker-cli"


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RuntimeAgentProfile:
    agent_id: str
    name: str
    role: str | None = None
    objective: str | None = None
    triggers: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class RuntimeAgentRegistryItem:
    service_id: str
    lifecycle: str
    health: str
    agent: RuntimeAgentProfile
    display_name: str | None = None
    origin_type: str | None = None


@dataclass(frozen=True)
class RuntimeRunSummary:
    run_id: str
    agent: str
    status: str
    updated_at: str
    service_id: str | None = None
    trigger: str | None = None
    last_event_kind: str | None = None
    last_event_message: str | None = None


@dataclass(frozen=True)
class RuntimeRunEvent:
    """One run event.  ``seq`` orders events when the runtime provides it."""

    at: str
    kind: str
    level: str
    message: str
    data: dict[str, Any] = field(default_factory=dict)
    seq: int | float | None = None
    service_id: str | None = None

    @property
    def run_id(self) -> str | None:
        return as_string(self.data.get("runId")) or as_string(self.data.get("run_id"))


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def parse_runtime_run_event(payload: Any) -> RuntimeRunEvent | None:
    """Validate one event payload.  Requires a non-empty ``kind``."""
    row = as_record(payload)
    kind = as_string(row.get("kind"))
    if not kind:
        return None
    return RuntimeRunEvent(
        seq=as_number(row.get("seq")),
        at=as_string(row.get("at")) or _EPOCH_ISO,
        kind=kind,
        level=as_string(row.get("level")) or "info",
        message=as_string(row.get("message")) or kind,
        service_id=as_string(row.get("serviceId")),
        data=as_record(row.get("data")),
    )


def _parse_registry_item(payload: Any) -> RuntimeAgentRegistryItem | None:
    row = as_record(payload)
    service_id = as_string(row.get("serviceId"))
    if not service_id:
        return None
    agent_row = as_record(row.get("agent"))
    return RuntimeAgentRegistryItem(
        service_id=service_id,
        display_name=as_string(row.get("displayName")),
        lifecycle=as_string(row.get("lifecycle")) or "UNKNOWN",
        health=as_string(row.get("health")) or "UNKNOWN",
        origin_type=as_string(row.get("originType")),
        agent=RuntimeAgentProfile(
            agent_id=as_string(agent_row.get("agentId")) or "",
            name=as_string(agent_row.get("name")) or "",
            role=as_string(agent_row.get("role")),
            objective=as_string(agent_row.get("objective")),
            triggers=as_string_list(agent_row.get("triggers")),
        ),
    )


def _parse_run_summary(payload: Any) -> RuntimeRunSummary | None:
    row = as_record(payload)
    run_id = as_string(row.get("runId"))
    if not run_id:
        return None
    return RuntimeRunSummary(
        run_id=run_id,
        agent=as_string(row.get("agent")) or "unknown",
        service_id=as_string(row.get("serviceId")),
        status=as_string(row.get("status")) or "unknown",
        trigger=as_string(row.get("trigger")),
        updated_at=as_string(row.get("updatedAt")) or _EPOCH_ISO,
        last_event_kind=as_string(row.get("lastEventKind")),
        last_event_message=as_string(row.get("lastEventMessage")),
    )


def _clamp_limit(limit: Any, default: int, maximum: int) -> int:
    if isinstance(limit, bool) or not isinstance(limit, int) or limit <= 0:
        return default
    return min(limit, maximum)


def _require(value: str | None, message: str) -> str:
    trimmed = (value or "").strip()
    if not trimmed:
        raise ConfigurationError(message)
    return trimmed


def is_terminal_run_status(status: str) -> bool:
    return status.strip().lower() in TERMINAL_RUN_STATUSES


def is_terminal_run_event_kind(kind: str) -> bool:
    return kind in TERMINAL_EVENT_KINDS


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


async def list_runtime_agents(
    base_url: str,
    token: str | None = None,
    *,
    client: httpx.AsyncClient | None = None,
) -> list[RuntimeAgentRegistryItem]:
    """List registered agent services, sorted by service id."""
    payload = await request_json(
        base_url, "/api/agents/registry", token=token, client=client, label=_LABEL,
    )
    items = [item for item in map(_parse_registry_item, as_items(payload)) if item is not None]
    return sorted(items, key=lambda item: item.service_id)


async def list_runtime_runs(
    base_url: str,
    token: str | None = None,
    limit: int = DEFAULT_RUNS_LIMIT,
    *,
    client: httpx.AsyncClient | None = None,
) -> list[RuntimeRunSummary]:
    safe_limit = _clamp_limit(limit, DEFAULT_RUNS_LIMIT, MAX_RUNS_LIMIT)
    payload = await request_json(
        base_url, f"/api/agents/runs?limit={safe_limit}", token=token, client=client, label=_LABEL,
    )
    return [run for run in map(_parse_run_summary, as_items(payload)) if run is not None]


async def get_runtime_run(
    base_url: str,
    run_id: str,
    token: str | None = None,
    *,
    client: httpx.AsyncClient | None = None,
) -> RuntimeRunSummary | None:
    """Find one run by id in the most recent page of runs."""
    target = run_id.strip()
    if not target:
        return None
    for run in await list_runtime_runs(base_url, token, MAX_RUNS_LIMIT, client=client):
        if run.run_id == target:
            return run
    return None


async def list_runtime_run_events(
    base_url: str,
    run_id: str,
    token: str | None = None,
    limit: int = DEFAULT_EVENTS_LIMIT,
    *,
    client: httpx.AsyncClient | None = None,
) -> list[RuntimeRunEvent]:
    safe_run_id = _require(run_id, "run id is required")
    safe_limit = _clamp_limit(limit, DEFAULT_EVENTS_LIMIT, MAX_EVENTS_LIMIT)
    payload = await request_json(
        base_url,
        f"/api/agents/runs/{quote(safe_run_id, safe='')}/events?limit={safe_limit}",
        token=token,
        client=client,
        label=_LABEL,
    )
    return [event for event in map(parse_runtime_run_event, as_items(payload)) if event is not None]


# ---------------------------------------------------------------------------
# Streams
# ---------------------------------------------------------------------------


async def stream_runtime_events(
    base_url: str,
    on_event: EventCallback,
    *,
    token: str | None = None,
    abort: asyncio.Event | None = None,
    on_open: Callable[[], None] | None = None,
    client: httpx.AsyncClient | None = None,
) -> None:
    """Consume the runtime-wide ``/api/events`` feed until it ends or *abort* is set."""
    await stream_events(
        with_route(base_url, "/api/events", label=_LABEL),
        route="/api/events",
        parse=parse_runtime_run_event,
        on_event=on_event,
        token=token,
        abort=abort,
        on_open=on_open,
        client=client,
    )


async def stream_runtime_run_events(
    base_url: str,
    run_id: str,
    on_event: EventCallback,
    *,
    token: str | None = None,
    limit: int = DEFAULT_EVENTS_LIMIT,
    abort: asyncio.Event | None = None,
    on_open: Callable[[], None] | None = None,
    client: httpx.AsyncClient | None = None,
) -> None:
    """Consume the run-scoped event stream for *run_id*."""
    safe_run_id = _require(run_id, "run id is required")
    safe_limit = _clamp_limit(limit, DEFAULT_EVENTS_LIMIT, MAX_EVENTS_LIMIT)
    route = f"/api/agents/runs/{quote(safe_run_id, safe='')}/events/stream?limit={safe_limit}"
    await stream_events(
        with_route(base_url, route, label=_LABEL),
        route=route,
        parse=parse_runtime_run_event,
        on_event=on_event,
        token=token,
        abort=abort,
        on_open=on_open,
        client=client,
    )


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


async def post_runtime_agent_event(
    base_url: str,
    kind: str,
    token: str | None = None,
    *,
    level: str = "info",
    message: str | None = None,
    service_id: str | None = None,
    run_id: str | None = None,
    step_id: str | None = None,
    agent: str | None = None,
    data: dict[str, Any] | None = None,
    client: httpx.AsyncClient | None = None,
) -> None:
    """Publish an ``agent.*`` lifecycle event to the runtime."""
    normalized_kind = kind.strip()
    if not normalized_kind.startswith("agent."):
        raise ConfigurationError(f"invalid event kind: {kind}")

    body: dict[str, Any] = {"kind": normalized_kind, "level": level}
    optional = {
        "message": message,
        "service_id": service_id,
        "run_id": run_id,
        "step_id": step_id,
        "agent": agent,
    }
    body.update({name: value for name, value in optional.items() if value})
    if data is not None:
        body["data"] = data

    await request_json(
        base_url,
        "/api/agents/events",
        method="POST",
        token=token,
        body=body,
        client=client,
        label=_LABEL,
    )


async def start_runtime_api_run(
    base_url: str,
    *,
    service_id: str,
    run_id: str,
    agent: str,
    token: str | None = None,
    route: str | None = None,
    method: str | None = None,
    request_id: str | None = None,
    caller: str | None = None,
    client: httpx.AsyncClient | None = None,
) -> None:
    """Bootstrap a run: post ``agent.run_created`` then ``agent.run_started``.

    Both events carry a trigger context ``{route, method, requestId, caller}``
    whose blank fields fall back to the CLI defaults.
    """
    run_id = _require(run_id, "run id is required")
    service_id = _require(service_id, "service id is required")
    agent = _require(agent, "agent id is required")

    trigger_context = {
        "route": (route or "").strip() or DEFAULT_TRIGGER_ROUTE,
        "method": (method or "").strip() or DEFAULT_TRIGGER_METHOD,
        "requestId": (request_id or "").strip() or run_id,
        "caller": (caller or "").strip() or DEFAULT_CALLER,
    }

    await post_runtime_agent_event(
        base_url,
        "agent.run_created",
        token,
        service_id=service_id,
        run_id=run_id,
        agent=agent,
        message=f"agent.run_created ({run_id})",
        data={
            "runId": run_id,
            "serviceId": service_id,
            "agent": agent,
            "trigger": "api",
            "triggerContext": trigger_context,
            **trigger_context,
        },
        client=client,
    )
    await post_runtime_agent_event(
        base_url,
        "agent.run_started",
        token,
        service_id=service_id,
        run_id=run_id,
        agent=agent,
        message=f"agent.run_started ({run_id})",
        data={
            "runId": run_id,
            "serviceId": service_id,
            "agent": agent,
            "trigger": "api",
            "triggerContext": trigger_context,
        },
        client=client,
    )
    logger.info("Runtime run bootstrapped run_id=%s service=%s agent=%s", run_id, service_id, agent)


async def submit_runtime_hitl_input(
    base_url: str,
    *,
    run_id: str,
    message: str,
    token: str | None = None,
    service_id: str | None = None,
    agent: str | None = None,
    kind: str | None = None,
    client: httpx.AsyncClient | None = None,
) -> dict[str, Any]:
    """Send operator input to a run.  Returns the runtime's acknowledgement object."""
    safe_run_id = _require(run_id, "run id is required")
    safe_message = _require(message, "message is required")
    body: dict[str, Any] = {"message": safe_message}
    if service_id:
        body["service_id"] = service_id
    if agent:
        body["agent"] = agent
    if kind:
        body["kind"] = kind
    payload = await request_json(
        base_url,
        f"/api/agents/runs/{quote(safe_run_id, safe='')}/hitl",
        method="POST",
        token=token,
        body=body,
        client=client,
        label=_LABEL,
    )
    return as_record(payload)
