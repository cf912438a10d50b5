"""Runtime chat -- an interactive operator session attached to one runtime run.

Events reach the session over two channels: a background SSE task and
explicit polls of the run's event list.  Both go through one
:class:`EventLedger`, so an event is printed once no matter which channel
delivered it first.

While the stream is connected the prompt loop only paces itself; whenever
it is not (never opened, or erroring and reconnecting) the loop polls the
event list and run status instead.  The session ends on ``/exit``, closed
input, a terminal event kind seen on either channel, or a terminal run
status, followed by one final flush.
"""

from __future__ import annotations

import asyncio
import logging
import sys
import time
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TextIO

import httpx

from hitl_broker.clients.http import normalize_base_url
from hitl_broker.clients.runtime_client import (
    DEFAULT_EVENTS_LIMIT,
    MAX_EVENTS_LIMIT,
    RuntimeRunEvent,
    get_runtime_run,
    is_terminal_run_event_kind,
    is_terminal_run_status,
    list_runtime_agents,
    list_runtime_run_events,
    start_runtime_api_run,
    stream_runtime_events,
    submit_runtime_hitl_input,
)
from hitl_broker.errors import ConfigurationError, TransportError
from hitl_broker.prompt import prompt_line
from hitl_broker.render import iso_now, render_runtime_event
from hitl_broker.watch import sleep_or_stop

logger = logging.getLogger(__name__)

MIN_POLL_MS = 300
MAX_POLL_ATTEMPTS = 6
STREAM_PACE_MS = 900

Prompt = Callable[[str], Awaitable[str]]
Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RuntimeChatOptions:
    runtime_url: str
    service_id: str
    agent: str | None = None
    run_id: str | None = None
    token: str | None = None
    poll_ms: int = 1200
    events_limit: int = DEFAULT_EVENTS_LIMIT
    use_stream: bool = True

    @property
    def poll_interval(self) -> float:
        return max(MIN_POLL_MS, self.poll_ms) / 1000

    @property
    def safe_events_limit(self) -> int:
        if isinstance(self.events_limit, int) and self.events_limit > 0:
            return min(self.events_limit, MAX_EVENTS_LIMIT)
        return DEFAULT_EVENTS_LIMIT


def new_run_id() -> str:
    """``run_cli_<epoch ms>_<8 hex>``."""
    return f"run_cli_{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}"


def event_marker(event: RuntimeRunEvent) -> str:
    """Dedup key: ``seq:N`` when the runtime numbers events, else ``at|kind|message``."""
    if event.seq is not None:
        return f"seq:{event.seq}"
    return f"{event.at}|{event.kind}|{event.message}"


class EventLedger:
    """Events already rendered for one run."""

    def __init__(self, run_id: str) -> None:
        self.run_id = run_id
        self._seen: set[str] = set()

    def __len__(self) -> int:
        return len(self._seen)

    def accept(self, event: RuntimeRunEvent) -> bool:
        """True exactly once per logical event of this run."""
        if event.run_id != self.run_id:
            return False
        marker = event_marker(event)
        if marker in self._seen:
            return False
        self._seen.add(marker)
        return True


class RuntimeChatSession:
    """One ``runtime-chat`` session.  Call :meth:`run`."""

    def __init__(
        self,
        options: RuntimeChatOptions,
        *,
        output: TextIO | None = None,
        prompt: Prompt | None = None,
        sleep: Sleep = asyncio.sleep,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        normalize_base_url(options.runtime_url, label="runtime url")
        if not options.service_id.strip():
            raise ConfigurationError("service id is required")
        self.options = options
        self.output = output or sys.stdout
        self._prompt = prompt or (lambda text: prompt_line(text, output=self.output))
        self._sleep = sleep
        self._client = client

        self.run_id = (options.run_id or "").strip() or new_run_id()
        self.attached = bool((options.run_id or "").strip())
        self.agent = (options.agent or "").strip()
        self.ledger = EventLedger(self.run_id)
        self.stream_healthy = False
        self.terminal_kind: str | None = None
        self._abort = asyncio.Event()
        self._stream_task: asyncio.Task | None = None

    def _write(self, text: str) -> None:
        self.output.write(text)
        self.output.flush()

    @property
    def needs_polling(self) -> bool:
        return not self.options.use_stream or not self.stream_healthy

    # -- setup ---------------------------------------------------------

    async def resolve_agent(self) -> str:
        """Look the service up in the registry and settle the agent id."""
        registry = await list_runtime_agents(
            self.options.runtime_url, self.options.token, client=self._client,
        )
        service_id = self.options.service_id.strip()
        selected = next((item for item in registry if item.service_id == service_id), None)
        if selected is None:
            known = ", ".join(item.service_id for item in registry)
            message = f"service not found in runtime registry: {service_id}"
            raise ConfigurationError(f"{message}. Known: {known}" if known else message)
        if not self.agent:
            self.agent = selected.agent.agent_id or selected.agent.name or "unknown-agent"
        return self.agent

    async def start(self) -> None:
        """Resolve the agent, then create the run unless attaching to an existing one."""
        await self.resolve_agent()
        if self.attached:
            self._write(f"Attached to run: {self.run_id}\n")
        else:
            await start_runtime_api_run(
                self.options.runtime_url,
                service_id=self.options.service_id.strip(),
                run_id=self.run_id,
                agent=self.agent,
                token=self.options.token,
                request_id=self.run_id,
                client=self._client,
            )
            self._write(f"Started run: {self.run_id}\n")
        self._write(f"Runtime: {self.options.runtime_url}\n")
        self._write(f"Service: {self.options.service_id}\n")
        self._write(f"Agent: {self.agent}\n")
        self._write("Commands: /status, /refresh, /exit\n")

    # -- event intake ----------------------------------------------------

    def record_event(self, event: RuntimeRunEvent) -> bool:
        """Render *event* if it is new for this run.  Returns True when rendered."""
        if not self.ledger.accept(event):
            return False
        self._write(f"{render_runtime_event(event, self.agent)}\n")
        if is_terminal_run_event_kind(event.kind):
            self.terminal_kind = event.kind
        return True

    async def flush_events(self) -> int:
        events = await list_runtime_run_events(
            self.options.runtime_url,
            self.run_id,
            self.options.token,
            self.options.safe_events_limit,
            client=self._client,
        )
        return sum(1 for event in events if self.record_event(event))

    async def read_status(self) -> str | None:
        run = await get_runtime_run(
            self.options.runtime_url, self.run_id, self.options.token, client=self._client,
        )
        return run.status if run else None

    # -- stream task -----------------------------------------------------

    def _on_open(self) -> None:
        self.stream_healthy = True
        logger.debug("Runtime stream open run_id=%s", self.run_id)

    async def _stream_loop(self) -> None:
        """Keep the SSE connection up until aborted, reconnecting after each failure."""
        while not self._abort.is_set():
            try:
                await stream_runtime_events(
                    self.options.runtime_url,
                    self.record_event,
                    token=self.options.token,
                    abort=self._abort,
                    on_open=self._on_open,
                    client=self._client,
                )
            except Exception as exc:
                if self._abort.is_set():
                    break
                self.stream_healthy = False
                self._write(f"[{iso_now()}] stream error: {exc}. Falling back to polling.\n")
            else:
                if self._abort.is_set():
                    break
                self.stream_healthy = False
                logger.info("Runtime stream ended; reconnecting run_id=%s", self.run_id)
            await sleep_or_stop(self.options.poll_interval, self._abort)

    def start_stream(self) -> None:
        if self.options.use_stream and self._stream_task is None:
            self._stream_task = asyncio.create_task(self._stream_loop(), name="runtime-chat-stream")

    async def stop_stream(self) -> None:
        self._abort.set()
        if self._stream_task is not None:
            await self._stream_task
            self._stream_task = None

    # -- interactive loop --------------------------------------------------

    async def _poll_after_input(self) -> None:
        """Poll until a terminal status, a drained cycle, or the attempt cap."""
        had_new_events = False
        for attempt in range(MAX_POLL_ATTEMPTS):
            if attempt > 0:
                await self._sleep(self.options.poll_interval)
            emitted = await self.flush_events()
            if emitted > 0:
                had_new_events = True
            status = await self.read_status()
            if status and is_terminal_run_status(status):
                break
            if had_new_events and emitted == 0:
                break

    async def _finished(self) -> bool:
        """Check both termination sources; performs the final flush when done."""
        if self.terminal_kind:
            self._write(f"Run {self.run_id} finished ({self.terminal_kind}). Exiting chat.\n")
            await self.flush_events()
            return True
        status = await self.read_status()
        if status and is_terminal_run_status(status):
            self._write(f"Run {self.run_id} is terminal ({status}). Exiting chat.\n")
            await self.flush_events()
            return True
        return False

    async def _step(self) -> bool:
        """One prompt cycle.  Returns False when the session should end."""
        if await self._finished():
            return False

        try:
            text = (await self._prompt("you> ")).strip()
        except EOFError:
            self._write("\nClosing runtime chat.\n")
            return False

        if not text:
            if self.needs_polling:
                await self.flush_events()
            return True
        if text in ("/exit", "/quit"):
            self._write("Closing runtime chat.\n")
            return False
        if text == "/refresh":
            await self.flush_events()
            return True
        if text == "/status":
            status = await self.read_status()
            self._write(f"Run status: {status or 'unknown'}\n")
            return True

        await submit_runtime_hitl_input(
            self.options.runtime_url,
            run_id=self.run_id,
            message=text,
            token=self.options.token,
            service_id=self.options.service_id.strip(),
            agent=self.agent,
            client=self._client,
        )
        if self.needs_polling:
            await self._poll_after_input()
        else:
            await self._sleep(min(STREAM_PACE_MS / 1000, self.options.poll_interval))
        return True

    async def run(self) -> None:
        await self.start()
        await self.flush_events()
        self.start_stream()
        try:
            while True:
                try:
                    if not await self._step():
                        break
                except TransportError as exc:
                    logger.debug("Runtime chat step failed", exc_info=True)
                    self._write(f"[{iso_now()}] runtime chat error: {exc}\n")
                    await self._sleep(self.options.poll_interval)
        finally:
            await self.stop_stream()
