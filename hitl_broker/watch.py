"""Local watch loop -- answer questions straight from the handshake directory.

Each pending question is shown at most once per ``(safeKey, timestamp)``
pair, so a re-submitted question (new timestamp) is shown again.  Errors
inside a poll are written to the output as a timestamped line and the
loop carries on at the next tick.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import sys
from collections.abc import Awaitable, Callable
from typing import TextIO

from hitl_broker.audit_log import append_audit_line
from hitl_broker.config import BrokerOptions
from hitl_broker.prompt import prompt_line
from hitl_broker.render import age_label, format_prompt, iso_now
from hitl_broker.store import answer_question, list_questions, resolve_dir

logger = logging.getLogger(__name__)

MIN_POLL_MS = 250

Prompt = Callable[[str], Awaitable[str]]


async def sleep_or_stop(seconds: float, stop: asyncio.Event | None) -> None:
    """Sleep for *seconds*, returning early when *stop* is set."""
    if stop is None:
        await asyncio.sleep(seconds)
        return
    with contextlib.suppress(asyncio.TimeoutError):
        await asyncio.wait_for(stop.wait(), timeout=seconds)


class Watcher:
    """Poll the handshake directory and answer pending questions one by one."""

    def __init__(
        self,
        options: BrokerOptions,
        *,
        timeout_seconds: int | None = None,
        auto_approve: bool = False,
        log_file: str | None = None,
        poll_ms: int = 1000,
        output: TextIO | None = None,
        prompt: Prompt | None = None,
    ) -> None:
        self.options = options
        self.timeout_seconds = timeout_seconds
        self.auto_approve = auto_approve
        self.log_file = log_file
        self.poll_interval = max(MIN_POLL_MS, poll_ms) / 1000
        self.output = output or sys.stdout
        self._prompt = prompt or (lambda text: prompt_line(text, output=self.output))
        self.seen: set[str] = set()

    def _write(self, text: str) -> None:
        self.output.write(text)
        self.output.flush()

    async def poll_once(self) -> int:
        """Handle every unseen pending question once.  Returns how many were answered."""
        pending = [q for q in await list_questions(self.options) if not q.answered]
        pending.sort(key=lambda q: q.timestamp)
        answered = 0

        for question in pending:
            marker = f"{question.safe_key}:{question.timestamp}"
            if marker in self.seen:
                continue

            timeout = self.timeout_seconds
            if timeout is not None and timeout >= 0 and question.age_seconds > timeout:
                self.seen.add(marker)
                self._write(
                    f"[{iso_now()}] skipped {question.key} "
                    f"(age {age_label(question.age_seconds)} exceeds timeout {timeout}s)\n"
                )
                continue

            self._write(f"\n{format_prompt(question.key, question.question)}\n")
            self._write(f"Age: {age_label(question.age_seconds)}\n")

            if self.auto_approve:
                response = ""
                self._write("Auto-approve enabled: submitting empty response.\n")
            else:
                response = await self._prompt("Answer (Enter to confirm): ")

            await answer_question(question.safe_key, response, self.options)
            self.seen.add(marker)
            answered += 1

            now = iso_now()
            self._write(f"[{now}] answered {question.key}\n")
            if self.log_file:
                await append_audit_line(
                    self.log_file,
                    {
                        "type": "answered",
                        "key": question.key,
                        "timestamp": now,
                        "details": {
                            "safeKey": question.safe_key,
                            "responseLength": len(response),
                            "ageSeconds": question.age_seconds,
                        },
                    },
                )
        return answered

    async def run(self, stop: asyncio.Event | None = None) -> None:
        """Loop until *stop* is set.  Closed input ends the loop via :class:`EOFError`."""
        self._write(f"Watching HITL directory: {resolve_dir(self.options)}\n")
        while stop is None or not stop.is_set():
            try:
                await self.poll_once()
            except EOFError:
                raise
            except Exception as exc:
                logger.debug("Watch poll failed", exc_info=True)
                self._write(f"[{iso_now()}] watch loop error: {exc}\n")
            await sleep_or_stop(self.poll_interval, stop)
