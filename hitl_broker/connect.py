"""Remote connect loop -- answer questions held by a broker on another host."""

from __future__ import annotations

import asyncio
import logging
import sys
from typing import TextIO

import httpx

from hitl_broker.clients.broker_client import answer_remote_question, list_remote_questions
from hitl_broker.clients.http import normalize_base_url
from hitl_broker.prompt import prompt_line
from hitl_broker.render import age_label, format_prompt, iso_now
from hitl_broker.watch import Prompt, sleep_or_stop

logger = logging.getLogger(__name__)

MIN_POLL_MS = 300


class Connector:
    """Poll a remote broker's ``/questions`` and post answers back."""

    def __init__(
        self,
        broker_url: str,
        *,
        token: str | None = None,
        timeout_seconds: int | None = None,
        auto_approve: bool = False,
        poll_ms: int = 1200,
        output: TextIO | None = None,
        prompt: Prompt | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        # Fails fast on an empty URL, before any loop starts.
        normalize_base_url(broker_url, label="broker url")
        self.broker_url = broker_url
        self.token = token
        self.timeout_seconds = timeout_seconds
        self.auto_approve = auto_approve
        self.poll_interval = max(MIN_POLL_MS, poll_ms) / 1000
        self.output = output or sys.stdout
        self._prompt = prompt or (lambda text: prompt_line(text, output=self.output))
        self._client = client
        self.seen: set[str] = set()

    def _write(self, text: str) -> None:
        self.output.write(text)
        self.output.flush()

    async def poll_once(self) -> int:
        pending = await list_remote_questions(self.broker_url, self.token, client=self._client)
        answered = 0

        for question in pending:
            marker = f"{question.key}:{question.timestamp}"
            if marker in self.seen:
                continue

            timeout = self.timeout_seconds
            age = question.age_seconds
            if timeout is not None and age is not None and age > timeout:
                self.seen.add(marker)
                self._write(f"[{iso_now()}] skipped {question.key} (age {age}s > {timeout}s)\n")
                continue

            self._write(
                f"\n{format_prompt(question.key, question.question, title='Remote HITL request', min_width=40)}\n"
            )
            if age is not None:
                self._write(f"Age: {age_label(age)}\n")

            if self.auto_approve:
                response = ""
                self._write("Auto-approve enabled: submitting empty response.\n")
            else:
                response = await self._prompt("Remote answer (Enter to confirm): ")

            await answer_remote_question(
                self.broker_url, question.key, response, self.token, client=self._client,
            )
            self.seen.add(marker)
            answered += 1
            self._write(f"[{iso_now()}] answered {question.key}\n")
        return answered

    async def run(self, stop: asyncio.Event | None = None) -> None:
        self._write(f"Connecting to broker: {self.broker_url}\n")
        while stop is None or not stop.is_set():
            try:
                await self.poll_once()
            except EOFError:
                raise
            except Exception as exc:
                logger.debug("Connect poll failed", exc_info=True)
                self._write(f"[{iso_now()}] connect error: {exc}\n")
            await sleep_or_stop(self.poll_interval, stop)
