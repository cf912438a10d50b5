"""Line prompt that does not stall the event loop."""

import asyncio
import contextlib
import sys
import threading
from typing import TextIO


def _settle(future: asyncio.Future, line: str | None, exc: BaseException | None) -> None:
    if future.done():  # prompt was cancelled
        return
    if exc is not None:
        future.set_exception(exc)
    else:
        future.set_result(line)


async def prompt_line(
    question: str,
    *,
    input: TextIO | None = None,
    output: TextIO | None = None,
) -> str:
    """Write *question* and read one line from *input* on a daemon thread.

    The trailing newline is stripped.  Raises :class:`EOFError` when the
    input is exhausted so callers can tell "closed" from "empty answer".

    The read runs on its own daemon thread, not the loop's default
    executor: a cancelled prompt (Ctrl-C) leaves the thread parked in
    ``readline()`` and ``asyncio.run`` must not wait for it on shutdown.
    """
    stream_in = input or sys.stdin
    stream_out = output or sys.stdout
    stream_out.write(question)
    stream_out.flush()

    loop = asyncio.get_running_loop()
    future: asyncio.Future[str] = loop.create_future()

    def _read() -> None:
        try:
            line, exc = stream_in.readline(), None
        except Exception as err:
            line, exc = None, err
        # The loop is gone when the line arrives after shutdown.
        with contextlib.suppress(RuntimeError):
            loop.call_soon_threadsafe(_settle, future, line, exc)

    threading.Thread(target=_read, name="hitl-prompt", daemon=True).start()
    line = await future
    if not line:
        raise EOFError("input closed")
    return line.rstrip("\r\n")
