"""Tests for the prompt helper and the JSONL audit log."""

import asyncio
import io
import json
import os
import subprocess
import sys
import textwrap
import threading
from pathlib import Path

import pytest

from hitl_broker.audit_log import append_audit_line
from hitl_broker.prompt import prompt_line

REPO_ROOT = Path(__file__).resolve().parents[1]


@pytest.mark.asyncio
async def test_prompt_line_reads_one_line():
    stdin = io.StringIO("first answer\r\nsecond\n")
    stdout = io.StringIO()
    assert await prompt_line("Answer: ", input=stdin, output=stdout) == "first answer"
    assert stdout.getvalue() == "Answer: "
    assert await prompt_line("Again: ", input=stdin, output=stdout) == "second"


@pytest.mark.asyncio
async def test_prompt_line_empty_answer_is_not_eof():
    assert await prompt_line("? ", input=io.StringIO("\n"), output=io.StringIO()) == ""


@pytest.mark.asyncio
async def test_prompt_line_raises_on_eof():
    with pytest.raises(EOFError):
        await prompt_line("? ", input=io.StringIO(""), output=io.StringIO())


@pytest.mark.asyncio
async def test_append_audit_line(tmp_path):
    path = tmp_path / "nested" / "audit.jsonl"
    entry = {"type": "answered", "key": "k", "timestamp": "2026-02-22T13:20:05.000Z", "details": {"responseLength": 3}}
    await append_audit_line(path, entry)
    await append_audit_line(str(path), {**entry, "key": "k2"})

    lines = path.read_text().splitlines()
    assert [json.loads(line)["key"] for line in lines] == ["k", "k2"]
    assert json.loads(lines[0]) == entry


@pytest.mark.asyncio
async def test_cancelled_prompt_leaves_only_a_daemon_reader():
    read_fd, write_fd = os.pipe()
    stdin = os.fdopen(read_fd, "r")
    try:
        task = asyncio.create_task(prompt_line("? ", input=stdin, output=io.StringIO()))
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        readers = [t for t in threading.enumerate() if t.name == "hitl-prompt"]
        assert readers
        assert all(t.daemon for t in readers)
    finally:
        os.close(write_fd)
        for t in threading.enumerate():
            if t.name == "hitl-prompt":
                t.join(timeout=2)
        stdin.close()


def test_interrupted_prompt_does_not_block_exit():
    script = textwrap.dedent(
        """
        import asyncio
        from hitl_broker.prompt import prompt_line

        async def main():
            task = asyncio.create_task(prompt_line("? "))
            await asyncio.sleep(0.2)
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        asyncio.run(main())
        print("exited")
        """
    )
    # stdin stays open and idle, as on an unattended terminal.
    proc = subprocess.Popen(
        [sys.executable, "-c", script],
        cwd=REPO_ROOT,
        stdin=subprocess.PIPE,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
    )
    try:
        proc.wait(timeout=10)
        out = proc.stdout.read()
    finally:
        if proc.poll() is None:
            proc.kill()
            proc.wait()
        for stream in (proc.stdin, proc.stdout, proc.stderr):
            stream.close()

    assert proc.returncode == 0
    assert out.endswith("exited\n")
