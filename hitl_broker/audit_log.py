"""JSONL audit log for answered questions (``watch --log``)."""

import asyncio
import json
from pathlib import Path
from typing import Any


async def append_audit_line(file_path: str | Path, entry: dict[str, Any]) -> Path:
    """Append *entry* as one JSON line, creating parent directories.

    Entries carry ``type``, ``key``, ``timestamp`` and optional ``details``.
    Returns the resolved log path.
    """
    resolved = Path(file_path).resolve()
    line = json.dumps(entry) + "\n"

    def _sync() -> None:
        resolved.parent.mkdir(parents=True, exist_ok=True)
        with resolved.open("a", encoding="utf-8") as fh:
            fh.write(line)

    await asyncio.to_thread(_sync)
    return resolved
