"""File handshake store -- ``.question`` / ``.answer`` marker files in one directory.

An asking process writes ``<safeKey>.question``; an operator (or the HTTP
broker on their behalf) writes ``<safeKey>.answer``.  Cancelling removes
both.  Every marker is a single JSON object written wholesale through a
temp file + ``os.replace`` so readers never observe a half-written file.

There is no locking: two writers racing on the same key resolve as
last-write-wins.  Filesystem errors propagate unchanged; retry policy
belongs to the loops that call into this module.

Blocking I/O runs in a worker thread via ``asyncio.to_thread`` so that
the watch loop, request handlers and SSE tasks keep interleaving.
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
import os
import tempfile
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from hitl_broker.config import DEFAULT_HITL_DIR, HITL_DIR_ENV, BrokerOptions
from hitl_broker.keys import to_safe_key

logger = logging.getLogger(__name__)

QUESTION_SUFFIX = ".question"
ANSWER_SUFFIX = ".answer"


@dataclass(frozen=True)
class Question:
    key: str
    safe_key: str
    question: str
    timestamp: int
    pid: int | None
    answered: bool
    age_seconds: int

    def to_public_dict(self) -> dict[str, Any]:
        """Wire shape used by ``GET /questions``."""
        out: dict[str, Any] = {
            "key": self.key,
            "question": self.question,
            "timestamp": self.timestamp,
        }
        if self.pid is not None:
            out["pid"] = self.pid
        out["ageSeconds"] = self.age_seconds
        return out


@dataclass(frozen=True)
class BrokerStateRow:
    """One entry of a change-detection snapshot.  Never persisted."""

    key: str
    answered: bool
    question_mtime_ms: int
    timestamp: int


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_ms() -> int:
    return int(time.time() * 1000)


def resolve_dir(options: BrokerOptions) -> Path:
    """Resolve the handshake directory: explicit dir, else env var, else ``.hitl``."""
    raw = (options.dir or "").strip() or (options.env.get(HITL_DIR_ENV) or "").strip()
    path = Path(raw or DEFAULT_HITL_DIR)
    if not path.is_absolute():
        path = Path(options.cwd) / path
    return path


def _marker_paths(key: str, options: BrokerOptions) -> tuple[Path, Path, str]:
    safe_key = to_safe_key(key)
    root = resolve_dir(options)
    return root / f"{safe_key}{QUESTION_SUFFIX}", root / f"{safe_key}{ANSWER_SUFFIX}", safe_key


def _write_json_atomic(path: Path, payload: dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(payload, fh)
            fh.write("\n")
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


def _read_json(path: Path) -> dict | None:
    """Read one marker.  Returns None when the file vanished or is not a JSON object."""
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    try:
        data = json.loads(raw)
    except ValueError:
        logger.warning("Ignoring malformed marker file %s", path)
        return None
    return data if isinstance(data, dict) else None


def _as_int(value: Any) -> int | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if isinstance(value, float) and not math.isfinite(value):
        return None
    return int(value)


def _question_from_marker(path: Path, now_ms: int) -> Question | None:
    data = _read_json(path)
    if data is None:
        return None
    safe_key = path.name[: -len(QUESTION_SUFFIX)]
    key = data.get("key") if isinstance(data.get("key"), str) and data.get("key") else safe_key
    text = data.get("question") if isinstance(data.get("question"), str) else ""
    timestamp = _as_int(data.get("timestamp"))
    if timestamp is None:
        try:
            timestamp = int(path.stat().st_mtime * 1000)
        except FileNotFoundError:
            return None
    answered = (path.parent / f"{safe_key}{ANSWER_SUFFIX}").exists()
    return Question(
        key=key,
        safe_key=safe_key,
        question=text,
        timestamp=timestamp,
        pid=_as_int(data.get("pid")),
        answered=answered,
        age_seconds=max(0, (now_ms - timestamp) // 1000),
    )


def _scan_question_markers(root: Path) -> list[Path]:
    if not root.is_dir():
        return []
    return [p for p in root.iterdir() if p.name.endswith(QUESTION_SUFFIX) and p.is_file()]


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------


async def submit_question(
    key: str,
    question: str,
    options: BrokerOptions,
    *,
    timestamp: int | None = None,
    pid: int | None = None,
) -> dict:
    """Write (or overwrite) the question marker for *key*.  Returns ``{"path": ...}``."""
    question_path, _, _ = _marker_paths(key, options)
    payload = {
        "key": key,
        "question": question,
        "timestamp": timestamp if timestamp is not None else _now_ms(),
        "pid": pid if pid is not None else os.getpid(),
    }

    def _sync() -> None:
        _write_json_atomic(question_path, payload)

    await asyncio.to_thread(_sync)
    logger.debug("Question written key=%s path=%s", key, question_path)
    return {"path": str(question_path)}


async def iter_questions(options: BrokerOptions) -> AsyncIterator[Question]:
    """Lazily yield every question in the handshake directory (unordered).

    Each call starts a fresh scan, so the sequence is restartable.
    """
    root = resolve_dir(options)
    markers = await asyncio.to_thread(_scan_question_markers, root)
    now_ms = _now_ms()
    for marker in markers:
        item = await asyncio.to_thread(_question_from_marker, marker, now_ms)
        if item is not None:
            yield item


async def list_questions(options: BrokerOptions) -> list[Question]:
    """Return every question, answered or not.  Callers sort by timestamp when needed."""
    return [item async for item in iter_questions(options)]


async def get_question_by_key(key: str, options: BrokerOptions) -> Question | None:
    question_path, _, _ = _marker_paths(key, options)
    return await asyncio.to_thread(_question_from_marker, question_path, _now_ms())


async def read_question_state(key: str, options: BrokerOptions) -> dict:
    """Return ``{"status": "pending"|"answered"|"missing", "response"?: str}``."""
    question_path, answer_path, _ = _marker_paths(key, options)

    def _sync() -> dict:
        if not question_path.exists():
            return {"status": "missing"}
        answer = _read_json(answer_path)
        if answer is None:
            if answer_path.exists():
                return {"status": "answered", "response": ""}
            return {"status": "pending"}
        response = answer.get("response")
        return {"status": "answered", "response": response if isinstance(response, str) else ""}

    return await asyncio.to_thread(_sync)


async def answer_question(key: str, response_text: str, options: BrokerOptions) -> dict:
    """Write the answer marker.  The question marker is not required to exist."""
    _, answer_path, _ = _marker_paths(key, options)
    payload = {"key": key, "response": response_text, "timestamp": _now_ms()}

    def _sync() -> None:
        _write_json_atomic(answer_path, payload)

    await asyncio.to_thread(_sync)
    logger.debug("Answer written key=%s path=%s", key, answer_path)
    return {"path": str(answer_path)}


async def cancel_question(key: str, options: BrokerOptions) -> dict:
    """Delete both markers.  ``removed`` is True when at least one existed."""
    question_path, answer_path, _ = _marker_paths(key, options)

    def _sync() -> bool:
        removed = False
        for path in (question_path, answer_path):
            try:
                path.unlink()
                removed = True
            except FileNotFoundError:
                continue
        return removed

    removed = await asyncio.to_thread(_sync)
    return {"removed": removed}


async def list_broker_state(options: BrokerOptions) -> dict[str, BrokerStateRow]:
    """Snapshot ``safeKey -> BrokerStateRow`` used only for SSE change detection."""
    root = resolve_dir(options)

    def _sync() -> dict[str, BrokerStateRow]:
        rows: dict[str, BrokerStateRow] = {}
        now_ms = _now_ms()
        for marker in _scan_question_markers(root):
            try:
                mtime_ms = marker.stat().st_mtime_ns // 1_000_000
            except FileNotFoundError:
                continue
            item = _question_from_marker(marker, now_ms)
            if item is None:
                continue
            rows[item.safe_key] = BrokerStateRow(
                key=item.key,
                answered=item.answered,
                question_mtime_ms=mtime_ms,
                timestamp=item.timestamp,
            )
        return rows

    return await asyncio.to_thread(_sync)
