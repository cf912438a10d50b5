"""Plain-text rendering for the operator loops and CLI tables."""

import re
from collections.abc import Iterable, Sequence
from datetime import datetime, timezone
from typing import Any

from hitl_broker.clients.runtime_client import RuntimeAgentRegistryItem, RuntimeRunEvent

_WHITESPACE = re.compile(r"\s+")
_NEWLINE = re.compile(r"\r?\n")

HUMAN_EVENT_KINDS = frozenset({"agent.hitl_input", "agent.human_message"})


def iso_now() -> str:
    """UTC timestamp like ``2026-02-22T13:20:00.000Z``."""
    now = datetime.now(timezone.utc)
    return now.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def age_label(total_seconds: int | float) -> str:
    """``HH:MM:SS``; hours are not wrapped at 24."""
    total = max(0, int(total_seconds))
    hours, rest = divmod(total, 3600)
    minutes, seconds = divmod(rest, 60)
    return f"{hours:02d}:{minutes:02d}:{seconds:02d}"


def compact(text: str) -> str:
    return _WHITESPACE.sub(" ", text).strip()


def format_prompt(key: str, question: str, *, title: str = "HITL request", min_width: int = 36) -> str:
    """Box a question for the terminal::

        +======================================+
        | HITL request: review-step-3          |
        +======================================+
        | Approve the migration?               |
        +======================================+
    """
    lines = _NEWLINE.split(question)
    header = f"{title}: {key}"
    width = max([len(header) + 2, min_width] + [len(line) + 2 for line in lines])
    border = "+" + "=" * width + "+"
    out = [border, f"| {header.ljust(width - 1)}|", border]
    for line in lines:
        out.append(f"| {line[: width - 1].ljust(width - 1)}|")
    out.append(border)
    return "\n".join(out)


def _table(headers: Sequence[str], rows: Iterable[Sequence[str]]) -> str:
    rows = [list(row) for row in rows]
    widths = [max([len(h)] + [len(row[i]) for row in rows]) for i, h in enumerate(headers)]
    lines = [
        "  ".join(h.ljust(w) for h, w in zip(headers, widths)),
        "  ".join("-" * w for w in widths),
    ]
    for row in rows:
        lines.append("  ".join(cell.ljust(w) for cell, w in zip(row, widths)))
    return "\n".join(lines)


def format_pending_table(questions: Sequence[Any]) -> str:
    """Table of ``key``, ``age`` and a one-line question preview (96 chars)."""
    if not questions:
        return "No pending questions."
    rows = [
        (q.key, age_label(q.age_seconds or 0), compact(q.question)[:96])
        for q in questions
    ]
    keys = [r[0] for r in rows]
    ages = [r[1] for r in rows]
    key_width = max([len("key")] + [len(k) for k in keys])
    age_width = max([len("age")] + [len(a) for a in ages])
    lines = [
        f"{'key'.ljust(key_width)}  {'age'.ljust(age_width)}  question",
        f"{'-' * key_width}  {'-' * age_width}  {'-' * 36}",
    ]
    for key, age, preview in rows:
        lines.append(f"{key.ljust(key_width)}  {age.ljust(age_width)}  {preview}")
    return "\n".join(lines)


def format_runtime_agents(items: Sequence[RuntimeAgentRegistryItem]) -> str:
    if not items:
        return "No registered agent services found."
    rows = [
        (
            item.service_id,
            item.agent.agent_id or "-",
            item.agent.name or item.display_name or "-",
            ",".join(item.agent.triggers) or "-",
            item.lifecycle,
            item.health,
        )
        for item in items
    ]
    return _table(("service_id", "agent_id", "name", "triggers", "lifecycle", "health"), rows)


def short_time_label(value: str) -> str:
    """``HH:MM:SS`` (UTC) of an ISO timestamp, or *value* unchanged if unparseable."""
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return value
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc)
    return parsed.strftime("%H:%M:%S")


def _first_data_string(data: dict[str, Any], *keys: str) -> str | None:
    for key in keys:
        value = data.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def render_runtime_event(event: RuntimeRunEvent, default_agent: str) -> str:
    data = event.data
    message = (
        _first_data_string(data, "message", "text", "input")
        or _first_data_string(data, "reason", "waitingReason", "error")
        or event.message
    )
    stamp = short_time_label(event.at)
    if event.kind in HUMAN_EVENT_KINDS:
        return f"[{stamp}] you: {compact(message)}"
    agent = _first_data_string(data, "agent", "agentId", "agent_id") or default_agent
    return f"[{stamp}] {agent} ({event.kind}): {compact(message)}"
