"""Questions router -- question lifecycle over HTTP, backed by the handshake store."""

import json
import logging
import math
from typing import Any

from fastapi import APIRouter, Depends, Request

from hitl_broker.api.deps import get_broker_options
from hitl_broker.config import BrokerOptions
from hitl_broker.errors import BadRequestError, NotFoundError
from hitl_broker.store import (
    answer_question,
    cancel_question,
    get_question_by_key,
    list_questions,
    read_question_state,
    submit_question,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["questions"])


async def _read_json_body(request: Request) -> dict[str, Any]:
    """Decode the request body as a JSON object.  An empty body is ``{}``."""
    raw = (await request.body()).decode("utf-8", errors="replace").strip()
    if not raw:
        return {}
    try:
        payload = json.loads(raw)
    except ValueError:
        raise BadRequestError("invalid JSON body")
    if not isinstance(payload, dict):
        raise BadRequestError("expected a JSON object")
    return payload


def _non_empty(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    trimmed = value.strip()
    return trimmed or None


def _finite_int(value: Any) -> int | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if isinstance(value, float) and not math.isfinite(value):
        return None
    return int(value)


@router.get("/questions")
async def list_pending_questions(
    options: BrokerOptions = Depends(get_broker_options),
) -> list[dict]:
    """Unanswered questions, oldest first."""
    questions = [q for q in await list_questions(options) if not q.answered]
    questions.sort(key=lambda q: q.timestamp)
    return [q.to_public_dict() for q in questions]


@router.get("/questions/{key:path}")
async def question_state(
    key: str,
    options: BrokerOptions = Depends(get_broker_options),
) -> dict:
    """State of one question.  Keys may contain ``/`` (sent as ``%2F``)."""
    return await read_question_state(key, options)


@router.post("/questions")
async def create_question(
    request: Request,
    options: BrokerOptions = Depends(get_broker_options),
) -> dict:
    body = await _read_json_body(request)
    key = _non_empty(body.get("key"))
    question = _non_empty(body.get("question"))
    if not key or not question:
        raise BadRequestError("expected { key, question }")
    result = await submit_question(
        key,
        question,
        options,
        timestamp=_finite_int(body.get("timestamp")),
        pid=_finite_int(body.get("pid")),
    )
    logger.info("Question submitted key=%s", key)
    return result


@router.post("/answer")
async def answer(
    request: Request,
    options: BrokerOptions = Depends(get_broker_options),
) -> dict:
    body = await _read_json_body(request)
    key = _non_empty(body.get("key"))
    response = body.get("response")
    if not key or not isinstance(response, str):
        raise BadRequestError("expected { key, response }")
    if await get_question_by_key(key, options) is None:
        raise NotFoundError(f"question not found: {key}")
    result = await answer_question(key, response, options)
    logger.info("Question answered key=%s", key)
    return result


@router.post("/cancel")
async def cancel(
    request: Request,
    options: BrokerOptions = Depends(get_broker_options),
) -> dict:
    body = await _read_json_body(request)
    key = _non_empty(body.get("key"))
    if not key:
        raise BadRequestError("expected { key }")
    result = await cancel_question(key, options)
    logger.info("Question cancel key=%s removed=%s", key, result["removed"])
    return result
