"""HTTP access log middleware -- one structured METRIC line per request.

Writes to the ``hitl_broker.access`` logger, which ``configure_logging``
wires to its own handler.  ``/health`` probes and the ``/events`` stream
are skipped; the latter would only log once the connection closes.
"""

from __future__ import annotations

import json
import logging
import time

from starlette.types import ASGIApp, Receive, Scope, Send

logger = logging.getLogger("hitl_broker.access")

_SKIP_PREFIXES = ("/health", "/events", "/favicon.ico")


class AccessLogMiddleware:
    """ASGI middleware that logs every HTTP request as a METRIC line."""

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        path: str = scope.get("path", "")
        if path.startswith(_SKIP_PREFIXES):
            await self.app(scope, receive, send)
            return

        method: str = scope.get("method", "?")
        request_id: str = scope.get("state", {}).get("request_id", "-")
        t0 = time.perf_counter()
        status_code = 0
        error_detail = ""

        async def send_wrapper(message: dict) -> None:
            nonlocal status_code, error_detail
            if message["type"] == "http.response.start":
                status_code = message.get("status", 0)
            elif message["type"] == "http.response.body" and status_code >= 400:
                body_bytes = message.get("body", b"")
                if body_bytes:
                    try:
                        body = json.loads(body_bytes)
                    except ValueError:
                        body = None
                    if isinstance(body, dict):
                        error_detail = str(body.get("error", ""))[:200]
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        except Exception:
            if status_code == 0:
                status_code = 500
            raise
        finally:
            wall_ms = (time.perf_counter() - t0) * 1000
            _emit(method, path, status_code, wall_ms, request_id, error_detail)


def _emit(
    method: str,
    path: str,
    status_code: int,
    wall_ms: float,
    request_id: str,
    error_detail: str,
) -> None:
    parts = [
        "METRIC | type=http_request",
        f"method={method}",
        f"path={path}",
        f"status={status_code}",
        f"wall_ms={wall_ms:.0f}",
        f"req_id={request_id}",
    ]
    if error_detail:
        # Pipes would break the METRIC field split.
        parts.append(f"error={error_detail.replace('|', '/')}")
    line = " | ".join(parts)

    if status_code >= 500:
        logger.error(line)
    elif status_code >= 400:
        logger.warning(line)
    else:
        logger.info(line)
