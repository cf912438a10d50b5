"""Request correlation for the broker's HTTP surface.

Each request gets an ID in ``scope["state"]["request_id"]``.  The access log
prints it as ``req_id=`` and every error body carries it as ``request_id``,
so an operator can match a failed ``/answer`` from a remote ``connect`` loop
to the server-side log line.  The ID is echoed as ``X-Request-ID``.

Written as plain ASGI so the open-ended ``/events`` stream is passed
through frame by frame.
"""

import re
import uuid

from starlette.types import ASGIApp, Message, Receive, Scope, Send

REQUEST_ID_HEADER = b"x-request-id"

# Caller IDs end up in log lines and response headers.
_ACCEPTED_ID = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")


def new_request_id() -> str:
    return uuid.uuid4().hex


def pick_request_id(raw: bytes | None) -> str:
    """Reuse the caller's ID when it is short and printable, else mint one."""
    candidate = (raw or b"").decode("latin-1").strip()
    return candidate if _ACCEPTED_ID.match(candidate) else new_request_id()


class RequestIDMiddleware:
    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        inbound = next((value for name, value in scope.get("headers", []) if name == REQUEST_ID_HEADER), None)
        request_id = pick_request_id(inbound)
        scope.setdefault("state", {})["request_id"] = request_id

        async def send_with_id(message: Message) -> None:
            if message["type"] == "http.response.start":
                headers = [(k, v) for k, v in message.get("headers", []) if k != REQUEST_ID_HEADER]
                headers.append((REQUEST_ID_HEADER, request_id.encode("latin-1")))
                message = {**message, "headers": headers}
            await send(message)

        await self.app(scope, receive, send_with_id)
