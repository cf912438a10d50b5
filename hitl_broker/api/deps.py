"""Request dependencies -- broker options and the optional bearer-token gate."""

import secrets

from fastapi import Request

from hitl_broker.config import BrokerOptions
from hitl_broker.errors import AuthError

TOKEN_HEADER = "x-hitl-token"
TOKEN_QUERY_PARAM = "token"

# Reachable without a token even when one is configured.
_OPEN_ROUTES = frozenset({"/", "/health"})


def extract_token(request: Request) -> str | None:
    """Return the presented token: ``Authorization: Bearer``, then header, then ``?token=``."""
    auth = request.headers.get("authorization", "")
    if auth.startswith("Bearer "):
        return auth[len("Bearer "):].strip()
    header_token = request.headers.get(TOKEN_HEADER, "").strip()
    if header_token:
        return header_token
    query_token = request.query_params.get(TOKEN_QUERY_PARAM, "").strip()
    if query_token:
        return query_token
    return None


async def require_token(request: Request) -> None:
    """Reject the request with 401 unless it carries the configured token."""
    expected: str | None = getattr(request.app.state, "token", None)
    if not expected:
        return
    if request.method == "GET" and request.url.path in _OPEN_ROUTES:
        return
    presented = extract_token(request)
    if presented is None or not secrets.compare_digest(presented.encode(), expected.encode()):
        raise AuthError("unauthorized")


def get_broker_options(request: Request) -> BrokerOptions:
    return request.app.state.broker_options
