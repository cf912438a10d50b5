"""Shared HTTP plumbing for the broker and runtime clients.

Normalises base URLs, attaches bearer-token headers, and turns non-2xx
responses into :class:`~hitl_broker.errors.TransportError` carrying a
human-readable reason pulled from the response body.

No business logic here -- just requests in, JSON out.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any

import httpx

from hitl_broker.clients.payloads import as_record, as_string
from hitl_broker.errors import ConfigurationError, TransportError

logger = logging.getLogger(__name__)

_SCHEME_RE = re.compile(r"^https?://", re.IGNORECASE)
_MISSING = object()

# ── Shared HTTP client (connection pooling) ─────────────────────────────────

_client: httpx.AsyncClient | None = None


def get_client() -> httpx.AsyncClient:
    """Return (or create) the shared httpx client."""
    global _client
    if _client is None:
        _client = httpx.AsyncClient(timeout=httpx.Timeout(30.0, connect=10.0))
    return _client


async def close_client() -> None:
    """Close the shared HTTP client.  Called on CLI shutdown."""
    global _client
    if _client is not None:
        await _client.aclose()
        _client = None


# ── Helpers ──────────────────────────────────────────────────────────────────


def normalize_base_url(value: str, *, label: str = "base url") -> str:
    """Add ``http://`` when no scheme is given and strip trailing slashes."""
    trimmed = (value or "").strip()
    if not trimmed:
        raise ConfigurationError(f"{label} is required")
    if not _SCHEME_RE.match(trimmed):
        trimmed = f"http://{trimmed}"
    return trimmed.rstrip("/")


def with_route(base_url: str, route: str, *, label: str = "base url") -> str:
    normalized = normalize_base_url(base_url, label=label)
    return f"{normalized}{route if route.startswith('/') else '/' + route}"


def auth_headers(token: str | None) -> dict[str, str]:
    """Return an ``Authorization`` header when a non-blank token is configured."""
    trimmed = (token or "").strip()
    if not trimmed:
        return {}
    return {"Authorization": f"Bearer {trimmed}"}


async def read_response_error(response: httpx.Response) -> str:
    """Extract a reason from a failed response.

    Tries the JSON ``error`` field, then the raw body text, then a generic
    ``request failed with status N``.  Never raises for malformed bodies.
    """
    fallback = f"request failed with status {response.status_code}"
    try:
        raw = await response.aread()
    except httpx.HTTPError:
        return fallback
    text = raw.decode("utf-8", errors="replace").strip()

    if "application/json" in response.headers.get("content-type", ""):
        try:
            payload = json.loads(text)
        except ValueError:
            return fallback
        error = as_string(as_record(payload).get("error"))
        if error:
            return error

    return text or fallback


async def request_json(
    base_url: str,
    route: str,
    *,
    method: str | None = None,
    token: str | None = None,
    body: Any = _MISSING,
    client: httpx.AsyncClient | None = None,
    label: str = "base url",
) -> Any:
    """Send one JSON request and return the decoded response body.

    ``method`` defaults to POST when a body is given, else GET.
    """
    has_body = body is not _MISSING
    verb = method or ("POST" if has_body else "GET")
    url = with_route(base_url, route, label=label)
    headers = auth_headers(token)
    http = client or get_client()

    try:
        if has_body:
            response = await http.request(verb, url, headers=headers, json=body)
        else:
            response = await http.request(verb, url, headers=headers)
    except httpx.HTTPError as exc:
        raise TransportError(f"{verb} {route} failed: {exc}") from exc

    if response.status_code >= 400:
        reason = await read_response_error(response)
        raise TransportError(
            f"{verb} {route} failed ({response.status_code}): {reason}",
            status_code=response.status_code,
        )

    try:
        return response.json()
    except ValueError:
        logger.debug("%s %s returned a non-JSON body", verb, route)
        return None
