"""Domain exception hierarchy for the HITL broker.

Services raise these instead of bare ``ValueError`` so that the exception
handlers in ``hitl_broker.middleware.exception_handler`` can map them to the
correct HTTP status code, and so that the operator loops can tell a
configuration mistake (fatal, raised before any loop starts) from a
transport failure (logged, loop continues).
"""


class HitlError(Exception):
    """Base for all domain exceptions."""

    def __init__(self, message: str = "An unexpected error occurred", *, status_code: int = 500):
        super().__init__(message)
        self.status_code = status_code


class NotFoundError(HitlError):
    """Resource not found (404)."""

    def __init__(self, message: str = "Not found"):
        super().__init__(message, status_code=404)


class BadRequestError(HitlError):
    """Client sent an invalid request (400)."""

    def __init__(self, message: str = "Bad request"):
        super().__init__(message, status_code=400)


class AuthError(HitlError):
    """Missing or wrong broker token (401)."""

    def __init__(self, message: str = "unauthorized", *, status_code: int = 401):
        super().__init__(message, status_code=status_code)


class ConfigurationError(HitlError):
    """A required id, URL or key is missing.  Never retried."""

    def __init__(self, message: str = "Invalid configuration"):
        super().__init__(message, status_code=400)


class TransportError(HitlError):
    """An outbound HTTP request failed (non-2xx, refused connection, broken stream).

    ``status_code`` is the upstream HTTP status, or 502 when no response
    was received at all.
    """

    def __init__(self, message: str = "Request failed", *, status_code: int = 502):
        super().__init__(message, status_code=status_code)


def format_error_response(
    *,
    error: str,
    detail: object = None,
    request_id: str = "",
) -> dict:
    """Build a structured error response dict.

    Parameters
    ----------
    error : str
        Short human-readable reason.  Clients read this field first.
    detail : object
        Longer detail string or validation error list.
    request_id : str
        The request ID for tracing.

    Returns
    -------
    dict
        ``{"error": ..., "detail": ..., "request_id": ...}``
    """
    return {
        "error": error,
        "detail": detail if detail is not None else error,
        "request_id": request_id,
    }
