"""Health check router."""

from fastapi import APIRouter

from hitl_broker.config import VERSION

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check() -> dict:
    """Liveness probe.  Never touches the handshake directory."""
    return {"ok": True}


@router.get("/health/version")
async def health_version() -> dict:
    return {"version": VERSION}
