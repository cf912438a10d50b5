"""SSE router -- live ``new_question`` / ``answered`` notifications."""

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse

from hitl_broker.api.deps import get_broker_options
from hitl_broker.config import BrokerOptions
from hitl_broker.services.event_stream import HEARTBEAT_INTERVAL, POLL_INTERVAL, BrokerEventStream

router = APIRouter(tags=["events"])

_SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


@router.get("/events")
async def broker_events(
    request: Request,
    options: BrokerOptions = Depends(get_broker_options),
) -> StreamingResponse:
    stream = BrokerEventStream(
        options,
        poll_interval=getattr(request.app.state, "poll_interval", POLL_INTERVAL),
        heartbeat_interval=getattr(request.app.state, "heartbeat_interval", HEARTBEAT_INTERVAL),
    )
    return StreamingResponse(stream.frames(), media_type="text/event-stream", headers=_SSE_HEADERS)
