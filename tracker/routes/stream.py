"""
Server-Sent Events (SSE) stream of dashboard patches.

The browser opens one stream per page. It first receives a ``connected``
event and a ``snapshot`` of everything currently rendered, then every
``display``, ``region``, ``viewport``, ``alarm`` and ``alert`` patch as the
session produces them. A ``heartbeat`` is sent whenever nothing else has
been sent for ``sse_keepalive_s`` seconds.
"""
import asyncio
import json
from datetime import datetime, timezone

import structlog
from fastapi import APIRouter, Depends, Request
from sse_starlette.sse import EventSourceResponse

from tracker.config import get_settings
from tracker.services.session import DashboardSession, get_dashboard_session

settings = get_settings()
logger = structlog.get_logger("stream")
router = APIRouter(prefix="/api/v1/dashboard", tags=["stream"])


def heartbeat_event() -> dict:
    now = datetime.now(timezone.utc)
    return {
        "event": "heartbeat",
        "data": json.dumps({
            "server_ts": now.isoformat(),
            "ts_ms": int(now.timestamp() * 1000),
        }),
    }


async def patch_generator(request: Request, session: DashboardSession):
    """Yield SSE events for one page until the client goes away."""
    queue = session.board.attach()
    try:
        yield {
            "event": "connected",
            "data": json.dumps({
                "device_id": session.device_id,
                "server_time": datetime.now(timezone.utc).isoformat(),
            }),
        }
        yield {"event": "snapshot", "data": json.dumps(session.snapshot())}

        while True:
            if await request.is_disconnected():
                break
            try:
                message = await asyncio.wait_for(queue.get(), timeout=settings.sse_keepalive_s)
            except asyncio.TimeoutError:
                yield heartbeat_event()
                continue
            yield {"event": message["type"], "data": json.dumps(message["data"])}
    finally:
        session.board.detach(queue)
        logger.info("SSE client disconnected", device_id=session.device_id)


@router.get("/stream")
async def stream_dashboard(
    request: Request,
    session: DashboardSession = Depends(get_dashboard_session),
):
    """SSE endpoint for live dashboard updates."""
    return EventSourceResponse(patch_generator(request, session))
