"""Server-Sent Events stream of the tenant's telemetry and alert events."""

import asyncio
import json
import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import StreamingResponse

from services.portal.dependencies import get_event_bus
from services.portal.middleware.auth import JWTBearer
from services.portal.middleware.tenant import get_tenant_id, inject_tenant_context, require_tenant_user

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api",
    tags=["realtime"],
    dependencies=[
        Depends(JWTBearer()),
        Depends(inject_tenant_context),
        Depends(require_tenant_user),
    ],
)

PING_INTERVAL_SECONDS = 30.0


def sse_message(payload: dict) -> str:
    return f"data: {json.dumps(payload, default=str)}\n\n"


@router.get("/realtime")
async def realtime_stream(request: Request, event_bus=Depends(get_event_bus)):
    tenant_id = str(get_tenant_id())
    try:
        sub = event_bus.subscribe(tenant_id)
    except ConnectionError as exc:
        raise HTTPException(429, str(exc))

    async def event_generator():
        sent = 0
        try:
            yield sse_message({"type": "connected", "timestamp": datetime.now(timezone.utc).isoformat()})
            while True:
                if await request.is_disconnected():
                    break
                try:
                    event = await asyncio.wait_for(sub.queue.get(), timeout=PING_INTERVAL_SECONDS)
                except asyncio.TimeoutError:
                    yield sse_message({"type": "ping", "timestamp": datetime.now(timezone.utc).isoformat()})
                    continue
                sent += 1
                yield sse_message(event)
        finally:
            event_bus.unsubscribe(sub)
            logger.info(
                "realtime_sse_disconnected",
                extra={"tenant_id": tenant_id, "events_sent": sent, "dropped": sub.dropped},
            )

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
