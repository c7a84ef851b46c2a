"""Public API telemetry routes (API key auth)."""

import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query

from services.portal.db import queries
from services.portal.db import telemetry as telemetry_db
from services.portal.db.pool import tenant_connection
from services.portal.dependencies import (
    get_db_pool,
    get_dispatcher,
    get_evaluator,
    get_event_bus,
    parse_id,
    rate_limit,
)
from services.portal.ingestion import ingest_readings, telemetry_event
from services.portal.middleware.api_key import ApiKeyAuth, ApiKeyPrincipal
from services.portal.schemas import TelemetrySubmission, telemetry_out
from services.shared.ingest_core import ReadingError, parse_readings, parse_ts
from services.shared.metrics import telemetry_submissions_rejected_total

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", tags=["telemetry"])

MAX_TELEMETRY_PAGE = 1000


@router.post("/telemetry", status_code=201)
async def submit_telemetry(
    body: TelemetrySubmission,
    background_tasks: BackgroundTasks,
    principal: ApiKeyPrincipal = Depends(ApiKeyAuth("telemetry:write")),
    _: None = Depends(rate_limit("telemetry")),
    pool=Depends(get_db_pool),
    evaluator=Depends(get_evaluator),
    event_bus=Depends(get_event_bus),
    dispatcher=Depends(get_dispatcher),
):
    received_at = datetime.now(timezone.utc)
    if body.device_id is None or str(body.device_id).strip() == "":
        telemetry_submissions_rejected_total.labels(reason="missing_device").inc()
        raise HTTPException(400, "deviceId is required")
    try:
        readings = parse_readings(body.readings, now=received_at)
    except ReadingError as exc:
        telemetry_submissions_rejected_total.labels(reason="invalid_readings").inc()
        raise HTTPException(400, str(exc))
    device_id = parse_id(body.device_id, "deviceId")

    tenant_id = principal.tenant_id
    try:
        async with tenant_connection(pool, tenant_id) as conn:
            device = await queries.fetch_device(conn, tenant_id, device_id)
            if device is None:
                telemetry_submissions_rejected_total.labels(reason="unknown_device").inc()
                raise HTTPException(404, "Device not found")
            outcome = await ingest_readings(
                conn, device, readings, "api", evaluator, received_at=received_at
            )
    except HTTPException:
        raise
    except Exception:
        logger.exception("Failed to store telemetry", extra={"tenant_id": tenant_id, "device_id": device_id})
        raise HTTPException(500, "Internal server error")

    if readings:
        await event_bus.publish(telemetry_event(device, readings, "api"))
    if outcome.evaluation.intents:
        background_tasks.add_task(dispatcher.dispatch_background, outcome.evaluation.intents)

    return {
        "success": True,
        "data": {
            "created": outcome.stored,
            "alertsCreated": outcome.alerts_created,
        },
    }


@router.get("/telemetry")
async def list_telemetry(
    principal: ApiKeyPrincipal = Depends(ApiKeyAuth("telemetry:read")),
    _: None = Depends(rate_limit("standard")),
    device_id: Optional[str] = Query(None, alias="deviceId"),
    variable: Optional[str] = Query(None),
    start_date: Optional[str] = Query(None, alias="startDate"),
    end_date: Optional[str] = Query(None, alias="endDate"),
    limit: int = Query(100, ge=1),
    offset: int = Query(0, ge=0),
    pool=Depends(get_db_pool),
):
    start = parse_ts(start_date) if start_date else None
    end = parse_ts(end_date) if end_date else None
    if (start_date and start is None) or (end_date and end is None):
        raise HTTPException(400, "Invalid date format")
    device = parse_id(device_id, "deviceId") if device_id else None
    limit = min(limit, MAX_TELEMETRY_PAGE)

    tenant_id = principal.tenant_id
    try:
        async with tenant_connection(pool, tenant_id) as conn:
            rows = await telemetry_db.fetch_telemetry(
                conn,
                tenant_id,
                device_id=device,
                variable_code=variable,
                start=start,
                end=end,
                limit=limit,
                offset=offset,
            )
    except Exception:
        logger.exception("Failed to fetch telemetry")
        raise HTTPException(500, "Internal server error")

    return {
        "success": True,
        "data": [telemetry_out(r) for r in rows],
        "pagination": {"limit": limit, "offset": offset, "count": len(rows)},
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
