"""
Device-side ingestion by serial number.

Simple field devices and the SMS gateway post either a {code: value} object
or a raw "W=20,WP=35.5" string; the most basic devices use
GET /api/ingest?serial=SN123&W=20&WP=35.
"""

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request

from services.portal.db import queries
from services.portal.db.pool import system_connection
from services.portal.dependencies import (
    get_db_pool,
    get_dispatcher,
    get_evaluator,
    get_event_bus,
    rate_limit,
)
from services.portal.ingestion import ingest_readings, telemetry_event
from services.portal.schemas import DeviceIngestPayload
from services.shared.ingest_core import (
    ReadingError,
    parse_key_value_pairs,
    readings_from_mapping,
)
from services.shared.metrics import telemetry_submissions_rejected_total

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["ingest"])

INGEST_SOURCES = {"sms", "http", "mqtt", "import"}
RESERVED_QUERY_PARAMS = {"serial", "serialnumber", "source"}


async def _ingest(
    serial: str,
    data: dict,
    source: str,
    background_tasks: BackgroundTasks,
    pool,
    evaluator,
    event_bus,
    dispatcher,
) -> dict:
    try:
        readings = readings_from_mapping(data)
    except ReadingError as exc:
        raise HTTPException(400, str(exc))
    if not readings:
        telemetry_submissions_rejected_total.labels(reason="no_data").inc()
        raise HTTPException(400, "No valid data to ingest")

    try:
        async with system_connection(pool) as conn:
            device = await queries.fetch_device_by_serial(conn, serial)
            if device is None or device.get("status") != "active":
                telemetry_submissions_rejected_total.labels(reason="unknown_device").inc()
                raise HTTPException(404, "Device not found")
            outcome = await ingest_readings(conn, device, readings, source, evaluator)
    except HTTPException:
        raise
    except Exception:
        logger.exception("Failed to ingest device data", extra={"serial": serial, "source": source})
        raise HTTPException(500, "Internal server error")

    await event_bus.publish(telemetry_event(device, readings, source))
    if outcome.evaluation.intents:
        background_tasks.add_task(dispatcher.dispatch_background, outcome.evaluation.intents)

    logger.info(
        "Device data ingested",
        extra={"device_id": device["device_id"], "readings": outcome.stored, "source": source},
    )
    return {
        "success": True,
        "message": f"Ingested {outcome.stored} readings",
        "alertsCreated": outcome.alerts_created,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.post("/ingest", dependencies=[Depends(rate_limit("telemetry"))])
async def ingest_post(
    payload: DeviceIngestPayload,
    background_tasks: BackgroundTasks,
    pool=Depends(get_db_pool),
    evaluator=Depends(get_evaluator),
    event_bus=Depends(get_event_bus),
    dispatcher=Depends(get_dispatcher),
):
    serial = payload.device_serial
    if not serial:
        raise HTTPException(400, "Must provide serialNumber")
    if payload.source not in INGEST_SOURCES:
        raise HTTPException(400, f"source must be one of {', '.join(sorted(INGEST_SOURCES))}")
    if not payload.data and not payload.raw_text:
        raise HTTPException(400, "Must provide data object or rawText to parse")

    data = payload.data or parse_key_value_pairs(payload.raw_text or "")
    return await _ingest(
        serial, data, payload.source, background_tasks, pool, evaluator, event_bus, dispatcher
    )


@router.get("/ingest", dependencies=[Depends(rate_limit("telemetry"))])
async def ingest_get(
    request: Request,
    background_tasks: BackgroundTasks,
    pool=Depends(get_db_pool),
    evaluator=Depends(get_evaluator),
    event_bus=Depends(get_event_bus),
    dispatcher=Depends(get_dispatcher),
):
    params = request.query_params
    serial = (params.get("serial") or params.get("serialNumber") or "").strip()
    if not serial:
        raise HTTPException(400, "Missing serial parameter")
    source = params.get("source", "http")
    if source not in INGEST_SOURCES:
        raise HTTPException(400, f"source must be one of {', '.join(sorted(INGEST_SOURCES))}")

    data = {k: v for k, v in params.items() if k.lower() not in RESERVED_QUERY_PARAMS}
    if not data:
        raise HTTPException(400, "No data parameters provided")
    return await _ingest(serial, data, source, background_tasks, pool, evaluator, event_bus, dispatcher)
