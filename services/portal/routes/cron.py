"""
Scheduled job endpoints, called by an external scheduler.

    curl -H "X-Cron-Secret: $CRON_SECRET" https://portal/api/cron/device-health
"""

import hmac
import logging
import os
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query

from services.portal.db.pool import system_connection
from services.portal.dependencies import get_db_pool, get_dispatcher, get_health_monitor
from services.shared.logging import log_event

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/cron", tags=["cron"])


def verify_cron_secret(
    x_cron_secret: Optional[str] = Header(None, alias="X-Cron-Secret"),
    secret: Optional[str] = Query(None),
) -> None:
    expected = os.getenv("CRON_SECRET", "")
    if not expected:
        logger.warning("CRON_SECRET is not set, cron endpoints are unauthenticated")
        return
    provided = x_cron_secret or secret or ""
    if not hmac.compare_digest(provided.encode(), expected.encode()):
        raise HTTPException(status_code=401, detail="Unauthorized")


async def _run_device_health(pool, monitor, dispatcher) -> dict:
    try:
        async with system_connection(pool) as conn:
            report = await monitor.run(conn, datetime.now(timezone.utc))
    except Exception:
        logger.exception("Device health check failed")
        raise HTTPException(status_code=500, detail="Internal server error")

    delivery = await dispatcher.dispatch(report.intents)
    log_event(
        logger,
        "Device health cron finished",
        offline=report.stats["offline"],
        never_connected=report.stats["neverConnected"],
        notified=delivery.sent,
        failed=delivery.failed,
    )
    return {
        "success": True,
        "timestamp": report.checked_at.isoformat(),
        "stats": report.stats,
        "offlineDevices": [d.to_dict() for d in report.unhealthy],
        "newlyReported": len(report.newly_unhealthy),
        "alerts": delivery.to_dict(),
    }


@router.get("/device-health", dependencies=[Depends(verify_cron_secret)])
async def device_health_get(
    pool=Depends(get_db_pool),
    monitor=Depends(get_health_monitor),
    dispatcher=Depends(get_dispatcher),
):
    return await _run_device_health(pool, monitor, dispatcher)


@router.post("/device-health", dependencies=[Depends(verify_cron_secret)])
async def device_health_post(
    pool=Depends(get_db_pool),
    monitor=Depends(get_health_monitor),
    dispatcher=Depends(get_dispatcher),
):
    return await _run_device_health(pool, monitor, dispatcher)
