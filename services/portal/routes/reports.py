import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from services.evaluator.stats import compute_stats
from services.portal.db import queries
from services.portal.db import telemetry as telemetry_db
from services.portal.db.pool import tenant_connection
from services.portal.dependencies import get_db_pool, parse_id, rate_limit
from services.portal.middleware.api_key import ApiKeyAuth, ApiKeyPrincipal
from services.shared.ingest_core import parse_ts

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", tags=["reports"])

DEFAULT_REPORT_DAYS = 30
REPORT_TYPES = ("summary", "telemetry")


def report_window(
    start_date: Optional[str], end_date: Optional[str], now: Optional[datetime] = None
) -> tuple[datetime, datetime]:
    """Resolve the query window; defaults to the last 30 days."""
    now = now or datetime.now(timezone.utc)
    end = parse_ts(end_date) if end_date else now
    start = parse_ts(start_date) if start_date else None
    if (end_date and end is None) or (start_date and start is None):
        raise HTTPException(status_code=400, detail="Invalid date format")
    if start is None:
        start = end - timedelta(days=DEFAULT_REPORT_DAYS)
    if start > end:
        raise HTTPException(status_code=400, detail="startDate must be before endDate")
    return start, end


@router.get("/reports")
async def get_report(
    principal: ApiKeyPrincipal = Depends(ApiKeyAuth("reports:read")),
    _: None = Depends(rate_limit("standard")),
    report_type: str = Query("summary", alias="type"),
    start_date: Optional[str] = Query(None, alias="startDate"),
    end_date: Optional[str] = Query(None, alias="endDate"),
    device_id: Optional[str] = Query(None, alias="deviceId"),
    pool=Depends(get_db_pool),
):
    if report_type not in REPORT_TYPES:
        raise HTTPException(status_code=400, detail="Invalid report type. Use: summary, telemetry")
    start, end = report_window(start_date, end_date)
    period = {"start": start.isoformat(), "end": end.isoformat()}
    tenant_id = principal.tenant_id

    if report_type == "telemetry":
        if not device_id:
            raise HTTPException(status_code=400, detail="deviceId required for telemetry report")
        device = parse_id(device_id, "deviceId")
        try:
            async with tenant_connection(pool, tenant_id) as conn:
                if await queries.fetch_device(conn, tenant_id, device) is None:
                    raise HTTPException(status_code=404, detail="Device not found")
                grouped = await telemetry_db.fetch_variable_values(conn, tenant_id, device, start, end)
        except HTTPException:
            raise
        except Exception:
            logger.exception("Failed to build telemetry report")
            raise HTTPException(status_code=500, detail="Internal server error")

        variables = []
        for code in sorted(grouped):
            stats = compute_stats(grouped[code])
            variables.append({"variable": code, **stats.to_dict()})
        return {
            "success": True,
            "data": {
                "reportType": "telemetry",
                "deviceId": str(device),
                "period": period,
                "variables": variables,
            },
        }

    try:
        async with tenant_connection(pool, tenant_id) as conn:
            summary = await telemetry_db.fetch_summary_counts(conn, tenant_id, start, end)
    except Exception:
        logger.exception("Failed to build summary report")
        raise HTTPException(status_code=500, detail="Internal server error")
    return {
        "success": True,
        "data": {"reportType": "summary", "period": period, **summary},
    }
