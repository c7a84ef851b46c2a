"""Alert listing and status updates: portal session routes and API key routes."""

import logging
from typing import Optional

import asyncpg
from fastapi import APIRouter, Depends, HTTPException, Query

from services.evaluator.rules import RuleValidationError, parse_alert_status, parse_severity
from services.portal.db import queries
from services.portal.db.pool import tenant_connection
from services.portal.dependencies import (
    get_db_pool,
    offset_pagination,
    page_pagination,
    parse_id,
    rate_limit,
)
from services.portal.middleware.api_key import ApiKeyAuth, ApiKeyPrincipal
from services.portal.middleware.auth import JWTBearer
from services.portal.middleware.tenant import get_tenant_id, inject_tenant_context, require_tenant_user
from services.portal.schemas import AlertStatusUpdate, ApiAlertStatusUpdate, alert_out

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/portal",
    tags=["alerts"],
    dependencies=[
        Depends(JWTBearer()),
        Depends(inject_tenant_context),
        Depends(require_tenant_user),
    ],
)

api_router = APIRouter(prefix="/api/v1", tags=["alerts"])


def _filters(status: Optional[str], severity: Optional[str]) -> tuple[Optional[str], Optional[str]]:
    try:
        status_value = parse_alert_status(status).value if status else None
        severity_value = parse_severity(severity).value if severity else None
    except RuleValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return status_value, severity_value


async def _set_status(pool, tenant_id: int, alert_id: int, raw_status: str) -> dict:
    try:
        status = parse_alert_status(raw_status)
    except RuleValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    try:
        async with tenant_connection(pool, tenant_id) as conn:
            row = await queries.update_alert_status(conn, tenant_id, alert_id, status.value)
    except asyncpg.UniqueViolationError:
        # reopening while a newer alert for the same device and rule is active
        raise HTTPException(status_code=409, detail="Another active alert exists for this device and rule")
    except Exception:
        logger.exception("Failed to update alert status")
        raise HTTPException(status_code=500, detail="Internal server error")
    if row is None:
        raise HTTPException(status_code=404, detail="Alert not found")
    logger.info(
        "Alert status updated",
        extra={"tenant_id": tenant_id, "alert_id": alert_id, "status": status.value},
    )
    return row


@router.get("/alerts")
async def list_alerts(
    status: Optional[str] = Query(None),
    severity: Optional[str] = Query(None),
    device_id: Optional[str] = Query(None, alias="deviceId"),
    paging: dict = Depends(page_pagination),
    pool=Depends(get_db_pool),
):
    tenant_id = get_tenant_id()
    status_value, severity_value = _filters(status, severity)
    device = parse_id(device_id, "deviceId") if device_id else None
    try:
        async with tenant_connection(pool, tenant_id) as conn:
            rows, total = await queries.fetch_alerts(
                conn,
                tenant_id,
                status=status_value,
                severity=severity_value,
                device_id=device,
                limit=paging["limit"],
                offset=paging["offset"],
            )
    except Exception:
        logger.exception("Failed to fetch tenant alerts")
        raise HTTPException(status_code=500, detail="Internal server error")

    limit = paging["limit"]
    return {
        "alerts": [alert_out(r) for r in rows],
        "pagination": {
            "page": paging["page"],
            "limit": limit,
            "total": total,
            "totalPages": (total + limit - 1) // limit,
        },
    }


@router.patch("/alerts/{alert_id}")
async def update_alert(alert_id: str, body: AlertStatusUpdate, pool=Depends(get_db_pool)):
    tenant_id = get_tenant_id()
    row = await _set_status(pool, tenant_id, parse_id(alert_id, "alert_id"), body.status)
    return {"alert": alert_out(row)}


@api_router.get("/alerts")
async def api_list_alerts(
    principal: ApiKeyPrincipal = Depends(ApiKeyAuth("alerts:read")),
    _: None = Depends(rate_limit("standard")),
    status: Optional[str] = Query(None),
    severity: Optional[str] = Query(None),
    device_id: Optional[str] = Query(None, alias="deviceId"),
    paging: dict = Depends(offset_pagination),
    pool=Depends(get_db_pool),
):
    status_value, severity_value = _filters(status, severity)
    device = parse_id(device_id, "deviceId") if device_id else None
    tenant_id = principal.tenant_id
    try:
        async with tenant_connection(pool, tenant_id) as conn:
            rows, total = await queries.fetch_alerts(
                conn,
                tenant_id,
                status=status_value,
                severity=severity_value,
                device_id=device,
                limit=paging["limit"],
                offset=paging["offset"],
            )
    except Exception:
        logger.exception("Failed to fetch alerts for API key")
        raise HTTPException(status_code=500, detail="Internal server error")
    return {
        "success": True,
        "data": [alert_out(r) for r in rows],
        "pagination": {"limit": paging["limit"], "offset": paging["offset"], "total": total},
    }


@api_router.patch("/alerts")
async def api_update_alert(
    body: ApiAlertStatusUpdate,
    principal: ApiKeyPrincipal = Depends(ApiKeyAuth("alerts:write")),
    _: None = Depends(rate_limit("standard")),
    pool=Depends(get_db_pool),
):
    row = await _set_status(pool, principal.tenant_id, parse_id(body.alert_id, "alertId"), body.status)
    return {"success": True, "data": alert_out(row)}
