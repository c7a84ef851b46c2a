"""
Platform-admin alert rule management.

Admins see and edit every rule: global ones (tenant_id NULL) and those owned
by any tenant. Hard delete, single and bulk, lives here only.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from services.portal.db import queries
from services.portal.db.pool import system_connection
from services.portal.dependencies import get_db_pool, parse_id
from services.portal.middleware.auth import JWTBearer
from services.portal.middleware.tenant import get_user, inject_tenant_context, require_platform_admin
from services.portal.routes.alert_rules import (
    prepare_rule_changes,
    reject_null_fields,
    validated_rule_fields,
)
from services.portal.schemas import AdminAlertRuleCreate, AlertRuleBulkDelete, AlertRuleUpdate, rule_out

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/admin",
    tags=["admin"],
    dependencies=[
        Depends(JWTBearer()),
        Depends(inject_tenant_context),
        Depends(require_platform_admin),
    ],
)


def _admin_email() -> Optional[str]:
    return get_user().get("email")


@router.get("/alert-rules")
async def list_all_alert_rules(
    tenant_id: Optional[str] = Query(None, alias="tenantId"),
    scope: Optional[str] = Query(None),
    device_type_id: Optional[str] = Query(None, alias="deviceTypeId"),
    pool=Depends(get_db_pool),
):
    if scope not in (None, "all", "global"):
        raise HTTPException(status_code=400, detail="scope must be 'all' or 'global'")
    tid = parse_id(tenant_id, "tenantId") if tenant_id else None
    type_id = parse_id(device_type_id, "deviceTypeId") if device_type_id else None
    try:
        async with system_connection(pool) as conn:
            rows = await queries.fetch_all_alert_rules(
                conn, tenant_id=tid, global_only=scope == "global", device_type_id=type_id
            )
    except Exception:
        logger.exception("Failed to fetch alert rules for admin")
        raise HTTPException(status_code=500, detail="Internal server error")
    return {"rules": [rule_out(r) for r in rows], "total": len(rows)}


@router.post("/alert-rules", status_code=201)
async def create_any_alert_rule(body: AdminAlertRuleCreate, pool=Depends(get_db_pool)):
    fields = validated_rule_fields(body)
    owner = parse_id(body.tenant_id, "tenantId") if body.tenant_id not in (None, "") else None

    try:
        async with system_connection(pool) as conn:
            if owner is not None and await queries.fetch_tenant_contact(conn, owner) is None:
                raise HTTPException(status_code=404, detail="Tenant not found")
            if not await queries.device_type_exists(conn, fields["device_type_id"]):
                raise HTTPException(status_code=404, detail="Device type not found")
            row = await queries.create_alert_rule(conn, owner, global_allowed=True, **fields)
    except HTTPException:
        raise
    except Exception:
        logger.exception("Failed to create alert rule for admin")
        raise HTTPException(status_code=500, detail="Internal server error")

    logger.info(
        "Alert rule created by platform admin",
        extra={"tenant_id": owner, "rule_id": row["rule_id"], "admin": _admin_email()},
    )
    return {"rule": rule_out(row)}


@router.get("/alert-rules/{rule_id}")
async def get_any_alert_rule(rule_id: str, pool=Depends(get_db_pool)):
    rid = parse_id(rule_id, "rule_id")
    try:
        async with system_connection(pool) as conn:
            row = await queries.fetch_alert_rule_by_id(conn, rid)
    except Exception:
        logger.exception("Failed to fetch alert rule for admin")
        raise HTTPException(status_code=500, detail="Internal server error")
    if row is None:
        raise HTTPException(status_code=404, detail="Alert rule not found")
    return {"rule": rule_out(row)}


@router.put("/alert-rules/{rule_id}")
async def update_any_alert_rule(rule_id: str, body: AlertRuleUpdate, pool=Depends(get_db_pool)):
    rid = parse_id(rule_id, "rule_id")
    changes = body.model_dump(exclude_unset=True)
    reject_null_fields(changes)

    try:
        async with system_connection(pool) as conn:
            existing = await queries.fetch_alert_rule_by_id(conn, rid)
            if existing is None:
                raise HTTPException(status_code=404, detail="Alert rule not found")
            changes = prepare_rule_changes(existing, changes)
            row = await queries.admin_update_alert_rule(conn, rid, changes)
    except HTTPException:
        raise
    except Exception:
        logger.exception("Failed to update alert rule for admin")
        raise HTTPException(status_code=500, detail="Internal server error")

    if row is None:
        raise HTTPException(status_code=404, detail="Alert rule not found")
    return {"rule": rule_out(row)}


# Registered before /alert-rules/{rule_id} so "bulk-delete" is not taken as an id.
@router.delete("/alert-rules/bulk-delete")
async def bulk_delete_alert_rules(body: AlertRuleBulkDelete, pool=Depends(get_db_pool)):
    rule_ids = sorted({parse_id(raw, "ids") for raw in body.ids})
    try:
        async with system_connection(pool) as conn:
            deleted = await queries.delete_alert_rules(conn, rule_ids)
    except Exception:
        logger.exception("Failed to bulk delete alert rules")
        raise HTTPException(status_code=500, detail="Internal server error")

    logger.info(
        "Alert rules deleted by platform admin",
        extra={"requested": len(rule_ids), "deleted": deleted, "admin": _admin_email()},
    )
    return {"message": f"{deleted} alert rule(s) deleted successfully", "deleted": deleted}


@router.delete("/alert-rules/{rule_id}")
async def delete_any_alert_rule(rule_id: str, pool=Depends(get_db_pool)):
    rid = parse_id(rule_id, "rule_id")
    try:
        async with system_connection(pool) as conn:
            deleted = await queries.delete_alert_rules(conn, [rid])
    except Exception:
        logger.exception("Failed to delete alert rule for admin")
        raise HTTPException(status_code=500, detail="Internal server error")
    if not deleted:
        raise HTTPException(status_code=404, detail="Alert rule not found")
    logger.info("Alert rule deleted by platform admin", extra={"rule_id": rid, "admin": _admin_email()})
    return {"success": True}
