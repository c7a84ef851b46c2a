"""Alert rule management for the tenant portal."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from typing import Optional

from services.evaluator.rules import RuleValidationError, validate_rule
from services.portal.db import queries
from services.portal.db.pool import tenant_connection
from services.portal.dependencies import get_db_pool, parse_id
from services.portal.middleware.auth import JWTBearer
from services.portal.middleware.tenant import (
    get_tenant_id,
    inject_tenant_context,
    require_tenant_admin,
    require_tenant_user,
)
from services.portal.schemas import AlertRuleCreate, AlertRuleUpdate, rule_out

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/portal",
    tags=["alert-rules"],
    dependencies=[
        Depends(JWTBearer()),
        Depends(inject_tenant_context),
        Depends(require_tenant_user),
    ],
)


# Request-body names of rule fields whose columns are NOT NULL or that a rule
# cannot work without.
NON_NULLABLE_RULE_FIELDS = {
    "variable_code": "variableCode",
    "rule_name": "name",
    "operator": "operator",
    "threshold_1": "threshold1",
    "severity": "severity",
    "is_active": "isActive",
}


def validated_rule_fields(body: AlertRuleCreate) -> dict:
    """Validate a new rule and return create_alert_rule keyword arguments."""
    try:
        operator, t1, t2, severity = validate_rule(
            body.operator, body.threshold_1, body.threshold_2, body.severity
        )
    except RuleValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return {
        "device_type_id": parse_id(body.device_type_id, "deviceTypeId"),
        "variable_code": body.variable_code.strip().upper(),
        "rule_name": body.rule_name.strip(),
        "operator": operator.value,
        "threshold_1": t1,
        "threshold_2": t2,
        "severity": severity.value,
        "message_template": body.message_template,
        "is_active": body.is_active,
    }


def reject_null_fields(changes: dict) -> None:
    for key, name in NON_NULLABLE_RULE_FIELDS.items():
        if key in changes and changes[key] is None:
            raise HTTPException(status_code=400, detail=f"{name} cannot be null")


def prepare_rule_changes(existing: dict, changes: dict) -> dict:
    """Validate the rule as it will look after the update; normalise changed fields."""
    merged = {**existing, **changes}
    try:
        operator, _, _, severity = validate_rule(
            merged.get("operator"),
            merged.get("threshold_1"),
            merged.get("threshold_2"),
            merged.get("severity"),
        )
    except RuleValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    changes = dict(changes)
    if "operator" in changes:
        changes["operator"] = operator.value
    if "severity" in changes:
        changes["severity"] = severity.value
    if "variable_code" in changes:
        changes["variable_code"] = changes["variable_code"].strip().upper()
    if "rule_name" in changes:
        changes["rule_name"] = changes["rule_name"].strip()
    return changes


@router.get("/alert-rules")
async def list_alert_rules(
    device_type_id: Optional[str] = Query(None, alias="deviceTypeId"),
    pool=Depends(get_db_pool),
):
    tenant_id = get_tenant_id()
    type_id = parse_id(device_type_id, "deviceTypeId") if device_type_id else None
    try:
        async with tenant_connection(pool, tenant_id) as conn:
            rows = await queries.fetch_alert_rules(conn, tenant_id, device_type_id=type_id)
    except Exception:
        logger.exception("Failed to fetch alert rules")
        raise HTTPException(status_code=500, detail="Internal server error")
    return {"rules": [rule_out(r) for r in rows], "total": len(rows)}


@router.get("/alert-rules/{rule_id}")
async def get_alert_rule(rule_id: str, pool=Depends(get_db_pool)):
    tenant_id = get_tenant_id()
    rid = parse_id(rule_id, "rule_id")
    try:
        async with tenant_connection(pool, tenant_id) as conn:
            row = await queries.fetch_alert_rule(conn, tenant_id, rid)
    except Exception:
        logger.exception("Failed to fetch alert rule")
        raise HTTPException(status_code=500, detail="Internal server error")
    if row is None:
        raise HTTPException(status_code=404, detail="Alert rule not found")
    return {"rule": rule_out(row)}


@router.post("/alert-rules", status_code=201, dependencies=[Depends(require_tenant_admin)])
async def create_alert_rule(body: AlertRuleCreate, pool=Depends(get_db_pool)):
    tenant_id = get_tenant_id()
    fields = validated_rule_fields(body)

    try:
        async with tenant_connection(pool, tenant_id) as conn:
            if not await queries.device_type_exists(conn, fields["device_type_id"]):
                raise HTTPException(status_code=404, detail="Device type not found")
            row = await queries.create_alert_rule(conn, tenant_id, **fields)
    except HTTPException:
        raise
    except Exception:
        logger.exception("Failed to create alert rule")
        raise HTTPException(status_code=500, detail="Internal server error")

    logger.info(
        "Alert rule created",
        extra={"tenant_id": tenant_id, "rule_id": row["rule_id"], "operator": fields["operator"]},
    )
    return {"rule": rule_out(row)}


@router.put("/alert-rules/{rule_id}", dependencies=[Depends(require_tenant_admin)])
async def update_alert_rule(rule_id: str, body: AlertRuleUpdate, pool=Depends(get_db_pool)):
    tenant_id = get_tenant_id()
    rid = parse_id(rule_id, "rule_id")
    changes = body.model_dump(exclude_unset=True)
    reject_null_fields(changes)

    try:
        async with tenant_connection(pool, tenant_id) as conn:
            existing = await queries.fetch_alert_rule(conn, tenant_id, rid)
            if existing is None:
                raise HTTPException(status_code=404, detail="Alert rule not found")
            if existing.get("tenant_id") is None:
                raise HTTPException(status_code=403, detail="Global rules cannot be edited")
            changes = prepare_rule_changes(existing, changes)
            row = await queries.update_alert_rule(conn, tenant_id, rid, changes)
    except HTTPException:
        raise
    except Exception:
        logger.exception("Failed to update alert rule")
        raise HTTPException(status_code=500, detail="Internal server error")

    if row is None:
        raise HTTPException(status_code=404, detail="Alert rule not found")
    return {"rule": rule_out(row)}


@router.delete("/alert-rules/{rule_id}", dependencies=[Depends(require_tenant_admin)])
async def delete_alert_rule(rule_id: str, pool=Depends(get_db_pool)):
    tenant_id = get_tenant_id()
    rid = parse_id(rule_id, "rule_id")
    try:
        async with tenant_connection(pool, tenant_id) as conn:
            deleted = await queries.delete_alert_rule(conn, tenant_id, rid)
    except Exception:
        logger.exception("Failed to delete alert rule")
        raise HTTPException(status_code=500, detail="Internal server error")
    if not deleted:
        raise HTTPException(status_code=404, detail="Alert rule not found")
    return {"success": True}
