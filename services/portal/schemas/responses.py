"""Row -> JSON shaping shared by the portal and public API routes."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Optional


def iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _num(value: Any) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, Decimal):
        return float(value)
    return value


def _id(value: Any) -> Optional[str]:
    return str(value) if value is not None else None


def rule_out(row: dict) -> dict:
    return {
        "id": _id(row["rule_id"]),
        "tenantId": _id(row.get("tenant_id")),
        "isGlobal": row.get("tenant_id") is None,
        "deviceTypeId": _id(row["device_type_id"]),
        "variableCode": row["variable_code"],
        "name": row.get("rule_name"),
        "operator": row["operator"],
        "threshold1": _num(row.get("threshold_1")),
        "threshold2": _num(row.get("threshold_2")),
        "severity": row["severity"],
        "messageTemplate": row.get("message_template"),
        "isActive": bool(row.get("is_active", True)),
        "createdAt": iso(row.get("created_at")),
        "updatedAt": iso(row.get("updated_at")),
    }


def alert_out(row: dict) -> dict:
    out = {
        "id": _id(row["alert_id"]),
        "deviceId": _id(row["device_id"]),
        "alertRuleId": _id(row.get("alert_rule_id")),
        "variableCode": row.get("variable_code"),
        "value": _num(row.get("value")),
        "title": row.get("title"),
        "message": row.get("message"),
        "severity": row["severity"],
        "status": row["status"],
        "createdAt": iso(row.get("created_at")),
        "acknowledgedAt": iso(row.get("acknowledged_at")),
        "resolvedAt": iso(row.get("resolved_at")),
    }
    if "serial_number" in row:
        out["device"] = {"serialNumber": row.get("serial_number"), "nickname": row.get("nickname")}
    return out


def telemetry_out(row: dict) -> dict:
    return {
        "id": _id(row.get("id")),
        "deviceId": _id(row["device_id"]),
        "serialNumber": row.get("serial_number"),
        "variable": row["variable_code"],
        "value": _num(row["value"]),
        "timestamp": iso(row.get("captured_at")),
        "source": row.get("source"),
    }


def variable_out(row: dict) -> dict:
    return {
        "variableCode": row["variable_code"],
        "label": row.get("label"),
        "unit": row.get("unit"),
        "minValue": _num(row.get("min_value")),
        "maxValue": _num(row.get("max_value")),
        "isAlertable": bool(row.get("is_alertable", True)),
        "displayOrder": row.get("display_order", 0),
    }
