"""
Rule creation, telemetry submission, alert listing and resolution driven
through the HTTP routes against one in-memory database.
"""

from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest

from services.portal.middleware import api_key as api_key_module
from services.portal.middleware.api_key import ApiKeyPrincipal
from services.portal.routes import alert_rules as alert_rules_routes
from services.portal.routes import alerts as alerts_routes
from services.portal.routes import telemetry as telemetry_routes
from tests.conftest import fake_connection, session_headers

pytestmark = [pytest.mark.unit, pytest.mark.asyncio]

BOILER_TYPE = 10
DEVICE = {
    "device_id": 100,
    "tenant_id": 1,
    "device_type_id": BOILER_TYPE,
    "serial_number": "BLR-0001",
    "nickname": "Boiler room",
    "status": "active",
    "last_seen_at": None,
}


class _Savepoint:
    async def __aenter__(self):
        return self

    async def __aexit__(self, *args):
        return False


class AlertingDb:
    """
    Just enough of the alerting schema to answer the SQL the routes issue.
    Active alerts are unique per (device, rule) while open or acknowledged.
    """

    def __init__(self):
        self.rules: list[dict] = []
        self.alerts: list[dict] = []
        self.telemetry: list[tuple] = []
        self.last_seen: dict[int, datetime] = {}

    def transaction(self):
        return _Savepoint()

    async def fetchval(self, query, *args):
        if "FROM device_types" in query:
            return 1 if args[0] == BOILER_TYPE else None
        if "COUNT(*) FROM alerts" in query:
            return len(self._alerts_matching(query, args))
        raise AssertionError(f"unexpected fetchval: {query}")

    async def fetchrow(self, query, *args):
        if "INSERT INTO alert_rules" in query:
            return self._insert_rule(args)
        if "INSERT INTO alerts" in query:
            return self._open_alert(args)
        if "UPDATE alerts" in query:
            return self._set_alert_status(*args)
        if "FROM device_type_variables" in query:
            if args == (BOILER_TYPE, "T"):
                return {"label": "Temperature", "unit": "C", "is_alertable": True}
            return None
        if "FROM devices" in query:
            return dict(DEVICE) if args == (1, 100) else None
        raise AssertionError(f"unexpected fetchrow: {query}")

    async def fetch(self, query, *args):
        if "FROM alert_rules" in query:
            tenant_id, device_type_id, variable_code = args
            return [
                r for r in self.rules
                if r["tenant_id"] in (None, tenant_id)
                and r["device_type_id"] == device_type_id
                and r["variable_code"] == variable_code
                and r["is_active"]
            ]
        if "FROM alerts a" in query:
            rows = self._alerts_matching(query, args)
            rows = sorted(rows, key=lambda a: a["alert_id"], reverse=True)
            return [{**a, "serial_number": DEVICE["serial_number"], "nickname": DEVICE["nickname"]} for a in rows]
        raise AssertionError(f"unexpected fetch: {query}")

    async def execute(self, query, *args):
        if "UPDATE devices" in query:
            device_id, seen_at = args
            self.last_seen[device_id] = max(self.last_seen.get(device_id, seen_at), seen_at)
            return "UPDATE 1"
        raise AssertionError(f"unexpected execute: {query}")

    async def executemany(self, query, records):
        self.telemetry.extend(records)

    def _insert_rule(self, args):
        keys = (
            "tenant_id", "device_type_id", "variable_code", "rule_name", "operator",
            "threshold_1", "threshold_2", "severity", "message_template", "is_active",
        )
        now = datetime.now(timezone.utc)
        rule = {"rule_id": len(self.rules) + 1, **dict(zip(keys, args)), "created_at": now, "updated_at": now}
        self.rules.append(rule)
        return rule

    def _open_alert(self, args):
        tenant_id, device_id, rule_id, variable_code, value, title, message, severity = args
        for a in self.alerts:
            if a["device_id"] == device_id and a["alert_rule_id"] == rule_id and a["status"] in ("open", "acknowledged"):
                return None
        alert = {
            "alert_id": 500 + len(self.alerts) + 1,
            "tenant_id": tenant_id,
            "device_id": device_id,
            "alert_rule_id": rule_id,
            "variable_code": variable_code,
            "value": value,
            "title": title,
            "message": message,
            "severity": severity,
            "status": "open",
            "created_at": datetime.now(timezone.utc),
            "acknowledged_at": None,
            "resolved_at": None,
        }
        self.alerts.append(alert)
        return {"alert_id": alert["alert_id"], "created_at": alert["created_at"]}

    def _set_alert_status(self, tenant_id, alert_id, status):
        for a in self.alerts:
            if a["tenant_id"] == tenant_id and a["alert_id"] == alert_id:
                a["status"] = status
                if status == "resolved":
                    a["resolved_at"] = a["resolved_at"] or datetime.now(timezone.utc)
                else:
                    a["resolved_at"] = None
                return dict(a)
        return None

    def _alerts_matching(self, query, args):
        tenant_id, *rest = args
        filters = [
            column
            for column in ("status", "severity", "device_id")
            if f"a.{column} = $" in query
        ]
        wanted = dict(zip(filters, rest))
        return [
            a for a in self.alerts
            if a["tenant_id"] == tenant_id and all(a[k] == v for k, v in wanted.items())
        ]


@pytest.fixture
def db(monkeypatch):
    db = AlertingDb()
    for module in (alert_rules_routes, telemetry_routes, alerts_routes):
        monkeypatch.setattr(module, "tenant_connection", fake_connection(db))
    principal = ApiKeyPrincipal(key_id=11, tenant_id=1, scopes=frozenset({"telemetry:write"}))
    monkeypatch.setattr(api_key_module, "resolve_api_key", AsyncMock(return_value=principal))
    return db


async def _submit(client, value):
    resp = await client.post(
        "/api/v1/telemetry",
        json={"deviceId": "100", "readings": [{"variable": "T", "value": value}]},
        headers={"X-API-Key": "mk_test"},
    )
    assert resp.status_code == 201
    return resp.json()["data"]


async def _open_alerts(client):
    resp = await client.get("/api/portal/alerts", params={"status": "open"}, headers=session_headers())
    assert resp.status_code == 200
    return resp.json()


async def test_high_temperature_flow(client, db, app_state):
    resp = await client.post(
        "/api/portal/alert-rules",
        json={
            "deviceTypeId": str(BOILER_TYPE),
            "variableCode": "T",
            "name": "Overheat",
            "operator": "gt",
            "threshold1": 40,
            "severity": "critical",
        },
        headers=session_headers(),
    )
    assert resp.status_code == 201
    rule_id = resp.json()["rule"]["id"]

    assert await _submit(client, 45) == {"created": 1, "alertsCreated": 1}
    assert await _submit(client, 45) == {"created": 1, "alertsCreated": 0}

    listed = await _open_alerts(client)
    assert listed["pagination"]["total"] == 1
    [alert] = listed["alerts"]
    assert alert["severity"] == "critical"
    assert alert["alertRuleId"] == rule_id
    assert alert["value"] == 45.0
    assert alert["device"]["serialNumber"] == "BLR-0001"
    assert len(app_state.dispatcher.batches) == 1

    resp = await client.patch(
        f"/api/portal/alerts/{alert['id']}", json={"status": "resolved"}, headers=session_headers()
    )
    assert resp.status_code == 200
    resolved = resp.json()["alert"]
    assert resolved["status"] == "resolved"
    assert resolved["resolvedAt"] is not None
    assert (await _open_alerts(client))["alerts"] == []

    # A resolved alert is never reopened; the next match opens a fresh one.
    assert await _submit(client, 45) == {"created": 1, "alertsCreated": 1}
    [fresh] = (await _open_alerts(client))["alerts"]
    assert fresh["id"] != alert["id"]
    old = next(a for a in db.alerts if str(a["alert_id"]) == alert["id"])
    assert old["status"] == "resolved"

    assert len(db.telemetry) == 3
    assert 100 in db.last_seen


async def test_value_below_threshold_opens_nothing(client, db):
    await client.post(
        "/api/portal/alert-rules",
        json={"deviceTypeId": BOILER_TYPE, "variableCode": "T", "name": "Overheat", "operator": "gt", "threshold1": 40},
        headers=session_headers(),
    )
    assert await _submit(client, 40) == {"created": 1, "alertsCreated": 0}
    assert (await _open_alerts(client))["pagination"]["total"] == 0
