from datetime import datetime, timezone

import pytest

from services.portal.routes import admin_rules as admin_rules_routes
from tests.conftest import fake_connection, session_headers

pytestmark = [pytest.mark.unit, pytest.mark.asyncio]

CREATED = datetime(2026, 3, 1, 9, tzinfo=timezone.utc)
RULE_BODY = {"deviceTypeId": "10", "variableCode": "w", "name": "Fleet low water", "operator": "<=", "threshold1": 20}


def _rule_row(**overrides):
    row = {
        "rule_id": 42,
        "tenant_id": None,
        "device_type_id": 10,
        "variable_code": "W",
        "rule_name": "Fleet low water",
        "operator": "lte",
        "threshold_1": 20.0,
        "threshold_2": None,
        "severity": "warning",
        "message_template": None,
        "is_active": True,
        "created_at": CREATED,
        "updated_at": CREATED,
    }
    row.update(overrides)
    return row


def _admin():
    return session_headers(tenant_id=None, role="admin", user_type="admin")


@pytest.fixture
def routed(conn, monkeypatch):
    monkeypatch.setattr(admin_rules_routes, "system_connection", fake_connection(conn))
    return conn


async def test_requires_session(client, routed):
    assert (await client.get("/api/admin/alert-rules")).status_code == 401


async def test_tenant_admin_is_forbidden(client, routed):
    resp = await client.get("/api/admin/alert-rules", headers=session_headers(role="owner"))
    assert resp.status_code == 403
    assert resp.json() == {"detail": "Platform admin access required"}
    assert routed.calls == []


async def test_list_every_rule(client, routed):
    routed.fetch_result = [_rule_row(), _rule_row(rule_id=43, tenant_id=4)]
    resp = await client.get("/api/admin/alert-rules", headers=_admin())
    assert resp.status_code == 200
    body = resp.json()
    assert body["total"] == 2
    assert [r["isGlobal"] for r in body["rules"]] == [True, False]
    _, query, args = routed.calls[0]
    assert "WHERE" not in query
    assert args == ()


async def test_list_filters(client, routed):
    routed.fetch_result = []
    await client.get("/api/admin/alert-rules", params={"scope": "global", "deviceTypeId": "10"}, headers=_admin())
    await client.get("/api/admin/alert-rules", params={"tenantId": "4"}, headers=_admin())
    (_, global_query, global_args), (_, tenant_query, tenant_args) = routed.calls
    assert "tenant_id IS NULL AND device_type_id = $1" in global_query
    assert global_args == (10,)
    assert "tenant_id = $1" in tenant_query
    assert tenant_args == (4,)


async def test_list_bad_scope(client, routed):
    resp = await client.get("/api/admin/alert-rules", params={"scope": "mine"}, headers=_admin())
    assert resp.status_code == 400


async def test_create_global_rule(client, routed):
    routed.fetchval_result = 1
    routed.fetchrow_result = _rule_row()
    resp = await client.post("/api/admin/alert-rules", json=RULE_BODY, headers=_admin())
    assert resp.status_code == 201
    assert resp.json()["rule"]["isGlobal"] is True
    [(_, query, args)] = routed.calls[1:]
    assert "INSERT INTO alert_rules" in query
    assert args == (None, 10, "W", "Fleet low water", "lte", 20.0, None, "warning", None, True)


async def test_create_rule_for_tenant(client, routed):
    routed.fetchval_result = 1
    routed.fetchrow_results = [{"tenant_id": 4, "name": "Acme", "email": None, "phone": None}, _rule_row(tenant_id=4)]
    resp = await client.post("/api/admin/alert-rules", json={**RULE_BODY, "tenantId": "4"}, headers=_admin())
    assert resp.status_code == 201
    assert resp.json()["rule"]["tenantId"] == "4"
    insert_args = [c for c in routed.calls if c[0] == "fetchrow"][1][2]
    assert insert_args[0] == 4


async def test_create_rule_unknown_tenant(client, routed):
    routed.fetchrow_results = [None]
    resp = await client.post("/api/admin/alert-rules", json={**RULE_BODY, "tenantId": 99}, headers=_admin())
    assert resp.status_code == 404
    assert resp.json() == {"detail": "Tenant not found"}


async def test_create_rule_unknown_device_type(client, routed):
    routed.fetchval_result = None
    resp = await client.post("/api/admin/alert-rules", json=RULE_BODY, headers=_admin())
    assert resp.status_code == 404
    assert resp.json() == {"detail": "Device type not found"}


async def test_create_rule_is_validated(client, routed):
    resp = await client.post(
        "/api/admin/alert-rules", json={**RULE_BODY, "operator": "between"}, headers=_admin()
    )
    assert resp.status_code == 400
    assert resp.json()["detail"] == "threshold2 is required for operator between"
    assert routed.calls == []


async def test_update_global_rule(client, routed):
    routed.fetchrow_results = [_rule_row(), _rule_row(threshold_1=15.0)]
    resp = await client.put("/api/admin/alert-rules/42", json={"threshold1": 15}, headers=_admin())
    assert resp.status_code == 200
    assert resp.json()["rule"]["threshold1"] == 15.0
    _, query, args = routed.calls[1]
    assert "WHERE rule_id = $1" in query
    assert "tenant_id" not in query.split("WHERE")[1].split("RETURNING")[0]
    assert args == (42, 15.0)


async def test_update_rejects_null_and_invalid(client, routed):
    resp = await client.put("/api/admin/alert-rules/42", json={"severity": None}, headers=_admin())
    assert resp.status_code == 400
    assert resp.json() == {"detail": "severity cannot be null"}
    assert routed.calls == []

    routed.fetchrow_results = [_rule_row()]
    resp = await client.put("/api/admin/alert-rules/42", json={"operator": "outside"}, headers=_admin())
    assert resp.status_code == 400


async def test_update_missing_rule(client, routed):
    routed.fetchrow_results = [None]
    resp = await client.put("/api/admin/alert-rules/7", json={"threshold1": 1}, headers=_admin())
    assert resp.status_code == 404


async def test_delete_any_rule(client, routed):
    routed.execute_result = "DELETE 1"
    resp = await client.delete("/api/admin/alert-rules/42", headers=_admin())
    assert resp.status_code == 200
    assert routed.calls == [("execute", "DELETE FROM alert_rules WHERE rule_id = ANY($1::bigint[])", ([42],))]

    routed.execute_result = "DELETE 0"
    assert (await client.delete("/api/admin/alert-rules/42", headers=_admin())).status_code == 404


async def test_bulk_delete(client, routed):
    routed.execute_result = "DELETE 2"
    resp = await client.request(
        "DELETE", "/api/admin/alert-rules/bulk-delete", json={"ids": ["3", "1", "3"]}, headers=_admin()
    )
    assert resp.status_code == 200
    assert resp.json() == {"message": "2 alert rule(s) deleted successfully", "deleted": 2}
    assert routed.calls[0][2] == ([1, 3],)


@pytest.mark.parametrize("ids", [[], ["abc"]])
async def test_bulk_delete_rejects_bad_ids(client, routed, ids):
    resp = await client.request(
        "DELETE", "/api/admin/alert-rules/bulk-delete", json={"ids": ids}, headers=_admin()
    )
    assert resp.status_code == 400
    assert routed.calls == []


async def test_database_error_is_500(client, routed):
    async def _boom(*_args):
        raise RuntimeError("db down")

    routed.fetch = _boom
    resp = await client.get("/api/admin/alert-rules", headers=_admin())
    assert resp.status_code == 500
