from unittest.mock import AsyncMock

import pytest

from services.portal.routes import ingest as ingest_routes
from tests.conftest import fake_connection

pytestmark = [pytest.mark.unit, pytest.mark.asyncio]

DEVICE = {
    "device_id": 100,
    "tenant_id": 1,
    "device_type_id": 10,
    "serial_number": "WAT100-0001",
    "nickname": None,
    "status": "active",
    "last_seen_at": None,
}


@pytest.fixture
def routed(conn, monkeypatch):
    monkeypatch.setattr(ingest_routes, "system_connection", fake_connection(conn))
    # no rules configured for any variable
    conn.fetch_result = []
    return conn


def _stored(conn):
    [(_, _, args)] = [c for c in conn.calls if c[0] == "executemany"]
    return [(r[2], r[3], r[5]) for r in args[0]]


async def test_post_with_data_object(client, routed):
    routed.fetchrow_results = [DEVICE]
    resp = await client.post(
        "/api/ingest", json={"serialNumber": "wat100-0001", "data": {"w": 20, "WP": "35.5", "note": "x"}}
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["message"] == "Ingested 2 readings"
    assert body["alertsCreated"] == 0
    assert _stored(routed) == [("W", 20.0, "http"), ("WP", 35.5, "http")]
    assert routed.calls[0][2] == ("wat100-0001",)


async def test_post_with_raw_text_and_source(client, routed):
    routed.fetchrow_results = [DEVICE]
    resp = await client.post(
        "/api/ingest", json={"serial": "WAT100-0001", "rawText": "W=12,WP=1.5", "source": "sms"}
    )
    assert resp.status_code == 200
    assert _stored(routed) == [("W", 12.0, "sms"), ("WP", 1.5, "sms")]


@pytest.mark.parametrize(
    "body,detail",
    [
        ({"data": {"W": 1}}, "Must provide serialNumber"),
        ({"serialNumber": "S1"}, "Must provide data object or rawText to parse"),
        ({"serialNumber": "S1", "rawText": "hello"}, "No valid data to ingest"),
        ({"serialNumber": "S1", "data": {"W": 1}, "source": "carrier-pigeon"}, "source must be one of http, import, mqtt, sms"),
    ],
)
async def test_post_validation(client, routed, body, detail):
    resp = await client.post("/api/ingest", json=body)
    assert resp.status_code == 400
    assert resp.json()["detail"] == detail


async def test_post_unknown_serial_is_404(client, routed):
    routed.fetchrow_results = [None]
    resp = await client.post("/api/ingest", json={"serialNumber": "NOPE", "data": {"W": 1}})
    assert resp.status_code == 404


async def test_post_inactive_device_is_404(client, routed):
    routed.fetchrow_results = [{**DEVICE, "status": "inactive"}]
    resp = await client.post("/api/ingest", json={"serialNumber": "WAT100-0001", "data": {"W": 1}})
    assert resp.status_code == 404
    assert not [c for c in routed.calls if c[0] == "executemany"]


async def test_get_with_query_params(client, routed):
    routed.fetchrow_results = [DEVICE]
    resp = await client.get("/api/ingest", params={"serial": "WAT100-0001", "W": "20", "WP": "35"})
    assert resp.status_code == 200
    assert _stored(routed) == [("W", 20.0, "http"), ("WP", 35.0, "http")]


async def test_get_requires_serial_and_data(client, routed):
    assert (await client.get("/api/ingest", params={"W": "20"})).status_code == 400
    resp = await client.get("/api/ingest", params={"serialNumber": "WAT100-0001"})
    assert resp.status_code == 400
    assert resp.json()["detail"] == "No data parameters provided"


async def test_ingest_opens_alert_and_dispatches(client, routed, app_state, monkeypatch):
    from services.evaluator import store as evaluator_store

    monkeypatch.setattr(
        evaluator_store,
        "fetch_applicable_rules",
        AsyncMock(
            return_value=[
                {
                    "rule_id": 8,
                    "tenant_id": None,
                    "device_type_id": 10,
                    "variable_code": "W",
                    "rule_name": "Critical Water Alert",
                    "operator": "<=",
                    "threshold_1": 10,
                    "threshold_2": None,
                    "severity": "critical",
                    "message_template": "URGENT: Water level is critically low at {value}%!",
                    "is_active": True,
                }
            ]
        ),
    )
    monkeypatch.setattr(evaluator_store, "fetch_variable", AsyncMock(return_value=None))
    monkeypatch.setattr(evaluator_store, "open_alert_if_absent", AsyncMock(return_value={"alert_id": 9}))
    routed.fetchrow_results = [DEVICE]

    resp = await client.post("/api/ingest", json={"serialNumber": "WAT100-0001", "data": {"W": 8}})

    assert resp.status_code == 200
    assert resp.json()["alertsCreated"] == 1
    [batch] = app_state.dispatcher.batches
    assert batch[0].severity == "critical"
    assert batch[0].message == "URGENT: Water level is critically low at 8%!"


async def test_evaluation_failure_does_not_fail_ingestion(client, routed, monkeypatch):
    from services.evaluator import store as evaluator_store

    monkeypatch.setattr(evaluator_store, "fetch_variable", AsyncMock(side_effect=RuntimeError("boom")))
    routed.fetchrow_results = [DEVICE]
    resp = await client.post("/api/ingest", json={"serialNumber": "WAT100-0001", "data": {"W": 8}})
    assert resp.status_code == 200
    assert resp.json()["alertsCreated"] == 0
    assert _stored(routed) == [("W", 8.0, "http")]
