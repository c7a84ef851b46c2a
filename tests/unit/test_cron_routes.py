from datetime import datetime, timedelta, timezone

import pytest

from services.portal.routes import cron as cron_routes
from tests.conftest import fake_connection

pytestmark = [pytest.mark.unit, pytest.mark.asyncio]


def _device(device_id, last_seen_at, reported=None, tenant_id=1):
    return {
        "device_id": device_id,
        "tenant_id": tenant_id,
        "serial_number": f"WAT100-{device_id:04d}",
        "nickname": None,
        "last_seen_at": last_seen_at,
        "tenant_name": "Acme Water",
        "tenant_email": "ops@acme.test",
        "reported_status": reported,
    }


@pytest.fixture
def routed(conn, monkeypatch):
    monkeypatch.setattr(cron_routes, "system_connection", fake_connection(conn))
    return conn


def _fleet(conn):
    now = datetime.now(timezone.utc)
    conn.fetch_results = [
        [
            _device(1, now - timedelta(minutes=5)),
            _device(2, now - timedelta(hours=6)),
            _device(3, None),
            _device(4, now - timedelta(hours=30), reported="offline"),
        ],
        # rows the upsert actually changed
        [
            {"device_id": 1, "status": "online"},
            {"device_id": 2, "status": "offline"},
            {"device_id": 3, "status": "never_connected"},
        ],
    ]


async def test_device_health_open_without_secret(client, routed, app_state, monkeypatch):
    monkeypatch.delenv("CRON_SECRET", raising=False)
    _fleet(routed)

    resp = await client.get("/api/cron/device-health")

    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["stats"] == {"total": 4, "online": 1, "offline": 2, "neverConnected": 1}
    assert [d["deviceId"] for d in body["offlineDevices"]] == ["2", "3", "4"]
    assert body["newlyReported"] == 2
    assert body["alerts"]["sent"] == 2

    [batch] = app_state.dispatcher.batches
    tenant_notice, digest = batch
    assert tenant_notice.recipients["email"] == "ops@acme.test"
    assert tenant_notice.subject == "2 devices not reporting"
    assert "never connected" in tenant_notice.message
    assert digest.recipients["email"] == "ops@example.com"
    assert "WAT100-0004" not in digest.message


async def test_device_health_requires_secret_when_configured(client, routed, monkeypatch):
    monkeypatch.setenv("CRON_SECRET", "s3cret")
    resp = await client.get("/api/cron/device-health")
    assert resp.status_code == 401
    resp = await client.get("/api/cron/device-health", headers={"X-Cron-Secret": "wrong"})
    assert resp.status_code == 401
    assert routed.calls == []


async def test_device_health_accepts_header_or_query_secret(client, routed, monkeypatch):
    monkeypatch.setenv("CRON_SECRET", "s3cret")
    routed.fetch_result = []
    resp = await client.post("/api/cron/device-health", headers={"X-Cron-Secret": "s3cret"})
    assert resp.status_code == 200
    resp = await client.get("/api/cron/device-health", params={"secret": "s3cret"})
    assert resp.status_code == 200


async def test_device_health_quiet_run_sends_nothing(client, routed, app_state):
    routed.fetch_result = []
    resp = await client.get("/api/cron/device-health")
    assert resp.status_code == 200
    assert resp.json()["stats"]["total"] == 0
    assert resp.json()["alerts"]["sent"] == 0
    assert app_state.dispatcher.batches == [[]]


async def test_device_health_database_error(client, routed):
    async def _boom(*_args):
        raise RuntimeError("db down")

    routed.fetch = _boom
    resp = await client.get("/api/cron/device-health")
    assert resp.status_code == 500
