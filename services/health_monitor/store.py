"""Device and health-state access for the device health monitor."""

from datetime import datetime
from typing import Sequence


async def fetch_active_devices(conn) -> list[dict]:
    rows = await conn.fetch(
        """
        SELECT d.device_id, d.tenant_id, d.serial_number, d.nickname, d.last_seen_at,
               t.name AS tenant_name, t.email AS tenant_email,
               h.status AS reported_status
        FROM devices d
        JOIN tenants t ON t.tenant_id = d.tenant_id
        LEFT JOIN device_health_state h ON h.device_id = d.device_id
        WHERE d.status = 'active'
        ORDER BY d.tenant_id, d.device_id
        """
    )
    return [dict(r) for r in rows]


async def record_transitions(
    conn,
    device_ids: Sequence[int],
    tenant_ids: Sequence[int],
    statuses: Sequence[str],
    now: datetime,
) -> dict[int, str]:
    """
    Store each device's current health status.

    Only rows whose status actually changed are written, and only those are
    returned (device_id -> new status). Two concurrent runs therefore see a
    given transition exactly once between them.
    """
    if not device_ids:
        return {}
    rows = await conn.fetch(
        """
        INSERT INTO device_health_state (device_id, tenant_id, status, changed_at, notified_at)
        SELECT u.device_id, u.tenant_id, u.status, $4::timestamptz,
               CASE WHEN u.status = 'online' THEN NULL ELSE $4::timestamptz END
        FROM unnest($1::bigint[], $2::bigint[], $3::text[]) AS u(device_id, tenant_id, status)
        ON CONFLICT (device_id) DO UPDATE
            SET status = EXCLUDED.status,
                changed_at = EXCLUDED.changed_at,
                notified_at = EXCLUDED.notified_at
            WHERE device_health_state.status IS DISTINCT FROM EXCLUDED.status
        RETURNING device_id, status
        """,
        list(device_ids),
        list(tenant_ids),
        list(statuses),
        now,
    )
    return {r["device_id"]: r["status"] for r in rows}
