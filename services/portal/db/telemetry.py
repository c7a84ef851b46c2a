"""Telemetry store access and the report aggregates built on it."""

from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

import asyncpg


async def insert_telemetry(
    conn: asyncpg.Connection,
    tenant_id: int,
    device_id: int,
    readings: Iterable[Tuple[str, float, datetime]],
    source: str,
) -> int:
    """Append readings (variable_code, value, captured_at). Returns rows written."""
    records = [
        (tenant_id, device_id, variable, value, captured_at, source)
        for variable, value, captured_at in readings
    ]
    if not records:
        return 0
    await conn.executemany(
        """
        INSERT INTO telemetry (tenant_id, device_id, variable_code, value, captured_at, source)
        VALUES ($1, $2, $3, $4, $5, $6)
        """,
        records,
    )
    return len(records)


async def fetch_telemetry(
    conn: asyncpg.Connection,
    tenant_id: int,
    device_id: Optional[int] = None,
    variable_code: Optional[str] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    limit: int = 100,
    offset: int = 0,
) -> List[Dict[str, Any]]:
    clauses = ["t.tenant_id = $1"]
    params: list = [tenant_id]
    if device_id is not None:
        params.append(device_id)
        clauses.append(f"t.device_id = ${len(params)}")
    if variable_code:
        params.append(variable_code)
        clauses.append(f"t.variable_code = ${len(params)}")
    if start is not None:
        params.append(start)
        clauses.append(f"t.captured_at >= ${len(params)}")
    if end is not None:
        params.append(end)
        clauses.append(f"t.captured_at <= ${len(params)}")
    rows = await conn.fetch(
        f"""
        SELECT t.id, t.device_id, d.serial_number, t.variable_code, t.value,
               t.captured_at, t.source
        FROM telemetry t
        JOIN devices d ON d.device_id = t.device_id
        WHERE {" AND ".join(clauses)}
        ORDER BY t.captured_at DESC, t.id DESC
        LIMIT {int(limit)} OFFSET {int(offset)}
        """,
        *params,
    )
    return [dict(r) for r in rows]


async def fetch_variable_values(
    conn: asyncpg.Connection,
    tenant_id: int,
    device_id: int,
    start: datetime,
    end: datetime,
) -> Dict[str, List[float]]:
    """All readings for one device in the window, grouped by variable code."""
    rows = await conn.fetch(
        """
        SELECT variable_code, value
        FROM telemetry
        WHERE tenant_id = $1 AND device_id = $2
          AND captured_at >= $3 AND captured_at <= $4
        ORDER BY variable_code, captured_at
        """,
        tenant_id,
        device_id,
        start,
        end,
    )
    grouped: Dict[str, List[float]] = {}
    for r in rows:
        grouped.setdefault(r["variable_code"], []).append(r["value"])
    return grouped


async def fetch_summary_counts(
    conn: asyncpg.Connection, tenant_id: int, start: datetime, end: datetime
) -> Dict[str, Any]:
    devices = await conn.fetchrow(
        """
        SELECT COUNT(*) AS total,
               COUNT(*) FILTER (WHERE status = 'active') AS active
        FROM devices
        WHERE tenant_id = $1
        """,
        tenant_id,
    )
    alert_rows = await conn.fetch(
        """
        SELECT severity, status, COUNT(*) AS count
        FROM alerts
        WHERE tenant_id = $1 AND created_at >= $2 AND created_at <= $3
        GROUP BY severity, status
        """,
        tenant_id,
        start,
        end,
    )
    telemetry_count = await conn.fetchval(
        """
        SELECT COUNT(*)
        FROM telemetry
        WHERE tenant_id = $1 AND captured_at >= $2 AND captured_at <= $3
        """,
        tenant_id,
        start,
        end,
    )

    by_severity: Dict[str, int] = {}
    by_status: Dict[str, int] = {}
    for r in alert_rows:
        by_severity[r["severity"]] = by_severity.get(r["severity"], 0) + int(r["count"])
        by_status[r["status"]] = by_status.get(r["status"], 0) + int(r["count"])
    return {
        "devices": {
            "total": int(devices["total"] or 0) if devices else 0,
            "active": int(devices["active"] or 0) if devices else 0,
        },
        "alerts": {
            "total": sum(by_status.values()),
            "bySeverity": by_severity,
            "byStatus": by_status,
        },
        "telemetryCount": int(telemetry_count or 0),
    }
