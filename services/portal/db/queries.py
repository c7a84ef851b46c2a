from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

import asyncpg

RULE_COLUMNS = """
    rule_id, tenant_id, device_type_id, variable_code, rule_name, operator,
    threshold_1, threshold_2, severity, message_template, is_active,
    created_at, updated_at
"""

ALERT_COLUMNS = """
    a.alert_id, a.tenant_id, a.device_id, a.alert_rule_id, a.variable_code, a.value,
    a.title, a.message, a.severity, a.status, a.created_at, a.acknowledged_at,
    a.resolved_at, d.serial_number, d.nickname
"""

# Columns a rule update may touch, keyed by the name used in request bodies.
RULE_UPDATABLE = {
    "rule_name": "rule_name",
    "variable_code": "variable_code",
    "operator": "operator",
    "threshold_1": "threshold_1",
    "threshold_2": "threshold_2",
    "severity": "severity",
    "message_template": "message_template",
    "is_active": "is_active",
}


def _require_tenant(tenant_id) -> None:
    if tenant_id is None or str(tenant_id).strip() == "":
        raise ValueError("tenant_id is required")


# --- devices ---


async def fetch_device(
    conn: asyncpg.Connection, tenant_id: int, device_id: int
) -> Optional[Dict[str, Any]]:
    _require_tenant(tenant_id)
    row = await conn.fetchrow(
        """
        SELECT device_id, tenant_id, device_type_id, serial_number, nickname,
               status, last_seen_at
        FROM devices
        WHERE tenant_id = $1 AND device_id = $2
        """,
        tenant_id,
        device_id,
    )
    return dict(row) if row else None


async def fetch_device_by_serial(conn: asyncpg.Connection, serial_number: str) -> Optional[Dict[str, Any]]:
    row = await conn.fetchrow(
        """
        SELECT device_id, tenant_id, device_type_id, serial_number, nickname,
               status, last_seen_at
        FROM devices
        WHERE upper(serial_number) = upper($1)
        """,
        serial_number,
    )
    return dict(row) if row else None


async def touch_device_last_seen(conn: asyncpg.Connection, device_id: int, seen_at: datetime) -> None:
    # seen_at is the receive time; concurrent submissions never move it backwards.
    await conn.execute(
        """
        UPDATE devices
        SET last_seen_at = GREATEST(COALESCE(last_seen_at, $2), $2)
        WHERE device_id = $1
        """,
        device_id,
        seen_at,
    )


# --- variable catalog ---


async def device_type_exists(conn: asyncpg.Connection, device_type_id: int) -> bool:
    found = await conn.fetchval(
        "SELECT 1 FROM device_types WHERE device_type_id = $1",
        device_type_id,
    )
    return bool(found)


async def fetch_device_type_variables(
    conn: asyncpg.Connection, device_type_id: int
) -> List[Dict[str, Any]]:
    rows = await conn.fetch(
        """
        SELECT device_type_id, variable_code, label, unit, min_value, max_value,
               is_alertable, display_order
        FROM device_type_variables
        WHERE device_type_id = $1
        ORDER BY display_order, variable_code
        """,
        device_type_id,
    )
    return [dict(r) for r in rows]


# --- alert rules ---


async def fetch_alert_rules(
    conn: asyncpg.Connection,
    tenant_id: int,
    device_type_id: Optional[int] = None,
    include_inactive: bool = True,
) -> List[Dict[str, Any]]:
    _require_tenant(tenant_id)
    clauses = ["(tenant_id = $1 OR tenant_id IS NULL)"]
    params: list = [tenant_id]
    if device_type_id is not None:
        params.append(device_type_id)
        clauses.append(f"device_type_id = ${len(params)}")
    if not include_inactive:
        clauses.append("is_active = true")
    rows = await conn.fetch(
        f"""
        SELECT {RULE_COLUMNS}
        FROM alert_rules
        WHERE {" AND ".join(clauses)}
        ORDER BY device_type_id, variable_code, rule_id
        """,
        *params,
    )
    return [dict(r) for r in rows]


async def fetch_alert_rule(
    conn: asyncpg.Connection, tenant_id: int, rule_id: int
) -> Optional[Dict[str, Any]]:
    """Rules visible to the tenant: its own plus global ones."""
    _require_tenant(tenant_id)
    row = await conn.fetchrow(
        f"""
        SELECT {RULE_COLUMNS}
        FROM alert_rules
        WHERE rule_id = $2 AND (tenant_id = $1 OR tenant_id IS NULL)
        """,
        tenant_id,
        rule_id,
    )
    return dict(row) if row else None


async def create_alert_rule(
    conn: asyncpg.Connection,
    tenant_id: int,
    device_type_id: int,
    variable_code: str,
    rule_name: str,
    operator: str,
    threshold_1: float,
    threshold_2: Optional[float],
    severity: str,
    message_template: Optional[str],
    is_active: bool = True,
    global_allowed: bool = False,
) -> Dict[str, Any]:
    """
    Insert a rule owned by `tenant_id`. Platform admins pass
    global_allowed=True to create a global rule with tenant_id None.
    """
    if not (global_allowed and tenant_id is None):
        _require_tenant(tenant_id)
    row = await conn.fetchrow(
        f"""
        INSERT INTO alert_rules (
            tenant_id, device_type_id, variable_code, rule_name, operator,
            threshold_1, threshold_2, severity, message_template, is_active
        )
        VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
        RETURNING {RULE_COLUMNS}
        """,
        tenant_id,
        device_type_id,
        variable_code,
        rule_name,
        operator,
        threshold_1,
        threshold_2,
        severity,
        message_template,
        is_active,
    )
    return dict(row)


def _rule_set_clauses(changes: Dict[str, Any], params: list) -> List[str]:
    sets = []
    for key, value in changes.items():
        column = RULE_UPDATABLE.get(key)
        if column is None:
            raise ValueError(f"Unknown alert rule field: {key}")
        params.append(value)
        sets.append(f"{column} = ${len(params)}")
    return sets


async def update_alert_rule(
    conn: asyncpg.Connection, tenant_id: int, rule_id: int, changes: Dict[str, Any]
) -> Optional[Dict[str, Any]]:
    """Apply `changes` to a tenant-owned rule. Global rules are never matched."""
    _require_tenant(tenant_id)
    params: list = [tenant_id, rule_id]
    sets = _rule_set_clauses(changes, params)
    if not sets:
        row = await conn.fetchrow(
            f"SELECT {RULE_COLUMNS} FROM alert_rules WHERE tenant_id = $1 AND rule_id = $2",
            *params,
        )
        return dict(row) if row else None
    sets.append("updated_at = now()")
    row = await conn.fetchrow(
        f"""
        UPDATE alert_rules
        SET {", ".join(sets)}
        WHERE tenant_id = $1 AND rule_id = $2
        RETURNING {RULE_COLUMNS}
        """,
        *params,
    )
    return dict(row) if row else None


async def delete_alert_rule(conn: asyncpg.Connection, tenant_id: int, rule_id: int) -> bool:
    _require_tenant(tenant_id)
    result = await conn.execute(
        "DELETE FROM alert_rules WHERE tenant_id = $1 AND rule_id = $2",
        tenant_id,
        rule_id,
    )
    return result.endswith(" 1")


# --- alert rules, platform admin (no tenant filter) ---


async def fetch_all_alert_rules(
    conn: asyncpg.Connection,
    tenant_id: Optional[int] = None,
    global_only: bool = False,
    device_type_id: Optional[int] = None,
) -> List[Dict[str, Any]]:
    clauses: List[str] = []
    params: list = []
    if global_only:
        clauses.append("tenant_id IS NULL")
    elif tenant_id is not None:
        params.append(tenant_id)
        clauses.append(f"tenant_id = ${len(params)}")
    if device_type_id is not None:
        params.append(device_type_id)
        clauses.append(f"device_type_id = ${len(params)}")
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    rows = await conn.fetch(
        f"""
        SELECT {RULE_COLUMNS}
        FROM alert_rules
        {where}
        ORDER BY created_at DESC, rule_id DESC
        """,
        *params,
    )
    return [dict(r) for r in rows]


async def fetch_alert_rule_by_id(conn: asyncpg.Connection, rule_id: int) -> Optional[Dict[str, Any]]:
    row = await conn.fetchrow(
        f"SELECT {RULE_COLUMNS} FROM alert_rules WHERE rule_id = $1",
        rule_id,
    )
    return dict(row) if row else None


async def admin_update_alert_rule(
    conn: asyncpg.Connection, rule_id: int, changes: Dict[str, Any]
) -> Optional[Dict[str, Any]]:
    params: list = [rule_id]
    sets = _rule_set_clauses(changes, params)
    if not sets:
        return await fetch_alert_rule_by_id(conn, rule_id)
    sets.append("updated_at = now()")
    row = await conn.fetchrow(
        f"""
        UPDATE alert_rules
        SET {", ".join(sets)}
        WHERE rule_id = $1
        RETURNING {RULE_COLUMNS}
        """,
        *params,
    )
    return dict(row) if row else None


async def delete_alert_rules(conn: asyncpg.Connection, rule_ids: List[int]) -> int:
    """Hard delete by id, any owner. Returns the number of rules removed."""
    if not rule_ids:
        return 0
    result = await conn.execute(
        "DELETE FROM alert_rules WHERE rule_id = ANY($1::bigint[])",
        list(rule_ids),
    )
    return int(result.rsplit(" ", 1)[-1])


# --- alerts ---


async def fetch_alerts(
    conn: asyncpg.Connection,
    tenant_id: int,
    status: Optional[str] = None,
    severity: Optional[str] = None,
    device_id: Optional[int] = None,
    limit: int = 20,
    offset: int = 0,
) -> Tuple[List[Dict[str, Any]], int]:
    _require_tenant(tenant_id)
    clauses = ["a.tenant_id = $1"]
    params: list = [tenant_id]
    if status:
        params.append(status)
        clauses.append(f"a.status = ${len(params)}")
    if severity:
        params.append(severity)
        clauses.append(f"a.severity = ${len(params)}")
    if device_id is not None:
        params.append(device_id)
        clauses.append(f"a.device_id = ${len(params)}")
    where = " AND ".join(clauses)

    rows = await conn.fetch(
        f"""
        SELECT {ALERT_COLUMNS}
        FROM alerts a
        JOIN devices d ON d.device_id = a.device_id
        WHERE {where}
        ORDER BY a.created_at DESC, a.alert_id DESC
        LIMIT {int(limit)} OFFSET {int(offset)}
        """,
        *params,
    )
    total = await conn.fetchval(f"SELECT COUNT(*) FROM alerts a WHERE {where}", *params)
    return [dict(r) for r in rows], int(total or 0)


async def update_alert_status(
    conn: asyncpg.Connection, tenant_id: int, alert_id: int, status: str
) -> Optional[Dict[str, Any]]:
    """
    Set an alert's status. resolved_at is stamped when the alert becomes
    resolved, kept on a repeated resolve and cleared on reopen;
    acknowledged_at is stamped the first time the alert is acknowledged.
    """
    _require_tenant(tenant_id)
    row = await conn.fetchrow(
        """
        UPDATE alerts
        SET status = $3,
            resolved_at = CASE WHEN $3 = 'resolved' THEN COALESCE(resolved_at, now()) ELSE NULL END,
            acknowledged_at = CASE
                WHEN $3 = 'acknowledged' THEN COALESCE(acknowledged_at, now())
                ELSE acknowledged_at
            END
        WHERE tenant_id = $1 AND alert_id = $2
        RETURNING alert_id, tenant_id, device_id, alert_rule_id, variable_code, value,
                  title, message, severity, status, created_at, acknowledged_at, resolved_at
        """,
        tenant_id,
        alert_id,
        status,
    )
    return dict(row) if row else None


# --- tenants and notifications ---


async def fetch_tenant_contact(conn: asyncpg.Connection, tenant_id: int) -> Optional[Dict[str, Any]]:
    row = await conn.fetchrow(
        "SELECT tenant_id, name, email, phone FROM tenants WHERE tenant_id = $1",
        tenant_id,
    )
    return dict(row) if row else None


async def insert_notification_log(
    conn: asyncpg.Connection,
    tenant_id: Optional[int],
    alert_id: Optional[int],
    channel: str,
    recipient: str,
    subject: str,
    message: str,
    status: str,
    error: Optional[str] = None,
) -> None:
    await conn.execute(
        """
        INSERT INTO notification_log (
            tenant_id, alert_id, channel, recipient, subject, message, status, error
        )
        VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
        """,
        tenant_id,
        alert_id,
        channel,
        recipient,
        subject,
        message,
        status,
        error,
    )


# --- api keys ---


async def fetch_api_key(conn: asyncpg.Connection, key_hash: str) -> Optional[Dict[str, Any]]:
    row = await conn.fetchrow(
        """
        SELECT key_id, tenant_id, name, scopes, is_active, expires_at
        FROM api_keys
        WHERE key_hash = $1
        """,
        key_hash,
    )
    return dict(row) if row else None


async def touch_api_key(conn: asyncpg.Connection, key_id: int) -> None:
    await conn.execute("UPDATE api_keys SET last_used_at = now() WHERE key_id = $1", key_id)
