"""Alert rule, variable catalog and alert access used by the rule evaluator."""

from typing import Any, Optional


async def fetch_variable(conn, device_type_id: int, variable_code: str) -> Optional[dict]:
    row = await conn.fetchrow(
        """
        SELECT device_type_id, variable_code, label, unit, min_value, max_value, is_alertable
        FROM device_type_variables
        WHERE device_type_id = $1 AND variable_code = $2
        """,
        device_type_id,
        variable_code,
    )
    return dict(row) if row else None


async def fetch_applicable_rules(
    conn, tenant_id: int, device_type_id: int, variable_code: str
) -> list[dict]:
    """Active rules owned by the tenant or global (tenant_id IS NULL)."""
    rows = await conn.fetch(
        """
        SELECT rule_id, tenant_id, device_type_id, variable_code, rule_name,
               operator, threshold_1, threshold_2, severity, message_template, is_active
        FROM alert_rules
        WHERE (tenant_id = $1 OR tenant_id IS NULL)
          AND device_type_id = $2
          AND variable_code = $3
          AND is_active = true
        ORDER BY rule_id
        """,
        tenant_id,
        device_type_id,
        variable_code,
    )
    return [dict(r) for r in rows]


async def open_alert_if_absent(
    conn,
    tenant_id: int,
    device_id: int,
    rule_id: int,
    variable_code: str,
    value: float,
    title: str,
    message: str,
    severity: str,
) -> Optional[dict[str, Any]]:
    """
    Insert an open alert unless one is already active for (device, rule).

    Relies on the partial unique index alerts_active_device_rule_uq, so two
    concurrent submissions cannot both insert. Returns the new row or None
    when an active alert already existed.
    """
    row = await conn.fetchrow(
        """
        INSERT INTO alerts (
            tenant_id, device_id, alert_rule_id, variable_code, value,
            title, message, severity, status
        )
        VALUES ($1, $2, $3, $4, $5, $6, $7, $8, 'open')
        ON CONFLICT (device_id, alert_rule_id)
            WHERE status IN ('open', 'acknowledged')
        DO NOTHING
        RETURNING alert_id, created_at
        """,
        tenant_id,
        device_id,
        rule_id,
        variable_code,
        value,
        title,
        message,
        severity,
    )
    return dict(row) if row else None
