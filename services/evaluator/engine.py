"""
Rule evaluator.

For one stored telemetry point: load the active rules for the device's type
and variable (tenant-owned plus global), test each one, and open an alert for
every rule whose condition holds unless an open or acknowledged alert already
exists for that (device, rule) pair.

Alerts are never resolved here. Resolution is a user action through the
alerts API, so a value that returns to normal leaves the alert open.
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from services.evaluator import store
from services.evaluator.rules import AlertRule, RuleValidationError, Severity, render_message
from services.shared.intents import (
    CHANNEL_EMAIL,
    CHANNEL_REALTIME,
    CHANNEL_SMS,
    KIND_ALERT_OPENED,
    NotificationIntent,
)
from services.shared.metrics import (
    evaluator_alerts_created_total,
    evaluator_alerts_suppressed_total,
    evaluator_rules_evaluated_total,
    evaluator_rules_skipped_total,
)

logger = logging.getLogger(__name__)


@dataclass
class TelemetryPoint:
    tenant_id: int
    device_id: int
    variable_code: str
    value: float
    captured_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class DeviceContext:
    device_id: int
    tenant_id: int
    device_type_id: int
    serial_number: str = ""
    nickname: Optional[str] = None

    @property
    def display_name(self) -> str:
        return self.nickname or self.serial_number or str(self.device_id)

    @classmethod
    def from_row(cls, row) -> "DeviceContext":
        return cls(
            device_id=row["device_id"],
            tenant_id=row["tenant_id"],
            device_type_id=row["device_type_id"],
            serial_number=row.get("serial_number") or "",
            nickname=row.get("nickname"),
        )


@dataclass
class OpenedAlert:
    alert_id: int
    rule_id: int
    device_id: int
    tenant_id: int
    variable_code: str
    value: float
    title: str
    message: str
    severity: str
    created_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "id": str(self.alert_id),
            "alertRuleId": str(self.rule_id),
            "deviceId": str(self.device_id),
            "variableCode": self.variable_code,
            "value": self.value,
            "title": self.title,
            "message": self.message,
            "severity": self.severity,
            "status": "open",
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }


@dataclass
class EvaluationResult:
    alerts: list[OpenedAlert] = field(default_factory=list)
    suppressed_rule_ids: list[int] = field(default_factory=list)
    skipped_rule_ids: list = field(default_factory=list)
    intents: list[NotificationIntent] = field(default_factory=list)
    rules_checked: int = 0

    def extend(self, other: "EvaluationResult") -> None:
        self.alerts.extend(other.alerts)
        self.suppressed_rule_ids.extend(other.suppressed_rule_ids)
        self.skipped_rule_ids.extend(other.skipped_rule_ids)
        self.intents.extend(other.intents)
        self.rules_checked += other.rules_checked


def channels_for(severity: str) -> tuple:
    if severity == Severity.CRITICAL.value:
        return (CHANNEL_REALTIME, CHANNEL_EMAIL, CHANNEL_SMS)
    return (CHANNEL_REALTIME, CHANNEL_EMAIL)


class RuleEvaluator:
    """Stateless apart from configuration; one instance serves the whole app."""

    def __init__(self, portal_base_url: str = ""):
        self.portal_base_url = portal_base_url.rstrip("/")

    async def evaluate(self, conn, point: TelemetryPoint, device: DeviceContext) -> EvaluationResult:
        result = EvaluationResult()
        if point.value is None or not math.isfinite(point.value):
            return result

        variable = await store.fetch_variable(conn, device.device_type_id, point.variable_code)
        if variable is not None and not variable.get("is_alertable", True):
            logger.debug(
                "Variable not alertable, skipping evaluation",
                extra={"device_id": device.device_id, "variable": point.variable_code},
            )
            return result

        rows = await store.fetch_applicable_rules(
            conn, device.tenant_id, device.device_type_id, point.variable_code
        )
        label = (variable or {}).get("label") or point.variable_code
        unit = (variable or {}).get("unit") or ""

        for row in rows:
            result.rules_checked += 1
            evaluator_rules_evaluated_total.inc()
            try:
                rule = AlertRule.from_row(row)
                fired = rule.matches(point.value)
            except RuleValidationError as exc:
                evaluator_rules_skipped_total.inc()
                result.skipped_rule_ids.append(row.get("rule_id"))
                logger.warning(
                    "Skipping malformed alert rule",
                    extra={"rule_id": row.get("rule_id"), "error": str(exc)},
                )
                continue
            if not fired:
                continue

            message = render_message(
                rule.message_template, point.value, label=label, unit=unit,
                variable=point.variable_code,
            )
            inserted = await store.open_alert_if_absent(
                conn,
                tenant_id=device.tenant_id,
                device_id=device.device_id,
                rule_id=rule.rule_id,
                variable_code=point.variable_code,
                value=point.value,
                title=rule.rule_name,
                message=message,
                severity=rule.severity.value,
            )
            if inserted is None:
                evaluator_alerts_suppressed_total.inc()
                result.suppressed_rule_ids.append(rule.rule_id)
                logger.debug(
                    "Alert already active for device and rule",
                    extra={"device_id": device.device_id, "rule_id": rule.rule_id},
                )
                continue

            alert = OpenedAlert(
                alert_id=inserted["alert_id"],
                rule_id=rule.rule_id,
                device_id=device.device_id,
                tenant_id=device.tenant_id,
                variable_code=point.variable_code,
                value=point.value,
                title=rule.rule_name,
                message=message,
                severity=rule.severity.value,
                created_at=inserted.get("created_at"),
            )
            result.alerts.append(alert)
            result.intents.append(self._intent_for(alert, device))
            evaluator_alerts_created_total.labels(severity=alert.severity).inc()
            logger.info(
                "Alert opened",
                extra={
                    "tenant_id": device.tenant_id,
                    "device_id": device.device_id,
                    "rule_id": rule.rule_id,
                    "alert_id": alert.alert_id,
                    "severity": alert.severity,
                },
            )
        return result

    def _intent_for(self, alert: OpenedAlert, device: DeviceContext) -> NotificationIntent:
        link = f"{self.portal_base_url}/portal/alerts" if self.portal_base_url else ""
        return NotificationIntent(
            kind=KIND_ALERT_OPENED,
            tenant_id=alert.tenant_id,
            subject=f"[{alert.severity.upper()}] {alert.title} - {device.display_name}",
            message=alert.message,
            channels=channels_for(alert.severity),
            severity=alert.severity,
            alert_id=alert.alert_id,
            device_id=alert.device_id,
            data={
                "alert": alert.to_dict(),
                "deviceName": device.display_name,
                "link": link,
            },
        )
