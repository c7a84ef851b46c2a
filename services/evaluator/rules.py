"""
Alert rule model and the pure pieces of rule evaluation.

Nothing in this module touches the database: the engine loads rule rows,
turns them into AlertRule objects here, and asks evaluate_condition() whether
a reading trips the rule.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping, Optional


class RuleValidationError(ValueError):
    """Raised when a rule definition cannot be evaluated."""


class Operator(str, Enum):
    LT = "lt"
    LTE = "lte"
    EQ = "eq"
    NEQ = "neq"
    GTE = "gte"
    GT = "gt"
    BETWEEN = "between"
    OUTSIDE = "outside"


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class AlertStatus(str, Enum):
    OPEN = "open"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"
    CLOSED = "closed"


# Statuses that block a new alert for the same (device, rule) pair.
ACTIVE_ALERT_STATUSES = (AlertStatus.OPEN.value, AlertStatus.ACKNOWLEDGED.value)

RANGE_OPERATORS = frozenset({Operator.BETWEEN, Operator.OUTSIDE})

# Older rule rows were saved with comparison symbols.
OPERATOR_ALIASES = {
    "<": Operator.LT,
    "<=": Operator.LTE,
    "=": Operator.EQ,
    "==": Operator.EQ,
    "!=": Operator.NEQ,
    "<>": Operator.NEQ,
    ">=": Operator.GTE,
    ">": Operator.GT,
}


def parse_operator(raw: Any) -> Operator:
    if isinstance(raw, Operator):
        return raw
    if not isinstance(raw, str) or not raw.strip():
        raise RuleValidationError(f"Invalid operator: {raw!r}")
    key = raw.strip()
    if key in OPERATOR_ALIASES:
        return OPERATOR_ALIASES[key]
    try:
        return Operator(key.lower())
    except ValueError:
        raise RuleValidationError(
            f"Invalid operator {raw!r}; expected one of "
            + ", ".join(op.value for op in Operator)
        )


def parse_severity(raw: Any) -> Severity:
    if isinstance(raw, Severity):
        return raw
    try:
        return Severity(str(raw).strip().lower())
    except ValueError:
        raise RuleValidationError(
            f"Invalid severity {raw!r}; expected one of "
            + ", ".join(s.value for s in Severity)
        )


def parse_alert_status(raw: Any) -> AlertStatus:
    try:
        return AlertStatus(str(raw).strip().lower())
    except ValueError:
        raise RuleValidationError(
            f"Invalid status {raw!r}; expected one of "
            + ", ".join(s.value for s in AlertStatus)
        )


def _as_threshold(raw: Any, name: str) -> Optional[float]:
    if raw is None:
        return None
    if isinstance(raw, bool):
        raise RuleValidationError(f"{name} must be a number")
    try:
        value = float(raw)
    except (TypeError, ValueError):
        raise RuleValidationError(f"{name} must be a number, got {raw!r}")
    if not math.isfinite(value):
        raise RuleValidationError(f"{name} must be finite")
    return value


def validate_rule(
    operator: Any,
    threshold_1: Any,
    threshold_2: Any = None,
    severity: Any = Severity.WARNING,
) -> tuple[Operator, float, Optional[float], Severity]:
    """
    Check a rule definition and return its normalised parts.

    Range operators need both thresholds with threshold_1 <= threshold_2.
    Raises RuleValidationError on the first problem found.
    """
    op = parse_operator(operator)
    sev = parse_severity(severity)
    t1 = _as_threshold(threshold_1, "threshold1")
    t2 = _as_threshold(threshold_2, "threshold2")
    if t1 is None:
        raise RuleValidationError("threshold1 is required")
    if op in RANGE_OPERATORS:
        if t2 is None:
            raise RuleValidationError(f"threshold2 is required for operator {op.value}")
        if t2 < t1:
            raise RuleValidationError("threshold2 must be greater than or equal to threshold1")
    return op, t1, t2, sev


def evaluate_condition(
    value: float,
    operator: Operator,
    threshold_1: float,
    threshold_2: Optional[float] = None,
) -> bool:
    """Return True when `value` trips the rule. Range bounds are inclusive."""
    if value is None:
        return False
    try:
        value = float(value)
    except (TypeError, ValueError):
        return False
    if math.isnan(value):
        return False
    if operator == Operator.GT:
        return value > threshold_1
    elif operator == Operator.GTE:
        return value >= threshold_1
    elif operator == Operator.LT:
        return value < threshold_1
    elif operator == Operator.LTE:
        return value <= threshold_1
    elif operator == Operator.EQ:
        return value == threshold_1
    elif operator == Operator.NEQ:
        return value != threshold_1
    elif operator == Operator.BETWEEN:
        if threshold_2 is None:
            raise RuleValidationError("between requires threshold2")
        return threshold_1 <= value <= threshold_2
    elif operator == Operator.OUTSIDE:
        if threshold_2 is None:
            raise RuleValidationError("outside requires threshold2")
        return value < threshold_1 or value > threshold_2
    raise RuleValidationError(f"Unsupported operator: {operator!r}")


_PLACEHOLDER = re.compile(r"\{(\w+)\}")


def format_value(value: float) -> str:
    if isinstance(value, float):
        if value.is_integer():
            return str(int(value))
        return str(round(value, 4))
    return str(value)


def render_message(
    template: Optional[str],
    value: float,
    label: Optional[str] = None,
    unit: Optional[str] = None,
    variable: Optional[str] = None,
) -> str:
    """
    Fill {value}, {label}, {unit} and {variable} in a rule's message template.
    Unknown placeholders are left untouched.
    """
    values = {
        "value": format_value(value),
        "label": label or variable or "",
        "unit": unit or "",
        "variable": variable or "",
    }
    if not template:
        name = values["label"] or "Value"
        return f"{name} is {values['value']}{values['unit']}"

    def _sub(match: re.Match) -> str:
        key = match.group(1)
        return values.get(key, match.group(0))

    return _PLACEHOLDER.sub(_sub, template)


@dataclass(frozen=True)
class AlertRule:
    rule_id: int
    tenant_id: Optional[int]
    device_type_id: int
    variable_code: str
    rule_name: str
    operator: Operator
    threshold_1: float
    threshold_2: Optional[float]
    severity: Severity
    message_template: Optional[str] = None
    is_active: bool = True

    @property
    def is_global(self) -> bool:
        return self.tenant_id is None

    def matches(self, value: float) -> bool:
        return evaluate_condition(value, self.operator, self.threshold_1, self.threshold_2)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "AlertRule":
        """Build from an alert_rules row. Corrupt rows raise RuleValidationError."""
        op, t1, t2, sev = validate_rule(
            row.get("operator"),
            row.get("threshold_1"),
            row.get("threshold_2"),
            row.get("severity"),
        )
        return cls(
            rule_id=row["rule_id"],
            tenant_id=row.get("tenant_id"),
            device_type_id=row["device_type_id"],
            variable_code=row["variable_code"],
            rule_name=row.get("rule_name") or row["variable_code"],
            operator=op,
            threshold_1=t1,
            threshold_2=t2,
            severity=sev,
            message_template=row.get("message_template"),
            is_active=bool(row.get("is_active", True)),
        )
