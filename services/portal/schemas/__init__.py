from .requests import (
    AdminAlertRuleCreate,
    AlertRuleBulkDelete,
    AlertRuleCreate,
    AlertRuleUpdate,
    AlertStatusUpdate,
    ApiAlertStatusUpdate,
    DeviceIngestPayload,
    TelemetrySubmission,
)
from .responses import alert_out, iso, rule_out, telemetry_out, variable_out
