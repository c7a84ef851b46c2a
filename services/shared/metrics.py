"""
Prometheus metrics shared across the portal API, evaluator and health monitor.

Exposed by the portal's /metrics route via prometheus_client.generate_latest().
"""

from prometheus_client import Counter, Gauge, Histogram

# Ingestion
telemetry_points_ingested_total = Counter(
    "telemetry_points_ingested_total",
    "Telemetry readings stored",
    ["source"],  # api | http | sms | mqtt | import
)

telemetry_submissions_rejected_total = Counter(
    "telemetry_submissions_rejected_total",
    "Telemetry submissions rejected before storage",
    ["reason"],
)

# Rule evaluation
evaluator_rules_evaluated_total = Counter(
    "evaluator_rules_evaluated_total",
    "Alert rules evaluated against a telemetry point",
)

evaluator_alerts_created_total = Counter(
    "evaluator_alerts_created_total",
    "Alerts opened by the rule evaluator",
    ["severity"],
)

evaluator_alerts_suppressed_total = Counter(
    "evaluator_alerts_suppressed_total",
    "Rule matches suppressed because an alert was already active",
)

evaluator_rules_skipped_total = Counter(
    "evaluator_rules_skipped_total",
    "Malformed alert rules skipped during evaluation",
)

evaluator_evaluation_errors_total = Counter(
    "evaluator_evaluation_errors_total",
    "Telemetry points whose evaluation raised",
)

# Device health
devices_offline = Gauge(
    "devices_offline",
    "Devices classified offline or never connected at the last health check",
)

health_checks_total = Counter(
    "health_checks_total",
    "Device health monitor runs",
)

# Notifications
notifications_total = Counter(
    "notifications_total",
    "Notification delivery attempts",
    ["channel", "result"],  # result: sent | failed
)

# HTTP
http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency",
    ["method", "path_template", "status_code"],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0],
)

http_requests_total = Counter(
    "http_requests_total",
    "HTTP requests served",
    ["method", "path_template", "status_code"],
)
