"""Store telemetry readings for one device and run the rule evaluator on each."""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from services.evaluator.engine import DeviceContext, EvaluationResult, RuleEvaluator, TelemetryPoint
from services.portal.db import queries
from services.portal.db import telemetry as telemetry_db
from services.shared.event_bus import RealtimeEvent
from services.shared.ingest_core import Reading
from services.shared.logging import log_context
from services.shared.metrics import evaluator_evaluation_errors_total, telemetry_points_ingested_total

logger = logging.getLogger(__name__)


@dataclass
class IngestOutcome:
    stored: int
    evaluation: EvaluationResult = field(default_factory=EvaluationResult)
    evaluation_errors: int = 0

    @property
    def alerts_created(self) -> int:
        return len(self.evaluation.alerts)


async def ingest_readings(
    conn,
    device: dict,
    readings: list[Reading],
    source: str,
    evaluator: RuleEvaluator,
    received_at: Optional[datetime] = None,
) -> IngestOutcome:
    """
    Write the readings, bump last_seen_at and evaluate rules.

    last_seen_at records when the submission arrived, not the reading
    timestamps, so backfilled or future-dated readings never skew health.
    An empty submission only bumps last_seen_at.

    Must run inside a transaction. Each evaluation gets its own savepoint so a
    failing rule lookup is logged and rolled back without losing the stored
    readings or the alerts opened for other readings.
    """
    stored = await telemetry_db.insert_telemetry(
        conn,
        device["tenant_id"],
        device["device_id"],
        [(r.variable_code, r.value, r.captured_at) for r in readings],
        source,
    )
    await queries.touch_device_last_seen(
        conn, device["device_id"], received_at or datetime.now(timezone.utc)
    )
    telemetry_points_ingested_total.labels(source=source).inc(stored)

    outcome = IngestOutcome(stored=stored)
    ctx = DeviceContext.from_row(device)
    with log_context(tenant_id=ctx.tenant_id, device_id=ctx.device_id, source=source):
        for r in readings:
            point = TelemetryPoint(
                tenant_id=ctx.tenant_id,
                device_id=ctx.device_id,
                variable_code=r.variable_code,
                value=r.value,
                captured_at=r.captured_at,
            )
            try:
                async with conn.transaction():
                    outcome.evaluation.extend(await evaluator.evaluate(conn, point, ctx))
            except Exception:
                outcome.evaluation_errors += 1
                evaluator_evaluation_errors_total.inc()
                logger.exception("Rule evaluation failed", extra={"variable": r.variable_code})
    return outcome


def telemetry_event(device: dict, readings: list[Reading], source: str) -> RealtimeEvent:
    return RealtimeEvent(
        type="telemetry",
        tenant_id=str(device["tenant_id"]),
        device_id=str(device["device_id"]),
        data={
            "serialNumber": device.get("serial_number"),
            "source": source,
            "readings": [
                {
                    "variable": r.variable_code,
                    "value": r.value,
                    "timestamp": r.captured_at.isoformat(),
                }
                for r in readings
            ],
        },
    )
