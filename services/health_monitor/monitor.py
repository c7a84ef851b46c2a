"""
Device health monitor.

Run on an external schedule (the /api/cron/device-health endpoint). Every
active device is classified from its last_seen_at, the classification is
stored in device_health_state, and devices that newly crossed into offline or
never_connected produce notification intents: one email per tenant listing
its devices plus one admin digest. A device that stays offline across runs is
reported once. A device that comes back online has its state reset, so a
later outage is reported again.
"""

import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Iterable, Optional

from services.health_monitor import store
from services.shared.config import float_env, optional_env
from services.shared.intents import (
    CHANNEL_EMAIL,
    KIND_DEVICES_OFFLINE,
    KIND_OFFLINE_DIGEST,
    NotificationIntent,
)
from services.shared.metrics import devices_offline, health_checks_total

logger = logging.getLogger(__name__)

DEVICE_OFFLINE_THRESHOLD_HOURS = float_env("DEVICE_OFFLINE_THRESHOLD_HOURS", 3.0)
ADMIN_EMAIL = optional_env("ADMIN_EMAIL", "")


class HealthStatus(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"
    NEVER_CONNECTED = "never_connected"


UNHEALTHY = (HealthStatus.OFFLINE, HealthStatus.NEVER_CONNECTED)


def _utc(dt: datetime) -> datetime:
    return dt.replace(tzinfo=timezone.utc) if dt.tzinfo is None else dt


def hours_since(last_seen_at: Optional[datetime], now: datetime) -> Optional[float]:
    if last_seen_at is None:
        return None
    return (_utc(now) - _utc(last_seen_at)).total_seconds() / 3600.0


def classify(
    last_seen_at: Optional[datetime],
    now: datetime,
    threshold_hours: float = DEVICE_OFFLINE_THRESHOLD_HOURS,
) -> HealthStatus:
    if last_seen_at is None:
        return HealthStatus.NEVER_CONNECTED
    if _utc(now) - _utc(last_seen_at) > timedelta(hours=threshold_hours):
        return HealthStatus.OFFLINE
    return HealthStatus.ONLINE


def is_device_online(
    last_seen_at: Optional[datetime],
    now: Optional[datetime] = None,
    threshold_hours: float = DEVICE_OFFLINE_THRESHOLD_HOURS,
) -> bool:
    now = now or datetime.now(timezone.utc)
    return classify(last_seen_at, now, threshold_hours) == HealthStatus.ONLINE


@dataclass
class DeviceHealth:
    device_id: int
    tenant_id: int
    serial_number: str
    nickname: Optional[str]
    tenant_name: str
    tenant_email: Optional[str]
    last_seen_at: Optional[datetime]
    hours_since_last_seen: Optional[float]
    status: HealthStatus
    newly_unhealthy: bool = False

    @property
    def display_name(self) -> str:
        return self.nickname or self.serial_number

    @property
    def unhealthy(self) -> bool:
        return self.status in UNHEALTHY

    def describe(self) -> str:
        if self.status == HealthStatus.NEVER_CONNECTED:
            return f"{self.display_name} ({self.serial_number}): never connected"
        return (
            f"{self.display_name} ({self.serial_number}): last seen "
            f"{self.hours_since_last_seen:.1f} hours ago"
        )

    def to_dict(self) -> dict:
        return {
            "deviceId": str(self.device_id),
            "serialNumber": self.serial_number,
            "nickname": self.nickname,
            "tenantId": str(self.tenant_id),
            "tenantName": self.tenant_name,
            "lastSeenAt": self.last_seen_at.isoformat() if self.last_seen_at else None,
            "hoursSinceLastSeen": (
                round(self.hours_since_last_seen, 1)
                if self.hours_since_last_seen is not None
                else None
            ),
            "status": self.status.value,
            "newlyReported": self.newly_unhealthy,
        }


@dataclass
class HealthReport:
    checked_at: datetime
    devices: list[DeviceHealth] = field(default_factory=list)
    intents: list[NotificationIntent] = field(default_factory=list)

    @property
    def unhealthy(self) -> list[DeviceHealth]:
        return [d for d in self.devices if d.unhealthy]

    @property
    def newly_unhealthy(self) -> list[DeviceHealth]:
        return [d for d in self.devices if d.newly_unhealthy]

    @property
    def stats(self) -> dict:
        counts = {s.value: 0 for s in HealthStatus}
        for d in self.devices:
            counts[d.status.value] += 1
        return {
            "total": len(self.devices),
            "online": counts[HealthStatus.ONLINE.value],
            "offline": counts[HealthStatus.OFFLINE.value],
            "neverConnected": counts[HealthStatus.NEVER_CONNECTED.value],
        }


class DeviceHealthMonitor:
    def __init__(
        self,
        threshold_hours: float = DEVICE_OFFLINE_THRESHOLD_HOURS,
        admin_email: str = ADMIN_EMAIL,
    ):
        self.threshold_hours = threshold_hours
        self.admin_email = admin_email

    def assess(self, rows: Iterable[dict], now: datetime) -> list[DeviceHealth]:
        """Classify device rows. newly_unhealthy compares against reported_status."""
        devices = []
        for row in rows:
            status = classify(row.get("last_seen_at"), now, self.threshold_hours)
            reported = row.get("reported_status")
            devices.append(
                DeviceHealth(
                    device_id=row["device_id"],
                    tenant_id=row["tenant_id"],
                    serial_number=row.get("serial_number") or "",
                    nickname=row.get("nickname"),
                    tenant_name=row.get("tenant_name") or "",
                    tenant_email=row.get("tenant_email"),
                    last_seen_at=row.get("last_seen_at"),
                    hours_since_last_seen=hours_since(row.get("last_seen_at"), now),
                    status=status,
                    newly_unhealthy=status in UNHEALTHY and reported != status.value,
                )
            )
        return devices

    def build_notifications(self, devices: list[DeviceHealth]) -> list[NotificationIntent]:
        fresh = [d for d in devices if d.newly_unhealthy]
        if not fresh:
            return []

        by_tenant: "OrderedDict[int, list[DeviceHealth]]" = OrderedDict()
        for d in fresh:
            by_tenant.setdefault(d.tenant_id, []).append(d)

        intents = []
        for tenant_id, items in by_tenant.items():
            tenant_email = items[0].tenant_email
            if not tenant_email:
                logger.warning(
                    "Tenant has no contact email, skipping offline notice",
                    extra={"tenant_id": tenant_id, "devices": len(items)},
                )
                continue
            noun = "device" if len(items) == 1 else "devices"
            intents.append(
                NotificationIntent(
                    kind=KIND_DEVICES_OFFLINE,
                    tenant_id=tenant_id,
                    subject=f"{len(items)} {noun} not reporting",
                    message="\n".join(d.describe() for d in items),
                    channels=(CHANNEL_EMAIL,),
                    recipients={CHANNEL_EMAIL: tenant_email},
                    data={
                        "tenantName": items[0].tenant_name,
                        "devices": [d.to_dict() for d in items],
                    },
                )
            )

        if self.admin_email:
            lines = []
            for items in by_tenant.values():
                lines.append(f"{items[0].tenant_name}:")
                lines.extend(f"  {d.describe()}" for d in items)
            intents.append(
                NotificationIntent(
                    kind=KIND_OFFLINE_DIGEST,
                    tenant_id=None,
                    subject=f"Device health: {len(fresh)} devices newly offline",
                    message="\n".join(lines),
                    channels=(CHANNEL_EMAIL,),
                    recipients={CHANNEL_EMAIL: self.admin_email},
                    data={"devices": [d.to_dict() for d in fresh]},
                )
            )
        return intents

    async def run(self, conn, now: Optional[datetime] = None) -> HealthReport:
        now = now or datetime.now(timezone.utc)
        rows = await store.fetch_active_devices(conn)
        devices = self.assess(rows, now)

        # The conditional upsert decides which transitions this run owns.
        changed = await store.record_transitions(
            conn,
            [d.device_id for d in devices],
            [d.tenant_id for d in devices],
            [d.status.value for d in devices],
            now,
        )
        for d in devices:
            d.newly_unhealthy = d.unhealthy and changed.get(d.device_id) == d.status.value

        report = HealthReport(checked_at=now, devices=devices)
        report.intents = self.build_notifications(devices)

        health_checks_total.inc()
        devices_offline.set(len(report.unhealthy))
        logger.info(
            "Device health check complete",
            extra={
                **report.stats,
                "newly_unhealthy": len(report.newly_unhealthy),
                "notifications": len(report.intents),
            },
        )
        return report
