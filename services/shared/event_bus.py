"""Realtime event bus for telemetry and alert events.

Each connected SSE client gets an asyncio.Queue. Publishers hand events to the
bus; the bus fans them out to the queues subscribed for that tenant. The bus
is created once per application and passed to route handlers through
app.state, so a shared implementation (e.g. Postgres LISTEN/NOTIFY) can be
dropped in behind the same interface.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional, Protocol

logger = logging.getLogger(__name__)

EVENT_TYPES = ("telemetry", "alert", "device_status")


@dataclass
class RealtimeEvent:
    type: str
    data: Any
    tenant_id: str
    device_id: Optional[str] = None
    timestamp: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "data": self.data,
            "tenantId": self.tenant_id,
            "deviceId": self.device_id,
            "timestamp": self.timestamp,
        }


@dataclass
class Subscription:
    tenant_id: str
    queue: asyncio.Queue
    connected_at: float = field(default_factory=time.time)
    dropped: int = 0


class EventBus(Protocol):
    def subscribe(self, tenant_id: str) -> Subscription: ...

    def unsubscribe(self, sub: Subscription) -> None: ...

    async def publish(self, event: RealtimeEvent) -> int: ...


class InMemoryEventBus:
    """Single-process bus. Slow consumers lose events rather than block publishers."""

    def __init__(self, queue_size: int = 100, max_per_tenant: int = 10):
        self.queue_size = queue_size
        self.max_per_tenant = max_per_tenant
        self._subs: dict[str, list[Subscription]] = {}
        self._lock = threading.Lock()

    def subscribe(self, tenant_id: str) -> Subscription:
        with self._lock:
            subs = self._subs.setdefault(tenant_id, [])
            if len(subs) >= self.max_per_tenant:
                raise ConnectionError(
                    f"Max realtime connections ({self.max_per_tenant}) reached for tenant"
                )
            sub = Subscription(tenant_id=tenant_id, queue=asyncio.Queue(maxsize=self.queue_size))
            subs.append(sub)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        with self._lock:
            subs = self._subs.get(sub.tenant_id)
            if not subs:
                return
            if sub in subs:
                subs.remove(sub)
            if not subs:
                del self._subs[sub.tenant_id]

    async def publish(self, event: RealtimeEvent) -> int:
        """Deliver to every subscriber of the event's tenant. Returns queues reached."""
        with self._lock:
            subs = list(self._subs.get(event.tenant_id, ()))
        delivered = 0
        payload = event.to_dict()
        for sub in subs:
            try:
                sub.queue.put_nowait(payload)
                delivered += 1
            except asyncio.QueueFull:
                sub.dropped += 1
                logger.debug("Realtime queue full for tenant=%s, dropping event", event.tenant_id)
        return delivered

    def connection_count(self, tenant_id: str | None = None) -> int:
        with self._lock:
            if tenant_id is not None:
                return len(self._subs.get(tenant_id, ()))
            return sum(len(v) for v in self._subs.values())
