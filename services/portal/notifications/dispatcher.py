"""
Notification dispatcher - best-effort delivery of NotificationIntents.

Intents come from the rule evaluator (alert opened) and the device health
monitor (devices offline, admin digest). Each channel is attempted
independently; failures are logged and written to notification_log but never
raised to the caller.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Iterable, Optional

from services.portal.db import queries
from services.portal.notifications import senders
from services.shared.event_bus import RealtimeEvent
from services.shared.intents import (
    CHANNEL_EMAIL,
    CHANNEL_REALTIME,
    CHANNEL_SMS,
    KIND_ALERT_OPENED,
    NotificationIntent,
)
from services.shared.logging import log_event, log_exception
from services.shared.metrics import notifications_total

logger = logging.getLogger(__name__)

EmailSender = Callable[..., Awaitable[senders.SendResult]]
SmsSender = Callable[[str, str], Awaitable[senders.SendResult]]


@dataclass
class DispatchResult:
    sent: int = 0
    failed: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"sent": self.sent, "failed": self.failed, "errors": list(self.errors)}


def sms_text(intent: NotificationIntent) -> str:
    if intent.kind == KIND_ALERT_OPENED:
        device = intent.data.get("deviceName") or "your device"
        title = intent.data.get("alert", {}).get("title") or intent.subject
        return (
            f"[{(intent.severity or 'info').upper()}] {title} on {device}. "
            f"Check your Mechatronics dashboard for details."
        )
    return f"{intent.subject}. {intent.message}"[:320]


def email_body(intent: NotificationIntent) -> tuple[str, str]:
    lines = [intent.message]
    if intent.kind == KIND_ALERT_OPENED:
        alert = intent.data.get("alert", {})
        lines += [
            f"Device: {intent.data.get('deviceName', '-')}",
            f"Variable: {alert.get('variableCode', '-')}",
            f"Value: {alert.get('value', '-')}",
            f"Severity: {(intent.severity or '-').upper()}",
        ]
    text = "\n".join(lines) + "\n\n--\nSent by Mechatronics monitoring."
    html = senders.render_email_html(
        intent.subject, "\n".join(lines), intent.severity, intent.data.get("link", "")
    )
    return text, html


class NotificationDispatcher:
    def __init__(
        self,
        pool,
        event_bus,
        email_sender: Optional[EmailSender] = None,
        sms_sender: Optional[SmsSender] = None,
    ):
        self.pool = pool
        self.event_bus = event_bus
        self.email_sender = email_sender or senders.send_email
        self.sms_sender = sms_sender or senders.send_sms

    async def dispatch(self, intents: Iterable[NotificationIntent]) -> DispatchResult:
        result = DispatchResult()
        intents = list(intents)
        if not intents:
            return result
        contacts: dict = {}
        for intent in intents:
            for channel in intent.channels:
                try:
                    await self._deliver(intent, channel, contacts, result)
                except Exception as exc:
                    result.failed += 1
                    result.errors.append(f"{channel}: {exc}")
                    notifications_total.labels(channel=channel, result="failed").inc()
                    log_exception(
                        logger,
                        "Notification delivery raised",
                        exc,
                        {"channel": channel, "kind": intent.kind, "tenant_id": intent.tenant_id},
                    )
        log_event(
            logger,
            "Notifications dispatched",
            intents=len(intents),
            sent=result.sent,
            failed=result.failed,
            skipped=result.skipped,
        )
        return result

    async def dispatch_background(self, intents: list[NotificationIntent]) -> None:
        """Entry point for BackgroundTasks; never raises."""
        try:
            await self.dispatch(intents)
        except Exception:
            logger.exception("Notification dispatch failed", extra={"intents": len(intents)})

    async def _deliver(
        self,
        intent: NotificationIntent,
        channel: str,
        contacts: dict,
        result: DispatchResult,
    ) -> None:
        if channel == CHANNEL_REALTIME:
            await self._publish(intent, result)
            return

        recipient = intent.recipients.get(channel)
        if not recipient and intent.tenant_id is not None:
            contact = await self._tenant_contact(intent.tenant_id, contacts)
            if contact:
                recipient = contact.get("email") if channel == CHANNEL_EMAIL else contact.get("phone")
        if not recipient:
            result.skipped += 1
            logger.debug(
                "No recipient for notification channel",
                extra={"channel": channel, "kind": intent.kind, "tenant_id": intent.tenant_id},
            )
            return

        if channel == CHANNEL_EMAIL:
            text, html = email_body(intent)
            send = await self.email_sender(recipient, intent.subject, text, html)
            body = text
        elif channel == CHANNEL_SMS:
            body = sms_text(intent)
            send = await self.sms_sender(recipient, body)
        else:
            result.skipped += 1
            logger.warning("Unknown notification channel", extra={"channel": channel})
            return

        if send.success:
            result.sent += 1
            notifications_total.labels(channel=channel, result="sent").inc()
        else:
            result.failed += 1
            result.errors.append(f"{channel}: {send.error}")
            notifications_total.labels(channel=channel, result="failed").inc()
            logger.warning(
                "Notification delivery failed",
                extra={
                    "channel": channel,
                    "provider": send.provider,
                    "error": send.error,
                    "tenant_id": intent.tenant_id,
                },
            )
        await self._record(intent, channel, recipient, body, send)

    async def _publish(self, intent: NotificationIntent, result: DispatchResult) -> None:
        if intent.tenant_id is None:
            return
        await self.event_bus.publish(
            RealtimeEvent(
                type="alert",
                tenant_id=str(intent.tenant_id),
                device_id=str(intent.device_id) if intent.device_id is not None else None,
                data=intent.data.get("alert") or {"subject": intent.subject, "message": intent.message},
            )
        )
        result.sent += 1
        notifications_total.labels(channel=CHANNEL_REALTIME, result="sent").inc()

    async def _tenant_contact(self, tenant_id: int, contacts: dict) -> Optional[dict]:
        if tenant_id not in contacts:
            async with self.pool.acquire() as conn:
                contacts[tenant_id] = await queries.fetch_tenant_contact(conn, tenant_id)
        return contacts[tenant_id]

    async def _record(
        self,
        intent: NotificationIntent,
        channel: str,
        recipient: str,
        body: str,
        send: senders.SendResult,
    ) -> None:
        try:
            async with self.pool.acquire() as conn:
                await queries.insert_notification_log(
                    conn,
                    tenant_id=intent.tenant_id,
                    alert_id=intent.alert_id,
                    channel=channel,
                    recipient=recipient,
                    subject=intent.subject,
                    message=body,
                    status="sent" if send.success else "failed",
                    error=send.error,
                )
        except Exception:
            logger.exception(
                "Failed to write notification log",
                extra={"channel": channel, "tenant_id": intent.tenant_id},
            )
