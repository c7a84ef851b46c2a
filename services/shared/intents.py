"""
Outbound notification intents.

The rule evaluator and the device health monitor do not send anything
themselves. They return NotificationIntent records and the portal's
NotificationDispatcher delivers them on a best-effort basis.
"""

from dataclasses import dataclass, field
from typing import Any, Optional

CHANNEL_EMAIL = "email"
CHANNEL_SMS = "sms"
CHANNEL_REALTIME = "realtime"

KIND_ALERT_OPENED = "alert_opened"
KIND_DEVICES_OFFLINE = "devices_offline"
KIND_OFFLINE_DIGEST = "offline_digest"


@dataclass
class NotificationIntent:
    kind: str
    tenant_id: Optional[int]
    subject: str
    message: str
    channels: tuple = (CHANNEL_EMAIL,)
    severity: Optional[str] = None
    alert_id: Optional[int] = None
    device_id: Optional[int] = None
    # channel -> address; channels without an entry are resolved from the
    # tenant's contact details at delivery time
    recipients: dict = field(default_factory=dict)
    data: dict[str, Any] = field(default_factory=dict)
