import logging
import os
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from html import escape
from typing import Optional

import aiosmtplib
import httpx

from services.shared.config import bool_env
from services.shared.http_client import traced_client

logger = logging.getLogger(__name__)

SMTP_HOST = os.getenv("SMTP_HOST", "")
SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
SMTP_USER = os.getenv("SMTP_USER", "")
SMTP_PASSWORD = os.getenv("SMTP_PASSWORD", "")
SMTP_TLS = bool_env("SMTP_TLS", True)
EMAIL_FROM = os.getenv("EMAIL_FROM", "alerts@mechatronics.com.gh")
EMAIL_FROM_NAME = os.getenv("EMAIL_FROM_NAME", "Mechatronics Alerts")

MNOTIFY_API_KEY = os.getenv("MNOTIFY_API_KEY", "")
MNOTIFY_SENDER_ID = os.getenv("MNOTIFY_SENDER_ID", "Mechatronics")
MNOTIFY_API_URL = os.getenv("MNOTIFY_API_URL", "https://apps.mnotify.net/smsapi")
SMS_COUNTRY_CODE = os.getenv("SMS_COUNTRY_CODE", "233")

MNOTIFY_ERRORS = {
    "1001": "Invalid API key",
    "1002": "Empty message",
    "1003": "Empty recipient",
    "1004": "Invalid sender ID",
    "1005": "Invalid phone number",
    "1006": "Insufficient balance",
    "1007": "Invalid schedule date",
    "1008": "Sender ID not approved",
}


@dataclass
class SendResult:
    success: bool
    provider: str
    reference: Optional[str] = None
    error: Optional[str] = None


def severity_color(severity: Optional[str]) -> str:
    if severity == "critical":
        return "#ef4444"
    if severity == "warning":
        return "#f59e0b"
    return "#3b82f6"


def render_email_html(title: str, body: str, severity: Optional[str] = None, link: str = "") -> str:
    paragraphs = "".join(f"<p>{escape(line)}</p>" for line in body.splitlines() if line.strip())
    button = (
        f"<p><a href='{escape(link)}' style='color:#ffffff;background:#111827;"
        f"padding:8px 14px;text-decoration:none'>Open dashboard</a></p>"
        if link
        else ""
    )
    return (
        f"<h2 style='color:{severity_color(severity)}'>{escape(title)}</h2>"
        f"{paragraphs}{button}"
        f"<hr><small>Sent by Mechatronics monitoring.</small>"
    )


def normalize_phone(phone: str) -> str:
    """Local numbers (leading 0 or no country code) get SMS_COUNTRY_CODE."""
    digits = "".join(phone.split())
    if digits.startswith("+"):
        return digits[1:]
    if digits.startswith("0"):
        return SMS_COUNTRY_CODE + digits[1:]
    if not digits.startswith(SMS_COUNTRY_CODE):
        return SMS_COUNTRY_CODE + digits
    return digits


async def send_email(to: str, subject: str, text: str, html: Optional[str] = None) -> SendResult:
    """Send one email over SMTP. Without SMTP_HOST the message is only logged."""
    if not to:
        return SendResult(success=False, provider="smtp", error="No recipient")
    if not SMTP_HOST:
        logger.info("Email (dev mode, SMTP_HOST unset)", extra={"to": to, "subject": subject})
        return SendResult(success=True, provider="log", reference="dev-mode")

    if html:
        msg = MIMEMultipart("alternative")
        msg.attach(MIMEText(text, "plain"))
        msg.attach(MIMEText(html, "html"))
    else:
        msg = MIMEText(text, "plain")
    msg["Subject"] = subject
    msg["From"] = f"{EMAIL_FROM_NAME} <{EMAIL_FROM}>" if EMAIL_FROM_NAME else EMAIL_FROM
    msg["To"] = to

    smtp_client = aiosmtplib.SMTP(
        hostname=SMTP_HOST, port=SMTP_PORT, start_tls=SMTP_TLS, timeout=30
    )
    try:
        async with smtp_client:
            if SMTP_USER and SMTP_PASSWORD:
                await smtp_client.login(SMTP_USER, SMTP_PASSWORD)
            await smtp_client.send_message(msg, recipients=[to])
    except (aiosmtplib.SMTPException, OSError) as exc:
        return SendResult(success=False, provider="smtp", error=str(exc))
    return SendResult(success=True, provider="smtp")


async def send_sms(phone: str, message: str) -> SendResult:
    """Send an SMS through mNotify. Without MNOTIFY_API_KEY the message is only logged."""
    if not phone:
        return SendResult(success=False, provider="mnotify", error="No recipient")
    if not MNOTIFY_API_KEY:
        logger.info("SMS (dev mode, MNOTIFY_API_KEY unset)", extra={"to": phone, "chars": len(message)})
        return SendResult(success=True, provider="log", reference="dev-mode")

    try:
        async with traced_client(timeout=10.0) as client:
            response = await client.post(
                MNOTIFY_API_URL,
                data={
                    "key": MNOTIFY_API_KEY,
                    "to": normalize_phone(phone),
                    "msg": message,
                    "sender_id": MNOTIFY_SENDER_ID,
                },
            )
    except httpx.HTTPError as exc:
        return SendResult(success=False, provider="mnotify", error=f"Request failed: {exc}")

    body = response.text.strip()
    if response.status_code >= 400:
        return SendResult(success=False, provider="mnotify", error=f"HTTP {response.status_code}: {body[:200]}")
    if "1000" in body:
        return SendResult(success=True, provider="mnotify", reference=body)
    return SendResult(
        success=False,
        provider="mnotify",
        error=MNOTIFY_ERRORS.get(body, f"mNotify error: {body[:200]}"),
    )
