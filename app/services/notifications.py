from __future__ import annotations

import logging
import smtplib
from dataclasses import dataclass, field
from datetime import datetime
from email.message import EmailMessage
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from app.settings import get_settings

logger = logging.getLogger("app.notifications")


@dataclass(slots=True)
class NotificationMessage:
    recipients: list[str]
    subject: str
    body: str
    metadata: dict[str, Any] = field(default_factory=dict)


class EmailChannel:
    def __init__(self) -> None:
        settings = get_settings()
        self.enabled = bool(settings.notification_email_enabled)
        self.smtp_host = (settings.smtp_host or "").strip()
        self.smtp_port = int(settings.smtp_port or 587)
        self.smtp_user = (settings.smtp_user or "").strip()
        self.smtp_pass = settings.smtp_pass or ""
        self.smtp_from = (settings.smtp_from or "").strip()
        self.smtp_use_tls = bool(settings.smtp_use_tls)
        self.configured = bool(self.smtp_host and self.smtp_from)

    def send(self, message: NotificationMessage) -> dict[str, Any]:
        recipients = [item.strip() for item in message.recipients if item and item.strip()]
        if not self.enabled:
            logger.info(
                "email_channel_disabled",
                extra={"subject": message.subject, "recipient_count": len(recipients)},
            )
            return {"mode": "disabled", "sent": 0, "recipients": recipients}
        if not recipients:
            logger.info("email_channel_skip_no_recipients", extra={"subject": message.subject})
            return {"mode": "skipped_no_recipients", "sent": 0, "recipients": []}
        if not self.configured:
            # Secrets stay out of the log line.
            logger.info(
                "email_channel_placeholder_send",
                extra={"subject": message.subject, "recipients": recipients, **message.metadata},
            )
            return {"mode": "not_configured", "sent": 0, "recipients": recipients}

        email_message = EmailMessage()
        email_message["From"] = self.smtp_from
        email_message["To"] = ", ".join(recipients)
        email_message["Subject"] = message.subject
        email_message.set_content(message.body)

        with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=15) as smtp_client:
            if self.smtp_use_tls:
                smtp_client.starttls()
            if self.smtp_user:
                smtp_client.login(self.smtp_user, self.smtp_pass)
            smtp_client.send_message(email_message)
        return {"mode": "sent", "sent": len(recipients), "recipients": recipients}

    def config_status(self) -> dict[str, Any]:
        missing_fields: list[str] = []
        if not self.smtp_host:
            missing_fields.append("SMTP_HOST")
        if not self.smtp_from:
            missing_fields.append("SMTP_FROM")
        return {
            "enabled": self.enabled,
            "configured": self.configured,
            "smtp_use_tls": self.smtp_use_tls,
            "missing_fields": missing_fields,
        }


def safe_send_email(message: NotificationMessage, channel: EmailChannel | None = None) -> dict[str, Any]:
    try:
        return (channel or EmailChannel()).send(message)
    except Exception as exc:
        logger.exception(
            "notification_email_send_failed",
            extra={"subject": message.subject, "recipients": list(message.recipients)},
        )
        return {
            "mode": "send_exception",
            "sent": 0,
            "recipients": list(message.recipients),
            "error": str(exc)[:500],
        }


def _format_range(start_at: datetime, end_at: datetime, time_zone: str | None) -> str:
    try:
        tz = ZoneInfo(time_zone or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        tz = ZoneInfo("UTC")
    start_local = start_at.astimezone(tz)
    end_local = end_at.astimezone(tz)
    return f"{start_local:%Y-%m-%d %H:%M} - {end_local:%H:%M} ({tz.key})"


def send_booking_created_email(
    *,
    to: str | None,
    room_name: str,
    start_at: datetime,
    end_at: datetime,
    time_zone: str | None,
    pin: str,
    qr_token: str,
    booking_id: int,
) -> dict[str, Any]:
    body = "\n".join(
        [
            "Your booking is confirmed.",
            f"Room: {room_name}",
            f"Time: {_format_range(start_at, end_at, time_zone)}",
            f"PIN: {pin}",
            f"QR token: {qr_token}",
            f"Booking id: {booking_id}",
        ]
    )
    return safe_send_email(
        NotificationMessage(
            recipients=[to] if to else [],
            subject="Booking confirmed",
            body=body,
            metadata={"booking_id": booking_id},
        )
    )


def send_booking_canceled_email(
    *,
    to: str | None,
    room_name: str,
    start_at: datetime,
    end_at: datetime,
    time_zone: str | None,
    booking_id: int,
) -> dict[str, Any]:
    body = "\n".join(
        [
            "Your booking has been canceled.",
            f"Room: {room_name}",
            f"Time: {_format_range(start_at, end_at, time_zone)}",
        ]
    )
    return safe_send_email(
        NotificationMessage(
            recipients=[to] if to else [],
            subject="Booking canceled",
            body=body,
            metadata={"booking_id": booking_id},
        )
    )


def send_login_pin_email(*, to: str, pin: str, expires_at: datetime) -> dict[str, Any]:
    body = "\n".join(
        [
            f"Your sign-in PIN is {pin}.",
            f"It expires at {expires_at:%Y-%m-%d %H:%M} UTC.",
            "If you did not request this email, you can ignore it.",
        ]
    )
    return safe_send_email(NotificationMessage(recipients=[to], subject="Your sign-in PIN", body=body))
