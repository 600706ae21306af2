"""
CardGuard — Alerting Service

Outbound fan-out for HIGH-risk checks and operator actions:
    • Structured log   (always)
    • Webhook          (when ALERT_WEBHOOK_URL is set)
    • Email            (when ADMIN_EMAIL and SMTP are configured)

Delivery is best effort.  dispatch_alert() never raises; a failed channel
is logged and counted, and the check / action that triggered it stands.
"""

import asyncio
import json
import logging
import smtplib
from dataclasses import asdict, dataclass
from datetime import datetime
from email.message import EmailMessage
from typing import Any, Dict, Optional

import httpx

from cardguard.config import settings
from cardguard.services.observability import Metrics

logger = logging.getLogger("cardguard.alerts")


@dataclass(frozen=True)
class Alert:
    kind: str          # HIGH_RISK | ACTION
    subject: str
    body: str
    card: str          # masked
    created_at: str


def high_risk_alert(masked_card: str, at: datetime, details: Dict[str, Any]) -> Alert:
    return Alert(
        kind="HIGH_RISK",
        subject=f"ALERT: HIGH risk for card {masked_card}",
        body=f"Detected HIGH risk for card {masked_card} at {at.isoformat()}. Details: {json.dumps(details)}",
        card=masked_card,
        created_at=at.isoformat(),
    )


def action_alert(masked_card: str, action: str, at: datetime) -> Alert:
    return Alert(
        kind="ACTION",
        subject=f"Action {action} performed for card {masked_card}",
        body=f"Action {action} performed on {at.isoformat()} for card {masked_card}",
        card=masked_card,
        created_at=at.isoformat(),
    )


# ===========================================================================
# Public entry-point
# ===========================================================================
async def dispatch_alert(alert: Alert) -> None:
    """Fan the alert out across all configured channels."""
    logger.warning("ALERT [%s] %s", alert.kind, alert.subject, extra={"card": alert.card})
    Metrics.alerts_total.labels(channel="log", outcome="sent").inc()

    if settings.ALERT_WEBHOOK_URL:
        await _send_webhook(settings.ALERT_WEBHOOK_URL, asdict(alert))

    await _send_email(settings.ADMIN_EMAIL, alert)


# ===========================================================================
# Channels
# ===========================================================================
async def _send_webhook(
    url: str,
    payload: Dict[str, Any],
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> bool:
    """HTTP POST; logs errors but never raises."""
    try:
        async with httpx.AsyncClient(
            timeout=settings.ALERT_TIMEOUT_SECONDS,
            transport=transport,
        ) as client:
            resp = await client.post(url, json=payload)
            resp.raise_for_status()
        logger.info("Webhook delivered → %s (status %d)", url, resp.status_code)
        Metrics.alerts_total.labels(channel="webhook", outcome="sent").inc()
        return True
    except httpx.HTTPError as exc:
        logger.error("Webhook delivery failed (%s): %s", url, exc)
        Metrics.alerts_total.labels(channel="webhook", outcome="failed").inc()
        return False


async def _send_email(to: Optional[str], alert: Alert) -> bool:
    if not to:
        logger.info("ALERT (no ADMIN_EMAIL set) -> %s", alert.subject)
        Metrics.alerts_total.labels(channel="email", outcome="skipped").inc()
        return False
    if not settings.smtp_configured:
        logger.info("ALERT (SMTP not configured) -> %s", alert.subject)
        Metrics.alerts_total.labels(channel="email", outcome="skipped").inc()
        return False

    message = EmailMessage()
    message["From"] = settings.SMTP_USER
    message["To"] = to
    message["Subject"] = alert.subject
    message.set_content(alert.body)

    try:
        await asyncio.to_thread(_smtp_send, message)
    except (smtplib.SMTPException, OSError) as exc:
        logger.error("Failed to send alert email: %s", exc)
        Metrics.alerts_total.labels(channel="email", outcome="failed").inc()
        return False

    logger.info("Alert email sent to %s", to)
    Metrics.alerts_total.labels(channel="email", outcome="sent").inc()
    return True


def _smtp_send(message: EmailMessage) -> None:
    with smtplib.SMTP(
        settings.SMTP_HOST,
        settings.SMTP_PORT,
        timeout=settings.ALERT_TIMEOUT_SECONDS,
    ) as smtp:
        smtp.ehlo()
        if smtp.has_extn("starttls"):
            smtp.starttls()
        smtp.login(settings.SMTP_USER, settings.SMTP_PASS or "")
        smtp.send_message(message)
