"""
Delivery channels for triggered mNAV alerts.

E-mail is delivered by an external service that reads the notification
rows; the channels here only cover what this process pushes itself.
"""

import asyncio
import logging
from typing import Dict, Optional, Protocol

import aiohttp

from navwatch.core.models import AlertRule, NotificationRecord

logger = logging.getLogger(__name__)

DASHBOARD_URL = "https://bmnr.rocks"


class Notifier(Protocol):
    # store column flag to set on success, or None when nothing is tracked
    channel: Optional[str]

    async def send(self, record: NotificationRecord, rule: AlertRule) -> bool: ...


def build_alert_message(record: NotificationRecord, rule: AlertRule) -> Dict[str, str]:
    """Subject and plain-text body for a triggered alert."""
    if record.direction == "below":
        movement = "dropped below"
        pct = (1 - record.m_nav_value) * 100
        valuation = f"The stock is trading at a {pct:.1f}% discount to NAV"
    else:
        movement = "rose above"
        pct = (record.m_nav_value - 1) * 100
        valuation = f"The stock is trading at a {pct:.1f}% premium to NAV"

    ticker = rule.company_ticker or record.company_id
    subject = f"MNAV Alert: {ticker} {movement} {record.threshold_value:.2f}"
    message = "\n".join(
        [
            "MNAV Alert Triggered!",
            "",
            f"Company: {ticker} - {rule.company_name or ''}".rstrip(" -"),
            f"Alert: MNAV {movement} {record.threshold_value:.2f}",
            f"Current MNAV: {record.m_nav_value:.4f}",
            "",
            valuation,
            "",
            f"View dashboard: {DASHBOARD_URL}",
            f"Manage alerts: {DASHBOARD_URL}/settings/alerts",
        ]
    )
    return {"subject": subject, "message": message}


class LogNotifier:
    """Writes the alert to the log. Used when no push channel is configured."""

    channel: Optional[str] = None

    async def send(self, record: NotificationRecord, rule: AlertRule) -> bool:
        content = build_alert_message(record, rule)
        logger.info("%s (notification %s, user %s)", content["subject"], record.id, record.user_id)
        return True


class WebhookNotifier:
    """POSTs the alert as JSON to a webhook (Slack-compatible `text` field included)."""

    channel: Optional[str] = "webhook"

    def __init__(self, url: str, timeout: int = 10, session: Optional[aiohttp.ClientSession] = None) -> None:
        self.url = url
        self.timeout = timeout
        self._session = session

    def _payload(self, record: NotificationRecord, rule: AlertRule) -> dict:
        content = build_alert_message(record, rule)
        return {
            "text": f"*{content['subject']}*\n{content['message']}",
            "subject": content["subject"],
            "notification_id": record.id,
            "alert_id": record.alert_id,
            "user_id": record.user_id,
            "user_email": rule.user_email,
            "company_id": record.company_id,
            "company_ticker": rule.company_ticker,
            "mnav": record.m_nav_value,
            "threshold": record.threshold_value,
            "direction": record.direction,
            "triggered_at": record.created_at.isoformat(),
        }

    async def _post(self, session, payload: dict) -> None:
        response = await session.post(self.url, json=payload, timeout=aiohttp.ClientTimeout(total=self.timeout))
        response.raise_for_status()

    async def send(self, record: NotificationRecord, rule: AlertRule) -> bool:
        payload = self._payload(record, rule)
        try:
            if self._session is not None:
                await self._post(self._session, payload)
            else:
                async with aiohttp.ClientSession() as session:
                    await self._post(session, payload)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning("webhook delivery failed for notification %s: %s", record.id, e)
            return False
        return True
