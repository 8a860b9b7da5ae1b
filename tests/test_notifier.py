import aiohttp
import pytest

from navwatch.clients.notifier import LogNotifier, WebhookNotifier, build_alert_message
from navwatch.core.models import AlertRule, NotificationRecord

from conftest import FakeResponse, FakeSession


def _rule(direction="below", threshold=1.0):
    return AlertRule(
        id="rule-1",
        user_id="user-1",
        user_email="a@example.com",
        company_id="co-1",
        threshold_value=threshold,
        direction=direction,
        company_ticker="BMNR",
        company_name="BitMine Immersion",
    )


def _record(direction="below", mnav=0.85, threshold=1.0):
    return NotificationRecord(
        id="n-1",
        alert_id="rule-1",
        user_id="user-1",
        company_id="co-1",
        m_nav_value=mnav,
        threshold_value=threshold,
        direction=direction,
    )


def test_message_below():
    content = build_alert_message(_record(), _rule())
    assert content["subject"] == "MNAV Alert: BMNR dropped below 1.00"
    assert "Current MNAV: 0.8500" in content["message"]
    assert "15.0% discount to NAV" in content["message"]
    assert "Company: BMNR - BitMine Immersion" in content["message"]


def test_message_above():
    content = build_alert_message(_record("above", mnav=1.6, threshold=1.5), _rule("above", 1.5))
    assert content["subject"] == "MNAV Alert: BMNR rose above 1.50"
    assert "60.0% premium to NAV" in content["message"]


@pytest.mark.asyncio
async def test_log_notifier_always_succeeds():
    assert await LogNotifier().send(_record(), _rule())
    assert LogNotifier.channel is None


@pytest.mark.asyncio
async def test_webhook_payload():
    session = FakeSession(FakeResponse())
    notifier = WebhookNotifier("https://hooks.example.com/x", session=session)

    assert await notifier.send(_record(), _rule())

    url, payload = session.requests[0]
    assert url == "https://hooks.example.com/x"
    assert payload["notification_id"] == "n-1"
    assert payload["user_email"] == "a@example.com"
    assert payload["mnav"] == 0.85
    assert payload["text"].startswith("*MNAV Alert: BMNR dropped below 1.00*")


@pytest.mark.asyncio
async def test_webhook_failure_returns_false():
    notifier = WebhookNotifier("https://hooks.example.com/x", session=FakeSession(exc=aiohttp.ClientError("refused")))
    assert not await notifier.send(_record(), _rule())

    notifier = WebhookNotifier("https://hooks.example.com/x", session=FakeSession(FakeResponse(status=500)))
    assert not await notifier.send(_record(), _rule())
