"""
HTTP API tests against stub services (no database, no network).
"""

from dataclasses import dataclass
from datetime import date

import pytest
from fastapi.testclient import TestClient

from navwatch.api.server import create_app
from navwatch.config import Settings
from navwatch.core.errors import MissingPriceData, UnknownCompany
from navwatch.core.models import (
    CompanyCheckResult,
    DerivedDailyMetric,
    MonitorStatus,
    NavSnapshot,
    NotificationRecord,
)

AUTH = {"Authorization": "Bearer s3cret"}


class StubMonitor:
    def __init__(self):
        self.runs = 0

    async def run_once(self):
        self.runs += 1
        fired = NotificationRecord(
            id="n-1", alert_id="r-1", user_id="u-1", company_id="co-1",
            m_nav_value=0.8, threshold_value=0.9, direction="below",
        )
        return [
            CompanyCheckResult(company_id="co-1", current_mnav=0.8, triggered=[fired]),
            CompanyCheckResult(company_id="co-2", error="MissingPriceData: no quote"),
        ]

    async def status(self):
        return MonitorStatus(active_alerts=3, recent_notifications=1)


class StubNav:
    async def metric_series(self, company_id):
        if company_id != "co-1":
            raise UnknownCompany(company_id)
        return [DerivedDailyMetric(company_id="co-1", date=date(2025, 6, 12), shares_outstanding=10000)]

    async def current_nav(self, company_id):
        if company_id == "co-1":
            return NavSnapshot(
                company_id="co-1", date=date(2025, 7, 1), nav_per_share=250.0, live_equity_price=200.0,
                live_asset_price=2000.0, market_cap=2000000.0, m_nav=0.8, total_nav_value=2500000.0,
            )
        if company_id == "co-2":
            raise MissingPriceData("no equity quote")
        raise UnknownCompany(company_id)


@dataclass
class StubServices:
    settings: Settings
    monitor: StubMonitor
    nav_service: StubNav


@pytest.fixture
def services():
    return StubServices(settings=Settings(cron_secret="s3cret"), monitor=StubMonitor(), nav_service=StubNav())


@pytest.fixture
def client(services):
    with TestClient(create_app(services=services)) as c:
        yield c


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_check_requires_cron_secret(client, services):
    assert client.post("/api/mnav-monitor/check").status_code == 401
    assert client.post("/api/mnav-monitor/check", headers={"Authorization": "Bearer wrong"}).status_code == 401
    assert services.monitor.runs == 0


def test_check_without_configured_secret_is_refused(services):
    services.settings = Settings(cron_secret=None)
    with TestClient(create_app(services=services)) as c:
        assert c.post("/api/mnav-monitor/check", headers={"Authorization": "Bearer "}).status_code == 401


def test_check_runs_monitor(client):
    resp = client.post("/api/mnav-monitor/check", headers=AUTH)
    assert resp.status_code == 200

    data = resp.json()["data"]
    assert data["companies_checked"] == 2
    assert data["alerts_triggered"] == 1
    assert data["notifications_created"] == ["n-1"]
    assert data["results"][1]["error"].startswith("MissingPriceData")


def test_status(client):
    resp = client.get("/api/mnav-monitor/status", headers=AUTH)
    assert resp.status_code == 200
    assert resp.json()["data"]["active_alerts"] == 3
    assert resp.json()["data"]["status"] == "operational"


def test_metrics(client):
    resp = client.get("/api/companies/co-1/metrics")
    assert resp.status_code == 200
    assert resp.json()["data"][0]["date"] == "2025-06-12"
    assert client.get("/api/companies/nope/metrics").status_code == 404


def test_nav(client):
    resp = client.get("/api/companies/co-1/nav")
    assert resp.status_code == 200
    assert resp.json()["data"]["m_nav"] == 0.8

    assert client.get("/api/companies/co-2/nav").status_code == 503
    assert client.get("/api/companies/nope/nav").status_code == 404
