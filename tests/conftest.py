"""
Pytest configuration and fixtures for navwatch tests.

Fixtures provide:
- A temporary SQLite store
- Fake price gateways and a stub NAV service
- Helpers to seed a company with disclosures and daily prices
"""

import asyncio
from datetime import date, datetime, timezone
from typing import Dict, Optional

import aiohttp
import pytest
import pytest_asyncio

from navwatch.core.errors import PriceUnavailable
from navwatch.core.models import Company, PriceQuote, RawDailyPrice, RawDisclosure
from navwatch.db.dbadapter import DBAdapter

COMPANY_ID = "4bf5e88a-dfba-44d0-bdfb-7d878cbd10db"


class FakeGateway:
    """Gateway answering from a dict; unknown tickers raise PriceUnavailable."""

    def __init__(self, prices: Optional[Dict[str, float]] = None, delay: float = 0.0):
        self.prices = dict(prices or {})
        self.delay = delay
        self.calls = []

    async def get_latest_price(self, ticker: str) -> PriceQuote:
        self.calls.append(ticker)
        if self.delay:
            await asyncio.sleep(self.delay)
        if ticker not in self.prices:
            raise PriceUnavailable(f"no fake price for {ticker}")
        return PriceQuote(ticker=ticker, price=self.prices[ticker], source="fake")


class StubNavService:
    """current_mnav from a per-company table; an Exception value is raised instead."""

    def __init__(self, values: Dict[str, object]):
        self.values = values
        self.calls = []

    async def current_mnav(self, company_id: str) -> float:
        self.calls.append(company_id)
        value = self.values[company_id]
        if isinstance(value, Exception):
            raise value
        return value


class FakeResponse:
    def __init__(self, payload=None, status=200):
        self.payload = payload
        self.status = status

    def raise_for_status(self):
        if self.status >= 400:
            raise aiohttp.ClientError(f"HTTP {self.status}")

    async def json(self):
        return self.payload


class FakeSession:
    """Stands in for aiohttp.ClientSession; records (url, params-or-json) per request."""

    def __init__(self, response=None, exc=None):
        self.response = response
        self.exc = exc
        self.requests = []

    async def get(self, url, params=None, timeout=None):
        self.requests.append((url, params))
        if self.exc:
            raise self.exc
        return self.response

    async def post(self, url, json=None, timeout=None):
        self.requests.append((url, json))
        if self.exc:
            raise self.exc
        return self.response


class FixedClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest_asyncio.fixture
async def store(tmp_path):
    db = DBAdapter(db_path=str(tmp_path / "navwatch-test.db"))
    await db.init()
    yield db
    await db.close()


@pytest.fixture
def fixed_now():
    return datetime(2025, 7, 1, 15, 0, tzinfo=timezone.utc)


async def seed_company(
    store: DBAdapter,
    company_id: str = COMPANY_ID,
    ticker: str = "BMNR",
    held: float = 1000,
    concentration: float = 100,
    cash_millions: float = 0.5,
    close: float = 40.0,
    day: date = date(2025, 6, 12),
) -> Company:
    """One company with a single disclosure and a single daily close.

    Defaults imply 10,000 shares and 500,000 of cash.
    """
    company = Company(id=company_id, ticker=ticker, name="BitMine Immersion", asset_symbol="ETH", series_start=day)
    await store.upsert_company(company)
    await store.insert_disclosure(
        RawDisclosure(
            company_id=company_id,
            date=day,
            held_asset_quantity=held,
            concentration_per_mille=concentration,
            cash_holdings=cash_millions,
        )
    )
    await store.insert_daily_price(RawDailyPrice(company_id=company_id, date=day, close=close))
    return company
