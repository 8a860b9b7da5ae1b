"""
Current NAV for a company: load its disclosures and daily closes, rebuild the
daily series, then value the latest holdings at live prices.
"""

import asyncio
import logging
from datetime import date
from typing import List, Optional

from navwatch.clients.price_gateway import PriceGateway
from navwatch.core.errors import MissingMetricData, PriceUnavailable, UnknownCompany
from navwatch.core.models import Company, DerivedDailyMetric, NavSnapshot
from navwatch.core.nav import compute_current_nav
from navwatch.core.series import fill_metric_series
from navwatch.core.timeutils import Clock, utcnow

logger = logging.getLogger(__name__)


class NavService:

    def __init__(
        self,
        store,
        equity_gateway: PriceGateway,
        asset_gateway: PriceGateway,
        series_start: date,
        price_timeout: float = 10.0,
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.equity_gateway = equity_gateway
        self.asset_gateway = asset_gateway
        self.series_start = series_start
        self.price_timeout = price_timeout
        self._clock = clock

    async def get_company(self, company_id: str) -> Company:
        company = await self.store.get_company(company_id)
        if company is None:
            raise UnknownCompany(f"unknown company {company_id}")
        return company

    async def metric_series(self, company_id: str, company: Optional[Company] = None) -> List[DerivedDailyMetric]:
        """Dense daily series from the company's series start through today."""
        company = company or await self.get_company(company_id)
        # load everything: disclosures before the start date still seed the forward-fill
        disclosures, prices = await asyncio.gather(
            self.store.get_disclosures(company_id),
            self.store.get_daily_prices(company_id),
        )
        return fill_metric_series(
            disclosures, prices, company.series_start or self.series_start, today=self._clock()
        )

    async def _live_price(self, gateway: PriceGateway, ticker: str) -> Optional[float]:
        try:
            quote = await asyncio.wait_for(gateway.get_latest_price(ticker), timeout=self.price_timeout)
        except asyncio.TimeoutError:
            logger.warning("price lookup for %s timed out after %ss", ticker, self.price_timeout)
            return None
        except PriceUnavailable as e:
            logger.warning("no live price for %s: %s", ticker, e)
            return None
        return quote.price

    async def equity_price(self, company: Company) -> Optional[float]:
        """Live quote, falling back to the latest stored daily close."""
        price = await self._live_price(self.equity_gateway, company.ticker)
        if price:
            return price
        close = await self.store.get_latest_close(company.id)
        if close:
            logger.info("using latest daily close %.4f for %s", close, company.ticker)
        return close

    async def asset_price(self, company: Company) -> Optional[float]:
        return await self._live_price(self.asset_gateway, f"{company.asset_symbol}-USD")

    async def current_nav(self, company_id: str) -> NavSnapshot:
        company = await self.get_company(company_id)
        series = await self.metric_series(company_id, company)
        if not series:
            raise MissingMetricData(f"no derivable daily metrics for {company_id}")

        equity_price, asset_price = await asyncio.gather(self.equity_price(company), self.asset_price(company))
        other_assets = await self.store.get_other_assets_value(company_id)

        return compute_current_nav(series[-1], equity_price, asset_price, other_assets, as_of=self._clock())

    async def current_mnav(self, company_id: str) -> float:
        nav = await self.current_nav(company_id)
        return nav.m_nav
