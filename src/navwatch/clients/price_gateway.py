"""
Live price sources. Every gateway answers get_latest_price(ticker) with a
PriceQuote or raises PriceUnavailable; none of them swallow a failure.
"""

import asyncio
import logging
import re
import time
from typing import Callable, Dict, Optional, Protocol, Tuple

import aiohttp
import yfinance as yf

from navwatch.core.errors import PriceUnavailable
from navwatch.core.models import PriceQuote

logger = logging.getLogger(__name__)

COINGECKO_BASE = "https://api.coingecko.com/api/v3"
DEFAULT_COINGECKO_IDS = {"ETH": "ethereum", "BTC": "bitcoin", "SOL": "solana"}

_usd_suffix_re = re.compile(r"[-/]?USDT?$")


class PriceGateway(Protocol):
    async def get_latest_price(self, ticker: str) -> PriceQuote: ...


def crypto_symbol(ticker: str) -> str:
    """'ETH', 'ETHUSD', 'eth-usd' -> 'ETH'"""
    t = ticker.strip().upper()
    stripped = _usd_suffix_re.sub("", t)
    return stripped or t


class YahooPriceGateway:
    """Quotes from Yahoo Finance via yfinance.

    Pre/post-market prices win over the regular session price when present;
    if the quote has no price at all the last 1-minute bar close is used.
    """

    source = "yahoo"

    def _fetch(self, ticker: str) -> Tuple[Optional[float], str]:
        tk = yf.Ticker(ticker)
        info = tk.info or {}
        currency = info.get("currency") or "USD"
        price = (
            info.get("preMarketPrice")
            or info.get("postMarketPrice")
            or info.get("regularMarketPrice")
            or info.get("currentPrice")
        )
        if not price:
            latest = tk.history(period="1d", interval="1m")
            if not latest.empty:
                price = float(latest["Close"].iloc[-1])
        return (float(price) if price else None), currency

    async def get_latest_price(self, ticker: str) -> PriceQuote:
        try:
            # yfinance is blocking; keep it off the event loop
            price, currency = await asyncio.to_thread(self._fetch, ticker)
        except Exception as e:
            raise PriceUnavailable(f"yahoo quote failed for {ticker}: {e}") from e
        if not price:
            raise PriceUnavailable(f"yahoo returned no price for {ticker}")
        return PriceQuote(ticker=ticker, price=price, currency=currency, source=self.source)


class CoinGeckoPriceGateway:
    """Spot crypto prices from the CoinGecko simple/price endpoint."""

    source = "coingecko"

    def __init__(
        self,
        ids: Optional[Dict[str, str]] = None,
        vs_currency: str = "usd",
        timeout: int = 8,
        session: Optional[aiohttp.ClientSession] = None,
        base_url: str = COINGECKO_BASE,
    ) -> None:
        self.ids = {k.upper(): v for k, v in (ids or DEFAULT_COINGECKO_IDS).items()}
        self.vs_currency = vs_currency
        self.timeout = timeout
        self.base_url = base_url
        self._session = session

    async def _request(self, session, coin_id: str) -> dict:
        url = f"{self.base_url}/simple/price"
        params = {"ids": coin_id, "vs_currencies": self.vs_currency}
        response = await session.get(url, params=params, timeout=aiohttp.ClientTimeout(total=self.timeout))
        response.raise_for_status()
        return await response.json()

    async def get_latest_price(self, ticker: str) -> PriceQuote:
        symbol = crypto_symbol(ticker)
        coin_id = self.ids.get(symbol)
        if not coin_id:
            raise PriceUnavailable(f"no coingecko id configured for {ticker}")

        try:
            if self._session is not None:
                data = await self._request(self._session, coin_id)
            else:
                async with aiohttp.ClientSession() as session:
                    data = await self._request(session, coin_id)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            # ValueError: body is not valid JSON
            raise PriceUnavailable(f"coingecko request failed for {ticker}: {e}") from e

        try:
            price = float(data[coin_id][self.vs_currency])
        except (KeyError, TypeError, ValueError) as e:
            raise PriceUnavailable(f"coingecko returned no {self.vs_currency} price for {coin_id}: {e!r}") from e
        if not price:
            raise PriceUnavailable(f"coingecko returned no {self.vs_currency} price for {coin_id}")
        return PriceQuote(ticker=symbol, price=price, currency=self.vs_currency.upper(), source=self.source)


class FallbackPriceGateway:
    """Ask each gateway in order and return the first quote."""

    def __init__(self, *gateways: PriceGateway) -> None:
        if not gateways:
            raise ValueError("FallbackPriceGateway needs at least one gateway")
        self.gateways = gateways

    async def get_latest_price(self, ticker: str) -> PriceQuote:
        errors = []
        for gw in self.gateways:
            try:
                return await gw.get_latest_price(ticker)
            except PriceUnavailable as e:
                logger.info("price source %s failed for %s: %s", type(gw).__name__, ticker, e)
                errors.append(str(e))
        raise PriceUnavailable(f"all price sources failed for {ticker}: {'; '.join(errors)}")


class CachedPriceGateway:
    """TTL cache in front of another gateway.

    The cache lives as long as this object; the clock is injectable so
    expiry can be driven from tests. Failures are never cached.
    """

    def __init__(self, inner: PriceGateway, ttl_seconds: float = 60.0, clock: Callable[[], float] = time.monotonic) -> None:
        self.inner = inner
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, Tuple[PriceQuote, float]] = {}

    async def get_latest_price(self, ticker: str) -> PriceQuote:
        key = ticker.upper()
        entry = self._entries.get(key)
        now = self._clock()
        if entry and now - entry[1] < self.ttl_seconds:
            return entry[0]
        quote = await self.inner.get_latest_price(ticker)
        self._entries[key] = (quote, now)
        return quote

    def clear(self) -> int:
        size = len(self._entries)
        self._entries.clear()
        return size
