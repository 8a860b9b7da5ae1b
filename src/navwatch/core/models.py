"""
Data models for the NAV pipeline and the alert monitor.
No implementation logic, only Pydantic models and typed structures.
"""

import datetime as dt
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

from navwatch.core.timeutils import to_utc_day, utcnow

AlertDirection = Literal["above", "below"]


class Company(BaseModel):
    """A listed treasury company and the digital asset it holds."""
    id: str = Field(..., description="Company identifier")
    ticker: str = Field(..., description="Equity ticker symbol")
    name: str = Field("", description="Company name")
    asset_symbol: str = Field("ETH", description="Symbol of the held digital asset")
    series_start: Optional[dt.date] = Field(None, description="First day of the derived daily series")


class RawDisclosure(BaseModel):
    """One disclosure row as entered upstream. Any field may be missing on any date."""
    company_id: Optional[str] = Field(None, description="Company identifier")
    date: dt.date = Field(..., description="Effective date, normalized to the UTC calendar day")
    held_asset_quantity: Optional[float] = Field(None, description="Units of the digital asset held")
    avg_acquisition_price: Optional[float] = Field(None, description="Average purchase price per unit")
    cash_holdings: Optional[float] = Field(None, description="Cash holdings in millions")
    staking_rewards: Optional[float] = Field(None, description="Cumulative staking rewards")
    shares_outstanding: Optional[float] = Field(None, description="Disclosed share count, informational only")
    concentration_per_mille: Optional[float] = Field(None, description="Thousandths of a share backed by one asset unit")
    notes: Optional[str] = Field(None, description="Free text notes")

    @field_validator("date", mode="before")
    @classmethod
    def _normalize_date(cls, value):
        return to_utc_day(value)


class RawDailyPrice(BaseModel):
    """Daily OHLC row for the traded equity. Weekends and holidays have none."""
    company_id: str = Field(..., description="Company identifier")
    date: dt.date = Field(..., description="Trading day")
    open: Optional[float] = None
    high: Optional[float] = None
    low: Optional[float] = None
    close: Optional[float] = None
    volume: Optional[float] = None

    @field_validator("date", mode="before")
    @classmethod
    def _normalize_date(cls, value):
        return to_utc_day(value)


class DerivedDailyMetric(BaseModel):
    """One gap-filled day of company metrics."""
    company_id: str
    date: dt.date
    held_asset_quantity: float = 0.0
    avg_acquisition_price: float = 0.0
    weighted_avg_acquisition_price: float = 0.0
    cash_holdings: Optional[float] = Field(None, description="Cash in base currency units")
    staking_rewards: float = 0.0
    concentration_per_mille: float = 0.0
    shares_outstanding: float = 0.0
    market_cap: float = 0.0
    issued_delta: float = 0.0
    shares_bought_back_delta: float = 0.0
    notes: str = ""


class NavSnapshot(BaseModel):
    """Current NAV figures for one company, computed on demand."""
    company_id: str
    date: dt.date
    nav_per_share: float
    live_equity_price: float
    live_asset_price: float
    market_cap: float
    m_nav: float = Field(..., description="market cap / total NAV; 1.0 means no premium or discount")
    total_nav_value: float
    other_assets_value: float = 0.0


class PriceQuote(BaseModel):
    ticker: str
    price: float
    currency: str = "USD"
    source: str = ""


class AlertRule(BaseModel):
    """User-defined mNAV threshold alert.
    Only the monitor's trigger path writes last_triggered_at.
    """
    id: str
    user_id: str
    company_id: str
    threshold_value: float = Field(..., description="mNAV ratio threshold")
    direction: AlertDirection
    is_active: bool = True
    last_triggered_at: Optional[dt.datetime] = None
    user_email: Optional[str] = None
    company_ticker: Optional[str] = None
    company_name: Optional[str] = None


class NotificationRecord(BaseModel):
    """Created exactly once per qualifying trigger."""
    id: str
    alert_id: str
    user_id: str
    company_id: str
    m_nav_value: float
    threshold_value: float
    direction: AlertDirection
    created_at: dt.datetime = Field(default_factory=utcnow)
    email_sent: bool = False
    webhook_sent: bool = False


class CompanyCheckResult(BaseModel):
    """Outcome of one company group in a monitor run."""
    company_id: str
    current_mnav: Optional[float] = None
    triggered: List[NotificationRecord] = Field(default_factory=list)
    error: Optional[str] = None


class MonitorStatus(BaseModel):
    status: str = "operational"
    active_alerts: int = 0
    recent_notifications: int = 0
    last_check: Optional[dt.datetime] = None
