import math
from typing import Optional

from navwatch.core.errors import InvalidNav, MissingMetricData, MissingPriceData
from navwatch.core.models import DerivedDailyMetric, NavSnapshot
from navwatch.core.timeutils import DateLike, to_utc_day, utcnow


def compute_current_nav(
    latest_metric: DerivedDailyMetric,
    live_equity_price: Optional[float],
    live_asset_price: Optional[float],
    other_assets_value: float = 0.0,
    as_of: Optional[DateLike] = None,
) -> NavSnapshot:
    """Value the latest known holdings at live prices.

    The snapshot is dated as_of (today by default), not the metric's date.
    Cash of exactly 0 is a valid input here; only a missing cash figure fails.
    """
    if not live_equity_price or not live_asset_price:
        raise MissingPriceData(
            f"missing live price for {latest_metric.company_id}: "
            f"equity={live_equity_price} asset={live_asset_price}"
        )

    held = latest_metric.held_asset_quantity
    shares = latest_metric.shares_outstanding
    cash = latest_metric.cash_holdings
    if not held or not shares or cash is None:
        raise MissingMetricData(
            f"latest metric for {latest_metric.company_id} on {latest_metric.date} lacks "
            f"holdings={held} shares={shares} cash={cash}"
        )

    asset_market_value = held * live_asset_price
    total_nav_value = asset_market_value + cash + (other_assets_value or 0.0)
    if not math.isfinite(total_nav_value) or total_nav_value <= 0:
        raise InvalidNav(f"total NAV {total_nav_value} for {latest_metric.company_id} is not positive")

    market_cap = live_equity_price * shares
    return NavSnapshot(
        company_id=latest_metric.company_id,
        date=to_utc_day(as_of) if as_of is not None else utcnow().date(),
        nav_per_share=total_nav_value / shares,
        live_equity_price=live_equity_price,
        live_asset_price=live_asset_price,
        market_cap=market_cap,
        m_nav=market_cap / total_nav_value,
        total_nav_value=total_nav_value,
        other_assets_value=other_assets_value or 0.0,
    )
