"""
Gap-filling of sparse disclosure rows into a dense daily metric series.

Disclosures arrive on irregular dates and any field may be missing on any
of them. Each field is forward-filled independently, share counts are
implied from holdings and per-mille concentration, and a row is emitted for
every day that has both a known equity close and at least one disclosure
on or before it.
"""

import logging
import math
from datetime import date
from typing import Dict, List, Optional, Sequence

import numpy as np
import pandas as pd

from navwatch.core.models import DerivedDailyMetric, RawDailyPrice, RawDisclosure
from navwatch.core.timeutils import DateLike, to_utc_day, utcnow

logger = logging.getLogger(__name__)

# Zero counts as "not disclosed" for these when forward-filling.
FALSY_ABSENT_FIELDS = [
    "held_asset_quantity",
    "avg_acquisition_price",
    "staking_rewards",
    "concentration_per_mille",
]
# Cash is checked for presence only: a disclosed 0 is carried forward.
RESOLVED_FIELDS = FALSY_ABSENT_FIELDS + ["cash_holdings"]

CASH_UNIT = 1_000_000


def _present(value) -> Optional[float]:
    if value is None or pd.isna(value):
        return None
    return float(value)


def _resolve_disclosures(disclosures: Sequence[RawDisclosure], first_day: date, last_day: date):
    """Forward-fill each field over every calendar day in [first_day, last_day].

    Returns (resolved frame, per-day "any metric seen so far" flags).
    """
    frame = pd.DataFrame(
        [{"date": pd.Timestamp(d.date), **{f: getattr(d, f) for f in RESOLVED_FIELDS}} for d in disclosures]
    )
    frame[RESOLVED_FIELDS] = frame[RESOLVED_FIELDS].apply(pd.to_numeric, errors="coerce")

    # any disclosed field counts towards "has data", zeros included
    has_field = frame[RESOLVED_FIELDS].notna().any(axis=1)

    frame[FALSY_ABSENT_FIELDS] = frame[FALSY_ABSENT_FIELDS].replace(0, np.nan)

    index = pd.date_range(start=min(frame["date"].min(), pd.Timestamp(first_day)), end=pd.Timestamp(last_day), freq="D")
    resolved = frame.groupby("date")[RESOLVED_FIELDS].first().reindex(index).ffill()

    seen = frame.loc[has_field].groupby("date").size().reindex(index, fill_value=0).cumsum() > 0
    return resolved, seen


def fill_metric_series(
    disclosures: Sequence[RawDisclosure],
    prices: Sequence[RawDailyPrice],
    start_date: DateLike,
    today: Optional[DateLike] = None,
) -> List[DerivedDailyMetric]:
    """Build one DerivedDailyMetric per resolvable day from start_date through today.

    Days are omitted (never zero-filled) when no close is known yet, when no
    disclosure exists on or before the day, when the implied share count is
    not finite, or when no company id can be attached.

    shares_bought_back_delta is max(0, -issued_delta) for the day; it is
    derived per row rather than carried forward from earlier rows.
    """
    if not disclosures or not prices:
        return []

    first_day = to_utc_day(start_date)
    last_day = to_utc_day(today) if today is not None else utcnow().date()
    if last_day < first_day:
        return []

    resolved, seen = _resolve_disclosures(disclosures, first_day, last_day)

    closes: Dict[date, float] = {}
    for p in prices:
        if p.close:
            closes.setdefault(p.date, p.close)

    notes_by_day: Dict[date, str] = {}
    company_by_day: Dict[date, str] = {}
    for d in disclosures:
        if d.notes and d.date not in notes_by_day:
            notes_by_day[d.date] = d.notes
        if d.company_id and d.date not in company_by_day:
            company_by_day[d.date] = d.company_id
    fallback_company = disclosures[0].company_id

    out: List[DerivedDailyMetric] = []
    last_price: Optional[float] = None
    last_shares: Optional[float] = None

    # ends at today (UTC). A ceil-rounded day count would also emit a
    # forward-filled row for tomorrow; that row is not produced.
    for ts in pd.date_range(start=pd.Timestamp(first_day), end=pd.Timestamp(last_day), freq="D"):
        day = ts.date()

        close = closes.get(day)
        if close:
            last_price = close
        if not last_price:
            continue
        if not seen.loc[ts]:
            continue

        row = resolved.loc[ts]
        held = _present(row["held_asset_quantity"])
        avg_price = _present(row["avg_acquisition_price"])
        staking = _present(row["staking_rewards"])
        concentration = _present(row["concentration_per_mille"])
        cash = _present(row["cash_holdings"])

        try:
            shares = (held or 0.0) / ((concentration or 0.0) / 1000)
        except ZeroDivisionError:
            logger.debug("skipping %s: concentration resolves to 0", day)
            continue
        if not math.isfinite(shares):
            logger.debug("skipping %s: non-finite share count %s", day, shares)
            continue

        company_id = company_by_day.get(day) or fallback_company
        if not company_id:
            logger.debug("skipping %s: no company id", day)
            continue

        issued = shares - last_shares if last_shares else shares

        out.append(
            DerivedDailyMetric(
                company_id=company_id,
                date=day,
                held_asset_quantity=held or 0.0,
                avg_acquisition_price=avg_price or 0.0,
                weighted_avg_acquisition_price=avg_price or 0.0,
                cash_holdings=cash * CASH_UNIT if cash is not None else None,
                staking_rewards=staking or 0.0,
                concentration_per_mille=concentration or 0.0,
                shares_outstanding=shares,
                market_cap=last_price * shares,
                issued_delta=issued,
                shares_bought_back_delta=max(0.0, -issued),
                notes=notes_by_day.get(day, ""),
            )
        )
        if shares:
            last_shares = shares

    return out
