# src/navwatch/db/adapter_pg.py
from __future__ import annotations
import os
import uuid
from datetime import date, datetime
from typing import List, Optional

import asyncpg

from navwatch.core.errors import StoreWriteFailure
from navwatch.core.models import AlertRule, Company, NotificationRecord, RawDailyPrice, RawDisclosure
from navwatch.core.timeutils import to_utc_day

DATABASE_URL = os.getenv("DATABASE_URL")

CREATE_TABLES_SQL = """
CREATE TABLE IF NOT EXISTS companies (
    id TEXT PRIMARY KEY,
    ticker TEXT NOT NULL,
    name TEXT,
    asset_symbol TEXT,
    series_start DATE
);
CREATE TABLE IF NOT EXISTS company_metrics (
    id BIGSERIAL PRIMARY KEY,
    company_id TEXT NOT NULL,
    date DATE NOT NULL,
    held_asset_quantity DOUBLE PRECISION,
    avg_acquisition_price DOUBLE PRECISION,
    cash_holdings DOUBLE PRECISION,
    staking_rewards DOUBLE PRECISION,
    shares_outstanding DOUBLE PRECISION,
    concentration_per_mille DOUBLE PRECISION,
    notes TEXT
);
CREATE TABLE IF NOT EXISTS stock_prices (
    company_id TEXT NOT NULL,
    date DATE NOT NULL,
    open DOUBLE PRECISION,
    high DOUBLE PRECISION,
    low DOUBLE PRECISION,
    close DOUBLE PRECISION,
    volume DOUBLE PRECISION,
    PRIMARY KEY (company_id, date)
);
CREATE TABLE IF NOT EXISTS alternative_assets (
    id BIGSERIAL PRIMARY KEY,
    company_id TEXT NOT NULL,
    shares_remaining DOUBLE PRECISION,
    current_price DOUBLE PRECISION,
    status TEXT DEFAULT 'active'
);
CREATE TABLE IF NOT EXISTS mnav_threshold_alerts (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    user_email TEXT,
    company_id TEXT NOT NULL,
    threshold_value DOUBLE PRECISION NOT NULL,
    alert_type TEXT NOT NULL CHECK (alert_type IN ('above', 'below')),
    is_active BOOLEAN NOT NULL DEFAULT TRUE,
    last_triggered_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ DEFAULT now()
);
CREATE TABLE IF NOT EXISTS mnav_notifications (
    id TEXT PRIMARY KEY,
    alert_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    company_id TEXT NOT NULL,
    mnav_value DOUBLE PRECISION NOT NULL,
    threshold_value DOUBLE PRECISION NOT NULL,
    alert_type TEXT NOT NULL,
    created_at TIMESTAMPTZ NOT NULL,
    email_sent BOOLEAN NOT NULL DEFAULT FALSE,
    webhook_sent BOOLEAN NOT NULL DEFAULT FALSE
);
"""

RULE_SELECT_SQL = """
SELECT a.id, a.user_id, a.user_email, a.company_id, a.threshold_value, a.alert_type,
       a.is_active, a.last_triggered_at, c.ticker, c.name
FROM mnav_threshold_alerts a
LEFT JOIN companies c ON c.id = a.company_id
"""

NOTIFICATION_CHANNELS = ("email", "webhook")


def _rule_from_record(row) -> AlertRule:
    return AlertRule(
        id=row["id"],
        user_id=row["user_id"],
        user_email=row["user_email"],
        company_id=row["company_id"],
        threshold_value=row["threshold_value"],
        direction=row["alert_type"],
        is_active=row["is_active"],
        last_triggered_at=row["last_triggered_at"],
        company_ticker=row["ticker"],
        company_name=row["name"],
    )


class DBAdapter:
    """PostgreSQL flavour of the store, same contract as the SQLite adapter."""

    def __init__(self, database_url: Optional[str] = None):
        self.database_url = database_url or DATABASE_URL
        self._pool: Optional[asyncpg.pool.Pool] = None

    async def init(self) -> None:
        if not self.database_url:
            raise RuntimeError("DATABASE_URL not set")
        self._pool = await asyncpg.create_pool(self.database_url, min_size=1, max_size=10)
        # ensure tables exist
        async with self._pool.acquire() as conn:
            await conn.execute(CREATE_TABLES_SQL)

    async def close(self) -> None:
        if self._pool:
            await self._pool.close()
            self._pool = None

    def _require_pool(self) -> asyncpg.pool.Pool:
        if not self._pool:
            raise RuntimeError("DBAdapter not initialized")
        return self._pool

    async def get_company(self, company_id: str) -> Optional[Company]:
        async with self._require_pool().acquire() as conn:
            row = await conn.fetchrow(
                "SELECT id, ticker, name, asset_symbol, series_start FROM companies WHERE id = $1", company_id
            )
        if not row:
            return None
        return Company(
            id=row["id"],
            ticker=row["ticker"],
            name=row["name"] or "",
            asset_symbol=row["asset_symbol"] or "ETH",
            series_start=row["series_start"],
        )

    async def list_companies(self) -> List[Company]:
        async with self._require_pool().acquire() as conn:
            rows = await conn.fetch("SELECT id, ticker, name, asset_symbol, series_start FROM companies ORDER BY ticker")
        return [
            Company(
                id=r["id"],
                ticker=r["ticker"],
                name=r["name"] or "",
                asset_symbol=r["asset_symbol"] or "ETH",
                series_start=r["series_start"],
            )
            for r in rows
        ]

    async def get_disclosures(self, company_id: str, from_date: Optional[date] = None) -> List[RawDisclosure]:
        sql = """
            SELECT company_id, date, held_asset_quantity, avg_acquisition_price, cash_holdings,
                   staking_rewards, shares_outstanding, concentration_per_mille, notes
            FROM company_metrics
            WHERE company_id = $1 AND ($2::date IS NULL OR date >= $2::date)
            ORDER BY date ASC, id ASC
        """
        async with self._require_pool().acquire() as conn:
            rows = await conn.fetch(sql, company_id, to_utc_day(from_date) if from_date else None)
        return [RawDisclosure(**dict(r)) for r in rows]

    async def get_daily_prices(self, company_id: str, from_date: Optional[date] = None) -> List[RawDailyPrice]:
        sql = """
            SELECT company_id, date, open, high, low, close, volume
            FROM stock_prices
            WHERE company_id = $1 AND ($2::date IS NULL OR date >= $2::date)
            ORDER BY date ASC
        """
        async with self._require_pool().acquire() as conn:
            rows = await conn.fetch(sql, company_id, to_utc_day(from_date) if from_date else None)
        return [RawDailyPrice(**dict(r)) for r in rows]

    async def get_latest_close(self, company_id: str) -> Optional[float]:
        async with self._require_pool().acquire() as conn:
            value = await conn.fetchval(
                """
                SELECT close FROM stock_prices
                WHERE company_id = $1 AND close IS NOT NULL AND close > 0
                ORDER BY date DESC LIMIT 1
                """,
                company_id,
            )
        return float(value) if value is not None else None

    async def get_other_assets_value(self, company_id: str) -> float:
        async with self._require_pool().acquire() as conn:
            value = await conn.fetchval(
                """
                SELECT COALESCE(SUM(COALESCE(shares_remaining, 0) * COALESCE(current_price, 0)), 0)
                FROM alternative_assets WHERE company_id = $1 AND status = 'active'
                """,
                company_id,
            )
        return float(value or 0)

    async def get_alert_rule(self, rule_id: str) -> Optional[AlertRule]:
        async with self._require_pool().acquire() as conn:
            row = await conn.fetchrow(RULE_SELECT_SQL + " WHERE a.id = $1", rule_id)
        return _rule_from_record(row) if row else None

    async def list_active_rules(self) -> List[AlertRule]:
        async with self._require_pool().acquire() as conn:
            rows = await conn.fetch(RULE_SELECT_SQL + " WHERE a.is_active ORDER BY a.company_id, a.created_at")
        return [_rule_from_record(r) for r in rows]

    async def set_rule_active(self, rule_id: str, active: bool) -> bool:
        async with self._require_pool().acquire() as conn:
            status = await conn.execute("UPDATE mnav_threshold_alerts SET is_active = $1 WHERE id = $2", active, rule_id)
        return status != "UPDATE 0"

    async def count_active_rules(self) -> int:
        async with self._require_pool().acquire() as conn:
            return await conn.fetchval("SELECT COUNT(*) FROM mnav_threshold_alerts WHERE is_active")

    @staticmethod
    async def _update_triggered(conn, rule_id: str, at: datetime, cutoff: Optional[datetime]) -> bool:
        row = await conn.fetchrow(
            """
            UPDATE mnav_threshold_alerts SET last_triggered_at = $1
            WHERE id = $2 AND is_active
              AND ($3::timestamptz IS NULL OR last_triggered_at IS NULL OR last_triggered_at < $3::timestamptz)
            RETURNING id
            """,
            at,
            rule_id,
            cutoff,
        )
        return row is not None

    @staticmethod
    async def _insert_notification(conn, rule: AlertRule, m_nav: float, at: datetime) -> NotificationRecord:
        record = NotificationRecord(
            id=uuid.uuid4().hex,
            alert_id=rule.id,
            user_id=rule.user_id,
            company_id=rule.company_id,
            m_nav_value=m_nav,
            threshold_value=rule.threshold_value,
            direction=rule.direction,
            created_at=at,
        )
        await conn.execute(
            """
            INSERT INTO mnav_notifications
            (id, alert_id, user_id, company_id, mnav_value, threshold_value, alert_type, created_at)
            VALUES ($1,$2,$3,$4,$5,$6,$7,$8)
            """,
            record.id,
            record.alert_id,
            record.user_id,
            record.company_id,
            record.m_nav_value,
            record.threshold_value,
            record.direction,
            record.created_at,
        )
        return record

    async def mark_triggered(self, rule_id: str, at: datetime, cutoff: Optional[datetime] = None) -> bool:
        try:
            async with self._require_pool().acquire() as conn:
                return await self._update_triggered(conn, rule_id, at, cutoff)
        except asyncpg.PostgresError as e:
            raise StoreWriteFailure(f"could not mark alert {rule_id} triggered: {e}") from e

    async def record_notification(self, rule: AlertRule, m_nav: float, at: datetime) -> NotificationRecord:
        try:
            async with self._require_pool().acquire() as conn:
                return await self._insert_notification(conn, rule, m_nav, at)
        except asyncpg.PostgresError as e:
            raise StoreWriteFailure(f"could not record notification for alert {rule.id}: {e}") from e

    async def record_trigger(
        self, rule: AlertRule, m_nav: float, at: datetime, cutoff: datetime
    ) -> Optional[NotificationRecord]:
        """Conditional cooldown update and notification insert in one transaction.
        The row lock taken by the UPDATE makes a racing run see the new timestamp and match nothing.
        """
        try:
            async with self._require_pool().acquire() as conn:
                async with conn.transaction():
                    if not await self._update_triggered(conn, rule.id, at, cutoff):
                        return None
                    return await self._insert_notification(conn, rule, m_nav, at)
        except asyncpg.PostgresError as e:
            raise StoreWriteFailure(f"could not record trigger for alert {rule.id}: {e}") from e

    async def mark_channel_sent(self, notification_id: str, channel: str) -> None:
        if channel not in NOTIFICATION_CHANNELS:
            raise ValueError(f"unknown notification channel: {channel}")
        async with self._require_pool().acquire() as conn:
            await conn.execute(f"UPDATE mnav_notifications SET {channel}_sent = TRUE WHERE id = $1", notification_id)

    async def count_notifications_since(self, since: datetime) -> int:
        async with self._require_pool().acquire() as conn:
            return await conn.fetchval("SELECT COUNT(*) FROM mnav_notifications WHERE created_at >= $1", since)
