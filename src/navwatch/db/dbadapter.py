import asyncio
import uuid
from datetime import date, datetime
from typing import List, Optional

import aiosqlite

from navwatch.core.errors import StoreWriteFailure
from navwatch.core.models import (
    AlertRule,
    Company,
    NotificationRecord,
    RawDailyPrice,
    RawDisclosure,
)
from navwatch.core.timeutils import from_epoch, to_epoch, to_utc_day, utcnow

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS companies (
id TEXT PRIMARY KEY,
ticker TEXT NOT NULL,
name TEXT,
asset_symbol TEXT,
series_start TEXT
);
CREATE TABLE IF NOT EXISTS company_metrics (
id INTEGER PRIMARY KEY AUTOINCREMENT,
company_id TEXT NOT NULL,
date TEXT NOT NULL,
held_asset_quantity REAL,
avg_acquisition_price REAL,
cash_holdings REAL,
staking_rewards REAL,
shares_outstanding REAL,
concentration_per_mille REAL,
notes TEXT
);
CREATE INDEX IF NOT EXISTS idx_company_metrics_company_date ON company_metrics (company_id, date);
CREATE TABLE IF NOT EXISTS stock_prices (
company_id TEXT NOT NULL,
date TEXT NOT NULL,
open REAL,
high REAL,
low REAL,
close REAL,
volume REAL,
PRIMARY KEY (company_id, date)
);
CREATE TABLE IF NOT EXISTS alternative_assets (
id INTEGER PRIMARY KEY AUTOINCREMENT,
company_id TEXT NOT NULL,
shares_remaining REAL,
current_price REAL,
status TEXT DEFAULT 'active'
);
CREATE TABLE IF NOT EXISTS mnav_threshold_alerts (
id TEXT PRIMARY KEY,
user_id TEXT NOT NULL,
user_email TEXT,
company_id TEXT NOT NULL,
threshold_value REAL NOT NULL,
alert_type TEXT NOT NULL CHECK (alert_type IN ('above', 'below')),
is_active INTEGER NOT NULL DEFAULT 1,
last_triggered_at REAL,
created_at REAL
);
CREATE TABLE IF NOT EXISTS mnav_notifications (
id TEXT PRIMARY KEY,
alert_id TEXT NOT NULL,
user_id TEXT NOT NULL,
company_id TEXT NOT NULL,
mnav_value REAL NOT NULL,
threshold_value REAL NOT NULL,
alert_type TEXT NOT NULL,
created_at REAL NOT NULL,
email_sent INTEGER NOT NULL DEFAULT 0,
webhook_sent INTEGER NOT NULL DEFAULT 0
);
"""

DISCLOSURE_COLUMNS = (
    "held_asset_quantity",
    "avg_acquisition_price",
    "cash_holdings",
    "staking_rewards",
    "shares_outstanding",
    "concentration_per_mille",
    "notes",
)

RULE_SELECT_SQL = """
SELECT a.id, a.user_id, a.user_email, a.company_id, a.threshold_value, a.alert_type,
       a.is_active, a.last_triggered_at, c.ticker, c.name
FROM mnav_threshold_alerts a
LEFT JOIN companies c ON c.id = a.company_id
"""

NOTIFICATION_CHANNELS = ("email", "webhook")


def _rule_from_row(row) -> AlertRule:
    return AlertRule(
        id=row["id"],
        user_id=row["user_id"],
        user_email=row["user_email"],
        company_id=row["company_id"],
        threshold_value=row["threshold_value"],
        direction=row["alert_type"],
        is_active=bool(row["is_active"]),
        last_triggered_at=from_epoch(row["last_triggered_at"]),
        company_ticker=row["ticker"],
        company_name=row["name"],
    )


def _notification_from_row(row) -> NotificationRecord:
    return NotificationRecord(
        id=row["id"],
        alert_id=row["alert_id"],
        user_id=row["user_id"],
        company_id=row["company_id"],
        m_nav_value=row["mnav_value"],
        threshold_value=row["threshold_value"],
        direction=row["alert_type"],
        created_at=from_epoch(row["created_at"]),
        email_sent=bool(row["email_sent"]),
        webhook_sent=bool(row["webhook_sent"]),
    )


class DBAdapter:
    """SQLite-backed store for disclosures, prices, alert rules and notifications."""

    def __init__(self, db_path: str = "navwatch.db") -> None:
        self.db_path = db_path
        self._conn: Optional[aiosqlite.Connection] = None
        self._conn_lock = asyncio.Lock()
        # one shared connection: serialize transactions so they never interleave
        self._tx_lock = asyncio.Lock()

    async def init(self):
        """Initialize the database connection and ensure schema exists."""
        async with self._conn_lock:
            if self._conn:
                return
            self._conn = await aiosqlite.connect(self.db_path)
            self._conn.row_factory = aiosqlite.Row
            await self._conn.executescript(SCHEMA_SQL)
            await self._conn.commit()

    async def close(self) -> None:
        """Close the DB connection."""
        async with self._conn_lock:
            if self._conn:
                await self._conn.close()
                self._conn = None

    def _require_conn(self) -> aiosqlite.Connection:
        if not self._conn:
            raise RuntimeError("DBAdapter not initialized. Call .init() before use.")
        return self._conn

    # --- companies / metric inputs ---

    async def upsert_company(self, company: Company) -> None:
        conn = self._require_conn()
        async with self._tx_lock:
            await conn.execute(
                """
                INSERT INTO companies (id, ticker, name, asset_symbol, series_start)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT (id) DO UPDATE
                SET ticker = excluded.ticker, name = excluded.name,
                    asset_symbol = excluded.asset_symbol, series_start = excluded.series_start
                """,
                (
                    company.id,
                    company.ticker,
                    company.name,
                    company.asset_symbol,
                    company.series_start.isoformat() if company.series_start else None,
                ),
            )
            await conn.commit()

    async def get_company(self, company_id: str) -> Optional[Company]:
        conn = self._require_conn()
        sql = "SELECT id, ticker, name, asset_symbol, series_start FROM companies WHERE id = ?"
        async with conn.execute(sql, (company_id,)) as cur:
            row = await cur.fetchone()
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
        conn = self._require_conn()
        companies: List[Company] = []
        async with conn.execute("SELECT id FROM companies ORDER BY ticker") as cur:
            ids = [row["id"] async for row in cur]
        for company_id in ids:
            company = await self.get_company(company_id)
            if company:
                companies.append(company)
        return companies

    async def insert_disclosure(self, disclosure: RawDisclosure) -> None:
        if not disclosure.company_id:
            raise ValueError("disclosure needs a company_id to be stored")
        conn = self._require_conn()
        cols = ", ".join(("company_id", "date") + DISCLOSURE_COLUMNS)
        placeholders = ", ".join("?" for _ in range(len(DISCLOSURE_COLUMNS) + 2))
        params = (disclosure.company_id, disclosure.date.isoformat()) + tuple(
            getattr(disclosure, c) for c in DISCLOSURE_COLUMNS
        )
        async with self._tx_lock:
            await conn.execute(f"INSERT INTO company_metrics ({cols}) VALUES ({placeholders})", params)
            await conn.commit()

    async def get_disclosures(self, company_id: str, from_date: Optional[date] = None) -> List[RawDisclosure]:
        """Disclosure rows for a company, oldest first. Empty list when there are none."""
        conn = self._require_conn()
        sql = f"SELECT company_id, date, {', '.join(DISCLOSURE_COLUMNS)} FROM company_metrics WHERE company_id = ?"
        params: tuple = (company_id,)
        if from_date:
            sql += " AND date >= ?"
            params += (to_utc_day(from_date).isoformat(),)
        sql += " ORDER BY date ASC, id ASC"
        async with conn.execute(sql, params) as cur:
            return [RawDisclosure(**dict(row)) async for row in cur]

    async def insert_daily_price(self, price: RawDailyPrice) -> None:
        conn = self._require_conn()
        async with self._tx_lock:
            await conn.execute(
                """
                REPLACE INTO stock_prices (company_id, date, open, high, low, close, volume)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (price.company_id, price.date.isoformat(), price.open, price.high, price.low, price.close, price.volume),
            )
            await conn.commit()

    async def get_daily_prices(self, company_id: str, from_date: Optional[date] = None) -> List[RawDailyPrice]:
        """Daily OHLC rows for a company, oldest first. Empty list when there are none."""
        conn = self._require_conn()
        sql = "SELECT company_id, date, open, high, low, close, volume FROM stock_prices WHERE company_id = ?"
        params: tuple = (company_id,)
        if from_date:
            sql += " AND date >= ?"
            params += (to_utc_day(from_date).isoformat(),)
        sql += " ORDER BY date ASC"
        async with conn.execute(sql, params) as cur:
            return [RawDailyPrice(**dict(row)) async for row in cur]

    async def get_latest_close(self, company_id: str) -> Optional[float]:
        conn = self._require_conn()
        sql = """
        SELECT close FROM stock_prices
        WHERE company_id = ? AND close IS NOT NULL AND close > 0
        ORDER BY date DESC LIMIT 1
        """
        async with conn.execute(sql, (company_id,)) as cur:
            row = await cur.fetchone()
        return float(row["close"]) if row else None

    async def insert_alternative_asset(
        self, company_id: str, shares_remaining: float, current_price: float, status: str = "active"
    ) -> None:
        conn = self._require_conn()
        async with self._tx_lock:
            await conn.execute(
                "INSERT INTO alternative_assets (company_id, shares_remaining, current_price, status) VALUES (?, ?, ?, ?)",
                (company_id, shares_remaining, current_price, status),
            )
            await conn.commit()

    async def get_other_assets_value(self, company_id: str) -> float:
        """Current value of the company's active alternative assets."""
        conn = self._require_conn()
        sql = """
        SELECT COALESCE(SUM(COALESCE(shares_remaining, 0) * COALESCE(current_price, 0)), 0) AS total
        FROM alternative_assets WHERE company_id = ? AND status = 'active'
        """
        async with conn.execute(sql, (company_id,)) as cur:
            row = await cur.fetchone()
        return float(row["total"]) if row else 0.0

    # --- alert rules ---

    async def insert_alert_rule(self, rule: AlertRule, created_at: Optional[datetime] = None) -> AlertRule:
        conn = self._require_conn()
        async with self._tx_lock:
            await conn.execute(
                """
                INSERT INTO mnav_threshold_alerts
                (id, user_id, user_email, company_id, threshold_value, alert_type, is_active, last_triggered_at, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    rule.id,
                    rule.user_id,
                    rule.user_email,
                    rule.company_id,
                    rule.threshold_value,
                    rule.direction,
                    int(rule.is_active),
                    to_epoch(rule.last_triggered_at),
                    to_epoch(created_at or utcnow()),
                ),
            )
            await conn.commit()
        return rule

    async def get_alert_rule(self, rule_id: str) -> Optional[AlertRule]:
        conn = self._require_conn()
        async with conn.execute(RULE_SELECT_SQL + " WHERE a.id = ?", (rule_id,)) as cur:
            row = await cur.fetchone()
        return _rule_from_row(row) if row else None

    async def list_active_rules(self) -> List[AlertRule]:
        conn = self._require_conn()
        sql = RULE_SELECT_SQL + " WHERE a.is_active = 1 ORDER BY a.company_id, a.created_at"
        async with conn.execute(sql) as cur:
            return [_rule_from_row(row) async for row in cur]

    async def set_rule_active(self, rule_id: str, active: bool) -> bool:
        conn = self._require_conn()
        async with self._tx_lock:
            cur = await conn.execute(
                "UPDATE mnav_threshold_alerts SET is_active = ? WHERE id = ?", (int(active), rule_id)
            )
            await conn.commit()
        return cur.rowcount > 0

    async def count_active_rules(self) -> int:
        conn = self._require_conn()
        async with conn.execute("SELECT COUNT(*) AS n FROM mnav_threshold_alerts WHERE is_active = 1") as cur:
            row = await cur.fetchone()
        return int(row["n"])

    # --- trigger path ---

    async def _update_triggered(self, rule_id: str, at: datetime, cutoff: Optional[datetime]) -> bool:
        sql = "UPDATE mnav_threshold_alerts SET last_triggered_at = ? WHERE id = ? AND is_active = 1"
        params: tuple = (to_epoch(at), rule_id)
        if cutoff is not None:
            sql += " AND (last_triggered_at IS NULL OR last_triggered_at < ?)"
            params += (to_epoch(cutoff),)
        cur = await self._conn.execute(sql, params)
        return cur.rowcount > 0

    async def _insert_notification(self, rule: AlertRule, m_nav: float, at: datetime) -> NotificationRecord:
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
        await self._conn.execute(
            """
            INSERT INTO mnav_notifications
            (id, alert_id, user_id, company_id, mnav_value, threshold_value, alert_type, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                record.id,
                record.alert_id,
                record.user_id,
                record.company_id,
                record.m_nav_value,
                record.threshold_value,
                record.direction,
                to_epoch(record.created_at),
            ),
        )
        return record

    async def mark_triggered(self, rule_id: str, at: datetime, cutoff: Optional[datetime] = None) -> bool:
        """Set last_triggered_at. With a cutoff, only when the previous trigger is older than it."""
        self._require_conn()
        async with self._tx_lock:
            try:
                updated = await self._update_triggered(rule_id, at, cutoff)
                await self._conn.commit()
            except aiosqlite.Error as e:
                await self._conn.rollback()
                raise StoreWriteFailure(f"could not mark alert {rule_id} triggered: {e}") from e
        return updated

    async def record_notification(self, rule: AlertRule, m_nav: float, at: datetime) -> NotificationRecord:
        self._require_conn()
        async with self._tx_lock:
            try:
                record = await self._insert_notification(rule, m_nav, at)
                await self._conn.commit()
            except aiosqlite.Error as e:
                await self._conn.rollback()
                raise StoreWriteFailure(f"could not record notification for alert {rule.id}: {e}") from e
        return record

    async def record_trigger(
        self, rule: AlertRule, m_nav: float, at: datetime, cutoff: datetime
    ) -> Optional[NotificationRecord]:
        """Atomically claim the trigger and create its notification.

        Behavior:
        - If the rule's last trigger is null or older than cutoff -> stamp `at`,
          insert the notification, commit, return it
        - Otherwise (another run got there first, or the rule was deactivated) -> None
        - Any DB error rolls both writes back and raises StoreWriteFailure
        """
        self._require_conn()
        async with self._tx_lock:
            try:
                await self._conn.execute("BEGIN IMMEDIATE")
                if not await self._update_triggered(rule.id, at, cutoff):
                    await self._conn.rollback()
                    return None
                record = await self._insert_notification(rule, m_nav, at)
                await self._conn.commit()
            except aiosqlite.Error as e:
                await self._conn.rollback()
                raise StoreWriteFailure(f"could not record trigger for alert {rule.id}: {e}") from e
        return record

    # --- notifications ---

    async def mark_channel_sent(self, notification_id: str, channel: str) -> None:
        if channel not in NOTIFICATION_CHANNELS:
            raise ValueError(f"unknown notification channel: {channel}")
        conn = self._require_conn()
        async with self._tx_lock:
            await conn.execute(f"UPDATE mnav_notifications SET {channel}_sent = 1 WHERE id = ?", (notification_id,))
            await conn.commit()

    async def list_notifications(self, alert_id: Optional[str] = None) -> List[NotificationRecord]:
        conn = self._require_conn()
        sql = "SELECT * FROM mnav_notifications"
        params: tuple = ()
        if alert_id:
            sql += " WHERE alert_id = ?"
            params = (alert_id,)
        sql += " ORDER BY created_at ASC"
        async with conn.execute(sql, params) as cur:
            return [_notification_from_row(row) async for row in cur]

    async def count_notifications_since(self, since: datetime) -> int:
        conn = self._require_conn()
        sql = "SELECT COUNT(*) AS n FROM mnav_notifications WHERE created_at >= ?"
        async with conn.execute(sql, (to_epoch(since),)) as cur:
            row = await cur.fetchone()
        return int(row["n"])


# helper to create and init DBAdapter instance (it's outside the class)
async def create_and_init(db_path: str = "navwatch.db") -> DBAdapter:
    db = DBAdapter(db_path=db_path)
    await db.init()
    return db
