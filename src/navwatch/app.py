"""
Wiring and command line entry for the mNAV monitor.

Usage:
    navwatch                 # run the monitor loop on the configured interval
    navwatch --once          # one pass, print the per-company summary as JSON
    navwatch --serve         # HTTP API with the monitor loop in the background
"""

import argparse
import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from navwatch.clients.notifier import LogNotifier, Notifier, WebhookNotifier
from navwatch.clients.price_gateway import (
    CachedPriceGateway,
    CoinGeckoPriceGateway,
    FallbackPriceGateway,
    YahooPriceGateway,
)
from navwatch.config import Settings, load_config
from navwatch.services.monitor import AlertMonitor
from navwatch.services.nav_service import NavService

logger = logging.getLogger("navwatch")


@dataclass
class Services:
    settings: Settings
    store: object
    nav_service: NavService
    monitor: AlertMonitor

    async def close(self) -> None:
        await self.store.close()


async def build_store(settings: Settings):
    if settings.database_url:
        from navwatch.db.adapter_pg import DBAdapter as PgAdapter

        store = PgAdapter(settings.database_url)
    else:
        from navwatch.db.dbadapter import DBAdapter

        store = DBAdapter(db_path=settings.db_path)
    await store.init()
    return store


def build_notifier(settings: Settings) -> Notifier:
    if settings.webhook_url:
        return WebhookNotifier(settings.webhook_url)
    return LogNotifier()


async def build_services(settings: Settings, store=None) -> Services:
    store = store or await build_store(settings)
    ttl = settings.price_cache_ttl_seconds
    yahoo = YahooPriceGateway()
    equity_gateway = CachedPriceGateway(yahoo, ttl_seconds=ttl)
    asset_gateway = CachedPriceGateway(
        FallbackPriceGateway(CoinGeckoPriceGateway(ids=settings.coingecko_ids), yahoo), ttl_seconds=ttl
    )
    nav_service = NavService(
        store,
        equity_gateway=equity_gateway,
        asset_gateway=asset_gateway,
        series_start=settings.series_start_date,
        price_timeout=settings.price_timeout_seconds,
    )
    monitor = AlertMonitor(
        store,
        nav_service,
        notifier=build_notifier(settings),
        cooldown=timedelta(hours=settings.cooldown_hours),
        max_concurrency=settings.max_concurrency,
    )
    return Services(settings=settings, store=store, nav_service=nav_service, monitor=monitor)


async def run(settings: Settings, once: bool) -> int:
    services = await build_services(settings)
    try:
        if once:
            results = await services.monitor.run_once()
            print(json.dumps([r.model_dump(mode="json") for r in results], indent=2))
        else:
            await services.monitor.run_forever(settings.check_interval_minutes * 60)
    finally:
        await services.close()
    return 0


def main(argv: Optional[list] = None) -> int:
    parser = argparse.ArgumentParser(description="mNAV threshold monitor for digital-asset treasury companies")
    parser.add_argument("--config", help="path to config.yaml")
    parser.add_argument("--once", action="store_true", help="run a single check and exit")
    parser.add_argument("--serve", action="store_true", help="serve the HTTP API (monitor loop runs in background)")
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=8000)
    parser.add_argument("-v", "--verbose", action="count", default=0)
    args = parser.parse_args(argv)

    level = logging.WARNING
    if args.verbose == 1:
        level = logging.INFO
    elif args.verbose >= 2:
        level = logging.DEBUG
    logging.basicConfig(level=level, format="%(asctime)s | %(levelname)s | %(name)s | %(message)s")

    settings = load_config(args.config)

    if args.serve:
        import uvicorn

        from navwatch.api.server import create_app

        uvicorn.run(create_app(settings=settings, background_monitor=True), host=args.host, port=args.port)
        return 0

    try:
        return asyncio.run(run(settings, once=args.once))
    except KeyboardInterrupt:
        logger.info("Stopped")
        return 0


if __name__ == "__main__":
    raise SystemExit(main())
