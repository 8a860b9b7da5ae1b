from datetime import timedelta

import pytest

from navwatch.app import build_notifier, build_services
from navwatch.clients.notifier import LogNotifier, WebhookNotifier
from navwatch.config import Settings
from navwatch.db.dbadapter import DBAdapter


def test_build_notifier():
    assert isinstance(build_notifier(Settings()), LogNotifier)
    webhook = build_notifier(Settings(webhook_url="https://hooks.example.com/x"))
    assert isinstance(webhook, WebhookNotifier)
    assert webhook.url == "https://hooks.example.com/x"


@pytest.mark.asyncio
async def test_build_services_uses_settings(tmp_path):
    settings = Settings(db_path=str(tmp_path / "app.db"), cooldown_hours=3, max_concurrency=2, price_timeout_seconds=4)
    services = await build_services(settings)
    try:
        assert isinstance(services.store, DBAdapter)
        assert services.monitor.cooldown == timedelta(hours=3)
        assert services.nav_service.price_timeout == 4
        assert services.nav_service.series_start == settings.series_start_date
        assert await services.monitor.run_once() == []
    finally:
        await services.close()
