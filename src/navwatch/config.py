"""Runtime settings: config.yaml defaults, overridden by environment variables (.env supported)."""

import os
from datetime import date
from pathlib import Path
from typing import Dict, Optional, Union

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field

BASE_DIR = Path(__file__).resolve().parent.parent.parent
CONFIG_PATH = BASE_DIR / "config.yaml"

ENV_OVERRIDES = {
    "NAVWATCH_DB_PATH": "db_path",
    "DATABASE_URL": "database_url",
    "CRON_SECRET": "cron_secret",
    "NAVWATCH_WEBHOOK_URL": "webhook_url",
}


class Settings(BaseModel):
    db_path: str = "navwatch.db"
    database_url: Optional[str] = Field(None, description="PostgreSQL DSN; selects the asyncpg adapter when set")
    cron_secret: Optional[str] = None
    webhook_url: Optional[str] = None
    check_interval_minutes: float = 15
    cooldown_hours: float = 6
    series_start_date: date = date(2025, 6, 12)
    price_timeout_seconds: float = 10
    price_cache_ttl_seconds: float = 60
    max_concurrency: int = 4
    coingecko_ids: Dict[str, str] = Field(
        default_factory=lambda: {"ETH": "ethereum", "BTC": "bitcoin", "SOL": "solana"}
    )


def load_config(path: Union[str, Path, None] = None, env_file: Union[str, Path, None] = None) -> Settings:
    """Read YAML settings (missing file -> defaults) and apply environment overrides."""
    load_dotenv(env_file or BASE_DIR / ".env")

    config_path = Path(path) if path else CONFIG_PATH
    raw: dict = {}
    if config_path.exists():
        with open(config_path, "r") as f:
            raw = yaml.safe_load(f) or {}

    for env_name, key in ENV_OVERRIDES.items():
        value = os.getenv(env_name)
        if value:
            raw[key] = value.strip()

    return Settings(**raw)
