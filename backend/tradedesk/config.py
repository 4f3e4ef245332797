from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration loaded from environment variables or `.env`.

    Environment variables:
    - TRADEDESK_APP_NAME
    - TRADEDESK_ENVIRONMENT
    - TRADEDESK_LOG_LEVEL
    - TRADEDESK_META_DB_PATH
    - TRADEDESK_DATA_PROVIDER
    - TRADEDESK_UPSTOX_BASE_URL
    - TRADEDESK_UPSTOX_ACCESS_TOKEN
    - TRADEDESK_STRATEGY_TIMEOUT_SECONDS
    - TRADEDESK_FALLBACK_SYMBOL
    - TRADEDESK_CORS_ORIGINS (JSON list)
    """

    model_config = SettingsConfigDict(
        env_prefix="TRADEDESK_",
        env_file=".env",
        env_file_encoding="utf-8",
    )

    app_name: str = "TradeDesk"
    environment: Literal["dev", "test", "prod"] = "dev"
    log_level: str = "INFO"
    meta_db_path: Path = Path("tradedesk_meta.db")

    # Historical data provider used by backtests. Upstox needs an access token
    # obtained through the account-linking flow; without one every fetch fails
    # and the engine falls back to synthetic bars.
    data_provider: Literal["upstox", "yfinance"] = "upstox"
    upstox_base_url: str = "https://api.upstox.com/v2"
    upstox_access_token: str | None = None
    upstox_timeout_seconds: float = 20.0
    default_granularity: str = "1day"

    # Symbol used when a strategy neither declares its symbols nor mentions
    # any `symbol=`/`instrument=` literal in its source.
    fallback_symbol: str = "RELIANCE"

    # Sandbox limits for strategy scripts.
    strategy_timeout_seconds: float = 30.0
    sandbox_start_method: Literal["spawn", "fork", "forkserver"] = "spawn"
    max_strategy_log_lines: int = 200

    # Browser origins allowed by CORS (frontend dev server).
    cors_origins: list[str] = ["http://localhost:5173", "http://127.0.0.1:5173"]

    # Metric model constants: ~5% a year as a daily rate, 252 sessions a year.
    risk_free_rate_daily: float = 0.0002
    trading_days_per_year: int = 252


@lru_cache()
def get_settings() -> Settings:
    """Return cached application settings."""

    return Settings()


def _build_sqlite_url(path: Path) -> str:
    """Build a SQLite database URL from a filesystem path."""

    # Relative paths resolve against the working directory at startup.
    db_path = path.expanduser()
    if not db_path.is_absolute():
        db_path = Path.cwd() / db_path
    db_path.parent.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{db_path}"


def get_database_url(settings: Settings | None = None) -> str:
    """Return SQLite URL for the meta database."""

    _settings = settings or get_settings()
    return _build_sqlite_url(_settings.meta_db_path)
