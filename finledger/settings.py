from __future__ import annotations

import os
from dataclasses import dataclass

FALLBACK_CURRENCY = "HUF"


def normalize_currency(value: str) -> str:
    normalized = value.strip().upper()
    if len(normalized) != 3 or not normalized.isalpha():
        raise ValueError("Currency must be a 3-letter ISO 4217 code.")
    return normalized


def get_system_default_currency() -> str:
    raw = os.getenv("DEFAULT_CURRENCY", FALLBACK_CURRENCY)
    try:
        return normalize_currency(raw)
    except ValueError:
        return FALLBACK_CURRENCY


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///./finledger.db"
    default_currency: str = FALLBACK_CURRENCY
    exchange_rate_url: str = "https://open.er-api.com/v6/latest"
    rate_cache_ttl_seconds: int = 12 * 60 * 60
    quote_url: str = "https://query1.finance.yahoo.com/v8/finance/chart"
    log_level: str = "INFO"
    log_json: bool = True
    frontend_origin: str = "http://localhost:3000"
    api_host: str = "127.0.0.1"
    api_port: int = 8000


def load_settings() -> Settings:
    """Read process configuration from the environment."""
    return Settings(
        database_url=os.getenv("DATABASE_URL", "sqlite:///./finledger.db"),
        default_currency=get_system_default_currency(),
        exchange_rate_url=os.getenv(
            "EXCHANGE_RATE_URL", "https://open.er-api.com/v6/latest"
        ),
        rate_cache_ttl_seconds=int(os.getenv("RATE_CACHE_TTL_SECONDS", str(12 * 60 * 60))),
        quote_url=os.getenv(
            "QUOTE_URL", "https://query1.finance.yahoo.com/v8/finance/chart"
        ),
        log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper(),
        log_json=_env_flag("LOG_JSON", True),
        frontend_origin=os.getenv("FRONTEND_ORIGIN", "http://localhost:3000"),
        api_host=os.getenv("API_HOST", "127.0.0.1"),
        api_port=int(os.getenv("API_PORT", "8000")),
    )
