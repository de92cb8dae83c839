from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
import json
import time
from typing import Mapping, Protocol
from urllib.error import HTTPError, URLError
from urllib.request import urlopen

import structlog

from finledger.models import coerce_decimal
from finledger.settings import normalize_currency

logger = structlog.get_logger(__name__)

DEFAULT_RATES: dict[str, Decimal] = {
    "USD": Decimal("1"),
    "EUR": Decimal("0.92"),
    "GBP": Decimal("0.79"),
    "HUF": Decimal("355.00"),
    "JPY": Decimal("147.50"),
    "CAD": Decimal("1.34"),
    "AUD": Decimal("1.52"),
    "CHF": Decimal("0.88"),
    "SEK": Decimal("10.45"),
}


class RateProvider(Protocol):
    def get_rates(self, base_currency: str) -> Mapping[str, Decimal]:
        """Units of each currency per one unit of ``base_currency``; empty on failure."""


@dataclass(frozen=True)
class StaticRateProvider:
    """Deterministic, in-memory FX rates.

    The table is expressed as currency per 1 USD; other bases are derived as
    cross rates.
    """

    rates: Mapping[str, Decimal] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "rates", dict(self.rates or DEFAULT_RATES))

    def get_rates(self, base_currency: str) -> Mapping[str, Decimal]:
        try:
            base = normalize_currency(base_currency)
        except ValueError:
            return {}
        base_rate = self.rates.get(base)
        if not base_rate:
            return {}
        return {code: rate / base_rate for code, rate in self.rates.items()}


@dataclass(frozen=True)
class CachedRates:
    rates: Mapping[str, Decimal]
    expires_at: float


@dataclass
class OpenExchangeRateProvider:
    base_url: str = "https://open.er-api.com/v6/latest"
    cache_ttl_seconds: int = 12 * 60 * 60
    timeout_seconds: int = 8
    _cache: dict[str, CachedRates] = field(default_factory=dict)

    def get_rates(self, base_currency: str) -> Mapping[str, Decimal]:
        try:
            base = normalize_currency(base_currency)
        except ValueError:
            logger.warning("exchange_rates_invalid_base", base_currency=base_currency)
            return {}

        cached = self._cache.get(base)
        now = time.monotonic()
        if cached and cached.expires_at > now:
            return cached.rates

        rates = self._fetch_rates(base)
        if rates:
            self._cache[base] = CachedRates(rates=rates, expires_at=now + self.cache_ttl_seconds)
        return rates

    def _fetch_rates(self, base: str) -> Mapping[str, Decimal]:
        url = f"{self.base_url}/{base}"
        try:
            with urlopen(url, timeout=self.timeout_seconds) as response:
                payload = json.load(response)
        except HTTPError as exc:
            logger.warning("exchange_rates_bad_status", base_currency=base, status=exc.code)
            return {}
        except (URLError, TimeoutError, json.JSONDecodeError) as exc:
            logger.error("exchange_rates_fetch_failed", base_currency=base, error=str(exc))
            return {}

        if not isinstance(payload, dict):
            payload = {}
        rates = payload.get("rates")
        if payload.get("result") != "success" or not isinstance(rates, dict):
            logger.warning("exchange_rates_unexpected_response", base_currency=base)
            return {}

        parsed = {code.upper(): Decimal(str(value)) for code, value in rates.items()}
        parsed[base] = Decimal("1")
        return parsed


@dataclass(frozen=True)
class CompositeRateProvider:
    primary: RateProvider
    fallback: RateProvider

    def get_rates(self, base_currency: str) -> Mapping[str, Decimal]:
        rates = self.primary.get_rates(base_currency)
        if rates:
            return rates
        logger.info("exchange_rates_using_fallback", base_currency=base_currency)
        return self.fallback.get_rates(base_currency)


def convert_to_base(
    amount: Decimal | int | float | str,
    currency: str,
    base_currency: str,
    rates: Mapping[str, Decimal],
) -> Decimal:
    """Convert an amount held in ``currency`` into ``base_currency``.

    ``rates`` must be the table returned for ``base_currency``. When the table
    has no entry for ``currency`` the amount is returned unconverted.
    """
    coerced = coerce_decimal(amount)
    source = currency.strip().upper()
    if source == base_currency.strip().upper():
        return coerced
    rate = rates.get(source)
    if not rate:
        return coerced
    return coerced / coerce_decimal(rate)
