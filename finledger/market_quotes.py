from __future__ import annotations

from datetime import date, datetime, time as dt_time, timezone
from decimal import Decimal
import json
from typing import Any, Optional, Protocol
from urllib.error import HTTPError, URLError
from urllib.parse import quote, urlencode
from urllib.request import Request, urlopen

import structlog
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from finledger.errors import PriceUnavailable, RateLimited

logger = structlog.get_logger(__name__)

BROWSER_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)


class QuoteProvider(Protocol):
    def get_quote(self, symbol: str, on: Optional[date] = None) -> Decimal:
        """Price per unit of ``symbol``; raises PriceUnavailable or RateLimited."""


class YahooQuoteProvider:
    """Market prices from the Yahoo Finance chart endpoint.

    Throttled requests are retried with exponential backoff before
    ``RateLimited`` reaches the caller.
    """

    def __init__(
        self,
        base_url: str = "https://query1.finance.yahoo.com/v8/finance/chart",
        max_attempts: int = 3,
        backoff_seconds: float = 1.0,
        timeout_seconds: int = 10,
    ):
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout_seconds
        self._retrying = Retrying(
            retry=retry_if_exception_type(RateLimited),
            stop=stop_after_attempt(max_attempts),
            wait=wait_exponential(multiplier=backoff_seconds, max=30),
            reraise=True,
        )

    def get_quote(self, symbol: str, on: Optional[date] = None) -> Decimal:
        normalized = symbol.strip().upper()
        if not normalized:
            raise PriceUnavailable("Symbol required for price lookup.")
        return self._retrying(self._lookup, normalized, on)

    def _lookup(self, symbol: str, on: Optional[date]) -> Decimal:
        if on is not None:
            start = datetime.combine(on, dt_time.min, tzinfo=timezone.utc)
            period1 = int(start.timestamp())
            params = {"interval": "1d", "range": "1d", "period1": period1, "period2": period1 + 86400}
            price = extract_price(self._fetch_chart(symbol, params))
            if price is not None:
                return price

        price = extract_price(self._fetch_chart(symbol, {"interval": "1d", "range": "1d"}))
        if price is None:
            raise PriceUnavailable(f"Could not fetch price for {symbol}.")
        return price

    def _fetch_chart(self, symbol: str, params: dict[str, Any]) -> dict:
        url = f"{self._base_url}/{quote(symbol)}?{urlencode(params)}"
        request = Request(url, headers={"User-Agent": BROWSER_USER_AGENT})
        try:
            with urlopen(request, timeout=self._timeout) as response:
                return json.load(response)
        except HTTPError as exc:
            if exc.code == 429:
                logger.warning("quote_rate_limited", symbol=symbol)
                raise RateLimited(
                    "Quote provider is rate-limiting. Try again shortly or enter the price manually."
                ) from exc
            raise PriceUnavailable(f"Failed to fetch price for {symbol}: HTTP {exc.code}.") from exc
        except (URLError, TimeoutError, json.JSONDecodeError) as exc:
            logger.error("quote_fetch_failed", symbol=symbol, error=str(exc))
            raise PriceUnavailable(f"Failed to fetch price for {symbol}.") from exc


def extract_price(payload: Any) -> Optional[Decimal]:
    try:
        result = payload["chart"]["result"][0]
    except (KeyError, IndexError, TypeError):
        return None

    market_price = (result.get("meta") or {}).get("regularMarketPrice")
    if market_price:
        return Decimal(str(market_price))
    try:
        close = result["indicators"]["quote"][0]["close"][0]
    except (KeyError, IndexError, TypeError):
        return None
    if close:
        return Decimal(str(close))
    return None
