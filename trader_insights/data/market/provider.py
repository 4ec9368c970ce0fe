"""Last-trade lookups from the Polygon REST API."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional

import requests

from trader_insights.config import Settings, get_settings
from trader_insights.data.market.models import Quote

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    """Get current UTC time as naive datetime for database compatibility."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _from_nanos(value) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromtimestamp(value / 1e9, tz=timezone.utc).replace(tzinfo=None)


class QuoteProvider:
    """Polygon REST client for point-in-time quotes."""

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.polygon.io",
        session: Optional[requests.Session] = None,
        timeout: int = 30,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "QuoteProvider":
        settings = settings or get_settings()
        return cls(
            api_key=settings.polygon_api_key,
            base_url=settings.polygon_rest_url,
            timeout=settings.http_timeout_seconds,
        )

    def get_last_trade(self, symbol: str) -> Optional[Quote]:
        """Get the last trade for a symbol.

        Returns:
            Quote, or None if unavailable
        """
        symbol = symbol.upper()
        if not self.api_key:
            logger.warning("POLYGON_API_KEY not set, cannot fetch quotes")
            return None

        try:
            response = self.session.get(
                f"{self.base_url}/v2/last/trade/{symbol}",
                params={"apiKey": self.api_key},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            logger.error(f"Polygon error for {symbol}: {e}")
            return None

        if response.status_code != 200:
            logger.warning(f"Could not fetch last trade for {symbol} (HTTP {response.status_code})")
            return None

        try:
            results = response.json().get("results") or {}
        except ValueError:
            logger.warning(f"Invalid JSON in last trade response for {symbol}")
            return None

        price = results.get("p")
        if price is None:
            logger.warning(f"No last trade for {symbol}")
            return None

        quote = Quote(
            symbol=symbol,
            price=float(price),
            size=results.get("s"),
            exchange=results.get("x"),
            traded_at=_from_nanos(results.get("t")),
            fetched_at=_utcnow(),
        )
        logger.debug(f"Fetched {symbol}: ${quote.price}")
        return quote

    def get_last_trades(self, symbols: List[str]) -> Dict[str, Quote]:
        """Get last trades for multiple symbols, skipping unavailable ones."""
        quotes = {}
        for symbol in symbols:
            quote = self.get_last_trade(symbol)
            if quote is not None:
                quotes[quote.symbol] = quote
        return quotes
