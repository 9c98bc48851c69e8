"""
Yahoo Finance quote adapter.

Provides:
- Last price and previous close per symbol (close-price fallback for IB
  positions, pricing for Schwab positions)
- Spot FX rates via "FROMTO=X" pair symbols

yfinance is blocking, so every lookup runs in a worker thread. Requests are
spaced by a minimum interval to stay clear of Yahoo's 429 responses.
"""

from __future__ import annotations

import asyncio
import threading
import time
from datetime import timedelta
from typing import Any, Dict, Optional

import yfinance as yf

from ....domain.interfaces.quote_provider import Quote
from ....utils.logging_setup import get_logger
from ....utils.timezone import now_utc

logger = get_logger(__name__)


def fx_symbol(from_currency: str, to_currency: str) -> str:
    """Yahoo symbol for a currency pair, e.g. USDHKD=X."""
    return f"{from_currency.upper()}{to_currency.upper()}=X"


class YahooQuoteAdapter:
    """Quote provider backed by yfinance."""

    def __init__(self, min_request_interval_sec: float = 1.0):
        self._min_request_interval = timedelta(seconds=min_request_interval_sec)
        self._last_request_time = None
        self._rate_lock = threading.Lock()

    async def get_quote(self, symbol: str) -> Optional[Quote]:
        info = await asyncio.to_thread(self._fetch_info, symbol)
        if not info:
            return None
        return self._parse_quote(symbol, info)

    async def get_rate(self, from_currency: str, to_currency: str) -> Optional[float]:
        symbol = fx_symbol(from_currency, to_currency)
        info = await asyncio.to_thread(self._fetch_info, symbol)
        if not info:
            return None
        price = info.get("regularMarketPrice") or info.get("bid")
        if not price or price <= 0:
            return None
        return float(price)

    def _fetch_info(self, symbol: str) -> Optional[Dict[str, Any]]:
        """Blocking yfinance lookup; runs in a worker thread."""
        with self._rate_lock:
            if self._last_request_time:
                elapsed = now_utc() - self._last_request_time
                if elapsed < self._min_request_interval:
                    time.sleep((self._min_request_interval - elapsed).total_seconds())
            self._last_request_time = now_utc()

        info = yf.Ticker(symbol).info
        if not info:
            logger.debug(f"Yahoo returned no data for {symbol}")
            return None
        return info

    @staticmethod
    def _parse_quote(symbol: str, info: Dict[str, Any]) -> Quote:
        last = info.get("regularMarketPrice") or info.get("currentPrice")
        prev_close = info.get("previousClose") or info.get("regularMarketPreviousClose")
        return Quote(
            symbol=symbol,
            last_price=float(last) if last else None,
            previous_close=float(prev_close) if prev_close else None,
            currency=info.get("currency"),
        )
