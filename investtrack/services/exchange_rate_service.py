"""
FX rates and previous-close lookups behind the shared rate cache.

Rate resolution order:
1. Same currency -> 1.0
2. Fresh cached rate
3. Direct Yahoo pair (FROMTO=X)
4. Cross rate through USD
5. exchangerate-api.com USD table
6. Stale cached rate (within the hard TTL)
7. 1.0
"""

from __future__ import annotations

import asyncio
from typing import Dict, Optional

import requests

from ..domain.interfaces.quote_provider import QuoteProvider
from ..infrastructure.stores.rate_cache import RateCache, close_key, rate_key
from ..utils.logging_setup import get_logger

logger = get_logger(__name__)

USD = "USD"


class ExchangeRateService:
    """Currency conversion and close prices for the refresh pipeline."""

    FALLBACK_API_URL = "https://api.exchangerate-api.com/v4/latest/USD"

    def __init__(self, quotes: QuoteProvider, cache: RateCache, http_timeout_sec: float = 10.0):
        self._quotes = quotes
        self._cache = cache
        self._http_timeout = http_timeout_sec

    async def get_exchange_rate(self, from_currency: str, to_currency: str) -> float:
        """Rate to multiply an amount in from_currency by to get to_currency. Never raises."""
        from_currency = from_currency.upper()
        to_currency = to_currency.upper()
        if from_currency == to_currency:
            return 1.0

        rate = await self._cache.get_or_fetch(
            rate_key(from_currency, to_currency),
            lambda: self._fetch_rate(from_currency, to_currency),
            default=1.0,
        )
        return rate

    async def convert(self, amount: float, from_currency: str, to_currency: str) -> float:
        return amount * await self.get_exchange_rate(from_currency, to_currency)

    async def get_previous_close(self, symbol: str) -> Optional[float]:
        """Previous close from the quote provider, cached. None when unavailable."""
        async def fetch() -> Optional[float]:
            quote = await self._quotes.get_quote(symbol)
            if quote is None or not quote.previous_close or quote.previous_close <= 0:
                return None
            return quote.previous_close

        return await self._cache.get_or_fetch(close_key(symbol), fetch)

    async def _fetch_rate(self, from_currency: str, to_currency: str) -> Optional[float]:
        rate = await self._yahoo_rate(from_currency, to_currency)
        if rate is not None:
            return rate

        if USD not in (from_currency, to_currency):
            to_usd = await self._yahoo_rate(from_currency, USD)
            usd_to = await self._yahoo_rate(USD, to_currency) if to_usd else None
            if to_usd and usd_to:
                logger.debug(f"{from_currency}/{to_currency} resolved through USD cross")
                return to_usd * usd_to

        table = await self._fallback_table()
        if table:
            from_rate = 1.0 if from_currency == USD else table.get(from_currency)
            to_rate = 1.0 if to_currency == USD else table.get(to_currency)
            if from_rate and to_rate:
                logger.info(f"{from_currency}/{to_currency} resolved from fallback rate table")
                return to_rate / from_rate

        logger.warning(f"No exchange rate available for {from_currency}/{to_currency}")
        return None

    async def _yahoo_rate(self, from_currency: str, to_currency: str) -> Optional[float]:
        try:
            return await self._quotes.get_rate(from_currency, to_currency)
        except Exception as e:
            logger.debug(f"Yahoo rate {from_currency}/{to_currency} failed: {e}")
            return None

    async def _fallback_table(self) -> Optional[Dict[str, float]]:
        try:
            return await asyncio.to_thread(self._fetch_fallback_table)
        except (requests.RequestException, ValueError) as e:
            logger.warning(f"Fallback rate table unavailable: {e}")
            return None

    def _fetch_fallback_table(self) -> Optional[Dict[str, float]]:
        response = requests.get(self.FALLBACK_API_URL, timeout=self._http_timeout)
        response.raise_for_status()
        rates = response.json().get("rates")
        return rates or None
