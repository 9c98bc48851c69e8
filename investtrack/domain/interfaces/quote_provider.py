"""Quote provider protocol for last/previous-close price lookups."""

from __future__ import annotations
from dataclasses import dataclass
from typing import Optional, Protocol, runtime_checkable


@dataclass(frozen=True)
class Quote:
    """Last traded price and previous close for one symbol."""
    symbol: str
    last_price: Optional[float]
    previous_close: Optional[float]
    currency: Optional[str] = None


@runtime_checkable
class QuoteProvider(Protocol):
    """
    Protocol for one-shot quote lookups.

    Implementations:
    - YahooQuoteAdapter

    Used to fill in close prices the gateway did not deliver and to price
    REST-sourced positions.
    """

    async def get_quote(self, symbol: str) -> Optional[Quote]:
        """
        Fetch the latest quote for a symbol.

        Returns:
            Quote, or None when the provider has no data for the symbol.
        """
        ...

    async def get_rate(self, from_currency: str, to_currency: str) -> Optional[float]:
        """Fetch the spot FX rate from_currency -> to_currency, or None."""
        ...
