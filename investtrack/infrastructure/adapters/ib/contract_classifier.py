"""
Instrument classification lookup (industry / category / country).

Resolution order per instrument:
1. In-process cache
2. Durable storage (classification written by an earlier flush)
3. One-off reqContractDetails with its own short timeout

Every failure is non-fatal: the position keeps empty fields.
"""

from __future__ import annotations

import asyncio
from typing import Any, Dict, Iterable, Optional

from ib_async import Contract

from ....domain.interfaces.portfolio_store import PortfolioStore
from ....models.snapshot import Classification, PositionSnapshot
from ....utils.logging_setup import get_logger
from .converters import CRYPTO_SEC_TYPE, convert_contract_details, country_from_exchange

logger = get_logger(__name__)


class ContractClassifier:
    """Resolves and caches classification metadata by instrument id."""

    def __init__(self, store: Optional[PortfolioStore] = None, timeout_sec: float = 5.0):
        self._store = store
        self._timeout = timeout_sec
        self._cache: Dict[int, Classification] = {}

    def cached(self, instrument_id: int) -> Optional[Classification]:
        return self._cache.get(instrument_id)

    async def classify(self, ib: Any, positions: Iterable[PositionSnapshot]) -> int:
        """
        Fill classification on positions that lack it.

        Returns:
            Number of positions that received classification data.
        """
        filled = 0
        for position in positions:
            if position.industry and position.category:
                continue
            classification = await self.resolve(ib, position)
            if classification is not None:
                position.apply_classification(classification)
                filled += 1
        return filled

    async def resolve(self, ib: Any, position: PositionSnapshot) -> Optional[Classification]:
        instrument_id = position.instrument_id
        cached = self._cache.get(instrument_id)
        if cached is not None:
            return cached

        if self._store is not None:
            try:
                stored = await self._store.get_classification(instrument_id)
            except Exception as e:
                logger.debug(f"Stored classification lookup failed for {position.symbol}: {e}")
                stored = None
            if stored is not None and stored.is_complete():
                if not stored.country:
                    stored.country = country_from_exchange(
                        stored.primary_exchange or position.primary_exchange, position.symbol
                    )
                self._cache[instrument_id] = stored
                return stored

        return await self._fetch_contract_details(ib, position)

    async def _fetch_contract_details(self, ib: Any, position: PositionSnapshot) -> Optional[Classification]:
        if ib is None:
            return None
        try:
            details_list = await asyncio.wait_for(
                ib.reqContractDetailsAsync(Contract(conId=position.instrument_id)),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError:
            logger.debug(f"Contract details for {position.symbol} timed out after {self._timeout}s")
            return self._fallback(position)
        except Exception as e:
            logger.debug(f"Contract details for {position.symbol} failed: {e}")
            return self._fallback(position)

        if not details_list:
            return self._fallback(position)

        classification = convert_contract_details(
            details_list[0], position.symbol, position.security_type
        )
        self._cache[position.instrument_id] = classification
        logger.debug(
            f"Classified {position.symbol}: {classification.industry} / {classification.category}"
        )
        return classification

    @staticmethod
    def _fallback(position: PositionSnapshot) -> Optional[Classification]:
        """Classification derivable without contract details (not cached)."""
        is_crypto = position.security_type == CRYPTO_SEC_TYPE
        country = country_from_exchange(position.primary_exchange or position.exchange, position.symbol)
        if not (is_crypto or country):
            return None
        return Classification(
            industry="Cryptocurrency" if is_crypto else None,
            category="Digital Asset" if is_crypto else None,
            country=country,
        )
