"""Durable storage protocol for flushed snapshots."""

from __future__ import annotations
from typing import Optional, Protocol, runtime_checkable

from ...models.snapshot import Classification, SnapshotFlush


@runtime_checkable
class PortfolioStore(Protocol):
    """
    Protocol for the durable side of a snapshot flush.

    Implementations:
    - PortfolioRepository (PostgreSQL)
    """

    async def replace_snapshot(self, flush: SnapshotFlush) -> None:
        """
        Replace positions and cash rows for (flush.account_id, flush.source)
        and update the balance row, all in one transaction.
        """
        ...

    async def get_classification(self, instrument_id: int) -> Optional[Classification]:
        """Classification stored for an instrument by a previous flush, if any."""
        ...
