"""Downstream performance recalculation hook."""

from __future__ import annotations
from typing import Protocol, runtime_checkable


@runtime_checkable
class PerformanceRecalculator(Protocol):
    """Recomputes a user's performance snapshot after a successful refresh."""

    async def recalculate_snapshot(self, user_id: int) -> None:
        ...
