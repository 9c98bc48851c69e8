"""In-memory store for gateway updates accumulated between flushes."""

from __future__ import annotations
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional, Tuple

from ...models.snapshot import AccountValueEntry, PositionSnapshot, PriceTick
from ...utils.timezone import now_utc

BASE_CURRENCY_TAG = "BASE"


@dataclass
class StoreSnapshot:
    """Point-in-time copy of the transient store, safe to read across awaits."""
    generation: int
    revision: int = 0
    account_values: Dict[Tuple[str, str], AccountValueEntry] = field(default_factory=dict)
    positions: List[PositionSnapshot] = field(default_factory=list)
    ticks: Dict[int, PriceTick] = field(default_factory=dict)

    def account_value(self, key: str, currency: Optional[str] = None) -> Optional[AccountValueEntry]:
        return _lookup(self.account_values, key, currency)

    def account_values_for(self, key: str) -> List[AccountValueEntry]:
        return [v for (k, _), v in self.account_values.items() if k == key]


def _lookup(
    values: Dict[Tuple[str, str], AccountValueEntry], key: str, currency: Optional[str]
) -> Optional[AccountValueEntry]:
    if currency is not None:
        return values.get((key, currency))
    base = values.get((key, BASE_CURRENCY_TAG))
    if base is not None:
        return base
    for (k, _), entry in values.items():
        if k == key:
            return entry
    return None


class TransientStore:
    """
    Account values, positions and price ticks for the current refresh cycle.

    Written only by gateway event callbacks on the event loop; read by the
    flush through snapshot(), which copies everything synchronously so a
    flush never observes a half-applied update.

    Account values are keyed by (key, currency) so per-currency entries such
    as CashBalance coexist. Positions are keyed by instrument id and replaced
    wholesale. Last and close prices are kept independently per instrument.
    """

    def __init__(self) -> None:
        self._account_values: Dict[Tuple[str, str], AccountValueEntry] = {}
        self._positions: Dict[int, PositionSnapshot] = {}
        self._ticks: Dict[int, PriceTick] = {}
        self._generation = 0
        self._revision = 0

    @property
    def generation(self) -> int:
        """Incremented by every clear(); identifies the current cycle."""
        return self._generation

    @property
    def revision(self) -> int:
        """Incremented by every write and clear; never reset."""
        return self._revision

    def clear(self) -> None:
        self._account_values.clear()
        self._positions.clear()
        self._ticks.clear()
        self._generation += 1
        self._revision += 1

    def is_empty(self) -> bool:
        return not (self._account_values or self._positions or self._ticks)

    # -------------------------------------------------------------------------
    # Writers (gateway callbacks)
    # -------------------------------------------------------------------------

    def put_account_value(self, entry: AccountValueEntry) -> None:
        self._account_values[(entry.key, entry.currency)] = entry
        self._revision += 1

    def put_position(self, position: PositionSnapshot) -> None:
        """Replace the position for its instrument; a zero quantity removes it."""
        self._revision += 1
        if position.quantity == 0:
            self._positions.pop(position.instrument_id, None)
            return
        self._positions[position.instrument_id] = position

    def update_tick(
        self,
        instrument_id: int,
        last_price: Optional[float] = None,
        close_price: Optional[float] = None,
    ) -> None:
        """Record last and/or close price. Non-positive prices are ignored."""
        last_ok = last_price is not None and last_price > 0
        close_ok = close_price is not None and close_price > 0
        if not (last_ok or close_ok):
            return

        tick = self._ticks.get(instrument_id)
        if tick is None:
            tick = PriceTick(instrument_id=instrument_id)
            self._ticks[instrument_id] = tick
        if last_ok:
            tick.last_price = last_price
        if close_ok:
            tick.close_price = close_price
        tick.observed_at = now_utc()
        self._revision += 1

    # -------------------------------------------------------------------------
    # Readers
    # -------------------------------------------------------------------------

    def account_value(self, key: str, currency: Optional[str] = None) -> Optional[AccountValueEntry]:
        return _lookup(self._account_values, key, currency)

    def position(self, instrument_id: int) -> Optional[PositionSnapshot]:
        return self._positions.get(instrument_id)

    def positions(self) -> List[PositionSnapshot]:
        return list(self._positions.values())

    def tick(self, instrument_id: int) -> Optional[PriceTick]:
        return self._ticks.get(instrument_id)

    def snapshot(self) -> StoreSnapshot:
        return StoreSnapshot(
            generation=self._generation,
            revision=self._revision,
            account_values=dict(self._account_values),
            positions=[replace(p) for p in self._positions.values()],
            ticks={k: replace(t) for k, t in self._ticks.items()},
        )

    def counts(self) -> Dict[str, int]:
        return {
            "account_values": len(self._account_values),
            "positions": len(self._positions),
            "ticks": len(self._ticks),
        }
