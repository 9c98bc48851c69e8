"""Snapshot models: transient gateway state and the rows a flush persists."""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional

from ..utils.timezone import now_utc


class IntegrationSource(Enum):
    """Source tag on every durable row written by the refresh pipeline."""
    IB = "IB"
    SCHWAB = "SCHWAB"


class SubscriptionPhase(Enum):
    """Account subscription handshake phase."""
    IDLE = "IDLE"
    DOWNLOADING = "DOWNLOADING"  # initial batch streaming, not yet complete
    STREAMING = "STREAMING"  # download complete, incremental updates only


@dataclass(frozen=True)
class AccountValueEntry:
    """One account value (e.g. NetLiquidation, CashBalance) as last reported."""
    key: str
    value: str
    currency: str
    observed_at: datetime = field(default_factory=now_utc)

    def as_float(self) -> Optional[float]:
        try:
            return float(self.value)
        except (TypeError, ValueError):
            return None


@dataclass
class Classification:
    """Instrument classification metadata."""
    industry: Optional[str] = None
    category: Optional[str] = None
    country: Optional[str] = None
    primary_exchange: Optional[str] = None

    def is_complete(self) -> bool:
        return bool(self.industry and self.category)


@dataclass
class PositionSnapshot:
    """
    A position as reported by the provider.

    Overwritten wholesale on each portfolio update for the instrument.
    day_change / day_change_percent / close_price are filled in at flush time.
    """
    instrument_id: int
    symbol: str
    security_type: str
    currency: str
    quantity: float
    average_cost: float
    market_price: float
    market_value: float
    unrealized_pnl: float = 0.0
    realized_pnl: float = 0.0
    exchange: Optional[str] = None
    primary_exchange: Optional[str] = None
    industry: Optional[str] = None
    category: Optional[str] = None
    country: Optional[str] = None
    close_price: Optional[float] = None
    day_change: Optional[float] = None
    day_change_percent: Optional[float] = None
    observed_at: datetime = field(default_factory=now_utc)

    def apply_classification(self, classification: Classification) -> None:
        self.industry = self.industry or classification.industry
        self.category = self.category or classification.category
        self.country = self.country or classification.country
        self.primary_exchange = self.primary_exchange or classification.primary_exchange


@dataclass
class PriceTick:
    """Last and close price for one instrument; either may arrive first."""
    instrument_id: int
    last_price: Optional[float] = None
    close_price: Optional[float] = None
    observed_at: datetime = field(default_factory=now_utc)


@dataclass(frozen=True)
class CashBalance:
    """Cash held in one currency."""
    currency: str
    amount: float
    market_value_usd: Optional[float] = None


@dataclass(frozen=True)
class BalanceUpdate:
    """In-place update of an account's balance row."""
    balance: float
    currency: str
    note: str


@dataclass
class SnapshotFlush:
    """
    Everything one flush writes for a (linked account, source) pair.

    Positions and cash replace the existing rows; balance (when present)
    updates the account row in place. All three are written together.
    """
    account_id: int
    source: IntegrationSource
    positions: List[PositionSnapshot] = field(default_factory=list)
    cash_balances: List[CashBalance] = field(default_factory=list)
    balance: Optional[BalanceUpdate] = None
