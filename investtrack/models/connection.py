"""Gateway connection settings and linked-account models."""

from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class IntegrationType(Enum):
    """Integration attached to a linked account."""
    IB = "IB"
    SCHWAB = "SCHWAB"


@dataclass(frozen=True)
class ConnectionSettings:
    """IB gateway connection parameters for one linked account."""
    host: str
    port: int
    client_id: int
    linked_account_id: int
    user_id: Optional[int] = None
    ib_account: str = ""  # IB account code; empty = gateway default

    def is_complete(self) -> bool:
        return bool(self.host) and self.port > 0 and self.client_id is not None \
            and self.linked_account_id > 0

    @property
    def endpoint(self) -> tuple:
        return (self.host, self.port, self.client_id)


@dataclass(frozen=True)
class LinkedAccount:
    """An account row with an integration attached."""
    account_id: int
    user_id: int
    name: str
    integration_type: IntegrationType
    currency: str = "USD"


@dataclass
class IntegrationRefreshResult:
    """Outcome of refreshing one linked account."""
    account_id: int
    success: bool
    balance: Optional[float] = None
    currency: Optional[str] = None
    error: Optional[str] = None
    needs_reauth: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "account_id": self.account_id,
            "success": self.success,
            "balance": self.balance,
            "currency": self.currency,
            "error": self.error,
            "needs_reauth": self.needs_reauth,
        }


@dataclass
class RefreshSummary:
    """Summary of refreshing all linked accounts of one user."""
    total: int = 0
    successful: int = 0
    failed: int = 0
    results: List[IntegrationRefreshResult] = field(default_factory=list)

    def add(self, result: IntegrationRefreshResult) -> None:
        self.total += 1
        if result.success:
            self.successful += 1
        else:
            self.failed += 1
        self.results.append(result)
