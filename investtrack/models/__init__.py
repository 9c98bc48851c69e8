"""Data models for the refresh pipeline."""

from .connection import (
    ConnectionSettings,
    IntegrationRefreshResult,
    IntegrationType,
    LinkedAccount,
    RefreshSummary,
)
from .credential import OAuthCredential, TokenExpirationStatus, TokenPair, TokenState
from .snapshot import (
    AccountValueEntry,
    BalanceUpdate,
    CashBalance,
    Classification,
    IntegrationSource,
    PositionSnapshot,
    PriceTick,
    SnapshotFlush,
    SubscriptionPhase,
)

__all__ = [
    "AccountValueEntry",
    "BalanceUpdate",
    "CashBalance",
    "Classification",
    "ConnectionSettings",
    "IntegrationRefreshResult",
    "IntegrationSource",
    "IntegrationType",
    "LinkedAccount",
    "OAuthCredential",
    "PositionSnapshot",
    "PriceTick",
    "RefreshSummary",
    "SnapshotFlush",
    "SubscriptionPhase",
    "TokenExpirationStatus",
    "TokenPair",
    "TokenState",
]
