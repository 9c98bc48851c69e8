"""Domain interfaces for dependency injection."""

from .credential_store import CredentialStore, IntegrationStore
from .performance_recalculator import PerformanceRecalculator
from .portfolio_store import PortfolioStore
from .quote_provider import Quote, QuoteProvider

__all__ = [
    "CredentialStore",
    "IntegrationStore",
    "PerformanceRecalculator",
    "PortfolioStore",
    "Quote",
    "QuoteProvider",
]
