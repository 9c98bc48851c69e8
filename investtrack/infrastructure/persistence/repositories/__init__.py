"""Repository classes for database operations."""

from .account_repository import AccountRepository
from .integration_repository import CredentialRepository, IntegrationRepository
from .portfolio_repository import PortfolioRepository

__all__ = [
    "AccountRepository",
    "CredentialRepository",
    "IntegrationRepository",
    "PortfolioRepository",
]
