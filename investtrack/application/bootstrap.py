"""
Composition root for the refresh subsystem.

Every adapter, store and service is an explicit instance wired here; nothing
is a module-level singleton, so tests build their own graph with fakes.

Usage:
    container = build_services(config)
    await container.start()
    summary = await container.orchestrator.refresh_all_integrations(user_id)
    await container.stop()
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from config.models import AppConfig
from migrations.runner import run_migrations as apply_migrations
from ..domain.interfaces.performance_recalculator import PerformanceRecalculator
from ..infrastructure.adapters.ib import ContractClassifier, IbConnectionManager
from ..infrastructure.adapters.schwab import SchwabOAuthClient, SchwabTraderClient
from ..infrastructure.adapters.yahoo import YahooQuoteAdapter
from ..infrastructure.persistence.database import Database
from ..infrastructure.persistence.repositories import (
    AccountRepository,
    CredentialRepository,
    IntegrationRepository,
    PortfolioRepository,
)
from ..infrastructure.stores import RateCache, TransientStore
from ..services.exchange_rate_service import ExchangeRateService
from ..services.refresh_orchestrator import RefreshOrchestrator
from ..services.scheduler import RefreshScheduler
from ..services.snapshot_reconciler import SnapshotReconciler
from ..services.token_lifecycle import TokenLifecycleManager
from ..utils.logging_setup import get_logger

logger = get_logger(__name__)


@dataclass
class ServiceContainer:
    """Wired service graph and its lifecycle."""

    config: AppConfig
    db: Database
    connection: IbConnectionManager
    reconciler: SnapshotReconciler
    tokens: TokenLifecycleManager
    rates: ExchangeRateService
    orchestrator: RefreshOrchestrator
    scheduler: RefreshScheduler

    async def start(self, run_migrations: bool = True, with_scheduler: bool = False) -> None:
        """Connect storage, apply pending migrations, optionally start the background loops."""
        await self.db.connect()
        if run_migrations:
            await apply_migrations(self.db)
        if with_scheduler:
            await self.scheduler.start()
        logger.info("Refresh services started")

    async def stop(self) -> None:
        await self.scheduler.stop()
        await self.orchestrator.shutdown()
        await self.db.close()
        logger.info("Refresh services stopped")


def build_services(
    config: AppConfig,
    recalculator: Optional[PerformanceRecalculator] = None,
) -> ServiceContainer:
    """Construct the full service graph from configuration."""
    db = Database(config.database)
    accounts = AccountRepository(db)
    portfolio = PortfolioRepository(db, accounts)
    credentials = CredentialRepository(db)
    integrations = IntegrationRepository(db)

    cache = RateCache(
        soft_ttl_sec=config.quotes.soft_ttl_sec,
        hard_ttl_sec=config.quotes.hard_ttl_sec,
        max_size=config.quotes.max_cache_size,
    )
    rates = ExchangeRateService(YahooQuoteAdapter(), cache)

    connection = IbConnectionManager(config.gateway)
    classifier = ContractClassifier(portfolio, timeout_sec=config.gateway.contract_details_timeout_sec)
    reconciler = SnapshotReconciler(
        connection,
        portfolio,
        rates,
        classifier=classifier,
        config=config.gateway,
        transient=TransientStore(),
    )

    tokens = TokenLifecycleManager(credentials, SchwabOAuthClient(config.schwab), config.tokens)
    orchestrator = RefreshOrchestrator(
        connection=connection,
        reconciler=reconciler,
        tokens=tokens,
        trader=SchwabTraderClient(config.schwab),
        integrations=integrations,
        credentials=credentials,
        portfolio_store=portfolio,
        rates=rates,
        recalculator=recalculator,
    )
    scheduler = RefreshScheduler(orchestrator, tokens, config.refresh, config.tokens)

    return ServiceContainer(
        config=config,
        db=db,
        connection=connection,
        reconciler=reconciler,
        tokens=tokens,
        rates=rates,
        orchestrator=orchestrator,
        scheduler=scheduler,
    )
