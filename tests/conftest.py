"""Pytest configuration and fixtures."""

from __future__ import annotations

import pytest

from config.models import GatewayConfig
from investtrack.infrastructure.adapters.ib.connection_manager import IbConnectionManager
from investtrack.infrastructure.stores.rate_cache import RateCache
from investtrack.models.connection import ConnectionSettings
from investtrack.services.exchange_rate_service import ExchangeRateService
from tests.fakes import FakeIB, FakeQuoteProvider, InMemoryPortfolioStore


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def fake_ib() -> FakeIB:
    return FakeIB()


@pytest.fixture
def gateway_config() -> GatewayConfig:
    return GatewayConfig(
        connect_timeout_sec=1.0,
        download_timeout_sec=0.2,
        contract_details_timeout_sec=0.2,
        flush_interval_sec=60.0,
    )


@pytest.fixture
def connection(fake_ib, gateway_config) -> IbConnectionManager:
    return IbConnectionManager(gateway_config, ib_factory=lambda: fake_ib)


@pytest.fixture
def ib_settings() -> ConnectionSettings:
    return ConnectionSettings(
        host="127.0.0.1", port=4001, client_id=1, linked_account_id=42, user_id=1, ib_account="U123"
    )


@pytest.fixture
def portfolio_store() -> InMemoryPortfolioStore:
    return InMemoryPortfolioStore()


@pytest.fixture
def quotes() -> FakeQuoteProvider:
    return FakeQuoteProvider(rates={("EUR", "USD"): 1.1, ("HKD", "USD"): 0.128})


@pytest.fixture
def rates(quotes) -> ExchangeRateService:
    return ExchangeRateService(quotes, RateCache())
