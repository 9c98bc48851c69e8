"""
Tests for ContractClassifier.

Resolution order: in-process cache, stored classification, contract details.
"""

import asyncio

import pytest
from ib_async import Contract, ContractDetails

from investtrack.infrastructure.adapters.ib.contract_classifier import ContractClassifier
from investtrack.infrastructure.adapters.ib.converters import convert_portfolio_item
from investtrack.models.snapshot import Classification
from tests.fakes import FakeIB, InMemoryPortfolioStore, portfolio_item


def stock(con_id=101, symbol="AAPL", sec_type="STK", primary_exchange="NASDAQ"):
    return convert_portfolio_item(
        portfolio_item(con_id, symbol, 10, 150.0, sec_type=sec_type, primary_exchange=primary_exchange)
    )


def details(industry="Technology", category="Computers"):
    return ContractDetails(
        contract=Contract(conId=101, symbol="AAPL", primaryExchange="NASDAQ"),
        industry=industry,
        category=category,
    )


class TestClassify:
    @pytest.mark.asyncio
    async def test_contract_details_fetched_once(self):
        ib = FakeIB()
        ib.contract_details[101] = [details()]
        calls = []
        original = ib.reqContractDetailsAsync

        async def counting(contract):
            calls.append(contract.conId)
            return await original(contract)

        ib.reqContractDetailsAsync = counting
        classifier = ContractClassifier()

        first, second = stock(), stock()
        await classifier.classify(ib, [first])
        await classifier.classify(ib, [second])

        assert calls == [101]
        assert second.industry == "Technology"
        assert second.country == "United States"

    @pytest.mark.asyncio
    async def test_stored_classification_used(self):
        store = InMemoryPortfolioStore()
        store.classifications[101] = Classification(
            industry="Technology", category="Computers", primary_exchange="NASDAQ"
        )
        ib = FakeIB()
        classifier = ContractClassifier(store)

        position = stock()
        filled = await classifier.classify(ib, [position])

        assert filled == 1
        assert position.category == "Computers"
        assert position.country == "United States"

    @pytest.mark.asyncio
    async def test_timeout_is_non_fatal(self):
        ib = FakeIB()

        async def hang(contract):
            await asyncio.sleep(1)

        ib.reqContractDetailsAsync = hang
        classifier = ContractClassifier(timeout_sec=0.01)

        position = stock()
        await classifier.classify(ib, [position])

        assert position.industry is None
        assert position.country == "United States"
        assert classifier.cached(101) is None

    @pytest.mark.asyncio
    async def test_crypto_fallback_without_details(self):
        classifier = ContractClassifier()
        position = stock(con_id=9, symbol="BTC", sec_type="CRYPTO", primary_exchange="")

        await classifier.classify(FakeIB(), [position])

        assert position.industry == "Cryptocurrency"
        assert position.category == "Digital Asset"

    @pytest.mark.asyncio
    async def test_already_classified_skipped(self):
        position = stock()
        position.industry = "Existing"
        position.category = "Existing"

        filled = await ContractClassifier().classify(FakeIB(), [position])

        assert filled == 0
