"""Tests for IB data converters."""

import math

import pytest
from ib_async import Contract, ContractDetails

from investtrack.infrastructure.adapters.ib.converters import (
    convert_account_value,
    convert_contract_details,
    convert_portfolio_item,
    country_from_exchange,
    valid_price,
)
from tests.fakes import account_value, portfolio_item


class TestValidPrice:
    @pytest.mark.parametrize("value", [None, math.nan, 0, -1.5, "abc"])
    def test_unusable(self, value):
        assert valid_price(value) is None

    def test_usable(self):
        assert valid_price("101.25") == 101.25


class TestCountryFromExchange:
    def test_known_exchange(self):
        assert country_from_exchange("sehk") == "Hong Kong"

    def test_treasury_symbol(self):
        assert country_from_exchange(None, "US-T 4 1/2 05/15/38") == "United States"

    def test_unknown(self):
        assert country_from_exchange("XYZ") is None
        assert country_from_exchange(None) is None


class TestConvertPortfolioItem:
    def test_stock(self):
        position = convert_portfolio_item(
            portfolio_item(101, "AAPL", 10, 150.0, average_cost=120.0)
        )

        assert position.instrument_id == 101
        assert position.symbol == "AAPL"
        assert position.quantity == 10
        assert position.market_price == 150.0
        assert position.average_cost == 120.0
        assert position.primary_exchange == "NASDAQ"

    def test_cash_contract_skipped(self):
        assert convert_portfolio_item(portfolio_item(555, "EUR", 1000, 1.1, sec_type="CASH")) is None


class TestConvertAccountValue:
    def test_fields(self):
        entry = convert_account_value(account_value("CashBalance", "250.5", currency="EUR"))

        assert entry.key == "CashBalance"
        assert entry.currency == "EUR"
        assert entry.as_float() == 250.5


class TestConvertContractDetails:
    def test_stock_details(self):
        details = ContractDetails(
            contract=Contract(conId=101, symbol="AAPL", primaryExchange="NASDAQ"),
            industry="Technology",
            category="Computers",
        )

        classification = convert_contract_details(details, "AAPL", "STK")

        assert classification.industry == "Technology"
        assert classification.category == "Computers"
        assert classification.country == "United States"
        assert classification.primary_exchange == "NASDAQ"

    def test_crypto_labels(self):
        details = ContractDetails(contract=Contract(conId=9, symbol="BTC", exchange="PAXOS"))

        classification = convert_contract_details(details, "BTC", "CRYPTO")

        assert classification.industry == "Cryptocurrency"
        assert classification.category == "Digital Asset"
