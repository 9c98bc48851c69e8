"""
IB data converters.

Converts ib_async account values, portfolio items and contract details to
the refresh pipeline's models. ib_async reports missing prices as NaN.
"""

from __future__ import annotations
from math import isnan
from typing import Any, Optional

from ....models.snapshot import AccountValueEntry, Classification, PositionSnapshot

CASH_SEC_TYPE = "CASH"
CRYPTO_SEC_TYPE = "CRYPTO"
BOND_SEC_TYPE = "BOND"

# Day-change multiplier for IB bond positions (IB-specific price scaling).
IB_BOND_PRICE_SCALE = 10

EXCHANGE_COUNTRY = {
    "NYSE": "United States",
    "NASDAQ": "United States",
    "ARCA": "United States",
    "AMEX": "United States",
    "BATS": "United States",
    "LSE": "United Kingdom",
    "SEHK": "Hong Kong",
    "HKFE": "Hong Kong",
    "JPX": "Japan",
    "TSE": "Canada",
    "ASX": "Australia",
    "SGX": "Singapore",
    "FWB": "Germany",
    "SWB": "Germany",
}


def valid_price(value: Any) -> Optional[float]:
    """Return value as a float if it is a usable positive price, else None."""
    if value is None:
        return None
    try:
        price = float(value)
    except (TypeError, ValueError):
        return None
    if isnan(price) or price <= 0:
        return None
    return price


def _float_or_zero(value: Any) -> float:
    try:
        result = float(value)
    except (TypeError, ValueError):
        return 0.0
    return 0.0 if isnan(result) else result


def country_from_exchange(exchange: Optional[str], symbol: Optional[str] = None) -> Optional[str]:
    """Country for a listing exchange. US Treasury symbols (US-T...) map to the United States."""
    if symbol and symbol.startswith("US-T"):
        return "United States"
    if not exchange:
        return None
    return EXCHANGE_COUNTRY.get(exchange.upper())


def convert_account_value(av) -> AccountValueEntry:
    """Convert an ib_async AccountValue."""
    return AccountValueEntry(key=av.tag, value=av.value, currency=av.currency or "")


def convert_portfolio_item(item) -> Optional[PositionSnapshot]:
    """
    Convert an ib_async PortfolioItem.

    Returns None for CASH contracts (cash is carried by CashBalance account
    values) and for items without a contract id.
    """
    contract = item.contract
    if contract.secType == CASH_SEC_TYPE or not contract.conId:
        return None

    return PositionSnapshot(
        instrument_id=contract.conId,
        symbol=contract.symbol,
        security_type=contract.secType,
        currency=contract.currency,
        quantity=_float_or_zero(item.position),
        average_cost=_float_or_zero(item.averageCost),
        market_price=_float_or_zero(item.marketPrice),
        market_value=_float_or_zero(item.marketValue),
        unrealized_pnl=_float_or_zero(item.unrealizedPNL),
        realized_pnl=_float_or_zero(item.realizedPNL),
        exchange=contract.exchange or None,
        primary_exchange=contract.primaryExchange or None,
    )


def convert_contract_details(details, symbol: str, sec_type: str) -> Classification:
    """Classification from ib_async ContractDetails; crypto gets fixed labels."""
    is_crypto = sec_type == CRYPTO_SEC_TYPE
    primary = None
    if details.contract is not None:
        primary = details.contract.primaryExchange or details.contract.exchange
    return Classification(
        industry=details.industry or ("Cryptocurrency" if is_crypto else None),
        category=details.category or ("Digital Asset" if is_crypto else None),
        country=country_from_exchange(primary, symbol),
        primary_exchange=primary or None,
    )
