"""Schwab Trader API client: account numbers, balances and positions."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import requests

from config.models import SchwabConfig
from ....domain.errors import ProviderRequestError
from ....models.snapshot import PositionSnapshot
from ....utils.logging_setup import get_logger

logger = get_logger(__name__)


@dataclass
class SchwabAccount:
    """Balances and positions of one Schwab account."""
    account_number: Optional[str]
    account_type: Optional[str]
    liquidation_value: Optional[float]
    cash_balance: Optional[float] = None
    currency: str = "USD"
    positions: List[PositionSnapshot] = field(default_factory=list)


def _num(value: Any) -> float:
    try:
        return float(value or 0)
    except (TypeError, ValueError):
        return 0.0


def map_position(raw: Dict[str, Any]) -> PositionSnapshot:
    """
    Map one Trader API position.

    Quantity is the long quantity, or the short quantity when there is no
    long side. Day change is the provider's current-day P&L; its percent is
    relative to the previous day's value.
    """
    instrument = raw.get("instrument") or {}
    quantity = _num(raw.get("longQuantity")) or _num(raw.get("shortQuantity"))
    market_value = _num(raw.get("marketValue"))
    average_price = _num(raw.get("averagePrice"))
    day_pl = _num(raw.get("currentDayProfitLoss"))
    previous_value = market_value - day_pl

    return PositionSnapshot(
        instrument_id=0,
        symbol=instrument.get("symbol") or "",
        security_type=instrument.get("assetType") or "",
        currency="USD",
        quantity=quantity,
        average_cost=average_price,
        market_price=market_value / quantity if quantity > 0 else 0.0,
        market_value=market_value,
        unrealized_pnl=market_value - average_price * quantity,
        realized_pnl=0.0,
        day_change=day_pl,
        day_change_percent=day_pl / previous_value * 100 if previous_value > 0 else 0.0,
    )


class SchwabTraderClient:
    """Bearer-token REST calls against the Trader API."""

    def __init__(self, config: Optional[SchwabConfig] = None, session: Optional[requests.Session] = None):
        self._config = config or SchwabConfig()
        self._session = session or requests.Session()

    async def get_account_numbers(self, access_token: str) -> List[Dict[str, Any]]:
        """[{accountNumber, hashValue}, ...] for every account the token can see."""
        data = await asyncio.to_thread(
            self._get, access_token, "/trader/v1/accounts/accountNumbers", None
        )
        return data if isinstance(data, list) else []

    async def get_account(self, access_token: str, account_hash: str) -> SchwabAccount:
        """Balances and positions for one account hash."""
        data = await asyncio.to_thread(
            self._get, access_token, f"/trader/v1/accounts/{account_hash}", {"fields": "positions"}
        )
        account = (data or {}).get("securitiesAccount")
        if not account:
            raise ProviderRequestError("Schwab response has no securitiesAccount")

        balances = account.get("currentBalances") or {}
        liquidation = balances.get("liquidationValue")
        positions = [map_position(p) for p in account.get("positions") or []]
        positions = [p for p in positions if p.symbol and p.quantity]

        logger.info(f"Schwab account {account.get('accountNumber')}: {len(positions)} positions")
        return SchwabAccount(
            account_number=account.get("accountNumber"),
            account_type=account.get("type"),
            liquidation_value=float(liquidation) if liquidation is not None else None,
            cash_balance=balances.get("cashBalance"),
            positions=positions,
        )

    def _get(self, access_token: str, path: str, params: Optional[Dict[str, str]]) -> Any:
        url = f"{self._config.api_base.rstrip('/')}{path}"
        try:
            response = self._session.get(
                url,
                params=params,
                headers={"Authorization": f"Bearer {access_token}", "Accept": "application/json"},
                timeout=self._config.request_timeout_sec,
            )
        except requests.exceptions.Timeout:
            raise ProviderRequestError(f"Schwab request timed out: {path}") from None
        except requests.exceptions.RequestException as e:
            raise ProviderRequestError(f"Schwab request failed: {path}: {e}") from e

        if response.status_code >= 400:
            logger.error(f"Schwab {path} returned {response.status_code}: {response.text[:200]}")
            raise ProviderRequestError(
                f"Schwab {path} returned HTTP {response.status_code}", status_code=response.status_code
            )
        try:
            return response.json()
        except ValueError as e:
            raise ProviderRequestError(f"Schwab {path} returned invalid JSON") from e
