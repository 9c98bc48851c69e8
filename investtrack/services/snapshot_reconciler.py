"""
Snapshot reconciler for the IB gateway.

Turns three independently arriving streams (account values, portfolio
updates, price ticks) into one snapshot per flush:

    run_cycle()
      1. stop previous subscriptions, clear the transient store
      2. subscribe to account updates; DOWNLOADING -> STREAMING on
         download-complete (bounded wait)
      3. classify positions (cache -> storage -> contract details)
      4. subscribe to delayed market data per position
      5. flush, then start the periodic flush timer

    flush()
      copy the transient store, resolve missing closes and FX rates, then
      under the per-account lock merge ticks into positions, compute day
      change, build cash and balance rows and write everything in one
      transaction. Superseded or outdated snapshots are dropped.

One gateway connection serves every IB-linked account, so callers run one
cycle at a time (see RefreshOrchestrator).
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from ib_async import Contract

from config.models import GatewayConfig
from ..domain.errors import SubscriptionTimeoutError
from ..domain.interfaces.portfolio_store import PortfolioStore
from ..infrastructure.adapters.ib.connection_manager import IbConnectionManager
from ..infrastructure.adapters.ib.contract_classifier import ContractClassifier
from ..infrastructure.adapters.ib.converters import (
    BOND_SEC_TYPE,
    IB_BOND_PRICE_SCALE,
    convert_account_value,
    convert_portfolio_item,
    valid_price,
)
from ..infrastructure.stores.transient_store import (
    BASE_CURRENCY_TAG,
    StoreSnapshot,
    TransientStore,
)
from ..models.connection import ConnectionSettings
from ..models.snapshot import (
    BalanceUpdate,
    CashBalance,
    IntegrationSource,
    PositionSnapshot,
    SnapshotFlush,
    SubscriptionPhase,
)
from ..utils.logging_setup import get_logger
from ..utils.timezone import now_utc
from .exchange_rate_service import ExchangeRateService

logger = get_logger(__name__)

IB_BALANCE_NOTE = "IB integration auto-refresh"
YAHOO_CLOSE_SEC_TYPES = {"STK", "ETF"}


def compute_day_change(
    security_type: str,
    quantity: float,
    last_price: Optional[float],
    close_price: Optional[float],
) -> Tuple[Optional[float], Optional[float]]:
    """
    Day change and day change percent for one position.

    Returns (None, None) unless both prices are positive. Bond positions
    scale the change by IB_BOND_PRICE_SCALE; the percent is unscaled.
    """
    if not last_price or not close_price or last_price <= 0 or close_price <= 0:
        return None, None
    change = (last_price - close_price) * quantity
    if security_type == BOND_SEC_TYPE:
        change *= IB_BOND_PRICE_SCALE
    percent = (last_price - close_price) / close_price * 100
    return change, percent


class SnapshotReconciler:
    """
    Owns the IB subscriptions, the transient store and the flush timer.

    Registers itself as a teardown hook on the connection manager so an
    explicit or gateway-initiated disconnect stops ticks and the timer
    before the transport goes away.
    """

    def __init__(
        self,
        connection: IbConnectionManager,
        store: PortfolioStore,
        rates: ExchangeRateService,
        classifier: Optional[ContractClassifier] = None,
        config: Optional[GatewayConfig] = None,
        transient: Optional[TransientStore] = None,
    ):
        self._connection = connection
        self._store = store
        self._rates = rates
        self._config = config or GatewayConfig()
        self._classifier = classifier or ContractClassifier(
            store, timeout_sec=self._config.contract_details_timeout_sec
        )
        self.transient = transient or TransientStore()

        self._ib: Optional[Any] = None
        self._settings: Optional[ConnectionSettings] = None
        self._phase = SubscriptionPhase.IDLE
        self._account_handlers_attached = False
        self._tickers: Dict[int, Any] = {}

        self._flush_task: Optional[asyncio.Task] = None
        self._flush_locks: Dict[int, asyncio.Lock] = {}
        self._written_revisions: Dict[int, int] = {}
        self._last_flush: Optional[datetime] = None
        self._flush_count = 0

        connection.add_teardown_hook(self.stop_subscriptions)

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    @property
    def phase(self) -> SubscriptionPhase:
        return self._phase

    @property
    def last_flush(self) -> Optional[datetime]:
        return self._last_flush

    @property
    def flush_count(self) -> int:
        return self._flush_count

    def market_data_count(self) -> int:
        return len(self._tickers)

    def is_timer_running(self) -> bool:
        return self._flush_task is not None and not self._flush_task.done()

    def is_active(self) -> bool:
        return self._phase == SubscriptionPhase.STREAMING or self.is_timer_running()

    def status(self) -> Dict[str, Any]:
        return {
            "is_active": self.is_active(),
            "last_sync": self._last_flush.isoformat() if self._last_flush else None,
            "phase": self._phase.value,
            "subscriptions": {
                "account_updates": self._phase != SubscriptionPhase.IDLE,
                "market_data_count": self.market_data_count(),
            },
        }

    # -------------------------------------------------------------------------
    # Cycle
    # -------------------------------------------------------------------------

    def start_cycle(self) -> int:
        """Clear every transient store. Returns the new cycle generation."""
        self.transient.clear()
        logger.debug(f"Started snapshot cycle {self.transient.generation}")
        return self.transient.generation

    async def run_cycle(self, ib: Any, settings: ConnectionSettings) -> SnapshotFlush:
        """Run a full refresh cycle on a connected gateway and return the first flush."""
        self.stop_subscriptions()
        self.start_cycle()

        await self.subscribe_account(ib, settings)

        positions = self.transient.positions()
        logger.info(f"Account download complete: {len(positions)} positions")

        filled = await self._classifier.classify(ib, positions)
        if filled:
            logger.debug(f"Classified {filled} positions")

        self.subscribe_market_data()

        flush = await self.flush(settings.linked_account_id)
        self.start_flush_timer(settings.linked_account_id)
        return flush

    async def subscribe_account(self, ib: Any, settings: ConnectionSettings) -> None:
        """
        Subscribe to account values and portfolio updates.

        Waits for the gateway's download-complete signal before switching to
        STREAMING.

        Raises:
            SubscriptionTimeoutError: If the download does not complete in time.
        """
        self._ib = ib
        self._settings = settings
        self._attach_account_handlers(ib)
        self._phase = SubscriptionPhase.DOWNLOADING

        timeout = self._config.download_timeout_sec
        try:
            await asyncio.wait_for(ib.reqAccountUpdatesAsync(settings.ib_account), timeout=timeout)
        except asyncio.TimeoutError:
            self._detach_account_handlers()
            self._phase = SubscriptionPhase.IDLE
            raise SubscriptionTimeoutError(
                f"Account download did not complete within {timeout}s"
            ) from None
        except Exception:
            self._detach_account_handlers()
            self._phase = SubscriptionPhase.IDLE
            raise

        self._phase = SubscriptionPhase.STREAMING

    def subscribe_market_data(self) -> None:
        """Subscribe to delayed price ticks for every known position."""
        if self._ib is None:
            return
        self._ib.reqMarketDataType(self._config.market_data_type)
        for position in self.transient.positions():
            self._subscribe_ticker(position)
        logger.info(f"Market data subscriptions active: {len(self._tickers)}")

    def stop_subscriptions(self) -> None:
        """
        Stop the flush timer, price ticks and the account subscription.

        Cancels upstream requests only while the transport is still open.
        """
        self.stop_flush_timer()

        ib = self._ib
        transport_open = ib is not None and self._connection.is_connected()

        for ticker in self._tickers.values():
            ticker.updateEvent -= self._on_ticker
            if transport_open:
                try:
                    ib.cancelMktData(ticker.contract)
                except Exception as e:
                    logger.debug(f"cancelMktData failed for {ticker.contract.conId}: {e}")
        if self._tickers:
            logger.info(f"Stopped {len(self._tickers)} market data subscriptions")
        self._tickers.clear()

        if self._account_handlers_attached and transport_open and self._settings is not None:
            try:
                ib.client.reqAccountUpdates(False, self._settings.ib_account)
            except Exception as e:
                logger.debug(f"Account updates unsubscribe failed: {e}")
        self._detach_account_handlers()
        self._phase = SubscriptionPhase.IDLE

    # -------------------------------------------------------------------------
    # Gateway callbacks (single writer of the transient store)
    # -------------------------------------------------------------------------

    def _attach_account_handlers(self, ib: Any) -> None:
        if self._account_handlers_attached:
            return
        ib.accountValueEvent += self._on_account_value
        ib.updatePortfolioEvent += self._on_portfolio_update
        self._account_handlers_attached = True

    def _detach_account_handlers(self) -> None:
        if not self._account_handlers_attached or self._ib is None:
            self._account_handlers_attached = False
            return
        self._ib.accountValueEvent -= self._on_account_value
        self._ib.updatePortfolioEvent -= self._on_portfolio_update
        self._account_handlers_attached = False

    def _for_this_account(self, account: Optional[str]) -> bool:
        wanted = self._settings.ib_account if self._settings else ""
        return not wanted or not account or account == wanted

    def _on_account_value(self, value) -> None:
        if not self._for_this_account(value.account):
            return
        self.transient.put_account_value(convert_account_value(value))

    def _on_portfolio_update(self, item) -> None:
        if not self._for_this_account(item.account):
            return
        position = convert_portfolio_item(item)
        if position is None:
            return

        cached = self._classifier.cached(position.instrument_id)
        if cached is not None:
            position.apply_classification(cached)
        self.transient.put_position(position)

        if self._phase == SubscriptionPhase.STREAMING and position.quantity != 0:
            self._subscribe_ticker(position)

    def _subscribe_ticker(self, position: PositionSnapshot) -> None:
        if position.instrument_id in self._tickers or self._ib is None:
            return
        contract = Contract(
            conId=position.instrument_id,
            secType=position.security_type,
            exchange=position.primary_exchange or position.exchange or "SMART",
            currency=position.currency or "USD",
        )
        try:
            ticker = self._ib.reqMktData(contract, "", False, False)
        except Exception as e:
            logger.warning(f"Market data subscription failed for {position.symbol}: {e}")
            return
        ticker.updateEvent += self._on_ticker
        self._tickers[position.instrument_id] = ticker

    def _on_ticker(self, ticker) -> None:
        self.transient.update_tick(
            ticker.contract.conId,
            last_price=valid_price(ticker.last),
            close_price=valid_price(ticker.close),
        )

    # -------------------------------------------------------------------------
    # Flush
    # -------------------------------------------------------------------------

    def start_flush_timer(self, account_id: int) -> None:
        if self.is_timer_running():
            return
        self._flush_task = asyncio.create_task(self._flush_loop(account_id))

    def stop_flush_timer(self) -> None:
        if self._flush_task is not None:
            self._flush_task.cancel()
            self._flush_task = None

    async def _flush_loop(self, account_id: int) -> None:
        interval = self._config.flush_interval_sec
        logger.info(f"Flush timer started (every {interval}s) for account {account_id}")
        while True:
            await asyncio.sleep(interval)
            try:
                await self.flush(account_id)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Periodic flush for account {account_id} failed: {e}")

    async def flush(self, account_id: int) -> Optional[SnapshotFlush]:
        """
        Persist the accumulated snapshot for an account.

        Missing close prices and FX rates are resolved before the per-account
        lock is taken; the lock covers only the build and the write. A snapshot
        older than the last one written for the account is dropped, so
        overlapping flushes never move storage backwards.

        Returns:
            The flushed snapshot, or None when there was nothing to write, the
            account is not the one currently subscribed, or the snapshot was
            superseded while its prices were being resolved.
        """
        if self._settings is not None and account_id != self._settings.linked_account_id:
            logger.warning(
                f"Flush for account {account_id} skipped; the gateway subscription "
                f"belongs to account {self._settings.linked_account_id}"
            )
            return None

        snapshot = self.transient.snapshot()
        if not snapshot.account_values and not snapshot.positions:
            logger.debug(f"Nothing to flush for account {account_id}")
            return None

        closes, fx_rates = await self._resolve_prices(snapshot)

        lock = self._flush_locks.setdefault(account_id, asyncio.Lock())
        async with lock:
            if snapshot.generation != self.transient.generation:
                logger.info("Discarding flush from a superseded cycle")
                return None
            if snapshot.revision < self._written_revisions.get(account_id, -1):
                logger.debug(f"Discarding outdated flush for account {account_id}")
                return None

            flush = self._build_flush(account_id, snapshot, closes, fx_rates)
            await self._store.replace_snapshot(flush)
            self._written_revisions[account_id] = snapshot.revision
            self._last_flush = now_utc()
            self._flush_count += 1
            logger.info(
                f"Flushed account {account_id}: {len(flush.positions)} positions, "
                f"{len(flush.cash_balances)} cash balances"
            )
            return flush

    async def _resolve_prices(
        self, snapshot: StoreSnapshot
    ) -> Tuple[Dict[int, float], Dict[str, float]]:
        """Previous closes for positions the gateway left without one, and USD rates for cash."""
        closes: Dict[int, float] = {}
        for position in snapshot.positions:
            tick = snapshot.ticks.get(position.instrument_id)
            if tick is not None and tick.close_price is not None:
                continue
            if position.security_type in YAHOO_CLOSE_SEC_TYPES and position.currency == "USD":
                close = await self._rates.get_previous_close(position.symbol)
                if close is not None:
                    closes[position.instrument_id] = close

        fx_rates: Dict[str, float] = {}
        for entry in snapshot.account_values_for("CashBalance"):
            currency = entry.currency
            if currency and currency != BASE_CURRENCY_TAG and currency not in fx_rates:
                fx_rates[currency] = await self._rates.get_exchange_rate(currency, "USD")
        return closes, fx_rates

    def _build_flush(
        self,
        account_id: int,
        snapshot: StoreSnapshot,
        closes: Dict[int, float],
        fx_rates: Dict[str, float],
    ) -> SnapshotFlush:
        positions = [self._price_position(p, snapshot, closes) for p in snapshot.positions]
        positions.sort(key=lambda p: (p.symbol, p.instrument_id))
        return SnapshotFlush(
            account_id=account_id,
            source=IntegrationSource.IB,
            positions=positions,
            cash_balances=self._cash_balances(snapshot, fx_rates),
            balance=self._balance(snapshot),
        )

    @staticmethod
    def _price_position(
        position: PositionSnapshot, snapshot: StoreSnapshot, closes: Dict[int, float]
    ) -> PositionSnapshot:
        tick = snapshot.ticks.get(position.instrument_id)
        last = tick.last_price if tick else None
        close = tick.close_price if tick else None
        if close is None:
            close = closes.get(position.instrument_id)

        if last is not None:
            position.market_price = last
        position.close_price = close
        position.day_change, position.day_change_percent = compute_day_change(
            position.security_type, position.quantity, last, close
        )
        return position

    @staticmethod
    def _cash_balances(snapshot: StoreSnapshot, fx_rates: Dict[str, float]) -> List[CashBalance]:
        balances = []
        for entry in snapshot.account_values_for("CashBalance"):
            if not entry.currency or entry.currency == BASE_CURRENCY_TAG:
                continue
            amount = entry.as_float()
            if not amount:
                continue
            balances.append(CashBalance(
                currency=entry.currency,
                amount=amount,
                market_value_usd=amount * fx_rates.get(entry.currency, 1.0),
            ))
        balances.sort(key=lambda c: c.currency)
        return balances

    def _balance(self, snapshot: StoreSnapshot) -> Optional[BalanceUpdate]:
        net_liq = snapshot.account_value("NetLiquidation")
        value = net_liq.as_float() if net_liq else None
        if value is None:
            logger.warning("No NetLiquidation value received; balance not updated")
            return None

        currency = net_liq.currency
        if not currency or currency == BASE_CURRENCY_TAG:
            currency_entry = snapshot.account_value("Currency")
            currency = currency_entry.value if currency_entry else "USD"
        return BalanceUpdate(balance=value, currency=currency, note=IB_BALANCE_NOTE)
