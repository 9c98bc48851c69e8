"""
Tests for SnapshotReconciler.

Verifies:
- Day change formula (stocks, bonds, missing prices)
- Flush contents: positions, cash balances, balance row
- Idempotent flushes and replace semantics (no stale rows)
- Overlapping flushes: one write at a time, older snapshots dropped
- Cycle isolation (clear + generation check)
- Subscription phases and the download timeout
- Disconnect stops price ticks and the flush timer
"""

import asyncio

import pytest

from investtrack.domain.errors import SubscriptionTimeoutError
from investtrack.infrastructure.adapters.ib.contract_classifier import ContractClassifier
from investtrack.infrastructure.stores.rate_cache import RateCache
from investtrack.models.snapshot import (
    AccountValueEntry,
    Classification,
    PositionSnapshot,
    SubscriptionPhase,
)
from investtrack.services.exchange_rate_service import ExchangeRateService
from investtrack.services.snapshot_reconciler import SnapshotReconciler, compute_day_change
from tests.fakes import FakeQuoteProvider, InMemoryPortfolioStore, account_value, portfolio_item


def make_reconciler(connection, store, rates, config):
    return SnapshotReconciler(
        connection,
        store,
        rates,
        classifier=ContractClassifier(store, timeout_sec=config.contract_details_timeout_sec),
        config=config,
    )


def make_position(instrument_id, symbol, quantity):
    return PositionSnapshot(
        instrument_id=instrument_id, symbol=symbol, security_type="STK", currency="USD",
        quantity=quantity, average_cost=1.0, market_price=1.0, market_value=float(quantity),
    )


def seed_gateway(fake_ib):
    fake_ib.account_values = [
        account_value("NetLiquidation", 12345.67, "USD"),
        account_value("CashBalance", 1000, "EUR"),
        account_value("CashBalance", 500, "USD"),
        account_value("CashBalance", 2000, "BASE"),
        account_value("CashBalance", 0, "JPY"),
    ]
    fake_ib.portfolio_items = [
        portfolio_item(101, "AAPL", 100, 150.0, average_cost=120.0),
        portfolio_item(102, "MSFT", 10, 400.0, average_cost=300.0),
    ]


class TestComputeDayChange:
    """Day change formula."""

    def test_stock_day_change(self):
        """(last - close) x quantity, percent relative to close."""
        change, percent = compute_day_change("STK", 100, 52.0, 50.0)

        assert change == pytest.approx(200.0)
        assert percent == pytest.approx(4.0)

    def test_bond_day_change_scaled(self):
        """Bond change is scaled by the provider constant; percent is not."""
        change, percent = compute_day_change("BOND", 100, 52.0, 50.0)

        assert change == pytest.approx(2000.0)
        assert percent == pytest.approx(4.0)

    @pytest.mark.parametrize("last,close", [(None, 50.0), (52.0, None), (0.0, 50.0), (52.0, -1.0)])
    def test_missing_prices_leave_change_empty(self, last, close):
        """Change is only computed when both prices are positive."""
        assert compute_day_change("STK", 100, last, close) == (None, None)


class TestRunCycle:
    """Full refresh cycle against the fake gateway."""

    @pytest.mark.asyncio
    async def test_first_flush_contents(self, connection, fake_ib, ib_settings, portfolio_store, rates, gateway_config):
        """Positions, cash and balance are written together after download completes."""
        seed_gateway(fake_ib)
        reconciler = make_reconciler(connection, portfolio_store, rates, gateway_config)

        ib = await connection.connect(ib_settings)
        flush = await reconciler.run_cycle(ib, ib_settings)
        reconciler.stop_subscriptions()

        assert flush is not None
        assert [p.symbol for p in flush.positions] == ["AAPL", "MSFT"]
        assert flush.balance.balance == pytest.approx(12345.67)
        assert flush.balance.currency == "USD"
        assert flush.balance.note == "IB integration auto-refresh"

        cash = {c.currency: c for c in flush.cash_balances}
        assert set(cash) == {"EUR", "USD"}
        assert cash["EUR"].market_value_usd == pytest.approx(1100.0)
        assert cash["USD"].market_value_usd == pytest.approx(500.0)

        assert portfolio_store.rows(42) == [("AAPL", 100), ("MSFT", 10)]
        assert portfolio_store.balances[42].balance == pytest.approx(12345.67)

    @pytest.mark.asyncio
    async def test_phase_streaming_after_download(self, connection, fake_ib, ib_settings, portfolio_store, rates, gateway_config):
        """Account subscription ends in STREAMING with a ticker per position."""
        seed_gateway(fake_ib)
        reconciler = make_reconciler(connection, portfolio_store, rates, gateway_config)

        ib = await connection.connect(ib_settings)
        await reconciler.run_cycle(ib, ib_settings)

        assert reconciler.phase == SubscriptionPhase.STREAMING
        assert set(fake_ib.tickers) == {101, 102}
        assert fake_ib.market_data_type == 3
        assert reconciler.is_timer_running()

        reconciler.stop_subscriptions()
        await asyncio.sleep(0)

    @pytest.mark.asyncio
    async def test_stored_classification_applied(self, connection, fake_ib, ib_settings, portfolio_store, rates, gateway_config):
        """Classification from storage is used without contract details."""
        seed_gateway(fake_ib)
        portfolio_store.classifications[101] = Classification(
            industry="Technology", category="Computers", country="United States", primary_exchange="NASDAQ"
        )
        reconciler = make_reconciler(connection, portfolio_store, rates, gateway_config)

        ib = await connection.connect(ib_settings)
        flush = await reconciler.run_cycle(ib, ib_settings)
        reconciler.stop_subscriptions()

        aapl = next(p for p in flush.positions if p.symbol == "AAPL")
        msft = next(p for p in flush.positions if p.symbol == "MSFT")
        assert aapl.industry == "Technology"
        assert aapl.category == "Computers"
        assert msft.industry is None
        assert msft.country == "United States"

    @pytest.mark.asyncio
    async def test_missing_net_liquidation_skips_balance(self, connection, fake_ib, ib_settings, portfolio_store, rates, gateway_config):
        """Without NetLiquidation the balance row is untouched but positions are written."""
        fake_ib.portfolio_items = [portfolio_item(101, "AAPL", 100, 150.0)]
        reconciler = make_reconciler(connection, portfolio_store, rates, gateway_config)

        ib = await connection.connect(ib_settings)
        flush = await reconciler.run_cycle(ib, ib_settings)
        reconciler.stop_subscriptions()

        assert flush.balance is None
        assert 42 not in portfolio_store.balances
        assert portfolio_store.rows(42) == [("AAPL", 100)]

    @pytest.mark.asyncio
    async def test_download_timeout(self, connection, fake_ib, ib_settings, portfolio_store, rates, gateway_config):
        """A download that never completes raises and leaves the phase IDLE."""
        fake_ib.download_hangs = True
        reconciler = make_reconciler(connection, portfolio_store, rates, gateway_config)

        ib = await connection.connect(ib_settings)
        with pytest.raises(SubscriptionTimeoutError):
            await reconciler.run_cycle(ib, ib_settings)

        assert reconciler.phase == SubscriptionPhase.IDLE
        assert not reconciler.is_timer_running()

        fake_ib.accountValueEvent.emit(account_value("NetLiquidation", 1.0))
        assert reconciler.transient.account_value("NetLiquidation") is None


class TestFlush:
    """Flush semantics."""

    @pytest.mark.asyncio
    async def test_flush_is_idempotent(self, connection, fake_ib, ib_settings, portfolio_store, rates, gateway_config):
        """Two flushes without intervening events write identical rows."""
        seed_gateway(fake_ib)
        reconciler = make_reconciler(connection, portfolio_store, rates, gateway_config)
        ib = await connection.connect(ib_settings)
        await reconciler.run_cycle(ib, ib_settings)
        reconciler.stop_subscriptions()

        first = await reconciler.flush(42)
        second = await reconciler.flush(42)

        assert first.positions == second.positions
        assert first.cash_balances == second.cash_balances
        assert first.balance == second.balance
        assert portfolio_store.rows(42) == [("AAPL", 100), ("MSFT", 10)]

    @pytest.mark.asyncio
    async def test_closed_position_leaves_no_row(self, connection, fake_ib, ib_settings, portfolio_store, rates, gateway_config):
        """A position missing from the next cycle disappears from storage."""
        seed_gateway(fake_ib)
        reconciler = make_reconciler(connection, portfolio_store, rates, gateway_config)
        ib = await connection.connect(ib_settings)
        await reconciler.run_cycle(ib, ib_settings)

        fake_ib.portfolio_items = [portfolio_item(101, "AAPL", 100, 150.0)]
        await reconciler.run_cycle(ib, ib_settings)
        reconciler.stop_subscriptions()

        assert portfolio_store.rows(42) == [("AAPL", 100)]

    @pytest.mark.asyncio
    async def test_ticks_drive_market_price_and_day_change(self, connection, fake_ib, ib_settings, portfolio_store, rates, gateway_config):
        """Last replaces market price; both prices give the day change."""
        seed_gateway(fake_ib)
        reconciler = make_reconciler(connection, portfolio_store, rates, gateway_config)
        ib = await connection.connect(ib_settings)
        await reconciler.run_cycle(ib, ib_settings)

        fake_ib.tickers[101].tick(last=152.0, close=150.0)
        flush = await reconciler.flush(42)
        reconciler.stop_subscriptions()

        aapl = next(p for p in flush.positions if p.symbol == "AAPL")
        assert aapl.market_price == pytest.approx(152.0)
        assert aapl.close_price == pytest.approx(150.0)
        assert aapl.day_change == pytest.approx(200.0)
        assert aapl.day_change_percent == pytest.approx(2.0 / 150.0 * 100)

    @pytest.mark.asyncio
    async def test_nan_ticks_ignored(self, connection, fake_ib, ib_settings, portfolio_store, rates, gateway_config):
        """NaN prices from the gateway do not produce ticks."""
        seed_gateway(fake_ib)
        reconciler = make_reconciler(connection, portfolio_store, rates, gateway_config)
        ib = await connection.connect(ib_settings)
        await reconciler.run_cycle(ib, ib_settings)

        fake_ib.tickers[101].tick()
        reconciler.stop_subscriptions()

        assert reconciler.transient.tick(101) is None

    @pytest.mark.asyncio
    async def test_previous_close_from_quote_provider(self, connection, fake_ib, ib_settings, portfolio_store, gateway_config):
        """Without a gateway close, the quote provider's previous close is used."""
        seed_gateway(fake_ib)
        quotes = FakeQuoteProvider(rates={("EUR", "USD"): 1.1}, closes={"AAPL": 148.0})
        rates = ExchangeRateService(quotes, RateCache())
        reconciler = make_reconciler(connection, portfolio_store, rates, gateway_config)
        ib = await connection.connect(ib_settings)
        await reconciler.run_cycle(ib, ib_settings)

        fake_ib.tickers[101].tick(last=150.0)
        flush = await reconciler.flush(42)
        reconciler.stop_subscriptions()

        aapl = next(p for p in flush.positions if p.symbol == "AAPL")
        assert aapl.close_price == pytest.approx(148.0)
        assert aapl.day_change == pytest.approx(200.0)

    @pytest.mark.asyncio
    async def test_empty_store_not_flushed(self, connection, portfolio_store, rates, gateway_config):
        """Nothing is written when no data has arrived."""
        reconciler = make_reconciler(connection, portfolio_store, rates, gateway_config)

        assert await reconciler.flush(42) is None
        assert portfolio_store.flushes == []

    @pytest.mark.asyncio
    async def test_overlapping_flushes_written_one_at_a_time(self, connection, rates, gateway_config):
        """A second flush waits for the first write; each writes a whole snapshot, in order."""
        entered = asyncio.Event()

        class SlowStore(InMemoryPortfolioStore):
            active = 0
            max_active = 0

            async def replace_snapshot(self, flush):
                self.active += 1
                self.max_active = max(self.max_active, self.active)
                entered.set()
                await asyncio.sleep(0.01)
                await super().replace_snapshot(flush)
                self.active -= 1

        store = SlowStore()
        reconciler = make_reconciler(connection, store, rates, gateway_config)
        reconciler.transient.put_position(make_position(101, "AAPL", 100))

        first = asyncio.create_task(reconciler.flush(42))
        await entered.wait()
        reconciler.transient.put_position(make_position(102, "MSFT", 10))
        second = await reconciler.flush(42)
        await first

        assert store.max_active == 1
        assert [[p.symbol for p in f.positions] for f in store.flushes] == [["AAPL"], ["AAPL", "MSFT"]]
        assert second is store.flushes[-1]
        assert store.rows(42) == [("AAPL", 100), ("MSFT", 10)]

    @pytest.mark.asyncio
    async def test_slow_close_lookup_does_not_overwrite_newer_flush(self, connection, portfolio_store, gateway_config):
        """A flush stuck on a close lookup neither blocks a later flush nor overwrites it."""
        gate = asyncio.Event()

        class SlowCloses(FakeQuoteProvider):
            async def get_quote(self, symbol):
                if symbol == "AAPL":
                    await gate.wait()
                return await super().get_quote(symbol)

        rates = ExchangeRateService(SlowCloses(closes={"AAPL": 148.0, "MSFT": 395.0}), RateCache())
        reconciler = make_reconciler(connection, portfolio_store, rates, gateway_config)
        reconciler.transient.put_position(make_position(101, "AAPL", 100))

        stale = asyncio.create_task(reconciler.flush(42))
        for _ in range(5):
            await asyncio.sleep(0)
        reconciler.transient.put_position(make_position(101, "AAPL", 0))
        reconciler.transient.put_position(make_position(102, "MSFT", 10))
        fresh = await asyncio.wait_for(reconciler.flush(42), timeout=1.0)
        gate.set()

        assert await stale is None
        assert fresh.positions[0].close_price == pytest.approx(395.0)
        assert portfolio_store.flushes == [fresh]
        assert portfolio_store.rows(42) == [("MSFT", 10)]

    @pytest.mark.asyncio
    async def test_tick_for_unknown_instrument_adds_no_row(self, connection, portfolio_store, rates, gateway_config):
        """Prices for an instrument with no position are not written."""
        reconciler = make_reconciler(connection, portfolio_store, rates, gateway_config)
        reconciler.transient.put_position(make_position(101, "AAPL", 100))
        reconciler.transient.update_tick(999, last_price=10.0, close_price=9.0)

        flush = await reconciler.flush(42)

        assert [p.instrument_id for p in flush.positions] == [101]
        assert portfolio_store.rows(42) == [("AAPL", 100)]

    @pytest.mark.asyncio
    async def test_flush_for_other_account_skipped(self, connection, fake_ib, ib_settings, portfolio_store, rates, gateway_config):
        """Only the account the gateway subscription belongs to is flushed."""
        seed_gateway(fake_ib)
        reconciler = make_reconciler(connection, portfolio_store, rates, gateway_config)
        ib = await connection.connect(ib_settings)
        await reconciler.run_cycle(ib, ib_settings)
        reconciler.stop_subscriptions()
        written = len(portfolio_store.flushes)

        assert await reconciler.flush(43) is None
        assert len(portfolio_store.flushes) == written
        assert portfolio_store.rows(43) == []


class TestCycleIsolation:
    """Data from one cycle never leaks into another."""

    @pytest.mark.asyncio
    async def test_flush_from_superseded_cycle_discarded(self, connection, portfolio_store, gateway_config):
        """A flush whose cycle was cleared mid-build writes nothing."""
        gate = asyncio.Event()

        class SlowQuotes(FakeQuoteProvider):
            async def get_rate(self, from_currency, to_currency):
                await gate.wait()
                return 1.1

        rates = ExchangeRateService(SlowQuotes(), RateCache())
        reconciler = make_reconciler(connection, portfolio_store, rates, gateway_config)
        reconciler.transient.put_account_value(AccountValueEntry("CashBalance", "100", "EUR"))
        reconciler.transient.put_position(PositionSnapshot(
            instrument_id=101, symbol="AAPL", security_type="STK", currency="USD",
            quantity=1, average_cost=1.0, market_price=1.0, market_value=1.0,
        ))

        task = asyncio.create_task(reconciler.flush(42))
        for _ in range(5):
            await asyncio.sleep(0)
        reconciler.start_cycle()
        gate.set()

        assert await task is None
        assert portfolio_store.flushes == []

    @pytest.mark.asyncio
    async def test_start_cycle_clears_store(self, connection, portfolio_store, rates, gateway_config):
        """start_cycle() empties the store and bumps the generation."""
        reconciler = make_reconciler(connection, portfolio_store, rates, gateway_config)
        reconciler.transient.put_account_value(AccountValueEntry("NetLiquidation", "1", "USD"))
        before = reconciler.transient.generation

        generation = reconciler.start_cycle()

        assert generation == before + 1
        assert reconciler.transient.is_empty()


class TestStreamingUpdates:
    """Incremental updates after download completes."""

    @pytest.mark.asyncio
    async def test_new_position_gets_ticker(self, connection, fake_ib, ib_settings, portfolio_store, rates, gateway_config):
        """A position appearing while STREAMING is subscribed to market data."""
        seed_gateway(fake_ib)
        reconciler = make_reconciler(connection, portfolio_store, rates, gateway_config)
        ib = await connection.connect(ib_settings)
        await reconciler.run_cycle(ib, ib_settings)

        fake_ib.updatePortfolioEvent.emit(portfolio_item(103, "NVDA", 5, 900.0))
        reconciler.stop_subscriptions()

        assert 103 in fake_ib.tickers
        assert reconciler.transient.position(103).symbol == "NVDA"

    @pytest.mark.asyncio
    async def test_zero_quantity_removes_position(self, connection, fake_ib, ib_settings, portfolio_store, rates, gateway_config):
        """A zero-quantity update removes the position from the next flush."""
        seed_gateway(fake_ib)
        reconciler = make_reconciler(connection, portfolio_store, rates, gateway_config)
        ib = await connection.connect(ib_settings)
        await reconciler.run_cycle(ib, ib_settings)

        fake_ib.updatePortfolioEvent.emit(portfolio_item(102, "MSFT", 0, 400.0))
        flush = await reconciler.flush(42)
        reconciler.stop_subscriptions()

        assert [p.symbol for p in flush.positions] == ["AAPL"]

    @pytest.mark.asyncio
    async def test_other_account_updates_ignored(self, connection, fake_ib, ib_settings, portfolio_store, rates, gateway_config):
        """Updates tagged with a different IB account are dropped."""
        seed_gateway(fake_ib)
        reconciler = make_reconciler(connection, portfolio_store, rates, gateway_config)
        ib = await connection.connect(ib_settings)
        await reconciler.run_cycle(ib, ib_settings)

        fake_ib.updatePortfolioEvent.emit(portfolio_item(104, "TSLA", 3, 200.0, account="U999"))
        reconciler.stop_subscriptions()

        assert reconciler.transient.position(104) is None

    @pytest.mark.asyncio
    async def test_status(self, connection, fake_ib, ib_settings, portfolio_store, rates, gateway_config):
        """Status reports activity, last sync and subscription counts."""
        seed_gateway(fake_ib)
        reconciler = make_reconciler(connection, portfolio_store, rates, gateway_config)
        ib = await connection.connect(ib_settings)
        await reconciler.run_cycle(ib, ib_settings)

        status = reconciler.status()
        reconciler.stop_subscriptions()

        assert status["is_active"] is True
        assert status["last_sync"] is not None
        assert status["subscriptions"] == {"account_updates": True, "market_data_count": 2}
        assert reconciler.status()["is_active"] is False


class TestTeardown:
    """Disconnect stops ticks and the flush timer."""

    @pytest.mark.asyncio
    async def test_explicit_disconnect(self, connection, fake_ib, ib_settings, portfolio_store, rates, gateway_config):
        """disconnect() cancels market data and the timer before closing."""
        seed_gateway(fake_ib)
        reconciler = make_reconciler(connection, portfolio_store, rates, gateway_config)
        ib = await connection.connect(ib_settings)
        await reconciler.run_cycle(ib, ib_settings)
        ticker = fake_ib.tickers[101]

        await connection.disconnect()
        await asyncio.sleep(0)

        assert not reconciler.is_timer_running()
        assert reconciler.market_data_count() == 0
        assert reconciler.phase == SubscriptionPhase.IDLE
        assert sorted(fake_ib.cancelled) == [101, 102]
        fake_ib.client.reqAccountUpdates.assert_called_with(False, "U123")

        ticker.tick(last=999.0, close=998.0)
        assert reconciler.transient.tick(101) is None

    @pytest.mark.asyncio
    async def test_gateway_drop(self, connection, fake_ib, ib_settings, portfolio_store, rates, gateway_config):
        """A gateway-initiated disconnect runs the same teardown without upstream cancels."""
        seed_gateway(fake_ib)
        reconciler = make_reconciler(connection, portfolio_store, rates, gateway_config)
        ib = await connection.connect(ib_settings)
        await reconciler.run_cycle(ib, ib_settings)
        ticker = fake_ib.tickers[101]

        fake_ib.drop()
        await asyncio.sleep(0)

        assert not connection.is_connected()
        assert not reconciler.is_timer_running()
        assert reconciler.market_data_count() == 0
        assert fake_ib.cancelled == []

        ticker.tick(last=999.0)
        assert reconciler.transient.tick(101) is None

    @pytest.mark.asyncio
    async def test_periodic_flush(self, connection, fake_ib, ib_settings, portfolio_store, rates, gateway_config):
        """The timer re-runs flush from accumulated state."""
        gateway_config.flush_interval_sec = 0.01
        seed_gateway(fake_ib)
        reconciler = make_reconciler(connection, portfolio_store, rates, gateway_config)
        ib = await connection.connect(ib_settings)
        await reconciler.run_cycle(ib, ib_settings)

        await asyncio.sleep(0.05)
        reconciler.stop_subscriptions()

        assert reconciler.flush_count >= 2
