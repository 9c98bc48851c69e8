"""Tests for TransientStore."""

from investtrack.infrastructure.stores.transient_store import TransientStore
from investtrack.models.snapshot import AccountValueEntry, PositionSnapshot


def position(instrument_id=101, symbol="AAPL", quantity=10.0):
    return PositionSnapshot(
        instrument_id=instrument_id,
        symbol=symbol,
        security_type="STK",
        currency="USD",
        quantity=quantity,
        average_cost=100.0,
        market_price=110.0,
        market_value=quantity * 110.0,
    )


class TestAccountValues:
    def test_per_currency_entries_coexist(self):
        store = TransientStore()
        store.put_account_value(AccountValueEntry("CashBalance", "100", "EUR"))
        store.put_account_value(AccountValueEntry("CashBalance", "200", "USD"))

        snapshot = store.snapshot()

        assert len(snapshot.account_values_for("CashBalance")) == 2
        assert store.account_value("CashBalance", "EUR").value == "100"

    def test_base_entry_preferred(self):
        store = TransientStore()
        store.put_account_value(AccountValueEntry("NetLiquidation", "1", "USD"))
        store.put_account_value(AccountValueEntry("NetLiquidation", "2", "BASE"))

        assert store.account_value("NetLiquidation").value == "2"

    def test_latest_value_wins(self):
        store = TransientStore()
        store.put_account_value(AccountValueEntry("NetLiquidation", "1", "USD"))
        store.put_account_value(AccountValueEntry("NetLiquidation", "5", "USD"))

        assert store.account_value("NetLiquidation").as_float() == 5.0


class TestPositions:
    def test_position_replaced_wholesale(self):
        store = TransientStore()
        store.put_position(position(quantity=10))
        store.put_position(position(quantity=20))

        assert store.position(101).quantity == 20
        assert len(store.positions()) == 1

    def test_zero_quantity_removes(self):
        store = TransientStore()
        store.put_position(position())
        store.put_position(position(quantity=0))

        assert store.position(101) is None


class TestTicks:
    def test_last_and_close_independent(self):
        store = TransientStore()
        store.update_tick(101, close_price=100.0)
        store.update_tick(101, last_price=102.0)

        tick = store.tick(101)
        assert tick.last_price == 102.0
        assert tick.close_price == 100.0

    def test_non_positive_prices_ignored(self):
        store = TransientStore()
        store.update_tick(101, last_price=0.0, close_price=-1.0)

        assert store.tick(101) is None


class TestSnapshotAndClear:
    def test_snapshot_is_a_copy(self):
        store = TransientStore()
        store.put_position(position())
        snapshot = store.snapshot()

        snapshot.positions[0].market_price = 1.0
        store.put_position(position(instrument_id=102, symbol="MSFT"))

        assert store.position(101).market_price == 110.0
        assert len(snapshot.positions) == 1

    def test_clear_bumps_generation(self):
        store = TransientStore()
        store.put_position(position())
        store.update_tick(101, last_price=1.0)

        store.clear()

        assert store.is_empty()
        assert store.generation == 1
        assert store.counts() == {"account_values": 0, "positions": 0, "ticks": 0}

    def test_revision_advances_on_writes_and_clear(self):
        store = TransientStore()
        start = store.revision
        store.put_account_value(AccountValueEntry("NetLiquidation", "1", "USD"))
        store.put_position(position())
        store.update_tick(101, last_price=-1.0)
        after_writes = store.revision

        store.clear()

        assert after_writes == start + 2
        assert store.revision > after_writes
        assert store.snapshot().revision == store.revision
