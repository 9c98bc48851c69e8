"""Repository for positions and cash balances written by the refresh pipeline."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from ..database import Database
from .account_repository import AccountRepository
from ....models.snapshot import (
    CashBalance,
    Classification,
    IntegrationSource,
    PositionSnapshot,
    SnapshotFlush,
)
from ....utils.logging_setup import get_logger

logger = get_logger(__name__)

INSERT_POSITION_SQL = """
    INSERT INTO portfolios (
        main_account_id, source, con_id, symbol, sec_type, currency, country,
        industry, category, quantity, average_cost, exchange, primary_exchange,
        market_price, market_value, close_price, day_change, day_change_percent,
        unrealized_pnl, realized_pnl
    ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15, $16, $17, $18, $19, $20)
"""

INSERT_CASH_SQL = """
    INSERT INTO cash_balances (main_account_id, source, currency, amount, market_value_usd)
    VALUES ($1, $2, $3, $4, $5)
"""


class PortfolioRepository:
    """
    Durable side of a snapshot flush.

    Rows are owned by exactly one (main_account_id, source) pair and are
    replaced delete-then-insert, so positions closed since the last flush
    leave no rows behind.
    """

    def __init__(self, db: Database, accounts: AccountRepository):
        self._db = db
        self._accounts = accounts

    async def replace_snapshot(self, flush: SnapshotFlush) -> None:
        """Replace positions and cash, and update the balance, in one transaction."""
        source = flush.source.value
        position_rows = [self._position_row(flush.account_id, source, p) for p in flush.positions]
        cash_rows = [
            (flush.account_id, source, c.currency, c.amount, c.market_value_usd)
            for c in flush.cash_balances
        ]

        async with self._db.transaction() as conn:
            await conn.execute(
                "DELETE FROM portfolios WHERE main_account_id = $1 AND source = $2",
                flush.account_id,
                source,
            )
            if position_rows:
                await conn.executemany(INSERT_POSITION_SQL, position_rows)

            await conn.execute(
                "DELETE FROM cash_balances WHERE main_account_id = $1 AND source = $2",
                flush.account_id,
                source,
            )
            if cash_rows:
                await conn.executemany(INSERT_CASH_SQL, cash_rows)

            if flush.balance is not None:
                await self._accounts.update_balance(flush.account_id, flush.balance, conn=conn)

        logger.debug(
            f"Replaced {len(position_rows)} positions, {len(cash_rows)} cash balances "
            f"for account {flush.account_id} ({source})"
        )

    async def get_classification(self, instrument_id: int) -> Optional[Classification]:
        """Most recent stored classification for an instrument."""
        record = await self._db.fetchrow(
            """
            SELECT industry, category, country, primary_exchange FROM portfolios
            WHERE con_id = $1 AND industry IS NOT NULL AND category IS NOT NULL
            ORDER BY last_price_update DESC
            LIMIT 1
            """,
            instrument_id,
        )
        if record is None:
            return None
        return Classification(
            industry=record["industry"],
            category=record["category"],
            country=record["country"],
            primary_exchange=record["primary_exchange"],
        )

    async def get_positions(self, account_id: int, source: IntegrationSource) -> List[Dict[str, Any]]:
        records = await self._db.fetch(
            "SELECT * FROM portfolios WHERE main_account_id = $1 AND source = $2 ORDER BY symbol",
            account_id,
            source.value,
        )
        return [dict(r) for r in records]

    async def get_cash_balances(self, account_id: int, source: IntegrationSource) -> List[CashBalance]:
        records = await self._db.fetch(
            """
            SELECT currency, amount, market_value_usd FROM cash_balances
            WHERE main_account_id = $1 AND source = $2 ORDER BY currency
            """,
            account_id,
            source.value,
        )
        return [
            CashBalance(currency=r["currency"], amount=r["amount"], market_value_usd=r["market_value_usd"])
            for r in records
        ]

    @staticmethod
    def _position_row(account_id: int, source: str, p: PositionSnapshot) -> tuple:
        return (
            account_id,
            source,
            p.instrument_id or None,
            p.symbol,
            p.security_type,
            p.currency,
            p.country,
            p.industry,
            p.category,
            p.quantity,
            p.average_cost,
            p.exchange,
            p.primary_exchange,
            p.market_price,
            p.market_value,
            p.close_price,
            p.day_change,
            p.day_change_percent,
            p.unrealized_pnl,
            p.realized_pnl,
        )
