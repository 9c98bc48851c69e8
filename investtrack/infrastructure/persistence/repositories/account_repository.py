"""Repository for account balances and balance history."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from asyncpg import Connection

from ..database import Database
from ....models.snapshot import BalanceUpdate
from ....utils.logging_setup import get_logger

logger = get_logger(__name__)

UPDATE_BALANCE_SQL = """
    UPDATE accounts
    SET current_balance = $2, currency = $3, last_updated = NOW(), updated_at = NOW()
    WHERE id = $1
"""

INSERT_HISTORY_SQL = """
    INSERT INTO account_balance_history (account_id, balance, currency, note)
    VALUES ($1, $2, $3, $4)
"""


class AccountRepository:
    """Balance row updates and the history trail they leave."""

    def __init__(self, db: Database):
        self._db = db

    async def update_balance(
        self,
        account_id: int,
        update: BalanceUpdate,
        conn: Optional[Connection] = None,
    ) -> None:
        """
        Update the account balance in place and append a history row.

        Args:
            account_id: Account to update.
            update: New balance, currency and history note.
            conn: Connection with an open transaction; when omitted a new
                transaction is opened.
        """
        if conn is None:
            async with self._db.transaction() as tx:
                await self._write_balance(tx, account_id, update)
        else:
            await self._write_balance(conn, account_id, update)

    async def _write_balance(self, conn: Connection, account_id: int, update: BalanceUpdate) -> None:
        await conn.execute(UPDATE_BALANCE_SQL, account_id, update.balance, update.currency)
        await conn.execute(INSERT_HISTORY_SQL, account_id, update.balance, update.currency, update.note)
        logger.debug(f"Balance for account {account_id}: {update.balance:,.2f} {update.currency}")

    async def get_balance_history(
        self, account_id: int, since: Optional[datetime] = None, limit: int = 100
    ) -> List[Dict[str, Any]]:
        if since is None:
            records = await self._db.fetch(
                """
                SELECT balance, currency, note, recorded_at FROM account_balance_history
                WHERE account_id = $1 ORDER BY recorded_at DESC LIMIT $2
                """,
                account_id,
                limit,
            )
        else:
            records = await self._db.fetch(
                """
                SELECT balance, currency, note, recorded_at FROM account_balance_history
                WHERE account_id = $1 AND recorded_at >= $2
                ORDER BY recorded_at DESC LIMIT $3
                """,
                account_id,
                since,
                limit,
            )
        return [dict(r) for r in records]
