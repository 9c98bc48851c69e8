"""
Base repository pattern for database operations.

Provides the CRUD helpers that the concrete repositories share.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any, Dict, Generic, List, Optional, Tuple, TypeVar

from asyncpg import Record

from ..database import Database

T = TypeVar("T")


class BaseRepository(ABC, Generic[T]):
    """
    Abstract base repository with common database operations.

    Subclasses must implement:
    - table_name: The database table name
    - _to_entity: Convert a database record to an entity
    - _to_row: Convert an entity to a database row dict
    """

    def __init__(self, db: Database):
        self._db = db

    @property
    @abstractmethod
    def table_name(self) -> str:
        """The database table name for this repository."""

    @property
    def primary_key_columns(self) -> List[str]:
        return ["id"]

    @property
    def conflict_columns(self) -> List[str]:
        """Columns checked for conflicts in UPSERT operations."""
        return self.primary_key_columns

    @abstractmethod
    def _to_entity(self, record: Record) -> T:
        """Convert an asyncpg Record to an entity object."""

    @abstractmethod
    def _to_row(self, entity: T) -> Dict[str, Any]:
        """Convert an entity to a column -> value dict for insertion."""

    # -------------------------------------------------------------------------
    # Common Query Methods
    # -------------------------------------------------------------------------

    async def find_where(
        self,
        limit: int = 1000,
        order_by: Optional[str] = None,
        **conditions: Any,
    ) -> List[T]:
        """
        Find entities matching column=value conditions.

        Args:
            limit: Maximum number of records.
            order_by: Column to order by (e.g. "updated_at DESC").
            **conditions: Column=value conditions.
        """
        where_clause, params = self._build_where_clause(conditions)
        order_clause = f"ORDER BY {order_by}" if order_by else ""
        query = f"""
            SELECT * FROM {self.table_name}
            WHERE {where_clause}
            {order_clause}
            LIMIT ${len(params) + 1}
        """
        records = await self._db.fetch(query, *params, limit)
        return [self._to_entity(r) for r in records]

    async def find_one_where(self, **conditions: Any) -> Optional[T]:
        results = await self.find_where(limit=1, **conditions)
        return results[0] if results else None

    async def upsert(self, entity: T) -> T:
        """
        Insert or update entity based on conflict columns.

        Uses ON CONFLICT ... DO UPDATE for idempotent writes.
        """
        row = self._to_row(entity)
        columns = list(row.keys())
        placeholders = [f"${i+1}" for i in range(len(columns))]

        update_cols = [c for c in columns if c not in self.conflict_columns]
        update_clause = ", ".join(f"{c} = EXCLUDED.{c}" for c in update_cols)

        query = f"""
            INSERT INTO {self.table_name} ({', '.join(columns)})
            VALUES ({', '.join(placeholders)})
            ON CONFLICT ({', '.join(self.conflict_columns)}) DO UPDATE SET {update_clause}
            RETURNING *
        """
        record = await self._db.fetchrow(query, *row.values())
        return self._to_entity(record)

    # -------------------------------------------------------------------------
    # Helper Methods
    # -------------------------------------------------------------------------

    def _build_where_clause(
        self, conditions: Dict[str, Any]
    ) -> Tuple[str, List[Any]]:
        """Build a WHERE clause and parameter list from column=value pairs."""
        if not conditions:
            return "1=1", []

        clauses = []
        params: List[Any] = []
        for col, val in conditions.items():
            if val is None:
                clauses.append(f"{col} IS NULL")
            else:
                params.append(val)
                clauses.append(f"{col} = ${len(params)}")

        return " AND ".join(clauses), params

    @staticmethod
    def _decimal_to_float(value: Any) -> Optional[float]:
        if value is None:
            return None
        if isinstance(value, Decimal):
            return float(value)
        return value

    @staticmethod
    def _affected_rows(status: str) -> int:
        """Parse the row count out of a status string like "DELETE 5"."""
        try:
            return int(status.split()[-1])
        except (AttributeError, IndexError, ValueError):
            return 0
