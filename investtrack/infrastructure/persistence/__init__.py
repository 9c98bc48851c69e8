"""
Persistence layer for PostgreSQL.

Provides:
- Database connection management with asyncpg
- Repositories for accounts, integration settings and snapshot rows
- Migration support for schema versioning (see migrations/runner.py)
"""

from .database import (
    Database,
    DatabaseError,
    ConnectionError,
    QueryError,
)

__all__ = [
    "Database",
    "DatabaseError",
    "ConnectionError",
    "QueryError",
]
