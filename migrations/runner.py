"""
Schema migration runner.

Applies NNN_description.sql files from the migrations directory in version
order, each in its own transaction, and records them in schema_migrations.

Usage:
    db = Database(config.database)
    await db.connect()
    applied = await run_migrations(db)
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Set

from investtrack.infrastructure.persistence.database import Database
from investtrack.utils.logging_setup import get_logger

logger = get_logger(__name__)

MIGRATIONS_DIR = Path(__file__).parent
MIGRATION_PATTERN = re.compile(r"^(\d{3})_(.+)\.sql$")


@dataclass(frozen=True)
class Migration:
    """One SQL migration file."""
    version: str
    name: str
    path: Path


class MigrationError(Exception):
    """A migration file could not be read or applied."""


class MigrationRunner:
    """Applies pending SQL migrations against a connected Database."""

    def __init__(self, db: Database, migrations_dir: Optional[Path] = None):
        self._db = db
        self._dir = Path(migrations_dir) if migrations_dir else MIGRATIONS_DIR

    def discover(self) -> List[Migration]:
        if not self._dir.exists():
            logger.warning(f"Migrations directory not found: {self._dir}")
            return []
        found = []
        for path in self._dir.glob("*.sql"):
            match = MIGRATION_PATTERN.match(path.name)
            if match:
                found.append(Migration(version=match.group(1), name=match.group(2), path=path))
        return sorted(found, key=lambda m: m.version)

    async def applied_versions(self) -> Set[str]:
        await self._ensure_table()
        rows = await self._db.fetch("SELECT version FROM schema_migrations")
        return {row["version"] for row in rows}

    async def pending(self) -> List[Migration]:
        applied = await self.applied_versions()
        return [m for m in self.discover() if m.version not in applied]

    async def run(self) -> List[Migration]:
        """
        Apply every pending migration.

        Raises:
            MigrationError: On the first migration that fails; later ones are not attempted.
        """
        pending = await self.pending()
        if not pending:
            logger.info("Schema is up to date")
            return []

        for migration in pending:
            logger.info(f"Applying migration {migration.version}_{migration.name}")
            await self._apply(migration)
        logger.info(f"Applied {len(pending)} migration(s)")
        return pending

    async def _ensure_table(self) -> None:
        await self._db.execute(
            """
            CREATE TABLE IF NOT EXISTS schema_migrations (
                version     TEXT PRIMARY KEY,
                name        TEXT NOT NULL,
                applied_at  TIMESTAMPTZ NOT NULL DEFAULT NOW()
            )
            """
        )

    async def _apply(self, migration: Migration) -> None:
        try:
            sql = migration.path.read_text()
        except OSError as e:
            raise MigrationError(f"Cannot read {migration.path}: {e}") from e

        try:
            async with self._db.transaction() as conn:
                await conn.execute(sql)
                await conn.execute(
                    "INSERT INTO schema_migrations (version, name) VALUES ($1, $2) "
                    "ON CONFLICT (version) DO NOTHING",
                    migration.version,
                    migration.name,
                )
        except Exception as e:
            logger.error(f"Migration {migration.version} failed: {e}")
            raise MigrationError(f"Migration {migration.version} ({migration.name}) failed: {e}") from e


async def run_migrations(db: Database, migrations_dir: Optional[Path] = None) -> List[Migration]:
    return await MigrationRunner(db, migrations_dir).run()
