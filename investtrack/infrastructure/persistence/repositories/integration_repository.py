"""
Token store: OAuth credentials and IB gateway connection settings.

Pure storage. Token refresh rules live in the token lifecycle service.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from asyncpg import Record

from .base import BaseRepository
from ....models.connection import ConnectionSettings, IntegrationType, LinkedAccount
from ....models.credential import OAuthCredential
from ....utils.logging_setup import get_logger
from ....utils.timezone import ensure_utc

logger = get_logger(__name__)


class CredentialRepository(BaseRepository[OAuthCredential]):
    """OAuth credentials, one row per linked account."""

    @property
    def table_name(self) -> str:
        return "oauth_credentials"

    @property
    def primary_key_columns(self) -> List[str]:
        return ["account_id"]

    def _to_entity(self, record: Record) -> OAuthCredential:
        return OAuthCredential(
            account_id=record["account_id"],
            user_id=record["user_id"],
            app_key=record["app_key"],
            app_secret=record["app_secret"],
            access_token=record["access_token"],
            refresh_token=record["refresh_token"],
            access_token_expires_at=ensure_utc(record["access_token_expires_at"]),
            account_hash=record["account_hash"],
            needs_reauth=record["needs_reauth"],
            last_refresh_error=record["last_refresh_error"],
        )

    def _to_row(self, entity: OAuthCredential) -> Dict[str, Any]:
        return {
            "account_id": entity.account_id,
            "user_id": entity.user_id,
            "app_key": entity.app_key,
            "app_secret": entity.app_secret,
            "access_token": entity.access_token,
            "refresh_token": entity.refresh_token,
            "access_token_expires_at": entity.access_token_expires_at,
            "account_hash": entity.account_hash,
            "needs_reauth": entity.needs_reauth,
            "last_refresh_error": entity.last_refresh_error,
        }

    async def get_credential(self, account_id: int, user_id: int) -> Optional[OAuthCredential]:
        return await self.find_one_where(account_id=account_id, user_id=user_id)

    async def list_credentials(self) -> List[OAuthCredential]:
        """All credentials that hold a refresh token."""
        records = await self._db.fetch(
            """
            SELECT * FROM oauth_credentials
            WHERE refresh_token IS NOT NULL
            ORDER BY access_token_expires_at NULLS FIRST
            """
        )
        return [self._to_entity(r) for r in records]

    async def save_credential(self, credential: OAuthCredential) -> OAuthCredential:
        return await self.upsert(credential)

    async def save_tokens(
        self,
        account_id: int,
        user_id: int,
        access_token: str,
        refresh_token: str,
        expires_at: datetime,
    ) -> None:
        status = await self._db.execute(
            """
            UPDATE oauth_credentials
            SET access_token = $3,
                refresh_token = $4,
                access_token_expires_at = $5,
                needs_reauth = FALSE,
                last_refresh_error = NULL,
                updated_at = NOW()
            WHERE account_id = $1 AND user_id = $2
            """,
            account_id,
            user_id,
            access_token,
            refresh_token,
            expires_at,
        )
        if self._affected_rows(status) == 0:
            logger.warning(f"No credential row for account {account_id}; tokens not saved")

    async def save_account_hash(self, account_id: int, user_id: int, account_hash: str) -> None:
        await self._db.execute(
            """
            UPDATE oauth_credentials SET account_hash = $3, updated_at = NOW()
            WHERE account_id = $1 AND user_id = $2
            """,
            account_id,
            user_id,
            account_hash,
        )

    async def mark_needs_reauth(self, account_id: int, user_id: int, error: str) -> None:
        await self._db.execute(
            """
            UPDATE oauth_credentials
            SET needs_reauth = TRUE, last_refresh_error = $3, updated_at = NOW()
            WHERE account_id = $1 AND user_id = $2
            """,
            account_id,
            user_id,
            error[:500],
        )


class IntegrationRepository(BaseRepository[ConnectionSettings]):
    """Gateway connection settings plus linked-account lookups."""

    @property
    def table_name(self) -> str:
        return "ib_connections"

    @property
    def primary_key_columns(self) -> List[str]:
        return ["account_id"]

    def _to_entity(self, record: Record) -> ConnectionSettings:
        return ConnectionSettings(
            host=record["host"],
            port=record["port"],
            client_id=record["client_id"],
            linked_account_id=record["account_id"],
            user_id=record["user_id"],
            ib_account=record["ib_account"] or "",
        )

    def _to_row(self, entity: ConnectionSettings) -> Dict[str, Any]:
        return {
            "account_id": entity.linked_account_id,
            "user_id": entity.user_id,
            "host": entity.host,
            "port": entity.port,
            "client_id": entity.client_id,
            "ib_account": entity.ib_account,
        }

    async def get_connection_settings(
        self, account_id: int, user_id: int
    ) -> Optional[ConnectionSettings]:
        return await self.find_one_where(account_id=account_id, user_id=user_id)

    async def save_connection_settings(self, settings: ConnectionSettings) -> ConnectionSettings:
        return await self.upsert(settings)

    async def get_linked_account(self, account_id: int, user_id: int) -> Optional[LinkedAccount]:
        record = await self._db.fetchrow(
            """
            SELECT id, user_id, name, currency, integration_type FROM accounts
            WHERE id = $1 AND user_id = $2 AND integration_type IS NOT NULL
            """,
            account_id,
            user_id,
        )
        return self._to_linked_account(record) if record else None

    async def list_linked_accounts(self, user_id: int) -> List[LinkedAccount]:
        records = await self._db.fetch(
            """
            SELECT id, user_id, name, currency, integration_type FROM accounts
            WHERE user_id = $1 AND integration_type IS NOT NULL
            ORDER BY id
            """,
            user_id,
        )
        return [self._to_linked_account(r) for r in records]

    @staticmethod
    def _to_linked_account(record: Record) -> LinkedAccount:
        return LinkedAccount(
            account_id=record["id"],
            user_id=record["user_id"],
            name=record["name"],
            integration_type=IntegrationType(record["integration_type"]),
            currency=record["currency"],
        )
