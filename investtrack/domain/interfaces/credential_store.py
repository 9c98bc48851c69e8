"""Token store protocols: OAuth credentials and gateway connection settings."""

from __future__ import annotations
from datetime import datetime
from typing import List, Optional, Protocol, runtime_checkable

from ...models.connection import ConnectionSettings, LinkedAccount
from ...models.credential import OAuthCredential


@runtime_checkable
class CredentialStore(Protocol):
    """
    Per-account OAuth credential storage. Pure CRUD.

    Implementations:
    - IntegrationRepository (PostgreSQL)
    """

    async def get_credential(self, account_id: int, user_id: int) -> Optional[OAuthCredential]:
        ...

    async def list_credentials(self) -> List[OAuthCredential]:
        ...

    async def save_tokens(
        self,
        account_id: int,
        user_id: int,
        access_token: str,
        refresh_token: str,
        expires_at: datetime,
    ) -> None:
        """Persist a new token pair and clear any re-authentication flag."""
        ...

    async def mark_needs_reauth(self, account_id: int, user_id: int, error: str) -> None:
        ...


@runtime_checkable
class IntegrationStore(Protocol):
    """
    Linked accounts and gateway connection settings.

    Implementations:
    - IntegrationRepository (PostgreSQL)
    """

    async def get_linked_account(self, account_id: int, user_id: int) -> Optional[LinkedAccount]:
        ...

    async def list_linked_accounts(self, user_id: int) -> List[LinkedAccount]:
        ...

    async def get_connection_settings(
        self, account_id: int, user_id: int
    ) -> Optional[ConnectionSettings]:
        ...
