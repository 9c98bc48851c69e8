"""
OAuth token lifecycle for Schwab credentials.

States per credential:

    NO_TOKEN -> VALID -> NEAR_EXPIRY -> REFRESHING -> VALID
                                                   -> NEEDS_REAUTH

A credential is NEAR_EXPIRY once its access token is within the grace
period of expiring. Refreshes are serialized per credential so concurrent
callers share one exchange; NEEDS_REAUTH is terminal until a new token pair
is stored (interactive re-authorization).

Refresh tokens carry no expiry in the token response. Their expiry is
estimated from the access token: issued ~ expires_at - access lifetime,
refresh expiry ~ issued + refresh lifetime.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple

from config.models import TokenConfig
from ..domain.errors import (
    ConfigurationError,
    NotAuthenticatedError,
    ReauthenticationRequiredError,
    TokenRefreshError,
)
from ..domain.interfaces.credential_store import CredentialStore
from ..infrastructure.adapters.schwab.oauth_client import SchwabOAuthClient
from ..models.credential import OAuthCredential, TokenExpirationStatus, TokenPair, TokenState
from ..utils.logging_setup import get_logger
from ..utils.timezone import ensure_utc, now_utc

logger = get_logger(__name__)

CredentialKey = Tuple[int, int]


class TokenLifecycleManager:
    """Hands out valid access tokens and keeps refresh tokens alive."""

    def __init__(
        self,
        store: CredentialStore,
        oauth: SchwabOAuthClient,
        config: Optional[TokenConfig] = None,
        clock: Callable[[], datetime] = now_utc,
    ):
        self._store = store
        self._oauth = oauth
        self._config = config or TokenConfig()
        self._clock = clock
        self._locks: Dict[CredentialKey, asyncio.Lock] = {}
        self._refreshing: set = set()

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    def state_of(self, credential: OAuthCredential) -> TokenState:
        if credential.needs_reauth:
            return TokenState.NEEDS_REAUTH
        if not credential.access_token:
            return TokenState.NO_TOKEN
        if credential.key in self._refreshing:
            return TokenState.REFRESHING
        if self._expires_within(credential, self._config.grace_period_sec):
            return TokenState.NEAR_EXPIRY
        return TokenState.VALID

    def _expires_within(self, credential: OAuthCredential, seconds: float) -> bool:
        expires_at = ensure_utc(credential.access_token_expires_at)
        if expires_at is None:
            return True
        return expires_at - self._clock() <= timedelta(seconds=seconds)

    def refresh_token_expires_at(self, credential: OAuthCredential) -> Optional[datetime]:
        expires_at = ensure_utc(credential.access_token_expires_at)
        if expires_at is None:
            return None
        issued = expires_at - timedelta(seconds=self._config.access_token_lifetime_sec)
        return issued + timedelta(days=self._config.refresh_token_lifetime_days)

    def _lock(self, key: CredentialKey) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    # -------------------------------------------------------------------------
    # Access tokens
    # -------------------------------------------------------------------------

    async def get_valid_access_token(self, credential: OAuthCredential) -> str:
        """
        Return an access token valid beyond the grace period, refreshing if needed.

        Raises:
            NotAuthenticatedError: No tokens stored.
            ReauthenticationRequiredError: Refresh token rejected (now or earlier).
            TokenRefreshError: Transient refresh failure.
        """
        state = self.state_of(credential)
        if state == TokenState.NO_TOKEN or not credential.refresh_token:
            raise NotAuthenticatedError(f"No Schwab tokens stored for account {credential.account_id}")
        if state == TokenState.NEEDS_REAUTH:
            raise ReauthenticationRequiredError(
                f"Account {credential.account_id} requires re-authentication"
            )
        if state == TokenState.VALID:
            return credential.access_token

        async with self._lock(credential.key):
            # Another caller may have refreshed while we waited.
            current = await self._store.get_credential(credential.account_id, credential.user_id)
            if current is None:
                raise NotAuthenticatedError(f"Credential for account {credential.account_id} was removed")
            if current.needs_reauth:
                raise ReauthenticationRequiredError(
                    f"Account {current.account_id} requires re-authentication"
                )
            if current.access_token and not self._expires_within(current, self._config.grace_period_sec):
                return current.access_token

            refreshed = await self._refresh(current)
            return refreshed.access_token

    async def get_valid_access_token_for_account(self, account_id: int, user_id: int) -> str:
        credential = await self._store.get_credential(account_id, user_id)
        if credential is None:
            raise ConfigurationError(f"No Schwab credentials configured for account {account_id}")
        return await self.get_valid_access_token(credential)

    async def _refresh(self, credential: OAuthCredential) -> OAuthCredential:
        """Exchange the refresh token and persist the result. Caller holds the lock."""
        key = credential.key
        self._refreshing.add(key)
        logger.info(f"Refreshing access token for account {credential.account_id}")
        try:
            pair = await self._oauth.refresh(
                credential.app_key, credential.app_secret, credential.refresh_token
            )
        except ReauthenticationRequiredError as e:
            logger.error(f"Refresh token for account {credential.account_id} rejected: {e}")
            await self._store.mark_needs_reauth(credential.account_id, credential.user_id, str(e))
            credential.needs_reauth = True
            credential.last_refresh_error = str(e)
            raise
        except TokenRefreshError as e:
            logger.warning(f"Token refresh for account {credential.account_id} failed: {e}")
            raise
        finally:
            self._refreshing.discard(key)

        return await self._store_pair(credential, pair)

    async def _store_pair(self, credential: OAuthCredential, pair: TokenPair) -> OAuthCredential:
        expires_at = self._clock() + timedelta(seconds=pair.expires_in)
        refresh_token = pair.refresh_token or credential.refresh_token
        await self._store.save_tokens(
            credential.account_id,
            credential.user_id,
            pair.access_token,
            refresh_token,
            expires_at,
        )
        credential.access_token = pair.access_token
        credential.refresh_token = refresh_token
        credential.access_token_expires_at = expires_at
        credential.needs_reauth = False
        credential.last_refresh_error = None
        logger.info(f"Stored new token pair for account {credential.account_id} (expires {expires_at.isoformat()})")
        return credential

    async def exchange_authorization_code(
        self,
        account_id: int,
        user_id: int,
        code: str,
        redirect_uri: str,
        code_verifier: Optional[str] = None,
    ) -> OAuthCredential:
        """
        First token exchange after the user completes the consent redirect.

        Clears NEEDS_REAUTH on success.
        """
        credential = await self._store.get_credential(account_id, user_id)
        if credential is None or not (credential.app_key and credential.app_secret):
            raise ConfigurationError(f"No Schwab app credentials configured for account {account_id}")

        async with self._lock(credential.key):
            pair = await self._oauth.exchange_code(
                credential.app_key, credential.app_secret, code, redirect_uri, code_verifier
            )
            if not pair.refresh_token:
                raise TokenRefreshError("Authorization code exchange returned no refresh token")
            return await self._store_pair(credential, pair)

    # -------------------------------------------------------------------------
    # Sweep and status
    # -------------------------------------------------------------------------

    async def sweep(self) -> Dict[str, int]:
        """
        Refresh every credential whose access token expires within the lookahead.

        Credentials flagged NEEDS_REAUTH are skipped. Failures are logged and
        counted, never raised.
        """
        stats = {"checked": 0, "refreshed": 0, "skipped": 0, "failed": 0}
        for credential in await self._store.list_credentials():
            stats["checked"] += 1
            if credential.needs_reauth or not credential.refresh_token:
                stats["skipped"] += 1
                continue
            if not self._expires_within(credential, self._config.sweep_lookahead_sec):
                continue

            async with self._lock(credential.key):
                current = await self._store.get_credential(credential.account_id, credential.user_id)
                if current is None or current.needs_reauth:
                    stats["skipped"] += 1
                    continue
                if not self._expires_within(current, self._config.sweep_lookahead_sec):
                    continue
                try:
                    await self._refresh(current)
                    stats["refreshed"] += 1
                except (ReauthenticationRequiredError, TokenRefreshError):
                    stats["failed"] += 1

        logger.info(
            f"Token sweep: checked={stats['checked']} refreshed={stats['refreshed']} "
            f"skipped={stats['skipped']} failed={stats['failed']}"
        )
        return stats

    async def check_token_expiration_status(self, warning_days: float = 1.0) -> List[TokenExpirationStatus]:
        """Advisory expiry status for every stored credential."""
        now = self._clock()
        statuses = []
        for credential in await self._store.list_credentials():
            refresh_expires = self.refresh_token_expires_at(credential)
            days_left = None
            if refresh_expires is not None:
                days_left = (refresh_expires - now).total_seconds() / 86400
            state = self.state_of(credential)
            needs_warning = state == TokenState.NEEDS_REAUTH or (
                days_left is not None and days_left <= warning_days
            )
            statuses.append(TokenExpirationStatus(
                account_id=credential.account_id,
                user_id=credential.user_id,
                state=state,
                access_token_expires_at=ensure_utc(credential.access_token_expires_at),
                refresh_token_expires_at=refresh_expires,
                days_until_reauth=days_left,
                needs_warning=needs_warning,
            ))
            if needs_warning:
                logger.warning(
                    f"Schwab account {credential.account_id} needs re-authentication soon "
                    f"(state={state.value}, days_left={days_left})"
                )
        return statuses
