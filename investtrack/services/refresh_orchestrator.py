"""
Refresh orchestrator: one entry point per linked account.

Per refresh:
    validate configuration -> acquire connection / token -> pull data ->
    reconcile and persist -> best-effort performance recalculation

IB accounts go through the gateway connection and the snapshot reconciler;
Schwab accounts are pulled over REST with a lifecycle-managed token. A
refresh already in flight for an account is joined, not duplicated, and IB
refreshes for different accounts run one at a time. Every
refresh runs under its own trace cycle ID.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ..domain.errors import (
    ConfigurationError,
    IntegrationError,
    ReauthenticationRequiredError,
    UserActionRequiredError,
)
from ..domain.interfaces.credential_store import CredentialStore, IntegrationStore
from ..domain.interfaces.performance_recalculator import PerformanceRecalculator
from ..domain.interfaces.portfolio_store import PortfolioStore
from ..infrastructure.adapters.ib.connection_manager import IbConnectionManager
from ..infrastructure.adapters.schwab.trader_client import SchwabTraderClient
from ..models.connection import (
    ConnectionSettings,
    IntegrationRefreshResult,
    IntegrationType,
    LinkedAccount,
    RefreshSummary,
)
from ..models.credential import TokenExpirationStatus
from ..models.snapshot import BalanceUpdate, IntegrationSource, PositionSnapshot, SnapshotFlush
from ..utils.logging_setup import get_logger
from ..utils.trace_context import new_cycle
from .exchange_rate_service import ExchangeRateService
from .snapshot_reconciler import SnapshotReconciler
from .token_lifecycle import TokenLifecycleManager

logger = get_logger(__name__)

SCHWAB_BALANCE_NOTE = "Schwab integration auto-refresh"


class RefreshOrchestrator:
    """Coordinates IB and Schwab refreshes for linked accounts."""

    def __init__(
        self,
        connection: IbConnectionManager,
        reconciler: SnapshotReconciler,
        tokens: TokenLifecycleManager,
        trader: SchwabTraderClient,
        integrations: IntegrationStore,
        credentials: CredentialStore,
        portfolio_store: PortfolioStore,
        rates: ExchangeRateService,
        recalculator: Optional[PerformanceRecalculator] = None,
    ):
        self._connection = connection
        self._reconciler = reconciler
        self._tokens = tokens
        self._trader = trader
        self._integrations = integrations
        self._credentials = credentials
        self._portfolio_store = portfolio_store
        self._rates = rates
        self._recalculator = recalculator
        self._inflight: Dict[int, asyncio.Future] = {}
        self._ib_cycle_lock = asyncio.Lock()

    async def _shared(self, account_id: int, start: Callable[[], Awaitable[Any]]) -> Any:
        """Join the refresh in flight for account_id, or start one."""
        pending = self._inflight.get(account_id)
        if pending is not None and not pending.done():
            logger.info(f"Joining refresh already in flight for account {account_id}")
        else:
            pending = asyncio.ensure_future(start())
            self._inflight[account_id] = pending

            def _release(fut: asyncio.Future, account_id: int = account_id) -> None:
                if self._inflight.get(account_id) is fut:
                    del self._inflight[account_id]

            pending.add_done_callback(_release)
        return await asyncio.shield(pending)

    # -------------------------------------------------------------------------
    # IB
    # -------------------------------------------------------------------------

    async def refresh_portfolio(self, settings: ConnectionSettings) -> Optional[SnapshotFlush]:
        """
        Refresh an IB-linked account through the gateway.

        Returns:
            The first flush of the cycle, or None when the gateway sent nothing.

        Raises:
            ConfigurationError: Settings incomplete (no connection attempted).
            GatewayConnectionError / SubscriptionTimeoutError: Transient failures.
        """
        if settings is None or not settings.is_complete():
            raise ConfigurationError("IB connection settings are incomplete")
        return await self._shared(settings.linked_account_id, lambda: self._refresh_ib(settings))

    async def _refresh_ib(self, settings: ConnectionSettings) -> Optional[SnapshotFlush]:
        with new_cycle() as cycle_id:
            # The reconciler and the gateway connection are shared by every IB account.
            async with self._ib_cycle_lock:
                logger.info(f"[{cycle_id}] IB refresh for account {settings.linked_account_id}")
                ib = await self._connection.connect(settings)
                flush = await self._reconciler.run_cycle(ib, settings)
            if settings.user_id is not None:
                await self._recalculate(settings.user_id)
            return flush

    def get_refresh_status(self) -> Dict[str, Any]:
        status = self._reconciler.status()
        status["connection"] = self._connection.connection_info()
        return status

    async def stop_refresh(self) -> None:
        """Stop the flush timer and all subscriptions; the connection stays open."""
        logger.info("Stopping portfolio refresh")
        self._reconciler.stop_subscriptions()

    async def shutdown(self) -> None:
        for pending in list(self._inflight.values()):
            pending.cancel()
        await self._connection.disconnect()

    # -------------------------------------------------------------------------
    # Schwab
    # -------------------------------------------------------------------------

    async def get_valid_access_token_for_account(self, account_id: int, user_id: int) -> str:
        return await self._tokens.get_valid_access_token_for_account(account_id, user_id)

    async def check_token_expiration_status(self, warning_days: float = 1.0) -> List[TokenExpirationStatus]:
        return await self._tokens.check_token_expiration_status(warning_days)

    async def refresh_schwab(self, account_id: int, user_id: int) -> SnapshotFlush:
        """
        Pull balances and positions for a Schwab-linked account and persist them.

        Raises:
            ConfigurationError: No credential or account hash stored.
            ReauthenticationRequiredError / TokenRefreshError: Token problems.
            ProviderRequestError: Trader API failure.
        """
        credential = await self._credentials.get_credential(account_id, user_id)
        if credential is None or not (credential.app_key and credential.app_secret):
            raise ConfigurationError(f"Schwab credentials not configured for account {account_id}")
        if not credential.account_hash:
            raise ConfigurationError(f"Schwab account hash not configured for account {account_id}")
        return await self._shared(account_id, lambda: self._refresh_schwab(credential))

    async def _refresh_schwab(self, credential) -> SnapshotFlush:
        with new_cycle() as cycle_id:
            logger.info(f"[{cycle_id}] Schwab refresh for account {credential.account_id}")
            token = await self._tokens.get_valid_access_token(credential)
            account = await self._trader.get_account(token, credential.account_hash)

            for position in account.positions:
                await self._fill_close_price(position)

            balance = None
            if account.liquidation_value is not None:
                balance = BalanceUpdate(
                    balance=account.liquidation_value,
                    currency=account.currency,
                    note=SCHWAB_BALANCE_NOTE,
                )
            else:
                logger.warning(f"No liquidation value returned for Schwab account {credential.account_id}")

            flush = SnapshotFlush(
                account_id=credential.account_id,
                source=IntegrationSource.SCHWAB,
                positions=sorted(account.positions, key=lambda p: p.symbol),
                balance=balance,
            )
            await self._portfolio_store.replace_snapshot(flush)
            logger.info(
                f"Schwab account {credential.account_id}: {len(flush.positions)} positions, "
                f"balance={account.liquidation_value}"
            )
            await self._recalculate(credential.user_id)
            return flush

    async def _fill_close_price(self, position: PositionSnapshot) -> None:
        close = await self._rates.get_previous_close(position.symbol)
        if close is not None:
            position.close_price = close
        elif position.quantity and position.day_change is not None:
            position.close_price = position.market_price - position.day_change / position.quantity

    # -------------------------------------------------------------------------
    # Linked accounts
    # -------------------------------------------------------------------------

    async def refresh_account(self, account_id: int, user_id: int) -> IntegrationRefreshResult:
        """Refresh one linked account. Errors are returned in the result, not raised."""
        try:
            account = await self._integrations.get_linked_account(account_id, user_id)
            if account is None:
                raise ConfigurationError(f"Account {account_id} has no integration configured")
            flush = await self._refresh_linked(account)
        except ReauthenticationRequiredError as e:
            logger.warning(f"Account {account_id} needs re-authentication: {e}")
            return IntegrationRefreshResult(
                account_id=account_id, success=False, error=e.user_message, needs_reauth=True
            )
        except UserActionRequiredError as e:
            logger.warning(f"Account {account_id} refresh not possible: {e}")
            return IntegrationRefreshResult(account_id=account_id, success=False, error=str(e))
        except IntegrationError as e:
            logger.error(f"Account {account_id} refresh failed: {e}")
            return IntegrationRefreshResult(
                account_id=account_id, success=False, error=f"{e.user_message} ({e})"
            )
        except Exception as e:
            logger.error(f"Account {account_id} refresh failed unexpectedly: {e}", exc_info=True)
            return IntegrationRefreshResult(account_id=account_id, success=False, error=str(e))

        if flush is None:
            return IntegrationRefreshResult(
                account_id=account_id, success=False, error="No account data received"
            )
        balance = flush.balance
        return IntegrationRefreshResult(
            account_id=account_id,
            success=True,
            balance=balance.balance if balance else None,
            currency=balance.currency if balance else account.currency,
        )

    async def _refresh_linked(self, account: LinkedAccount) -> Optional[SnapshotFlush]:
        if account.integration_type == IntegrationType.IB:
            settings = await self._integrations.get_connection_settings(account.account_id, account.user_id)
            if settings is None:
                raise ConfigurationError(f"IB connection settings missing for account {account.account_id}")
            return await self.refresh_portfolio(settings)
        return await self.refresh_schwab(account.account_id, account.user_id)

    async def refresh_all_integrations(self, user_id: int) -> RefreshSummary:
        """Refresh every linked account of a user, one after another."""
        summary = RefreshSummary()
        accounts = await self._integrations.list_linked_accounts(user_id)
        logger.info(f"Refreshing {len(accounts)} linked accounts for user {user_id}")
        for account in accounts:
            summary.add(await self.refresh_account(account.account_id, user_id))
        logger.info(
            f"Refresh for user {user_id}: {summary.successful}/{summary.total} succeeded, "
            f"{summary.failed} failed"
        )
        return summary

    async def test_connection(self, account_id: int, user_id: int) -> Dict[str, Any]:
        """IB: run a full refresh. Schwab: list the account numbers the token can see."""
        account = await self._integrations.get_linked_account(account_id, user_id)
        if account is None:
            return {"success": False, "message": "Account has no integration configured"}

        if account.integration_type == IntegrationType.IB:
            result = await self.refresh_account(account_id, user_id)
            if result.success:
                return {"success": True, "message": "IB connection successful", "balance": result.balance}
            return {"success": False, "message": f"IB connection failed: {result.error}"}

        try:
            token = await self._tokens.get_valid_access_token_for_account(account_id, user_id)
            numbers = await self._trader.get_account_numbers(token)
        except IntegrationError as e:
            return {
                "success": False,
                "message": f"Schwab connection failed: {e}",
                "needs_reauth": isinstance(e, ReauthenticationRequiredError),
            }
        return {
            "success": True,
            "message": "Schwab connection successful",
            "accounts": len(numbers),
        }

    async def _recalculate(self, user_id: int) -> None:
        if self._recalculator is None:
            return
        try:
            await self._recalculator.recalculate_snapshot(user_id)
        except Exception as e:
            logger.error(f"Performance recalculation for user {user_id} failed: {e}")
