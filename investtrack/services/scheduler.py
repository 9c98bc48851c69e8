"""
Background refresh scheduler.

Two loops, each sleeping first and then running:
- integration refresh for every configured user (default every 30 min)
- OAuth token sweep (default every 20 min)
"""

from __future__ import annotations

import asyncio
from typing import List, Optional

from config.models import RefreshConfig, TokenConfig
from ..models.connection import RefreshSummary
from ..utils.logging_setup import get_logger
from ..utils.trace_context import new_cycle
from .refresh_orchestrator import RefreshOrchestrator
from .token_lifecycle import TokenLifecycleManager

logger = get_logger(__name__)


class RefreshScheduler:
    """Runs periodic refreshes and token sweeps until stopped."""

    def __init__(
        self,
        orchestrator: RefreshOrchestrator,
        tokens: TokenLifecycleManager,
        refresh_config: Optional[RefreshConfig] = None,
        token_config: Optional[TokenConfig] = None,
    ):
        self._orchestrator = orchestrator
        self._tokens = tokens
        self._refresh_config = refresh_config or RefreshConfig()
        self._token_config = token_config or TokenConfig()

        self._refresh_task: Optional[asyncio.Task] = None
        self._sweep_task: Optional[asyncio.Task] = None
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            logger.warning("Refresh scheduler already running")
            return

        self._running = True
        logger.info("Starting refresh scheduler")

        if self._refresh_config.interval_sec > 0 and self._refresh_config.user_ids:
            self._refresh_task = asyncio.create_task(self._refresh_loop())
            logger.info(
                f"Integration refresh: every {self._refresh_config.interval_sec}s "
                f"for users {self._refresh_config.user_ids}"
            )

        if self._token_config.sweep_interval_sec > 0:
            self._sweep_task = asyncio.create_task(self._sweep_loop())
            logger.info(f"Token sweep: every {self._token_config.sweep_interval_sec}s")

    async def stop(self) -> None:
        if not self._running:
            return

        logger.info("Stopping refresh scheduler")
        self._running = False

        for task in [self._refresh_task, self._sweep_task]:
            if task and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._refresh_task = None
        self._sweep_task = None
        logger.info("Refresh scheduler stopped")

    async def refresh_all_users(self) -> List[RefreshSummary]:
        """Refresh every configured user once."""
        summaries = []
        for user_id in self._refresh_config.user_ids:
            summaries.append(await self._orchestrator.refresh_all_integrations(user_id))
        return summaries

    async def sweep_tokens(self) -> None:
        with new_cycle():
            await self._tokens.sweep()

    async def _refresh_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self._refresh_config.interval_sec)
                if self._running:
                    await self.refresh_all_users()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Scheduled refresh error: {e}")
                await asyncio.sleep(5)

    async def _sweep_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self._token_config.sweep_interval_sec)
                if self._running:
                    await self.sweep_tokens()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Token sweep error: {e}")
                await asyncio.sleep(5)
