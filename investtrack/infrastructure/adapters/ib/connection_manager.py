"""
IB gateway connection manager.

Owns the single physical connection to the IB desktop gateway:
- connect() is a no-op when connected; concurrent callers share one attempt
- a failed or timed-out attempt detaches every listener and drops the handle
- disconnect() runs teardown hooks (subscriptions, timers) before closing
- a gateway-initiated disconnect runs the same teardown

No retries happen here; the next scheduled or manual refresh reconnects.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from ib_async import IB

from config.models import GatewayConfig
from ....domain.errors import GatewayConnectionError
from ....models.connection import ConnectionSettings
from ....utils.logging_setup import get_logger
from ....utils.timezone import now_utc

logger = get_logger(__name__)

# Informational "farm connection OK" style messages.
INFO_ERROR_CODES = {2104, 2106, 2107, 2108, 2119, 2158}
CONNECTIVITY_LOST_CODES = {1100, 2110}

TeardownHook = Callable[[], None]


class IbConnectionManager:
    """
    Single IB gateway connection shared by the whole process.

    Construct one per deployment and inject it; tests can pass their own
    ib_factory to count or fake transport creation.
    """

    def __init__(
        self,
        config: Optional[GatewayConfig] = None,
        ib_factory: Callable[[], Any] = IB,
    ):
        self._config = config or GatewayConfig()
        self._ib_factory = ib_factory

        self.ib: Optional[Any] = None
        self._settings: Optional[ConnectionSettings] = None
        self._connected = False
        self._connect_task: Optional[asyncio.Task] = None
        self._listeners_attached = False
        self._teardown_hooks: List[TeardownHook] = []

        self._connect_time: Optional[datetime] = None
        self._connect_count = 0
        self._disconnect_count = 0
        self._last_error: Optional[str] = None

    @property
    def settings(self) -> Optional[ConnectionSettings]:
        return self._settings

    def is_connected(self) -> bool:
        return self._connected and self.ib is not None and self.ib.isConnected()

    def is_connecting(self) -> bool:
        return self._connect_task is not None and not self._connect_task.done()

    # -------------------------------------------------------------------------
    # Teardown hooks
    # -------------------------------------------------------------------------

    def add_teardown_hook(self, hook: TeardownHook) -> None:
        """
        Register a callable run before the transport is closed.

        Hooks run synchronously, including from the gateway's disconnect
        event, and must not raise.
        """
        if hook not in self._teardown_hooks:
            self._teardown_hooks.append(hook)

    def remove_teardown_hook(self, hook: TeardownHook) -> None:
        if hook in self._teardown_hooks:
            self._teardown_hooks.remove(hook)

    def _run_teardown_hooks(self) -> None:
        for hook in list(self._teardown_hooks):
            try:
                hook()
            except Exception as e:
                logger.error(f"Teardown hook {hook!r} failed: {e}")

    # -------------------------------------------------------------------------
    # Connection Management
    # -------------------------------------------------------------------------

    async def connect(self, settings: ConnectionSettings) -> Any:
        """
        Connect to the gateway, or join the attempt already in flight.

        Returns:
            The connected ib_async.IB instance.

        Raises:
            GatewayConnectionError: On timeout or any transport error.
        """
        if self.is_connected():
            if self._settings and settings.endpoint != self._settings.endpoint:
                logger.warning(
                    f"Already connected to {self._settings.host}:{self._settings.port} "
                    f"(client_id={self._settings.client_id}); ignoring request for "
                    f"{settings.host}:{settings.port} (client_id={settings.client_id})"
                )
            return self.ib

        if self._connect_task is None:
            self._connect_task = asyncio.ensure_future(self._open(settings))
        else:
            logger.debug("Joining in-flight IB connection attempt")

        return await asyncio.shield(self._connect_task)

    async def _open(self, settings: ConnectionSettings) -> Any:
        timeout = self._config.connect_timeout_sec
        ib = self._ib_factory()
        self.ib = ib
        self._attach(ib)

        logger.info(
            f"Connecting to IB gateway at {settings.host}:{settings.port} "
            f"(client_id={settings.client_id}, timeout={timeout}s)"
        )
        try:
            await asyncio.wait_for(
                ib.connectAsync(
                    settings.host,
                    settings.port,
                    clientId=settings.client_id,
                    timeout=timeout,
                ),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            self._last_error = f"Connection timed out after {timeout}s"
            self._discard(ib)
            logger.error(f"IB connection to {settings.host}:{settings.port} timed out")
            raise GatewayConnectionError(
                f"Timed out connecting to IB gateway at {settings.host}:{settings.port}"
            ) from None
        except asyncio.CancelledError:
            self._discard(ib)
            raise
        except Exception as e:
            self._last_error = str(e)
            self._discard(ib)
            logger.error(f"Failed to connect to IB at {settings.host}:{settings.port}: {e}")
            raise GatewayConnectionError(f"IB connection failed: {e}") from e
        finally:
            self._connect_task = None

        self._settings = settings
        self._connected = True
        self._connect_time = now_utc()
        self._connect_count += 1
        self._last_error = None
        logger.info(f"Connected to IB gateway at {settings.host}:{settings.port}")
        return ib

    async def disconnect(self) -> None:
        """Cancel subscriptions, close the transport and clear state. Idempotent."""
        task = self._connect_task
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except (asyncio.CancelledError, GatewayConnectionError):
                logger.info("Cancelled in-flight IB connection attempt")

        if self.ib is None:
            return

        self._run_teardown_hooks()
        self._connected = False
        self._discard(self.ib)
        logger.info("Disconnected from IB gateway")

    # -------------------------------------------------------------------------
    # Transport events
    # -------------------------------------------------------------------------

    def _attach(self, ib: Any) -> None:
        ib.disconnectedEvent += self._on_disconnected
        ib.errorEvent += self._on_error
        self._listeners_attached = True

    def _discard(self, ib: Any) -> None:
        """Detach listeners, close the transport and drop the handle."""
        if self._listeners_attached:
            ib.disconnectedEvent -= self._on_disconnected
            ib.errorEvent -= self._on_error
            self._listeners_attached = False
        try:
            ib.disconnect()
        except Exception as e:
            logger.debug(f"Ignoring error while closing IB transport: {e}")
        if self.ib is ib:
            self.ib = None

    def _on_disconnected(self) -> None:
        """Gateway-initiated disconnect: same cleanup as disconnect()."""
        if not self._connected:
            return
        self._disconnect_count += 1
        self._last_error = "Disconnected by gateway"
        logger.warning("IB gateway connection lost")
        self._connected = False
        self._run_teardown_hooks()
        if self.ib is not None:
            self._discard(self.ib)

    def _on_error(self, req_id: int, error_code: int, error_string: str, contract: Any = None) -> None:
        if error_code in INFO_ERROR_CODES:
            logger.debug(f"IB info {error_code}: {error_string}")
        elif error_code in CONNECTIVITY_LOST_CODES:
            self._last_error = f"{error_code}: {error_string}"
            logger.warning(f"IB connectivity problem {error_code}: {error_string}")
        else:
            logger.warning(f"IB error {error_code} (reqId={req_id}): {error_string}")

    def connection_info(self) -> Dict[str, Any]:
        """Connection information for monitoring."""
        settings = self._settings
        return {
            "host": settings.host if settings else None,
            "port": settings.port if settings else None,
            "client_id": settings.client_id if settings else None,
            "connected": self.is_connected(),
            "connecting": self.is_connecting(),
            "connect_time": self._connect_time.isoformat() if self._connect_time else None,
            "connect_count": self._connect_count,
            "disconnect_count": self._disconnect_count,
            "last_error": self._last_error,
        }
