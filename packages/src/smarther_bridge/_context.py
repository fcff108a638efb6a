"""Shared runtime context for the bridge tasks.

One :class:`BridgeContext` is built at startup and handed to every
task.  It carries:

- the immutable :class:`BridgeConfiguration` and :class:`CachedTopology`
- the :class:`TokenManager`, sole owner of the shared credential
- the cloud API client and the state store
- the status-update channel
- the shutdown event — a level-triggered cancellation signal, so a task
  that starts waiting after shutdown was requested returns immediately

Task loops race against shutdown through :meth:`BridgeContext.until_shutdown`.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Coroutine
from typing import Any

from smarther_bridge._api import CloudApiPort
from smarther_bridge._channels import StatusChannel
from smarther_bridge._clock import ClockPort
from smarther_bridge._models import BridgeConfiguration, CachedTopology
from smarther_bridge._settings import Settings
from smarther_bridge._store import StateStore
from smarther_bridge._token import TokenManager

logger = logging.getLogger(__name__)


class BridgeContext:
    """Configuration, shared state and channels for one bridge run."""

    def __init__(
        self,
        *,
        settings: Settings,
        configuration: BridgeConfiguration,
        topology: CachedTopology,
        tokens: TokenManager,
        api: CloudApiPort,
        store: StateStore,
        clock: ClockPort,
        shutdown_event: asyncio.Event,
        status_updates: StatusChannel | None = None,
    ) -> None:
        self._settings = settings
        self._configuration = configuration
        self._topology = topology
        self._tokens = tokens
        self._api = api
        self._store = store
        self._clock = clock
        self._shutdown_event = shutdown_event
        self._status_updates = (
            status_updates if status_updates is not None else StatusChannel()
        )

    # -- Read-only properties -----------------------------------------------

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def configuration(self) -> BridgeConfiguration:
        return self._configuration

    @property
    def topology(self) -> CachedTopology:
        return self._topology

    @property
    def tokens(self) -> TokenManager:
        return self._tokens

    @property
    def api(self) -> CloudApiPort:
        return self._api

    @property
    def store(self) -> StateStore:
        return self._store

    @property
    def clock(self) -> ClockPort:
        return self._clock

    @property
    def status_updates(self) -> StatusChannel:
        return self._status_updates

    @property
    def shutdown_event(self) -> asyncio.Event:
        return self._shutdown_event

    @property
    def shutdown_requested(self) -> bool:
        return self._shutdown_event.is_set()

    @property
    def base_topic(self) -> str:
        return self._configuration.mqtt_base_topic

    # -- Shutdown-aware waiting ---------------------------------------------

    async def wait_shutdown(self) -> None:
        await self._shutdown_event.wait()

    async def until_shutdown(self, *coros: Coroutine[Any, Any, Any]) -> None:
        """Run *coros* concurrently until one finishes or shutdown is requested.

        Whichever resolves first ends the race; the rest are cancelled
        and awaited.  Exceptions from the finished coroutine are logged,
        not raised, so one failing loop cannot take the process down.
        """
        tasks = [asyncio.ensure_future(coro) for coro in coros]
        shutdown = asyncio.ensure_future(self._shutdown_event.wait())
        try:
            done, _ = await asyncio.wait(
                [*tasks, shutdown],
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            pending = [task for task in (*tasks, shutdown) if not task.done()]
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

        for task in done:
            if task is shutdown or task.cancelled():
                continue
            exc = task.exception()
            if exc is not None:
                logger.error("Task ended with error: %s", exc, exc_info=exc)
