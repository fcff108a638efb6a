"""Credential lifecycle.

:class:`TokenManager` is the only writer of the shared
:class:`AuthorizationInfo`.  Any task may call
:meth:`TokenManager.refresh_if_needed` before a cloud call; concurrent
callers are serialised by a lock so at most one refresh is committed at
a time, and callers queued behind a successful refresh get its result
without a second network round-trip.

A refresh commits in this order: network call, persist to
``tokens.json``, replace the shared value, notify the reset signal.  A
failure at any step leaves the previous credential in place.

The background loop (:meth:`TokenManager.run`) keeps the refresh token
alive across idle periods.  Each wait ends on the first of:

- the maximum interval elapsing → refresh if needed, retrying every
  ``retry_interval`` until it succeeds;
- the reset signal → a refresh already happened, restart the wait;
- shutdown → exit.
"""

from __future__ import annotations

import asyncio
import enum
import logging

from smarther_bridge._api import CloudApiPort
from smarther_bridge._channels import ResetSignal
from smarther_bridge._clock import ClockPort
from smarther_bridge._errors import ApiError, RefreshError, StateFileError
from smarther_bridge._models import AuthorizationInfo
from smarther_bridge._settings import TokenSettings
from smarther_bridge._store import StateStore

logger = logging.getLogger(__name__)


class Wake(enum.Enum):
    """Why a background wait ended."""

    ELAPSED = "elapsed"
    RESET = "reset"
    SHUTDOWN = "shutdown"


class TokenManager:
    """Single-writer owner of the shared credential."""

    def __init__(
        self,
        *,
        auth: AuthorizationInfo | None,
        api: CloudApiPort,
        store: StateStore,
        clock: ClockPort,
        settings: TokenSettings,
        reset: ResetSignal | None = None,
    ) -> None:
        self._auth = auth
        self._api = api
        self._store = store
        self._clock = clock
        self._settings = settings
        self._reset = reset if reset is not None else ResetSignal()
        self._lock = asyncio.Lock()

    @property
    def current(self) -> AuthorizationInfo | None:
        """The credential as last committed (may be stale)."""
        return self._auth

    @property
    def reset_signal(self) -> ResetSignal:
        return self._reset

    def is_fresh(self, auth: AuthorizationInfo) -> bool:
        return not auth.needs_refresh(self._clock.now(), self._settings.refresh_threshold)

    async def refresh_if_needed(self) -> AuthorizationInfo:
        """Return a credential fresh enough for an API call.

        No network I/O happens when the current credential is fresh.

        Raises:
            RefreshError: If there is no credential, or the refresh call or
                its persistence failed.  Callers abort only the current
                operation.
        """
        auth = self._auth
        if auth is not None and self.is_fresh(auth):
            return auth

        async with self._lock:
            auth = self._auth
            if auth is None:
                msg = "No stored authorization; run the setup flow first"
                raise RefreshError(msg)
            if self.is_fresh(auth):
                # Another caller refreshed while we waited for the lock.
                return auth

            logger.info("Access token expires at %s, refreshing", auth.expires_on.isoformat())
            try:
                refreshed = await self._api.refresh_token(auth)
            except ApiError as exc:
                msg = f"Token refresh failed: {exc}"
                raise RefreshError(msg) from exc
            try:
                self._store.save_authorization(refreshed)
            except StateFileError as exc:
                msg = f"Refreshed token could not be persisted: {exc}"
                raise RefreshError(msg) from exc

            self._auth = refreshed
            self._reset.notify()
            logger.info("Access token refreshed, valid until %s", refreshed.expires_on.isoformat())
            return refreshed

    # -- background loop ----------------------------------------------------

    async def _wait(self, delay: float, shutdown: asyncio.Event) -> Wake:
        if shutdown.is_set():
            return Wake.SHUTDOWN
        waiters = {
            asyncio.ensure_future(asyncio.sleep(delay)): Wake.ELAPSED,
            asyncio.ensure_future(self._reset.wait()): Wake.RESET,
            asyncio.ensure_future(shutdown.wait()): Wake.SHUTDOWN,
        }
        try:
            done, _ = await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in waiters:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*waiters, return_exceptions=True)
        # Shutdown wins ties so a late reset never delays exit.
        for wake in (Wake.SHUTDOWN, Wake.RESET, Wake.ELAPSED):
            if any(waiters[task] is wake for task in done):
                return wake
        return Wake.SHUTDOWN  # pragma: no cover

    async def run(self, shutdown: asyncio.Event) -> None:
        """Background refresh loop; returns once *shutdown* is set."""
        max_interval = self._settings.max_interval
        retry_interval = self._settings.retry_interval

        while not shutdown.is_set():
            wake = await self._wait(max_interval, shutdown)
            if wake is Wake.SHUTDOWN:
                break
            if wake is Wake.RESET:
                logger.debug("Token refreshed elsewhere, restarting refresh timer")
                continue

            while True:
                try:
                    await self.refresh_if_needed()
                except RefreshError as exc:
                    logger.warning(
                        "Background token refresh failed, retrying in %.0fs: %s",
                        retry_interval,
                        exc,
                    )
                else:
                    # Our own refresh; the next wait starts from zero anyway.
                    self._reset.clear()
                    break

                wake = await self._wait(retry_interval, shutdown)
                if wake is not Wake.ELAPSED:
                    break

        logger.debug("Token refresher stopped")
