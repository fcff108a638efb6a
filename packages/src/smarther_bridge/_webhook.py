"""Webhook subscription lifecycle.

:class:`SubscriptionManager` keeps one cloud push subscription per
managed plant for the lifetime of a run::

    IDLE → RECONCILING → REGISTERING → ACTIVE → UNREGISTERING → IDLE

**Reconciling.**  Subscriptions left over from an earlier run are
discovered from exactly one source, chosen by ``webhook.reconcile``:

- ``cloud`` — the platform's live subscription list, restricted to
  endpoints under ``{webhook_endpoint}/smarther_bridge/``.  Foreign
  subscriptions are never touched.
- ``snapshot`` — ``subscriptions.json`` as written by the previous run.

A candidate is *adopted* when its plant is managed, its endpoint is
exactly this run's delivery URL for that plant, and no candidate was
adopted for that plant yet.  Every other candidate is unregistered.

**Registering.**  Plants without an adopted subscription get a new one.
A failure for one plant is logged and the plant is left out; the other
plants are unaffected.  With no active subscription at all the manager
reports failure and stops.

**Unregistering.**  On shutdown every active subscription is removed.
Failures are kept in :attr:`SubscriptionManager.remaining`.

**Shutdown during setup.**  Reconciliation and registration check for
shutdown before every cloud call and stop early; leftovers not yet
examined go to :attr:`SubscriptionManager.remaining`, and whatever is
already active is unregistered as usual.

The tracked set (active + remaining) is written to
``subscriptions.json`` after every successful register or unregister, so
the file always shows what the bridge believes is registered cloud-side.
"""

from __future__ import annotations

import asyncio
import enum
import logging

from smarther_bridge._context import BridgeContext
from smarther_bridge._errors import ApiError, RefreshError, StateFileError
from smarther_bridge._ingress import IngressServer
from smarther_bridge._models import AuthorizationInfo, SubscriptionInfo

logger = logging.getLogger(__name__)

ENDPOINT_PATH = "smarther_bridge"


class SubscriptionState(enum.StrEnum):
    IDLE = "idle"
    RECONCILING = "reconciling"
    REGISTERING = "registering"
    ACTIVE = "active"
    UNREGISTERING = "unregistering"


class SubscriptionManager:
    """Registers, tracks and removes push subscriptions for managed plants."""

    def __init__(self, ctx: BridgeContext) -> None:
        endpoint = ctx.configuration.webhook_endpoint
        if endpoint is None:
            msg = "SubscriptionManager requires a configured webhook endpoint"
            raise ValueError(msg)
        self._ctx = ctx
        self._endpoint_root = f"{endpoint.rstrip('/')}/{ENDPOINT_PATH}/"
        self._state = SubscriptionState.IDLE
        self._active: list[SubscriptionInfo] = []
        self._remaining: list[SubscriptionInfo] = []

    @property
    def state(self) -> SubscriptionState:
        return self._state

    @property
    def active(self) -> list[SubscriptionInfo]:
        return list(self._active)

    @property
    def remaining(self) -> list[SubscriptionInfo]:
        return list(self._remaining)

    # -- helpers ------------------------------------------------------------

    def _transition(self, state: SubscriptionState) -> None:
        logger.debug("Webhook subscriptions %s -> %s", self._state, state)
        self._state = state

    def _persist(self) -> None:
        try:
            self._ctx.store.save_subscriptions([*self._active, *self._remaining])
        except StateFileError as exc:
            logger.error("Could not persist subscriptions: %s", exc)

    def _is_ours(self, subscription: SubscriptionInfo) -> bool:
        return (subscription.endpoint_url or "").startswith(self._endpoint_root)

    def _is_valid(self, subscription: SubscriptionInfo) -> bool:
        plant_id = subscription.plant_id
        return (
            plant_id is not None
            and self._ctx.topology.is_managed(plant_id)
            and subscription.endpoint_url
            == self._ctx.configuration.subscription_endpoint(plant_id)
        )

    async def _authorize(self) -> AuthorizationInfo | None:
        try:
            return await self._ctx.tokens.refresh_if_needed()
        except RefreshError as exc:
            logger.error("Failed to refresh token: %s", exc)
            return None

    async def _candidates(self, auth: AuthorizationInfo) -> list[SubscriptionInfo]:
        if self._ctx.settings.webhook.reconcile == "snapshot":
            try:
                return self._ctx.store.load_subscriptions()
            except StateFileError as exc:
                logger.error("Ignoring unreadable subscription snapshot: %s", exc)
                return []
        try:
            live = await self._ctx.api.list_webhooks(auth)
        except ApiError as exc:
            logger.error("Failed to list existing webhooks: %s", exc)
            return []
        return [sub for sub in live if self._is_ours(sub)]

    async def _unregister(
        self,
        auth: AuthorizationInfo,
        subscription: SubscriptionInfo,
    ) -> bool:
        if subscription.plant_id is None:
            logger.warning(
                "Subscription %s has no plant id, cannot unregister",
                subscription.subscription_id,
            )
            return False
        try:
            await self._ctx.api.unregister_webhook(
                auth,
                subscription.plant_id,
                subscription.subscription_id,
            )
        except ApiError as exc:
            logger.error(
                "Failed to unregister webhook %s of plant %s: %s",
                subscription.subscription_id,
                subscription.plant_id,
                exc,
                extra={
                    "plant_id": subscription.plant_id,
                    "subscription_id": subscription.subscription_id,
                },
            )
            return False
        logger.info(
            "Unregistered webhook %s of plant %s",
            subscription.subscription_id,
            subscription.plant_id,
        )
        return True

    # -- phases -------------------------------------------------------------

    async def reconcile(self, auth: AuthorizationInfo) -> None:
        """Adopt still-valid leftovers and remove the others."""
        self._transition(SubscriptionState.RECONCILING)
        adopted_plants: set[str] = set()
        candidates = await self._candidates(auth)
        for index, subscription in enumerate(candidates):
            if self._ctx.shutdown_requested:
                # Keep the untouched leftovers visible in subscriptions.json.
                self._remaining.extend(candidates[index:])
                logger.info("Shutdown requested, reconciliation stopped")
                break
            if self._is_valid(subscription) and subscription.plant_id not in adopted_plants:
                assert subscription.plant_id is not None
                adopted_plants.add(subscription.plant_id)
                self._active.append(subscription)
                logger.info(
                    "Adopted existing webhook %s for plant %s",
                    subscription.subscription_id,
                    subscription.plant_id,
                )
                continue
            if not await self._unregister(auth, subscription):
                self._remaining.append(subscription)
        self._persist()

    async def register(self, auth: AuthorizationInfo) -> None:
        """Register one subscription per managed plant not yet covered."""
        self._transition(SubscriptionState.REGISTERING)
        covered = {sub.plant_id for sub in self._active}
        for plant_id in self._ctx.topology.plant_ids:
            if self._ctx.shutdown_requested:
                logger.info("Shutdown requested, registration stopped")
                break
            if plant_id in covered:
                continue
            endpoint_url = self._ctx.configuration.subscription_endpoint(plant_id)
            assert endpoint_url is not None
            try:
                subscription = await self._ctx.api.register_webhook(
                    auth,
                    plant_id,
                    endpoint_url,
                )
            except ApiError as exc:
                logger.error(
                    "Failed to register webhook for plant %s: %s",
                    plant_id,
                    exc,
                    extra={"plant_id": plant_id},
                )
                continue
            self._active.append(subscription.model_copy(update={"plant_id": plant_id}))
            self._persist()
            logger.info(
                "Registered webhook %s for plant %s",
                subscription.subscription_id,
                plant_id,
            )

    async def unregister_all(self) -> None:
        """Remove every active subscription; failures go to :attr:`remaining`."""
        self._transition(SubscriptionState.UNREGISTERING)
        if not self._active:
            self._transition(SubscriptionState.IDLE)
            return
        logger.info("Unregistering %d webhook(s)...", len(self._active))
        auth = await self._authorize()
        for subscription in list(self._active):
            self._active.remove(subscription)
            if auth is None or not await self._unregister(auth, subscription):
                self._remaining.append(subscription)
            self._persist()
        if self._remaining:
            logger.warning(
                "%d webhook(s) could not be removed: %s",
                len(self._remaining),
                ", ".join(sub.subscription_id for sub in self._remaining),
            )
        self._transition(SubscriptionState.IDLE)

    async def setup(self) -> bool:
        """Reconcile and register.

        Returns:
            ``True`` when at least one subscription is active.
        """
        auth = await self._authorize()
        if auth is None:
            return False
        await self.reconcile(auth)
        await self.register(auth)
        if not self._active:
            if self._ctx.shutdown_requested:
                logger.info("Shutdown requested before any webhook was registered")
            else:
                logger.error("Failed to register any webhook")
            self._transition(SubscriptionState.IDLE)
            return False
        self._transition(SubscriptionState.ACTIVE)
        logger.info("Registered webhooks for %d plant(s)", len(self._active))
        return True

    async def run(self) -> bool:
        """Set up, hold until shutdown, then unregister.

        Returns:
            ``False`` when no subscription could be made active.
        """
        if not await self.setup():
            return False
        await self._ctx.wait_shutdown()
        await self.unregister_all()
        return True


async def run_webhook_subsystem(
    ctx: BridgeContext,
    *,
    server: IngressServer | None = None,
) -> bool:
    """Serve push notifications and keep their subscriptions registered.

    The listener is started first so the platform can deliver as soon as
    a subscription exists, and stopped as soon as shutdown is requested,
    before the subscriptions are removed.  Without a configured
    endpoint, or when the listener cannot be bound, nothing is
    registered.

    Returns:
        ``True`` when the subsystem ran until shutdown.
    """
    configuration = ctx.configuration
    if configuration.webhook_endpoint is None:
        logger.warning("Webhook endpoint not configured, skipping webhook handler")
        return False

    if server is None:
        server = IngressServer(
            host=configuration.listen_host,
            port=configuration.listen_port,
            topology=ctx.topology,
            status_updates=ctx.status_updates,
        )
    try:
        await server.start()
    except OSError as exc:
        logger.error(
            "Cannot listen on %s:%d, webhooks disabled: %s",
            configuration.listen_host,
            configuration.listen_port,
            exc,
        )
        return False

    async def stop_on_shutdown() -> None:
        await ctx.wait_shutdown()
        await server.stop()

    manager = SubscriptionManager(ctx)
    stopper = asyncio.ensure_future(stop_on_shutdown())
    try:
        if not await manager.setup():
            return False
        # Listener down first; the unregistration pass may take a while.
        await stopper
        await manager.unregister_all()
        return True
    finally:
        if ctx.shutdown_requested:
            await stopper
        else:
            stopper.cancel()
            await asyncio.gather(stopper, return_exceptions=True)
            await server.stop()
