"""Bridge application — startup, task orchestration and shutdown.

:class:`BridgeApp` loads the persisted state, builds one
:class:`BridgeContext`, and runs the long-lived tasks concurrently until
SIGINT/SIGTERM sets the shutdown event::

    app = BridgeApp(version="1.0.0")
    app.run()

Tasks joined by :meth:`BridgeApp._run_async`:

1. :meth:`TokenManager.run` — background credential refresh.
2. :meth:`MqttBridge.run` — MQTT commands in, statuses out.
3. :func:`run_webhook_subsystem` — push listener plus subscriptions
   (only with a configured webhook endpoint).

A task that fails is logged; the others keep running.  Startup problems
degrade the run instead of aborting it:

- unreadable ``tokens.json`` → no credential, every cloud call fails
  with :class:`RefreshError` until one is supplied;
- unreadable ``plant_topology.json`` → empty topology;
- unparsable ``configuration.json`` → defaults, file left untouched.

Every injectable parameter exists for tests: pass a
:class:`MockMqttClient`, :class:`MockSmartherApi`, ``FakeClock`` and a
manual :class:`asyncio.Event` to run the whole bridge without I/O.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from typing import NamedTuple

from smarther_bridge._api import CloudApiPort, SmartherApi
from smarther_bridge._bridge import MqttBridge
from smarther_bridge._clock import ClockPort, SystemClock
from smarther_bridge._context import BridgeContext
from smarther_bridge._errors import StateFileError
from smarther_bridge._logging import configure_logging
from smarther_bridge._models import AuthorizationInfo, BridgeConfiguration, CachedTopology
from smarther_bridge._mqtt import MqttClient, MqttPort, build_will_config
from smarther_bridge._settings import Settings
from smarther_bridge._store import StateStore
from smarther_bridge._token import TokenManager
from smarther_bridge._webhook import run_webhook_subsystem

logger = logging.getLogger(__name__)


class StartupState(NamedTuple):
    auth: AuthorizationInfo | None
    topology: CachedTopology
    configuration: BridgeConfiguration


def load_startup_state(store: StateStore) -> StartupState:
    """Read every snapshot, falling back per file on failure.

    A readable configuration is written back so new fields appear in
    the file with their defaults.
    """
    try:
        auth: AuthorizationInfo | None = store.load_authorization()
    except StateFileError as exc:
        logger.error("No usable authorization, cloud calls will fail: %s", exc)
        auth = None

    try:
        topology = store.load_topology()
    except StateFileError as exc:
        logger.error("No usable plant topology, nothing will be bridged: %s", exc)
        topology = CachedTopology()

    try:
        configuration = store.load_configuration()
    except StateFileError as exc:
        logger.error("Ignoring invalid configuration, using defaults: %s", exc)
        configuration = BridgeConfiguration()
    else:
        try:
            store.save_configuration(configuration)
        except StateFileError as exc:
            logger.warning("Could not write configuration back: %s", exc)

    return StartupState(auth, topology, configuration)


class BridgeApp:
    """Composition root for one bridge process."""

    def __init__(self, *, name: str = "smarther-bridge", version: str = "0.0.0") -> None:
        self._name = name
        self._version = version

    @property
    def name(self) -> str:
        return self._name

    @property
    def version(self) -> str:
        return self._version

    # --- Lifecycle ---------------------------------------------------------

    def run(
        self,
        *,
        settings: Settings | None = None,
        mqtt: MqttPort | None = None,
        api: CloudApiPort | None = None,
        shutdown_event: asyncio.Event | None = None,
        clock: ClockPort | None = None,
    ) -> None:
        """Run the bridge until interrupted (blocking)."""
        with contextlib.suppress(KeyboardInterrupt):
            asyncio.run(
                self._run_async(
                    settings=settings,
                    mqtt=mqtt,
                    api=api,
                    shutdown_event=shutdown_event,
                    clock=clock,
                ),
            )

    async def _run_async(
        self,
        *,
        settings: Settings | None = None,
        mqtt: MqttPort | None = None,
        api: CloudApiPort | None = None,
        shutdown_event: asyncio.Event | None = None,
        clock: ClockPort | None = None,
    ) -> BridgeContext:
        resolved_settings = settings if settings is not None else Settings()
        configure_logging(
            resolved_settings.logging,
            service=self._name,
            version=self._version,
        )
        logger.info("Starting %s %s", self._name, self._version)

        store = StateStore(resolved_settings)
        state = load_startup_state(store)
        resolved_clock = clock if clock is not None else SystemClock()
        owned_api = (
            SmartherApi(resolved_settings.api, clock=resolved_clock) if api is None else None
        )
        resolved_api: CloudApiPort = owned_api if owned_api is not None else api  # type: ignore[assignment]
        shutdown_event = self._install_signal_handlers(shutdown_event)

        tokens = TokenManager(
            auth=state.auth,
            api=resolved_api,
            store=store,
            clock=resolved_clock,
            settings=resolved_settings.tokens,
        )
        ctx = BridgeContext(
            settings=resolved_settings,
            configuration=state.configuration,
            topology=state.topology,
            tokens=tokens,
            api=resolved_api,
            store=store,
            clock=resolved_clock,
            shutdown_event=shutdown_event,
        )
        bridge = MqttBridge(ctx, self._create_mqtt(mqtt, ctx))

        try:
            results = await asyncio.gather(
                tokens.run(shutdown_event),
                bridge.run(),
                run_webhook_subsystem(ctx),
                return_exceptions=True,
            )
            for task_name, result in zip(("token", "mqtt", "webhook"), results, strict=True):
                if isinstance(result, Exception):
                    logger.error("%s task failed: %s", task_name, result, exc_info=result)
        finally:
            ctx.status_updates.close()
            if owned_api is not None:
                await owned_api.close()

        logger.info("Shutdown complete")
        return ctx

    # --- _run_async helpers ------------------------------------------------

    def _create_mqtt(self, mqtt: MqttPort | None, ctx: BridgeContext) -> MqttPort:
        """Create the MQTT client, or return the injected one."""
        if mqtt is not None:
            return mqtt
        configuration = ctx.configuration
        return MqttClient(
            host=configuration.mqtt_broker,
            port=configuration.mqtt_port,
            settings=ctx.settings.mqtt,
            username=configuration.mqtt_username,
            password=configuration.mqtt_password.get_secret_value(),
            will=build_will_config(ctx.base_topic),
        )

    @staticmethod
    def _install_signal_handlers(shutdown_event: asyncio.Event | None) -> asyncio.Event:
        """Install SIGTERM/SIGINT handlers. Returns the shutdown event."""
        if shutdown_event is not None:
            return shutdown_event
        event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, event.set)
        return event

    # --- Topology discovery ------------------------------------------------

    def discover(
        self,
        *,
        settings: Settings | None = None,
        api: CloudApiPort | None = None,
        clock: ClockPort | None = None,
    ) -> CachedTopology:
        """Fetch the account's plants and write ``plant_topology.json``."""
        return asyncio.run(self._discover_async(settings=settings, api=api, clock=clock))

    async def _discover_async(
        self,
        *,
        settings: Settings | None = None,
        api: CloudApiPort | None = None,
        clock: ClockPort | None = None,
    ) -> CachedTopology:
        """Async body of :meth:`discover`.

        Raises:
            StateFileError: If the credential cannot be read or the
                topology cannot be written.
            RefreshError: If the credential is stale and cannot be refreshed.
            ApiError: If listing plants or a topology fetch fails.
        """
        resolved_settings = settings if settings is not None else Settings()
        configure_logging(
            resolved_settings.logging,
            service=self._name,
            version=self._version,
        )
        store = StateStore(resolved_settings)
        resolved_clock = clock if clock is not None else SystemClock()
        owned_api = (
            SmartherApi(resolved_settings.api, clock=resolved_clock) if api is None else None
        )
        resolved_api: CloudApiPort = owned_api if owned_api is not None else api  # type: ignore[assignment]
        tokens = TokenManager(
            auth=store.load_authorization(),
            api=resolved_api,
            store=store,
            clock=resolved_clock,
            settings=resolved_settings.tokens,
        )
        try:
            auth = await tokens.refresh_if_needed()
            plants = [
                await resolved_api.get_topology(auth, plant.id)
                for plant in await resolved_api.get_plants(auth)
            ]
        finally:
            if owned_api is not None:
                await owned_api.close()

        topology = CachedTopology(plants=plants)
        store.save_topology(topology)
        logger.info(
            "Discovered %d plant(s) with %d module(s)",
            len(plants),
            sum(len(plant.modules) for plant in plants),
        )
        return topology
