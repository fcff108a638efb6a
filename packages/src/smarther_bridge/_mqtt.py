"""MQTT client port and adapters.

Provides :class:`MqttPort` (Protocol) and two implementations:

- :class:`MqttClient` — aiomqtt-based client with a fixed-delay
  reconnect loop
- :class:`MockMqttClient` — test double that records calls

The real client runs an explicit connection state machine::

    DISCONNECTED ──start()──▶ CONNECTING ──ok──▶ CONNECTED
                                  ▲                  │ connection lost
                                  │                  ▼
                                  └──── delay ── RECONNECTING

It keeps retrying until :meth:`MqttClient.stop` is called; there is no
attempt limit.  Subscriptions are tracked and restored after every
reconnect.  ``aiomqtt`` is imported lazily inside the connection loop so
the mock works without it installed.
"""

from __future__ import annotations

import asyncio
import contextlib
import enum
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from smarther_bridge._settings import MqttSettings

logger = logging.getLogger(__name__)

MessageCallback = Callable[[str, str], Awaitable[None]]
"""Async callback receiving (topic, payload) for each inbound message."""


class ConnectionState(enum.StrEnum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


@dataclass(frozen=True)
class WillConfig:
    """Availability topic with Last-Will-and-Testament.

    The broker publishes ``payload`` on an unexpected disconnect; the
    client publishes ``online_payload`` after every (re)connect and
    ``payload`` again on an orderly stop.
    """

    topic: str
    payload: str = "offline"
    online_payload: str = "online"
    qos: int = 1
    retain: bool = True


def build_will_config(base_topic: str) -> WillConfig:
    """Availability LWT on ``{base_topic}/bridge/availability``."""
    return WillConfig(topic=f"{base_topic}/bridge/availability")


# ---------------------------------------------------------------------------
# Port (Protocol)
# ---------------------------------------------------------------------------


@runtime_checkable
class MqttPort(Protocol):
    """Everything the bridge needs from an MQTT connection."""

    async def publish(
        self,
        topic: str,
        payload: str,
        *,
        retain: bool = False,
        qos: int = 1,
    ) -> None: ...

    async def subscribe(self, topic: str) -> None: ...

    def on_message(self, callback: MessageCallback) -> None: ...

    async def start(self) -> None: ...

    async def stop(self) -> None: ...


# ---------------------------------------------------------------------------
# Mock / test-double adapter
# ---------------------------------------------------------------------------


@dataclass
class MockMqttClient:
    """In-memory test double that records MQTT interactions.

    ``deliver()`` simulates an inbound message.  Setting ``fail_publish``
    makes every publish raise, which is how tests simulate a broker
    outage on the outbound path.
    """

    published: list[tuple[str, str, bool, int]] = field(default_factory=list)
    subscriptions: list[str] = field(default_factory=list)
    started: bool = False
    stopped: bool = False
    fail_publish: bool = False
    _callbacks: list[MessageCallback] = field(
        default_factory=list,
        init=False,
        repr=False,
    )

    async def publish(
        self,
        topic: str,
        payload: str,
        *,
        retain: bool = False,
        qos: int = 1,
    ) -> None:
        if self.fail_publish:
            msg = f"simulated publish failure on {topic}"
            raise ConnectionError(msg)
        self.published.append((topic, payload, retain, qos))

    async def subscribe(self, topic: str) -> None:
        self.subscriptions.append(topic)

    def on_message(self, callback: MessageCallback) -> None:
        self._callbacks.append(callback)

    async def start(self) -> None:
        self.started = True

    async def stop(self) -> None:
        self.stopped = True

    # -- Test helpers -------------------------------------------------------

    async def deliver(self, topic: str, payload: str) -> None:
        """Simulate an inbound message by invoking all callbacks."""
        for cb in self._callbacks:
            await cb(topic, payload)

    @property
    def publish_count(self) -> int:
        return len(self.published)

    def get_messages_for(self, topic: str) -> list[tuple[str, bool, int]]:
        """Return ``(payload, retain, qos)`` tuples for *topic*."""
        return [
            (payload, retain, qos)
            for t, payload, retain, qos in self.published
            if t == topic
        ]


# ---------------------------------------------------------------------------
# Real adapter
# ---------------------------------------------------------------------------


@dataclass
class MqttClient:
    """Production MQTT adapter backed by *aiomqtt*."""

    host: str
    port: int
    settings: MqttSettings
    username: str | None = None
    password: str | None = None
    will: WillConfig | None = None

    _callbacks: list[MessageCallback] = field(
        default_factory=list,
        init=False,
        repr=False,
    )
    _subscriptions: set[str] = field(default_factory=set, init=False, repr=False)
    _client: Any = field(default=None, init=False, repr=False)
    _listen_task: asyncio.Task[None] | None = field(
        default=None,
        init=False,
        repr=False,
    )
    _connected: asyncio.Event = field(
        default_factory=asyncio.Event,
        init=False,
        repr=False,
    )
    _stopping: bool = field(default=False, init=False, repr=False)
    _state: ConnectionState = field(
        default=ConnectionState.DISCONNECTED,
        init=False,
        repr=False,
    )

    # -- MqttPort methods --------------------------------------------------

    async def publish(
        self,
        topic: str,
        payload: str,
        *,
        retain: bool = False,
        qos: int = 1,
    ) -> None:
        """Publish a message, waiting for the connection if necessary.

        Raises:
            RuntimeError: If the connection dropped between the wait and
                the publish.
        """
        await self._connected.wait()
        client = self._client
        if client is None:
            msg = "MqttClient is not connected"
            raise RuntimeError(msg)
        await client.publish(topic, payload, retain=retain, qos=qos)
        logger.debug("Published to %s (qos=%d, retain=%s)", topic, qos, retain)

    async def subscribe(self, topic: str) -> None:
        """Subscribe to *topic* now (if connected) and after every reconnect."""
        self._subscriptions.add(topic)
        if self._client is not None:
            await self._client.subscribe(topic, qos=self.settings.qos)

    def on_message(self, callback: MessageCallback) -> None:
        self._callbacks.append(callback)

    # -- Lifecycle ----------------------------------------------------------

    async def start(self) -> None:
        """Start the background connection loop."""
        if self._listen_task is not None and not self._listen_task.done():
            logger.debug("MqttClient.start() called while already running")
            return
        self._stopping = False
        self._listen_task = asyncio.create_task(self._connection_loop())
        self._listen_task.add_done_callback(self._on_loop_done)

    async def stop(self) -> None:
        """Publish ``offline``, stop the loop and clean up.  Idempotent."""
        self._stopping = True
        if self._client is not None and self.will is not None:
            with contextlib.suppress(Exception):
                await self._client.publish(
                    self.will.topic,
                    self.will.payload,
                    qos=self.will.qos,
                    retain=self.will.retain,
                )
        task, self._listen_task = self._listen_task, None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._client = None
        self._connected.clear()
        self._state = ConnectionState.DISCONNECTED

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._connected.is_set()

    # -- Internal -----------------------------------------------------------

    def _on_loop_done(self, task: asyncio.Task[None]) -> None:
        """Report a connection loop that died instead of being stopped."""
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("MQTT connection loop stopped: %s", exc, exc_info=exc)
            self._connected.clear()
            self._transition(ConnectionState.DISCONNECTED)

    def _transition(self, state: ConnectionState) -> None:
        if state is not self._state:
            logger.debug("MQTT state %s -> %s", self._state, state)
            self._state = state

    def _build_will(self, aiomqtt: Any) -> Any:
        if self.will is None:
            return None
        return aiomqtt.Will(
            topic=self.will.topic,
            payload=self.will.payload,
            qos=self.will.qos,
            retain=self.will.retain,
        )

    async def _connection_loop(self) -> None:
        """Connect, pump inbound messages, and reconnect after a fixed delay."""
        try:
            import aiomqtt  # noqa: PLC0415
        except ModuleNotFoundError as exc:
            msg = "aiomqtt is required to use MqttClient"
            raise RuntimeError(msg) from exc

        while not self._stopping:
            self._transition(ConnectionState.CONNECTING)
            try:
                async with aiomqtt.Client(
                    hostname=self.host,
                    port=self.port,
                    username=self.username,
                    password=self.password,
                    identifier=self.settings.client_id or None,
                    will=self._build_will(aiomqtt),
                ) as client:
                    self._client = client
                    try:
                        for topic in sorted(self._subscriptions):
                            await client.subscribe(topic, qos=self.settings.qos)

                        if self.will is not None:
                            await client.publish(
                                self.will.topic,
                                self.will.online_payload,
                                qos=self.will.qos,
                                retain=self.will.retain,
                            )

                        self._transition(ConnectionState.CONNECTED)
                        self._connected.set()
                        logger.info("MQTT connected to %s:%d", self.host, self.port)

                        async for message in client.messages:
                            await self._dispatch(message)
                    finally:
                        self._connected.clear()
                        self._client = None
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("MQTT reported error: %s", exc)

            if self._stopping:
                break
            self._transition(ConnectionState.RECONNECTING)
            logger.warning(
                "MQTT connection lost, reconnecting in %.1fs",
                self.settings.reconnect_interval,
            )
            await asyncio.sleep(self.settings.reconnect_interval)

        self._transition(ConnectionState.DISCONNECTED)

    async def _dispatch(self, message: Any) -> None:
        """Decode and fan-out an inbound message to callbacks."""
        topic = str(message.topic)

        if message.payload is None:
            logger.debug("Skipping message with None payload on %s", topic)
            return

        payload = (
            message.payload.decode("utf-8", errors="replace")
            if isinstance(message.payload, (bytes, bytearray))
            else str(message.payload)
        )

        for cb in self._callbacks:
            try:
                await cb(topic, payload)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Error in message callback for %s", topic)
