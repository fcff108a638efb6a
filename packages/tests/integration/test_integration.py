"""Integration tests — a whole bridge run against test doubles.

Runs :meth:`BridgeApp._run_async` with MockMqttClient, MockSmartherApi
and FakeClock, plus the real aiohttp push listener on a local port:
start → subscribe and register → command in → push in → shutdown →
unregister.

Test Techniques Used:
    - Integration Testing: every task of one run cooperating.
    - State-based Testing: recorded cloud calls, MQTT publications and
      the state files after shutdown.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator, Callable, Iterator
from dataclasses import dataclass
from pathlib import Path

import aiohttp
import pytest

from smarther_bridge._api import MockSmartherApi
from smarther_bridge._app import BridgeApp
from smarther_bridge._context import BridgeContext
from smarther_bridge._store import StateStore
from smarther_bridge.testing import (
    EPOCH,
    FakeClock,
    MockMqttClient,
    make_auth,
    make_settings,
    make_status,
    make_topology,
    status_payload,
)

pytestmark = pytest.mark.integration

STATUS_TOPIC = "smarther/plantA/modA/status"


@dataclass
class RunningBridge:
    mqtt: MockMqttClient
    api: MockSmartherApi
    clock: FakeClock
    store: StateStore
    shutdown: asyncio.Event
    push_url: str
    task: asyncio.Task[BridgeContext]

    async def stop(self) -> BridgeContext:
        self.shutdown.set()
        return await asyncio.wait_for(self.task, timeout=5)


async def _eventually(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.01)


@pytest.fixture(autouse=True)
def _restore_root_logger() -> Iterator[None]:
    root = logging.getLogger()
    original_handlers = root.handlers[:]
    original_level = root.level
    yield
    for h in root.handlers:
        if h not in original_handlers:
            h.close()
    root.handlers = original_handlers
    root.setLevel(original_level)


@pytest.fixture
async def running(tmp_path: Path, unused_tcp_port: int) -> AsyncIterator[RunningBridge]:
    settings = make_settings(config_dir=tmp_path)
    store = StateStore(settings)
    store.save_authorization(make_auth(now=EPOCH))
    store.save_topology(make_topology())
    settings.configuration_file.write_text(
        json.dumps(
            {
                "webhook_endpoint": "https://bridge.example",
                "listen_host": "127.0.0.1",
                "listen_port": unused_tcp_port,
            },
        ),
        encoding="utf-8",
    )
    mqtt = MockMqttClient()
    api = MockSmartherApi(
        plants=make_topology().plants,
        statuses={("plantA", "modA"): make_status(mode="manual")},
    )
    clock = FakeClock()
    shutdown = asyncio.Event()
    task = asyncio.create_task(
        BridgeApp(version="0.0.0")._run_async(  # noqa: SLF001
            settings=settings,
            mqtt=mqtt,
            api=api,
            shutdown_event=shutdown,
            clock=clock,
        ),
    )
    bridge = RunningBridge(
        mqtt=mqtt,
        api=api,
        clock=clock,
        store=store,
        shutdown=shutdown,
        push_url=f"http://127.0.0.1:{unused_tcp_port}/smarther_bridge",
        task=task,
    )
    await _eventually(lambda: mqtt.started and bool(api.calls_to("register_webhook")))
    try:
        yield bridge
    finally:
        if not task.done():
            await bridge.stop()


class TestFullRun:
    """Technique: Integration Testing."""

    async def test_mqtt_command_reaches_cloud_once(self, running: RunningBridge) -> None:
        await running.mqtt.deliver(
            "smarther/plantA/modA/set_status",
            '{"type": "boost", "value": 1}',
        )

        ((plant_id, module_id, request),) = running.api.calls_to("set_device_status")
        assert (plant_id, module_id) == ("plantA", "modA")
        assert request.to_wire() == {"type": "boost", "value": 1}

    async def test_push_published_once(self, running: RunningBridge) -> None:
        async with aiohttp.ClientSession() as session:
            async with session.post(f"{running.push_url}/plantA", json=status_payload()) as resp:
                assert resp.status == 200
                assert await resp.text() == "OK"

        await _eventually(lambda: bool(running.mqtt.get_messages_for(STATUS_TOPIC)))
        await asyncio.sleep(0.05)
        ((payload, retain, _qos),) = running.mqtt.get_messages_for(STATUS_TOPIC)
        assert retain is False
        assert json.loads(payload)["mode"] == "automatic"

    async def test_push_for_unmanaged_plant_dropped(self, running: RunningBridge) -> None:
        async with aiohttp.ClientSession() as session:
            async with session.post(
                f"{running.push_url}/plantZ",
                json=status_payload("plantZ"),
            ) as resp:
                assert await resp.text() == "Plant not active"

        await asyncio.sleep(0.05)
        assert running.mqtt.get_messages_for("smarther/plantZ/modA/status") == []

    async def test_get_status_published(self, running: RunningBridge) -> None:
        await running.mqtt.deliver("smarther/plantA/modA/get_status", "")

        await _eventually(lambda: bool(running.mqtt.get_messages_for(STATUS_TOPIC)))
        ((payload, _, _),) = running.mqtt.get_messages_for(STATUS_TOPIC)
        assert json.loads(payload)["mode"] == "manual"

    async def test_expired_credential_refreshed_on_demand(self, running: RunningBridge) -> None:
        running.clock.advance(2 * 3600)

        await running.mqtt.deliver("smarther/plantA/modA/set_status", '{"mode": "off"}')

        assert running.api.refresh_count == 1
        assert len(running.api.calls_to("set_device_status")) == 1
        persisted = running.store.load_authorization()
        assert persisted.access_token.get_secret_value() == "access-1"

    async def test_shutdown_unregisters_and_closes(self, running: RunningBridge) -> None:
        ctx = await running.stop()

        assert running.api.calls_to("unregister_webhook") == [("plantA", "sub-1")]
        assert running.store.load_subscriptions() == []
        assert running.mqtt.stopped
        assert ctx.status_updates.closed

        async with aiohttp.ClientSession() as session:
            with pytest.raises(aiohttp.ClientConnectionError):
                await session.post(f"{running.push_url}/plantA", json=status_payload())
