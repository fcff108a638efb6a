"""Unit tests for smarther_bridge._context — the shared run context.

Test Techniques Used:
    - Specification-based Testing: Property accessors
    - Async Behaviour Testing: races against shutdown
    - State-based Testing: level-triggered shutdown
"""

from __future__ import annotations

import asyncio
import logging

import pytest

from smarther_bridge._channels import StatusChannel
from smarther_bridge._context import BridgeContext

pytestmark = pytest.mark.unit


class TestProperties:
    def test_base_topic_from_configuration(self, bridge_context: BridgeContext) -> None:
        assert bridge_context.base_topic == "smarther"

    def test_default_status_channel_created(self, bridge_context: BridgeContext) -> None:
        assert isinstance(bridge_context.status_updates, StatusChannel)
        assert not bridge_context.status_updates.closed

    def test_explicit_status_channel_used(self, bridge_context: BridgeContext) -> None:
        channel = StatusChannel()
        ctx = BridgeContext(
            settings=bridge_context.settings,
            configuration=bridge_context.configuration,
            topology=bridge_context.topology,
            tokens=bridge_context.tokens,
            api=bridge_context.api,
            store=bridge_context.store,
            clock=bridge_context.clock,
            shutdown_event=asyncio.Event(),
            status_updates=channel,
        )
        assert ctx.status_updates is channel


class TestShutdown:
    """Technique: State-based Testing — the event is level-triggered."""

    async def test_set_event_sets_flag(self, bridge_context: BridgeContext) -> None:
        assert not bridge_context.shutdown_requested
        bridge_context.shutdown_event.set()
        assert bridge_context.shutdown_requested
        assert bridge_context.shutdown_event.is_set()

    async def test_late_waiter_returns_immediately(self, bridge_context: BridgeContext) -> None:
        bridge_context.shutdown_event.set()
        await asyncio.wait_for(bridge_context.wait_shutdown(), timeout=0.1)


class TestUntilShutdown:
    """Technique: Async Behaviour Testing."""

    async def test_shutdown_cancels_running_coroutines(
        self,
        bridge_context: BridgeContext,
    ) -> None:
        cancelled = asyncio.Event()

        async def forever() -> None:
            try:
                await asyncio.sleep(3600)
            except asyncio.CancelledError:
                cancelled.set()
                raise

        task = asyncio.create_task(bridge_context.until_shutdown(forever()))
        await asyncio.sleep(0.01)
        bridge_context.shutdown_event.set()
        await asyncio.wait_for(task, timeout=1)

        assert cancelled.is_set()

    async def test_first_finisher_ends_race(self, bridge_context: BridgeContext) -> None:
        other_cancelled = asyncio.Event()

        async def quick() -> None:
            await asyncio.sleep(0)

        async def slow() -> None:
            try:
                await asyncio.sleep(3600)
            except asyncio.CancelledError:
                other_cancelled.set()
                raise

        await asyncio.wait_for(bridge_context.until_shutdown(quick(), slow()), timeout=1)

        assert other_cancelled.is_set()
        assert not bridge_context.shutdown_requested

    async def test_failure_logged_not_raised(
        self,
        bridge_context: BridgeContext,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        async def boom() -> None:
            raise RuntimeError("loop died")

        with caplog.at_level(logging.ERROR, logger="smarther_bridge._context"):
            await asyncio.wait_for(bridge_context.until_shutdown(boom()), timeout=1)

        assert "loop died" in caplog.text
