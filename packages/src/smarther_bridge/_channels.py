"""Cross-task signalling primitives.

- :class:`ResetSignal` — capacity-one wake-up.  Any number of
  :meth:`~ResetSignal.notify` calls before the waiter runs collapse into
  a single pending wake; the waiter only needs to know "restart my
  wait", not how many times it was asked to.
- :class:`StatusChannel` — unbounded FIFO of :class:`ModuleStatus`
  events from the HTTP ingress (and MQTT status polls) to the MQTT
  publisher.  Sending never blocks; after :meth:`~StatusChannel.close`
  both ends raise :class:`ChannelClosed`.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from typing import Final

from smarther_bridge._errors import ChannelClosed
from smarther_bridge._models import ModuleStatus

_CLOSED: Final = object()


class ResetSignal:
    """Capacity-one, coalescing wake-up signal."""

    def __init__(self) -> None:
        self._pending = asyncio.Event()

    @property
    def pending(self) -> bool:
        return self._pending.is_set()

    def notify(self) -> None:
        self._pending.set()

    def clear(self) -> None:
        self._pending.clear()

    async def wait(self) -> None:
        """Wait for a pending wake and consume it."""
        await self._pending.wait()
        self._pending.clear()


class StatusChannel:
    """Unbounded, closable FIFO of status events."""

    def __init__(self) -> None:
        self._queue: asyncio.Queue[object] = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def qsize(self) -> int:
        return self._queue.qsize()

    def send(self, status: ModuleStatus) -> None:
        """Enqueue *status*.

        Raises:
            ChannelClosed: If the channel has been closed.
        """
        if self._closed:
            msg = "status channel is closed"
            raise ChannelClosed(msg)
        self._queue.put_nowait(status)

    async def receive(self) -> ModuleStatus:
        """Wait for the next status in send order.

        Raises:
            ChannelClosed: Once the channel is closed and drained.
        """
        item = await self._queue.get()
        if item is _CLOSED:
            # Leave the marker for any other receiver.
            self._queue.put_nowait(_CLOSED)
            msg = "status channel is closed"
            raise ChannelClosed(msg)
        assert isinstance(item, ModuleStatus)
        return item

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(_CLOSED)

    async def __aiter__(self) -> AsyncIterator[ModuleStatus]:
        while True:
            try:
                yield await self.receive()
            except ChannelClosed:
                return
