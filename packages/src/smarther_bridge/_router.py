"""MQTT command topic routing.

Topic convention::

    {base}/{plant_id}/{module_id}/set_status   → command (subscribed, routed here)
    {base}/{plant_id}/{module_id}/get_status   → status poll (subscribed, routed here)
    {base}/{plant_id}/{module_id}/status       → status (published, not routed)

The base topic may itself contain ``/``; it is matched as a literal
prefix.  Subscriptions are derived from the cached topology, and only
plant/module pairs present in it are dispatched.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import NamedTuple

from smarther_bridge._models import CachedTopology

logger = logging.getLogger(__name__)

CommandHandler = Callable[[str, str, str], Awaitable[None]]
"""Async handler receiving ``(plant_id, module_id, payload)``."""


class CommandTopic(NamedTuple):
    plant_id: str
    module_id: str
    action: str


class CommandRouter:
    """Routes inbound command messages to per-action handlers."""

    def __init__(self, *, base_topic: str, topology: CachedTopology) -> None:
        self._base_topic = base_topic
        self._topology = topology
        self._handlers: dict[str, CommandHandler] = {}
        self._known = set(topology.iter_modules())

    def register(self, action: str, handler: CommandHandler) -> None:
        """Register the handler for ``.../{action}`` topics.

        Raises:
            ValueError: If a handler is already registered for *action*.
        """
        if action in self._handlers:
            msg = f"Handler already registered for action '{action}'"
            raise ValueError(msg)
        self._handlers[action] = handler

    def parse(self, topic: str) -> CommandTopic | None:
        """Split *topic* into plant, module and action, or ``None``."""
        prefix = self._base_topic + "/"
        if not topic.startswith(prefix):
            return None
        parts = topic[len(prefix) :].split("/")
        if len(parts) != 3 or not all(parts):  # noqa: PLR2004
            return None
        return CommandTopic(*parts)

    async def route(self, topic: str, payload: str) -> None:
        """Dispatch an inbound message; unknown topics are ignored."""
        command = self.parse(topic)
        if command is None:
            logger.debug("Ignoring message on unrelated topic %s", topic)
            return

        handler = self._handlers.get(command.action)
        if handler is None:
            logger.debug("No handler for action '%s' (topic: %s)", command.action, topic)
            return

        if (command.plant_id, command.module_id) not in self._known:
            logger.warning(
                "Ignoring %s for unmanaged plant %s module %s",
                command.action,
                command.plant_id,
                command.module_id,
            )
            return

        await handler(command.plant_id, command.module_id, payload)

    @property
    def subscriptions(self) -> list[str]:
        """Topics to subscribe: every registered action for every managed module."""
        return [
            f"{self._base_topic}/{plant_id}/{module_id}/{action}"
            for plant_id, module_id in self._topology.iter_modules()
            for action in self._handlers
        ]
