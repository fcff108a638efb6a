"""HTTP ingress for cloud push notifications.

One route::

    POST /smarther_bridge/{plant_id}

The body is a :class:`ModuleStatus` document.  Responses:

- ``409`` — the body is not JSON or not a status document;
- ``200 Plant not active`` — the plant is not managed, payload dropped;
- ``200 OK`` — the status was queued for publication.  A closed status
  channel is logged but still answered with ``200`` so the platform does
  not retry an internal forwarding failure.
"""

from __future__ import annotations

import logging

from aiohttp import web
from pydantic import ValidationError

from smarther_bridge._channels import StatusChannel
from smarther_bridge._errors import ChannelClosed
from smarther_bridge._models import CachedTopology, ModuleStatus

logger = logging.getLogger(__name__)

ROUTE = "/smarther_bridge/{plant_id}"

TOPOLOGY_KEY = web.AppKey("topology", CachedTopology)
CHANNEL_KEY = web.AppKey("status_updates", StatusChannel)


async def receive_status(request: web.Request) -> web.Response:
    plant_id = request.match_info["plant_id"]
    raw = await request.read()
    try:
        status = ModuleStatus.model_validate_json(raw)
    except ValidationError as exc:
        logger.warning("Rejected push for plant %s: %s", plant_id, exc.errors()[0]["msg"])
        return web.Response(status=409, text="Invalid status payload")

    if not request.app[TOPOLOGY_KEY].is_managed(plant_id):
        logger.debug("Ignoring push for unmanaged plant %s", plant_id)
        return web.Response(text="Plant not active")

    logger.info("Received status update for plant %s", plant_id)
    try:
        request.app[CHANNEL_KEY].send(status)
    except ChannelClosed:
        logger.error(
            "Failed to forward status update of plant %s to MQTT",
            plant_id,
            extra={"plant_id": plant_id},
        )
    return web.Response(text="OK")


def build_app(topology: CachedTopology, status_updates: StatusChannel) -> web.Application:
    app = web.Application()
    app[TOPOLOGY_KEY] = topology
    app[CHANNEL_KEY] = status_updates
    app.router.add_post(ROUTE, receive_status)
    return app


class IngressServer:
    """Owns the aiohttp runner and site for the push endpoint."""

    def __init__(
        self,
        *,
        host: str,
        port: int,
        topology: CachedTopology,
        status_updates: StatusChannel,
    ) -> None:
        self._host = host
        self._port = port
        self._app = build_app(topology, status_updates)
        self._runner: web.AppRunner | None = None

    @property
    def app(self) -> web.Application:
        return self._app

    @property
    def running(self) -> bool:
        return self._runner is not None

    async def start(self) -> None:
        """Bind and start serving.

        Raises:
            OSError: If the listener cannot be bound.
        """
        runner = web.AppRunner(self._app, handle_signals=False)
        await runner.setup()
        site = web.TCPSite(runner, self._host, self._port)
        try:
            await site.start()
        except OSError:
            await runner.cleanup()
            raise
        self._runner = runner
        logger.info("Listening for push notifications on %s:%d", self._host, self._port)

    async def stop(self) -> None:
        if self._runner is None:
            return
        runner, self._runner = self._runner, None
        await runner.cleanup()
        logger.info("Push notification listener stopped")

