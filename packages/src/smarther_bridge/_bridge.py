"""MQTT bridge task.

Two loops share one broker connection:

- **Command loop** — run by the MQTT client's connection loop.  Each
  inbound ``{base}/{plant}/{module}/set_status`` message is parsed into a
  :class:`SetStatusRequest` and sent to the cloud with a fresh
  credential.  ``.../get_status`` fetches the module's current status
  and feeds it into the status channel.  A malformed payload or failed
  API call is logged, reported on ``{base}/error``, and does not affect
  later messages.  Connection loss is handled by the client's fixed-delay
  reconnect, indefinitely, until shutdown.
- **Status-publish loop** — drains the status channel and publishes a
  :class:`MeasurementSummary` per thermostat to
  ``{base}/{plant}/{module}/status`` at the configured QoS (at-least-once
  by default).  A status without sender identity, or for an unmanaged
  plant, is logged and skipped.

The task ends when shutdown is requested; losing the broker connection
never ends it.
"""

from __future__ import annotations

import asyncio
import json
import logging

from pydantic import ValidationError

from smarther_bridge._context import BridgeContext
from smarther_bridge._errors import (
    BridgeError,
    CommandError,
    ErrorPublisher,
    StatusEventError,
)
from smarther_bridge._models import MeasurementSummary, SetStatusRequest, ThermostatStatus
from smarther_bridge._mqtt import MqttPort
from smarther_bridge._router import CommandRouter

logger = logging.getLogger(__name__)

SET_STATUS = "set_status"
GET_STATUS = "get_status"


def parse_set_status(payload: str) -> SetStatusRequest:
    """Decode an MQTT command payload.

    Raises:
        CommandError: If the payload is not a JSON object or a known
            field has the wrong type or value.
    """
    try:
        raw = json.loads(payload)
    except json.JSONDecodeError as exc:
        msg = f"Payload is not valid JSON: {exc}"
        raise CommandError(msg) from exc
    if not isinstance(raw, dict):
        msg = f"Payload must be a JSON object, got {type(raw).__name__}"
        raise CommandError(msg)
    try:
        return SetStatusRequest.model_validate(raw)
    except ValidationError as exc:
        msg = f"Invalid status change request: {exc}"
        raise CommandError(msg) from exc


def status_topic(base_topic: str, status: ThermostatStatus) -> tuple[str, str, str]:
    """Return ``(topic, plant_id, module_id)`` for *status*.

    Raises:
        StatusEventError: If the status carries no sender or plant details.
    """
    if status.sender is None:
        msg = "No sender details found"
        raise StatusEventError(msg)
    plant = status.sender.plant
    if plant is None:
        msg = "No plant details found"
        raise StatusEventError(msg)
    return f"{base_topic}/{plant.id}/{plant.module.id}/status", plant.id, plant.module.id


class MqttBridge:
    """Translate MQTT commands to cloud calls and status events to MQTT."""

    def __init__(
        self,
        ctx: BridgeContext,
        mqtt: MqttPort,
        *,
        error_publisher: ErrorPublisher | None = None,
    ) -> None:
        self._ctx = ctx
        self._mqtt = mqtt
        self._errors = (
            error_publisher
            if error_publisher is not None
            else ErrorPublisher(mqtt=mqtt, base_topic=ctx.base_topic, clock=ctx.clock.now)
        )
        self._router = CommandRouter(base_topic=ctx.base_topic, topology=ctx.topology)
        self._router.register(SET_STATUS, self.handle_set_status)
        self._router.register(GET_STATUS, self.handle_get_status)

    @property
    def router(self) -> CommandRouter:
        return self._router

    # -- command loop -------------------------------------------------------

    async def handle_set_status(self, plant_id: str, module_id: str, payload: str) -> None:
        try:
            request = parse_set_status(payload)
            auth = await self._ctx.tokens.refresh_if_needed()
            logger.info(
                "Setting status for plant %s module %s to %s",
                plant_id,
                module_id,
                request.to_wire(),
            )
            await self._ctx.api.set_device_status(auth, plant_id, module_id, request)
        except BridgeError as exc:
            logger.error(
                "Error while updating status of plant %s module %s: %s",
                plant_id,
                module_id,
                exc,
                extra={"plant_id": plant_id, "module_id": module_id},
            )
            await self._errors.publish(exc, plant=plant_id, module=module_id)

    async def handle_get_status(self, plant_id: str, module_id: str, payload: str) -> None:  # noqa: ARG002
        try:
            auth = await self._ctx.tokens.refresh_if_needed()
            status = await self._ctx.api.get_device_status(auth, plant_id, module_id)
            self._ctx.status_updates.send(status)
        except BridgeError as exc:
            logger.error(
                "Error while polling status of plant %s module %s: %s",
                plant_id,
                module_id,
                exc,
                extra={"plant_id": plant_id, "module_id": module_id},
            )
            await self._errors.publish(exc, plant=plant_id, module=module_id)

    # -- status-publish loop ------------------------------------------------

    async def publish_status(self, status: ThermostatStatus) -> None:
        """Publish one thermostat status.

        Raises:
            StatusEventError: If the status cannot be attributed to a
                managed plant and module.
        """
        topic, plant_id, module_id = status_topic(self._ctx.base_topic, status)
        if not self._ctx.topology.is_managed(plant_id):
            msg = f"Status for unmanaged plant {plant_id}"
            raise StatusEventError(msg)
        summary = MeasurementSummary.from_status(status)
        await self._mqtt.publish(
            topic,
            summary.to_json(),
            retain=False,
            qos=self._ctx.settings.mqtt.qos,
        )
        logger.debug("Published status of plant %s module %s", plant_id, module_id)

    async def publish_status_updates(self) -> None:
        """Drain the status channel until it is closed."""
        async for event in self._ctx.status_updates:
            for status in event.chronothermostats:
                try:
                    await self.publish_status(status)
                except asyncio.CancelledError:
                    raise
                except StatusEventError as exc:
                    logger.error("Error while parsing status: %s", exc)
                except Exception as exc:
                    logger.error("Error while publishing status: %s", exc)
        logger.info("Status channel closed, stopping publisher")

    # -- task ---------------------------------------------------------------

    async def run(self) -> None:
        """Subscribe, connect and bridge until shutdown."""
        for topic in self._router.subscriptions:
            await self._mqtt.subscribe(topic)
        self._mqtt.on_message(self._router.route)
        logger.info(
            "Bridging %d module(s) under '%s'",
            len(list(self._ctx.topology.iter_modules())),
            self._ctx.base_topic,
        )

        await self._mqtt.start()
        try:
            await self._ctx.until_shutdown(self.publish_status_updates())
        finally:
            await self._mqtt.stop()
