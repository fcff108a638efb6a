"""Exception taxonomy and structured error publication.

Every failure the bridge can recover from derives from
:class:`BridgeError`.  Owning loops catch these per item, log them and
move on; none of them is allowed to terminate the process.

Per-item command failures are also published to MQTT so they are
observable remotely::

    {base}/error    ← one JSON event per failed command (not retained)

Payload schema::

    {
        "error_type": "invalid_command",
        "message": "Human-readable error description",
        "plant": "plantA" | null,
        "module": "modA" | null,
        "timestamp": "2026-02-14T12:34:56+00:00"
    }

Publication is **fire-and-forget**: a failure to publish the report is
logged, never propagated.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime

from smarther_bridge._mqtt import MqttPort

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class BridgeError(Exception):
    """Base class for recoverable bridge failures."""


class ApiError(BridgeError):
    """A cloud API call failed.

    ``status`` is the HTTP status code, or ``None`` for transport-level
    failures (connection refused, timeout, ...).
    """

    def __init__(self, message: str, *, status: int | None = None, body: str = "") -> None:
        super().__init__(message)
        self.status = status
        self.body = body


class RefreshError(BridgeError):
    """The credential could not be refreshed or persisted."""


class CommandError(BridgeError):
    """An inbound MQTT command is malformed."""


class StatusEventError(BridgeError):
    """A status event lacks the identity needed to route it."""


class StateFileError(BridgeError):
    """A persisted JSON snapshot could not be read, parsed or written."""


class ChannelClosed(BridgeError):
    """The status-update channel no longer accepts or yields items."""


ERROR_TYPES: dict[type[Exception], str] = {
    ApiError: "api_error",
    RefreshError: "refresh_error",
    CommandError: "invalid_command",
    StatusEventError: "invalid_status",
    StateFileError: "state_file_error",
    ChannelClosed: "channel_closed",
}

# ---------------------------------------------------------------------------
# Payload
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ErrorPayload:
    """Immutable structured error event."""

    error_type: str
    message: str
    plant: str | None
    module: str | None
    timestamp: str

    def to_json(self) -> str:
        return json.dumps(asdict(self))


def build_error_payload(
    error: Exception,
    *,
    plant: str | None = None,
    module: str | None = None,
    clock: Callable[[], datetime] | None = None,
) -> ErrorPayload:
    """Convert an exception into an :class:`ErrorPayload`.

    Looks up the exact class of the exception in :data:`ERROR_TYPES`;
    anything else maps to the generic ``"error"`` type.
    """
    now = clock() if clock is not None else datetime.now(UTC)
    return ErrorPayload(
        error_type=ERROR_TYPES.get(type(error), "error"),
        message=str(error),
        plant=plant,
        module=module,
        timestamp=now.isoformat(),
    )


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


@dataclass
class ErrorPublisher:
    """Publishes structured error events to ``{base_topic}/error``."""

    mqtt: MqttPort
    base_topic: str
    clock: Callable[[], datetime] | None = field(default=None, repr=False)

    async def publish(
        self,
        error: Exception,
        *,
        plant: str | None = None,
        module: str | None = None,
    ) -> None:
        payload = build_error_payload(
            error,
            plant=plant,
            module=module,
            clock=self.clock,
        )
        topic = f"{self.base_topic}/error"
        try:
            await self.mqtt.publish(topic, payload.to_json(), retain=False, qos=1)
        except Exception:
            logger.exception("Failed to publish error to %s", topic)
