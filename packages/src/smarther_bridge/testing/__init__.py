"""Public test-support utilities for smarther_bridge.

Re-exports test doubles and factories so that test suites can import
everything from a single ``smarther_bridge.testing`` namespace.

Provided symbols:

- :class:`MockMqttClient` — in-memory MQTT double that records calls.
- :class:`MockSmartherApi` — in-memory cloud API double.
- :class:`FakeClock` — deterministic wall clock.
- :func:`make_settings` — ``Settings`` without ``.env`` files or env vars.
- :func:`make_auth`, :func:`make_topology`, :func:`make_status`,
  :func:`status_payload` — domain object builders.
"""

from smarther_bridge._api import MockSmartherApi
from smarther_bridge._mqtt import MockMqttClient
from smarther_bridge.testing._clock import EPOCH, FakeClock
from smarther_bridge.testing._factories import (
    make_auth,
    make_status,
    make_topology,
    status_payload,
)
from smarther_bridge.testing._settings import make_settings

__all__ = [
    "EPOCH",
    "FakeClock",
    "MockMqttClient",
    "MockSmartherApi",
    "make_auth",
    "make_settings",
    "make_status",
    "make_topology",
    "status_payload",
]
