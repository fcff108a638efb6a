"""Wall-clock port and system adapter.

Credential expiry is an absolute instant issued by the platform, so the
token lifecycle compares against timezone-aware UTC wall time rather
than a monotonic counter.  Tests inject a
:class:`~smarther_bridge.testing.FakeClock` to control "now".
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Protocol, runtime_checkable


@runtime_checkable
class ClockPort(Protocol):
    """Source of the current UTC time."""

    def now(self) -> datetime:
        """Return the current time as an aware UTC datetime."""
        ...


class SystemClock:
    """Production clock wrapping ``datetime.now(UTC)``."""

    def now(self) -> datetime:
        return datetime.now(UTC)
