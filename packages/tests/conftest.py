"""Pytest configuration and shared fixtures."""

import socket

import pytest

# The smarther_bridge testing plugin is registered via a ``pytest11``
# entry point (pyproject.toml) for external consumers.  In our own test
# suite we disable it (``-p no:smarther_bridge``) and load it explicitly
# here instead, so the package import chain is measured by pytest-cov.
pytest_plugins = ["smarther_bridge.testing._plugin"]


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers", "unit: Unit tests (fast, no external dependencies)"
    )
    config.addinivalue_line(
        "markers", "integration: Integration tests (whole bridge, test doubles only)"
    )


@pytest.fixture
def unused_tcp_port() -> int:
    """A localhost TCP port that was free a moment ago."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]
