"""Tests for smarther_bridge._store — JSON snapshot persistence.

Test Techniques Used:
    - State-based Testing: files on disk after each save
    - Error Guessing: missing, unreadable and malformed files
    - Fault Injection: os.replace failure leaves the old file intact
"""

from __future__ import annotations

import json
from pathlib import Path
from unittest.mock import patch

import pytest

from smarther_bridge._errors import StateFileError
from smarther_bridge._models import BridgeConfiguration, SubscriptionInfo
from smarther_bridge._store import StateStore, write_atomic
from smarther_bridge.testing import make_auth, make_settings, make_topology

pytestmark = pytest.mark.unit


@pytest.fixture
def store(tmp_path: Path) -> StateStore:
    return StateStore(make_settings(config_dir=tmp_path))


class TestWriteAtomic:
    def test_creates_file_and_parents(self, tmp_path: Path) -> None:
        target = tmp_path / "nested" / "state.json"
        write_atomic(target, "{}")
        assert target.read_text(encoding="utf-8") == "{}"

    def test_leaves_no_temporary_files(self, tmp_path: Path) -> None:
        target = tmp_path / "state.json"
        write_atomic(target, "one")
        write_atomic(target, "two")
        assert [p.name for p in tmp_path.iterdir()] == ["state.json"]
        assert target.read_text(encoding="utf-8") == "two"

    def test_failed_rename_keeps_previous_content(self, tmp_path: Path) -> None:
        """Technique: Fault Injection — the rename is the commit point."""
        target = tmp_path / "state.json"
        write_atomic(target, "old")
        with (
            patch("smarther_bridge._store.os.replace", side_effect=OSError("disk full")),
            pytest.raises(OSError, match="disk full"),
        ):
            write_atomic(target, "new")
        assert target.read_text(encoding="utf-8") == "old"
        assert [p.name for p in tmp_path.iterdir()] == ["state.json"]


class TestAuthorization:
    def test_round_trip(self, store: StateStore) -> None:
        auth = make_auth()
        store.save_authorization(auth)
        loaded = store.load_authorization()
        assert loaded.access_token.get_secret_value() == "access-0"
        assert loaded.expires_on == auth.expires_on

    def test_missing_file(self, store: StateStore) -> None:
        with pytest.raises(StateFileError, match="tokens.json"):
            store.load_authorization()

    def test_malformed_file(self, store: StateStore, tmp_path: Path) -> None:
        (tmp_path / "tokens.json").write_text("{not json", encoding="utf-8")
        with pytest.raises(StateFileError, match="Invalid content"):
            store.load_authorization()

    def test_write_failure_wrapped(self, store: StateStore) -> None:
        with (
            patch("smarther_bridge._store.write_atomic", side_effect=OSError("read-only")),
            pytest.raises(StateFileError, match="read-only"),
        ):
            store.save_authorization(make_auth())


class TestTopology:
    def test_round_trip(self, store: StateStore) -> None:
        store.save_topology(make_topology({"p1": ["m1", "m2"]}))
        assert list(store.load_topology().iter_modules()) == [("p1", "m1"), ("p1", "m2")]

    def test_missing_file(self, store: StateStore) -> None:
        with pytest.raises(StateFileError):
            store.load_topology()


class TestSubscriptions:
    def test_missing_file_is_empty(self, store: StateStore) -> None:
        assert store.load_subscriptions() == []

    def test_written_with_platform_names(self, store: StateStore, tmp_path: Path) -> None:
        store.save_subscriptions(
            [SubscriptionInfo(subscription_id="s1", plant_id="p1", endpoint_url="https://e/p1")],
        )
        raw = json.loads((tmp_path / "subscriptions.json").read_text(encoding="utf-8"))
        assert raw == [{"subscriptionId": "s1", "plantId": "p1", "EndPointUrl": "https://e/p1"}]

    def test_round_trip(self, store: StateStore) -> None:
        subs = [SubscriptionInfo(subscription_id="s1", plant_id="p1")]
        store.save_subscriptions(subs)
        assert store.load_subscriptions() == subs

    def test_malformed_file(self, store: StateStore, tmp_path: Path) -> None:
        (tmp_path / "subscriptions.json").write_text('{"a": 1}', encoding="utf-8")
        with pytest.raises(StateFileError):
            store.load_subscriptions()


class TestConfiguration:
    def test_missing_file_gives_defaults(self, store: StateStore) -> None:
        assert store.load_configuration() == BridgeConfiguration()

    def test_round_trip(self, store: StateStore) -> None:
        config = BridgeConfiguration(webhook_endpoint="https://bridge.example", listen_port=9000)
        store.save_configuration(config)
        assert store.load_configuration() == config

    def test_invalid_values_rejected(self, store: StateStore, tmp_path: Path) -> None:
        (tmp_path / "configuration.json").write_text('{"mqtt_port": "x"}', encoding="utf-8")
        with pytest.raises(StateFileError):
            store.load_configuration()

    def test_unreadable_file(self, store: StateStore, tmp_path: Path) -> None:
        path = tmp_path / "configuration.json"
        path.write_text("{}", encoding="utf-8")
        with (
            patch.object(Path, "read_text", side_effect=PermissionError("denied")),
            pytest.raises(StateFileError, match="denied"),
        ):
            store.load_configuration()
