"""JSON snapshot files in the configuration directory.

=========================  ==============================================
File                       Content
=========================  ==============================================
``tokens.json``            :class:`AuthorizationInfo`
``plant_topology.json``    :class:`CachedTopology`
``subscriptions.json``     JSON array of :class:`SubscriptionInfo`
``configuration.json``     :class:`BridgeConfiguration`
=========================  ==============================================

Writes go to a temporary file in the same directory which is then
renamed over the target, so a crash leaves either the previous or the
new snapshot on disk, never a truncated one.
"""

from __future__ import annotations

import contextlib
import logging
import os
import tempfile
from pathlib import Path
from typing import TypeVar

from pydantic import BaseModel, TypeAdapter, ValidationError

from smarther_bridge._errors import StateFileError
from smarther_bridge._models import (
    AuthorizationInfo,
    BridgeConfiguration,
    CachedTopology,
    SubscriptionInfo,
)
from smarther_bridge._settings import Settings

logger = logging.getLogger(__name__)

_M = TypeVar("_M", bound=BaseModel)

_SUBSCRIPTIONS = TypeAdapter(list[SubscriptionInfo])


def write_atomic(path: Path, content: str) -> None:
    """Replace *path* with *content* in a single rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(content)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        with contextlib.suppress(OSError):
            os.unlink(tmp_name)
        raise


class StateStore:
    """Reads and writes the bridge's persisted state files.

    Every failure is reported as :class:`StateFileError` carrying the
    offending path, so callers can decide per file whether it is fatal.
    """

    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    @property
    def config_dir(self) -> Path:
        return self._settings.config_dir

    # -- generic helpers ----------------------------------------------------

    @staticmethod
    def _read(path: Path) -> str:
        try:
            return path.read_text(encoding="utf-8")
        except OSError as exc:
            msg = f"Cannot read {path}: {exc}"
            raise StateFileError(msg) from exc

    @staticmethod
    def _write(path: Path, content: str) -> None:
        try:
            write_atomic(path, content)
        except OSError as exc:
            msg = f"Cannot write {path}: {exc}"
            raise StateFileError(msg) from exc

    def _load_model(self, path: Path, model: type[_M]) -> _M:
        raw = self._read(path)
        try:
            return model.model_validate_json(raw)
        except ValidationError as exc:
            msg = f"Invalid content in {path}: {exc}"
            raise StateFileError(msg) from exc

    # -- authorization ------------------------------------------------------

    def load_authorization(self) -> AuthorizationInfo:
        return self._load_model(self._settings.auth_file, AuthorizationInfo)

    def save_authorization(self, auth: AuthorizationInfo) -> None:
        self._write(self._settings.auth_file, auth.model_dump_json(indent=2))
        logger.debug("Credential persisted to %s", self._settings.auth_file)

    # -- topology -----------------------------------------------------------

    def load_topology(self) -> CachedTopology:
        return self._load_model(self._settings.topology_file, CachedTopology)

    def save_topology(self, topology: CachedTopology) -> None:
        self._write(
            self._settings.topology_file,
            topology.model_dump_json(indent=2, by_alias=True),
        )

    # -- subscriptions ------------------------------------------------------

    def load_subscriptions(self) -> list[SubscriptionInfo]:
        """Return the persisted subscription set; a missing file is empty."""
        path = self._settings.subscriptions_file
        if not path.exists():
            return []
        raw = self._read(path)
        try:
            return _SUBSCRIPTIONS.validate_json(raw)
        except ValidationError as exc:
            msg = f"Invalid content in {path}: {exc}"
            raise StateFileError(msg) from exc

    def save_subscriptions(self, subscriptions: list[SubscriptionInfo]) -> None:
        content = _SUBSCRIPTIONS.dump_json(subscriptions, indent=2, by_alias=True)
        self._write(self._settings.subscriptions_file, content.decode("utf-8"))

    # -- configuration ------------------------------------------------------

    def load_configuration(self) -> BridgeConfiguration:
        """Return the configuration; a missing file yields the defaults."""
        path = self._settings.configuration_file
        if not path.exists():
            logger.info("No configuration at %s, using defaults", path)
            return BridgeConfiguration()
        return self._load_model(path, BridgeConfiguration)

    def save_configuration(self, configuration: BridgeConfiguration) -> None:
        self._write(self._settings.configuration_file, configuration.to_json())
