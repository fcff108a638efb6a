"""Process configuration via pydantic-settings.

Settings are loaded from environment variables (prefixed ``SMARTHER_``)
and/or a ``.env`` file.  Nested models use ``__`` as the delimiter in
env var names, e.g. ``SMARTHER_LOGGING__LEVEL=DEBUG``.

These are the *process* knobs of the bridge: where the state files live,
how to log, how the MQTT client reconnects, and the credential and
webhook timings.  The user-facing bridge configuration (broker address,
base topic, webhook endpoint, listener) lives in ``configuration.json``
and is modelled by :class:`~smarther_bridge._models.BridgeConfiguration`.

All durations are in **seconds**.
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated, Literal

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# -------------------------------------------------------------------
# Sub-models (BaseModel, NOT BaseSettings; nested via composition)
# -------------------------------------------------------------------


class MqttSettings(BaseModel):
    """MQTT client tuning.

    Broker address and credentials come from ``configuration.json``;
    only the client behaviour is configured here::

        SMARTHER_MQTT__CLIENT_ID=smarther-mqtt-bridge
        SMARTHER_MQTT__RECONNECT_INTERVAL=5
    """

    client_id: str = Field(
        default="smarther-mqtt-bridge",
        description="MQTT client identifier.",
    )
    reconnect_interval: Annotated[float, Field(gt=0)] = Field(
        default=5.0,
        description="Fixed seconds to wait before reconnecting after connection loss.",
    )
    qos: Literal[0, 1, 2] = Field(
        default=1,
        description="QoS for command subscriptions and status publications.",
    )


class TokenSettings(BaseModel):
    """Credential lifecycle timings."""

    refresh_threshold: Annotated[float, Field(ge=0)] = Field(
        default=300.0,
        description="Refresh when the access token has less than this many seconds left.",
    )
    max_interval: Annotated[float, Field(gt=0)] = Field(
        default=85 * 86400.0,
        description=(
            "Longest wait between background refresh attempts.  Keeps the "
            "refresh token alive across long idle periods."
        ),
    )
    retry_interval: Annotated[float, Field(gt=0)] = Field(
        default=300.0,
        description="Wait before retrying a failed background refresh.",
    )


class WebhookSettings(BaseModel):
    """Push-notification subscription policy.

    ``reconcile`` selects where the subscriptions left over from a
    previous run are discovered:

    - ``"cloud"`` — ask the platform for its live subscription list.
    - ``"snapshot"`` — trust ``subscriptions.json`` only.
    """

    reconcile: Literal["cloud", "snapshot"] = Field(
        default="cloud",
        description="Source of truth for subscriptions left by a previous run.",
    )


class ApiSettings(BaseModel):
    """Thermostat cloud REST endpoints and request behaviour."""

    base_uri: str = Field(
        default="https://api.developer.legrand.com/smarther/v2.0",
        description="Base URI of the chronothermostat API.",
    )
    token_uri: str = Field(
        default="https://partners-login.eliotbylegrand.com/token",
        description="OAuth2 token endpoint used for the refresh grant.",
    )
    timeout: Annotated[float, Field(gt=0)] = Field(
        default=10.0,
        description="Base request timeout, multiplied by the attempt number.",
    )
    attempts: Annotated[int, Field(ge=1)] = Field(
        default=3,
        description="Attempts per request when the request times out.",
    )


class LoggingSettings(BaseModel):
    """Logging configuration.

    When ``file`` is set, logs are also written to a rotating file
    (size-based rotation, ``backup_count`` generations kept).

    ``format`` is ``"json"`` for one JSON object per line (container log
    drivers) or ``"text"`` for timestamped human-readable lines.
    """

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Root log level.",
    )
    format: Literal["json", "text"] = Field(
        default="text",
        description="Log output format.",
    )
    file: str | None = Field(
        default=None,
        description="Optional log file path. ``None`` means stderr only.",
    )
    backup_count: Annotated[int, Field(ge=0)] = Field(
        default=3,
        description="Number of rotated log files to keep.",
    )


# -------------------------------------------------------------------
# Root settings
# -------------------------------------------------------------------


class Settings(BaseSettings):
    """Root settings for the bridge process.

    Example ``.env``::

        SMARTHER_CONFIG_DIR=/config
        SMARTHER_LOGGING__LEVEL=DEBUG
        SMARTHER_LOGGING__FORMAT=json
        SMARTHER_WEBHOOK__RECONCILE=snapshot
    """

    model_config = SettingsConfigDict(
        env_prefix="SMARTHER_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    config_dir: Path = Field(
        default_factory=Path.cwd,
        description="Directory holding the JSON state and configuration files.",
    )
    mqtt: MqttSettings = Field(default_factory=MqttSettings)
    tokens: TokenSettings = Field(default_factory=TokenSettings)
    webhook: WebhookSettings = Field(default_factory=WebhookSettings)
    api: ApiSettings = Field(default_factory=ApiSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    @property
    def auth_file(self) -> Path:
        return self.config_dir / "tokens.json"

    @property
    def topology_file(self) -> Path:
        return self.config_dir / "plant_topology.json"

    @property
    def subscriptions_file(self) -> Path:
        return self.config_dir / "subscriptions.json"

    @property
    def configuration_file(self) -> Path:
        return self.config_dir / "configuration.json"
