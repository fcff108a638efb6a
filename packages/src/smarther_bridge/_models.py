"""Domain models shared by every bridge task.

The cloud platform speaks camelCase JSON; models accept both the wire
alias and the Python field name (``populate_by_name``) and serialise
back to the wire form with ``by_alias=True``.

Models fall into three groups:

* **Persisted state** — :class:`AuthorizationInfo`,
  :class:`CachedTopology`, :class:`SubscriptionInfo` and
  :class:`BridgeConfiguration`, each backed by a JSON file.
* **Thermostat payloads** — :class:`ModuleStatus` and its parts, as
  pushed by the webhook or returned by a status query, plus the
  :class:`SetStatusRequest` accepted on MQTT.
* **Publications** — :class:`MeasurementSummary`, the JSON document
  published on ``{base}/{plant}/{module}/status``.
"""

from __future__ import annotations

from collections.abc import Iterator
from datetime import UTC, datetime, timedelta
from typing import Annotated, Any, Literal

from pydantic import (
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    SecretStr,
    field_serializer,
)


def _lower(value: Any) -> Any:
    return value.lower() if isinstance(value, str) else value


ThermostatMode = Annotated[
    Literal["automatic", "manual", "boost", "off", "protection"],
    BeforeValidator(_lower),
]
ThermostatFunction = Annotated[
    Literal["heating", "cooling"],
    BeforeValidator(_lower),
]


class _CloudModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------


class AuthorizationInfo(_CloudModel):
    """OAuth2 credential plus the application keys needed to refresh it.

    Instances are treated as immutable values: a refresh produces a new
    instance which replaces the shared one as a whole.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    client_id: str
    client_secret: SecretStr
    subscription_key: SecretStr
    access_token: SecretStr
    refresh_token: SecretStr
    expires_on: datetime

    def remaining(self, now: datetime) -> timedelta:
        """Lifetime left on the access token at *now*."""
        expires_on = self.expires_on
        if expires_on.tzinfo is None:
            expires_on = expires_on.replace(tzinfo=UTC)
        return expires_on - now

    def needs_refresh(self, now: datetime, threshold: float) -> bool:
        """True when less than *threshold* seconds of lifetime remain."""
        return self.remaining(now).total_seconds() < threshold

    @field_serializer(
        "client_secret",
        "subscription_key",
        "access_token",
        "refresh_token",
        when_used="json",
    )
    def _reveal(self, value: SecretStr) -> str:
        # The token file is the credential store; it must hold real values.
        return value.get_secret_value()


# ---------------------------------------------------------------------------
# Topology
# ---------------------------------------------------------------------------


class ModuleInfo(_CloudModel):
    """A single thermostat device inside a plant."""

    id: str
    device: str = Field(default="chronothermostat")
    name: str | None = None


class PlantDetail(_CloudModel):
    """A managed plant and its modules."""

    id: str
    name: str | None = None
    modules: list[ModuleInfo] = Field(default_factory=list)


class CachedTopology(_CloudModel):
    """Snapshot of the managed plants, read once at startup."""

    plants: list[PlantDetail] = Field(default_factory=list)

    @property
    def plant_ids(self) -> list[str]:
        return [plant.id for plant in self.plants]

    def is_managed(self, plant_id: str) -> bool:
        return any(plant.id == plant_id for plant in self.plants)

    def iter_modules(self) -> Iterator[tuple[str, str]]:
        """Yield ``(plant_id, module_id)`` for every managed module."""
        for plant in self.plants:
            for module in plant.modules:
                yield plant.id, module.id


# ---------------------------------------------------------------------------
# Webhook subscriptions
# ---------------------------------------------------------------------------


class SubscriptionInfo(_CloudModel):
    """A cloud-side push-notification subscription."""

    subscription_id: str = Field(alias="subscriptionId")
    plant_id: str | None = Field(default=None, alias="plantId")
    endpoint_url: str | None = Field(default=None, alias="EndPointUrl")


# ---------------------------------------------------------------------------
# Thermostat payloads
# ---------------------------------------------------------------------------


class Measurement(_CloudModel):
    value: float
    unit: str


class TimedMeasurement(_CloudModel):
    time_stamp: datetime = Field(alias="timeStamp")
    value: float
    unit: str


class Instrument(_CloudModel):
    """A thermometer or hygrometer reading series."""

    measures: list[TimedMeasurement] = Field(default_factory=list)

    def last_measurement(self) -> TimedMeasurement | None:
        if not self.measures:
            return None
        return max(self.measures, key=lambda measure: measure.time_stamp)


class ProgramRef(_CloudModel):
    number: int


class SenderModule(_CloudModel):
    id: str


class SenderPlant(_CloudModel):
    id: str
    module: SenderModule


class Sender(_CloudModel):
    address_type: str | None = Field(default=None, alias="addressType")
    system: str | None = None
    plant: SenderPlant | None = None


class ThermostatStatus(_CloudModel):
    """Status of one chronothermostat as reported by the platform."""

    function: ThermostatFunction
    mode: ThermostatMode
    set_point: Measurement | None = Field(default=None, alias="setPoint")
    programs: list[ProgramRef] = Field(default_factory=list)
    time: datetime
    activation_time: datetime | None = Field(default=None, alias="activationTime")
    thermometer: Instrument | None = None
    hygrometer: Instrument | None = None
    sender: Sender | None = None


class ModuleStatus(_CloudModel):
    """A status event: one or more thermostat statuses."""

    chronothermostats: list[ThermostatStatus] = Field(default_factory=list)


class SetStatusRequest(_CloudModel):
    """Status change requested over MQTT.

    Known fields are validated; any additional keys are passed through
    untouched to the platform.
    """

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    function: ThermostatFunction | None = None
    mode: ThermostatMode | None = None
    set_point: Measurement | None = Field(default=None, alias="setPoint")
    programs: list[ProgramRef] | None = None
    activation_time: datetime | None = Field(default=None, alias="activationTime")

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# ---------------------------------------------------------------------------
# Publications
# ---------------------------------------------------------------------------


class MeasurementSummary(BaseModel):
    """Flattened status published to ``{base}/{plant}/{module}/status``."""

    temperature: TimedMeasurement | None
    humidity: TimedMeasurement | None
    set_point: Measurement | None
    mode: ThermostatMode
    function: ThermostatFunction
    time: datetime
    activation_time: datetime | None

    @classmethod
    def from_status(cls, status: ThermostatStatus) -> MeasurementSummary:
        return cls(
            temperature=(
                status.thermometer.last_measurement() if status.thermometer else None
            ),
            humidity=(
                status.hygrometer.last_measurement() if status.hygrometer else None
            ),
            set_point=status.set_point,
            mode=status.mode,
            function=status.function,
            time=status.time,
            activation_time=status.activation_time,
        )

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)


# ---------------------------------------------------------------------------
# Bridge configuration file
# ---------------------------------------------------------------------------


class BridgeConfiguration(BaseModel):
    """User-facing configuration stored in ``configuration.json``.

    Every field has a default so a partial (or missing) file is valid;
    the merged result is written back on startup.
    """

    model_config = ConfigDict(extra="ignore", frozen=True)

    webhook_endpoint: str | None = None
    mqtt_base_topic: str = "smarther"
    mqtt_broker: str = "localhost"
    mqtt_port: Annotated[int, Field(ge=1, le=65535)] = 1883
    mqtt_username: str = "anonymous"
    mqtt_password: SecretStr = SecretStr("")
    listen_port: Annotated[int, Field(ge=1, le=65535)] = 8080
    listen_host: str = "localhost"

    @field_serializer("mqtt_password", when_used="json")
    def _reveal(self, value: SecretStr) -> str:
        return value.get_secret_value()

    def subscription_endpoint(self, plant_id: str) -> str | None:
        """Delivery URL registered with the platform for *plant_id*."""
        if self.webhook_endpoint is None:
            return None
        return f"{self.webhook_endpoint.rstrip('/')}/smarther_bridge/{plant_id}"

    def to_json(self) -> str:
        return self.model_dump_json(indent=2, exclude_none=True)
