"""smarther_bridge.

Bridge Legrand Smarther chronothermostats to MQTT: commands published on
MQTT reach the cloud, and cloud push notifications are published on MQTT.
"""

from importlib.metadata import PackageNotFoundError, version

from smarther_bridge._api import CloudApiPort, MockSmartherApi, SmartherApi
from smarther_bridge._app import BridgeApp, load_startup_state
from smarther_bridge._bridge import MqttBridge, parse_set_status
from smarther_bridge._channels import ResetSignal, StatusChannel
from smarther_bridge._clock import ClockPort, SystemClock
from smarther_bridge._context import BridgeContext
from smarther_bridge._errors import (
    ApiError,
    BridgeError,
    ChannelClosed,
    CommandError,
    ErrorPayload,
    ErrorPublisher,
    RefreshError,
    StateFileError,
    StatusEventError,
    build_error_payload,
)
from smarther_bridge._ingress import IngressServer, build_app
from smarther_bridge._logging import JsonFormatter, configure_logging
from smarther_bridge._models import (
    AuthorizationInfo,
    BridgeConfiguration,
    CachedTopology,
    MeasurementSummary,
    ModuleInfo,
    ModuleStatus,
    PlantDetail,
    SetStatusRequest,
    SubscriptionInfo,
    ThermostatStatus,
)
from smarther_bridge._mqtt import (
    ConnectionState,
    MessageCallback,
    MockMqttClient,
    MqttClient,
    MqttPort,
    WillConfig,
    build_will_config,
)
from smarther_bridge._router import CommandRouter
from smarther_bridge._settings import (
    ApiSettings,
    LoggingSettings,
    MqttSettings,
    Settings,
    TokenSettings,
    WebhookSettings,
)
from smarther_bridge._store import StateStore
from smarther_bridge._token import TokenManager
from smarther_bridge._webhook import SubscriptionManager, run_webhook_subsystem

try:
    __version__ = version("smarther-bridge")
except PackageNotFoundError:
    # Source checkout without installed metadata
    __version__ = "0.0.0+unknown"

__all__ = [
    # Version
    "__version__",
    # App
    "BridgeApp",
    "BridgeContext",
    "load_startup_state",
    # Tasks
    "MqttBridge",
    "SubscriptionManager",
    "TokenManager",
    "run_webhook_subsystem",
    "parse_set_status",
    # Cloud API
    "CloudApiPort",
    "MockSmartherApi",
    "SmartherApi",
    # HTTP ingress
    "IngressServer",
    "build_app",
    # Channels
    "ResetSignal",
    "StatusChannel",
    # Clock
    "ClockPort",
    "SystemClock",
    # Errors
    "ApiError",
    "BridgeError",
    "ChannelClosed",
    "CommandError",
    "ErrorPayload",
    "ErrorPublisher",
    "RefreshError",
    "StateFileError",
    "StatusEventError",
    "build_error_payload",
    # Logging
    "JsonFormatter",
    "configure_logging",
    # Models
    "AuthorizationInfo",
    "BridgeConfiguration",
    "CachedTopology",
    "MeasurementSummary",
    "ModuleInfo",
    "ModuleStatus",
    "PlantDetail",
    "SetStatusRequest",
    "SubscriptionInfo",
    "ThermostatStatus",
    # MQTT
    "CommandRouter",
    "ConnectionState",
    "MessageCallback",
    "MockMqttClient",
    "MqttClient",
    "MqttPort",
    "WillConfig",
    "build_will_config",
    # Settings and state
    "ApiSettings",
    "LoggingSettings",
    "MqttSettings",
    "Settings",
    "StateStore",
    "TokenSettings",
    "WebhookSettings",
]
