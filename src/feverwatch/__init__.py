"""feverwatch - Async fever alerting and real-time state sync pipeline."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("feverwatch")
except PackageNotFoundError:
    __version__ = "0+local"
from feverwatch.classifier import classify, severity_for_delta, validate_reading
from feverwatch.client import FeverWatchClient, SnapshotPoller
from feverwatch.config import FeverWatchConfig, MqttSettings
from feverwatch.dispatcher import DispatchResult, NotificationDispatcher
from feverwatch.exceptions import (
    AuthFailure,
    ConnectionExhausted,
    DeliveryExhausted,
    DeliveryFailure,
    FeverWatchConfigError,
    FeverWatchError,
    InvalidReadingError,
    TransportError,
    UnknownEventError,
)
from feverwatch.gateway import RealtimeGateway
from feverwatch.models import (
    Channel,
    ClassifiedEvent,
    DeliveryPolicy,
    DeliveryStatus,
    Device,
    DeviceStatus,
    FeverSeverity,
    Notification,
    NotificationRequest,
    NotificationType,
    Priority,
    Reading,
)
from feverwatch.pipeline import AlertPipeline
from feverwatch.server import FeverWatchServer
from feverwatch.state import ClientState, ClientStore, Delta, DeltaSource, EntityKind, reduce
from feverwatch.sync import SyncState, SyncStateMachine

__all__ = [
    "__version__",
    "AlertPipeline",
    "AuthFailure",
    "Channel",
    "ClassifiedEvent",
    "ClientState",
    "ClientStore",
    "ConnectionExhausted",
    "DeliveryExhausted",
    "DeliveryFailure",
    "DeliveryPolicy",
    "DeliveryStatus",
    "Delta",
    "DeltaSource",
    "Device",
    "DeviceStatus",
    "DispatchResult",
    "EntityKind",
    "FeverSeverity",
    "FeverWatchClient",
    "FeverWatchConfig",
    "FeverWatchConfigError",
    "FeverWatchError",
    "FeverWatchServer",
    "InvalidReadingError",
    "MqttSettings",
    "Notification",
    "NotificationDispatcher",
    "NotificationRequest",
    "NotificationType",
    "Priority",
    "Reading",
    "RealtimeGateway",
    "SnapshotPoller",
    "SyncState",
    "SyncStateMachine",
    "TransportError",
    "UnknownEventError",
    "classify",
    "reduce",
    "severity_for_delta",
    "validate_reading",
]
