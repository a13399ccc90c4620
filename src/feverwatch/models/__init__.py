"""Data models for readings, devices, notifications and wire events."""

from feverwatch.models._base import FeverWatchModel, OptionalTimestamp, Timestamp, parse_timestamp
from feverwatch.models.device import Device, DeviceStatus
from feverwatch.models.events import (
    AuthError,
    AuthMessage,
    AuthSuccess,
    ClientMessage,
    DeviceStatusPayload,
    DeviceStatusUpdate,
    FeverAlert,
    JoinDevice,
    LeaveDevice,
    NotificationUpdate,
    Ping,
    Pong,
    ServerMessage,
    TemperaturePayload,
    TemperatureUpdate,
    decode_client_message,
    decode_server_message,
    encode_message,
)
from feverwatch.models.notification import (
    Channel,
    ChannelDelivery,
    DeliveryPolicy,
    DeliveryStatus,
    Notification,
    NotificationRequest,
    NotificationType,
    Priority,
)
from feverwatch.models.reading import ClassifiedEvent, FeverSeverity, MeasurementChannel, Reading

__all__ = [
    "AuthError",
    "AuthMessage",
    "AuthSuccess",
    "Channel",
    "ChannelDelivery",
    "ClassifiedEvent",
    "ClientMessage",
    "DeliveryPolicy",
    "DeliveryStatus",
    "Device",
    "DeviceStatus",
    "DeviceStatusPayload",
    "DeviceStatusUpdate",
    "FeverAlert",
    "FeverSeverity",
    "FeverWatchModel",
    "JoinDevice",
    "LeaveDevice",
    "MeasurementChannel",
    "Notification",
    "NotificationRequest",
    "NotificationType",
    "NotificationUpdate",
    "OptionalTimestamp",
    "Ping",
    "Pong",
    "Priority",
    "Reading",
    "ServerMessage",
    "TemperaturePayload",
    "TemperatureUpdate",
    "Timestamp",
    "decode_client_message",
    "decode_server_message",
    "encode_message",
    "parse_timestamp",
]
