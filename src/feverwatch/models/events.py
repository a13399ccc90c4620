"""Real-time wire events.

Every frame on the gateway WebSocket is a JSON object
``{"event": <name>, "data": <payload>}``. The set of events is closed:
client and server messages are discriminated unions on ``event`` and are
handled with exhaustive ``match`` statements.
"""

from __future__ import annotations

import json
from datetime import datetime
from typing import Annotated, Any, Literal

from pydantic import Field, TypeAdapter, ValidationError

from feverwatch.exceptions import UnknownEventError
from feverwatch.models._base import FeverWatchModel, OptionalTimestamp, Timestamp
from feverwatch.models.device import Device, DeviceStatus
from feverwatch.models.notification import Notification
from feverwatch.models.reading import ClassifiedEvent, FeverSeverity

# ------------------------------------------------------------------
# Payloads
# ------------------------------------------------------------------


class AuthPayload(FeverWatchModel):
    token: str


class AuthSuccessPayload(FeverWatchModel):
    user_id: str


class AuthErrorPayload(FeverWatchModel):
    reason: str


class TemperaturePayload(FeverWatchModel):
    device_id: str
    temperature: float
    fever_detected: bool
    fever_severity: FeverSeverity
    timestamp: Timestamp
    updated_at: OptionalTimestamp = None

    @classmethod
    def from_classified(cls, event: ClassifiedEvent, *, updated_at: datetime | None = None) -> TemperaturePayload:
        return cls(
            device_id=event.device_id,
            temperature=event.temperature,
            fever_detected=event.fever_detected,
            fever_severity=event.fever_severity,
            timestamp=event.reading.timestamp,
            updated_at=updated_at,
        )


class DeviceStatusPayload(FeverWatchModel):
    device_id: str
    status: DeviceStatus
    battery_level: int | None = None
    signal_strength: int | None = None
    last_seen: OptionalTimestamp = None
    updated_at: OptionalTimestamp = None

    @classmethod
    def from_device(cls, device: Device) -> DeviceStatusPayload:
        return cls(
            device_id=device.device_id,
            status=device.status,
            battery_level=device.battery_level,
            signal_strength=device.signal_strength,
            last_seen=device.last_seen,
            updated_at=device.updated_at,
        )


# ------------------------------------------------------------------
# Client -> server
# ------------------------------------------------------------------


class AuthMessage(FeverWatchModel):
    event: Literal["auth"] = "auth"
    data: AuthPayload


class JoinDevice(FeverWatchModel):
    event: Literal["join_device"] = "join_device"
    data: str


class LeaveDevice(FeverWatchModel):
    event: Literal["leave_device"] = "leave_device"
    data: str


class Ping(FeverWatchModel):
    event: Literal["ping"] = "ping"
    data: Any = None


ClientMessage = Annotated[
    AuthMessage | JoinDevice | LeaveDevice | Ping,
    Field(discriminator="event"),
]

# ------------------------------------------------------------------
# Server -> client
# ------------------------------------------------------------------


class AuthSuccess(FeverWatchModel):
    event: Literal["auth_success"] = "auth_success"
    data: AuthSuccessPayload


class AuthError(FeverWatchModel):
    event: Literal["auth_error"] = "auth_error"
    data: AuthErrorPayload


class TemperatureUpdate(FeverWatchModel):
    event: Literal["temperature:update"] = "temperature:update"
    data: TemperaturePayload


class FeverAlert(FeverWatchModel):
    event: Literal["fever:alert"] = "fever:alert"
    data: ClassifiedEvent


class DeviceStatusUpdate(FeverWatchModel):
    event: Literal["device:status"] = "device:status"
    data: DeviceStatusPayload


class NotificationUpdate(FeverWatchModel):
    event: Literal["notification"] = "notification"
    data: Notification


class Pong(FeverWatchModel):
    event: Literal["pong"] = "pong"
    data: Any = None


ServerMessage = Annotated[
    AuthSuccess | AuthError | TemperatureUpdate | FeverAlert | DeviceStatusUpdate | NotificationUpdate | Pong,
    Field(discriminator="event"),
]

_CLIENT_ADAPTER: TypeAdapter[ClientMessage] = TypeAdapter(ClientMessage)
_SERVER_ADAPTER: TypeAdapter[ServerMessage] = TypeAdapter(ServerMessage)


def _load(raw: str | bytes | dict[str, Any]) -> dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise UnknownEventError(f"Frame is not JSON: {raw[:64]!r}") from exc
    if not isinstance(parsed, dict):
        raise UnknownEventError("Frame is not a JSON object")
    return parsed


def decode_client_message(raw: str | bytes | dict[str, Any]) -> ClientMessage:
    """Parse a client frame into its typed event."""
    try:
        return _CLIENT_ADAPTER.validate_python(_load(raw))
    except ValidationError as exc:
        raise UnknownEventError(f"Invalid client frame: {exc.error_count()} error(s)") from exc


def decode_server_message(raw: str | bytes | dict[str, Any]) -> ServerMessage:
    """Parse a server frame into its typed event."""
    try:
        return _SERVER_ADAPTER.validate_python(_load(raw))
    except ValidationError as exc:
        raise UnknownEventError(f"Invalid server frame: {exc.error_count()} error(s)") from exc


def encode_message(message: FeverWatchModel) -> str:
    """Serialize an event to its JSON wire frame."""
    return json.dumps(message.to_wire(), separators=(",", ":"))
