"""Builders that turn domain events into notification requests."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from feverwatch.models.device import Device
from feverwatch.models.notification import Channel, NotificationRequest, NotificationType, Priority
from feverwatch.models.reading import ClassifiedEvent, FeverSeverity

DEFAULT_CHANNELS: tuple[Channel, ...] = (Channel.REALTIME, Channel.PUSH)

_FEVER_PRIORITY: dict[FeverSeverity, Priority] = {
    FeverSeverity.CRITICAL: Priority.CRITICAL,
    FeverSeverity.HIGH: Priority.HIGH,
}

_FEVER_CHANNELS: dict[FeverSeverity, tuple[Channel, ...]] = {
    FeverSeverity.CRITICAL: (*DEFAULT_CHANNELS, Channel.EMAIL, Channel.SMS),
    FeverSeverity.HIGH: (*DEFAULT_CHANNELS, Channel.EMAIL),
}

_FEVER_MESSAGES: dict[FeverSeverity, str] = {
    FeverSeverity.CRITICAL: "CRITICAL: Very high fever detected ({t}°C). Seek immediate medical attention.",
    FeverSeverity.HIGH: "HIGH FEVER: Temperature of {t}°C detected. Consider medical consultation.",
    FeverSeverity.MODERATE: "Moderate fever detected ({t}°C). Monitor closely.",
    FeverSeverity.MILD: "Mild fever detected ({t}°C). Keep monitoring.",
}


def _label(device: Device | None, device_id: str) -> str:
    if device is not None and device.name:
        return device.name
    return device_id


def fever_alert(event: ClassifiedEvent) -> NotificationRequest:
    """Notification for a reading classified at or above the fever threshold."""
    if not event.fever_detected:
        raise ValueError(f"reading {event.reading.id} is not a fever")
    severity = event.fever_severity
    return NotificationRequest(
        user_id=event.user_id,
        type=NotificationType.FEVER_ALERT,
        title="Fever Detected",
        message=_FEVER_MESSAGES[severity].format(t=event.temperature),
        priority=_FEVER_PRIORITY.get(severity, Priority.NORMAL),
        data={
            "deviceId": event.device_id,
            "temperature": event.temperature,
            "readingId": event.reading.id,
            "severity": str(severity),
            "threshold": event.threshold,
        },
        channels=_FEVER_CHANNELS.get(severity, DEFAULT_CHANNELS),
    )


def device_offline_alert(device: Device) -> NotificationRequest:
    name = _label(device, device.device_id)
    return NotificationRequest(
        user_id=device.user_id,
        type=NotificationType.DEVICE_OFFLINE,
        title="Device Offline",
        message=f'Device "{name}" has gone offline and is no longer sending data.',
        priority=Priority.NORMAL,
        data={"deviceId": device.device_id, "deviceName": name},
        channels=DEFAULT_CHANNELS,
    )


def low_battery_alert(device: Device, battery_level: int, *, critical_below: int = 10) -> NotificationRequest:
    """Low-battery warning; below *critical_below* percent it is high priority."""
    name = _label(device, device.device_id)
    critical = battery_level < critical_below
    if critical:
        message = f'Device "{name}" battery is critically low ({battery_level}%). Please charge immediately.'
    else:
        message = f'Device "{name}" battery is low ({battery_level}%). Please charge soon.'
    return NotificationRequest(
        user_id=device.user_id,
        type=NotificationType.LOW_BATTERY,
        title="Low Battery Warning",
        message=message,
        priority=Priority.HIGH if critical else Priority.NORMAL,
        data={"deviceId": device.device_id, "deviceName": name, "batteryLevel": battery_level},
        channels=DEFAULT_CHANNELS,
    )


def device_alert(device: Device, payload: Mapping[str, Any]) -> NotificationRequest:
    """Alert raised by the device firmware itself (``alertType``, ``message``, ``severity``)."""
    name = _label(device, device.device_id)
    alert_type = str(payload.get("alertType") or "unknown")
    kind = NotificationType.SYSTEM_ALERT
    title = f"Device Alert: {alert_type}"
    message = str(payload.get("message") or f'Alert from device "{name}"')
    try:
        priority = Priority(str(payload.get("severity") or Priority.NORMAL))
    except ValueError:
        priority = Priority.NORMAL

    if alert_type == "sensor_error":
        kind = NotificationType.DEVICE_OFFLINE
        title = "Sensor Error"
        priority = Priority.HIGH
    elif alert_type == "calibration_needed":
        title = "Calibration Required"
        message = f'Device "{name}" requires calibration for accurate readings'

    data: dict[str, Any] = {"deviceId": device.device_id, "alertType": alert_type}
    if payload.get("timestamp") is not None:
        data["timestamp"] = payload["timestamp"]
    return NotificationRequest(
        user_id=device.user_id,
        type=kind,
        title=title,
        message=message[:1000],
        priority=priority,
        data=data,
        channels=DEFAULT_CHANNELS,
    )
