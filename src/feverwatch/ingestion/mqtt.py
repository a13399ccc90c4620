"""MQTT ingestion helpers.

This module translates parsed device publishes into pipeline calls.
"""

from __future__ import annotations

import logging
from typing import Any

from pydantic import ValidationError

from feverwatch._mqtt import DeviceMessage, DeviceMessageKind
from feverwatch.classifier import validate_reading
from feverwatch.models.device import Device
from feverwatch.models.reading import Reading
from feverwatch.pipeline import AlertPipeline

_logger = logging.getLogger(__name__)


def build_reading(device: Device, payload: dict[str, Any]) -> Reading:
    """Build a :class:`Reading` from a raw device payload.

    The owner comes from the device record, never from the payload. A
    reading whose raw sensors disagree is kept but flagged invalid.
    Raises ``pydantic.ValidationError`` for malformed payloads.
    """
    body = {key: value for key, value in payload.items() if key not in {"userId", "user_id", "isValid"}}
    body["deviceId"] = device.device_id
    body["userId"] = device.user_id
    reading = Reading.model_validate(body)
    issues = reading.sensor_issues()
    if issues:
        _logger.debug("Reading from %s flagged: %s", device.device_id, "; ".join(issues))
        reading = reading.model_copy(update={"is_valid": False})
    return reading


async def route_device_message(pipeline: AlertPipeline, message: DeviceMessage) -> None:
    """Dispatch one device publish to the matching pipeline handler."""
    match message.kind:
        case DeviceMessageKind.READING:
            device = pipeline.records.get_device(message.device_id)
            if device is None:
                _logger.warning("Reading from unknown device %s", message.device_id)
                return
            try:
                reading = build_reading(device, message.payload)
            except ValidationError as exc:
                _logger.warning(
                    "Malformed reading from %s: %d error(s)", message.device_id, exc.error_count()
                )
                return
            if not reading.is_valid:
                _logger.warning(
                    "Invalid reading from %s: %s",
                    message.device_id,
                    "; ".join(validate_reading(reading)),
                )
            await pipeline.handle_reading(reading)
        case DeviceMessageKind.STATUS:
            await pipeline.handle_device_status(message.device_id, message.payload)
        case DeviceMessageKind.ALERT:
            await pipeline.handle_device_alert(message.device_id, message.payload)
