"""Temperature reading and classification models."""

from __future__ import annotations

import enum
import uuid
from typing import Any

from pydantic import Field, field_validator, model_validator

from feverwatch.models._base import FeverWatchModel, Timestamp, utcnow

# Sensor sanity limits for raw device samples.
MAX_SENSOR_DISCREPANCY = 2.0
AMBIENT_RANGE = (10.0, 40.0)


class MeasurementChannel(enum.StrEnum):
    """How the device took the sample."""

    INFRARED = "infrared"
    CONTACT = "contact"
    COMBINED = "combined"


class FeverSeverity(enum.StrEnum):
    """Fever severity tiers, from ``none`` up to ``critical``."""

    NONE = "none"
    MILD = "mild"
    MODERATE = "moderate"
    HIGH = "high"
    CRITICAL = "critical"


def _round_temp(value: float | None) -> float | None:
    if value is None:
        return None
    return round(float(value), 1)


class Reading(FeverWatchModel):
    """A single body-temperature sample. Immutable once created.

    Devices may send only the raw sensor values (``infraredTemp``,
    ``contactTemp``); the primary ``temperature`` is then derived from the
    measurement channel, preferring contact over infrared for ``combined``.
    """

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    device_id: str
    user_id: str
    temperature: float | None = None
    channel: MeasurementChannel = Field(default=MeasurementChannel.COMBINED, alias="measurementType")
    infrared_temp: float | None = None
    contact_temp: float | None = None
    ambient_temp: float | None = None
    timestamp: Timestamp = Field(default_factory=utcnow)
    is_valid: bool = True

    @model_validator(mode="before")
    @classmethod
    def _derive_primary_temperature(cls, values: Any) -> Any:
        if not isinstance(values, dict):
            return values
        if values.get("temperature") is not None:
            return values
        merged = dict(values)
        channel = merged.get("measurementType", merged.get("channel", MeasurementChannel.COMBINED))
        contact = merged.get("contactTemp", merged.get("contact_temp"))
        infrared = merged.get("infraredTemp", merged.get("infrared_temp"))
        if channel == MeasurementChannel.CONTACT:
            merged["temperature"] = contact
        elif channel == MeasurementChannel.INFRARED:
            merged["temperature"] = infrared
        else:
            merged["temperature"] = contact if contact is not None else infrared
        return merged

    @field_validator("temperature", "infrared_temp", "contact_temp", "ambient_temp")
    @classmethod
    def _one_decimal(cls, value: float | None) -> float | None:
        return _round_temp(value)

    def sensor_issues(self) -> list[str]:
        """Raw-sensor sanity problems that make the sample untrustworthy."""
        issues: list[str] = []
        if self.infrared_temp is not None and self.contact_temp is not None:
            if abs(self.infrared_temp - self.contact_temp) > MAX_SENSOR_DISCREPANCY:
                issues.append("Large discrepancy between sensors")
        if self.ambient_temp is not None:
            low, high = AMBIENT_RANGE
            if not low <= self.ambient_temp <= high:
                issues.append("Extreme ambient temperature")
        return issues


class ClassifiedEvent(FeverWatchModel):
    """A reading annotated with its fever classification.

    Derived, never persisted independently of the reading it annotates.
    """

    reading: Reading
    fever_detected: bool
    fever_severity: FeverSeverity
    threshold: float

    @property
    def device_id(self) -> str:
        return self.reading.device_id

    @property
    def user_id(self) -> str:
        return self.reading.user_id

    @property
    def temperature(self) -> float:
        assert self.reading.temperature is not None  # noqa: S101
        return self.reading.temperature
