"""Device record model."""

from __future__ import annotations

import enum
from datetime import datetime, timedelta

from pydantic import Field

from feverwatch.models._base import FeverWatchModel, OptionalTimestamp, Timestamp, utcnow


class DeviceStatus(enum.StrEnum):
    ONLINE = "online"
    OFFLINE = "offline"
    ERROR = "error"
    MAINTENANCE = "maintenance"


class Device(FeverWatchModel):
    """A sensor device. Server-owned; clients hold a read-only cached copy.

    ``user_id`` is a foreign-key style reference to the owner; ownership
    questions go through the device registry.
    """

    id: str
    device_id: str
    user_id: str
    name: str = ""
    status: DeviceStatus = DeviceStatus.OFFLINE
    battery_level: int | None = Field(default=None, ge=0, le=100)
    signal_strength: int | None = Field(default=None, ge=-100, le=0)
    fever_threshold: float | None = Field(default=None, ge=35.0, le=42.0)
    last_seen: OptionalTimestamp = None
    updated_at: Timestamp = Field(default_factory=utcnow)

    def is_online(self, now: datetime, offline_after: float) -> bool:
        if self.last_seen is None:
            return False
        return now - self.last_seen <= timedelta(seconds=offline_after)
