"""In-memory record store for devices and notifications.

Stands in for the relational store: it persists the records the
periodic snapshot endpoints serve and answers device ownership lookups
for the gateway. Records are immutable models; every write replaces the
stored instance.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

from feverwatch.models._base import utcnow
from feverwatch.models.device import Device, DeviceStatus
from feverwatch.models.notification import Notification


class InMemoryRecordStore:
    """Device and notification records keyed by id.

    Devices are keyed by their hardware ``device_id``, which is also the
    real-time room identifier.
    """

    def __init__(self) -> None:
        self._devices: dict[str, Device] = {}
        self._notifications: dict[str, Notification] = {}

    # ------------------------------------------------------------------
    # Devices
    # ------------------------------------------------------------------

    def upsert_device(self, device: Device) -> Device:
        self._devices[device.device_id] = device
        return device

    def get_device(self, device_id: str) -> Device | None:
        return self._devices.get(device_id)

    def update_device(self, device_id: str, *, now: datetime | None = None, **changes: Any) -> Device | None:
        """Apply *changes* to a device and bump its ``updated_at``.

        ``None`` values are ignored so partial status payloads never clear
        known fields.
        """
        device = self._devices.get(device_id)
        if device is None:
            return None
        patch = {key: value for key, value in changes.items() if value is not None}
        patch["updated_at"] = now or utcnow()
        # Round-trip through validation so range checks still apply.
        updated = Device.model_validate({**device.model_dump(), **patch})
        self._devices[device_id] = updated
        return updated

    def list_devices(self, user_id: str) -> list[Device]:
        return [d for d in self._devices.values() if d.user_id == user_id]

    def stale_devices(self, now: datetime, offline_after: float) -> list[Device]:
        """Devices not heard from within *offline_after* seconds and not yet marked offline."""
        horizon = now - timedelta(seconds=offline_after)
        return [
            d
            for d in self._devices.values()
            if d.status != DeviceStatus.OFFLINE and d.last_seen is not None and d.last_seen < horizon
        ]

    async def user_owns_device(self, user_id: str, device_id: str) -> bool:
        device = self._devices.get(device_id)
        return device is not None and device.user_id == user_id

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    def save_notification(self, notification: Notification) -> Notification:
        current = self._notifications.get(notification.id)
        if current is not None:
            # Owner-controlled flags survive dispatcher writes.
            notification = notification.model_copy(
                update={
                    "is_read": current.is_read,
                    "read_at": current.read_at,
                    "is_archived": current.is_archived,
                    "archived_at": current.archived_at,
                    "updated_at": max(current.updated_at, notification.updated_at),
                }
            )
        self._notifications[notification.id] = notification
        return notification

    def get_notification(self, notification_id: str) -> Notification | None:
        return self._notifications.get(notification_id)

    def list_notifications(self, user_id: str, *, include_archived: bool = False) -> list[Notification]:
        return [
            n
            for n in self._notifications.values()
            if n.user_id == user_id and (include_archived or not n.is_archived)
        ]

    def mark_notification_read(self, notification_id: str, user_id: str) -> Notification | None:
        """Mark a notification read on behalf of its owner. ``None`` if not found or not owned."""
        current = self.get_notification(notification_id)
        if current is None or current.user_id != user_id:
            return None
        updated = current.mark_read()
        self._notifications[notification_id] = updated
        return updated

    def archive_notification(self, notification_id: str, user_id: str) -> Notification | None:
        current = self.get_notification(notification_id)
        if current is None or current.user_id != user_id:
            return None
        updated = current.archive()
        self._notifications[notification_id] = updated
        return updated
