"""Server-side alert pipeline: classifier → dispatcher → gateway."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Mapping
from datetime import datetime
from typing import Any

from feverwatch import alerts
from feverwatch.classifier import classify
from feverwatch.config import FeverWatchConfig
from feverwatch.dispatcher import DispatchResult, NotificationDispatcher
from feverwatch.exceptions import InvalidReadingError
from feverwatch.gateway import RealtimeGateway
from feverwatch.models._base import utcnow
from feverwatch.models.device import Device, DeviceStatus
from feverwatch.models.events import (
    DeviceStatusPayload,
    DeviceStatusUpdate,
    FeverAlert,
    TemperaturePayload,
    TemperatureUpdate,
)
from feverwatch.models.notification import NotificationRequest
from feverwatch.models.reading import ClassifiedEvent, Reading
from feverwatch.records import InMemoryRecordStore

_logger = logging.getLogger(__name__)


class AlertPipeline:
    """Routes device traffic through classification, fan-out and dispatch.

    Notification dispatches run as background tasks so a slow channel
    never holds up the next reading; :meth:`aclose` waits for them.
    """

    def __init__(
        self,
        *,
        records: InMemoryRecordStore,
        gateway: RealtimeGateway,
        dispatcher: NotificationDispatcher,
        config: FeverWatchConfig | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._records = records
        self._gateway = gateway
        self._dispatcher = dispatcher
        self._config = config or FeverWatchConfig()
        self._clock = clock
        self._tasks: set[asyncio.Task[DispatchResult | None]] = set()
        self._low_battery_alerted: set[str] = set()

    @property
    def records(self) -> InMemoryRecordStore:
        return self._records

    # ------------------------------------------------------------------
    # Readings
    # ------------------------------------------------------------------

    def threshold_for(self, device: Device | None) -> float:
        if device is not None and device.fever_threshold is not None:
            return device.fever_threshold
        return self._config.fever_threshold

    async def handle_reading(self, reading: Reading) -> ClassifiedEvent | None:
        """Classify a reading and fan it out. Invalid readings are dropped."""
        device = self._records.get_device(reading.device_id)
        try:
            event = classify(
                reading,
                threshold=self.threshold_for(device),
                plausible_range=(self._config.min_temperature, self._config.max_temperature),
            )
        except InvalidReadingError as exc:
            _logger.warning("Dropping reading from %s (%s): %s", exc.device_id, exc.reason, exc)
            return None

        now = self._clock()
        updated_at = now
        if device is not None:
            came_online = device.status == DeviceStatus.OFFLINE
            changes: dict[str, Any] = {"last_seen": now}
            if came_online:
                changes["status"] = DeviceStatus.ONLINE
            updated = self._records.update_device(device.device_id, now=now, **changes)
            if updated is not None:
                updated_at = updated.updated_at
                if came_online:
                    self._publish_status(updated)

        self._gateway.publish_to_device(
            event.device_id,
            TemperatureUpdate(data=TemperaturePayload.from_classified(event, updated_at=updated_at)),
        )
        _logger.debug(
            "Reading %s device=%s temp=%.1f severity=%s",
            reading.id,
            event.device_id,
            event.temperature,
            event.fever_severity,
        )

        if event.fever_detected:
            _logger.info(
                "Fever detected device=%s temp=%.1f severity=%s",
                event.device_id,
                event.temperature,
                event.fever_severity,
            )
            self._gateway.publish_to_device(event.device_id, FeverAlert(data=event))
            self.dispatch(alerts.fever_alert(event))
        return event

    # ------------------------------------------------------------------
    # Device status and alerts
    # ------------------------------------------------------------------

    async def handle_device_status(self, device_id: str, payload: Mapping[str, Any]) -> Device | None:
        """Apply a device status publish (``status``, ``batteryLevel``, ``signalStrength``)."""
        device = self._records.get_device(device_id)
        if device is None:
            _logger.warning("Status from unknown device %s", device_id)
            return None

        status: DeviceStatus | None = None
        raw_status = payload.get("status")
        if raw_status is not None:
            try:
                status = DeviceStatus(str(raw_status))
            except ValueError:
                _logger.warning("Unknown status %r from device %s", raw_status, device_id)

        now = self._clock()
        try:
            updated = self._records.update_device(
                device_id,
                now=now,
                status=status,
                battery_level=payload.get("batteryLevel"),
                signal_strength=payload.get("signalStrength"),
                last_seen=now,
            )
        except ValueError:
            _logger.warning("Rejected status payload from device %s", device_id, exc_info=True)
            return None
        if updated is None:
            return None

        self._publish_status(updated)
        self._check_battery(updated)
        if updated.status == DeviceStatus.OFFLINE and device.status != DeviceStatus.OFFLINE:
            self.dispatch(alerts.device_offline_alert(updated))
        return updated

    async def handle_device_alert(self, device_id: str, payload: Mapping[str, Any]) -> None:
        device = self._records.get_device(device_id)
        if device is None:
            _logger.warning("Alert from unknown device %s", device_id)
            return
        request = alerts.device_alert(device, payload)
        _logger.info("Device alert %s from %s", request.data.get("alertType"), device_id)
        self.dispatch(request)

    def sweep_offline(self, now: datetime | None = None) -> list[Device]:
        """Mark devices silent for longer than ``offline_after`` as offline and alert once."""
        now = now or self._clock()
        marked: list[Device] = []
        for device in self._records.stale_devices(now, self._config.offline_after):
            updated = self._records.update_device(device.device_id, now=now, status=DeviceStatus.OFFLINE)
            if updated is None:
                continue
            _logger.info("Device %s went offline (last seen %s)", updated.device_id, updated.last_seen)
            self._publish_status(updated)
            self.dispatch(alerts.device_offline_alert(updated))
            marked.append(updated)
        return marked

    def _publish_status(self, device: Device) -> None:
        self._gateway.publish_to_device(
            device.device_id, DeviceStatusUpdate(data=DeviceStatusPayload.from_device(device))
        )

    def _check_battery(self, device: Device) -> None:
        level = device.battery_level
        if level is None:
            return
        if level >= self._config.low_battery_threshold:
            self._low_battery_alerted.discard(device.device_id)
            return
        # One alert per drop below the threshold.
        if device.device_id in self._low_battery_alerted:
            return
        self._low_battery_alerted.add(device.device_id)
        self.dispatch(
            alerts.low_battery_alert(device, level, critical_below=self._config.critical_battery_threshold)
        )

    # ------------------------------------------------------------------
    # Background dispatch
    # ------------------------------------------------------------------

    def dispatch(self, request: NotificationRequest) -> asyncio.Task[DispatchResult | None]:
        """Start dispatching *request* in the background."""
        task = asyncio.get_running_loop().create_task(self._dispatch(request))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _dispatch(self, request: NotificationRequest) -> DispatchResult | None:
        try:
            return await self._dispatcher.dispatch(request)
        except Exception:
            _logger.exception("Dispatch of %s for user %s failed", request.type, request.user_id)
            return None

    async def drain(self) -> None:
        """Wait for every in-flight dispatch to settle."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def aclose(self) -> None:
        await self.drain()
