from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from feverwatch._transport import DisconnectCause, Disconnected
from feverwatch.client import FeverWatchClient, SnapshotPoller, deltas_for_message
from feverwatch.config import FeverWatchConfig
from feverwatch.exceptions import AuthFailure, FeverWatchError, TransportError
from feverwatch.models import (
    Channel,
    DeviceStatus,
    DeviceStatusPayload,
    DeviceStatusUpdate,
    Notification,
    NotificationType,
    NotificationUpdate,
    Pong,
    TemperaturePayload,
    TemperatureUpdate,
    parse_timestamp,
)
from feverwatch.models.events import encode_message
from feverwatch.models.reading import FeverSeverity
from feverwatch.state import ClientStore, Delta, DeltaSource, EntityKind
from feverwatch.sync import SyncState


def _dt(seconds: int = 0) -> datetime:
    return datetime(2026, 1, 1, tzinfo=UTC) + timedelta(seconds=seconds)


def _temperature(updated_at: datetime | None) -> TemperatureUpdate:
    return TemperatureUpdate(
        data=TemperaturePayload(
            device_id="dev-1",
            temperature=39.2,
            fever_detected=True,
            fever_severity=FeverSeverity.HIGH,
            timestamp=_dt(),
            updated_at=updated_at,
        )
    )


class _Transport:
    def __init__(self, auth_reason: str | None = None) -> None:
        self.auth_reason = auth_reason
        self.inbox: asyncio.Queue[str | Disconnected] = asyncio.Queue()
        self.sent: list[dict[str, Any]] = []

    async def connect(self) -> None:
        return None

    async def send(self, frame: str) -> None:
        message = json.loads(frame)
        self.sent.append(message)
        if message["event"] != "auth":
            return
        if self.auth_reason is None:
            reply = {"event": "auth_success", "data": {"userId": "user-1"}}
        else:
            reply = {"event": "auth_error", "data": {"reason": self.auth_reason}}
        self.inbox.put_nowait(json.dumps(reply))

    async def receive(self) -> str | Disconnected:
        return await self.inbox.get()

    async def close(self) -> None:
        self.inbox.put_nowait(Disconnected(DisconnectCause.CLIENT_CLOSED))


async def _wait_until(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.001)


def test_notification_update_becomes_notification_delta() -> None:
    notification = Notification(
        user_id="user-1", type=NotificationType.INFO, title="t", message="m", channels=(Channel.REALTIME,)
    )

    [delta] = deltas_for_message(NotificationUpdate(data=notification))

    assert delta.kind == EntityKind.NOTIFICATION
    assert delta.entity_id == notification.id
    assert delta.source == DeltaSource.STREAM
    assert delta.updated_at == notification.updated_at
    assert delta.data["deliveryStatus"]["realtime"]["status"] == "pending"


def test_temperature_update_becomes_device_delta() -> None:
    [delta] = deltas_for_message(_temperature(_dt(10)))

    assert delta.kind == EntityKind.DEVICE
    assert delta.entity_id == "dev-1"
    assert delta.data["lastTemperature"] == 39.2
    assert delta.data["feverSeverity"] == "high"
    assert parse_timestamp(delta.data["lastSeen"]) == _dt(10)


def test_unversioned_events_produce_no_delta() -> None:
    assert deltas_for_message(_temperature(None)) == []
    assert deltas_for_message(Pong()) == []
    unversioned = DeviceStatusUpdate(data=DeviceStatusPayload(device_id="dev-1", status=DeviceStatus.ONLINE))
    assert deltas_for_message(unversioned) == []


def test_device_status_delta_drops_unknown_fields() -> None:
    update = DeviceStatusUpdate(
        data=DeviceStatusPayload(
            device_id="dev-1", status=DeviceStatus.OFFLINE, battery_level=15, updated_at=_dt(3)
        )
    )

    [delta] = deltas_for_message(update)

    assert "signalStrength" not in delta.data
    assert delta.data["status"] == "offline"
    assert delta.data["batteryLevel"] == 15


@pytest.mark.asyncio
async def test_stream_and_snapshot_converge() -> None:
    transports: list[_Transport] = []

    def factory() -> _Transport:
        transports.append(_Transport())
        return transports[-1]

    async def fetch(token: str) -> list[Delta]:
        assert token == "tok"
        return [
            Delta.from_record(
                EntityKind.DEVICE,
                {
                    "deviceId": "dev-1",
                    "updatedAt": _dt(5).isoformat(),
                    "lastTemperature": 36.8,
                    "batteryLevel": 64,
                },
            )
        ]

    config = FeverWatchConfig(snapshot_interval=3600.0)
    async with FeverWatchClient(config, transport_factory=factory, fetch_snapshot=fetch) as client:
        client.start("tok")
        await client.join_device("dev-1")
        await _wait_until(lambda: client.sync_state == SyncState.SUBSCRIBED)

        transports[0].inbox.put_nowait(encode_message(_temperature(_dt(10))))
        await _wait_until(lambda: (client.store.device("dev-1") or {}).get("lastTemperature") == 39.2)
        await client.refresh()

        device = client.store.device("dev-1")
        assert device is not None
        assert device["lastTemperature"] == 39.2
        assert device["batteryLevel"] == 64
        assert transports[0].sent[1] == {"event": "join_device", "data": "dev-1"}

    assert client.sync_state == SyncState.IDLE


@pytest.mark.asyncio
async def test_terminal_auth_failure_is_forwarded() -> None:
    terminal: list[FeverWatchError] = []

    async def fetch(_token: str) -> list[Delta]:
        return []

    async with FeverWatchClient(
        FeverWatchConfig(snapshot_interval=3600.0),
        transport_factory=lambda: _Transport(auth_reason="invalid_token"),
        fetch_snapshot=fetch,
        on_terminal=terminal.append,
    ) as client:
        client.start("expired")
        await client.sync.wait()

    assert len(terminal) == 1
    assert isinstance(terminal[0], AuthFailure)


class _Sleeps:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


@pytest.mark.asyncio
async def test_poller_survives_failed_fetch() -> None:
    calls = 0

    async def fetch() -> list[Delta]:
        nonlocal calls
        calls += 1
        if calls == 1:
            raise TransportError("HTTP 503 from /api/devices", status_code=503)
        return [
            Delta(
                kind=EntityKind.DEVICE,
                entity_id="dev-1",
                source=DeltaSource.SNAPSHOT,
                updated_at=_dt(1),
                data={"batteryLevel": 70},
            )
        ]

    store = ClientStore()
    sleeps = _Sleeps()
    poller = SnapshotPoller(fetch, store, interval=30.0, sleep=sleeps)

    poller.start()
    await _wait_until(lambda: store.device("dev-1") is not None)
    await poller.stop()

    assert store.device("dev-1") == {"batteryLevel": 70}
    assert sleeps.delays[0] == 30.0
    assert poller.running is False


@pytest.mark.asyncio
async def test_refresh_without_token_is_a_no_op() -> None:
    async def fetch(_token: str) -> list[Delta]:
        raise AssertionError("not expected")

    async with FeverWatchClient(transport_factory=_Transport, fetch_snapshot=fetch) as client:
        assert await client.refresh() is False


@pytest.mark.asyncio
async def test_poller_keeps_running_after_unexpected_error(caplog: pytest.LogCaptureFixture) -> None:
    calls = 0

    async def fetch() -> list[Delta]:
        nonlocal calls
        calls += 1
        if calls == 1:
            raise KeyError("deviceId")
        return []

    sleeps = _Sleeps()
    poller = SnapshotPoller(fetch, ClientStore(), interval=30.0, sleep=sleeps)

    poller.start()
    await _wait_until(lambda: calls >= 2)

    assert poller.running is True
    assert "Unexpected error while polling snapshots" in caplog.text
    await poller.stop()
    assert poller.running is False
