from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from typing import Any

import pytest

from feverwatch.collaborators import StaticSessionAuthority
from feverwatch.config import FeverWatchConfig
from feverwatch.gateway import (
    CLOSE_AUTH_FAILED,
    CLOSE_AUTH_UNAVAILABLE,
    CLOSE_SLOW_CONSUMER,
    ConnectionState,
    RealtimeGateway,
)
from feverwatch.models.device import DeviceStatus
from feverwatch.models.events import DeviceStatusPayload, DeviceStatusUpdate


class _Connection:
    def __init__(self, *, blocked: bool = False) -> None:
        self.frames: list[dict[str, Any]] = []
        self.close_code: int | None = None
        self.close_reason: bytes = b""
        self._release = asyncio.Event()
        if not blocked:
            self._release.set()

    async def send_str(self, data: str) -> None:
        await self._release.wait()
        self.frames.append(json.loads(data))

    async def close(self, *, code: int = 1000, message: bytes = b"") -> bool:
        self.close_code = code
        self.close_reason = message
        return True

    def events(self) -> list[str]:
        return [frame["event"] for frame in self.frames]


class _Registry:
    def __init__(self, owned: dict[str, set[str]]) -> None:
        self._owned = owned

    async def user_owns_device(self, user_id: str, device_id: str) -> bool:
        return device_id in self._owned.get(user_id, set())


async def _wait_until(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.001)


def _gateway(**config: Any) -> RealtimeGateway:
    return RealtimeGateway(
        authority=StaticSessionAuthority({"tok-a": "user-a", "tok-b": "user-b"}),
        registry=_Registry({"user-a": {"dev-1", "dev-2"}, "user-b": {"dev-3"}}),
        config=FeverWatchConfig(**config),
    )


def _status(device_id: str, battery: int = 80) -> DeviceStatusUpdate:
    return DeviceStatusUpdate(
        data=DeviceStatusPayload(device_id=device_id, status=DeviceStatus.ONLINE, battery_level=battery)
    )


async def _subscribed(gateway: RealtimeGateway, token: str, *rooms: str) -> tuple[str, _Connection]:
    connection = _Connection()
    session = gateway.open(connection)
    await gateway.handle_frame(session.session_id, json.dumps({"event": "auth", "data": {"token": token}}))
    for room in rooms:
        await gateway.handle_frame(session.session_id, json.dumps({"event": "join_device", "data": room}))
    return session.session_id, connection


@pytest.mark.asyncio
async def test_valid_token_subscribes_session() -> None:
    gateway = _gateway()
    session_id, connection = await _subscribed(gateway, "tok-a")

    session = gateway.get_session(session_id)
    assert session is not None
    assert session.state == ConnectionState.SUBSCRIBED
    assert session.user_id == "user-a"
    await _wait_until(lambda: connection.events() == ["auth_success"])
    assert connection.frames[0]["data"] == {"userId": "user-a"}
    assert gateway.is_user_connected("user-a")
    await gateway.aclose()


@pytest.mark.asyncio
async def test_invalid_token_closes_connection() -> None:
    gateway = _gateway()
    connection = _Connection()
    session = gateway.open(connection)

    await gateway.handle_frame(session.session_id, '{"event":"auth","data":{"token":"forged"}}')

    assert connection.events() == ["auth_error"]
    assert connection.frames[0]["data"]["reason"] == "invalid_token"
    assert connection.close_code == CLOSE_AUTH_FAILED
    assert gateway.get_session(session.session_id) is None
    assert session.state == ConnectionState.DISCONNECTED


@pytest.mark.asyncio
async def test_missing_auth_times_out() -> None:
    gateway = _gateway(auth_timeout=0.01)
    connection = _Connection()
    session = gateway.open(connection)

    await _wait_until(lambda: connection.close_code is not None)

    assert connection.close_code == CLOSE_AUTH_FAILED
    assert connection.frames == [{"event": "auth_error", "data": {"reason": "auth_timeout"}}]
    assert gateway.get_session(session.session_id) is None
    await gateway.aclose()


@pytest.mark.asyncio
async def test_join_before_auth_is_ignored() -> None:
    gateway = _gateway()
    session = gateway.open(_Connection())

    await gateway.handle_frame(session.session_id, '{"event":"join_device","data":"dev-1"}')

    assert gateway.room_members("dev-1") == set()
    await gateway.aclose()


@pytest.mark.asyncio
async def test_unauthorized_join_is_silently_refused(caplog: pytest.LogCaptureFixture) -> None:
    gateway = _gateway()
    session_id, connection = await _subscribed(gateway, "tok-a", "dev-3")

    assert gateway.room_members("dev-3") == set()
    assert gateway.publish_to_device("dev-3", _status("dev-3")) == 0
    await _wait_until(lambda: len(connection.frames) == 1)
    await asyncio.sleep(0.01)
    assert connection.events() == ["auth_success"]
    assert "Refused join_device" in caplog.text
    await gateway.aclose()


@pytest.mark.asyncio
async def test_fan_out_reaches_every_room_member_in_order() -> None:
    gateway = _gateway()
    first_id, first = await _subscribed(gateway, "tok-a", "dev-1")
    _, second = await _subscribed(gateway, "tok-a", "dev-1")
    _, other = await _subscribed(gateway, "tok-a", "dev-2")

    for battery in (90, 80, 70):
        assert gateway.publish_to_device("dev-1", _status("dev-1", battery)) == 2

    for connection in (first, second):
        await _wait_until(lambda c=connection: len(c.frames) == 4)
        assert [f["data"]["batteryLevel"] for f in connection.frames[1:]] == [90, 80, 70]
    assert other.events() == ["auth_success"]
    assert first_id in gateway.room_members("dev-1")
    await gateway.aclose()


@pytest.mark.asyncio
async def test_leave_device_stops_delivery() -> None:
    gateway = _gateway()
    session_id, _ = await _subscribed(gateway, "tok-a", "dev-1")

    await gateway.handle_frame(session_id, '{"event":"leave_device","data":"dev-1"}')

    assert gateway.publish_to_device("dev-1", _status("dev-1")) == 0
    assert gateway.stats()["rooms"] == 0
    await gateway.aclose()


@pytest.mark.asyncio
async def test_slow_session_is_dropped_without_stalling_others() -> None:
    gateway = _gateway(session_queue_size=2, session_send_timeout=10.0)
    _, fast = await _subscribed(gateway, "tok-a", "dev-1")

    slow = _Connection(blocked=True)
    session = gateway.open(slow)
    await gateway.handle_frame(session.session_id, '{"event":"auth","data":{"token":"tok-a"}}')
    await gateway.handle_frame(session.session_id, '{"event":"join_device","data":"dev-1"}')

    await _wait_until(lambda: len(fast.frames) == 1)
    for count, battery in enumerate(range(10, 60, 10), start=2):
        gateway.publish_to_device("dev-1", _status("dev-1", battery))
        await _wait_until(lambda n=count: len(fast.frames) == n)

    await _wait_until(lambda: slow.close_code is not None)
    assert slow.close_code == CLOSE_SLOW_CONSUMER
    assert gateway.get_session(session.session_id) is None
    await _wait_until(lambda: len(fast.frames) == 6)
    assert [f["data"]["batteryLevel"] for f in fast.frames[1:]] == [10, 20, 30, 40, 50]
    await gateway.aclose()


@pytest.mark.asyncio
async def test_send_timeout_drops_session() -> None:
    gateway = _gateway(session_send_timeout=0.01)
    stuck = _Connection(blocked=True)
    session = gateway.open(stuck)

    await gateway.handle_frame(session.session_id, '{"event":"auth","data":{"token":"tok-a"}}')

    await _wait_until(lambda: stuck.close_code is not None)
    assert stuck.close_code == CLOSE_SLOW_CONSUMER
    assert not gateway.is_user_connected("user-a")


@pytest.mark.asyncio
async def test_detach_destroys_session_immediately() -> None:
    gateway = _gateway()
    session_id, connection = await _subscribed(gateway, "tok-a", "dev-1")
    await _wait_until(lambda: len(connection.frames) == 1)

    gateway.detach(session_id)

    assert gateway.publish_to_device("dev-1", _status("dev-1")) == 0
    assert gateway.send_to_user("user-a", _status("dev-1")) == 0
    assert gateway.stats() == {"sessions": 0, "connected_users": 0, "rooms": 0}
    await asyncio.sleep(0.01)
    assert connection.events() == ["auth_success"]


@pytest.mark.asyncio
async def test_ping_gets_pong() -> None:
    gateway = _gateway()
    session_id, connection = await _subscribed(gateway, "tok-a")

    await gateway.handle_frame(session_id, '{"event":"ping"}')

    await _wait_until(lambda: "pong" in connection.events())
    await gateway.aclose()


@pytest.mark.asyncio
async def test_unknown_frames_are_ignored() -> None:
    gateway = _gateway()
    session_id, _ = await _subscribed(gateway, "tok-a")

    await gateway.handle_frame(session_id, "garbage")
    await gateway.handle_frame(session_id, '{"event":"self_destruct"}')

    assert gateway.get_session(session_id) is not None
    await gateway.aclose()


@pytest.mark.asyncio
async def test_user_routing_broadcast_and_disconnect() -> None:
    gateway = _gateway()
    _, a1 = await _subscribed(gateway, "tok-a")
    _, a2 = await _subscribed(gateway, "tok-a")
    _, b1 = await _subscribed(gateway, "tok-b")
    pending = gateway.open(_Connection())

    assert gateway.send_to_user("user-a", _status("dev-1")) == 2
    assert gateway.broadcast(_status("dev-1")) == 3
    assert gateway.stats() == {"sessions": 4, "connected_users": 2, "rooms": 0}

    assert gateway.disconnect_user("user-a") == 2
    await _wait_until(lambda: a1.close_code is not None and a2.close_code is not None)
    assert not gateway.is_user_connected("user-a")
    assert gateway.is_user_connected("user-b")
    assert b1.close_code is None
    assert gateway.get_session(pending.session_id) is not None
    await gateway.aclose()


class _FailingRegistry:
    async def user_owns_device(self, user_id: str, device_id: str) -> bool:
        raise ConnectionError("registry unavailable")


class _FailingAuthority:
    async def validate(self, token: str) -> str:
        raise TimeoutError("session service timed out")


@pytest.mark.asyncio
async def test_join_is_refused_when_registry_fails(caplog: pytest.LogCaptureFixture) -> None:
    gateway = RealtimeGateway(
        authority=StaticSessionAuthority({"tok-a": "user-a"}),
        registry=_FailingRegistry(),
        config=FeverWatchConfig(),
    )
    session_id, connection = await _subscribed(gateway, "tok-a", "dev-1")

    session = gateway.get_session(session_id)
    assert session is not None
    assert session.state == ConnectionState.SUBSCRIBED
    assert session.rooms == set()
    assert gateway.room_members("dev-1") == set()
    await _wait_until(lambda: connection.events() == ["auth_success"])
    assert connection.close_code is None
    assert "Ownership check failed" in caplog.text
    await gateway.aclose()


@pytest.mark.asyncio
async def test_session_service_failure_closes_without_auth_error() -> None:
    gateway = RealtimeGateway(
        authority=_FailingAuthority(),
        registry=_Registry({}),
        config=FeverWatchConfig(),
    )
    connection = _Connection()
    session = gateway.open(connection)

    await gateway.handle_frame(session.session_id, '{"event":"auth","data":{"token":"tok-a"}}')

    assert connection.frames == []
    assert connection.close_code == CLOSE_AUTH_UNAVAILABLE
    assert connection.close_reason == b"auth_unavailable"
    assert gateway.get_session(session.session_id) is None
    await gateway.aclose()
