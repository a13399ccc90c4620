from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from typing import Any

import pytest

from feverwatch._transport import DisconnectCause, Disconnected
from feverwatch.config import FeverWatchConfig
from feverwatch.exceptions import AuthFailure, ConnectionExhausted, FeverWatchError, TransportError
from feverwatch.gateway import CLOSE_AUTH_FAILED, CLOSE_AUTH_UNAVAILABLE
from feverwatch.models.events import ServerMessage, TemperatureUpdate
from feverwatch.sync import SyncState, SyncStateMachine


class _Transport:
    """Scripted gateway connection. Answers the auth frame by itself."""

    def __init__(self, *, fail_connect: bool = False, auth_reply: dict[str, Any] | Disconnected | None = None) -> None:
        self.fail_connect = fail_connect
        self.auth_reply = auth_reply or {"event": "auth_success", "data": {"userId": "user-1"}}
        self.sent: list[dict[str, Any]] = []
        self.closed = False
        self.inbox: asyncio.Queue[str | Disconnected] = asyncio.Queue()

    async def connect(self) -> None:
        if self.fail_connect:
            raise TransportError("connection refused")

    async def send(self, frame: str) -> None:
        if self.closed:
            raise TransportError("closed")
        message = json.loads(frame)
        self.sent.append(message)
        if message["event"] == "auth":
            reply = self.auth_reply
            self.inbox.put_nowait(reply if isinstance(reply, Disconnected) else json.dumps(reply))

    async def receive(self) -> str | Disconnected:
        return await self.inbox.get()

    async def close(self) -> None:
        self.closed = True
        self.inbox.put_nowait(Disconnected(DisconnectCause.CLIENT_CLOSED))

    def drop(self) -> None:
        self.inbox.put_nowait(Disconnected(DisconnectCause.TRANSPORT_LOST))

    def joined(self) -> list[str]:
        return [m["data"] for m in self.sent if m["event"] == "join_device"]


class _Factory:
    def __init__(self, make: Callable[[int], _Transport] | None = None) -> None:
        self._make = make or (lambda _index: _Transport())
        self.created: list[_Transport] = []

    def __call__(self) -> _Transport:
        transport = self._make(len(self.created))
        self.created.append(transport)
        return transport


class _Sleeps:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


class _BlockingSleep:
    def __init__(self) -> None:
        self.started = asyncio.Event()
        self.cancelled = False

    async def __call__(self, delay: float) -> None:
        self.started.set()
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            self.cancelled = True
            raise


async def _wait_until(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.001)


def _config(**kwargs: Any) -> FeverWatchConfig:
    base: dict[str, Any] = {"reconnect_base_delay": 1.0, "reconnect_max_delay": 4.0, "reconnect_max_attempts": 5}
    base.update(kwargs)
    return FeverWatchConfig(**base)


@pytest.mark.asyncio
async def test_rejoins_rooms_after_transport_drop() -> None:
    factory = _Factory()
    sleeps = _Sleeps()
    states: list[SyncState] = []
    machine = SyncStateMachine(factory, config=_config(), on_state=states.append, sleep=sleeps)
    await machine.join("dev-x")

    machine.start("tok")
    await _wait_until(lambda: machine.state == SyncState.SUBSCRIBED)
    assert factory.created[0].joined() == ["dev-x"]
    assert factory.created[0].sent[0] == {"event": "auth", "data": {"token": "tok"}}

    factory.created[0].drop()
    await _wait_until(lambda: len(factory.created) == 2 and machine.state == SyncState.SUBSCRIBED)

    assert factory.created[0].closed is True
    assert factory.created[1].joined() == ["dev-x"]
    assert sleeps.delays == [1.0]
    assert states == [
        SyncState.CONNECTING,
        SyncState.AUTHENTICATED,
        SyncState.SUBSCRIBED,
        SyncState.RECONNECTING,
        SyncState.CONNECTING,
        SyncState.AUTHENTICATED,
        SyncState.SUBSCRIBED,
    ]
    await machine.stop()


@pytest.mark.asyncio
async def test_join_while_subscribed_is_sent_immediately() -> None:
    factory = _Factory()
    machine = SyncStateMachine(factory, config=_config(), sleep=_Sleeps())

    machine.start("tok")
    await _wait_until(lambda: machine.state == SyncState.SUBSCRIBED)
    await machine.join("dev-1")
    await machine.leave("dev-1")

    assert [m["event"] for m in factory.created[0].sent] == ["auth", "join_device", "leave_device"]
    assert machine.rooms == frozenset()
    await machine.stop()


@pytest.mark.asyncio
async def test_reconnect_backoff_and_budget() -> None:
    factory = _Factory(lambda _index: _Transport(fail_connect=True))
    sleeps = _Sleeps()
    terminal: list[FeverWatchError] = []
    machine = SyncStateMachine(factory, config=_config(), on_terminal=terminal.append, sleep=sleeps)

    machine.start("tok")
    await machine.wait()

    assert sleeps.delays == [1.0, 2.0, 4.0, 4.0, 4.0]
    assert len(factory.created) == 6
    assert machine.state == SyncState.IDLE
    assert len(terminal) == 1
    assert isinstance(terminal[0], ConnectionExhausted)
    assert terminal[0].attempts == 5
    assert machine.last_error is terminal[0]


@pytest.mark.asyncio
async def test_failure_counter_resets_after_subscribing() -> None:
    factory = _Factory()
    sleeps = _Sleeps()
    machine = SyncStateMachine(factory, config=_config(), sleep=sleeps)

    machine.start("tok")
    for expected in (1, 2, 3):
        await _wait_until(lambda n=expected: len(factory.created) == n and machine.state == SyncState.SUBSCRIBED)
        factory.created[-1].drop()
    await _wait_until(lambda: len(factory.created) == 4 and machine.state == SyncState.SUBSCRIBED)

    assert sleeps.delays == [1.0, 1.0, 1.0]
    await machine.stop()


@pytest.mark.asyncio
async def test_auth_error_frame_stops_without_reconnecting() -> None:
    factory = _Factory(
        lambda _index: _Transport(auth_reply={"event": "auth_error", "data": {"reason": "invalid_token"}})
    )
    sleeps = _Sleeps()
    terminal: list[FeverWatchError] = []
    machine = SyncStateMachine(factory, config=_config(), on_terminal=terminal.append, sleep=sleeps)

    machine.start("expired")
    await machine.wait()

    assert len(factory.created) == 1
    assert sleeps.delays == []
    assert machine.state == SyncState.IDLE
    assert isinstance(terminal[0], AuthFailure)
    assert terminal[0].reason == "invalid_token"


@pytest.mark.asyncio
async def test_auth_close_code_counts_as_rejection() -> None:
    rejected = Disconnected(DisconnectCause.SERVER_CLOSED, code=CLOSE_AUTH_FAILED, reason="invalid_token")
    factory = _Factory(lambda _index: _Transport(auth_reply=rejected))
    machine = SyncStateMachine(factory, config=_config(), sleep=_Sleeps())

    machine.start("expired")
    await machine.wait()

    assert len(factory.created) == 1
    assert isinstance(machine.last_error, AuthFailure)


@pytest.mark.asyncio
async def test_stop_cancels_pending_reconnect() -> None:
    factory = _Factory(lambda _index: _Transport(fail_connect=True))
    sleep = _BlockingSleep()
    machine = SyncStateMachine(factory, config=_config(), sleep=sleep)

    machine.start("tok")
    await asyncio.wait_for(sleep.started.wait(), 1.0)
    assert machine.state == SyncState.RECONNECTING

    await machine.stop()

    assert sleep.cancelled is True
    assert machine.state == SyncState.IDLE
    assert machine.running is False
    await asyncio.sleep(0.01)
    assert len(factory.created) == 1


@pytest.mark.asyncio
async def test_stop_releases_live_transport() -> None:
    factory = _Factory()
    machine = SyncStateMachine(factory, config=_config(), sleep=_Sleeps())

    machine.start("tok")
    await _wait_until(lambda: machine.state == SyncState.SUBSCRIBED)
    await machine.stop()

    assert factory.created[0].closed is True
    assert machine.state == SyncState.IDLE


@pytest.mark.asyncio
async def test_start_twice_keeps_one_runner() -> None:
    factory = _Factory()
    machine = SyncStateMachine(factory, config=_config(), sleep=_Sleeps())

    first = machine.start("tok")
    second = machine.start("tok")
    await _wait_until(lambda: machine.state == SyncState.SUBSCRIBED)

    assert first is second
    assert len(factory.created) == 1
    await machine.stop()


@pytest.mark.asyncio
async def test_events_are_forwarded_and_handler_errors_contained() -> None:
    factory = _Factory()
    seen: list[ServerMessage] = []

    def on_event(message: ServerMessage) -> None:
        seen.append(message)
        if len(seen) == 1:
            raise RuntimeError("handler bug")

    machine = SyncStateMachine(factory, config=_config(), on_event=on_event, sleep=_Sleeps())
    machine.start("tok")
    await _wait_until(lambda: machine.state == SyncState.SUBSCRIBED)

    frame = {
        "event": "temperature:update",
        "data": {
            "deviceId": "dev-1",
            "temperature": 38.6,
            "feverDetected": True,
            "feverSeverity": "high",
            "timestamp": "2026-01-01T00:00:00Z",
        },
    }
    transport = factory.created[0]
    transport.inbox.put_nowait(json.dumps(frame))
    transport.inbox.put_nowait("not json")
    transport.inbox.put_nowait(json.dumps(frame))
    await _wait_until(lambda: len(seen) == 2)

    assert all(isinstance(message, TemperatureUpdate) for message in seen)
    assert machine.state == SyncState.SUBSCRIBED
    await machine.stop()


@pytest.mark.asyncio
async def test_zero_budget_gives_up_immediately() -> None:
    factory = _Factory(lambda _index: _Transport(fail_connect=True))
    sleeps = _Sleeps()
    machine = SyncStateMachine(factory, config=_config(reconnect_max_attempts=0), sleep=sleeps)

    machine.start("tok")
    await machine.wait()

    assert sleeps.delays == []
    assert isinstance(machine.last_error, ConnectionExhausted)
    assert machine.last_error.attempts == 0


@pytest.mark.asyncio
async def test_auth_service_outage_is_retried() -> None:
    unavailable = Disconnected(DisconnectCause.SERVER_CLOSED, code=CLOSE_AUTH_UNAVAILABLE, reason="auth_unavailable")
    factory = _Factory(lambda index: _Transport(auth_reply=unavailable) if index == 0 else _Transport())
    sleeps = _Sleeps()
    machine = SyncStateMachine(factory, config=_config(), sleep=sleeps)

    machine.start("tok")
    await _wait_until(lambda: len(factory.created) == 2 and machine.state == SyncState.SUBSCRIBED)

    assert sleeps.delays == [1.0]
    assert machine.last_error is None
    await machine.stop()
