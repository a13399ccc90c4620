"""Client connection lifecycle state machine.

States: ``idle → connecting → authenticated → subscribed``; after a
server-side close or a lost transport the machine moves to
``reconnecting``, waits out an exponential backoff and connects again,
re-joining every room it held. It gives up after
``reconnect_max_attempts`` consecutive failures.

All transitions happen inside one runner task, so no two transitions
ever run concurrently. The runner task is the only scheduled handle:
:meth:`SyncStateMachine.stop` cancels it, which also cancels a pending
backoff sleep and releases the transport.
"""

from __future__ import annotations

import asyncio
import contextlib
import enum
import logging
from collections.abc import Awaitable, Callable

from feverwatch._backoff import backoff_delay
from feverwatch._transport import ClientTransport, DisconnectCause, Disconnected
from feverwatch.config import FeverWatchConfig
from feverwatch.exceptions import AuthFailure, ConnectionExhausted, FeverWatchError, TransportError, UnknownEventError
from feverwatch.gateway import CLOSE_AUTH_FAILED
from feverwatch.models.events import (
    AuthError,
    AuthMessage,
    AuthPayload,
    AuthSuccess,
    JoinDevice,
    LeaveDevice,
    ServerMessage,
    decode_server_message,
    encode_message,
)

_logger = logging.getLogger(__name__)

# Causes after which the machine reconnects on its own.
_RECONNECTABLE = frozenset({DisconnectCause.SERVER_CLOSED, DisconnectCause.TRANSPORT_LOST})


class SyncState(enum.StrEnum):
    IDLE = "idle"
    CONNECTING = "connecting"
    AUTHENTICATED = "authenticated"
    SUBSCRIBED = "subscribed"
    RECONNECTING = "reconnecting"


class SyncStateMachine:
    """Owns one client's gateway connection. Holds no business data."""

    def __init__(
        self,
        transport_factory: Callable[[], ClientTransport],
        *,
        config: FeverWatchConfig | None = None,
        on_event: Callable[[ServerMessage], None] | None = None,
        on_state: Callable[[SyncState], None] | None = None,
        on_terminal: Callable[[FeverWatchError], None] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._transport_factory = transport_factory
        self._config = config or FeverWatchConfig()
        self._on_event = on_event
        self._on_state = on_state
        self._on_terminal = on_terminal
        self._sleep = sleep
        self._state = SyncState.IDLE
        self._rooms: set[str] = set()
        self._transport: ClientTransport | None = None
        self._task: asyncio.Task[None] | None = None
        self._last_error: FeverWatchError | None = None

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def rooms(self) -> frozenset[str]:
        return frozenset(self._rooms)

    @property
    def last_error(self) -> FeverWatchError | None:
        """The terminal condition that last sent the machine to idle, if any."""
        return self._last_error

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    def start(self, token: str) -> asyncio.Task[None]:
        """Start connecting with *token*. Does nothing if already running."""
        if self._task is not None and not self._task.done():
            return self._task
        self._last_error = None
        self._task = asyncio.get_running_loop().create_task(self._run(token))
        return self._task

    async def stop(self) -> None:
        """Force the machine to idle, cancelling any scheduled reconnect."""
        task = self._task
        self._task = None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._set_state(SyncState.IDLE)

    async def wait(self) -> None:
        """Wait until the runner ends (terminal condition or :meth:`stop`)."""
        task = self._task
        if task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def join(self, device_id: str) -> None:
        """Add a room; it is joined now if subscribed and re-joined after every reconnect."""
        self._rooms.add(device_id)
        if self._state == SyncState.SUBSCRIBED:
            await self._send_quietly(encode_message(JoinDevice(data=device_id)))

    async def leave(self, device_id: str) -> None:
        self._rooms.discard(device_id)
        if self._state == SyncState.SUBSCRIBED:
            await self._send_quietly(encode_message(LeaveDevice(data=device_id)))

    # ------------------------------------------------------------------
    # Runner
    # ------------------------------------------------------------------

    async def _run(self, token: str) -> None:
        failures = 0
        try:
            while True:
                self._set_state(SyncState.CONNECTING)
                outcome = await self._connect_once(token)
                if self._state == SyncState.SUBSCRIBED:
                    failures = 0

                if outcome.cause == DisconnectCause.AUTH_REJECTED:
                    self._finish(AuthFailure(f"Gateway rejected the session: {outcome.reason}", reason=outcome.reason))
                    return
                if outcome.cause not in _RECONNECTABLE:
                    self._set_state(SyncState.IDLE)
                    return

                budget = self._config.reconnect_max_attempts
                if failures >= budget:
                    self._finish(
                        ConnectionExhausted(f"Gave up reconnecting after {failures} attempt(s)", attempts=failures)
                    )
                    return

                delay = backoff_delay(
                    failures, base=self._config.reconnect_base_delay, cap=self._config.reconnect_max_delay
                )
                failures += 1
                self._set_state(SyncState.RECONNECTING)
                _logger.info(
                    "Gateway connection ended (%s), reconnect %d/%d in %.1fs",
                    outcome.cause,
                    failures,
                    budget,
                    delay,
                )
                await self._sleep(delay)
        finally:
            if self._state != SyncState.IDLE:
                self._set_state(SyncState.IDLE)

    async def _connect_once(self, token: str) -> Disconnected:
        """Run one connection from connect to disconnect."""
        transport = self._transport_factory()
        self._transport = transport
        try:
            await transport.connect()
            await transport.send(encode_message(AuthMessage(data=AuthPayload(token=token))))
            async with asyncio.timeout(self._config.auth_timeout):
                rejected = await self._await_auth(transport)
            if rejected is not None:
                return rejected
            self._set_state(SyncState.AUTHENTICATED)
            await self._rejoin(transport)
            self._set_state(SyncState.SUBSCRIBED)
            _logger.info("Gateway subscribed rooms=%s", sorted(self._rooms))
            return await self._pump(transport)
        except TransportError as exc:
            _logger.debug("Gateway transport failure", exc_info=True)
            return Disconnected(DisconnectCause.TRANSPORT_LOST, reason=str(exc))
        except TimeoutError:
            _logger.warning("Gateway did not answer auth within %.1fs", self._config.auth_timeout)
            return Disconnected(DisconnectCause.TRANSPORT_LOST, reason="auth timeout")
        finally:
            self._transport = None
            try:
                await transport.close()
            except Exception:
                _logger.debug("Transport close failed", exc_info=True)

    async def _await_auth(self, transport: ClientTransport) -> Disconnected | None:
        """Wait for the auth reply. Returns the disconnect if the session never got authenticated."""
        while True:
            frame = await transport.receive()
            if isinstance(frame, Disconnected):
                if frame.code == CLOSE_AUTH_FAILED:
                    return Disconnected(DisconnectCause.AUTH_REJECTED, code=frame.code, reason=frame.reason)
                return frame
            message = self._decode(frame)
            match message:
                case AuthSuccess(data=payload):
                    _logger.info("Gateway authenticated user=%s", payload.user_id)
                    return None
                case AuthError(data=payload):
                    return Disconnected(DisconnectCause.AUTH_REJECTED, reason=payload.reason)
                case _:
                    continue

    async def _rejoin(self, transport: ClientTransport) -> None:
        joined: set[str] = set()
        # Rooms added while we were re-joining are picked up by the next pass.
        while pending := self._rooms - joined:
            for device_id in sorted(pending):
                await transport.send(encode_message(JoinDevice(data=device_id)))
                joined.add(device_id)

    async def _pump(self, transport: ClientTransport) -> Disconnected:
        while True:
            frame = await transport.receive()
            if isinstance(frame, Disconnected):
                return frame
            message = self._decode(frame)
            if message is None or self._on_event is None:
                continue
            try:
                self._on_event(message)
            except Exception:
                _logger.warning("Event handler failed for %s", message.event, exc_info=True)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _decode(frame: str) -> ServerMessage | None:
        try:
            return decode_server_message(frame)
        except UnknownEventError:
            _logger.debug("Ignoring unknown gateway frame", exc_info=True)
            return None

    async def _send_quietly(self, frame: str) -> None:
        transport = self._transport
        if transport is None:
            return
        try:
            await transport.send(frame)
        except TransportError:
            # The runner sees the loss on its next receive.
            _logger.debug("Send failed", exc_info=True)

    def _finish(self, error: FeverWatchError) -> None:
        self._last_error = error
        _logger.warning("Gateway sync stopped: %s", error)
        self._set_state(SyncState.IDLE)
        if self._on_terminal is not None:
            try:
                self._on_terminal(error)
            except Exception:
                _logger.warning("Terminal handler failed", exc_info=True)

    def _set_state(self, state: SyncState) -> None:
        if state == self._state:
            return
        _logger.debug("Sync state %s -> %s", self._state, state)
        self._state = state
        if self._on_state is not None:
            try:
                self._on_state(state)
            except Exception:
                _logger.warning("State handler failed", exc_info=True)
