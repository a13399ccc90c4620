"""Room-scoped real-time gateway.

Owns:
- the per-connection lifecycle (``Connecting → Authenticating → Subscribed → Disconnected``)
- device rooms and per-user routing
- fan-out with one bounded outbox and one writer task per session

Each session is an independently owned record keyed by its id; no lock
spans all sessions. All methods run on the event loop thread; other
threads must hop onto the loop first.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import uuid
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any, Protocol, assert_never

from feverwatch._redact import redact_for_log
from feverwatch.collaborators import DeviceRegistry, SessionAuthority
from feverwatch.config import FeverWatchConfig
from feverwatch.exceptions import AuthFailure, UnknownEventError
from feverwatch.models._base import FeverWatchModel
from feverwatch.models.events import (
    AuthError,
    AuthErrorPayload,
    AuthMessage,
    AuthSuccess,
    AuthSuccessPayload,
    ClientMessage,
    JoinDevice,
    LeaveDevice,
    Ping,
    Pong,
    decode_client_message,
    encode_message,
)

_logger = logging.getLogger(__name__)

# WebSocket close codes used by the gateway.
CLOSE_NORMAL = 1000
CLOSE_AUTH_FAILED = 4001
CLOSE_AUTH_UNAVAILABLE = 1011
CLOSE_SLOW_CONSUMER = 4008


class ConnectionState(enum.StrEnum):
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    SUBSCRIBED = "subscribed"
    DISCONNECTED = "disconnected"


class Connection(Protocol):
    """Transport side of one client connection."""

    async def send_str(self, data: str) -> None: ...

    async def close(self, *, code: int = CLOSE_NORMAL, message: bytes = b"") -> Any: ...


@dataclass(slots=True)
class GatewaySession:
    """State owned by one live connection. Destroyed on disconnect."""

    session_id: str
    connection: Connection
    outbox: asyncio.Queue[str]
    state: ConnectionState = ConnectionState.CONNECTING
    user_id: str | None = None
    rooms: set[str] = field(default_factory=set)
    writer: asyncio.Task[None] | None = None
    auth_timer: asyncio.TimerHandle | None = None

    @property
    def authenticated(self) -> bool:
        return self.state == ConnectionState.SUBSCRIBED


class RealtimeGateway:
    """Authenticates sessions, manages device rooms and fans out events."""

    def __init__(
        self,
        *,
        authority: SessionAuthority,
        registry: DeviceRegistry,
        config: FeverWatchConfig | None = None,
    ) -> None:
        self._authority = authority
        self._registry = registry
        self._config = config or FeverWatchConfig()
        self._sessions: dict[str, GatewaySession] = {}
        self._rooms: dict[str, set[str]] = {}
        self._users: dict[str, set[str]] = {}
        self._tasks: set[asyncio.Task[Any]] = set()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def open(self, connection: Connection) -> GatewaySession:
        """Register an accepted connection and start its auth window."""
        loop = asyncio.get_running_loop()
        session = GatewaySession(
            session_id=uuid.uuid4().hex,
            connection=connection,
            outbox=asyncio.Queue(maxsize=self._config.session_queue_size),
        )
        self._sessions[session.session_id] = session
        session.writer = loop.create_task(self._write_loop(session))
        session.state = ConnectionState.AUTHENTICATING
        session.auth_timer = loop.call_later(self._config.auth_timeout, self._on_auth_timeout, session.session_id)
        _logger.info("Gateway connection opened session=%s", session.session_id)
        return session

    def get_session(self, session_id: str) -> GatewaySession | None:
        return self._sessions.get(session_id)

    def detach(self, session_id: str) -> GatewaySession | None:
        """Destroy a session immediately. Nothing is delivered to it afterwards."""
        session = self._sessions.pop(session_id, None)
        if session is None:
            return None
        session.state = ConnectionState.DISCONNECTED
        if session.auth_timer is not None:
            session.auth_timer.cancel()
            session.auth_timer = None
        for room in session.rooms:
            members = self._rooms.get(room)
            if members is not None:
                members.discard(session_id)
                if not members:
                    del self._rooms[room]
        session.rooms.clear()
        if session.user_id is not None:
            owned = self._users.get(session.user_id)
            if owned is not None:
                owned.discard(session_id)
                if not owned:
                    del self._users[session.user_id]
        writer = session.writer
        session.writer = None
        if writer is not None and writer is not asyncio.current_task():
            writer.cancel()
        _logger.info("Gateway session closed session=%s user=%s", session_id, session.user_id)
        return session

    async def close_session(self, session_id: str, *, code: int = CLOSE_NORMAL, reason: str = "") -> None:
        session = self.detach(session_id)
        if session is not None:
            await self._close_connection(session, code=code, reason=reason)

    def disconnect_user(self, user_id: str) -> int:
        """Close every session of *user_id*. Returns how many were closed."""
        session_ids = list(self._users.get(user_id, ()))
        for session_id in session_ids:
            self._spawn(self.close_session(session_id))
        return len(session_ids)

    async def aclose(self) -> None:
        for session_id in list(self._sessions):
            await self.close_session(session_id, code=CLOSE_NORMAL, reason="server shutdown")
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    async def handle_frame(self, session_id: str, raw: str | bytes) -> None:
        """Decode and handle one inbound frame. Unknown frames are ignored."""
        session = self._sessions.get(session_id)
        if session is None:
            return
        try:
            message = decode_client_message(raw)
        except UnknownEventError:
            _logger.debug("Ignoring undecodable frame session=%s", session_id, exc_info=True)
            return
        await self.handle_message(session, message)

    async def handle_message(self, session: GatewaySession, message: ClientMessage) -> None:
        match message:
            case AuthMessage(data=payload):
                await self._authenticate(session, payload.token)
            case JoinDevice(data=device_id):
                await self._join(session, device_id)
            case LeaveDevice(data=device_id):
                self._leave(session, device_id)
            case Ping():
                self._enqueue(session, encode_message(Pong()))
            case _:
                assert_never(message)

    async def _authenticate(self, session: GatewaySession, token: str) -> None:
        if session.state != ConnectionState.AUTHENTICATING:
            _logger.debug("Ignoring auth in state=%s session=%s", session.state, session.session_id)
            return
        _logger.debug("Auth attempt session=%s payload=%s", session.session_id, redact_for_log({"token": token}))
        try:
            user_id = await self._authority.validate(token)
        except AuthFailure as exc:
            _logger.warning("Gateway auth failed session=%s reason=%s", session.session_id, exc.reason)
            await self._reject(session, exc.reason)
            return
        except Exception:
            # Not a verdict on the token: close without auth_error so the client retries.
            _logger.exception("Session service unavailable session=%s", session.session_id)
            self.detach(session.session_id)
            await self._close_connection(session, code=CLOSE_AUTH_UNAVAILABLE, reason="auth_unavailable")
            return

        # The auth window may have expired while the authority was answering.
        if session.state != ConnectionState.AUTHENTICATING:
            return
        if session.auth_timer is not None:
            session.auth_timer.cancel()
            session.auth_timer = None
        session.user_id = user_id
        session.state = ConnectionState.SUBSCRIBED
        self._users.setdefault(user_id, set()).add(session.session_id)
        self._enqueue(session, encode_message(AuthSuccess(data=AuthSuccessPayload(user_id=user_id))))
        _logger.info("Gateway session authenticated session=%s user=%s", session.session_id, user_id)

    async def _join(self, session: GatewaySession, device_id: str) -> None:
        if session.state != ConnectionState.SUBSCRIBED or session.user_id is None:
            _logger.debug("Ignoring join_device before auth session=%s", session.session_id)
            return
        try:
            allowed = await self._registry.user_owns_device(session.user_id, device_id)
        except Exception:
            _logger.exception(
                "Ownership check failed, refusing join_device user=%s device=%s", session.user_id, device_id
            )
            return
        if session.state != ConnectionState.SUBSCRIBED:
            return
        if not allowed:
            # Refused silently towards the client.
            _logger.warning(
                "Refused join_device user=%s device=%s session=%s",
                session.user_id,
                device_id,
                session.session_id,
            )
            return
        session.rooms.add(device_id)
        self._rooms.setdefault(device_id, set()).add(session.session_id)
        _logger.debug("Session %s joined device room %s", session.session_id, device_id)

    def _leave(self, session: GatewaySession, device_id: str) -> None:
        session.rooms.discard(device_id)
        members = self._rooms.get(device_id)
        if members is not None:
            members.discard(session.session_id)
            if not members:
                del self._rooms[device_id]
        _logger.debug("Session %s left device room %s", session.session_id, device_id)

    def _on_auth_timeout(self, session_id: str) -> None:
        session = self._sessions.get(session_id)
        if session is None or session.state != ConnectionState.AUTHENTICATING:
            return
        session.auth_timer = None
        _logger.warning("Gateway auth window expired session=%s", session_id)
        self._spawn(self._reject(session, "auth_timeout"))

    async def _reject(self, session: GatewaySession, reason: str) -> None:
        self.detach(session.session_id)
        frame = encode_message(AuthError(data=AuthErrorPayload(reason=reason)))
        try:
            await asyncio.wait_for(session.connection.send_str(frame), self._config.session_send_timeout)
        except Exception:
            _logger.debug("auth_error delivery failed session=%s", session.session_id, exc_info=True)
        await self._close_connection(session, code=CLOSE_AUTH_FAILED, reason=reason)

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    def publish_to_device(self, device_id: str, message: FeverWatchModel) -> int:
        """Fan *message* out to every session subscribed to *device_id*.

        Returns the number of sessions the frame was queued for.
        """
        return self._fan_out(self._rooms.get(device_id, ()), message)

    def send_to_user(self, user_id: str, message: FeverWatchModel) -> int:
        """Queue *message* for every authenticated session of *user_id*."""
        return self._fan_out(self._users.get(user_id, ()), message)

    def broadcast(self, message: FeverWatchModel) -> int:
        authenticated = [s.session_id for s in self._sessions.values() if s.authenticated]
        return self._fan_out(authenticated, message)

    def is_user_connected(self, user_id: str) -> bool:
        return bool(self._users.get(user_id))

    def _fan_out(self, session_ids: Iterable[str], message: FeverWatchModel) -> int:
        frame = encode_message(message)
        delivered = 0
        # Copy: a slow session may be dropped while we iterate.
        for session_id in list(session_ids):
            session = self._sessions.get(session_id)
            if session is not None and self._enqueue(session, frame):
                delivered += 1
        return delivered

    def _enqueue(self, session: GatewaySession, frame: str) -> bool:
        if session.state == ConnectionState.DISCONNECTED:
            return False
        try:
            session.outbox.put_nowait(frame)
        except asyncio.QueueFull:
            _logger.warning("Dropping slow session=%s user=%s (outbox full)", session.session_id, session.user_id)
            self._spawn(self.close_session(session.session_id, code=CLOSE_SLOW_CONSUMER, reason="slow consumer"))
            return False
        return True

    async def _write_loop(self, session: GatewaySession) -> None:
        while True:
            frame = await session.outbox.get()
            try:
                await asyncio.wait_for(session.connection.send_str(frame), self._config.session_send_timeout)
            except Exception:
                _logger.warning("Dropping session=%s after failed send", session.session_id, exc_info=True)
                self.detach(session.session_id)
                await self._close_connection(session, code=CLOSE_SLOW_CONSUMER, reason="send failed")
                return

    async def _close_connection(self, session: GatewaySession, *, code: int, reason: str) -> None:
        try:
            await session.connection.close(code=code, message=reason.encode())
        except Exception:
            _logger.debug("Connection close failed session=%s", session.session_id, exc_info=True)

    def _spawn(self, coro: Any) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def stats(self) -> dict[str, int]:
        return {
            "sessions": len(self._sessions),
            "connected_users": len(self._users),
            "rooms": len(self._rooms),
        }

    def room_members(self, device_id: str) -> set[str]:
        return set(self._rooms.get(device_id, ()))
