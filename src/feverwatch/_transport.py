"""Client-side network transports: gateway WebSocket and snapshot HTTP."""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Any, Protocol

import aiohttp

from feverwatch.exceptions import TransportError
from feverwatch.state.events import Delta, EntityKind, snapshot_deltas

_logger = logging.getLogger(__name__)


class DisconnectCause(enum.StrEnum):
    """Why a gateway connection ended."""

    SERVER_CLOSED = "server_closed"
    TRANSPORT_LOST = "transport_lost"
    CLIENT_CLOSED = "client_closed"
    AUTH_REJECTED = "auth_rejected"


@dataclass(frozen=True)
class Disconnected:
    """Terminal result of :meth:`ClientTransport.receive`."""

    cause: DisconnectCause
    code: int | None = None
    reason: str = ""


class ClientTransport(Protocol):
    """Structural interface of one gateway connection.

    Having a protocol here makes it easy to pass test doubles while
    keeping the production implementation (`WebSocketTransport`) concrete.
    """

    async def connect(self) -> None:
        """Open the connection or raise :class:`TransportError`."""
        ...

    async def send(self, frame: str) -> None: ...

    async def receive(self) -> str | Disconnected:
        """Next text frame, or :class:`Disconnected` once the connection is gone."""
        ...

    async def close(self) -> None: ...


class WebSocketTransport:
    """Gateway connection over an aiohttp client WebSocket."""

    def __init__(self, url: str, http_session: aiohttp.ClientSession, *, heartbeat: float | None = 30.0) -> None:
        self._url = url
        self._http = http_session
        self._heartbeat = heartbeat
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._closing = False

    async def connect(self) -> None:
        _logger.debug("WS connect %s", self._url)
        try:
            self._ws = await self._http.ws_connect(self._url, heartbeat=self._heartbeat)
        except aiohttp.WSServerHandshakeError as exc:
            raise TransportError(
                f"WebSocket handshake with {self._url} failed: HTTP {exc.status}",
                status_code=exc.status,
                endpoint=self._url,
            ) from exc
        except (aiohttp.ClientError, OSError) as exc:
            raise TransportError(f"WebSocket connect to {self._url} failed: {exc}", endpoint=self._url) from exc

    async def send(self, frame: str) -> None:
        ws = self._ws
        if ws is None or ws.closed:
            raise TransportError("WebSocket is not connected", endpoint=self._url)
        try:
            await ws.send_str(frame)
        except (aiohttp.ClientError, ConnectionError) as exc:
            raise TransportError(f"WebSocket send failed: {exc}", endpoint=self._url) from exc

    async def receive(self) -> str | Disconnected:
        ws = self._ws
        if ws is None:
            return Disconnected(DisconnectCause.CLIENT_CLOSED if self._closing else DisconnectCause.TRANSPORT_LOST)
        while True:
            msg = await ws.receive()
            if msg.type == aiohttp.WSMsgType.TEXT:
                return str(msg.data)
            if msg.type == aiohttp.WSMsgType.BINARY:
                return bytes(msg.data).decode("utf-8", errors="replace")
            if self._closing:
                return Disconnected(DisconnectCause.CLIENT_CLOSED, code=ws.close_code)
            if msg.type == aiohttp.WSMsgType.CLOSE:
                return Disconnected(
                    DisconnectCause.SERVER_CLOSED,
                    code=ws.close_code if ws.close_code is not None else _as_int(msg.data),
                    reason=str(msg.extra or ""),
                )
            if msg.type in (aiohttp.WSMsgType.CLOSING, aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR):
                _logger.debug("WS lost type=%s data=%r", msg.type, msg.data)
                return Disconnected(DisconnectCause.TRANSPORT_LOST, code=ws.close_code)
            # PING/PONG are handled by aiohttp itself.

    async def close(self) -> None:
        self._closing = True
        ws = self._ws
        if ws is not None and not ws.closed:
            await ws.close()


def _as_int(value: Any) -> int | None:
    return value if isinstance(value, int) else None


class SnapshotFetcher:
    """Fetches the full device and notification snapshots over HTTP."""

    DEVICES_ENDPOINT = "/api/devices"
    NOTIFICATIONS_ENDPOINT = "/api/notifications"

    def __init__(self, base_url: str, http_session: aiohttp.ClientSession) -> None:
        self._base_url = base_url.rstrip("/")
        self._http = http_session

    async def _get_records(self, endpoint: str, token: str) -> list[dict[str, Any]]:
        url = f"{self._base_url}{endpoint}"
        _logger.debug("GET %s", url)
        try:
            async with self._http.get(url, headers={"Authorization": f"Bearer {token}"}) as resp:
                if resp.status != 200:
                    text = await resp.text()
                    raise TransportError(
                        f"HTTP {resp.status} from {endpoint}: {text[:200]}",
                        status_code=resp.status,
                        endpoint=endpoint,
                    )
                body = await resp.json()
        except TransportError:
            raise
        except (aiohttp.ClientError, ValueError) as exc:
            raise TransportError(f"Request to {endpoint} failed: {exc}", endpoint=endpoint) from exc

        if not isinstance(body, list):
            raise TransportError(f"Expected a JSON array from {endpoint}", endpoint=endpoint)
        return [record for record in body if isinstance(record, dict)]

    async def fetch_devices(self, token: str) -> list[Delta]:
        return snapshot_deltas(EntityKind.DEVICE, await self._get_records(self.DEVICES_ENDPOINT, token))

    async def fetch_notifications(self, token: str) -> list[Delta]:
        return snapshot_deltas(EntityKind.NOTIFICATION, await self._get_records(self.NOTIFICATIONS_ENDPOINT, token))

    async def fetch_all(self, token: str) -> list[Delta]:
        """Both snapshots as deltas."""
        return [*await self.fetch_devices(token), *await self.fetch_notifications(token)]
