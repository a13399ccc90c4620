"""High-level async client for the feverwatch gateway."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from typing import Any

import aiohttp

from feverwatch._transport import ClientTransport, SnapshotFetcher, WebSocketTransport
from feverwatch.config import FeverWatchConfig
from feverwatch.exceptions import FeverWatchError
from feverwatch.models.events import (
    DeviceStatusUpdate,
    NotificationUpdate,
    ServerMessage,
    TemperatureUpdate,
)
from feverwatch.state.events import Delta, DeltaSource, EntityKind
from feverwatch.state.store import ClientState, ClientStore
from feverwatch.sync import SyncState, SyncStateMachine

_logger = logging.getLogger(__name__)


def deltas_for_message(message: ServerMessage) -> list[Delta]:
    """Convert a streamed gateway event into state deltas.

    Events without a server ``updatedAt`` carry no version and produce no
    delta; the next snapshot fills the gap.
    """
    match message:
        case NotificationUpdate(data=notification):
            return [
                Delta(
                    kind=EntityKind.NOTIFICATION,
                    entity_id=notification.id,
                    source=DeltaSource.STREAM,
                    updated_at=notification.updated_at,
                    data=notification.to_wire(),
                )
            ]
        case DeviceStatusUpdate(data=payload) if payload.updated_at is not None:
            data = {k: v for k, v in payload.to_wire().items() if v is not None}
            return [
                Delta(
                    kind=EntityKind.DEVICE,
                    entity_id=payload.device_id,
                    source=DeltaSource.STREAM,
                    updated_at=payload.updated_at,
                    data=data,
                )
            ]
        case TemperatureUpdate(data=payload) if payload.updated_at is not None:
            wire = payload.to_wire()
            return [
                Delta(
                    kind=EntityKind.DEVICE,
                    entity_id=payload.device_id,
                    source=DeltaSource.STREAM,
                    updated_at=payload.updated_at,
                    data={
                        "deviceId": payload.device_id,
                        # The server stamps lastSeen and updatedAt together.
                        "lastSeen": wire["updatedAt"],
                        "lastTemperature": payload.temperature,
                        "feverDetected": payload.fever_detected,
                        "feverSeverity": wire["feverSeverity"],
                    },
                )
            ]
        case _:
            return []


class SnapshotPoller:
    """Periodically fetches full snapshots and merges them into the store.

    Runs on its own timer and only ever calls :meth:`ClientStore.apply_all`.
    """

    def __init__(
        self,
        fetch: Callable[[], Awaitable[list[Delta]]],
        store: ClientStore,
        *,
        interval: float,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._fetch = fetch
        self._store = store
        self._interval = interval
        self._sleep = sleep
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def poll_once(self) -> bool:
        """Fetch and merge one snapshot. Returns whether the state changed."""
        deltas = await self._fetch()
        changed = self._store.apply_all(deltas)
        _logger.debug("Snapshot merged records=%d changed=%s", len(deltas), changed)
        return changed

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._loop())

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def _loop(self) -> None:
        while True:
            try:
                await self.poll_once()
            except FeverWatchError as exc:
                _logger.warning("Snapshot fetch failed: %s", exc)
            except Exception:
                _logger.exception("Unexpected error while polling snapshots")
            await self._sleep(self._interval)


class FeverWatchClient:
    """Async client that keeps a local view of devices and notifications.

    Usage::

        async with FeverWatchClient(config) as client:
            client.start(token)
            await client.join_device("dev-1")
            ...
    """

    def __init__(
        self,
        config: FeverWatchConfig | None = None,
        *,
        session: aiohttp.ClientSession | None = None,
        transport_factory: Callable[[], ClientTransport] | None = None,
        fetch_snapshot: Callable[[str], Awaitable[list[Delta]]] | None = None,
        on_event: Callable[[ServerMessage], None] | None = None,
        on_state_change: Callable[[SyncState], None] | None = None,
        on_terminal: Callable[[FeverWatchError], None] | None = None,
    ) -> None:
        self._config = config or FeverWatchConfig()
        self._external_session = session is not None
        self._http_session = session
        self._transport_factory = transport_factory
        self._fetch_snapshot = fetch_snapshot
        self._on_event = on_event
        self._on_terminal = on_terminal
        self._token: str | None = None
        self._store = ClientStore()
        self._sync = SyncStateMachine(
            self._make_transport,
            config=self._config,
            on_event=self._handle_event,
            on_state=on_state_change,
            on_terminal=self._handle_terminal,
        )
        self._poller = SnapshotPoller(self._poll, self._store, interval=self._config.snapshot_interval)

    # ------------------------------------------------------------------
    # Context manager lifecycle
    # ------------------------------------------------------------------

    async def __aenter__(self) -> FeverWatchClient:
        if self._http_session is None and (self._transport_factory is None or self._fetch_snapshot is None):
            self._http_session = aiohttp.ClientSession()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.stop()
        if not self._external_session and self._http_session is not None:
            await self._http_session.close()
            self._http_session = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def store(self) -> ClientStore:
        return self._store

    @property
    def state(self) -> ClientState:
        return self._store.state

    @property
    def sync_state(self) -> SyncState:
        return self._sync.state

    @property
    def sync(self) -> SyncStateMachine:
        return self._sync

    def start(self, token: str) -> None:
        """Connect with *token* and start snapshot polling."""
        self._token = token
        self._sync.start(token)
        self._poller.start()

    async def stop(self) -> None:
        """Disconnect, cancel any pending reconnect and stop polling (e.g. on sign-out)."""
        await self._sync.stop()
        await self._poller.stop()
        self._token = None

    async def join_device(self, device_id: str) -> None:
        await self._sync.join(device_id)

    async def leave_device(self, device_id: str) -> None:
        await self._sync.leave(device_id)

    async def refresh(self) -> bool:
        """Fetch and merge a snapshot now. Returns whether the state changed."""
        return await self._poller.poll_once()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _require_session(self) -> aiohttp.ClientSession:
        if self._http_session is None:
            raise FeverWatchError("Client not initialized. Use 'async with FeverWatchClient(...) as client:'")
        return self._http_session

    def _make_transport(self) -> ClientTransport:
        if self._transport_factory is not None:
            return self._transport_factory()
        return WebSocketTransport(self._config.ws_url, self._require_session())

    async def _poll(self) -> list[Delta]:
        token = self._token
        if token is None:
            return []
        if self._fetch_snapshot is not None:
            return await self._fetch_snapshot(token)
        fetcher = SnapshotFetcher(self._config.api_base_url, self._require_session())
        return await fetcher.fetch_all(token)

    def _handle_event(self, message: ServerMessage) -> None:
        deltas = deltas_for_message(message)
        if deltas:
            self._store.apply_all(deltas)
        if self._on_event is not None:
            self._on_event(message)

    def _handle_terminal(self, error: FeverWatchError) -> None:
        _logger.warning("Live updates stopped: %s", error)
        if self._on_terminal is not None:
            self._on_terminal(error)
