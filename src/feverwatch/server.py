"""aiohttp application hosting the gateway, snapshot endpoints and ingestion."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from collections.abc import Mapping
from typing import Any

import aiohttp
from aiohttp import web

from feverwatch._mqtt import DeviceMessage, DeviceMqttRuntime
from feverwatch.channels import ChannelSender, RealtimeChannel, build_channel_senders
from feverwatch.collaborators import SessionAuthority, StaticSessionAuthority
from feverwatch.config import FeverWatchConfig
from feverwatch.dispatcher import NotificationDispatcher
from feverwatch.exceptions import AuthFailure
from feverwatch.gateway import RealtimeGateway
from feverwatch.ingestion import route_device_message
from feverwatch.models.events import NotificationUpdate
from feverwatch.models.notification import Channel, Notification
from feverwatch.pipeline import AlertPipeline
from feverwatch.records import InMemoryRecordStore

_logger = logging.getLogger(__name__)

# Upper bound between two offline sweeps.
MAX_SWEEP_INTERVAL = 60.0


class FeverWatchServer:
    """Owns the server-side pipeline: records, gateway, dispatcher, ingestion.

    Usage::

        async with FeverWatchServer(config, authority=authority) as server:
            await server.serve_forever()
    """

    def __init__(
        self,
        config: FeverWatchConfig | None = None,
        *,
        authority: SessionAuthority | None = None,
        records: InMemoryRecordStore | None = None,
        senders: Mapping[Channel, ChannelSender] | None = None,
        http_session: aiohttp.ClientSession | None = None,
    ) -> None:
        self.config = config or FeverWatchConfig()
        self.records = records or InMemoryRecordStore()
        self.authority: SessionAuthority = authority or StaticSessionAuthority()
        self.gateway = RealtimeGateway(authority=self.authority, registry=self.records, config=self.config)
        self._build_senders = senders is None
        self.dispatcher = NotificationDispatcher(
            senders if senders is not None else {Channel.REALTIME: RealtimeChannel(self.gateway)},
            config=self.config,
            on_update=self.publish_notification,
        )
        self.pipeline = AlertPipeline(
            records=self.records,
            gateway=self.gateway,
            dispatcher=self.dispatcher,
            config=self.config,
        )
        self.app = create_app(self)
        self._external_session = http_session is not None
        self._http_session = http_session
        self._runner: web.AppRunner | None = None
        self._mqtt: DeviceMqttRuntime | None = None
        self._sweeper: asyncio.Task[None] | None = None
        self._ingest_tasks: set[asyncio.Task[None]] = set()

    # ------------------------------------------------------------------
    # Context manager lifecycle
    # ------------------------------------------------------------------

    async def __aenter__(self) -> FeverWatchServer:
        await self.start()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.stop()

    async def start(self) -> None:
        loop = asyncio.get_running_loop()
        if self._http_session is None:
            self._http_session = aiohttp.ClientSession()
        if self._build_senders:
            for sender in build_channel_senders(
                self.config, gateway=self.gateway, http_session=self._http_session
            ).values():
                self.dispatcher.register(sender)

        self._runner = web.AppRunner(self.app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.config.server_host, self.config.server_port)
        await site.start()
        _logger.info("Gateway listening on %s:%d", self.config.server_host, self.config.server_port)

        if self.config.mqtt.enabled:
            runtime = DeviceMqttRuntime(loop=loop, settings=self.config.mqtt, on_message=self.ingest)
            try:
                runtime.start()
            except OSError:
                _logger.warning(
                    "MQTT broker %s:%d unavailable, device ingestion disabled",
                    self.config.mqtt.host,
                    self.config.mqtt.port,
                    exc_info=True,
                )
            else:
                self._mqtt = runtime

        self._sweeper = loop.create_task(self._sweep_loop())

    async def stop(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._sweeper
            self._sweeper = None
        if self._mqtt is not None:
            self._mqtt.stop()
            self._mqtt = None
        if self._ingest_tasks:
            await asyncio.gather(*list(self._ingest_tasks), return_exceptions=True)
        await self.pipeline.aclose()
        await self.gateway.aclose()
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
        if not self._external_session and self._http_session is not None:
            await self._http_session.close()
            self._http_session = None
        _logger.info("Server stopped")

    async def serve_forever(self) -> None:
        """Block until cancelled."""
        await asyncio.Event().wait()

    # ------------------------------------------------------------------
    # Wiring
    # ------------------------------------------------------------------

    def ingest(self, message: DeviceMessage) -> None:
        """Route one device message. Runs on the loop thread."""
        task = asyncio.get_running_loop().create_task(self._ingest(message))
        self._ingest_tasks.add(task)
        task.add_done_callback(self._ingest_tasks.discard)

    async def _ingest(self, message: DeviceMessage) -> None:
        try:
            await route_device_message(self.pipeline, message)
        except Exception:
            _logger.exception("Failed to handle %s message from %s", message.kind, message.device_id)

    def publish_notification(self, notification: Notification) -> None:
        """Persist a notification snapshot and push it to the owner's sessions."""
        saved = self.records.save_notification(notification)
        self.gateway.send_to_user(saved.user_id, NotificationUpdate(data=saved))

    async def _sweep_loop(self) -> None:
        interval = min(MAX_SWEEP_INTERVAL, self.config.offline_after)
        while True:
            await asyncio.sleep(interval)
            self.pipeline.sweep_offline()


# ------------------------------------------------------------------
# HTTP handlers
# ------------------------------------------------------------------

SERVER_KEY = web.AppKey("server", FeverWatchServer)


def _unauthorized(reason: str) -> web.HTTPUnauthorized:
    return web.HTTPUnauthorized(
        text=json.dumps({"error": "unauthorized", "reason": reason}),
        content_type="application/json",
        headers={"WWW-Authenticate": "Bearer"},
    )


async def _authorize(request: web.Request) -> str:
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise _unauthorized("missing_token")
    try:
        return await request.app[SERVER_KEY].authority.validate(token.strip())
    except AuthFailure as exc:
        raise _unauthorized(exc.reason) from exc


async def _ws_handler(request: web.Request) -> web.WebSocketResponse:
    gateway = request.app[SERVER_KEY].gateway
    ws = web.WebSocketResponse(heartbeat=30.0)
    await ws.prepare(request)
    session = gateway.open(ws)
    try:
        async for msg in ws:
            if msg.type == aiohttp.WSMsgType.TEXT:
                await gateway.handle_frame(session.session_id, msg.data)
            elif msg.type == aiohttp.WSMsgType.ERROR:
                _logger.debug("WebSocket error session=%s: %s", session.session_id, ws.exception())
                break
    finally:
        gateway.detach(session.session_id)
    return ws


async def _list_devices(request: web.Request) -> web.Response:
    user_id = await _authorize(request)
    records = request.app[SERVER_KEY].records
    return web.json_response([device.to_wire() for device in records.list_devices(user_id)])


async def _list_notifications(request: web.Request) -> web.Response:
    user_id = await _authorize(request)
    records = request.app[SERVER_KEY].records
    # Archived records are included so clients learn about the archive flag.
    notifications = records.list_notifications(user_id, include_archived=True)
    return web.json_response([n.to_wire() for n in notifications])


async def _mark_read(request: web.Request) -> web.Response:
    user_id = await _authorize(request)
    server = request.app[SERVER_KEY]
    updated = server.records.mark_notification_read(request.match_info["notification_id"], user_id)
    if updated is None:
        raise web.HTTPNotFound(text='{"error":"notification not found"}', content_type="application/json")
    server.gateway.send_to_user(user_id, NotificationUpdate(data=updated))
    return web.json_response(updated.to_wire())


async def _archive(request: web.Request) -> web.Response:
    user_id = await _authorize(request)
    server = request.app[SERVER_KEY]
    updated = server.records.archive_notification(request.match_info["notification_id"], user_id)
    if updated is None:
        raise web.HTTPNotFound(text='{"error":"notification not found"}', content_type="application/json")
    server.gateway.send_to_user(user_id, NotificationUpdate(data=updated))
    return web.json_response(updated.to_wire())


async def _health(request: web.Request) -> web.Response:
    return web.json_response({"status": "ok", "gateway": request.app[SERVER_KEY].gateway.stats()})


def create_app(server: FeverWatchServer) -> web.Application:
    app = web.Application()
    app[SERVER_KEY] = server
    app.router.add_get("/ws", _ws_handler)
    app.router.add_get("/api/devices", _list_devices)
    app.router.add_get("/api/notifications", _list_notifications)
    app.router.add_put("/api/notifications/{notification_id}/read", _mark_read)
    app.router.add_put("/api/notifications/{notification_id}/archive", _archive)
    app.router.add_get("/health", _health)
    return app
