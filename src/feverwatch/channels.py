"""Notification delivery channels.

A channel sender performs exactly one delivery attempt per ``send`` call
and raises :class:`DeliveryFailure` when it does not succeed. Retries,
timeouts and status bookkeeping belong to the dispatcher.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Protocol

import aiohttp

from feverwatch._redact import redact_for_log
from feverwatch.config import FeverWatchConfig
from feverwatch.exceptions import DeliveryFailure
from feverwatch.models.events import NotificationUpdate
from feverwatch.models.notification import Channel, Notification

if TYPE_CHECKING:
    from feverwatch.gateway import RealtimeGateway

_logger = logging.getLogger(__name__)


class ChannelSender(Protocol):
    """One delivery mechanism."""

    @property
    def channel(self) -> Channel: ...

    async def send(self, notification: Notification) -> None: ...


class RealtimeChannel:
    """Pushes the notification to the owner's live gateway sessions."""

    def __init__(self, gateway: RealtimeGateway) -> None:
        self._gateway = gateway

    @property
    def channel(self) -> Channel:
        return Channel.REALTIME

    async def send(self, notification: Notification) -> None:
        queued = self._gateway.send_to_user(notification.user_id, NotificationUpdate(data=notification))
        if queued == 0:
            raise DeliveryFailure(
                f"No live session for user {notification.user_id}",
                channel=self.channel,
            )
        _logger.debug("Realtime notification %s queued for %d session(s)", notification.id, queued)


class WebhookChannel:
    """Hands the notification to an external provider (push, email, SMS) over HTTP."""

    def __init__(self, channel: Channel, url: str, http_session: aiohttp.ClientSession) -> None:
        self._channel = channel
        self._url = url
        self._http = http_session

    @property
    def channel(self) -> Channel:
        return self._channel

    async def send(self, notification: Notification) -> None:
        body = {"channel": str(self._channel), "notification": notification.to_wire()}
        _logger.debug("POST %s body=%s", self._url, redact_for_log(body))
        try:
            async with self._http.post(self._url, json=body) as resp:
                if resp.status >= 300:
                    text = await resp.text()
                    raise DeliveryFailure(
                        f"HTTP {resp.status} from {self._channel} webhook: {text[:200]}",
                        channel=self._channel,
                    )
        except aiohttp.ClientError as exc:
            raise DeliveryFailure(
                f"{self._channel} webhook request failed: {exc}",
                channel=self._channel,
            ) from exc


def build_channel_senders(
    config: FeverWatchConfig,
    *,
    gateway: RealtimeGateway,
    http_session: aiohttp.ClientSession,
) -> dict[Channel, ChannelSender]:
    """Wire the configured channels.

    Channels without an endpoint are left out; the dispatcher marks them
    exhausted without attempting delivery.
    """
    senders: dict[Channel, ChannelSender] = {Channel.REALTIME: RealtimeChannel(gateway)}
    endpoints = {
        Channel.PUSH: config.push_webhook_url,
        Channel.EMAIL: config.email_webhook_url,
        Channel.SMS: config.sms_webhook_url,
    }
    for channel, url in endpoints.items():
        if url:
            senders[channel] = WebhookChannel(channel, url, http_session)
        else:
            _logger.info("%s channel not configured", channel)
    return senders
