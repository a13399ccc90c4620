"""Multi-channel notification dispatch.

Turns a :class:`NotificationRequest` into exactly one
:class:`Notification` and drives every target channel to a terminal
status. Channels run as independent tasks; a failing channel never
blocks or fails the others.

Every status change goes through :meth:`NotificationDispatcher._transition`,
which serializes writes per notification (different notifications never
contend) and publishes the resulting snapshot.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass

from feverwatch._backoff import backoff_delay
from feverwatch.channels import ChannelSender
from feverwatch.config import FeverWatchConfig
from feverwatch.exceptions import DeliveryExhausted, DeliveryFailure
from feverwatch.models.notification import (
    Channel,
    DeliveryPolicy,
    DeliveryStatus,
    Notification,
    NotificationRequest,
    Priority,
)

_logger = logging.getLogger(__name__)

NotificationListener = Callable[[Notification], Awaitable[None] | None]


@dataclass(frozen=True, slots=True)
class DispatchResult:
    """Final state of a dispatched notification."""

    notification: Notification
    delivered: bool


class NotificationDispatcher:
    """Creates notifications and delivers them across channels with retry/backoff."""

    def __init__(
        self,
        senders: Mapping[Channel, ChannelSender],
        *,
        config: FeverWatchConfig | None = None,
        on_update: NotificationListener | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._senders = dict(senders)
        self._config = config or FeverWatchConfig()
        self._listeners: list[NotificationListener] = [on_update] if on_update is not None else []
        self._sleep = sleep
        self._current: dict[str, Notification] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def register(self, sender: ChannelSender) -> None:
        """Install (or replace) the sender for ``sender.channel``."""
        self._senders[sender.channel] = sender

    def add_listener(self, listener: NotificationListener) -> None:
        """Register a callback invoked with every notification snapshot."""
        self._listeners.append(listener)

    def policy_for(self, notification: Notification) -> DeliveryPolicy:
        if notification.priority == Priority.CRITICAL:
            return self._config.critical_delivery_policy
        return DeliveryPolicy.ANY

    def in_flight(self) -> list[Notification]:
        return list(self._current.values())

    async def dispatch(self, request: NotificationRequest) -> DispatchResult:
        """Create the notification and deliver it on every requested channel."""
        notification = Notification(
            user_id=request.user_id,
            type=request.type,
            title=request.title,
            message=request.message,
            priority=request.priority,
            data=request.data,
            channels=request.channels,
            max_retries=self._config.max_retries,
        )
        self._current[notification.id] = notification
        self._locks[notification.id] = asyncio.Lock()
        _logger.info(
            "Dispatching notification %s type=%s priority=%s channels=%s",
            notification.id,
            notification.type,
            notification.priority,
            ",".join(notification.channels),
        )
        try:
            await self._publish(notification)
            await asyncio.gather(*(self._deliver(notification.id, ch) for ch in notification.channels))
            final = self._current[notification.id]
        finally:
            self._current.pop(notification.id, None)
            self._locks.pop(notification.id, None)

        delivered = final.is_delivered(self.policy_for(final))
        _logger.info(
            "Notification %s settled delivered=%s status=%s",
            final.id,
            delivered,
            {str(ch): str(final.status_of(ch)) for ch in final.channels},
        )
        return DispatchResult(notification=final, delivered=delivered)

    async def _deliver(self, notification_id: str, channel: Channel) -> None:
        """Run one channel to a terminal status. Never raises for delivery problems."""
        sender = self._senders.get(channel)
        if sender is None:
            _logger.warning("Notification %s: %s channel not configured", notification_id, channel)
            await self._transition(
                notification_id, channel, DeliveryStatus.EXHAUSTED, error="channel not configured", attempted=False
            )
            return

        max_attempts = self._config.max_retries
        for attempt in range(max_attempts):
            snapshot = self._current[notification_id]
            try:
                await asyncio.wait_for(sender.send(snapshot), self._config.delivery_timeout)
            except TimeoutError:
                error = f"attempt timed out after {self._config.delivery_timeout:.1f}s"
            except DeliveryFailure as exc:
                error = str(exc)
            except Exception as exc:
                _logger.debug("Notification %s: %s sender crashed", notification_id, channel, exc_info=True)
                error = f"{type(exc).__name__}: {exc}"
            else:
                await self._transition(notification_id, channel, DeliveryStatus.SENT)
                return

            await self._transition(notification_id, channel, DeliveryStatus.FAILED, error=error)
            if attempt + 1 < max_attempts:
                delay = backoff_delay(
                    attempt, base=self._config.retry_base_delay, cap=self._config.retry_max_delay
                )
                _logger.info(
                    "Notification %s: %s attempt %d/%d failed (%s), retrying in %.1fs",
                    notification_id,
                    channel,
                    attempt + 1,
                    max_attempts,
                    error,
                    delay,
                )
                await self._sleep(delay)

        exhausted = DeliveryExhausted(
            f"{channel} delivery exhausted after {max_attempts} attempts",
            channel=channel,
            attempts=max_attempts,
        )
        _logger.warning("Notification %s: %s", notification_id, exhausted)
        await self._transition(
            notification_id, channel, DeliveryStatus.EXHAUSTED, error=str(exhausted), attempted=False
        )

    async def _transition(
        self,
        notification_id: str,
        channel: Channel,
        status: DeliveryStatus,
        *,
        error: str | None = None,
        attempted: bool = True,
    ) -> Notification:
        async with self._locks[notification_id]:
            current = self._current[notification_id]
            updated = current.with_channel_status(channel, status, error=error, attempted=attempted)
            self._current[notification_id] = updated
            # Publishing under the lock keeps status events in write order.
            await self._publish(updated)
            return updated

    async def _publish(self, notification: Notification) -> None:
        for listener in self._listeners:
            try:
                result = listener(notification)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                _logger.warning("Notification listener failed for %s", notification.id, exc_info=True)
