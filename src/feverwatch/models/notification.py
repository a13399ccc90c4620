"""Notification models and per-channel delivery state."""

from __future__ import annotations

import enum
import uuid
from datetime import datetime
from typing import Any

from pydantic import Field, model_validator

from feverwatch.models._base import FeverWatchModel, OptionalTimestamp, Timestamp, utcnow


class NotificationType(enum.StrEnum):
    FEVER_ALERT = "fever_alert"
    DEVICE_OFFLINE = "device_offline"
    LOW_BATTERY = "low_battery"
    SYSTEM_ALERT = "system_alert"
    REMINDER = "reminder"
    EMERGENCY = "emergency"
    INFO = "info"


class Priority(enum.StrEnum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    CRITICAL = "critical"


class Channel(enum.StrEnum):
    """Delivery mechanism for a notification."""

    REALTIME = "realtime"
    PUSH = "push"
    EMAIL = "email"
    SMS = "sms"


class DeliveryStatus(enum.StrEnum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    EXHAUSTED = "exhausted"


class DeliveryPolicy(enum.StrEnum):
    """When a notification counts as delivered."""

    ANY = "any"
    """At least one channel reached ``sent``."""

    ALL = "all"
    """Every channel reached ``sent``."""


# Allowed status transitions. ``sent`` and ``exhausted`` are terminal.
_TRANSITIONS: dict[DeliveryStatus, frozenset[DeliveryStatus]] = {
    DeliveryStatus.PENDING: frozenset({DeliveryStatus.SENT, DeliveryStatus.FAILED, DeliveryStatus.EXHAUSTED}),
    DeliveryStatus.FAILED: frozenset({DeliveryStatus.FAILED, DeliveryStatus.SENT, DeliveryStatus.EXHAUSTED}),
    DeliveryStatus.SENT: frozenset(),
    DeliveryStatus.EXHAUSTED: frozenset(),
}


def can_transition(current: DeliveryStatus, target: DeliveryStatus) -> bool:
    return target in _TRANSITIONS[current]


class ChannelDelivery(FeverWatchModel):
    """Delivery state of one channel."""

    status: DeliveryStatus = DeliveryStatus.PENDING
    attempts: int = 0
    error: str | None = None
    sent_at: OptionalTimestamp = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (DeliveryStatus.SENT, DeliveryStatus.EXHAUSTED)


class Notification(FeverWatchModel):
    """A user-facing notification and its delivery state.

    Delivery state is written only by the dispatcher; ``is_read`` and
    ``is_archived`` only by the owning user. Every change yields a new
    instance with a fresh ``updated_at``.
    """

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    user_id: str
    type: NotificationType
    title: str = Field(min_length=1, max_length=200)
    message: str = Field(min_length=1, max_length=1000)
    priority: Priority = Priority.NORMAL
    data: dict[str, Any] = Field(default_factory=dict)
    channels: tuple[Channel, ...] = (Channel.PUSH, Channel.REALTIME)
    delivery_status: dict[Channel, ChannelDelivery] = Field(default_factory=dict)
    retry_count: int = 0
    max_retries: int = 3
    is_read: bool = False
    read_at: OptionalTimestamp = None
    is_archived: bool = False
    archived_at: OptionalTimestamp = None
    created_at: Timestamp = Field(default_factory=utcnow)
    updated_at: Timestamp = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _init_delivery_status(self) -> Notification:
        # Drop duplicate channels while keeping order, then make sure every
        # channel has a delivery slot.
        channels = tuple(dict.fromkeys(self.channels))
        if not channels:
            raise ValueError("a notification needs at least one channel")
        status = dict(self.delivery_status)
        for channel in channels:
            status.setdefault(channel, ChannelDelivery())
        object.__setattr__(self, "channels", channels)
        object.__setattr__(self, "delivery_status", status)
        return self

    def status_of(self, channel: Channel) -> DeliveryStatus:
        return self.delivery_status[channel].status

    @property
    def is_settled(self) -> bool:
        """Every channel reached a terminal status."""
        return all(self.delivery_status[ch].is_terminal for ch in self.channels)

    def is_delivered(self, policy: DeliveryPolicy = DeliveryPolicy.ANY) -> bool:
        sent = [self.status_of(ch) == DeliveryStatus.SENT for ch in self.channels]
        if policy == DeliveryPolicy.ALL:
            return all(sent)
        return any(sent)

    def with_channel_status(
        self,
        channel: Channel,
        status: DeliveryStatus,
        *,
        error: str | None = None,
        attempted: bool = True,
        now: datetime | None = None,
    ) -> Notification:
        """Return a copy with *channel* moved to *status*.

        Raises ``ValueError`` on a regression (e.g. ``sent`` back to
        ``pending``) or an unknown channel.
        """
        if channel not in self.delivery_status:
            raise ValueError(f"channel {channel!s} is not targeted by notification {self.id}")
        current = self.delivery_status[channel]
        if not can_transition(current.status, status):
            raise ValueError(f"illegal delivery transition {current.status!s} -> {status!s} on {channel!s}")

        stamp = now or utcnow()
        attempts = current.attempts + 1 if attempted else current.attempts
        updated = current.model_copy(
            update={
                "status": status,
                "attempts": attempts,
                "error": None if status == DeliveryStatus.SENT else (error or current.error),
                "sent_at": stamp if status == DeliveryStatus.SENT else current.sent_at,
            }
        )
        delivery = dict(self.delivery_status)
        delivery[channel] = updated

        # The shared retry counter only moves once every channel has been
        # tried at least once.
        retry_count = self.retry_count
        attempts_by_channel = [delivery[ch].attempts for ch in self.channels]
        if min(attempts_by_channel) >= 1:
            retry_count = max(retry_count, max(attempts_by_channel) - 1)

        return self.model_copy(
            update={"delivery_status": delivery, "retry_count": retry_count, "updated_at": stamp}
        )

    def mark_read(self, *, now: datetime | None = None) -> Notification:
        if self.is_read:
            return self
        stamp = now or utcnow()
        return self.model_copy(update={"is_read": True, "read_at": stamp, "updated_at": stamp})

    def archive(self, *, now: datetime | None = None) -> Notification:
        if self.is_archived:
            return self
        stamp = now or utcnow()
        return self.model_copy(update={"is_archived": True, "archived_at": stamp, "updated_at": stamp})


class NotificationRequest(FeverWatchModel):
    """What a caller asks the dispatcher to deliver."""

    user_id: str
    type: NotificationType
    title: str
    message: str
    priority: Priority = Priority.NORMAL
    data: dict[str, Any] = Field(default_factory=dict)
    channels: tuple[Channel, ...] = (Channel.REALTIME, Channel.PUSH)
