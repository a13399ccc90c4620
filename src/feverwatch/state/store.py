"""Deterministic client-side state store.

:func:`reduce` is the only function allowed to merge deltas into
:class:`ClientState`. It is pure: it never mutates its inputs and returns
the same state object when a delta changes nothing.

Every field is versioned on its own, so the merge is idempotent and
converges to the same state whatever order deltas with distinct
``updatedAt`` values arrive in.
"""

from __future__ import annotations

import copy
import logging
from collections.abc import Callable, Iterable
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from feverwatch.state.events import Delta, DeltaSource, EntityKind
from feverwatch.state.policy import should_overwrite

_logger = logging.getLogger(__name__)


class FieldVersion(BaseModel):
    model_config = ConfigDict(frozen=True)

    value: Any = None
    updated_at: datetime
    source: DeltaSource


class EntityVersion(BaseModel):
    """Merged view of one device or notification."""

    model_config = ConfigDict(frozen=True)

    fields: dict[str, FieldVersion] = Field(default_factory=dict)

    @property
    def data(self) -> dict[str, Any]:
        return {key: copy.deepcopy(field.value) for key, field in self.fields.items()}

    @property
    def updated_at(self) -> datetime | None:
        if not self.fields:
            return None
        return max(field.updated_at for field in self.fields.values())

    def field_version(self, key: str) -> FieldVersion | None:
        return self.fields.get(key)


class ClientState(BaseModel):
    """Everything one client knows about its devices and notifications."""

    model_config = ConfigDict(frozen=True)

    devices: dict[str, EntityVersion] = Field(default_factory=dict)
    notifications: dict[str, EntityVersion] = Field(default_factory=dict)

    def bucket(self, kind: EntityKind) -> dict[str, EntityVersion]:
        return self.devices if kind == EntityKind.DEVICE else self.notifications

    def get(self, kind: EntityKind, entity_id: str) -> dict[str, Any] | None:
        entity = self.bucket(kind).get(entity_id)
        return entity.data if entity is not None else None


_BUCKET_FIELDS: dict[EntityKind, str] = {
    EntityKind.DEVICE: "devices",
    EntityKind.NOTIFICATION: "notifications",
}


def merge_entity(current: EntityVersion | None, delta: Delta) -> EntityVersion | None:
    """Merge *delta* into one entity. Returns *current* unchanged when nothing moves."""
    fields = dict(current.fields) if current is not None else {}
    changed = current is None
    for key, value in delta.data.items():
        incoming = FieldVersion(value=copy.deepcopy(value), updated_at=delta.updated_at, source=delta.source)
        existing = fields.get(key)
        if existing is not None:
            if existing == incoming:
                continue
            if not should_overwrite(
                current_updated_at=existing.updated_at,
                current_source=existing.source,
                incoming_updated_at=delta.updated_at,
                incoming_source=delta.source,
            ):
                continue
        fields[key] = incoming
        changed = True
    if not changed:
        return current
    return EntityVersion(fields=fields)


def reduce(state: ClientState, delta: Delta) -> ClientState:
    """Return the state with *delta* merged in."""
    bucket = state.bucket(delta.kind)
    current = bucket.get(delta.entity_id)
    merged = merge_entity(current, delta)
    if merged is current or merged is None:
        return state
    updated = dict(bucket)
    updated[delta.entity_id] = merged
    return state.model_copy(update={_BUCKET_FIELDS[delta.kind]: updated})


def reduce_all(state: ClientState, deltas: Iterable[Delta]) -> ClientState:
    for delta in deltas:
        state = reduce(state, delta)
    return state


StateListener = Callable[[ClientState], None]


class ClientStore:
    """Holds the current :class:`ClientState` and notifies listeners on change.

    Both the real-time event path and the snapshot poller call
    :meth:`apply`; neither touches the state directly.
    """

    def __init__(self, initial: ClientState | None = None) -> None:
        self._state = initial or ClientState()
        self._listeners: list[StateListener] = []

    @property
    def state(self) -> ClientState:
        return self._state

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Register *listener*; returns a callable that unregisters it."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def apply(self, delta: Delta) -> bool:
        return self.apply_all((delta,))

    def apply_all(self, deltas: Iterable[Delta]) -> bool:
        """Merge *deltas*; returns whether the state changed."""
        previous = self._state
        self._state = reduce_all(previous, deltas)
        if self._state is previous:
            return False
        for listener in list(self._listeners):
            try:
                listener(self._state)
            except Exception:
                _logger.warning("State listener failed", exc_info=True)
        return True

    def device(self, device_id: str) -> dict[str, Any] | None:
        return self._state.get(EntityKind.DEVICE, device_id)

    def notification(self, notification_id: str) -> dict[str, Any] | None:
        return self._state.get(EntityKind.NOTIFICATION, notification_id)

    def devices(self) -> dict[str, dict[str, Any]]:
        return {key: entity.data for key, entity in self._state.devices.items()}

    def notifications(self) -> dict[str, dict[str, Any]]:
        return {key: entity.data for key, entity in self._state.notifications.items()}
