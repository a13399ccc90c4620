"""Normalized client-side deltas.

Streamed gateway events and polled snapshot records are both converted
into :class:`Delta` objects. Only the state/store layer merges them.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from feverwatch.models._base import parse_timestamp


class DeltaSource(StrEnum):
    STREAM = "stream"
    SNAPSHOT = "snapshot"


class EntityKind(StrEnum):
    DEVICE = "device"
    NOTIFICATION = "notification"


# Wire key holding the entity id for each kind. Devices are keyed by their
# hardware id, which is also their real-time room.
_ID_KEYS: dict[EntityKind, str] = {
    EntityKind.DEVICE: "deviceId",
    EntityKind.NOTIFICATION: "id",
}


class Delta(BaseModel):
    """A versioned patch for one entity."""

    model_config = ConfigDict(frozen=True)

    kind: EntityKind
    entity_id: str
    source: DeltaSource
    updated_at: datetime
    data: dict[str, Any] = Field(default_factory=dict, description="camelCase field patch")

    @field_validator("entity_id")
    @classmethod
    def _normalize_id(cls, value: str) -> str:
        entity_id = value.strip()
        if not entity_id:
            raise ValueError("entity_id must be non-empty")
        return entity_id

    @field_validator("updated_at")
    @classmethod
    def _ensure_tz_aware(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value

    @classmethod
    def from_record(
        cls,
        kind: EntityKind,
        record: Mapping[str, Any],
        *,
        source: DeltaSource = DeltaSource.SNAPSHOT,
    ) -> Delta:
        """Build a delta from a wire record carrying its id and ``updatedAt``.

        Raises ``ValueError`` when either is missing.
        """
        entity_id = record.get(_ID_KEYS[kind])
        updated_at = parse_timestamp(record.get("updatedAt"))
        if not isinstance(entity_id, str) or updated_at is None:
            raise ValueError(f"{kind} record needs {_ID_KEYS[kind]} and updatedAt")
        data = {key: value for key, value in record.items() if value is not None}
        return cls(kind=kind, entity_id=entity_id, source=source, updated_at=updated_at, data=data)


def snapshot_deltas(kind: EntityKind, records: Iterable[Mapping[str, Any]]) -> list[Delta]:
    """Convert a snapshot endpoint response into deltas, skipping unusable records."""
    deltas: list[Delta] = []
    for record in records:
        try:
            deltas.append(Delta.from_record(kind, record))
        except ValueError:
            continue
    return deltas
