"""Base model and timestamp helpers shared by feverwatch models.

Every wire/domain model inherits from :class:`FeverWatchModel` which
provides:

* ``alias_generator=to_camel`` so camelCase wire keys map
  automatically to snake_case fields.
* ``populate_by_name`` so models can also be built from Python kwargs.
* Frozen instances; state changes produce copies via ``model_copy``.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Annotated, Any

from pydantic import BaseModel, BeforeValidator, ConfigDict
from pydantic.alias_generators import to_camel

# Threshold to distinguish seconds from milliseconds.
_MS_THRESHOLD = 1_000_000_000_000


def utcnow() -> datetime:
    return datetime.now(UTC)


def parse_timestamp(value: Any) -> datetime | None:
    """Coerce an epoch (seconds **or** milliseconds), ISO string or datetime to an aware UTC datetime.

    Returns ``None`` when the value is ``None``.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        ts = float(value)
        if ts >= _MS_THRESHOLD:
            ts /= 1000.0
        return datetime.fromtimestamp(ts, tz=UTC)
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = f"{text[:-1]}+00:00"
        parsed = datetime.fromisoformat(text)
        return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)
    raise ValueError(f"Unsupported timestamp value: {value!r}")


def _require_timestamp(value: Any) -> datetime:
    parsed = parse_timestamp(value)
    if parsed is None:
        raise ValueError("timestamp is required")
    return parsed


Timestamp = Annotated[datetime, BeforeValidator(_require_timestamp)]
"""Annotated type that coerces epoch numbers and ISO strings to aware UTC datetimes."""

OptionalTimestamp = Annotated[datetime | None, BeforeValidator(parse_timestamp)]


class FeverWatchModel(BaseModel):
    """Base for feverwatch models."""

    model_config = ConfigDict(
        frozen=True,
        extra="ignore",
        populate_by_name=True,
        alias_generator=to_camel,
    )

    def to_wire(self) -> dict[str, Any]:
        """JSON-compatible camelCase dict, as sent to clients."""
        return self.model_dump(mode="json", by_alias=True)
