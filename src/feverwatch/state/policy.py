"""Deterministic merge policy.

Last writer wins by ``updatedAt``; on a tie the streamed delta wins over
the polled snapshot.
"""

from __future__ import annotations

from datetime import datetime

from feverwatch.state.events import DeltaSource


def source_priority(source: DeltaSource) -> int:
    """Higher wins for tie-breaking."""
    priorities: dict[DeltaSource, int] = {
        DeltaSource.STREAM: 10,
        DeltaSource.SNAPSHOT: 0,
    }
    return priorities.get(source, 0)


def should_overwrite(
    *,
    current_updated_at: datetime,
    current_source: DeltaSource,
    incoming_updated_at: datetime,
    incoming_source: DeltaSource,
) -> bool:
    """Decide whether an incoming value replaces the stored value of one field.

    An incoming value that is older than the stored one, or equally old
    but from a lower-priority source, never replaces it.
    """
    if incoming_updated_at != current_updated_at:
        return incoming_updated_at > current_updated_at
    return source_priority(incoming_source) >= source_priority(current_source)
