"""Client-side state reconciliation."""

from feverwatch.state.events import Delta, DeltaSource, EntityKind, snapshot_deltas
from feverwatch.state.store import ClientState, ClientStore, EntityVersion, FieldVersion, reduce, reduce_all

__all__ = [
    "ClientState",
    "ClientStore",
    "Delta",
    "DeltaSource",
    "EntityKind",
    "EntityVersion",
    "FieldVersion",
    "reduce",
    "reduce_all",
    "snapshot_deltas",
]
