"""Masking of credentials and contact details in DEBUG output.

Gateway auth frames carry session tokens, and webhook bodies for the
push, email and SMS channels carry device push tokens and the parent's
contact details. Both are logged at DEBUG level through
:func:`redact_for_log`.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any

from pydantic import BaseModel

REDACTED = "<redacted>"
_MAX_DEPTH = 20

# Compared after lowercasing and dropping "_" and "-", so ``pushToken``,
# ``push_token`` and ``Push-Token`` all match.
_SECRET_KEYS: frozenset[str] = frozenset(
    {
        # session and transport credentials
        "token",
        "authorization",
        "cookie",
        # channel recipients
        "pushtoken",
        "devicetoken",
        "email",
        "phone",
        "phonenumber",
    }
)


def _is_secret(key: object) -> bool:
    return str(key).lower().replace("_", "").replace("-", "") in _SECRET_KEYS


def redact_for_log(value: Any, *, max_string: int = 512, _depth: int = 0) -> Any:
    """Copy *value* into plain JSON-ish data with secrets masked.

    Models are dumped by alias first so wire names are checked. Long strings
    are cut at *max_string* characters and raw bytes are reduced to their size.
    """
    if _depth > _MAX_DEPTH:
        return "<max-depth>"
    if isinstance(value, BaseModel):
        value = value.model_dump(mode="json", by_alias=True)

    match value:
        case None | bool() | int() | float():
            return value
        case str() if len(value) > max_string:
            return value[:max_string] + "…<truncated>"
        case str():
            return value
        case bytes() | bytearray():
            return f"<bytes:{len(value)}b>"
        case Mapping():
            masked: dict[str, Any] = {}
            for key, item in value.items():
                if _is_secret(key):
                    masked[str(key)] = REDACTED
                else:
                    masked[str(key)] = redact_for_log(item, max_string=max_string, _depth=_depth + 1)
            return masked
        case Sequence():
            return [redact_for_log(item, max_string=max_string, _depth=_depth + 1) for item in value]
        case _:
            return repr(value)
