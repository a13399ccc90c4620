"""Interfaces to the collaborators the pipeline consumes but does not own.

Having protocols here makes it easy to pass test doubles while keeping
production implementations elsewhere.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Protocol

from feverwatch.exceptions import AuthFailure

_logger = logging.getLogger(__name__)


class SessionAuthority(Protocol):
    """Validates a session token issued elsewhere."""

    async def validate(self, token: str) -> str:
        """Return the user id the token belongs to, or raise :class:`AuthFailure`."""
        ...


class DeviceRegistry(Protocol):
    """Answers device ownership questions."""

    async def user_owns_device(self, user_id: str, device_id: str) -> bool: ...


class StaticSessionAuthority:
    """Token → user id lookup backed by a fixed mapping.

    Suitable for development servers and tests; production deployments
    plug in the real session service.
    """

    def __init__(self, tokens: Mapping[str, str] | None = None) -> None:
        self._tokens: dict[str, str] = dict(tokens or {})

    async def validate(self, token: str) -> str:
        if not token:
            raise AuthFailure("No token provided", reason="missing_token")
        user_id = self._tokens.get(token)
        if user_id is None:
            _logger.debug("Rejected unknown session token")
            raise AuthFailure("Invalid token", reason="invalid_token")
        return user_id
