"""Exponential backoff shared by channel retries and client reconnects."""

from __future__ import annotations


def backoff_delay(attempt: int, *, base: float, cap: float) -> float:
    """Delay before retry number *attempt* (0-based): ``min(base * 2**attempt, cap)``."""
    if attempt < 0:
        raise ValueError("attempt must not be negative")
    # Avoid float overflow for large attempt numbers.
    if attempt >= 64:
        return cap
    return min(base * (2**attempt), cap)
