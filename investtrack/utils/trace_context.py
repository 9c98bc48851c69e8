"""
Trace context for correlating logs across a single refresh cycle.

Provides:
- Unique cycle IDs (6-char hex) for each refresh or sweep cycle
- Context propagation via contextvars (async-safe)

Usage:
    # In orchestrator (start of cycle)
    with new_cycle():
        await self._refresh_ib(account)

    # In any module
    from investtrack.utils.trace_context import get_cycle_id
    logger.info(f"[{get_cycle_id()}] Flushing snapshot")
"""

from __future__ import annotations

import secrets
from contextvars import ContextVar
from contextlib import contextmanager
from typing import Optional, Generator

_cycle_id: ContextVar[Optional[str]] = ContextVar("cycle_id", default=None)

_cycle_counter: int = 0


def generate_cycle_id() -> str:
    """Generate a new 6-character hex cycle ID (e.g. "a7f3b2")."""
    return secrets.token_hex(3)


def get_cycle_id() -> str:
    """
    Get the current cycle ID.

    Returns:
        Current cycle ID, or "------" if no cycle is active.
    """
    cycle_id = _cycle_id.get()
    return cycle_id if cycle_id else "------"


@contextmanager
def new_cycle() -> Generator[str, None, None]:
    """
    Run the enclosed block under a fresh cycle ID.

    The previous ID (if any) is restored on exit, so a sweep that triggers
    nested refreshes keeps its own ID once they finish.

    Yields:
        The new cycle ID.
    """
    global _cycle_counter
    _cycle_counter += 1

    token = _cycle_id.set(generate_cycle_id())
    try:
        yield _cycle_id.get()
    finally:
        _cycle_id.reset(token)


def get_cycle_counter() -> int:
    """Total number of cycles created in this session."""
    return _cycle_counter


def reset_cycle_counter() -> None:
    """Reset the cycle counter (for testing)."""
    global _cycle_counter
    _cycle_counter = 0
