"""
SciLoop — Common Primitives

Shared base classes and utilities used across all agents.
"""

from __future__ import annotations

import threading
from datetime import datetime, timezone

from pydantic import BaseModel
from ulid import ULID


def new_id() -> str:
    """Generate a new ULID string. Time-sortable, globally unique."""
    return str(ULID())


def utc_now() -> datetime:
    """Current UTC time, timezone-aware."""
    return datetime.now(timezone.utc)


def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


# ─── Base Models ──────────────────────────────────────────────────


class SciLoopBaseModel(BaseModel):
    """Base model for all SciLoop primitives."""

    model_config = {"populate_by_name": True, "from_attributes": True}


class FrozenModel(SciLoopBaseModel):
    """Immutable once produced — problems, hypotheses, verdicts, fixes."""

    model_config = {"populate_by_name": True, "from_attributes": True, "frozen": True}


# ─── Sequence Counter ─────────────────────────────────────────────


class SequenceCounter:
    """
    Monotonic integer sequence for human-readable ids (PROB-001, FIX-001).

    Each agent owns its counter. Increments are serialised with a lock so
    that ids stay unique when an agent is shared across threads.
    """

    def __init__(self, start: int = 0) -> None:
        self._start = start
        self._value = start
        self._lock = threading.Lock()

    def next(self) -> int:
        with self._lock:
            self._value += 1
            return self._value

    @property
    def peek(self) -> int:
        return self._value

    def reset(self) -> None:
        with self._lock:
            self._value = self._start

    def format(self, prefix: str, width: int = 3) -> str:
        """Advance and render as ``<prefix>-<zero padded n>``."""
        return f"{prefix}-{str(self.next()).zfill(width)}"
