"""
Persisted state records — what this reconciler has done.

Two record types live in the state store:

    CompletionFlag — a one-time action finished; never overwritten.
    PinRecord      — a plugin was installed at an explicit version.

Neither claims to be the truth about the managed server. They record
what *this* reconciler did; live state is double-checked through the
installer where it matters.
"""

from __future__ import annotations

from datetime import UTC, datetime

from pydantic import BaseModel, Field


def _now_iso() -> str:
    """Current UTC time as ISO string."""
    return datetime.now(UTC).isoformat()


def pin_flag_key(plugin_name: str) -> str:
    """Flag key under which a plugin's pin marker is stored."""
    return f"{plugin_name}_pinned"


class CompletionFlag(BaseModel):
    """Durable marker for a completed one-time action."""

    action_key: str
    completed_at: int = 0                     # logical time within the store
    recorded_at: str = Field(default_factory=_now_iso)


class PinRecord(BaseModel):
    """A plugin held at a specific version."""

    plugin_name: str
    version: str
    pinned: bool = True
    recorded_at: str = Field(default_factory=_now_iso)
