"""
ActionSpec and ActionResult — the reconciliation contract.

An ActionSpec describes one idempotent step: how to tell whether it
still needs applying (precondition), what to do (effect) and which
durable marker records that it was done (postcondition). The
reconciler turns each spec into an ActionResult.

Effects report ``changed`` so that later actions (the restart gate)
can react to what actually happened in this run.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Any, Callable, Literal

from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from converge.core.engine.reconciler import RunContext


def _now_iso() -> str:
    """Current UTC time as ISO string."""
    return datetime.now(UTC).isoformat()


class Phase(StrEnum):
    """Reconciliation phases, in their fixed execution order."""

    PREREQUISITES = "prerequisites"
    PLUGINS = "plugins"
    RESTART = "restart"
    AUTOMATION_USER = "automation_user"
    CREDENTIALS = "credentials"
    BOOTSTRAP_JOB = "bootstrap_job"
    SETTINGS = "settings"


PHASE_ORDER: tuple[Phase, ...] = tuple(Phase)


@dataclass
class Effect:
    """What an effect did."""

    changed: bool = True
    output: str = ""


def _always(ctx: RunContext) -> bool:
    return True


@dataclass
class ActionSpec:
    """A declarative, idempotent step.

    Attributes:
        key:           Stable idempotency key (also the flag key, if any).
        phase:         Which phase of the run the action belongs to.
        description:   Human-readable summary for logs and reports.
        effect:        Applies the action through a collaborator.
        precondition:  True when the action still needs applying.
        postcondition: Writes the durable completion marker.
        read_only:     The effect only reads; it also runs during a dry run.
        installs:      The effect installs a plugin (feeds the restart gate).
    """

    key: str
    phase: Phase
    description: str
    effect: Callable[[RunContext], Effect]
    precondition: Callable[[RunContext], bool] = _always
    postcondition: Callable[[RunContext], None] | None = None
    read_only: bool = False
    installs: bool = False
    skip_reason: str = "already satisfied"


class ActionResult(BaseModel):
    """Outcome of one action in a run. Never carries secret material."""

    key: str
    phase: str = ""
    outcome: Literal["applied", "skipped", "failed", "planned"] = "applied"
    changed: bool = False

    started_at: str = Field(default_factory=_now_iso)
    ended_at: str = Field(default_factory=_now_iso)
    duration_ms: int = 0

    output: str = ""
    error: str | None = None
    error_kind: str | None = None

    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.outcome in ("applied", "skipped", "planned")

    @property
    def failed(self) -> bool:
        return self.outcome == "failed"

    @classmethod
    def applied(cls, key: str, phase: str, changed: bool, output: str = "", **kwargs: Any) -> ActionResult:
        return cls(key=key, phase=phase, outcome="applied", changed=changed, output=output, **kwargs)

    @classmethod
    def skipped(cls, key: str, phase: str, reason: str = "already satisfied", **kwargs: Any) -> ActionResult:
        return cls(key=key, phase=phase, outcome="skipped", output=reason, **kwargs)

    @classmethod
    def planned(cls, key: str, phase: str, **kwargs: Any) -> ActionResult:
        return cls(key=key, phase=phase, outcome="planned", output="[dry-run] would apply", **kwargs)

    @classmethod
    def failure(cls, key: str, phase: str, error: str, error_kind: str, **kwargs: Any) -> ActionResult:
        return cls(key=key, phase=phase, outcome="failed", error=error, error_kind=error_kind, **kwargs)
