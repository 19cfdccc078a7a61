"""
Reconciler — the central convergence loop.

Takes a DesiredState, builds the ordered action list, and walks it
phase by phase. For each action the precondition is evaluated at the
moment the action starts (never cached from planning), the effect is
applied through a collaborator, and the completion marker is written
only after the effect succeeded.

Flow:
    desired → build actions → (precondition → effect → postcondition)* → RunReport

The first fatal error stops the run. Completed markers stay; the next
run resumes at the first incomplete action.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from converge.adapters.base import Collaborators, SecretRecord
from converge.core.engine.planner import build_actions
from converge.core.errors import (
    EffectFailed,
    PostconditionWriteFailed,
    PreconditionCheckFailed,
    ReconcileError,
    SecretResolutionFailed,
)
from converge.core.models.action import ActionResult, ActionSpec
from converge.core.models.desired import DesiredState
from converge.core.observability.logging_config import bind_run
from converge.core.persistence.history import HistoryEntry, HistoryWriter
from converge.core.persistence.state_store import StateStore

logger = logging.getLogger(__name__)


@dataclass
class RunContext:
    """Everything an action's callables may touch during one run."""

    desired: DesiredState
    store: StateStore
    collaborators: Collaborators
    directories: list[Path] = field(default_factory=list)
    dry_run: bool = False

    # filled in as the run progresses
    secrets: dict[str, SecretRecord] = field(default_factory=dict)
    installs_changed: list[str] = field(default_factory=list)
    installs_planned: list[str] = field(default_factory=list)
    restart_performed: bool = False

    def secret(self, ref: str, action_key: str) -> SecretRecord:
        """A secret resolved earlier in this run."""
        if ref not in self.secrets:
            raise SecretResolutionFailed(action_key, f"secret '{ref}' was not resolved")
        return self.secrets[ref]


@dataclass
class RunReport:
    """Result of a reconciliation run."""

    run_id: str = ""
    environment: str = ""
    dry_run: bool = False
    results: list[ActionResult] = field(default_factory=list)

    failed_action: str | None = None
    error: str | None = None
    error_kind: str | None = None
    manual_intervention: bool = False

    restart_performed: bool = False
    interrupted: bool = False
    duration_ms: int = 0

    @property
    def total(self) -> int:
        return len(self.results)

    @property
    def applied(self) -> int:
        return sum(1 for r in self.results if r.outcome == "applied")

    @property
    def skipped(self) -> int:
        return sum(1 for r in self.results if r.outcome == "skipped")

    @property
    def planned(self) -> int:
        return sum(1 for r in self.results if r.outcome == "planned")

    @property
    def changed(self) -> int:
        return sum(1 for r in self.results if r.changed)

    @property
    def completed(self) -> list[str]:
        """Keys of the actions that are done (applied now or before)."""
        return [r.key for r in self.results if r.outcome in ("applied", "skipped")]

    @property
    def ok(self) -> bool:
        return self.failed_action is None

    @property
    def status(self) -> str:
        if self.interrupted:
            return "interrupted"
        return "ok" if self.ok else "failed"

    def to_dict(self) -> dict:
        return {
            "run_id": self.run_id,
            "environment": self.environment,
            "dry_run": self.dry_run,
            "status": self.status,
            "total": self.total,
            "applied": self.applied,
            "skipped": self.skipped,
            "planned": self.planned,
            "changed": self.changed,
            "restart_performed": self.restart_performed,
            "interrupted": self.interrupted,
            "duration_ms": self.duration_ms,
            "failed_action": self.failed_action,
            "error_kind": self.error_kind,
            "error": self.error,
            "manual_intervention": self.manual_intervention,
            "completed": self.completed,
            "results": [r.model_dump(mode="json") for r in self.results],
        }


def generate_run_id() -> str:
    """Generate a unique run ID."""
    now = datetime.now(UTC).strftime("%Y%m%d-%H%M%S")
    short = uuid.uuid4().hex[:6]
    return f"run-{now}-{short}"


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


class Reconciler:
    """Drives a DesiredState to convergence.

    Args:
        store: Where completion flags and pins are kept.
        collaborators: Installer, script runner, renderer, secret store.
        directories: Base directories the prerequisites phase creates.
        history: Optional run history; one entry is appended per run.
        dry_run: Evaluate preconditions only; apply nothing.
    """

    def __init__(
        self,
        store: StateStore,
        collaborators: Collaborators,
        directories: list[Path] | None = None,
        history: HistoryWriter | None = None,
        dry_run: bool = False,
    ):
        self._store = store
        self._collaborators = collaborators
        self._directories = list(directories or [])
        self._history = history
        self._dry_run = dry_run

    def new_context(self, desired: DesiredState) -> RunContext:
        return RunContext(
            desired=desired,
            store=self._store,
            collaborators=self._collaborators,
            directories=self._directories,
            dry_run=self._dry_run,
        )

    def reconcile(self, desired: DesiredState) -> RunReport:
        """Run every action in order, stopping at the first fatal error."""
        start = time.monotonic()
        ctx = self.new_context(desired)
        report = RunReport(
            run_id=generate_run_id(),
            environment=desired.environment,
            dry_run=self._dry_run,
        )
        bind_run(report.run_id)
        logger.info(
            "Reconcile %s started (environment=%s%s)",
            report.run_id, desired.environment, ", dry-run" if self._dry_run else "",
        )

        try:
            try:
                actions = build_actions(ctx)
            except ReconcileError as e:
                self._fail(report, ActionResult.failure(
                    key=e.action_key, phase="", error=e.message, error_kind=e.kind,
                ), e)
                return report

            for spec in actions:
                result = self.run_action(spec, ctx)
                report.results.append(result)

                marker = {"applied": "✓", "skipped": "⊘", "planned": "…"}.get(result.outcome, "✗")
                logger.info("%s %s → %s", marker, spec.key, result.outcome)

                if result.failed:
                    self._fail(report, result)
                    break
        except KeyboardInterrupt:
            report.interrupted = True
            logger.warning(
                "Reconcile %s interrupted after %d actions; completed markers are kept",
                report.run_id, len(report.results),
            )
            raise
        finally:
            report.restart_performed = ctx.restart_performed
            report.duration_ms = _elapsed_ms(start)
            self._record(report)

        logger.info(
            "Reconcile %s finished: %s (%d applied, %d skipped, %d changed)",
            report.run_id, report.status, report.applied, report.skipped, report.changed,
        )
        return report

    def run_action(self, spec: ActionSpec, ctx: RunContext) -> ActionResult:
        """Evaluate one action. Never raises a ReconcileError; failures become results."""
        start = time.monotonic()
        started_at = datetime.now(UTC).isoformat()
        phase = spec.phase.value

        # precondition, evaluated now
        try:
            needed = spec.precondition(ctx)
        except ReconcileError as e:
            return self._failure(spec, e, started_at, start)
        except Exception as e:
            return self._failure(spec, PreconditionCheckFailed(spec.key, str(e)), started_at, start)

        if not needed:
            logger.debug("%s %s", spec.key, spec.skip_reason)
            return ActionResult.skipped(
                key=spec.key, phase=phase, reason=spec.skip_reason,
                started_at=started_at, duration_ms=_elapsed_ms(start),
            )

        if ctx.dry_run and not spec.read_only:
            if spec.installs:
                ctx.installs_planned.append(spec.key)
            return ActionResult.planned(
                key=spec.key, phase=phase, started_at=started_at,
                metadata={"description": spec.description},
            )

        # effect
        logger.debug("Applying %s: %s", spec.key, spec.description)
        try:
            effect = spec.effect(ctx)
        except ReconcileError as e:
            return self._failure(spec, e, started_at, start)
        except Exception as e:
            return self._failure(spec, EffectFailed(spec.key, str(e)), started_at, start)

        if spec.installs and effect.changed:
            ctx.installs_changed.append(spec.key)

        # completion marker, only after the effect succeeded
        if spec.postcondition is not None:
            try:
                spec.postcondition(ctx)
            except Exception as e:
                logger.error(
                    "%s applied but its completion marker could not be written: %s",
                    spec.key, e,
                )
                return self._failure(
                    spec, PostconditionWriteFailed(spec.key, str(e)), started_at, start,
                )

        return ActionResult.applied(
            key=spec.key,
            phase=phase,
            changed=effect.changed,
            output=effect.output,
            started_at=started_at,
            duration_ms=_elapsed_ms(start),
        )

    # ── Internals ───────────────────────────────────────────────

    def _failure(
        self,
        spec: ActionSpec,
        error: ReconcileError,
        started_at: str,
        start: float,
    ) -> ActionResult:
        logger.error("%s failed (%s): %s", spec.key, error.kind, error.message)
        metadata: dict[str, Any] = {}
        if getattr(error, "manual_intervention", False):
            metadata["manual_intervention"] = True
        return ActionResult.failure(
            key=spec.key,
            phase=spec.phase.value,
            error=error.message,
            error_kind=error.kind,
            started_at=started_at,
            duration_ms=_elapsed_ms(start),
            metadata=metadata,
        )

    def _fail(self, report: RunReport, result: ActionResult, error: ReconcileError | None = None) -> None:
        report.failed_action = result.key
        report.error = result.error
        report.error_kind = result.error_kind
        report.manual_intervention = bool(
            result.metadata.get("manual_intervention")
            or (error is not None and getattr(error, "manual_intervention", False))
        )
        if error is not None:
            report.results.append(result)

    def _record(self, report: RunReport) -> None:
        if self._history is None:
            return
        self._history.write(HistoryEntry(
            run_id=report.run_id,
            environment=report.environment,
            dry_run=report.dry_run,
            status=report.status,
            actions_total=report.total,
            actions_applied=report.applied,
            actions_skipped=report.skipped,
            actions_changed=report.changed,
            restart_performed=report.restart_performed,
            duration_ms=report.duration_ms,
            failed_action=report.failed_action,
            error_kind=report.error_kind,
            error=report.error,
            context={"changed": [r.key for r in report.results if r.changed]},
        ))
