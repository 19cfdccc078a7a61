"""
Error taxonomy for reconciliation runs.

Collaborators and the state store raise their own low-level errors
(``CollaboratorError``, ``StateStoreError``). The reconciler wraps
them into one of the four fatal kinds below, depending on which
step of an action was running when the error occurred:

    precondition  → PreconditionCheckFailed
    effect        → EffectFailed
    marker write  → PostconditionWriteFailed
    secret lookup → SecretResolutionFailed

Every fatal error ends the run. The RunReport carries the failing
action key, the error kind and message.
"""

from __future__ import annotations


class ConvergeError(Exception):
    """Base exception for converge."""


class ConfigError(ConvergeError):
    """Raised when converge.yml is missing or invalid."""


class StateStoreError(ConvergeError):
    """Raised when the state store cannot read or write a record."""


class CollaboratorError(ConvergeError):
    """Raised by an external collaborator (installer, runner, renderer)."""


class ReconcileError(ConvergeError):
    """A fatal error that aborts a reconciliation run."""

    kind = "reconcile_error"

    def __init__(self, action_key: str, message: str):
        super().__init__(f"{action_key}: {message}")
        self.action_key = action_key
        self.message = message


class PreconditionCheckFailed(ReconcileError):
    """The store or installer query errored; skip vs. apply is undecidable."""

    kind = "precondition_check_failed"


class EffectFailed(ReconcileError):
    """A collaborator call returned failure or raised."""

    kind = "effect_failed"


class PostconditionWriteFailed(ReconcileError):
    """The effect succeeded but its completion marker could not be written.

    A retry may re-apply the effect, so this one needs a human.
    """

    kind = "postcondition_write_failed"
    manual_intervention = True


class SecretResolutionFailed(ReconcileError):
    """Credential or key material is unavailable."""

    kind = "secret_resolution_failed"
