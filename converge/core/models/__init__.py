"""
Domain models — Pydantic types for converge.

All models are re-exported here for convenient access:

    from converge.core.models import DesiredState, PinRecord, ActionSpec, ActionResult
"""

from converge.core.models.action import PHASE_ORDER, ActionResult, ActionSpec, Effect, Phase
from converge.core.models.desired import (
    SETTING_KEYS,
    AutomationUser,
    BootstrapJob,
    CredentialKind,
    CredentialSpec,
    DesiredState,
    MailerSettings,
    Settings,
)
from converge.core.models.state import CompletionFlag, PinRecord, pin_flag_key

__all__ = [
    # action.py
    "ActionResult",
    "ActionSpec",
    "AutomationUser",
    "BootstrapJob",
    # state.py
    "CompletionFlag",
    "CredentialKind",
    "CredentialSpec",
    # desired.py
    "DesiredState",
    "Effect",
    "MailerSettings",
    "PHASE_ORDER",
    "Phase",
    "PinRecord",
    "SETTING_KEYS",
    "Settings",
    "pin_flag_key",
]
