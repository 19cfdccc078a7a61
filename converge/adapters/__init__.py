"""Adapters — collaborators the reconciler talks through.

Public re-exports for convenient access.
"""

from converge.adapters.base import (
    Collaborators,
    Installer,
    InstallResult,
    Renderer,
    ScriptResult,
    ScriptRunner,
    SecretRecord,
    SecretStore,
)
from converge.adapters.mock import MockInstaller, MockScriptRunner, MockSecretStore

__all__ = [
    "Collaborators",
    "InstallResult",
    "Installer",
    "MockInstaller",
    "MockScriptRunner",
    "MockSecretStore",
    "Renderer",
    "ScriptResult",
    "ScriptRunner",
    "SecretRecord",
    "SecretStore",
]
