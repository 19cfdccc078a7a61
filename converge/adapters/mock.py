"""
Mock collaborators — test doubles for installer, runner and secret store.

Used in mock mode (``converge run --mock``) and by the test suite to
drive the reconciler without a live server. Each mock keeps a call
log and can be told to fail specific operations.
"""

from __future__ import annotations

from typing import Any

from converge.adapters.base import (
    Collaborators,
    Installer,
    InstallResult,
    ScriptResult,
    ScriptRunner,
    SecretRecord,
    SecretStore,
)
from converge.core.errors import CollaboratorError


class MockInstaller(Installer):
    """In-memory plugin installer.

    ``installed`` maps plugin name → version. Installing without a
    version installs ``default_version``.
    """

    def __init__(
        self,
        installed: dict[str, str] | None = None,
        default_version: str = "latest",
    ):
        self.installed: dict[str, str] = dict(installed or {})
        self._default_version = default_version
        self._failures: dict[str, str] = {}
        self._query_failures: dict[str, str] = {}
        self._call_log: list[tuple[str, str | None]] = []

    @property
    def name(self) -> str:
        return "mock"

    @property
    def call_log(self) -> list[tuple[str, str | None]]:
        """All (name, version) install requests received."""
        return self._call_log

    @property
    def call_count(self) -> int:
        return len(self._call_log)

    def set_failure(self, plugin: str, error: str = "Mock install failure") -> None:
        """Configure installs of ``plugin`` to fail."""
        self._failures[plugin] = error

    def set_query_failure(self, plugin: str, error: str = "Mock query failure") -> None:
        """Configure ``is_installed`` for ``plugin`` to raise."""
        self._query_failures[plugin] = error

    def install(self, name: str, version: str | None = None) -> InstallResult:
        self._call_log.append((name, version))

        if name in self._failures:
            return InstallResult(name=name, version=version, success=False, error=self._failures[name])

        target = version or self._default_version
        changed = self.installed.get(name) != target
        self.installed[name] = target
        return InstallResult(
            name=name,
            version=target,
            changed=changed,
            output=f"[mock] installed {name} {target}",
        )

    def is_installed(self, name: str) -> tuple[bool, str | None]:
        if name in self._query_failures:
            raise CollaboratorError(self._query_failures[name])
        version = self.installed.get(name)
        return version is not None, version


class MockScriptRunner(ScriptRunner):
    """Records scripts instead of running them.

    A script fails when it contains one of the configured substrings.
    """

    def __init__(self, default_output: str = "[mock] executed"):
        self._default_output = default_output
        self._failures: dict[str, str] = {}
        self._restart_failure: str | None = None
        self.scripts: list[str] = []
        self.restart_count = 0

    @property
    def call_count(self) -> int:
        return len(self.scripts)

    def set_failure(self, marker: str, error: str = "Mock script failure") -> None:
        """Fail any script containing ``marker``."""
        self._failures[marker] = error

    def set_restart_failure(self, error: str = "Mock restart failure") -> None:
        self._restart_failure = error

    def execute(self, script: str) -> ScriptResult:
        self.scripts.append(script)
        for marker, error in self._failures.items():
            if marker in script:
                return ScriptResult(success=False, error=error)
        return ScriptResult(success=True, output=self._default_output)

    def restart(self) -> ScriptResult:
        self.restart_count += 1
        if self._restart_failure is not None:
            return ScriptResult(success=False, error=self._restart_failure)
        return ScriptResult(success=True, output="[mock] restarted")

    def scripts_containing(self, marker: str) -> list[str]:
        return [s for s in self.scripts if marker in s]

    def reset(self) -> None:
        self.scripts.clear()
        self._failures.clear()
        self._restart_failure = None
        self.restart_count = 0


class MockSecretStore(SecretStore):
    """Secrets from a plain dict keyed by bag id (environment ignored)."""

    def __init__(self, secrets: dict[str, dict[str, Any]] | None = None):
        self._secrets = dict(secrets or {})
        self.lookups: list[tuple[str, str]] = []

    def add(self, bag_id: str, secret: str, username: str = "", passphrase: str | None = None) -> None:
        self._secrets[bag_id] = {
            "username": username,
            "private_key_or_password": secret,
            "passphrase": passphrase,
        }

    def get_secret(self, environment: str, bag_id: str) -> SecretRecord:
        self.lookups.append((environment, bag_id))
        if bag_id not in self._secrets:
            raise CollaboratorError(f"Secret bag '{bag_id}' not found for environment '{environment}'")
        return SecretRecord(**self._secrets[bag_id])


def mock_collaborators(
    installed: dict[str, str] | None = None,
    secrets: dict[str, dict[str, Any]] | None = None,
) -> Collaborators:
    """A full set of mock collaborators with the real template renderer."""
    from converge.adapters.templates import JinjaRenderer

    return Collaborators(
        installer=MockInstaller(installed),
        runner=MockScriptRunner(),
        renderer=JinjaRenderer(),
        secrets=MockSecretStore(secrets),
    )
