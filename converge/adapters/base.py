"""
Collaborator base — the contract between the reconciler and the outside world.

The reconciler never talks to Jenkins, the update site, the template
engine or the secret store directly. It goes through these four
interfaces:

    Installer      install / is_installed        (plugins)
    ScriptRunner   execute / restart             (admin scripts)
    Renderer       render                        (templates)
    SecretStore    get_secret                    (key material)

Mutating calls (install, execute, restart) return a result object and
do not raise for ordinary failures. Queries (is_installed, render,
get_secret) raise CollaboratorError when they cannot answer.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, SecretStr


class InstallResult(BaseModel):
    """Outcome of a plugin install."""

    name: str
    version: str | None = None
    success: bool = True
    changed: bool = False
    output: str = ""
    error: str | None = None


class ScriptResult(BaseModel):
    """Outcome of an admin script. ``output`` is for logging only."""

    success: bool
    output: str = ""
    error: str | None = None


class SecretRecord(BaseModel):
    """Key material or password from the secret store."""

    username: str = ""
    private_key_or_password: SecretStr
    passphrase: SecretStr | None = None


class Installer(ABC):
    """Installs plugins on the managed server."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Installer identifier (e.g. 'update_center', 'gradle')."""

    @abstractmethod
    def install(self, name: str, version: str | None = None) -> InstallResult:
        """Install ``name`` at ``version`` (None = latest)."""

    @abstractmethod
    def is_installed(self, name: str) -> tuple[bool, str | None]:
        """Whether the plugin is installed, and at which version."""

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} name={self.name!r}>"


class ScriptRunner(ABC):
    """Executes opaque admin scripts on the managed server."""

    @abstractmethod
    def execute(self, script: str) -> ScriptResult:
        """Run a script. Scripts used for one-time setup must be idempotent."""

    @abstractmethod
    def restart(self) -> ScriptResult:
        """Safe-restart the server and wait until it answers again."""


class Renderer(ABC):
    """Renders a named template."""

    @abstractmethod
    def render(self, template_id: str, variables: dict[str, Any]) -> bytes:
        """Render ``template_id`` with ``variables``."""

    def render_text(self, template_id: str, variables: dict[str, Any]) -> str:
        return self.render(template_id, variables).decode("utf-8")


class SecretStore(ABC):
    """Looks up secret bags by environment and id."""

    @abstractmethod
    def get_secret(self, environment: str, bag_id: str) -> SecretRecord:
        """Return the secret, or raise CollaboratorError."""


@dataclass
class Collaborators:
    """Everything a run talks to, bundled."""

    installer: Installer
    runner: ScriptRunner
    renderer: Renderer
    secrets: SecretStore
