"""
DesiredState — the fully-resolved input of a reconciliation run.

Loaded from the ``desired:`` section of converge.yml. Everything an
action needs is resolved into this one value before the run starts;
no action reaches back into global configuration.
"""

from __future__ import annotations

import re
from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

# The server-wide settings the reconciler manages
SETTING_KEYS = ("executor_count", "system_email", "system_url", "sshd_port")

# Plugin values that mean "any version, do not pin"
_UNPINNED_MARKERS = {"", "latest", "any"}

_PLUGIN_NAME = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


class CredentialKind(StrEnum):
    """Kinds of credentials that can be registered."""

    PRIVATE_KEY = "private_key"
    PASSWORD = "password"


class CredentialSpec(BaseModel):
    """A credential to register on the server.

    The secret itself is never part of the spec: ``secret_ref`` names
    a secret bag resolved through the secret store at run time.
    """

    id: str
    kind: CredentialKind
    username: str = ""      # empty = take the username from the secret bag
    secret_ref: str
    description: str = ""


class AutomationUser(BaseModel):
    """The service account used to drive the server's admin API."""

    username: str = "jenkins_automation"
    full_name: str = "Automation Account - used to configure Jenkins & create bootstrap job"
    public_key: str | None = None     # literal "ssh-rsa AAAA..." line
    secret_ref: str | None = None     # bag holding the private key to derive it from

    @model_validator(mode="after")
    def _needs_key_material(self) -> AutomationUser:
        if not self.public_key and not self.secret_ref:
            raise ValueError("automation_user needs either 'public_key' or 'secret_ref'")
        return self


class MailerSettings(BaseModel):
    """Outgoing mail relay configuration."""

    model_config = ConfigDict(extra="forbid")

    smtp_host: str = "localhost"
    smtp_port: int = Field(default=25, ge=1, le=65535)
    default_suffix: str = ""
    use_ssl: bool = False
    charset: str = "UTF-8"


class Settings(BaseModel):
    """Server-wide settings, applied as one last-write-wins script."""

    model_config = ConfigDict(extra="forbid")

    executor_count: int | None = Field(default=None, ge=0)
    system_email: str | None = None
    system_url: str | None = None
    sshd_port: int | None = Field(default=None, ge=-1, le=65535)  # -1 disables, 0 = random

    system_message: str | None = None
    disable_remember_me: bool = True
    git_config_name: str = "jenkins-build"
    mailer: MailerSettings = Field(default_factory=MailerSettings)

    def managed(self) -> dict[str, Any]:
        """The managed setting keys that have a value."""
        return {k: getattr(self, k) for k in SETTING_KEYS if getattr(self, k) is not None}


class BootstrapJob(BaseModel):
    """Seed job that pulls a Job DSL repository and generates all other jobs."""

    name: str = "dsl-bootstrap-job"
    description: str = "Bootstraps the Jenkins server by installing all jobs (using the job-dsl plugin)"
    repository_url: str
    branch: str = "*/master"
    credential_id: str = ""
    target_directory: str = "script"
    dsl_scripts: str = "script/jenkins_job_dsl/**/*.groovy"
    cron: str = "H H * * *"
    removed_job_action: Literal["DELETE", "IGNORE", "DISABLE"] = "DELETE"
    run_after_create: bool = True


class DesiredState(BaseModel):
    """Top-level desired state of the managed server."""

    environment: str = "dev"

    # ordered: plugin name → version (None = unpinned)
    plugins: dict[str, str | None] = Field(default_factory=dict)
    settings: Settings = Field(default_factory=Settings)
    credentials: list[CredentialSpec] = Field(default_factory=list)
    automation_user: AutomationUser | None = None
    bootstrap_job: BootstrapJob | None = None

    @field_validator("plugins", mode="before")
    @classmethod
    def _normalize_plugins(cls, value: Any) -> Any:
        if value is None:
            return {}
        if isinstance(value, list):
            # a bare list of names means "all unpinned"
            return {str(name): None for name in value}
        if not isinstance(value, dict):
            return value

        normalized: dict[str, str | None] = {}
        for name, version in value.items():
            name = str(name)
            if not _PLUGIN_NAME.match(name):
                raise ValueError(f"Invalid plugin name: {name!r}")
            if version is True or version is None:
                normalized[name] = None
            elif version is False:
                raise ValueError(
                    f"Plugin {name!r}: 'false' is not supported; remove the entry instead"
                )
            elif isinstance(version, (int, float)):
                # YAML reads 3.10 as 3.1; only a string keeps the version intact
                raise ValueError(
                    f"Plugin {name!r}: version {version!r} was read as a number; quote it"
                )
            else:
                text = str(version).strip()
                normalized[name] = None if text.lower() in _UNPINNED_MARKERS else text
        return normalized

    @field_validator("credentials")
    @classmethod
    def _unique_credential_ids(cls, value: list[CredentialSpec]) -> list[CredentialSpec]:
        seen: set[str] = set()
        for cred in value:
            if cred.id in seen:
                raise ValueError(f"Duplicate credential id: {cred.id!r}")
            seen.add(cred.id)
        return value

    def pinned_plugins(self) -> dict[str, str]:
        """Plugins that carry an explicit version."""
        return {name: v for name, v in self.plugins.items() if v is not None}

    def secret_refs(self) -> list[str]:
        """Every secret bag the run will need, in first-use order."""
        refs: list[str] = []
        if self.automation_user and self.automation_user.secret_ref:
            refs.append(self.automation_user.secret_ref)
        for cred in self.credentials:
            if cred.secret_ref not in refs:
                refs.append(cred.secret_ref)
        return refs
