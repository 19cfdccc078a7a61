"""
Configuration loader — reads converge.yml into typed models.

This is the primary entry point for loading configuration. It reads
YAML, validates against Pydantic schemas, resolves relative paths
against the config file's directory and applies environment
overrides.

Example::

    jenkins:
      url: http://localhost:8080
      home: /var/lib/jenkins
      username: admin            # token from $CONVERGE_JENKINS_TOKEN
    installer:
      kind: update_center
    secrets:
      dir: secrets
    desired:
      environment: prod
      plugins:
        git: 3.9.1
        job-dsl: latest
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from converge.adapters.jenkins.gradle import DEFAULT_REPOSITORY
from converge.adapters.jenkins.update_center import DEFAULT_UPDATE_CENTER
from converge.core.errors import ConfigError
from converge.core.models.desired import DesiredState
from converge.core.persistence.history import DEFAULT_HISTORY_FILE
from converge.core.persistence.state_store import DEFAULT_FLAGS_DIR

logger = logging.getLogger(__name__)

# Default config filename
CONFIG_FILE = "converge.yml"

DEFAULT_TOKEN_ENV = "CONVERGE_JENKINS_TOKEN"


class JenkinsConfig(BaseModel):
    """How to reach the managed server."""

    model_config = ConfigDict(extra="forbid")

    url: str = "http://localhost:8080"
    home: Path = Path("/var/lib/jenkins")
    username: str | None = None
    token_env: str = DEFAULT_TOKEN_ENV
    manage_directories: bool = True    # create flags dir and init.groovy.d


class InstallerConfig(BaseModel):
    """Which plugin installer to use."""

    model_config = ConfigDict(extra="forbid")

    kind: Literal["update_center", "gradle"] = "update_center"
    update_center_url: str = DEFAULT_UPDATE_CENTER
    repository_url: str = DEFAULT_REPOSITORY
    groups: dict[str, str] = Field(default_factory=dict)
    gradle: str = "gradle"


class StateConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    flags_dir: Path | None = None      # default: <jenkins.home>/.flags
    state_dir: Path | None = None      # default: <jenkins.home>/.converge


class SecretsConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    dir: Path = Path("secrets")


class TimeoutsConfig(BaseModel):
    """Per-call collaborator timeouts, in seconds."""

    model_config = ConfigDict(extra="forbid")

    script_seconds: float = Field(default=120, gt=0)
    install_seconds: float = Field(default=300, gt=0)
    restart_seconds: float = Field(default=300, gt=0)
    poll_seconds: float = Field(default=5, gt=0)


class ConvergeConfig(BaseModel):
    """Everything in converge.yml."""

    model_config = ConfigDict(extra="forbid")

    jenkins: JenkinsConfig = Field(default_factory=JenkinsConfig)
    installer: InstallerConfig = Field(default_factory=InstallerConfig)
    state: StateConfig = Field(default_factory=StateConfig)
    secrets: SecretsConfig = Field(default_factory=SecretsConfig)
    timeouts: TimeoutsConfig = Field(default_factory=TimeoutsConfig)
    templates_dir: Path | None = None
    desired: DesiredState = Field(default_factory=DesiredState)

    @property
    def flags_dir(self) -> Path:
        return self.state.flags_dir or self.jenkins.home / DEFAULT_FLAGS_DIR

    @property
    def state_dir(self) -> Path:
        return self.state.state_dir or self.jenkins.home / ".converge"

    @property
    def history_path(self) -> Path:
        return self.state_dir / DEFAULT_HISTORY_FILE

    @property
    def init_scripts_dir(self) -> Path:
        return self.jenkins.home / "init.groovy.d"

    def token(self) -> str | None:
        """The API token, read from the environment (never from the file)."""
        return os.environ.get(self.jenkins.token_env) or None

    def base_directories(self) -> list[Path]:
        if not self.jenkins.manage_directories:
            return [self.flags_dir]
        return [self.flags_dir, self.init_scripts_dir]


def find_config_file(start_dir: Path | None = None) -> Path | None:
    """Search for converge.yml starting from the given directory, walking up.

    Args:
        start_dir: Directory to start searching from (default: cwd).

    Returns:
        Path to converge.yml, or None if not found.
    """
    current = (start_dir or Path.cwd()).resolve()

    for _ in range(20):  # safety limit
        candidate = current / CONFIG_FILE
        if candidate.is_file():
            return candidate
        parent = current.parent
        if parent == current:
            break  # filesystem root
        current = parent

    return None


def _apply_env_overrides(data: dict) -> None:
    jenkins = data.setdefault("jenkins", {})
    if not isinstance(jenkins, dict):
        return
    if os.environ.get("CONVERGE_JENKINS_URL"):
        jenkins["url"] = os.environ["CONVERGE_JENKINS_URL"]
    if os.environ.get("CONVERGE_JENKINS_USER"):
        jenkins["username"] = os.environ["CONVERGE_JENKINS_USER"]


def _resolve_paths(config: ConvergeConfig, base: Path) -> ConvergeConfig:
    """Anchor relative paths at the config file's directory."""

    def anchor(path: Path | None) -> Path | None:
        if path is None or path.is_absolute():
            return path
        return (base / path).resolve()

    config.jenkins.home = anchor(config.jenkins.home)
    config.state.flags_dir = anchor(config.state.flags_dir)
    config.state.state_dir = anchor(config.state.state_dir)
    config.secrets.dir = anchor(config.secrets.dir)
    config.templates_dir = anchor(config.templates_dir)
    return config


def load_config(path: Path | None = None) -> ConvergeConfig:
    """Load and validate converge.yml.

    Args:
        path: Explicit path to converge.yml. If None, searches upward.

    Returns:
        Validated ConvergeConfig with absolute paths.

    Raises:
        ConfigError: If the file is missing or invalid.
    """
    if path is None:
        path = find_config_file()

    if path is None:
        raise ConfigError(f"No {CONFIG_FILE} found. Create one, or specify --config.")

    if not path.is_file():
        raise ConfigError(f"Config file not found: {path}")

    logger.debug("Loading config from %s", path)

    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Cannot read {path}: {e}") from e

    try:
        data = yaml.safe_load(raw)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError(f"Expected a YAML mapping in {path}, got {type(data).__name__}")

    _apply_env_overrides(data)

    try:
        config = ConvergeConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration in {path}: {e}") from e

    config = _resolve_paths(config, path.parent.resolve())
    logger.info(
        "Loaded config for environment '%s' with %d plugins",
        config.desired.environment, len(config.desired.plugins),
    )
    return config
