"""
Config check use case — validate converge.yml and report issues.
"""

from __future__ import annotations

import shutil
from dataclasses import dataclass, field
from pathlib import Path

from converge.core.config.loader import ConvergeConfig, find_config_file, load_config
from converge.core.errors import ConfigError


@dataclass
class ConfigCheckResult:
    """Result of configuration validation."""

    valid: bool = False
    config: ConvergeConfig | None = None
    config_path: Path | None = None
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        desired = self.config.desired if self.config else None
        return {
            "valid": self.valid,
            "config_path": str(self.config_path) if self.config_path else None,
            "errors": self.errors,
            "warnings": self.warnings,
            "environment": desired.environment if desired else None,
            "plugin_count": len(desired.plugins) if desired else 0,
            "pinned_count": len(desired.pinned_plugins()) if desired else 0,
            "credential_count": len(desired.credentials) if desired else 0,
            "managed_settings": sorted(desired.settings.managed()) if desired else [],
        }


def check_config(config_path: Path | None = None) -> ConfigCheckResult:
    """Validate configuration and report issues.

    Args:
        config_path: Optional explicit path to converge.yml.

    Returns:
        ConfigCheckResult with validation status and any issues.
    """
    result = ConfigCheckResult()

    if config_path is None:
        config_path = find_config_file()
    if config_path is None:
        result.errors.append("No converge.yml found.")
        return result
    result.config_path = config_path

    try:
        config = load_config(config_path)
        result.config = config
    except ConfigError as e:
        result.errors.append(str(e))
        return result

    desired = config.desired

    # Semantic checks
    if not desired.plugins:
        result.warnings.append("No plugins declared.")

    if not desired.pinned_plugins() and desired.plugins:
        result.warnings.append(
            "No plugin is pinned; unpinned plugins are installed at whatever "
            "version is latest when they are first installed."
        )

    cred_ids = {c.id for c in desired.credentials}
    job = desired.bootstrap_job
    if job and job.credential_id and job.credential_id not in cred_ids:
        result.warnings.append(
            f"Bootstrap job uses credential '{job.credential_id}' which is not declared here."
        )

    if desired.secret_refs() and not config.secrets.dir.is_dir():
        result.errors.append(f"Secrets directory does not exist: {config.secrets.dir}")

    if config.installer.kind == "gradle" and shutil.which(config.installer.gradle) is None:
        result.warnings.append(f"Gradle executable '{config.installer.gradle}' not found on PATH.")

    if config.jenkins.username and not config.token():
        result.warnings.append(
            f"jenkins.username is set but ${config.jenkins.token_env} is empty; "
            "requests will be anonymous."
        )

    result.valid = len(result.errors) == 0
    return result
