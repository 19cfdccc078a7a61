"""
Run use case — converge the managed server to converge.yml.

The full vertical slice from user intent to recorded run: load
config, wire the collaborators, reconcile, append the run to history.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from converge.adapters.base import Collaborators, Installer
from converge.adapters.jenkins.gradle import GradlePluginInstaller
from converge.adapters.jenkins.script_console import JenkinsScriptRunner
from converge.adapters.jenkins.update_center import UpdateCenterInstaller
from converge.adapters.mock import MockInstaller, MockScriptRunner
from converge.adapters.secrets import FileSecretStore
from converge.adapters.templates import JinjaRenderer
from converge.core.config.loader import ConvergeConfig, find_config_file, load_config
from converge.core.engine.reconciler import Reconciler, RunReport
from converge.core.errors import ConfigError
from converge.core.persistence.history import HistoryWriter
from converge.core.persistence.state_store import FileStateStore, MemoryStateStore, StateStore

logger = logging.getLogger(__name__)


@dataclass
class RunResult:
    """Result of a converge run."""

    report: RunReport | None = None
    config_path: Path | None = None
    mock: bool = False
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.report is not None and self.report.ok

    def to_dict(self) -> dict:
        result: dict = {}
        if self.error:
            result["error"] = self.error
            return result

        result["config_path"] = str(self.config_path) if self.config_path else None
        result["mock"] = self.mock
        if self.report:
            result["report"] = self.report.to_dict()
        return result


def build_installer(config: ConvergeConfig, renderer: JinjaRenderer) -> Installer:
    if config.installer.kind == "gradle":
        return GradlePluginInstaller(
            jenkins_home=config.jenkins.home,
            renderer=renderer,
            repository_url=config.installer.repository_url,
            groups=config.installer.groups,
            gradle=config.installer.gradle,
            timeout=config.timeouts.install_seconds,
        )
    return UpdateCenterInstaller(
        jenkins_home=config.jenkins.home,
        update_center_url=config.installer.update_center_url,
        timeout=config.timeouts.install_seconds,
    )


def build_collaborators(config: ConvergeConfig, mock: bool = False) -> Collaborators:
    """Wire the collaborators for a run.

    In mock mode the installer and script runner are test doubles;
    templates and secrets are still real, so a mock run validates both.
    """
    renderer = JinjaRenderer(config.templates_dir)
    secrets = FileSecretStore(config.secrets.dir)

    if mock:
        return Collaborators(
            installer=MockInstaller(),
            runner=MockScriptRunner(),
            renderer=renderer,
            secrets=secrets,
        )

    return Collaborators(
        installer=build_installer(config, renderer),
        runner=JenkinsScriptRunner(
            url=config.jenkins.url,
            username=config.jenkins.username,
            token=config.token(),
            timeout=config.timeouts.script_seconds,
            restart_timeout=config.timeouts.restart_seconds,
            poll_interval=config.timeouts.poll_seconds,
        ),
        renderer=renderer,
        secrets=secrets,
    )


def build_store(config: ConvergeConfig, mock: bool = False) -> StateStore:
    # a mock run must never mark real actions as done
    if mock:
        return MemoryStateStore()
    return FileStateStore(config.flags_dir)


def run_converge(
    config_path: Path | None = None,
    environment: str | None = None,
    dry_run: bool = False,
    mock: bool = False,
    collaborators: Collaborators | None = None,
    store: StateStore | None = None,
) -> RunResult:
    """Reconcile the server described by converge.yml.

    Args:
        config_path: Optional explicit path to converge.yml.
        environment: Override ``desired.environment``.
        dry_run: Evaluate preconditions only.
        mock: Use mock installer and runner, and an in-memory store.
        collaborators: Optional pre-wired collaborators.
        store: Optional pre-built state store.

    Returns:
        RunResult with the run report.
    """
    result = RunResult(mock=mock)

    if config_path is None:
        config_path = find_config_file()
    result.config_path = config_path

    try:
        config = load_config(config_path)
    except ConfigError as e:
        result.error = str(e)
        return result

    desired = config.desired
    if environment:
        desired = desired.model_copy(update={"environment": environment})

    reconciler = Reconciler(
        store=store or build_store(config, mock),
        collaborators=collaborators or build_collaborators(config, mock),
        directories=[] if mock else config.base_directories(),
        history=None if mock else HistoryWriter(config.history_path),
        dry_run=dry_run,
    )

    result.report = reconciler.reconcile(desired)
    return result
