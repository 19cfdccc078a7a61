"""
Gradle installer — resolve plugins from a Maven repository with Gradle.

Renders ``<home>/build.gradle`` listing the requested plugin and runs
``gradle install``, whose Copy task drops the resolved ``.hpi`` files
into ``<home>/plugins/<name>.jpi``. The resolved dependency tree is
then written to ``<home>/plugins.lock`` with ``gradle dependencies``.
Useful where the update site is not reachable but an artifact mirror
is.
"""

from __future__ import annotations

import logging
import os
import subprocess
import time
from pathlib import Path

from converge.adapters.base import InstallResult, Renderer
from converge.adapters.jenkins.update_center import PluginsDirInstaller
from converge.core.errors import CollaboratorError

logger = logging.getLogger(__name__)

DEFAULT_REPOSITORY = "https://repo.jenkins-ci.org/releases/"
DEFAULT_GROUP = "org.jenkins-ci.plugins"

LOCK_FILE = "plugins.lock"


class GradlePluginInstaller(PluginsDirInstaller):
    """Installs plugins by running Gradle in JENKINS_HOME.

    Args:
        jenkins_home: Server home; ``build.gradle`` is written here.
        renderer: Renders the ``build.gradle.j2`` manifest.
        repository_url: Maven repository holding the plugins.
        groups: Plugin name → Maven group, for plugins outside the
            default ``org.jenkins-ci.plugins`` group.
        gradle: Gradle executable.
        timeout: Seconds per Gradle invocation.
    """

    def __init__(
        self,
        jenkins_home: Path,
        renderer: Renderer,
        repository_url: str = DEFAULT_REPOSITORY,
        groups: dict[str, str] | None = None,
        gradle: str = "gradle",
        timeout: float = 300,
    ):
        super().__init__(jenkins_home)
        self._renderer = renderer
        self._repository_url = repository_url
        self._groups = dict(groups or {})
        self._gradle = gradle
        self._timeout = timeout

    @property
    def name(self) -> str:
        return "gradle"

    @property
    def lock_file(self) -> Path:
        return self._home / LOCK_FILE

    def write_manifest(self, name: str, version: str | None) -> Path:
        """Render build.gradle for one plugin."""
        content = self._renderer.render(
            "build.gradle.j2",
            {
                "repository_url": self._repository_url,
                "plugins": [
                    {"group": self._groups.get(name, DEFAULT_GROUP), "name": name, "version": version},
                ],
                "plugins_dir": str(self.plugins_dir),
            },
        )
        path = self._home / "build.gradle"
        path.write_bytes(content)
        os.chmod(path, 0o640)
        return path

    def _gradle_run(self, task: str) -> subprocess.CompletedProcess:
        """Run one Gradle task in JENKINS_HOME.

        Raises:
            CollaboratorError: Gradle timed out or could not be started.
        """
        command = [self._gradle, "--quiet", task]
        logger.debug("Executing: %s (cwd=%s)", " ".join(command), self._home)
        try:
            return subprocess.run(
                command,
                cwd=self._home,
                capture_output=True,
                text=True,
                timeout=self._timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise CollaboratorError(f"gradle {task} timed out after {self._timeout:.0f}s") from e
        except OSError as e:
            raise CollaboratorError(f"Cannot run gradle: {e}") from e

    def write_lock(self) -> None:
        """Record the resolved dependency tree in plugins.lock."""
        result = self._gradle_run("dependencies")
        if result.returncode != 0:
            raise CollaboratorError(
                result.stderr.strip() or f"gradle dependencies exited with code {result.returncode}"
            )
        self.lock_file.write_text(result.stdout, encoding="utf-8")

    def fetch(self, name: str, version: str | None) -> InstallResult:
        try:
            before = self.is_installed(name)
            self._home.mkdir(parents=True, exist_ok=True)
            self.plugins_dir.mkdir(parents=True, exist_ok=True)
            self.write_manifest(name, version)
        except (OSError, CollaboratorError) as e:
            return InstallResult(name=name, version=version, success=False, error=str(e))

        start = time.monotonic()
        try:
            result = self._gradle_run("install")
        except CollaboratorError as e:
            return InstallResult(name=name, version=version, success=False, error=str(e))

        elapsed_ms = int((time.monotonic() - start) * 1000)
        if result.returncode != 0:
            return InstallResult(
                name=name,
                version=version,
                success=False,
                output=result.stdout.strip(),
                error=result.stderr.strip() or f"gradle exited with code {result.returncode}",
            )

        after = self.is_installed(name)
        if not after[0]:
            return InstallResult(
                name=name, version=version, success=False,
                error=f"gradle install finished but {name} is not in {self.plugins_dir}",
            )

        try:
            self.write_lock()
        except (OSError, CollaboratorError) as e:
            return InstallResult(
                name=name, version=after[1], success=False, changed=before != after,
                error=f"Cannot write {self.lock_file}: {e}",
            )

        return InstallResult(
            name=name,
            version=after[1],
            changed=before != after,
            output=f"{name} {after[1] or '?'} resolved in {elapsed_ms}ms",
        )
