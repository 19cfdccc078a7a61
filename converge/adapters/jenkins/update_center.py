"""
Update-center installer — download plugin archives into JENKINS_HOME.

Plugins are fetched from the update site and written to
``<home>/plugins/<name>.jpi``. The server picks them up on its next
restart. The installed version is read from the archive manifest
(``META-INF/MANIFEST.MF``, ``Plugin-Version``), or from the exploded
plugin directory when the server has already unpacked it.

Required dependencies listed in the manifest (``Plugin-Dependencies``)
are installed after the plugin itself when they are missing, at the
minimum version the plugin asks for. Already installed dependencies
are left alone, whatever their version.

Download URLs::

    <update_center>/download/plugins/<name>/<version>/<name>.hpi
    <update_center>/latest/<name>.hpi
"""

from __future__ import annotations

import logging
import os
import tempfile
import time
import urllib.error
import urllib.request
import zipfile
from abc import abstractmethod
from pathlib import Path
from typing import Any

from converge.adapters.base import Installer, InstallResult
from converge.core.errors import CollaboratorError

logger = logging.getLogger(__name__)

DEFAULT_UPDATE_CENTER = "https://updates.jenkins.io"

_MANIFEST = "META-INF/MANIFEST.MF"


def _parse_manifest(text: str) -> dict[str, str]:
    """Parse a JAR manifest, joining continuation lines."""
    fields: dict[str, str] = {}
    last = None
    for line in text.splitlines():
        if line.startswith(" ") and last is not None:
            fields[last] += line[1:]
            continue
        key, sep, value = line.partition(":")
        if sep:
            last = key.strip()
            fields[last] = value.strip()
    return fields


def read_manifest(path: Path) -> dict[str, str]:
    """Manifest fields of a plugin archive or exploded directory.

    Returns an empty dict when there is no manifest.

    Raises:
        CollaboratorError: The archive or directory cannot be read.
    """
    try:
        if path.is_dir():
            manifest = path / _MANIFEST
            if not manifest.is_file():
                return {}
            text = manifest.read_text(encoding="utf-8", errors="replace")
        else:
            with zipfile.ZipFile(path) as archive:
                text = archive.read(_MANIFEST).decode("utf-8", errors="replace")
    except KeyError:
        return {}
    except (OSError, zipfile.BadZipFile) as e:
        raise CollaboratorError(f"Cannot read plugin manifest {path}: {e}") from e
    return _parse_manifest(text)


def read_plugin_version(path: Path) -> str | None:
    """``Plugin-Version`` of a plugin archive or exploded directory."""
    return read_manifest(path).get("Plugin-Version")


def parse_dependencies(value: str) -> dict[str, str]:
    """Required plugins from a ``Plugin-Dependencies`` header.

    ``credentials:2.1.16,ssh-agent:1.5;resolution:=optional`` gives
    ``{"credentials": "2.1.16"}``. Optional entries are left out.
    """
    required: dict[str, str] = {}
    for entry in value.split(","):
        entry = entry.strip()
        if not entry or "resolution:=optional" in entry:
            continue
        name, _, version = entry.partition(";")[0].partition(":")
        if name.strip():
            required[name.strip()] = version.strip()
    return required


def installed_path(plugins_dir: Path, name: str) -> Path | None:
    """The archive or exploded directory of ``name``, if any."""
    for candidate in (
        plugins_dir / f"{name}.jpi",
        plugins_dir / f"{name}.hpi",
        plugins_dir / name,
    ):
        if candidate.exists():
            return candidate
    return None


def find_installed(plugins_dir: Path, name: str) -> tuple[bool, str | None]:
    """Look for a plugin archive or exploded directory.

    An unreadable archive counts as installed at an unknown version,
    so a pinned install replaces it.
    """
    path = installed_path(plugins_dir, name)
    if path is None:
        return False, None
    try:
        return True, read_plugin_version(path)
    except CollaboratorError as e:
        logger.warning("Unreadable plugin %s: %s", name, e)
        return True, None


class PluginsDirInstaller(Installer):
    """Installer that places plugin archives in ``<home>/plugins``.

    Subclasses implement ``fetch`` for a single plugin. ``install``
    fetches the requested plugin, then each missing required
    dependency, depth first.
    """

    def __init__(self, jenkins_home: Path):
        self._home = Path(jenkins_home)

    @property
    def plugins_dir(self) -> Path:
        return self._home / "plugins"

    def is_installed(self, name: str) -> tuple[bool, str | None]:
        return find_installed(self.plugins_dir, name)

    @abstractmethod
    def fetch(self, name: str, version: str | None) -> InstallResult:
        """Install one plugin, without its dependencies."""

    def dependencies(self, name: str) -> dict[str, str]:
        """Required dependencies of an installed plugin."""
        path = installed_path(self.plugins_dir, name)
        if path is None:
            return {}
        return parse_dependencies(read_manifest(path).get("Plugin-Dependencies", ""))

    def install(self, name: str, version: str | None = None) -> InstallResult:
        result = self.fetch(name, version)
        if not result.success:
            return result

        outputs = [result.output]
        changed = result.changed
        pending = [name]
        seen = {name}
        while pending:
            parent = pending.pop()
            try:
                required = self.dependencies(parent)
            except CollaboratorError as e:
                return result.model_copy(update={"success": False, "changed": changed, "error": str(e)})

            for dep, minimum in required.items():
                if dep in seen:
                    continue
                seen.add(dep)
                if self.is_installed(dep)[0]:
                    continue
                logger.info("Installing %s %s (required by %s)", dep, minimum or "latest", parent)
                dep_result = self.fetch(dep, minimum or None)
                if not dep_result.success:
                    return result.model_copy(update={
                        "success": False,
                        "changed": changed,
                        "error": f"dependency {dep} of {parent}: {dep_result.error}",
                    })
                changed = changed or dep_result.changed
                outputs.append(dep_result.output)
                pending.append(dep)

        return result.model_copy(update={"changed": changed, "output": "\n".join(filter(None, outputs))})


class UpdateCenterInstaller(PluginsDirInstaller):
    """Installs plugins by downloading them from an update site."""

    def __init__(
        self,
        jenkins_home: Path,
        update_center_url: str = DEFAULT_UPDATE_CENTER,
        timeout: float = 300,
        opener: Any = None,
    ):
        super().__init__(jenkins_home)
        self._base = update_center_url.rstrip("/")
        self._timeout = timeout
        self._opener = opener or urllib.request.build_opener()

    @property
    def name(self) -> str:
        return "update_center"

    def download_url(self, name: str, version: str | None) -> str:
        if version:
            return f"{self._base}/download/plugins/{name}/{version}/{name}.hpi"
        return f"{self._base}/latest/{name}.hpi"

    def fetch(self, name: str, version: str | None) -> InstallResult:
        before = self.is_installed(name)
        if version and before == (True, version):
            return InstallResult(name=name, version=version, output=f"{name} {version} already installed")

        url = self.download_url(name, version)
        dest = self.plugins_dir / f"{name}.jpi"
        start = time.monotonic()
        logger.info("Downloading %s → %s", url, dest)

        try:
            self.plugins_dir.mkdir(parents=True, exist_ok=True)
            self._download(url, dest)
            installed_version = read_plugin_version(dest)
        except urllib.error.HTTPError as e:
            return InstallResult(name=name, version=version, success=False, error=f"HTTP {e.code} fetching {url}")
        except (urllib.error.URLError, OSError) as e:
            return InstallResult(name=name, version=version, success=False, error=f"Download failed: {e}")
        except CollaboratorError as e:
            return InstallResult(name=name, version=version, success=False, error=str(e))

        if version and installed_version and installed_version != version:
            return InstallResult(
                name=name,
                version=installed_version,
                success=False,
                error=f"Downloaded {name} is {installed_version}, expected {version}",
            )

        elapsed_ms = int((time.monotonic() - start) * 1000)
        changed = before != (True, installed_version)
        return InstallResult(
            name=name,
            version=installed_version,
            changed=changed,
            output=f"{name} {installed_version or '?'} downloaded in {elapsed_ms}ms",
        )

    def _download(self, url: str, dest: Path) -> None:
        """Stream ``url`` to ``dest`` atomically."""
        req = urllib.request.Request(url, headers={"User-Agent": "converge/1.0"})
        fd, tmp = tempfile.mkstemp(dir=str(dest.parent), prefix=f".{dest.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as f, self._opener.open(req, timeout=self._timeout) as resp:
                while True:
                    chunk = resp.read(65536)
                    if not chunk:
                        break
                    f.write(chunk)
            if not zipfile.is_zipfile(tmp):
                raise CollaboratorError(f"Not a plugin archive: {url}")
            os.replace(tmp, dest)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise
