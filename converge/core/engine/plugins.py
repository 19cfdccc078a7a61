"""
Plugin set reconciliation — desired plugins vs. pins vs. installed state.

Pure planning: given the desired plugin map, the current pin records
and a way to ask whether a plugin is installed, produce the ordered
list of plugin actions that converges the server.

    RemovePin        stale pin (plugin undesired, unpinned, or version changed)
    InstallUnpinned  desired without version and not installed
    InstallPinned    desired version not installed/pinned yet
    WritePin         record the pin after InstallPinned
    NoOp             nothing to do

Stale pins are removed first (delete-then-recreate) so that no stale
marker ever blocks a version change.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import StrEnum

from converge.core.models.state import PinRecord, pin_flag_key

logger = logging.getLogger(__name__)

InstalledQuery = Callable[[str], tuple[bool, str | None]]


class PluginActionKind(StrEnum):
    REMOVE_PIN = "remove_pin"
    INSTALL_UNPINNED = "install_unpinned"
    INSTALL_PINNED = "install_pinned"
    WRITE_PIN = "write_pin"
    NOOP = "noop"


INSTALL_KINDS = frozenset({PluginActionKind.INSTALL_UNPINNED, PluginActionKind.INSTALL_PINNED})


@dataclass(frozen=True)
class PluginAction:
    """One planned plugin step."""

    kind: PluginActionKind
    name: str
    version: str | None = None

    @property
    def key(self) -> str:
        """Report key. WritePin uses the pin marker's flag key."""
        if self.kind == PluginActionKind.WRITE_PIN:
            return pin_flag_key(self.name)
        if self.kind == PluginActionKind.NOOP:
            return f"plugin:{self.name}"
        if self.kind in INSTALL_KINDS:
            return f"plugin:{self.name}:install"
        return f"plugin:{self.name}:{self.kind.value}"

    @property
    def is_install(self) -> bool:
        return self.kind in INSTALL_KINDS

    def describe(self) -> str:
        labels = {
            PluginActionKind.REMOVE_PIN: f"remove stale pin of {self.name}",
            PluginActionKind.INSTALL_UNPINNED: f"install {self.name} (latest)",
            PluginActionKind.INSTALL_PINNED: f"install {self.name} {self.version}",
            PluginActionKind.WRITE_PIN: f"pin {self.name} at {self.version}",
            PluginActionKind.NOOP: f"{self.name} up to date",
        }
        return labels[self.kind]


@dataclass
class PluginPlan:
    """Ordered plugin actions plus the aggregate change prediction."""

    actions: list[PluginAction] = field(default_factory=list)

    @property
    def any_changed(self) -> bool:
        """Whether any action would change the installed plugin set."""
        return any(a.is_install for a in self.actions)

    def of_kind(self, kind: PluginActionKind) -> list[PluginAction]:
        return [a for a in self.actions if a.kind == kind]

    def to_dict(self) -> dict:
        return {
            "any_changed": self.any_changed,
            "actions": [
                {"kind": a.kind.value, "name": a.name, "version": a.version}
                for a in self.actions
            ],
        }


def _not_installed(name: str) -> tuple[bool, str | None]:
    return False, None


def reconcile_plugins(
    desired: Mapping[str, str | None],
    current: Mapping[str, PinRecord | None],
    installed: InstalledQuery | None = None,
) -> PluginPlan:
    """Plan the plugin actions that converge ``current`` to ``desired``.

    Args:
        desired: Plugin name → version (None = unpinned).
        current: Plugin name → existing pin record (or None).
        installed: Live query for a plugin's installed state. Without
            it, every plugin is treated as not installed.

    Returns:
        PluginPlan with cleanup actions first, then one entry per
        desired plugin in lexicographic order.
    """
    query = installed or _not_installed
    plan = PluginPlan()

    # ── Cleanup: stale pins ──────────────────────────────────────
    for name in sorted(current):
        pin = current[name]
        if pin is None:
            continue
        wanted = desired.get(name)
        if name not in desired or wanted is None or wanted != pin.version:
            plan.actions.append(PluginAction(PluginActionKind.REMOVE_PIN, name, pin.version))

    # ── Desired plugins ──────────────────────────────────────────
    for name in sorted(desired):
        version = desired[name]
        pin = current.get(name)

        if version is None:
            is_installed, _ = query(name)
            kind = PluginActionKind.NOOP if is_installed else PluginActionKind.INSTALL_UNPINNED
            plan.actions.append(PluginAction(kind, name))
            continue

        if pin is None or pin.version != version:
            plan.actions.append(PluginAction(PluginActionKind.INSTALL_PINNED, name, version))
            plan.actions.append(PluginAction(PluginActionKind.WRITE_PIN, name, version))
            continue

        # pin matches; make sure the plugin really is there
        is_installed, installed_version = query(name)
        if installed is not None and (not is_installed or installed_version != version):
            logger.info(
                "Plugin %s pinned at %s but installed=%s (%s); reinstalling",
                name, version, is_installed, installed_version,
            )
            plan.actions.append(PluginAction(PluginActionKind.INSTALL_PINNED, name, version))
        else:
            plan.actions.append(PluginAction(PluginActionKind.NOOP, name, version))

    logger.debug(
        "Plugin plan: %d actions, any_changed=%s", len(plan.actions), plan.any_changed
    )
    return plan
