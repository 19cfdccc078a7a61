"""
Action planner — turn a DesiredState into the ordered ActionSpec list.

Phases run in a fixed order:

    prerequisites → plugins → restart → automation_user →
    credentials → bootstrap_job → settings

Idempotency keys:

    automation_user_created                 one-time, never re-applied
    <plugin>_pinned                         pin marker (shares the flag namespace)
    credential_<id>_<hash>_<digest>         content-addressed
    bootstrap_job_<name>_<hash>_<digest>    content-addressed
    settings_<digest>                       content-addressed

<hash> is a short hash of the raw id, so ids that slug alike keep
separate flags.

Content-addressed flags carry a digest of everything the action
renders (secrets only as a fingerprint), so an unchanged input is a
no-op and a changed one applies once. Superseded flags of the same
action are pruned when the new one is written.
"""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import TYPE_CHECKING, Any

from converge import __version__
from converge.core.engine.plugins import (
    PluginAction,
    PluginActionKind,
    PluginPlan,
    reconcile_plugins,
)
from converge.core.errors import (
    CollaboratorError,
    EffectFailed,
    PreconditionCheckFailed,
    SecretResolutionFailed,
    StateStoreError,
)
from converge.core.keys import KeyMaterialError, fingerprint, openssh_public_key, unencrypted_pem
from converge.core.models.action import PHASE_ORDER, ActionSpec, Effect, Phase
from converge.core.models.desired import BootstrapJob, CredentialKind, CredentialSpec
from converge.core.models.state import PinRecord
from converge.core.observability.logging_config import redact

if TYPE_CHECKING:
    from converge.core.engine.reconciler import RunContext

logger = logging.getLogger(__name__)

AUTOMATION_USER_FLAG = "automation_user_created"

_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")


def slug(value: str) -> str:
    """Make ``value`` usable inside a flag key."""
    return _UNSAFE.sub("-", value).strip("-._") or "x"


def flag_prefix(kind: str, name: str) -> str:
    """``<kind>_<slug>_<id-hash>_``, unique per ``name`` even when slugs collide."""
    return f"{kind}_{slug(name)}_{fingerprint(name)[:8]}_"


def digest(payload: Any) -> str:
    """Stable fingerprint of a JSON-serialisable payload."""
    return fingerprint(json.dumps(payload, sort_keys=True, default=str))


def default_system_message(environment: str) -> str:
    return f"{environment.capitalize()} Jenkins Server - Managed by converge {__version__}"


# ── Shared helpers ──────────────────────────────────────────────


def _run_script(ctx: RunContext, key: str, template: str, variables: dict[str, Any]) -> Effect:
    """Render a template and run it on the server."""
    try:
        script = ctx.collaborators.renderer.render_text(template, variables)
    except CollaboratorError as e:
        raise EffectFailed(key, str(e)) from e

    result = ctx.collaborators.runner.execute(script)
    if not result.success:
        raise EffectFailed(key, result.error or "script failed")
    return Effect(changed=True, output=result.output)


def _replace_flag(ctx: RunContext, prefix: str, key: str) -> None:
    """Set ``key`` and drop older ``<prefix><digest>`` flags."""
    ctx.store.set_flag(key)
    stale = re.compile(re.escape(prefix) + r"[0-9a-f]{16}$")
    for flag in ctx.store.list_flags():
        if flag.action_key != key and stale.match(flag.action_key):
            ctx.store.clear_flag(flag.action_key)
            logger.debug("Pruned superseded flag %s", flag.action_key)


# ── Prerequisites ───────────────────────────────────────────────


def _base_directories() -> ActionSpec:
    def missing(ctx: RunContext) -> list[Path]:
        return [d for d in ctx.directories if not d.is_dir()]

    def effect(ctx: RunContext) -> Effect:
        created = missing(ctx)
        for directory in created:
            directory.mkdir(mode=0o755, parents=True, exist_ok=True)
        ctx.store.ensure()
        return Effect(changed=True, output="created " + ", ".join(str(d) for d in created))

    return ActionSpec(
        key="base_directories",
        phase=Phase.PREREQUISITES,
        description="create state and init script directories",
        precondition=lambda ctx: bool(missing(ctx)),
        effect=effect,
    )


def _resolve_secrets() -> ActionSpec:
    key = "resolve_secrets"

    def effect(ctx: RunContext) -> Effect:
        refs = ctx.desired.secret_refs()
        for ref in refs:
            try:
                record = ctx.collaborators.secrets.get_secret(ctx.desired.environment, ref)
            except CollaboratorError as e:
                raise SecretResolutionFailed(key, str(e)) from e
            redact(record.private_key_or_password.get_secret_value())
            if record.passphrase:
                redact(record.passphrase.get_secret_value())
            ctx.secrets[ref] = record
        return Effect(changed=False, output=f"resolved {len(refs)} secret(s)")

    return ActionSpec(
        key=key,
        phase=Phase.PREREQUISITES,
        description="resolve key material from the secret store",
        precondition=lambda ctx: bool(ctx.desired.secret_refs()),
        effect=effect,
        read_only=True,
        skip_reason="no secrets referenced",
    )


# ── Plugins ─────────────────────────────────────────────────────


def current_pins(ctx: RunContext) -> dict[str, PinRecord | None]:
    """Pins from the store, including bare markers of desired plugins."""
    pins: dict[str, PinRecord | None] = {p.plugin_name: p for p in ctx.store.list_pins()}
    for name in ctx.desired.plugins:
        if name not in pins:
            pins[name] = ctx.store.get_pin(name)
    return pins


def plan_plugins(ctx: RunContext) -> PluginPlan:
    """The PluginPlan for this run, wrapping query errors."""
    try:
        return reconcile_plugins(
            ctx.desired.plugins,
            current_pins(ctx),
            ctx.collaborators.installer.is_installed,
        )
    except (StateStoreError, CollaboratorError) as e:
        raise PreconditionCheckFailed("plugins", str(e)) from e


def _install(ctx: RunContext, key: str, name: str, version: str | None) -> Effect:
    result = ctx.collaborators.installer.install(name, version)
    if not result.success:
        raise EffectFailed(key, result.error or f"install of {name} failed")
    return Effect(changed=result.changed, output=result.output)


def _plugin_spec(action: PluginAction) -> ActionSpec:
    name, version, key = action.name, action.version, action.key

    if action.kind == PluginActionKind.REMOVE_PIN:
        def precondition(ctx: RunContext) -> bool:
            pin = ctx.store.get_pin(name)
            wanted = ctx.desired.plugins.get(name)
            return pin is not None and (wanted is None or pin.version != wanted)

        def effect(ctx: RunContext) -> Effect:
            ctx.store.delete_pin(name)
            return Effect(changed=True, output=f"pin {name}@{version} removed")

        return ActionSpec(key, Phase.PLUGINS, action.describe(), effect, precondition)

    if action.kind == PluginActionKind.INSTALL_UNPINNED:
        return ActionSpec(
            key, Phase.PLUGINS, action.describe(),
            effect=lambda ctx: _install(ctx, key, name, None),
            precondition=lambda ctx: not ctx.collaborators.installer.is_installed(name)[0],
            installs=True,
        )

    if action.kind == PluginActionKind.INSTALL_PINNED:
        return ActionSpec(
            key, Phase.PLUGINS, action.describe(),
            effect=lambda ctx: _install(ctx, key, name, version),
            precondition=lambda ctx: ctx.collaborators.installer.is_installed(name) != (True, version),
            installs=True,
        )

    if action.kind == PluginActionKind.WRITE_PIN:
        def needs_pin(ctx: RunContext) -> bool:
            pin = ctx.store.get_pin(name)
            return pin is None or pin.version != version

        return ActionSpec(
            key, Phase.PLUGINS, action.describe(),
            effect=lambda ctx: Effect(changed=True, output=f"{name} pinned at {version}"),
            precondition=needs_pin,
            postcondition=lambda ctx: ctx.store.set_pin(name, version),
        )

    return ActionSpec(
        key, Phase.PLUGINS, action.describe(),
        effect=lambda ctx: Effect(changed=False),
        precondition=lambda ctx: False,
        skip_reason="up to date",
    )


def _restart() -> ActionSpec:
    def needed(ctx: RunContext) -> bool:
        if ctx.dry_run:
            return bool(ctx.installs_planned)
        return bool(ctx.installs_changed)

    def effect(ctx: RunContext) -> Effect:
        result = ctx.collaborators.runner.restart()
        if not result.success:
            raise EffectFailed("restart", result.error or "restart failed")
        ctx.restart_performed = True
        return Effect(changed=True, output=f"restarted after {len(ctx.installs_changed)} install(s)")

    return ActionSpec(
        key="restart",
        phase=Phase.RESTART,
        description="safe-restart so newly installed plugins load",
        precondition=needed,
        effect=effect,
        skip_reason="no plugin changes",
    )


# ── Automation user ─────────────────────────────────────────────


def _automation_user() -> ActionSpec:
    key = AUTOMATION_USER_FLAG

    def effect(ctx: RunContext) -> Effect:
        user = ctx.desired.automation_user
        public_key = user.public_key
        if not public_key:
            secret = ctx.secret(user.secret_ref, key)
            passphrase = secret.passphrase.get_secret_value() if secret.passphrase else None
            try:
                public_key = openssh_public_key(
                    secret.private_key_or_password.get_secret_value(), passphrase,
                )
            except KeyMaterialError as e:
                raise SecretResolutionFailed(key, str(e)) from e

        return _run_script(ctx, key, "create_user.groovy.j2", {
            "username": user.username,
            "full_name": user.full_name,
            "public_keys": [public_key.strip()],
        })

    return ActionSpec(
        key=key,
        phase=Phase.AUTOMATION_USER,
        description="create the automation user",
        precondition=lambda ctx: not ctx.store.get_flag(key),
        effect=effect,
        postcondition=lambda ctx: ctx.store.set_flag(key),
    )


# ── Credentials ─────────────────────────────────────────────────


def _credential(cred: CredentialSpec) -> ActionSpec:
    key = f"credential:{cred.id}"
    prefix = flag_prefix("credential", cred.id)

    def material(ctx: RunContext) -> tuple[str, str, str | None]:
        """(username, secret, passphrase) for the credential."""
        secret = ctx.secret(cred.secret_ref, key)
        value = secret.private_key_or_password.get_secret_value()
        passphrase = secret.passphrase.get_secret_value() if secret.passphrase else None
        return cred.username or secret.username, value, passphrase

    def flag_key(ctx: RunContext) -> str:
        username, value, passphrase = material(ctx)
        return prefix + digest({
            "id": cred.id,
            "kind": cred.kind.value,
            "username": username,
            "description": cred.description,
            "secret": fingerprint(f"{value}\0{passphrase or ''}"),
        })

    def effect(ctx: RunContext) -> Effect:
        username, value, passphrase = material(ctx)
        if cred.kind == CredentialKind.PRIVATE_KEY:
            try:
                pem = unencrypted_pem(value, passphrase)
            except KeyMaterialError as e:
                raise SecretResolutionFailed(key, str(e)) from e
            return _run_script(ctx, key, "credentials_private_key.groovy.j2", {
                "credential_id": cred.id,
                "username": username,
                "private_key": pem,
                "passphrase": passphrase,
                "description": cred.description,
            })
        return _run_script(ctx, key, "credentials_password.groovy.j2", {
            "credential_id": cred.id,
            "username": username,
            "password": value,
            "description": cred.description,
        })

    return ActionSpec(
        key=key,
        phase=Phase.CREDENTIALS,
        description=f"register {cred.kind.value} credential {cred.id}",
        precondition=lambda ctx: not ctx.store.get_flag(flag_key(ctx)),
        effect=effect,
        postcondition=lambda ctx: _replace_flag(ctx, prefix, flag_key(ctx)),
    )


# ── Bootstrap job ───────────────────────────────────────────────


def _bootstrap_job(job: BootstrapJob) -> ActionSpec:
    key = f"bootstrap_job:{job.name}"
    prefix = flag_prefix("bootstrap_job", job.name)
    flag = prefix + digest(job.model_dump(mode="json"))

    def effect(ctx: RunContext) -> Effect:
        created = _run_script(ctx, key, "bootstrap_job.groovy.j2", {"job": job})
        if not job.run_after_create:
            return created
        scheduled = _run_script(ctx, key, "run_job.groovy.j2", {"job_name": job.name})
        return Effect(changed=True, output="\n".join(filter(None, [created.output, scheduled.output])))

    return ActionSpec(
        key=key,
        phase=Phase.BOOTSTRAP_JOB,
        description=f"create seed job {job.name}",
        precondition=lambda ctx: not ctx.store.get_flag(flag),
        effect=effect,
        postcondition=lambda ctx: _replace_flag(ctx, prefix, flag),
    )


# ── Settings ────────────────────────────────────────────────────


def _settings(variables: dict[str, Any]) -> ActionSpec:
    key = "settings"
    prefix = "settings_"
    flag = prefix + digest({
        "settings": variables["settings"].model_dump(mode="json"),
        "system_message": variables["system_message"],
    })

    return ActionSpec(
        key=key,
        phase=Phase.SETTINGS,
        description="apply server-wide settings",
        precondition=lambda ctx: not ctx.store.get_flag(flag),
        effect=lambda ctx: _run_script(ctx, key, "configure.groovy.j2", variables),
        postcondition=lambda ctx: _replace_flag(ctx, prefix, flag),
    )


# ── Assembly ────────────────────────────────────────────────────


def build_actions(ctx: RunContext) -> list[ActionSpec]:
    """The full, phase-ordered action list for ``ctx.desired``.

    Raises:
        PreconditionCheckFailed: The plugin plan could not be built
            because the store or installer could not be queried.
    """
    desired = ctx.desired
    actions: list[ActionSpec] = [_base_directories(), _resolve_secrets()]

    plan = plan_plugins(ctx)
    actions.extend(_plugin_spec(a) for a in plan.actions)
    actions.append(_restart())

    if desired.automation_user is not None:
        actions.append(_automation_user())

    actions.extend(_credential(c) for c in desired.credentials)

    if desired.bootstrap_job is not None:
        actions.append(_bootstrap_job(desired.bootstrap_job))

    actions.append(_settings({
        "settings": desired.settings,
        "system_message": desired.settings.system_message
        or default_system_message(desired.environment),
    }))

    # stable sort keeps the in-phase order
    actions.sort(key=lambda a: PHASE_ORDER.index(a.phase))
    logger.debug("Planned %d actions", len(actions))
    return actions
