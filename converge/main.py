"""
converge — CLI entrypoint.

Usage:
    converge --help
    converge run
    converge plan
    converge state show
    converge config check
"""

from __future__ import annotations

import json
import os
import sys
from pathlib import Path

import click

from converge import __version__
from converge.core.observability.logging_config import (
    ENV_FILE,
    ENV_FILE_LEVEL,
    resolve_level,
    setup_logging,
)


@click.group()
@click.version_option(version=__version__, prog_name="converge")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output.")
@click.option("--quiet", "-q", is_flag=True, help="Suppress non-essential output.")
@click.option("--debug", is_flag=True, help="Enable debug logging (very verbose).")
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(exists=False),
    default=None,
    help="Path to converge.yml (default: auto-detect).",
)
@click.pass_context
def cli(
    ctx: click.Context,
    verbose: bool,
    quiet: bool,
    debug: bool,
    config_path: str | None,
) -> None:
    """converge — idempotent Jenkins server reconciler."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["quiet"] = quiet
    ctx.obj["debug"] = debug
    ctx.obj["config_path"] = Path(config_path) if config_path else None

    # ── Logging setup (once, at process start) ──────────────────
    setup_logging(
        level=resolve_level(verbose=verbose, quiet=quiet, debug=debug),
        log_file=os.environ.get(ENV_FILE),
        log_file_level=os.environ.get(ENV_FILE_LEVEL),
        quiet_third_party=not debug,
    )


def _load_config(ctx: click.Context):
    """Load converge.yml or exit with an error."""
    from converge.core.config.loader import load_config
    from converge.core.errors import ConfigError

    try:
        return load_config(ctx.obj.get("config_path"))
    except ConfigError as e:
        click.secho(f"❌ {e}", fg="red")
        sys.exit(1)


def _print_report(ctx: click.Context, report, title: str) -> None:
    click.secho(f"\n⚡ {title} — {report.environment}", fg="cyan", bold=True)
    click.echo(f"   Run: {report.run_id} | Actions: {report.total}")
    click.echo()

    for result in report.results:
        timing = f" ({result.duration_ms}ms)" if result.duration_ms else ""
        if result.outcome == "applied":
            label = "changed" if result.changed else "ok"
            click.secho(f"   ✓ {result.key}", fg="green", nl=False)
            click.echo(f" [{label}]{timing}")
            if ctx.obj.get("verbose") and result.output:
                for line in result.output.split("\n")[:10]:
                    click.echo(f"     │ {line}")
        elif result.outcome == "planned":
            click.secho(f"   … {result.key}", fg="cyan", nl=False)
            click.echo(f" ({result.metadata.get('description', 'would apply')})")
        elif result.failed:
            click.secho(f"   ✗ {result.key}", fg="red", nl=False)
            click.echo(f" [{result.error_kind}]{timing}")
            if result.error:
                for line in result.error.split("\n")[:5]:
                    click.echo(f"     │ {line}")
        else:
            click.secho(f"   ⊘ {result.key} ", fg="yellow", nl=False)
            click.echo(f"({result.output})")

    click.echo()
    if report.restart_performed:
        click.secho("   🔄 Server restarted", fg="cyan")

    if report.ok:
        summary = (
            f"   Result: {report.planned} planned, {report.skipped} up to date"
            if report.dry_run
            else f"   Result: {report.changed} changed, {report.skipped} up to date"
        )
        click.secho(summary, fg="green", bold=True)
    else:
        click.secho(
            f"   Result: failed at {report.failed_action} ({report.error_kind})",
            fg="red",
            bold=True,
        )
        if report.manual_intervention:
            click.secho(
                "   ⚠️  The change was applied but not recorded; check the server "
                "before re-running.",
                fg="yellow",
            )


def _converge(ctx: click.Context, as_json: bool, environment: str | None, dry_run: bool, mock: bool) -> None:
    from converge.core.use_cases.run import run_converge

    result = run_converge(
        config_path=ctx.obj.get("config_path"),
        environment=environment,
        dry_run=dry_run,
        mock=mock,
    )

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        if not result.ok:
            sys.exit(1)
        return

    if result.error:
        click.secho(f"❌ {result.error}", fg="red")
        sys.exit(1)

    report = result.report
    assert report is not None

    mode_label = "[dry-run] " if dry_run else ""
    mode_label += "[mock] " if mock else ""
    _print_report(ctx, report, f"{mode_label}converge")

    if not report.ok:
        click.echo()
        sys.exit(1)

    click.echo()


@cli.command()
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.option("--env", "environment", default=None, help="Override desired.environment.")
@click.option("--dry-run", is_flag=True, help="Evaluate preconditions, apply nothing.")
@click.option("--mock", is_flag=True, help="Use mock installer and runner (no real server).")
@click.pass_context
def run(ctx: click.Context, as_json: bool, environment: str | None, dry_run: bool, mock: bool) -> None:
    """Converge the server to converge.yml.

    Examples:

        converge run

        converge run --dry-run

        converge --config /etc/converge/converge.yml run --env prod
    """
    _converge(ctx, as_json, environment, dry_run, mock)


@cli.command()
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.option("--env", "environment", default=None, help="Override desired.environment.")
@click.option("--mock", is_flag=True, help="Plan against mock collaborators.")
@click.pass_context
def plan(ctx: click.Context, as_json: bool, environment: str | None, mock: bool) -> None:
    """Show what a run would do (same as run --dry-run)."""
    _converge(ctx, as_json, environment, True, mock)


# ── State ───────────────────────────────────────────────────────


@cli.group()
def state() -> None:
    """Inspect and edit the completion flags and pins."""


@state.command("show")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def state_show(ctx: click.Context, as_json: bool) -> None:
    """List completion flags and plugin pins."""
    from converge.core.errors import StateStoreError
    from converge.core.persistence.state_store import FileStateStore

    config = _load_config(ctx)
    store = FileStateStore(config.flags_dir)

    try:
        flags = store.list_flags()
        pins = store.list_pins()
    except StateStoreError as e:
        click.secho(f"❌ {e}", fg="red")
        sys.exit(1)

    if as_json:
        click.echo(json.dumps({
            "flags_dir": str(store.root),
            "flags": [f.model_dump(mode="json") for f in flags],
            "pins": [p.model_dump(mode="json") for p in pins],
        }, indent=2))
        return

    click.secho(f"\n📋 State: {store.root}", fg="cyan", bold=True)
    click.secho(f"   Flags: {len(flags)}", fg="white", bold=True)
    for flag in flags:
        click.echo(f"     • {flag.action_key}  (t={flag.completed_at}, {flag.recorded_at})")
    click.secho(f"   Pins: {len(pins)}", fg="white", bold=True)
    for pin in pins:
        click.echo(f"     📌 {pin.plugin_name} {pin.version}")
    click.echo()


@state.command("forget")
@click.argument("key")
@click.option("--pin", "is_pin", is_flag=True, help="KEY is a plugin name; remove its pin.")
@click.pass_context
def state_forget(ctx: click.Context, key: str, is_pin: bool) -> None:
    """Remove a completion flag so its action runs again.

    Examples:

        converge state forget automation_user_created

        converge state forget --pin git
    """
    from converge.core.errors import StateStoreError
    from converge.core.persistence.state_store import FileStateStore

    config = _load_config(ctx)
    store = FileStateStore(config.flags_dir)

    try:
        removed = store.delete_pin(key) if is_pin else store.clear_flag(key)
    except StateStoreError as e:
        click.secho(f"❌ {e}", fg="red")
        sys.exit(1)

    what = f"pin of {key}" if is_pin else f"flag {key}"
    if not removed:
        click.secho(f"⚠️  No {what} recorded", fg="yellow")
        sys.exit(1)
    click.secho(f"🗑  Removed {what}", fg="green")


# ── History ─────────────────────────────────────────────────────


@cli.command()
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.option("--limit", "-n", default=10, show_default=True, help="Number of runs to show.")
@click.pass_context
def history(ctx: click.Context, as_json: bool, limit: int) -> None:
    """Show recent runs."""
    from converge.core.persistence.history import HistoryWriter

    config = _load_config(ctx)
    entries = HistoryWriter(config.history_path).read_recent(limit)

    if as_json:
        click.echo(json.dumps([e.model_dump(mode="json") for e in entries], indent=2))
        return

    if not entries:
        click.echo("No runs recorded yet.")
        return

    click.secho(f"\n📜 Last {len(entries)} run(s)", fg="cyan", bold=True)
    for entry in entries:
        color = {"ok": "green", "failed": "red"}.get(entry.status, "yellow")
        mode = " [dry-run]" if entry.dry_run else ""
        click.echo(f"   {entry.timestamp}  {entry.run_id}{mode}  ", nl=False)
        click.secho(entry.status, fg=color, nl=False)
        click.echo(f"  {entry.actions_changed} changed / {entry.actions_total} actions")
        if entry.failed_action:
            click.echo(f"     │ {entry.failed_action}: {entry.error_kind}")
    click.echo()


# ── Config ──────────────────────────────────────────────────────


@cli.group()
def config() -> None:
    """Configuration management commands."""


@config.command("check")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def config_check(ctx: click.Context, as_json: bool) -> None:
    """Validate converge.yml configuration."""
    from converge.core.use_cases.config_check import check_config

    result = check_config(config_path=ctx.obj.get("config_path"))

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        sys.exit(0 if result.valid else 1)

    if result.valid:
        assert result.config is not None  # guaranteed when valid
        desired = result.config.desired
        click.secho("✅ Configuration is valid", fg="green", bold=True)
        click.echo(f"   Environment: {desired.environment}")
        click.echo(f"   Plugins: {len(desired.plugins)} ({len(desired.pinned_plugins())} pinned)")
        click.echo(f"   Credentials: {len(desired.credentials)}")
        managed = ", ".join(desired.settings.managed()) or "none"
        click.echo(f"   Managed settings: {managed}")
    else:
        click.secho("❌ Configuration errors:", fg="red", bold=True)
        for err in result.errors:
            click.echo(f"   • {err}")

    if result.warnings:
        click.echo()
        click.secho("⚠️  Warnings:", fg="yellow")
        for warn in result.warnings:
            click.echo(f"   • {warn}")

    if not result.valid:
        click.echo()
        sys.exit(1)

    click.echo()


if __name__ == "__main__":
    cli()
