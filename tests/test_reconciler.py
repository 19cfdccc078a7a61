"""
Tests for the reconciler — convergence, idempotence and failure handling.
"""

import json
import logging
from pathlib import Path

import pytest

from converge.adapters.base import Collaborators, ScriptResult
from converge.adapters.mock import MockScriptRunner
from converge.core.engine.reconciler import Reconciler, RunReport, generate_run_id
from converge.core.errors import StateStoreError
from converge.core.models.desired import DesiredState
from converge.core.persistence.history import HistoryWriter
from converge.core.persistence.state_store import FileStateStore, MemoryStateStore


def _desired(**overrides) -> DesiredState:
    data = {
        "environment": "dev",
        "plugins": {"git": "3.9.1", "job-dsl": "latest"},
        "settings": {"executor_count": 2, "system_email": "ci@example.com"},
        "automation_user": {"secret_ref": "automation_user"},
        "credentials": [
            {"id": "github-deploy", "kind": "private_key", "secret_ref": "github"},
            {
                "id": "artifactory",
                "kind": "password",
                "secret_ref": "artifactory",
                "description": "Artifactory deployer",
            },
        ],
        "bootstrap_job": {
            "repository_url": "git@github.com:example/jobs.git",
            "credential_id": "github-deploy",
        },
    }
    data.update(overrides)
    return DesiredState.model_validate(data)


def _plugins_only(plugins: dict) -> DesiredState:
    return DesiredState.model_validate({"plugins": plugins})


def _outcomes(report: RunReport) -> dict[str, str]:
    return {r.key: r.outcome for r in report.results}


# ── Convergence ──────────────────────────────────────────────────────


class TestFirstRun:
    def test_applies_everything_in_phase_order(self, store, collaborators):
        report = Reconciler(store, collaborators).reconcile(_desired())

        assert report.ok
        phases = [r.phase for r in report.results]
        order = [
            "prerequisites", "plugins", "restart", "automation_user",
            "credentials", "bootstrap_job", "settings",
        ]
        assert phases == sorted(phases, key=order.index)

    def test_installs_pins_and_restarts_once(self, store, collaborators):
        report = Reconciler(store, collaborators).reconcile(_desired())

        assert collaborators.installer.installed == {"git": "3.9.1", "job-dsl": "latest"}
        assert store.get_pin("git").version == "3.9.1"
        assert store.get_pin("job-dsl") is None
        assert collaborators.runner.restart_count == 1
        assert report.restart_performed

    def test_runs_each_script(self, store, collaborators):
        Reconciler(store, collaborators).reconcile(_desired())

        runner = collaborators.runner
        assert len(runner.scripts_containing("UserPropertyImpl")) == 1
        assert len(runner.scripts_containing("BasicSSHUserPrivateKey")) == 1
        assert len(runner.scripts_containing("UsernamePasswordCredentialsImpl")) == 1
        assert len(runner.scripts_containing("ExecuteDslScripts")) == 1
        assert len(runner.scripts_containing("scheduleBuild2")) == 1
        assert len(runner.scripts_containing("setNumExecutors(2)")) == 1

    def test_user_public_key_is_derived_from_secret(self, store, collaborators):
        Reconciler(store, collaborators).reconcile(_desired())

        script = collaborators.runner.scripts_containing("UserPropertyImpl")[0]
        assert "'ssh-rsa AAAA" in script
        assert "PRIVATE KEY" not in script

    def test_records_completion_flags(self, store, collaborators):
        Reconciler(store, collaborators).reconcile(_desired())

        keys = [f.action_key for f in store.list_flags()]
        assert "automation_user_created" in keys
        assert any(k.startswith("credential_github-deploy_") for k in keys)
        assert any(k.startswith("credential_artifactory_") for k in keys)
        assert any(k.startswith("bootstrap_job_dsl-bootstrap-job_") for k in keys)
        assert any(k.startswith("settings_") for k in keys)

    def test_default_system_message(self, store, collaborators):
        Reconciler(store, collaborators).reconcile(_desired(environment="prod"))

        script = collaborators.runner.scripts_containing("setSystemMessage")[0]
        assert "Prod Jenkins Server - Managed by converge" in script


class TestIdempotence:
    def test_second_run_changes_nothing(self, store, collaborators):
        reconciler = Reconciler(store, collaborators)
        first = reconciler.reconcile(_desired())
        scripts_after_first = len(collaborators.runner.scripts)
        installs_after_first = collaborators.installer.call_count

        second = reconciler.reconcile(_desired())

        assert first.changed > 0
        assert second.ok
        assert second.changed == 0
        assert all(r.outcome in ("skipped", "applied") for r in second.results)
        assert len(collaborators.runner.scripts) == scripts_after_first
        assert collaborators.installer.call_count == installs_after_first
        assert collaborators.runner.restart_count == 1

    def test_file_store_survives_process_restart(self, tmp_path: Path, collaborators):
        flags = tmp_path / "home" / ".flags"
        Reconciler(FileStateStore(flags), collaborators, directories=[flags]).reconcile(_desired())

        report = Reconciler(FileStateStore(flags), collaborators, directories=[flags]).reconcile(_desired())

        assert report.ok
        assert report.changed == 0
        assert _outcomes(report)["base_directories"] == "skipped"

    def test_credential_ids_with_the_same_slug_converge(self, store, collaborators):
        desired = _desired(credentials=[
            {"id": "deploy key", "kind": "password", "secret_ref": "artifactory"},
            {"id": "deploy/key", "kind": "password", "secret_ref": "artifactory"},
        ])
        reconciler = Reconciler(store, collaborators)
        reconciler.reconcile(desired)

        second = reconciler.reconcile(desired)

        assert second.ok
        assert second.changed == 0
        outcomes = _outcomes(second)
        assert outcomes["credential:deploy key"] == "skipped"
        assert outcomes["credential:deploy/key"] == "skipped"
        flags = [f.action_key for f in store.list_flags()]
        assert len([k for k in flags if k.startswith("credential_deploy-key_")]) == 2


class TestPluginConvergence:
    def test_version_change_reinstalls_and_repins(self, store, collaborators):
        store.set_pin("git", "3.9.0")
        collaborators.installer.installed["git"] = "3.9.0"

        report = Reconciler(store, collaborators).reconcile(_plugins_only({"git": "3.9.1"}))

        assert report.ok
        outcomes = _outcomes(report)
        assert outcomes["plugin:git:remove_pin"] == "applied"
        assert outcomes["plugin:git:install"] == "applied"
        assert outcomes["git_pinned"] == "applied"
        assert collaborators.installer.call_log == [("git", "3.9.1")]
        assert store.get_pin("git").version == "3.9.1"
        assert collaborators.runner.restart_count == 1

    def test_unpinned_to_pinned(self, store, collaborators):
        collaborators.installer.installed["git"] = "3.8.0"

        report = Reconciler(store, collaborators).reconcile(_plugins_only({"git": "3.9.1"}))

        assert report.ok
        assert collaborators.installer.installed["git"] == "3.9.1"
        assert store.get_pin("git").version == "3.9.1"

    def test_unpinned_at_right_version_is_only_pinned(self, store, collaborators):
        collaborators.installer.installed["git"] = "3.9.1"

        report = Reconciler(store, collaborators).reconcile(_plugins_only({"git": "3.9.1"}))

        assert report.ok
        assert _outcomes(report)["plugin:git:install"] == "skipped"
        assert collaborators.installer.call_log == []
        assert store.get_pin("git").version == "3.9.1"
        assert collaborators.runner.restart_count == 0

    def test_pinned_to_unpinned_only_removes_pin(self, store, collaborators):
        store.set_pin("git", "3.9.0")
        collaborators.installer.installed["git"] = "3.9.0"

        report = Reconciler(store, collaborators).reconcile(_plugins_only({"git": "latest"}))

        assert report.ok
        assert store.get_pin("git") is None
        assert collaborators.installer.call_count == 0
        assert collaborators.runner.restart_count == 0

    def test_dropped_plugin_keeps_installation(self, store, collaborators):
        store.set_pin("git", "3.9.0")
        collaborators.installer.installed["git"] = "3.9.0"

        report = Reconciler(store, collaborators).reconcile(_plugins_only({}))

        assert report.ok
        assert store.get_pin("git") is None
        assert collaborators.installer.installed == {"git": "3.9.0"}

    def test_missing_pinned_plugin_is_reinstalled(self, store, collaborators):
        store.set_pin("git", "3.9.1")

        report = Reconciler(store, collaborators).reconcile(_plugins_only({"git": "3.9.1"}))

        assert report.ok
        assert collaborators.installer.call_log == [("git", "3.9.1")]
        assert collaborators.runner.restart_count == 1


class TestRestartGating:
    def test_no_restart_when_nothing_installed(self, store, collaborators):
        store.set_pin("git", "3.9.1")
        collaborators.installer.installed["git"] = "3.9.1"

        report = Reconciler(store, collaborators).reconcile(_plugins_only({"git": "3.9.1"}))

        assert _outcomes(report)["restart"] == "skipped"
        assert collaborators.runner.restart_count == 0
        assert not report.restart_performed

    def test_no_restart_when_install_reports_no_change(self, store, collaborators):
        # installed at the right version, only the pin is missing
        collaborators.installer.installed["git"] = "3.9.1"

        report = Reconciler(store, collaborators).reconcile(_plugins_only({"git": "3.9.1"}))

        outcomes = _outcomes(report)
        assert outcomes["plugin:git:install"] == "skipped"
        assert outcomes["git_pinned"] == "applied"
        assert collaborators.runner.restart_count == 0

    def test_restart_failure_stops_the_run(self, store, collaborators):
        collaborators.runner.set_restart_failure("server did not come back")

        report = Reconciler(store, collaborators).reconcile(_desired())

        assert report.failed_action == "restart"
        assert report.error_kind == "effect_failed"
        assert collaborators.runner.scripts == []


# ── Failure handling ─────────────────────────────────────────────────


class TestFailFast:
    def test_user_failure_stops_later_phases(self, store, collaborators):
        collaborators.runner.set_failure("UserPropertyImpl", "groovy.lang.MissingPropertyException")

        report = Reconciler(store, collaborators).reconcile(_desired())

        assert not report.ok
        assert report.failed_action == "automation_user_created"
        assert report.error_kind == "effect_failed"
        assert "MissingPropertyException" in report.error
        assert collaborators.runner.scripts_containing("BasicSSHUserPrivateKey") == []
        assert collaborators.runner.scripts_containing("ExecuteDslScripts") == []
        assert not store.get_flag("automation_user_created")
        assert report.results[-1].key == "automation_user_created"

    def test_completed_actions_are_listed(self, store, collaborators):
        collaborators.runner.set_failure("UserPropertyImpl")

        report = Reconciler(store, collaborators).reconcile(_desired())

        assert "git_pinned" in report.completed
        assert "restart" in report.completed
        assert "automation_user_created" not in report.completed

    def test_rerun_resumes_after_fix(self, store, collaborators):
        runner = collaborators.runner
        runner.set_failure("UserPropertyImpl")
        reconciler = Reconciler(store, collaborators)
        reconciler.reconcile(_desired())

        runner.reset()
        report = reconciler.reconcile(_desired())

        assert report.ok
        assert collaborators.installer.call_count == 2  # only from the first run
        assert len(runner.scripts_containing("UserPropertyImpl")) == 1
        assert runner.restart_count == 0

    def test_install_failure(self, store, collaborators):
        collaborators.installer.set_failure("git", "HTTP 404 fetching git")

        report = Reconciler(store, collaborators).reconcile(_desired())

        assert report.failed_action == "plugin:git:install"
        assert report.error_kind == "effect_failed"
        assert store.get_pin("git") is None
        assert collaborators.runner.restart_count == 0

    def test_missing_secret_fails_before_any_credential(self, store, collaborators):
        desired = _desired(credentials=[
            {"id": "nexus", "kind": "password", "secret_ref": "does-not-exist"},
        ])

        report = Reconciler(store, collaborators).reconcile(desired)

        assert report.failed_action == "resolve_secrets"
        assert report.error_kind == "secret_resolution_failed"
        assert collaborators.installer.call_count == 0
        assert collaborators.runner.scripts == []

    def test_invalid_key_material(self, store, collaborators):
        collaborators.secrets.add("automation_user", "not a key")

        report = Reconciler(store, collaborators).reconcile(_desired())

        assert report.failed_action == "automation_user_created"
        assert report.error_kind == "secret_resolution_failed"

    def test_installer_query_failure(self, store, collaborators):
        collaborators.installer.set_query_failure("job-dsl", "permission denied")

        report = Reconciler(store, collaborators).reconcile(_desired())

        assert report.failed_action == "plugins"
        assert report.error_kind == "precondition_check_failed"
        assert collaborators.installer.call_count == 0

    def test_marker_write_failure_needs_manual_intervention(self, collaborators):
        class FailingFlagStore(MemoryStateStore):
            def set_flag(self, key):
                raise StateStoreError("disk full")

        store = FailingFlagStore()
        report = Reconciler(store, collaborators).reconcile(_desired())

        assert report.failed_action == "automation_user_created"
        assert report.error_kind == "postcondition_write_failed"
        assert report.manual_intervention
        assert len(collaborators.runner.scripts_containing("UserPropertyImpl")) == 1

    def test_interrupt_propagates_and_is_recorded(self, store, collaborators, tmp_path: Path):
        class InterruptingRunner(MockScriptRunner):
            def execute(self, script: str) -> ScriptResult:
                raise KeyboardInterrupt

        collab = Collaborators(
            installer=collaborators.installer,
            runner=InterruptingRunner(),
            renderer=collaborators.renderer,
            secrets=collaborators.secrets,
        )
        history = HistoryWriter(tmp_path / "history.ndjson")

        with pytest.raises(KeyboardInterrupt):
            Reconciler(store, collab, history=history).reconcile(_desired())

        assert store.get_pin("git") is not None
        assert history.read_all()[-1].status == "interrupted"


class TestOneTimeActions:
    def test_user_is_created_once(self, store, collaborators):
        reconciler = Reconciler(store, collaborators)
        reconciler.reconcile(_desired())

        changed = _desired(automation_user={
            "secret_ref": "automation_user",
            "full_name": "Someone Else",
        })
        report = reconciler.reconcile(changed)

        assert _outcomes(report)["automation_user_created"] == "skipped"
        assert len(collaborators.runner.scripts_containing("UserPropertyImpl")) == 1

    def test_changed_secret_reregisters_credential(self, store, collaborators, other_rsa_pem):
        reconciler = Reconciler(store, collaborators)
        reconciler.reconcile(_desired())

        collaborators.secrets.add("github", other_rsa_pem, username="git")
        report = reconciler.reconcile(_desired())

        outcomes = _outcomes(report)
        assert outcomes["credential:github-deploy"] == "applied"
        assert outcomes["credential:artifactory"] == "skipped"
        flags = [f.action_key for f in store.list_flags()]
        assert len([k for k in flags if k.startswith("credential_github-deploy_")]) == 1

    def test_changed_settings_reapplied_once(self, store, collaborators):
        reconciler = Reconciler(store, collaborators)
        reconciler.reconcile(_desired())

        changed = _desired(settings={"executor_count": 4})
        assert _outcomes(reconciler.reconcile(changed))["settings"] == "applied"
        assert _outcomes(reconciler.reconcile(changed))["settings"] == "skipped"

        flags = [f.action_key for f in store.list_flags()]
        assert len([k for k in flags if k.startswith("settings_")]) == 1


# ── Dry run & reporting ──────────────────────────────────────────────


class TestDryRun:
    def test_applies_nothing(self, store, collaborators):
        report = Reconciler(store, collaborators, dry_run=True).reconcile(_desired())

        assert report.ok
        assert report.dry_run
        assert collaborators.installer.call_count == 0
        assert collaborators.runner.scripts == []
        assert collaborators.runner.restart_count == 0
        assert store.list_flags() == []
        assert store.list_pins() == []

    def test_reports_planned_actions(self, store, collaborators):
        report = Reconciler(store, collaborators, dry_run=True).reconcile(_desired())

        outcomes = _outcomes(report)
        assert outcomes["plugin:git:install"] == "planned"
        assert outcomes["git_pinned"] == "planned"
        assert outcomes["restart"] == "planned"
        assert outcomes["automation_user_created"] == "planned"
        assert outcomes["settings"] == "planned"
        assert report.changed == 0

    def test_converged_server_plans_nothing(self, store, collaborators):
        Reconciler(store, collaborators).reconcile(_desired())

        report = Reconciler(store, collaborators, dry_run=True).reconcile(_desired())

        assert report.planned == 0


class TestReport:
    def test_no_secret_material_in_report_or_logs(self, store, collaborators, rsa_pem, caplog):
        caplog.set_level(logging.DEBUG)

        report = Reconciler(store, collaborators).reconcile(_desired())
        dumped = json.dumps(report.to_dict())

        key_body = rsa_pem.strip().splitlines()[1]
        assert "s3cr3t-pw" not in dumped
        assert key_body not in dumped
        assert "s3cr3t-pw" not in caplog.text
        assert key_body not in caplog.text

    def test_to_dict(self, store, collaborators):
        report = Reconciler(store, collaborators).reconcile(_desired())
        data = report.to_dict()

        assert data["status"] == "ok"
        assert data["environment"] == "dev"
        assert data["failed_action"] is None
        assert data["total"] == len(data["results"])

    def test_history_entry_written(self, store, collaborators, tmp_path: Path):
        history = HistoryWriter(tmp_path / "history.ndjson")

        report = Reconciler(store, collaborators, history=history).reconcile(_desired())

        entries = history.read_all()
        assert len(entries) == 1
        assert entries[0].run_id == report.run_id
        assert entries[0].status == "ok"
        assert entries[0].restart_performed
        changed = entries[0].context["changed"]
        assert "automation_user_created" in changed
        assert "restart" in changed
        assert "resolve_secrets" not in changed


class TestRunId:
    def test_format(self):
        run_id = generate_run_id()
        assert run_id.startswith("run-")
        assert len(run_id) > 20

    def test_unique(self):
        assert generate_run_id() != generate_run_id()
