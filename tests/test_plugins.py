"""
Tests for plugin set reconciliation — the pure planning function.
"""

from converge.core.engine.plugins import PluginActionKind, reconcile_plugins
from converge.core.models.state import PinRecord

K = PluginActionKind


def _pin(name: str, version: str) -> PinRecord:
    return PinRecord(plugin_name=name, version=version)


def _installed(versions: dict[str, str]):
    def query(name: str):
        return (name in versions, versions.get(name))
    return query


def _kinds(plan) -> list[tuple[PluginActionKind, str]]:
    return [(a.kind, a.name) for a in plan.actions]


class TestReconcilePlugins:
    def test_fresh_install(self):
        plan = reconcile_plugins({"git": "3.9.1", "job-dsl": None}, {})

        assert _kinds(plan) == [
            (K.INSTALL_PINNED, "git"),
            (K.WRITE_PIN, "git"),
            (K.INSTALL_UNPINNED, "job-dsl"),
        ]
        assert plan.any_changed

    def test_lexicographic_order(self):
        plan = reconcile_plugins({"zeta": None, "alpha": None, "mid": None}, {})
        assert [a.name for a in plan.actions] == ["alpha", "mid", "zeta"]

    def test_matching_pin_is_noop(self):
        plan = reconcile_plugins(
            {"git": "3.9.1"},
            {"git": _pin("git", "3.9.1")},
            _installed({"git": "3.9.1"}),
        )
        assert _kinds(plan) == [(K.NOOP, "git")]
        assert not plan.any_changed

    def test_version_change(self):
        plan = reconcile_plugins(
            {"git": "3.9.1"},
            {"git": _pin("git", "3.9.0")},
            _installed({"git": "3.9.0"}),
        )

        assert _kinds(plan) == [
            (K.REMOVE_PIN, "git"),
            (K.INSTALL_PINNED, "git"),
            (K.WRITE_PIN, "git"),
        ]
        assert len(plan.of_kind(K.INSTALL_PINNED)) == 1
        assert len(plan.of_kind(K.WRITE_PIN)) == 1
        assert plan.of_kind(K.REMOVE_PIN)[0].version == "3.9.0"

    def test_cleanup_comes_first(self):
        plan = reconcile_plugins(
            {"aaa": "1.0"},
            {"zzz": _pin("zzz", "2.0")},
        )
        assert plan.actions[0].kind == K.REMOVE_PIN
        assert plan.actions[0].name == "zzz"

    def test_undesired_pin_removed_without_uninstall(self):
        plan = reconcile_plugins({}, {"git": _pin("git", "3.9.0")}, _installed({"git": "3.9.0"}))

        assert _kinds(plan) == [(K.REMOVE_PIN, "git")]
        assert not plan.any_changed

    def test_pinned_to_unpinned(self):
        plan = reconcile_plugins(
            {"git": None},
            {"git": _pin("git", "3.9.0")},
            _installed({"git": "3.9.0"}),
        )
        assert _kinds(plan) == [(K.REMOVE_PIN, "git"), (K.NOOP, "git")]

    def test_unpinned_already_installed(self):
        plan = reconcile_plugins({"git": None}, {}, _installed({"git": "4.0"}))
        assert _kinds(plan) == [(K.NOOP, "git")]

    def test_unpinned_to_pinned(self):
        plan = reconcile_plugins({"git": "3.9.1"}, {"git": None}, _installed({"git": "4.0"}))
        assert _kinds(plan) == [(K.INSTALL_PINNED, "git"), (K.WRITE_PIN, "git")]

    def test_pinned_but_missing_is_reinstalled(self):
        plan = reconcile_plugins({"git": "3.9.1"}, {"git": _pin("git", "3.9.1")}, _installed({}))
        assert _kinds(plan) == [(K.INSTALL_PINNED, "git")]

    def test_without_query_trusts_pins(self):
        plan = reconcile_plugins({"git": "3.9.1"}, {"git": _pin("git", "3.9.1")})
        assert _kinds(plan) == [(K.NOOP, "git")]


class TestPluginAction:
    def test_keys(self):
        plan = reconcile_plugins({"git": "3.9.1"}, {"old": _pin("old", "1.0")})
        keys = [a.key for a in plan.actions]
        assert keys == ["plugin:old:remove_pin", "plugin:git:install", "git_pinned"]

    def test_describe(self):
        plan = reconcile_plugins({"git": "3.9.1"}, {})
        assert plan.actions[0].describe() == "install git 3.9.1"
        assert plan.actions[1].describe() == "pin git at 3.9.1"

    def test_to_dict(self):
        data = reconcile_plugins({"git": None}, {}).to_dict()
        assert data["any_changed"] is True
        assert data["actions"] == [{"kind": "install_unpinned", "name": "git", "version": None}]
