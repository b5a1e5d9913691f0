"""Tests for the az-pim command line."""

from __future__ import annotations

import argparse
import json

import pytest

from azpim import log
from azpim.cli import build_parser, confirm, main, parse_wait
from azpim.completion import completion_script, walk

from conftest import SUB, SUB_SCOPE, FakeDirectory, FakeIdentity, assignment_id, make_assignment


@pytest.fixture(autouse=True)
def _reset_log_level(monkeypatch):
    monkeypatch.delenv("AZ_PIM_LOG", raising=False)
    yield
    log.set_level("info")


def _run(argv, directory, identity=None):
    return main(argv, client_factory=lambda args: directory, graph_factory=lambda args: identity or FakeIdentity())


def _activations(directory):
    return [c[1:3] for c in directory.calls if c[0] == "activate"]


# ── Argument parsing ───────────────────────────────────────────────


class TestParseWait:
    @pytest.mark.parametrize(
        "value,expected",
        [("300", 300.0), ("0", 0.0), ("5m", 300.0), ("1h30m", 5400.0), ("45s", 45.0), ("1h", 3600.0)],
    )
    def test_valid(self, value, expected):
        assert parse_wait(value) == expected

    @pytest.mark.parametrize("value", ["", "abc", "5x", "m"])
    def test_invalid(self, value):
        with pytest.raises(argparse.ArgumentTypeError):
            parse_wait(value)


class TestParser:
    def test_duration_bounds(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["activate", "role", "Owner", "why", "--duration", "481"])
        args = build_parser().parse_args(["activate", "role", "Owner", "why", "--duration", "60"])
        assert args.duration == 60

    def test_command_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])


# ── list ───────────────────────────────────────────────────────────


class TestList:
    def test_eligible(self, capsys):
        directory = FakeDirectory(eligible=[make_assignment("Owner", scope_name="Production")])
        assert _run(["list"], directory) == 0
        assert json.loads(capsys.readouterr().out) == [
            {"role": "Owner", "scope": SUB_SCOPE, "scope_name": "Production"}
        ]

    def test_active(self, capsys):
        directory = FakeDirectory(active=[make_assignment("Reader")])
        assert _run(["list", "--active"], directory) == 0
        assert [x["role"] for x in json.loads(capsys.readouterr().out)] == ["Reader"]

    def test_at_scope_requires_scope(self):
        assert _run(["list", "--filter", "at-scope"], FakeDirectory()) == 2


# ── activate / deactivate ──────────────────────────────────────────


class TestActivate:
    def test_role(self):
        directory = FakeDirectory(eligible=[make_assignment("Owner")])
        assert _run(["activate", "role", "Owner", "INC-1", "--subscription", SUB, "--duration", "30"], directory) == 0
        assert [c for c in directory.calls if c[0] == "activate"] == [("activate", "Owner", SUB_SCOPE, "INC-1", 30)]

    def test_role_not_eligible(self):
        assert _run(["activate", "role", "Owner", "INC-1", "--scope", SUB_SCOPE], FakeDirectory()) == 1

    def test_scope_validation_happens_first(self):
        directory = FakeDirectory(eligible=[make_assignment("Owner")])
        argv = ["activate", "role", "Owner", "INC-1", "--subscription", SUB, "--provider", "Microsoft.Web/sites/x"]
        assert _run(argv, directory) == 2
        assert directory.calls == []

    def test_unknown_scope_name(self):
        argv = ["activate", "role", "Owner", "INC-1", "--scope-name", "Staging"]
        assert _run(argv, FakeDirectory()) == 2

    def test_set(self, tmp_path):
        rg = f"{SUB_SCOPE}/resourceGroups/web"
        directory = FakeDirectory(
            eligible=[make_assignment("Owner", scope_name="Production"), make_assignment("Reader", rg, scope_name="web")]
        )
        config = tmp_path / "roles.yaml"
        config.write_text("- role: Owner\n  scope: Production\n", encoding="utf-8")
        out = tmp_path / "report.json"
        argv = ["--out-json", str(out), "activate", "set", "INC-2", "--config", str(config), "--role", f"Reader={rg}"]
        assert _run(argv, directory) == 0
        assert sorted(_activations(directory)) == [("Owner", SUB_SCOPE), ("Reader", rg)]
        report = json.loads(out.read_text(encoding="utf-8"))
        assert report["command"] == "activate set"
        assert report["summary"]["total_operations"] == 2
        assert report["summary"]["success"] == 2

    def test_set_partial_failure(self):
        directory = FakeDirectory(eligible=[make_assignment("Owner")])
        argv = ["activate", "set", "INC-3", "--role", f"Owner={SUB_SCOPE}", "--role", f"Reader={SUB_SCOPE}"]
        assert _run(argv, directory) == 1
        assert _activations(directory) == [("Owner", SUB_SCOPE)]

    def test_set_unknown_scope_aborts_before_any_call(self):
        directory = FakeDirectory(eligible=[make_assignment("Owner")])
        argv = ["activate", "set", "INC-4", "--role", f"Owner={SUB_SCOPE}", "--role", "Reader=Nowhere"]
        assert _run(argv, directory) == 2
        assert directory.calls == []

    def test_set_requires_roles(self):
        assert _run(["activate", "set", "INC-5"], FakeDirectory()) == 2

    def test_wait(self):
        directory = FakeDirectory(eligible=[make_assignment("Owner")])
        argv = ["activate", "role", "Owner", "INC-6", "--scope", SUB_SCOPE, "--wait", "0"]
        assert _run(argv, directory) == 0


class TestDeactivate:
    def test_role(self):
        directory = FakeDirectory(active=[make_assignment("Owner")])
        assert _run(["deactivate", "role", "Owner", "--scope", SUB_SCOPE, "--wait", "0"], directory) == 0
        assert directory.active == []

    def test_set(self):
        directory = FakeDirectory(active=[make_assignment("Owner"), make_assignment("Reader")])
        argv = ["deactivate", "set", "--role", f"Owner={SUB_SCOPE}", "--role", f"Reader={SUB_SCOPE}"]
        assert _run(argv, directory) == 0
        assert sorted(c[1] for c in directory.calls if c[0] == "deactivate") == ["Owner", "Reader"]


# ── role ───────────────────────────────────────────────────────────


class TestRoleAssignments:
    def test_list_with_principals(self, capsys):
        items = [
            make_assignment("Owner", principal_id="alive", assignment_id=assignment_id(SUB_SCOPE, "a1")),
            make_assignment("Reader", principal_id="gone", assignment_id=assignment_id(SUB_SCOPE, "a2")),
        ]
        directory = FakeDirectory(role_assignments={SUB_SCOPE: items})
        assert _run(["role", "assignment", "list", "--subscription", SUB], directory, FakeIdentity(known={"alive"})) == 0
        out = json.loads(capsys.readouterr().out)
        assert out[0]["object"]["id"] == "alive"
        assert "object" not in out[1]

    def test_delete(self, tmp_path):
        directory = FakeDirectory()
        aid = assignment_id(SUB_SCOPE, "a1")
        out = tmp_path / "report.json"
        assert _run(["--out-json", str(out), "role", "assignment", "delete", aid, "--scope", SUB_SCOPE], directory) == 0
        assert directory.calls == [("delete", aid, SUB_SCOPE)]
        (entry,) = json.loads(out.read_text(encoding="utf-8"))["operations"]
        assert entry["role"] == "role assignment"

    def test_delete_set(self, tmp_path):
        directory = FakeDirectory()
        ids = [assignment_id(SUB_SCOPE, "a1"), assignment_id(SUB_SCOPE, "a2")]
        config = tmp_path / "assignments.json"
        config.write_text(json.dumps([{"assignment_id": i} for i in ids]), encoding="utf-8")
        argv = ["role", "assignment", "delete-set", "--config", str(config), "--scope", SUB_SCOPE, "--yes"]
        assert _run(argv, directory) == 0
        assert sorted(c[1] for c in directory.calls) == ids

    def test_delete_set_outside_scope(self, tmp_path):
        directory = FakeDirectory()
        config = tmp_path / "assignments.json"
        config.write_text(json.dumps([{"assignment_id": assignment_id("/subscriptions/other", "a1")}]), encoding="utf-8")
        argv = ["role", "assignment", "delete-set", "--config", str(config), "--scope", SUB_SCOPE, "--yes"]
        assert _run(argv, directory) == 2
        assert directory.calls == []


# ── cleanup ────────────────────────────────────────────────────────


class TestCleanup:
    def _directory(self):
        return FakeDirectory(
            role_assignments={
                SUB_SCOPE: [
                    make_assignment("Owner", principal_id="alive", assignment_id=assignment_id(SUB_SCOPE, "a1")),
                    make_assignment("Reader", principal_id="gone", assignment_id=assignment_id(SUB_SCOPE, "a2")),
                ]
            },
            eligible_at={
                SUB_SCOPE: [make_assignment("Contributor", principal_id="gone", assignment_id="e1")],
            },
        )

    def test_orphaned_assignments(self):
        directory = self._directory()
        argv = ["cleanup", "orphaned-assignments", "--scope", SUB_SCOPE, "--yes"]
        assert _run(argv, directory, FakeIdentity(known={"alive"})) == 0
        assert [c for c in directory.calls if c[0] == "delete"] == [("delete", assignment_id(SUB_SCOPE, "a2"), SUB_SCOPE)]

    def test_all(self):
        directory = self._directory()
        assert _run(["cleanup", "all", "--scope", SUB_SCOPE, "--yes"], directory, FakeIdentity(known={"alive"})) == 0
        kinds = sorted(c[0] for c in directory.calls if c[0].startswith("delete"))
        assert kinds == ["delete", "delete-eligible"]

    def test_declined_confirmation(self, monkeypatch):
        directory = self._directory()
        monkeypatch.setattr("builtins.input", lambda prompt: "n")
        assert _run(["cleanup", "all", "--scope", SUB_SCOPE], directory, FakeIdentity(known={"alive"})) == 0
        assert not [c for c in directory.calls if c[0].startswith("delete")]

    def test_auto_activates_admin_roles_first(self):
        directory = self._directory()
        directory.eligible = [make_assignment("Owner"), make_assignment("Reader")]
        argv = ["cleanup", "auto", "--yes", "--skip-nested"]
        assert _run(argv, directory, FakeIdentity(known={"alive"})) == 0
        assert _activations(directory) == [("Owner", SUB_SCOPE)]
        deletes = [c[0] for c in directory.calls if c[0].startswith("delete")]
        assert sorted(deletes) == ["delete", "delete-eligible"]
        assert directory.calls.index(next(c for c in directory.calls if c[0] == "activate")) < directory.calls.index(
            next(c for c in directory.calls if c[0] == "delete")
        )

    def test_auto_skips_already_active(self):
        directory = self._directory()
        directory.active = [make_assignment("Owner")]
        assert _run(["cleanup", "auto", "--yes"], directory, FakeIdentity(known={"alive"})) == 0
        assert _activations(directory) == []


# ── misc ───────────────────────────────────────────────────────────


class TestMisc:
    def test_init_bash(self, capsys):
        assert _run(["init", "bash"], FakeDirectory()) == 0
        out = capsys.readouterr().out
        assert "complete -F _az_pim az-pim" in out
        assert '"activate") opts="interactive role set' in out

    def test_completion_shells(self):
        parser = build_parser()
        assert "bashcompinit" in completion_script(parser, "zsh")
        fish = completion_script(parser, "fish")
        assert "complete -c az-pim -n \"__fish_seen_subcommand_from cleanup\" -a orphaned-assignments" in fish
        with pytest.raises(ValueError):
            completion_script(parser, "powershell")

    def test_walk_covers_nested_commands(self):
        paths = {path for path, _, _ in walk(build_parser())}
        assert ("role", "assignment", "delete-set") in paths
        assert ("cleanup", "auto") in paths

    def test_invalid_log_level(self, monkeypatch):
        monkeypatch.setenv("AZ_PIM_LOG", "loud")
        assert _run(["list"], FakeDirectory()) == 2

    def test_confirm(self):
        assert confirm("ok?", assume_yes=True, input_fn=lambda p: "n")
        assert confirm("ok?", assume_yes=False, input_fn=lambda p: "Yes")
        assert not confirm("ok?", assume_yes=False, input_fn=lambda p: "")

        def eof(prompt):
            raise EOFError

        assert not confirm("ok?", assume_yes=False, input_fn=eof)
