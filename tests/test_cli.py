"""Tests for the terrik command-line interface."""

import pytest
from rich.console import Console
from typer.testing import CliRunner

from terrik import cli
from terrik.cli import EXIT_FAILED, EXIT_PLAN_ERROR, app
from terrik.state import StateStore

runner = CliRunner()

README_HCL = """
variable "who" {
  default = "world"
}

resource "local_directory" "out" {
  path = "${path.module}/out"
}

resource "local_file" "readme" {
  filename = "${local_directory.out.path}/README.md"
  content  = "hello ${var.who}"
}

output "readme_id" {
  value = "${local_file.readme.id}"
}
"""


@pytest.fixture(autouse=True)
def wide_console(monkeypatch):
    monkeypatch.setattr(cli, "console", Console(width=200))


@pytest.fixture
def project(tmp_path):
    (tmp_path / "main.hcl").write_text(README_HCL)
    return tmp_path


def _run(project, *args):
    return runner.invoke(app, [*args, "--dir", str(project)])


class TestPlan:
    def test_plan_lists_creates(self, project):
        result = _run(project, "plan")
        assert result.exit_code == 0, result.output
        assert "+ local_directory.out" in result.output
        assert "+ local_file.readme" in result.output
        assert "Plan: 2 to add, 0 to change, 0 to replace, 0 to destroy." in result.output
        assert not (project / "out").exists()

    def test_plan_after_apply(self, project):
        _run(project, "apply")
        result = _run(project, "plan")
        assert result.exit_code == 0
        assert "No changes." in result.output

    def test_replacement_shown_once(self, project):
        _run(project, "apply")
        (project / "main.hcl").write_text(README_HCL.replace("README.md", "NOTES.md"))
        result = _run(project, "plan")
        assert result.exit_code == 0, result.output
        assert "-/+ local_file.readme" in result.output
        assert result.output.count("local_file.readme") == 1
        assert "Plan: 0 to add, 0 to change, 1 to replace, 0 to destroy." in result.output

        assert _run(project, "apply").exit_code == 0
        assert (project / "out" / "NOTES.md").exists()
        assert not (project / "out" / "README.md").exists()

    def test_plan_error_exit_code(self, tmp_path):
        (tmp_path / "main.hcl").write_text('resource "queue" "jobs" {\n  name = "jobs"\n}\n')
        result = _run(tmp_path, "plan")
        assert result.exit_code == EXIT_PLAN_ERROR
        assert "queue" in result.output

    def test_syntax_error_exit_code(self, tmp_path):
        (tmp_path / "main.hcl").write_text('resource "local_file" "x" {\n  filename = \n}\n')
        result = _run(tmp_path, "plan")
        assert result.exit_code == EXIT_PLAN_ERROR
        assert "Syntax" in result.output

    def test_bad_var(self, project):
        result = _run(project, "plan", "--var", "novalue")
        assert result.exit_code == 2

    def test_lock_held(self, project):
        with StateStore(project / "terrik.state.json").lock():
            result = _run(project, "plan")
        assert result.exit_code == EXIT_PLAN_ERROR
        assert "locked" in result.output


class TestApply:
    def test_apply_creates(self, project):
        result = _run(project, "apply")
        assert result.exit_code == 0, result.output
        assert (project / "out" / "README.md").read_text() == "hello world"
        assert "Apply complete! 2 applied, 0 failed, 0 skipped." in result.output
        assert "readme_id" in result.output

    def test_apply_with_variable_updates(self, project):
        _run(project, "apply")
        result = runner.invoke(app, ["apply", "--dir", str(project), "--var", "who=there"])
        assert result.exit_code == 0, result.output
        assert "~ local_file.readme" in result.output
        assert (project / "out" / "README.md").read_text() == "hello there"

    def test_failed_action_exit_code(self, project):
        (project / "out").mkdir()
        (project / "out" / "README.md").write_text("not yours")
        result = _run(project, "apply")
        assert result.exit_code == EXIT_FAILED
        assert "1 applied, 1 failed, 0 skipped" in result.output
        assert (project / "out" / "README.md").read_text() == "not yours"

    def test_apply_plan_error(self, tmp_path):
        (tmp_path / "main.hcl").write_text(
            'resource "local_file" "a" {\n  filename = "${local_file.b.filename}"\n  content = "a"\n}\n'
            'resource "local_file" "b" {\n  filename = "${local_file.a.filename}"\n  content = "b"\n}\n'
        )
        result = _run(tmp_path, "apply")
        assert result.exit_code == EXIT_PLAN_ERROR
        assert "cycle" in result.output


class TestDestroy:
    def test_destroy(self, project):
        _run(project, "apply")
        result = _run(project, "destroy")
        assert result.exit_code == 0, result.output
        assert "- local_file.readme" in result.output
        assert not (project / "out").exists()
        assert len(StateStore(project / "terrik.state.json")) == 0


class TestOutput:
    def test_all_outputs(self, project):
        _run(project, "apply")
        result = _run(project, "output")
        assert result.exit_code == 0
        assert "readme_id =" in result.output

    def test_single_output(self, project):
        _run(project, "apply")
        record = StateStore(project / "terrik.state.json").get("local_file.readme")
        result = _run(project, "output", "readme_id")
        assert result.exit_code == 0
        assert record.id in result.output

    def test_missing_output(self, project):
        result = _run(project, "output", "nope")
        assert result.exit_code == EXIT_FAILED


class TestState:
    def test_list_empty(self, project):
        result = _run(project, "state", "list")
        assert result.exit_code == 0
        assert "No resources in state" in result.output

    def test_list(self, project):
        _run(project, "apply")
        result = _run(project, "state", "list")
        assert result.exit_code == 0
        assert "local_file.readme" in result.output
        assert "local_directory.out" in result.output

    def test_show(self, project):
        _run(project, "apply")
        result = _run(project, "state", "show", "local_file.readme")
        assert result.exit_code == 0
        assert '"content": "hello world"' in result.output

    def test_show_missing(self, project):
        result = _run(project, "state", "show", "local_file.nope")
        assert result.exit_code == EXIT_FAILED

    def test_list_with_broken_documents(self, project):
        _run(project, "apply")
        (project / "broken.hcl").write_text('resource "local_file" {\n')
        assert _run(project, "plan").exit_code == EXIT_PLAN_ERROR
        result = _run(project, "state", "list")
        assert result.exit_code == 0, result.output
        assert "local_file.readme" in result.output

    def test_show_with_unknown_resource_type(self, project):
        _run(project, "apply")
        (project / "queue.hcl").write_text('resource "queue" "jobs" {\n  name = "jobs"\n}\n')
        result = _run(project, "state", "show", "local_file.readme")
        assert result.exit_code == 0, result.output
        assert '"content": "hello world"' in result.output

    def test_explicit_state_file(self, project):
        _run(project, "apply")
        (project / "main.hcl").write_text("not hcl at all {{{\n")
        state = project / "terrik.state.json"
        result = runner.invoke(app, ["state", "list", "--dir", str(project), "--state", str(state)])
        assert result.exit_code == 0, result.output
        assert "local_directory.out" in result.output
