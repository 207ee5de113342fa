"""
End-to-end CLI tests: validate, plan, apply, output and destroy against the
simulated account, all inside a temporary working directory.
"""
import json
import os
import shutil
import subprocess
import sys

from click.testing import CliRunner

from iamgraph import __version__
from iamgraph.cli import cli

FIXTURES = os.path.join(os.path.dirname(__file__), "fixtures")

STATE = os.path.join(".iamgraph", "state.json")
REMOTE = os.path.join(".iamgraph", "remote.json")


def _state_resources():
    with open(STATE, encoding="utf-8") as fh:
        return json.load(fh)["resources"]


def test_module_execution():
    """Test that 'python -m iamgraph' works."""
    result = subprocess.run(
        [sys.executable, "-m", "iamgraph", "--help"],
        capture_output=True,
        text=True
    )
    assert result.returncode == 0
    assert "iamgraph" in result.stdout


class TestCli:
    def setup_method(self):
        self.runner = CliRunner()

    def _workspace(self, tmp_path, monkeypatch):
        shutil.copytree(os.path.join(FIXTURES, "tf"), tmp_path / "iam")
        monkeypatch.chdir(tmp_path)

    def test_version(self):
        result = self.runner.invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_validate(self, tmp_path, monkeypatch):
        self._workspace(tmp_path, monkeypatch)
        result = self.runner.invoke(cli, ["validate", "iam"])
        assert result.exit_code == 0
        assert "9 resources" in result.output

    def test_validate_cycle_exit_code(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        (tmp_path / "iam.yaml").write_text(
            "resources:\n"
            "  - kind: aws_iam_user\n    name: a\n    attributes: {name: a}\n    depends_on: [aws_iam_user.b]\n"
            "  - kind: aws_iam_user\n    name: b\n    attributes: {name: b}\n    depends_on: [aws_iam_user.a]\n"
        )
        result = self.runner.invoke(cli, ["validate", "iam.yaml"])
        assert result.exit_code == 2
        assert not os.path.exists(STATE)

    def test_bad_var_flag(self, tmp_path, monkeypatch):
        self._workspace(tmp_path, monkeypatch)
        result = self.runner.invoke(cli, ["validate", "iam", "--var", "no-equals-sign"])
        assert result.exit_code == 2

    def test_missing_settings_file(self, tmp_path, monkeypatch):
        self._workspace(tmp_path, monkeypatch)
        result = self.runner.invoke(cli, ["--config", "nope.yaml", "validate", "iam"])
        assert result.exit_code == 2

    def test_graph_order(self, tmp_path, monkeypatch):
        self._workspace(tmp_path, monkeypatch)
        result = self.runner.invoke(cli, ["graph", "iam"])
        assert result.exit_code == 0
        assert "  1. aws_iam_user.ci" in result.output

    def test_graph_mermaid(self, tmp_path, monkeypatch):
        self._workspace(tmp_path, monkeypatch)
        result = self.runner.invoke(cli, ["graph", "iam", "--format", "mermaid"])
        assert result.exit_code == 0
        assert "flowchart RL" in result.output

    def test_plan_json_report(self, tmp_path, monkeypatch):
        self._workspace(tmp_path, monkeypatch)
        result = self.runner.invoke(cli, ["plan", "iam", "--format", "json", "-o", "plan.json"])
        assert result.exit_code == 0
        with open("plan.json", encoding="utf-8") as fh:
            report = json.load(fh)
        assert report["summary"]["create"] == 9
        assert report["order"][0] == "aws_iam_user.ci"
        assert not os.path.exists(REMOTE)

    def test_plan_markdown_written_with_lf(self, tmp_path, monkeypatch):
        self._workspace(tmp_path, monkeypatch)
        result = self.runner.invoke(cli, ["plan", "iam", "--format", "markdown", "-o", "plan.md"])
        assert result.exit_code == 0
        with open("plan.md", "rb") as fh:
            content = fh.read()
        assert b"\r\n" not in content
        assert b"```mermaid" in content

    def test_apply_output_destroy(self, tmp_path, monkeypatch):
        self._workspace(tmp_path, monkeypatch)

        result = self.runner.invoke(cli, ["apply", "iam", "--auto-approve"])
        assert result.exit_code == 0, result.output
        resources = _state_resources()
        assert len(resources) == 9
        assert os.path.exists(REMOTE)

        result = self.runner.invoke(cli, ["plan", "iam", "--detailed-exitcode"])
        assert result.exit_code == 0

        result = self.runner.invoke(cli, ["output", "iam"])
        assert result.exit_code == 0
        assert "ci_user_arn = arn:aws:iam::123456789012:user/system/ci-deployer" in result.output
        assert "ci_secret = (sensitive value)" in result.output
        assert "ci_password = (sensitive value)" in result.output

        secret = next(r for r in resources if r["kind"] == "aws_iam_access_key")["outputs"]["secret"]
        assert secret not in result.output
        result = self.runner.invoke(cli, ["output", "iam", "--name", "ci_secret", "--reveal"])
        assert result.exit_code == 0
        assert secret in result.output

        result = self.runner.invoke(cli, ["destroy", "iam", "--auto-approve"])
        assert result.exit_code == 0, result.output
        assert _state_resources() == []

    def test_plan_detects_changes(self, tmp_path, monkeypatch):
        self._workspace(tmp_path, monkeypatch)
        result = self.runner.invoke(cli, ["plan", "iam", "--detailed-exitcode"])
        assert result.exit_code == 3

    def test_var_override_applies(self, tmp_path, monkeypatch):
        self._workspace(tmp_path, monkeypatch)
        result = self.runner.invoke(cli, ["apply", "iam", "--auto-approve", "--var", "user_name=release-bot"])
        assert result.exit_code == 0, result.output
        user = next(r for r in _state_resources() if r["kind"] == "aws_iam_user")
        assert user["remote_id"] == "release-bot"

    def test_provider_failure_exit_code(self, tmp_path, monkeypatch):
        self._workspace(tmp_path, monkeypatch)
        os.makedirs(".iamgraph")
        with open(REMOTE, "w", encoding="utf-8") as fh:
            json.dump({"objects": {"aws_iam_user": {"ci-deployer": {"name": "ci-deployer", "id": "ci-deployer"}}}}, fh)

        result = self.runner.invoke(cli, ["apply", "iam", "--auto-approve", "--parallelism", "1"])
        assert result.exit_code == 1
        assert not os.path.exists(STATE)

    def test_destroy_with_empty_state(self, tmp_path, monkeypatch):
        self._workspace(tmp_path, monkeypatch)
        result = self.runner.invoke(cli, ["destroy", "iam", "--auto-approve"])
        assert result.exit_code == 0
        assert "Nothing to destroy" in result.output

    def test_settings_file_parallelism_validated(self, tmp_path, monkeypatch):
        self._workspace(tmp_path, monkeypatch)
        result = self.runner.invoke(cli, ["apply", "iam", "--auto-approve", "--parallelism", "0"])
        assert result.exit_code == 2
