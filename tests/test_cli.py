"""Tests for the provisio CLI."""

import json
import sys

import pytest
import yaml
from click.testing import CliRunner

from provisio.cli import main


@pytest.fixture
def home(tmp_path, monkeypatch):
    """PROVISIO_HOME with a config that journals under tmp_path."""
    home = tmp_path / "home"
    home.mkdir()
    (home / "config.yaml").write_text(yaml.safe_dump({"runs_dir": str(tmp_path / "runs")}))
    monkeypatch.setenv("PROVISIO_HOME", str(home))
    return home


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def write_manifest(tmp_path):
    def _write(*extra_steps, name="cli-test.yaml"):
        manifest = {
            "manifest_id": "cli-test",
            "vars": {"root": str(tmp_path / "target"), "text": "hello"},
            "steps": [
                {
                    "name": "workspace",
                    "probe": {"kind": "path_exists", "path": "@ctx.root", "type": "dir"},
                    "action": {"kind": "ensure_dir", "path": "@ctx.root"},
                },
                {
                    "name": "greeting",
                    "depends_on": ["workspace"],
                    "probe": {"kind": "file_contains", "path": "@ctx.root/greeting.txt",
                              "text": "@ctx.text"},
                    "action": {"kind": "write_file", "path": "@ctx.root/greeting.txt",
                               "content": "@ctx.text"},
                },
                *extra_steps,
            ],
        }
        path = tmp_path / name
        path.write_text(yaml.safe_dump(manifest, sort_keys=False))
        return str(path)

    return _write


def _failing(criticality):
    return {
        "name": "broken",
        "criticality": criticality,
        "action": {"kind": "command",
                   "argv": [sys.executable, "-c", "import sys; sys.exit(1)"]},
    }


class TestRun:
    """Tests for 'provisio run'."""

    def test_success(self, runner, home, write_manifest, tmp_path):
        result = runner.invoke(main, ["run", write_manifest()])
        assert result.exit_code == 0, result.output
        assert (tmp_path / "target" / "greeting.txt").read_text() == "hello"
        assert "SUCCESS" in result.output
        assert len(list((tmp_path / "runs").glob("*.json"))) == 1

    def test_var_override(self, runner, home, write_manifest, tmp_path):
        result = runner.invoke(main, ["run", write_manifest(), "--var", "text=bonjour"])
        assert result.exit_code == 0, result.output
        assert (tmp_path / "target" / "greeting.txt").read_text() == "bonjour"

    def test_bad_var(self, runner, home, write_manifest):
        result = runner.invoke(main, ["run", write_manifest(), "--var", "novalue"])
        assert result.exit_code == 2
        assert "KEY=VALUE" in result.output

    def test_json_rerun_all_skipped(self, runner, home, write_manifest):
        path = write_manifest()
        runner.invoke(main, ["run", path])
        result = runner.invoke(main, ["run", path, "--json"])
        assert result.exit_code == 0, result.output
        data = json.loads(result.output)
        assert data["outcome"] == "success"
        assert [r["skip_reason"] for r in data["results"]] == ["already satisfied"] * 2

    def test_dry_run(self, runner, home, write_manifest, tmp_path):
        result = runner.invoke(main, ["run", write_manifest(), "--dry-run", "--json"])
        assert result.exit_code == 0, result.output
        data = json.loads(result.output)
        assert data["dry_run"] is True
        assert {r["skip_reason"] for r in data["results"]} == {"dry run"}
        assert not (tmp_path / "target").exists()

    def test_required_failure_exits_3(self, runner, home, write_manifest):
        result = runner.invoke(main, ["run", write_manifest(_failing("required")), "--json"])
        assert result.exit_code == 3
        assert '"outcome": "aborted"' in result.output

    def test_best_effort_failure_exits_2(self, runner, home, write_manifest):
        result = runner.invoke(main, ["run", write_manifest(_failing("best_effort"))])
        assert result.exit_code == 2
        assert "PARTIAL_FAILURE" in result.output

    def test_no_journal(self, runner, home, write_manifest, tmp_path):
        result = runner.invoke(main, ["run", write_manifest(), "--no-journal"])
        assert result.exit_code == 0
        assert not (tmp_path / "runs").exists()

    def test_invalid_manifest_exits_1(self, runner, home, tmp_path):
        path = tmp_path / "cycle.yaml"
        path.write_text(yaml.safe_dump({"steps": [
            {"name": "a", "depends_on": ["b"], "action": {"kind": "command", "argv": ["true"]}},
            {"name": "b", "depends_on": ["a"], "action": {"kind": "command", "argv": ["true"]}},
        ]}))
        result = runner.invoke(main, ["run", str(path)])
        assert result.exit_code == 1
        assert "Invalid manifest" in result.output
        assert not (tmp_path / "runs").exists()

    def test_broken_config_exits_1(self, runner, home, write_manifest):
        (home / "config.yaml").write_text("log_level: LOUD\n")
        result = runner.invoke(main, ["run", write_manifest()])
        assert result.exit_code == 1
        assert "Config not loaded" in result.output


class TestValidate:
    """Tests for 'provisio validate'."""

    def test_shows_order(self, runner, home, write_manifest):
        result = runner.invoke(main, ["validate", write_manifest()])
        assert result.exit_code == 0
        assert "is valid: 2 steps" in result.output
        assert "1. workspace [required]" in result.output
        assert "2. greeting [required] (after workspace)" in result.output

    def test_bundled(self, runner, home):
        result = runner.invoke(main, ["validate", "code-server-datascience"])
        assert result.exit_code == 0
        assert "[when @ctx.setup_ssl]" in result.output

    def test_invalid(self, runner, home):
        result = runner.invoke(main, ["validate", "no-such-manifest"])
        assert result.exit_code == 1


class TestProbe:
    def test_reports_without_changing(self, runner, home, write_manifest, tmp_path):
        result = runner.invoke(main, ["probe", write_manifest()])
        assert result.exit_code == 0
        assert "unsatisfied" in result.output
        assert not (tmp_path / "target").exists()


class TestManifestsAndInit:
    def test_manifests(self, runner, home):
        result = runner.invoke(main, ["manifests"])
        assert result.exit_code == 0
        assert "code-server-datascience" in result.output

    def test_init(self, runner, tmp_path, monkeypatch):
        monkeypatch.setenv("PROVISIO_HOME", str(tmp_path / "fresh"))
        result = runner.invoke(main, ["init"])
        assert result.exit_code == 0
        assert (tmp_path / "fresh" / "config.yaml").exists()

        again = runner.invoke(main, ["init"])
        assert again.exit_code == 1
        assert "--force" in again.output

        assert runner.invoke(main, ["init", "--force"]).exit_code == 0

    def test_version(self, runner):
        result = runner.invoke(main, ["--version"])
        assert result.exit_code == 0
        assert "0.1.0" in result.output


class TestRuns:
    """Tests for 'provisio runs'."""

    def test_list_and_show(self, runner, home, write_manifest):
        ran = runner.invoke(main, ["run", write_manifest(), "--json"])
        run_id = json.loads(ran.output)["run_id"]

        listed = runner.invoke(main, ["runs", "list"])
        assert listed.exit_code == 0
        assert "cli-test" in listed.output

        shown = runner.invoke(main, ["runs", "show", run_id])
        assert shown.exit_code == 0
        assert "greeting" in shown.output
        assert "SUCCESS" in shown.output

        latest = runner.invoke(main, ["runs", "show"])
        assert latest.exit_code == 0
        assert "greeting" in latest.output

    def test_empty(self, runner, home):
        result = runner.invoke(main, ["runs", "list"])
        assert result.exit_code == 0
        assert "No runs found" in result.output

    def test_show_missing(self, runner, home):
        result = runner.invoke(main, ["runs", "show", "NOPE"])
        assert result.exit_code == 1
        assert "Run not found" in result.output

    def test_corrupt_entry_does_not_break_listing(self, runner, home, write_manifest, tmp_path):
        """A truncated report is reported and skipped, other runs stay visible."""
        runner.invoke(main, ["run", write_manifest(), "--json"])
        (tmp_path / "runs" / "ZZZZ.json").write_text('{"run_id": "ZZ')

        listed = runner.invoke(main, ["runs", "list"])
        assert listed.exit_code == 0
        assert "Unreadable" in listed.output
        assert "cli-test" in listed.output

        latest = runner.invoke(main, ["runs", "show"])
        assert latest.exit_code == 0
        assert "greeting" in latest.output

        shown = runner.invoke(main, ["runs", "show", "ZZZZ"])
        assert shown.exit_code == 1
        assert "Unreadable" in shown.output
