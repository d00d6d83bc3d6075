"""Tests for CLI commands - run, plan, find, targets, status."""

import json
from pathlib import Path
from unittest.mock import patch

import httpx
import pytest
from click.testing import CliRunner

from offlinesync import __version__
from offlinesync.cli import cli
from tests.factories import engine_data


@pytest.fixture
def runner() -> CliRunner:
    """Create a CLI test runner."""
    return CliRunner()


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    """Write a config with one static target and a 700 byte movies job."""
    path = tmp_path / "config.json"
    path.write_text(json.dumps(engine_data(tmp_path)), encoding="utf-8")
    return path


class TestRunCommand:
    """Tests for 'offlinesync run'."""

    def test_run_once_syncs_ready_targets(
        self, runner: CliRunner, config_file: Path, tmp_path: Path
    ) -> None:
        """A single pass should fetch what fits and print the results."""
        with patch("offlinesync.server.app.setup_logging"):
            result = runner.invoke(cli, ["--config", str(config_file), "run", "--once"])
        assert result.exit_code == 0, result.output
        assert "Sync results:" in result.output
        assert "[sd] movies: ok - 2 fetched" in result.output
        assert (tmp_path / "sd" / "Movies" / "Alpha Movie.mkv").exists()
        assert not (tmp_path / "sd" / "Movies" / "Gamma Movie.mkv").exists()

    def test_once_and_serve_exclusive(self, runner: CliRunner, config_file: Path) -> None:
        result = runner.invoke(cli, ["--config", str(config_file), "run", "--once", "--serve"])
        assert result.exit_code == 1
        assert "mutually exclusive" in result.output

    def test_missing_config_fails(self, runner: CliRunner, tmp_path: Path) -> None:
        """A missing config file should be reported, not raised."""
        missing = tmp_path / "nope.json"
        result = runner.invoke(cli, ["--config", str(missing), "run", "--once"])
        assert result.exit_code == 1
        assert "Config file not found" in result.output

    def test_invalid_json_fails(self, runner: CliRunner, tmp_path: Path) -> None:
        bad = tmp_path / "bad.json"
        bad.write_text("{not json", encoding="utf-8")
        result = runner.invoke(cli, ["--config", str(bad), "targets"])
        assert result.exit_code == 1
        assert "Invalid JSON" in result.output


class TestPlanCommand:
    """Tests for 'offlinesync plan'."""

    def test_plan_prints_summary(
        self, runner: CliRunner, config_file: Path, tmp_path: Path
    ) -> None:
        """Plan should report the manifest without touching the target."""
        result = runner.invoke(cli, ["--config", str(config_file), "plan", "--job", "movies"])
        assert result.exit_code == 0, result.output
        assert "Plan for movies on sd:" in result.output
        assert "Budget:   700 B" in result.output
        assert "Fetch:    2 (700 B)" in result.output
        assert "Skipped:  1" in result.output
        assert not (tmp_path / "sd" / "Movies").exists()

    def test_plan_budget_override(self, runner: CliRunner, config_file: Path) -> None:
        result = runner.invoke(
            cli, ["--config", str(config_file), "plan", "--job", "movies", "--budget", "250"]
        )
        assert result.exit_code == 0, result.output
        assert "Budget:   250 B" in result.output
        assert "Fetch:    1 (200 B)" in result.output

    def test_plan_writes_exports(
        self, runner: CliRunner, config_file: Path, tmp_path: Path
    ) -> None:
        """Plan should write the CSV, script and Markdown exports."""
        csv_path = tmp_path / "plan.csv"
        script_path = tmp_path / "plan.sh"
        md_path = tmp_path / "plan.md"
        result = runner.invoke(
            cli,
            [
                "--config", str(config_file), "plan", "--job", "movies",
                "--csv", str(csv_path),
                "--script", str(script_path),
                "--markdown", str(md_path),
            ],
        )
        assert result.exit_code == 0, result.output
        assert f"Wrote {csv_path}" in result.output
        assert "Alpha Movie" in csv_path.read_text(encoding="utf-8")
        assert script_path.read_text(encoding="utf-8").startswith("#!")
        assert "Sync plan: movies" in md_path.read_text(encoding="utf-8")

    def test_plan_bad_budget(self, runner: CliRunner, config_file: Path) -> None:
        result = runner.invoke(
            cli, ["--config", str(config_file), "plan", "--job", "movies", "--budget", "lots"]
        )
        assert result.exit_code == 1
        assert "Invalid size" in result.output

    def test_plan_unknown_job(self, runner: CliRunner, config_file: Path) -> None:
        result = runner.invoke(cli, ["--config", str(config_file), "plan", "--job", "music"])
        assert result.exit_code == 1
        assert "music" in result.output


class TestFindCommand:
    """Tests for 'offlinesync find'."""

    def test_find_exact_match(self, runner: CliRunner, config_file: Path) -> None:
        """The best match should be listed first, marked exact."""
        result = runner.invoke(
            cli, ["--config", str(config_file), "find", "alpha movie", "--job", "movies"]
        )
        assert result.exit_code == 0, result.output
        first = result.output.splitlines()[0]
        assert first.startswith("= 1.00  Alpha Movie")
        assert "Alpha Movie.mkv" in first

    def test_find_no_match(self, runner: CliRunner, config_file: Path) -> None:
        result = runner.invoke(
            cli, ["--config", str(config_file), "find", "zzzz qqqq", "--job", "movies"]
        )
        assert result.exit_code == 1
        assert "No match for 'zzzz qqqq'" in result.output


class TestTargetsCommand:
    """Tests for 'offlinesync targets'."""

    def test_lists_targets_and_jobs(
        self, runner: CliRunner, config_file: Path, tmp_path: Path
    ) -> None:
        result = runner.invoke(cli, ["--config", str(config_file), "targets"])
        assert result.exit_code == 0, result.output
        assert f"sd: {tmp_path / 'sd'} (static, present)" in result.output
        assert "movies [to_target] budget 700 B, on demand" in result.output

    def test_no_targets(self, runner: CliRunner, tmp_path: Path) -> None:
        path = tmp_path / "empty.json"
        path.write_text(json.dumps({"state_path": str(tmp_path / "s.db")}), encoding="utf-8")
        result = runner.invoke(cli, ["--config", str(path), "targets"])
        assert result.exit_code == 0, result.output
        assert "No targets configured." in result.output


class TestStatusCommand:
    """Tests for 'offlinesync status'."""

    def test_unreachable_service(self, runner: CliRunner) -> None:
        """Status should fail cleanly when no service answers."""
        with patch(
            "offlinesync.cli.status.httpx.get",
            side_effect=httpx.ConnectError("connection refused"),
        ):
            result = runner.invoke(cli, ["status", "--url", "http://127.0.0.1:9"])
        assert result.exit_code == 1
        assert "Cannot reach http://127.0.0.1:9" in result.output

    def test_renders_status_document(self, runner: CliRunner) -> None:
        document = {
            "state": "idle",
            "running": True,
            "active_target": None,
            "targets": [
                {
                    "target_id": "sd",
                    "state": "idle",
                    "enabled": False,
                    "target": {"state": "ready"},
                    "progress": None,
                    "last_result": {
                        "job": "movies", "success": True, "fetched": 2, "evicted": 0,
                    },
                }
            ],
            "breakers": {"directory:/lib": {"state": "open"}},
        }
        response = httpx.Response(
            200, json=document, request=httpx.Request("GET", "http://x/status")
        )
        with patch("offlinesync.cli.status.httpx.get", return_value=response):
            result = runner.invoke(cli, ["status"])
        assert result.exit_code == 0, result.output
        assert "State: idle (running)" in result.output
        assert "sd: ready, cycle idle, disabled" in result.output
        assert "last movies: ok, 2 fetched, 0 evicted" in result.output
        assert "Open circuits: directory:/lib" in result.output


class TestVersion:
    """Tests for --version."""

    def test_version(self, runner: CliRunner) -> None:
        result = runner.invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output
