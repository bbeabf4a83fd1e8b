"""Tests for the runsvc command line interface."""

from __future__ import annotations

import json
from collections.abc import Iterator
from pathlib import Path
from typing import Any
from unittest.mock import patch

import pytest
import yaml
from backend_mock import InMemoryBackend
from click.testing import CliRunner

from runservice.cli import cli

SERVICE_KEY = "service/demo-project/europe-west1/api"

# Referenced as "test_cli:<name>" backends
CLI_BACKEND = InMemoryBackend()
FAILING_BACKEND = InMemoryBackend()
FAILING_BACKEND.inject_error(SERVICE_KEY, "create", message="permission denied")
UNREACHABLE_BACKEND = InMemoryBackend()


def _connection_reset(operation: str, key: str) -> None:
    if operation == "get":
        raise ConnectionResetError("connection reset by peer")


UNREACHABLE_BACKEND.on_call = _connection_reset


@pytest.fixture(autouse=True)
def no_logging_setup() -> Iterator[None]:
    """Keep the CLI from replacing pytest's log handlers."""
    with patch("runservice.cli.setup_logging"):
        yield


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture
def spec_file(tmp_path: Path, spec_data: dict[str, Any]) -> Path:
    spec_data["iamGrants"] = {"roles/run.invoker": ["allUsers"]}
    path = tmp_path / "service.yaml"
    path.write_text(yaml.safe_dump(spec_data))
    return path


class TestValidate:
    """Tests for runsvc validate."""

    def test_valid(self, runner: CliRunner, spec_file: Path) -> None:
        """Test a valid spec exits 0."""
        result = runner.invoke(cli, ["validate", str(spec_file)])

        assert result.exit_code == 0
        assert "is valid" in result.output

    def test_reports_every_violation(
        self, runner: CliRunner, tmp_path: Path, spec_data: dict[str, Any]
    ) -> None:
        """Test an invalid spec exits 1 listing all violation codes."""
        spec_data["scaling"] = {"minInstanceCount": 5, "maxInstanceCount": 2}
        spec_data["secretVolumes"] = [
            {"mountPath": "/etc/secrets/x", "secret": "a"},
            {"mountPath": "/etc/secrets/x", "secret": "b"},
        ]
        path = tmp_path / "service.yaml"
        path.write_text(yaml.safe_dump(spec_data))

        result = runner.invoke(cli, ["validate", str(path)])

        assert result.exit_code == 1
        assert "scaling_bounds" in result.output
        assert "duplicate_mount_path" in result.output


class TestGraph:
    """Tests for runsvc graph."""

    def test_json_graph(self, runner: CliRunner, spec_file: Path) -> None:
        """Test the graph is printed in dependency order."""
        result = runner.invoke(cli, ["graph", str(spec_file), "--json"])

        assert result.exit_code == 0
        nodes = json.loads(result.output)
        keys = [n["key"] for n in nodes]
        assert keys[0].startswith("service-account/")
        assert keys[1] == SERVICE_KEY
        assert nodes[2]["kind"] == "iam_binding"
        assert nodes[2]["dependsOn"] == [SERVICE_KEY]


class TestPlan:
    """Tests for runsvc plan."""

    def test_offline_plan(self, runner: CliRunner, spec_file: Path, tmp_path: Path) -> None:
        """Test planning against an empty state file."""
        result = runner.invoke(
            cli, ["plan", str(spec_file), "--state", str(tmp_path / "state.yaml")]
        )

        assert result.exit_code == 0
        assert "3 to create" in result.output

    def test_corrupt_state_is_fatal(
        self, runner: CliRunner, spec_file: Path, tmp_path: Path
    ) -> None:
        """Test an unreadable state file exits 2."""
        state = tmp_path / "state.yaml"
        state.write_text("version: 9\n")

        result = runner.invoke(cli, ["plan", str(spec_file), "--state", str(state)])

        assert result.exit_code == 2

    def test_unexpected_observe_error_exits_1(
        self, runner: CliRunner, spec_file: Path, tmp_path: Path
    ) -> None:
        """Test a backend.get crash is reported as a backend error, not a traceback."""
        result = runner.invoke(
            cli,
            [
                "plan",
                str(spec_file),
                "--state",
                str(tmp_path / "state.yaml"),
                "--backend",
                "test_cli:UNREACHABLE_BACKEND",
            ],
        )

        assert result.exit_code == 1
        assert isinstance(result.exception, SystemExit)


class TestApply:
    """Tests for runsvc apply."""

    def test_apply_then_no_changes(
        self, runner: CliRunner, spec_file: Path, tmp_path: Path
    ) -> None:
        """Test apply converges and a second plan shows no changes."""
        state = str(tmp_path / "state.yaml")
        args = ["apply", str(spec_file), "--state", state, "--backend", "test_cli:CLI_BACKEND"]

        first = runner.invoke(cli, [*args, "--backoff", "0"])
        second = runner.invoke(
            cli,
            ["plan", str(spec_file), "--state", state, "--backend", "test_cli:CLI_BACKEND", "--json"],
        )

        assert first.exit_code == 0, first.output
        assert "uri:" in first.output
        assert json.loads(second.output)["summary"]["no_op"] == 3

    def test_dry_run_writes_no_state(
        self, runner: CliRunner, spec_file: Path, tmp_path: Path
    ) -> None:
        """Test --dry-run leaves the state file untouched."""
        state = tmp_path / "state.yaml"
        result = runner.invoke(
            cli,
            [
                "apply",
                str(spec_file),
                "--state",
                str(state),
                "--backend",
                "backend_mock:InMemoryBackend",
                "--dry-run",
            ],
        )

        assert result.exit_code == 0
        assert "3 to create" in result.output
        assert not state.exists()

    def test_failed_node_exits_1(
        self, runner: CliRunner, spec_file: Path, tmp_path: Path
    ) -> None:
        """Test a failed node exits 1 and reports the error."""
        result = runner.invoke(
            cli,
            [
                "apply",
                str(spec_file),
                "--state",
                str(tmp_path / "state.yaml"),
                "--backend",
                "test_cli:FAILING_BACKEND",
                "--json",
            ],
        )

        assert result.exit_code == 1
        report = json.loads(result.output)
        assert report["success"] is False
        assert report["outcomes"][SERVICE_KEY]["error"] == "permission denied"
        assert SERVICE_KEY in report["retryKeys"]

    def test_invalid_settings_are_fatal(
        self, runner: CliRunner, spec_file: Path, tmp_path: Path
    ) -> None:
        """Test out-of-range settings exit 2."""
        result = runner.invoke(
            cli,
            [
                "apply",
                str(spec_file),
                "--state",
                str(tmp_path / "state.yaml"),
                "--backend",
                "backend_mock:InMemoryBackend",
                "--max-concurrency",
                "0",
            ],
        )

        assert result.exit_code == 2
