"""Smoke tests for the CLI.

These tests verify CLI functionality without requiring network access
or external tools: HTTP is mocked and pipeline runs are dry runs.
"""

import json
import subprocess
import sys
from pathlib import Path

import httpx
import pytest
import respx
from typer.testing import CliRunner

from packer_images import __version__
from packer_images.cli import app
from packer_images.updates.fetch import build_packages_index_url

runner = CliRunner()

REPO_ROOT = Path(__file__).resolve().parent.parent


@pytest.fixture
def isolated_env(monkeypatch, tmp_path, template_dir):
    """Point the settings at a temporary repository and CI context."""
    monkeypatch.setenv("PKR_IMG_REPO_ROOT", str(template_dir))
    monkeypatch.setenv("PKR_IMG_LOG_DIR", str(tmp_path / "logs"))
    monkeypatch.setenv("PKR_IMG_LOCK_DIR", str(tmp_path / "locks"))
    monkeypatch.setenv("BRANCH_NAME", "feature")
    monkeypatch.delenv("TAG_NAME", raising=False)
    monkeypatch.delenv("CHANGE_ID", raising=False)


class TestCLIHelp:
    """Test CLI help and version commands."""

    def test_help_returns_zero(self) -> None:
        """CLI --help should return exit code 0."""
        result = runner.invoke(app, ["--help"])
        assert result.exit_code == 0
        assert "Packer Images" in result.stdout

    def test_version_flag(self) -> None:
        """CLI --version should print version and exit 0."""
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.stdout

    def test_short_version_flag(self) -> None:
        """CLI -V should print version and exit 0."""
        result = runner.invoke(app, ["-V"])
        assert result.exit_code == 0
        assert __version__ in result.stdout

    def test_no_args_shows_help(self) -> None:
        """CLI with no args should show help."""
        result = runner.invoke(app, [])
        assert "Usage:" in result.stdout


class TestCLIConfig:
    """Test CLI config command."""

    def test_config_command(self) -> None:
        """CLI config should show all sections."""
        result = runner.invoke(app, ["config"])
        assert result.exit_code == 0
        assert "Paths:" in result.stdout
        assert "Build:" in result.stdout
        assert "Timeouts (seconds):" in result.stdout
        assert "Primary branch" in result.stdout

    def test_config_json(self) -> None:
        """CLI config --json should output all config fields."""
        result = runner.invoke(app, ["config", "--json"])
        assert result.exit_code == 0
        config_data = json.loads(result.stdout)
        for key in ["repo_root", "packer_bin", "primary_branch", "build_attempts", "pipeline_timeout"]:
            assert key in config_data, f"Missing key: {key}"


class TestCLISubcommands:
    """Test that subcommand groups exist."""

    @pytest.mark.parametrize("group", ["matrix", "pipeline", "updates", "build", "cleanup"])
    def test_group_help(self, group) -> None:
        result = runner.invoke(app, [group, "--help"])
        assert result.exit_code == 0
        assert "Usage:" in result.stdout


class TestCLIMatrix:
    """Test matrix commands."""

    def test_matrix_list_json(self, isolated_env) -> None:
        result = runner.invoke(app, ["matrix", "list", "--json"])
        assert result.exit_code == 0
        rows = json.loads(result.stdout)
        assert len(rows) == 8
        assert not any(row["excluded"] for row in rows)
        assert rows[0]["env"]["PKR_VAR_build_type"] == "dev"

    def test_matrix_list_all(self, isolated_env) -> None:
        result = runner.invoke(app, ["matrix", "list", "--all", "--json"])
        rows = json.loads(result.stdout)
        assert len(rows) == 18
        excluded = [row for row in rows if row["excluded"]]
        assert len(excluded) == 10
        assert all(row["reason"] for row in excluded)

    def test_matrix_list_tagged(self, isolated_env) -> None:
        result = runner.invoke(app, ["matrix", "list", "--tag", "1.2.0", "--json"])
        env = json.loads(result.stdout)[0]["env"]
        assert env["PKR_VAR_build_type"] == "prod"
        assert env["PKR_VAR_image_version"] == "1.2.0"

    def test_matrix_env(self, isolated_env) -> None:
        result = runner.invoke(
            app, ["matrix", "env", "arm64", "ubuntu-20.04", "docker", "--commit", "abc"]
        )
        assert result.exit_code == 0
        assert "PKR_VAR_architecture=arm64" in result.stdout
        assert "PKR_VAR_scm_ref=abc" in result.stdout

    def test_matrix_env_excluded(self, isolated_env) -> None:
        result = runner.invoke(app, ["matrix", "env", "arm64", "ubuntu-20.04", "azure-arm"])
        assert result.exit_code == 1
        assert "excluded" in result.stdout


class TestCLIBuild:
    """Test build and pipeline commands in dry-run mode."""

    def test_build_dry_run(self, isolated_env) -> None:
        result = runner.invoke(
            app, ["build", "amd64", "ubuntu-20.04", "amazon-ebs", "--dry-run", "--json"]
        )
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["status"] == "SUCCESS"
        assert [c["name"] for c in data["cells"]] == ["amd64_ubuntu-20.04_amazon-ebs"]

    def test_build_excluded_cell(self, isolated_env) -> None:
        result = runner.invoke(app, ["build", "amd64", "windows-2022", "docker", "--dry-run"])
        assert result.exit_code == 1

    def test_pipeline_run_dry_run(self, isolated_env) -> None:
        result = runner.invoke(app, ["pipeline", "run", "--dry-run", "--json"])
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["channel"] == "dev"
        assert len(data["stages"]) == 4
        assert len(data["cells"]) == 8

    def test_cleanup_invalid_provider(self, isolated_env) -> None:
        result = runner.invoke(app, ["cleanup", "gcp"])
        assert result.exit_code == 1
        assert "Invalid provider" in result.stdout

    def test_cleanup_dry_run(self, isolated_env) -> None:
        result = runner.invoke(app, ["cleanup", "aws", "--dry-run"])
        assert result.exit_code == 0
        assert "aws cleanup finished (dev)" in result.stdout


class TestCLIUpdates:
    """Test updates commands."""

    def test_validate_repository_manifests(self, monkeypatch) -> None:
        monkeypatch.setenv("PKR_IMG_REPO_ROOT", str(REPO_ROOT))
        result = runner.invoke(app, ["updates", "validate", "--json"])
        assert result.exit_code == 0
        results = json.loads(result.stdout)
        assert len(results) == 2
        assert all(r["success"] for r in results)

    def test_validate_missing_path(self, tmp_path) -> None:
        result = runner.invoke(app, ["updates", "validate", str(tmp_path / "nope")])
        assert result.exit_code == 1

    def test_validate_invalid_manifest(self, tmp_path) -> None:
        path = tmp_path / "bad.yaml"
        path.write_text("name: incomplete\n")
        result = runner.invoke(app, ["updates", "validate", str(path), "--skip-targets"])
        assert result.exit_code == 1
        assert "Invalid manifest" in result.stdout

    def test_list(self, monkeypatch) -> None:
        monkeypatch.setenv("PKR_IMG_REPO_ROOT", str(REPO_ROOT))
        result = runner.invoke(app, ["updates", "list", "--json"])
        assert result.exit_code == 0
        keys = [task["target_key"] for task in json.loads(result.stdout)]
        assert keys == ["docker_version", "jdk8_version"]

    @respx.mock
    def test_fetch_docker_ce(self) -> None:
        respx.get(build_packages_index_url()).mock(
            return_value=httpx.Response(
                200, text="Package: docker-ce\nVersion: 5:20.10.18~3-0~ubuntu-focal\n"
            )
        )
        result = runner.invoke(app, ["updates", "fetch-docker-ce"])
        assert result.exit_code == 0
        assert result.stdout.strip() == "5:20.10.18~3-0~ubuntu-focal"

    @respx.mock
    def test_check_jdk_available(self) -> None:
        respx.head(url__startswith="https://github.com/adoptium/").mock(
            return_value=httpx.Response(200)
        )
        result = runner.invoke(app, ["updates", "check-jdk", "8u345-b01"])
        assert result.exit_code == 0
        assert "is available" in result.stdout

    @respx.mock
    def test_check_jdk_missing(self) -> None:
        respx.head(url__startswith="https://github.com/adoptium/").mock(
            return_value=httpx.Response(404)
        )
        result = runner.invoke(app, ["updates", "check-jdk", "8u345-b01"])
        assert result.exit_code == 1

    def test_check_jdk_invalid_version(self) -> None:
        result = runner.invoke(app, ["updates", "check-jdk", "latest"])
        assert result.exit_code == 1
        assert "Unrecognized JDK version" in result.stdout


class TestModuleEntryPoint:
    """Test the module entry point used by the update manifests."""

    def test_module_help(self) -> None:
        """python -m packer_images.cli --help should work."""
        result = subprocess.run(
            [sys.executable, "-m", "packer_images.cli", "--help"],
            capture_output=True,
            text=True,
        )
        assert result.returncode == 0
        assert "Packer Images" in result.stdout
