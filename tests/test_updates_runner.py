"""Tests for updatecli invocation."""

from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
import yaml

from packer_images.types import UpdateAction
from packer_images.updates.runner import (
    UpdatecliError,
    build_values,
    compose_updatecli_command,
    run_updatecli,
    write_values_file,
)

SUBPROCESS_RUN = "packer_images.pipeline.runner.subprocess.run"


class TestValues:
    """Tests for the generated values file."""

    def test_build_values(self, settings):
        values = build_values(settings)["github"]
        assert values["owner"] == "jenkins-infra"
        assert values["repository"] == "packer-images"
        assert values["branch"] == "main"
        # updatecli resolves the token through requiredEnv
        assert values["token"] == "UPDATECLI_GITHUB_TOKEN"

    def test_write_values_file(self, settings, tmp_path):
        path = write_values_file(settings, tmp_path / "values" / "values.yaml")
        with path.open() as f:
            assert yaml.safe_load(f) == build_values(settings)


class TestRunUpdatecli:
    """Tests for run_updatecli."""

    def test_compose_command(self):
        cmd = compose_updatecli_command(
            "updatecli", UpdateAction.DIFF, Path("updatecli.d"), Path("values.yaml")
        )
        assert cmd == [
            "updatecli",
            "diff",
            "--config",
            "updatecli.d",
            "--values",
            "values.yaml",
        ]

    def test_diff_with_generated_values(self, settings):
        seen = {}

        def fake_run(cmd, **kwargs):
            values_path = Path(cmd[cmd.index("--values") + 1])
            seen["values"] = yaml.safe_load(values_path.read_text())
            seen["cmd"] = cmd
            seen["cwd"] = kwargs["cwd"]
            return MagicMock(returncode=0, stdout="")

        with patch(SUBPROCESS_RUN, side_effect=fake_run):
            result = run_updatecli(UpdateAction.DIFF, settings)

        assert result.success
        assert seen["cmd"][:4] == [
            "updatecli",
            "diff",
            "--config",
            str(settings.manifests_path),
        ]
        assert seen["values"]["github"]["owner"] == "jenkins-infra"
        assert seen["cwd"] == settings.repo_root

    def test_relative_values_file(self, settings):
        settings = settings.model_copy(update={"values_file": Path("updatecli/values.yaml")})
        with patch(SUBPROCESS_RUN, return_value=MagicMock(returncode=0, stdout="")) as mock_run:
            run_updatecli(UpdateAction.APPLY, settings)

        cmd = mock_run.call_args.args[0]
        assert cmd[1] == "apply"
        assert cmd[-1] == str(settings.repo_root / "updatecli" / "values.yaml")

    def test_failure(self, settings):
        with patch(SUBPROCESS_RUN, return_value=MagicMock(returncode=1, stdout="")):
            with pytest.raises(UpdatecliError) as exc_info:
                run_updatecli(UpdateAction.DIFF, settings)
        assert exc_info.value.exit_code == 1
        assert exc_info.value.code == "updatecli_error"
