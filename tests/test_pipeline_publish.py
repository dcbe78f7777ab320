"""Tests for image publication and cloud cleanup."""

from unittest.mock import MagicMock, patch

import pytest

from packer_images.matrix.expand import expand_matrix
from packer_images.matrix.models import MatrixCell
from packer_images.pipeline.cleanup import (
    CleanupError,
    CloudProvider,
    cleanup_command,
    run_cleanup,
)
from packer_images.pipeline.nodes import NodeContext
from packer_images.pipeline.publish import (
    PublishError,
    compose_push_command,
    image_name,
    publish_image,
    should_publish,
)
from packer_images.types import BuildChannel, BuildContext

SUBPROCESS_RUN = "packer_images.pipeline.runner.subprocess.run"

TAGGED = BuildContext(branch="1.4.0", tag="1.4.0")
UNTAGGED = BuildContext(branch="main")


class TestShouldPublish:
    """Tests for the publication gate."""

    @pytest.mark.parametrize("context", [TAGGED, UNTAGGED])
    def test_publish_iff_docker_and_tagged(self, context):
        for cell in expand_matrix():
            expected = cell.compute_type == "docker" and context.is_tagged
            assert should_publish(cell, context) is expected

    def test_never_publish_vm_images(self):
        assert not should_publish(MatrixCell("amd64", "ubuntu-20.04", "amazon-ebs"), TAGGED)


class TestPublishImage:
    """Tests for publish_image."""

    def test_image_name(self):
        cell = MatrixCell("arm64", "ubuntu-20.04", "docker")
        assert (
            image_name(cell, "jenkinsciinfra/jenkins-agent-{agent_type}")
            == "jenkinsciinfra/jenkins-agent-ubuntu-20.04"
        )

    def test_image_name_unknown_field(self):
        cell = MatrixCell("arm64", "ubuntu-20.04", "docker")
        with pytest.raises(PublishError) as exc_info:
            image_name(cell, "jenkinsciinfra/{flavor}")
        assert exc_info.value.code == "config_error"
        assert "flavor" in str(exc_info.value)

    def test_image_name_positional_field(self):
        cell = MatrixCell("arm64", "ubuntu-20.04", "docker")
        with pytest.raises(PublishError) as exc_info:
            image_name(cell, "jenkinsciinfra/{0}")
        assert exc_info.value.code == "config_error"

    def test_push_command(self):
        assert compose_push_command("docker", "org/image") == [
            "docker",
            "image",
            "push",
            "--all-tags",
            "org/image",
        ]

    def test_publish(self, settings, template_dir):
        node = NodeContext(name="default", template_dir=template_dir)
        cell = MatrixCell("amd64", "ubuntu-20.04", "docker")
        with patch(SUBPROCESS_RUN, return_value=MagicMock(returncode=0, stdout="")) as mock_run:
            name = publish_image(cell, node, settings)

        assert name == "jenkinsciinfra/jenkins-agent-ubuntu-20.04"
        assert mock_run.call_args.args[0][-1] == name

    def test_publish_failure(self, settings, template_dir):
        node = NodeContext(name="default", template_dir=template_dir)
        cell = MatrixCell("amd64", "ubuntu-20.04", "docker")
        with patch(SUBPROCESS_RUN, return_value=MagicMock(returncode=1, stdout="denied")):
            with pytest.raises(PublishError) as exc_info:
                publish_image(cell, node, settings)
        assert exc_info.value.code == "publish_error"


class TestCleanup:
    """Tests for the cloud cleanup commands."""

    def test_cleanup_command_is_split(self, settings):
        settings = settings.model_copy(
            update={"cleanup_azure_command": "./cleanup/azure.sh --verbose"}
        )
        assert cleanup_command(CloudProvider.AZURE, settings) == [
            "./cleanup/azure.sh",
            "--verbose",
        ]

    def test_apply_exports_channel(self, settings):
        with patch(SUBPROCESS_RUN, return_value=MagicMock(returncode=0, stdout="")) as mock_run:
            run_cleanup(CloudProvider.AWS, settings, BuildChannel.STAGING, apply=True)

        kwargs = mock_run.call_args.kwargs
        assert mock_run.call_args.args[0] == ["./cleanup/aws.sh"]
        assert kwargs["cwd"] == settings.repo_root
        assert kwargs["env"]["PKR_VAR_build_type"] == "staging"
        assert kwargs["env"]["DRYRUN"] == "false"

    def test_report_only(self, settings):
        with patch(SUBPROCESS_RUN, return_value=MagicMock(returncode=0, stdout="")) as mock_run:
            run_cleanup(CloudProvider.AZURE, settings, BuildChannel.DEV, apply=False)
        assert mock_run.call_args.kwargs["env"]["DRYRUN"] == "true"

    def test_failure(self, settings):
        with patch(SUBPROCESS_RUN, return_value=MagicMock(returncode=2, stdout="")):
            with pytest.raises(CleanupError) as exc_info:
                run_cleanup(CloudProvider.AWS, settings, BuildChannel.DEV)
        assert exc_info.value.provider == CloudProvider.AWS
        assert exc_info.value.code == "cleanup_error"

    @pytest.mark.parametrize("command", ["", "   "])
    def test_empty_command(self, settings, command):
        settings = settings.model_copy(update={"cleanup_aws_command": command})
        with patch(SUBPROCESS_RUN) as mock_run:
            with pytest.raises(CleanupError) as exc_info:
                run_cleanup(CloudProvider.AWS, settings, BuildChannel.DEV)
        assert exc_info.value.code == "config_error"
        assert exc_info.value.provider == CloudProvider.AWS
        mock_run.assert_not_called()

    def test_unterminated_quote(self, settings):
        settings = settings.model_copy(
            update={"cleanup_azure_command": './cleanup/azure.sh "unterminated'}
        )
        with pytest.raises(CleanupError) as exc_info:
            cleanup_command(CloudProvider.AZURE, settings)
        assert exc_info.value.code == "config_error"
        assert "azure" in str(exc_info.value)
