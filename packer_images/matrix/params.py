"""Derivation of per-cell build parameters.

Every parameter is a pure function of a matrix cell and of the CI context:
the OS type and version are split from the agent type, the build channel
and image version come from the branch/tag, the source revision from the
commit.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass

from packer_images.matrix.models import MatrixCell
from packer_images.types import BuildChannel, BuildContext

AGENT_TYPE_SEPARATOR = "-"


@dataclass(frozen=True)
class BuildParameters:
    """Flat string parameters consumed by Packer for one cell.

    Attributes:
        agent_os_type: OS family (e.g., 'ubuntu').
        agent_os_version: OS version (e.g., '20.04').
        architecture: CPU architecture.
        image_type: Packer builder type (the compute type).
        build_type: Build channel.
        image_version: Version stamped on the images.
        scm_ref: Source revision.
    """

    agent_os_type: str
    agent_os_version: str
    architecture: str
    image_type: str
    build_type: str
    image_version: str
    scm_ref: str

    @property
    def packer_only(self) -> str:
        """Value of the Packer `-only` filter selecting this cell's source."""
        return f"{self.image_type}.{self.agent_os_type}"

    def to_packer_env(self) -> dict[str, str]:
        """Return the PKR_VAR_* environment for the Packer invocation."""
        return {f"PKR_VAR_{key}": value for key, value in asdict(self).items()}


def split_agent_type(agent_type: str) -> tuple[str, str]:
    """Split an agent type into OS type and version.

    Example: 'ubuntu-20.04' -> ('ubuntu', '20.04').
    """
    os_type, _, os_version = agent_type.partition(AGENT_TYPE_SEPARATOR)
    return os_type, os_version


def derive_build_channel(context: BuildContext, primary_branch: str) -> BuildChannel:
    """Return the build channel of a run.

    Tags are releases (prod), the primary branch feeds staging, anything
    else (feature branches, pull requests) is dev.
    """
    if context.is_tagged:
        return BuildChannel.PROD
    if context.is_primary_branch(primary_branch):
        return BuildChannel.STAGING
    return BuildChannel.DEV


def derive_image_version(context: BuildContext, default_version: str) -> str:
    """Return the tag name on tagged runs, otherwise the default version."""
    return context.tag if context.tag else default_version


def derive_parameters(
    cell: MatrixCell,
    context: BuildContext,
    primary_branch: str = "main",
    default_image_version: str = "0.0.1",
) -> BuildParameters:
    """Derive the build parameters of one matrix cell.

    Args:
        cell: Matrix cell.
        context: CI context of the run.
        primary_branch: Name of the primary branch.
        default_image_version: Image version of untagged runs.

    Returns:
        BuildParameters for the cell.
    """
    os_type, os_version = split_agent_type(cell.agent_type)
    return BuildParameters(
        agent_os_type=os_type,
        agent_os_version=os_version,
        architecture=cell.cpu_architecture,
        image_type=cell.compute_type,
        build_type=derive_build_channel(context, primary_branch).value,
        image_version=derive_image_version(context, default_image_version),
        scm_ref=context.commit,
    )


__all__ = [
    "BuildParameters",
    "derive_build_channel",
    "derive_image_version",
    "derive_parameters",
    "split_agent_type",
]
