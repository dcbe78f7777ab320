"""Container image publication.

Only container images of tagged (release) runs are pushed to the registry.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from packer_images.pipeline.runner import Deadline, run_command

if TYPE_CHECKING:
    from pathlib import Path

    from packer_images.config import Settings
    from packer_images.matrix.models import MatrixCell
    from packer_images.pipeline.nodes import NodeContext
    from packer_images.types import BuildContext

logger = logging.getLogger(__name__)

PUBLISHED_COMPUTE_TYPE = "docker"


class PublishError(Exception):
    """Raised when pushing an image fails."""

    def __init__(self, message: str, code: str = "publish_error") -> None:
        super().__init__(message)
        self.code = code


def should_publish(cell: MatrixCell, context: BuildContext) -> bool:
    """True iff the cell builds a container image on a tagged run."""
    return cell.compute_type == PUBLISHED_COMPUTE_TYPE and context.is_tagged


def image_name(cell: MatrixCell, template: str) -> str:
    """Format the registry image name of a cell.

    Raises:
        PublishError: If the template uses a field the cell does not have.
    """
    try:
        return template.format(**cell.as_dict())
    except (KeyError, IndexError, ValueError) as e:
        raise PublishError(
            f"Invalid image name template {template!r}: {e!r}",
            code="config_error",
        ) from e


def compose_push_command(docker_bin: str, name: str) -> list[str]:
    """Compose the command pushing every tag of an image."""
    return [docker_bin, "image", "push", "--all-tags", name]


def publish_image(
    cell: MatrixCell,
    node: NodeContext,
    settings: Settings,
    *,
    deadline: Deadline | None = None,
    log_path: Path | None = None,
) -> str:
    """Push all tags of the cell's image.

    Returns:
        The pushed image name.

    Raises:
        PublishError: If the push fails or the image name template is
            invalid.
        CommandError: If docker cannot start or the deadline is reached.
    """
    name = image_name(cell, settings.image_name_template)
    result = run_command(
        compose_push_command(settings.docker_bin, name),
        cwd=node.template_dir,
        env_override=node.env,
        deadline=deadline,
        log_path=log_path,
        dry_run=settings.dry_run,
    )
    if not result.success:
        raise PublishError(f"Failed to push {name} (exit code {result.exit_code})")
    logger.info("Published %s", name)
    return name


__all__ = [
    "PUBLISHED_COMPUTE_TYPE",
    "PublishError",
    "compose_push_command",
    "image_name",
    "publish_image",
    "should_publish",
]
