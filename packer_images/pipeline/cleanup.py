"""Cloud resource cleanup side tasks.

Runs the external garbage-collection commands for stale AWS and Azure
resources left behind by previous builds.
"""

from __future__ import annotations

import logging
import shlex
from enum import Enum
from typing import TYPE_CHECKING

from packer_images.pipeline.runner import Deadline, run_command

if TYPE_CHECKING:
    from pathlib import Path

    from packer_images.config import Settings
    from packer_images.types import BuildChannel

logger = logging.getLogger(__name__)


class CloudProvider(str, Enum):
    """Cloud providers with a cleanup command."""

    AWS = "aws"
    AZURE = "azure"


class CleanupError(Exception):
    """Raised when a cleanup command fails."""

    def __init__(
        self, message: str, provider: CloudProvider, code: str = "cleanup_error"
    ) -> None:
        super().__init__(message)
        self.provider = provider
        self.code = code


def cleanup_command(provider: CloudProvider, settings: Settings) -> list[str]:
    """Return the configured cleanup command of a provider.

    Raises:
        CleanupError: If the command is empty or cannot be parsed.
    """
    raw = {
        CloudProvider.AWS: settings.cleanup_aws_command,
        CloudProvider.AZURE: settings.cleanup_azure_command,
    }[provider]
    try:
        cmd = shlex.split(raw)
    except ValueError as e:
        raise CleanupError(
            f"Invalid {provider.value} cleanup command {raw!r}: {e}",
            provider=provider,
            code="config_error",
        ) from e
    if not cmd:
        raise CleanupError(
            f"No {provider.value} cleanup command configured",
            provider=provider,
            code="config_error",
        )
    return cmd


def run_cleanup(
    provider: CloudProvider,
    settings: Settings,
    channel: BuildChannel,
    *,
    apply: bool = True,
    deadline: Deadline | None = None,
    log_path: Path | None = None,
) -> None:
    """Run the cleanup command of one provider.

    The build channel is exported so the command only collects resources
    of the channel this run builds; with `apply` false the command runs
    with DRYRUN=true and only reports what it would delete.

    Raises:
        CleanupError: If the command exits with a non-zero code or is
            misconfigured.
        CommandError: If the command cannot start or the deadline is reached.
    """
    result = run_command(
        cleanup_command(provider, settings),
        cwd=settings.repo_root,
        env_override={
            "PKR_VAR_build_type": channel.value,
            "DRYRUN": "false" if apply else "true",
        },
        deadline=deadline,
        log_path=log_path,
        dry_run=settings.dry_run,
    )
    if not result.success:
        raise CleanupError(
            f"{provider.value} cleanup failed with exit code {result.exit_code}",
            provider=provider,
        )
    logger.info("%s cleanup finished", provider.value)


__all__ = ["CleanupError", "CloudProvider", "cleanup_command", "run_cleanup"]
