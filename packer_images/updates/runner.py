"""updatecli invocation.

Runs updatecli over the manifests directory, either as a dry-run `diff`
or as an `apply` that commits the bumps and opens pull requests.
"""

from __future__ import annotations

import logging
import tempfile
from pathlib import Path
from typing import TYPE_CHECKING, Any

import yaml

from packer_images.pipeline.runner import CommandResult, Deadline, run_command
from packer_images.types import UpdateAction

if TYPE_CHECKING:
    from packer_images.config import Settings

logger = logging.getLogger(__name__)


class UpdatecliError(Exception):
    """Raised when an updatecli run fails."""

    def __init__(
        self, message: str, exit_code: int | None = None, code: str = "updatecli_error"
    ) -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.code = code


def build_values(settings: Settings) -> dict[str, Any]:
    """Return the values referenced by the manifests as `.github.*`.

    `token` holds the name of the environment variable, resolved by
    updatecli through `requiredEnv`.
    """
    return {
        "github": {
            "user": settings.github_user,
            "email": settings.github_email,
            "owner": settings.github_owner,
            "repository": settings.github_repository,
            "token": settings.github_token_env,
            "username": settings.github_username,
            "branch": settings.github_branch,
        }
    }


def write_values_file(settings: Settings, path: Path) -> Path:
    """Write the generated values file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as f:
        yaml.safe_dump(build_values(settings), f, sort_keys=False)
    return path


def compose_updatecli_command(
    updatecli_bin: str,
    action: UpdateAction,
    config_path: Path,
    values_path: Path,
) -> list[str]:
    """Compose an updatecli command."""
    return [
        updatecli_bin,
        action.value,
        "--config",
        str(config_path),
        "--values",
        str(values_path),
    ]


def run_updatecli(
    action: UpdateAction,
    settings: Settings,
    *,
    config_path: Path | None = None,
    deadline: Deadline | None = None,
    log_path: Path | None = None,
) -> CommandResult:
    """Run updatecli over the manifests.

    Args:
        action: `diff` (dry-run) or `apply`.
        settings: Application settings.
        config_path: Manifest file or directory (defaults to the manifests dir).
        deadline: Wall-clock bound of the run.
        log_path: Optional log file.

    Returns:
        CommandResult of the run.

    Raises:
        UpdatecliError: If updatecli exits with a non-zero code.
        CommandError: If updatecli cannot start or the deadline is reached.
    """
    config = config_path or settings.manifests_path
    with tempfile.TemporaryDirectory(prefix="packer-images-updatecli-") as tmp:
        values = settings.values_file
        if values is None:
            values = write_values_file(settings, Path(tmp) / "values.yaml")
        elif not values.is_absolute():
            values = settings.repo_root / values

        result = run_command(
            compose_updatecli_command(settings.updatecli_bin, action, config, values),
            cwd=settings.repo_root,
            deadline=deadline,
            log_path=log_path,
            dry_run=settings.dry_run,
        )

    if not result.success:
        raise UpdatecliError(
            f"updatecli {action.value} failed with exit code {result.exit_code}",
            exit_code=result.exit_code,
        )
    logger.info("updatecli %s finished", action.value)
    return result


__all__ = [
    "UpdatecliError",
    "build_values",
    "compose_updatecli_command",
    "run_updatecli",
    "write_values_file",
]
