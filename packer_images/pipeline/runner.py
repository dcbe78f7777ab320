"""Runner for external commands and Packer builds.

This module handles:
- Executing external commands with subprocess
- Capturing stdout/stderr to log files
- Enforcing the pipeline wall-clock deadline
- Composing Packer `init` and `build` commands
- Retrying builds that failed on infrastructure flakiness
"""

from __future__ import annotations

import logging
import os
import re
import shlex
import subprocess
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from packer_images.config import Settings
    from packer_images.matrix.params import BuildParameters
    from packer_images.pipeline.nodes import NodeContext

logger = logging.getLogger(__name__)


class CommandError(Exception):
    """Raised when an external command cannot run to completion."""

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        code: str = "command_error",
    ) -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.code = code


class BuildExecutionError(Exception):
    """Raised when a Packer build fails."""

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        attempts: int = 0,
        log_path: Path | None = None,
        code: str = "build_error",
    ) -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.attempts = attempts
        self.log_path = log_path
        self.code = code


class Deadline:
    """Fixed wall-clock bound shared by every step of a run."""

    def __init__(self, seconds: float | None) -> None:
        self._expires_at = None if seconds is None else time.monotonic() + seconds

    def remaining(self) -> float | None:
        """Return the seconds left, None when unbounded.

        Raises:
            CommandError: If the deadline has passed.
        """
        if self._expires_at is None:
            return None
        left = self._expires_at - time.monotonic()
        if left <= 0:
            raise CommandError("Pipeline timeout reached", exit_code=-1, code="timeout")
        return left

    @property
    def expired(self) -> bool:
        """True once the deadline has passed."""
        return self._expires_at is not None and time.monotonic() >= self._expires_at


@dataclass
class CommandResult:
    """Result of an external command.

    Attributes:
        command: The command that was executed.
        exit_code: Process exit code (negative when killed by a signal).
        output: Combined stdout/stderr.
        started_at: Start time.
        finished_at: Finish time.
        log_path: Log file, when output was written to one.
    """

    command: str
    exit_code: int
    output: str
    started_at: datetime
    finished_at: datetime
    log_path: Path | None = None

    @property
    def success(self) -> bool:
        return self.exit_code == 0


@dataclass
class BuildResult:
    """Result of a build step: the successful attempt and how many ran."""

    command_result: CommandResult
    attempts: int


def run_command(
    cmd: Sequence[str],
    *,
    cwd: Path | None = None,
    env_override: Mapping[str, str] | None = None,
    deadline: Deadline | None = None,
    log_path: Path | None = None,
    dry_run: bool = False,
) -> CommandResult:
    """Execute an external command.

    Args:
        cmd: Command as list of strings.
        cwd: Working directory.
        env_override: Environment variables added to the current environment.
        deadline: Wall-clock bound; the remaining time is the process timeout.
        log_path: Optional file receiving the command output.
        dry_run: Log the command and return success without executing it.

    Returns:
        CommandResult with the exit code and output.

    Raises:
        CommandError: If the command cannot start or times out.
    """
    cmd_str = shlex.join(cmd)
    started_at = datetime.now(timezone.utc)

    if dry_run:
        logger.info("[dry-run] %s", cmd_str)
        return CommandResult(
            command=cmd_str,
            exit_code=0,
            output="",
            started_at=started_at,
            finished_at=started_at,
        )

    timeout = deadline.remaining() if deadline else None
    logger.info("Executing: %s", cmd_str)

    env: dict[str, str] | None = None
    if env_override:
        env = dict(os.environ)
        env.update(env_override)

    try:
        result = subprocess.run(
            list(cmd),
            cwd=cwd,
            env=env,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            timeout=timeout,
            check=False,
        )
    except subprocess.TimeoutExpired as e:
        message = f"Command timed out after {timeout:.0f} seconds: {cmd_str}"
        logger.error(message)
        if log_path:
            _write_log(log_path, cmd_str, cwd, started_at, _decode(e.output), None)
        raise CommandError(message, exit_code=-1, code="timeout") from e
    except OSError as e:
        message = f"Failed to execute {cmd_str}: {e}"
        logger.error(message)
        raise CommandError(message, exit_code=None, code="execution_error") from e

    finished_at = datetime.now(timezone.utc)
    output = result.stdout or ""
    if log_path:
        _write_log(log_path, cmd_str, cwd, started_at, output, result.returncode)

    if result.returncode != 0:
        logger.warning("Command exited with %d: %s", result.returncode, cmd_str)

    return CommandResult(
        command=cmd_str,
        exit_code=result.returncode,
        output=output,
        started_at=started_at,
        finished_at=finished_at,
        log_path=log_path,
    )


def _decode(output: str | bytes | None) -> str:
    if output is None:
        return ""
    if isinstance(output, bytes):
        return output.decode("utf-8", errors="replace")
    return output


def _write_log(
    log_path: Path,
    cmd_str: str,
    cwd: Path | None,
    started_at: datetime,
    output: str,
    exit_code: int | None,
) -> None:
    """Append one command execution to a log file."""
    finished_at = datetime.now(timezone.utc)
    log_path.parent.mkdir(parents=True, exist_ok=True)
    with log_path.open("a", encoding="utf-8") as log_file:
        log_file.write(f"# Command: {cmd_str}\n")
        log_file.write(f"# Started: {started_at.isoformat()}\n")
        log_file.write(f"# CWD: {cwd or Path.cwd()}\n")
        log_file.write("# " + "=" * 70 + "\n\n")
        log_file.write(output)
        if exit_code is None:
            log_file.write("\n# TIMEOUT\n")
        else:
            log_file.write(f"\n# Finished: {finished_at.isoformat()}\n")
            log_file.write(f"# Exit code: {exit_code}\n")
            duration = (finished_at - started_at).total_seconds()
            log_file.write(f"# Duration: {duration:.1f}s\n")
        log_file.write("\n")


def compose_init_command(packer_bin: str, template_dir: Path) -> list[str]:
    """Compose the `packer init` command installing the template plugins."""
    return [packer_bin, "init", str(template_dir)]


def compose_build_command(
    packer_bin: str,
    params: BuildParameters,
    template_dir: Path,
) -> list[str]:
    """Compose the `packer build` command for one matrix cell.

    Args:
        packer_bin: Packer executable.
        params: Derived build parameters.
        template_dir: Packer template directory.

    Returns:
        Command as list of strings suitable for subprocess.
    """
    return [
        packer_bin,
        "build",
        "-timestamp-ui",
        "-force",
        f"-only={params.packer_only}",
        str(template_dir),
    ]


def is_retryable_failure(result: CommandResult, patterns: Sequence[str]) -> bool:
    """Decide whether a failed build is worth another attempt.

    Only infrastructure flakiness qualifies: the process was killed by a
    signal, or its output matches one of the retryable patterns.
    """
    if result.success:
        return False
    if result.exit_code < 0:
        return True
    return any(re.search(pattern, result.output, re.IGNORECASE) for pattern in patterns)


def run_build(
    params: BuildParameters,
    node: NodeContext,
    settings: Settings,
    *,
    deadline: Deadline | None = None,
    log_path: Path | None = None,
) -> BuildResult:
    """Run the Packer build of one cell, retrying on flaky failures.

    Args:
        params: Derived build parameters.
        node: Execution context of the cell.
        settings: Application settings.
        deadline: Wall-clock bound of the run.
        log_path: Build log file.

    Returns:
        BuildResult of the successful attempt.

    Raises:
        BuildExecutionError: If the build fails on every allowed attempt or
            fails for a non-retryable reason.
        CommandError: If Packer cannot start or the deadline is reached.
    """
    cmd = compose_build_command(settings.packer_bin, params, node.template_dir)
    env = {**node.env, **params.to_packer_env()}

    attempt = 0
    while True:
        attempt += 1
        logger.info(
            "Building %s on %s (attempt %d/%d)",
            params.packer_only,
            node.name,
            attempt,
            settings.build_attempts,
        )
        result = run_command(
            cmd,
            cwd=node.template_dir,
            env_override=env,
            deadline=deadline,
            log_path=log_path,
            dry_run=settings.dry_run,
        )
        if result.success:
            return BuildResult(command_result=result, attempts=attempt)

        retryable = is_retryable_failure(result, settings.retryable_patterns)
        if retryable and attempt < settings.build_attempts:
            logger.warning(
                "Build of %s failed with a retryable error (exit %d), retrying",
                params.packer_only,
                result.exit_code,
            )
            continue

        reason = "retryable error, attempts exhausted" if retryable else "error"
        raise BuildExecutionError(
            f"Build of {params.packer_only} failed with exit code "
            f"{result.exit_code} ({reason})",
            exit_code=result.exit_code,
            attempts=attempt,
            log_path=log_path,
        )


__all__ = [
    "BuildExecutionError",
    "BuildResult",
    "CommandError",
    "CommandResult",
    "Deadline",
    "compose_build_command",
    "compose_init_command",
    "is_retryable_failure",
    "run_build",
    "run_command",
]
