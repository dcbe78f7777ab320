"""Pipeline service module.

This module provides the high-level pipeline API:
- run_pipeline(): side tasks, then the build matrix
- Locking to prevent concurrent runs of the primary branch
- Per-cell build, retry and publication
- Downgrading side-task failures so they never fail the run
"""

from __future__ import annotations

import fcntl
import logging
import os
import time
from collections.abc import Callable, Iterator, Sequence
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager, nullcontext
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

from packer_images.matrix.expand import expand_matrix
from packer_images.matrix.models import DEFAULT_MATRIX, MatrixCell, MatrixDefinition
from packer_images.matrix.params import derive_build_channel, derive_parameters
from packer_images.pipeline.cleanup import CleanupError, CloudProvider, run_cleanup
from packer_images.pipeline.nodes import NodeContext, create_default_node, select_node
from packer_images.pipeline.publish import PublishError, publish_image, should_publish
from packer_images.pipeline.runner import (
    BuildExecutionError,
    CommandError,
    Deadline,
    compose_init_command,
    run_build,
    run_command,
)
from packer_images.types import (
    BuildChannel,
    BuildContext,
    OperationResult,
    StageStatus,
    UpdateAction,
    worst_status,
)
from packer_images.updates.runner import UpdatecliError, run_updatecli

if TYPE_CHECKING:
    from packer_images.config import Settings

logger = logging.getLogger(__name__)

# Expected failures of side tasks; a failing plugin init reports these as
# FAILURE, any other error of init propagates
SIDE_TASK_ERRORS = (CommandError, CleanupError, UpdatecliError, OSError)

LOCK_POLL_INTERVAL = 0.1


class LockTimeoutError(Exception):
    """Raised when the pipeline lock cannot be acquired in time."""

    def __init__(self, message: str, code: str = "lock_timeout") -> None:
        super().__init__(message)
        self.code = code


@dataclass
class PipelineResult:
    """Result of a pipeline run.

    Attributes:
        status: Overall result.
        channel: Build channel of the run.
        context: CI context of the run.
        stages: Results of the side-task stage.
        cells: Results of the matrix cells.
    """

    status: StageStatus
    channel: BuildChannel
    context: BuildContext
    stages: list[OperationResult] = field(default_factory=list)
    cells: list[OperationResult] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-serializable representation."""
        return {
            "status": self.status.value,
            "channel": self.channel.value,
            "context": asdict(self.context),
            "stages": [_result_to_dict(r) for r in self.stages],
            "cells": [_result_to_dict(r) for r in self.cells],
        }


def _result_to_dict(result: OperationResult) -> dict[str, Any]:
    data = asdict(result)
    data["status"] = result.status.value
    return data


def lock_file_path(lock_dir: Path, branch: str) -> Path:
    """Return the lock file serializing the runs of a branch."""
    safe_branch = branch.replace(":", "_").replace("/", "_")[:64]
    return lock_dir / f"pipeline_{safe_branch}.lock"


def _read_holder(lock_file: Path) -> str:
    """Return the 'pid branch' line written by the last lock holder."""
    try:
        return lock_file.read_text().strip()
    except OSError:
        return ""


def _wait_for_lock(fd: int, timeout: float | None) -> bool:
    """Take an exclusive flock on fd, False if timeout elapses first."""
    if timeout is None:
        fcntl.flock(fd, fcntl.LOCK_EX)
        return True

    give_up_at = time.monotonic() + timeout
    while True:
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            return True
        except BlockingIOError:
            if time.monotonic() >= give_up_at:
                return False
            time.sleep(LOCK_POLL_INTERVAL)


@contextmanager
def pipeline_lock(
    lock_dir: Path,
    branch: str,
    timeout: float | None = None,
) -> Iterator[None]:
    """Serialize the pipeline runs of a branch.

    Runs of the primary branch apply cloud cleanups and updatecli changes,
    so only one of them may run at a time. The holder writes its pid and
    branch into the lock file; a run giving up on the lock reports them.

    Args:
        lock_dir: Directory for lock files.
        branch: Branch whose runs are serialized.
        timeout: Seconds to wait for a running pipeline (None = wait forever).

    Yields:
        None while this run holds the lock.

    Raises:
        LockTimeoutError: If another run still holds the lock after timeout.
    """
    lock_dir.mkdir(parents=True, exist_ok=True)
    lock_file = lock_file_path(lock_dir, branch)
    logger.info("Waiting for the pipeline lock of branch %s", branch)

    fd = os.open(str(lock_file), os.O_RDWR | os.O_CREAT, 0o600)
    try:
        if not _wait_for_lock(fd, timeout):
            holder = _read_holder(lock_file) or "unknown holder"
            raise LockTimeoutError(
                f"Another pipeline run of branch {branch} holds the lock "
                f"({holder}); gave up after {timeout:g}s"
            )
        os.ftruncate(fd, 0)
        os.write(fd, f"{os.getpid()} {branch}\n".encode())
        logger.info("Pipeline of branch %s locked by pid %d", branch, os.getpid())
        try:
            yield
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
            logger.debug("Pipeline lock of branch %s released", branch)
    finally:
        os.close(fd)


def initialize_node(
    node: NodeContext,
    settings: Settings,
    *,
    deadline: Deadline | None = None,
    log_path: Path | None = None,
) -> None:
    """Install the Packer plugins of the templates in a context.

    Raises:
        CommandError: If `packer init` fails.
    """
    result = run_command(
        compose_init_command(settings.packer_bin, node.template_dir),
        cwd=node.template_dir,
        env_override=node.env,
        deadline=deadline,
        log_path=log_path,
        dry_run=settings.dry_run,
    )
    if not result.success:
        raise CommandError(
            f"packer init failed on {node.name} with exit code {result.exit_code}",
            exit_code=result.exit_code,
            code="init_error",
        )


def _run_stage(
    name: str,
    action: Callable[[], None],
    *,
    fatal: bool,
    log_path: Path | None = None,
) -> OperationResult:
    """Run one side-task stage and turn its outcome into a result.

    Any failure of a non-fatal stage is reported as UNSTABLE. A fatal
    stage reports the expected command errors as FAILURE and lets anything
    else propagate.
    """
    try:
        action()
    except Exception as e:
        if fatal and not isinstance(e, SIDE_TASK_ERRORS):
            raise
        status = StageStatus.FAILURE if fatal else StageStatus.UNSTABLE
        if isinstance(e, SIDE_TASK_ERRORS):
            logger.error("Stage %s failed: %s", name, e)
        else:
            logger.exception("Stage %s failed unexpectedly", name)
        return OperationResult(
            name=name,
            status=status,
            message=str(e),
            code=getattr(e, "code", "stage_error"),
            log_path=str(log_path) if log_path else None,
        )
    return OperationResult(
        name=name,
        status=StageStatus.SUCCESS,
        log_path=str(log_path) if log_path else None,
    )


def run_side_tasks(
    settings: Settings,
    context: BuildContext,
    default_node: NodeContext,
    *,
    deadline: Deadline | None = None,
) -> list[OperationResult]:
    """Run plugin init, cloud cleanups and the update check in parallel.

    Only a plugin init failure is fatal.
    """
    channel = derive_build_channel(context, settings.primary_branch)
    on_primary = context.is_primary_branch(settings.primary_branch)
    log_dir = settings.log_dir

    def init() -> None:
        default_node.ensure_initialized(
            lambda node: initialize_node(
                node, settings, deadline=deadline, log_path=log_dir / "packer-init.log"
            )
        )

    def cleanup(provider: CloudProvider) -> Callable[[], None]:
        return lambda: run_cleanup(
            provider,
            settings,
            channel,
            apply=on_primary,
            deadline=deadline,
            log_path=log_dir / f"cleanup-{provider.value}.log",
        )

    def updates() -> None:
        log_path = log_dir / "updatecli.log"
        run_updatecli(UpdateAction.DIFF, settings, deadline=deadline, log_path=log_path)
        if on_primary:
            run_updatecli(
                UpdateAction.APPLY, settings, deadline=deadline, log_path=log_path
            )

    stages: list[tuple[str, Callable[[], None], bool, Path]] = [
        ("packer-init", init, True, log_dir / "packer-init.log"),
        ("cleanup-aws", cleanup(CloudProvider.AWS), False, log_dir / "cleanup-aws.log"),
        ("cleanup-azure", cleanup(CloudProvider.AZURE), False, log_dir / "cleanup-azure.log"),
        ("updatecli", updates, False, log_dir / "updatecli.log"),
    ]

    with ThreadPoolExecutor(max_workers=len(stages)) as executor:
        futures = [
            executor.submit(_run_stage, name, action, fatal=fatal, log_path=log_path)
            for name, action, fatal, log_path in stages
        ]
        return [future.result() for future in futures]


def build_cell(
    cell: MatrixCell,
    context: BuildContext,
    settings: Settings,
    default_node: NodeContext,
    *,
    deadline: Deadline | None = None,
) -> OperationResult:
    """Build, and when required publish, one matrix cell.

    Args:
        cell: Immutable cell snapshot.
        context: CI context of the run.
        settings: Application settings.
        default_node: Shared default context.
        deadline: Wall-clock bound of the run.

    Returns:
        OperationResult of the cell.
    """
    params = derive_parameters(
        cell, context, settings.primary_branch, settings.default_image_version
    )
    log_path = settings.log_dir / f"{cell.cell_id}.log"
    details: dict[str, object] = {"cell": cell.as_dict(), "env": params.to_packer_env()}

    try:
        node = select_node(
            settings.template_path,
            cell.compute_type,
            cell.cpu_architecture,
            default=default_node,
            settings=settings,
        )
    except OSError as e:
        logger.error("Cannot provision a node for %s: %s", cell.cell_id, e)
        return OperationResult(
            name=cell.cell_id,
            status=StageStatus.FAILURE,
            message=f"Cannot provision a node: {e}",
            code="node_error",
            details=details,
        )

    details["node"] = node.name
    attempts = 0
    try:
        if node.fresh:
            node.ensure_initialized(
                lambda n: initialize_node(n, settings, deadline=deadline, log_path=log_path)
            )
        build = run_build(params, node, settings, deadline=deadline, log_path=log_path)
        attempts = build.attempts
        if should_publish(cell, context):
            details["published_image"] = publish_image(
                cell, node, settings, deadline=deadline, log_path=log_path
            )
    except BuildExecutionError as e:
        logger.error("Cell %s failed: %s", cell.cell_id, e)
        return OperationResult(
            name=cell.cell_id,
            status=StageStatus.FAILURE,
            message=str(e),
            code=e.code,
            log_path=str(log_path),
            attempts=e.attempts,
            details=details,
        )
    except (CommandError, PublishError) as e:
        status = StageStatus.ABORTED if e.code == "timeout" else StageStatus.FAILURE
        logger.error("Cell %s failed: %s", cell.cell_id, e)
        return OperationResult(
            name=cell.cell_id,
            status=status,
            message=str(e),
            code=e.code,
            log_path=str(log_path),
            attempts=attempts,
            details=details,
        )
    finally:
        node.release()

    logger.info("Cell %s succeeded", cell.cell_id)
    return OperationResult(
        name=cell.cell_id,
        status=StageStatus.SUCCESS,
        message=build.command_result.command,
        log_path=str(log_path),
        attempts=attempts,
        details=details,
    )


def run_matrix(
    cells: Sequence[MatrixCell],
    context: BuildContext,
    settings: Settings,
    default_node: NodeContext,
    *,
    deadline: Deadline | None = None,
) -> list[OperationResult]:
    """Build the cells in parallel, results in cell order."""
    if not cells:
        return []
    workers = min(settings.max_parallel_cells, len(cells))
    with ThreadPoolExecutor(max_workers=workers) as executor:
        futures = [
            executor.submit(
                build_cell, cell, context, settings, default_node, deadline=deadline
            )
            for cell in cells
        ]
        return [future.result() for future in futures]


def run_pipeline(
    settings: Settings,
    context: BuildContext,
    matrix: MatrixDefinition = DEFAULT_MATRIX,
    *,
    cells: Sequence[MatrixCell] | None = None,
    side_tasks: bool = True,
) -> PipelineResult:
    """Run the whole pipeline.

    Args:
        settings: Application settings.
        context: CI context of the run.
        matrix: Matrix axes and exclusion rules.
        cells: Optional subset of cells to build (defaults to the matrix).
        side_tasks: Run cleanups and update check before the matrix.

    Returns:
        PipelineResult with stage and cell results.

    Raises:
        LockTimeoutError: If the primary-branch lock cannot be acquired.
    """
    channel = derive_build_channel(context, settings.primary_branch)
    selected = list(cells) if cells is not None else expand_matrix(matrix)
    logger.info(
        "Running pipeline on %s (channel %s, %d cells)",
        context.tag or context.branch or "unknown ref",
        channel.value,
        len(selected),
    )

    lock = (
        pipeline_lock(settings.lock_dir, settings.primary_branch, settings.lock_timeout)
        if context.is_primary_branch(settings.primary_branch)
        else nullcontext()
    )
    with lock:
        # The deadline starts once the run owns its resources
        deadline = Deadline(settings.pipeline_timeout)
        default_node = create_default_node(settings)

        if side_tasks:
            stages = run_side_tasks(settings, context, default_node, deadline=deadline)
        else:
            stages = [
                _run_stage(
                    "packer-init",
                    lambda: default_node.ensure_initialized(
                        lambda node: initialize_node(node, settings, deadline=deadline)
                    ),
                    fatal=True,
                )
            ]

        if any(stage.status.is_failing for stage in stages):
            logger.error("Side tasks failed, skipping the build matrix")
            skipped = [
                OperationResult(name=cell.cell_id, status=StageStatus.SKIPPED)
                for cell in selected
            ]
            return PipelineResult(
                status=worst_status(*(s.status for s in stages)),
                channel=channel,
                context=context,
                stages=stages,
                cells=skipped,
            )

        cell_results = run_matrix(selected, context, settings, default_node, deadline=deadline)

    status = worst_status(*(s.status for s in stages), *(c.status for c in cell_results))
    logger.info("Pipeline finished: %s", status.value)
    return PipelineResult(
        status=status,
        channel=channel,
        context=context,
        stages=stages,
        cells=cell_results,
    )


__all__ = [
    "LockTimeoutError",
    "PipelineResult",
    "build_cell",
    "initialize_node",
    "lock_file_path",
    "pipeline_lock",
    "run_matrix",
    "run_pipeline",
    "run_side_tasks",
]
