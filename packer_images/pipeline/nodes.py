"""Node selection for matrix cells.

Container images for arm64 are built natively: those cells get their own
execution context (a fresh copy of the templates, a private Packer plugin
directory, the arm64 Docker daemon) which must run `packer init` once
before its first build. Every other cell reuses the default context,
initialized once by the pipeline.
"""

from __future__ import annotations

import logging
import shutil
import tempfile
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from packer_images.config import Settings

logger = logging.getLogger(__name__)

DEFAULT_NODE = "default"
NATIVE_ARM64_NODE = "linux-arm64-docker"

# Repository content a Packer build never reads
TEMPLATE_COPY_IGNORE = shutil.ignore_patterns(
    ".git", ".venv", "__pycache__", "packer_cache", "*.log"
)


@dataclass
class NodeContext:
    """Execution context of build steps.

    Attributes:
        name: Context label.
        template_dir: Packer template directory seen by this context.
        env: Environment variables of every command run in this context.
        fresh: True when the context was provisioned for a single cell.
        workdir: Private working directory of fresh contexts.
    """

    name: str
    template_dir: Path
    env: dict[str, str] = field(default_factory=dict)
    fresh: bool = False
    workdir: Path | None = None
    _initialized: bool = field(default=False, repr=False, compare=False)
    _lock: threading.Lock = field(
        default_factory=threading.Lock, repr=False, compare=False
    )

    @property
    def initialized(self) -> bool:
        return self._initialized

    def ensure_initialized(self, init: Callable[[NodeContext], None]) -> bool:
        """Run the plugin initialization once for this context.

        Args:
            init: Callable performing the initialization.

        Returns:
            True if this call ran the initialization.
        """
        with self._lock:
            if self._initialized:
                return False
            init(self)
            self._initialized = True
            return True

    def release(self) -> None:
        """Remove the private working directory of a fresh context."""
        if self.fresh and self.workdir is not None:
            shutil.rmtree(self.workdir, ignore_errors=True)
            logger.debug("Released %s context at %s", self.name, self.workdir)


def requires_native_node(compute_type: str, cpu_architecture: str) -> bool:
    """True when the cell needs the native arm64 container context."""
    return cpu_architecture == "arm64" and compute_type == "docker"


def create_default_node(settings: Settings) -> NodeContext:
    """Return the shared default context of a run."""
    return NodeContext(name=DEFAULT_NODE, template_dir=settings.template_path)


def select_node(
    template: Path,
    compute_type: str,
    cpu_architecture: str,
    *,
    default: NodeContext,
    settings: Settings,
    work_root: Path | None = None,
) -> NodeContext:
    """Choose the execution context of a matrix cell.

    Args:
        template: Packer template directory.
        compute_type: Compute type of the cell.
        cpu_architecture: CPU architecture of the cell.
        default: Shared default context.
        settings: Application settings.
        work_root: Parent directory of fresh working directories.

    Returns:
        The default context, or a fresh native arm64 context.

    Raises:
        OSError: If the templates cannot be copied; the working directory
            is removed first.
    """
    if not requires_native_node(compute_type, cpu_architecture):
        return default

    workdir = Path(
        tempfile.mkdtemp(prefix=f"packer-images-{cpu_architecture}-", dir=work_root)
    )
    template_copy = workdir / "templates"
    try:
        shutil.copytree(template, template_copy, ignore=TEMPLATE_COPY_IGNORE)
    except OSError:
        shutil.rmtree(workdir, ignore_errors=True)
        raise

    env = {"PACKER_PLUGIN_PATH": str(workdir / "plugins")}
    if settings.arm64_docker_host:
        env["DOCKER_HOST"] = settings.arm64_docker_host

    logger.info("Provisioned %s context in %s", NATIVE_ARM64_NODE, workdir)
    return NodeContext(
        name=NATIVE_ARM64_NODE,
        template_dir=template_copy,
        env=env,
        fresh=True,
        workdir=workdir,
    )


__all__ = [
    "DEFAULT_NODE",
    "NATIVE_ARM64_NODE",
    "NodeContext",
    "create_default_node",
    "requires_native_node",
    "select_node",
]
