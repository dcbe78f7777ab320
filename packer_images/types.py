"""Shared type definitions for packer_images.

This module contains dataclasses, enums, and type aliases shared across
subpackages to avoid circular imports.
"""

import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum


class StageStatus(str, Enum):
    """Result of a pipeline stage or of a whole run."""

    SUCCESS = "SUCCESS"
    UNSTABLE = "UNSTABLE"
    FAILURE = "FAILURE"
    ABORTED = "ABORTED"
    SKIPPED = "SKIPPED"

    @property
    def severity(self) -> int:
        """Rank used to combine results; higher is worse."""
        return _SEVERITY[self]

    @property
    def is_failing(self) -> bool:
        """True when this result fails the run."""
        return self in (StageStatus.FAILURE, StageStatus.ABORTED)


_SEVERITY = {
    StageStatus.SKIPPED: 0,
    StageStatus.SUCCESS: 0,
    StageStatus.UNSTABLE: 1,
    StageStatus.FAILURE: 2,
    StageStatus.ABORTED: 3,
}


def worst_status(*statuses: StageStatus) -> StageStatus:
    """Combine results, keeping the worst one (SUCCESS when empty)."""
    result = StageStatus.SUCCESS
    for status in statuses:
        if status.severity > result.severity:
            result = status
    return result


class BuildChannel(str, Enum):
    """Deployment tier of the produced images."""

    PROD = "prod"
    STAGING = "staging"
    DEV = "dev"


class UpdateAction(str, Enum):
    """updatecli subcommand."""

    DIFF = "diff"
    APPLY = "apply"


@dataclass(frozen=True)
class BuildContext:
    """CI context of the current run (branch, tag, commit).

    Attributes:
        branch: Branch name (BRANCH_NAME), or the tag name on tag builds.
        tag: Tag name (TAG_NAME) when the run builds a tag.
        commit: Source revision (GIT_COMMIT).
        change_id: Pull request number (CHANGE_ID) when building a PR.
        build_number: CI build number.
    """

    branch: str | None = None
    tag: str | None = None
    commit: str = "unknown"
    change_id: str | None = None
    build_number: str | None = None

    @property
    def is_tagged(self) -> bool:
        """True when the run builds a tag (a release)."""
        return bool(self.tag)

    @property
    def is_pull_request(self) -> bool:
        """True when the run builds a pull request."""
        return bool(self.change_id)

    def is_primary_branch(self, primary_branch: str) -> bool:
        """True when building the primary branch itself (not a tag or PR)."""
        return (
            not self.is_tagged
            and not self.is_pull_request
            and self.branch == primary_branch
        )

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "BuildContext":
        """Read the context from Jenkins environment variables."""
        env = os.environ if environ is None else environ
        return cls(
            branch=env.get("BRANCH_NAME") or None,
            tag=env.get("TAG_NAME") or None,
            commit=env.get("GIT_COMMIT") or "unknown",
            change_id=env.get("CHANGE_ID") or None,
            build_number=env.get("BUILD_NUMBER") or None,
        )


@dataclass
class OperationResult:
    """Result of an operation (stage, cell build, side task)."""

    name: str
    status: StageStatus
    message: str = ""
    code: str | None = None
    log_path: str | None = None
    attempts: int = 0
    details: dict[str, object] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        """True when the operation did not fail the run."""
        return not self.status.is_failing


__all__ = [
    "BuildChannel",
    "BuildContext",
    "OperationResult",
    "StageStatus",
    "UpdateAction",
    "worst_status",
]
