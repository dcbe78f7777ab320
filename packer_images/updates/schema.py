"""Pydantic models for updatecli manifest validation.

A manifest describes one version-bump task: fetch a version string from an
upstream source, write it into a key of a repository file, and open a pull
request. Manifests are executed by updatecli; these models validate them
and expose the task they describe.
"""

import re
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

# Reference to a source value inside a template, e.g. {{ source "latest" }}
SOURCE_REFERENCE_PATTERN = re.compile(r"\{\{\s*source\s+\"([^\"]+)\"\s*\}\}")


class ScmSpecSchema(BaseModel):
    """Schema for the git/GitHub repository an updatecli run writes to."""

    model_config = ConfigDict(extra="forbid")

    user: str | None = None
    email: str | None = None
    owner: str | None = None
    repository: str | None = None
    token: str | None = None
    username: str | None = None
    branch: str | None = None


class ScmSchema(BaseModel):
    """Schema for an SCM entry."""

    model_config = ConfigDict(extra="forbid")

    kind: Literal["github", "git"]
    spec: ScmSpecSchema


class ShellSpecSchema(BaseModel):
    """Schema for a shell command spec (sources and conditions)."""

    model_config = ConfigDict(extra="forbid")

    command: Annotated[str, Field(min_length=1)]


class VersionFilterSchema(BaseModel):
    """Schema for a release version filter.

    Attributes:
        kind: Filter kind; 'regex' requires a pattern.
        pattern: Pattern the release name must match.
    """

    model_config = ConfigDict(extra="forbid")

    kind: Literal["regex", "semver", "latest"]
    pattern: str | None = None

    @model_validator(mode="after")
    def validate_pattern(self) -> "VersionFilterSchema":
        """Validate that regex filters carry a compilable pattern."""
        if self.kind == "regex":
            if not self.pattern:
                raise ValueError("regex versionfilter requires a pattern")
            try:
                re.compile(self.pattern)
            except re.error as e:
                raise ValueError(f"invalid versionfilter pattern: {e}") from e
        return self

    def matches(self, version: str) -> bool:
        """True when a release name passes the filter."""
        if self.kind == "regex" and self.pattern:
            return re.search(self.pattern, version) is not None
        return True


class GithubReleaseSpecSchema(BaseModel):
    """Schema for a GitHub release lookup."""

    model_config = ConfigDict(extra="forbid")

    owner: Annotated[str, Field(min_length=1)]
    repository: Annotated[str, Field(min_length=1)]
    token: str | None = None
    username: str | None = None
    versionfilter: VersionFilterSchema | None = None


class TransformerSchema(BaseModel):
    """Schema for a source value transformer (exactly one operation)."""

    model_config = ConfigDict(extra="forbid")

    trimprefix: str | None = None
    trimsuffix: str | None = None

    @model_validator(mode="after")
    def validate_one_operation(self) -> "TransformerSchema":
        """Validate that exactly one operation is set."""
        operations = [op for op in (self.trimprefix, self.trimsuffix) if op is not None]
        if len(operations) != 1:
            raise ValueError("a transformer must define exactly one operation")
        return self

    def apply(self, value: str) -> str:
        """Apply the transformation to a source value."""
        if self.trimprefix is not None:
            return value.removeprefix(self.trimprefix)
        return value.removesuffix(self.trimsuffix or "")


class SourceSchema(BaseModel):
    """Schema for a source: where the new version comes from."""

    model_config = ConfigDict(extra="forbid")

    name: str | None = None
    kind: Literal["shell", "githubrelease"]
    spec: ShellSpecSchema | GithubReleaseSpecSchema
    transformers: list[TransformerSchema] = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_spec_kind(self) -> "SourceSchema":
        """Validate that the spec matches the source kind."""
        expected = {
            "shell": ShellSpecSchema,
            "githubrelease": GithubReleaseSpecSchema,
        }[self.kind]
        if not isinstance(self.spec, expected):
            raise ValueError(f"spec does not match source kind '{self.kind}'")
        return self

    def describe(self) -> str:
        """Return a one-line description of the query."""
        if isinstance(self.spec, ShellSpecSchema):
            return f"shell: {self.spec.command}"
        query = f"githubrelease: {self.spec.owner}/{self.spec.repository}"
        if self.spec.versionfilter and self.spec.versionfilter.pattern:
            query += f" ({self.spec.versionfilter.kind} {self.spec.versionfilter.pattern})"
        return query

    def transform(self, value: str) -> str:
        """Apply every transformer, in order."""
        for transformer in self.transformers:
            value = transformer.apply(value)
        return value


class ConditionSchema(BaseModel):
    """Schema for a pre-check run before targets are applied."""

    model_config = ConfigDict(extra="forbid")

    name: str | None = None
    kind: Literal["shell"]
    sourceid: str | None = None
    spec: ShellSpecSchema


class TargetSpecSchema(BaseModel):
    """Schema for a YAML key to overwrite."""

    model_config = ConfigDict(extra="forbid")

    file: Annotated[str, Field(min_length=1)]
    key: Annotated[str, Field(min_length=1)]


class TargetSchema(BaseModel):
    """Schema for a target: where the new version is written."""

    model_config = ConfigDict(extra="forbid")

    name: str | None = None
    sourceid: str | None = None
    kind: Literal["yaml"]
    spec: TargetSpecSchema
    scmid: str | None = None


class PullRequestSpecSchema(BaseModel):
    """Schema for pull request options."""

    model_config = ConfigDict(extra="forbid")

    labels: list[str] = Field(default_factory=list)

    @field_validator("labels")
    @classmethod
    def validate_labels(cls, v: list[str]) -> list[str]:
        """Validate labels are non-empty strings."""
        for label in v:
            if not label or not label.strip():
                raise ValueError("labels must be non-empty strings")
        return v


class PullRequestSchema(BaseModel):
    """Schema for the pull request opened by an apply run."""

    model_config = ConfigDict(extra="forbid")

    kind: Literal["github"]
    title: Annotated[str, Field(min_length=1)]
    scmid: str | None = None
    spec: PullRequestSpecSchema = Field(default_factory=PullRequestSpecSchema)


class VersionBumpTask(BaseModel):
    """Version-bump task described by one manifest target.

    Attributes:
        manifest: Manifest name.
        source_id: Source providing the version.
        source_query: Description of the source query.
        target_file: File receiving the version.
        target_key: Key overwritten in the file.
        labels: Pull request labels.
        title_template: Pull request title template.
    """

    model_config = ConfigDict(extra="forbid")

    manifest: str
    source_id: str
    source_query: str
    target_file: str
    target_key: str
    labels: list[str] = Field(default_factory=list)
    title_template: str | None = None


class ManifestSchema(BaseModel):
    """Complete updatecli manifest.

    Attributes:
        name: Human-readable name of the pipeline.
        scms: Repositories written to, by id.
        sources: Version sources, by id.
        conditions: Pre-checks, by id.
        targets: Files updated, by id.
        pullrequests: Pull requests opened, by id.
    """

    model_config = ConfigDict(extra="forbid")

    name: Annotated[str, Field(min_length=1)]
    scms: dict[str, ScmSchema] = Field(default_factory=dict)
    sources: dict[str, SourceSchema] = Field(min_length=1)
    conditions: dict[str, ConditionSchema] = Field(default_factory=dict)
    targets: dict[str, TargetSchema] = Field(min_length=1)
    pullrequests: dict[str, PullRequestSchema] = Field(default_factory=dict)

    def resolve_sourceid(self, sourceid: str | None) -> str | None:
        """Return the source an entry reads from.

        Entries without a sourceid implicitly read the only source of the
        manifest; None when that is ambiguous.
        """
        if sourceid is not None:
            return sourceid
        if len(self.sources) == 1:
            return next(iter(self.sources))
        return None

    def reference_errors(self) -> list[str]:
        """Return every dangling id reference of the manifest."""
        errors: list[str] = []

        def check_source(owner: str, sourceid: str | None) -> None:
            resolved = self.resolve_sourceid(sourceid)
            if resolved is None:
                errors.append(f"{owner}: sourceid is required with several sources")
            elif resolved not in self.sources:
                errors.append(f"{owner}: unknown sourceid '{resolved}'")

        def check_scm(owner: str, scmid: str | None) -> None:
            if scmid is not None and scmid not in self.scms:
                errors.append(f"{owner}: unknown scmid '{scmid}'")

        for condition_id, condition in self.conditions.items():
            check_source(f"conditions.{condition_id}", condition.sourceid)
        for target_id, target in self.targets.items():
            check_source(f"targets.{target_id}", target.sourceid)
            check_scm(f"targets.{target_id}", target.scmid)
        for pr_id, pullrequest in self.pullrequests.items():
            check_scm(f"pullrequests.{pr_id}", pullrequest.scmid)
            for ref in SOURCE_REFERENCE_PATTERN.findall(pullrequest.title):
                if ref not in self.sources:
                    errors.append(f"pullrequests.{pr_id}: title references unknown source '{ref}'")
        return errors

    def validate_references(self) -> None:
        """Validate id references between sections.

        Raises:
            ValueError: If any reference is dangling.
        """
        errors = self.reference_errors()
        if errors:
            raise ValueError("; ".join(errors))

    def to_tasks(self) -> list[VersionBumpTask]:
        """Return the version-bump tasks described by the manifest."""
        pullrequest = next(iter(self.pullrequests.values()), None)
        tasks: list[VersionBumpTask] = []
        for target in self.targets.values():
            source_id = self.resolve_sourceid(target.sourceid) or ""
            source = self.sources.get(source_id)
            tasks.append(
                VersionBumpTask(
                    manifest=self.name,
                    source_id=source_id,
                    source_query=source.describe() if source else "",
                    target_file=target.spec.file,
                    target_key=target.spec.key,
                    labels=list(pullrequest.spec.labels) if pullrequest else [],
                    title_template=pullrequest.title if pullrequest else None,
                )
            )
        return tasks


class ManifestValidationResult(BaseModel):
    """Result of validating one manifest file.

    Attributes:
        path: Manifest file path.
        name: Manifest name, when it could be parsed.
        success: Whether the manifest is valid.
        errors: Validation errors.
    """

    model_config = ConfigDict(extra="forbid")

    path: str
    name: str | None = None
    success: bool
    errors: list[str] = Field(default_factory=list)


__all__ = [
    "SOURCE_REFERENCE_PATTERN",
    "ConditionSchema",
    "GithubReleaseSpecSchema",
    "ManifestSchema",
    "ManifestValidationResult",
    "PullRequestSchema",
    "PullRequestSpecSchema",
    "ScmSchema",
    "ScmSpecSchema",
    "ShellSpecSchema",
    "SourceSchema",
    "TargetSchema",
    "TargetSpecSchema",
    "TransformerSchema",
    "VersionBumpTask",
    "VersionFilterSchema",
]
