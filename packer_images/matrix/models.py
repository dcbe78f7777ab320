"""Models for the build matrix.

A matrix is the cross-product of three axes (CPU architecture, agent type,
compute type) filtered by exclusion rules. Rules are authored as data and
validated by pydantic, so an unknown axis name is rejected when the rule is
constructed.
"""

from dataclasses import dataclass
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

AxisName = Literal["cpu_architecture", "agent_type", "compute_type"]

# Axis order is the enumeration order of the matrix
AXIS_NAMES: tuple[AxisName, ...] = ("cpu_architecture", "agent_type", "compute_type")


@dataclass(frozen=True)
class MatrixCell:
    """One concrete combination of the three axes.

    Instances are immutable so each parallel build gets its own snapshot.
    """

    cpu_architecture: str
    agent_type: str
    compute_type: str

    def axis_value(self, axis: AxisName) -> str:
        """Return the value of the cell on the given axis."""
        return str(getattr(self, axis))

    @property
    def cell_id(self) -> str:
        """Stable identifier, usable in file names."""
        return f"{self.cpu_architecture}_{self.agent_type}_{self.compute_type}"

    def as_dict(self) -> dict[str, str]:
        """Return the cell as a plain mapping."""
        return {axis: self.axis_value(axis) for axis in AXIS_NAMES}


class AxisConstraint(BaseModel):
    """Constraint of an exclusion rule on one axis.

    Exactly one of `values` (membership) or `not_values` (negated
    membership) must be given.
    """

    model_config = ConfigDict(extra="forbid", frozen=True, populate_by_name=True)

    axis: AxisName
    values: tuple[str, ...] | None = None
    not_values: tuple[str, ...] | None = Field(default=None, alias="notValues")

    @model_validator(mode="after")
    def check_one_of(self) -> "AxisConstraint":
        """Validate that exactly one of values/notValues is set."""
        if (self.values is None) == (self.not_values is None):
            raise ValueError("exactly one of 'values' or 'notValues' is required")
        return self

    def matches(self, cell: MatrixCell) -> bool:
        """True when the cell satisfies this constraint."""
        value = cell.axis_value(self.axis)
        if self.values is not None:
            return value in self.values
        return value not in (self.not_values or ())


class ExclusionRule(BaseModel):
    """Removes every cell matching all of its axis constraints.

    Axes without a constraint match any value.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    constraints: tuple[AxisConstraint, ...] = Field(min_length=1)
    reason: str | None = None

    def matches(self, cell: MatrixCell) -> bool:
        """True when the cell matches every constraint of the rule."""
        return all(constraint.matches(cell) for constraint in self.constraints)


class MatrixDefinition(BaseModel):
    """Axes and exclusion rules of a build matrix."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    cpu_architecture: tuple[str, ...] = Field(min_length=1)
    agent_type: tuple[str, ...] = Field(min_length=1)
    compute_type: tuple[str, ...] = Field(min_length=1)
    excludes: tuple[ExclusionRule, ...] = ()

    def axis_values(self, axis: AxisName) -> tuple[str, ...]:
        """Return the ordered values of one axis."""
        return tuple(getattr(self, axis))


def _rule(reason: str, **constraints: dict[str, list[str]]) -> ExclusionRule:
    return ExclusionRule(
        reason=reason,
        constraints=tuple(
            AxisConstraint.model_validate({"axis": axis, **spec})
            for axis, spec in constraints.items()
        ),
    )


DEFAULT_MATRIX = MatrixDefinition(
    cpu_architecture=("amd64", "arm64"),
    agent_type=("ubuntu-20.04", "windows-2019", "windows-2022"),
    compute_type=("amazon-ebs", "azure-arm", "docker"),
    excludes=(
        _rule(
            "No arm64 images on Azure",
            cpu_architecture={"values": ["arm64"]},
            compute_type={"values": ["azure-arm"]},
        ),
        _rule(
            "arm64 AMIs are only built for Ubuntu",
            cpu_architecture={"values": ["arm64"]},
            agent_type={"notValues": ["ubuntu-20.04"]},
            compute_type={"values": ["amazon-ebs"]},
        ),
        _rule(
            "No Windows container images",
            agent_type={"values": ["windows-2019", "windows-2022"]},
            compute_type={"values": ["docker"]},
        ),
        # Temporary until the Windows 2022 AMI builds are fixed
        _rule(
            "No Windows 2022 AMIs",
            agent_type={"values": ["windows-2022"]},
            compute_type={"values": ["amazon-ebs"]},
        ),
    ),
)


__all__ = [
    "AXIS_NAMES",
    "DEFAULT_MATRIX",
    "AxisConstraint",
    "AxisName",
    "ExclusionRule",
    "MatrixCell",
    "MatrixDefinition",
]
