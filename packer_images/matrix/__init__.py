"""Build matrix module.

This module handles:
- Matrix axes and exclusion rules
- Expansion of the valid cells
- Derivation of per-cell Packer parameters
"""

from packer_images.matrix.expand import expand_matrix, is_excluded
from packer_images.matrix.models import (
    DEFAULT_MATRIX,
    AxisConstraint,
    ExclusionRule,
    MatrixCell,
    MatrixDefinition,
)
from packer_images.matrix.params import BuildParameters, derive_parameters

__all__ = [
    "DEFAULT_MATRIX",
    "AxisConstraint",
    "BuildParameters",
    "ExclusionRule",
    "MatrixCell",
    "MatrixDefinition",
    "derive_parameters",
    "expand_matrix",
    "is_excluded",
]
