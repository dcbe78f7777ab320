"""Matrix expansion.

Enumerates the cross-product of the matrix axes in declaration order and
drops every cell matched by an exclusion rule.
"""

from __future__ import annotations

import itertools
import logging
from collections.abc import Iterable

from packer_images.matrix.models import (
    AXIS_NAMES,
    DEFAULT_MATRIX,
    ExclusionRule,
    MatrixCell,
    MatrixDefinition,
)

logger = logging.getLogger(__name__)


def all_cells(matrix: MatrixDefinition) -> list[MatrixCell]:
    """Return the full cross-product of the axes, before exclusions."""
    axes = [matrix.axis_values(axis) for axis in AXIS_NAMES]
    return [
        MatrixCell(cpu_architecture=arch, agent_type=agent, compute_type=compute)
        for arch, agent, compute in itertools.product(*axes)
    ]


def find_exclusion(
    cell: MatrixCell, rules: Iterable[ExclusionRule]
) -> ExclusionRule | None:
    """Return the first rule excluding the cell, or None if it survives."""
    for rule in rules:
        if rule.matches(cell):
            return rule
    return None


def is_excluded(cell: MatrixCell, rules: Iterable[ExclusionRule]) -> bool:
    """True when any rule matches the cell."""
    return find_exclusion(cell, rules) is not None


def expand_matrix(matrix: MatrixDefinition = DEFAULT_MATRIX) -> list[MatrixCell]:
    """Enumerate the cells to build.

    Args:
        matrix: Axes and exclusion rules.

    Returns:
        Surviving cells, in axis declaration order.
    """
    cells: list[MatrixCell] = []
    for cell in all_cells(matrix):
        rule = find_exclusion(cell, matrix.excludes)
        if rule is None:
            cells.append(cell)
        else:
            logger.debug("Excluding %s (%s)", cell.cell_id, rule.reason or "no reason")
    return cells


__all__ = ["all_cells", "expand_matrix", "find_exclusion", "is_excluded"]
