"""
CartoLab Titers: column bases.

The column basis of a serum is the reference log titer against which the
titers in its column are turned into target distances:

    table_distance = column_basis[serum] - log_titer

By default it is the highest measured log titer of the serum, floored by a
minimum column basis ("none" or a titer such as "1280"). Fixed column bases
override the computed value serum by serum.
"""

from typing import Optional, Sequence, Union

import numpy as np

from cartolab.errors import DimensionMismatch
from cartolab.titers.titer import TITER_LOG_BASE, TiterType

MinColumnBasis = Union[str, int, float]


def parse_min_column_basis(min_column_basis: MinColumnBasis) -> float:
    """
    Convert a minimum column basis policy to a log-scale floor.

    Args:
        min_column_basis: "none" for no floor, otherwise a titer magnitude
            given as a number or numeric string (e.g. "1280").

    Returns:
        The floor on the log2(titer / 10) scale, -inf for "none".
    """
    if isinstance(min_column_basis, str):
        policy = min_column_basis.strip().lower()
        if policy == "none":
            return -np.inf
        try:
            min_column_basis = float(policy)
        except ValueError:
            raise ValueError(
                f"Minimum column basis must be 'none' or a titer, got '{min_column_basis}'"
            ) from None

    value = float(min_column_basis)
    if not np.isfinite(value) or value <= 0:
        raise ValueError(f"Minimum column basis must be a positive titer, got {value}")
    return float(np.log2(value / TITER_LOG_BASE))


def column_bases(
    table,
    min_column_basis: MinColumnBasis = "none",
    fixed_column_bases: Optional[Sequence[float]] = None,
) -> np.ndarray:
    """
    Compute per-serum column bases for a titer table.

    Args:
        table: TiterTable.
        min_column_basis: Minimum column basis policy.
        fixed_column_bases: Optional per-serum log-scale values; NaN entries
            are not fixed and fall back to the computed value.

    Returns:
        Array of length num_sera.
    """
    log_titers = table.log_titers
    types = table.titer_types

    measured = np.where(types == TiterType.MEASURED.value, log_titers, np.nan)
    observed = np.where(types != TiterType.MISSING.value, log_titers, np.nan)

    bases = np.zeros(table.num_sera)
    for sr in range(table.num_sera):
        if np.any(~np.isnan(measured[:, sr])):
            bases[sr] = np.nanmax(measured[:, sr])
        elif np.any(~np.isnan(observed[:, sr])):
            bases[sr] = np.nanmax(observed[:, sr])

    bases = np.maximum(bases, parse_min_column_basis(min_column_basis))

    if fixed_column_bases is not None:
        fixed = np.asarray(fixed_column_bases, dtype=float).ravel()
        if fixed.size != table.num_sera:
            raise DimensionMismatch(
                f"Got {fixed.size} fixed column bases for {table.num_sera} sera"
            )
        is_fixed = np.isfinite(fixed)
        bases[is_fixed] = fixed[is_fixed]

    return bases
