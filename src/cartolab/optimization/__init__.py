"""
CartoLab Optimization: stress, optimization records and the map optimizer.

Example:
    >>> from cartolab.titers import TiterTable
    >>> from cartolab.optimization import optimize_map
    >>>
    >>> table = TiterTable.from_strings([
    ...     ["320", "160", "<10"],
    ...     ["80", "320", "40"],
    ...     ["*", "40", "160"],
    ... ])
    >>> batch = optimize_map(table, dimensions=2, num_optimizations=100,
    ...                      min_column_basis="1280", seed=42)
    >>> batch.best.stress < 0.05
    True
"""

from .stress import (
    StressProblem,
    stress,
    stress_and_gradient,
    point_stresses,
    map_distances,
    table_distances,
    map_residuals,
)

from .record import (
    OptimizationRecord,
    StopReason,
)

from .optimizer import (
    OptimizationBatch,
    RelaxResult,
    random_coords,
    lift_coords,
    relax,
    optimize_once,
    optimize_problem,
    optimize_map,
    anneal_dimensions,
    relax_record,
    randomize_record,
)

__all__ = [
    # Stress engine
    "StressProblem",
    "stress",
    "stress_and_gradient",
    "point_stresses",
    "map_distances",
    "table_distances",
    "map_residuals",

    # Records
    "OptimizationRecord",
    "StopReason",

    # Optimizer
    "OptimizationBatch",
    "RelaxResult",
    "random_coords",
    "lift_coords",
    "relax",
    "optimize_once",
    "optimize_problem",
    "optimize_map",
    "anneal_dimensions",
    "relax_record",
    "randomize_record",
]
