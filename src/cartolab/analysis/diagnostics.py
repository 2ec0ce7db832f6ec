"""
CartoLab Analysis: map diagnostics.

Looks for points an optimization left in a poor or ambiguous position:

- TRAPPED: moving the point elsewhere (others fixed) lowers the total
  stress by more than ``stress_lim``; the optimizer stopped in a local
  minimum for that point.
- HEMISPHERING: a different position at least ``hemisphering_distance``
  away fits about as well (within ``stress_lim``), so the point's location
  is not determined by its titers.

Each point's stress is scanned over a grid, and candidate minima are then
polished by relaxing that single point.
"""

from dataclasses import dataclass
from enum import Enum
from typing import List, Optional
import logging

import numpy as np
from scipy import ndimage
from scipy.optimize import minimize

from cartolab.analysis.blobs import grid_axes, stress_grid
from cartolab.config import OptimizerOptions, resolve_options
from cartolab.optimization.optimizer import relax_record
from cartolab.optimization.record import OptimizationRecord
from cartolab.optimization.stress import StressProblem

logger = logging.getLogger(__name__)


class PointDiagnosis(Enum):
    """Classification of a point's position."""
    OK = "ok"
    TRAPPED = "trapped"
    HEMISPHERING = "hemisphering"


@dataclass
class HemispheringResult:
    """
    Diagnosis of one point.

    Attributes:
        point: Stacked (antigens then sera) index.
        diagnosis: PointDiagnosis.
        stress_change: Total stress change at the alternative position.
        position: Alternative position (None when OK).
    """
    point: int
    diagnosis: PointDiagnosis
    stress_change: float = 0.0
    position: Optional[np.ndarray] = None


def relax_point(
    problem: StressProblem,
    coords: np.ndarray,
    point: int,
    start: np.ndarray,
    options: Optional[OptimizerOptions] = None,
) -> np.ndarray:
    """Minimize the stress of one point from ``start`` with every other point fixed."""
    options = resolve_options(options)
    result = minimize(
        lambda p: problem.point_value_and_gradient(coords, point, p),
        np.asarray(start, dtype=float),
        jac=True,
        method=options.method,
        tol=options.tolerance,
        options={"maxiter": options.maxit},
    )
    return result.x


def _local_minima(grid: np.ndarray) -> np.ndarray:
    return np.argwhere(grid == ndimage.minimum_filter(grid, size=3, mode="nearest"))


def diagnose_point(
    problem: StressProblem,
    coords: np.ndarray,
    point: int,
    grid_spacing: float = 0.25,
    stress_lim: float = 0.1,
    hemisphering_distance: float = 1.0,
    margin: float = 1.0,
    options: Optional[OptimizerOptions] = None,
) -> HemispheringResult:
    """Classify the position of a single point, see module docstring."""
    current = coords[point]
    baseline = problem.point_stress_at(coords, point, current)[0]

    def change_at(position):
        return float(problem.point_stress_at(coords, point, position)[0] - baseline)

    axes = grid_axes(coords, grid_spacing, margin)
    grid = stress_grid(problem, coords, point, axes)

    best_node = np.unravel_index(np.argmin(grid), grid.shape)
    start = np.array([axis[i] for axis, i in zip(axes, best_node)])
    best = relax_point(problem, coords, point, start, options)
    best_change = change_at(best)
    if best_change < -stress_lim:
        return HemispheringResult(point, PointDiagnosis.TRAPPED, best_change, best)

    for node in _local_minima(grid):
        if grid[tuple(node)] > stress_lim:
            continue
        start = np.array([axis[i] for axis, i in zip(axes, node)])
        if np.linalg.norm(start - current) < hemisphering_distance:
            continue
        candidate = relax_point(problem, coords, point, start, options)
        change = change_at(candidate)
        if np.linalg.norm(candidate - current) >= hemisphering_distance and abs(change) <= stress_lim:
            return HemispheringResult(point, PointDiagnosis.HEMISPHERING, change, candidate)

    return HemispheringResult(point, PointDiagnosis.OK)


def check_hemisphering(
    record: OptimizationRecord,
    table,
    grid_spacing: float = 0.25,
    stress_lim: float = 0.1,
    hemisphering_distance: float = 1.0,
    options: Optional[OptimizerOptions] = None,
) -> List[HemispheringResult]:
    """Diagnose every point of an optimized map (any dimension up to 3)."""
    if record.dimensions > 3:
        raise ValueError(
            f"Hemisphering checks scan a grid and support up to 3D maps, "
            f"got {record.dimensions}D"
        )
    problem = record.stress_problem(table)
    coords = record.coords
    results = [
        diagnose_point(
            problem,
            coords,
            point,
            grid_spacing=grid_spacing,
            stress_lim=stress_lim,
            hemisphering_distance=hemisphering_distance,
            options=options,
        )
        for point in range(problem.num_points)
    ]
    n_trapped = sum(r.diagnosis == PointDiagnosis.TRAPPED for r in results)
    n_hemi = sum(r.diagnosis == PointDiagnosis.HEMISPHERING for r in results)
    logger.info(f"Found {n_trapped} trapped and {n_hemi} hemisphering points")
    return results


def move_trapped_points(
    record: OptimizationRecord,
    table,
    grid_spacing: float = 0.25,
    stress_lim: float = 0.1,
    max_rounds: int = 10,
    options: Optional[OptimizerOptions] = None,
) -> OptimizationRecord:
    """
    Move trapped points to their better positions and relax the map,
    repeating until no trapped points remain or ``max_rounds`` is reached.
    """
    for _ in range(max_rounds):
        results = check_hemisphering(
            record, table, grid_spacing=grid_spacing, stress_lim=stress_lim, options=options
        )
        trapped = [r for r in results if r.diagnosis == PointDiagnosis.TRAPPED]
        if not trapped:
            break

        coords = record.coords
        for r in trapped:
            coords[r.point] = r.position
        moved = record.with_coords(coords[: record.num_antigens], coords[record.num_antigens:])
        record = relax_record(moved, table, options)
        logger.info(f"Moved {len(trapped)} trapped points, stress now {record.stress:.4f}")
    else:
        logger.warning(f"Stopped moving trapped points after {max_rounds} rounds")

    return record
