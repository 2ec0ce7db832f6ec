"""
CartoLab Analysis: stress blobs.

A stress blob shows how precisely a point is positioned. The point is moved
over a regular grid covering the map while every other point stays fixed,
and the increase in total map stress is recorded at each grid node. The
blob is the connected region around the point where the increase stays
within ``stress_lim``.
"""

from dataclasses import dataclass
from typing import List, Optional
import logging

import numpy as np
from scipy import ndimage

from cartolab.errors import DimensionMismatch, IndexOutOfRange
from cartolab.optimization.record import OptimizationRecord
from cartolab.optimization.stress import StressProblem

logger = logging.getLogger(__name__)


@dataclass
class StressBlobGrid:
    """
    Stress excursion grid for one point.

    Attributes:
        point: Stacked (antigens then sera) index of the point.
        grid: Total stress increase with the point at each node, indexed
            like np.meshgrid(*coords, indexing="ij").
        coords: Axis coordinate vectors, one per dimension.
        stress_lim: Stress increase limit defining the blob.
        blob_mask: Nodes in the blob.
    """
    point: int
    grid: np.ndarray
    coords: List[np.ndarray]
    stress_lim: float
    blob_mask: np.ndarray

    @property
    def dimensions(self) -> int:
        return len(self.coords)

    @property
    def grid_spacing(self) -> float:
        return float(self.coords[0][1] - self.coords[0][0]) if len(self.coords[0]) > 1 else 0.0

    @property
    def blob_size(self) -> float:
        """Area (2D) or volume (3D) covered by the blob."""
        return float(np.count_nonzero(self.blob_mask) * self.grid_spacing ** self.dimensions)

    def contains(self, position) -> bool:
        """Whether the grid node nearest to ``position`` is in the blob."""
        node = tuple(
            int(np.argmin(np.abs(axis - p))) for axis, p in zip(self.coords, np.ravel(position))
        )
        return bool(self.blob_mask[node])

    def to_dict(self):
        return {
            "grid": self.grid.tolist(),
            "coords": [c.tolist() for c in self.coords],
            "stress_lim": self.stress_lim,
        }


def grid_axes(coords: np.ndarray, grid_spacing: float, margin: float) -> List[np.ndarray]:
    """Axis vectors covering the bounding box of ``coords`` plus ``margin``."""
    lower = np.nanmin(coords, axis=0) - margin
    upper = np.nanmax(coords, axis=0) + margin
    return [
        np.arange(lo, hi + grid_spacing / 2, grid_spacing)
        for lo, hi in zip(lower, upper)
    ]


def stress_grid(
    problem: StressProblem,
    coords: np.ndarray,
    point: int,
    axes: List[np.ndarray],
) -> np.ndarray:
    """Total stress change with ``point`` moved to each node of the grid."""
    mesh = np.meshgrid(*axes, indexing="ij")
    positions = np.stack([m.ravel() for m in mesh], axis=1)
    baseline = problem.point_stress_at(coords, point, coords[point])[0]
    values = problem.point_stress_at(coords, point, positions) - baseline
    return values.reshape(mesh[0].shape)


def _touches_edge(mask: np.ndarray) -> bool:
    for axis in range(mask.ndim):
        if np.any(np.take(mask, 0, axis=axis)) or np.any(np.take(mask, -1, axis=axis)):
            return True
    return False


def _blob_mask(grid: np.ndarray, axes: List[np.ndarray], position: np.ndarray, stress_lim: float) -> np.ndarray:
    labels, _ = ndimage.label(grid <= stress_lim)
    home = tuple(int(np.argmin(np.abs(axis - p))) for axis, p in zip(axes, position))
    label = labels[home]
    if label == 0:
        return np.zeros(grid.shape, dtype=bool)
    return labels == label


def stress_blob(
    record: OptimizationRecord,
    table,
    point: int,
    stress_lim: float = 1.0,
    grid_spacing: float = 0.25,
    margin: float = 1.0,
    max_expansions: int = 4,
    problem: Optional[StressProblem] = None,
) -> StressBlobGrid:
    """
    Compute the stress blob of one point of an optimized map.

    Args:
        record: Optimized 2D or 3D map.
        table: TiterTable the record was fitted to.
        point: Stacked index (antigens first, then sera).
        stress_lim: Allowed increase in total stress.
        grid_spacing: Distance between grid nodes.
        margin: Padding around the coordinates' bounding box; doubled while
            the blob reaches the edge of the grid.
        max_expansions: Maximum number of margin doublings.

    Returns:
        StressBlobGrid.
    """
    if record.dimensions not in (2, 3):
        raise DimensionMismatch(
            f"Stress blobs need a 2D or 3D map, got {record.dimensions}D"
        )
    if stress_lim < 0:
        raise ValueError(f"stress_lim cannot be negative, got {stress_lim}")
    if grid_spacing <= 0:
        raise ValueError(f"grid_spacing must be positive, got {grid_spacing}")

    problem = problem if problem is not None else record.stress_problem(table)
    coords = record.coords
    if not 0 <= point < problem.num_points:
        raise IndexOutOfRange(f"Point {point} out of range for {problem.num_points} points")

    for expansion in range(max_expansions + 1):
        axes = grid_axes(coords, grid_spacing, margin)
        grid = stress_grid(problem, coords, point, axes)
        blob = _blob_mask(grid, axes, coords[point], stress_lim)
        if not _touches_edge(blob):
            break
        if expansion < max_expansions:
            logger.debug(f"Blob for point {point} reaches the grid edge, margin {margin} -> {margin * 2}")
            margin *= 2
    else:
        logger.warning(
            f"Blob for point {point} still reaches the grid edge after "
            f"{max_expansions} expansions"
        )

    return StressBlobGrid(
        point=point,
        grid=grid,
        coords=axes,
        stress_lim=stress_lim,
        blob_mask=blob,
    )


def stress_blobs(
    record: OptimizationRecord,
    table,
    stress_lim: float = 1.0,
    grid_spacing: float = 0.25,
    margin: float = 1.0,
    antigens: bool = True,
    sera: bool = True,
) -> List[StressBlobGrid]:
    """Stress blobs for all antigens and/or sera of a map, in stacked order."""
    problem = record.stress_problem(table)
    points = []
    if antigens:
        points.extend(range(record.num_antigens))
    if sera:
        points.extend(range(record.num_antigens, record.num_antigens + record.num_sera))

    logger.info(f"Computing stress blobs for {len(points)} points")
    return [
        stress_blob(
            record,
            table,
            point,
            stress_lim=stress_lim,
            grid_spacing=grid_spacing,
            margin=margin,
            problem=problem,
        )
        for point in points
    ]
