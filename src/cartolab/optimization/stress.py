"""
CartoLab Optimization: map stress and its gradient.

For every observed titer the target (table) distance between an antigen and
a serum is

    table_distance = column_basis[serum] - log_titer

and the residual against the Euclidean map distance is

    e = map_distance - table_distance

Stress is the sum of squared residuals, with censored titers penalised only
when the map breaks the bound they imply:

    measured:  e^2
    "<" titer: min(e, 0)^2   (the pair must be at least this far apart)
    ">" titer: max(e, 0)^2   (the pair must be at most this far apart)

With no censored titers this is ordinary metric MDS stress.

The display transformation of an optimization never enters this module.
"""

from dataclasses import dataclass
from typing import Tuple

import numpy as np

from cartolab.errors import DimensionMismatch
from cartolab.titers.titer import TiterType


def _as_coords(coords, name: str) -> np.ndarray:
    coords = np.asarray(coords, dtype=float)
    if coords.ndim == 1:
        coords = coords.reshape(-1, 1)
    if coords.ndim != 2:
        raise DimensionMismatch(f"{name} must be a 2D array, got {coords.ndim}D")
    return coords


@dataclass
class StressProblem:
    """
    Precomputed stress terms for one titer table and column bases.

    Only observed cells are kept, as flat arrays, so evaluating the stress
    is a handful of vectorised operations.

    Attributes:
        num_antigens: Number of antigens (table rows).
        num_sera: Number of sera (table columns).
        ag_index: Antigen index of each observed cell.
        sr_index: Serum index of each observed cell.
        titer_types: TiterType code of each observed cell.
        table_distances: Target distance of each observed cell.
    """
    num_antigens: int
    num_sera: int
    ag_index: np.ndarray
    sr_index: np.ndarray
    titer_types: np.ndarray
    table_distances: np.ndarray

    @classmethod
    def from_log_titers(
        cls,
        log_titers: np.ndarray,
        titer_types: np.ndarray,
        column_bases: np.ndarray,
    ) -> "StressProblem":
        """
        Build from a log titer matrix, a type code matrix and column bases.

        Cells with type MISSING (or a NaN log titer) are dropped.
        """
        log_titers = np.asarray(log_titers, dtype=float)
        titer_types = np.asarray(titer_types)
        column_bases = np.asarray(column_bases, dtype=float).ravel()
        if log_titers.ndim != 2 or log_titers.shape != titer_types.shape:
            raise DimensionMismatch(
                f"Log titers {log_titers.shape} and titer types "
                f"{titer_types.shape} must be matching 2D arrays"
            )
        if column_bases.size != log_titers.shape[1]:
            raise DimensionMismatch(
                f"Got {column_bases.size} column bases for {log_titers.shape[1]} sera"
            )

        observed = (titer_types != TiterType.MISSING.value) & np.isfinite(log_titers)
        ag_index, sr_index = np.nonzero(observed)
        table_distances = column_bases[sr_index] - log_titers[ag_index, sr_index]

        return cls(
            num_antigens=log_titers.shape[0],
            num_sera=log_titers.shape[1],
            ag_index=ag_index,
            sr_index=sr_index,
            titer_types=titer_types[ag_index, sr_index].astype(np.int8),
            table_distances=table_distances,
        )

    @classmethod
    def from_table(cls, table, column_bases: np.ndarray) -> "StressProblem":
        return cls.from_log_titers(table.log_titers, table.titer_types, column_bases)

    @property
    def num_points(self) -> int:
        return self.num_antigens + self.num_sera

    @property
    def num_observed(self) -> int:
        return self.ag_index.size

    @property
    def max_table_distance(self) -> float:
        finite = self.table_distances[np.isfinite(self.table_distances)]
        if finite.size == 0:
            return 0.0
        return float(np.max(finite))

    def check_coords(self, ag_coords, sr_coords) -> Tuple[np.ndarray, np.ndarray]:
        """Validate coordinate shapes against the table, return float arrays."""
        ag_coords = _as_coords(ag_coords, "Antigen coordinates")
        sr_coords = _as_coords(sr_coords, "Serum coordinates")
        if ag_coords.shape[0] != self.num_antigens:
            raise DimensionMismatch(
                f"Got coordinates for {ag_coords.shape[0]} antigens, "
                f"table has {self.num_antigens}"
            )
        if sr_coords.shape[0] != self.num_sera:
            raise DimensionMismatch(
                f"Got coordinates for {sr_coords.shape[0]} sera, "
                f"table has {self.num_sera}"
            )
        if ag_coords.shape[1] != sr_coords.shape[1]:
            raise DimensionMismatch(
                f"Antigen coordinates have {ag_coords.shape[1]} dimensions, "
                f"serum coordinates have {sr_coords.shape[1]}"
            )
        return ag_coords, sr_coords

    def _differences(self, ag_coords, sr_coords):
        diffs = ag_coords[self.ag_index] - sr_coords[self.sr_index]
        map_dists = np.sqrt(np.sum(diffs ** 2, axis=1))
        return diffs, map_dists

    def residuals(self, map_dists: np.ndarray) -> np.ndarray:
        """Censoring-aware residuals, zero where a censored bound holds."""
        e = map_dists - self.table_distances
        lessthan = self.titer_types == TiterType.LESSTHAN.value
        morethan = self.titer_types == TiterType.MORETHAN.value
        e[lessthan] = np.minimum(e[lessthan], 0.0)
        e[morethan] = np.maximum(e[morethan], 0.0)
        return e

    def cell_stresses(self, ag_coords, sr_coords) -> np.ndarray:
        """Stress contribution of each observed cell."""
        ag_coords, sr_coords = self.check_coords(ag_coords, sr_coords)
        _, map_dists = self._differences(ag_coords, sr_coords)
        return self.residuals(map_dists) ** 2

    def stress(self, ag_coords, sr_coords) -> float:
        return float(np.sum(self.cell_stresses(ag_coords, sr_coords)))

    def value_and_gradient(
        self, ag_coords, sr_coords
    ) -> Tuple[float, np.ndarray, np.ndarray]:
        """
        Stress and its gradient with respect to every coordinate.

        Returns:
            (stress, antigen gradient, serum gradient), gradients shaped
            like the coordinate arrays.
        """
        ag_coords, sr_coords = self.check_coords(ag_coords, sr_coords)
        diffs, map_dists = self._differences(ag_coords, sr_coords)
        e = self.residuals(map_dists)
        value = float(np.sum(e ** 2))

        # d(map_dist)/d(coords) is undefined for coincident points
        scale = np.zeros_like(map_dists)
        nonzero = map_dists > 0
        scale[nonzero] = 2.0 * e[nonzero] / map_dists[nonzero]
        contrib = diffs * scale[:, None]

        ag_grad = np.zeros_like(ag_coords)
        sr_grad = np.zeros_like(sr_coords)
        np.add.at(ag_grad, self.ag_index, contrib)
        np.add.at(sr_grad, self.sr_index, -contrib)
        return value, ag_grad, sr_grad

    def flat_value_and_gradient(self, x: np.ndarray, dimensions: int):
        """
        Stress and gradient of a flattened (antigens then sera) coordinate
        vector, in the form scipy.optimize.minimize expects with jac=True.
        """
        coords = x.reshape(self.num_points, dimensions)
        value, ag_grad, sr_grad = self.value_and_gradient(
            coords[: self.num_antigens], coords[self.num_antigens:]
        )
        return value, np.concatenate([ag_grad, sr_grad]).ravel()

    def point_stresses(self, ag_coords, sr_coords) -> Tuple[np.ndarray, np.ndarray]:
        """Summed cell stress per antigen and per serum."""
        cell = self.cell_stresses(ag_coords, sr_coords)
        ag_stress = np.bincount(self.ag_index, weights=cell, minlength=self.num_antigens)
        sr_stress = np.bincount(self.sr_index, weights=cell, minlength=self.num_sera)
        return ag_stress, sr_stress

    def point_partners(self, point: int):
        """
        Observed cells involving a point in stacked (antigens then sera) order.

        Returns:
            (cell mask, indices of the partner points in stacked order)
        """
        if point < self.num_antigens:
            cells = self.ag_index == point
            partners = self.num_antigens + self.sr_index[cells]
        else:
            cells = self.sr_index == point - self.num_antigens
            partners = self.ag_index[cells]
        return cells, partners

    def point_stress_at(self, coords: np.ndarray, point: int, positions: np.ndarray) -> np.ndarray:
        """
        Stress contributed by one point if it were moved to each of
        ``positions``, with every other point held at ``coords``.

        Args:
            coords: Stacked (antigens then sera) coordinates.
            point: Stacked index of the point to move.
            positions: (n_positions, dimensions) candidate locations.

        Returns:
            Array of length n_positions.
        """
        cells, partners = self.point_partners(point)
        positions = np.atleast_2d(positions)
        if not np.any(cells):
            return np.zeros(positions.shape[0])

        partner_coords = coords[partners]
        diffs = positions[:, None, :] - partner_coords[None, :, :]
        map_dists = np.sqrt(np.sum(diffs ** 2, axis=2))

        e = map_dists - self.table_distances[cells][None, :]
        types = self.titer_types[cells]
        lessthan = types == TiterType.LESSTHAN.value
        morethan = types == TiterType.MORETHAN.value
        e[:, lessthan] = np.minimum(e[:, lessthan], 0.0)
        e[:, morethan] = np.maximum(e[:, morethan], 0.0)
        return np.sum(e ** 2, axis=1)

    def point_value_and_gradient(self, coords: np.ndarray, point: int, position: np.ndarray):
        """Stress contributed by one point at ``position`` and its gradient."""
        cells, partners = self.point_partners(point)
        position = np.asarray(position, dtype=float).ravel()
        if not np.any(cells):
            return 0.0, np.zeros_like(position)

        diffs = position[None, :] - coords[partners]
        map_dists = np.sqrt(np.sum(diffs ** 2, axis=1))
        e = map_dists - self.table_distances[cells]
        types = self.titer_types[cells]
        lessthan = types == TiterType.LESSTHAN.value
        morethan = types == TiterType.MORETHAN.value
        e[lessthan] = np.minimum(e[lessthan], 0.0)
        e[morethan] = np.maximum(e[morethan], 0.0)

        scale = np.zeros_like(map_dists)
        nonzero = map_dists > 0
        scale[nonzero] = 2.0 * e[nonzero] / map_dists[nonzero]
        return float(np.sum(e ** 2)), np.sum(diffs * scale[:, None], axis=0)


def stress(ag_coords, sr_coords, table, column_bases) -> float:
    """
    Total stress of a coordinate configuration against a titer table.

    Args:
        ag_coords: (num_antigens, D) antigen coordinates.
        sr_coords: (num_sera, D) serum coordinates.
        table: TiterTable.
        column_bases: Per-serum column bases.

    Returns:
        Non-negative stress.
    """
    return StressProblem.from_table(table, column_bases).stress(ag_coords, sr_coords)


def stress_and_gradient(ag_coords, sr_coords, table, column_bases):
    """Stress with antigen and serum gradients, see StressProblem.value_and_gradient."""
    return StressProblem.from_table(table, column_bases).value_and_gradient(
        ag_coords, sr_coords
    )


def point_stresses(ag_coords, sr_coords, table, column_bases):
    """Per-antigen and per-serum stress contributions."""
    return StressProblem.from_table(table, column_bases).point_stresses(
        ag_coords, sr_coords
    )


def map_distances(ag_coords, sr_coords) -> np.ndarray:
    """Euclidean distance matrix between every antigen and serum."""
    ag_coords = _as_coords(ag_coords, "Antigen coordinates")
    sr_coords = _as_coords(sr_coords, "Serum coordinates")
    if ag_coords.shape[1] != sr_coords.shape[1]:
        raise DimensionMismatch(
            f"Antigen coordinates have {ag_coords.shape[1]} dimensions, "
            f"serum coordinates have {sr_coords.shape[1]}"
        )
    diffs = ag_coords[:, None, :] - sr_coords[None, :, :]
    return np.sqrt(np.sum(diffs ** 2, axis=2))


def table_distances(table, column_bases) -> np.ndarray:
    """Target distance matrix implied by a table, NaN where missing."""
    column_bases = np.asarray(column_bases, dtype=float).ravel()
    if column_bases.size != table.num_sera:
        raise DimensionMismatch(
            f"Got {column_bases.size} column bases for {table.num_sera} sera"
        )
    return column_bases[None, :] - table.log_titers


def map_residuals(ag_coords, sr_coords, table, column_bases) -> np.ndarray:
    """
    Signed residual (map distance - table distance) of every cell.

    Censored titers whose bound is respected get 0, missing titers NaN.
    """
    problem = StressProblem.from_table(table, column_bases)
    ag_coords, sr_coords = problem.check_coords(ag_coords, sr_coords)
    _, dists = problem._differences(ag_coords, sr_coords)

    residuals = np.full(table.shape, np.nan)
    residuals[problem.ag_index, problem.sr_index] = problem.residuals(dists)
    return residuals
