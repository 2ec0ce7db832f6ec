"""
CartoLab Optimization: optimization records.

An OptimizationRecord is one candidate antigenic map: antigen and serum
base coordinates, the column basis settings they were fitted with, a
display transformation and the stress they achieve.

Coordinates are frozen once the record is built. The transformation and
translation are presentation only: they can be updated (e.g. to align two
maps for display) and never change the stress.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

import numpy as np

from cartolab.errors import DimensionMismatch
from cartolab.optimization.stress import StressProblem
from cartolab.titers.column_bases import MinColumnBasis, column_bases


class StopReason(Enum):
    """Why a local optimization run stopped."""
    CONVERGED = "converged"
    MAX_ITERATIONS = "max_iterations"


def _frozen(array, dtype=float) -> np.ndarray:
    array = np.array(array, dtype=dtype)
    array.setflags(write=False)
    return array


@dataclass
class OptimizationRecord:
    """
    A single optimized antigenic map.

    Attributes:
        ag_coords: (num_antigens, D) antigen base coordinates.
        sr_coords: (num_sera, D) serum base coordinates.
        min_column_basis: Minimum column basis policy used in the fit.
        fixed_column_bases: Optional per-serum fixed column bases (NaN = not
            fixed).
        transformation: (D, D) display transformation.
        translation: (D,) display translation.
        stress: Stress of the base coordinates, NaN until calculated.
        comment: Free text.
        stop_reason: How the optimization run that produced it stopped.
        iterations: Optimizer iterations used.
    """
    ag_coords: np.ndarray
    sr_coords: np.ndarray
    min_column_basis: MinColumnBasis = "none"
    fixed_column_bases: Optional[np.ndarray] = None
    transformation: Optional[np.ndarray] = None
    translation: Optional[np.ndarray] = None
    stress: float = float("nan")
    comment: str = ""
    stop_reason: Optional[StopReason] = None
    iterations: int = 0

    def __post_init__(self):
        """Validate shapes and freeze coordinates."""
        ag_coords = np.asarray(self.ag_coords, dtype=float)
        sr_coords = np.asarray(self.sr_coords, dtype=float)
        if ag_coords.ndim != 2 or sr_coords.ndim != 2:
            raise DimensionMismatch("Antigen and serum coordinates must be 2D arrays")
        if ag_coords.shape[1] != sr_coords.shape[1]:
            raise DimensionMismatch(
                f"Antigen coordinates have {ag_coords.shape[1]} dimensions, "
                f"serum coordinates have {sr_coords.shape[1]}"
            )
        self.ag_coords = _frozen(ag_coords)
        self.sr_coords = _frozen(sr_coords)

        if self.fixed_column_bases is not None:
            fixed = _frozen(np.ravel(self.fixed_column_bases))
            if fixed.size != self.num_sera:
                raise DimensionMismatch(
                    f"Got {fixed.size} fixed column bases for {self.num_sera} sera"
                )
            self.fixed_column_bases = fixed

        self.set_transformation(self.transformation, self.translation)
        self.stress = float(self.stress)

    @classmethod
    def empty(cls, dimensions: int, num_antigens: int, num_sera: int, **kwargs) -> "OptimizationRecord":
        """A record with NaN coordinates of known shape."""
        return cls(
            ag_coords=np.full((num_antigens, dimensions), np.nan),
            sr_coords=np.full((num_sera, dimensions), np.nan),
            **kwargs,
        )

    @property
    def dimensions(self) -> int:
        return self.ag_coords.shape[1]

    @property
    def num_antigens(self) -> int:
        return self.ag_coords.shape[0]

    @property
    def num_sera(self) -> int:
        return self.sr_coords.shape[0]

    @property
    def coords(self) -> np.ndarray:
        """Stacked antigen then serum base coordinates."""
        return np.vstack([self.ag_coords, self.sr_coords])

    @property
    def has_stress(self) -> bool:
        return bool(np.isfinite(self.stress))

    # ------------------------------------------------------------------
    # Display transformation
    # ------------------------------------------------------------------

    def set_transformation(self, transformation=None, translation=None):
        """Set the display transformation and translation (None = identity / zero)."""
        d = self.dimensions
        if transformation is None:
            transformation = np.eye(d)
        if translation is None:
            translation = np.zeros(d)
        transformation = np.asarray(transformation, dtype=float)
        translation = np.asarray(translation, dtype=float).ravel()
        if transformation.shape != (d, d):
            raise DimensionMismatch(
                f"Transformation must be {d}x{d}, got {transformation.shape}"
            )
        if translation.size != d:
            raise DimensionMismatch(
                f"Translation must have {d} values, got {translation.size}"
            )
        self.transformation = _frozen(transformation)
        self.translation = _frozen(translation)

    def reset_transformation(self):
        self.set_transformation(None, None)

    def transform(self, coords: np.ndarray) -> np.ndarray:
        return np.asarray(coords, dtype=float) @ self.transformation + self.translation

    @property
    def transformed_ag_coords(self) -> np.ndarray:
        return self.transform(self.ag_coords)

    @property
    def transformed_sr_coords(self) -> np.ndarray:
        return self.transform(self.sr_coords)

    @property
    def transformed_coords(self) -> np.ndarray:
        return self.transform(self.coords)

    def realign_to(self, target: "OptimizationRecord", scaling: bool = False):
        """
        Set this record's display transformation so its points overlay
        ``target``'s transformed points as closely as possible.
        """
        from cartolab.analysis.procrustes import procrustes

        fit = procrustes(self.coords, target.transformed_coords, scaling=scaling)
        self.set_transformation(fit.scale * fit.rotation, fit.translation)

    # ------------------------------------------------------------------
    # Stress
    # ------------------------------------------------------------------

    def column_bases(self, table) -> np.ndarray:
        return column_bases(table, self.min_column_basis, self.fixed_column_bases)

    def stress_problem(self, table) -> StressProblem:
        self._check_table(table)
        return StressProblem.from_table(table, self.column_bases(table))

    def _check_table(self, table):
        if table.shape != (self.num_antigens, self.num_sera):
            raise DimensionMismatch(
                f"Optimization has {self.num_antigens} antigens x {self.num_sera} "
                f"sera, table is {table.shape[0]} x {table.shape[1]}"
            )

    def calculate_stress(self, table) -> float:
        """Stress of the base coordinates against a table."""
        return self.stress_problem(table).stress(self.ag_coords, self.sr_coords)

    def with_recalculated_stress(self, table) -> "OptimizationRecord":
        """Copy of this record with stress recomputed from the table."""
        return self.with_coords(
            self.ag_coords,
            self.sr_coords,
            stress=self.calculate_stress(table),
            stop_reason=self.stop_reason,
            iterations=self.iterations,
        )

    def with_coords(self, ag_coords, sr_coords, **changes) -> "OptimizationRecord":
        """New record sharing this record's settings with new coordinates."""
        values = dict(
            min_column_basis=self.min_column_basis,
            fixed_column_bases=self.fixed_column_bases,
            transformation=self.transformation,
            translation=self.translation,
            comment=self.comment,
        )
        values.update(changes)
        return OptimizationRecord(ag_coords=ag_coords, sr_coords=sr_coords, **values)

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ag_base_coords": self.ag_coords.tolist(),
            "sr_base_coords": self.sr_coords.tolist(),
            "min_column_basis": self.min_column_basis,
            "fixed_column_bases": (
                None if self.fixed_column_bases is None
                else self.fixed_column_bases.tolist()
            ),
            "transformation": self.transformation.tolist(),
            "translation": self.translation.tolist(),
            "stress": self.stress,
            "comment": self.comment,
            "stop_reason": self.stop_reason.value if self.stop_reason else None,
            "iterations": self.iterations,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OptimizationRecord":
        """Rebuild a record, including its stored stress, from to_dict output."""
        for key in ("ag_base_coords", "sr_base_coords"):
            if key not in data:
                raise ValueError(f"Optimization must contain {key}")

        def matrix(values):
            array = np.asarray(values, dtype=float)
            return array.reshape(len(values), -1) if array.ndim < 2 else array

        stop_reason = data.get("stop_reason")
        fixed = data.get("fixed_column_bases")
        return cls(
            ag_coords=matrix(data["ag_base_coords"]),
            sr_coords=matrix(data["sr_base_coords"]),
            min_column_basis=data.get("min_column_basis", "none"),
            fixed_column_bases=None if fixed is None else np.asarray(fixed, dtype=float),
            transformation=data.get("transformation"),
            translation=data.get("translation"),
            stress=float("nan") if data.get("stress") is None else data["stress"],
            comment=data.get("comment", ""),
            stop_reason=StopReason(stop_reason) if stop_reason else None,
            iterations=data.get("iterations", 0),
        )

    def __repr__(self) -> str:
        return (
            f"OptimizationRecord({self.dimensions}D, {self.num_antigens} antigens, "
            f"{self.num_sera} sera, stress={self.stress:.4f})"
        )
