"""
CartoLab: antigenic map container.

An AntigenicMap ties together the titer data (replicate layers and the
merged flat table), antigen and serum names, and the optimizations found
for the table, kept in ascending stress order.

Names are carried alongside the numbers and never used in computation.
"""

from typing import List, Optional, Sequence, Union
import logging

import numpy as np

from cartolab.config import OptimizerOptions
from cartolab.errors import DimensionMismatch, IndexOutOfRange
from cartolab.optimization.optimizer import optimize_map, relax_record
from cartolab.optimization.record import OptimizationRecord
from cartolab.titers.column_bases import MinColumnBasis
from cartolab.titers.table import TiterTable, merge_layers

logger = logging.getLogger(__name__)


class AntigenicMap:
    """
    Titer data plus the optimizations fitted to it.

    Example:
        >>> acmap = AntigenicMap(TiterTable.from_strings([
        ...     ["320", "160", "<10"],
        ...     ["80", "320", "40"],
        ...     ["*", "40", "160"],
        ... ]))
        >>> acmap.optimize(dimensions=2, num_optimizations=100,
        ...               min_column_basis="1280", seed=1)
        >>> acmap.best_optimization.stress < 0.05
        True
    """

    def __init__(
        self,
        titer_table: Union[TiterTable, Sequence[TiterTable]],
        antigen_names: Optional[Sequence[str]] = None,
        sera_names: Optional[Sequence[str]] = None,
        name: str = "",
    ):
        if isinstance(titer_table, TiterTable):
            layers = [titer_table]
        else:
            layers = list(titer_table)
        self._layers = [layer.copy() for layer in layers]
        self._flat = merge_layers(self._layers)
        self.name = name

        n_ag, n_sr = self._flat.shape
        self.antigen_names = list(antigen_names) if antigen_names is not None else [
            f"AG{i + 1}" for i in range(n_ag)
        ]
        self.sera_names = list(sera_names) if sera_names is not None else [
            f"SR{i + 1}" for i in range(n_sr)
        ]
        if len(self.antigen_names) != n_ag:
            raise DimensionMismatch(f"Got {len(self.antigen_names)} antigen names for {n_ag} antigens")
        if len(self.sera_names) != n_sr:
            raise DimensionMismatch(f"Got {len(self.sera_names)} serum names for {n_sr} sera")

        self.optimizations: List[OptimizationRecord] = []

    @classmethod
    def from_strings(cls, titers: Sequence[Sequence[str]], **kwargs) -> "AntigenicMap":
        return cls(TiterTable.from_strings(titers), **kwargs)

    @property
    def titer_table(self) -> TiterTable:
        """The merged (flat) titer table."""
        return self._flat

    @property
    def titer_table_layers(self) -> List[TiterTable]:
        return list(self._layers)

    @property
    def num_antigens(self) -> int:
        return self._flat.num_antigens

    @property
    def num_sera(self) -> int:
        return self._flat.num_sera

    @property
    def num_optimizations(self) -> int:
        return len(self.optimizations)

    @property
    def best_optimization(self) -> OptimizationRecord:
        if not self.optimizations:
            raise IndexOutOfRange("Map has no optimizations")
        return self.optimizations[0]

    def get_optimization(self, i: int) -> OptimizationRecord:
        if not 0 <= i < len(self.optimizations):
            raise IndexOutOfRange(
                f"Optimization {i} out of range, map has {len(self.optimizations)}"
            )
        return self.optimizations[i]

    def add_optimization(self, record: OptimizationRecord):
        """Add a record, storing its stress as recomputed against the flat table."""
        if (record.num_antigens, record.num_sera) != self._flat.shape:
            raise DimensionMismatch(
                f"Optimization has {record.num_antigens} antigens x {record.num_sera} "
                f"sera, map has {self.num_antigens} x {self.num_sera}"
            )
        self.optimizations.append(record.with_recalculated_stress(self._flat))

    def sort_optimizations(self):
        self.optimizations.sort(key=lambda r: r.stress)

    def keep_best(self, n: int = 1):
        self.sort_optimizations()
        self.optimizations = self.optimizations[:n]

    def remove_optimizations(self):
        self.optimizations = []

    def optimize(
        self,
        dimensions=2,
        num_optimizations: int = 100,
        min_column_basis: MinColumnBasis = "none",
        fixed_column_bases=None,
        options: Optional[OptimizerOptions] = None,
        seed: Optional[int] = None,
    ):
        """Run optimize_map on the flat table and add the results."""
        batch = optimize_map(
            self._flat,
            dimensions=dimensions,
            num_optimizations=num_optimizations,
            min_column_basis=min_column_basis,
            fixed_column_bases=fixed_column_bases,
            options=options,
            seed=seed,
        )
        self.optimizations.extend(batch.records)
        self.sort_optimizations()
        logger.info(
            f"Map '{self.name}': {len(batch)} optimizations added, "
            f"best stress {self.best_optimization.stress:.4f}"
        )

    def relax_optimization(self, i: int = 0, options: Optional[OptimizerOptions] = None, one_step: bool = False):
        """Relax optimization ``i`` in place (the list is re-sorted)."""
        self.optimizations[i] = relax_record(self.get_optimization(i), self._flat, options, one_step)
        self.sort_optimizations()

    def realign_optimizations(self):
        """Align every optimization's display transformation to the best one."""
        best = self.best_optimization
        for record in self.optimizations[1:]:
            if record.dimensions == best.dimensions:
                record.realign_to(best)

    @property
    def stresses(self) -> np.ndarray:
        return np.array([r.stress for r in self.optimizations])

    def __repr__(self) -> str:
        return (
            f"AntigenicMap('{self.name}', {self.num_antigens} antigens, "
            f"{self.num_sera} sera, {len(self._layers)} layers, "
            f"{self.num_optimizations} optimizations)"
        )
