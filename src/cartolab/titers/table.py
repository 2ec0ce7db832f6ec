"""
CartoLab Titers: titer tables and replicate layers.

A TiterTable is an antigens x sera grid of titers. The grid dimensions are
fixed at construction. Internally titers are held as two integer arrays
(type codes and magnitudes) so the numeric views used by the stress engine
are cheap to build.
"""

import logging
from typing import List, Optional, Sequence, Union

import numpy as np
import pandas as pd

from cartolab.errors import DimensionMismatch, IndexOutOfRange, InvalidTiterFormat
from cartolab.titers.column_bases import column_bases as compute_column_bases
from cartolab.titers.titer import TITER_LOG_BASE, Titer, TiterType

logger = logging.getLogger(__name__)


class TiterTable:
    """
    A dense antigens x sera table of titers.

    Rows are antigens, columns are sera. All cells start missing.

    Example:
        >>> table = TiterTable.from_strings([
        ...     ["320", "160", "<10"],
        ...     ["80", "320", "40"],
        ...     ["*", "40", "160"],
        ... ])
        >>> table.get(0, 2)
        Titer(type=<TiterType.LESSTHAN: 2>, value=10)
    """

    def __init__(self, num_antigens: int, num_sera: int):
        num_antigens = int(num_antigens)
        num_sera = int(num_sera)
        if num_antigens < 1 or num_sera < 1:
            raise ValueError(
                f"Titer table needs at least one antigen and one serum, "
                f"got {num_antigens} x {num_sera}"
            )
        self._types = np.zeros((num_antigens, num_sera), dtype=np.int8)
        self._values = np.zeros((num_antigens, num_sera), dtype=np.int64)

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def from_strings(cls, titers: Sequence[Sequence[str]]) -> "TiterTable":
        """
        Build a table from a 2D sequence of titer strings.

        Raises:
            DimensionMismatch: If rows differ in length.
            InvalidTiterFormat: If a cell is not a valid titer, naming the cell.
        """
        rows = [list(row) for row in titers]
        if not rows:
            raise ValueError("Titer table needs at least one antigen")
        num_sera = len(rows[0])
        for i, row in enumerate(rows):
            if len(row) != num_sera:
                raise DimensionMismatch(
                    f"Antigen row {i} has {len(row)} titers, expected {num_sera}"
                )

        table = cls(len(rows), num_sera)
        for ag, row in enumerate(rows):
            for sr, titer in enumerate(row):
                try:
                    table.set(ag, sr, titer)
                except InvalidTiterFormat as e:
                    raise InvalidTiterFormat(titer, row=ag, col=sr) from e
        return table

    @classmethod
    def from_dataframe(cls, df: pd.DataFrame) -> "TiterTable":
        """
        Build a table from a DataFrame (antigens as rows).

        Cells may be titer strings or numbers; NaN / None cells are missing.
        """
        return cls.from_strings(df.map(_cell_string).values.tolist())

    def copy(self) -> "TiterTable":
        table = TiterTable(self.num_antigens, self.num_sera)
        table._types[:] = self._types
        table._values[:] = self._values
        return table

    # ------------------------------------------------------------------
    # Shape and cell access
    # ------------------------------------------------------------------

    @property
    def num_antigens(self) -> int:
        return self._types.shape[0]

    @property
    def num_sera(self) -> int:
        return self._types.shape[1]

    @property
    def shape(self):
        return self._types.shape

    def _check_index(self, ag: int, sr: int):
        if not (0 <= ag < self.num_antigens):
            raise IndexOutOfRange(
                f"Antigen index {ag} out of range for {self.num_antigens} antigens"
            )
        if not (0 <= sr < self.num_sera):
            raise IndexOutOfRange(
                f"Serum index {sr} out of range for {self.num_sera} sera"
            )

    def get(self, ag: int, sr: int) -> Titer:
        self._check_index(ag, sr)
        titer_type = TiterType(int(self._types[ag, sr]))
        return Titer(titer_type, int(self._values[ag, sr]))

    def set(self, ag: int, sr: int, titer: Union[Titer, str, int]):
        self._check_index(ag, sr)
        titer = Titer.coerce(titer)
        value = np.int64(titer.value)
        self._values[ag, sr] = value
        self._types[ag, sr] = titer.type.value

    def get_string(self, ag: int, sr: int) -> str:
        return self.get(ag, sr).to_string()

    def to_strings(self) -> List[List[str]]:
        return [
            [self.get_string(ag, sr) for sr in range(self.num_sera)]
            for ag in range(self.num_antigens)
        ]

    def to_dataframe(
        self,
        antigen_names: Optional[Sequence[str]] = None,
        sera_names: Optional[Sequence[str]] = None,
    ) -> pd.DataFrame:
        """Titer strings as a DataFrame indexed by antigen and serum names."""
        return pd.DataFrame(
            self.to_strings(),
            index=list(antigen_names) if antigen_names is not None else None,
            columns=list(sera_names) if sera_names is not None else None,
        )

    def __eq__(self, other) -> bool:
        if not isinstance(other, TiterTable):
            return NotImplemented
        return (
            self.shape == other.shape
            and np.array_equal(self._types, other._types)
            and np.array_equal(self._values, other._values)
        )

    def __repr__(self) -> str:
        return (
            f"TiterTable({self.num_antigens} antigens x {self.num_sera} sera, "
            f"{self.num_observed} observed)"
        )

    # ------------------------------------------------------------------
    # Numeric views
    # ------------------------------------------------------------------

    @property
    def titer_types(self) -> np.ndarray:
        """Integer type codes (see TiterType), read-only copy."""
        return self._types.copy()

    @property
    def observed_mask(self) -> np.ndarray:
        return self._types != TiterType.MISSING.value

    @property
    def num_observed(self) -> int:
        return int(np.count_nonzero(self.observed_mask))

    @property
    def numeric_titers(self) -> np.ndarray:
        out = self._values.astype(float)
        out[~self.observed_mask] = np.nan
        return out

    @property
    def log_titers(self) -> np.ndarray:
        """Log titers with the censoring step applied, NaN where missing."""
        out = np.full(self.shape, np.nan)
        observed = self.observed_mask
        out[observed] = np.log2(self._values[observed] / TITER_LOG_BASE)
        out[self._types == TiterType.LESSTHAN.value] -= 1.0
        out[self._types == TiterType.MORETHAN.value] += 1.0
        return out

    def observed_indices(self) -> np.ndarray:
        """Row-major flat indices of all non-missing cells."""
        return np.flatnonzero(self.observed_mask)

    def mask(self, indices) -> "TiterTable":
        """
        Return a copy with the given row-major flat cell indices set missing.

        The original table is untouched.
        """
        indices = np.asarray(indices, dtype=int).ravel()
        size = self.num_antigens * self.num_sera
        if indices.size and (indices.min() < 0 or indices.max() >= size):
            raise IndexOutOfRange(
                f"Cell indices must lie in [0, {size}), got "
                f"[{indices.min()}, {indices.max()}]"
            )
        table = self.copy()
        table._types.flat[indices] = TiterType.MISSING.value
        table._values.flat[indices] = 0
        return table

    def column_bases(self, min_column_basis="none", fixed_column_bases=None) -> np.ndarray:
        """Per-serum column bases, see cartolab.titers.column_bases."""
        return compute_column_bases(self, min_column_basis, fixed_column_bases)

    @classmethod
    def merge(cls, layers: Sequence["TiterTable"]) -> "TiterTable":
        return merge_layers(layers)


def _cell_string(cell) -> str:
    """Titer string for a DataFrame cell."""
    if cell is None or (isinstance(cell, (float, np.floating)) and np.isnan(cell)):
        return "*"
    if isinstance(cell, (float, np.floating)) and float(cell).is_integer():
        return str(int(cell))
    return str(cell)


def _merge_cell(titers: List[Titer]) -> Titer:
    """Combine replicate titers for one cell."""
    titers = [t for t in titers if not t.is_missing]
    if not titers:
        return Titer.missing()
    if all(t == titers[0] for t in titers):
        return titers[0]

    types = {t.type for t in titers}
    if types == {TiterType.LESSTHAN}:
        return Titer.less_than(max(t.value for t in titers))
    if types == {TiterType.MORETHAN}:
        return Titer.more_than(min(t.value for t in titers))
    if {TiterType.LESSTHAN, TiterType.MORETHAN} <= types:
        return Titer.missing()

    geo_mean = np.exp(np.mean(np.log([t.value for t in titers])))
    return Titer.measured(max(1, int(round(geo_mean))))


def merge_layers(layers: Sequence[TiterTable]) -> TiterTable:
    """
    Merge replicate titer table layers into one table.

    Per cell, ignoring missing entries:
        - identical titers are kept as is
        - all "<" titers merge to the largest bound, all ">" to the smallest
        - "<" mixed with ">" is contradictory and merges to missing
        - anything else merges to the rounded geometric mean of the
          magnitudes, as a measured titer

    Raises:
        DimensionMismatch: If the layers differ in shape.
    """
    layers = list(layers)
    if not layers:
        raise ValueError("Need at least one titer table layer to merge")
    shape = layers[0].shape
    for i, layer in enumerate(layers):
        if layer.shape != shape:
            raise DimensionMismatch(
                f"Layer {i} has shape {layer.shape}, expected {shape}"
            )

    if len(layers) == 1:
        return layers[0].copy()

    merged = TiterTable(*shape)
    n_contradictory = 0
    for ag in range(shape[0]):
        for sr in range(shape[1]):
            cell = [layer.get(ag, sr) for layer in layers]
            titer = _merge_cell(cell)
            if titer.is_missing and any(not t.is_missing for t in cell):
                n_contradictory += 1
            merged.set(ag, sr, titer)

    if n_contradictory:
        logger.warning(
            f"{n_contradictory} cells had contradictory '<' and '>' replicates "
            f"and were merged to missing"
        )
    return merged
