"""
CartoLab Titers: titer values, titer tables and column bases.

Example:
    >>> from cartolab.titers import Titer, TiterTable
    >>> Titer.parse("<10").log_value()
    -1.0
    >>> table = TiterTable.from_strings([["320", "<10"], ["80", "40"]])
    >>> table.column_bases()
    array([5., 2.])
"""

from .titer import (
    TITER_LOG_BASE,
    Titer,
    TiterType,
    numeric_titers,
    log_titers,
    titer_types,
)

from .column_bases import (
    column_bases,
    parse_min_column_basis,
)

from .table import (
    TiterTable,
    merge_layers,
)

__all__ = [
    "TITER_LOG_BASE",
    "Titer",
    "TiterType",
    "numeric_titers",
    "log_titers",
    "titer_types",
    "column_bases",
    "parse_min_column_basis",
    "TiterTable",
    "merge_layers",
]
