"""
CartoLab: antigenic cartography from titer tables.

Builds low-dimensional antigenic maps in which antigen-serum distances
reproduce the immunological distances implied by titers, including
censored ("<40", ">1280") and missing ("*") titers. CartoLab provides:
- Titer parsing, titer tables, replicate merging and column bases
- Censoring-aware stress with analytic gradients
- Multi-start and dimension-annealing map optimization
- Procrustes alignment, dimension testing, noisy bootstrap, stress blobs
  and trapped / hemisphering point diagnostics

License: MIT
"""

__version__ = "0.1.0"

from .errors import (
    CartolabError,
    InvalidTiterFormat,
    IndexOutOfRange,
    DimensionMismatch,
    OptimizationFailure,
)
from .config import (
    OptimizerOptions,
    get_optimizer_options,
    set_optimizer_options,
    reset_optimizer_options,
)
from .titers import Titer, TiterType, TiterTable, merge_layers, column_bases
from .optimization import (
    OptimizationRecord,
    OptimizationBatch,
    StopReason,
    stress,
    optimize_map,
    anneal_dimensions,
    relax_record,
)
from .analysis import (
    procrustes,
    procrustes_data,
    dimension_test,
    noisy_bootstrap,
    stress_blobs,
    check_hemisphering,
)
from .map import AntigenicMap

__all__ = [
    "CartolabError",
    "InvalidTiterFormat",
    "IndexOutOfRange",
    "DimensionMismatch",
    "OptimizationFailure",
    "OptimizerOptions",
    "get_optimizer_options",
    "set_optimizer_options",
    "reset_optimizer_options",
    "Titer",
    "TiterType",
    "TiterTable",
    "merge_layers",
    "column_bases",
    "OptimizationRecord",
    "OptimizationBatch",
    "StopReason",
    "stress",
    "optimize_map",
    "anneal_dimensions",
    "relax_record",
    "procrustes",
    "procrustes_data",
    "dimension_test",
    "noisy_bootstrap",
    "stress_blobs",
    "check_hemisphering",
    "AntigenicMap",
    "__version__",
]
