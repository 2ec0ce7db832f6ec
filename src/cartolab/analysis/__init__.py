"""
CartoLab Analysis: post-hoc analyses of optimized antigenic maps.

- procrustes: align one map onto another and measure residuals
- dimtest: cross-validated prediction quality per map dimension
- bootstrap: map variability under titer or coordinate noise
- blobs: stress-based confidence regions for individual points
- diagnostics: trapped and hemisphering point detection

None of these functions modify the titer table or the records passed in.
"""

from .procrustes import (
    Procrustes,
    ProcrustesData,
    procrustes,
    procrustes_data,
    procrustes_records,
)

from .dimtest import (
    DimTestOutput,
    dimension_test,
    summarize_dimension_test,
)

from .bootstrap import (
    NoisyBootstrapResult,
    noisy_bootstrap,
)

from .blobs import (
    StressBlobGrid,
    stress_blob,
    stress_blobs,
)

from .diagnostics import (
    PointDiagnosis,
    HemispheringResult,
    check_hemisphering,
    move_trapped_points,
)

__all__ = [
    # Procrustes
    "Procrustes",
    "ProcrustesData",
    "procrustes",
    "procrustes_data",
    "procrustes_records",

    # Dimension testing
    "DimTestOutput",
    "dimension_test",
    "summarize_dimension_test",

    # Noisy bootstrap
    "NoisyBootstrapResult",
    "noisy_bootstrap",

    # Stress blobs
    "StressBlobGrid",
    "stress_blob",
    "stress_blobs",

    # Diagnostics
    "PointDiagnosis",
    "HemispheringResult",
    "check_hemisphering",
    "move_trapped_points",
]
