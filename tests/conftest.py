"""Shared fixtures for CartoLab tests."""

import numpy as np
import pytest

from cartolab.config import OptimizerOptions
from cartolab.titers import TiterTable


SCENARIO_TITERS = [
    ["320", "160", "<10"],
    ["80", "320", "40"],
    ["*", "40", "160"],
]


def synthetic_table(
    ag_coords: np.ndarray,
    sr_coords: np.ndarray,
    column_basis: float = 8.0,
    lessthan_below: float = None,
) -> TiterTable:
    """
    Titer table whose log titers are column_basis - distance, rounded to
    whole dilutions only when they are not exact.
    """
    dists = np.sqrt(np.sum((ag_coords[:, None, :] - sr_coords[None, :, :]) ** 2, axis=2))
    titers = 10 * 2 ** (column_basis - dists)
    rows = []
    for row in titers:
        cells = []
        for t in row:
            value = max(1, int(round(t)))
            if lessthan_below is not None and value < lessthan_below:
                cells.append(f"<{int(lessthan_below)}")
            else:
                cells.append(str(value))
        rows.append(cells)
    return TiterTable.from_strings(rows)


@pytest.fixture
def scenario_table():
    return TiterTable.from_strings(SCENARIO_TITERS)


@pytest.fixture
def low_rank_coords():
    rng = np.random.default_rng(7)
    ag = rng.uniform(-3, 3, size=(8, 2))
    sr = rng.uniform(-3, 3, size=(5, 2))
    return ag, sr


@pytest.fixture
def low_rank_table(low_rank_coords):
    ag, sr = low_rank_coords
    return synthetic_table(ag, sr)


@pytest.fixture
def fast_options():
    return OptimizerOptions(num_cores=2, maxit=500)
