"""
CartoLab Analysis: dimension testing.

Cross-validation of map dimensionality: hide a random subset of the
observed titers, optimize maps of each candidate dimension on the remaining
titers, and predict the hidden log titers from the resulting maps as

    predicted = column_basis[serum] - map_distance

Repeating this over many random subsets gives a distribution of prediction
error per dimension. Scoring is left to the caller; summarize_dimension_test
gives the usual RMSE summary.
"""

from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple
import logging

import numpy as np
import pandas as pd
from tqdm import tqdm

from cartolab.config import OptimizerOptions, resolve_options
from cartolab.optimization.optimizer import optimize_problem
from cartolab.optimization.stress import StressProblem
from cartolab.titers.column_bases import MinColumnBasis, column_bases
from cartolab.titers.titer import TiterType

logger = logging.getLogger(__name__)


@dataclass
class DimTestOutput:
    """
    Result of one dimension test replicate.

    Attributes:
        test_indices: Row-major flat indices of the held-out cells.
        dims: Dimensions tested.
        coords: Best stacked (antigens then sera) coordinates per dimension.
        predictions: Predicted log titers of the held-out cells per dimension.
        table_shape: (num_antigens, num_sera) of the tested table.
    """
    test_indices: np.ndarray
    dims: List[int]
    coords: List[np.ndarray] = field(default_factory=list)
    predictions: List[np.ndarray] = field(default_factory=list)
    table_shape: Tuple[int, int] = (0, 0)

    @property
    def test_cells(self) -> Tuple[np.ndarray, np.ndarray]:
        """Antigen and serum indices of the held-out cells."""
        return np.unravel_index(self.test_indices, self.table_shape)

    def to_dict(self):
        return {
            "test_indices": self.test_indices.tolist(),
            "dim": list(self.dims),
            "coords": [c.tolist() for c in self.coords],
            "predictions": [p.tolist() for p in self.predictions],
        }


def _predict(coords: np.ndarray, bases: np.ndarray, ag: np.ndarray, sr: np.ndarray, num_antigens: int) -> np.ndarray:
    dists = np.sqrt(np.sum((coords[ag] - coords[num_antigens + sr]) ** 2, axis=1))
    return bases[sr] - dists


def dimension_test(
    table,
    dimensions_to_test: Sequence[int] = (1, 2, 3, 4, 5),
    test_proportion: float = 0.1,
    min_column_basis: MinColumnBasis = "none",
    fixed_column_bases=None,
    num_optimizations: int = 100,
    replicates: int = 1,
    options: Optional[OptimizerOptions] = None,
    seed: Optional[int] = None,
) -> List[DimTestOutput]:
    """
    Run dimension test replicates on a titer table.

    Args:
        table: TiterTable to test.
        dimensions_to_test: Candidate map dimensions.
        test_proportion: Fraction of observed titers held out per replicate.
        min_column_basis: Minimum column basis policy.
        fixed_column_bases: Optional per-serum fixed column bases.
        num_optimizations: Optimization runs per dimension and replicate.
        replicates: Number of random held-out subsets.
        options: Optimizer options.
        seed: Seed for reproducible replicates.

    Returns:
        One DimTestOutput per replicate.
    """
    if not 0 < test_proportion < 1:
        raise ValueError(f"test_proportion must lie in (0, 1), got {test_proportion}")
    if replicates < 1:
        raise ValueError(f"replicates must be at least 1, got {replicates}")

    options = resolve_options(options)
    dims = sorted(set(int(d) for d in dimensions_to_test))
    observed = table.observed_indices()
    if observed.size == 0:
        raise ValueError("Cannot run a dimension test on a table without titers")
    n_test = max(1, int(round(test_proportion * observed.size)))

    logger.info(
        f"Dimension test: {replicates} replicates, dimensions {dims}, "
        f"holding out {n_test} of {observed.size} titers"
    )

    results = []
    seeds = np.random.SeedSequence(seed).spawn(replicates)
    for rep_seed in tqdm(seeds, desc="Dimension test", disable=not options.report_progress):
        rng = np.random.default_rng(rep_seed)
        test_indices = np.sort(rng.choice(observed, size=n_test, replace=False))
        ag, sr = np.unravel_index(test_indices, table.shape)

        training = table.mask(test_indices)
        bases = column_bases(training, min_column_basis, fixed_column_bases)
        problem = StressProblem.from_table(training, bases)

        output = DimTestOutput(test_indices=test_indices, dims=dims, table_shape=table.shape)
        for dim in dims:
            batch = optimize_problem(
                problem,
                dimensions=dim,
                num_optimizations=num_optimizations,
                min_column_basis=min_column_basis,
                fixed_column_bases=fixed_column_bases,
                options=options,
                seed=int(rng.integers(2 ** 32)),
            )
            coords = batch.best.coords
            output.coords.append(coords)
            output.predictions.append(_predict(coords, bases, ag, sr, table.num_antigens))
        results.append(output)

    return results


def _prediction_errors(predictions, log_titers, types) -> Tuple[np.ndarray, np.ndarray]:
    measured = types == TiterType.MEASURED.value
    lessthan = types == TiterType.LESSTHAN.value
    morethan = types == TiterType.MORETHAN.value

    detectable = predictions[measured] - log_titers[measured]
    nondetectable = np.concatenate([
        np.maximum(predictions[lessthan] - log_titers[lessthan], 0.0),
        np.maximum(log_titers[morethan] - predictions[morethan], 0.0),
    ])
    return detectable, nondetectable


def _rmse(errors: np.ndarray) -> float:
    if errors.size == 0:
        return float("nan")
    return float(np.sqrt(np.mean(errors ** 2)))


def summarize_dimension_test(results: Sequence[DimTestOutput], table) -> pd.DataFrame:
    """
    Summarize prediction error per dimension.

    Detectable errors compare predictions with measured log titers.
    Non-detectable errors count only predictions on the wrong side of a
    censored bound.

    Returns:
        DataFrame with columns dimensions, mean_rmse_detectable,
        sd_rmse_detectable, mean_rmse_nondetectable, sd_rmse_nondetectable,
        replicates.
    """
    log_titers = table.log_titers.ravel()
    types = table.titer_types.ravel()

    per_dim = {}
    for result in results:
        truth = log_titers[result.test_indices]
        test_types = types[result.test_indices]
        for dim, predictions in zip(result.dims, result.predictions):
            detectable, nondetectable = _prediction_errors(predictions, truth, test_types)
            per_dim.setdefault(dim, ([], []))
            per_dim[dim][0].append(_rmse(detectable))
            per_dim[dim][1].append(_rmse(nondetectable))

    rows = []
    for dim in sorted(per_dim):
        detectable, nondetectable = (np.array(v) for v in per_dim[dim])
        rows.append({
            "dimensions": dim,
            "mean_rmse_detectable": _nanmean(detectable),
            "sd_rmse_detectable": _nanstd(detectable),
            "mean_rmse_nondetectable": _nanmean(nondetectable),
            "sd_rmse_nondetectable": _nanstd(nondetectable),
            "replicates": len(detectable),
        })
    return pd.DataFrame(rows)


def _nanmean(values: np.ndarray) -> float:
    values = values[np.isfinite(values)]
    return float(np.mean(values)) if values.size else float("nan")


def _nanstd(values: np.ndarray) -> float:
    values = values[np.isfinite(values)]
    return float(np.std(values)) if values.size else float("nan")
