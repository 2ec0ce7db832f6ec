"""
CartoLab Optimization: map optimizer.

One optimization run goes Initialize -> Iterate -> Converged / MaxIter:

1. Initialize: random coordinates in a box sized by the largest table
   distance, or (dimension annealing) a lower dimensional map lifted into
   the target dimension with a small random extra coordinate.
2. Iterate: scipy.optimize.minimize on the stress value and gradient.
3. The run ends converged or at the iteration cap; both give a record.
   A run producing non-finite coordinates is discarded and restarted from
   a fresh random configuration up to ``max_retries`` times.

Many runs are launched independently in a thread pool and ranked by
stress. Every run draws from its own generator, spawned from the batch
seed together with the dimension and run number, so results do not depend
on scheduling or on the degree of parallelism.
"""

from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Iterator, List, Optional, Sequence, Union
import logging

import numpy as np
from scipy.optimize import minimize
from tqdm import tqdm

from cartolab.config import OptimizerOptions, resolve_options
from cartolab.errors import DimensionMismatch, OptimizationFailure
from cartolab.optimization.record import OptimizationRecord, StopReason
from cartolab.optimization.stress import StressProblem
from cartolab.titers.column_bases import MinColumnBasis, column_bases

logger = logging.getLogger(__name__)


@dataclass
class RelaxResult:
    """Outcome of one local optimization."""
    ag_coords: np.ndarray
    sr_coords: np.ndarray
    stress: float
    stop_reason: StopReason
    iterations: int


@dataclass
class OptimizationBatch:
    """
    Records from a batch of optimization runs, sorted by ascending stress.

    Attributes:
        records: Ranked optimization records.
        dimensions: Dimension of the maps in the batch.
    """
    records: List[OptimizationRecord] = field(default_factory=list)
    dimensions: int = 2

    @property
    def best(self) -> OptimizationRecord:
        if not self.records:
            raise ValueError("Optimization batch is empty")
        return self.records[0]

    @property
    def stresses(self) -> np.ndarray:
        return np.array([r.stress for r in self.records])

    def __len__(self) -> int:
        return len(self.records)

    def __iter__(self) -> Iterator[OptimizationRecord]:
        return iter(self.records)

    def __getitem__(self, i) -> OptimizationRecord:
        return self.records[i]


# ----------------------------------------------------------------------
# Starting configurations
# ----------------------------------------------------------------------

def random_coords(
    num_points: int,
    dimensions: int,
    box_size: float,
    rng: np.random.Generator,
) -> np.ndarray:
    """Coordinates drawn uniformly from a cube of side ``box_size`` centred at 0."""
    half = box_size / 2.0
    return rng.uniform(-half, half, size=(num_points, dimensions))


def lift_coords(
    coords: np.ndarray,
    dimensions: int,
    rng: np.random.Generator,
    noise: float = 0.1,
) -> np.ndarray:
    """
    Pad a lower dimensional configuration to ``dimensions`` with small
    random values in the new coordinates.
    """
    coords = np.asarray(coords, dtype=float)
    extra = dimensions - coords.shape[1]
    if extra < 0:
        raise DimensionMismatch(
            f"Cannot lift {coords.shape[1]}D coordinates to {dimensions}D"
        )
    return np.hstack([coords, rng.normal(0.0, noise, size=(coords.shape[0], extra))])


def default_box_size(problem: StressProblem) -> float:
    return max(1.0, problem.max_table_distance)


def _run_rng(entropy: int, dimensions: int, run: int, attempt: int = 0) -> np.random.Generator:
    key = [entropy, dimensions, run]
    if attempt:
        key.append(attempt)
    return np.random.default_rng(np.random.SeedSequence(key))


# ----------------------------------------------------------------------
# Single runs
# ----------------------------------------------------------------------

def relax(
    problem: StressProblem,
    ag_coords: np.ndarray,
    sr_coords: np.ndarray,
    options: Optional[OptimizerOptions] = None,
) -> RelaxResult:
    """
    Locally minimize stress starting from the given coordinates.

    Raises:
        OptimizationFailure: If the optimizer returns non-finite coordinates
            or stress.
    """
    options = resolve_options(options)
    ag_coords, sr_coords = problem.check_coords(ag_coords, sr_coords)
    dimensions = ag_coords.shape[1]
    x0 = np.vstack([ag_coords, sr_coords]).ravel()
    if not np.all(np.isfinite(x0)):
        raise OptimizationFailure("Starting coordinates contain non-finite values")

    result = minimize(
        problem.flat_value_and_gradient,
        x0,
        args=(dimensions,),
        jac=True,
        method=options.method,
        tol=options.tolerance,
        options={"maxiter": options.maxit},
    )

    coords = result.x.reshape(problem.num_points, dimensions)
    if not np.all(np.isfinite(coords)):
        raise OptimizationFailure(
            f"Optimizer returned non-finite coordinates ({result.message})"
        )
    ag_out = coords[: problem.num_antigens]
    sr_out = coords[problem.num_antigens:]
    stress = problem.stress(ag_out, sr_out)
    if not np.isfinite(stress):
        raise OptimizationFailure("Optimizer returned a non-finite stress")

    iterations = int(getattr(result, "nit", 0))
    stop_reason = (
        StopReason.MAX_ITERATIONS if iterations >= options.maxit
        else StopReason.CONVERGED
    )
    return RelaxResult(ag_out, sr_out, stress, stop_reason, iterations)


def optimize_once(
    problem: StressProblem,
    dimensions: int,
    rng_key,
    options: Optional[OptimizerOptions] = None,
    start_coords: Optional[np.ndarray] = None,
    box_size: Optional[float] = None,
) -> RelaxResult:
    """
    Run one optimization, retrying failed runs from fresh random starts.

    Args:
        problem: Stress problem to minimize.
        dimensions: Map dimension.
        rng_key: (entropy, run) pair identifying the run's random stream.
        options: Optimizer options.
        start_coords: Optional lower or equal dimensional stacked coordinates
            to start from (lifted to ``dimensions``); used for the first
            attempt only.
        box_size: Side of the random starting box.

    Raises:
        OptimizationFailure: If every attempt failed.
    """
    options = resolve_options(options)
    box_size = box_size if box_size is not None else default_box_size(problem)
    entropy, run = rng_key

    last_error = None
    for attempt in range(options.max_retries + 1):
        rng = _run_rng(entropy, dimensions, run, attempt)
        if start_coords is not None and attempt == 0:
            coords = lift_coords(start_coords, dimensions, rng, options.anneal_noise)
        else:
            coords = random_coords(problem.num_points, dimensions, box_size, rng)
        try:
            return relax(
                problem,
                coords[: problem.num_antigens],
                coords[problem.num_antigens:],
                options,
            )
        except OptimizationFailure as e:
            last_error = e
            logger.warning(
                f"Optimization run {run} ({dimensions}D) failed on attempt "
                f"{attempt + 1}: {e}"
            )

    raise OptimizationFailure(
        f"Optimization run {run} ({dimensions}D) failed after "
        f"{options.max_retries + 1} attempts: {last_error}"
    )


# ----------------------------------------------------------------------
# Batches of runs
# ----------------------------------------------------------------------

def _run_batch(
    problem: StressProblem,
    dimensions: int,
    num_random: int,
    entropy: int,
    options: OptimizerOptions,
    min_column_basis: MinColumnBasis,
    fixed_column_bases,
    start_coords: Sequence[np.ndarray] = (),
) -> OptimizationBatch:
    """Run random-start runs 0..num_random-1 plus one run per start configuration."""
    box_size = default_box_size(problem)
    starts = [None] * num_random + list(start_coords)
    n_runs = len(starts)

    def one_run(run: int) -> OptimizationRecord:
        result = optimize_once(
            problem,
            dimensions,
            (entropy, run),
            options,
            start_coords=starts[run],
            box_size=box_size,
        )
        return OptimizationRecord(
            ag_coords=result.ag_coords,
            sr_coords=result.sr_coords,
            min_column_basis=min_column_basis,
            fixed_column_bases=fixed_column_bases,
            stress=result.stress,
            stop_reason=result.stop_reason,
            iterations=result.iterations,
            comment="lifted" if starts[run] is not None else "",
        )

    max_workers = max(1, min(options.num_cores, n_runs))
    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        futures = [executor.submit(one_run, run) for run in range(n_runs)]
        with tqdm(
            total=n_runs,
            desc=f"{dimensions}D optimizations",
            disable=not options.report_progress,
        ) as progress:
            for _ in as_completed(futures):
                progress.update(1)
        records = [f.result() for f in futures]

    records.sort(key=lambda r: r.stress)
    n_max_it = sum(r.stop_reason == StopReason.MAX_ITERATIONS for r in records)
    if n_max_it:
        logger.info(f"{n_max_it} of {n_runs} runs stopped at the iteration cap")
    logger.debug(f"{dimensions}D stresses: {[round(r.stress, 4) for r in records]}")
    return OptimizationBatch(records=records, dimensions=dimensions)


def _normalise_dimensions(dimensions: Union[int, Sequence[int]], options: OptimizerOptions) -> List[int]:
    if isinstance(dimensions, (int, np.integer)):
        dimensions = int(dimensions)
        if dimensions < 1:
            raise ValueError(f"Dimensions must be at least 1, got {dimensions}")
        if options.dim_annealing:
            return list(range(1, dimensions + 1))
        return [dimensions]

    stages = sorted(set(int(d) for d in dimensions))
    if not stages or stages[0] < 1:
        raise ValueError(f"Dimensions must be positive integers, got {list(dimensions)}")
    return stages


def optimize_problem(
    problem: StressProblem,
    dimensions: Union[int, Sequence[int]] = 2,
    num_optimizations: int = 100,
    min_column_basis: MinColumnBasis = "none",
    fixed_column_bases=None,
    options: Optional[OptimizerOptions] = None,
    seed: Optional[int] = None,
) -> OptimizationBatch:
    """
    Multi-start optimization of a prepared stress problem.

    See optimize_map for the arguments. With several stages (dimension
    annealing) each stage waits for the previous one and adds one run
    started from its best map; the last stage's batch is returned.
    """
    options = resolve_options(options)
    if num_optimizations < 1:
        raise ValueError(f"num_optimizations must be at least 1, got {num_optimizations}")

    stages = _normalise_dimensions(dimensions, options)
    entropy = np.random.SeedSequence(seed).entropy

    batch = None
    for dims in stages:
        starts = [batch.best.coords] if batch is not None else []
        if batch is not None:
            logger.info(f"Annealing: seeding {dims}D from best {batch.dimensions}D map")
        logger.info(f"Running {num_optimizations + len(starts)} optimizations in {dims}D")
        batch = _run_batch(
            problem,
            dims,
            num_optimizations,
            entropy,
            options,
            min_column_basis,
            fixed_column_bases,
            start_coords=starts,
        )
        logger.info(f"Best {dims}D stress: {batch.best.stress:.4f}")

    return batch


def optimize_map(
    table,
    dimensions: Union[int, Sequence[int]] = 2,
    num_optimizations: int = 100,
    min_column_basis: MinColumnBasis = "none",
    fixed_column_bases=None,
    options: Optional[OptimizerOptions] = None,
    seed: Optional[int] = None,
) -> OptimizationBatch:
    """
    Find antigenic maps for a titer table by multi-start optimization.

    Args:
        table: TiterTable to fit.
        dimensions: Target dimension, or a sequence of dimensions to anneal
            through from low to high. An int with ``options.dim_annealing``
            anneals through 1..dimensions.
        num_optimizations: Random-start runs per dimension.
        min_column_basis: Minimum column basis policy.
        fixed_column_bases: Optional per-serum fixed column bases.
        options: Optimizer options (global default if None).
        seed: Seed for reproducible runs.

    Returns:
        OptimizationBatch sorted by ascending stress.

    Example:
        >>> table = TiterTable.from_strings([["320", "160"], ["80", "320"]])
        >>> batch = optimize_map(table, dimensions=2, num_optimizations=10,
        ...                      min_column_basis="1280", seed=1)
        >>> batch.best.stress < 1e-6
        True
    """
    bases = column_bases(table, min_column_basis, fixed_column_bases)
    problem = StressProblem.from_table(table, bases)
    return optimize_problem(
        problem,
        dimensions=dimensions,
        num_optimizations=num_optimizations,
        min_column_basis=min_column_basis,
        fixed_column_bases=fixed_column_bases,
        options=options,
        seed=seed,
    )


def anneal_dimensions(
    table,
    dimensions: Sequence[int],
    num_optimizations: int = 100,
    min_column_basis: MinColumnBasis = "none",
    fixed_column_bases=None,
    options: Optional[OptimizerOptions] = None,
    seed: Optional[int] = None,
) -> OptimizationBatch:
    """Dimension annealing through ``dimensions`` (low to high)."""
    return optimize_map(
        table,
        dimensions=list(dimensions),
        num_optimizations=num_optimizations,
        min_column_basis=min_column_basis,
        fixed_column_bases=fixed_column_bases,
        options=options,
        seed=seed,
    )


# ----------------------------------------------------------------------
# Working on existing records
# ----------------------------------------------------------------------

def relax_record(
    record: OptimizationRecord,
    table,
    options: Optional[OptimizerOptions] = None,
    one_step: bool = False,
) -> OptimizationRecord:
    """Relax an existing map further (or by a single iteration)."""
    options = resolve_options(options)
    if one_step:
        options = options.updated(maxit=1)
    result = relax(record.stress_problem(table), record.ag_coords, record.sr_coords, options)
    return record.with_coords(
        result.ag_coords,
        result.sr_coords,
        stress=result.stress,
        stop_reason=result.stop_reason,
        iterations=result.iterations,
    )


def randomize_record(record: OptimizationRecord, table, seed: Optional[int] = None) -> OptimizationRecord:
    """Replace a record's coordinates with a random configuration."""
    problem = record.stress_problem(table)
    rng = np.random.default_rng(seed)
    coords = random_coords(problem.num_points, record.dimensions, default_box_size(problem), rng)
    ag_coords = coords[: record.num_antigens]
    sr_coords = coords[record.num_antigens:]
    return record.with_coords(
        ag_coords,
        sr_coords,
        stress=problem.stress(ag_coords, sr_coords),
    )
