"""
CartoLab Analysis: noisy bootstrap.

Estimates how robust a map is to measurement noise by re-fitting it many
times on perturbed input:

- "titers": every observed log titer gets per-antigen noise (shared across
  the antigen's row) plus independent per-titer noise, and the map is
  re-optimized from random starts.
- "coords": the fitted coordinates are jittered and relaxed back against
  the original table.

Column bases are those of the fitted record throughout.
"""

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import List, Optional
import logging

import numpy as np
from tqdm import tqdm

from cartolab.analysis.procrustes import procrustes
from cartolab.config import OptimizerOptions, resolve_options
from cartolab.optimization.optimizer import optimize_problem, relax
from cartolab.optimization.record import OptimizationRecord
from cartolab.optimization.stress import StressProblem

logger = logging.getLogger(__name__)

PERTURBATIONS = ("titers", "coords")


@dataclass
class NoisyBootstrapResult:
    """
    Output of a noisy bootstrap.

    Attributes:
        ag_noise: (repeats, num_antigens) antigen noise drawn per repeat
            (zeros when coordinates were perturbed).
        coords: Best stacked (antigens then sera) coordinates per repeat.
        num_antigens: Number of antigens in the map.
    """
    ag_noise: np.ndarray
    coords: List[np.ndarray] = field(default_factory=list)
    num_antigens: int = 0

    @property
    def repeats(self) -> int:
        return len(self.coords)

    def aligned_coords(self, record: OptimizationRecord) -> np.ndarray:
        """Repeat coordinates Procrustes-aligned onto the record, (repeats, n_points, D)."""
        target = record.coords
        return np.stack([procrustes(c, target).apply(c) for c in self.coords])

    def _spread(self, record: OptimizationRecord) -> np.ndarray:
        deviations = self.aligned_coords(record) - record.coords[None, :, :]
        return np.sqrt(np.mean(np.sum(deviations ** 2, axis=2), axis=0))

    def antigen_spread(self, record: OptimizationRecord) -> np.ndarray:
        """Per-antigen RMS distance of the aligned repeats from the original map."""
        return self._spread(record)[: self.num_antigens]

    def serum_spread(self, record: OptimizationRecord) -> np.ndarray:
        return self._spread(record)[self.num_antigens:]

    def to_dict(self):
        return {
            "ag_noise": self.ag_noise.tolist(),
            "coords": [c.tolist() for c in self.coords],
        }


def noisy_bootstrap(
    table,
    record: OptimizationRecord,
    bootstrap_repeats: int = 100,
    ag_noise_sd: float = 0.7,
    titer_noise_sd: float = 0.7,
    perturb: str = "titers",
    coord_noise_sd: float = 0.5,
    num_optimizations: int = 100,
    options: Optional[OptimizerOptions] = None,
    seed: Optional[int] = None,
) -> NoisyBootstrapResult:
    """
    Run a noisy bootstrap around an optimized map.

    Args:
        table: TiterTable the record was fitted to.
        record: The optimized map.
        bootstrap_repeats: Number of perturbed re-fits.
        ag_noise_sd: SD of the per-antigen log titer noise ("titers").
        titer_noise_sd: SD of the per-titer log titer noise ("titers").
        perturb: "titers" or "coords".
        coord_noise_sd: SD of the coordinate jitter ("coords").
        num_optimizations: Optimization runs per repeat ("titers").
        options: Optimizer options.
        seed: Seed for reproducible repeats.

    Returns:
        NoisyBootstrapResult.
    """
    if perturb not in PERTURBATIONS:
        raise ValueError(f"perturb must be one of {PERTURBATIONS}, got '{perturb}'")
    if bootstrap_repeats < 1:
        raise ValueError(f"bootstrap_repeats must be at least 1, got {bootstrap_repeats}")
    for name, value in (
        ("ag_noise_sd", ag_noise_sd),
        ("titer_noise_sd", titer_noise_sd),
        ("coord_noise_sd", coord_noise_sd),
    ):
        if value < 0:
            raise ValueError(f"{name} cannot be negative, got {value}")

    options = resolve_options(options)
    problem = record.stress_problem(table)
    seeds = np.random.SeedSequence(seed).spawn(bootstrap_repeats)
    logger.info(f"Noisy bootstrap: {bootstrap_repeats} repeats perturbing {perturb}")

    if perturb == "titers":
        bases = record.column_bases(table)
        log_titers = table.log_titers
        types = table.titer_types

        ag_noise = np.zeros((bootstrap_repeats, table.num_antigens))
        coords = []
        for i, rep_seed in enumerate(
            tqdm(seeds, desc="Noisy bootstrap", disable=not options.report_progress)
        ):
            rng = np.random.default_rng(rep_seed)
            ag_noise[i] = rng.normal(0.0, ag_noise_sd, table.num_antigens)
            titer_noise = rng.normal(0.0, titer_noise_sd, table.shape)
            noisy = StressProblem.from_log_titers(
                log_titers + ag_noise[i][:, None] + titer_noise, types, bases
            )
            batch = optimize_problem(
                noisy,
                dimensions=record.dimensions,
                num_optimizations=num_optimizations,
                min_column_basis=record.min_column_basis,
                fixed_column_bases=record.fixed_column_bases,
                options=options.updated(dim_annealing=False, report_progress=False),
                seed=int(rng.integers(2 ** 32)),
            )
            coords.append(batch.best.coords)

    else:
        ag_noise = np.zeros((bootstrap_repeats, table.num_antigens))
        start = record.coords
        n_ag = record.num_antigens

        def one_repeat(rep_seed) -> np.ndarray:
            rng = np.random.default_rng(rep_seed)
            jittered = start + rng.normal(0.0, coord_noise_sd, start.shape)
            result = relax(problem, jittered[:n_ag], jittered[n_ag:], options)
            return np.vstack([result.ag_coords, result.sr_coords])

        with ThreadPoolExecutor(max_workers=min(options.num_cores, bootstrap_repeats)) as executor:
            coords = list(executor.map(one_repeat, seeds))

    return NoisyBootstrapResult(
        ag_noise=ag_noise,
        coords=coords,
        num_antigens=table.num_antigens,
    )
