"""Tests for multi-start map optimization and dimension annealing."""

from types import SimpleNamespace

import numpy as np
import pytest

from cartolab.config import OptimizerOptions
from cartolab.errors import OptimizationFailure
from cartolab.optimization import (
    OptimizationBatch,
    OptimizationRecord,
    StopReason,
    StressProblem,
    anneal_dimensions,
    lift_coords,
    optimize_map,
    optimize_once,
    random_coords,
    randomize_record,
    relax,
    relax_record,
)
from cartolab.optimization import optimizer as optimizer_module


class TestScenario:
    """End-to-end optimization of a small table with censored and missing titers."""

    def test_converges_with_min_column_basis(self, scenario_table, fast_options):
        """Test a table that fits exactly in 2D reaches near-zero stress."""
        batch = optimize_map(
            scenario_table,
            dimensions=2,
            num_optimizations=100,
            min_column_basis="1280",
            options=fast_options,
            seed=11,
        )
        assert len(batch) == 100
        assert batch.best.stress < 0.05

    def test_best_is_minimum(self, scenario_table, fast_options):
        """Test the batch is sorted and its best record has the lowest stress."""
        batch = optimize_map(scenario_table, num_optimizations=30, options=fast_options, seed=5)
        stresses = batch.stresses
        assert np.all(np.diff(stresses) >= 0)
        assert batch.best.stress == stresses.min()

    def test_inconsistent_table_lower_bound(self, scenario_table, fast_options):
        """Test stress cannot go below the triangle-inequality violation."""
        # ag1-sr1 0, ag2-sr2 0, ag1-sr2 1, ag2-sr1 2 cannot all hold
        batch = optimize_map(scenario_table, num_optimizations=30, options=fast_options, seed=5)
        assert batch.best.stress >= 0.25 - 1e-8

    def test_records_carry_settings(self, scenario_table, fast_options):
        """Test records remember the column basis settings and stop reason."""
        fixed = [np.nan, 6.0, np.nan]
        batch = optimize_map(
            scenario_table,
            num_optimizations=3,
            min_column_basis="40",
            fixed_column_bases=fixed,
            options=fast_options,
            seed=2,
        )
        record = batch.best
        assert record.min_column_basis == "40"
        np.testing.assert_array_equal(record.fixed_column_bases, fixed)
        assert record.stop_reason in (StopReason.CONVERGED, StopReason.MAX_ITERATIONS)
        assert record.stress == pytest.approx(record.calculate_stress(scenario_table))


class TestDeterminism:
    """Tests for reproducible optimization."""

    def test_same_seed_same_maps(self, low_rank_table):
        """Test the same seed gives the same results regardless of parallelism."""
        a = optimize_map(low_rank_table, num_optimizations=8, options=OptimizerOptions(num_cores=1), seed=3)
        b = optimize_map(low_rank_table, num_optimizations=8, options=OptimizerOptions(num_cores=4), seed=3)
        np.testing.assert_allclose(a.stresses, b.stresses, rtol=0, atol=1e-12)
        np.testing.assert_allclose(a.best.coords, b.best.coords, rtol=0, atol=1e-12)

    def test_different_seeds_differ(self, low_rank_table, fast_options):
        """Test different seeds start from different configurations."""
        a = optimize_map(low_rank_table, num_optimizations=4, options=fast_options, seed=1)
        b = optimize_map(low_rank_table, num_optimizations=4, options=fast_options, seed=2)
        assert not np.allclose(a.best.coords, b.best.coords)


class TestAnnealing:
    """Tests for dimension annealing."""

    def test_not_worse_than_direct(self, low_rank_table, fast_options):
        """Test annealing 1 -> 3 is never worse than a direct 3D run."""
        direct = optimize_map(low_rank_table, dimensions=3, num_optimizations=10, options=fast_options, seed=9)
        annealed = anneal_dimensions(
            low_rank_table, [1, 2, 3], num_optimizations=10, options=fast_options, seed=9
        )
        assert annealed.dimensions == 3
        assert annealed.best.dimensions == 3
        assert annealed.best.stress <= direct.best.stress + 1e-9

    def test_lifted_run_added(self, low_rank_table, fast_options):
        """Test each annealing stage adds one run seeded from the previous stage."""
        annealed = anneal_dimensions(low_rank_table, [1, 2], num_optimizations=5, options=fast_options, seed=4)
        assert len(annealed) == 6
        assert sum(r.comment == "lifted" for r in annealed) == 1

    def test_option_flag(self, low_rank_table, fast_options):
        """Test dim_annealing anneals an integer dimension from 1."""
        options = fast_options.updated(dim_annealing=True)
        batch = optimize_map(low_rank_table, dimensions=2, num_optimizations=4, options=options, seed=4)
        assert len(batch) == 5
        assert batch.best.dimensions == 2

    @pytest.mark.parametrize("dims", [0, [0, 2], []])
    def test_invalid_dimensions(self, low_rank_table, fast_options, dims):
        """Test invalid dimensions are rejected."""
        with pytest.raises(ValueError):
            optimize_map(low_rank_table, dimensions=dims, num_optimizations=2, options=fast_options)

    def test_invalid_num_optimizations(self, low_rank_table, fast_options):
        """Test at least one optimization is required."""
        with pytest.raises(ValueError):
            optimize_map(low_rank_table, num_optimizations=0, options=fast_options)


class TestRelax:
    """Tests for relaxing existing maps and failure handling."""

    def test_relax_reduces_stress(self, low_rank_table, fast_options):
        """Test relaxing a random map never increases its stress."""
        record = OptimizationRecord.empty(2, *low_rank_table.shape)
        record = randomize_record(record, low_rank_table, seed=1)
        relaxed = relax_record(record, low_rank_table, fast_options)
        assert relaxed.stress <= record.stress
        assert relaxed.stress == pytest.approx(relaxed.calculate_stress(low_rank_table))

    def test_one_step(self, low_rank_table, fast_options):
        """Test a single step stops at the iteration cap."""
        record = randomize_record(OptimizationRecord.empty(2, *low_rank_table.shape), low_rank_table, seed=2)
        stepped = relax_record(record, low_rank_table, fast_options, one_step=True)
        assert stepped.iterations <= 1
        assert stepped.stop_reason == StopReason.MAX_ITERATIONS

    def test_randomize_keeps_settings(self, low_rank_table):
        """Test randomizing keeps column basis settings and shape."""
        record = OptimizationRecord.empty(3, *low_rank_table.shape, min_column_basis="80")
        randomized = randomize_record(record, low_rank_table, seed=0)
        assert randomized.dimensions == 3
        assert randomized.min_column_basis == "80"
        assert np.all(np.isfinite(randomized.coords))
        assert randomized.has_stress

    def test_non_finite_start_fails(self, scenario_table):
        """Test non-finite starting coordinates are rejected."""
        problem = StressProblem.from_table(scenario_table, scenario_table.column_bases())
        ag = np.full((3, 2), np.nan)
        with pytest.raises(OptimizationFailure):
            relax(problem, ag, np.zeros((3, 2)))

    def test_retries_exhausted(self, scenario_table, monkeypatch):
        """Test a run failing on every attempt raises OptimizationFailure."""
        calls = []

        def broken_minimize(fun, x0, **kwargs):
            calls.append(1)
            return SimpleNamespace(x=np.full_like(x0, np.nan), message="diverged", nit=1)

        monkeypatch.setattr(optimizer_module, "minimize", broken_minimize)
        problem = StressProblem.from_table(scenario_table, scenario_table.column_bases())
        options = OptimizerOptions(num_cores=1, max_retries=2)
        with pytest.raises(OptimizationFailure):
            optimize_once(problem, 2, (0, 0), options)
        assert len(calls) == 3

    def test_recovers_after_failed_attempt(self, scenario_table, monkeypatch):
        """Test a run whose first attempt diverges succeeds from a fresh start."""
        real_minimize = optimizer_module.minimize
        calls = []

        def flaky_minimize(fun, x0, **kwargs):
            calls.append(1)
            if len(calls) == 1:
                return SimpleNamespace(x=np.full_like(x0, np.nan), message="diverged", nit=1)
            return real_minimize(fun, x0, **kwargs)

        monkeypatch.setattr(optimizer_module, "minimize", flaky_minimize)
        problem = StressProblem.from_table(scenario_table, scenario_table.column_bases())
        options = OptimizerOptions(num_cores=1, max_retries=2)
        result = optimize_once(problem, 2, (0, 0), options)
        assert len(calls) == 2
        assert np.all(np.isfinite(result.ag_coords))
        assert np.all(np.isfinite(result.sr_coords))
        assert np.isfinite(result.stress)
        assert result.stress == pytest.approx(problem.stress(result.ag_coords, result.sr_coords))


class TestStartingConfigurations:
    """Tests for random and lifted starting coordinates."""

    def test_random_coords_in_box(self):
        """Test random coordinates stay inside the box."""
        coords = random_coords(50, 3, 4.0, np.random.default_rng(0))
        assert coords.shape == (50, 3)
        assert np.all(np.abs(coords) <= 2.0)

    def test_lift_coords(self):
        """Test lifting keeps existing coordinates."""
        coords = np.arange(6, dtype=float).reshape(3, 2)
        lifted = lift_coords(coords, 4, np.random.default_rng(0), noise=0.1)
        assert lifted.shape == (3, 4)
        np.testing.assert_array_equal(lifted[:, :2], coords)

    def test_empty_batch(self):
        """Test an empty batch has no best record."""
        with pytest.raises(ValueError):
            OptimizationBatch().best
