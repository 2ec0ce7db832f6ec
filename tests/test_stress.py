"""Tests for censoring-aware stress and its gradient."""

import numpy as np
import pytest

from cartolab.errors import DimensionMismatch
from cartolab.optimization import (
    StressProblem,
    map_distances,
    map_residuals,
    point_stresses,
    stress,
    stress_and_gradient,
    table_distances,
)
from cartolab.titers import TiterTable, TiterType


def exact_problem(ag, sr, column_basis=8.0):
    """Problem whose table distances equal the map distances exactly."""
    dists = map_distances(ag, sr)
    log_titers = column_basis - dists
    types = np.full(dists.shape, TiterType.MEASURED.value)
    bases = np.full(sr.shape[0], column_basis)
    return StressProblem.from_log_titers(log_titers, types, bases)


class TestStress:
    """Tests for stress values."""

    def test_non_negative(self, scenario_table):
        """Test stress is non-negative for random configurations."""
        rng = np.random.default_rng(0)
        bases = scenario_table.column_bases()
        for _ in range(20):
            ag = rng.normal(size=(3, 2)) * 3
            sr = rng.normal(size=(3, 2)) * 3
            assert stress(ag, sr, scenario_table, bases) >= 0

    def test_zero_at_exact_configuration(self, low_rank_coords):
        """Test stress vanishes when map distances match table distances."""
        ag, sr = low_rank_coords
        problem = exact_problem(ag, sr)
        assert problem.stress(ag, sr) == pytest.approx(0.0, abs=1e-20)

    def test_measured_squared_residual(self):
        """Test a measured titer contributes the squared residual."""
        table = TiterTable.from_strings([["40"]])
        # column basis 2, table distance 0
        s = stress([[3.0, 0.0]], [[0.0, 0.0]], table, [2.0])
        assert s == pytest.approx(9.0)

    def test_lessthan_bound(self):
        """Test '<' titers only penalise points that are too close."""
        table = TiterTable.from_strings([["<10"]])
        # table distance = 2 - (-1) = 3
        assert stress([[5.0]], [[0.0]], table, [2.0]) == 0.0
        assert stress([[1.0]], [[0.0]], table, [2.0]) == pytest.approx(4.0)

    def test_morethan_bound(self):
        """Test '>' titers only penalise points that are too far apart."""
        table = TiterTable.from_strings([[">40"]])
        # table distance = 4 - 3 = 1
        assert stress([[0.5]], [[0.0]], table, [4.0]) == 0.0
        assert stress([[3.0]], [[0.0]], table, [4.0]) == pytest.approx(4.0)

    def test_missing_ignored(self):
        """Test missing titers never contribute."""
        table = TiterTable.from_strings([["*", "40"]])
        a = stress([[0.0]], [[100.0], [0.0]], table, [5.0, 2.0])
        b = stress([[0.0]], [[-100.0], [0.0]], table, [5.0, 2.0])
        assert a == b

    def test_invariant_under_rigid_motion(self, scenario_table):
        """Test stress is unchanged by rotation, reflection and translation."""
        rng = np.random.default_rng(1)
        ag = rng.normal(size=(3, 2))
        sr = rng.normal(size=(3, 2))
        theta = 0.7
        rotation = np.array([[np.cos(theta), -np.sin(theta)], [np.sin(theta), np.cos(theta)]])
        reflection = np.diag([1.0, -1.0])
        shift = np.array([4.0, -2.5])
        bases = scenario_table.column_bases()
        before = stress(ag, sr, scenario_table, bases)
        m = rotation @ reflection
        after = stress(ag @ m + shift, sr @ m + shift, scenario_table, bases)
        assert after == pytest.approx(before)

    def test_coordinate_shape_mismatch(self, scenario_table):
        """Test coordinates must match the table."""
        bases = scenario_table.column_bases()
        with pytest.raises(DimensionMismatch):
            stress(np.zeros((2, 2)), np.zeros((3, 2)), scenario_table, bases)
        with pytest.raises(DimensionMismatch):
            stress(np.zeros((3, 2)), np.zeros((3, 3)), scenario_table, bases)

    def test_column_bases_length(self, scenario_table):
        """Test column bases must match the number of sera."""
        with pytest.raises(DimensionMismatch):
            stress(np.zeros((3, 2)), np.zeros((3, 2)), scenario_table, [1.0, 2.0])


class TestGradient:
    """Tests for the analytic stress gradient."""

    def test_matches_finite_differences(self, scenario_table):
        """Test the gradient against central finite differences."""
        rng = np.random.default_rng(2)
        problem = StressProblem.from_table(scenario_table, scenario_table.column_bases())
        x = rng.normal(size=problem.num_points * 2) * 2
        _, grad = problem.flat_value_and_gradient(x, 2)

        h = 1e-6
        numeric = np.zeros_like(x)
        for i in range(x.size):
            step = np.zeros_like(x)
            step[i] = h
            plus, _ = problem.flat_value_and_gradient(x + step, 2)
            minus, _ = problem.flat_value_and_gradient(x - step, 2)
            numeric[i] = (plus - minus) / (2 * h)

        np.testing.assert_allclose(grad, numeric, rtol=1e-4, atol=1e-5)

    def test_zero_at_exact_configuration(self, low_rank_coords):
        """Test the gradient vanishes at a perfect fit."""
        ag, sr = low_rank_coords
        _, ag_grad, sr_grad = exact_problem(ag, sr).value_and_gradient(ag, sr)
        np.testing.assert_allclose(ag_grad, 0.0, atol=1e-10)
        np.testing.assert_allclose(sr_grad, 0.0, atol=1e-10)

    def test_coincident_points(self):
        """Test coincident antigen and serum give a zero, finite gradient."""
        table = TiterTable.from_strings([["40"]])
        value, ag_grad, sr_grad = stress_and_gradient([[1.0, 1.0]], [[1.0, 1.0]], table, [4.0])
        assert value == pytest.approx(4.0)
        np.testing.assert_array_equal(ag_grad, 0.0)
        np.testing.assert_array_equal(sr_grad, 0.0)


class TestPointStresses:
    """Tests for per-point stress and residual helpers."""

    def test_sum_to_twice_total(self, scenario_table):
        """Test each cell is counted once per antigen and once per serum."""
        rng = np.random.default_rng(3)
        ag = rng.normal(size=(3, 2))
        sr = rng.normal(size=(3, 2))
        bases = scenario_table.column_bases()
        ag_stress, sr_stress = point_stresses(ag, sr, scenario_table, bases)
        total = stress(ag, sr, scenario_table, bases)
        assert ag_stress.sum() == pytest.approx(total)
        assert sr_stress.sum() == pytest.approx(total)

    def test_point_stress_at_current_position(self, scenario_table):
        """Test single-point stress at a point's own position."""
        rng = np.random.default_rng(4)
        ag = rng.normal(size=(3, 2))
        sr = rng.normal(size=(3, 2))
        problem = StressProblem.from_table(scenario_table, scenario_table.column_bases())
        coords = np.vstack([ag, sr])
        ag_stress, sr_stress = problem.point_stresses(ag, sr)
        for point in range(6):
            expected = ag_stress[point] if point < 3 else sr_stress[point - 3]
            at = problem.point_stress_at(coords, point, coords[point])
            assert at[0] == pytest.approx(expected)
            value, _ = problem.point_value_and_gradient(coords, point, coords[point])
            assert value == pytest.approx(expected)

    def test_table_distances(self, scenario_table):
        """Test the table distance matrix."""
        dists = table_distances(scenario_table, scenario_table.column_bases())
        assert dists[0, 0] == 0.0
        assert dists[0, 2] == 5.0
        assert np.isnan(dists[2, 0])

    def test_map_residuals(self):
        """Test residuals are zero for satisfied bounds and NaN for missing."""
        table = TiterTable.from_strings([["<10", "40", "*"]])
        residuals = map_residuals([[0.0]], [[5.0], [1.0], [0.0]], table, [2.0, 2.0, 2.0])
        assert residuals[0, 0] == 0.0
        assert residuals[0, 1] == pytest.approx(1.0)
        assert np.isnan(residuals[0, 2])
