"""Tests for Procrustes alignment."""

import numpy as np
import pytest

from cartolab.analysis import procrustes, procrustes_data, procrustes_records
from cartolab.errors import DimensionMismatch
from cartolab.optimization import OptimizationRecord


def rotation_2d(theta):
    return np.array([[np.cos(theta), -np.sin(theta)], [np.sin(theta), np.cos(theta)]])


@pytest.fixture
def points():
    return np.random.default_rng(12).normal(size=(10, 2)) * 3


class TestProcrustes:
    """Tests for fitting similarity transforms."""

    def test_recovers_rotation_translation(self, points):
        """Test a rotated and shifted copy is aligned exactly."""
        target = points @ rotation_2d(0.8) + np.array([2.0, -3.0])
        fit = procrustes(points, target)
        np.testing.assert_allclose(fit.apply(points), target, atol=1e-10)
        np.testing.assert_allclose(fit.rotation, rotation_2d(0.8), atol=1e-10)
        assert fit.scale == 1.0

    def test_recovers_scale(self, points):
        """Test uniform scaling is recovered when requested."""
        target = 2.5 * points @ rotation_2d(-0.4) + 1.0
        fit = procrustes(points, target, scaling=True)
        assert fit.scale == pytest.approx(2.5)
        np.testing.assert_allclose(fit.apply(points), target, atol=1e-10)

    def test_no_scaling_by_default(self, points):
        """Test scale stays 1 without scaling."""
        fit = procrustes(points, 2.0 * points)
        assert fit.scale == 1.0

    def test_reflection(self, points):
        """Test mirrored maps are aligned."""
        target = points @ np.diag([1.0, -1.0])
        fit = procrustes(points, target)
        np.testing.assert_allclose(fit.apply(points), target, atol=1e-10)

    def test_rotation_orthogonal(self, points):
        """Test the fitted rotation is orthogonal for noisy data."""
        noisy = points + np.random.default_rng(0).normal(0, 0.3, points.shape)
        fit = procrustes(points, noisy, scaling=True)
        np.testing.assert_allclose(fit.rotation @ fit.rotation.T, np.eye(2), atol=1e-10)

    def test_nan_rows_excluded(self, points):
        """Test points with NaN coordinates are ignored in the fit."""
        target = points @ rotation_2d(1.3) + 4.0
        target[0] = np.nan
        source = points.copy()
        source[1] = np.nan
        fit = procrustes(source, target)
        np.testing.assert_allclose(fit.apply(points[2:]), target[2:], atol=1e-10)

    def test_no_valid_points(self):
        """Test alignment needs at least one complete point pair."""
        with pytest.raises(ValueError):
            procrustes(np.full((3, 2), np.nan), np.zeros((3, 2)))

    def test_mismatched_points(self, points):
        """Test point counts and dimensions must agree."""
        with pytest.raises(DimensionMismatch):
            procrustes(points, points[:-1])
        with pytest.raises(DimensionMismatch):
            procrustes(points, np.hstack([points, points]))

    def test_to_dict(self, points):
        """Test serialization keys."""
        data = procrustes(points, points).to_dict()
        assert set(data) == {"R", "tt", "s"}


class TestProcrustesData:
    """Tests for Procrustes residual summaries."""

    def test_identical_maps(self, points):
        """Test congruent maps have zero residuals."""
        m = rotation_2d(0.2)
        data = procrustes_data(points[:6], points[6:], points[:6] @ m, points[6:] @ m)
        np.testing.assert_allclose(data.ag_dists, 0.0, atol=1e-10)
        np.testing.assert_allclose(data.sr_dists, 0.0, atol=1e-10)
        assert data.total_rmsd == pytest.approx(0.0, abs=1e-10)

    def test_rmsd(self, points):
        """Test RMSD values from a single displaced point."""
        target = points.copy()
        target[0] += np.array([5.0, 0.0])
        data = procrustes_data(points[:6], points[6:], target[:6], target[6:], translation=False)
        assert data.ag_dists.shape == (6,)
        assert data.sr_dists.shape == (4,)
        assert data.total_rmsd == pytest.approx(
            np.sqrt(np.mean(np.concatenate([data.ag_dists, data.sr_dists]) ** 2))
        )

    def test_nan_points_get_nan_distances(self, points):
        """Test missing points report NaN residuals."""
        target = points.copy()
        target[2] = np.nan
        data = procrustes_data(points[:6], points[6:], target[:6], target[6:])
        assert np.isnan(data.ag_dists[2])
        assert np.isfinite(data.ag_rmsd)

    def test_records(self, points):
        """Test aligning optimization records."""
        a = OptimizationRecord(points[:6], points[6:])
        m = rotation_2d(2.2)
        b = OptimizationRecord(points[:6] @ m + 1.0, points[6:] @ m + 1.0)
        data = procrustes_records(a, b)
        assert data.total_rmsd == pytest.approx(0.0, abs=1e-10)
        assert set(data.to_dict()) == {"ag_dists", "sr_dists", "ag_rmsd", "sr_rmsd", "total_rmsd"}

    def test_mismatched_sera(self, points):
        """Test serum sets must match."""
        with pytest.raises(DimensionMismatch):
            procrustes_data(points[:6], points[6:], points[:6], points[7:])
