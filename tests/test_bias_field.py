"""
Tests for the smooth bias field estimator.
"""

import pytest
import numpy as np
from numpy.testing import assert_allclose

from tissue_hmrf.bias_field import BiasFieldConfig, BiasFieldEstimator, polynomial_exponents
from tissue_hmrf.tissue import MixtureParameters
from tissue_hmrf.volume import VoxelGrid, build_neighborhood


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def cube_neighborhood():
    """Fully masked 10x10x10 cube."""
    grid = VoxelGrid(intensities=np.ones((10, 10, 10)), mask=np.ones((10, 10, 10), dtype=bool))
    return grid, build_neighborhood(grid)


@pytest.fixture
def two_class_params():
    return MixtureParameters(priors=[0.5, 0.5], means=[80.0, 160.0], variances=[25.0, 25.0])


def _linear_ramp(grid, slope):
    """Multiplicative ramp along x with geometric mean 1."""
    x = grid.coordinates[:, 0].astype(float)
    t = 2.0 * x / (grid.shape[0] - 1) - 1.0
    return np.exp(slope * t)


# =============================================================================
# Configuration Tests
# =============================================================================


class TestBiasFieldConfig:
    """Tests for BiasFieldConfig."""

    def test_dict_round_trip(self):
        """to_dict/from_dict preserve all fields."""
        config = BiasFieldConfig(mode="additive", method="gaussian", degree=2, sigma=4.0)
        assert BiasFieldConfig.from_dict(config.to_dict()) == config

    @pytest.mark.parametrize("kwargs", [
        {"mode": "divisive"},
        {"method": "spline"},
        {"degree": -1},
        {"sigma": 0.0},
    ])
    def test_invalid_values(self, kwargs):
        """Unknown modes and methods are rejected."""
        with pytest.raises(ValueError):
            BiasFieldConfig(**kwargs)

    def test_polynomial_exponents(self):
        """Degree 2 in three variables has 10 monomials, constant first."""
        exps = polynomial_exponents(2)
        assert len(exps) == 10
        assert exps[0] == (0, 0, 0)
        assert all(sum(e) <= 2 for e in exps)


# =============================================================================
# Estimation Tests
# =============================================================================


class TestBiasFieldEstimator:
    """Tests for bias field estimation."""

    def test_identity(self, cube_neighborhood):
        """Identity fields leave intensities unchanged."""
        grid, nbh = cube_neighborhood
        y = np.linspace(10, 200, nbh.num_voxels)

        multiplicative = BiasFieldEstimator(nbh)
        additive = BiasFieldEstimator(nbh, BiasFieldConfig(mode="additive"))

        assert_allclose(multiplicative.correct(y, multiplicative.identity()), y)
        assert_allclose(additive.correct(y, additive.identity()), y)

    def test_recovers_multiplicative_ramp(self, cube_neighborhood, two_class_params):
        """A smooth multiplicative ramp is recovered given the true labels."""
        grid, nbh = cube_neighborhood
        labels = (grid.coordinates[:, 1] >= 5).astype(int)
        bias = _linear_ramp(grid, 0.15)
        y = two_class_params.means[labels] * bias

        estimator = BiasFieldEstimator(nbh, BiasFieldConfig(degree=2))
        estimate = estimator.estimate(y, labels, two_class_params)

        assert_allclose(estimate, bias, rtol=1e-6)
        assert_allclose(estimator.correct(y, estimate), two_class_params.means[labels], rtol=1e-6)

    def test_recovers_additive_offset(self, cube_neighborhood, two_class_params):
        """An additive quadratic offset is recovered up to its mean."""
        grid, nbh = cube_neighborhood
        labels = (grid.coordinates[:, 2] >= 5).astype(int)
        z = grid.coordinates[:, 2].astype(float)
        t = 2.0 * z / 9.0 - 1.0
        offset = 6.0 * t ** 2
        offset -= offset.mean()
        y = two_class_params.means[labels] + offset

        estimator = BiasFieldEstimator(nbh, BiasFieldConfig(mode="additive", degree=2))
        estimate = estimator.estimate(y, labels, two_class_params)

        assert_allclose(estimate, offset, atol=1e-8)

    def test_multiplicative_field_normalised(self, cube_neighborhood, two_class_params, rng):
        """Estimated multiplicative fields have geometric mean 1."""
        grid, nbh = cube_neighborhood
        labels = rng.integers(0, 2, nbh.num_voxels)
        y = two_class_params.means[labels] * 1.3 + rng.normal(0, 3, nbh.num_voxels)

        estimate = BiasFieldEstimator(nbh).estimate(y, labels, two_class_params)

        assert_allclose(np.mean(np.log(estimate)), 0.0, atol=1e-10)
        assert np.all(estimate > 0)

    def test_gaussian_method_is_smooth(self, cube_neighborhood, two_class_params, rng):
        """Gaussian smoothing suppresses voxel noise in the residual."""
        grid, nbh = cube_neighborhood
        labels = rng.integers(0, 2, nbh.num_voxels)
        bias = _linear_ramp(grid, 0.1)
        y = two_class_params.means[labels] * bias * np.exp(rng.normal(0, 0.1, nbh.num_voxels))

        estimator = BiasFieldEstimator(nbh, BiasFieldConfig(method="gaussian", sigma=2.0))
        estimate = estimator.estimate(y, labels, two_class_params)

        raw = y / two_class_params.means[labels]
        assert np.std(np.log(estimate) - np.log(bias)) < np.std(np.log(raw) - np.log(bias))

    def test_field_change(self, cube_neighborhood):
        """Field change is the largest log ratio for multiplicative fields."""
        _, nbh = cube_neighborhood
        estimator = BiasFieldEstimator(nbh)
        old = np.ones(nbh.num_voxels)
        new = old.copy()
        new[3] = np.exp(0.02)

        assert_allclose(estimator.field_change(old, new), 0.02)
        assert estimator.field_change(old, old) == 0.0

    def test_zero_intensities_ignored(self, cube_neighborhood, two_class_params):
        """Non-positive intensities do not break the log-domain fit."""
        grid, nbh = cube_neighborhood
        labels = np.zeros(nbh.num_voxels, dtype=int)
        y = np.full(nbh.num_voxels, 80.0)
        y[:10] = 0.0

        estimate = BiasFieldEstimator(nbh).estimate(y, labels, two_class_params)

        assert np.all(np.isfinite(estimate))
        assert_allclose(estimate, 1.0, atol=1e-8)
