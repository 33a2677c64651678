"""
Comprehensive tests for the HMRF-ICM segmentation engine.

Tests cover:
- Configuration presets and serialization
- Energy and local cost consistency
- ICM monotonicity and fixed points
- End-to-end two-band scenario
- Equivalence with the finite mixture baseline at beta = 0
- Parallel sweeps, cancellation and callbacks
"""

import warnings

import pytest
import numpy as np
from numpy.testing import assert_allclose, assert_array_equal

from tissue_hmrf.errors import (
    DegenerateClassError,
    NonConvergenceWarning,
    SingularVarianceWarning,
    ShapeMismatchError,
)
from tissue_hmrf.hmrf import HMRFConfig, HMRFSegmenter, fit_hmrf
from tissue_hmrf.mixture import fit_finite_mixture
from tissue_hmrf.otsu import otsu_init
from tissue_hmrf.potentials import ContrastSensitivePotential
from tissue_hmrf.tissue import MixtureParameters
from tissue_hmrf.volume import VoxelGrid, build_neighborhood


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def phantom_setup(phantom_grid):
    """Masked intensities, neighbourhood and Otsu parameters of the phantom."""
    nbh = build_neighborhood(phantom_grid)
    params = otsu_init(phantom_grid.values, n_classes=3)
    return phantom_grid.values, nbh, params


@pytest.fixture
def block_volume(rng):
    """Three cleanly separated slabs along x with mild noise."""
    shape = (12, 10, 10)
    intensities = np.empty(shape)
    intensities[:4] = 50.0
    intensities[4:8] = 125.0
    intensities[8:] = 200.0
    intensities += rng.normal(0, 4.0, shape)
    grid = VoxelGrid(intensities=intensities, mask=np.ones(shape, dtype=bool))
    truth = np.repeat([0, 1, 2], 4 * 10 * 10)
    return grid, build_neighborhood(grid), truth


# =============================================================================
# Configuration Tests
# =============================================================================


class TestHMRFConfig:
    """Tests for HMRFConfig presets and validation."""

    def test_defaults(self):
        """Default configuration matches the documented values."""
        config = HMRFConfig.default()
        assert config.beta == 0.1
        assert config.potential == "potts"
        assert config.sweep_policy == "checkerboard"
        assert config.floor_variance
        assert not config.bias_correction

    def test_presets(self):
        """fast() loosens and accurate() tightens the tolerance."""
        assert HMRFConfig.fast().tol > HMRFConfig.default().tol
        assert HMRFConfig.accurate().tol < HMRFConfig.default().tol
        assert HMRFConfig.accurate().sweeps_per_iteration > 1

    def test_dict_round_trip(self):
        """to_dict/from_dict preserve every field."""
        config = HMRFConfig(beta=0.3, potential="contrast", sweep_policy="synchronous",
                            bias_correction=True, n_workers=2, baseline_tol=1e-4)
        restored = HMRFConfig.from_dict(config.to_dict())
        assert restored == config

    def test_from_partial_dict(self):
        """Missing keys fall back to defaults."""
        config = HMRFConfig.from_dict({"beta": 0.4})
        assert config.beta == 0.4
        assert config.max_iter == HMRFConfig().max_iter

    @pytest.mark.parametrize("kwargs", [
        {"beta": -1.0},
        {"max_iter": 0},
        {"baseline_tol": -1.0},
        {"sweeps_per_iteration": 0},
        {"sweep_policy": "random"},
        {"n_workers": 0},
    ])
    def test_invalid_values(self, kwargs):
        """Out-of-range settings are rejected."""
        with pytest.raises(ValueError):
            HMRFConfig(**kwargs)

    def test_create_potential(self):
        """The configured potential carries beta and sigma."""
        potential = HMRFConfig(beta=0.2, potential="contrast", contrast_sigma=7.0).create_potential()
        assert isinstance(potential, ContrastSensitivePotential)
        assert potential.beta == 0.2
        assert potential.sigma == 7.0


# =============================================================================
# Energy and Sweep Tests
# =============================================================================


class TestEnergy:
    """Tests for energy and local cost."""

    def test_local_cost_matches_energy_difference(self, phantom_setup, rng):
        """Changing one label changes E by the difference in local cost."""
        y, nbh, params = phantom_setup
        segmenter = HMRFSegmenter(y, nbh, HMRFConfig(beta=0.7))
        labels = rng.integers(0, 3, nbh.num_voxels)

        i = nbh.num_voxels // 2
        cost = segmenter.local_cost(np.array([i]), labels, params, y)[0]
        base = segmenter.energy(labels, params)

        for s in range(3):
            changed = labels.copy()
            changed[i] = s
            assert_allclose(
                segmenter.energy(changed, params) - base,
                cost[s] - cost[labels[i]],
                rtol=1e-9, atol=1e-6,
            )

    def test_initial_labels_are_density_argmax(self, phantom_setup):
        """Initial labels maximise the class density."""
        y, nbh, params = phantom_setup
        segmenter = HMRFSegmenter(y, nbh)
        labels = segmenter.initial_labels(params)

        expected = np.argmin(
            (y[:, None] - params.means) ** 2 / (2 * params.variances)
            + 0.5 * np.log(params.variances),
            axis=1,
        )
        assert_array_equal(labels, expected)

    def test_length_mismatch(self, phantom_setup):
        """Intensities must match the neighbourhood size."""
        y, nbh, _ = phantom_setup
        with pytest.raises(ShapeMismatchError):
            HMRFSegmenter(y[:-1], nbh)


class TestICMSweep:
    """Tests for the ICM label update."""

    @pytest.mark.parametrize("beta", [0.0, 0.2, 1.5])
    def test_energy_non_increasing(self, phantom_setup, beta):
        """Energy never increases across consecutive sweeps."""
        y, nbh, params = phantom_setup
        segmenter = HMRFSegmenter(y, nbh, HMRFConfig(beta=beta))
        labels = segmenter.initial_labels(params)

        energies = [segmenter.energy(labels, params)]
        for _ in range(6):
            segmenter.sweep(labels, params)
            energies.append(segmenter.energy(labels, params))

        energies = np.array(energies)
        assert np.all(np.diff(energies) <= 1e-9 * np.abs(energies[:-1]))

    def test_energy_non_increasing_from_random_labels(self, phantom_setup, rng):
        """Monotonicity holds from an arbitrary starting labelling."""
        y, nbh, params = phantom_setup
        segmenter = HMRFSegmenter(y, nbh, HMRFConfig(beta=0.8))
        labels = rng.integers(0, 3, nbh.num_voxels)

        previous = segmenter.energy(labels, params)
        for _ in range(5):
            segmenter.sweep(labels, params)
            current = segmenter.energy(labels, params)
            assert current <= previous + 1e-9 * abs(previous)
            previous = current

    def test_sweep_reaches_fixed_point(self, phantom_setup):
        """Repeated sweeps stop changing labels, and a fixed point stays fixed."""
        y, nbh, params = phantom_setup
        segmenter = HMRFSegmenter(y, nbh, HMRFConfig(beta=0.5))
        labels = segmenter.initial_labels(params)

        for _ in range(100):
            if segmenter.sweep(labels, params) == 0:
                break
        fixed = labels.copy()

        assert segmenter.sweep(labels, params) == 0
        assert_array_equal(labels, fixed)

    def test_large_beta_smooths(self, phantom_setup):
        """Strong smoothing removes isolated labels."""
        y, nbh, params = phantom_setup
        weak = HMRFSegmenter(y, nbh, HMRFConfig(beta=0.0))
        strong = HMRFSegmenter(y, nbh, HMRFConfig(beta=2.0))

        def disagreements(segmenter):
            labels = segmenter.initial_labels(params)
            for _ in range(10):
                segmenter.sweep(labels, params)
            edges = nbh.edges()
            return np.sum(labels[edges[:, 0]] != labels[edges[:, 1]])

        assert disagreements(strong) < disagreements(weak)

    def test_synchronous_policy(self, block_volume):
        """Snapshot sweeps also label clean slabs correctly."""
        grid, nbh, truth = block_volume
        params = otsu_init(grid.values, n_classes=3)
        segmenter = HMRFSegmenter(grid.values, nbh, HMRFConfig(beta=0.3, sweep_policy="synchronous"))
        labels = segmenter.initial_labels(params)

        segmenter.sweep(labels, params)

        assert_array_equal(labels, truth)

    def test_worker_count_does_not_change_result(self, phantom_setup):
        """Partitioned sweeps give the same labels as a single worker."""
        y, nbh, params = phantom_setup

        with warnings.catch_warnings():
            warnings.simplefilter("ignore")
            serial = fit_hmrf(y, nbh, params, config=HMRFConfig(beta=0.3, max_iter=5))
            parallel = fit_hmrf(y, nbh, params, config=HMRFConfig(beta=0.3, max_iter=5, n_workers=3))

        assert_array_equal(serial.labels, parallel.labels)
        assert_allclose(serial.params.means, parallel.params.means)
        assert_allclose(serial.posteriors, parallel.posteriors)


# =============================================================================
# Outer Loop Tests
# =============================================================================


class TestFitHMRF:
    """Tests for the alternating ICM / parameter-update loop."""

    @pytest.mark.parametrize("beta", [0.0, 0.5])
    def test_two_band_volume(self, two_band_volume, beta):
        """3x3x3 volume with two bands is labelled exactly within 3 iterations."""
        intensities, mask = two_band_volume
        grid = VoxelGrid(intensities=intensities, mask=mask)
        nbh = build_neighborhood(grid)
        params = otsu_init(grid.values, n_classes=2)

        with warnings.catch_warnings():
            warnings.simplefilter("ignore", SingularVarianceWarning)
            result = fit_hmrf(grid.values, nbh, params, beta=beta, max_iter=10)

        expected = (grid.coordinates[:, 0] == 2).astype(int)
        assert result.converged
        assert result.n_iter <= 3
        assert_array_equal(result.labels, expected)
        assert_allclose(result.params.means, [10.0, 200.0])
        assert_allclose(result.posteriors.sum(axis=1), 1.0)

    def test_phantom_segmentation(self, phantom, phantom_setup):
        """The phantom is segmented with high agreement to its hard labels."""
        y, nbh, params = phantom_setup

        result = fit_hmrf(y, nbh, params, beta=0.3)

        truth = phantom.labels[phantom.mask]
        assert np.mean(result.labels == truth) > 0.75
        assert np.all(np.diff(result.params.means) > 0)

    def test_energy_history_non_increasing_within_iteration(self, phantom_setup):
        """Energies recorded over a multi-sweep iteration never increase."""
        y, nbh, params = phantom_setup
        config = HMRFConfig(beta=0.4, sweeps_per_iteration=8, max_iter=1)

        with warnings.catch_warnings():
            warnings.simplefilter("ignore", NonConvergenceWarning)
            result = fit_hmrf(y, nbh, params, config=config)

        energies = np.array(result.energy_history)
        assert len(energies) >= 1
        assert np.all(np.diff(energies) <= 1e-9 * np.abs(energies[:-1]))

    @pytest.mark.parametrize("beta,bias_correction", [
        (0.1, False),
        (0.5, False),
        (1.0, False),
        (0.5, True),
    ])
    def test_sweeps_lower_energy_every_iteration(self, phantom_setup, beta, bias_correction):
        """Under each iteration's parameters, its sweeps never raise the energy."""
        y, nbh, params = phantom_setup

        with warnings.catch_warnings():
            warnings.simplefilter("ignore", NonConvergenceWarning)
            result = fit_hmrf(
                y, nbh, params, beta=beta, max_iter=15, bias_correction=bias_correction,
            )

        assert len(result.iteration_energies) == result.n_iter
        assert result.n_iter > 1
        for before, after in result.iteration_energies:
            assert after <= before + 1e-9 * abs(before)

    def test_idempotent_at_convergence(self, block_volume):
        """One more sweep and update after convergence changes nothing material."""
        grid, nbh, _ = block_volume
        params = otsu_init(grid.values, n_classes=3)
        config = HMRFConfig(beta=0.3, tol=1e-6)

        result = fit_hmrf(grid.values, nbh, params, config=config)
        assert result.converged

        segmenter = HMRFSegmenter(grid.values, nbh, config)
        labels = result.labels.copy()
        changes = segmenter.sweep(labels, result.params)
        new_params, _ = segmenter.update_parameters(labels, result.params)

        assert changes == 0
        assert result.params.relative_change(new_params) < config.tol

    def test_beta_zero_matches_finite_mixture(self, phantom_setup):
        """With beta = 0 the parameters follow the finite mixture EM exactly."""
        y, nbh, params = phantom_setup

        with pytest.warns(NonConvergenceWarning):
            baseline = fit_finite_mixture(y, params, max_iter=30, tol=0.0)
        with pytest.warns(NonConvergenceWarning):
            hmrf = fit_hmrf(y, nbh, params, beta=0.0, max_iter=30, tol=0.0)

        assert_allclose(hmrf.params.means, baseline.params.means, rtol=1e-10)
        assert_allclose(hmrf.params.variances, baseline.params.variances, rtol=1e-10)
        assert_allclose(hmrf.params.priors, baseline.params.priors, rtol=1e-10, atol=1e-14)
        assert_allclose(hmrf.posteriors, baseline.posteriors, rtol=1e-8, atol=1e-12)

    def test_beta_zero_converged_parameters_agree(self, phantom_setup):
        """Converged fits with beta = 0 agree with the baseline."""
        y, nbh, params = phantom_setup

        baseline = fit_finite_mixture(y, params, max_iter=500, tol=1e-9)
        hmrf = fit_hmrf(y, nbh, params, beta=0.0, max_iter=500, tol=1e-9)

        assert_allclose(hmrf.params.means, baseline.params.means, rtol=1e-5)
        assert_allclose(hmrf.params.variances, baseline.params.variances, rtol=1e-4)

    def test_non_convergence_returns_last_state(self, phantom_setup):
        """Reaching max_iter warns and still returns labels."""
        y, nbh, params = phantom_setup

        with pytest.warns(NonConvergenceWarning):
            result = fit_hmrf(y, nbh, params, beta=0.3, max_iter=1, tol=0.0)

        assert not result.converged
        assert result.n_iter == 1
        assert result.labels.shape == (nbh.num_voxels,)

    def test_degenerate_class_without_floor(self, two_band_volume):
        """Collapsed variance is fatal when flooring is disabled."""
        intensities, mask = two_band_volume
        grid = VoxelGrid(intensities=intensities, mask=mask)
        nbh = build_neighborhood(grid)
        params = MixtureParameters([0.5, 0.5], [10.0, 200.0], [25.0, 25.0])

        with pytest.raises(DegenerateClassError) as excinfo:
            fit_hmrf(grid.values, nbh, params,
                     config=HMRFConfig(beta=0.2, floor_variance=False))

        assert excinfo.value.iteration == 1
        assert excinfo.value.last_params is not None

    def test_variance_floor_reported(self, two_band_volume):
        """Flooring emits a warning and is recorded on the result."""
        intensities, mask = two_band_volume
        grid = VoxelGrid(intensities=intensities, mask=mask)
        nbh = build_neighborhood(grid)
        params = MixtureParameters([0.5, 0.5], [10.0, 200.0], [25.0, 25.0])

        with pytest.warns(SingularVarianceWarning):
            result = fit_hmrf(grid.values, nbh, params, beta=0.2)

        assert result.variance_floored

    def test_initial_params_not_mutated(self, phantom_setup):
        """The caller's parameters are left untouched."""
        y, nbh, params = phantom_setup
        before = params.copy()

        with warnings.catch_warnings():
            warnings.simplefilter("ignore")
            fit_hmrf(y, nbh, params, beta=0.2, max_iter=3)

        assert_array_equal(params.means, before.means)

    def test_explicit_arguments_override_config(self, phantom_setup):
        """beta/max_iter arguments take precedence over the config."""
        y, nbh, params = phantom_setup
        calls = []

        with warnings.catch_warnings():
            warnings.simplefilter("ignore")
            fit_hmrf(y, nbh, params, max_iter=2, tol=0.0,
                     config=HMRFConfig(max_iter=50),
                     callback=lambda state, it: calls.append(it))

        assert calls == [1, 2]


class TestCancellationAndCallbacks:
    """Tests for should_stop and callback hooks."""

    def test_should_stop_before_first_iteration(self, phantom_setup):
        """Stopping immediately returns the initial labelling."""
        y, nbh, params = phantom_setup

        result = fit_hmrf(y, nbh, params, should_stop=lambda: True)

        assert result.cancelled
        assert not result.converged
        assert result.n_iter == 0
        assert_array_equal(result.labels, result.initial_labels)
        assert_allclose(result.posteriors.sum(axis=1), 1.0)

    def test_should_stop_after_iterations(self, phantom_setup):
        """Cancellation takes effect between outer iterations."""
        y, nbh, params = phantom_setup
        counter = {"n": 0}

        def should_stop():
            counter["n"] += 1
            return counter["n"] > 2

        with warnings.catch_warnings():
            warnings.simplefilter("ignore", SingularVarianceWarning)
            result = fit_hmrf(y, nbh, params, tol=0.0, should_stop=should_stop)

        assert result.cancelled
        assert result.n_iter == 2

    def test_callback_receives_consistent_state(self, phantom_setup):
        """Callbacks see copies of labels and parameters after each iteration."""
        y, nbh, params = phantom_setup
        states = []

        result = fit_hmrf(y, nbh, params, beta=0.3,
                          callback=lambda state, it: states.append(state))

        assert len(states) == result.n_iter
        assert [s.iteration for s in states] == list(range(1, result.n_iter + 1))
        assert_array_equal(states[-1].labels, result.labels)
        assert_allclose(states[-1].params.means, result.params.means)


# =============================================================================
# Bias Field Integration Tests
# =============================================================================


class TestBiasCorrectionLoop:
    """Tests for the HMRF loop with bias field estimation."""

    def test_bias_correction_improves_biased_phantom(self):
        """Correcting a strong bias raises agreement with the true labels."""
        from tissue_hmrf.volume import make_synthetic_volume

        phantom = make_synthetic_volume(shape=(24, 28, 24), noise_std=5.0,
                                        bias_strength=0.35, seed=11)
        grid = VoxelGrid(intensities=phantom.intensities, mask=phantom.mask)
        nbh = build_neighborhood(grid)
        params = otsu_init(grid.values, n_classes=3)
        truth = phantom.labels[phantom.mask]

        with warnings.catch_warnings():
            warnings.simplefilter("ignore")
            plain = fit_hmrf(grid.values, nbh, params, beta=0.3, max_iter=30)
            corrected = fit_hmrf(grid.values, nbh, params, beta=0.3, max_iter=30,
                                 bias_correction=True)

        assert corrected.bias_field is not None
        assert corrected.bias_field.shape == (nbh.num_voxels,)
        assert np.all(corrected.bias_field > 0)
        true_bias = phantom.bias_field[phantom.mask]
        assert np.corrcoef(corrected.bias_field, true_bias)[0, 1] > 0.7
        assert np.mean(corrected.labels == truth) > np.mean(plain.labels == truth)

    def test_disabled_by_default(self, phantom_setup):
        """No bias field is estimated unless requested."""
        y, nbh, params = phantom_setup
        result = fit_hmrf(y, nbh, params, beta=0.3)
        assert result.bias_field is None
