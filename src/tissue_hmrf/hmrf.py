"""
Hidden Markov Random Field segmentation fitted by ICM and EM.

The model combines a Gaussian intensity likelihood per tissue class with a
pairwise Markov random field prior over 6-connected neighbours. For a label
assignment x the energy is

    E(x) = sum_i [(y_i - mean_{x_i})^2 / (2 var_{x_i}) + log std_{x_i}]
           + sum_{(i, j) in edges} Psi(x_i, x_j)

where Psi is a pluggable clique potential (Potts by default, cost beta for
disagreeing neighbours).

Each outer iteration:
1. (optional) estimate the bias field and correct the intensities
2. run ICM label sweeps: every voxel takes the label minimising its local
   cost given its neighbours' current labels
3. update the parameters from the posterior
   p(s | y_i, x_Ni) ~ N(y_i; mean_s, var_s) * prior_s * exp(-U_i(s)),
   where U_i(s) is the clique cost of label s given the neighbour labels

Sweep policy:
- "checkerboard" (default): in-place updates, all even-parity voxels
  ((x + y + z) even) first, then all odd-parity voxels. No two 6-neighbours
  share a parity, so each half-sweep is equivalent to visiting its voxels
  one at a time in any order and the energy never increases.
- "synchronous": every voxel is updated from the previous sweep's snapshot.

The non-increasing energy holds for the sweeps of one outer iteration, where
the parameters and corrected intensities are fixed. The parameter update and
bias correction change E itself, so energies of different iterations are not
comparable; HMRFResult.iteration_energies records the before/after pair of
each iteration under its own parameters.

With beta = 0 the clique term vanishes and the parameter update is exactly
the finite mixture EM update.

ICM only reaches a local minimum of E; the result depends on the
initialisation (see otsu_init).
"""

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from typing import Optional, Callable, Dict, Any, List, Tuple
import logging
import warnings

import numpy as np
from numpy.typing import NDArray, ArrayLike

from .bias_field import BiasFieldConfig, BiasFieldEstimator
from .errors import NonConvergenceWarning, ShapeMismatchError
from .mixture import (
    data_cost,
    estimate_parameters,
    log_densities,
    log_priors,
    normalize_log_weights,
)
from .potentials import CliquePotential, make_potential
from .tissue import MixtureParameters, DEFAULT_MIN_VARIANCE
from .volume import NeighborhoodSystem

logger = logging.getLogger(__name__)

SWEEP_POLICIES = ("checkerboard", "synchronous")


@dataclass
class HMRFConfig:
    """
    Configuration of the HMRF-ICM fit.

    Example usage:
        # Default: beta 0.1, in-place checkerboard sweeps
        config = HMRFConfig.default()

        # Few iterations, loose tolerance
        config = HMRFConfig.fast()

        # Tight tolerance, several ICM sweeps per parameter update
        config = HMRFConfig.accurate()
    """

    # Spatial regularisation
    beta: float = 0.1  # Smoothing strength (good range 0-0.5)
    potential: str = "potts"  # "potts" or "contrast"
    contrast_sigma: float = 10.0  # Intensity scale of the contrast potential

    # Outer loop
    max_iter: int = 100  # Maximum outer (ICM + parameter update) iterations
    tol: float = 1e-5  # Relative parameter change for convergence
    label_tolerance: int = 0  # Label changes allowed at convergence
    baseline_tol: float = 1e-7  # Per-voxel log-likelihood change for the EM baseline

    # ICM sweeps
    sweeps_per_iteration: int = 1  # ICM sweeps per outer iteration
    sweep_policy: str = "checkerboard"  # "checkerboard" or "synchronous"

    # Numerical safeguards
    min_variance: float = DEFAULT_MIN_VARIANCE
    floor_variance: bool = True  # False raises DegenerateClassError instead

    # Bias field correction (disabled by default)
    bias_correction: bool = False
    bias_field: BiasFieldConfig = field(default_factory=BiasFieldConfig)

    # Data-parallel partitions of each sweep
    n_workers: int = 1

    def __post_init__(self):
        if self.beta < 0:
            raise ValueError(f"beta must be non-negative, got {self.beta}")
        if self.max_iter < 1:
            raise ValueError(f"max_iter must be at least 1, got {self.max_iter}")
        if self.baseline_tol < 0:
            raise ValueError(f"baseline_tol must be non-negative, got {self.baseline_tol}")
        if self.sweeps_per_iteration < 1:
            raise ValueError(
                f"sweeps_per_iteration must be at least 1, got {self.sweeps_per_iteration}"
            )
        if self.sweep_policy not in SWEEP_POLICIES:
            raise ValueError(
                f"Unknown sweep policy '{self.sweep_policy}'; choose from {SWEEP_POLICIES}"
            )
        if self.n_workers < 1:
            raise ValueError(f"n_workers must be at least 1, got {self.n_workers}")

    @classmethod
    def default(cls) -> "HMRFConfig":
        """Default configuration: one checkerboard sweep per parameter update."""
        return cls()

    @classmethod
    def fast(cls) -> "HMRFConfig":
        """Capped iterations and a loose tolerance for quick previews."""
        return cls(max_iter=20, tol=1e-3, label_tolerance=10, baseline_tol=1e-5)

    @classmethod
    def accurate(cls) -> "HMRFConfig":
        """Tight tolerance with several ICM sweeps per parameter update."""
        return cls(max_iter=200, tol=1e-7, sweeps_per_iteration=5, baseline_tol=1e-9)

    def create_potential(self) -> CliquePotential:
        """Clique potential described by this configuration."""
        if self.potential == "contrast":
            return make_potential(self.potential, self.beta, sigma=self.contrast_sigma)
        return make_potential(self.potential, self.beta)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "beta": self.beta,
            "potential": self.potential,
            "contrast_sigma": self.contrast_sigma,
            "max_iter": self.max_iter,
            "tol": self.tol,
            "label_tolerance": self.label_tolerance,
            "baseline_tol": self.baseline_tol,
            "sweeps_per_iteration": self.sweeps_per_iteration,
            "sweep_policy": self.sweep_policy,
            "min_variance": self.min_variance,
            "floor_variance": self.floor_variance,
            "bias_correction": self.bias_correction,
            "bias_field": self.bias_field.to_dict(),
            "n_workers": self.n_workers,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HMRFConfig":
        """Create from dictionary."""
        return cls(
            beta=data.get("beta", 0.1),
            potential=data.get("potential", "potts"),
            contrast_sigma=data.get("contrast_sigma", 10.0),
            max_iter=data.get("max_iter", 100),
            tol=data.get("tol", 1e-5),
            label_tolerance=data.get("label_tolerance", 0),
            baseline_tol=data.get("baseline_tol", 1e-7),
            sweeps_per_iteration=data.get("sweeps_per_iteration", 1),
            sweep_policy=data.get("sweep_policy", "checkerboard"),
            min_variance=data.get("min_variance", DEFAULT_MIN_VARIANCE),
            floor_variance=data.get("floor_variance", True),
            bias_correction=data.get("bias_correction", False),
            bias_field=BiasFieldConfig.from_dict(data.get("bias_field", {})),
            n_workers=data.get("n_workers", 1),
        )


@dataclass
class HMRFState:
    """
    Consistent state between outer iterations.

    Attributes:
        iteration: Number of completed outer iterations.
        labels: Current hard labels, (N,).
        params: Current mixture parameters.
        bias_field: Current bias field, or None when correction is disabled.
        label_changes: Labels changed during this iteration's sweeps.
        param_change: Relative parameter change of this iteration's update.
        energy: Energy after this iteration's last sweep.
    """

    iteration: int
    labels: NDArray[np.int64]
    params: MixtureParameters
    bias_field: Optional[NDArray[np.float64]] = None
    label_changes: int = 0
    param_change: float = float("inf")
    energy: float = float("nan")


@dataclass
class HMRFResult:
    """
    Result of the HMRF fit.

    Attributes:
        labels: Final hard labels, (N,).
        posteriors: Posterior class probabilities given the final labels and
                    parameters, (N, K).
        params: Final mixture parameters.
        n_iter: Number of outer iterations performed.
        converged: Whether the convergence criteria were met.
        cancelled: Whether the caller stopped the fit early.
        initial_labels: Labels before the first sweep (arg-max class density).
        energy_history: Energy after every completed sweep. Parameter updates
                        change E, so values are only comparable within one
                        outer iteration.
        iteration_energies: (before, after) energy of the label sweeps of each
                            outer iteration, both under that iteration's
                            parameters and corrected intensities.
        label_changes_history: Labels changed in every completed sweep.
        bias_field: Final bias field (None when correction is disabled).
        variance_floored: Whether any update floored a class variance.
    """

    labels: NDArray[np.int64]
    posteriors: NDArray[np.float64]
    params: MixtureParameters
    n_iter: int
    converged: bool
    cancelled: bool = False
    initial_labels: Optional[NDArray[np.int64]] = None
    energy_history: List[float] = field(default_factory=list)
    iteration_energies: List[Tuple[float, float]] = field(default_factory=list)
    label_changes_history: List[int] = field(default_factory=list)
    bias_field: Optional[NDArray[np.float64]] = None
    variance_floored: bool = False


class HMRFSegmenter:
    """
    HMRF tissue segmenter over a fixed set of masked voxels.

    Holds the intensities, neighbourhood and configuration; the label field
    and parameters are passed in and returned explicitly so several fits can
    share one segmenter.
    """

    def __init__(
        self,
        intensities: ArrayLike,
        neighborhood: NeighborhoodSystem,
        config: Optional[HMRFConfig] = None,
        potential: Optional[CliquePotential] = None,
    ):
        """
        Initialize the segmenter.

        Args:
            intensities: Masked voxel intensities, (N,), in voxel index order.
            neighborhood: Neighbourhood system of the same voxels.
            config: Fit configuration (defaults if None).
            potential: Clique potential; overrides config.potential/beta.
        """
        self.intensities = np.asarray(intensities, dtype=np.float64).ravel()
        self.neighborhood = neighborhood
        self.config = config or HMRFConfig.default()
        self.potential = potential or self.config.create_potential()

        if len(self.intensities) != neighborhood.num_voxels:
            raise ShapeMismatchError(
                f"Got {len(self.intensities)} intensities for "
                f"{neighborhood.num_voxels} voxels"
            )

        parity = neighborhood.parity
        self._colors = [np.flatnonzero(parity == 0), np.flatnonzero(parity == 1)]
        self._all = np.arange(neighborhood.num_voxels)
        self._pool: Optional[ThreadPoolExecutor] = None

    # ------------------------------------------------------------------
    # Energies and local costs
    # ------------------------------------------------------------------

    def initial_labels(
        self,
        params: MixtureParameters,
        intensities: Optional[NDArray[np.float64]] = None,
    ) -> NDArray[np.int64]:
        """Arg-max of the class densities (arg-min of the data cost)."""
        y = self.intensities if intensities is None else intensities
        return np.argmin(data_cost(y, params), axis=1)

    def energy(
        self,
        labels: NDArray[np.int64],
        params: MixtureParameters,
        intensities: Optional[NDArray[np.float64]] = None,
    ) -> float:
        """Total energy E(x): data term plus clique term over unordered edges."""
        y = self.intensities if intensities is None else intensities
        cost = data_cost(y, params)
        data_term = float(np.sum(cost[self._all, labels]))
        return data_term + self.potential.energy(y, labels, self.neighborhood)

    def local_cost(
        self,
        index: NDArray[np.int64],
        labels: NDArray[np.int64],
        params: MixtureParameters,
        intensities: NDArray[np.float64],
    ) -> NDArray[np.float64]:
        """Cost of every label for the given voxels with all other labels fixed, (M, K)."""
        cost = data_cost(intensities[index], params)
        cost += self.potential.neighbor_cost(
            intensities, labels, self.neighborhood, index, params.n_classes
        )
        return cost

    def _map_partitions(
        self,
        func: Callable[[NDArray[np.int64]], NDArray],
        index: NDArray[np.int64],
    ) -> NDArray:
        """Apply func to partitions of index on the worker pool and reassemble."""
        if self._pool is None or len(index) < 2 * self.config.n_workers:
            return func(index)
        parts = np.array_split(index, self.config.n_workers)
        # map() returns in submission order, so the concatenation is deterministic
        return np.concatenate(list(self._pool.map(func, parts)), axis=0)

    # ------------------------------------------------------------------
    # ICM label update
    # ------------------------------------------------------------------

    def _update_block(
        self,
        index: NDArray[np.int64],
        labels: NDArray[np.int64],
        params: MixtureParameters,
        intensities: NDArray[np.float64],
    ) -> Tuple[NDArray[np.int64], NDArray[np.bool_]]:
        """Best labels for a block of voxels; labels change only on strict improvement."""
        cost = self._map_partitions(
            lambda part: self.local_cost(part, labels, params, intensities), index
        )
        rows = np.arange(len(index))
        current = labels[index]
        best = np.argmin(cost, axis=1)
        improved = cost[rows, best] < cost[rows, current]
        return np.where(improved, best, current), improved

    def sweep(
        self,
        labels: NDArray[np.int64],
        params: MixtureParameters,
        intensities: Optional[NDArray[np.float64]] = None,
    ) -> int:
        """
        Run one ICM sweep over all masked voxels, updating labels in place.

        Args:
            labels: Label field, modified in place.
            params: Mixture parameters (held fixed during the sweep).
            intensities: Intensities to use (bias-corrected), defaults to raw.

        Returns:
            Number of voxels whose label changed.
        """
        y = self.intensities if intensities is None else intensities

        if self.config.sweep_policy == "synchronous":
            new_labels, improved = self._update_block(self._all, labels, params, y)
            labels[:] = new_labels
            return int(np.sum(improved))

        changed = 0
        for color in self._colors:
            if len(color) == 0:
                continue
            # Read phase for the whole colour completes before any write
            new_labels, improved = self._update_block(color, labels, params, y)
            labels[color] = new_labels
            changed += int(np.sum(improved))
        return changed

    # ------------------------------------------------------------------
    # Parameter update
    # ------------------------------------------------------------------

    def posteriors(
        self,
        labels: NDArray[np.int64],
        params: MixtureParameters,
        intensities: Optional[NDArray[np.float64]] = None,
    ) -> NDArray[np.float64]:
        """
        Posterior p(s | y_i, x_Ni) for every voxel, (N, K).

        The local conditional prior_s * exp(-U_i(s)) replaces the global prior
        of the non-spatial mixture.
        """
        y = self.intensities if intensities is None else intensities

        def block(index):
            log_weights = log_priors(params.priors) + log_densities(y[index], params)
            log_weights -= self.potential.neighbor_cost(
                y, labels, self.neighborhood, index, params.n_classes
            )
            return log_weights

        log_weights = self._map_partitions(block, self._all)
        posteriors, _ = normalize_log_weights(log_weights)
        return posteriors

    def update_parameters(
        self,
        labels: NDArray[np.int64],
        params: MixtureParameters,
        intensities: Optional[NDArray[np.float64]] = None,
        iteration: Optional[int] = None,
    ) -> Tuple[MixtureParameters, List[int]]:
        """
        M-step: posterior-weighted class statistics.

        Returns:
            (new parameters, indices of floored classes).
        """
        y = self.intensities if intensities is None else intensities
        posteriors = self.posteriors(labels, params, y)
        return estimate_parameters(
            y, posteriors, params,
            min_variance=self.config.min_variance,
            floor_variance=self.config.floor_variance,
            iteration=iteration,
        )

    # ------------------------------------------------------------------
    # Outer loop
    # ------------------------------------------------------------------

    def fit(
        self,
        initial_params: MixtureParameters,
        callback: Optional[Callable[[HMRFState, int], None]] = None,
        should_stop: Optional[Callable[[], bool]] = None,
    ) -> HMRFResult:
        """
        Alternate ICM sweeps and parameter updates until convergence.

        Converged when the first sweep of an iteration changed at most
        ``label_tolerance`` labels and the relative parameter change of the
        following update is below ``tol`` (and, with bias correction, the
        field change is below its tolerance).

        Args:
            initial_params: Starting parameters (e.g. from otsu_init).
            callback: Called after each outer iteration.
                      Signature: callback(state, iteration) -> None
            should_stop: Checked between outer iterations; returning True
                         stops the fit and returns the last consistent state.

        Returns:
            HMRFResult. Reaching max_iter emits NonConvergenceWarning and
            returns the last state with converged=False.

        Raises:
            DegenerateClassError: If a class collapses with flooring disabled.
        """
        config = self.config
        params = initial_params.copy()
        params.validate()

        bias_estimator = None
        bias = None
        y = self.intensities
        if config.bias_correction:
            bias_estimator = BiasFieldEstimator(self.neighborhood, config.bias_field)
            bias = bias_estimator.identity()

        labels = self.initial_labels(params)
        initial_labels = labels.copy()

        energy_history: List[float] = []
        iteration_energies: List[Tuple[float, float]] = []
        changes_history: List[int] = []
        converged = False
        cancelled = False
        floored_any = False
        n_iter = 0

        pool = ThreadPoolExecutor(max_workers=config.n_workers) if config.n_workers > 1 else None
        self._pool = pool
        try:
            for iteration in range(1, config.max_iter + 1):
                if should_stop is not None and should_stop():
                    cancelled = True
                    logger.info("HMRF fit stopped by caller before iteration %d", iteration)
                    break

                # Step 1: bias field from the current labels and parameters
                bias_change = 0.0
                if bias_estimator is not None:
                    new_bias = bias_estimator.estimate(self.intensities, labels, params)
                    bias_change = bias_estimator.field_change(bias, new_bias)
                    bias = new_bias
                    y = bias_estimator.correct(self.intensities, bias)

                # Step 2: ICM label update
                energy_before = self.energy(labels, params, y)
                first_changes = None
                for _ in range(config.sweeps_per_iteration):
                    changes = self.sweep(labels, params, y)
                    changes_history.append(changes)
                    energy_history.append(self.energy(labels, params, y))
                    if first_changes is None:
                        first_changes = changes
                    if changes == 0:
                        break
                iteration_energies.append((energy_before, energy_history[-1]))

                # Step 3: parameter update
                new_params, floored = self.update_parameters(labels, params, y, iteration)
                floored_any = floored_any or bool(floored)
                param_change = params.relative_change(new_params)
                params = new_params
                n_iter = iteration

                logger.debug(
                    "HMRF iteration %d: %d label changes, parameter change %.3g, "
                    "energy %.6f, bias change %.3g",
                    iteration, first_changes, param_change, energy_history[-1], bias_change,
                )

                if callback is not None:
                    callback(
                        HMRFState(
                            iteration=iteration,
                            labels=labels.copy(),
                            params=params.copy(),
                            bias_field=None if bias is None else bias.copy(),
                            label_changes=first_changes,
                            param_change=param_change,
                            energy=energy_history[-1],
                        ),
                        iteration,
                    )

                bias_stable = bias_estimator is None or bias_change < config.bias_field.tol
                if (first_changes <= config.label_tolerance
                        and param_change < config.tol and bias_stable):
                    converged = True
                    break
        finally:
            self._pool = None
            if pool is not None:
                pool.shutdown()

        if not converged and not cancelled:
            warnings.warn(
                f"HMRF fit did not converge in {config.max_iter} iterations; "
                "returning the last labelling",
                NonConvergenceWarning,
                stacklevel=2,
            )

        posteriors = self.posteriors(labels, params, y)

        return HMRFResult(
            labels=labels,
            posteriors=posteriors,
            params=params,
            n_iter=n_iter,
            converged=converged,
            cancelled=cancelled,
            initial_labels=initial_labels,
            energy_history=energy_history,
            iteration_energies=iteration_energies,
            label_changes_history=changes_history,
            bias_field=bias,
            variance_floored=floored_any,
        )


def fit_hmrf(
    intensities: ArrayLike,
    neighborhood: NeighborhoodSystem,
    initial_params: MixtureParameters,
    beta: Optional[float] = None,
    max_iter: Optional[int] = None,
    tol: Optional[float] = None,
    bias_correction: Optional[bool] = None,
    config: Optional[HMRFConfig] = None,
    potential: Optional[CliquePotential] = None,
    callback: Optional[Callable[[HMRFState, int], None]] = None,
    should_stop: Optional[Callable[[], bool]] = None,
) -> HMRFResult:
    """
    Fit the HMRF model to masked intensities.

    Explicit arguments override the corresponding fields of ``config``.

    Args:
        intensities: Masked voxel intensities, (N,).
        neighborhood: Neighbourhood system of the same voxels.
        initial_params: Starting mixture parameters.
        beta: Smoothing strength.
        max_iter: Maximum outer iterations.
        tol: Relative parameter change for convergence.
        bias_correction: Enable bias field estimation.
        config: Base configuration (defaults if None).
        potential: Custom clique potential.
        callback: Per-iteration callback, see HMRFSegmenter.fit.
        should_stop: Cancellation check, see HMRFSegmenter.fit.

    Returns:
        HMRFResult with labels, posteriors, parameters and convergence info.
    """
    config = config or HMRFConfig.default()
    overrides = {
        "beta": beta,
        "max_iter": max_iter,
        "tol": tol,
        "bias_correction": bias_correction,
    }
    overrides = {k: v for k, v in overrides.items() if v is not None}
    if overrides:
        config = replace(config, **overrides)

    segmenter = HMRFSegmenter(intensities, neighborhood, config, potential)
    return segmenter.fit(initial_params, callback=callback, should_stop=should_stop)
