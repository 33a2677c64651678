"""
Finite Gaussian mixture model fitted by Expectation-Maximization.

Non-spatial reference model: each voxel is classified from its intensity
alone. The E-step and M-step helpers defined here are shared with the HMRF
engine, which adds a neighbourhood term to the E-step.
"""

from dataclasses import dataclass, field
from typing import List, Optional, Tuple
import logging
import warnings

import numpy as np
from numpy.typing import NDArray, ArrayLike
from scipy.special import logsumexp

from .errors import DegenerateClassError, NonConvergenceWarning, SingularVarianceWarning
from .tissue import MixtureParameters, DEFAULT_MIN_VARIANCE

logger = logging.getLogger(__name__)

LOG_2PI = float(np.log(2.0 * np.pi))

# Total posterior mass below which a class counts as empty
EMPTY_CLASS_WEIGHT = 1e-8


def data_cost(
    intensities: NDArray[np.float64],
    params: MixtureParameters,
) -> NDArray[np.float64]:
    """
    Per-voxel, per-class Gaussian data cost.

    cost[i, s] = (y_i - mean_s)^2 / (2 var_s) + log(std_s), i.e. the negative
    log density without the constant 0.5 * log(2 pi).

    Returns:
        Array of shape (N, K).
    """
    y = intensities[:, None]
    return (y - params.means) ** 2 / (2.0 * params.variances) + 0.5 * np.log(params.variances)


def log_densities(
    intensities: NDArray[np.float64],
    params: MixtureParameters,
) -> NDArray[np.float64]:
    """Log Gaussian density log N(y_i; mean_s, var_s), shape (N, K)."""
    return -data_cost(intensities, params) - 0.5 * LOG_2PI


def log_priors(priors: NDArray[np.float64]) -> NDArray[np.float64]:
    """Log of mixture priors, with empty classes mapped to a large negative value."""
    return np.log(np.maximum(priors, np.finfo(np.float64).tiny))


def normalize_log_weights(
    log_weights: NDArray[np.float64],
) -> Tuple[NDArray[np.float64], float]:
    """
    Turn unnormalised log posteriors into posteriors.

    Args:
        log_weights: Unnormalised log posterior, shape (N, K).

    Returns:
        (posteriors, total log normaliser summed over voxels).
    """
    log_norm = logsumexp(log_weights, axis=1)
    posteriors = np.exp(log_weights - log_norm[:, None])
    return posteriors, float(np.sum(log_norm))


def estimate_parameters(
    intensities: NDArray[np.float64],
    posteriors: NDArray[np.float64],
    previous: MixtureParameters,
    min_variance: float = DEFAULT_MIN_VARIANCE,
    floor_variance: bool = True,
    iteration: Optional[int] = None,
) -> Tuple[MixtureParameters, List[int]]:
    """
    M-step: posterior-weighted mean, variance and proportion per class.

    Args:
        intensities: Voxel intensities, shape (N,).
        posteriors: Soft class membership, shape (N, K).
        previous: Parameters before this update (kept for empty classes and
                  attached to errors).
        min_variance: Smallest admissible variance.
        floor_variance: Floor degenerate classes instead of raising.
        iteration: Outer iteration index, reported in errors.

    Returns:
        (new parameters, indices of classes that were floored).

    Raises:
        DegenerateClassError: If a class is empty or its variance falls below
            ``min_variance`` while flooring is disabled.
    """
    weights = posteriors.sum(axis=0)
    safe_weights = np.maximum(weights, EMPTY_CLASS_WEIGHT)

    means = (posteriors.T @ intensities) / safe_weights
    residual = intensities[:, None] - means
    variances = np.sum(posteriors * residual ** 2, axis=0) / safe_weights
    priors = weights / weights.sum()

    floored = []
    for k in range(len(weights)):
        if weights[k] <= EMPTY_CLASS_WEIGHT:
            if not floor_variance:
                raise DegenerateClassError(
                    f"Class {k} has no support at iteration {iteration}",
                    iteration=iteration, class_index=k, last_params=previous,
                )
            means[k] = previous.means[k]
            variances[k] = max(previous.variances[k], min_variance)
            floored.append(k)
        elif variances[k] < min_variance:
            if not floor_variance:
                raise DegenerateClassError(
                    f"Class {k} variance {variances[k]:.3g} below minimum "
                    f"{min_variance:.3g} at iteration {iteration}",
                    iteration=iteration, class_index=k, last_params=previous,
                )
            variances[k] = min_variance
            floored.append(k)

    if floored:
        warnings.warn(
            f"Variance of class(es) {floored} floored to {min_variance:g} "
            f"at iteration {iteration}",
            SingularVarianceWarning,
            stacklevel=2,
        )

    return MixtureParameters(priors=priors, means=means, variances=variances), floored


@dataclass
class MixtureResult:
    """
    Result of the finite mixture fit.

    Attributes:
        params: Final mixture parameters.
        posteriors: Posterior class probabilities under the final parameters, (N, K).
        labels: Arg-max posterior label per voxel, (N,).
        n_iter: Number of EM iterations performed.
        log_likelihood: Total log-likelihood under the final parameters.
        converged: Whether the log-likelihood change fell below tolerance.
        log_likelihood_history: Log-likelihood at each E-step.
        variance_floored: Whether any M-step floored a class variance.
    """

    params: MixtureParameters
    posteriors: NDArray[np.float64]
    labels: NDArray[np.int64]
    n_iter: int
    log_likelihood: float
    converged: bool
    log_likelihood_history: List[float] = field(default_factory=list)
    variance_floored: bool = False


def fit_finite_mixture(
    intensities: ArrayLike,
    initial_params: MixtureParameters,
    max_iter: int = 100,
    tol: float = 1e-5,
    min_variance: float = DEFAULT_MIN_VARIANCE,
    floor_variance: bool = True,
) -> MixtureResult:
    """
    Fit a Gaussian mixture to intensities by EM, without spatial information.

    E-step: posterior_s(y) = prior_s N(y; mean_s, var_s) / sum_s' (...).
    M-step: posterior-weighted mean, variance and proportion.

    Args:
        intensities: Masked voxel intensities.
        initial_params: Starting parameters (e.g. from otsu_init).
        max_iter: Maximum number of EM iterations.
        tol: Convergence threshold on the change in total log-likelihood.
        min_variance: Variance floor.
        floor_variance: Floor collapsing classes instead of raising.

    Returns:
        MixtureResult with the fitted parameters and posteriors.
    """
    y = np.asarray(intensities, dtype=np.float64).ravel()
    params = initial_params.copy()
    params.validate()

    history: List[float] = []
    converged = False
    floored_any = False
    n_iter = 0

    for iteration in range(1, max_iter + 1):
        n_iter = iteration
        log_weights = log_priors(params.priors) + log_densities(y, params)
        posteriors, log_likelihood = normalize_log_weights(log_weights)
        history.append(log_likelihood)

        params, floored = estimate_parameters(
            y, posteriors, params, min_variance, floor_variance, iteration
        )
        floored_any = floored_any or bool(floored)

        logger.debug(
            "EM iteration %d: log-likelihood %.6f, means %s",
            iteration, log_likelihood, np.round(params.means, 3),
        )

        if len(history) > 1 and abs(history[-1] - history[-2]) < tol:
            converged = True
            break

    if not converged:
        last_change = abs(history[-1] - history[-2]) if len(history) > 1 else float("nan")
        warnings.warn(
            f"Finite mixture EM did not converge in {max_iter} iterations "
            f"(last log-likelihood change {last_change:.3g})",
            NonConvergenceWarning,
            stacklevel=2,
        )

    log_weights = log_priors(params.priors) + log_densities(y, params)
    posteriors, log_likelihood = normalize_log_weights(log_weights)

    return MixtureResult(
        params=params,
        posteriors=posteriors,
        labels=np.argmax(posteriors, axis=1),
        n_iter=n_iter,
        log_likelihood=log_likelihood,
        converged=converged,
        log_likelihood_history=history,
        variance_floored=floored_any,
    )
