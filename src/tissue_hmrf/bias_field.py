"""
Smooth intensity bias field estimation.

The bias field is a slowly varying multiplicative (y / B) or additive
(y - B) distortion of the intensities. Given the current labels and class
parameters, the residual between each voxel and its class mean is regressed
onto a smooth function of position:

- "polynomial": weighted least squares over all monomials x^a y^b z^c with
  a + b + c <= degree, in coordinates normalised to [-1, 1]
- "gaussian": normalised Gaussian smoothing of the weighted residual

Residuals are weighted by the class precision so that noisy classes pull
less on the fit. The field is normalised (geometric mean 1, or zero mean)
so it cannot drift into the class means.
"""

from dataclasses import dataclass
from itertools import product
from typing import Dict, Any, Optional, Tuple

import numpy as np
from numpy.typing import NDArray

from .tissue import MixtureParameters
from .volume import NeighborhoodSystem


@dataclass
class BiasFieldConfig:
    """
    Configuration of the bias field estimator.

    Attributes:
        mode: "multiplicative" (corrected = y / B) or "additive" (y - B).
        method: "polynomial" or "gaussian".
        degree: Polynomial degree for the "polynomial" method.
        sigma: Smoothing width in voxels for the "gaussian" method.
        tol: Convergence threshold on the field change between iterations.
    """

    mode: str = "multiplicative"
    method: str = "polynomial"
    degree: int = 3
    sigma: float = 8.0
    tol: float = 1e-3

    def __post_init__(self):
        if self.mode not in ("multiplicative", "additive"):
            raise ValueError(f"Unknown bias field mode: {self.mode}")
        if self.method not in ("polynomial", "gaussian"):
            raise ValueError(f"Unknown bias field method: {self.method}")
        if self.degree < 0:
            raise ValueError(f"degree must be non-negative, got {self.degree}")
        if self.sigma <= 0:
            raise ValueError(f"sigma must be positive, got {self.sigma}")

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "mode": self.mode,
            "method": self.method,
            "degree": self.degree,
            "sigma": self.sigma,
            "tol": self.tol,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BiasFieldConfig":
        """Create from dictionary."""
        return cls(
            mode=data.get("mode", "multiplicative"),
            method=data.get("method", "polynomial"),
            degree=data.get("degree", 3),
            sigma=data.get("sigma", 8.0),
            tol=data.get("tol", 1e-3),
        )


def polynomial_exponents(degree: int) -> list:
    """All (a, b, c) with a + b + c <= degree, constant term first."""
    exps = [e for e in product(range(degree + 1), repeat=3) if sum(e) <= degree]
    return sorted(exps, key=lambda e: (sum(e), e))


class BiasFieldEstimator:
    """
    Estimates a smooth bias field over the masked voxels.

    The estimator is bound to one neighbourhood system (for voxel positions
    and grid shape); the design matrix of the polynomial basis is built once.
    """

    def __init__(
        self,
        neighborhood: NeighborhoodSystem,
        config: Optional[BiasFieldConfig] = None,
    ):
        """
        Initialize the estimator.

        Args:
            neighborhood: Neighbourhood system of the masked voxels.
            config: Estimator configuration (defaults if None).
        """
        self.neighborhood = neighborhood
        self.config = config or BiasFieldConfig()
        self._design = None

        if self.config.method == "polynomial":
            self._design = self._build_design_matrix()

        self._intensity_scale = 1.0

    @property
    def multiplicative(self) -> bool:
        return self.config.mode == "multiplicative"

    def _normalized_coordinates(self) -> NDArray[np.float64]:
        coords = self.neighborhood.coordinates.astype(np.float64)
        extent = np.maximum(np.array(self.neighborhood.shape, dtype=np.float64) - 1.0, 1.0)
        return 2.0 * coords / extent - 1.0

    def _build_design_matrix(self) -> NDArray[np.float64]:
        """Monomial basis evaluated at every masked voxel, shape (N, P)."""
        t = self._normalized_coordinates()
        exps = polynomial_exponents(self.config.degree)
        design = np.empty((len(t), len(exps)))
        for col, (a, b, c) in enumerate(exps):
            design[:, col] = t[:, 0] ** a * t[:, 1] ** b * t[:, 2] ** c
        return design

    def identity(self) -> NDArray[np.float64]:
        """Field that leaves intensities unchanged."""
        n = self.neighborhood.num_voxels
        return np.ones(n) if self.multiplicative else np.zeros(n)

    def correct(
        self,
        intensities: NDArray[np.float64],
        field: NDArray[np.float64],
    ) -> NDArray[np.float64]:
        """Apply the field: y / B (multiplicative) or y - B (additive)."""
        if self.multiplicative:
            return intensities / field
        return intensities - field

    def _residuals(
        self,
        intensities: NDArray[np.float64],
        labels: NDArray[np.int64],
        params: MixtureParameters,
    ) -> Tuple[NDArray[np.float64], NDArray[np.float64]]:
        """Residual to the class mean and its regression weight per voxel."""
        mean = params.means[labels]
        precision = 1.0 / params.variances[labels]

        if self.multiplicative:
            usable = (intensities > 0) & (mean > 0)
            safe_y = np.where(usable, intensities, 1.0)
            safe_mean = np.where(usable, mean, 1.0)
            residual = np.log(safe_y) - np.log(safe_mean)
            # Variance of log(y) is approximately var / mean^2
            weights = np.where(usable, precision * safe_mean ** 2, 0.0)
        else:
            residual = intensities - mean
            weights = precision

        return residual, weights

    def _fit_polynomial(
        self,
        residual: NDArray[np.float64],
        weights: NDArray[np.float64],
    ) -> NDArray[np.float64]:
        sqrt_w = np.sqrt(weights)
        coef, *_ = np.linalg.lstsq(self._design * sqrt_w[:, None], residual * sqrt_w, rcond=None)
        return self._design @ coef

    def _fit_gaussian(
        self,
        residual: NDArray[np.float64],
        weights: NDArray[np.float64],
    ) -> NDArray[np.float64]:
        from scipy import ndimage

        coords = self.neighborhood.coordinates
        shape = self.neighborhood.shape
        numerator = np.zeros(shape)
        denominator = np.zeros(shape)
        numerator[coords[:, 0], coords[:, 1], coords[:, 2]] = residual * weights
        denominator[coords[:, 0], coords[:, 1], coords[:, 2]] = weights

        numerator = ndimage.gaussian_filter(numerator, sigma=self.config.sigma)
        denominator = ndimage.gaussian_filter(denominator, sigma=self.config.sigma)

        num = numerator[coords[:, 0], coords[:, 1], coords[:, 2]]
        den = denominator[coords[:, 0], coords[:, 1], coords[:, 2]]
        return np.where(den > 1e-12, num / np.maximum(den, 1e-12), 0.0)

    def estimate(
        self,
        intensities: NDArray[np.float64],
        labels: NDArray[np.int64],
        params: MixtureParameters,
    ) -> NDArray[np.float64]:
        """
        Estimate the bias field from raw intensities and the current labelling.

        Args:
            intensities: Uncorrected voxel intensities, shape (N,).
            labels: Current hard labels, shape (N,).
            params: Current class parameters.

        Returns:
            Bias field, shape (N,).
        """
        residual, weights = self._residuals(intensities, labels, params)
        self._intensity_scale = max(float(np.mean(np.abs(intensities))), 1.0)

        if not np.any(weights > 0):
            return self.identity()

        if self.config.method == "polynomial":
            smooth = self._fit_polynomial(residual, weights)
        else:
            smooth = self._fit_gaussian(residual, weights)

        smooth = smooth - smooth.mean()

        if self.multiplicative:
            return np.exp(smooth)
        return smooth

    def field_change(
        self,
        old: NDArray[np.float64],
        new: NDArray[np.float64],
    ) -> float:
        """
        Largest change between two fields.

        Multiplicative fields are compared by log ratio, additive fields
        relative to the mean intensity magnitude.
        """
        if self.multiplicative:
            return float(np.max(np.abs(np.log(new) - np.log(old))))
        return float(np.max(np.abs(new - old))) / self._intensity_scale
