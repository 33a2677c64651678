"""
Tissue classes and Gaussian mixture parameters.

Each tissue class owns a (mean, variance) pair and a mixture prior. These are
the only free continuous parameters of the statistical model.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Any, List

import numpy as np
from numpy.typing import NDArray


# Smallest variance a class may take before it is treated as singular.
DEFAULT_MIN_VARIANCE = 1e-2


class TissueClass(Enum):
    """Brain tissue classes, ordered by ascending T1 intensity."""

    CSF = 0
    GRAY_MATTER = 1
    WHITE_MATTER = 2

    @classmethod
    def from_label(cls, label: int) -> "TissueClass":
        """Convert numeric label to tissue class."""
        mapping = {0: cls.CSF, 1: cls.GRAY_MATTER, 2: cls.WHITE_MATTER}
        if label not in mapping:
            raise ValueError(f"Unknown tissue label: {label}")
        return mapping[label]

    @property
    def short_name(self) -> str:
        return {"CSF": "CSF", "GRAY_MATTER": "GM", "WHITE_MATTER": "WM"}[self.name]


def class_names(n_classes: int) -> List[str]:
    """Display names for ``n_classes`` classes (tissue names when K=3)."""
    if n_classes == len(TissueClass):
        return [tissue.short_name for tissue in TissueClass]
    return [f"class_{k}" for k in range(n_classes)]


@dataclass
class MixtureParameters:
    """
    Gaussian mixture parameters, one entry per class.

    Attributes:
        priors: Mixture proportions, shape (K,), summing to 1.
        means: Class means, shape (K,).
        variances: Class variances, shape (K,), strictly positive.
    """

    priors: NDArray[np.float64]
    means: NDArray[np.float64]
    variances: NDArray[np.float64]

    def __post_init__(self):
        self.priors = np.asarray(self.priors, dtype=np.float64).copy()
        self.means = np.asarray(self.means, dtype=np.float64).copy()
        self.variances = np.asarray(self.variances, dtype=np.float64).copy()

    @property
    def n_classes(self) -> int:
        return len(self.means)

    @property
    def stds(self) -> NDArray[np.float64]:
        return np.sqrt(self.variances)

    def validate(self) -> None:
        """
        Check parameter shapes and ranges.

        Raises:
            ValueError: If arrays disagree in length or hold invalid values.
        """
        k = len(self.means)
        if k < 2:
            raise ValueError(f"At least two classes are required, got {k}")
        if len(self.priors) != k or len(self.variances) != k:
            raise ValueError(
                f"Parameter lengths differ: priors={len(self.priors)}, "
                f"means={k}, variances={len(self.variances)}"
            )
        if not np.all(np.isfinite(self.means)):
            raise ValueError("Class means must be finite")
        if np.any(self.variances <= 0) or not np.all(np.isfinite(self.variances)):
            raise ValueError("Class variances must be finite and positive")
        if np.any(self.priors < 0) or not np.isclose(self.priors.sum(), 1.0, atol=1e-6):
            raise ValueError("Class priors must be non-negative and sum to 1")

    def sorted(self) -> "MixtureParameters":
        """Return a copy with classes ordered by ascending mean."""
        order = np.argsort(self.means, kind="stable")
        return MixtureParameters(
            priors=self.priors[order],
            means=self.means[order],
            variances=self.variances[order],
        )

    def copy(self) -> "MixtureParameters":
        return MixtureParameters(self.priors, self.means, self.variances)

    def relative_change(self, other: "MixtureParameters") -> float:
        """
        Largest relative difference between two parameter sets.

        Means and variances are compared relative to this set's magnitude,
        priors in absolute terms.
        """
        mean_change = np.abs(other.means - self.means) / np.maximum(np.abs(self.means), 1.0)
        var_change = np.abs(other.variances - self.variances) / self.variances
        prior_change = np.abs(other.priors - self.priors)
        return float(max(mean_change.max(), var_change.max(), prior_change.max()))

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "priors": self.priors.tolist(),
            "means": self.means.tolist(),
            "variances": self.variances.tolist(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MixtureParameters":
        """Create from dictionary."""
        return cls(
            priors=data["priors"],
            means=data["means"],
            variances=data["variances"],
        )
