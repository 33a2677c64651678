"""
Exception and warning types raised by the segmentation engine.

Input validation problems derive from ValueError, numerical failures from
RuntimeError. Conditions the caller can choose to accept (iteration cap
reached, variance floored) are reported as warnings.
"""

from typing import Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from .tissue import MixtureParameters


class SegmentationError(Exception):
    """Base class for all segmentation errors."""


class ShapeMismatchError(SegmentationError, ValueError):
    """Intensity, mask or ground-truth arrays do not share dimensions."""


class EmptyMaskError(SegmentationError, ValueError):
    """The mask selects no voxel."""


class DegenerateHistogramError(SegmentationError, ValueError):
    """Otsu thresholding cannot produce the requested number of classes."""


class DegenerateClassError(SegmentationError, RuntimeError):
    """
    A tissue class collapsed during a parameter update.

    Raised when a class loses all support or its variance falls below the
    minimum while variance flooring is disabled.

    Attributes:
        iteration: Outer iteration at which the collapse was detected.
        class_index: Index of the collapsed class.
        last_params: Last valid mixture parameters before the update.
    """

    def __init__(
        self,
        message: str,
        iteration: Optional[int] = None,
        class_index: Optional[int] = None,
        last_params: Optional["MixtureParameters"] = None,
    ):
        super().__init__(message)
        self.iteration = iteration
        self.class_index = class_index
        self.last_params = last_params


class NonConvergenceWarning(UserWarning):
    """Iteration cap reached before the convergence criteria were met."""


class SingularVarianceWarning(UserWarning):
    """A class variance was floored to the configured minimum."""
