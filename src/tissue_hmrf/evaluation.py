"""
Evaluation of soft segmentations against proportion-valued ground truth.

Ground truth gives, for every masked voxel, the true membership proportion of
each tissue class (rows sum to 1). The predicted posteriors are compared with
it through soft confusion tables rather than hard counts.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Any

import numpy as np
from numpy.typing import NDArray, ArrayLike

from .errors import ShapeMismatchError
from .tissue import class_names

# Allowed deviation of a probability row sum from 1
ROW_SUM_TOLERANCE = 1e-6


@dataclass
class EvaluationResult:
    """
    Soft confusion statistics of a segmentation.

    Attributes:
        confusion_matrix: (K, K); entry (a, b) is the mean predicted mass on
                          class b over voxels whose dominant true class is a.
                          Rows with no such voxels are NaN.
        misclassification_rate: Fraction of voxels whose arg-max prediction
                                differs from the dominant true class.
        soft_confusion: (K, K); entry (a, b) = sum_i gt[i, a] * post[i, b].
                        Row a sums to the total true mass of class a.
        expected_disagreement: 1 - mean posterior mass on the dominant true class.
        class_support: Number of voxels per dominant true class, (K,).
        undefined_rows: Classes with no supporting voxels.
    """

    confusion_matrix: NDArray[np.float64]
    misclassification_rate: float
    soft_confusion: NDArray[np.float64]
    expected_disagreement: float
    class_support: NDArray[np.int64]
    undefined_rows: List[int] = field(default_factory=list)

    @property
    def accuracy(self) -> float:
        """1 - misclassification rate."""
        return 1.0 - self.misclassification_rate

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization (NaN entries become None)."""
        def _rows(matrix):
            return [[None if np.isnan(v) else float(v) for v in row] for row in matrix]

        return {
            "confusion_matrix": _rows(self.confusion_matrix),
            "misclassification_rate": self.misclassification_rate,
            "soft_confusion": _rows(self.soft_confusion),
            "expected_disagreement": self.expected_disagreement,
            "class_support": [int(n) for n in self.class_support],
            "undefined_rows": list(self.undefined_rows),
        }

    def summary(self) -> str:
        """Human-readable confusion table."""
        n_classes = self.confusion_matrix.shape[0]
        names = class_names(n_classes)
        lines = ["true \\ pred " + " ".join(f"{name:>8s}" for name in names)]
        for a, name in enumerate(names):
            cells = " ".join(
                f"{'n/a':>8s}" if np.isnan(v) else f"{v:8.4f}"
                for v in self.confusion_matrix[a]
            )
            lines.append(f"{name:>12s} {cells}")
        lines.append(f"Misclassification rate: {self.misclassification_rate:.4f}")
        return "\n".join(lines)


def _check_probability_rows(matrix: NDArray[np.float64], name: str) -> None:
    if np.any(matrix < 0) or np.any(matrix > 1 + ROW_SUM_TOLERANCE):
        raise ValueError(f"{name} entries must lie in [0, 1]")
    sums = matrix.sum(axis=1)
    if not np.allclose(sums, 1.0, rtol=0.0, atol=ROW_SUM_TOLERANCE):
        worst = float(np.max(np.abs(sums - 1.0)))
        raise ValueError(f"{name} rows must sum to 1 (largest deviation {worst:.3g})")


def evaluate(ground_truth: ArrayLike, posteriors: ArrayLike) -> EvaluationResult:
    """
    Compare predicted posteriors with ground-truth class proportions.

    Args:
        ground_truth: True class proportions, (N, K), rows sum to 1.
        posteriors: Predicted class probabilities, (N, K), rows sum to 1.

    Returns:
        EvaluationResult.

    Raises:
        ShapeMismatchError: If the two matrices differ in shape or are not 2-D.
        ValueError: If a row is not a probability distribution.
    """
    gt = np.asarray(ground_truth, dtype=np.float64)
    post = np.asarray(posteriors, dtype=np.float64)

    if gt.ndim != 2 or post.ndim != 2:
        raise ShapeMismatchError(
            f"Expected 2-D (voxels, classes) matrices, got {gt.shape} and {post.shape}"
        )
    if gt.shape != post.shape:
        raise ShapeMismatchError(
            f"Ground truth shape {gt.shape} does not match posterior shape {post.shape}"
        )
    if gt.shape[0] == 0:
        raise ValueError("Cannot evaluate an empty set of voxels")

    _check_probability_rows(gt, "Ground truth")
    _check_probability_rows(post, "Posterior")

    n_voxels, n_classes = gt.shape
    dominant = np.argmax(gt, axis=1)
    predicted = np.argmax(post, axis=1)

    support = np.bincount(dominant, minlength=n_classes)
    confusion = np.full((n_classes, n_classes), np.nan)
    undefined = []
    for a in range(n_classes):
        if support[a] == 0:
            undefined.append(a)
            continue
        confusion[a] = post[dominant == a].mean(axis=0)

    return EvaluationResult(
        confusion_matrix=confusion,
        misclassification_rate=float(np.mean(predicted != dominant)),
        soft_confusion=gt.T @ post,
        expected_disagreement=float(1.0 - np.mean(post[np.arange(n_voxels), dominant])),
        class_support=support,
        undefined_rows=undefined,
    )


def dice_per_class(
    true_labels: ArrayLike,
    pred_labels: ArrayLike,
    n_classes: int,
) -> NDArray[np.float64]:
    """
    Dice overlap 2|A & B| / (|A| + |B|) per class between two hard labellings.

    Classes absent from both labellings score 1.0.
    """
    true_labels = np.asarray(true_labels).ravel()
    pred_labels = np.asarray(pred_labels).ravel()
    if true_labels.shape != pred_labels.shape:
        raise ShapeMismatchError(
            f"Label arrays differ in length: {true_labels.size} vs {pred_labels.size}"
        )

    scores = np.empty(n_classes)
    for k in range(n_classes):
        a = true_labels == k
        b = pred_labels == k
        total = np.sum(a) + np.sum(b)
        scores[k] = 1.0 if total == 0 else 2.0 * np.sum(a & b) / total
    return scores
