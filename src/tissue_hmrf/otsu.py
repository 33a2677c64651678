"""
Otsu initialisation of the tissue mixture.

Splits the intensity histogram into contiguous bands by repeated two-class
Otsu thresholding and summarises each band as one Gaussian class. No spatial
information is used.
"""

from typing import List, Optional, Tuple

import numpy as np
from numpy.typing import NDArray, ArrayLike

from .errors import DegenerateHistogramError
from .tissue import MixtureParameters, DEFAULT_MIN_VARIANCE


DEFAULT_HISTOGRAM_BINS = 250

# Cap on threshold refinement passes after the recursive splits
MAX_REFINE_PASSES = 50


def _within_class_scatter(
    counts: NDArray[np.float64],
    centers: NDArray[np.float64],
) -> Tuple[Optional[int], float]:
    """
    Find the two-class split of a histogram segment with least intra-class variance.

    Args:
        counts: Histogram counts of the segment.
        centers: Bin centres of the segment.

    Returns:
        (k, scatter) where bins [0, k] form the lower class. k is None when
        fewer than two bins are occupied.
    """
    if np.count_nonzero(counts) < 2:
        return None, 0.0

    # Centre the bin positions to keep the cumulative sums well conditioned
    total = counts.sum()
    c = centers - np.sum(counts * centers) / total

    w0 = np.cumsum(counts)[:-1]
    s0 = np.cumsum(counts * c)[:-1]
    q0 = np.cumsum(counts * c * c)[:-1]
    w1 = total - w0
    s1 = np.sum(counts * c) - s0
    q1 = np.sum(counts * c * c) - q0

    valid = (w0 > 0) & (w1 > 0)
    # w * sigma^2 = sum(c^2) - (sum c)^2 / w for each side
    with np.errstate(divide="ignore", invalid="ignore"):
        scatter = (q0 - s0 ** 2 / w0) + (q1 - s1 ** 2 / w1)
    scatter = np.where(valid, scatter, np.inf)

    k = int(np.argmin(scatter))
    return k, float(scatter[k])


def otsu_thresholds(
    intensities: ArrayLike,
    n_classes: int = 3,
    n_bins: int = DEFAULT_HISTOGRAM_BINS,
) -> NDArray[np.float64]:
    """
    Compute ``n_classes - 1`` intensity thresholds by recursive Otsu splitting.

    A normalised histogram with ``n_bins`` bins is built over the observed
    intensity range. The full population is split at the threshold T that
    minimises w0(T)*var0(T) + w1(T)*var1(T). Each further threshold splits the
    upper sub-population (the GM + WM band on T1 histograms after the first
    split). If the upper band occupies a single bin, the next band down that
    can still be split is used instead.

    A single split of a three-component histogram is biased toward the
    heavier side, so once all thresholds exist each one is re-optimised as the
    Otsu split of its two adjacent bands until none moves. The result is a
    local minimum of the multi-level criterion sum_k w_k var_k, whose
    thresholds sit at the crossover points of well-separated components.

    Args:
        intensities: Intensity samples.
        n_classes: Number of classes (bands) to produce.
        n_bins: Number of histogram bins.

    Returns:
        Ascending thresholds; each is a histogram bin edge and belongs to the
        upper band.

    Raises:
        DegenerateHistogramError: If fewer distinct intensities than classes
            exist, or the histogram cannot be split further.
    """
    values = np.asarray(intensities, dtype=np.float64).ravel()
    if n_classes < 2:
        raise ValueError(f"n_classes must be at least 2, got {n_classes}")
    if values.size == 0 or not np.all(np.isfinite(values)):
        raise DegenerateHistogramError("Intensities must be a non-empty finite sequence")

    n_distinct = len(np.unique(values))
    if n_distinct < n_classes:
        raise DegenerateHistogramError(
            f"Only {n_distinct} distinct intensities for {n_classes} classes"
        )

    counts, edges = np.histogram(values, bins=n_bins, range=(values.min(), values.max()))
    counts = counts.astype(np.float64) / values.size
    centers = (edges[:-1] + edges[1:]) / 2

    # Half-open bin ranges [start, stop) of the current bands
    segments: List[Tuple[int, int]] = [(0, n_bins)]
    split_bins: List[int] = []

    for _ in range(n_classes - 1):
        # Recurse on the upper band; move down only past unsplittable bands
        seg_idx = None
        for idx in range(len(segments) - 1, -1, -1):
            start, stop = segments[idx]
            if np.count_nonzero(counts[start:stop]) >= 2:
                seg_idx = idx
                break

        if seg_idx is None:
            raise DegenerateHistogramError(
                f"Histogram cannot be split into {n_classes} classes; "
                f"found {len(segments)} separable bands"
            )

        start, stop = segments[seg_idx]
        k, _ = _within_class_scatter(counts[start:stop], centers[start:stop])
        split = start + k + 1
        segments[seg_idx:seg_idx + 1] = [(start, split), (split, stop)]
        split_bins.append(split)

    split_bins = _refine_splits(counts, centers, sorted(split_bins), n_bins)
    return edges[np.array(split_bins)]


def _refine_splits(
    counts: NDArray[np.float64],
    centers: NDArray[np.float64],
    splits: List[int],
    n_bins: int,
    max_passes: int = MAX_REFINE_PASSES,
) -> List[int]:
    """
    Re-split each pair of adjacent bands until no threshold moves.

    Every move keeps the other bands fixed and minimises the scatter of the
    pair, so the total within-class scatter never increases.
    """
    splits = list(splits)
    for _ in range(max_passes):
        moved = False
        for j in range(len(splits)):
            start = splits[j - 1] if j > 0 else 0
            stop = splits[j + 1] if j + 1 < len(splits) else n_bins
            k, _ = _within_class_scatter(counts[start:stop], centers[start:stop])
            if k is None:
                continue
            split = start + k + 1
            if split != splits[j]:
                splits[j] = split
                moved = True
        if not moved:
            break
    return splits


def otsu_init(
    intensities: ArrayLike,
    n_classes: int = 3,
    n_bins: int = DEFAULT_HISTOGRAM_BINS,
    min_variance: float = DEFAULT_MIN_VARIANCE,
) -> MixtureParameters:
    """
    Initial mixture parameters from Otsu intensity bands.

    Args:
        intensities: Masked intensity samples.
        n_classes: Number of tissue classes.
        n_bins: Number of histogram bins.
        min_variance: Lower bound applied to each band variance.

    Returns:
        MixtureParameters ordered by ascending mean (CSF < GM < WM for K=3).

    Raises:
        DegenerateHistogramError: If the thresholds cannot be found.
    """
    values = np.asarray(intensities, dtype=np.float64).ravel()
    thresholds = otsu_thresholds(values, n_classes, n_bins)
    bands = np.digitize(values, thresholds)

    priors = np.zeros(n_classes)
    means = np.zeros(n_classes)
    variances = np.zeros(n_classes)

    for k in range(n_classes):
        band = values[bands == k]
        if band.size == 0:
            raise DegenerateHistogramError(f"Intensity band {k} is empty")
        priors[k] = band.size / values.size
        means[k] = band.mean()
        variances[k] = max(band.var(), min_variance)

    return MixtureParameters(priors=priors, means=means, variances=variances).sorted()
