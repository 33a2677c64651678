"""
tissue-hmrf: Brain Tissue Classification with Hidden Markov Random Fields

Classifies every voxel inside a brain mask as CSF, gray matter or white
matter by combining a Gaussian intensity model per tissue class with a
Markov random field prior over 6-connected neighbours.

Pipeline:
- Otsu thresholding of the intensity histogram for initial class parameters
- Finite Gaussian mixture EM as a non-spatial reference
- HMRF fit alternating ICM label sweeps with parameter updates
- Optional smooth bias field correction
- Soft confusion statistics against proportion-valued ground truth

Quick start:
    from tissue_hmrf import load_grid, build_neighborhood, otsu_init, fit_hmrf, evaluate

    grid = load_grid((91, 109, 91), intensities, mask)
    neighborhood = build_neighborhood(grid)
    params = otsu_init(grid.values, n_classes=3)

    result = fit_hmrf(grid.values, neighborhood, params, beta=0.1)
    report = evaluate(ground_truth, result.posteriors)
"""

__version__ = "0.1.0"

from .errors import (
    SegmentationError,
    ShapeMismatchError,
    EmptyMaskError,
    DegenerateHistogramError,
    DegenerateClassError,
    NonConvergenceWarning,
    SingularVarianceWarning,
)
from .tissue import TissueClass, MixtureParameters, DEFAULT_MIN_VARIANCE
from .volume import (
    VoxelGrid,
    NeighborhoodSystem,
    SyntheticVolume,
    load_grid,
    build_neighborhood,
    make_synthetic_volume,
)
from .otsu import otsu_thresholds, otsu_init
from .mixture import MixtureResult, fit_finite_mixture
from .potentials import CliquePotential, PottsPotential, ContrastSensitivePotential, make_potential
from .bias_field import BiasFieldConfig, BiasFieldEstimator
from .hmrf import HMRFConfig, HMRFState, HMRFResult, HMRFSegmenter, fit_hmrf
from .evaluation import EvaluationResult, evaluate, dice_per_class
from .pipeline import TissueSegmenter, SegmentationReport
from .io import SegmentationWriter, load_nifti, save_nifti, load_volume, load_ground_truth

__all__ = [
    # Errors and warnings
    "SegmentationError",
    "ShapeMismatchError",
    "EmptyMaskError",
    "DegenerateHistogramError",
    "DegenerateClassError",
    "NonConvergenceWarning",
    "SingularVarianceWarning",
    # Tissue model
    "TissueClass",
    "MixtureParameters",
    "DEFAULT_MIN_VARIANCE",
    # Voxel grid and neighbourhoods
    "VoxelGrid",
    "NeighborhoodSystem",
    "SyntheticVolume",
    "load_grid",
    "build_neighborhood",
    "make_synthetic_volume",
    # Initialisation and baseline
    "otsu_thresholds",
    "otsu_init",
    "MixtureResult",
    "fit_finite_mixture",
    # HMRF model
    "CliquePotential",
    "PottsPotential",
    "ContrastSensitivePotential",
    "make_potential",
    "BiasFieldConfig",
    "BiasFieldEstimator",
    "HMRFConfig",
    "HMRFState",
    "HMRFResult",
    "HMRFSegmenter",
    "fit_hmrf",
    # Evaluation
    "EvaluationResult",
    "evaluate",
    "dice_per_class",
    # Pipeline
    "TissueSegmenter",
    "SegmentationReport",
    # I/O
    "SegmentationWriter",
    "load_nifti",
    "save_nifti",
    "load_volume",
    "load_ground_truth",
]
