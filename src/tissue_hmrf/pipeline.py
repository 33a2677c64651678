"""
End-to-end tissue classification pipeline.

Combines the voxel grid, Otsu initialisation, the non-spatial mixture
baseline and the HMRF model into one driver, and evaluates the result
against ground truth when it is available.
"""

from dataclasses import dataclass, field
from typing import Optional, Callable, Dict, Any
import logging

import numpy as np
from numpy.typing import NDArray

from .evaluation import EvaluationResult, evaluate, dice_per_class
from .hmrf import HMRFConfig, HMRFResult, HMRFState, HMRFSegmenter
from .mixture import MixtureResult, fit_finite_mixture
from .otsu import otsu_init, DEFAULT_HISTOGRAM_BINS
from .tissue import MixtureParameters
from .volume import VoxelGrid, NeighborhoodSystem, build_neighborhood

logger = logging.getLogger(__name__)


@dataclass
class SegmentationReport:
    """
    Container for pipeline results.

    Attributes:
        initial_params: Parameters from Otsu initialisation.
        hmrf: Result of the HMRF fit.
        baseline: Result of the non-spatial mixture fit, if run.
        evaluation: Evaluation of the HMRF posteriors, if ground truth was given.
        baseline_evaluation: Evaluation of the baseline posteriors.
        dice: Per-class Dice of the HMRF labels against the dominant true class.
        metadata: Additional run metadata.
    """

    initial_params: MixtureParameters
    hmrf: HMRFResult
    baseline: Optional[MixtureResult] = None
    evaluation: Optional[EvaluationResult] = None
    baseline_evaluation: Optional[EvaluationResult] = None
    dice: Optional[NDArray[np.float64]] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        data = dict(self.metadata)
        data["initial_params"] = self.initial_params.to_dict()
        data["hmrf"] = {
            "params": self.hmrf.params.to_dict(),
            "n_iter": self.hmrf.n_iter,
            "converged": self.hmrf.converged,
            "cancelled": self.hmrf.cancelled,
            "variance_floored": self.hmrf.variance_floored,
            "energy_history": list(self.hmrf.energy_history),
            "iteration_energies": [list(pair) for pair in self.hmrf.iteration_energies],
            "label_changes_history": list(self.hmrf.label_changes_history),
        }
        if self.baseline is not None:
            data["baseline"] = {
                "params": self.baseline.params.to_dict(),
                "n_iter": self.baseline.n_iter,
                "converged": self.baseline.converged,
                "log_likelihood": self.baseline.log_likelihood,
            }
        if self.evaluation is not None:
            data["evaluation"] = self.evaluation.to_dict()
        if self.baseline_evaluation is not None:
            data["baseline_evaluation"] = self.baseline_evaluation.to_dict()
        if self.dice is not None:
            data["dice"] = [float(d) for d in self.dice]
        return data


class TissueSegmenter:
    """
    Driver for classifying the masked voxels of one scan.

    Pipeline:
    1. Build the neighbourhood system of the masked voxels
    2. Initialise the mixture by Otsu thresholding
    3. (optional) Fit the non-spatial mixture baseline
    4. Fit the HMRF model
    5. (optional) Evaluate against ground-truth proportions

    The neighbourhood system is built once and reused by every fit.
    """

    def __init__(
        self,
        grid: VoxelGrid,
        n_classes: int = 3,
        config: Optional[HMRFConfig] = None,
        n_bins: int = DEFAULT_HISTOGRAM_BINS,
    ):
        """
        Initialize the segmenter.

        Args:
            grid: Intensity volume and mask.
            n_classes: Number of tissue classes.
            config: HMRF configuration. Defaults to HMRFConfig.default().
            n_bins: Histogram bins for the Otsu initialisation.
        """
        self.grid = grid
        self.n_classes = n_classes
        self.config = config or HMRFConfig.default()
        self.n_bins = n_bins
        self._neighborhood: Optional[NeighborhoodSystem] = None

    @property
    def neighborhood(self) -> NeighborhoodSystem:
        if self._neighborhood is None:
            self._neighborhood = build_neighborhood(self.grid)
        return self._neighborhood

    def initialize(self) -> MixtureParameters:
        """Otsu initialisation of the mixture parameters."""
        return otsu_init(
            self.grid.values, self.n_classes, self.n_bins,
            min_variance=self.config.min_variance,
        )

    def fit_baseline(self, initial_params: MixtureParameters) -> MixtureResult:
        """
        Non-spatial finite mixture EM with the HMRF iteration settings.

        ``config.baseline_tol`` is a per-voxel log-likelihood change; it is
        scaled by the voxel count into the total log-likelihood tolerance
        of the EM loop.
        """
        return fit_finite_mixture(
            self.grid.values,
            initial_params,
            max_iter=self.config.max_iter,
            tol=self.config.baseline_tol * self.grid.num_voxels,
            min_variance=self.config.min_variance,
            floor_variance=self.config.floor_variance,
        )

    def fit(
        self,
        initial_params: MixtureParameters,
        callback: Optional[Callable[[HMRFState, int], None]] = None,
        should_stop: Optional[Callable[[], bool]] = None,
    ) -> HMRFResult:
        """HMRF fit from the given initial parameters."""
        segmenter = HMRFSegmenter(self.grid.values, self.neighborhood, self.config)
        return segmenter.fit(initial_params, callback=callback, should_stop=should_stop)

    def run_full_pipeline(
        self,
        ground_truth: Optional[NDArray[np.float64]] = None,
        run_baseline: bool = False,
        should_stop: Optional[Callable[[], bool]] = None,
        verbose: bool = False,
    ) -> SegmentationReport:
        """
        Run the complete segmentation pipeline.

        Args:
            ground_truth: True class proportions (N, K) for evaluation.
            run_baseline: Also fit the non-spatial mixture for comparison.
            should_stop: Cancellation check between HMRF iterations.
            verbose: Print progress information.

        Returns:
            SegmentationReport with all outputs.
        """
        if verbose:
            print("Building neighborhood system...")
        neighborhood = self.neighborhood
        logger.info(
            "%d masked voxels, %d neighbour pairs", neighborhood.num_voxels, neighborhood.num_edges
        )

        if verbose:
            print("Initializing tissue classes (Otsu)...")
        initial_params = self.initialize()

        baseline = None
        if run_baseline:
            if verbose:
                print("Fitting finite mixture baseline...")
            baseline = self.fit_baseline(initial_params)

        def callback(state, iteration):
            if verbose and (iteration == 1 or iteration % 5 == 0):
                print(
                    f"  Iteration {iteration}: {state.label_changes} label changes, "
                    f"parameter change {state.param_change:.2e}"
                )

        if verbose:
            print(f"Fitting HMRF (beta={self.config.beta}, potential={self.config.potential})...")
        result = self.fit(initial_params, callback=callback, should_stop=should_stop)

        evaluation = None
        baseline_evaluation = None
        dice = None
        if ground_truth is not None:
            if verbose:
                print("Evaluating against ground truth...")
            evaluation = evaluate(ground_truth, result.posteriors)
            dice = dice_per_class(
                np.argmax(ground_truth, axis=1), result.labels, self.n_classes
            )
            if baseline is not None:
                baseline_evaluation = evaluate(ground_truth, baseline.posteriors)

        metadata = {
            "shape": self.grid.shape,
            "num_voxels": self.grid.num_voxels,
            "n_classes": self.n_classes,
            "config": self.config.to_dict(),
        }

        return SegmentationReport(
            initial_params=initial_params,
            hmrf=result,
            baseline=baseline,
            evaluation=evaluation,
            baseline_evaluation=baseline_evaluation,
            dice=dice,
            metadata=metadata,
        )
