"""
Command-line interface for the tissue classification pipeline.
"""

import argparse
import logging
import sys
from pathlib import Path
from typing import Optional


def main(args: Optional[list] = None) -> int:
    """
    Main entry point for the tissue-hmrf CLI.

    Args:
        args: Command line arguments (uses sys.argv if None).

    Returns:
        Exit code (0 for success).
    """
    parser = argparse.ArgumentParser(
        prog="tissue-hmrf",
        description="Classify brain tissue (CSF/GM/WM) with a hidden Markov random field",
    )

    parser.add_argument(
        "input",
        type=Path,
        nargs="?",
        default=None,
        help="Input intensity volume (NIfTI)",
    )

    parser.add_argument(
        "--synthetic",
        action="store_true",
        help="Segment a generated phantom instead of an input volume",
    )

    parser.add_argument(
        "--synthetic-shape",
        type=int,
        nargs=3,
        default=[91, 109, 91],
        metavar=("NX", "NY", "NZ"),
        help="Dimensions of the synthetic phantom (default: 91 109 91)",
    )

    parser.add_argument(
        "--seed",
        type=int,
        default=0,
        help="Noise seed of the synthetic phantom (default: 0)",
    )

    parser.add_argument(
        "-m", "--mask",
        type=Path,
        default=None,
        help="Brain mask volume (default: voxels with intensity > 0)",
    )

    parser.add_argument(
        "-g", "--ground-truth",
        type=Path,
        nargs="+",
        default=None,
        metavar="MAP",
        help="Ground-truth proportion maps, one per class (CSF GM WM)",
    )

    parser.add_argument(
        "-o", "--output",
        type=Path,
        default=Path("./output"),
        help="Output directory for segmentation results",
    )

    parser.add_argument(
        "-c", "--config",
        type=Path,
        default=None,
        help="JSON file with HMRF configuration (flags override it)",
    )

    parser.add_argument(
        "--preset",
        choices=["default", "fast", "accurate"],
        default="default",
        help="Configuration preset (default: default)",
    )

    parser.add_argument(
        "-k", "--classes",
        type=int,
        default=3,
        help="Number of tissue classes (default: 3)",
    )

    parser.add_argument(
        "-b", "--beta",
        type=float,
        default=None,
        help="Spatial smoothing strength (default: 0.1)",
    )

    parser.add_argument(
        "--max-iter",
        type=int,
        default=None,
        help="Maximum outer iterations (default: 100)",
    )

    parser.add_argument(
        "--tol",
        type=float,
        default=None,
        help="Relative parameter change for convergence (default: 1e-5)",
    )

    parser.add_argument(
        "--sweeps",
        type=int,
        default=None,
        help="ICM sweeps per parameter update (default: 1)",
    )

    parser.add_argument(
        "--sweep-policy",
        choices=["checkerboard", "synchronous"],
        default=None,
        help="ICM update order (default: checkerboard)",
    )

    parser.add_argument(
        "--potential",
        choices=["potts", "contrast"],
        default=None,
        help="Clique potential (default: potts)",
    )

    parser.add_argument(
        "--bias-correction",
        action="store_true",
        help="Estimate and correct a smooth bias field",
    )

    parser.add_argument(
        "--no-variance-floor",
        action="store_true",
        help="Fail on collapsing classes instead of flooring their variance",
    )

    parser.add_argument(
        "-j", "--workers",
        type=int,
        default=None,
        help="Worker threads per sweep (default: 1)",
    )

    parser.add_argument(
        "--baseline",
        action="store_true",
        help="Also fit the non-spatial finite mixture for comparison",
    )

    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose output",
    )

    parser.add_argument(
        "--version",
        action="version",
        version="%(prog)s 0.1.0",
    )

    parsed_args = parser.parse_args(args)

    if parsed_args.input is None and not parsed_args.synthetic:
        parser.error("an input volume or --synthetic is required")

    if parsed_args.verbose:
        logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")

    try:
        return run_segmentation(parsed_args)
    except KeyboardInterrupt:
        print("\nSegmentation interrupted by user")
        return 1
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        if parsed_args.verbose:
            import traceback
            traceback.print_exc()
        return 1


def build_config(args: argparse.Namespace) -> "HMRFConfig":
    """HMRF configuration from preset, JSON file and command-line overrides."""
    import json
    from dataclasses import replace
    from .hmrf import HMRFConfig

    if args.config is not None:
        with open(args.config) as f:
            config = HMRFConfig.from_dict(json.load(f))
    else:
        config = getattr(HMRFConfig, args.preset)()

    overrides = {
        "beta": args.beta,
        "max_iter": args.max_iter,
        "tol": args.tol,
        "sweeps_per_iteration": args.sweeps,
        "sweep_policy": args.sweep_policy,
        "potential": args.potential,
        "n_workers": args.workers,
    }
    overrides = {k: v for k, v in overrides.items() if v is not None}
    if args.bias_correction:
        overrides["bias_correction"] = True
    if args.no_variance_floor:
        overrides["floor_variance"] = False

    return replace(config, **overrides) if overrides else config


def run_segmentation(args: argparse.Namespace) -> int:
    """Run the segmentation with parsed arguments."""
    import time
    import numpy as np
    from .io import load_volume, load_ground_truth, SegmentationWriter
    from .pipeline import TissueSegmenter
    from .tissue import class_names
    from .volume import VoxelGrid, make_synthetic_volume

    start_time = time.time()

    if args.verbose:
        print("=" * 70)
        print("  TISSUE-HMRF: Brain Tissue Classification")
        print("=" * 70)
        print()

    # =========================================================================
    # STEP 1: Load Volume
    # =========================================================================
    if args.verbose:
        print("[Step 1/4] Loading Volume")
        print("-" * 70)
        print(f"  Source: {args.input or 'synthetic phantom'}")

    step_start = time.time()
    ground_truth = None
    affine = None

    if args.synthetic:
        phantom = make_synthetic_volume(shape=tuple(args.synthetic_shape), seed=args.seed)
        grid = VoxelGrid(intensities=phantom.intensities, mask=phantom.mask)
        ground_truth = grid.gather(phantom.ground_truth)
    else:
        grid, image = load_volume(args.input, args.mask)
        affine = image.affine

    if args.ground_truth is not None:
        if len(args.ground_truth) != args.classes:
            raise ValueError(
                f"Got {len(args.ground_truth)} ground-truth maps for {args.classes} classes"
            )
        ground_truth = load_ground_truth(args.ground_truth, grid)

    if args.verbose:
        elapsed = time.time() - step_start
        print(f"  Shape: {grid.shape}")
        print(f"  Masked voxels: {grid.num_voxels:,}")
        print(f"  Intensity range: {grid.values.min():.0f} - {grid.values.max():.0f}")
        print(f"  Ground truth: {'yes' if ground_truth is not None else 'no'}")
        print(f"  Completed in {elapsed:.2f}s")
        print()

    # =========================================================================
    # STEP 2: Configure Model
    # =========================================================================
    config = build_config(args)

    if args.verbose:
        print("[Step 2/4] Configuring Model")
        print("-" * 70)
        print(f"    Classes:             {args.classes}")
        print(f"    Beta:                {config.beta}")
        print(f"    Potential:           {config.potential}")
        print(f"    Sweep policy:        {config.sweep_policy}")
        print(f"    Sweeps per update:   {config.sweeps_per_iteration}")
        print(f"    Max iterations:      {config.max_iter}")
        print(f"    Tolerance:           {config.tol:g}")
        print(f"    Bias correction:     {'on' if config.bias_correction else 'off'}")
        print(f"    Workers:             {config.n_workers}")
        print()

    segmenter = TissueSegmenter(grid, n_classes=args.classes, config=config)

    # =========================================================================
    # STEP 3: Fit
    # =========================================================================
    if args.verbose:
        print("[Step 3/4] Fitting Tissue Model")
        print("-" * 70)

    step_start = time.time()
    report = segmenter.run_full_pipeline(
        ground_truth=ground_truth,
        run_baseline=args.baseline,
        verbose=args.verbose,
    )
    result = report.hmrf

    if args.verbose:
        elapsed = time.time() - step_start
        names = class_names(args.classes)
        print(f"  Final Parameters:")
        for k, name in enumerate(names):
            print(f"    {name:>8s}: mean {result.params.means[k]:7.2f}  "
                  f"std {result.params.stds[k]:6.2f}  prior {result.params.priors[k]:.3f}")
        print(f"  Iterations: {result.n_iter} ({'converged' if result.converged else 'not converged'})")
        if report.evaluation is not None:
            print()
            print(report.evaluation.summary())
        if report.baseline_evaluation is not None:
            print(f"  Baseline misclassification rate: "
                  f"{report.baseline_evaluation.misclassification_rate:.4f}")
        print(f"  Completed in {elapsed:.2f}s")
        print()

    # =========================================================================
    # STEP 4: Save Results
    # =========================================================================
    if args.verbose:
        print("[Step 4/4] Saving Results")
        print("-" * 70)
        print(f"  Writing output files to: {args.output}")

    writer = SegmentationWriter(
        output_dir=args.output,
        grid=grid,
        affine=affine if affine is not None else np.eye(4),
        base_name="tissue",
    )
    paths = writer.write_report(report)

    if args.verbose:
        print("  Output Files:")
        for name, path in paths.items():
            print(f"    {name}: {path.name}")
        print()

    # =========================================================================
    # Summary
    # =========================================================================
    total_time = time.time() - start_time

    if args.verbose:
        print("=" * 70)
        print("  SEGMENTATION COMPLETE")
        print("=" * 70)
        print(f"  Total time:            {total_time:.2f}s")
        if report.evaluation is not None:
            print(f"  Misclassification:     {report.evaluation.misclassification_rate:.4f}")
        print(f"  Output directory:      {args.output}")
        print("=" * 70)
    else:
        print(f"Segmentation complete ({total_time:.1f}s). Results saved to: {args.output}")

    return 0


if __name__ == "__main__":
    sys.exit(main())
