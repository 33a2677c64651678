"""
Input/Output utilities for NIfTI volumes and segmentation results.

Provides thin wrappers around nibabel for reading scans, masks and
ground-truth proportion maps, and for writing label maps, posterior
probability volumes and run metadata.
"""

from pathlib import Path
from typing import Optional, Tuple, Dict, Any, Sequence, Union
from dataclasses import dataclass
import json

import numpy as np
from numpy.typing import NDArray

from .errors import ShapeMismatchError
from .tissue import class_names
from .volume import VoxelGrid


@dataclass
class NIfTIImage:
    """
    Container for NIfTI image data and metadata.

    Attributes:
        data: Image data array.
        affine: 4x4 affine transformation matrix.
        header: NIfTI header information.
        voxel_size: Voxel dimensions in mm.
    """

    data: NDArray
    affine: NDArray[np.float64]
    header: Optional[Any] = None
    voxel_size: Optional[Tuple[float, float, float]] = None

    def __post_init__(self):
        if self.voxel_size is None:
            self.voxel_size = tuple(np.abs(np.diag(self.affine)[:3]).tolist())


def load_nifti(filepath: Union[str, Path]) -> NIfTIImage:
    """
    Load a NIfTI image from file.

    Args:
        filepath: Path to NIfTI file (.nii or .nii.gz).

    Returns:
        NIfTIImage container with data and metadata.

    Raises:
        FileNotFoundError: If file does not exist.
        ValueError: If file is not a valid NIfTI.
    """
    import nibabel as nib

    filepath = Path(filepath)

    if not filepath.exists():
        raise FileNotFoundError(f"NIfTI file not found: {filepath}")

    try:
        img = nib.load(filepath)
    except Exception as e:
        raise ValueError(f"Failed to load NIfTI file: {e}")

    return NIfTIImage(
        data=np.asarray(img.get_fdata()),
        affine=img.affine.copy(),
        header=img.header.copy(),
    )


def save_nifti(
    data: NDArray,
    filepath: Union[str, Path],
    affine: Optional[NDArray[np.float64]] = None,
    header: Optional[Any] = None,
    dtype: Optional[np.dtype] = None,
) -> None:
    """
    Save data as a NIfTI file.

    Args:
        data: Image data array (3D or 4D).
        filepath: Output path (.nii or .nii.gz).
        affine: 4x4 affine matrix. If None, uses identity.
        header: NIfTI header. If None, creates new header.
        dtype: Output data type. If None, uses input dtype.
    """
    import nibabel as nib

    filepath = Path(filepath)
    filepath.parent.mkdir(parents=True, exist_ok=True)

    if affine is None:
        affine = np.eye(4)

    if dtype is not None:
        data = data.astype(dtype)

    if header is not None:
        img = nib.Nifti1Image(data, affine, header=header)
    else:
        img = nib.Nifti1Image(data, affine)

    nib.save(img, filepath)


def load_volume(
    image_path: Union[str, Path],
    mask_path: Optional[Union[str, Path]] = None,
) -> Tuple[VoxelGrid, NIfTIImage]:
    """
    Load a scan and its brain mask as a VoxelGrid.

    Args:
        image_path: Intensity volume (3D NIfTI).
        mask_path: Binary mask volume. If None, voxels with intensity > 0
                   are used.

    Returns:
        (grid, image) where image keeps the affine for writing results.

    Raises:
        FileNotFoundError: If a file does not exist.
        ShapeMismatchError: If mask and image dimensions differ.
        EmptyMaskError: If the mask selects no voxel.
    """
    image = load_nifti(image_path)
    data = np.squeeze(image.data)

    if mask_path is not None:
        mask = np.squeeze(load_nifti(mask_path).data) > 0.5
    else:
        mask = data > 0

    return VoxelGrid(intensities=data, mask=mask), image


def load_ground_truth(
    paths: Sequence[Union[str, Path]],
    grid: VoxelGrid,
) -> NDArray[np.float64]:
    """
    Load per-class ground-truth proportion maps.

    Args:
        paths: One volume per class, in class order (CSF, GM, WM).
        grid: Grid whose masked voxels are extracted.

    Returns:
        Proportion matrix (N, K) with rows normalised to sum to 1.

    Raises:
        ShapeMismatchError: If a map does not match the grid shape.
        ValueError: If a masked voxel has no ground-truth mass.
    """
    columns = []
    for path in paths:
        data = np.squeeze(load_nifti(path).data)
        if data.shape != grid.shape:
            raise ShapeMismatchError(
                f"Ground truth {path} has shape {data.shape}, expected {grid.shape}"
            )
        columns.append(np.clip(grid.gather(data), 0.0, None))

    proportions = np.stack(columns, axis=1)
    totals = proportions.sum(axis=1)
    if np.any(totals <= 0):
        raise ValueError(
            f"{int(np.sum(totals <= 0))} masked voxels have no ground-truth mass"
        )
    return proportions / totals[:, None]


def _to_serializable(value: Any) -> Any:
    """Convert numpy types for JSON serialization."""
    if isinstance(value, np.ndarray):
        return value.tolist()
    if isinstance(value, np.integer):
        return int(value)
    if isinstance(value, np.floating):
        return float(value)
    if isinstance(value, (tuple, list)):
        return [_to_serializable(v) for v in value]
    if isinstance(value, dict):
        return {str(k): _to_serializable(v) for k, v in value.items()}
    return value


class SegmentationWriter:
    """
    Utility class for writing segmentation results to NIfTI format.

    Per-voxel arrays are scattered back into the grid before writing;
    unmasked voxels get label 0 / probability 0.
    """

    def __init__(
        self,
        output_dir: Union[str, Path],
        grid: VoxelGrid,
        affine: Optional[NDArray[np.float64]] = None,
        base_name: str = "segmentation",
    ):
        """
        Initialize segmentation writer.

        Args:
            output_dir: Directory for output files.
            grid: Grid the results belong to.
            affine: Affine transformation matrix of the source scan.
            base_name: Base name for output files.
        """
        self.output_dir = Path(output_dir)
        self.output_dir.mkdir(parents=True, exist_ok=True)

        self.grid = grid
        self.affine = affine if affine is not None else np.eye(4)
        self.base_name = base_name

    def _path(self, name: str) -> Path:
        return self.output_dir / f"{self.base_name}_{name}.nii.gz"

    def write_volume(
        self,
        values: NDArray,
        name: str,
        description: Optional[str] = None,
    ) -> Path:
        """
        Write per-voxel float values (N,) or (N, K) as a 3D or 4D volume.

        Args:
            values: Per-voxel values.
            name: Name suffix for the file.
            description: Description stored in header.

        Returns:
            Path to written file.
        """
        import nibabel as nib

        data = self.grid.to_volume(np.asarray(values, dtype=np.float32))
        img = nib.Nifti1Image(data, self.affine)

        if description:
            img.header["descrip"] = description.encode()[:80]

        filepath = self._path(name)
        nib.save(img, filepath)
        return filepath

    def write_labels(
        self,
        labels: NDArray[np.int64],
        name: str = "labels",
        n_classes: Optional[int] = None,
    ) -> Path:
        """
        Write a hard label map.

        Masked voxels hold class index + 1 so that 0 marks the background.
        A JSON sidecar maps label values to tissue names.

        Args:
            labels: Class index per masked voxel.
            name: Name suffix for the file.
            n_classes: Number of model classes. If None, the highest label
                       present determines it.

        Returns:
            Path to written file.
        """
        labels = np.asarray(labels)
        volume = self.grid.to_volume(labels.astype(np.int16) + 1, fill=0)
        filepath = self._path(name)
        save_nifti(volume, filepath, self.affine, dtype=np.int16)

        if n_classes is None:
            n_classes = int(labels.max()) + 1 if labels.size else 0
        names = {0: "background"}
        names.update({k + 1: label for k, label in enumerate(class_names(n_classes))})

        json_path = self.output_dir / f"{self.base_name}_{name}_labels.json"
        with open(json_path, "w") as f:
            json.dump(names, f, indent=2)

        return filepath

    def write_posteriors(
        self,
        posteriors: NDArray[np.float64],
        name: str = "posteriors",
    ) -> Path:
        """Write posterior probabilities as a 4D volume (last axis = class)."""
        return self.write_volume(
            posteriors, name,
            description=f"Posterior probabilities, {posteriors.shape[1]} classes",
        )

    def write_metadata(
        self,
        metadata: Dict[str, Any],
        name: str = "metadata",
    ) -> Path:
        """Write run metadata as JSON."""
        meta_path = self.output_dir / f"{self.base_name}_{name}.json"
        with open(meta_path, "w") as f:
            json.dump(_to_serializable(metadata), f, indent=2)
        return meta_path

    def write_report(self, report: "SegmentationReport") -> Dict[str, Path]:
        """
        Write all outputs of a pipeline run.

        Args:
            report: SegmentationReport from TissueSegmenter.

        Returns:
            Dictionary mapping output type to file path.
        """
        result = report.hmrf
        n_classes = result.posteriors.shape[1]
        paths = {
            "labels": self.write_labels(result.labels, n_classes=n_classes),
            "posteriors": self.write_posteriors(result.posteriors),
        }

        if result.bias_field is not None:
            paths["bias_field"] = self.write_volume(
                result.bias_field, "bias_field", description="Estimated bias field"
            )

        if report.baseline is not None:
            paths["baseline_labels"] = self.write_labels(
                report.baseline.labels, "baseline_labels", n_classes=n_classes
            )

        paths["metadata"] = self.write_metadata(report.to_dict())
        return paths
