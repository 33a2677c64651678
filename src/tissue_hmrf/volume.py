"""
Voxel grid and neighbourhood structures.

This module provides:
- VoxelGrid: dense 3-D intensity volume plus a co-indexed boolean mask, with
  the flat masked-voxel index <-> (x, y, z) mapping
- NeighborhoodSystem: 6-connected neighbour table over the masked voxels
- A synthetic brain phantom with partial-volume ground truth for testing

Masked voxels are indexed in raster (C) order, so voxel index i refers to the
i-th True entry of ``mask.ravel()``.
"""

from dataclasses import dataclass, field
from typing import Optional, Tuple, Sequence, Union

import numpy as np
from numpy.typing import NDArray

from .errors import ShapeMismatchError, EmptyMaskError


# Axis-aligned offsets of the 6-neighbour scheme, in neighbour-slot order
NEIGHBOR_OFFSETS = np.array([
    [-1, 0, 0], [1, 0, 0],
    [0, -1, 0], [0, 1, 0],
    [0, 0, -1], [0, 0, 1],
], dtype=np.int64)

# Upper bound of the bounded-integer intensity signal
MAX_INTENSITY = 250

# Class means of the synthetic phantom (CSF, GM, WM)
DEFAULT_SYNTHETIC_MEANS = (50.0, 125.0, 200.0)


@dataclass
class VoxelGrid:
    """
    Intensity volume restricted to a region of interest.

    Attributes:
        intensities: Intensity volume, shape (nx, ny, nz).
        mask: Boolean mask of the same shape.
        coordinates: (x, y, z) of each masked voxel, shape (N, 3).
        values: Intensities of the masked voxels, shape (N,).
    """

    intensities: NDArray[np.float64]
    mask: NDArray[np.bool_]
    coordinates: NDArray[np.int64] = field(init=False, repr=False)
    values: NDArray[np.float64] = field(init=False, repr=False)

    def __post_init__(self):
        self.intensities = np.array(self.intensities, dtype=np.float64)
        self.mask = np.array(self.mask, dtype=bool)

        if self.intensities.shape != self.mask.shape:
            raise ShapeMismatchError(
                f"Intensity shape {self.intensities.shape} does not match "
                f"mask shape {self.mask.shape}"
            )
        if self.intensities.ndim != 3:
            raise ShapeMismatchError(
                f"Expected a 3-D volume, got {self.intensities.ndim} dimensions"
            )
        if not np.any(self.mask):
            raise EmptyMaskError("Mask does not select any voxel")

        self.coordinates = np.argwhere(self.mask).astype(np.int64)
        self.values = self.intensities[self.mask]

        self._index_volume = np.full(self.shape, -1, dtype=np.int64)
        self._index_volume[self.mask] = np.arange(self.num_voxels)

        for arr in (self.intensities, self.mask, self.coordinates, self.values,
                    self._index_volume):
            arr.setflags(write=False)

    @property
    def shape(self) -> Tuple[int, int, int]:
        return tuple(self.intensities.shape)

    @property
    def num_voxels(self) -> int:
        """Number of masked voxels."""
        return len(self.coordinates)

    @property
    def index_volume(self) -> NDArray[np.int64]:
        """Volume holding the voxel index of each masked voxel, -1 elsewhere."""
        return self._index_volume

    def index_of(self, x: int, y: int, z: int) -> int:
        """Voxel index of grid coordinate (x, y, z), or -1 if unmasked."""
        return int(self._index_volume[x, y, z])

    def coordinate_of(self, index: int) -> Tuple[int, int, int]:
        """Grid coordinate of a voxel index."""
        return tuple(int(c) for c in self.coordinates[index])

    def to_volume(
        self,
        values: NDArray,
        fill: float = 0,
    ) -> NDArray:
        """
        Scatter per-voxel values back into the grid.

        Args:
            values: Array of shape (N,) or (N, K).
            fill: Value for unmasked voxels.

        Returns:
            Array of shape (nx, ny, nz) or (nx, ny, nz, K).
        """
        values = np.asarray(values)
        if values.shape[0] != self.num_voxels:
            raise ShapeMismatchError(
                f"Expected {self.num_voxels} voxel values, got {values.shape[0]}"
            )
        volume = np.full(self.shape + values.shape[1:], fill, dtype=values.dtype)
        volume[self.mask] = values
        return volume

    def gather(self, volume: NDArray) -> NDArray:
        """Extract masked voxels from a volume of the grid shape (plus trailing axes)."""
        volume = np.asarray(volume)
        if volume.shape[:3] != self.shape:
            raise ShapeMismatchError(
                f"Volume shape {volume.shape[:3]} does not match grid shape {self.shape}"
            )
        return volume[self.mask]


def load_grid(
    dimensions: Sequence[int],
    intensities: NDArray,
    mask: NDArray,
) -> VoxelGrid:
    """
    Build a VoxelGrid from raw arrays.

    Args:
        dimensions: Volume dimensions (nx, ny, nz).
        intensities: Intensity samples, either flat (raster order) or 3-D.
        mask: Boolean (or 0/1) mask, flat or 3-D.

    Returns:
        VoxelGrid over the masked voxels.

    Raises:
        ShapeMismatchError: If array sizes disagree with the dimensions.
        EmptyMaskError: If no voxel is masked.
    """
    dims = tuple(int(d) for d in dimensions)
    if len(dims) != 3:
        raise ShapeMismatchError(f"Expected 3 dimensions, got {len(dims)}")

    intensities = np.asarray(intensities, dtype=np.float64)
    mask = np.asarray(mask).astype(bool)

    expected = int(np.prod(dims))
    for name, arr in (("intensities", intensities), ("mask", mask)):
        if arr.ndim == 1 and arr.size == expected:
            continue
        if arr.shape != dims:
            raise ShapeMismatchError(
                f"{name} has shape {arr.shape}, expected {dims} or ({expected},)"
            )

    return VoxelGrid(
        intensities=intensities.reshape(dims).copy(),
        mask=mask.reshape(dims).copy(),
    )


@dataclass
class NeighborhoodSystem:
    """
    6-connected neighbour table over masked voxels.

    Attributes:
        neighbors: Neighbour voxel indices, shape (N, 6); -1 marks a missing
                   neighbour (volume boundary or unmasked voxel). Slots follow
                   NEIGHBOR_OFFSETS order.
        shape: Shape of the underlying grid.
        coordinates: Grid coordinates of the masked voxels, shape (N, 3).
    """

    neighbors: NDArray[np.int64]
    shape: Tuple[int, int, int]
    coordinates: NDArray[np.int64]

    @property
    def num_voxels(self) -> int:
        return len(self.neighbors)

    @property
    def valid(self) -> NDArray[np.bool_]:
        """Boolean (N, 6) array marking existing neighbours."""
        return self.neighbors >= 0

    @property
    def counts(self) -> NDArray[np.int64]:
        """Number of masked neighbours per voxel."""
        return np.sum(self.neighbors >= 0, axis=1)

    @property
    def parity(self) -> NDArray[np.int64]:
        """(x + y + z) mod 2; no two 6-neighbours share a parity."""
        return np.sum(self.coordinates, axis=1) % 2

    @property
    def num_edges(self) -> int:
        return int(np.sum(self.neighbors >= 0)) // 2

    def neighbors_of(self, index: int) -> NDArray[np.int64]:
        """Ordered neighbour indices of one voxel."""
        row = self.neighbors[index]
        return row[row >= 0]

    def edges(self) -> NDArray[np.int64]:
        """Unordered neighbour pairs (i, j) with i < j, shape (E, 2)."""
        i = np.repeat(np.arange(self.num_voxels), self.neighbors.shape[1])
        j = self.neighbors.ravel()
        keep = j > i
        return np.stack([i[keep], j[keep]], axis=1)

    def is_symmetric(self) -> bool:
        """Check that j in neighbors(i) implies i in neighbors(j)."""
        i = np.repeat(np.arange(self.num_voxels), self.neighbors.shape[1])
        j = self.neighbors.ravel()
        keep = j >= 0
        forward = set(zip(i[keep].tolist(), j[keep].tolist()))
        return all((b, a) in forward for a, b in forward)


def build_neighborhood(grid: VoxelGrid) -> NeighborhoodSystem:
    """
    Enumerate masked 6-neighbours of every masked voxel.

    Runs one vectorised pass per offset, linear in voxel count.

    Args:
        grid: Voxel grid with its mask.

    Returns:
        NeighborhoodSystem for the grid's masked voxels.
    """
    coords = grid.coordinates
    shape = np.array(grid.shape)
    index_volume = grid.index_volume

    neighbors = np.full((grid.num_voxels, len(NEIGHBOR_OFFSETS)), -1, dtype=np.int64)

    for slot, offset in enumerate(NEIGHBOR_OFFSETS):
        shifted = coords + offset
        inside = np.all((shifted >= 0) & (shifted < shape), axis=1)
        target = shifted[inside]
        neighbors[inside, slot] = index_volume[target[:, 0], target[:, 1], target[:, 2]]

    neighbors.setflags(write=False)

    return NeighborhoodSystem(
        neighbors=neighbors,
        shape=grid.shape,
        coordinates=coords,
    )


@dataclass
class SyntheticVolume:
    """Synthetic phantom with its ground truth."""

    intensities: NDArray[np.int32]
    mask: NDArray[np.bool_]
    ground_truth: NDArray[np.float64]
    labels: NDArray[np.int32]
    bias_field: NDArray[np.float64]


def make_synthetic_volume(
    shape: Tuple[int, int, int] = (91, 109, 91),
    means: Sequence[float] = DEFAULT_SYNTHETIC_MEANS,
    noise_std: float = 10.0,
    bias_strength: float = 0.0,
    partial_volume_sigma: float = 0.6,
    seed: Optional[Union[int, np.random.Generator]] = None,
) -> SyntheticVolume:
    """
    Generate a brain-like phantom for testing.

    Creates nested ellipsoids:
    - CSF rim at the outer boundary plus two lateral ventricles
    - Cortical gray matter shell
    - White matter core

    Ground-truth proportions come from Gaussian smoothing of the hard labels,
    which produces partial-volume mixing at tissue boundaries.

    Args:
        shape: Volume dimensions in voxels.
        means: Intensity of pure CSF, GM and WM.
        noise_std: Standard deviation of additive Gaussian noise.
        bias_strength: Amplitude of a smooth multiplicative bias (0 disables).
        partial_volume_sigma: Smoothing (voxels) applied to the hard labels.
        seed: Seed or generator for the noise.

    Returns:
        SyntheticVolume with integer intensities in 0..250.
    """
    from scipy import ndimage

    rng = seed if isinstance(seed, np.random.Generator) else np.random.default_rng(seed)

    # Normalised coordinates in [-1, 1] along each axis
    axes = [np.linspace(-1.0, 1.0, n) for n in shape]
    u, v, w = np.meshgrid(*axes, indexing="ij")

    brain_dist = np.sqrt((u / 0.85) ** 2 + (v / 0.85) ** 2 + (w / 0.85) ** 2)
    mask = brain_dist < 1.0

    labels = np.full(shape, -1, dtype=np.int32)
    labels[mask & (brain_dist >= 0.9)] = 0  # CSF rim
    labels[mask & (brain_dist >= 0.65) & (brain_dist < 0.9)] = 1  # Cortical GM
    labels[mask & (brain_dist < 0.65)] = 2  # WM core

    # Lateral ventricles
    for cx in (-0.15, 0.15):
        vent_dist = ((u - cx) / 0.08) ** 2 + (v / 0.3) ** 2 + ((w - 0.1) / 0.12) ** 2
        labels[mask & (vent_dist < 1.0)] = 0

    n_classes = len(means)
    one_hot = np.stack([(labels == k).astype(np.float64) for k in range(n_classes)], axis=-1)

    if partial_volume_sigma > 0:
        smoothed = np.stack([
            ndimage.gaussian_filter(one_hot[..., k], sigma=partial_volume_sigma)
            for k in range(n_classes)
        ], axis=-1)
    else:
        smoothed = one_hot

    totals = smoothed.sum(axis=-1, keepdims=True)
    ground_truth = np.where(totals > 0, smoothed / np.maximum(totals, 1e-12), 0.0)
    ground_truth[~mask] = 0.0

    clean = ground_truth @ np.asarray(means, dtype=np.float64)

    bias = np.ones(shape)
    if bias_strength > 0:
        bias = 1.0 + bias_strength * (0.6 * u + 0.4 * v ** 2 - 0.2)

    noisy = clean * bias + rng.normal(0.0, noise_std, shape)
    intensities = np.clip(np.rint(noisy), 0, MAX_INTENSITY).astype(np.int32)
    intensities[~mask] = 0

    return SyntheticVolume(
        intensities=intensities,
        mask=mask,
        ground_truth=ground_truth,
        labels=labels,
        bias_field=bias,
    )
