"""
Pytest configuration and shared fixtures for tissue-hmrf tests.
"""

import pytest
import numpy as np

# Add src to path for imports
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))


@pytest.fixture(scope="session")
def phantom():
    """
    Small synthetic brain phantom with partial-volume ground truth.

    This fixture is session-scoped to avoid regenerating for each test.
    """
    from tissue_hmrf.volume import make_synthetic_volume

    return make_synthetic_volume(shape=(24, 28, 24), noise_std=8.0, seed=7)


@pytest.fixture
def phantom_grid(phantom):
    """VoxelGrid over the phantom's brain mask."""
    from tissue_hmrf.volume import VoxelGrid

    return VoxelGrid(intensities=phantom.intensities, mask=phantom.mask)


@pytest.fixture
def small_spherical_mask():
    """Small spherical mask for quick tests."""
    shape = (11, 11, 11)
    center = np.array([5, 5, 5])
    radius = 4

    x, y, z = np.ogrid[:shape[0], :shape[1], :shape[2]]
    dist = np.sqrt((x - center[0])**2 + (y - center[1])**2 + (z - center[2])**2)

    return dist <= radius


@pytest.fixture
def two_band_volume():
    """3x3x3 volume: x <= 1 at intensity 10, x == 2 at intensity 200, fully masked."""
    intensities = np.full((3, 3, 3), 10.0)
    intensities[2] = 200.0
    mask = np.ones((3, 3, 3), dtype=bool)
    return intensities, mask


@pytest.fixture
def rng():
    """Seeded random number generator for reproducible tests."""
    return np.random.default_rng(42)
