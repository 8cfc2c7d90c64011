"""
Pytest configuration and shared fixtures for dti_resample tests.
"""

import pytest
import numpy as np

# Add src to path for imports
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from dti_resample.geometry import ImageGeometry
from dti_resample.tensors import TensorField


def random_spd(rng, count, scale=1e-3):
    """Random SPD tensor vectors with eigenvalues in [0.2, 2] * scale."""
    from dti_resample.tensors import compose_from_eigen, matrix_to_vector

    q, _ = np.linalg.qr(rng.normal(size=(count, 3, 3)))
    eigenvalues = rng.uniform(0.2, 2.0, size=(count, 3)) * scale
    return matrix_to_vector(compose_from_eigen(eigenvalues, q))


def rotation_z(angle):
    c, s = np.cos(angle), np.sin(angle)
    return np.array([[c, -s, 0.0], [s, c, 0.0], [0.0, 0.0, 1.0]])


@pytest.fixture
def rng():
    """Seeded random number generator for reproducible tests."""
    return np.random.default_rng(42)


@pytest.fixture
def small_geometry():
    """8x7x6 grid, 2mm isotropic, offset origin."""
    return ImageGeometry(shape=(8, 7, 6), spacing=(2.0, 2.0, 2.0), origin=(-7.0, -6.0, -5.0))


@pytest.fixture
def random_tensor_field(rng, small_geometry):
    """Random SPD tensors on ``small_geometry`` with a background border slab."""
    data = random_spd(rng, small_geometry.num_voxels).reshape(*small_geometry.shape, 6)
    data[0] = 0.0
    return TensorField(data=data, geometry=small_geometry)


@pytest.fixture
def anisotropic_tensor_field():
    """Uniform field of tensors with principal direction along x."""
    geometry = ImageGeometry(shape=(9, 9, 9), origin=(-4.0, -4.0, -4.0))
    tensor = np.array([3e-3, 0.0, 1e-3, 0.0, 0.0, 0.5e-3])
    data = np.broadcast_to(tensor, (*geometry.shape, 6)).copy()
    return TensorField(data=data, geometry=geometry)
