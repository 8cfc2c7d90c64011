"""
Dense vector fields (displacements and stationary velocities).
"""

from dataclasses import dataclass

import numpy as np
from numpy.typing import NDArray

from .geometry import ImageGeometry
from .interpolation import sample_vector_field


@dataclass
class VectorField:
    """
    Dense 3D vector field in physical units.

    Attributes:
        data: Vectors in mm, shape (X, Y, Z, 3), expressed in the physical
            frame of ``geometry``.
        geometry: Grid geometry of ``data``.
    """

    data: NDArray[np.float64]
    geometry: ImageGeometry

    def __post_init__(self):
        self.data = np.asarray(self.data, dtype=np.float64)
        expected = (*self.geometry.shape, 3)
        if self.data.shape != expected:
            raise ValueError(
                f"Vector field shape {self.data.shape} does not match expected {expected}"
            )

    @classmethod
    def zeros(cls, geometry: ImageGeometry) -> "VectorField":
        return cls(np.zeros((*geometry.shape, 3)), geometry)

    @classmethod
    def from_voxel_units(
        cls,
        data: NDArray[np.float64],
        geometry: ImageGeometry,
    ) -> "VectorField":
        """Build a field from vectors expressed in voxel index units."""
        linear = geometry.affine[:3, :3]
        return cls(np.asarray(data) @ linear.T, geometry)

    def to_voxel_units(self) -> NDArray[np.float64]:
        """Vectors expressed in voxel index units, shape (X, Y, Z, 3)."""
        inv_linear = np.linalg.inv(self.geometry.affine[:3, :3])
        return self.data @ inv_linear.T

    def negated(self) -> "VectorField":
        return VectorField(-self.data, self.geometry)

    def sample(self, points: NDArray[np.float64]) -> NDArray[np.float64]:
        """
        Trilinear interpolation at (N, 3) physical points.

        Points outside the grid take the nearest edge vector.
        """
        indices = self.geometry.physical_to_index(points)
        return sample_vector_field(self.data, indices)

    def spatial_gradient(self) -> NDArray[np.float64]:
        """
        Gradient with respect to physical coordinates.

        Returns:
            Array of shape (X, Y, Z, 3, 3) where ``[..., c, a]`` is
            d(vector_c) / d(x_a).
        """
        index_gradient = np.zeros(self.data.shape + (3,), dtype=np.float64)
        for axis in range(3):
            # np.gradient needs at least two samples along an axis
            if self.data.shape[axis] > 1:
                index_gradient[..., axis] = np.gradient(self.data, axis=axis)

        inv_linear = np.linalg.inv(self.geometry.affine[:3, :3])
        return index_gradient @ inv_linear

    def max_norm(self) -> float:
        """Largest vector magnitude in mm."""
        if self.data.size == 0:
            return 0.0
        return float(np.max(np.linalg.norm(self.data, axis=-1)))

    def jacobian_determinant(self) -> NDArray[np.float64]:
        """
        Jacobian determinant of ``x -> x + field(x)`` at every voxel.

        The determinant indicates local volume change:
        - det(J) > 1: local expansion
        - det(J) < 1: local compression
        - det(J) <= 0: folding (invalid)
        """
        jacobian = np.eye(3) + self.spatial_gradient()
        return np.linalg.det(jacobian)
