"""
Image grid geometry.

Physical coordinates follow the ITK convention (LPS millimetres), so that
ITK/ANTs transform files and displacement fields apply as stored. NIfTI
affines are RAS; use :meth:`ImageGeometry.from_nifti_affine` and
:meth:`ImageGeometry.to_nifti_affine` at the file boundary.
"""

from dataclasses import dataclass, field
from typing import Tuple

import numpy as np
from numpy.typing import NDArray

# RAS <-> LPS
_RAS_TO_LPS = np.diag([-1.0, -1.0, 1.0, 1.0])


@dataclass(frozen=True, eq=False)
class ImageGeometry:
    """
    Geometry of a regular 3D grid.

    A voxel index ``i`` maps to the physical point
    ``origin + direction @ (spacing * i)``.

    Attributes:
        shape: Grid extent (X, Y, Z).
        spacing: Voxel size in mm.
        origin: Physical position of voxel (0, 0, 0).
        direction: 3x3 direction cosines, one column per grid axis.
    """

    shape: Tuple[int, int, int]
    spacing: Tuple[float, float, float] = (1.0, 1.0, 1.0)
    origin: Tuple[float, float, float] = (0.0, 0.0, 0.0)
    direction: NDArray[np.float64] = field(default_factory=lambda: np.eye(3))

    def __post_init__(self):
        if len(self.shape) != 3 or any(int(s) < 1 for s in self.shape):
            raise ValueError(f"Shape must hold 3 positive sizes, got {self.shape}")
        if len(self.spacing) != 3 or any(s <= 0 for s in self.spacing):
            raise ValueError(f"Spacing must hold 3 positive values, got {self.spacing}")
        if len(self.origin) != 3:
            raise ValueError(f"Origin must hold 3 values, got {self.origin}")

        direction = np.asarray(self.direction, dtype=np.float64)
        if direction.shape != (3, 3):
            raise ValueError(f"Direction must be 3x3, got {direction.shape}")
        if abs(np.linalg.det(direction)) < 1e-8:
            raise ValueError("Direction matrix is singular")

        # frozen dataclass: normalise fields through object.__setattr__
        object.__setattr__(self, "shape", tuple(int(s) for s in self.shape))
        object.__setattr__(self, "spacing", tuple(float(s) for s in self.spacing))
        object.__setattr__(self, "origin", tuple(float(o) for o in self.origin))
        object.__setattr__(self, "direction", direction)

    @classmethod
    def from_affine(
        cls,
        affine: NDArray[np.float64],
        shape: Tuple[int, int, int],
    ) -> "ImageGeometry":
        """
        Build a geometry from a 4x4 index-to-physical matrix.

        Args:
            affine: 4x4 matrix in the package's physical (LPS) convention.
            shape: Grid extent.

        Returns:
            ImageGeometry with spacing taken from the column norms.
        """
        affine = np.asarray(affine, dtype=np.float64)
        if affine.shape != (4, 4):
            raise ValueError(f"Affine must be 4x4, got {affine.shape}")

        linear = affine[:3, :3]
        spacing = np.linalg.norm(linear, axis=0)
        if np.any(spacing <= 0):
            raise ValueError("Affine has a zero-length axis")

        return cls(
            shape=tuple(int(s) for s in shape[:3]),
            spacing=tuple(spacing.tolist()),
            origin=tuple(affine[:3, 3].tolist()),
            direction=linear / spacing,
        )

    @classmethod
    def from_nifti_affine(
        cls,
        affine: NDArray[np.float64],
        shape: Tuple[int, int, int],
    ) -> "ImageGeometry":
        """Build a geometry from a NIfTI (RAS) affine."""
        return cls.from_affine(_RAS_TO_LPS @ np.asarray(affine, dtype=np.float64), shape)

    @property
    def affine(self) -> NDArray[np.float64]:
        """4x4 index-to-physical matrix."""
        affine = np.eye(4)
        affine[:3, :3] = self.direction * np.asarray(self.spacing)
        affine[:3, 3] = self.origin
        return affine

    def to_nifti_affine(self) -> NDArray[np.float64]:
        """4x4 index-to-RAS matrix for writing NIfTI files."""
        return _RAS_TO_LPS @ self.affine

    @property
    def num_voxels(self) -> int:
        return int(np.prod(self.shape))

    def index_to_physical(self, indices: NDArray[np.float64]) -> NDArray[np.float64]:
        """Map (N, 3) continuous indices to (N, 3) physical points."""
        indices = np.asarray(indices, dtype=np.float64)
        affine = self.affine
        return indices @ affine[:3, :3].T + affine[:3, 3]

    def physical_to_index(self, points: NDArray[np.float64]) -> NDArray[np.float64]:
        """Map (N, 3) physical points to (N, 3) continuous indices."""
        points = np.asarray(points, dtype=np.float64)
        affine = self.affine
        inv_linear = np.linalg.inv(affine[:3, :3])
        return (points - affine[:3, 3]) @ inv_linear.T

    def slab_points(self, start: int, stop: int) -> NDArray[np.float64]:
        """
        Physical points of the slab ``start <= i < stop`` along the first axis.

        Returns:
            Array of shape (stop - start, Y, Z, 3).
        """
        _, ny, nz = self.shape
        grid = np.stack(
            np.meshgrid(
                np.arange(start, stop, dtype=np.float64),
                np.arange(ny, dtype=np.float64),
                np.arange(nz, dtype=np.float64),
                indexing="ij",
            ),
            axis=-1,
        )
        return self.index_to_physical(grid.reshape(-1, 3)).reshape(grid.shape)

    def physical_points(self) -> NDArray[np.float64]:
        """Physical points of every voxel, shape (X, Y, Z, 3)."""
        return self.slab_points(0, self.shape[0])

    def is_inside_buffer(self, indices: NDArray[np.float64]) -> NDArray[np.bool_]:
        """
        Test continuous indices against the buffer extent.

        A point is inside when every coordinate lies in ``[-0.5, size - 0.5)``,
        i.e. within the half-voxel footprint of the grid.
        """
        indices = np.asarray(indices)
        upper = np.asarray(self.shape, dtype=np.float64) - 0.5
        return np.all((indices >= -0.5) & (indices < upper), axis=-1)

    def same_grid(self, other: "ImageGeometry", atol: float = 1e-6) -> bool:
        """Whether two geometries describe the same voxel grid."""
        return (
            self.shape == other.shape
            and np.allclose(self.spacing, other.spacing, atol=atol)
            and np.allclose(self.origin, other.origin, atol=atol)
            and np.allclose(self.direction, other.direction, atol=atol)
        )
