"""
Sampling of vector and log-tensor fields at continuous voxel indices.

Kernels are delegated to ``scipy.ndimage.map_coordinates``. Log-tensor
linear interpolation ignores background neighbours and renormalises the
remaining weights, so a tensor next to the background is never averaged
with zeros.
"""

from dataclasses import dataclass, field as dc_field
from enum import Enum
from typing import Tuple

import numpy as np
from numpy.typing import NDArray
from scipy import ndimage

from .tensors import LogTensorField

# Below this total foreground weight a sample is background
_MIN_WEIGHT = 1e-8


class Interpolation(Enum):
    """Interpolation kernel for resampling."""
    NEAREST = "nearest"
    LINEAR = "linear"


def sample_vector_field(
    data: NDArray[np.float64],
    indices: NDArray[np.float64],
    order: int = 1,
) -> NDArray[np.float64]:
    """
    Interpolate a (X, Y, Z, C) field at (N, 3) continuous indices.

    Points outside the grid take the value of the nearest edge voxel.

    Returns:
        Array of shape (N, C).
    """
    indices = np.asarray(indices, dtype=np.float64)
    coords = indices.T
    out = np.empty((indices.shape[0], data.shape[-1]), dtype=np.float64)
    for c in range(data.shape[-1]):
        out[:, c] = ndimage.map_coordinates(
            data[..., c],
            coords,
            order=order,
            mode="nearest",
        )
    return out


def nearest_indices(
    indices: NDArray[np.float64],
    shape: Tuple[int, int, int],
) -> NDArray[np.intp]:
    """Round continuous indices half up and clamp them to the grid."""
    rounded = np.floor(np.asarray(indices) + 0.5).astype(np.intp)
    return np.clip(rounded, 0, np.asarray(shape) - 1)


@dataclass(frozen=True, eq=False)
class LogTensorSampler:
    """
    Read-only sampling state for one log-tensor field.

    The foreground weights and the background-masked log-tensors are built
    once, so a single sampler can be shared by every worker thread.

    Attributes:
        field: Log-tensor field being sampled.
        foreground: 1.0 on foreground voxels, 0.0 on background.
        weighted: Log-tensors with background voxels zeroed, (X, Y, Z, 6).
    """

    field: LogTensorField
    foreground: NDArray[np.float64] = dc_field(repr=False)
    weighted: NDArray[np.float64] = dc_field(repr=False)

    @classmethod
    def from_field(cls, field: LogTensorField) -> "LogTensorSampler":
        foreground = (~field.background).astype(np.float64)
        return cls(field, foreground, field.data * foreground[..., np.newaxis])

    def sample(
        self,
        indices: NDArray[np.float64],
        interpolation: Interpolation = Interpolation.LINEAR,
    ) -> Tuple[NDArray[np.float64], NDArray[np.bool_]]:
        """
        Interpolate the field at (N, 3) continuous indices.

        Args:
            indices: Continuous voxel indices, assumed inside the buffer.
            interpolation: Nearest neighbour or background-aware trilinear.

        Returns:
            Tuple of sampled log-tensors (N, 6) and background flags (N,).
        """
        indices = np.asarray(indices, dtype=np.float64)

        if interpolation == Interpolation.NEAREST:
            vi = nearest_indices(indices, self.field.geometry.shape)
            values = self.field.data[vi[:, 0], vi[:, 1], vi[:, 2]].copy()
            background = self.field.background[vi[:, 0], vi[:, 1], vi[:, 2]].copy()
            values[background] = 0.0
            return values, background

        if interpolation == Interpolation.LINEAR:
            weights = ndimage.map_coordinates(
                self.foreground, indices.T, order=1, mode="nearest"
            )
            weighted = sample_vector_field(self.weighted, indices)

            background = weights <= _MIN_WEIGHT
            values = np.zeros_like(weighted)
            values[~background] = weighted[~background] / weights[~background, np.newaxis]
            return values, background

        raise ValueError(f"Unknown interpolation: {interpolation}")


def sample_log_tensors(
    field: LogTensorField,
    indices: NDArray[np.float64],
    interpolation: Interpolation = Interpolation.LINEAR,
) -> Tuple[NDArray[np.float64], NDArray[np.bool_]]:
    """Interpolate a log-tensor field at (N, 3) continuous indices."""
    return LogTensorSampler.from_field(field).sample(indices, interpolation)
