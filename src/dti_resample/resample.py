"""
Log-Euclidean resampling of tensor fields through a composed transform.

For every output voxel the physical point is mapped to moving space, the
log-tensor field is interpolated there and the result is reoriented with
the local Jacobian of the mapping. Tensors sampled in moving space are
brought into fixed space by the moving-to-fixed deformation, whose
Jacobian is the inverse of the fixed-to-moving Jacobian ``J``:

- finite strain: conjugate by the rotation of ``J^-1``, i.e. ``R^T L R``
  with ``R`` the polar rotation of ``J``;
- preservation of principal direction (PPD): map the eigenvectors through
  ``J^-1`` and re-orthonormalise them in decreasing eigenvalue order.

Conjugation by an orthogonal matrix commutes with the matrix logarithm, so
both schemes act on log-tensors directly.

References:
- Alexander et al., "Spatial transformations of diffusion tensor magnetic
  resonance images", IEEE TMI 2001
"""

from enum import Enum
from typing import Optional
import warnings

import numpy as np
from numpy.typing import NDArray

from .exceptions import OutOfBufferSample
from .geometry import ImageGeometry
from .interpolation import Interpolation, LogTensorSampler
from .parallel import parallel_for
from .tensors import (
    LogTensorField,
    compose_from_eigen,
    matrix_to_vector,
    sorted_eigh,
    vector_to_matrix,
)
from .transforms import ComposedTransform

_MIN_NORM = 1e-12


class Reorientation(Enum):
    """Tensor reorientation scheme."""
    FINITE_STRAIN = "finite-strain"
    PPD = "ppd"
    NONE = "none"


def polar_rotation(jacobians: NDArray[np.float64]) -> NDArray[np.float64]:
    """
    Rotation part of the polar decomposition ``J = R S`` for (N, 3, 3) input.

    ``R = U V^T`` from the singular value decomposition ``J = U S V^T``.
    """
    u, _, vt = np.linalg.svd(jacobians)
    return u @ vt


def _normalize(vectors: NDArray[np.float64]) -> NDArray[np.float64]:
    norms = np.linalg.norm(vectors, axis=-1, keepdims=True)
    return vectors / np.maximum(norms, _MIN_NORM)


def reorient_finite_strain(
    matrices: NDArray[np.float64],
    jacobians: NDArray[np.float64],
) -> NDArray[np.float64]:
    """
    Finite-strain reorientation of (N, 3, 3) tensors.

    Args:
        matrices: Tensors (or log-tensors) sampled in moving space.
        jacobians: Fixed-to-moving Jacobians at the output points.
    """
    rotation = polar_rotation(jacobians)
    return np.swapaxes(rotation, -1, -2) @ matrices @ rotation


def reorient_ppd(
    matrices: NDArray[np.float64],
    jacobians: NDArray[np.float64],
) -> NDArray[np.float64]:
    """
    Preservation-of-principal-direction reorientation of (N, 3, 3) tensors.

    The eigenvalues are kept; the first two eigenvectors are mapped by the
    moving-to-fixed Jacobian and Gram-Schmidt orthonormalised, the third
    completes the right-handed basis.

    Args:
        matrices: Tensors (or log-tensors) sampled in moving space.
        jacobians: Fixed-to-moving Jacobians at the output points.
    """
    deformation = np.linalg.pinv(jacobians)
    eigenvalues, eigenvectors = sorted_eigh(matrices)

    first = _normalize(np.einsum("nij,nj->ni", deformation, eigenvectors[..., 0]))
    second = np.einsum("nij,nj->ni", deformation, eigenvectors[..., 1])
    second = _normalize(second - np.sum(second * first, axis=-1, keepdims=True) * first)
    third = np.cross(first, second)

    basis = np.stack([first, second, third], axis=-1)
    return compose_from_eigen(eigenvalues, basis)


def reorient_log_tensors(
    log_vectors: NDArray[np.float64],
    jacobians: NDArray[np.float64],
    reorientation: Reorientation,
    scale_off_diagonal: bool = True,
) -> NDArray[np.float64]:
    """
    Reorient (N, 6) log-tensor vectors with (N, 3, 3) fixed-to-moving Jacobians.
    """
    if reorientation == Reorientation.NONE:
        return log_vectors

    matrices = vector_to_matrix(log_vectors, scale_off_diagonal)
    if reorientation == Reorientation.FINITE_STRAIN:
        matrices = reorient_finite_strain(matrices, jacobians)
    elif reorientation == Reorientation.PPD:
        matrices = reorient_ppd(matrices, jacobians)
    else:
        raise ValueError(f"Unknown reorientation: {reorientation}")
    return matrix_to_vector(matrices, scale_off_diagonal)


def resample_log_tensor_field(
    transform: ComposedTransform,
    field: LogTensorField,
    geometry: ImageGeometry,
    reorientation: Reorientation = Reorientation.FINITE_STRAIN,
    interpolation: Interpolation = Interpolation.LINEAR,
    num_threads: Optional[int] = None,
) -> LogTensorField:
    """
    Resample a log-tensor field onto a new grid.

    Output voxels mapping outside the input buffer, or onto background only,
    are background in the result. The input field and transform are only
    read; each worker writes its own slab of the new output buffers.

    Args:
        transform: Fixed-to-moving mapping.
        field: Input log-tensor field in moving space.
        geometry: Output grid in fixed space.
        reorientation: Reorientation scheme.
        interpolation: Interpolation kernel.
        num_threads: Worker threads; None uses all cores.

    Returns:
        New log-tensor field on ``geometry``.
    """
    data = np.zeros((*geometry.shape, 6), dtype=np.float64)
    background = np.ones(geometry.shape, dtype=bool)
    inside_buffer = np.zeros(geometry.shape, dtype=bool)
    sampler = LogTensorSampler.from_field(field)

    def work(start: int, stop: int) -> None:
        points = geometry.slab_points(start, stop).reshape(-1, 3)

        if reorientation == Reorientation.NONE:
            moving = transform.map_points(points)
            jacobians = None
        else:
            moving, jacobians = transform.map_points_and_jacobians(points)

        indices = field.geometry.physical_to_index(moving)
        inside = field.geometry.is_inside_buffer(indices)

        values = np.zeros((points.shape[0], 6), dtype=np.float64)
        empty = ~inside
        if np.any(inside):
            sampled, sampled_background = sampler.sample(
                indices[inside], interpolation
            )
            if jacobians is not None:
                sampled = reorient_log_tensors(
                    sampled,
                    jacobians[inside],
                    reorientation,
                    field.scale_off_diagonal,
                )
            sampled[sampled_background] = 0.0
            values[inside] = sampled
            empty[inside] = sampled_background

        slab_shape = (stop - start, *geometry.shape[1:])
        data[start:stop] = values.reshape(*slab_shape, 6)
        background[start:stop] = empty.reshape(slab_shape)
        inside_buffer[start:stop] = inside.reshape(slab_shape)

    parallel_for(geometry.shape[0], work, num_threads)

    if not np.any(inside_buffer):
        warnings.warn(
            "No output voxel maps inside the input field; the result is all background",
            OutOfBufferSample,
            stacklevel=2,
        )

    return LogTensorField(
        data=data,
        geometry=geometry,
        background=background,
        scale_off_diagonal=field.scale_off_diagonal,
    )
