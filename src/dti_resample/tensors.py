"""
SPD tensor fields and the log-Euclidean codec.

Tensors are stored as 6-vectors in lower-triangular row order
``(xx, xy, yy, xz, yz, zz)``, the NIfTI ``symmatrix`` layout. Linear
operations (interpolation, averaging) are performed on matrix logarithms,
which always map back to SPD tensors through the matrix exponential.

With ``scale_off_diagonal`` the off-diagonal log components are multiplied
by sqrt(2), so the Euclidean distance between log-vectors equals the
Frobenius distance between log-matrices.

References:
- Arsigny et al., "Log-Euclidean metrics for fast and simple calculus on
  diffusion tensors", MRM 2006
"""

from dataclasses import dataclass
from typing import Tuple
import warnings

import numpy as np
from numpy.typing import NDArray

from .exceptions import ClampedEigenvalueWarning, NonPositiveDefiniteInput
from .geometry import ImageGeometry

# Eigenvalues at or below this are not positive definite
DEFAULT_EPSILON = 1e-12

# (row, col) of each vector component
TENSOR_COMPONENTS: Tuple[Tuple[int, int], ...] = (
    (0, 0), (1, 0), (1, 1), (2, 0), (2, 1), (2, 2),
)
_DIAGONAL = np.array([i == j for i, j in TENSOR_COMPONENTS])
_ROWS = np.array([i for i, _ in TENSOR_COMPONENTS])
_COLS = np.array([j for _, j in TENSOR_COMPONENTS])
_SQRT2 = np.sqrt(2.0)


def vector_to_matrix(
    vectors: NDArray[np.float64],
    scale_off_diagonal: bool = False,
) -> NDArray[np.float64]:
    """
    Expand (..., 6) tensor vectors into (..., 3, 3) symmetric matrices.

    Args:
        vectors: Tensor components in ``(xx, xy, yy, xz, yz, zz)`` order.
        scale_off_diagonal: Whether the off-diagonal components carry a
            sqrt(2) factor that must be removed.
    """
    vectors = np.asarray(vectors, dtype=np.float64)
    if vectors.shape[-1] != 6:
        raise ValueError(f"Tensor vectors must have 6 components, got {vectors.shape[-1]}")

    values = vectors
    if scale_off_diagonal:
        values = np.where(_DIAGONAL, vectors, vectors / _SQRT2)

    matrices = np.zeros(vectors.shape[:-1] + (3, 3), dtype=np.float64)
    matrices[..., _ROWS, _COLS] = values
    matrices[..., _COLS, _ROWS] = values
    return matrices


def matrix_to_vector(
    matrices: NDArray[np.float64],
    scale_off_diagonal: bool = False,
) -> NDArray[np.float64]:
    """Pack (..., 3, 3) symmetric matrices into (..., 6) tensor vectors."""
    matrices = np.asarray(matrices, dtype=np.float64)
    if matrices.shape[-2:] != (3, 3):
        raise ValueError(f"Expected 3x3 matrices, got {matrices.shape[-2:]}")

    # average both triangles so slightly asymmetric input stays symmetric
    vectors = 0.5 * (matrices[..., _ROWS, _COLS] + matrices[..., _COLS, _ROWS])
    if scale_off_diagonal:
        vectors = np.where(_DIAGONAL, vectors, vectors * _SQRT2)
    return vectors


def compose_from_eigen(
    eigenvalues: NDArray[np.float64],
    eigenvectors: NDArray[np.float64],
) -> NDArray[np.float64]:
    """Rebuild ``V diag(w) V^T`` for batches of eigen pairs (vectors as columns)."""
    return np.einsum("...ij,...j,...kj->...ik", eigenvectors, eigenvalues, eigenvectors)


def sorted_eigh(
    matrices: NDArray[np.float64],
) -> Tuple[NDArray[np.float64], NDArray[np.float64]]:
    """Symmetric eigendecomposition with eigenvalues in decreasing order."""
    eigenvalues, eigenvectors = np.linalg.eigh(matrices)
    return eigenvalues[..., ::-1], eigenvectors[..., :, ::-1]


def log_tensors(
    tensors: NDArray[np.float64],
    scale_off_diagonal: bool = True,
    epsilon: float = DEFAULT_EPSILON,
    clamp: bool = True,
) -> NDArray[np.float64]:
    """
    Matrix logarithm of SPD tensors.

    Args:
        tensors: Tensor vectors, shape (..., 6).
        scale_off_diagonal: Multiply off-diagonal log components by sqrt(2).
        epsilon: Positivity threshold for eigenvalues.
        clamp: Clamp eigenvalues <= epsilon to epsilon. When False, such
            tensors raise NonPositiveDefiniteInput.

    Returns:
        Log-tensor vectors, shape (..., 6).

    Raises:
        NonPositiveDefiniteInput: If clamping is disabled and a tensor is
            not positive definite.
        ValueError: If the input holds NaN or infinite values.
    """
    tensors = np.asarray(tensors, dtype=np.float64)
    if tensors.shape[-1] != 6:
        raise ValueError(f"Tensor vectors must have 6 components, got {tensors.shape[-1]}")
    if tensors.size == 0:
        return tensors.copy()
    if not np.all(np.isfinite(tensors)):
        raise ValueError("Tensor input contains non-finite values")

    eigenvalues, eigenvectors = np.linalg.eigh(vector_to_matrix(tensors))

    invalid = np.any(eigenvalues <= epsilon, axis=-1)
    if np.any(invalid):
        count = int(np.count_nonzero(invalid))
        if not clamp:
            raise NonPositiveDefiniteInput(count, epsilon)
        warnings.warn(
            f"Clamped eigenvalues of {count} non positive definite tensor(s) to {epsilon:g}",
            ClampedEigenvalueWarning,
            stacklevel=2,
        )
        eigenvalues = np.maximum(eigenvalues, epsilon)

    logs = compose_from_eigen(np.log(eigenvalues), eigenvectors)
    return matrix_to_vector(logs, scale_off_diagonal)


def exp_tensors(
    log_vectors: NDArray[np.float64],
    scale_off_diagonal: bool = True,
) -> NDArray[np.float64]:
    """
    Matrix exponential of log-tensors, the inverse of :func:`log_tensors`.

    Args:
        log_vectors: Log-tensor vectors, shape (..., 6).
        scale_off_diagonal: Whether off-diagonal components carry sqrt(2).

    Returns:
        SPD tensor vectors, shape (..., 6).
    """
    log_vectors = np.asarray(log_vectors, dtype=np.float64)
    if log_vectors.shape[-1] != 6:
        raise ValueError(
            f"Tensor vectors must have 6 components, got {log_vectors.shape[-1]}"
        )
    if log_vectors.size == 0:
        return log_vectors.copy()

    eigenvalues, eigenvectors = np.linalg.eigh(
        vector_to_matrix(log_vectors, scale_off_diagonal)
    )
    return matrix_to_vector(compose_from_eigen(np.exp(eigenvalues), eigenvectors))


def is_spd(
    tensors: NDArray[np.float64],
    epsilon: float = 0.0,
) -> NDArray[np.bool_]:
    """Per-tensor test that every eigenvalue exceeds ``epsilon``."""
    eigenvalues = np.linalg.eigvalsh(vector_to_matrix(tensors))
    return np.all(eigenvalues > epsilon, axis=-1)


def fractional_anisotropy(tensors: NDArray[np.float64]) -> NDArray[np.float64]:
    """
    Fractional anisotropy of tensor vectors.

    Zero tensors have FA 0.
    """
    eigenvalues = np.linalg.eigvalsh(vector_to_matrix(tensors))
    mean = eigenvalues.mean(axis=-1, keepdims=True)
    num = np.sqrt(np.sum((eigenvalues - mean) ** 2, axis=-1))
    den = np.sqrt(np.sum(eigenvalues ** 2, axis=-1))
    with np.errstate(invalid="ignore", divide="ignore"):
        fa = np.sqrt(1.5) * num / den
    return np.where(den > 0, fa, 0.0)


@dataclass
class TensorField:
    """
    Dense 3D field of SPD tensors.

    Attributes:
        data: Tensor vectors, shape (X, Y, Z, 6). All-zero vectors mark
            background voxels.
        geometry: Grid geometry of ``data``.
    """

    data: NDArray[np.float64]
    geometry: ImageGeometry

    def __post_init__(self):
        self.data = np.asarray(self.data, dtype=np.float64)
        expected = (*self.geometry.shape, 6)
        if self.data.shape != expected:
            raise ValueError(
                f"Tensor data shape {self.data.shape} does not match expected {expected}"
            )

    @property
    def background(self) -> NDArray[np.bool_]:
        """Voxels holding the zero tensor."""
        return np.all(self.data == 0, axis=-1)


@dataclass
class LogTensorField:
    """
    Dense 3D field of log-tensors with an explicit background mask.

    The mask is needed because the log of the identity tensor is the zero
    vector, which cannot double as the background marker in this domain.

    Attributes:
        data: Log-tensor vectors, shape (X, Y, Z, 6).
        geometry: Grid geometry of ``data``.
        background: Boolean mask of background voxels, shape (X, Y, Z).
        scale_off_diagonal: Whether off-diagonal components carry sqrt(2).
    """

    data: NDArray[np.float64]
    geometry: ImageGeometry
    background: NDArray[np.bool_]
    scale_off_diagonal: bool = True

    def __post_init__(self):
        self.data = np.asarray(self.data, dtype=np.float64)
        self.background = np.asarray(self.background, dtype=bool)
        expected = (*self.geometry.shape, 6)
        if self.data.shape != expected:
            raise ValueError(
                f"Log-tensor data shape {self.data.shape} does not match expected {expected}"
            )
        if self.background.shape != self.geometry.shape:
            raise ValueError(
                f"Background mask shape {self.background.shape} does not match "
                f"expected {self.geometry.shape}"
            )


def log_tensor_field(
    field: TensorField,
    scale_off_diagonal: bool = True,
    epsilon: float = DEFAULT_EPSILON,
    clamp: bool = True,
) -> LogTensorField:
    """Log-transform every non-background voxel of a tensor field."""
    background = field.background
    data = np.zeros_like(field.data)
    data[~background] = log_tensors(
        field.data[~background],
        scale_off_diagonal=scale_off_diagonal,
        epsilon=epsilon,
        clamp=clamp,
    )
    return LogTensorField(
        data=data,
        geometry=field.geometry,
        background=background,
        scale_off_diagonal=scale_off_diagonal,
    )


def exp_tensor_field(field: LogTensorField) -> TensorField:
    """Exponentiate a log-tensor field; background voxels become zero tensors."""
    data = np.zeros_like(field.data)
    foreground = ~field.background
    data[foreground] = exp_tensors(
        field.data[foreground],
        scale_off_diagonal=field.scale_off_diagonal,
    )
    return TensorField(data=data, geometry=field.geometry)
