"""
Spatial transforms mapping fixed-space points to moving-space points.

Three kinds of sub-transform exist, matching the entries of a transform
series:

- ``LinearTransform``: matrix and translation, exact inverse.
- ``StationaryVelocityFieldTransform``: exponentiated velocity field; the
  inverse is the exponential of the negated field, so it is exact too.
- ``DisplacementFieldTransform``: dense displacement field; the inverse is
  evaluated by fixed-point iteration.

``ComposedTransform`` chains them and evaluates points and local Jacobians
(chain rule) in one pass. All transforms are immutable once built and can
be shared read-only between threads.
"""

import warnings
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Sequence, Tuple, Union

import numpy as np
from numpy.typing import NDArray

from .exceptions import UnconvergedInversionWarning
from .fields import VectorField
from .interpolation import sample_vector_field
from .velocity import exponentiate_velocity_field


class TransformKind(Enum):
    """Kinds of entry in a transform series."""
    LINEAR = "linear"
    SVF = "svf"
    DENSE = "dense"


def _as_points(points: NDArray[np.float64]) -> NDArray[np.float64]:
    points = np.asarray(points, dtype=np.float64)
    if points.ndim != 2 or points.shape[1] != 3:
        raise ValueError(f"Points must have shape (N, 3), got {points.shape}")
    return points


@dataclass(frozen=True, eq=False)
class LinearTransform:
    """
    Affine map ``y = matrix @ x + translation``.

    Attributes:
        matrix: 3x3 linear part.
        translation: Translation vector in mm.
    """

    matrix: NDArray[np.float64]
    translation: NDArray[np.float64] = field(default_factory=lambda: np.zeros(3))

    kind = TransformKind.LINEAR
    exact_inverse = True

    def __post_init__(self):
        matrix = np.asarray(self.matrix, dtype=np.float64)
        translation = np.asarray(self.translation, dtype=np.float64).reshape(-1)
        if matrix.shape != (3, 3):
            raise ValueError(f"Matrix must be 3x3, got {matrix.shape}")
        if translation.shape != (3,):
            raise ValueError(f"Translation must have 3 values, got {translation.shape}")
        if abs(np.linalg.det(matrix)) < 1e-12:
            raise ValueError("Linear transform matrix is singular")
        object.__setattr__(self, "matrix", matrix)
        object.__setattr__(self, "translation", translation)

    @classmethod
    def identity(cls) -> "LinearTransform":
        return cls(np.eye(3), np.zeros(3))

    @classmethod
    def from_affine(cls, affine: NDArray[np.float64]) -> "LinearTransform":
        """Create from a 4x4 homogeneous matrix."""
        affine = np.asarray(affine, dtype=np.float64)
        if affine.shape != (4, 4):
            raise ValueError(f"Affine must be 4x4, got {affine.shape}")
        return cls(affine[:3, :3], affine[:3, 3])

    @classmethod
    def from_itk_parameters(
        cls,
        parameters: Sequence[float],
        center: Optional[Sequence[float]] = None,
    ) -> "LinearTransform":
        """
        Create from ITK ``MatrixOffsetTransformBase`` parameters.

        ITK stores 9 row-major matrix entries followed by 3 translation
        values and applies ``y = A (x - c) + t + c`` with ``c`` the center
        (the transform's fixed parameters).
        """
        parameters = np.asarray(parameters, dtype=np.float64).reshape(-1)
        if parameters.shape != (12,):
            raise ValueError(f"Expected 12 affine parameters, got {parameters.size}")
        center = np.zeros(3) if center is None else np.asarray(center, dtype=np.float64)
        if center.shape != (3,):
            raise ValueError(f"Expected 3 center values, got {center.size}")

        matrix = parameters[:9].reshape(3, 3)
        offset = parameters[9:] + center - matrix @ center
        return cls(matrix, offset)

    @property
    def affine(self) -> NDArray[np.float64]:
        """4x4 homogeneous matrix."""
        affine = np.eye(4)
        affine[:3, :3] = self.matrix
        affine[:3, 3] = self.translation
        return affine

    def map_points(self, points: NDArray[np.float64]) -> NDArray[np.float64]:
        return _as_points(points) @ self.matrix.T + self.translation

    def jacobians(self, points: NDArray[np.float64]) -> NDArray[np.float64]:
        points = _as_points(points)
        return np.broadcast_to(self.matrix, (points.shape[0], 3, 3)).copy()

    def map_points_and_jacobians(
        self,
        points: NDArray[np.float64],
    ) -> Tuple[NDArray[np.float64], NDArray[np.float64]]:
        return self.map_points(points), self.jacobians(points)

    def inverse(self) -> "LinearTransform":
        inv_matrix = np.linalg.inv(self.matrix)
        return LinearTransform(inv_matrix, -inv_matrix @ self.translation)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "matrix": self.matrix.tolist(),
            "translation": self.translation.tolist(),
        }


@dataclass(frozen=True, eq=False)
class DisplacementFieldTransform:
    """
    Dense displacement field ``y = x + u(x)``.

    With ``inverted`` set, the transform evaluates the inverse map by
    fixed-point iteration ``x_{k+1} = y - u(x_k)``, which converges when the
    field is a small, smooth deformation.

    Attributes:
        displacement: Displacement field ``u`` in mm.
        inverted: Evaluate the inverse of ``x -> x + u(x)``.
        max_iterations: Fixed-point iteration limit.
        tolerance: Fixed-point convergence tolerance in mm.
    """

    displacement: VectorField
    inverted: bool = False
    max_iterations: int = 50
    tolerance: float = 1e-4
    gradient: Optional[NDArray[np.float64]] = field(default=None, repr=False)

    kind = TransformKind.DENSE
    exact_inverse = False

    def __post_init__(self):
        if self.gradient is None:
            object.__setattr__(self, "gradient", self.displacement.spatial_gradient())
        elif self.gradient.shape != (*self.displacement.geometry.shape, 3, 3):
            raise ValueError(
                f"Gradient shape {self.gradient.shape} does not match field geometry"
            )

    def _sample(self, points: NDArray[np.float64]) -> NDArray[np.float64]:
        return self.displacement.sample(points)

    def _forward_jacobians(self, points: NDArray[np.float64]) -> NDArray[np.float64]:
        indices = self.displacement.geometry.physical_to_index(points)
        gradient = sample_vector_field(
            self.gradient.reshape(*self.displacement.geometry.shape, 9), indices
        ).reshape(-1, 3, 3)
        return np.eye(3) + gradient

    def _invert_points(self, targets: NDArray[np.float64]) -> NDArray[np.float64]:
        """Solve ``x + u(x) = y`` for every target ``y``."""
        source = targets.copy()
        active = np.arange(targets.shape[0])

        for _ in range(self.max_iterations):
            if active.size == 0:
                break
            current = source[active]
            error = targets[active] - (current + self._sample(current))
            source[active] = current + error

            converged = np.linalg.norm(error, axis=1) < self.tolerance
            active = active[~converged]

        if active.size > 0:
            current = source[active]
            residual = np.linalg.norm(
                targets[active] - (current + self._sample(current)), axis=1
            )
            warnings.warn(
                f"Displacement field inversion did not converge for {active.size} "
                f"point(s) after {self.max_iterations} iterations "
                f"(largest residual {residual.max():.3g} mm); the field may fold",
                UnconvergedInversionWarning,
                stacklevel=3,
            )

        return source

    def map_points(self, points: NDArray[np.float64]) -> NDArray[np.float64]:
        points = _as_points(points)
        if self.inverted:
            return self._invert_points(points)
        return points + self._sample(points)

    def jacobians(self, points: NDArray[np.float64]) -> NDArray[np.float64]:
        return self.map_points_and_jacobians(points)[1]

    def map_points_and_jacobians(
        self,
        points: NDArray[np.float64],
    ) -> Tuple[NDArray[np.float64], NDArray[np.float64]]:
        """Mapped points and Jacobians, solving the inverse at most once."""
        points = _as_points(points)
        if self.inverted:
            source = self._invert_points(points)
            # d(phi^-1)(y) = (d phi(phi^-1(y)))^-1
            return source, np.linalg.inv(self._forward_jacobians(source))
        return points + self._sample(points), self._forward_jacobians(points)

    def inverse(self) -> "DisplacementFieldTransform":
        return DisplacementFieldTransform(
            displacement=self.displacement,
            inverted=not self.inverted,
            max_iterations=self.max_iterations,
            tolerance=self.tolerance,
            gradient=self.gradient,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "inverted": self.inverted,
            "shape": list(self.displacement.geometry.shape),
            "max_displacement_mm": self.displacement.max_norm(),
        }


@dataclass(frozen=True, eq=False)
class StationaryVelocityFieldTransform:
    """
    Diffeomorphism given by the unit-time flow of a stationary velocity field.

    Both ``exp(v)`` and ``exp(-v)`` are computed up front so that inversion
    swaps them without further work.

    Attributes:
        velocity: Velocity field in mm.
        forward: Displacement transform of ``exp(velocity)``.
        backward: Displacement transform of ``exp(-velocity)``.
        order: Exponentiation order used for both directions.
    """

    velocity: VectorField
    forward: DisplacementFieldTransform
    backward: DisplacementFieldTransform
    order: int = 0

    kind = TransformKind.SVF
    exact_inverse = True

    @classmethod
    def from_velocity(
        cls,
        velocity: VectorField,
        order: int = 0,
        num_threads: Optional[int] = None,
        squaring_steps: Optional[int] = None,
    ) -> "StationaryVelocityFieldTransform":
        """Exponentiate ``velocity`` in both directions."""
        forward = exponentiate_velocity_field(
            velocity, order=order, num_threads=num_threads, squaring_steps=squaring_steps
        )
        backward = exponentiate_velocity_field(
            velocity.negated(), order=order, num_threads=num_threads,
            squaring_steps=squaring_steps,
        )
        return cls(
            velocity=velocity,
            forward=DisplacementFieldTransform(forward),
            backward=DisplacementFieldTransform(backward),
            order=order,
        )

    def map_points(self, points: NDArray[np.float64]) -> NDArray[np.float64]:
        return self.forward.map_points(points)

    def jacobians(self, points: NDArray[np.float64]) -> NDArray[np.float64]:
        return self.forward.jacobians(points)

    def map_points_and_jacobians(
        self,
        points: NDArray[np.float64],
    ) -> Tuple[NDArray[np.float64], NDArray[np.float64]]:
        return self.forward.map_points_and_jacobians(points)

    def inverse(self) -> "StationaryVelocityFieldTransform":
        return StationaryVelocityFieldTransform(
            velocity=self.velocity.negated(),
            forward=self.backward,
            backward=self.forward,
            order=self.order,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "order": self.order,
            "shape": list(self.velocity.geometry.shape),
            "max_velocity_mm": self.velocity.max_norm(),
        }


Transform = Union[LinearTransform, DisplacementFieldTransform, StationaryVelocityFieldTransform]


@dataclass(frozen=True, eq=False)
class ComposedTransform:
    """
    Chain of transforms evaluated on fixed-space points.

    ``transforms[0]`` is applied first, so the overall map is
    ``T_k o ... o T_1``. An empty chain is the identity.
    """

    transforms: Tuple[Transform, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "transforms", tuple(self.transforms))

    def __len__(self) -> int:
        return len(self.transforms)

    @property
    def exact_inverse(self) -> bool:
        """Whether every member inverts in closed form."""
        return all(t.exact_inverse for t in self.transforms)

    def map_points(self, points: NDArray[np.float64]) -> NDArray[np.float64]:
        """Map (N, 3) fixed-space points to moving space."""
        points = _as_points(points).copy()
        for transform in self.transforms:
            points = transform.map_points(points)
        return points

    def jacobians(self, points: NDArray[np.float64]) -> NDArray[np.float64]:
        """
        Local Jacobians of the composed map at (N, 3) fixed-space points.

        Each member's Jacobian is evaluated at the point it receives and
        left-multiplied onto the running product.
        """
        return self.map_points_and_jacobians(points)[1]

    def map_points_and_jacobians(
        self,
        points: NDArray[np.float64],
    ) -> Tuple[NDArray[np.float64], NDArray[np.float64]]:
        """Mapped points and Jacobians in a single walk along the chain."""
        points = _as_points(points).copy()
        jacobian = np.broadcast_to(np.eye(3), (points.shape[0], 3, 3)).copy()
        for transform in self.transforms:
            points, member_jacobian = transform.map_points_and_jacobians(points)
            jacobian = member_jacobian @ jacobian
        return points, jacobian

    def map_point(self, point: NDArray[np.float64]) -> NDArray[np.float64]:
        """Map a single fixed-space point."""
        return self.map_points(np.asarray(point, dtype=np.float64).reshape(1, 3))[0]

    def local_jacobian(self, point: NDArray[np.float64]) -> NDArray[np.float64]:
        """3x3 Jacobian at a single fixed-space point."""
        return self.jacobians(np.asarray(point, dtype=np.float64).reshape(1, 3))[0]

    def inverse(self) -> "ComposedTransform":
        """Reverse the chain and invert every member."""
        return ComposedTransform(tuple(t.inverse() for t in reversed(self.transforms)))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "num_transforms": len(self.transforms),
            "exact_inverse": self.exact_inverse,
            "transforms": [t.to_dict() for t in self.transforms],
        }
