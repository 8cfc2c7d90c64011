"""
Exponentiation of stationary velocity fields by scaling and squaring.

The velocity ``v`` is scaled by ``2**-N`` so the initial displacement is
below half a voxel, then composed with itself ``N`` times
(``u <- u + u o (id + u)``) to reach the unit-time flow. Every squaring
reads the previous iterate and writes a fresh buffer, partitioned into
slabs along the first axis; results do not depend on the thread count.

References:
- Arsigny et al., "A Log-Euclidean framework for statistics on
  diffeomorphisms", MICCAI 2006
"""

from typing import Optional

import numpy as np
from numpy.typing import NDArray

from .fields import VectorField
from .interpolation import sample_vector_field
from .parallel import parallel_for

SUPPORTED_ORDERS = (0, 1)

# Largest scaled velocity, in voxels, before squaring starts
MAX_INITIAL_DISPLACEMENT = 0.5
MAX_SQUARING_STEPS = 20


def number_of_squaring_steps(
    velocity_voxels: NDArray[np.float64],
    max_initial_displacement: float = MAX_INITIAL_DISPLACEMENT,
) -> int:
    """
    Smallest N such that max |v| / 2**N <= max_initial_displacement.

    Args:
        velocity_voxels: Velocity in voxel units, shape (X, Y, Z, 3).
    """
    if velocity_voxels.size == 0:
        return 0
    max_norm = float(np.max(np.linalg.norm(velocity_voxels, axis=-1)))
    if max_norm <= max_initial_displacement:
        return 0
    steps = int(np.ceil(np.log2(max_norm / max_initial_displacement)))
    return min(steps, MAX_SQUARING_STEPS)


def _warp(
    displacement: NDArray[np.float64],
    step: NDArray[np.float64],
    num_threads: Optional[int],
    accumulate: bool = True,
) -> NDArray[np.float64]:
    """
    Evaluate ``displacement(id + step)`` on the whole grid.

    With ``accumulate`` the result is ``step + displacement(id + step)``,
    i.e. the composition of the two displacements when ``step`` is itself
    a displacement. All arrays are in voxel units and are only read; the
    result is a new buffer.
    """
    shape = displacement.shape[:3]
    out = np.empty_like(displacement)

    def work(start: int, stop: int) -> None:
        grid = np.stack(
            np.meshgrid(
                np.arange(start, stop, dtype=np.float64),
                np.arange(shape[1], dtype=np.float64),
                np.arange(shape[2], dtype=np.float64),
                indexing="ij",
            ),
            axis=-1,
        )
        local_step = step[start:stop]
        targets = (grid + local_step).reshape(-1, 3)
        sampled = sample_vector_field(displacement, targets).reshape(local_step.shape)
        out[start:stop] = local_step + sampled if accumulate else sampled

    parallel_for(shape[0], work, num_threads)
    return out


def exponentiate_velocity_field(
    velocity: VectorField,
    order: int = 0,
    num_threads: Optional[int] = None,
    squaring_steps: Optional[int] = None,
) -> VectorField:
    """
    Displacement field of the unit-time flow of a stationary velocity field.

    Args:
        velocity: Velocity field in mm.
        order: 0 starts squaring from the scaled velocity; 1 refines the
            initial step with one midpoint composition,
            ``u0(x) = w(x + w(x) / 2)`` with ``w = v / 2**N``.
        num_threads: Worker threads for each squaring; None uses all cores.
        squaring_steps: Fixed number of squarings. None picks the smallest
            count keeping the initial step below half a voxel.

    Returns:
        Displacement field on the velocity grid.

    Raises:
        ValueError: For unsupported orders or negative step counts.
    """
    if order not in SUPPORTED_ORDERS:
        raise ValueError(
            f"Unsupported exponentiation order {order}; expected one of {SUPPORTED_ORDERS}"
        )

    velocity_voxels = velocity.to_voxel_units()

    if squaring_steps is None:
        squaring_steps = number_of_squaring_steps(velocity_voxels)
    elif squaring_steps < 0:
        raise ValueError(f"Squaring steps must be >= 0, got {squaring_steps}")

    scaled = velocity_voxels / (2.0 ** squaring_steps)

    if order == 1:
        displacement = _warp(scaled, 0.5 * scaled, num_threads, accumulate=False)
    else:
        displacement = scaled

    for _ in range(squaring_steps):
        displacement = _warp(displacement, displacement, num_threads)

    return VectorField.from_voxel_units(displacement, velocity.geometry)
