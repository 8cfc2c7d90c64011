"""
Tests for scaling-and-squaring exponentiation of velocity fields.
"""

import numpy as np
import pytest

from dti_resample.fields import VectorField
from dti_resample.geometry import ImageGeometry
from dti_resample.velocity import (
    MAX_SQUARING_STEPS,
    exponentiate_velocity_field,
    number_of_squaring_steps,
)


def radial_velocity(rate, size=21, spacing=1.0):
    """Velocity ``rate * (x - c)`` about the grid centre."""
    geometry = ImageGeometry(shape=(size, size, size), spacing=(spacing,) * 3)
    points = geometry.physical_points()
    center = geometry.index_to_physical(np.full((1, 3), (size - 1) / 2.0))[0]
    return VectorField(rate * (points - center), geometry), center


def gaussian_velocity(amplitude=1.0, size=20, sigma=4.0):
    """Smooth bump pushing along x, zero near the borders."""
    geometry = ImageGeometry(shape=(size, size, size))
    points = geometry.physical_points()
    center = np.full(3, (size - 1) / 2.0)
    r2 = np.sum((points - center) ** 2, axis=-1)
    data = np.zeros((size, size, size, 3))
    data[..., 0] = amplitude * np.exp(-r2 / (2 * sigma ** 2))
    return VectorField(data, geometry)


class TestSquaringSteps:
    """Tests for the number of squaring steps."""

    def test_small_field_needs_no_squaring(self):
        assert number_of_squaring_steps(np.full((2, 2, 2, 3), 0.1)) == 0

    def test_steps_bring_field_below_half_voxel(self):
        velocity = np.zeros((2, 2, 2, 3))
        velocity[0, 0, 0] = [3.0, 0.0, 0.0]

        steps = number_of_squaring_steps(velocity)

        assert steps == 3
        assert 3.0 / 2 ** steps <= 0.5
        assert 3.0 / 2 ** (steps - 1) > 0.5

    def test_steps_are_capped(self):
        velocity = np.full((1, 1, 1, 3), 1e12)
        assert number_of_squaring_steps(velocity) == MAX_SQUARING_STEPS


class TestExponentiation:
    """Tests for exponentiate_velocity_field."""

    @pytest.mark.parametrize("order", [0, 1])
    def test_constant_velocity_is_translation(self, order):
        geometry = ImageGeometry(shape=(6, 5, 4), spacing=(2.0, 1.0, 1.5))
        data = np.broadcast_to([3.0, -1.0, 0.5], (6, 5, 4, 3)).copy()

        displacement = exponentiate_velocity_field(VectorField(data, geometry), order=order)

        np.testing.assert_allclose(displacement.data, data, atol=1e-10)

    def test_zero_velocity_is_identity(self, small_geometry):
        displacement = exponentiate_velocity_field(VectorField.zeros(small_geometry))
        np.testing.assert_array_equal(displacement.data, 0.0)

    def test_linear_velocity_matches_analytic_flow(self):
        """Flow of v = a (x - c) is (e^a - 1)(x - c); order 1 is closer."""
        rate = 0.2
        velocity, center = radial_velocity(rate)
        points = velocity.geometry.physical_points()
        expected = (np.exp(rate) - 1.0) * (points - center)
        interior = (slice(6, 15),) * 3

        errors = {}
        for order in (0, 1):
            displacement = exponentiate_velocity_field(velocity, order=order)
            errors[order] = np.max(np.abs(displacement.data[interior] - expected[interior]))

        assert errors[0] < 0.05
        assert errors[1] < errors[0]

    def test_inverse_exponential_composes_to_identity(self):
        velocity = gaussian_velocity(amplitude=2.0)
        forward = exponentiate_velocity_field(velocity)
        backward = exponentiate_velocity_field(velocity.negated())

        points = velocity.geometry.physical_points()[4:16, 4:16, 4:16].reshape(-1, 3)
        moved = points + backward.sample(points)
        restored = moved + forward.sample(moved)

        np.testing.assert_allclose(restored, points, atol=0.1)

    def test_result_independent_of_thread_count(self):
        velocity = gaussian_velocity(amplitude=3.0, size=16)

        single = exponentiate_velocity_field(velocity, order=1, num_threads=1)
        multi = exponentiate_velocity_field(velocity, order=1, num_threads=4)

        np.testing.assert_array_equal(single.data, multi.data)

    def test_fixed_squaring_steps(self):
        velocity = gaussian_velocity(amplitude=0.2, size=10)

        displacement = exponentiate_velocity_field(velocity, squaring_steps=0)

        np.testing.assert_allclose(displacement.data, velocity.data)

    def test_unsupported_order_raises(self, small_geometry):
        with pytest.raises(ValueError, match="order"):
            exponentiate_velocity_field(VectorField.zeros(small_geometry), order=2)

    def test_negative_steps_raise(self, small_geometry):
        with pytest.raises(ValueError, match="Squaring steps"):
            exponentiate_velocity_field(VectorField.zeros(small_geometry), squaring_steps=-1)

    def test_input_not_modified(self):
        velocity = gaussian_velocity(amplitude=2.0, size=10)
        before = velocity.data.copy()

        exponentiate_velocity_field(velocity, order=1)

        np.testing.assert_array_equal(velocity.data, before)


class TestVectorField:
    """Tests for the VectorField class."""

    def test_voxel_units_round_trip(self, rng):
        geometry = ImageGeometry(shape=(3, 4, 5), spacing=(2.0, 1.0, 0.5))
        voxels = rng.normal(size=(3, 4, 5, 3))

        field = VectorField.from_voxel_units(voxels, geometry)

        np.testing.assert_allclose(field.data[..., 0], 2.0 * voxels[..., 0])
        np.testing.assert_allclose(field.to_voxel_units(), voxels)

    def test_linear_field_gradient(self):
        geometry = ImageGeometry(shape=(6, 6, 6), spacing=(2.0, 2.0, 2.0))
        points = geometry.physical_points()
        matrix = np.array([[0.1, 0.0, 0.2], [0.0, -0.1, 0.0], [0.05, 0.0, 0.0]])
        field = VectorField(points @ matrix.T, geometry)

        gradient = field.spatial_gradient()

        np.testing.assert_allclose(gradient, np.broadcast_to(matrix, (6, 6, 6, 3, 3)), atol=1e-12)
        np.testing.assert_allclose(
            field.jacobian_determinant(), np.linalg.det(np.eye(3) + matrix), atol=1e-12
        )

    def test_shape_checked(self, small_geometry):
        with pytest.raises(ValueError, match="does not match"):
            VectorField(np.zeros((2, 2, 2, 3)), small_geometry)

    def test_max_norm(self, small_geometry):
        field = VectorField.zeros(small_geometry)
        field.data[1, 2, 3] = [3.0, 4.0, 0.0]
        assert field.max_norm() == 5.0
