"""
Tests for interpolation, tensor reorientation and field resampling.
"""

import numpy as np
import pytest

from conftest import random_spd, rotation_z

from dti_resample import interpolation as interpolation_module
from dti_resample.exceptions import OutOfBufferSample
from dti_resample.geometry import ImageGeometry
from dti_resample.interpolation import Interpolation, nearest_indices, sample_log_tensors
from dti_resample.pipeline import ResampleConfig, resample_tensor_field
from dti_resample.resample import (
    Reorientation,
    polar_rotation,
    reorient_finite_strain,
    reorient_log_tensors,
    reorient_ppd,
    resample_log_tensor_field,
)
from dti_resample.tensors import (
    TensorField,
    is_spd,
    log_tensor_field,
    sorted_eigh,
    vector_to_matrix,
)
from dti_resample.transforms import ComposedTransform, LinearTransform

IDENTITY_TENSOR = np.array([1.0, 0.0, 1.0, 0.0, 0.0, 1.0])


def chain(*transforms):
    return ComposedTransform(tuple(transforms))


def resample(field, transform, geometry=None, **options):
    return resample_tensor_field(
        field, transform, geometry or field.geometry, ResampleConfig(**options)
    )


class TestInterpolation:
    """Tests for log-tensor sampling kernels."""

    def test_nearest_rounds_half_up(self):
        indices = np.array([[0.49, 0.5, 1.5], [-0.5, 2.4, 2.6]])

        np.testing.assert_array_equal(
            nearest_indices(indices, (3, 3, 3)), [[0, 1, 2], [0, 2, 2]]
        )

    def test_linear_ignores_background_neighbours(self):
        geometry = ImageGeometry(shape=(4, 1, 1))
        data = np.zeros((4, 1, 1, 6))
        data[2:] = [2.0, 0.0, 2.0, 0.0, 0.0, 2.0]
        log_field = log_tensor_field(TensorField(data, geometry))

        values, background = sample_log_tensors(
            log_field, np.array([[1.5, 0.0, 0.0], [0.5, 0.0, 0.0], [2.5, 0.0, 0.0]])
        )

        np.testing.assert_array_equal(background, [False, True, False])
        np.testing.assert_allclose(values[0], log_field.data[2])
        np.testing.assert_allclose(values[2], log_field.data[2])
        np.testing.assert_array_equal(values[1], 0.0)

    def test_nearest_background_flag(self):
        geometry = ImageGeometry(shape=(2, 1, 1))
        data = np.zeros((2, 1, 1, 6))
        data[1] = IDENTITY_TENSOR
        log_field = log_tensor_field(TensorField(data, geometry))

        _, background = sample_log_tensors(
            log_field, np.array([[0.2, 0.0, 0.0], [0.7, 0.0, 0.0]]), Interpolation.NEAREST
        )

        np.testing.assert_array_equal(background, [True, False])


class TestReorientation:
    """Tests for finite strain and PPD reorientation."""

    def test_polar_rotation_strips_stretch(self):
        rotation = rotation_z(0.6)
        jacobian = rotation @ np.diag([2.0, 0.5, 1.5])

        np.testing.assert_allclose(polar_rotation(jacobian[np.newaxis])[0], rotation, atol=1e-12)

    def test_finite_strain_rotates_by_inverse(self):
        q = rotation_z(np.pi / 4)
        tensor = np.diag([3.0, 1.0, 0.5])

        result = reorient_finite_strain(tensor[np.newaxis], q.T[np.newaxis])[0]

        np.testing.assert_allclose(result, q @ tensor @ q.T, atol=1e-12)

    def test_ppd_follows_deformed_principal_direction(self):
        tensor = np.diag([3.0, 1.0, 0.5])
        # fixed-to-moving shear; the moving-to-fixed map is its inverse
        jacobian = np.linalg.inv(np.array([
            [1.0, 0.0, 0.0],
            [1.0, 1.0, 0.0],
            [0.0, 0.0, 1.0],
        ]))

        result = reorient_ppd(tensor[np.newaxis], jacobian[np.newaxis])[0]
        eigenvalues, eigenvectors = sorted_eigh(result)

        np.testing.assert_allclose(eigenvalues, [3.0, 1.0, 0.5], atol=1e-12)
        expected = np.array([1.0, 1.0, 0.0]) / np.sqrt(2.0)
        assert np.isclose(abs(eigenvectors[:, 0] @ expected), 1.0)

    def test_ppd_equals_finite_strain_for_rotations(self, rng):
        matrices = vector_to_matrix(random_spd(rng, 10))
        jacobians = np.stack([rotation_z(a) for a in rng.uniform(0, np.pi, 10)])

        np.testing.assert_allclose(
            reorient_ppd(matrices, jacobians),
            reorient_finite_strain(matrices, jacobians),
            atol=1e-12,
        )

    def test_no_reorientation_returns_input(self, rng):
        logs = rng.normal(size=(5, 6))
        jacobians = np.stack([rotation_z(0.3)] * 5)

        assert reorient_log_tensors(logs, jacobians, Reorientation.NONE) is logs


class TestResampleTensorField:
    """Tests for end-to-end resampling through a transform."""

    @pytest.mark.parametrize("interpolation", ["linear", "nearest"])
    @pytest.mark.parametrize("reorientation", ["finite-strain", "ppd", "none"])
    def test_identity_transform_preserves_field(
        self, random_tensor_field, interpolation, reorientation
    ):
        result = resample(
            random_tensor_field,
            chain(),
            interpolation=interpolation,
            reorientation=reorientation,
        )

        np.testing.assert_array_equal(result.background, random_tensor_field.background)
        np.testing.assert_allclose(result.data, random_tensor_field.data, rtol=1e-8, atol=1e-15)

    def test_scaling_maps_outer_voxels_outside(self):
        """Output voxel i samples input index 2 i; index 4 lies past the last voxel."""
        geometry = ImageGeometry(shape=(3, 3, 3))
        field = TensorField(np.broadcast_to(IDENTITY_TENSOR, (3, 3, 3, 6)).copy(), geometry)

        result = resample(field, chain(LinearTransform(np.diag([2.0, 2.0, 2.0]))))

        index = np.indices((3, 3, 3))
        expected_background = np.any(index == 2, axis=0)
        np.testing.assert_array_equal(result.background, expected_background)
        np.testing.assert_allclose(result.data[~expected_background], IDENTITY_TENSOR, atol=1e-12)
        np.testing.assert_array_equal(result.data[expected_background], 0.0)

    @pytest.mark.parametrize("reorientation", ["finite-strain", "ppd"])
    def test_rotation_rotates_tensors(self, anisotropic_tensor_field, reorientation):
        q = rotation_z(np.pi / 6)
        tensor = vector_to_matrix(anisotropic_tensor_field.data[0, 0, 0])

        result = resample(
            anisotropic_tensor_field,
            chain(LinearTransform(q.T)),
            reorientation=reorientation,
        )

        center = vector_to_matrix(result.data[4, 4, 4])
        np.testing.assert_allclose(center, q @ tensor @ q.T, rtol=1e-8, atol=1e-15)
        _, eigenvectors = sorted_eigh(center)
        assert np.isclose(abs(eigenvectors[:, 0] @ q[:, 0]), 1.0)

    def test_rotation_without_reorientation(self, anisotropic_tensor_field):
        result = resample(
            anisotropic_tensor_field,
            chain(LinearTransform(rotation_z(np.pi / 6).T)),
            reorientation=Reorientation.NONE,
        )

        np.testing.assert_allclose(
            result.data[4, 4, 4], anisotropic_tensor_field.data[4, 4, 4], rtol=1e-8, atol=1e-15
        )

    @pytest.mark.parametrize("interpolation", ["linear", "nearest"])
    def test_output_is_spd(self, random_tensor_field, interpolation):
        transform = chain(
            LinearTransform(rotation_z(0.4) @ np.diag([1.1, 0.8, 1.3]), [1.3, -0.7, 0.4])
        )

        result = resample(random_tensor_field, transform, interpolation=interpolation)

        foreground = ~result.background
        assert foreground.any()
        assert np.all(is_spd(result.data[foreground]))

    def test_background_border_not_averaged_with_zero(self):
        geometry = ImageGeometry(shape=(4, 2, 2))
        data = np.zeros((4, 2, 2, 6))
        data[2:] = [2.0, 0.0, 2.0, 0.0, 0.0, 2.0]
        field = TensorField(data, geometry)

        result = resample(field, chain(LinearTransform(np.eye(3), [0.5, 0.0, 0.0])))

        np.testing.assert_allclose(result.data[1], data[2], rtol=1e-10, atol=1e-14)
        assert result.background[0].all()

    def test_nearest_neighbour_shift(self, random_tensor_field):
        geometry = random_tensor_field.geometry
        shift = np.array([0.4, 0.0, 0.0]) * geometry.spacing[0]

        result = resample(
            random_tensor_field,
            chain(LinearTransform(np.eye(3), shift)),
            interpolation=Interpolation.NEAREST,
        )

        np.testing.assert_allclose(result.data, random_tensor_field.data, rtol=1e-8, atol=1e-15)

    def test_everything_outside_warns(self, random_tensor_field):
        far = chain(LinearTransform(np.eye(3), [1000.0, 0.0, 0.0]))

        with pytest.warns(OutOfBufferSample):
            result = resample(random_tensor_field, far)

        assert result.background.all()
        np.testing.assert_array_equal(result.data, 0.0)

    def test_new_output_geometry(self, random_tensor_field):
        geometry = ImageGeometry(shape=(4, 4, 4), spacing=(3.0, 3.0, 3.0), origin=(-4.0, -3.0, -2.0))

        result = resample(random_tensor_field, chain(), geometry)

        assert result.geometry is geometry
        assert result.data.shape == (4, 4, 4, 6)

    def test_result_independent_of_thread_count(self, random_tensor_field):
        transform = chain(LinearTransform(rotation_z(0.2), [0.3, 0.2, -0.1]))

        single = resample(random_tensor_field, transform, num_threads=1)
        multi = resample(random_tensor_field, transform, num_threads=3)

        np.testing.assert_allclose(single.data, multi.data, rtol=1e-12, atol=1e-20)

    def test_masked_field_shared_across_slabs(self, random_tensor_field, monkeypatch):
        sampled_arrays = []
        original = interpolation_module.sample_vector_field

        def recording(data, indices, order=1):
            sampled_arrays.append(data)
            return original(data, indices, order)

        monkeypatch.setattr(interpolation_module, "sample_vector_field", recording)
        resample(
            random_tensor_field,
            chain(LinearTransform(rotation_z(0.2), [0.3, 0.2, -0.1])),
            num_threads=4,
        )

        assert len(sampled_arrays) > 1
        assert all(data is sampled_arrays[0] for data in sampled_arrays)

    def test_input_not_modified(self, random_tensor_field):
        before = random_tensor_field.data.copy()
        log_field = log_tensor_field(random_tensor_field)
        log_before = log_field.data.copy()

        resample_log_tensor_field(
            chain(LinearTransform(rotation_z(0.2))), log_field, random_tensor_field.geometry
        )

        np.testing.assert_array_equal(random_tensor_field.data, before)
        np.testing.assert_array_equal(log_field.data, log_before)
