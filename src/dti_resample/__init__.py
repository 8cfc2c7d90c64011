"""
dti_resample: Log-Euclidean resampling of diffusion tensor images

Applies a series of spatial transformations (linear, stationary velocity
field, dense displacement field) to a diffusion tensor image and resamples
it onto a target grid.

Key features:
- Log-Euclidean interpolation: tensors are interpolated as matrix
  logarithms, so every output tensor is symmetric positive definite
- Tensor reorientation by finite strain or preservation of principal
  direction, from the local Jacobian of the composed transform
- Stationary velocity fields exponentiated by scaling and squaring
- ITK/ANTs transform files and NIfTI images

Quick start:
    from dti_resample import (
        load_tensor_field, load_geometry, apply_transform_series, save_tensor_field,
    )

    tensors = load_tensor_field("dti.nii.gz")
    geometry = load_geometry("template.nii.gz")
    result = apply_transform_series(tensors, "transforms.xml", geometry)
    save_tensor_field(result, "dti_registered.nii.gz")
"""

__version__ = "0.1.0"

from .exceptions import (
    TensorResampleError,
    NonPositiveDefiniteInput,
    MalformedSeriesDescriptor,
    UnsupportedInversion,
    ClampedEigenvalueWarning,
    IterativeInversionWarning,
    UnconvergedInversionWarning,
    OutOfBufferSample,
)
from .geometry import ImageGeometry
from .tensors import (
    TensorField,
    LogTensorField,
    log_tensors,
    exp_tensors,
    log_tensor_field,
    exp_tensor_field,
    fractional_anisotropy,
    is_spd,
)
from .fields import VectorField
from .interpolation import Interpolation, LogTensorSampler
from .velocity import exponentiate_velocity_field
from .transforms import (
    TransformKind,
    LinearTransform,
    DisplacementFieldTransform,
    StationaryVelocityFieldTransform,
    ComposedTransform,
)
from .series import (
    TransformDescriptor,
    TransformSeries,
    read_transform_series,
    write_transform_series,
    compose_transform_series,
)
from .resample import Reorientation, resample_log_tensor_field
from .io import (
    load_nifti,
    load_geometry,
    load_tensor_field,
    save_tensor_field,
    load_vector_field,
    save_vector_field,
    read_linear_transform,
    write_linear_transform,
)
from .pipeline import (
    ResampleConfig,
    resample_tensor_field,
    build_transform,
    apply_transform_series,
)

__all__ = [
    # Errors and warnings
    "TensorResampleError",
    "NonPositiveDefiniteInput",
    "MalformedSeriesDescriptor",
    "UnsupportedInversion",
    "ClampedEigenvalueWarning",
    "IterativeInversionWarning",
    "UnconvergedInversionWarning",
    "OutOfBufferSample",
    # Grids and fields
    "ImageGeometry",
    "TensorField",
    "LogTensorField",
    "VectorField",
    # Log-Euclidean codec
    "log_tensors",
    "exp_tensors",
    "log_tensor_field",
    "exp_tensor_field",
    "fractional_anisotropy",
    "is_spd",
    # Transforms
    "TransformKind",
    "LinearTransform",
    "DisplacementFieldTransform",
    "StationaryVelocityFieldTransform",
    "ComposedTransform",
    "exponentiate_velocity_field",
    # Transform series
    "TransformDescriptor",
    "TransformSeries",
    "read_transform_series",
    "write_transform_series",
    "compose_transform_series",
    # Resampling
    "Interpolation",
    "LogTensorSampler",
    "Reorientation",
    "resample_log_tensor_field",
    "ResampleConfig",
    "resample_tensor_field",
    "build_transform",
    "apply_transform_series",
    # I/O
    "load_nifti",
    "load_geometry",
    "load_tensor_field",
    "save_tensor_field",
    "load_vector_field",
    "save_vector_field",
    "read_linear_transform",
    "write_linear_transform",
]
