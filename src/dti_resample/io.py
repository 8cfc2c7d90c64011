"""
Input/Output for tensor images, vector fields and linear transforms.

Volumes are read and written with nibabel. NIfTI affines (RAS) are
converted to the package's ITK (LPS) physical convention on load and back
on save; vector and tensor components are stored as written by ITK-based
tools, in that same physical frame.

Linear transforms are read from ITK text files (``.txt``, ``.tfm``) and
ANTs binary ``.mat`` files, and written as ITK text.
"""

from pathlib import Path
from typing import Any, Optional, Union
from dataclasses import dataclass

import numpy as np
from numpy.typing import NDArray

from .fields import VectorField
from .geometry import ImageGeometry
from .tensors import TensorField
from .transforms import LinearTransform

# ITK transform types whose parameters are a 3x3 matrix plus translation
_ITK_MATRIX_TRANSFORMS = (
    "AffineTransform",
    "MatrixOffsetTransformBase",
    "Rigid3DTransform",
    "ScalableAffineTransform",
)


@dataclass
class NIfTIImage:
    """
    Container for NIfTI image data and metadata.

    Attributes:
        data: Image data array.
        affine: 4x4 RAS affine transformation matrix.
        header: NIfTI header information.
    """

    data: NDArray
    affine: NDArray[np.float64]
    header: Optional[Any] = None

    @property
    def geometry(self) -> ImageGeometry:
        return ImageGeometry.from_nifti_affine(self.affine, self.data.shape[:3])


def _load_image(filepath: Union[str, Path]):
    import nibabel as nib

    filepath = Path(filepath)

    if not filepath.exists():
        raise FileNotFoundError(f"NIfTI file not found: {filepath}")

    try:
        return nib.load(filepath)
    except Exception as e:
        raise ValueError(f"Failed to load NIfTI file {filepath}: {e}") from e


def load_nifti(filepath: Union[str, Path]) -> NIfTIImage:
    """
    Load a NIfTI image from file.

    Args:
        filepath: Path to NIfTI file (.nii or .nii.gz).

    Returns:
        NIfTIImage container with data and metadata.

    Raises:
        FileNotFoundError: If file does not exist.
        ValueError: If file is not a valid NIfTI.
    """
    img = _load_image(filepath)

    return NIfTIImage(
        data=np.asarray(img.get_fdata(dtype=np.float64)),
        affine=img.affine.copy(),
        header=img.header.copy(),
    )


def load_geometry(filepath: Union[str, Path]) -> ImageGeometry:
    """
    Read the grid geometry of an image without loading its voxels.

    Raises:
        FileNotFoundError: If file does not exist.
        ValueError: If file is not a valid NIfTI or has fewer than 3 axes.
    """
    img = _load_image(filepath)
    if len(img.shape) < 3:
        raise ValueError(f"Geometry image must be at least 3D, got shape {img.shape}")
    return ImageGeometry.from_nifti_affine(img.affine, img.shape[:3])


def _vector_data(data: NDArray, components: int, filepath: Path) -> NDArray[np.float64]:
    """Accept (X, Y, Z, C) or ITK-style (X, Y, Z, 1, C) voxel layouts."""
    if data.ndim == 5 and data.shape[3] == 1:
        data = data[:, :, :, 0, :]
    if data.ndim != 4 or data.shape[3] != components:
        raise ValueError(
            f"{filepath} has shape {data.shape}; expected (X, Y, Z, {components}) "
            f"or (X, Y, Z, 1, {components})"
        )
    return np.asarray(data, dtype=np.float64)


def _save_vector_data(
    data: NDArray,
    geometry: ImageGeometry,
    filepath: Union[str, Path],
    intent: str,
    intent_params: tuple = (),
    name: str = "",
    dtype: np.dtype = np.float32,
) -> Path:
    import nibabel as nib

    filepath = Path(filepath)
    filepath.parent.mkdir(parents=True, exist_ok=True)

    # ITK expects (X, Y, Z, 1, C) for vector images
    data = data[:, :, :, np.newaxis, :].astype(dtype)

    img = nib.Nifti1Image(data, geometry.to_nifti_affine())
    img.header.set_intent(intent, intent_params, name=name)
    img.header.set_data_dtype(dtype)

    nib.save(img, filepath)

    return filepath


def load_tensor_field(filepath: Union[str, Path]) -> TensorField:
    """
    Load a tensor image.

    Components are expected in ``(xx, xy, yy, xz, yz, zz)`` order.

    Raises:
        FileNotFoundError: If file does not exist.
        ValueError: If the file is not a 6-component volume.
    """
    filepath = Path(filepath)
    image = load_nifti(filepath)
    data = _vector_data(image.data, 6, filepath)
    return TensorField(data=data, geometry=image.geometry)


def save_tensor_field(
    field: TensorField,
    filepath: Union[str, Path],
    dtype: np.dtype = np.float32,
) -> Path:
    """Write a tensor image with the NIfTI symmetric matrix intent (dimension 3)."""
    return _save_vector_data(
        field.data, field.geometry, filepath,
        intent="symmetric matrix", intent_params=(3,), name="DTI", dtype=dtype,
    )


def load_vector_field(filepath: Union[str, Path]) -> VectorField:
    """
    Load a displacement or velocity field.

    Raises:
        FileNotFoundError: If file does not exist.
        ValueError: If the file is not a 3-component volume.
    """
    filepath = Path(filepath)
    image = load_nifti(filepath)
    data = _vector_data(image.data, 3, filepath)
    return VectorField(data=data, geometry=image.geometry)


def save_vector_field(
    field: VectorField,
    filepath: Union[str, Path],
    name: str = "displacement",
) -> Path:
    """
    Write a vector field in the ITK/ANTs displacement layout.

    The field is stored with shape (X, Y, Z, 1, 3), values in mm.
    """
    return _save_vector_data(field.data, field.geometry, filepath, intent="vector", name=name)


def read_linear_transform(filepath: Union[str, Path]) -> LinearTransform:
    """
    Read a linear transform file.

    Args:
        filepath: ITK text transform (any suffix) or ANTs ``.mat`` file.

    Raises:
        FileNotFoundError: If file does not exist.
        ValueError: If the file holds no supported 3D matrix transform.
    """
    filepath = Path(filepath)
    if not filepath.exists():
        raise FileNotFoundError(f"Transform file not found: {filepath}")

    if filepath.suffix.lower() == ".mat":
        return _read_ants_mat(filepath)
    return _read_itk_text(filepath)


def _read_ants_mat(filepath: Path) -> LinearTransform:
    from scipy.io import loadmat

    try:
        content = loadmat(str(filepath))
    except Exception as e:
        raise ValueError(f"Failed to read ANTs transform {filepath}: {e}") from e

    keys = [
        k for k in content
        if k.startswith(_ITK_MATRIX_TRANSFORMS) and k.endswith("_3_3")
    ]
    if not keys:
        raise ValueError(f"No 3D affine transform found in {filepath}")

    parameters = np.asarray(content[keys[0]], dtype=np.float64).reshape(-1)
    center = np.asarray(content.get("fixed", np.zeros(3)), dtype=np.float64).reshape(-1)
    return LinearTransform.from_itk_parameters(parameters, center)


def _read_itk_text(filepath: Path) -> LinearTransform:
    transform_types = []
    parameters = None
    center = None

    with open(filepath, "r") as f:
        for line in f:
            key, sep, value = line.partition(":")
            if not sep:
                continue
            key = key.strip()
            if key == "Transform":
                transform_types.append(value.strip())
            elif key == "Parameters" and parameters is None:
                parameters = np.array(value.split(), dtype=np.float64)
            elif key == "FixedParameters" and center is None:
                center = np.array(value.split(), dtype=np.float64)

    if len(transform_types) != 1:
        raise ValueError(
            f"{filepath} must hold exactly one transform, found {len(transform_types)}"
        )
    transform_type = transform_types[0]
    if not (transform_type.startswith(_ITK_MATRIX_TRANSFORMS) and transform_type.endswith("_3_3")):
        raise ValueError(f"Unsupported transform type in {filepath}: {transform_type}")
    if parameters is None:
        raise ValueError(f"No Parameters line in {filepath}")

    if center is not None and center.size == 0:
        center = None
    return LinearTransform.from_itk_parameters(parameters, center)


def write_linear_transform(
    transform: LinearTransform,
    filepath: Union[str, Path],
) -> Path:
    """
    Write a linear transform as an ITK text file (zero center).

    Args:
        transform: Transform to write.
        filepath: Output path, conventionally ``.txt``.

    Returns:
        Path to saved file.
    """
    filepath = Path(filepath)
    filepath.parent.mkdir(parents=True, exist_ok=True)

    matrix = " ".join(repr(float(v)) for v in transform.matrix.flatten())
    translation = " ".join(repr(float(v)) for v in transform.translation)
    lines = [
        "#Insight Transform File V1.0",
        "#Transform 0",
        "Transform: AffineTransform_double_3_3",
        f"Parameters: {matrix} {translation}",
        "FixedParameters: 0 0 0",
    ]

    with open(filepath, "w") as f:
        f.write("\n".join(lines) + "\n")

    return filepath
