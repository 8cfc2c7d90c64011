"""
Transform series descriptors.

A series lists the transforms that take a moving image to a fixed image,
in the order they were estimated. The XML layout is::

    <TransformationList invert="0" exponentiationOrder="0">
        <Transformation>
            <Type>linear</Type>        (linear, svf or dense)
            <Path>affine.txt</Path>
            <Inversion>0</Inversion>   (optional)
        </Transformation>
        ...
    </TransformationList>

Relative paths are resolved against the descriptor's directory. Every
payload is loaded while composing, so a broken series fails before any
resampling starts.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Union
import warnings
from xml.etree import ElementTree

from .exceptions import (
    IterativeInversionWarning,
    MalformedSeriesDescriptor,
    UnsupportedInversion,
)
from .io import load_vector_field, read_linear_transform
from .transforms import (
    ComposedTransform,
    DisplacementFieldTransform,
    StationaryVelocityFieldTransform,
    Transform,
    TransformKind,
)
from .velocity import SUPPORTED_ORDERS

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


def _parse_bool(text: Optional[str], what: str) -> bool:
    if text is None:
        return False
    value = text.strip().lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise MalformedSeriesDescriptor(f"Invalid {what} flag: {text!r}")


def _parse_order(text: Optional[str]) -> int:
    if text is None:
        return 0
    try:
        order = int(text.strip())
    except ValueError:
        raise MalformedSeriesDescriptor(f"Invalid exponentiation order: {text!r}") from None
    _check_order(order)
    return order


def _check_order(order: int) -> None:
    if order not in SUPPORTED_ORDERS:
        raise MalformedSeriesDescriptor(
            f"Unsupported exponentiation order {order}; expected one of {SUPPORTED_ORDERS}"
        )


@dataclass
class TransformDescriptor:
    """
    One entry of a transform series.

    Attributes:
        kind: Transform kind.
        path: Location of the transform payload.
        invert: Whether this entry is applied inverted.
    """

    kind: TransformKind
    path: Path
    invert: bool = False


@dataclass
class TransformSeries:
    """
    Ordered transform descriptors with series-level options.

    Attributes:
        entries: Descriptors, moving to fixed.
        invert: Invert the whole series.
        exponentiation_order: Velocity-field exponentiation order (0 or 1).
    """

    entries: List[TransformDescriptor] = field(default_factory=list)
    invert: bool = False
    exponentiation_order: int = 0

    def __post_init__(self):
        _check_order(self.exponentiation_order)


def read_transform_series(filepath: Union[str, Path]) -> TransformSeries:
    """
    Parse a transform series XML file.

    Raises:
        MalformedSeriesDescriptor: If the file is missing, is not valid XML,
            or an entry lacks a known type or a path.
    """
    filepath = Path(filepath)
    if not filepath.exists():
        raise MalformedSeriesDescriptor(f"Transform series file not found: {filepath}")

    try:
        root = ElementTree.parse(filepath).getroot()
    except ElementTree.ParseError as e:
        raise MalformedSeriesDescriptor(f"Invalid XML in {filepath}: {e}") from e
    except OSError as e:
        raise MalformedSeriesDescriptor(f"Cannot read transform series {filepath}: {e}") from e

    if root.tag != "TransformationList":
        raise MalformedSeriesDescriptor(
            f"Expected a TransformationList root element, got {root.tag!r}"
        )

    entries = []
    for position, node in enumerate(root):
        if node.tag != "Transformation":
            raise MalformedSeriesDescriptor(
                f"Unexpected element {node.tag!r} at position {position}"
            )

        type_text = node.findtext("Type")
        path_text = node.findtext("Path")
        if type_text is None or not type_text.strip():
            raise MalformedSeriesDescriptor(f"Transformation {position} has no Type")
        if path_text is None or not path_text.strip():
            raise MalformedSeriesDescriptor(f"Transformation {position} has no Path")

        try:
            kind = TransformKind(type_text.strip().lower())
        except ValueError:
            raise MalformedSeriesDescriptor(
                f"Transformation {position} has unknown type {type_text.strip()!r}"
            ) from None

        path = Path(path_text.strip())
        if not path.is_absolute():
            path = filepath.parent / path

        entries.append(TransformDescriptor(
            kind=kind,
            path=path,
            invert=_parse_bool(node.findtext("Inversion"), "Inversion"),
        ))

    order_text = root.get("exponentiationOrder", root.get("exponentiation-order"))
    return TransformSeries(
        entries=entries,
        invert=_parse_bool(root.get("invert"), "invert"),
        exponentiation_order=_parse_order(order_text),
    )


def write_transform_series(series: TransformSeries, filepath: Union[str, Path]) -> Path:
    """Write a transform series as XML; paths are written as given."""
    filepath = Path(filepath)
    filepath.parent.mkdir(parents=True, exist_ok=True)

    root = ElementTree.Element("TransformationList")
    root.set("invert", "1" if series.invert else "0")
    root.set("exponentiationOrder", str(series.exponentiation_order))
    for entry in series.entries:
        node = ElementTree.SubElement(root, "Transformation")
        ElementTree.SubElement(node, "Type").text = entry.kind.value
        ElementTree.SubElement(node, "Path").text = str(entry.path)
        ElementTree.SubElement(node, "Inversion").text = "1" if entry.invert else "0"

    ElementTree.ElementTree(root).write(filepath, encoding="utf-8", xml_declaration=True)
    return filepath


def load_transform(
    entry: TransformDescriptor,
    invert: bool,
    exponentiation_order: int = 0,
    num_threads: Optional[int] = None,
    allow_iterative_inversion: bool = True,
) -> Transform:
    """
    Load one series entry.

    Args:
        entry: Descriptor to load.
        invert: Effective inversion (entry flag combined with the series flag).
        exponentiation_order: Order for velocity fields.
        num_threads: Threads for velocity field exponentiation.
        allow_iterative_inversion: Permit fixed-point inversion of dense fields.

    Raises:
        MalformedSeriesDescriptor: If the payload is missing or unreadable.
        UnsupportedInversion: If a dense field must be inverted and
            iterative inversion is not allowed.
    """
    if not entry.path.exists():
        raise MalformedSeriesDescriptor(f"Transform file not found: {entry.path}")

    try:
        if entry.kind == TransformKind.LINEAR:
            transform = read_linear_transform(entry.path)
            return transform.inverse() if invert else transform

        if entry.kind == TransformKind.SVF:
            transform = StationaryVelocityFieldTransform.from_velocity(
                load_vector_field(entry.path),
                order=exponentiation_order,
                num_threads=num_threads,
            )
            return transform.inverse() if invert else transform

        if entry.kind == TransformKind.DENSE:
            transform = DisplacementFieldTransform(load_vector_field(entry.path))
            if not invert:
                return transform
            if not allow_iterative_inversion:
                raise UnsupportedInversion(
                    f"Dense field {entry.path} has no closed-form inverse and "
                    "iterative inversion is disabled"
                )
            warnings.warn(
                f"Inverting dense field {entry.path} by fixed-point iteration",
                IterativeInversionWarning,
                stacklevel=2,
            )
            return transform.inverse()
    except ValueError as e:
        raise MalformedSeriesDescriptor(f"Cannot load {entry.path}: {e}") from e

    raise MalformedSeriesDescriptor(f"Unsupported transform kind: {entry.kind}")


def compose_transform_series(
    series: TransformSeries,
    invert: Optional[bool] = None,
    exponentiation_order: Optional[int] = None,
    num_threads: Optional[int] = None,
    allow_iterative_inversion: bool = True,
) -> ComposedTransform:
    """
    Build the fixed-to-moving mapping of a transform series.

    Without inversion the last listed entry is evaluated first on a
    fixed-space point; with inversion every entry is inverted and the
    first listed entry is evaluated first.

    Args:
        series: Parsed descriptor.
        invert: Override the series-level inversion flag.
        exponentiation_order: Override the series-level order.
        num_threads: Threads for velocity field exponentiation.
        allow_iterative_inversion: Permit fixed-point inversion of dense fields.

    Returns:
        ComposedTransform mapping fixed-space points to moving space.
    """
    if invert is None:
        invert = series.invert
    if exponentiation_order is None:
        exponentiation_order = series.exponentiation_order
    _check_order(exponentiation_order)

    transforms = [
        load_transform(
            entry,
            invert=entry.invert != invert,
            exponentiation_order=exponentiation_order,
            num_threads=num_threads,
            allow_iterative_inversion=allow_iterative_inversion,
        )
        for entry in series.entries
    ]
    if not invert:
        transforms.reverse()

    return ComposedTransform(tuple(transforms))
