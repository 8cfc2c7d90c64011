"""
Command-line interface applying a transform series to a tensor image.
"""

import argparse
import sys
from pathlib import Path
from typing import Optional

from . import __version__

DESCRIPTION = """\
Resample a diffusion tensor image through a series of transformations.
The transform series is an XML file such as:

<TransformationList>
  <Transformation>
    <Type>linear</Type> (it can be svf or dense too)
    <Path>FileName</Path>
    <Inversion>0</Inversion>
  </Transformation>
  ...
</TransformationList>
"""


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="dti-apply-transforms",
        description=DESCRIPTION,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    parser.add_argument(
        "-i", "--input",
        type=Path,
        required=True,
        help="Input tensor image (X, Y, Z, 6)",
    )

    parser.add_argument(
        "-t", "--trsf",
        type=Path,
        required=True,
        help="Transform series XML file",
    )

    parser.add_argument(
        "-o", "--output",
        type=Path,
        required=True,
        help="Output resampled tensor image",
    )

    parser.add_argument(
        "-g", "--geometry",
        type=Path,
        required=True,
        help="Image defining the output geometry",
    )

    parser.add_argument(
        "-P", "--ppd",
        action="store_true",
        help="Use PPD reorientation (default: finite strain)",
    )

    parser.add_argument(
        "-e", "--exp-order",
        type=int,
        choices=[0, 1],
        default=None,
        help="Order of velocity field exponentiation (default: from the series, else 0)",
    )

    parser.add_argument(
        "-I", "--invert",
        action="store_true",
        help="Invert the transformation series",
    )

    parser.add_argument(
        "-N", "--nearest",
        action="store_true",
        help="Use nearest neighbor interpolation",
    )

    parser.add_argument(
        "-p", "--threads",
        type=int,
        default=None,
        help="Number of threads to run on (default: all cores)",
    )

    parser.add_argument(
        "--strict-inversion",
        action="store_true",
        help="Fail instead of inverting dense fields by fixed-point iteration",
    )

    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose output",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    return parser


def main(args: Optional[list] = None) -> int:
    """
    Main entry point.

    Args:
        args: Command line arguments (uses sys.argv if None).

    Returns:
        Exit code (0 for success).
    """
    parsed_args = build_parser().parse_args(args)

    try:
        return run(parsed_args)
    except KeyboardInterrupt:
        print("\nResampling interrupted by user", file=sys.stderr)
        return 1
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        if parsed_args.verbose:
            import traceback
            traceback.print_exc()
        return 1


def _step(verbose: bool, message: str) -> None:
    if verbose:
        print(f"{message}... ", end="", flush=True)


def _done(verbose: bool) -> None:
    if verbose:
        print("Done")


def run(args: argparse.Namespace) -> int:
    """Resample with parsed arguments."""
    import time
    from .interpolation import Interpolation
    from .io import load_geometry, load_tensor_field, save_tensor_field
    from .pipeline import ResampleConfig, build_transform
    from .resample import Reorientation, resample_log_tensor_field
    from .series import read_transform_series
    from .tensors import exp_tensor_field, log_tensor_field

    start_time = time.time()
    verbose = args.verbose

    config = ResampleConfig(
        reorientation=Reorientation.PPD if args.ppd else Reorientation.FINITE_STRAIN,
        interpolation=Interpolation.NEAREST if args.nearest else Interpolation.LINEAR,
        num_threads=args.threads,
        invert=True if args.invert else None,
        exponentiation_order=args.exp_order,
        allow_iterative_inversion=not args.strict_inversion,
    )

    geometry = load_geometry(args.geometry)
    series = read_transform_series(args.trsf)

    if verbose:
        print("=" * 70)
        print("  dti-apply-transforms")
        print("=" * 70)
        print(f"  Input:                 {args.input}")
        print(f"  Transform series:      {args.trsf} ({len(series.entries)} entries)")
        print(f"  Output geometry:       {geometry.shape}, spacing {geometry.spacing}")
        print(f"  Reorientation:         {config.reorientation.value}")
        print(f"  Interpolation:         {config.interpolation.value}")
        print(f"  Invert series:         {bool(args.invert or series.invert)}")
        print()

    _step(verbose, "Reading transforms")
    transform = build_transform(series, config)
    _done(verbose)

    _step(verbose, "Reading input")
    tensors = load_tensor_field(args.input)
    _done(verbose)

    _step(verbose, "Logging input")
    log_field = log_tensor_field(
        tensors,
        scale_off_diagonal=config.scale_off_diagonal,
        epsilon=config.epsilon,
        clamp=config.clamp_eigenvalues,
    )
    _done(verbose)

    _step(verbose, "Applying transform")
    resampled = resample_log_tensor_field(
        transform,
        log_field,
        geometry,
        reorientation=config.reorientation,
        interpolation=config.interpolation,
        num_threads=config.num_threads,
    )
    _done(verbose)

    _step(verbose, "Exping output")
    output = exp_tensor_field(resampled)
    _done(verbose)

    save_tensor_field(output, args.output)

    total_time = time.time() - start_time
    if verbose:
        foreground = int((~resampled.background).sum())
        print()
        print(f"  Foreground voxels:     {foreground:,} / {geometry.num_voxels:,}")
        print(f"  Total time:            {total_time:.2f}s")
        print(f"  Output:                {args.output}")
        print("=" * 70)
    else:
        print(f"Resampling complete ({total_time:.1f}s). Result saved to: {args.output}")

    return 0


if __name__ == "__main__":
    sys.exit(main())
