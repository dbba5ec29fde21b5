"""Command line entry points.

Each ``main_*`` function parses its own arguments and is registered as a
console script in ``setup.py``:

* ``conefdk-fdk`` - batch FDK reconstruction from projection files.
* ``conefdk-inline`` - streaming FDK reconstruction during a mock acquisition.
* ``conefdk-forward`` - forward projection of a volume.
* ``conefdk-phantom`` - analytic projections of the Shepp-Logan phantom.
* ``conefdk-fov`` - field-of-view mask of a reconstruction.
"""

import argparse
import sys
from dataclasses import replace

from loguru import logger

from conefdk.config import ReconstructionConfig, VolumeConfig, load_config
from conefdk.exceptions import ConeFDKError
from conefdk.fdk import reconstruct
from conefdk.fov import apply_field_of_view, field_of_view_mask
from conefdk.image import constant_image
from conefdk.inline import run_inline
from conefdk.io import (
    ProjectionStreamReader,
    find_projection_files,
    read_geometry,
    read_image,
    read_projections,
    write_image,
)
from conefdk.phantom import project_shepp_logan
from conefdk.projectors import ProjectionMethod, forward_project_stack


def setup_logging(verbose=False):
    """Replace the default loguru sink with a coloured stdout sink.

    Parameters
    ----------
    verbose : bool, optional
        Log at INFO instead of WARNING (default False).
    """
    logger.remove()
    logger.add(
        sys.stdout,
        colorize=True,
        format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level}</level> | <level>{message}</level>",
        level="INFO" if verbose else "WARNING",
    )


# ============================================================================
# Argument Groups
# ============================================================================

def _add_common(parser):
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose execution")
    parser.add_argument("-g", "--geometry", required=True, help="XML geometry file name")
    parser.add_argument("-o", "--output", required=True, help="Output file name (.h5 or .tif)")


def _add_projections(parser):
    group = parser.add_argument_group("Projections")
    group.add_argument("-p", "--path", required=True, help="Path containing projections")
    group.add_argument("-r", "--regexp", required=True, help="Regular expression to select projection files in path")
    group.add_argument("--det-spacing", type=float, nargs=2, help="Detector pixel spacing (du dv)")
    group.add_argument("--det-origin", type=float, nargs=2, help="Detector coordinates of the first pixel (u v)")
    group.add_argument("--i0", type=float, help="Unattenuated intensity, converts raw counts to line integrals")


def _add_volume(parser):
    group = parser.add_argument_group("Output volume")
    group.add_argument("--dimension", type=int, nargs=3, help="Number of voxels (x y z)")
    group.add_argument("--spacing", type=float, nargs=3, help="Voxel spacing (x y z)")
    group.add_argument("--origin", type=float, nargs=3, help="Position of the first voxel (x y z)")


def _add_reconstruction(parser):
    parser.add_argument("--config", help="YAML configuration file; command line values override it")
    parser.add_argument("--hardware", choices=["cpu", "cuda"], help="Hardware used for computation")
    group = parser.add_argument_group("Ramp filter")
    group.add_argument("--hann", type=float, help="Cut frequency for Hann window in ]0,1] (0.0 disables it)")
    group.add_argument("--hannY", type=float, help="Cut frequency for Hann window along v in ]0,1] (0.0 disables it)")
    group.add_argument("--pad", type=float, help="Data padding parameter to correct for truncation")
    group = parser.add_argument_group("Weighting")
    group.add_argument("--no-displaced-detector", action="store_true", help="Disable displaced detector weighting")
    group.add_argument("--short-scan", action="store_true", help="Enable Parker short-scan weighting")


def _config_from_args(args):
    config = load_config(args.config) if getattr(args, "config", None) else ReconstructionConfig()
    volume = config.volume
    if args.dimension or args.spacing or args.origin:
        volume = VolumeConfig(
            size=args.dimension or volume.size,
            spacing=args.spacing or volume.spacing,
            origin=args.origin or volume.origin,
        )
    detector = config.detector
    if getattr(args, "det_spacing", None):
        detector = replace(detector, spacing=args.det_spacing)
    if getattr(args, "det_origin", None):
        detector = replace(detector, origin=args.det_origin)
    if getattr(args, "i0", None) is not None:
        detector = replace(detector, i0=args.i0)
    ramp = config.ramp
    if getattr(args, "hann", None) is not None:
        ramp = replace(ramp, hann_cut=args.hann)
    if getattr(args, "hannY", None) is not None:
        ramp = replace(ramp, hann_cut_y=args.hannY)
    if getattr(args, "pad", None) is not None:
        ramp = replace(ramp, truncation_correction=args.pad)
    config = replace(config, volume=volume, detector=detector, ramp=ramp)
    if getattr(args, "hardware", None):
        config = replace(config, hardware=args.hardware)
    if getattr(args, "no_displaced_detector", False):
        config = replace(config, displaced_detector=False)
    if getattr(args, "short_scan", False):
        config = replace(config, short_scan=True)
    return config


def _run(main, argv):
    try:
        return main(argv)
    except ConeFDKError as e:
        logger.error(str(e))
        return 1


# ============================================================================
# Entry Points
# ============================================================================

def _fdk(argv):
    parser = argparse.ArgumentParser(description="Reconstructs a 3D volume from a cone-beam sequence of projections [Feldkamp, David, Kress, 1984].")
    _add_common(parser)
    _add_projections(parser)
    _add_volume(parser)
    _add_reconstruction(parser)
    args = parser.parse_args(argv)
    setup_logging(args.verbose)
    config = _config_from_args(args)

    geometry = read_geometry(args.geometry)
    files = find_projection_files(args.path, args.regexp)
    projections = read_projections(files, config.detector.spacing, config.detector.origin, config.detector.i0)
    volume = reconstruct(geometry, projections, config)
    write_image(volume, args.output)
    return 0


def _inline(argv):
    parser = argparse.ArgumentParser(description="Reconstructs a 3D volume while projections are being acquired.")
    _add_common(parser)
    _add_projections(parser)
    _add_volume(parser)
    _add_reconstruction(parser)
    parser.add_argument("--delay", type=float, help="Seconds between two mock acquisitions")
    args = parser.parse_args(argv)
    setup_logging(args.verbose)
    config = _config_from_args(args)
    if args.delay is not None:
        config = replace(config, inline=replace(config.inline, acquisition_delay=args.delay))

    geometry = read_geometry(args.geometry)
    files = find_projection_files(args.path, args.regexp)
    reader = ProjectionStreamReader(config.detector.spacing, config.detector.origin, config.detector.i0)
    run_inline(geometry, files, config, writer=lambda volume: write_image(volume, args.output), reader=reader)
    return 0


def _forward(argv):
    parser = argparse.ArgumentParser(description="Projects a volume according to a geometry file.")
    _add_common(parser)
    parser.add_argument("-i", "--input", required=True, help="Input volume file name (.h5 or .tif)")
    parser.add_argument("-m", "--method", default="joseph", choices=[m.value for m in ProjectionMethod], help="Forward projection method")
    parser.add_argument("--hardware", default="cpu", choices=["cpu", "cuda"], help="Hardware used for computation")
    parser.add_argument("--dimension", type=int, nargs=2, default=[256, 256], help="Detector size in pixels (u v)")
    parser.add_argument("--spacing", type=float, nargs=2, default=[1.0, 1.0], help="Detector pixel spacing (u v)")
    parser.add_argument("--origin", type=float, nargs=2, help="Detector coordinates of the first pixel (u v)")
    args = parser.parse_args(argv)
    setup_logging(args.verbose)

    geometry = read_geometry(args.geometry)
    volume = read_image(args.input).to(args.hardware)
    detector = constant_image(args.dimension, args.spacing, args.origin)
    projections = forward_project_stack(volume, geometry, detector, args.method, backend=args.hardware)
    write_image(projections, args.output)
    return 0


def _phantom(argv):
    parser = argparse.ArgumentParser(description="Computes projections through a 3D Shepp & Logan phantom, analytically.")
    _add_common(parser)
    parser.add_argument("--phantomscale", type=float, default=128.0, help="Scaling factor for the phantom dimensions")
    parser.add_argument("--offset", type=float, nargs=3, default=[0.0, 0.0, 0.0], help="Position of the phantom centre (x y z)")
    parser.add_argument("--dimension", type=int, nargs=2, default=[256, 256], help="Detector size in pixels (u v)")
    parser.add_argument("--spacing", type=float, nargs=2, default=[1.0, 1.0], help="Detector pixel spacing (u v)")
    parser.add_argument("--origin", type=float, nargs=2, help="Detector coordinates of the first pixel (u v)")
    args = parser.parse_args(argv)
    setup_logging(args.verbose)

    geometry = read_geometry(args.geometry)
    detector = constant_image(args.dimension, args.spacing, args.origin)
    projections = project_shepp_logan(geometry, detector, args.phantomscale, args.offset)
    write_image(projections, args.output)
    return 0


def _fov(argv):
    parser = argparse.ArgumentParser(description="Computes the field of view of a reconstruction.")
    _add_common(parser)
    _add_projections(parser)
    parser.add_argument("--reconstruction", required=True, help="Reconstruction file (.h5 or .tif)")
    parser.add_argument("--mask", action="store_true", help="Output a binary mask instead of the masked reconstruction")
    parser.add_argument("--displaced", action="store_true", help="Assume a displaced detector acquisition")
    args = parser.parse_args(argv)
    setup_logging(args.verbose)

    geometry = read_geometry(args.geometry)
    files = find_projection_files(args.path, args.regexp)
    projections = read_projections(files, args.det_spacing or (1.0, 1.0), args.det_origin)
    detector = projections.slice(0)
    volume = read_image(args.reconstruction)
    mask = field_of_view_mask(volume, geometry, detector, args.displaced)
    write_image(mask if args.mask else apply_field_of_view(volume, mask), args.output)
    return 0


def main_fdk(argv=None):
    return _run(_fdk, argv)


def main_inline(argv=None):
    return _run(_inline, argv)


def main_forward(argv=None):
    return _run(_forward, argv)


def main_phantom(argv=None):
    return _run(_phantom, argv)


def main_fov(argv=None):
    return _run(_fov, argv)


if __name__ == "__main__":
    sys.exit(main_fdk())
