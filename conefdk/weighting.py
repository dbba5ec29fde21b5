"""Per-projection weights applied before ramp filtering.

* :func:`displaced_detector_weighting` - redundancy weights for a detector
  shifted off the central ray (half-fan acquisition).
* :func:`parker_weighting` - Parker redundancy weights for short scans.
* :func:`fdk_weighting` - cosine weight and FDK scale factor.

All functions take and return a 2D :class:`~conefdk.image.ImageGrid`
projection slice and never modify their input. The detector coordinate
``l = u + proj_offset_x`` measures the position along ``u`` relative to the
central ray.
"""

import math

import torch
import torch.nn.functional as F
from loguru import logger

from .constants import _SYMMETRY_TOLERANCE
from .image import ImageGrid


def _central_ray_coordinates(projection, record):
    return projection.coordinates(0) + record.proj_offset_x


# ============================================================================
# Displaced Detector
# ============================================================================

def displaced_detector_weights(l, theta, sdd, positive=True):
    """Smooth redundancy ramp for a displaced detector.

    The weight rises from 0 at ``l = -theta`` to 2 at ``l = theta`` following
    ``sin(pi/2 * atan(l/sdd) / atan(theta/sdd)) + 1``; it is 0 below the
    overlap and 2 above it. For a detector displaced towards negative ``l``
    the ramp is mirrored.

    Parameters
    ----------
    l : torch.Tensor
        Central-ray coordinates of the detector columns.
    theta : float
        Half width of the doubly covered central band.
    sdd : float
        Source-to-detector distance.
    positive : bool, optional
        True when the detector is displaced towards positive ``l``.

    Returns
    -------
    torch.Tensor
        Weights in ``[0, 2]``, same shape as `l`.
    """
    if not positive:
        l = -l
    ramp = torch.sin(0.5 * math.pi * torch.atan(l / sdd) / math.atan(theta / sdd)) + 1.0
    weights = torch.where(l <= -theta, torch.zeros_like(ramp), ramp)
    return torch.where(l >= theta, torch.full_like(ramp, 2.0), weights)


def displaced_detector_weighting(projection, geometry, index, min_offset=None, max_offset=None):
    """Weight a projection acquired with a laterally displaced detector.

    The detector coverage along ``u``, over the whole scan, is
    ``[u_first + min_offset, u_last + max_offset]`` in central-ray
    coordinates. When it is symmetric within a tenth of a pixel the
    projection is returned unchanged. Otherwise the slice is enlarged with
    zero columns up to the symmetric extent on the uncovered side and
    multiplied by :func:`displaced_detector_weights`.

    Parameters
    ----------
    projection : ImageGrid
        2D projection slice.
    geometry : ConeBeamGeometry
        Acquisition geometry.
    index : int
        Projection index in `geometry`.
    min_offset, max_offset : float, optional
        Range of ``proj_offset_x`` over the scan. Taken from `geometry` when
        omitted; a streaming acquisition passes the range of the full scan.

    Returns
    -------
    ImageGrid
        Weighted (and possibly enlarged) projection slice.

    Raises
    ------
    ValueError
        If the detector does not cover the central ray at all.
    """
    if min_offset is None or max_offset is None:
        min_offset, max_offset = geometry.offset_range()
    record = geometry.record(index)
    du = projection.spacing[0]
    u_first = projection.origin[0]
    u_last = projection.last_position(0)
    inferior = u_first + min_offset
    superior = u_last + max_offset
    if abs(inferior + superior) < _SYMMETRY_TOLERANCE * du:
        return projection

    theta = min(-inferior, superior)
    if theta <= 0.0:
        raise ValueError(
            f"Detector too displaced: coverage [{inferior}, {superior}] misses the central ray"
        )
    positive = inferior + superior > 0.0

    # === ENLARGE TO THE SYMMETRIC EXTENT ===
    n_left = n_right = 0
    if positive:
        target = -superior - record.proj_offset_x
        n_left = max(0, int(math.ceil((u_first - target) / du - 1e-6)))
    else:
        target = -inferior - record.proj_offset_x
        n_right = max(0, int(math.ceil((target - u_last) / du - 1e-6)))
    data = F.pad(projection.data, (n_left, n_right))
    enlarged = ImageGrid(data, (u_first - n_left * du, projection.origin[1]), projection.spacing)

    l = _central_ray_coordinates(enlarged, record)
    weights = displaced_detector_weights(l, theta, record.sdd, positive)
    return enlarged.with_data(enlarged.data * weights.to(device=data.device, dtype=data.dtype)[None, :])


# ============================================================================
# Parker Short Scan
# ============================================================================

def parker_weights(beta, gamma, delta):
    """Parker redundancy weights for one gantry position.

    Parameters
    ----------
    beta : float
        Gantry angle relative to the first projection, radians.
    gamma : torch.Tensor
        Fan angle ``atan(l / sdd)`` of every detector column.
    delta : float
        Half the angular range beyond 180 degrees.

    Returns
    -------
    torch.Tensor
        Weights in ``[0, 2]``, same shape as `gamma`.
    """
    lower = torch.clamp(delta + gamma, min=1e-12)
    upper = torch.clamp(delta - gamma, min=1e-12)
    rising = torch.sin(0.25 * math.pi * beta / lower) ** 2
    falling = torch.sin(0.25 * math.pi * (math.pi + 2.0 * delta - beta) / upper) ** 2
    if beta > math.pi + 2.0 * delta:
        return torch.zeros_like(gamma)
    weights = torch.where(beta <= math.pi + 2.0 * gamma, torch.ones_like(gamma), falling)
    weights = torch.where(beta <= 2.0 * delta + 2.0 * gamma, rising, weights)
    return 2.0 * weights


def parker_weighting(projection, geometry, index):
    """Apply Parker short-scan weights to one projection.

    The first and last angles of the scan are the ones bordering the largest
    gap between sorted gantry angles. Full scans are returned unchanged.

    Parameters
    ----------
    projection : ImageGrid
        2D projection slice.
    geometry : ConeBeamGeometry
        Complete acquisition geometry.
    index : int
        Projection index in `geometry`.

    Returns
    -------
    ImageGrid
        Weighted projection slice.
    """
    scan = geometry.short_scan_range()
    if scan is None:
        return projection
    first, last = scan
    delta = 0.5 * (last - first - math.pi)
    record = geometry.record(index)
    gamma = torch.atan(_central_ray_coordinates(projection, record) / record.sdd)

    half_fan = float(gamma.abs().max())
    if delta < half_fan:
        logger.warning(
            f"Short scan range too small: delta={math.degrees(delta):.2f} deg is below "
            f"the detector half fan angle {math.degrees(half_fan):.2f} deg"
        )

    beta = math.fmod(math.radians(record.gantry_angle) - first, 2.0 * math.pi)
    if beta < 0.0:
        beta += 2.0 * math.pi
    weights = parker_weights(beta, gamma, delta)
    data = projection.data
    return projection.with_data(data * weights.to(device=data.device, dtype=data.dtype)[None, :])


# ============================================================================
# FDK Weights
# ============================================================================

def fdk_weighting(projection, geometry, index, angular_gap):
    """Cosine weight and FDK scale for one projection.

    Every pixel is multiplied by ``sdd / sqrt(sdd^2 + du^2 + dv^2)``, where
    ``(du, dv)`` is the pixel position relative to the foot of the
    perpendicular from the source, and by ``0.5 * angular_gap * sid * sdd``.

    Parameters
    ----------
    projection : ImageGrid
        2D projection slice.
    geometry : ConeBeamGeometry
        Acquisition geometry.
    index : int
        Projection index in `geometry`.
    angular_gap : float
        Angular weight of this projection in radians, see
        :meth:`~conefdk.geometry.ConeBeamGeometry.angular_gaps`.

    Returns
    -------
    ImageGrid
        Weighted projection slice.
    """
    record = geometry.record(index)
    u = projection.coordinates(0) + record.proj_offset_x - record.source_offset_x
    v = projection.coordinates(1) + record.proj_offset_y - record.source_offset_y
    sdd = record.sdd
    cosine = sdd / torch.sqrt(sdd * sdd + u[None, :] ** 2 + v[:, None] ** 2)
    scale = 0.5 * angular_gap * record.sid * sdd
    data = projection.data
    return projection.with_data(data * (cosine * scale).to(device=data.device, dtype=data.dtype))
