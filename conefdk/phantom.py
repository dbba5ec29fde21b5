"""Analytic test objects: the 3D Shepp-Logan phantom and a uniform box.

Both objects can be rasterised into a volume and projected analytically,
which gives exact reference projections for checking the numerical
projectors and reconstructions. Ray integrals cover only the segment from
the source to the detector pixel, like the numerical projectors do.
"""

import math

import numpy as np
import torch

from .image import ImageGrid, stack_slices


# ============================================================================
# Phantom Definition
# ============================================================================

# Each row: centre (x, y, z), semi-axes (x, y, z), rotation about y in
# degrees, density. Units are fractions of the phantom scale; y is the
# rotation (axial) axis of the scanner.
SHEPP_LOGAN = (
    ((0.0, 0.0, 0.0), (0.69, 0.9, 0.92), 0.0, 2.0),
    ((0.0, 0.0, 0.0), (0.6624, 0.88, 0.874), 0.0, -0.98),
    ((-0.22, -0.25, 0.0), (0.41, 0.21, 0.16), 108.0, -0.02),
    ((0.22, -0.25, 0.0), (0.31, 0.22, 0.11), 72.0, -0.02),
    ((0.0, -0.25, 0.35), (0.21, 0.5, 0.25), 0.0, 0.02),
    ((0.0, -0.25, 0.1), (0.046, 0.046, 0.046), 0.0, 0.02),
    ((-0.08, -0.25, -0.65), (0.046, 0.02, 0.023), 0.0, 0.01),
    ((0.06, -0.25, -0.65), (0.046, 0.02, 0.023), 90.0, 0.01),
    ((0.06, 0.625, -0.105), (0.056, 0.1, 0.04), 90.0, 0.02),
    ((0.0, 0.625, 0.1), (0.056, 0.1, 0.056), 0.0, -0.02),
)
"""3D Shepp-Logan ellipsoids (Kak & Slaney densities)."""


def _ellipsoid_frame(centre, axes, angle, scale, offset):
    c = np.asarray(centre, dtype=np.float64) * scale + np.asarray(offset, dtype=np.float64)
    a = np.asarray(axes, dtype=np.float64) * scale
    phi = math.radians(angle)
    cos, sin = math.cos(phi), math.sin(phi)
    rot = np.array([[cos, 0.0, sin], [0.0, 1.0, 0.0], [-sin, 0.0, cos]])
    return torch.from_numpy(c), torch.from_numpy(a), torch.from_numpy(rot)


# ============================================================================
# Rasterisation
# ============================================================================

def draw_ellipsoids(volume, ellipsoids=SHEPP_LOGAN, scale=128.0, offset=(0.0, 0.0, 0.0)):
    """Add the densities of ellipsoids at every voxel centre.

    Parameters
    ----------
    volume : ImageGrid
        Volume grid; its values are kept and the densities added.
    ellipsoids : sequence, optional
        Ellipsoid table in the layout of :data:`SHEPP_LOGAN`.
    scale : float, optional
        Physical size of one table unit (default 128).
    offset : sequence of float, optional
        Physical position of the table origin.

    Returns
    -------
    ImageGrid
        New volume holding the sum.
    """
    x = volume.coordinates(0)
    y = volume.coordinates(1)
    out = volume.data.detach().to(torch.float64).clone()
    rel = torch.empty((y.shape[0], x.shape[0], 3), dtype=torch.float64, device=out.device)
    for centre, axes, angle, density in ellipsoids:
        c, a, rot = _ellipsoid_frame(centre, axes, angle, scale, offset)
        c, a, rot = c.to(out.device), a.to(out.device), rot.to(out.device)
        rel[..., 0] = x[None, :] - c[0]
        rel[..., 1] = y[:, None] - c[1]
        for iz, z in enumerate(volume.coordinates(2).tolist()):
            rel[..., 2] = z - c[2]
            q = (rel @ rot) / a
            inside = (q * q).sum(dim=-1) <= 1.0
            out[iz] += density * inside.to(out.dtype)
    return volume.with_data(out.to(torch.float32))


def draw_shepp_logan(volume, scale=128.0, offset=(0.0, 0.0, 0.0)):
    """Rasterise the Shepp-Logan phantom into (a copy of) `volume`."""
    return draw_ellipsoids(volume, SHEPP_LOGAN, scale, offset)


# ============================================================================
# Analytic Projection
# ============================================================================

def _pixel_rays(geometry, index, detector):
    """Source position and source-to-pixel vectors of one projection (float64)."""
    source = torch.from_numpy(geometry.source_position(index))
    origin, u_axis, v_axis = (torch.from_numpy(a) for a in geometry.detector_frame(index))
    u = detector.coordinates(0).cpu()
    v = detector.coordinates(1).cpu()
    pixels = origin + u[None, :, None] * u_axis + v[:, None, None] * v_axis
    return source, pixels - source


def _ellipsoid_chords(source, direction, ellipsoids, scale, offset):
    total = torch.zeros(direction.shape[:-1], dtype=torch.float64)
    length = torch.linalg.norm(direction, dim=-1)
    for centre, axes, angle, density in ellipsoids:
        c, a, rot = _ellipsoid_frame(centre, axes, angle, scale, offset)
        p = ((source - c) @ rot) / a
        d = (direction @ rot) / a
        qa = (d * d).sum(dim=-1)
        qb = (d * p).sum(dim=-1)
        qc = float((p * p).sum()) - 1.0
        disc = qb * qb - qa * qc
        root = torch.sqrt(torch.clamp(disc, min=0.0))
        t1 = torch.clamp((-qb - root) / qa, 0.0, 1.0)
        t2 = torch.clamp((-qb + root) / qa, 0.0, 1.0)
        chord = torch.where(disc > 0.0, (t2 - t1) * length, torch.zeros_like(length))
        total += density * chord
    return total


def project_ellipsoids(geometry, detector, ellipsoids=SHEPP_LOGAN, scale=128.0,
                       offset=(0.0, 0.0, 0.0), indices=None):
    """Exact line integrals through a set of ellipsoids.

    Parameters
    ----------
    geometry : ConeBeamGeometry
        Acquisition geometry.
    detector : ImageGrid
        2D detector grid (size, origin and spacing are used).
    ellipsoids : sequence, optional
        Ellipsoid table (default Shepp-Logan).
    scale : float, optional
        Physical size of one table unit.
    offset : sequence of float, optional
        Physical position of the table origin.
    indices : sequence of int, optional
        Projections to compute (default all).

    Returns
    -------
    ImageGrid
        Projection stack (n_views, nv, nu).
    """
    indices = range(len(geometry)) if indices is None else indices
    slices = []
    for i in indices:
        source, direction = _pixel_rays(geometry, i, detector)
        chords = _ellipsoid_chords(source, direction, ellipsoids, scale, offset)
        slices.append(ImageGrid(chords.to(torch.float32), detector.origin, detector.spacing))
    return stack_slices(slices)


def project_shepp_logan(geometry, detector, scale=128.0, offset=(0.0, 0.0, 0.0), indices=None):
    """Analytic cone-beam projections of the Shepp-Logan phantom."""
    return project_ellipsoids(geometry, detector, SHEPP_LOGAN, scale, offset, indices)


def ray_box_intersection(geometry, detector, box_min, box_max, density=1.0, indices=None):
    """Exact line integrals through an axis-aligned box of uniform density.

    Parameters
    ----------
    geometry : ConeBeamGeometry
        Acquisition geometry.
    detector : ImageGrid
        2D detector grid.
    box_min, box_max : sequence of float
        Opposite corners of the box, physical ``(x, y, z)``.
    density : float, optional
        Density inside the box (default 1).
    indices : sequence of int, optional
        Projections to compute (default all).

    Returns
    -------
    ImageGrid
        Projection stack (n_views, nv, nu).
    """
    box_min = torch.as_tensor(box_min, dtype=torch.float64)
    box_max = torch.as_tensor(box_max, dtype=torch.float64)
    indices = range(len(geometry)) if indices is None else indices
    slices = []
    for i in indices:
        source, direction = _pixel_rays(geometry, i, detector)
        t_min = torch.zeros(direction.shape[:-1], dtype=torch.float64)
        t_max = torch.ones_like(t_min)
        for axis in range(3):
            d = direction[..., axis]
            s = float(source[axis])
            parallel = d.abs() < 1e-12
            safe = torch.where(parallel, torch.ones_like(d), d)
            t1 = (box_min[axis] - s) / safe
            t2 = (box_max[axis] - s) / safe
            near = torch.minimum(t1, t2)
            far = torch.maximum(t1, t2)
            outside = bool(s < box_min[axis] or s > box_max[axis])
            near = torch.where(parallel, torch.full_like(d, 2.0 if outside else -1.0), near)
            far = torch.where(parallel, torch.full_like(d, -1.0 if outside else 2.0), far)
            t_min = torch.maximum(t_min, near)
            t_max = torch.minimum(t_max, far)
        chords = torch.clamp(t_max - t_min, min=0.0) * torch.linalg.norm(direction, dim=-1)
        slices.append(ImageGrid((density * chords).to(torch.float32), detector.origin, detector.spacing))
    return stack_slices(slices)
