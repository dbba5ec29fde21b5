"""Field of view of a cone-beam acquisition.

A voxel lies in the field of view when its centre projects onto the
detector (between the first and last pixel centres along both axes) in
every projection. For a displaced-detector scan, where each half of the
object is only seen by half of the views, it suffices that the voxel is
seen in at least half of the projections.
"""

import math

import numpy as np
import torch
from loguru import logger


def view_counts(volume, geometry, detector):
    """Number of projections in which each voxel centre hits the detector.

    Parameters
    ----------
    volume : ImageGrid
        Volume grid (values are ignored).
    geometry : ConeBeamGeometry
        Acquisition geometry.
    detector : ImageGrid
        2D detector grid.

    Returns
    -------
    torch.Tensor
        int32 tensor with the shape of ``volume.data``.
    """
    device = volume.device
    x = volume.coordinates(0)
    y = volume.coordinates(1)
    z = volume.coordinates(2)
    u_first, u_last = detector.origin[0], detector.last_position(0)
    v_first, v_last = detector.origin[1], detector.last_position(1)
    counts = torch.zeros(volume.data.shape, dtype=torch.int32, device=device)
    for index, matrix in enumerate(geometry.matrices):
        m = torch.tensor(np.array(matrix), device=device)
        rows = [
            m[r, 0] * x[None, None, :] + m[r, 1] * y[None, :, None] + m[r, 2] * z[:, None, None] + m[r, 3]
            for r in range(3)
        ]
        w = rows[2]
        valid = w.abs() > 1e-12
        safe = torch.where(valid, w, torch.ones_like(w))
        u = rows[0] / safe
        v = rows[1] / safe
        seen = valid & (u >= u_first) & (u <= u_last) & (v >= v_first) & (v <= v_last)
        counts += seen.to(torch.int32)
    return counts


def field_of_view_mask(volume, geometry, detector, displaced_detector=False):
    """Binary mask (1 inside, 0 outside) of the reconstructible region.

    Parameters
    ----------
    volume : ImageGrid
        Volume grid (values are ignored).
    geometry : ConeBeamGeometry
        Acquisition geometry.
    detector : ImageGrid
        2D detector grid.
    displaced_detector : bool, optional
        Accept voxels seen in at least half of the projections.

    Returns
    -------
    ImageGrid
        float32 mask on the volume grid.
    """
    n_views = len(geometry)
    counts = view_counts(volume, geometry, detector)
    required = math.ceil(0.5 * n_views) if displaced_detector else n_views
    mask = (counts >= required).to(torch.float32)
    logger.info(f"Field of view covers {int(mask.sum())} of {mask.numel()} voxels")
    return volume.with_data(mask)


def apply_field_of_view(volume, mask):
    """Zero every voxel of `volume` outside `mask`."""
    return volume.with_data(volume.data * mask.data.to(volume.device))
