"""Multi-threaded CPU kernels for cone-beam projection.

The kernels are compiled with ``numba.njit(parallel=True)``; ``prange``
distributes detector pixels (forward projection) or volume slabs
(back-projection) over the available cores.
"""

from numba import prange

from ..constants import _CPU_PARALLEL_DECORATOR
from .ray import _trace_pixel, _backproject_voxel


# ============================================================================
# Forward Projection Kernel
# ============================================================================

@_CPU_PARALLEL_DECORATOR
def _cone_forward_cpu_kernel(vol, out, ray, method, step):
    """Integrate `vol` along the ray of every pixel of `out`.

    Parameters
    ----------
    vol : numpy.ndarray
        Volume, shape (nz, ny, nx), float32.
    out : numpy.ndarray
        Projection slice to fill, shape (nv, nu), float32.
    ray : numpy.ndarray
        Packed ray geometry in voxel-index space, see ``_trace_pixel``.
    method : int
        Interpolation variant (``SIDDON``, ``JOSEPH`` or ``RAYCAST``).
    step : float
        Physical sampling step of the ray-cast variant.
    """
    nv, nu = out.shape
    for p in prange(nv * nu):
        iv = p // nu
        iu = p - iv * nu
        out[iv, iu] = _trace_pixel(vol, ray, iu, iv, method, step)


# ============================================================================
# Back-projection Kernel
# ============================================================================

@_CPU_PARALLEL_DECORATOR
def _cone_backproject_cpu_kernel(proj, vol, mat, cone_weighting, footprint):
    """Accumulate the back-projection of `proj` into `vol` in place.

    Parameters
    ----------
    proj : numpy.ndarray
        Projection slice, shape (nv, nu), float32.
    vol : numpy.ndarray
        Volume to update, shape (nz, ny, nx), float32.
    mat : numpy.ndarray
        3x4 matrix from voxel indices to homogeneous pixel indices.
    cone_weighting : bool
        Divide every sample by the squared homogeneous depth.
    footprint : numpy.ndarray
        Adjoint weighting parameters, see ``_backproject_voxel``; a zero
        first entry disables them.
    """
    nz, ny, nx = vol.shape
    for iz in prange(nz):
        for iy in range(ny):
            for ix in range(nx):
                vol[iz, iy, ix] += _backproject_voxel(proj, mat, ix, iy, iz, cone_weighting, footprint)
