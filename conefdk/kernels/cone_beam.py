"""CUDA kernels for 3D cone beam projections.

This module contains the CUDA kernels for ray-driven cone-beam forward
projection (Siddon, Joseph and ray-cast variants) and voxel-driven
back-projection. One thread handles one detector pixel or one voxel.
"""

from numba import cuda

from ..constants import _FASTMATH_DECORATOR
from .ray import _trace_pixel, _backproject_voxel


# ============================================================================
# 3D Cone Beam Forward Projection Kernel
# ============================================================================

@_FASTMATH_DECORATOR
def _cone_forward_cuda_kernel(d_vol, d_out, d_ray, method, step):
    """Compute one cone-beam projection slice on the GPU.

    Parameters
    ----------
    d_vol : numba.cuda.cudadrv.devicearray.DeviceNDArray
        Input volume, shape (nz, ny, nx).
    d_out : numba.cuda.cudadrv.devicearray.DeviceNDArray
        Output projection slice, shape (nv, nu).
    d_ray : numba.cuda.cudadrv.devicearray.DeviceNDArray
        Packed ray geometry in voxel-index space, see ``_trace_pixel``.
    method : int
        Interpolation variant (``SIDDON``, ``JOSEPH`` or ``RAYCAST``).
    step : float
        Physical sampling step of the ray-cast variant.
    """
    iv, iu = cuda.grid(2)
    if iv >= d_out.shape[0] or iu >= d_out.shape[1]:
        return
    d_out[iv, iu] = _trace_pixel(d_vol, d_ray, iu, iv, method, step)


# ============================================================================
# 3D Cone Beam Back-projection Kernel
# ============================================================================

@_FASTMATH_DECORATOR
def _cone_backproject_cuda_kernel(d_proj, d_vol, d_mat, cone_weighting, d_footprint):
    """Accumulate the back-projection of one slice into the volume.

    Each thread owns one voxel, so the update needs no atomics.

    Parameters
    ----------
    d_proj : numba.cuda.cudadrv.devicearray.DeviceNDArray
        Projection slice, shape (nv, nu).
    d_vol : numba.cuda.cudadrv.devicearray.DeviceNDArray
        Volume to update in place, shape (nz, ny, nx).
    d_mat : numba.cuda.cudadrv.devicearray.DeviceNDArray
        3x4 matrix from voxel indices to homogeneous pixel indices.
    cone_weighting : bool
        Divide every sample by the squared homogeneous depth.
    d_footprint : numba.cuda.cudadrv.devicearray.DeviceNDArray
        Adjoint weighting parameters; a zero first entry disables them.
    """
    iz, iy, ix = cuda.grid(3)
    if iz >= d_vol.shape[0] or iy >= d_vol.shape[1] or ix >= d_vol.shape[2]:
        return
    d_vol[iz, iy, ix] += _backproject_voxel(d_proj, d_mat, ix, iy, iz, cone_weighting, d_footprint)
