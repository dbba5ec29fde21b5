"""Numba kernels for cone-beam projection.

This subpackage contains the CPU (``njit``) and CUDA kernels for cone-beam
forward projection and back-projection, built on shared per-ray routines.
"""

from .ray import SIDDON, JOSEPH, RAYCAST

from .cpu import (
    _cone_forward_cpu_kernel,
    _cone_backproject_cpu_kernel,
)

from .cone_beam import (
    _cone_forward_cuda_kernel,
    _cone_backproject_cuda_kernel,
)

__all__ = [
    'SIDDON',
    'JOSEPH',
    'RAYCAST',
    '_cone_forward_cpu_kernel',
    '_cone_backproject_cpu_kernel',
    '_cone_forward_cuda_kernel',
    '_cone_backproject_cuda_kernel',
]
