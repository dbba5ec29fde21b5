"""Global constants and configuration for the conefdk package.

This module defines core constants used throughout conefdk, including data
types, CUDA thread block configurations, numerical precision parameters and
the JIT decorators shared by the CPU and CUDA kernels.
"""

import numpy as np
from numba import cuda, njit

# ---------------------------------------------------------------------------
# Data Types and Numerical Constants
# ---------------------------------------------------------------------------

_DTYPE = np.float32
"""Default data type for image data (numpy.float32)."""

_GEOMETRY_DTYPE = np.float64
"""Data type for projection matrices and ray geometry (numpy.float64)."""

_INF = 1e30
"""Finite stand-in for infinity in the ray traversal (kernels run with fastmath)."""

_EPSILON = 1e-6
"""Small epsilon value for numerical comparisons to avoid division by zero."""

_SYMMETRY_TOLERANCE = 0.1
"""Fraction of a detector pixel below which a detector counts as centred."""

_FULL_SCAN_GAP_DEG = 20.0
"""Largest angular gap (degrees) for which a scan still counts as full."""

# ---------------------------------------------------------------------------
# CUDA Thread Block Configurations
# ---------------------------------------------------------------------------

# 2D blocks: 16x16 = 256 threads per block, one thread per detector pixel
_TPB_2D = (16, 16)
"""CUDA threads-per-block for detector-driven kernels: (16, 16) = 256 threads."""

# 3D blocks: 8x8x8 = 512 threads per block, one thread per voxel
_TPB_3D = (8, 8, 8)
"""CUDA threads-per-block for voxel-driven kernels: (8, 8, 8) = 512 threads."""

# ---------------------------------------------------------------------------
# JIT Decorators
# ---------------------------------------------------------------------------

# CUDA fastmath: the ray kernels tolerate the relaxed IEEE semantics
_FASTMATH_DECORATOR = cuda.jit(cache=True, fastmath=True)
"""Numba CUDA JIT decorator with fastmath enabled for projection kernels."""

_CPU_PARALLEL_DECORATOR = njit(cache=True, parallel=True, fastmath=True)
"""Numba CPU JIT decorator with prange parallelism for projection kernels."""
