"""Utility classes and helper functions for conefdk.

This module provides device management, the bridge between PyTorch tensors
and Numba arrays (CUDA and host), stream caching, memory layout validation
and CUDA grid computation.
"""

import math
import torch
from numba import cuda

from .constants import _TPB_2D, _TPB_3D


# ============================================================================
# Device Management Utilities
# ============================================================================

class DeviceManager:
    """Utilities for managing PyTorch tensor devices."""

    @staticmethod
    def ensure_device(tensor, device):
        """Ensure a tensor resides on a given device.

        Parameters
        ----------
        tensor : torch.Tensor
            Tensor to move.
        device : torch.device
            Desired device.

        Returns
        -------
        torch.Tensor
            Tensor on the specified device. Unchanged if already on it.
        """
        if hasattr(tensor, "to") and tensor.device != device:
            return tensor.to(device)
        return tensor

    @staticmethod
    def cuda_available():
        """Return True when both PyTorch and Numba see a CUDA device."""
        return torch.cuda.is_available() and cuda.is_available()


# ============================================================================
# PyTorch-Numba Bridge
# ============================================================================

class TorchCUDABridge:
    """Bridge between PyTorch tensors and Numba arrays."""

    @staticmethod
    def tensor_to_cuda_array(tensor):
        """Convert a PyTorch CUDA tensor to a Numba CUDA DeviceNDArray.

        Provides a zero-copy view of a detached PyTorch tensor as a Numba CUDA
        array. The returned array shares memory with the original tensor, so
        kernels writing into it update the tensor in place.

        Parameters
        ----------
        tensor : torch.Tensor
            PyTorch tensor on a CUDA device.

        Returns
        -------
        numba.cuda.cudadrv.devicearray.DeviceNDArray
            Numba CUDA array view sharing memory with `tensor`.

        Raises
        ------
        ValueError
            If `tensor` is not on a CUDA device.
        """
        if not tensor.is_cuda:
            raise ValueError("Tensor must be on CUDA device")
        return cuda.as_cuda_array(tensor.detach())

    @staticmethod
    def tensor_to_host_array(tensor):
        """Convert a contiguous PyTorch CPU tensor to a NumPy array view.

        Parameters
        ----------
        tensor : torch.Tensor
            PyTorch tensor on the CPU.

        Returns
        -------
        numpy.ndarray
            Array sharing memory with `tensor`.

        Raises
        ------
        ValueError
            If `tensor` lives on a CUDA device or is not contiguous.
        """
        if tensor.is_cuda:
            raise ValueError("Tensor must be on CPU device")
        if not tensor.is_contiguous():
            raise ValueError("Tensor must be contiguous to share memory with NumPy")
        return tensor.detach().numpy()


# ============================================================================
# Stream Management (cached external Numba stream)
# ============================================================================

_cached_stream_ptr = None
_cached_numba_stream = None


def _get_numba_external_stream_for(pt_stream=None):
    """Return a cached numba.cuda.external_stream for the current PyTorch CUDA stream.

    Caches by the underlying CUDA stream pointer to avoid repeated construction.

    Parameters
    ----------
    pt_stream : torch.cuda.Stream, optional
        PyTorch CUDA stream. If None, uses current stream.

    Returns
    -------
    numba.cuda.cudadrv.driver.Stream
        Numba external stream wrapper around PyTorch CUDA stream.
    """
    global _cached_stream_ptr, _cached_numba_stream
    if pt_stream is None:
        pt_stream = torch.cuda.current_stream()
    ptr = int(pt_stream.cuda_stream)
    if _cached_stream_ptr == ptr and _cached_numba_stream is not None:
        return _cached_numba_stream
    numba_stream = cuda.external_stream(pt_stream.cuda_stream)
    _cached_stream_ptr = ptr
    _cached_numba_stream = numba_stream
    return numba_stream


# ============================================================================
# Memory Layout Validation
# ============================================================================

_LAYOUT_NAMES = {
    'ZYX': ("(Depth, Height, Width)", "ensure your volume has shape (nz, ny, nx)"),
    'VU': ("(Rows, Columns)", "ensure your projection has shape (nv, nu)"),
    'KVU': ("(Views, Rows, Columns)", "ensure your projection stack has shape (n_views, nv, nu)"),
}


def _validate_memory_layout(tensor, expected_order='ZYX'):
    """Validate tensor dimensionality and memory layout before a kernel launch.

    Parameters
    ----------
    tensor : torch.Tensor
        Tensor to validate.
    expected_order : str, optional
        Expected axis order ('ZYX', 'VU' or 'KVU'). Default is 'ZYX'.

    Raises
    ------
    ValueError
        If the tensor has the wrong number of dimensions or is non-contiguous.
    """
    if expected_order not in _LAYOUT_NAMES:
        raise ValueError(f"Unsupported expected_order: {expected_order}")
    expected_str, fix_str = _LAYOUT_NAMES[expected_order]
    if tensor.dim() != len(expected_order):
        raise ValueError(
            f"Expected {len(expected_order)}D tensor {expected_str}, got "
            f"{tensor.dim()}D tensor of shape {tuple(tensor.shape)}. Please {fix_str}."
        )
    if not tensor.is_contiguous():
        raise ValueError(
            "Input tensor must be contiguous. Call .contiguous() before passing to "
            "projection functions to avoid memory duplication and ensure correct results."
        )


# ============================================================================
# CUDA Grid Computation
# ============================================================================

def _grid_2d(n1, n2, tpb=_TPB_2D):
    """Compute 2D CUDA grid and block dimensions.

    Parameters
    ----------
    n1 : int
        Number of elements along the first dimension (detector rows).
    n2 : int
        Number of elements along the second dimension (detector columns).
    tpb : tuple of int, optional
        Threads per block (default is `_TPB_2D`).

    Returns
    -------
    grid : tuple of int
        Blocks count per axis.
    tpb : tuple of int
        Threads per block per axis.

    Examples
    --------
    >>> grid, tpb = _grid_2d(180, 256)
    >>> grid
    (12, 16)
    """
    return (math.ceil(n1 / tpb[0]), math.ceil(n2 / tpb[1])), tpb


def _grid_3d(n1, n2, n3, tpb=_TPB_3D):
    """Compute 3D CUDA grid and block dimensions.

    Parameters
    ----------
    n1 : int
        Number of voxels along the first stored axis (z).
    n2 : int
        Number of voxels along the second stored axis (y).
    n3 : int
        Number of voxels along the third stored axis (x).
    tpb : tuple of int, optional
        Threads per block (default is `_TPB_3D`).

    Returns
    -------
    grid : tuple of int
        Blocks count per axis.
    tpb : tuple of int
        Threads per block per axis.

    Examples
    --------
    >>> grid, tpb = _grid_3d(64, 256, 256)
    >>> grid
    (8, 32, 32)
    """
    return (
        math.ceil(n1 / tpb[0]),
        math.ceil(n2 / tpb[1]),
        math.ceil(n3 / tpb[2]),
    ), tpb
