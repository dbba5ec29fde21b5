"""Band-limited ramp filtering of projection data.

The ramp filter is applied row by row (along detector ``u``) in the Fourier
domain with ``torch.fft``. Optional Hann windows apodise the kernel along
``u`` and, with a 2-D transform, along ``v``. Laterally truncated
projections can be extended by a tapered point-mirror before filtering to
reduce the cupping artefact at the detector edges.
"""

import math

import torch
from loguru import logger

from .image import ImageGrid


# ============================================================================
# Kernel Construction
# ============================================================================

def _fft_length(n):
    """Smallest power of two greater than or equal to ``2 * n``."""
    return 1 << max(1, int(math.ceil(math.log2(2 * n))))


def ramp_kernel_spatial(n_fft, spacing, dtype=torch.float64):
    """Sampled band-limited ramp filter, wrapped for a circular convolution.

    ``h(0) = 1 / (4 tau^2)``, ``h(n) = -1 / (n pi tau)^2`` for odd ``n`` and
    0 for even ``n``, scaled by the pixel spacing ``tau``.

    Parameters
    ----------
    n_fft : int
        Length of the transform.
    spacing : float
        Detector pixel spacing ``tau`` along ``u``.

    Returns
    -------
    torch.Tensor
        1D tensor of length `n_fft`; index ``k`` holds ``h(k)`` for
        ``k <= n_fft / 2`` and ``h(k - n_fft)`` above.
    """
    tau = float(spacing)
    k = torch.arange(n_fft, dtype=dtype)
    n = torch.minimum(k, n_fft - k)
    h = torch.zeros(n_fft, dtype=dtype)
    h[0] = 1.0 / (4.0 * tau * tau)
    odd = (n % 2) == 1
    h[odd] = -1.0 / (n[odd] * math.pi * tau) ** 2
    return h * tau


def hann_window(n_bins, cut_frequency, n_fft, dtype=torch.float64):
    """Hann window over frequency bins, zero beyond ``cut_frequency * Nyquist``.

    Parameters
    ----------
    n_bins : int
        Number of bins to return.
    cut_frequency : float
        Cut-off as a fraction of the Nyquist frequency, in ``(0, 1]``.
    n_fft : int
        Length of the transform the bins belong to; bin ``i`` represents
        frequency ``min(i, n_fft - i)``.

    Returns
    -------
    torch.Tensor
        Window values, length `n_bins`.
    """
    n_cut = max(1, int(round(cut_frequency * (n_fft // 2))))
    i = torch.arange(n_bins, dtype=dtype)
    freq = torch.minimum(i, n_fft - i)
    window = 0.5 * (1.0 + torch.cos(math.pi * freq / n_cut))
    return torch.where(freq < n_cut, window, torch.zeros_like(window))


def truncation_weights(n_pad, dtype=torch.float64):
    """Taper of the mirrored extension, ``sin((n - i) pi / (2 n - 2)) ** 0.75``."""
    if n_pad == 1:
        return torch.ones(1, dtype=dtype)
    i = torch.arange(n_pad, dtype=dtype)
    return torch.sin((n_pad - i) * math.pi / (2 * n_pad - 2)).clamp(min=0.0) ** 0.75


def pad_truncated(data, n_pad):
    """Extend every row by a tapered point-mirror around its edge values.

    The sample at distance ``i + 1`` outside the edge is
    ``w_i * (2 * edge - mirrored)`` where ``mirrored`` is the sample at
    distance ``i + 1`` inside the edge.

    Parameters
    ----------
    data : torch.Tensor
        Projection data, last axis is ``u``.
    n_pad : int
        Number of samples added on each side.

    Returns
    -------
    torch.Tensor
        Tensor with ``2 * n_pad`` more samples along the last axis.
    """
    if n_pad <= 0:
        return data
    nu = data.shape[-1]
    weights = truncation_weights(n_pad).to(device=data.device, dtype=data.dtype)
    offsets = torch.arange(1, n_pad + 1, device=data.device)
    left_idx = offsets.clamp(max=nu - 1)
    right_idx = (nu - 1 - offsets).clamp(min=0)
    left = weights * (2.0 * data[..., :1] - data[..., left_idx])
    right = weights * (2.0 * data[..., -1:] - data[..., right_idx])
    return torch.cat([left.flip(-1), data, right], dim=-1)


# ============================================================================
# Ramp Filter
# ============================================================================

class RampFilter:
    """Ramp filter with optional Hann windows and truncation correction.

    Parameters
    ----------
    hann_cut : float, optional
        Cut frequency of the Hann window along ``u`` as a fraction of
        Nyquist; 0 (default) disables the window.
    hann_cut_y : float, optional
        Cut frequency of the Hann window along ``v``; 0 (default) disables
        it and the filter stays one-dimensional.
    truncation_correction : float, optional
        Fraction of the detector width mirrored on each side before
        filtering; 0 (default) disables it.

    Examples
    --------
    >>> ramp = RampFilter(hann_cut=0.8, truncation_correction=0.1)
    >>> filtered = ramp(projection)
    """

    def __init__(self, hann_cut=0.0, hann_cut_y=0.0, truncation_correction=0.0):
        for name, value in (("hann_cut", hann_cut), ("hann_cut_y", hann_cut_y),
                            ("truncation_correction", truncation_correction)):
            if value < 0.0:
                raise ValueError(f"{name} must be non-negative, got {value}")
        self.hann_cut = float(hann_cut)
        self.hann_cut_y = float(hann_cut_y)
        self.truncation_correction = float(truncation_correction)
        self._kernel = None
        self._kernel_key = None

    def _frequency_kernel(self, n_fft_u, n_fft_v, spacing, device):
        key = (n_fft_u, n_fft_v, spacing, self.hann_cut, self.hann_cut_y, str(device))
        if self._kernel_key == key:
            return self._kernel
        logger.debug(f"Building ramp kernel for FFT size {n_fft_v}x{n_fft_u}, spacing {spacing}")
        kernel = torch.fft.rfft(ramp_kernel_spatial(n_fft_u, spacing)).real
        if self.hann_cut > 0.0:
            kernel = kernel * hann_window(kernel.shape[0], self.hann_cut, n_fft_u)
        if n_fft_v:
            kernel = hann_window(n_fft_v, self.hann_cut_y, n_fft_v)[:, None] * kernel[None, :]
        self._kernel = kernel.to(device=device, dtype=torch.float32)
        self._kernel_key = key
        return self._kernel

    def filter_tensor(self, data, spacing):
        """Ramp filter a tensor whose last axis is ``u`` (and second last ``v``).

        Parameters
        ----------
        data : torch.Tensor
            Projection data, shape (..., nv, nu).
        spacing : float
            Detector pixel spacing along ``u``.

        Returns
        -------
        torch.Tensor
            Filtered data, same shape as `data`.
        """
        data = data.to(torch.float32)
        nv, nu = data.shape[-2], data.shape[-1]
        n_pad = int(round(self.truncation_correction * nu))
        padded = pad_truncated(data, n_pad)
        n_fft_u = _fft_length(padded.shape[-1])

        if self.hann_cut_y > 0.0:
            n_fft_v = _fft_length(nv)
            kernel = self._frequency_kernel(n_fft_u, n_fft_v, spacing, data.device)
            spectrum = torch.fft.rfft2(padded, s=(n_fft_v, n_fft_u))
            filtered = torch.fft.irfft2(spectrum * kernel, s=(n_fft_v, n_fft_u))
            filtered = filtered[..., :nv, :]
        else:
            kernel = self._frequency_kernel(n_fft_u, 0, spacing, data.device)
            spectrum = torch.fft.rfft(padded, n=n_fft_u, dim=-1)
            filtered = torch.fft.irfft(spectrum * kernel, n=n_fft_u, dim=-1)
        return filtered[..., n_pad:n_pad + nu].contiguous()

    def apply(self, projection):
        """Ramp filter a projection slice or stack.

        Parameters
        ----------
        projection : ImageGrid
            Projection slice (nv, nu) or stack (k, nv, nu).

        Returns
        -------
        ImageGrid
            Filtered projection with the same placement.
        """
        return ImageGrid(
            self.filter_tensor(projection.data, projection.spacing[0]),
            projection.origin, projection.spacing,
        )

    __call__ = apply

    def __repr__(self):
        return (
            f"RampFilter(hann_cut={self.hann_cut}, hann_cut_y={self.hann_cut_y}, "
            f"truncation_correction={self.truncation_correction})"
        )
