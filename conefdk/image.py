"""Sampled images with physical placement.

Volumes, projection slices and projection stacks are all :class:`ImageGrid`
instances: a float32 ``torch.Tensor`` plus the physical position of the
first sample and the sample spacing. Physical quantities are given in
``(x, y, z)`` order (``(u, v)`` and ``(u, v, k)`` on the detector) while the
tensor stores the reversed index order, e.g. ``(nz, ny, nx)`` for a volume.
"""

import torch


# ============================================================================
# Image Grid
# ============================================================================

class ImageGrid:
    """A float32 tensor sampled on a regular, axis-aligned physical grid.

    Parameters
    ----------
    data : torch.Tensor
        Sample values, stored in reversed axis order.
    origin : sequence of float
        Physical position of the first sample, one value per axis in
        ``(x, y, z)`` order.
    spacing : sequence of float
        Physical distance between neighbouring samples, ``(x, y, z)`` order.

    Raises
    ------
    ValueError
        If `origin` or `spacing` do not match the dimensionality of `data`,
        or a spacing is not strictly positive.
    """

    def __init__(self, data, origin, spacing):
        ndim = data.dim()
        origin = tuple(float(o) for o in origin)
        spacing = tuple(float(s) for s in spacing)
        if len(origin) != ndim or len(spacing) != ndim:
            raise ValueError(
                f"origin and spacing need {ndim} values for a {ndim}D image, "
                f"got {len(origin)} and {len(spacing)}"
            )
        if any(s <= 0.0 for s in spacing):
            raise ValueError(f"spacing must be strictly positive, got {spacing}")
        if data.dtype != torch.float32:
            data = data.to(torch.float32)
        self.data = data
        self.origin = origin
        self.spacing = spacing

    # ------------------------------------------------------------------
    # Shape and placement
    # ------------------------------------------------------------------

    @property
    def size(self):
        """Number of samples per axis in physical ``(x, y, z)`` order."""
        return tuple(reversed(self.data.shape))

    @property
    def ndim(self):
        return self.data.dim()

    @property
    def device(self):
        return self.data.device

    def coordinates(self, axis, dtype=torch.float64):
        """Physical coordinates of the samples along one physical axis.

        Parameters
        ----------
        axis : int
            Physical axis index (0 is ``x`` or ``u``).
        dtype : torch.dtype, optional
            Data type of the returned tensor (default float64).

        Returns
        -------
        torch.Tensor
            1D tensor of length ``size[axis]`` on the image device.
        """
        n = self.size[axis]
        index = torch.arange(n, dtype=dtype, device=self.device)
        return self.origin[axis] + index * self.spacing[axis]

    def last_position(self, axis):
        """Physical coordinate of the last sample along `axis`."""
        return self.origin[axis] + (self.size[axis] - 1) * self.spacing[axis]

    # ------------------------------------------------------------------
    # Construction helpers
    # ------------------------------------------------------------------

    def with_data(self, data):
        """Return a grid with the same placement and new sample values."""
        return ImageGrid(data, self.origin, self.spacing)

    def zeros_like(self):
        return self.with_data(torch.zeros_like(self.data))

    def clone(self):
        return self.with_data(self.data.clone())

    def to(self, device):
        return self.with_data(self.data.to(device))

    def slice(self, k):
        """Return projection `k` of a projection stack as a 2D grid.

        The returned slice shares memory with the stack.
        """
        if self.ndim != 3:
            raise ValueError("slice() requires a 3D projection stack")
        return ImageGrid(self.data[k], self.origin[:2], self.spacing[:2])

    def __repr__(self):
        return (
            f"ImageGrid(size={self.size}, origin={self.origin}, "
            f"spacing={self.spacing}, device={self.device})"
        )


# ============================================================================
# Factories
# ============================================================================

def centered_origin(size, spacing):
    """Origin that puts the centre of the grid at the physical origin.

    Examples
    --------
    >>> centered_origin((64, 64, 64), (4.0, 4.0, 4.0))
    (-126.0, -126.0, -126.0)
    """
    return tuple(-0.5 * (n - 1) * s for n, s in zip(size, spacing))


def constant_image(size, spacing, origin=None, value=0.0, device='cpu'):
    """Allocate an image filled with a constant value.

    Parameters
    ----------
    size : sequence of int
        Number of samples per axis in physical ``(x, y, z)`` order.
    spacing : sequence of float
        Sample spacing per axis.
    origin : sequence of float, optional
        Physical position of the first sample. Centred on the physical
        origin when omitted.
    value : float, optional
        Fill value (default 0).
    device : str or torch.device, optional
        Device of the data tensor (default 'cpu').

    Returns
    -------
    ImageGrid
        The allocated image.
    """
    size = tuple(int(n) for n in size)
    if any(n <= 0 for n in size):
        raise ValueError(f"size must be strictly positive, got {size}")
    if origin is None:
        origin = centered_origin(size, spacing)
    data = torch.full(tuple(reversed(size)), float(value), dtype=torch.float32, device=device)
    return ImageGrid(data, origin, spacing)


def stack_slices(slices):
    """Stack 2D projection slices sharing one detector grid into a 3D stack."""
    slices = list(slices)
    if not slices:
        raise ValueError("cannot stack an empty list of projections")
    first = slices[0]
    for s in slices[1:]:
        if s.size != first.size:
            raise ValueError(f"projection size mismatch: {s.size} != {first.size}")
    data = torch.stack([s.data for s in slices], dim=0).contiguous()
    return ImageGrid(data, first.origin + (0.0,), first.spacing + (1.0,))
