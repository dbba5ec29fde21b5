"""Cone-beam forward projection and back-projection.

The public functions in this module take :class:`~conefdk.image.ImageGrid`
volumes and projection slices plus a :class:`~conefdk.geometry.ConeBeamGeometry`
index, translate the geometry into voxel-index space and hand the work to a
compute backend. Two interchangeable backends are provided:

* :class:`CPUBackend` - multi-threaded Numba ``njit`` kernels.
* :class:`CUDABackend` - Numba CUDA kernels operating on CUDA tensors.

Both expose the same capabilities (``forward``, ``back_project`` and
``cost_profile``) and give the same results up to floating-point rounding.
"""

import enum
from typing import NamedTuple, Protocol

import numpy as np
import torch
from loguru import logger

from .constants import _GEOMETRY_DTYPE
from .exceptions import BackendUnavailableError, ConfigurationError
from .image import ImageGrid, stack_slices
from .kernels import (
    SIDDON, JOSEPH, RAYCAST,
    _cone_forward_cpu_kernel,
    _cone_backproject_cpu_kernel,
    _cone_forward_cuda_kernel,
    _cone_backproject_cuda_kernel,
)
from .utils import (
    DeviceManager,
    TorchCUDABridge,
    _get_numba_external_stream_for,
    _validate_memory_layout,
    _grid_2d,
    _grid_3d,
)


# ============================================================================
# Projection Methods
# ============================================================================

class ProjectionMethod(enum.Enum):
    """Interpolation variant of the ray-driven forward projector."""

    SIDDON = "siddon"
    JOSEPH = "joseph"
    RAYCAST = "raycast"

    @property
    def kernel_code(self):
        return {"siddon": SIDDON, "joseph": JOSEPH, "raycast": RAYCAST}[self.value]

    @classmethod
    def parse(cls, value):
        """Accept a member or its case-insensitive name.

        Raises
        ------
        ConfigurationError
            If `value` names no known method.
        """
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            choices = ", ".join(m.value for m in cls)
            raise ConfigurationError(
                f"Unknown projection method {value!r}; choose from {choices}"
            ) from None


class CostProfile(NamedTuple):
    """Rough work estimate of one forward projection and one back-projection."""

    backend: str
    rays: int
    samples_per_ray: int
    voxel_updates: int


# ============================================================================
# Geometry Translation
# ============================================================================

def _ray_parameters(volume, geometry, index, detector):
    """Pack the ray geometry of one projection in voxel-index space.

    Returns
    -------
    numpy.ndarray
        15 float64 values: source position, position of pixel (0, 0), step
        per pixel along ``u``, step per pixel along ``v`` and voxel spacing.
    """
    vol_origin = np.asarray(volume.origin, dtype=_GEOMETRY_DTYPE)
    vol_spacing = np.asarray(volume.spacing, dtype=_GEOMETRY_DTYPE)
    source = geometry.source_position(index)
    det_origin, u_axis, v_axis = geometry.detector_frame(index)
    first_pixel = det_origin + detector.origin[0] * u_axis + detector.origin[1] * v_axis
    return np.concatenate([
        (source - vol_origin) / vol_spacing,
        (first_pixel - vol_origin) / vol_spacing,
        detector.spacing[0] * u_axis / vol_spacing,
        detector.spacing[1] * v_axis / vol_spacing,
        vol_spacing,
    ]).astype(_GEOMETRY_DTYPE)


def _index_matrix(volume, geometry, index, projection):
    """Projection matrix from voxel indices to homogeneous pixel indices.

    The third row is unchanged by the index conversion, so the homogeneous
    coordinate is still the physical depth along the central ray.
    """
    voxel_to_world = np.eye(4)
    voxel_to_world[:3, :3] = np.diag(volume.spacing)
    voxel_to_world[:3, 3] = volume.origin
    du, dv = projection.spacing
    u0, v0 = projection.origin
    world_to_pixel = np.array([
        [1.0 / du, 0.0, -u0 / du],
        [0.0, 1.0 / dv, -v0 / dv],
        [0.0, 0.0, 1.0],
    ])
    return (world_to_pixel @ geometry.matrix(index) @ voxel_to_world).astype(_GEOMETRY_DTYPE)


def _footprint_parameters(volume, geometry, index, projection, adjoint):
    """Adjoint weighting parameters of one projection, all zero when disabled.

    A voxel of volume ``V`` at depth ``w`` is crossed by the rays of about
    ``V * sdd**2 / (du * dv * w**2 * cos(gamma))`` pixels per unit length,
    which is the weight that makes back-projection the transpose of the
    ray-driven forward projection.
    """
    params = np.zeros(5, dtype=_GEOMETRY_DTYPE)
    if not adjoint:
        return params
    rec = geometry.record(index)
    du, dv = projection.spacing
    u0, v0 = projection.origin
    params[0] = float(np.prod(volume.spacing)) * rec.sdd * rec.sdd / (du * dv)
    params[1] = (rec.source_offset_x - rec.proj_offset_x - u0) / du
    params[2] = (rec.source_offset_y - rec.proj_offset_y - v0) / dv
    params[3] = du / abs(rec.sdd)
    params[4] = dv / abs(rec.sdd)
    return params


def _raycast_step(volume):
    return 0.5 * min(volume.spacing)


def _check_detector(detector):
    if detector.ndim != 2:
        raise ValueError(
            f"Expected a 2D detector grid (nv, nu), got {detector.ndim}D grid"
        )


def _estimate_cost(name, volume, detector, method):
    method = ProjectionMethod.parse(method)
    nx, ny, nz = volume.size
    if method is ProjectionMethod.SIDDON:
        samples = nx + ny + nz
    elif method is ProjectionMethod.JOSEPH:
        samples = max(nx, ny, nz)
    else:
        extent = np.linalg.norm(np.asarray(volume.size) * np.asarray(volume.spacing))
        samples = int(np.ceil(extent / _raycast_step(volume)))
    nu, nv = detector.size
    return CostProfile(name, nu * nv, int(samples), nx * ny * nz)


# ============================================================================
# Backends
# ============================================================================

class ProjectorBackend(Protocol):
    """Capabilities every compute backend provides."""

    name: str
    device: torch.device

    def forward(self, volume, geometry, index, detector, method):
        ...

    def back_project(self, projection, volume, geometry, index, cone_weighting=True, adjoint=False):
        ...

    def cost_profile(self, volume, detector, method):
        ...


class CPUBackend:
    """Numba ``njit`` kernels parallelised over CPU cores."""

    name = "cpu"

    def __init__(self):
        self.device = torch.device("cpu")

    def forward(self, volume, geometry, index, detector, method):
        """Forward project `volume` onto the detector grid of projection `index`."""
        _check_detector(detector)
        method = ProjectionMethod.parse(method)
        vol = volume.data.detach().to(device=self.device, dtype=torch.float32).contiguous()
        _validate_memory_layout(vol, expected_order='ZYX')
        nu, nv = detector.size
        out = torch.zeros((nv, nu), dtype=torch.float32)
        ray = _ray_parameters(volume, geometry, index, detector)
        _cone_forward_cpu_kernel(
            TorchCUDABridge.tensor_to_host_array(vol),
            TorchCUDABridge.tensor_to_host_array(out),
            ray, method.kernel_code, _raycast_step(volume),
        )
        return ImageGrid(out, detector.origin, detector.spacing)

    def back_project(self, projection, volume, geometry, index, cone_weighting=True, adjoint=False):
        """Add the back-projection of `projection` to `volume` in place."""
        if volume.device.type != "cpu":
            raise ValueError("CPU backend requires a volume on the CPU")
        _validate_memory_layout(volume.data, expected_order='ZYX')
        proj = projection.data.detach().to(device=self.device, dtype=torch.float32).contiguous()
        _validate_memory_layout(proj, expected_order='VU')
        mat = _index_matrix(volume, geometry, index, projection)
        footprint = _footprint_parameters(volume, geometry, index, projection, adjoint)
        _cone_backproject_cpu_kernel(
            TorchCUDABridge.tensor_to_host_array(proj),
            TorchCUDABridge.tensor_to_host_array(volume.data),
            mat, bool(cone_weighting), footprint,
        )
        return volume

    def cost_profile(self, volume, detector, method):
        return _estimate_cost(self.name, volume, detector, method)


class CUDABackend:
    """Numba CUDA kernels launched on the current PyTorch stream.

    Raises
    ------
    BackendUnavailableError
        If no CUDA device is visible to PyTorch and Numba.
    """

    name = "cuda"

    def __init__(self, device=None):
        if not DeviceManager.cuda_available():
            raise BackendUnavailableError("CUDA backend requested but no CUDA device is available")
        self.device = torch.device(device if device is not None else "cuda")

    def forward(self, volume, geometry, index, detector, method):
        """Forward project `volume` onto the detector grid of projection `index`."""
        _check_detector(detector)
        method = ProjectionMethod.parse(method)
        vol = DeviceManager.ensure_device(volume.data.detach(), self.device)
        vol = vol.to(dtype=torch.float32).contiguous()
        _validate_memory_layout(vol, expected_order='ZYX')
        nu, nv = detector.size
        out = torch.zeros((nv, nu), dtype=torch.float32, device=self.device)
        ray = torch.as_tensor(_ray_parameters(volume, geometry, index, detector), device=self.device)

        grid, tpb = _grid_2d(nv, nu)
        numba_stream = _get_numba_external_stream_for(torch.cuda.current_stream(self.device))
        _cone_forward_cuda_kernel[grid, tpb, numba_stream](
            TorchCUDABridge.tensor_to_cuda_array(vol),
            TorchCUDABridge.tensor_to_cuda_array(out),
            TorchCUDABridge.tensor_to_cuda_array(ray),
            method.kernel_code, _raycast_step(volume),
        )
        return ImageGrid(out, detector.origin, detector.spacing)

    def back_project(self, projection, volume, geometry, index, cone_weighting=True, adjoint=False):
        """Add the back-projection of `projection` to `volume` in place."""
        if not volume.data.is_cuda:
            raise ValueError("CUDA backend requires a volume on a CUDA device")
        _validate_memory_layout(volume.data, expected_order='ZYX')
        proj = DeviceManager.ensure_device(projection.data.detach(), volume.device)
        proj = proj.to(dtype=torch.float32).contiguous()
        _validate_memory_layout(proj, expected_order='VU')
        mat = torch.as_tensor(_index_matrix(volume, geometry, index, projection), device=volume.device)
        footprint = torch.as_tensor(
            _footprint_parameters(volume, geometry, index, projection, adjoint), device=volume.device
        )

        nz, ny, nx = volume.data.shape
        grid, tpb = _grid_3d(nz, ny, nx)
        numba_stream = _get_numba_external_stream_for(torch.cuda.current_stream(volume.device))
        _cone_backproject_cuda_kernel[grid, tpb, numba_stream](
            TorchCUDABridge.tensor_to_cuda_array(proj),
            TorchCUDABridge.tensor_to_cuda_array(volume.data),
            TorchCUDABridge.tensor_to_cuda_array(mat),
            bool(cone_weighting),
            TorchCUDABridge.tensor_to_cuda_array(footprint),
        )
        return volume

    def cost_profile(self, volume, detector, method):
        return _estimate_cost(self.name, volume, detector, method)


_BACKENDS = {
    "cpu": CPUBackend,
    "cuda": CUDABackend,
}


def get_backend(name="cpu"):
    """Instantiate a compute backend by name.

    Parameters
    ----------
    name : str or ProjectorBackend, optional
        ``"cpu"`` (default) or ``"cuda"``. A backend instance is returned
        unchanged.

    Returns
    -------
    ProjectorBackend
        The backend.

    Raises
    ------
    BackendUnavailableError
        If the name is unknown or the hardware is missing.
    """
    if not isinstance(name, str):
        return name
    key = name.lower()
    if key not in _BACKENDS:
        raise BackendUnavailableError(
            f"Unknown backend {name!r}; choose from {', '.join(sorted(_BACKENDS))}"
        )
    backend = _BACKENDS[key]()
    logger.debug(f"Using {backend.name} projector backend on {backend.device}")
    return backend


def _backend_for(volume, backend):
    if backend is None:
        return get_backend("cuda" if volume.data.is_cuda else "cpu")
    return get_backend(backend)


# ============================================================================
# Public API
# ============================================================================

def forward_project(volume, geometry, index, detector, method=ProjectionMethod.JOSEPH, backend=None):
    """Compute one cone-beam projection of a volume.

    For every detector pixel the line integral is taken along the segment
    from the source to the pixel centre; a source inside the volume
    integrates from the source onward. Rays missing the volume give 0.

    Parameters
    ----------
    volume : ImageGrid
        3D volume, data shape (nz, ny, nx).
    geometry : ConeBeamGeometry
        Acquisition geometry.
    index : int
        Projection index in `geometry`.
    detector : ImageGrid
        2D grid describing the detector pixels; only its size, origin and
        spacing are used.
    method : ProjectionMethod or str, optional
        Interpolation variant (default Joseph).
    backend : str or ProjectorBackend, optional
        Compute backend. Defaults to the device of `volume`.

    Returns
    -------
    ImageGrid
        Projection slice with the placement of `detector`.

    Examples
    --------
    >>> volume = constant_image((64, 64, 64), (4.0, 4.0, 4.0), value=1.0)
    >>> detector = constant_image((128, 128), (4.0, 4.0))
    >>> geometry = circular_geometry(1, sid=500.0, sdd=1000.0)
    >>> proj = forward_project(volume, geometry, 0, detector, 'siddon')
    """
    return _backend_for(volume, backend).forward(volume, geometry, index, detector, method)


def back_project(projection, volume, geometry, index, cone_weighting=True, adjoint=False, backend=None):
    """Back-project one projection slice and add it to `volume`.

    Each voxel centre is projected with the geometry matrix, the slice is
    sampled bilinearly (no contribution outside its pixel centres) and the
    sample is divided by the squared homogeneous depth when
    `cone_weighting` is set.

    With `adjoint` every sample is weighted by the summed length of the
    pixel rays crossing the voxel instead, so that ``back_project`` is the
    transpose of :func:`forward_project`:
    ``<forward_project(x), y> ~= <x, back_project(y, adjoint=True)>``.

    Parameters
    ----------
    projection : ImageGrid
        2D projection slice, data shape (nv, nu).
    volume : ImageGrid
        3D volume updated in place.
    geometry : ConeBeamGeometry
        Acquisition geometry.
    index : int
        Projection index in `geometry`.
    cone_weighting : bool, optional
        Apply the ``1 / w**2`` distance weight (default True).
    adjoint : bool, optional
        Weight samples for the adjoint of forward projection; overrides
        `cone_weighting` (default False).
    backend : str or ProjectorBackend, optional
        Compute backend. Defaults to the device of `volume`.

    Returns
    -------
    ImageGrid
        `volume`, for chaining.
    """
    return _backend_for(volume, backend).back_project(
        projection, volume, geometry, index, cone_weighting, adjoint
    )


def forward_project_stack(volume, geometry, detector, method=ProjectionMethod.JOSEPH,
                          backend=None, indices=None):
    """Forward project every projection of `geometry` into a projection stack."""
    backend = _backend_for(volume, backend)
    indices = range(len(geometry)) if indices is None else indices
    logger.debug(f"Forward projecting {len(indices)} views with {backend.cost_profile(volume, detector, method)}")
    return stack_slices(backend.forward(volume, geometry, i, detector, method) for i in indices)


def back_project_stack(projections, volume, geometry, cone_weighting=True, adjoint=False, backend=None):
    """Back-project every slice of a projection stack into `volume`."""
    backend = _backend_for(volume, backend)
    n = projections.data.shape[0]
    if n != len(geometry):
        raise ValueError(f"projection stack holds {n} views but geometry has {len(geometry)}")
    for i in range(n):
        backend.back_project(projections.slice(i), volume, geometry, i, cone_weighting, adjoint)
    return volume
