# conefdk/__init__.py
"""conefdk - Cone-beam FDK reconstruction with inline streaming.

Feldkamp-Davis-Kress reconstruction for circular cone-beam CT, built on
PyTorch tensors and Numba CPU/CUDA kernels, with a streaming mode that
reconstructs while projections are still being acquired.
"""

from .exceptions import (
    ConeFDKError,
    MalformedGeometryError,
    BackendUnavailableError,
    MissedProjectionError,
    ConfigurationError,
)

from .image import ImageGrid, constant_image, centered_origin, stack_slices

from .geometry import (
    ConeBeamGeometry,
    ProjectionRecord,
    circular_geometry,
)

from .projectors import (
    ProjectionMethod,
    CPUBackend,
    CUDABackend,
    get_backend,
    forward_project,
    back_project,
    forward_project_stack,
    back_project_stack,
)

from .ramp import RampFilter
from .weighting import displaced_detector_weighting, parker_weighting, fdk_weighting
from .config import ReconstructionConfig, load_config
from .fdk import FDKReconstructor, reconstruct
from .inline import (
    PipelineState,
    StreamedProjection,
    StreamingReconstruction,
    streaming_reconstruct,
    run_inline,
)

__version__ = '1.0.0'

__all__ = [
    'ConeFDKError',
    'MalformedGeometryError',
    'BackendUnavailableError',
    'MissedProjectionError',
    'ConfigurationError',
    'ImageGrid',
    'constant_image',
    'centered_origin',
    'stack_slices',
    'ConeBeamGeometry',
    'ProjectionRecord',
    'circular_geometry',
    'ProjectionMethod',
    'CPUBackend',
    'CUDABackend',
    'get_backend',
    'forward_project',
    'back_project',
    'forward_project_stack',
    'back_project_stack',
    'RampFilter',
    'displaced_detector_weighting',
    'parker_weighting',
    'fdk_weighting',
    'ReconstructionConfig',
    'load_config',
    'FDKReconstructor',
    'reconstruct',
    'PipelineState',
    'StreamedProjection',
    'StreamingReconstruction',
    'streaming_reconstruct',
    'run_inline',
]
