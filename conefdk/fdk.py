"""Feldkamp-Davis-Kress (FDK) cone-beam reconstruction.

Every projection goes through the same chain: displaced-detector weighting,
optional Parker short-scan weighting, cosine and FDK scaling, ramp
filtering and finally a distance-weighted back-projection that is added to
the volume. :class:`FDKReconstructor` processes one projection at a time so
the same code serves batch reconstruction (:func:`reconstruct`) and the
inline streaming pipeline.
"""

import time

from loguru import logger

from .config import ReconstructionConfig
from .projectors import get_backend
from .ramp import RampFilter
from .weighting import displaced_detector_weighting, parker_weighting, fdk_weighting


# ============================================================================
# Per-projection Reconstruction
# ============================================================================

class FDKReconstructor:
    """Incremental FDK reconstruction over a (possibly growing) geometry.

    Parameters
    ----------
    geometry : ConeBeamGeometry
        Acquisition geometry. It may grow between calls; the angular
        weights are recomputed whenever its length changes.
    config : ReconstructionConfig, optional
        Ramp filter, weighting and hardware settings.
    backend : str or ProjectorBackend, optional
        Overrides ``config.hardware``.
    offset_range : tuple of float, optional
        ``(min, max)`` detector offset of the complete scan for the
        displaced-detector weights. Taken from `geometry` when omitted.
    short_scan : bool, optional
        Overrides ``config.short_scan``.
    """

    def __init__(self, geometry, config=None, backend=None, offset_range=None, short_scan=None):
        self.geometry = geometry
        self.config = config if config is not None else ReconstructionConfig()
        self.backend = get_backend(backend if backend is not None else self.config.hardware)
        ramp = self.config.ramp
        self.ramp = RampFilter(ramp.hann_cut, ramp.hann_cut_y, ramp.truncation_correction)
        self.offset_range = offset_range
        self.short_scan = self.config.short_scan if short_scan is None else short_scan
        self._gaps = None
        self._gaps_length = -1

    def angular_gap(self, index):
        """Angular weight of projection `index` in radians."""
        n = len(self.geometry)
        if self._gaps_length != n:
            self._gaps = self.geometry.angular_gaps()
            self._gaps_length = n
        return float(self._gaps[index])

    def filter_projection(self, projection, index):
        """Weight and ramp filter one projection slice.

        Parameters
        ----------
        projection : ImageGrid
            Raw line-integral projection slice.
        index : int
            Its index in the geometry.

        Returns
        -------
        ImageGrid
            Filtered slice, ready for back-projection.
        """
        projection = projection.to(self.backend.device)
        if self.config.displaced_detector:
            low, high = self.offset_range if self.offset_range is not None else (None, None)
            projection = displaced_detector_weighting(projection, self.geometry, index, low, high)
        if self.short_scan:
            projection = parker_weighting(projection, self.geometry, index)
        projection = fdk_weighting(projection, self.geometry, index, self.angular_gap(index))
        return self.ramp(projection)

    def reconstruct_projection(self, volume, projection, index):
        """Add the FDK contribution of one projection to `volume`.

        Parameters
        ----------
        volume : ImageGrid
            Volume accumulated so far; updated in place.
        projection : ImageGrid
            Raw line-integral projection slice.
        index : int
            Its index in the geometry.

        Returns
        -------
        ImageGrid
            The updated volume. Callers continue with the returned buffer.
        """
        filtered = self.filter_projection(projection, index)
        self.backend.back_project(filtered, volume, self.geometry, index, cone_weighting=True)
        return volume


# ============================================================================
# Batch Reconstruction
# ============================================================================

def reconstruct(geometry, projections, config=None, backend=None):
    """Reconstruct a volume from a complete projection stack.

    Parameters
    ----------
    geometry : ConeBeamGeometry
        Complete acquisition geometry.
    projections : ImageGrid
        Projection stack, data shape (n_views, nv, nu), line integrals.
    config : ReconstructionConfig, optional
        Volume, ramp, weighting and hardware settings.
    backend : str or ProjectorBackend, optional
        Overrides ``config.hardware``.

    Returns
    -------
    ImageGrid
        The reconstructed volume.

    Raises
    ------
    ValueError
        If the number of projections does not match the geometry.

    Examples
    --------
    >>> geometry = read_geometry("geometry.xml")
    >>> projections = read_projections(find_projection_files("proj", r".*\\.tif"))
    >>> volume = reconstruct(geometry, projections, load_config("fdk.yaml"))
    """
    config = config if config is not None else ReconstructionConfig()
    n_views = projections.data.shape[0]
    if n_views != len(geometry):
        raise ValueError(
            f"Projection stack holds {n_views} views but geometry has {len(geometry)}"
        )
    reconstructor = FDKReconstructor(geometry, config, backend)
    volume = config.volume.make_volume(reconstructor.backend.device)
    logger.info(
        f"FDK reconstruction of {n_views} projections into a {volume.size} volume "
        f"on {reconstructor.backend.name}"
    )
    start = time.perf_counter()
    for index in range(n_views):
        volume = reconstructor.reconstruct_projection(volume, projections.slice(index), index)
        logger.debug(f"Back-projected projection {index + 1}/{n_views}")
    logger.info(f"FDK reconstruction finished in {time.perf_counter() - start:.2f} s")
    return volume
