"""Inline (streaming) FDK reconstruction during acquisition.

Projections arrive one at a time while the scanner is still rotating. The
FDK angular weight of a projection depends on both angular neighbours, so
projection ``n - 2`` is reconstructed as soon as projection ``n - 1`` has
arrived. The two boundary projections, 0 and ``N - 1``, are reconstructed
once the last projection is in and the full geometry is known. Every
projection is processed exactly once, so the final volume equals the batch
reconstruction of the same data.

Two threads cooperate through :class:`SharedAcquisitionState`:

* :class:`AcquisitionThread` replays a geometry and its projection files as
  a mock acquisition, publishing one projection at a time.
* :class:`ReconstructionThread` polls the shared state, registers every new
  projection under the lock and reconstructs outside of it.
"""

import enum
import threading
import time
from collections import deque
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Any, Optional

from loguru import logger

from .config import ReconstructionConfig
from .exceptions import ConeFDKError, MissedProjectionError
from .fdk import FDKReconstructor
from .geometry import ConeBeamGeometry, ProjectionRecord, circular_geometry
from .image import ImageGrid, constant_image


class PipelineState(enum.Enum):
    WAITING_FOR_PROJECTIONS = "waiting"
    RECONSTRUCTING = "reconstructing"
    FINALIZING = "finalizing"
    DONE = "done"


@dataclass(frozen=True)
class StreamedProjection:
    """One published projection as seen by the consumer.

    Attributes
    ----------
    record : ProjectionRecord
        Geometry of the projection.
    projection : ImageGrid or path-like
        The projection slice, or a file to read it from.
    count : int
        Number of projections published so far, this one included.
    last : bool
        True for the final projection of the scan.
    offset_range : tuple of float, optional
        ``(min, max)`` detector offset of the complete scan.
    """

    record: ProjectionRecord
    projection: Any
    count: int
    last: bool = False
    offset_range: Optional[tuple] = None


# ============================================================================
# Shared State
# ============================================================================

class SharedAcquisitionState:
    """The single projection record exchanged between producer and consumer.

    All fields are guarded by :attr:`lock`. The producer overwrites them in
    :meth:`publish`; the consumer takes a snapshot with :meth:`snapshot`
    while holding the lock itself.
    """

    def __init__(self):
        self.lock = threading.Lock()
        self.record = None
        self.projection = None
        self.published = 0
        self.last = False
        self.offset_range = None
        self.aborted = False
        self.finished = False

    def publish(self, record, projection, last=False, offset_range=None):
        with self.lock:
            self.record = record
            self.projection = projection
            self.last = last
            self.offset_range = offset_range
            self.published += 1

    def snapshot(self, consumed):
        """Return the current record if it is newer than `consumed` (lock held)."""
        if self.published == consumed or self.record is None:
            return None
        return StreamedProjection(self.record, self.projection, self.published,
                                  self.last, self.offset_range)

    def abort(self):
        with self.lock:
            self.aborted = True

    def finish(self):
        with self.lock:
            self.finished = True


# ============================================================================
# Streaming Reconstruction
# ============================================================================

class StreamingReconstruction:
    """Incremental FDK reconstruction fed one projection at a time.

    Parameters
    ----------
    config : ReconstructionConfig, optional
        Volume, ramp, weighting and hardware settings. Short-scan
        weighting needs the complete angular range and is ignored.
    writer : callable, optional
        Called with the final volume before the result is published.
    backend : str or ProjectorBackend, optional
        Overrides ``config.hardware``.
    reader : callable, optional
        Turns a projection reference (e.g. a file name) into an
        :class:`~conefdk.image.ImageGrid` slice.

    Examples
    --------
    >>> stream = StreamingReconstruction(config)
    >>> for i, item in enumerate(items):
    ...     stream.feed(item)
    >>> volume = stream.result()
    """

    def __init__(self, config=None, writer=None, backend=None, reader=None):
        self.config = config if config is not None else ReconstructionConfig()
        if self.config.short_scan:
            logger.warning("Short-scan weighting needs the full angular range; ignored in streaming mode")
        self.geometry = ConeBeamGeometry()
        self.reconstructor = FDKReconstructor(self.geometry, self.config, backend, short_scan=False)
        self.volume = self.config.volume.make_volume(self.reconstructor.backend.device)
        self.writer = writer
        self.reader = reader
        self.state = PipelineState.WAITING_FOR_PROJECTIONS
        self._first = None
        self._recent = deque(maxlen=2)
        self._pending = deque()
        self._future = Future()

    # ------------------------------------------------------------------
    # Consumer API
    # ------------------------------------------------------------------

    def register(self, item):
        """Append the geometry of a newly published projection.

        Raises
        ------
        MissedProjectionError
            If the geometry does not hold exactly ``item.count`` records
            afterwards.
        """
        if self.state is PipelineState.DONE:
            raise ConeFDKError("Streaming reconstruction already finished")
        self.geometry.add_record(item.record)
        n = len(self.geometry)
        if n != item.count:
            error = MissedProjectionError(item.count, n)
            self._fail(error)
            raise error
        if item.offset_range is not None:
            self.reconstructor.offset_range = tuple(item.offset_range)
        self._pending.append((n - 1, item.projection, item.last))

    def process(self):
        """Reconstruct everything the registered projections allow.

        Returns
        -------
        PipelineState
            The state after processing.
        """
        try:
            while self._pending:
                index, projection, last = self._pending.popleft()
                self._step(index, self._load(projection), last)
        except Exception as e:
            self._fail(e)
            raise
        return self.state

    def feed(self, item):
        """Register and process one projection; see :meth:`register`."""
        self.register(item)
        return self.process()

    def result(self, timeout=None):
        """Block until the final volume is available and return it."""
        return self._future.result(timeout)

    @property
    def future(self):
        return self._future

    def warm_up(self):
        """Compile the back-projection kernel before the first real projection."""
        geometry = circular_geometry(1, sid=100.0, sdd=200.0)
        volume = constant_image((2, 2, 2), (1.0, 1.0, 1.0), device=self.reconstructor.backend.device)
        projection = constant_image((2, 2), (1.0, 1.0), value=1.0)
        self.reconstructor.backend.back_project(projection, volume, geometry, 0)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _load(self, projection):
        if isinstance(projection, ImageGrid):
            return projection
        if self.reader is None:
            raise ValueError(f"No reader configured to load projection {projection!r}")
        return self.reader(projection)

    def _reconstruct(self, index, projection):
        self.volume = self.reconstructor.reconstruct_projection(self.volume, projection, index)
        logger.debug(f"Reconstructed projection {index}")

    def _step(self, index, projection, last):
        if index == 0:
            self._first = projection
        self._recent.append((index, projection))
        n = index + 1
        if n >= 3:
            self.state = PipelineState.RECONSTRUCTING
            self._reconstruct(*self._recent[0])
        if last:
            self._finalize(n)

    def _finalize(self, n):
        self.state = PipelineState.FINALIZING
        self._reconstruct(0, self._first)
        if n > 1:
            self._reconstruct(*self._recent[-1])
        if self.writer is not None:
            self.writer(self.volume)
        self.state = PipelineState.DONE
        self._first = None
        self._recent.clear()
        self._future.set_result(self.volume)
        logger.info(f"Streaming reconstruction of {n} projections done")

    def _fail(self, error):
        if not self._future.done():
            self._future.set_exception(error)


def streaming_reconstruct(config=None, writer=None, backend=None, reader=None):
    """Start a streaming reconstruction.

    Returns
    -------
    feed : callable
        Takes one :class:`StreamedProjection`.
    result : concurrent.futures.Future
        Resolves to the final volume.
    """
    stream = StreamingReconstruction(config, writer, backend, reader)
    return stream.feed, stream.future


# ============================================================================
# Threads
# ============================================================================

class AcquisitionThread(threading.Thread):
    """Mock acquisition replaying a geometry and its projections.

    Parameters
    ----------
    shared : SharedAcquisitionState
        State to publish into.
    geometry : ConeBeamGeometry
        Complete geometry of the scan.
    projections : sequence
        One projection slice or file name per geometry record.
    delay : float
        Seconds to wait after each published projection.
    """

    def __init__(self, shared, geometry, projections, delay):
        super().__init__(name="conefdk-acquisition", daemon=True)
        self.shared = shared
        self.geometry = geometry
        self.projections = list(projections)
        if len(self.projections) != len(geometry):
            raise ValueError(
                f"{len(self.projections)} projections for a geometry of {len(geometry)}"
            )
        self.delay = delay
        self.error = None

    def run(self):
        n = len(self.geometry)
        offset_range = self.geometry.offset_range()
        try:
            for i in range(n):
                if self.shared.aborted:
                    logger.warning(f"Acquisition aborted after {i} projections")
                    return
                self.shared.publish(self.geometry.record(i), self.projections[i],
                                    last=(i == n - 1), offset_range=offset_range)
                logger.debug(f"Acquired projection {i + 1}/{n}")
                time.sleep(self.delay)
        except Exception as e:
            self.error = e
            logger.error(f"Acquisition failed: {e}")
        finally:
            self.shared.finish()


class ReconstructionThread(threading.Thread):
    """Consumer polling the shared state and driving the reconstruction."""

    def __init__(self, shared, streaming, poll_interval):
        super().__init__(name="conefdk-reconstruction", daemon=True)
        self.shared = shared
        self.streaming = streaming
        self.poll_interval = poll_interval
        self.error = None

    def run(self):
        try:
            while self.streaming.state is not PipelineState.DONE:
                with self.shared.lock:
                    item = self.shared.snapshot(len(self.streaming.geometry))
                    if item is not None:
                        self.streaming.register(item)
                    finished = self.shared.finished
                if item is None:
                    if finished:
                        raise ConeFDKError("Acquisition stopped before the last projection")
                    time.sleep(self.poll_interval)
                    continue
                self.streaming.process()
        except Exception as e:
            self.error = e
            self.shared.abort()
            logger.error(f"Inline reconstruction failed: {e}")


def run_inline(geometry, projections, config=None, writer=None, reader=None, backend=None):
    """Reconstruct while a (mock) acquisition is running.

    Parameters
    ----------
    geometry : ConeBeamGeometry
        Complete geometry replayed by the acquisition thread.
    projections : sequence
        One projection slice or file name per geometry record.
    config : ReconstructionConfig, optional
        Reconstruction and inline timing settings.
    writer : callable, optional
        Receives the final volume.
    reader : callable, optional
        Loads a projection slice from a file name.
    backend : str or ProjectorBackend, optional
        Overrides ``config.hardware``.

    Returns
    -------
    ImageGrid
        The reconstructed volume.

    Raises
    ------
    MissedProjectionError
        If the consumer could not keep up with the acquisition.
    """
    config = config if config is not None else ReconstructionConfig()
    shared = SharedAcquisitionState()
    streaming = StreamingReconstruction(config, writer, backend, reader)
    streaming.warm_up()
    producer = AcquisitionThread(shared, geometry, projections, config.inline.acquisition_delay)
    consumer = ReconstructionThread(shared, streaming, config.inline.poll_interval)
    logger.info(f"Starting inline reconstruction of {len(geometry)} projections")
    start = time.perf_counter()
    consumer.start()
    producer.start()
    producer.join()
    consumer.join()
    if consumer.error is not None:
        raise consumer.error
    if producer.error is not None:
        raise producer.error
    logger.info(f"Inline reconstruction finished in {time.perf_counter() - start:.2f} s")
    return streaming.result()
