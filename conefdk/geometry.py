"""Circular cone-beam acquisition geometry.

This module holds :class:`ConeBeamGeometry`, the ordered list of projection
records of a (possibly still growing) acquisition, together with the 3x4
projection matrices derived from each record.

Conventions
-----------
The gantry rotates about the world ``y`` axis. At gantry angle 0 with no
offsets or tilts the source sits at ``(0, 0, sid)``, the detector plane is
``z = sid - sdd`` and the detector axes ``u`` and ``v`` are the world ``x``
and ``y`` axes. A projection matrix maps a homogeneous world point
``(x, y, z, 1)`` to ``(u * w, v * w, w)``; ``w`` is minus the depth of the
point along the central ray, measured from the source. Angles are given in
degrees, offsets and distances in the same physical unit as the images.
"""

import math
from dataclasses import dataclass, astuple, fields

import numpy as np

from .constants import _GEOMETRY_DTYPE, _FULL_SCAN_GAP_DEG
from .exceptions import MalformedGeometryError


# ============================================================================
# Projection Record
# ============================================================================

@dataclass(frozen=True)
class ProjectionRecord:
    """The nine scalars describing one projection of a circular scan."""

    sid: float
    sdd: float
    gantry_angle: float
    proj_offset_x: float = 0.0
    proj_offset_y: float = 0.0
    out_of_plane_angle: float = 0.0
    in_plane_angle: float = 0.0
    source_offset_x: float = 0.0
    source_offset_y: float = 0.0


_FIELDS = tuple(f.name for f in fields(ProjectionRecord))


def _validate_record(record):
    values = astuple(record)
    for name, value in zip(_FIELDS, values):
        if not math.isfinite(value):
            raise MalformedGeometryError(f"{name} must be finite, got {value!r}")
    if record.sid <= 0.0:
        raise MalformedGeometryError(f"sid must be positive, got {record.sid!r}")
    if record.sdd == 0.0:
        raise MalformedGeometryError("sdd must be non-zero")


# ============================================================================
# Matrix Construction
# ============================================================================

def rotation_matrix(gantry_angle, out_of_plane_angle=0.0, in_plane_angle=0.0):
    """Rotation from world coordinates into the frame of one projection.

    ``R = Rz(-in_plane) @ Rx(-out_of_plane) @ Ry(-gantry)`` (Euler ZXY): the
    out-of-plane tilt is applied in the rotating gantry frame.

    Parameters
    ----------
    gantry_angle, out_of_plane_angle, in_plane_angle : float
        Angles in degrees.

    Returns
    -------
    numpy.ndarray
        3x3 rotation matrix (float64).
    """
    ax = math.radians(-out_of_plane_angle)
    ay = math.radians(-gantry_angle)
    az = math.radians(-in_plane_angle)
    cx, sx = math.cos(ax), math.sin(ax)
    cy, sy = math.cos(ay), math.sin(ay)
    cz, sz = math.cos(az), math.sin(az)
    rx = np.array([[1.0, 0.0, 0.0], [0.0, cx, -sx], [0.0, sx, cx]])
    ry = np.array([[cy, 0.0, sy], [0.0, 1.0, 0.0], [-sy, 0.0, cy]])
    rz = np.array([[cz, -sz, 0.0], [sz, cz, 0.0], [0.0, 0.0, 1.0]])
    return rz @ rx @ ry


def projection_matrix(record):
    """Build the 3x4 projection matrix of one record.

    ``P = T2(sox - pox, soy - poy) @ M(sdd, sid) @ T3(-sox, -soy, 0) @ R``
    with ``M = [[-sdd, 0, 0, 0], [0, -sdd, 0, 0], [0, 0, 1, -sid]]``.

    Parameters
    ----------
    record : ProjectionRecord
        Validated projection record.

    Returns
    -------
    numpy.ndarray
        3x4 matrix (float64).
    """
    rot = np.eye(4)
    rot[:3, :3] = rotation_matrix(
        record.gantry_angle, record.out_of_plane_angle, record.in_plane_angle
    )
    source_shift = np.eye(4)
    source_shift[0, 3] = -record.source_offset_x
    source_shift[1, 3] = -record.source_offset_y
    magnification = np.array([
        [-record.sdd, 0.0, 0.0, 0.0],
        [0.0, -record.sdd, 0.0, 0.0],
        [0.0, 0.0, 1.0, -record.sid],
    ])
    detector_shift = np.eye(3)
    detector_shift[0, 2] = record.source_offset_x - record.proj_offset_x
    detector_shift[1, 2] = record.source_offset_y - record.proj_offset_y
    return detector_shift @ magnification @ source_shift @ rot


def _read_only(array):
    array.flags.writeable = False
    return array


# ============================================================================
# Geometry Container
# ============================================================================

class ConeBeamGeometry:
    """Ordered, append-only list of projection records.

    Records are added one at a time with :meth:`add_projection`, which also
    derives and caches the projection matrix. Nothing is ever removed or
    modified, so the geometry of a streaming acquisition can grow while
    earlier indices stay valid.

    Examples
    --------
    >>> geometry = ConeBeamGeometry()
    >>> geometry.add_projection(sid=600.0, sdd=1200.0, gantry_angle=0.0)
    0
    >>> len(geometry)
    1
    """

    def __init__(self):
        self._values = {name: [] for name in _FIELDS}
        self._matrices = []
        self._rotations = []
        self._array_cache = {}

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def add_projection(self, sid, sdd, gantry_angle, proj_offset_x=0.0,
                       proj_offset_y=0.0, out_of_plane_angle=0.0,
                       in_plane_angle=0.0, source_offset_x=0.0,
                       source_offset_y=0.0):
        """Append one projection and return its index.

        Parameters
        ----------
        sid : float
            Source-to-isocenter distance, strictly positive.
        sdd : float
            Source-to-detector distance, non-zero.
        gantry_angle : float
            Rotation about the world ``y`` axis, in degrees.
        proj_offset_x, proj_offset_y : float, optional
            Detector offsets in the detector plane.
        out_of_plane_angle, in_plane_angle : float, optional
            Detector tilts, in degrees.
        source_offset_x, source_offset_y : float, optional
            Source offsets perpendicular to the central ray.

        Returns
        -------
        int
            Index of the new projection.

        Raises
        ------
        MalformedGeometryError
            If a value is not finite, `sid` is not positive or `sdd` is zero.
        """
        record = ProjectionRecord(
            float(sid), float(sdd), float(gantry_angle),
            float(proj_offset_x), float(proj_offset_y),
            float(out_of_plane_angle), float(in_plane_angle),
            float(source_offset_x), float(source_offset_y),
        )
        return self.add_record(record)

    def add_record(self, record):
        """Append a :class:`ProjectionRecord` and return its index."""
        _validate_record(record)
        matrix = _read_only(projection_matrix(record))
        rotation = _read_only(rotation_matrix(
            record.gantry_angle, record.out_of_plane_angle, record.in_plane_angle
        ))
        for name, value in zip(_FIELDS, astuple(record)):
            self._values[name].append(value)
        self._matrices.append(matrix)
        self._rotations.append(rotation)
        self._array_cache.clear()
        return len(self._matrices) - 1

    def extend(self, records):
        for record in records:
            self.add_record(record)
        return self

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def _check_consistency(self):
        n = len(self._matrices)
        lengths = {len(v) for v in self._values.values()} | {n, len(self._rotations)}
        if len(lengths) != 1:
            raise MalformedGeometryError(
                f"inconsistent geometry: per-field lengths {sorted(lengths)}"
            )
        return n

    def __len__(self):
        return self._check_consistency()

    def __iter__(self):
        for i in range(len(self)):
            yield self.record(i)

    def _field(self, name):
        cached = self._array_cache.get(name)
        if cached is None:
            self._check_consistency()
            cached = _read_only(np.array(self._values[name], dtype=_GEOMETRY_DTYPE))
            self._array_cache[name] = cached
        return cached

    @property
    def sids(self):
        return self._field('sid')

    @property
    def sdds(self):
        return self._field('sdd')

    @property
    def gantry_angles(self):
        """Gantry angles in degrees."""
        return self._field('gantry_angle')

    @property
    def proj_offsets_x(self):
        return self._field('proj_offset_x')

    @property
    def proj_offsets_y(self):
        return self._field('proj_offset_y')

    @property
    def out_of_plane_angles(self):
        return self._field('out_of_plane_angle')

    @property
    def in_plane_angles(self):
        return self._field('in_plane_angle')

    @property
    def source_offsets_x(self):
        return self._field('source_offset_x')

    @property
    def source_offsets_y(self):
        return self._field('source_offset_y')

    @property
    def matrices(self):
        """Tuple of read-only 3x4 projection matrices."""
        self._check_consistency()
        return tuple(self._matrices)

    def matrix(self, index):
        return self._matrices[index]

    def rotation(self, index):
        return self._rotations[index]

    def record(self, index):
        """Return projection `index` as a :class:`ProjectionRecord`."""
        return ProjectionRecord(*(self._values[name][index] for name in _FIELDS))

    def copy(self):
        """Return an independent geometry holding the same records."""
        return ConeBeamGeometry().extend(self)

    # ------------------------------------------------------------------
    # Derived quantities
    # ------------------------------------------------------------------

    def source_position(self, index):
        """World position of the (offset-shifted) source of one projection."""
        rec = self.record(index)
        local = np.array([rec.source_offset_x, rec.source_offset_y, rec.sid])
        return self._rotations[index].T @ local

    def detector_frame(self, index):
        """Placement of the detector plane of one projection in world space.

        Returns
        -------
        origin : numpy.ndarray
            World position of detector coordinate ``(u, v) = (0, 0)``.
        u_axis, v_axis : numpy.ndarray
            World unit vectors along detector ``u`` and ``v``.
        """
        rec = self.record(index)
        rot_t = self._rotations[index].T
        origin = rot_t @ np.array([rec.proj_offset_x, rec.proj_offset_y, rec.sid - rec.sdd])
        return origin, rot_t[:, 0].copy(), rot_t[:, 1].copy()

    def project_point(self, index, point):
        """Project a world point onto the detector of one projection.

        Returns
        -------
        tuple of float
            Detector coordinates ``(u, v)`` and the homogeneous weight ``w``.
        """
        hom = self._matrices[index] @ np.array([point[0], point[1], point[2], 1.0])
        return float(hom[0] / hom[2]), float(hom[1] / hom[2]), float(hom[2])

    def offset_range(self):
        """Minimum and maximum detector offset along ``u`` over all projections."""
        offsets = self.proj_offsets_x
        if offsets.size == 0:
            return 0.0, 0.0
        return float(offsets.min()), float(offsets.max())

    def _sorted_circular_angles(self):
        angles = np.mod(np.radians(self.gantry_angles), 2.0 * np.pi)
        order = np.argsort(angles, kind='stable')
        return angles, order

    def _circular_steps(self, sorted_angles):
        n = sorted_angles.size
        steps = np.empty(n, dtype=_GEOMETRY_DTYPE)
        steps[:-1] = np.diff(sorted_angles)
        steps[-1] = sorted_angles[0] + 2.0 * np.pi - sorted_angles[-1]
        return steps

    def _largest_gap(self, steps):
        """Index of the short-scan gap in `steps`, or None for a full scan."""
        if steps.size < 3:
            return None
        largest = int(np.argmax(steps))
        median = float(np.median(steps))
        if steps[largest] > 3.0 * median and steps[largest] > math.radians(_FULL_SCAN_GAP_DEG):
            return largest
        return None

    def angular_gaps(self):
        """Angular weight of every projection, in radians.

        Each projection is weighted by half the angular distance between its
        two neighbours on the sorted circle of gantry angles. The single
        large gap of a short scan (or of a partially acquired scan) is
        replaced by the median step so that both ends get a normal weight.

        Returns
        -------
        numpy.ndarray
            One weight per projection, in acquisition order.
        """
        n = len(self)
        if n == 0:
            return np.zeros(0, dtype=_GEOMETRY_DTYPE)
        if n == 1:
            return np.full(1, 2.0 * np.pi, dtype=_GEOMETRY_DTYPE)
        angles, order = self._sorted_circular_angles()
        steps = self._circular_steps(angles[order])
        gap = self._largest_gap(steps)
        if gap is not None:
            steps[gap] = float(np.median(np.delete(steps, gap)))
        sorted_gaps = 0.5 * (steps + np.roll(steps, 1))
        gaps = np.empty(n, dtype=_GEOMETRY_DTYPE)
        gaps[order] = sorted_gaps
        return gaps

    def short_scan_range(self):
        """First and last gantry angle of a short scan, in radians.

        The first and last angles are the ones bordering the largest gap on
        the sorted circle.

        Returns
        -------
        tuple of float or None
            ``(first, last)`` with ``first`` in ``[0, 2*pi)`` and
            ``last >= first``, or None when the scan covers the full circle.
        """
        if len(self) < 3:
            return None
        angles, order = self._sorted_circular_angles()
        sorted_angles = angles[order]
        steps = self._circular_steps(sorted_angles)
        gap = self._largest_gap(steps)
        if gap is None:
            return None
        n = sorted_angles.size
        first = float(sorted_angles[(gap + 1) % n])
        last = float(sorted_angles[gap])
        if last < first:
            last += 2.0 * np.pi
        return first, last

    def __repr__(self):
        return f"ConeBeamGeometry(n_projections={len(self)})"


# ============================================================================
# Trajectory Generation
# ============================================================================

def circular_geometry(n_views, sid, sdd, first_angle=0.0, arc=360.0, **offsets):
    """Generate a circular orbit with equally spaced gantry angles.

    Parameters
    ----------
    n_views : int
        Number of projections.
    sid : float
        Source-to-isocenter distance.
    sdd : float
        Source-to-detector distance.
    first_angle : float, optional
        Gantry angle of the first projection in degrees (default 0).
    arc : float, optional
        Angular range covered in degrees (default 360). Angles are spaced by
        ``arc / n_views``, so a full circle does not repeat its first angle.
    **offsets
        Extra :class:`ProjectionRecord` fields applied to every projection.

    Returns
    -------
    ConeBeamGeometry
        The generated geometry.

    Examples
    --------
    >>> geometry = circular_geometry(180, sid=600.0, sdd=1200.0)
    >>> len(geometry)
    180
    """
    geometry = ConeBeamGeometry()
    step = arc / n_views
    for i in range(n_views):
        geometry.add_projection(sid, sdd, first_angle + i * step, **offsets)
    return geometry
