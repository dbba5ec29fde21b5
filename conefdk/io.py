"""Reading and writing geometries, projections and images.

* Geometry: ``<RTKThreeDCircularGeometry version="2">`` XML, one
  ``<Projection>`` element per record. Values are written with ``repr`` so
  reading a written file reproduces every field exactly.
* Projections: TIFF files (``tifffile``), selected by a regular expression
  and optionally converted from raw intensities to line integrals.
* Images: HDF5 (``h5py``) with ``origin`` and ``spacing`` attributes, or TIFF
  with the placement stored as shaped metadata.
"""

import os
import re
import pathlib
import xml.etree.ElementTree as ET

import h5py
import numpy as np
import tifffile
import torch
from loguru import logger

from .exceptions import MalformedGeometryError
from .geometry import ConeBeamGeometry, ProjectionRecord
from .image import ImageGrid, centered_origin


# ============================================================================
# Geometry XML
# ============================================================================

_ROOT_TAG = "RTKThreeDCircularGeometry"
_VERSION = "2"

_XML_TAGS = {
    "sid": "SourceToIsocenterDistance",
    "sdd": "SourceToDetectorDistance",
    "gantry_angle": "GantryAngle",
    "proj_offset_x": "ProjectionOffsetX",
    "proj_offset_y": "ProjectionOffsetY",
    "out_of_plane_angle": "OutOfPlaneAngle",
    "in_plane_angle": "InPlaneAngle",
    "source_offset_x": "SourceOffsetX",
    "source_offset_y": "SourceOffsetY",
}
_REQUIRED = ("sid", "sdd", "gantry_angle")
_FIELD_BY_TAG = {tag: name for name, tag in _XML_TAGS.items()}


def _format_matrix(matrix):
    rows = (" ".join(repr(float(v)) for v in row) for row in matrix)
    return "\n" + "\n".join(rows) + "\n"


def write_geometry(geometry, path):
    """Write a geometry to an XML file.

    Fields that are constant over all projections are written once at the
    top level (and omitted entirely when they are zero and optional); the
    remaining fields and the projection matrix go into every
    ``<Projection>`` element.

    Parameters
    ----------
    geometry : ConeBeamGeometry
        Geometry to write.
    path : str or pathlib.Path
        Output file.
    """
    root = ET.Element(_ROOT_TAG, version=_VERSION)
    records = list(geometry)
    per_projection = []
    for name, tag in _XML_TAGS.items():
        values = {getattr(r, name) for r in records}
        if len(values) == 1:
            value = values.pop()
            if value != 0.0 or name in _REQUIRED:
                ET.SubElement(root, tag).text = repr(value)
        elif values:
            per_projection.append(name)

    for index, record in enumerate(records):
        element = ET.SubElement(root, "Projection")
        for name in per_projection:
            ET.SubElement(element, _XML_TAGS[name]).text = repr(getattr(record, name))
        ET.SubElement(element, "Matrix").text = _format_matrix(geometry.matrix(index))

    tree = ET.ElementTree(root)
    ET.indent(tree)
    tree.write(path, encoding="utf-8", xml_declaration=True)
    logger.info(f"Wrote geometry with {len(records)} projections to {path}")


def _read_fields(element, defaults):
    values = dict(defaults)
    for child in element:
        name = _FIELD_BY_TAG.get(child.tag)
        if name is None:
            continue
        try:
            values[name] = float(child.text)
        except (TypeError, ValueError):
            raise MalformedGeometryError(
                f"Invalid value {child.text!r} for <{child.tag}>"
            ) from None
    return values


def read_geometry(path):
    """Read a geometry XML file.

    Parameters
    ----------
    path : str or pathlib.Path
        Geometry file written by :func:`write_geometry` (or compatible).

    Returns
    -------
    ConeBeamGeometry
        The geometry.

    Raises
    ------
    MalformedGeometryError
        If the root element, the version or a field is invalid.
    """
    root = ET.parse(path).getroot()
    if root.tag != _ROOT_TAG:
        raise MalformedGeometryError(f"Unexpected root element <{root.tag}> in {path}")
    if root.get("version") != _VERSION:
        raise MalformedGeometryError(
            f"Unsupported geometry version {root.get('version')!r} in {path}"
        )
    defaults = {name: 0.0 for name in _XML_TAGS if name not in _REQUIRED}
    defaults = _read_fields(root, defaults)

    geometry = ConeBeamGeometry()
    for element in root.iter("Projection"):
        values = _read_fields(element, defaults)
        missing = [name for name in _REQUIRED if name not in values]
        if missing:
            raise MalformedGeometryError(f"Projection {len(geometry)} lacks {', '.join(missing)}")
        geometry.add_record(ProjectionRecord(**values))
    logger.info(f"Read geometry with {len(geometry)} projections from {path}")
    return geometry


# ============================================================================
# Projection Files
# ============================================================================

def find_projection_files(directory, regexp):
    """List the files of `directory` whose names fully match `regexp`.

    The list is sorted by name (lexicographic, not numeric).

    Returns
    -------
    list of pathlib.Path
        Matching files.

    Raises
    ------
    FileNotFoundError
        If `directory` does not exist or nothing matches.
    """
    pattern = re.compile(regexp)
    directory = pathlib.Path(directory)
    names = sorted(name for name in os.listdir(directory) if pattern.fullmatch(name))
    if not names:
        raise FileNotFoundError(f"No file in {directory} matches {regexp!r}")
    return [directory / name for name in names]


def intensity_to_line_integral(array, i0):
    """Convert raw intensities to line integrals ``-log(I / I0)``.

    Integer images of at most 16 bits go through a lookup table over all
    representable values; other images are converted directly. Intensities
    below 1 are clamped to 1.
    """
    array = np.asarray(array)
    if np.issubdtype(array.dtype, np.integer) and array.dtype.itemsize <= 2:
        n_values = int(np.iinfo(array.dtype).max) + 1
        lut = np.log(i0 / np.maximum(np.arange(n_values, dtype=np.float64), 1.0))
        return lut.astype(np.float32)[array.astype(np.int64)]
    return np.log(i0 / np.maximum(array.astype(np.float64), 1.0)).astype(np.float32)


def _read_tiff_stack(path):
    array = tifffile.imread(path)
    if array.ndim == 2:
        array = array[None]
    if array.ndim != 3:
        raise ValueError(f"{path}: expected 2D or 3D projection data, got shape {array.shape}")
    return array


def read_projections(files, spacing=(1.0, 1.0), origin=None, i0=None):
    """Read projection files into one projection stack.

    Parameters
    ----------
    files : sequence of path-like
        TIFF files, each holding one or several projections.
    spacing : sequence of float, optional
        Detector pixel spacing ``(du, dv)``.
    origin : sequence of float, optional
        Detector coordinates of pixel (0, 0); centred when omitted.
    i0 : float, optional
        Unattenuated intensity. When given, pixels are raw intensities and
        are converted to line integrals.

    Returns
    -------
    ImageGrid
        Stack of shape (n_views, nv, nu).
    """
    arrays = []
    for path in files:
        array = _read_tiff_stack(path)
        if i0 is not None:
            array = intensity_to_line_integral(array, i0)
        arrays.append(array.astype(np.float32))
    data = np.concatenate(arrays, axis=0)
    nu, nv = data.shape[2], data.shape[1]
    if origin is None:
        origin = centered_origin((nu, nv), spacing)
    logger.info(f"Read {data.shape[0]} projections of {nu}x{nv} pixels from {len(arrays)} file(s)")
    return ImageGrid(torch.from_numpy(np.ascontiguousarray(data)),
                     tuple(origin) + (0.0,), tuple(spacing) + (1.0,))


class ProjectionStreamReader:
    """Lazy reader returning one projection slice per file.

    Used by the streaming pipeline, which only references projections by
    file name and loads them when they are reconstructed.
    """

    def __init__(self, spacing=(1.0, 1.0), origin=None, i0=None):
        self.spacing = tuple(spacing)
        self.origin = origin
        self.i0 = i0

    def read(self, path):
        stack = read_projections([path], self.spacing, self.origin, self.i0)
        if stack.data.shape[0] != 1:
            raise ValueError(f"{path}: streaming expects one projection per file")
        return stack.slice(0)

    __call__ = read


# ============================================================================
# Images
# ============================================================================

def _is_tiff(path):
    return pathlib.Path(path).suffix.lower() in (".tif", ".tiff")


def write_image(image, path):
    """Write an image with its placement to HDF5 or TIFF (chosen by suffix)."""
    data = image.data.detach().cpu().numpy()
    if _is_tiff(path):
        tifffile.imwrite(path, data, metadata={"origin": list(image.origin),
                                               "spacing": list(image.spacing)})
    else:
        with h5py.File(path, "w") as f:
            f.create_dataset("data", data=data, compression="gzip")
            f.attrs["origin"] = np.asarray(image.origin)
            f.attrs["spacing"] = np.asarray(image.spacing)
    logger.info(f"Wrote {image.size} image to {path}")


def read_image(path):
    """Read an image written by :func:`write_image`.

    TIFF files without placement metadata get unit spacing and a centred
    origin.
    """
    if _is_tiff(path):
        with tifffile.TiffFile(path) as tif:
            data = tif.asarray()
            metadata = tif.shaped_metadata[0] if tif.shaped_metadata else {}
        size = tuple(reversed(data.shape))
        spacing = metadata.get("spacing", [1.0] * data.ndim)
        origin = metadata.get("origin", centered_origin(size, spacing))
    else:
        with h5py.File(path, "r") as f:
            data = f["data"][()]
            origin = f.attrs["origin"].tolist()
            spacing = f.attrs["spacing"].tolist()
    tensor = torch.from_numpy(np.ascontiguousarray(data, dtype=np.float32))
    return ImageGrid(tensor, origin, spacing)
