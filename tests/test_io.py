import xml.etree.ElementTree as ET

import h5py
import numpy as np
import pytest
import tifffile
import torch

from conefdk.exceptions import MalformedGeometryError
from conefdk.geometry import ConeBeamGeometry, circular_geometry
from conefdk.image import constant_image
from conefdk.io import (
    ProjectionStreamReader,
    find_projection_files,
    intensity_to_line_integral,
    read_geometry,
    read_image,
    read_projections,
    write_geometry,
    write_image,
)


def _random_geometry(n, seed=0):
    rng = np.random.default_rng(seed)
    geometry = ConeBeamGeometry()
    for _ in range(n):
        geometry.add_projection(
            sid=rng.uniform(400.0, 600.0),
            sdd=rng.uniform(900.0, 1200.0),
            gantry_angle=rng.uniform(0.0, 360.0),
            proj_offset_x=rng.uniform(-20.0, 20.0),
            proj_offset_y=rng.uniform(-20.0, 20.0),
            out_of_plane_angle=rng.uniform(-5.0, 5.0),
            in_plane_angle=rng.uniform(-5.0, 5.0),
            source_offset_x=rng.uniform(-3.0, 3.0),
            source_offset_y=rng.uniform(-3.0, 3.0),
        )
    return geometry


# ============================================================================
# Geometry XML
# ============================================================================

class TestGeometryXML:

    @pytest.mark.parametrize("n", [1, 10, 100])
    def test_round_trip(self, tmp_path, n):
        geometry = _random_geometry(n)
        path = tmp_path / "geometry.xml"
        write_geometry(geometry, path)
        loaded = read_geometry(path)
        assert len(loaded) == n
        for name in ("sids", "sdds", "gantry_angles", "proj_offsets_x", "proj_offsets_y",
                     "out_of_plane_angles", "in_plane_angles", "source_offsets_x", "source_offsets_y"):
            np.testing.assert_allclose(getattr(loaded, name), getattr(geometry, name), rtol=0.0, atol=1e-10)
        for a, b in zip(loaded.matrices, geometry.matrices):
            np.testing.assert_allclose(a, b, rtol=0.0, atol=1e-10)

    def test_constant_fields_are_written_once(self, tmp_path):
        geometry = circular_geometry(5, sid=500.0, sdd=1000.0)
        path = tmp_path / "geometry.xml"
        write_geometry(geometry, path)
        root = ET.parse(path).getroot()
        assert root.tag == "RTKThreeDCircularGeometry"
        assert root.get("version") == "2"
        assert root.find("SourceToIsocenterDistance").text == "500.0"
        assert root.find("ProjectionOffsetX") is None
        projections = root.findall("Projection")
        assert len(projections) == 5
        assert projections[0].find("SourceToIsocenterDistance") is None
        assert projections[1].find("GantryAngle").text == "72.0"
        assert projections[0].find("Matrix") is not None
        loaded = read_geometry(path)
        assert list(loaded) == list(geometry)

    def test_constant_zero_angle(self, tmp_path):
        geometry = ConeBeamGeometry()
        geometry.add_projection(500.0, 1000.0, 0.0)
        geometry.add_projection(510.0, 1000.0, 0.0)
        path = tmp_path / "geometry.xml"
        write_geometry(geometry, path)
        assert list(read_geometry(path)) == list(geometry)

    def test_wrong_root(self, tmp_path):
        path = tmp_path / "geometry.xml"
        path.write_text('<?xml version="1.0"?><Geometry version="2"></Geometry>')
        with pytest.raises(MalformedGeometryError):
            read_geometry(path)

    def test_wrong_version(self, tmp_path):
        path = tmp_path / "geometry.xml"
        path.write_text('<?xml version="1.0"?><RTKThreeDCircularGeometry version="3"/>')
        with pytest.raises(MalformedGeometryError):
            read_geometry(path)

    def test_invalid_value(self, tmp_path):
        path = tmp_path / "geometry.xml"
        path.write_text(
            '<?xml version="1.0"?><RTKThreeDCircularGeometry version="2">'
            '<SourceToDetectorDistance>1000</SourceToDetectorDistance>'
            '<Projection><SourceToIsocenterDistance>abc</SourceToIsocenterDistance>'
            '<GantryAngle>0</GantryAngle></Projection>'
            '</RTKThreeDCircularGeometry>'
        )
        with pytest.raises(MalformedGeometryError):
            read_geometry(path)

    def test_missing_field(self, tmp_path):
        path = tmp_path / "geometry.xml"
        path.write_text(
            '<?xml version="1.0"?><RTKThreeDCircularGeometry version="2">'
            '<Projection><SourceToIsocenterDistance>500</SourceToIsocenterDistance>'
            '<GantryAngle>0</GantryAngle></Projection>'
            '</RTKThreeDCircularGeometry>'
        )
        with pytest.raises(MalformedGeometryError):
            read_geometry(path)


# ============================================================================
# Projections
# ============================================================================

class TestProjectionFiles:

    def test_find_projection_files(self, tmp_path):
        for name in ("proj_10.tif", "proj_2.tif", "notes.txt", "xproj_1.tif"):
            (tmp_path / name).write_bytes(b"")
        files = find_projection_files(tmp_path, r"proj_\d+\.tif")
        assert [f.name for f in files] == ["proj_10.tif", "proj_2.tif"]

    def test_no_match(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            find_projection_files(tmp_path, r".*\.tif")

    def test_intensity_conversion(self):
        counts = np.array([[1000, 500], [0, 1]], dtype=np.uint16)
        converted = intensity_to_line_integral(counts, 1000.0)
        expected = np.log(1000.0 / np.array([[1000.0, 500.0], [1.0, 1.0]]))
        np.testing.assert_allclose(converted, expected, rtol=1e-6)
        floats = intensity_to_line_integral(counts.astype(np.float32), 1000.0)
        np.testing.assert_allclose(floats, converted, rtol=1e-6)

    def test_read_projections(self, tmp_path):
        for k in range(3):
            tifffile.imwrite(tmp_path / f"p{k}.tif", np.full((6, 8), 100 * (k + 1), dtype=np.uint16))
        files = find_projection_files(tmp_path, r"p\d\.tif")
        stack = read_projections(files, spacing=(2.0, 3.0), i0=1000.0)
        assert stack.size == (8, 6, 3)
        assert stack.spacing == (2.0, 3.0, 1.0)
        assert stack.origin == (-7.0, -7.5, 0.0)
        np.testing.assert_allclose(stack.data[:, 0, 0].numpy(), np.log([10.0, 5.0, 1000.0 / 300.0]), rtol=1e-6)

    def test_read_multi_page_file(self, tmp_path):
        tifffile.imwrite(tmp_path / "stack.tif", np.ones((4, 5, 6), dtype=np.float32))
        stack = read_projections([tmp_path / "stack.tif"], origin=(0.0, 0.0))
        assert stack.data.shape == (4, 5, 6)
        assert stack.origin == (0.0, 0.0, 0.0)

    def test_stream_reader(self, tmp_path):
        tifffile.imwrite(tmp_path / "p.tif", np.full((6, 8), 2.5, dtype=np.float32))
        projection = ProjectionStreamReader(spacing=(2.0, 2.0))(tmp_path / "p.tif")
        assert projection.ndim == 2
        assert projection.size == (8, 6)
        assert torch.all(projection.data == 2.5)


# ============================================================================
# Images
# ============================================================================

class TestImages:

    @pytest.mark.parametrize("suffix", [".h5", ".tif"])
    def test_round_trip(self, tmp_path, suffix):
        generator = torch.Generator().manual_seed(1)
        image = constant_image((7, 6, 5), (1.5, 2.0, 2.5), origin=(-3.0, 4.0, 5.5))
        image = image.with_data(torch.rand(image.data.shape, generator=generator))
        path = tmp_path / f"volume{suffix}"
        write_image(image, path)
        loaded = read_image(path)
        assert loaded.size == image.size
        assert loaded.origin == image.origin
        assert loaded.spacing == image.spacing
        torch.testing.assert_close(loaded.data, image.data)

    def test_hdf5_layout(self, tmp_path):
        path = tmp_path / "volume.h5"
        write_image(constant_image((3, 2, 2), (1.0, 1.0, 1.0), value=1.0), path)
        with h5py.File(path, "r") as f:
            assert f["data"].shape == (2, 2, 3)
            assert f.attrs["spacing"].tolist() == [1.0, 1.0, 1.0]

    def test_plain_tiff_gets_default_placement(self, tmp_path):
        path = tmp_path / "plain.tif"
        tifffile.imwrite(path, np.zeros((3, 5), dtype=np.float32))
        image = read_image(path)
        assert image.spacing == (1.0, 1.0)
        assert image.origin == (-2.0, -1.0)
