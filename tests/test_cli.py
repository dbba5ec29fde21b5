import tifffile

from conefdk.cli import main_fdk, main_fov, main_forward, main_inline, main_phantom
from conefdk.geometry import circular_geometry
from conefdk.image import constant_image
from conefdk.io import read_image, write_geometry, write_image


def _geometry_file(tmp_path, n_views=8):
    path = tmp_path / "geometry.xml"
    write_geometry(circular_geometry(n_views, sid=300.0, sdd=600.0), path)
    return str(path)


def _phantom_projections(tmp_path, geometry):
    proj_dir = tmp_path / "proj"
    proj_dir.mkdir()
    status = main_phantom(["-g", geometry, "-o", str(proj_dir / "proj.tif"),
                           "--phantomscale", "48", "--dimension", "32", "24", "--spacing", "8", "8"])
    assert status == 0
    return proj_dir


def test_phantom_then_fdk(tmp_path):
    geometry = _geometry_file(tmp_path)
    proj_dir = _phantom_projections(tmp_path, geometry)
    assert tifffile.imread(proj_dir / "proj.tif").shape == (8, 24, 32)

    output = tmp_path / "volume.h5"
    status = main_fdk(["-g", geometry, "-p", str(proj_dir), "-r", r"proj.*\.tif", "-o", str(output),
                       "--det-spacing", "8", "8", "--dimension", "16", "16", "16",
                       "--spacing", "8", "8", "8", "--hann", "0.8"])
    assert status == 0
    volume = read_image(output)
    assert volume.size == (16, 16, 16)
    assert volume.spacing == (8.0, 8.0, 8.0)
    assert volume.data.abs().max() > 0.0


def test_inline_with_one_file_per_projection(tmp_path):
    geometry_path = tmp_path / "geometry.xml"
    geometry = circular_geometry(4, sid=300.0, sdd=600.0)
    write_geometry(geometry, geometry_path)
    proj_dir = tmp_path / "proj"
    proj_dir.mkdir()
    for k in range(4):
        write_image(constant_image((32, 24), (8.0, 8.0), value=float(k)), proj_dir / f"proj{k}.tif")

    output = tmp_path / "volume.h5"
    status = main_inline(["-g", str(geometry_path), "-p", str(proj_dir), "-r", r"proj\d\.tif",
                          "-o", str(output), "--det-spacing", "8", "8",
                          "--dimension", "8", "8", "8", "--spacing", "8", "8", "8", "--delay", "0.1"])
    assert status == 0
    assert read_image(output).size == (8, 8, 8)


def test_forward_and_fov(tmp_path):
    geometry = _geometry_file(tmp_path)
    volume_path = tmp_path / "volume.h5"
    write_image(constant_image((16, 16, 16), (8.0, 8.0, 8.0), value=1.0), volume_path)

    proj_dir = tmp_path / "proj"
    proj_dir.mkdir()
    status = main_forward(["-g", geometry, "-i", str(volume_path), "-o", str(proj_dir / "forward.tif"),
                           "-m", "siddon", "--dimension", "32", "24", "--spacing", "8", "8"])
    assert status == 0
    assert tifffile.imread(proj_dir / "forward.tif").shape == (8, 24, 32)

    mask_path = tmp_path / "mask.h5"
    status = main_fov(["-g", geometry, "-p", str(proj_dir), "-r", r"forward\.tif", "-o", str(mask_path),
                       "--det-spacing", "8", "8", "--reconstruction", str(volume_path), "--mask"])
    assert status == 0
    mask = read_image(mask_path)
    assert set(mask.data.unique().tolist()) <= {0.0, 1.0}


def test_malformed_geometry_exits_with_error(tmp_path):
    path = tmp_path / "geometry.xml"
    path.write_text('<?xml version="1.0"?><Geometry version="2"/>')
    proj_dir = tmp_path / "proj"
    proj_dir.mkdir()
    status = main_phantom(["-g", str(path), "-o", str(proj_dir / "proj.tif")])
    assert status == 1
