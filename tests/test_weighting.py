import math

import pytest
import torch

from conefdk.geometry import ConeBeamGeometry, circular_geometry
from conefdk.image import constant_image
from conefdk.weighting import (
    displaced_detector_weighting,
    displaced_detector_weights,
    fdk_weighting,
    parker_weighting,
)


def _column(projection, u):
    return int(round((u - projection.origin[0]) / projection.spacing[0]))


# ============================================================================
# Displaced Detector
# ============================================================================

class TestDisplacedDetector:

    def test_weight_profile(self):
        l = torch.tensor([-80.0, -40.0, 0.0, 40.0, 80.0], dtype=torch.float64)
        weights = displaced_detector_weights(l, 40.0, 1000.0)
        torch.testing.assert_close(weights, torch.tensor([0.0, 0.0, 1.0, 2.0, 2.0], dtype=torch.float64))
        mirrored = displaced_detector_weights(l, 40.0, 1000.0, positive=False)
        torch.testing.assert_close(mirrored, weights.flip(0))

    def test_weights_are_bounded_and_complementary(self):
        l = torch.linspace(-50.0, 50.0, 101, dtype=torch.float64)
        weights = displaced_detector_weights(l, 50.0, 800.0)
        assert torch.all(weights >= 0.0) and torch.all(weights <= 2.0)
        # Opposite rays share the redundant band.
        torch.testing.assert_close(weights + weights.flip(0), torch.full_like(weights, 2.0))

    def test_centred_detector_is_unchanged(self):
        geometry = circular_geometry(4, sid=500.0, sdd=1000.0)
        projection = constant_image((61, 5), (4.0, 4.0), value=1.0)
        assert displaced_detector_weighting(projection, geometry, 0) is projection

    def test_positive_displacement(self):
        geometry = circular_geometry(4, sid=500.0, sdd=1000.0)
        projection = constant_image((61, 5), (4.0, 4.0), origin=(-40.0, -8.0), value=1.0)
        weighted = displaced_detector_weighting(projection, geometry, 0)
        assert weighted.size == (101, 5)
        assert weighted.origin == (-200.0, -8.0)
        row = weighted.data[0]
        assert torch.all(row[: _column(weighted, -40.0) + 1] == 0.0)
        assert row[_column(weighted, 0.0)].item() == pytest.approx(1.0)
        assert torch.all(row[_column(weighted, 40.0):] == 2.0)
        assert projection.size == (61, 5)

    def test_negative_displacement(self):
        geometry = circular_geometry(4, sid=500.0, sdd=1000.0)
        projection = constant_image((61, 5), (4.0, 4.0), origin=(-200.0, -8.0), value=1.0)
        weighted = displaced_detector_weighting(projection, geometry, 0)
        assert weighted.size == (101, 5)
        assert weighted.origin == (-200.0, -8.0)
        row = weighted.data[0]
        assert row[_column(weighted, -100.0)].item() == pytest.approx(2.0)
        assert row[_column(weighted, 0.0)].item() == pytest.approx(1.0)
        assert torch.all(row[_column(weighted, 40.0):] == 0.0)

    def test_offsets_of_the_whole_scan(self):
        geometry = ConeBeamGeometry()
        geometry.add_projection(500.0, 1000.0, 0.0, proj_offset_x=80.0)
        geometry.add_projection(500.0, 1000.0, 180.0, proj_offset_x=80.0)
        projection = constant_image((61, 5), (4.0, 4.0), value=1.0)
        # Coverage [-40, 200] in central-ray coordinates.
        weighted = displaced_detector_weighting(projection, geometry, 0)
        assert weighted.size == (101, 5)
        # An explicit symmetric range leaves the projection alone.
        assert displaced_detector_weighting(projection, geometry, 0, -80.0, 80.0) is projection

    def test_too_displaced(self):
        geometry = circular_geometry(2, sid=500.0, sdd=1000.0)
        projection = constant_image((61, 5), (4.0, 4.0), origin=(10.0, 0.0), value=1.0)
        with pytest.raises(ValueError):
            displaced_detector_weighting(projection, geometry, 0)


# ============================================================================
# Parker
# ============================================================================

class TestParker:

    @pytest.fixture
    def short_scan(self):
        return circular_geometry(111, sid=600.0, sdd=1200.0, arc=222.0)

    def test_full_scan_is_unchanged(self):
        geometry = circular_geometry(36, sid=600.0, sdd=1200.0)
        projection = constant_image((64, 4), (4.0, 4.0), value=1.0)
        assert parker_weighting(projection, geometry, 5) is projection

    def test_weights_along_the_scan(self, short_scan):
        projection = constant_image((64, 4), (4.0, 4.0), value=1.0)
        first = parker_weighting(projection, short_scan, 0).data
        middle = parker_weighting(projection, short_scan, 45).data
        last = parker_weighting(projection, short_scan, 110).data
        torch.testing.assert_close(first, torch.zeros_like(first))
        torch.testing.assert_close(middle, torch.full_like(middle, 2.0))
        torch.testing.assert_close(last, torch.zeros_like(last), atol=1e-6, rtol=0.0)
        for index in range(111):
            data = parker_weighting(projection, short_scan, index).data
            assert torch.all(data >= 0.0) and torch.all(data <= 2.0 + 1e-6)

    def test_redundant_rays_sum_to_two(self, short_scan):
        projection = constant_image((64, 4), (4.0, 4.0), value=1.0)
        # The central ray at beta is measured again, reversed, at beta + pi.
        a = parker_weighting(projection, short_scan, 5).data[0]
        b = parker_weighting(projection, short_scan, 5 + 90).data[0]
        centre = 31
        assert (a[centre] + b[centre + 1]).item() == pytest.approx(2.0, abs=0.05)

    def test_small_range_warns(self, log_messages):
        geometry = circular_geometry(92, sid=600.0, sdd=1200.0, arc=184.0)
        projection = constant_image((256, 4), (4.0, 4.0), value=1.0)
        parker_weighting(projection, geometry, 10)
        assert any("Short scan range too small" in message for message in log_messages)


# ============================================================================
# FDK Weights
# ============================================================================

class TestFDKWeighting:

    def test_centre_pixel_gets_the_scale(self):
        geometry = circular_geometry(180, sid=600.0, sdd=1200.0)
        projection = constant_image((5, 5), (4.0, 4.0), value=1.0)
        gap = 2.0 * math.pi / 180
        weighted = fdk_weighting(projection, geometry, 0, gap)
        scale = 0.5 * gap * 600.0 * 1200.0
        assert weighted.data[2, 2].item() == pytest.approx(scale, rel=1e-6)
        corner = 1200.0 / math.sqrt(1200.0 ** 2 + 8.0 ** 2 + 8.0 ** 2)
        assert weighted.data[0, 0].item() == pytest.approx(scale * corner, rel=1e-6)
        assert torch.all(projection.data == 1.0)

    def test_offsets_move_the_cosine_centre(self):
        geometry = ConeBeamGeometry()
        geometry.add_projection(600.0, 1200.0, 0.0, proj_offset_x=8.0)
        projection = constant_image((5, 5), (4.0, 4.0), value=1.0)
        weighted = fdk_weighting(projection, geometry, 0, 1.0).data
        # u + offset is zero at the column u = -8 (index 0).
        assert weighted[2, 0].item() == pytest.approx(weighted.max().item())
