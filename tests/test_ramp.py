import math

import numpy as np
import pytest
import torch

from conefdk.image import constant_image, ImageGrid
from conefdk.ramp import (
    RampFilter,
    _fft_length,
    hann_window,
    pad_truncated,
    ramp_kernel_spatial,
    truncation_weights,
)


def _impulse(width=64, height=4, position=32, spacing=2.0):
    data = torch.zeros(height, width)
    data[:, position] = 1.0
    return ImageGrid(data, (0.0, 0.0), (spacing, 1.0))


def test_fft_length():
    assert _fft_length(64) == 128
    assert _fft_length(65) == 256
    assert _fft_length(1) == 2


def test_spatial_kernel():
    tau = 2.0
    h = ramp_kernel_spatial(16, tau)
    assert h[0].item() == pytest.approx(1.0 / (4.0 * tau))
    assert h[1].item() == pytest.approx(-1.0 / (math.pi ** 2 * tau))
    assert h[2].item() == 0.0
    assert h[3].item() == pytest.approx(-1.0 / (9.0 * math.pi ** 2 * tau))
    assert h[15].item() == h[1].item()


def test_zero_projection_stays_zero():
    projection = constant_image((40, 10), (1.0, 1.0))
    filtered = RampFilter(hann_cut=0.5, truncation_correction=0.1)(projection)
    assert torch.all(filtered.data == 0.0)


def test_impulse_response():
    tau = 2.0
    filtered = RampFilter()(_impulse(spacing=tau))
    row = filtered.data[0].numpy()
    assert row[32] == pytest.approx(1.0 / (4.0 * tau), abs=1e-6)
    assert row[33] == pytest.approx(-1.0 / (math.pi ** 2 * tau), abs=1e-6)
    assert row[31] == pytest.approx(-1.0 / (math.pi ** 2 * tau), abs=1e-6)
    assert row[34] == pytest.approx(0.0, abs=1e-6)
    # Rows are filtered independently.
    np.testing.assert_allclose(filtered.data.numpy(), np.tile(row, (4, 1)), atol=1e-7)


def test_filter_keeps_placement():
    projection = constant_image((30, 20), (1.5, 2.5), origin=(3.0, -7.0), value=1.0)
    filtered = RampFilter()(projection)
    assert filtered.size == projection.size
    assert filtered.origin == projection.origin
    assert filtered.spacing == projection.spacing


def test_stack_filtering_matches_slices():
    generator = torch.Generator().manual_seed(0)
    stack = ImageGrid(torch.rand(3, 12, 50, generator=generator), (0.0, 0.0, 0.0), (1.0, 1.0, 1.0))
    ramp = RampFilter(hann_cut=0.7)
    filtered = ramp(stack)
    for k in range(3):
        torch.testing.assert_close(filtered.data[k], ramp(stack.slice(k)).data)


def test_hann_window():
    window = hann_window(65, 0.5, 128)
    assert window[0].item() == 1.0
    assert window[16].item() == pytest.approx(0.5)
    assert torch.all(window[32:] == 0.0)
    assert torch.all(window[1:32] <= 1.0)


def test_hann_window_lowers_the_peak():
    plain = RampFilter()(_impulse()).data[0, 32].item()
    smooth = RampFilter(hann_cut=0.5)(_impulse()).data[0, 32].item()
    assert smooth < plain


def test_hann_window_along_v():
    data = torch.zeros(16, 64)
    data[8, 32] = 1.0
    projection = ImageGrid(data, (0.0, 0.0), (1.0, 1.0))
    plain = RampFilter()(projection).data
    smooth = RampFilter(hann_cut_y=0.5)(projection).data
    assert smooth.shape == plain.shape
    # Without the v window the response stays on the impulse row.
    assert torch.all(plain[7] == 0.0)
    assert smooth[7].abs().max() > 0.0


def test_kernel_is_cached():
    ramp = RampFilter(hann_cut=0.8)
    ramp(_impulse())
    kernel = ramp._kernel
    ramp(_impulse())
    assert ramp._kernel is kernel
    ramp(_impulse(spacing=3.0))
    assert ramp._kernel is not kernel


def test_truncation_weights():
    weights = truncation_weights(6)
    assert weights.shape == (6,)
    assert torch.all(weights > 0.0) and torch.all(weights <= 1.0)
    assert weights[-1].item() == pytest.approx(math.sin(math.pi / 10.0) ** 0.75)
    assert truncation_weights(1).tolist() == [1.0]


def test_point_mirror_padding():
    data = torch.arange(10, dtype=torch.float64)[None, :]
    padded = pad_truncated(data, 3)[0]
    w = truncation_weights(3)
    assert padded.shape == (16,)
    torch.testing.assert_close(padded[3:13], data[0])
    torch.testing.assert_close(padded[:3], torch.stack([-3.0 * w[2], -2.0 * w[1], -1.0 * w[0]]))
    torch.testing.assert_close(padded[13:], torch.stack([10.0 * w[0], 11.0 * w[1], 12.0 * w[2]]))


def test_truncation_correction_reduces_edge_drop():
    # A truncated uniform slab: the filtered edges drop sharply without padding.
    projection = constant_image((64, 2), (1.0, 1.0), value=1.0)
    plain = RampFilter()(projection).data[0]
    padded = RampFilter(truncation_correction=0.25)(projection).data[0]
    assert padded.shape == plain.shape
    assert abs(padded[0].item()) < abs(plain[0].item())


def test_negative_parameters_are_rejected():
    with pytest.raises(ValueError):
        RampFilter(hann_cut=-0.1)
