"""Test configuration and fixtures."""

import math

import numpy as np
import pytest
import torch
from loguru import logger

from conefdk.geometry import circular_geometry
from conefdk.image import constant_image


requires_cuda = pytest.mark.skipif(not torch.cuda.is_available(), reason="CUDA not available")


@pytest.fixture
def fdk_geometry():
    """180 views over a full circle, magnification 2."""
    return circular_geometry(180, sid=600.0, sdd=1200.0)


@pytest.fixture
def small_geometry():
    """A few views for quick projector and streaming tests."""
    return circular_geometry(12, sid=300.0, sdd=600.0)


@pytest.fixture
def detector():
    """128x128 detector with 4 mm pixels, centred on the central ray."""
    return constant_image((128, 128), (4.0, 4.0))


@pytest.fixture
def small_detector():
    return constant_image((32, 24), (8.0, 8.0))


@pytest.fixture
def unit_volume():
    """64^3 volume of ones with 4 mm voxels, centred (origin -126)."""
    return constant_image((64, 64, 64), (4.0, 4.0, 4.0), value=1.0)


@pytest.fixture
def log_messages():
    """Collect loguru messages of level WARNING and above."""
    messages = []
    handler_id = logger.add(lambda message: messages.append(message.record["message"]), level="WARNING")
    yield messages
    logger.remove(handler_id)


def _image_quality(test, reference):
    """Mean absolute error and PSNR (peak 255) between two arrays."""
    test = np.asarray(test, dtype=np.float64)
    reference = np.asarray(reference, dtype=np.float64)
    diff = test - reference
    error_per_pixel = float(np.abs(diff).mean())
    mse = float((diff ** 2).mean())
    psnr = math.inf if mse == 0.0 else 20.0 * math.log10(255.0) - 10.0 * math.log10(mse)
    return error_per_pixel, psnr


@pytest.fixture
def image_quality():
    return _image_quality
