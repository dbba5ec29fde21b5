import pytest
import torch

from conefdk.config import (
    DetectorConfig,
    RampConfig,
    ReconstructionConfig,
    VolumeConfig,
    config_from_dict,
    load_config,
)
from conefdk.exceptions import ConfigurationError


YAML = """
hardware: CPU
method: siddon
volume:
  size: [32, 32, 16]
  spacing: [2, 2, 4]
detector:
  spacing: [0.5, 0.5]
  i0: 65535
ramp:
  hann_cut: 0.8
  truncation_correction: 0.1
short_scan: true
inline:
  acquisition_delay: 0.05
"""


def test_load_yaml(tmp_path):
    path = tmp_path / "fdk.yaml"
    path.write_text(YAML)
    config = load_config(path)
    assert config.hardware == "cpu"
    assert config.method == "siddon"
    assert config.device == torch.device("cpu")
    assert config.volume.size == [32, 32, 16]
    assert config.volume.spacing == [2.0, 2.0, 4.0]
    assert config.volume.origin is None
    assert config.detector.i0 == 65535.0
    assert config.ramp.hann_cut == 0.8
    assert config.ramp.hann_cut_y == 0.0
    assert config.short_scan is True
    assert config.displaced_detector is True
    assert config.inline.acquisition_delay == 0.05
    assert config.inline.poll_interval == 0.001


def test_defaults():
    config = config_from_dict({})
    assert config == ReconstructionConfig()
    assert config.method == "joseph"
    assert config.short_scan is False


def test_save_and_reload(tmp_path):
    config = ReconstructionConfig(
        volume=VolumeConfig(size=[8, 8, 8], spacing=[1.0, 2.0, 3.0], origin=[0.0, 0.0, 0.0]),
        ramp=RampConfig(hann_cut=0.5),
        hardware="cpu",
    )
    path = tmp_path / "saved.yaml"
    config.save(path)
    assert load_config(path) == config


def test_make_volume():
    volume = VolumeConfig(size=[4, 3, 2], spacing=[1.0, 1.0, 2.0]).make_volume()
    assert volume.size == (4, 3, 2)
    assert volume.origin == (-1.5, -1.0, -1.0)
    assert torch.all(volume.data == 0.0)


@pytest.mark.parametrize("data", [
    {"ramp": {"hann_cut": 1.5}},
    {"ramp": {"truncation_correction": -0.1}},
    {"volume": {"size": [0, 10, 10]}},
    {"volume": {"spacing": [1.0, 1.0]}},
    {"detector": {"i0": 0.0}},
    {"hardware": "tpu"},
    {"method": "fourier"},
    {"inline": {"poll_interval": 0.0}},
    {"unknown_key": 1},
    {"volume": {"size": "large"}},
])
def test_invalid_configurations(data):
    with pytest.raises(ConfigurationError):
        config_from_dict(data)


def test_detector_config_validation():
    with pytest.raises(ConfigurationError):
        DetectorConfig(spacing=[1.0, -1.0])
