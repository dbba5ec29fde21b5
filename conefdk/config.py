"""Reconstruction settings loaded from YAML files.

Every section is a dataclass validated in ``__post_init__``; invalid values
raise :class:`~conefdk.exceptions.ConfigurationError`.
"""

from dataclasses import asdict, dataclass, field
from typing import Optional

import torch
import yaml
from dacite import Config as DaciteConfig
from dacite import from_dict
from dacite.exceptions import DaciteError
from loguru import logger

from conefdk.exceptions import ConfigurationError
from conefdk.image import constant_image

_HARDWARE = ("cpu", "cuda")
_METHODS = ("siddon", "joseph", "raycast")


@dataclass
class VolumeConfig:
    """Reconstructed grid: voxel counts and spacing along x, y, z; centred when `origin` is None."""

    size: list[int] | tuple[int, int, int] = field(default_factory=lambda: [256, 256, 256])
    spacing: list[float] | tuple[float, float, float] = field(default_factory=lambda: [1.0, 1.0, 1.0])
    origin: Optional[list[float] | tuple[float, float, float]] = None

    def __post_init__(self):
        if len(self.size) != 3 or any(int(n) <= 0 for n in self.size):
            raise ConfigurationError(f"Volume size {self.size} must be three positive integers")
        if len(self.spacing) != 3 or any(s <= 0 for s in self.spacing):
            raise ConfigurationError(f"Volume spacing {self.spacing} must be three positive values")
        if self.origin is not None and len(self.origin) != 3:
            raise ConfigurationError(f"Volume origin {self.origin} must have three values")

    def make_volume(self, device="cpu"):
        """Allocate the zero volume described by this configuration."""
        return constant_image(self.size, self.spacing, self.origin, 0.0, device)


@dataclass
class DetectorConfig:
    spacing: list[float] | tuple[float, float] = field(default_factory=lambda: [1.0, 1.0])
    origin: Optional[list[float] | tuple[float, float]] = None
    i0: Optional[float] = None

    def __post_init__(self):
        if len(self.spacing) != 2 or any(s <= 0 for s in self.spacing):
            raise ConfigurationError(f"Detector spacing {self.spacing} must be two positive values")
        if self.origin is not None and len(self.origin) != 2:
            raise ConfigurationError(f"Detector origin {self.origin} must have two values")
        if self.i0 is not None and self.i0 <= 0:
            raise ConfigurationError("i0 must be greater than 0")


@dataclass
class RampConfig:
    """Ramp filter options; Hann cut-offs are fractions of the Nyquist frequency, 0 disables the window."""

    hann_cut: float = 0.0
    hann_cut_y: float = 0.0
    truncation_correction: float = 0.0

    def __post_init__(self):
        for name in ("hann_cut", "hann_cut_y"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ConfigurationError(f"{name}={value} must be in [0, 1] (fraction of Nyquist)")
        if self.truncation_correction < 0.0:
            raise ConfigurationError("truncation_correction must be non-negative")


@dataclass
class InlineConfig:
    acquisition_delay: float = 0.2
    poll_interval: float = 0.001

    def __post_init__(self):
        if self.acquisition_delay < 0.0:
            raise ConfigurationError("acquisition_delay must be non-negative")
        if self.poll_interval <= 0.0:
            raise ConfigurationError("poll_interval must be greater than 0")


@dataclass
class ReconstructionConfig:
    """All settings of one FDK reconstruction.

    Attributes
    ----------
    method : str
        Forward projector used by the command line tools (``siddon``,
        ``joseph`` or ``raycast``).
    hardware : str
        ``cpu`` or ``cuda``.
    displaced_detector : bool
        Apply displaced-detector weighting when the detector is off-centre.
    short_scan : bool
        Apply Parker weighting (batch reconstruction only).
    """

    volume: VolumeConfig = field(default_factory=VolumeConfig)
    detector: DetectorConfig = field(default_factory=DetectorConfig)
    ramp: RampConfig = field(default_factory=RampConfig)
    inline: InlineConfig = field(default_factory=InlineConfig)
    method: str = "joseph"
    hardware: str = "cpu"
    displaced_detector: bool = True
    short_scan: bool = False

    def __post_init__(self):
        self.method = self.method.lower()
        self.hardware = self.hardware.lower()
        if self.method not in _METHODS:
            raise ConfigurationError(f"Projection method {self.method} is not one of {_METHODS}")
        if self.hardware not in _HARDWARE:
            raise ConfigurationError(f"Hardware {self.hardware} is not one of {_HARDWARE}")

    @property
    def device(self):
        """Torch device matching `hardware`."""
        return torch.device(self.hardware)

    def save(self, path):
        """Write the configuration to a YAML file."""
        with open(path, "w") as f:
            yaml.dump(asdict(self), f, default_flow_style=None)


def config_from_dict(data):
    """Build a `ReconstructionConfig` from a (possibly partial) dictionary.

    Parameters
    ----------
    data : dict or None
        Nested dictionary, e.g. the content of a YAML file.

    Returns
    -------
    ReconstructionConfig
        The validated configuration.

    Raises
    ------
    ConfigurationError
        On unknown keys, wrong types or invalid values.
    """
    try:
        return from_dict(ReconstructionConfig, data or {}, config=DaciteConfig(strict=True, type_hooks={float: float}))
    except DaciteError as e:
        raise ConfigurationError(str(e)) from e


def load_config(path):
    """Load a reconstruction configuration from a YAML file.

    Parameters
    ----------
    path : str or pathlib.Path
        Path to the YAML file.

    Returns
    -------
    ReconstructionConfig
        The validated configuration.
    """
    with open(path, "r") as f:
        data = yaml.safe_load(f)
    config = config_from_dict(data)
    logger.info(f"Loaded configuration from {path}")
    return config
