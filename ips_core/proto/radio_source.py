"""
Radio Source Schema.

A radio source is a transmitter (WiFi access point, BLE beacon, UWB anchor)
identified by an ID. Located sources carry a known position and, optionally,
the position covariance. Sources with power carry the transmitted power and
path loss exponent needed to turn an RSSI reading into a pseudo-range.

Sources are immutable and owned by the caller; estimators only reference them.
"""

from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

import numpy as np

from ips_core.config import PATH_LOSS_DEFAULTS
from ips_core.errors import InvalidArgumentError


@dataclass(frozen=True, eq=False)
class RadioSource:
    """
    Radio source of (optionally) known location.

    Attributes:
        source_id: Unique source identifier (BSSID, beacon ID, anchor ID)
        frequency_hz: Carrier frequency (Hz)
        position: Known position (2 or 3 coordinates, meters)
        position_covariance: Position covariance (d x d, m^2)
        transmitted_power_dbm: Transmitted power (dBm)
        transmitted_power_std_db: Transmitted power standard deviation (dB)
        path_loss_exponent: Path loss exponent (2.0 in free space)
        path_loss_exponent_std: Path loss exponent standard deviation

    Notes:
        - Two sources are equal when their IDs are equal
        - Frequency must be positive; standard deviations non-negative
    """

    source_id: str
    frequency_hz: float = PATH_LOSS_DEFAULTS["frequency_hz"]
    position: Optional[Tuple[float, ...]] = None
    position_covariance: Optional[np.ndarray] = None
    transmitted_power_dbm: Optional[float] = None
    transmitted_power_std_db: Optional[float] = None
    path_loss_exponent: Optional[float] = None
    path_loss_exponent_std: Optional[float] = None

    def __post_init__(self):
        """Validate and normalize source fields."""
        if self.frequency_hz <= 0:
            raise InvalidArgumentError(f"Frequency must be positive: {self.frequency_hz}")

        if self.position is not None:
            position = tuple(float(c) for c in self.position)
            if len(position) not in (2, 3):
                raise InvalidArgumentError(
                    f"Position must have 2 or 3 coordinates: {self.position}"
                )
            object.__setattr__(self, 'position', position)

        if self.position_covariance is not None:
            if self.position is None:
                raise InvalidArgumentError("Position covariance requires a position")
            cov = np.array(self.position_covariance, dtype=float)
            d = len(self.position)
            if cov.shape != (d, d):
                raise InvalidArgumentError(
                    f"Position covariance must be {d}x{d}: got {cov.shape}"
                )
            cov.setflags(write=False)
            object.__setattr__(self, 'position_covariance', cov)

        for name in ('transmitted_power_std_db', 'path_loss_exponent_std'):
            value = getattr(self, name)
            if value is not None and value < 0:
                raise InvalidArgumentError(f"{name} cannot be negative: {value}")

        if self.path_loss_exponent is not None and self.path_loss_exponent <= 0:
            raise InvalidArgumentError(
                f"Path loss exponent must be positive: {self.path_loss_exponent}"
            )

    def __eq__(self, other) -> bool:
        if not isinstance(other, RadioSource):
            return NotImplemented
        return self.source_id == other.source_id

    def __hash__(self) -> int:
        return hash(self.source_id)

    @property
    def is_located(self) -> bool:
        """Check if source position is known."""
        return self.position is not None

    @property
    def has_power(self) -> bool:
        """Check if transmitted power is known."""
        return self.transmitted_power_dbm is not None

    @property
    def has_path_loss_exponent(self) -> bool:
        """Check if source provides its own path loss exponent."""
        return self.path_loss_exponent is not None

    @property
    def dimensions(self) -> Optional[int]:
        """Number of position coordinates (None if not located)."""
        return len(self.position) if self.position is not None else None


def located_source(
    source_id: str,
    position: Sequence[float],
    transmitted_power_dbm: Optional[float] = None,
    frequency_hz: float = PATH_LOSS_DEFAULTS["frequency_hz"],
    **kwargs
) -> RadioSource:
    """
    Create a located radio source.

    Args:
        source_id: Source identifier
        position: Known position (2 or 3 coordinates)
        transmitted_power_dbm: Transmitted power (dBm), if known
        frequency_hz: Carrier frequency (Hz)
        **kwargs: Remaining RadioSource fields

    Returns:
        RadioSource with position set
    """
    return RadioSource(
        source_id=source_id,
        frequency_hz=frequency_hz,
        position=tuple(position),
        transmitted_power_dbm=transmitted_power_dbm,
        **kwargs
    )
