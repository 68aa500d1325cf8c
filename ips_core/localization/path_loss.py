"""
Path Loss Distance Model.

Converts an RSSI reading into an estimated distance (pseudo-range) by
inverting the log-distance path loss model:

    Pr = Pt * c^2 / ((4*pi*f)^2 * d^n)

which in dB (k = c / (4*pi*f), kdB = 10*log10(k)) becomes:

    Pr = Pt + n*kdB - 10*n*log10(d)
    d  = 10^((n*kdB + Pt - Pr) / (10*n))

The distance variance is obtained by first-order propagation of the
transmitted power, received power and path loss exponent variances through
the Jacobian of d(Pt, Pr, n).
"""

import math
from dataclasses import dataclass
from typing import Optional

import numpy as np

from ips_core.config import PATH_LOSS_DEFAULTS
from ips_core.errors import InvalidArgumentError
from ips_core.proto.radio_source import RadioSource

SPEED_OF_LIGHT = 299792458.0  # m/s

LN10 = math.log(10.0)


@dataclass(frozen=True)
class DistanceEstimate:
    """
    Pseudo-range derived from received power.

    Attributes:
        distance_m: Estimated distance (m)
        variance_m2: Estimated distance variance (m^2)
        path_loss_exponent: Exponent actually used
        uses_fallback: Variance is the fallback value (no variance component known)
    """

    distance_m: float
    variance_m2: float
    path_loss_exponent: float
    uses_fallback: bool = False

    @property
    def std_m(self) -> float:
        """Distance standard deviation (m)."""
        return math.sqrt(self.variance_m2)


def dbm_to_power_mw(dbm: float) -> float:
    """Convert power in dBm to mW."""
    return 10.0 ** (dbm / 10.0)


def power_mw_to_dbm(mw: float) -> float:
    """Convert power in mW to dBm."""
    return 10.0 * math.log10(mw)


def _k_db(frequency_hz: float) -> float:
    return 10.0 * math.log10(SPEED_OF_LIGHT / (4.0 * math.pi * frequency_hz))


def received_power_dbm(
    transmitted_power_dbm: float,
    distance_m: float,
    frequency_hz: float = PATH_LOSS_DEFAULTS["frequency_hz"],
    path_loss_exponent: float = PATH_LOSS_DEFAULTS["path_loss_exponent"]
) -> float:
    """
    Forward path loss model: expected received power at a distance.

    Args:
        transmitted_power_dbm: Transmitted power (dBm)
        distance_m: Distance to the source (m), must be positive
        frequency_hz: Carrier frequency (Hz)
        path_loss_exponent: Path loss exponent

    Returns:
        Received power (dBm)
    """
    if distance_m <= 0:
        raise InvalidArgumentError(f"Distance must be positive: {distance_m}")
    return (transmitted_power_dbm + path_loss_exponent * _k_db(frequency_hz)
            - 10.0 * path_loss_exponent * math.log10(distance_m))


def distance_from_power(
    transmitted_power_dbm: float,
    rssi_dbm: float,
    frequency_hz: float,
    path_loss_exponent: float
) -> float:
    """Invert the path loss model for distance (m)."""
    if path_loss_exponent <= 0:
        raise InvalidArgumentError(f"Path loss exponent must be positive: {path_loss_exponent}")
    k_db = _k_db(frequency_hz)
    return 10.0 ** ((path_loss_exponent * k_db + transmitted_power_dbm - rssi_dbm)
                    / (10.0 * path_loss_exponent))


def distance_jacobian(
    transmitted_power_dbm: float,
    rssi_dbm: float,
    frequency_hz: float,
    path_loss_exponent: float
) -> np.ndarray:
    """
    Partial derivatives of distance w.r.t. (Pt, Pr, n).

    Returns:
        Array [dd/dPt, dd/dPr, dd/dn]
    """
    k_db = _k_db(frequency_hz)
    ten_n = 10.0 * path_loss_exponent
    distance = distance_from_power(transmitted_power_dbm, rssi_dbm, frequency_hz,
                                   path_loss_exponent)

    d_tx = LN10 / ten_n * distance
    d_rx = -d_tx

    # g(n) = (n*kdB + Pt - Pr) / (10*n)
    d_g = (k_db * ten_n - 10.0 * (path_loss_exponent * k_db + transmitted_power_dbm - rssi_dbm)) \
        / ten_n ** 2
    d_n = LN10 * d_g * distance

    return np.array([d_tx, d_rx, d_n])


def estimate_distance(
    rssi_dbm: float,
    source: RadioSource,
    path_loss_exponent: float = PATH_LOSS_DEFAULTS["path_loss_exponent"],
    rssi_std_db: Optional[float] = None,
    use_source_path_loss_exponent: bool = PATH_LOSS_DEFAULTS["use_source_path_loss_exponent"],
    fallback_distance_std: float = PATH_LOSS_DEFAULTS["fallback_distance_std_m"]
) -> DistanceEstimate:
    """
    Estimate distance and its variance from an RSSI reading.

    Args:
        rssi_dbm: Received power (dBm)
        source: Radio source with known transmitted power
        path_loss_exponent: Default exponent when the source provides none
            (or when use_source_path_loss_exponent is False)
        rssi_std_db: Received power standard deviation (dB)
        use_source_path_loss_exponent: Prefer the exponent exposed by source
        fallback_distance_std: Standard deviation (m) used when no variance
            can be propagated

    Returns:
        DistanceEstimate

    Notes:
        - The exponent variance only contributes when the exponent comes
          from the source
        - If the source exponent is required but missing, the default
          exponent is used with the fallback standard deviation
    """
    if not source.has_power:
        raise InvalidArgumentError(f"Source {source.source_id} has no transmitted power")
    if fallback_distance_std < 0:
        raise InvalidArgumentError(
            f"Fallback distance std cannot be negative: {fallback_distance_std}"
        )

    source_exponent_missing = use_source_path_loss_exponent and not source.has_path_loss_exponent
    if use_source_path_loss_exponent and source.has_path_loss_exponent:
        exponent = source.path_loss_exponent
        exponent_std = source.path_loss_exponent_std
    else:
        exponent = path_loss_exponent
        exponent_std = None

    tx_power = source.transmitted_power_dbm
    distance = distance_from_power(tx_power, rssi_dbm, source.frequency_hz, exponent)

    variances = np.array([
        source.transmitted_power_std_db ** 2 if source.transmitted_power_std_db is not None else 0.0,
        rssi_std_db ** 2 if rssi_std_db is not None else 0.0,
        exponent_std ** 2 if exponent_std is not None else 0.0,
    ])
    no_variance_known = (source.transmitted_power_std_db is None and rssi_std_db is None
                         and exponent_std is None)

    uses_fallback = source_exponent_missing or no_variance_known
    if uses_fallback:
        variance = fallback_distance_std ** 2
    else:
        jacobian = distance_jacobian(tx_power, rssi_dbm, source.frequency_hz, exponent)
        variance = float(jacobian @ (variances * jacobian))

    return DistanceEstimate(distance_m=distance, variance_m2=variance,
                            path_loss_exponent=exponent, uses_fallback=uses_fallback)
