"""
Reading and Fingerprint Schemas.

A reading is a measurement taken at the unknown position against one radio
source. It is a closed variant:
- RANGING: measured distance (m) and its standard deviation
- RSSI: received power (dBm) and its standard deviation
- RANGING_AND_RSSI: both at once

A fingerprint is the ordered collection of readings captured at the
unknown position.
"""

from dataclasses import dataclass
from enum import IntEnum
from typing import Iterable, Iterator, Optional, Tuple

from ips_core.errors import InvalidArgumentError
from ips_core.proto.radio_source import RadioSource


class ReadingType(IntEnum):
    """Kind of measurement contained in a reading."""

    RANGING = 0
    RSSI = 1
    RANGING_AND_RSSI = 2


@dataclass(frozen=True)
class Reading:
    """
    Single measurement against a radio source.

    Attributes:
        source: Radio source the reading refers to
        reading_type: Kind of reading
        distance_m: Measured distance (ranging readings)
        distance_std_m: Distance standard deviation (optional)
        rssi_dbm: Received power (RSSI readings)
        rssi_std_db: Received power standard deviation (optional)
    """

    source: RadioSource
    reading_type: ReadingType
    distance_m: Optional[float] = None
    distance_std_m: Optional[float] = None
    rssi_dbm: Optional[float] = None
    rssi_std_db: Optional[float] = None

    def __post_init__(self):
        """Validate reading fields against its type."""
        if self.source is None:
            raise InvalidArgumentError("Reading requires a source")

        if self.has_distance:
            if self.distance_m is None:
                raise InvalidArgumentError(f"{self.reading_type.name} reading requires distance")
            if self.distance_m < 0:
                raise InvalidArgumentError(f"Distance cannot be negative: {self.distance_m}")
        if self.has_rssi and self.rssi_dbm is None:
            raise InvalidArgumentError(f"{self.reading_type.name} reading requires RSSI")

        if self.distance_std_m is not None and self.distance_std_m < 0:
            raise InvalidArgumentError(f"Distance std cannot be negative: {self.distance_std_m}")
        if self.rssi_std_db is not None and self.rssi_std_db < 0:
            raise InvalidArgumentError(f"RSSI std cannot be negative: {self.rssi_std_db}")

    @property
    def has_distance(self) -> bool:
        """Check if reading contains a distance measurement."""
        return self.reading_type in (ReadingType.RANGING, ReadingType.RANGING_AND_RSSI)

    @property
    def has_rssi(self) -> bool:
        """Check if reading contains a received power measurement."""
        return self.reading_type in (ReadingType.RSSI, ReadingType.RANGING_AND_RSSI)

    def as_ranging(self) -> 'Reading':
        """Ranging-only view of this reading."""
        if self.reading_type == ReadingType.RANGING:
            return self
        if not self.has_distance:
            raise InvalidArgumentError("Reading has no distance")
        return ranging_reading(self.source, self.distance_m, self.distance_std_m)

    def as_rssi(self) -> 'Reading':
        """RSSI-only view of this reading."""
        if self.reading_type == ReadingType.RSSI:
            return self
        if not self.has_rssi:
            raise InvalidArgumentError("Reading has no RSSI")
        return rssi_reading(self.source, self.rssi_dbm, self.rssi_std_db)


def ranging_reading(
    source: RadioSource,
    distance_m: float,
    distance_std_m: Optional[float] = None
) -> Reading:
    """Create a ranging reading."""
    return Reading(source, ReadingType.RANGING, distance_m=distance_m,
                   distance_std_m=distance_std_m)


def rssi_reading(
    source: RadioSource,
    rssi_dbm: float,
    rssi_std_db: Optional[float] = None
) -> Reading:
    """Create an RSSI reading."""
    return Reading(source, ReadingType.RSSI, rssi_dbm=rssi_dbm, rssi_std_db=rssi_std_db)


def ranging_and_rssi_reading(
    source: RadioSource,
    distance_m: float,
    rssi_dbm: float,
    distance_std_m: Optional[float] = None,
    rssi_std_db: Optional[float] = None
) -> Reading:
    """Create a reading with both distance and RSSI."""
    return Reading(
        source, ReadingType.RANGING_AND_RSSI,
        distance_m=distance_m, distance_std_m=distance_std_m,
        rssi_dbm=rssi_dbm, rssi_std_db=rssi_std_db,
    )


class Fingerprint:
    """
    Ordered collection of readings captured at one unknown position.

    Usage:
        fingerprint = Fingerprint([
            ranging_reading(ap1, 4.2, 0.1),
            rssi_reading(ap2, -61.0, 2.0),
        ])
        print(fingerprint.num_ranging_readings)
    """

    def __init__(self, readings: Iterable[Reading]):
        if readings is None:
            raise InvalidArgumentError("Fingerprint requires readings")
        self._readings: Tuple[Reading, ...] = tuple(readings)
        for reading in self._readings:
            if not isinstance(reading, Reading):
                raise InvalidArgumentError(f"Not a reading: {reading!r}")

    @property
    def readings(self) -> Tuple[Reading, ...]:
        return self._readings

    def __len__(self) -> int:
        return len(self._readings)

    def __iter__(self) -> Iterator[Reading]:
        return iter(self._readings)

    def __getitem__(self, index: int) -> Reading:
        return self._readings[index]

    @property
    def num_ranging_readings(self) -> int:
        """Number of readings that carry a distance."""
        return sum(1 for r in self._readings if r.has_distance)

    @property
    def num_rssi_readings(self) -> int:
        """Number of readings that carry a received power."""
        return sum(1 for r in self._readings if r.has_rssi)

    def __repr__(self) -> str:
        return (f"Fingerprint(readings={len(self)}, ranging={self.num_ranging_readings}, "
                f"rssi={self.num_rssi_readings})")
