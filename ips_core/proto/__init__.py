"""
Protocol Module: Radio sources, readings and estimate schemas.

All types are immutable value objects validated at construction.
"""

from .radio_source import (
    RadioSource,
    located_source,
)
from .reading import (
    Reading,
    ReadingType,
    Fingerprint,
    ranging_reading,
    rssi_reading,
    ranging_and_rssi_reading,
)
from .position_estimate import (
    EstimatedPosition,
    InliersData,
)

__all__ = [
    'RadioSource',
    'located_source',
    'Reading',
    'ReadingType',
    'Fingerprint',
    'ranging_reading',
    'rssi_reading',
    'ranging_and_rssi_reading',
    'EstimatedPosition',
    'InliersData',
]
