"""
Domain records and decoders for the Telemetry Gateway.

Pure code only: nothing here performs I/O, so every decoder can be tested
against recorded payloads.
"""

from .ephemeris import EphemerisTable, extract_ephemeris_block, merge_records, parse_ephemeris
from .models import EphemerisRecord, SpacecraftPosition, Vector3

__all__ = [
    "EphemerisRecord",
    "EphemerisTable",
    "SpacecraftPosition",
    "Vector3",
    "extract_ephemeris_block",
    "merge_records",
    "parse_ephemeris",
]
