"""
Core Utilities Package

Modules:
    - time: Timestamp conversion between venue formats and UTC datetimes
"""

from core.utils.time import EPOCH, parse_ms, to_utc_datetime

__all__ = ["EPOCH", "parse_ms", "to_utc_datetime"]
