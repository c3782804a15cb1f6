"""
Shared value types: OHLC bars and signal direction.
"""

from dataclasses import dataclass, asdict
from enum import Enum
from typing import Dict


class Direction(str, Enum):
    LONG = "LONG"
    SHORT = "SHORT"


@dataclass(frozen=True)
class Bar:
    """
    One OHLC bar.

    Fields:
        open_time:  Interval open time, unix milliseconds
        open/high/low/close: Prices
        volume:     Base asset volume for the interval
    """
    open_time: int
    open: float
    high: float
    low: float
    close: float
    volume: float

    @property
    def body(self) -> float:
        return abs(self.close - self.open)

    def to_dict(self) -> Dict:
        return asdict(self)
