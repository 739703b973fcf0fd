# trip_stats.py
"""
Per-session trip statistics: rolling speed average, top speed, distance.
"""

import math
from typing import Any, Dict, Optional

import numpy as np

from location_sampler import Sample


class RollingWindow:
    """
    Circular buffer for rolling statistics with NumPy.
    Pre-allocated for performance.
    """

    def __init__(self, size: int = 30):
        self.size = size
        self.buffer = np.zeros(size, dtype=np.float64)
        self.count = 0
        self.index = 0

    def push(self, value: float) -> None:
        self.buffer[self.index] = value
        self.index = (self.index + 1) % self.size
        self.count = min(self.count + 1, self.size)

    def get_values(self) -> np.ndarray:
        if self.count < self.size:
            return self.buffer[:self.count]
        return self.buffer

    def mean(self) -> float:
        if self.count == 0:
            return 0.0
        return float(np.mean(self.get_values()))

    def max(self) -> float:
        if self.count == 0:
            return 0.0
        return float(np.max(self.get_values()))

    def reset(self) -> None:
        self.buffer.fill(0)
        self.count = 0
        self.index = 0


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance between two coordinates in km"""
    R = 6371.0
    dlat = math.radians(lat2 - lat1)
    dlon = math.radians(lon2 - lon1)
    a = (
        math.sin(dlat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(dlon / 2) ** 2
    )
    return R * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


class TripStatistics:
    """Accumulates trip metrics from the sample stream."""

    def __init__(self, window_size: int = 30):
        self.speed_window = RollingWindow(window_size)
        self.reset()

    def reset(self) -> None:
        self.speed_window.reset()
        self.samples = 0
        self.null_speed_samples = 0
        self.max_speed_kmh = 0.0
        self.distance_km = 0.0
        self.deceleration_events = 0
        self.impact_events = 0
        self._last_lat: Optional[float] = None
        self._last_lon: Optional[float] = None

    def add_sample(self, sample: Sample) -> None:
        self.samples += 1

        if sample.speed_kmh is None:
            self.null_speed_samples += 1
        else:
            self.speed_window.push(sample.speed_kmh)
            self.max_speed_kmh = max(self.max_speed_kmh, sample.speed_kmh)

        if sample.has_position:
            if self._last_lat is not None:
                self.distance_km += haversine_km(
                    self._last_lat, self._last_lon, sample.latitude, sample.longitude
                )
            self._last_lat = sample.latitude
            self._last_lon = sample.longitude

    def as_dict(self) -> Dict[str, Any]:
        return {
            "samples": self.samples,
            "null_speed_samples": self.null_speed_samples,
            "avg_speed_kmh": round(self.speed_window.mean(), 1),
            "max_speed_kmh": round(self.max_speed_kmh, 1),
            "recent_max_speed_kmh": round(self.speed_window.max(), 1),
            "distance_km": round(self.distance_km, 3),
            "deceleration_events": self.deceleration_events,
            "impact_events": self.impact_events,
        }
