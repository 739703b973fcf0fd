# speed_monitor.py
"""
Speed-limit monitor: an edge detector that starts a looping alert when the
speed goes above the limit and stops it when the speed drops back, becomes
unknown, or a crash is declared.
"""

import asyncio
import logging
import sys
from dataclasses import dataclass
from typing import Callable, Optional

from location_sampler import Sample

logger = logging.getLogger("CrashMonitor.Speed")

ALERT_REPEAT_INTERVAL = 1.5  # seconds between alert repeats


@dataclass
class SpeedState:
    """Per-session speed memory"""
    previous_speed_kmh: float = 0.0
    is_speeding: bool = False

    def reset(self) -> None:
        self.previous_speed_kmh = 0.0
        self.is_speeding = False


# ------------------------------
# Alert sound
# ------------------------------

class AlertSound:
    """Looping audible alert. start/stop are idempotent and never block."""

    def start_loop(self) -> None:
        raise NotImplementedError

    def stop(self) -> None:
        raise NotImplementedError

    @property
    def playing(self) -> bool:
        raise NotImplementedError


class TerminalBellAlert(AlertSound):
    """Rings the terminal bell on a repeating asyncio task."""

    def __init__(self, interval: float = ALERT_REPEAT_INTERVAL, stream=None):
        self.interval = interval
        self.stream = stream or sys.stdout
        self._task: Optional[asyncio.Task] = None

    @property
    def playing(self) -> bool:
        return self._task is not None and not self._task.done()

    def start_loop(self) -> None:
        if self.playing:
            return
        self._task = asyncio.get_running_loop().create_task(self._ring(), name="speed_alert")

    def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None

    async def _ring(self) -> None:
        while True:
            self.stream.write("\a")
            self.stream.flush()
            await asyncio.sleep(self.interval)


class SilentAlert(AlertSound):
    """Records start/stop calls only (headless runs and tests)."""

    def __init__(self):
        self._playing = False
        self.starts = 0
        self.stops = 0

    @property
    def playing(self) -> bool:
        return self._playing

    def start_loop(self) -> None:
        if not self._playing:
            self.starts += 1
        self._playing = True

    def stop(self) -> None:
        if self._playing:
            self.stops += 1
        self._playing = False


# ------------------------------
# Monitor
# ------------------------------

SpeedingListener = Callable[[bool, Optional[float]], None]


class SpeedLimitMonitor:
    """
    Tracks whether the rider is above the configured speed limit.

    The monitor owns SpeedState, including the previous speed used by the
    hard-braking rule. Call `update()` once per sample, then `remember()`.
    """

    def __init__(
        self,
        speed_limit_kmh: float,
        alert: Optional[AlertSound] = None,
        on_change: Optional[SpeedingListener] = None,
    ):
        self.speed_limit_kmh = speed_limit_kmh
        self.alert = alert or SilentAlert()
        self.on_change = on_change
        self.state = SpeedState()

    @property
    def is_speeding(self) -> bool:
        return self.state.is_speeding

    @property
    def previous_speed_kmh(self) -> float:
        return self.state.previous_speed_kmh

    def reset(self) -> None:
        """Clear state and silence the alert (session start/stop, manual reset)"""
        self.alert.stop()
        self.state.reset()

    def update(self, sample: Sample) -> bool:
        """Apply one sample; returns the new speeding flag."""
        speed = sample.speed_kmh
        limit = self.speed_limit_kmh

        if speed is not None and speed > 0:
            if speed > limit and not self.state.is_speeding:
                self._set_speeding(True, speed)
                logger.info(f" Speed limit ({limit:g} km/h) exceeded. Current: {speed:.1f} km/h")
            elif speed <= limit and self.state.is_speeding:
                self._set_speeding(False, speed)
                logger.info(f" Speed back below limit ({limit:g} km/h). Current: {speed:.1f} km/h")
        elif self.state.is_speeding:
            # Unknown or zero speed counts as no longer speeding
            self._set_speeding(False, speed)

        return self.state.is_speeding

    def remember(self, sample: Sample) -> None:
        """Store this sample's speed for the next braking check; a missing speed resets it to 0."""
        self.state.previous_speed_kmh = sample.speed_kmh if sample.speed_kmh is not None else 0.0

    def force_stop(self) -> None:
        """Cancel the alert regardless of speed (crash declared, speed unknown)"""
        was_speeding = self.state.is_speeding
        self.state.is_speeding = False
        self.alert.stop()
        if was_speeding:
            logger.info(" Speed alert force-stopped")
            if self.on_change:
                self.on_change(False, None)

    def _set_speeding(self, speeding: bool, speed: Optional[float]) -> None:
        self.state.is_speeding = speeding
        if speeding:
            self.alert.start_loop()
        else:
            self.alert.stop()
        if self.on_change:
            self.on_change(speeding, speed)
