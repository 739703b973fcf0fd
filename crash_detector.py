# crash_detector.py
"""
Crash detection: hard-braking rule, single-slot event memory and the
Armed/Triggered fusion state machine.

A crash is declared only when a deceleration event and a helmet impact event
are both held and lie within the correlation window of each other. Each held
event expires on its own once it is older than the window.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional

from monitor_config import ConfigError, MonitorConfig

logger = logging.getLogger("CrashMonitor.Fusion")


# ------------------------------
# Deceleration rule
# ------------------------------

@dataclass(frozen=True)
class BrakingThresholds:
    """Hard-braking rule thresholds (km/h)"""
    min_speed_before: float
    max_speed_after: float
    min_deceleration: float

    @classmethod
    def from_config(cls, config: MonitorConfig) -> "BrakingThresholds":
        return cls(
            min_speed_before=config.min_speed_before_kmh,
            max_speed_after=config.max_speed_after_kmh,
            min_deceleration=config.min_deceleration_kmh,
        )


def is_hard_braking(
    previous_speed: float,
    current_speed: Optional[float],
    thresholds: BrakingThresholds,
) -> bool:
    """
    True when two consecutive speeds describe a sudden stop.

    A missing current speed never fires.
    """
    if current_speed is None:
        return False
    return (
        previous_speed > thresholds.min_speed_before
        and current_speed < thresholds.max_speed_after
        and (previous_speed - current_speed) >= thresholds.min_deceleration
    )


# ------------------------------
# Single-slot event memory
# ------------------------------

class SignalKind(Enum):
    DECELERATION = "deceleration"
    IMPACT = "impact"


class EventSlot:
    """Holds at most one live event timestamp (ms); 0 means empty."""

    def __init__(self, kind: SignalKind):
        self.kind = kind
        self.timestamp = 0.0

    @property
    def is_set(self) -> bool:
        return self.timestamp != 0

    def record(self, now: float) -> None:
        """Overwrite the slot with a fresh event"""
        self.timestamp = now

    def clear(self) -> None:
        self.timestamp = 0.0

    def expire(self, now: float, window_ms: float) -> bool:
        """Clear the slot if its event is older than the window. Returns True if cleared."""
        if self.is_set and now - self.timestamp > window_ms:
            self.timestamp = 0.0
            return True
        return False

    def __repr__(self) -> str:
        return f"EventSlot({self.kind.value}, {self.timestamp})"


# ------------------------------
# Fusion state machine
# ------------------------------

class CrashState(Enum):
    IDLE = "idle"
    ARMED = "armed"
    TRIGGERED = "triggered"


CrashListener = Callable[[float, float], None]  # (deceleration_ts, impact_ts)
ExpiryListener = Callable[[SignalKind], None]


class CrashFusionEngine:
    """
    Fuses deceleration and impact events into a single crash decision.

    State goes IDLE -> ARMED on arm(), ARMED -> TRIGGERED when both held
    events are within the window, and back to ARMED only through reset().
    While TRIGGERED every notification is a no-op.
    """

    def __init__(
        self,
        window_ms: float,
        on_crash: Optional[CrashListener] = None,
        on_expired: Optional[ExpiryListener] = None,
    ):
        if isinstance(window_ms, bool) or not isinstance(window_ms, (int, float)) or not window_ms > 0:
            raise ConfigError([f"correlation window must be a positive number (got {window_ms!r})"])
        self.window_ms = float(window_ms)
        self.state = CrashState.IDLE
        self.deceleration = EventSlot(SignalKind.DECELERATION)
        self.impact = EventSlot(SignalKind.IMPACT)

        self._crash_listeners: List[CrashListener] = [on_crash] if on_crash else []
        self._expiry_listeners: List[ExpiryListener] = [on_expired] if on_expired else []

        self.stats = {
            "deceleration_events": 0,
            "impact_events": 0,
            "expired_events": 0,
            "uncorrelated_pairs": 0,
            "crashes": 0,
        }

    # ------------- Listeners -------------

    def add_crash_listener(self, listener: CrashListener) -> None:
        self._crash_listeners.append(listener)

    def add_expiry_listener(self, listener: ExpiryListener) -> None:
        self._expiry_listeners.append(listener)

    # ------------- Lifecycle -------------

    @property
    def is_armed(self) -> bool:
        return self.state == CrashState.ARMED

    @property
    def is_triggered(self) -> bool:
        return self.state == CrashState.TRIGGERED

    def arm(self) -> None:
        """Start of session: ARMED with empty slots"""
        self._clear_slots()
        self.state = CrashState.ARMED
        logger.info(f" Crash detection armed (window {self.window_ms:.0f} ms)")

    def disarm(self) -> None:
        """End of session: back to IDLE"""
        self._clear_slots()
        self.state = CrashState.IDLE

    def reset(self) -> None:
        """Manual reset: re-arm within the same session. No effect while IDLE."""
        self._clear_slots()
        if self.state != CrashState.IDLE:
            self.state = CrashState.ARMED
            logger.info(" Crash alert reset, detection re-armed")

    def _clear_slots(self) -> None:
        self.deceleration.clear()
        self.impact.clear()

    # ------------- Notifications -------------

    def notify_deceleration(self, now: float) -> bool:
        """Record a hard-braking event. Returns True if this caused the crash trigger."""
        return self._notify(self.deceleration, now)

    def notify_impact(self, now: float) -> bool:
        """Record a helmet impact event. Returns True if this caused the crash trigger."""
        return self._notify(self.impact, now)

    def check(self, now: float) -> bool:
        """Periodic tick: expire stale events and correlate what is left."""
        if not self.is_armed:
            return False
        return self._evaluate(now)

    def _notify(self, slot: EventSlot, now: float) -> bool:
        if not self.is_armed:
            return False
        slot.record(now)
        key = "deceleration_events" if slot.kind == SignalKind.DECELERATION else "impact_events"
        self.stats[key] += 1
        logger.info(f" {slot.kind.value.capitalize()} event recorded at {now:.0f}")
        return self._evaluate(now)

    def _evaluate(self, now: float) -> bool:
        for slot in (self.deceleration, self.impact):
            if slot.expire(now, self.window_ms):
                self.stats["expired_events"] += 1
                logger.info(f" {slot.kind.value.capitalize()} event expired (older than {self.window_ms:.0f} ms)")
                for listener in self._expiry_listeners:
                    listener(slot.kind)

        if not (self.deceleration.is_set and self.impact.is_set):
            return False

        diff = abs(self.deceleration.timestamp - self.impact.timestamp)
        if diff <= self.window_ms:
            self._trigger(diff)
            return True

        # Both pending but too far apart; either may still pair with a newer partner
        self.stats["uncorrelated_pairs"] += 1
        return False

    def _trigger(self, diff: float) -> None:
        decel_ts = self.deceleration.timestamp
        impact_ts = self.impact.timestamp
        self.state = CrashState.TRIGGERED
        self.stats["crashes"] += 1
        logger.warning(
            f" CRASH DETECTED: deceleration and impact {diff:.0f} ms apart "
            f"(window {self.window_ms:.0f} ms)"
        )
        for listener in self._crash_listeners:
            listener(decel_ts, impact_ts)

    def get_stats(self):
        return {
            **self.stats,
            "state": self.state.value,
            "deceleration_ts": self.deceleration.timestamp,
            "impact_ts": self.impact.timestamp,
        }
