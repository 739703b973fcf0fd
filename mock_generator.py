# mock_generator.py
"""
Mock trip generation for the crash monitor.

Produces a location sample stream and a matching helmet impact timeline so
the whole pipeline can run without a phone GPS or helmet hardware.
"""

import logging
import math
import random
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional, Tuple

from location_sampler import (
    LocationSampler,
    PositionError,
    PositionErrorKind,
    Sample,
    SamplerOptions,
    now_ms,
)
from relay_client import DeliveryReport, ImpactReading

logger = logging.getLogger("CrashMonitor.MockGenerator")

NO_IMPACT = (False, False, False, False)


# ------------------------------
# Mock Mode Configuration
# ------------------------------

class MockScenario(Enum):
    """Available mock trip scenarios"""
    NORMAL = "normal"
    SPEEDING = "speeding"
    HARD_BRAKE = "hard_brake"
    CRASH = "crash"
    SENSOR_GLITCH = "sensor_glitch"
    GPS_ISSUES = "gps_issues"


@dataclass
class MockModeConfig:
    """Configuration for a mock trip"""
    scenario: MockScenario = MockScenario.NORMAL

    cruise_speed_kmh: float = 40.0
    speed_noise_kmh: float = 1.5

    # Speeding excursions
    speeding_peak_kmh: float = 0.0  # 0 disables
    speeding_period: int = 0  # samples per up/down cycle

    # Sudden stop
    brake_after: int = 0  # samples of cruising before the stop, 0 disables
    brake_from_kmh: float = 60.0
    brake_to_kmh: float = 2.0
    stopped_for: int = 8  # samples at standstill

    # Helmet impact, relative to the stop (ms); None disables
    impact_offset_ms: Optional[float] = None
    impact_duration_ms: float = 1500.0
    impact_vector: Tuple[bool, bool, bool, bool] = (True, False, False, False)
    glitch_after: int = 0  # impact without a stop after this many samples

    # GPS issues
    null_speed_probability: float = 0.0
    unavailable_probability: float = 0.0
    timeout_probability: float = 0.0

    @classmethod
    def from_scenario(cls, scenario: MockScenario) -> "MockModeConfig":
        """Create configuration for a specific scenario"""
        config = cls(scenario=scenario)

        if scenario == MockScenario.NORMAL:
            pass

        elif scenario == MockScenario.SPEEDING:
            config.speeding_peak_kmh = 78.0
            config.speeding_period = 20

        elif scenario == MockScenario.HARD_BRAKE:
            config.brake_after = 10

        elif scenario == MockScenario.CRASH:
            config.brake_after = 10
            config.impact_offset_ms = 700.0

        elif scenario == MockScenario.SENSOR_GLITCH:
            config.glitch_after = 8
            config.impact_duration_ms = 300.0
            config.impact_vector = (False, False, True, False)

        elif scenario == MockScenario.GPS_ISSUES:
            config.null_speed_probability = 0.15
            config.unavailable_probability = 0.05
            config.timeout_probability = 0.03

        return config


# ------------------------------
# Mock Trip Generator
# ------------------------------

class MockTripGenerator:
    """
    Generates one trip: a sample per call to `next_sample()` plus the helmet
    impact state at any time through `impact_state(at_ms)`.
    """

    DEFAULT_DATA_INTERVAL = 1.0

    def __init__(
        self,
        config: Optional[MockModeConfig] = None,
        seed: Optional[int] = None,
        clock: Callable[[], float] = now_ms,
        data_interval: float = DEFAULT_DATA_INTERVAL,
    ):
        self.config = config or MockModeConfig()
        self.clock = clock
        self.data_interval = data_interval
        self._rng = random.Random(seed)

        self.base_lat = 14.5995
        self.base_lon = 120.9842
        self.reset()

    def reset(self) -> None:
        """Reset generator state for a new trip"""
        self.tick = 0
        self.last_sample: Optional[Sample] = None
        self._impacts: List[Tuple[float, float, Tuple[bool, ...]]] = []
        self.stats = {
            "samples_generated": 0,
            "null_speeds": 0,
            "position_errors": 0,
            "stops": 0,
            "impacts_scheduled": 0,
        }

    # ------------- Speed profile -------------

    def _target_speed(self, t: int) -> float:
        cfg = self.config

        if cfg.brake_after:
            if t < cfg.brake_after:
                return cfg.brake_from_kmh
            if t < cfg.brake_after + cfg.stopped_for:
                return cfg.brake_to_kmh
            # Pull away slowly after the stop
            return min(cfg.cruise_speed_kmh, 5.0 * (t - cfg.brake_after - cfg.stopped_for))

        if cfg.speeding_peak_kmh and cfg.speeding_period:
            phase = (t % cfg.speeding_period) / cfg.speeding_period
            swing = (cfg.speeding_peak_kmh - cfg.cruise_speed_kmh) * math.sin(math.pi * phase)
            return cfg.cruise_speed_kmh + swing

        return cfg.cruise_speed_kmh

    def _position(self) -> Tuple[float, float]:
        # Slow circular route around the base point
        angle = self.tick * 0.02
        lat = self.base_lat + 0.005 * math.sin(angle) + self._rng.gauss(0, 0.00002)
        lon = self.base_lon + 0.005 * math.cos(angle) + self._rng.gauss(0, 0.00002)
        return round(lat, 6), round(lon, 6)

    def _schedule_impact(self, at_ms: float) -> None:
        cfg = self.config
        self._impacts.append((at_ms, at_ms + cfg.impact_duration_ms, tuple(cfg.impact_vector)))
        self.stats["impacts_scheduled"] += 1
        logger.info(f" SIMULATION: helmet impact scheduled {tuple(cfg.impact_vector)}")

    # ------------- Public API -------------

    def next_sample(self) -> Sample:
        """
        Advance the trip by one sample.

        Raises:
            PositionError: For simulated transient GPS failures
        """
        cfg = self.config
        now = self.clock()
        tick = self.tick
        self.tick += 1

        roll = self._rng.random()
        if roll < cfg.timeout_probability:
            self.stats["position_errors"] += 1
            raise PositionError(PositionErrorKind.TIMEOUT, "simulated GPS timeout")
        if roll < cfg.timeout_probability + cfg.unavailable_probability:
            self.stats["position_errors"] += 1
            raise PositionError(PositionErrorKind.UNAVAILABLE, "simulated GPS signal loss")

        target = self._target_speed(tick)
        speed: Optional[float] = max(0.0, target + self._rng.gauss(0, cfg.speed_noise_kmh))
        if cfg.brake_after and tick == cfg.brake_after:
            # The stop sample itself is exact so the braking rule is met
            speed = cfg.brake_to_kmh
            self.stats["stops"] += 1
            logger.info(f" SIMULATION: sudden stop {cfg.brake_from_kmh:.0f} -> {cfg.brake_to_kmh:.0f} km/h")
            if cfg.impact_offset_ms is not None:
                self._schedule_impact(now + cfg.impact_offset_ms)
        elif cfg.brake_after and tick == cfg.brake_after - 1:
            speed = cfg.brake_from_kmh

        if cfg.glitch_after and tick == cfg.glitch_after:
            self._schedule_impact(now)

        if self._rng.random() < cfg.null_speed_probability:
            speed = None
            self.stats["null_speeds"] += 1

        lat, lon = self._position()
        sample = Sample(
            timestamp=now,
            speed_kmh=round(speed, 2) if speed is not None else None,
            latitude=lat,
            longitude=lon,
        )
        self.last_sample = sample
        self.stats["samples_generated"] += 1
        return sample

    def current_fix(self) -> Sample:
        """Fresh position without advancing the trip"""
        lat, lon = self._position()
        speed = self.last_sample.speed_kmh if self.last_sample else 0.0
        return Sample(timestamp=self.clock(), speed_kmh=speed, latitude=lat, longitude=lon)

    def impact_state(self, at_ms: Optional[float] = None) -> Tuple[bool, ...]:
        """Helmet sensor vector at a given time"""
        at = self.clock() if at_ms is None else at_ms
        for start, end, vector in self._impacts:
            if start <= at < end:
                return vector
        return NO_IMPACT

    def generate_batch(self, count: int) -> List[Sample]:
        """Generate several samples, skipping simulated errors"""
        results = []
        for _ in range(count):
            try:
                results.append(self.next_sample())
            except PositionError:
                continue
        return results


# ------------------------------
# Pipeline adapters
# ------------------------------

class MockLocationSampler(LocationSampler):
    """LocationSampler fed by a MockTripGenerator"""

    def __init__(self, generator: MockTripGenerator):
        super().__init__()
        self.generator = generator

    async def read_fix(self, options: SamplerOptions) -> Sample:
        return self.generator.next_sample()

    async def get_current_position(self, timeout=None, high_accuracy=True, maximum_age=0.0) -> Sample:
        return self.generator.current_fix()


class MockImpactSource:
    """Stands in for the impact backend: same `latest_impact()` call as RelayHTTPClient"""

    def __init__(self, generator: MockTripGenerator):
        self.generator = generator

    def latest_impact(self) -> ImpactReading:
        return ImpactReading(state=tuple(self.generator.impact_state()))


class DryRunRelay:
    """Logs alerts instead of sending them (mock mode without a backend)"""

    def __init__(self):
        self.sent: List[Tuple[List[str], str]] = []

    def send_sms(self, recipients, message):
        self.sent.append((list(recipients), message))
        logger.warning(f" DRY RUN: would send to {', '.join(recipients)}: {message}")
        return DeliveryReport(
            succeeded=len(recipients),
            details=[{"success": True, "number": n} for n in recipients],
        )


# ------------------------------
# Utility functions for standalone testing
# ------------------------------

def run_generator_test(scenario: MockScenario = MockScenario.CRASH, count: int = 30):
    """Run a quick test of the generator with statistics output"""
    config = MockModeConfig.from_scenario(scenario)
    fake_now = [time.time() * 1000.0]

    def clock():
        fake_now[0] += 1000.0
        return fake_now[0]

    generator = MockTripGenerator(config=config, seed=1, clock=clock)
    print(f"Running {scenario.value.upper()} scenario for {count} samples...")

    samples = generator.generate_batch(count)
    for s in samples[:15]:
        speed = f"{s.speed_kmh:5.1f}" if s.speed_kmh is not None else "  N/A"
        print(f"  t={s.timestamp:.0f} speed={speed} km/h impact={generator.impact_state(s.timestamp)}")

    print("\nResults:")
    for key, value in generator.stats.items():
        print(f"  {key}: {value}")
    return samples


if __name__ == "__main__":
    run_generator_test(MockScenario.CRASH, 30)
