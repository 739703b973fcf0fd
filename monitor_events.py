# monitor_events.py
"""
Typed events consumed by the session's single event loop.

Producers (location watch, impact poller, fusion ticker, user commands)
only enqueue these; the session applies them one at a time.
"""

from dataclasses import dataclass

from location_sampler import PositionError, Sample
from relay_client import ImpactReading, RelayError


@dataclass(frozen=True)
class MonitorEvent:
    generation: int


@dataclass(frozen=True)
class SampleReceived(MonitorEvent):
    sample: Sample


@dataclass(frozen=True)
class PositionFailed(MonitorEvent):
    error: PositionError


@dataclass(frozen=True)
class ImpactPolled(MonitorEvent):
    reading: ImpactReading


@dataclass(frozen=True)
class ImpactPollFailed(MonitorEvent):
    error: RelayError


@dataclass(frozen=True)
class FusionTick(MonitorEvent):
    pass


@dataclass(frozen=True)
class ResetRequested(MonitorEvent):
    pass
