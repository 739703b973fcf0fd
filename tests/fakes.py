"""Test doubles shared by the test modules (no network, no GPS)."""

import asyncio
import threading
from typing import Any, List, Optional

from location_sampler import LocationSampler, PositionError, Sample, SamplerOptions
from relay_client import DeliveryReport, ImpactReading, RelayError

BASE_TS = 1_000_000.0  # ms; 0 means "no event" to the fusion slots


class FakeClock:
    def __init__(self, now: float = BASE_TS):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> float:
        self.now += ms
        return self.now


class FakeResponse:
    def __init__(self, status_code: int = 200, body: Any = None, reason: str = "", json_error: bool = False):
        self.status_code = status_code
        self._body = body
        self.reason = reason
        self._json_error = json_error

    @property
    def ok(self) -> bool:
        return self.status_code < 400

    def json(self):
        if self._json_error:
            raise ValueError("No JSON object could be decoded")
        return self._body


class FakeSession:
    """Stands in for requests.Session: returns queued responses or raises queued errors."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls: List[dict] = []
        self.closed = False

    def _next(self):
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    def get(self, url, timeout=None):
        self.calls.append({"method": "GET", "url": url, "timeout": timeout})
        return self._next()

    def post(self, url, json=None, timeout=None):
        self.calls.append({"method": "POST", "url": url, "json": json, "timeout": timeout})
        return self._next()

    def close(self):
        self.closed = True


class FakeSampler(LocationSampler):
    """Watch callbacks are captured so tests push samples by hand."""

    def __init__(self, fix: Optional[Sample] = None, fix_error: Optional[PositionError] = None):
        super().__init__()
        self.fix = fix
        self.fix_error = fix_error
        self.on_sample = None
        self.on_error = None
        self.started = 0
        self.stopped: List[Optional[int]] = []

    def start(self, options, on_sample, on_error) -> int:
        self.started += 1
        self.on_sample = on_sample
        self.on_error = on_error
        return self.started

    async def stop(self, handle) -> None:
        self.stopped.append(handle)

    async def read_fix(self, options: SamplerOptions) -> Sample:
        if self.fix_error is not None:
            raise self.fix_error
        return self.fix

    def emit(self, speed_kmh, timestamp: float = BASE_TS):
        self.on_sample(Sample(timestamp=timestamp, speed_kmh=speed_kmh, latitude=14.5995, longitude=120.9842))

    def fail(self, error: PositionError):
        self.on_error(error)


class FakeImpactSource:
    def __init__(self, state=(False, False, False, False)):
        self.state = tuple(state)
        self.calls = 0

    def latest_impact(self) -> ImpactReading:
        self.calls += 1
        return ImpactReading(state=self.state)


class FakeRelay:
    def __init__(self, error: Optional[RelayError] = None):
        self.error = error
        self.sent: List[tuple] = []

    def send_sms(self, recipients, message) -> DeliveryReport:
        self.sent.append((list(recipients), message))
        if self.error is not None:
            raise self.error
        return DeliveryReport(
            succeeded=len(recipients),
            details=[{"success": True, "number": n} for n in recipients],
        )


class BlockingRelay(FakeRelay):
    """send_sms holds its worker thread until release() (or a safety timeout)."""

    def __init__(self, error: Optional[RelayError] = None):
        super().__init__(error)
        self._gate = threading.Event()

    def release(self):
        self._gate.set()

    def send_sms(self, recipients, message) -> DeliveryReport:
        self._gate.wait(timeout=5.0)
        return super().send_sms(recipients, message)


def run(coro):
    return asyncio.run(coro)
