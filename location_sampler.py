# location_sampler.py
"""
Location sampling for the crash monitor.

A sampler turns a platform position source into a stream of timestamped
Sample values delivered to a callback, one at a time, in arrival order.
Failures are reported as PositionError; only PERMISSION_DENIED is fatal.

The phone source reads GPS through the Termux:API `termux-location` command.
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger("CrashMonitor.Sampler")

MPS_TO_KMH = 3.6


# ------------------------------
# Data model
# ------------------------------

@dataclass(frozen=True)
class Sample:
    """One position fix. Speed may be missing (None)."""
    timestamp: float  # ms since epoch
    speed_kmh: Optional[float] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None

    @property
    def has_speed(self) -> bool:
        return self.speed_kmh is not None

    @property
    def has_position(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    def to_record(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "speed_kmh": self.speed_kmh,
            "latitude": self.latitude,
            "longitude": self.longitude,
        }


class PositionErrorKind(Enum):
    """Position failure kinds (numbered like the W3C geolocation codes)"""
    PERMISSION_DENIED = 1
    UNAVAILABLE = 2
    TIMEOUT = 3


class PositionError(Exception):
    """A position source failure"""

    def __init__(self, kind: PositionErrorKind, message: str = ""):
        self.kind = kind
        self.message = message or kind.name.replace("_", " ").lower()
        super().__init__(f"{kind.value}: {self.message}")

    @property
    def fatal(self) -> bool:
        """Permission denied ends the session; the rest are transient"""
        return self.kind == PositionErrorKind.PERMISSION_DENIED


@dataclass(frozen=True)
class SamplerOptions:
    """Position request options"""
    high_accuracy: bool = True
    maximum_age: float = 5.0  # seconds a cached fix may be reused
    timeout: float = 10.0  # seconds per fix
    interval: float = 1.0  # seconds between fixes


# Continuous watch vs. the one-shot fix taken for a crash alert
WATCH_OPTIONS = SamplerOptions()
LOCATION_TIMEOUT = 15.0  # seconds
ALERT_FIX_OPTIONS = SamplerOptions(high_accuracy=True, maximum_age=0.0, timeout=LOCATION_TIMEOUT)


def speed_to_kmh(speed_mps: Any) -> Optional[float]:
    """Convert a reported m/s speed to km/h; missing or negative speeds become None."""
    if speed_mps is None:
        return None
    try:
        value = float(speed_mps)
    except (TypeError, ValueError):
        return None
    if value != value or value < 0:
        return None
    return value * MPS_TO_KMH


def now_ms() -> float:
    return time.time() * 1000.0


SampleCallback = Callable[[Sample], Any]
ErrorCallback = Callable[[PositionError], Any]


# ------------------------------
# Base sampler
# ------------------------------

class LocationSampler:
    """
    Base class for position sources.

    Subclasses implement `read_fix(options)`. `start()` runs a watch task that
    calls `read_fix` at the configured cadence and hands each result to the
    callbacks; `stop()` cancels it. A permission failure ends the watch.
    """

    def __init__(self):
        self._watches: Dict[int, asyncio.Task] = {}
        self._next_handle = 1

    async def read_fix(self, options: SamplerOptions) -> Sample:
        raise NotImplementedError

    async def get_current_position(
        self,
        timeout: float = LOCATION_TIMEOUT,
        high_accuracy: bool = True,
        maximum_age: float = 0.0,
    ) -> Sample:
        """One-shot fix (used for the crash alert), bounded by timeout."""
        options = SamplerOptions(high_accuracy=high_accuracy, maximum_age=maximum_age, timeout=timeout)
        return await self._timed_fix(options)

    async def _timed_fix(self, options: SamplerOptions) -> Sample:
        try:
            return await asyncio.wait_for(self.read_fix(options), timeout=options.timeout)
        except asyncio.TimeoutError:
            raise PositionError(
                PositionErrorKind.TIMEOUT, f"no fix within {options.timeout:.0f}s"
            ) from None

    def start(
        self,
        options: Optional[SamplerOptions],
        on_sample: SampleCallback,
        on_error: ErrorCallback,
    ) -> int:
        """Begin watching; returns a handle for stop(). None options mean WATCH_OPTIONS."""
        options = options or WATCH_OPTIONS
        handle = self._next_handle
        self._next_handle += 1
        self._watches[handle] = asyncio.create_task(
            self._watch(on_sample, on_error, options), name=f"location_watch_{handle}"
        )
        logger.info(f" Location watch {handle} started ({self.__class__.__name__})")
        return handle

    async def stop(self, handle: Optional[int]) -> None:
        """Cancel a watch. Unknown or already stopped handles are ignored."""
        if handle is None:
            return
        task = self._watches.pop(handle, None)
        if task is None:
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        logger.info(f" Location watch {handle} stopped")

    @property
    def active_watches(self) -> int:
        return sum(1 for t in self._watches.values() if not t.done())

    async def _watch(
        self,
        on_sample: SampleCallback,
        on_error: ErrorCallback,
        options: SamplerOptions,
    ) -> None:
        while True:
            started = time.monotonic()
            try:
                sample = await self._timed_fix(options)
            except PositionError as e:
                on_error(e)
                if e.fatal:
                    return
            else:
                on_sample(sample)
            elapsed = time.monotonic() - started
            await asyncio.sleep(max(0.0, options.interval - elapsed))


# ------------------------------
# Termux:API source (Android phone)
# ------------------------------

class TermuxLocationSampler(LocationSampler):
    """
    Reads GPS fixes with `termux-location` (Termux:API).

    `-r last` is used when a cached fix is acceptable (maximum_age > 0),
    `-r once` forces a fresh fix.
    """

    COMMAND = "termux-location"

    def __init__(self, command: str = COMMAND):
        super().__init__()
        self.command = command

    def _args(self, options: SamplerOptions):
        provider = "gps" if options.high_accuracy else "network"
        request = "last" if options.maximum_age > 0 else "once"
        return [self.command, "-p", provider, "-r", request]

    async def read_fix(self, options: SamplerOptions) -> Sample:
        try:
            proc = await asyncio.create_subprocess_exec(
                *self._args(options),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError:
            raise PositionError(
                PositionErrorKind.UNAVAILABLE,
                f"{self.command} not found (pkg install termux-api)",
            ) from None

        try:
            stdout, stderr = await proc.communicate()
        except asyncio.CancelledError:
            if proc.returncode is None:
                proc.kill()
            raise

        return parse_termux_fix(proc.returncode, stdout, stderr)


def parse_termux_fix(returncode: Optional[int], stdout: bytes, stderr: bytes) -> Sample:
    """Turn termux-location output into a Sample or raise PositionError."""
    err_text = stderr.decode("utf-8", errors="ignore").strip()
    out_text = stdout.decode("utf-8", errors="ignore").strip()

    if "permission" in (err_text + out_text).lower():
        raise PositionError(PositionErrorKind.PERMISSION_DENIED, err_text or out_text)
    if returncode != 0:
        raise PositionError(
            PositionErrorKind.UNAVAILABLE, err_text or f"exit code {returncode}"
        )
    if not out_text:
        raise PositionError(PositionErrorKind.UNAVAILABLE, "empty location response")

    try:
        data = json.loads(out_text)
    except json.JSONDecodeError:
        raise PositionError(PositionErrorKind.UNAVAILABLE, "unreadable location response") from None

    if not isinstance(data, dict):
        raise PositionError(PositionErrorKind.UNAVAILABLE, "unexpected location response")
    if "error" in data:
        raise PositionError(PositionErrorKind.UNAVAILABLE, str(data["error"]))

    return Sample(
        timestamp=now_ms(),
        speed_kmh=speed_to_kmh(data.get("speed")),
        latitude=_coord(data.get("latitude")),
        longitude=_coord(data.get("longitude")),
    )


def _coord(value: Any) -> Optional[float]:
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None
