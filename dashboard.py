# dashboard.py
"""
Display state for the crash monitor and its optional live Ably dashboard.

StatusBoard is the single place the monitor writes what a rider would see:
status line, speed readout and colour, helmet status, crash alert panel and
SMS result. Each change is handed to the listeners as a snapshot dict.
"""

import asyncio
import logging
import queue
import sys
import threading
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

try:
    from ably import AblyRealtime
except ImportError:
    print("Error: Ably library not installed. Run: pip install ably")
    sys.exit(1)

logger = logging.getLogger("CrashMonitor.Dashboard")

CONNECTION_TIMEOUT = 15.0  # seconds
STATUS_EVENT_NAME = "status_update"

# Rate limiting for Ably publishing
PUBLISH_RATE_LIMIT = 20  # messages per second
PUBLISH_BURST_CAPACITY = 10
PUBLISH_QUEUE_MAX_SIZE = 500
PUBLISH_DRAIN_INTERVAL = 0.05


class DisplayLevel(Enum):
    """Colour state of the speed readout / status line"""
    NORMAL = "normal"
    SPEEDING = "speeding"
    CRASH = "crash"
    ERROR = "error"


@dataclass
class BoardState:
    status: str = "Status: Idle"
    status_level: DisplayLevel = DisplayLevel.NORMAL
    speed_text: str = "Speed: 0.0 km/h"
    display_level: DisplayLevel = DisplayLevel.NORMAL
    impact_status: str = "Helmet: waiting for data"
    deceleration_pending: bool = False
    impact_pending: bool = False
    crash_visible: bool = False
    crash_location: str = ""
    map_link: Optional[str] = None
    dispatch_status: str = ""
    trip: Optional[Dict[str, Any]] = None


BoardListener = Callable[[Dict[str, Any]], None]


class StatusBoard:
    """What the rider sees. Mutated only from the monitor's event loop."""

    def __init__(self):
        self.state = BoardState()
        self._listeners: List[BoardListener] = []

    def add_listener(self, listener: BoardListener) -> None:
        self._listeners.append(listener)

    def snapshot(self) -> Dict[str, Any]:
        data = asdict(self.state)
        data["status_level"] = self.state.status_level.value
        data["display_level"] = self.state.display_level.value
        data["timestamp"] = datetime.now(timezone.utc).isoformat()
        return data

    def _changed(self) -> None:
        snap = self.snapshot()
        for listener in self._listeners:
            try:
                listener(snap)
            except Exception as e:
                logger.warning(f" Board listener failed: {e}")

    # ------------- Status line -------------

    def set_status(self, text: str, level: DisplayLevel = DisplayLevel.NORMAL) -> None:
        self.state.status = text
        self.state.status_level = level
        self._changed()

    # ------------- Speed readout -------------

    def show_speed(self, speed_kmh: Optional[float]) -> None:
        if speed_kmh is None:
            self.state.speed_text = "Speed: N/A"
        else:
            self.state.speed_text = f"Speed: {speed_kmh:.1f} km/h"
        self._changed()

    def show_speed_error(self) -> None:
        self.state.speed_text = "Speed: Error"
        if self.state.display_level == DisplayLevel.SPEEDING:
            self.state.display_level = DisplayLevel.NORMAL
        self._changed()

    def set_speeding(self, speeding: bool) -> None:
        if self.state.display_level == DisplayLevel.CRASH:
            return
        self.state.display_level = DisplayLevel.SPEEDING if speeding else DisplayLevel.NORMAL
        self._changed()

    # ------------- Signals -------------

    def show_impact_status(self, text: str) -> None:
        self.state.impact_status = text
        self._changed()

    def set_pending(self, deceleration: Optional[bool] = None, impact: Optional[bool] = None) -> None:
        if deceleration is not None:
            self.state.deceleration_pending = deceleration
        if impact is not None:
            self.state.impact_pending = impact
        self._changed()

    # ------------- Crash panel -------------

    def show_crash(self) -> None:
        self.state.display_level = DisplayLevel.CRASH
        self.state.status = "Status: CRASH DETECTED!"
        self.state.status_level = DisplayLevel.CRASH
        self.state.crash_visible = True
        self.state.crash_location = "Fetching location..."
        self.state.map_link = None
        self.state.dispatch_status = ""
        self._changed()

    def show_crash_location(self, text: str, map_link: Optional[str] = None) -> None:
        self.state.crash_location = text
        self.state.map_link = map_link
        self._changed()

    def show_dispatch_status(self, text: str) -> None:
        # Location and map link stay as they are
        self.state.dispatch_status = text
        self._changed()

    def clear_crash(self) -> None:
        self.state.crash_visible = False
        self.state.crash_location = ""
        self.state.map_link = None
        self.state.dispatch_status = ""
        self.state.deceleration_pending = False
        self.state.impact_pending = False
        if self.state.display_level == DisplayLevel.CRASH:
            self.state.display_level = DisplayLevel.NORMAL
        self._changed()

    # ------------- Trip -------------

    def show_trip(self, trip: Dict[str, Any]) -> None:
        self.state.trip = trip
        self._changed()

    def reset(self) -> None:
        """Back to the idle screen"""
        self.state = BoardState()
        self._changed()


# ------------------------------
# Rate-Limited Publisher
# ------------------------------

class RateLimitedPublisher:
    """
    Token bucket rate limiter with FIFO queue for message publishing.
    Keeps bursts of board changes under the Ably rate limit.
    """

    def __init__(
        self,
        rate_limit: float = PUBLISH_RATE_LIMIT,
        burst_capacity: float = PUBLISH_BURST_CAPACITY,
        max_queue_size: int = PUBLISH_QUEUE_MAX_SIZE,
        drain_interval: float = PUBLISH_DRAIN_INTERVAL,
    ):
        self.rate_limit = rate_limit
        self.burst_capacity = burst_capacity
        self.drain_interval = drain_interval

        self._tokens = burst_capacity
        self._last_refill = time.monotonic()
        self._lock = threading.Lock()

        self._queue: "queue.Queue[Dict[str, Any]]" = queue.Queue(maxsize=max_queue_size)

        self.stats = {
            "messages_published": 0,
            "messages_delayed": 0,
            "messages_dropped": 0,
        }

    def _refill_tokens(self) -> None:
        now = time.monotonic()
        elapsed = now - self._last_refill
        self._tokens = min(self.burst_capacity, self._tokens + elapsed * self.rate_limit)
        self._last_refill = now

    def _try_consume_token(self) -> bool:
        with self._lock:
            self._refill_tokens()
            if self._tokens >= 1.0:
                self._tokens -= 1.0
                return True
            return False

    def queue_message(self, message: Dict[str, Any]) -> bool:
        """Queue a message; when full, the oldest queued snapshot is dropped."""
        try:
            self._queue.put_nowait(message)
        except queue.Full:
            try:
                self._queue.get_nowait()
            except queue.Empty:
                pass
            self.stats["messages_dropped"] += 1
            self._queue.put_nowait(message)
        self.stats["messages_delayed"] += 1
        return True

    @property
    def queue_depth(self) -> int:
        return self._queue.qsize()

    async def drain_queue(self, channel, event_name: str) -> int:
        """Publish queued messages at the controlled rate. Returns the number sent."""
        drained = 0
        while not self._queue.empty():
            if not self._try_consume_token():
                await asyncio.sleep(self.drain_interval)
                continue
            try:
                message = self._queue.get_nowait()
            except queue.Empty:
                break
            try:
                await channel.publish(event_name, message)
            except Exception as e:
                logger.warning(f" Dashboard publish failed: {e}")
                self.stats["messages_dropped"] += 1
                break
            self.stats["messages_published"] += 1
            drained += 1
        return drained

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            self._refill_tokens()
            return {
                **self.stats,
                "available_tokens": round(self._tokens, 2),
                "queue_depth": self._queue.qsize(),
            }


# ------------------------------
# Ably dashboard
# ------------------------------

class DashboardPublisher:
    """Republishes StatusBoard snapshots to an Ably channel."""

    def __init__(self, api_key: str, channel_name: str, rate_limiter: Optional[RateLimitedPublisher] = None):
        self.api_key = api_key
        self.channel_name = channel_name
        self.rate_limiter = rate_limiter or RateLimitedPublisher()
        self.client: Optional[AblyRealtime] = None
        self.channel = None
        self._wakeup = asyncio.Event()

    def on_board_change(self, snapshot: Dict[str, Any]) -> None:
        self.rate_limiter.queue_message(snapshot)
        self._wakeup.set()

    async def connect(self) -> bool:
        try:
            self.client = AblyRealtime(self.api_key)
            await self._wait_for_connection(CONNECTION_TIMEOUT)
            self.channel = self.client.channels.get(self.channel_name)
            logger.info(f" Connected to dashboard channel: {self.channel_name}")
            return True
        except Exception as e:
            logger.error(f" Dashboard connect failed: {e}")
            return False

    async def _wait_for_connection(self, timeout: float) -> None:
        start = time.time()
        while time.time() - start < timeout:
            if self.client.connection.state == "connected":
                return
            if self.client.connection.state in ("failed", "closed", "suspended"):
                raise ConnectionError(f"Dashboard connection state: {self.client.connection.state}")
            await asyncio.sleep(0.1)
        raise TimeoutError(f"Dashboard connection timeout after {timeout}s")

    async def run(self) -> None:
        """Publish loop; runs until cancelled."""
        while True:
            await self._wakeup.wait()
            self._wakeup.clear()
            if self.channel is None:
                continue
            await self.rate_limiter.drain_queue(self.channel, STATUS_EVENT_NAME)

    async def close(self) -> None:
        if self.client:
            try:
                await self.client.close()
            except Exception as e:
                logger.warning(f" Dashboard close failed: {e}")
            self.client = None
            self.channel = None
