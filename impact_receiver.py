# impact_receiver.py
"""
Polls the helmet impact backend on a fixed interval.

Every tick is one GET; the interval itself is the retry cadence, so a failed
poll is reported and the next tick simply tries again.
"""

import asyncio
import logging
import time
from typing import Any, Callable, Optional

from relay_client import ImpactReading, RelayError

logger = logging.getLogger("CrashMonitor.Impact")

ReadingCallback = Callable[[ImpactReading], Any]
PollErrorCallback = Callable[[RelayError], Any]


class ImpactReceiver:
    """
    Args:
        source: Object with a blocking `latest_impact() -> ImpactReading`
            (RelayHTTPClient, or MockImpactSource in mock mode)
        interval: Seconds between polls
    """

    def __init__(self, source, interval: float):
        if interval <= 0:
            raise ValueError(f"poll interval must be positive (got {interval!r})")
        self.source = source
        self.interval = interval
        self._task: Optional[asyncio.Task] = None
        self.stats = {
            "polls": 0,
            "poll_errors": 0,
            "impacts_seen": 0,
            "last_error": None,
        }

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def poll_once(self) -> ImpactReading:
        """One GET through a worker thread."""
        self.stats["polls"] += 1
        try:
            reading = await asyncio.to_thread(self.source.latest_impact)
        except RelayError as e:
            self.stats["poll_errors"] += 1
            self.stats["last_error"] = e.message
            raise
        except Exception as e:
            self.stats["poll_errors"] += 1
            self.stats["last_error"] = str(e)
            raise RelayError(f"Impact poll failed: {e}") from e
        if reading.any_impact:
            self.stats["impacts_seen"] += 1
        return reading

    def start(self, on_reading: ReadingCallback, on_error: PollErrorCallback) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._poll_loop(on_reading, on_error), name="impact_poll")
        logger.info(f" Impact polling started every {self.interval:.2f}s")

    async def stop(self) -> None:
        """Cancel polling and wait for the task to finish. Safe to call twice."""
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        logger.info(" Impact polling stopped")

    async def _poll_loop(self, on_reading: ReadingCallback, on_error: PollErrorCallback) -> None:
        while True:
            started = time.monotonic()
            try:
                reading = await self.poll_once()
            except RelayError as e:
                logger.warning(f" Impact poll failed: {e.message}")
                on_error(e)
            else:
                on_reading(reading)
            elapsed = time.monotonic() - started
            await asyncio.sleep(max(0.0, self.interval - elapsed))
