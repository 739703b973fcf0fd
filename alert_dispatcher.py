# alert_dispatcher.py
"""
Crash alert dispatch.

One dispatch per crash decision: take a fresh high-accuracy fix (falling back
to no coordinates), validate the alert settings, compose the SMS text and
submit it to the relay exactly once. Every failure ends up on the status
board; location info already shown is never cleared by a later failure.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

from dashboard import StatusBoard
from location_sampler import ALERT_FIX_OPTIONS, LocationSampler, PositionError, Sample
from monitor_config import ConfigError, MonitorConfig, is_absolute_url
from relay_client import DeliveryReport, RelayError

logger = logging.getLogger("CrashMonitor.Dispatch")

CurrentCheck = Callable[[], bool]

# Alert timestamps are written in Philippine time (UTC+8, no DST)
REFERENCE_TZ = timezone(timedelta(hours=8), "PHT")
UNKNOWN_LOCATION = "an unknown location (location services failed)"


def map_link(latitude: float, longitude: float) -> str:
    return f"https://www.google.com/maps?q={latitude},{longitude}"


def format_alert_time(when: datetime) -> str:
    return when.astimezone(REFERENCE_TZ).strftime("%Y-%m-%d %I:%M:%S %p %Z")


def compose_message(
    user_name: str,
    when: datetime,
    latitude: Optional[float] = None,
    longitude: Optional[float] = None,
) -> str:
    """Human-readable SMS body for a crash alert."""
    if latitude is not None and longitude is not None:
        location = (
            f"location Lat: {latitude:.5f}, Lon: {longitude:.5f} "
            f"({map_link(latitude, longitude)})"
        )
    else:
        location = UNKNOWN_LOCATION
    return (
        f"This is an automatic crash detection alert from {user_name}'s phone. "
        f"A potential crash was detected at {format_alert_time(when)} at {location}. "
        f"Please contact emergency services or check on them immediately."
    )


@dataclass(frozen=True)
class AlertRequest:
    """Immutable alert ready for the relay"""
    user_name: str
    recipients: tuple
    message: str
    latitude: Optional[float] = None
    longitude: Optional[float] = None

    @property
    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None


def build_alert_request(
    config: MonitorConfig,
    position: Optional[Sample],
    when: Optional[datetime] = None,
) -> AlertRequest:
    """
    Validate the alert settings and compose the request.

    Raises:
        ConfigError: If the relay endpoint or the recipient list is empty
    """
    problems: List[str] = []
    if not is_absolute_url(config.backend_url):
        problems.append("relay endpoint is not configured")
    recipients = config.recipients
    if not recipients:
        problems.append("no emergency contacts saved")
    if problems:
        raise ConfigError(problems)

    lat = position.latitude if position is not None and position.has_position else None
    lon = position.longitude if position is not None and position.has_position else None
    when = when or datetime.now(timezone.utc)
    return AlertRequest(
        user_name=config.display_name,
        recipients=tuple(recipients),
        message=compose_message(config.display_name, when, lat, lon),
        latitude=lat,
        longitude=lon,
    )


@dataclass
class DispatchResult:
    """Outcome of one dispatch attempt"""
    request: Optional[AlertRequest] = None
    report: Optional[DeliveryReport] = None
    error: Optional[str] = None
    location_error: Optional[str] = None
    notes: List[str] = field(default_factory=list)

    @property
    def delivered(self) -> bool:
        return self.report is not None and self.report.succeeded > 0

    def to_record(self):
        return {
            "delivered": self.delivered,
            "succeeded": self.report.succeeded if self.report else 0,
            "failed": self.report.failed if self.report else 0,
            "error": self.error,
            "location_error": self.location_error,
            "has_coordinates": bool(self.request and self.request.has_coordinates),
        }


class AlertDispatcher:
    """
    Args:
        sampler: Position source used for the one-shot alert fix
        relay: Object with a blocking `send_sms(recipients, message) -> DeliveryReport`
        board: Status board the results are written to
    """

    def __init__(self, sampler: LocationSampler, relay, board: StatusBoard):
        self.sampler = sampler
        self.relay = relay
        self.board = board
        self.stats = {"dispatches": 0, "delivered": 0, "failed": 0, "stale_board_writes": 0}

    def _show(self, is_current: Optional[CurrentCheck], update: Callable[[StatusBoard], None]) -> None:
        # A dispatch that outlived its crash panel (reset, new session) keeps quiet
        if is_current is not None and not is_current():
            self.stats["stale_board_writes"] += 1
            return
        update(self.board)

    async def acquire_location(
        self, result: DispatchResult, is_current: Optional[CurrentCheck] = None
    ) -> Optional[Sample]:
        try:
            position = await self.sampler.get_current_position(
                timeout=ALERT_FIX_OPTIONS.timeout,
                high_accuracy=ALERT_FIX_OPTIONS.high_accuracy,
                maximum_age=ALERT_FIX_OPTIONS.maximum_age,
            )
        except PositionError as e:
            result.location_error = e.message
            self._show(is_current, lambda b: b.show_crash_location(
                f"Location: Error fetching location ({e.message})"
            ))
            logger.warning(f" Location fix for alert failed: {e}")
            return None

        if not position.has_position:
            result.location_error = "fix had no coordinates"
            self._show(is_current, lambda b: b.show_crash_location(
                "Location: Error fetching location (no coordinates)"
            ))
            return None

        text = f"Location: Lat: {position.latitude:.5f}, Lon: {position.longitude:.5f}"
        link = map_link(position.latitude, position.longitude)
        self._show(is_current, lambda b: b.show_crash_location(text, link))
        logger.info(f" Location fetched for crash: {text}")
        return position

    async def dispatch(
        self, config: MonitorConfig, is_current: Optional[CurrentCheck] = None
    ) -> DispatchResult:
        """
        Run one full alert attempt. Never raises.

        `is_current` is asked before every board write; once it returns False
        the SMS is still sent but the board is left alone.
        """
        self.stats["dispatches"] += 1
        result = DispatchResult()

        position = await self.acquire_location(result, is_current)

        try:
            request = build_alert_request(config, position)
        except ConfigError as e:
            result.error = str(e)
            self.stats["failed"] += 1
            self._show(is_current, lambda b: b.show_dispatch_status(f"Configuration error: {e}"))
            logger.error(f" Alert not sent: {e}")
            return result
        result.request = request

        self._show(is_current, lambda b: b.show_dispatch_status(
            f"Sending alert to {len(request.recipients)} contact(s)..."
        ))
        logger.info(f" Sending crash alert to {', '.join(request.recipients)}")

        try:
            report = await asyncio.to_thread(self.relay.send_sms, list(request.recipients), request.message)
        except RelayError as e:
            result.error = e.message
            self.stats["failed"] += 1
            self._show(is_current, lambda b: b.show_dispatch_status(f"Error sending SMS: {e.message}"))
            logger.error(f" Alert delivery failed: {e.message}")
            return result
        except Exception as e:
            result.error = str(e)
            self.stats["failed"] += 1
            self._show(is_current, lambda b: b.show_dispatch_status(f"Error sending SMS: {e}"))
            logger.error(f" Alert delivery failed: {e}")
            return result

        result.report = report
        if report.succeeded:
            self.stats["delivered"] += 1
        else:
            self.stats["failed"] += 1
        self._show(is_current, lambda b: b.show_dispatch_status(report.summary()))
        logger.info(f" {report.summary()}")
        return result
