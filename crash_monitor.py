#!/usr/bin/env python3
# crash_monitor.py
"""
Crash monitor session controller and command line entry point.

- Watches GPS speed (Termux phone GPS or a mock trip)
- Speed-limit alert with a looping terminal bell
- Fuses hard-braking and helmet impact events into one crash decision
- Sends one SMS alert per crash through the relay backend
- Local-first journaling (NDJSON) of every session
- Optional live status board on an Ably channel
"""

import argparse
import asyncio
import logging
import signal
import sys
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from alert_dispatcher import AlertDispatcher, DispatchResult
from crash_detector import (
    BrakingThresholds,
    CrashFusionEngine,
    CrashState,
    SignalKind,
    is_hard_braking,
)
from dashboard import DashboardPublisher, DisplayLevel, StatusBoard
from impact_receiver import ImpactReceiver
from location_sampler import (
    WATCH_OPTIONS,
    LocationSampler,
    PositionError,
    Sample,
    TermuxLocationSampler,
    now_ms,
)
from mock_generator import (
    DryRunRelay,
    MockImpactSource,
    MockLocationSampler,
    MockModeConfig,
    MockScenario,
    MockTripGenerator,
)
from monitor_config import ConfigError, MonitorConfig, load_config
from monitor_events import (
    FusionTick,
    ImpactPolled,
    ImpactPollFailed,
    MonitorEvent,
    PositionFailed,
    ResetRequested,
    SampleReceived,
)
from relay_client import ImpactReading, RelayError, RelayHTTPClient
from session_journal import SPOOL_DIR, LocalJournal
from speed_monitor import AlertSound, SilentAlert, SpeedLimitMonitor, TerminalBellAlert
from trip_stats import TripStatistics

logger = logging.getLogger("CrashMonitor")

FUSION_CHECK_INTERVAL = 0.25  # seconds between expiry/correlation checks
STATS_INTERVAL = 30.0  # seconds
DISPATCH_DRAIN_TIMEOUT = 40.0  # seconds to let an in-flight alert finish on exit

# Mock runs without a backend log alerts instead of sending them
DRY_RUN_BACKEND_URL = "http://dry-run.local"
MOCK_USER_NAME = "Mock Rider"
MOCK_RECIPIENTS = "09171234567"


# ------------------------------
# Session controller
# ------------------------------

class SessionController:
    """
    Owns one monitoring session at a time.

    Producers (location watch, impact polling, fusion ticker, user commands)
    only put typed events on a queue; a single consumer task applies them in
    order. Events from a previous session generation are dropped.
    """

    def __init__(
        self,
        config: MonitorConfig,
        sampler: LocationSampler,
        impact_source,
        relay,
        board: Optional[StatusBoard] = None,
        alert: Optional[AlertSound] = None,
        journal: Optional[LocalJournal] = None,
        clock: Callable[[], float] = now_ms,
        require_backend: bool = True,
        fusion_interval: float = FUSION_CHECK_INTERVAL,
        stats_interval: float = STATS_INTERVAL,
    ):
        self.config = config
        self.sampler = sampler
        self.impact_source = impact_source
        self.board = board or StatusBoard()
        self.alert = alert or SilentAlert()
        self.journal = journal
        self.clock = clock
        self.require_backend = require_backend
        self.fusion_interval = fusion_interval
        self.stats_interval = stats_interval

        self.dispatcher = AlertDispatcher(sampler, relay, self.board)
        self.trip = TripStatistics()

        self.speed_monitor: Optional[SpeedLimitMonitor] = None
        self.engine: Optional[CrashFusionEngine] = None
        self.receiver: Optional[ImpactReceiver] = None
        self.thresholds: Optional[BrakingThresholds] = None

        self.running = False
        self.generation = 0
        self.stopped = asyncio.Event()
        self._queue: "asyncio.Queue[MonitorEvent]" = asyncio.Queue()
        self._tasks: List[asyncio.Task] = []
        self._watch_handle: Optional[int] = None
        self._dispatch_tasks: Set[asyncio.Task] = set()
        # Bumped on every crash and every reset; with the generation it names the crash panel on screen
        self._alert_seq = 0
        self._stop_task: Optional[asyncio.Task] = None
        self.last_dispatch: Optional[DispatchResult] = None

        self.stats = {
            "sessions": 0,
            "samples": 0,
            "position_errors": 0,
            "impact_polls": 0,
            "impact_poll_errors": 0,
            "events_dropped_stale": 0,
            "crashes": 0,
            "dispatches": 0,
            "errors": 0,
            "last_error": None,
        }

    # ------------- Lifecycle -------------

    @property
    def crash_state(self) -> CrashState:
        return self.engine.state if self.engine else CrashState.IDLE

    async def start(self, config: Optional[MonitorConfig] = None) -> None:
        """
        Validate the configuration and start a session.

        Raises:
            ConfigError: Listing every invalid field; nothing is started
        """
        if self.running:
            logger.info(" Session already running")
            return

        config = (config or self.config).validate(require_backend=self.require_backend)
        self.config = config

        self.generation += 1
        gen = self.generation
        self._queue = asyncio.Queue()
        self.stopped.clear()

        self.speed_monitor = SpeedLimitMonitor(
            config.speed_limit_kmh, alert=self.alert, on_change=self._on_speeding_change
        )
        self.speed_monitor.reset()
        self.thresholds = BrakingThresholds.from_config(config)
        self.engine = CrashFusionEngine(
            config.correlation_window_ms, on_crash=self._on_crash, on_expired=self._on_expired
        )
        self.engine.arm()
        self.trip.reset()
        self.board.reset()
        self.board.set_status("Status: Monitoring...")

        self.running = True
        self.stats["sessions"] += 1
        self._tasks = [
            asyncio.create_task(self._consume(), name="event_consumer"),
            asyncio.create_task(self._fusion_ticker(gen), name="fusion_ticker"),
            asyncio.create_task(self.print_stats(), name="stats"),
        ]
        self._watch_handle = self.sampler.start(
            WATCH_OPTIONS,
            lambda sample: self._enqueue(SampleReceived(gen, sample)),
            lambda error: self._enqueue(PositionFailed(gen, error)),
        )
        self.receiver = ImpactReceiver(self.impact_source, config.impact_poll_interval)
        self.receiver.start(
            lambda reading: self._enqueue(ImpactPolled(gen, reading)),
            lambda error: self._enqueue(ImpactPollFailed(gen, error)),
        )

        self._journal("session_start", {"config": config.to_log_dict()})
        logger.info(f" Monitoring started: {config.to_log_dict()}")

    async def stop(self, reason: str = "stopped by user") -> None:
        """Cancel every producer and go idle. Safe to call twice."""
        if not self.running:
            return
        self.running = False
        # Anything still queued or in flight belongs to the old generation
        self.generation += 1

        await self.sampler.stop(self._watch_handle)
        self._watch_handle = None
        if self.receiver:
            await self.receiver.stop()

        tasks, self._tasks = self._tasks, []
        for t in tasks:
            t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        self.speed_monitor.force_stop()
        self.speed_monitor.reset()
        self.engine.disarm()
        self.board.set_speeding(False)
        self.board.set_status(f"Status: Stopped ({reason})")

        self._journal("session_stop", {"reason": reason, "trip": self.trip.as_dict()})
        logger.info(f" Monitoring stopped: {reason}")
        self.stopped.set()

    def reset_alert(self) -> bool:
        """Queue a manual reset: re-arm detection without ending the session."""
        if not self.running:
            logger.info(" Reset ignored: no session running")
            return False
        self._enqueue(ResetRequested(self.generation))
        return True

    def resend_alert(self) -> Optional[asyncio.Task]:
        """Manual re-trigger: run one more dispatch with the current config."""
        return self._start_dispatch(reason="manual")

    async def send_test_alert(self) -> DispatchResult:
        """One dispatch outside a session (validates the config first)."""
        self.config = self.config.validate(require_backend=True)
        task = self._start_dispatch(reason="test")
        if task is None:
            return self.last_dispatch
        return await task

    async def drain(self) -> None:
        """Wait until every queued event has been applied."""
        await self._queue.join()

    @property
    def dispatch_in_flight(self) -> bool:
        return any(not t.done() for t in self._dispatch_tasks)

    async def wait_for_dispatch(self, timeout: float = DISPATCH_DRAIN_TIMEOUT) -> None:
        pending = [t for t in self._dispatch_tasks if not t.done()]
        if not pending:
            return
        logger.info(f" Waiting for {len(pending)} alert(s) in flight to finish...")
        _, still_pending = await asyncio.wait(pending, timeout=timeout)
        if still_pending:
            logger.warning(f" {len(still_pending)} alert(s) still in flight after {timeout:.0f}s")

    # ------------- Event queue -------------

    def _enqueue(self, event: MonitorEvent) -> None:
        self._queue.put_nowait(event)

    async def _consume(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                if event.generation != self.generation:
                    self.stats["events_dropped_stale"] += 1
                    continue
                self.process(event)
            except Exception as e:
                self._count_error(f"Event handling error ({type(event).__name__}): {e}")
            finally:
                self._queue.task_done()

    def process(self, event: MonitorEvent) -> None:
        """Apply one event to the session state."""
        if isinstance(event, SampleReceived):
            self._handle_sample(event.sample)
        elif isinstance(event, PositionFailed):
            self._handle_position_error(event.error)
        elif isinstance(event, ImpactPolled):
            self._handle_impact(event.reading)
        elif isinstance(event, ImpactPollFailed):
            self._handle_poll_error(event.error)
        elif isinstance(event, FusionTick):
            self.engine.check(self.clock())
        elif isinstance(event, ResetRequested):
            self._handle_reset()
        else:
            logger.warning(f" Unknown event: {event!r}")

    async def _fusion_ticker(self, gen: int) -> None:
        while True:
            await asyncio.sleep(self.fusion_interval)
            self._enqueue(FusionTick(gen))

    # ------------- Handlers -------------

    def _handle_sample(self, sample: Sample) -> None:
        self.stats["samples"] += 1
        self.trip.add_sample(sample)
        self._journal("sample", sample.to_record())
        self.board.show_speed(sample.speed_kmh)

        if not self.engine.is_triggered:
            self.speed_monitor.update(sample)

        if self.engine.is_armed:
            previous = self.speed_monitor.previous_speed_kmh
            if is_hard_braking(previous, sample.speed_kmh, self.thresholds):
                now = self.clock()
                self.trip.deceleration_events += 1
                logger.info(
                    f" Hard braking: {previous:.1f} -> {sample.speed_kmh:.1f} km/h"
                )
                self._journal("deceleration", {
                    "timestamp": now,
                    "previous_speed_kmh": previous,
                    "speed_kmh": sample.speed_kmh,
                })
                self.board.set_pending(deceleration=True)
                self.engine.notify_deceleration(now)

        self.speed_monitor.remember(sample)
        self.board.show_trip(self.trip.as_dict())

    def _handle_position_error(self, error: PositionError) -> None:
        self.stats["position_errors"] += 1
        # No speed, no speeding: the next over-limit sample raises the alert again
        self.speed_monitor.force_stop()
        self.board.show_speed_error()
        if error.fatal:
            self._count_error(f"Location permission denied: {error.message}")
            self.board.set_status("Status: Location permission denied", DisplayLevel.ERROR)
            self._spawn_stop("location permission denied")
            return
        logger.warning(f" Location error: {error.message}")
        self.board.set_status(f"Status: Location error ({error.message})", DisplayLevel.ERROR)

    def _handle_impact(self, reading: ImpactReading) -> None:
        self.stats["impact_polls"] += 1
        self.board.show_impact_status(f"Helmet: {reading.describe()}")
        if reading.any_impact and self.engine.is_armed:
            now = self.clock()
            self.trip.impact_events += 1
            self._journal("impact", {"timestamp": now, "locations": reading.locations})
            self.board.set_pending(impact=True)
            self.engine.notify_impact(now)

    def _handle_poll_error(self, error: RelayError) -> None:
        self.stats["impact_poll_errors"] += 1
        self.board.show_impact_status(f"Helmet: error fetching impact data ({error.message})")

    def _handle_reset(self) -> None:
        self._alert_seq += 1
        self.engine.reset()
        self.speed_monitor.reset()
        self.board.clear_crash()
        self.board.set_speeding(False)
        self.board.set_status("Status: Monitoring... (alert reset)")
        self._journal("reset", {"timestamp": self.clock()})

    # ------------- Engine / monitor listeners -------------

    def _on_speeding_change(self, speeding: bool, speed: Optional[float]) -> None:
        self.board.set_speeding(speeding)
        self._journal("speeding", {"speeding": speeding, "speed_kmh": speed})

    def _on_expired(self, kind: SignalKind) -> None:
        if kind == SignalKind.DECELERATION:
            self.board.set_pending(deceleration=False)
        else:
            self.board.set_pending(impact=False)

    def _on_crash(self, deceleration_ts: float, impact_ts: float) -> None:
        self.stats["crashes"] += 1
        self._alert_seq += 1
        self.speed_monitor.force_stop()
        self.board.show_crash()
        self._journal("crash", {
            "deceleration_ts": deceleration_ts,
            "impact_ts": impact_ts,
            "diff_ms": abs(deceleration_ts - impact_ts),
        })
        self._start_dispatch(reason="crash")

    # ------------- Dispatch -------------

    def _alert_token(self) -> Tuple[int, int]:
        return (self.generation, self._alert_seq)

    def _start_dispatch(self, reason: str) -> Optional[asyncio.Task]:
        """
        Launch one alert. Every crash gets its own dispatch, even while an
        earlier one is still running; manual and test sends are refused
        while anything is in flight.
        """
        if reason != "crash" and self.dispatch_in_flight:
            logger.warning(" Alert already in flight, not sending another")
            return None
        token = self._alert_token()
        logger.info(f" Dispatching alert ({reason}, crash panel {token[0]}.{token[1]})")
        task = asyncio.create_task(
            self._run_dispatch(self.config, reason, token), name=f"alert_dispatch_{reason}"
        )
        task.add_done_callback(self._on_dispatch_done)
        self._dispatch_tasks.add(task)
        return task

    async def _run_dispatch(
        self, config: MonitorConfig, reason: str, token: Tuple[int, int]
    ) -> DispatchResult:
        result = await self.dispatcher.dispatch(
            config, is_current=lambda: self._alert_token() == token
        )
        self.stats["dispatches"] += 1
        self.last_dispatch = result
        self._journal("dispatch", {"reason": reason, **result.to_record()})
        return result

    def _on_dispatch_done(self, task: asyncio.Task) -> None:
        self._dispatch_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._count_error(f"Alert dispatch crashed: {exc}")

    def _spawn_stop(self, reason: str) -> None:
        if self._stop_task is None or self._stop_task.done():
            self._stop_task = asyncio.create_task(self.stop(reason), name="session_stop")

    # ------------- Stats -------------

    def status(self) -> Dict[str, Any]:
        return {
            "running": self.running,
            "crash_state": self.crash_state.value,
            "speeding": bool(self.speed_monitor and self.speed_monitor.is_speeding),
            "board": self.board.snapshot(),
            "trip": self.trip.as_dict(),
            "fusion": self.engine.get_stats() if self.engine else None,
            "dispatch": dict(self.dispatcher.stats),
            "stats": dict(self.stats),
        }

    async def print_stats(self) -> None:
        while self.running:
            try:
                await asyncio.sleep(self.stats_interval)
                trip = self.trip.as_dict()
                logger.info(
                    f" STATS - "
                    f"Samples: {self.stats['samples']}, "
                    f"ImpactPolls: {self.stats['impact_polls']}, "
                    f"PollErrors: {self.stats['impact_poll_errors']}, "
                    f"State: {self.crash_state.value}, "
                    f"Dispatches: {self.stats['dispatches']}, "
                    f"Errors: {self.stats['errors']}"
                )
                logger.info(
                    f"   Trip: avg {trip['avg_speed_kmh']} km/h, max {trip['max_speed_kmh']} km/h, "
                    f"{trip['distance_km']} km, decel {trip['deceleration_events']}, "
                    f"impacts {trip['impact_events']}"
                )
                if self.stats["last_error"]:
                    logger.info(f" Last Error: {self.stats['last_error']}")
            except Exception as e:
                self._count_error(f"Stats loop error: {e}")

    # ------------- Helpers -------------

    def _journal(self, kind: str, record: Dict[str, Any]) -> None:
        if self.journal is not None:
            self.journal.append(kind, record)

    def _count_error(self, msg: str) -> None:
        logger.error(f" {msg}")
        self.stats["errors"] += 1
        self.stats["last_error"] = msg


# ------------------------------
# Application (CLI runtime)
# ------------------------------

class CrashMonitorApp:
    """
    Wires a SessionController to the chosen sources for one CLI run:
    signals, stdin commands, optional dashboard, journal and cleanup.
    """

    def __init__(self, args: argparse.Namespace, config: MonitorConfig):
        self.args = args
        self.mock_mode = args.mock
        self.session_id = str(uuid.uuid4())
        self.session_start_time = datetime.now(timezone.utc)
        self.shutdown_event = asyncio.Event()
        self.clients: List[RelayHTTPClient] = []
        self.dashboard: Optional[DashboardPublisher] = None
        self._dashboard_task: Optional[asyncio.Task] = None
        self._previous_handlers: Dict[int, Any] = {}

        if self.mock_mode:
            scenario = MockScenario(args.scenario)
            self.generator = MockTripGenerator(MockModeConfig.from_scenario(scenario), seed=args.seed)
            sampler: LocationSampler = MockLocationSampler(self.generator)
            impact_source = MockImpactSource(self.generator)
            if config.backend_url:
                relay = self._relay_client(config)
            else:
                logger.warning(" No backend configured: alerts will only be logged (dry run)")
                relay = DryRunRelay()
                config = config.with_overrides(backend_url=DRY_RUN_BACKEND_URL)
        else:
            sampler = TermuxLocationSampler()
            relay = self._relay_client(config)
            impact_source = relay

        self.journal = LocalJournal(SPOOL_DIR, self.session_id)
        self.controller = SessionController(
            config,
            sampler,
            impact_source,
            relay,
            alert=SilentAlert() if args.no_sound else TerminalBellAlert(),
            journal=self.journal,
            require_backend=not self.mock_mode,
        )

        logger.info(f" New session: {self.session_id}")
        if self.mock_mode:
            logger.info(f" MOCK MODE: {args.scenario.upper()}")
        else:
            logger.info(" REAL MODE (Termux GPS)")

    def _relay_client(self, config: MonitorConfig) -> RelayHTTPClient:
        client = RelayHTTPClient(config.backend_url, provider=config.relay_provider)
        self.clients.append(client)
        return client

    def _signal_handler(self, signum, frame):
        logger.info(f"Received signal {signum}, initiating shutdown...")
        self._loop.call_soon_threadsafe(self.shutdown_event.set)

    def install_signal_handlers(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._previous_handlers = {
            signum: signal.signal(signum, self._signal_handler)
            for signum in (signal.SIGINT, signal.SIGTERM)
        }

    def restore_signal_handlers(self) -> None:
        for signum, handler in self._previous_handlers.items():
            signal.signal(signum, handler)
        self._previous_handlers = {}

    # ------------- Dashboard -------------

    async def connect_dashboard(self) -> None:
        config = self.controller.config
        if not config.ably_api_key:
            return
        dashboard = DashboardPublisher(config.ably_api_key, config.dashboard_channel)
        if not await dashboard.connect():
            logger.warning(" Continuing without the live dashboard")
            return
        self.dashboard = dashboard
        self.controller.board.add_listener(dashboard.on_board_change)
        self._dashboard_task = asyncio.create_task(dashboard.run(), name="dashboard")

    # ------------- Commands -------------

    def handle_command(self, line: str) -> None:
        cmd = line.strip().lower()
        if not cmd:
            return
        if cmd == "r":
            self.controller.reset_alert()
        elif cmd == "t":
            self.controller.resend_alert()
        elif cmd == "s":
            print_status(self.controller.status())
        elif cmd == "q":
            self.shutdown_event.set()
        else:
            print("Commands: r = reset alert, t = send alert, s = status, q = quit")

    def _on_stdin(self) -> None:
        line = sys.stdin.readline()
        if line == "":
            # EOF: stop listening, keep monitoring
            self._loop.remove_reader(sys.stdin)
            return
        self.handle_command(line)

    def attach_stdin(self) -> bool:
        if not sys.stdin or not sys.stdin.isatty():
            return False
        try:
            self._loop.add_reader(sys.stdin, self._on_stdin)
        except (NotImplementedError, ValueError) as e:
            logger.warning(f" Interactive commands unavailable: {e}")
            return False
        print("Commands: r = reset alert, t = send alert, s = status, q = quit")
        return True

    # ------------- Lifecycle -------------

    async def run(self) -> int:
        self.install_signal_handlers()
        controller = self.controller

        if self.args.test_alert:
            try:
                result = await controller.send_test_alert()
            except ConfigError as e:
                logger.error(f" Configuration error: {e}")
                return 2
            finally:
                await self.cleanup()
            return 0 if result is not None and result.delivered else 1

        try:
            await controller.start()
        except ConfigError as e:
            logger.error(f" Configuration error: {e}")
            await self.cleanup()
            return 2

        await self.connect_dashboard()
        stdin_attached = self.attach_stdin()

        waiters = [
            asyncio.create_task(self.shutdown_event.wait(), name="shutdown_wait"),
            asyncio.create_task(controller.stopped.wait(), name="session_stopped"),
        ]
        if self.args.duration and self.args.duration > 0:
            waiters.append(asyncio.create_task(asyncio.sleep(self.args.duration), name="duration"))

        try:
            done, pending = await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
            for t in pending:
                t.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
        finally:
            if stdin_attached:
                self._loop.remove_reader(sys.stdin)
            await controller.stop("shutdown")
            await controller.wait_for_dispatch()
            await self.cleanup()

        return 0

    async def cleanup(self) -> None:
        logger.info(" Cleaning up ...")
        if self._dashboard_task:
            # Give queued board snapshots a chance to go out
            await asyncio.sleep(0.5)
            self._dashboard_task.cancel()
            await asyncio.gather(self._dashboard_task, return_exceptions=True)
        if self.dashboard:
            await self.dashboard.close()
        for client in self.clients:
            client.close()
        self.journal.close()
        self.restore_signal_handlers()
        logger.info(f" Session journal: {self.journal.path} ({self.journal.summary()})")
        logger.info(" Cleanup done")


def print_status(status: Dict[str, Any]) -> None:
    board = status["board"]
    print("-" * 50)
    print(f"{board['status']}  [{status['crash_state']}]")
    print(f"{board['speed_text']}  ({board['display_level']})")
    print(board["impact_status"])
    if board["crash_visible"]:
        print(f"Crash location: {board['crash_location']}")
        if board["map_link"]:
            print(f"Map: {board['map_link']}")
        if board["dispatch_status"]:
            print(board["dispatch_status"])
    trip = status["trip"]
    print(
        f"Trip: {trip['samples']} samples, avg {trip['avg_speed_kmh']} km/h, "
        f"max {trip['max_speed_kmh']} km/h, {trip['distance_km']} km"
    )
    print("-" * 50)


# ------------------------------
# CLI
# ------------------------------

def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="crash-monitor",
        description="Crash detection and SMS alert monitor",
    )
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--mock", dest="mock", action="store_true", help="simulated trip (default)")
    mode.add_argument("--real", dest="mock", action="store_false", help="phone GPS via Termux:API")
    parser.set_defaults(mock=True)

    parser.add_argument(
        "--scenario",
        choices=[s.value for s in MockScenario],
        default=MockScenario.CRASH.value,
        help="mock trip scenario",
    )
    parser.add_argument("--seed", type=int, default=None, help="mock trip random seed")

    parser.add_argument("--user", help="rider name used in the alert")
    parser.add_argument("--recipients", help="comma-separated 09xxxxxxxxx / +639xxxxxxxxx numbers")
    parser.add_argument("--speed-limit", type=float, help="speed limit (km/h)")
    parser.add_argument("--min-speed-before", type=float, help="hard braking: speed before (km/h)")
    parser.add_argument("--max-speed-after", type=float, help="hard braking: speed after (km/h)")
    parser.add_argument("--min-deceleration", type=float, help="hard braking: speed drop (km/h)")
    parser.add_argument("--window-ms", type=float, help="crash correlation window (ms)")
    parser.add_argument("--backend", help="impact/relay backend base URL")
    parser.add_argument("--provider", help="SMS relay provider name")
    parser.add_argument("--poll-ms", type=float, help="impact poll interval (ms)")
    parser.add_argument("--ably-key", help="Ably API key for the live dashboard")
    parser.add_argument("--channel", help="Ably dashboard channel")
    parser.add_argument("--env-file", default=".env", help="dotenv file to load")

    parser.add_argument("--duration", type=float, default=0, help="seconds to run (0 = until stopped)")
    parser.add_argument("--test-alert", action="store_true", help="send one alert and exit")
    parser.add_argument("--no-sound", action="store_true", help="disable the terminal bell")
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    return parser


def parse_cli_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    return build_arg_parser().parse_args(argv)


def config_from_args(args: argparse.Namespace, base: MonitorConfig) -> MonitorConfig:
    """CLI flags override environment values"""
    config = base.with_overrides(
        user_name=args.user,
        recipients_raw=args.recipients,
        speed_limit_kmh=args.speed_limit,
        min_speed_before_kmh=args.min_speed_before,
        max_speed_after_kmh=args.max_speed_after,
        min_deceleration_kmh=args.min_deceleration,
        correlation_window_ms=args.window_ms,
        backend_url=args.backend,
        relay_provider=args.provider,
        impact_poll_ms=args.poll_ms,
        ably_api_key=args.ably_key,
        dashboard_channel=args.channel,
    )
    if args.mock:
        config = config.with_overrides(
            user_name=config.user_name or MOCK_USER_NAME,
            recipients_raw=config.recipients_raw or MOCK_RECIPIENTS,
        )
    return config


async def main(argv: Optional[List[str]] = None) -> int:
    args = parse_cli_args(argv)
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)
    try:
        config = config_from_args(args, load_config(env_file=args.env_file))
    except ConfigError as e:
        logger.error(f" Configuration error: {e}")
        return 2

    try:
        app = CrashMonitorApp(args, config)
        return await app.run()
    except Exception as e:
        logger.error(f" Fatal error: {e}")
        return 1
    finally:
        logger.info(" Exited")


def cli() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )
    try:
        code = asyncio.run(main())
    except KeyboardInterrupt:
        logger.info(" Interrupted")
        code = 130
    sys.exit(code)


if __name__ == "__main__":
    cli()
