import asyncio

import pytest

from crash_detector import CrashState
from crash_monitor import SessionController
from dashboard import DisplayLevel
from fakes import BlockingRelay, FakeImpactSource, FakeRelay, FakeSampler, run
from location_sampler import PositionError, PositionErrorKind, Sample
from monitor_config import ConfigError
from monitor_events import ImpactPolled, ImpactPollFailed
from relay_client import ImpactReading, RelayError
from session_journal import LocalJournal
from speed_monitor import SilentAlert

FRONT_HIT = ImpactReading(state=(True, False, False, False))


def make_controller(config, clock, relay=None, journal=None):
    sampler = FakeSampler(fix=Sample(timestamp=clock(), speed_kmh=0.0, latitude=14.5995, longitude=120.9842))
    controller = SessionController(
        config,
        sampler,
        FakeImpactSource(),
        relay or FakeRelay(),
        alert=SilentAlert(),
        journal=journal,
        clock=clock,
    )
    return controller, sampler


async def trigger_crash(controller, sampler, clock):
    """Hard stop at +500 ms, helmet impact at +1200 ms; the alert is left in flight."""
    sampler.emit(60.0, clock())
    clock.advance(500)
    sampler.emit(3.0, clock())
    await controller.drain()
    clock.advance(700)
    controller.process(ImpactPolled(controller.generation, FRONT_HIT))


async def drive_crash(controller, sampler, clock):
    await trigger_crash(controller, sampler, clock)
    await controller.wait_for_dispatch()


def test_crash_triggers_one_dispatch(config, clock):
    relay = FakeRelay()

    async def scenario():
        controller, sampler = make_controller(config, clock, relay)
        await controller.start()
        sampler.emit(70.0, clock())
        await controller.drain()
        assert controller.speed_monitor.is_speeding
        assert controller.alert.playing

        await drive_crash(controller, sampler, clock)
        assert controller.crash_state == CrashState.TRIGGERED

        # Further signals while triggered are ignored
        sampler.emit(60.0, clock())
        sampler.emit(2.0, clock())
        await controller.drain()
        controller.process(ImpactPolled(controller.generation, FRONT_HIT))
        await controller.wait_for_dispatch()
        await controller.stop()
        return controller

    controller = run(scenario())
    assert len(relay.sent) == 1
    recipients, message = relay.sent[0]
    assert recipients == ["639171234567", "639181234567"]
    assert "Juan's phone" in message
    assert not controller.alert.playing
    assert controller.board.state.crash_visible
    assert controller.board.state.dispatch_status == "SMS sent: 2 succeeded, 0 failed"
    assert controller.stats["crashes"] == 1
    assert controller.last_dispatch.delivered


def test_manual_reset_rearms_detection(config, clock):
    relay = FakeRelay()

    async def scenario():
        controller, sampler = make_controller(config, clock, relay)
        await controller.start()
        await drive_crash(controller, sampler, clock)

        assert controller.reset_alert()
        await controller.drain()
        assert controller.crash_state == CrashState.ARMED
        assert not controller.board.state.crash_visible
        assert controller.speed_monitor.previous_speed_kmh == 0.0

        clock.advance(10_000)
        await drive_crash(controller, sampler, clock)
        state = controller.crash_state
        await controller.stop()
        return state

    assert run(scenario()) == CrashState.TRIGGERED
    assert len(relay.sent) == 2


def test_recrash_while_first_alert_in_flight_sends_second_alert(config, clock):
    relay = BlockingRelay()

    async def scenario():
        controller, sampler = make_controller(config, clock, relay)
        await controller.start()
        await trigger_crash(controller, sampler, clock)
        await asyncio.sleep(0.05)

        assert controller.reset_alert()
        await controller.drain()
        clock.advance(10_000)
        await trigger_crash(controller, sampler, clock)
        # Only the manual resend waits its turn
        refused = controller.resend_alert()

        relay.release()
        await controller.wait_for_dispatch()
        await controller.stop()
        return controller, refused

    controller, refused = run(scenario())
    assert refused is None
    assert controller.stats["crashes"] == 2
    assert len(relay.sent) == 2
    assert controller.stats["dispatches"] == 2


def test_alert_finishing_after_reset_leaves_board_alone(config, clock):
    relay = BlockingRelay()

    async def scenario():
        controller, sampler = make_controller(config, clock, relay)
        await controller.start()
        await trigger_crash(controller, sampler, clock)
        await asyncio.sleep(0.05)
        location_shown = controller.board.state.crash_location

        controller.reset_alert()
        await controller.drain()
        relay.release()
        await controller.wait_for_dispatch()
        board = controller.board.state
        snapshot = (board.crash_visible, board.crash_location, board.dispatch_status)
        await controller.stop()
        return controller, location_shown, snapshot

    controller, location_shown, snapshot = run(scenario())
    assert location_shown.startswith("Location: Lat:")
    assert snapshot == (False, "", "")
    assert len(relay.sent) == 1
    assert controller.last_dispatch.delivered
    assert controller.dispatcher.stats["stale_board_writes"] >= 1


def test_alert_finishing_after_restart_stays_out_of_new_session(config, clock):
    relay = BlockingRelay()

    async def scenario():
        controller, sampler = make_controller(config, clock, relay)
        await controller.start()
        await trigger_crash(controller, sampler, clock)
        await asyncio.sleep(0.05)
        await controller.stop()

        await controller.start()
        relay.release()
        await controller.wait_for_dispatch()
        board = controller.board.state
        snapshot = (board.status, board.crash_visible, board.dispatch_status)
        await controller.stop()
        return snapshot

    assert run(scenario()) == ("Status: Monitoring...", False, "")
    assert len(relay.sent) == 1


def test_location_error_clears_speeding_until_next_fast_sample(config, clock):
    async def scenario():
        controller, sampler = make_controller(config, clock)
        await controller.start()
        board = controller.board.state
        sampler.emit(70.0, clock())
        await controller.drain()
        before = (board.display_level, controller.speed_monitor.is_speeding)

        sampler.fail(PositionError(PositionErrorKind.UNAVAILABLE, "no signal"))
        await controller.drain()
        during = (board.display_level, controller.speed_monitor.is_speeding, controller.alert.playing)

        sampler.emit(75.0, clock())
        await controller.drain()
        after = (board.display_level, controller.speed_monitor.is_speeding, controller.alert.playing)
        await controller.stop()
        return before, during, after

    before, during, after = run(scenario())
    assert before == (DisplayLevel.SPEEDING, True)
    assert during == (DisplayLevel.NORMAL, False, False)
    assert after == (DisplayLevel.SPEEDING, True, True)


def test_dispatch_failure_keeps_location(config, clock):
    relay = FakeRelay(RelayError("sender blocked", 500))

    async def scenario():
        controller, sampler = make_controller(config, clock, relay)
        await controller.start()
        await drive_crash(controller, sampler, clock)
        await controller.stop()
        return controller

    controller = run(scenario())
    board = controller.board.state
    assert board.dispatch_status == "Error sending SMS: sender blocked"
    assert board.crash_location == "Location: Lat: 14.59950, Lon: 120.98420"
    assert board.map_link is not None
    assert controller.last_dispatch.error == "sender blocked"


def test_null_speed_breaks_deceleration_pair(config, clock):
    async def scenario():
        controller, sampler = make_controller(config, clock)
        await controller.start()
        sampler.emit(60.0, clock())
        sampler.emit(None, clock())
        sampler.emit(3.0, clock())
        await controller.drain()
        await controller.stop()
        return controller

    controller = run(scenario())
    assert controller.trip.deceleration_events == 0
    assert controller.trip.null_speed_samples == 1


def test_invalid_config_refuses_to_start(config, clock):
    async def scenario():
        controller, sampler = make_controller(config.with_overrides(user_name="", correlation_window_ms=0), clock)
        with pytest.raises(ConfigError) as exc:
            await controller.start()
        return controller, sampler, exc.value

    controller, sampler, error = run(scenario())
    assert "user name is required" in error.problems
    assert any("correlation window" in p for p in error.problems)
    assert not controller.running
    assert sampler.started == 0
    assert controller.crash_state == CrashState.IDLE


def test_stop_is_idempotent_and_drops_late_events(config, clock):
    async def scenario():
        controller, sampler = make_controller(config, clock)
        await controller.start()
        late_callback = sampler.on_sample
        await controller.stop()
        await controller.stop()
        assert controller.crash_state == CrashState.IDLE
        assert sampler.stopped == [1]

        await controller.start()
        late_callback(Sample(timestamp=clock(), speed_kmh=99.0))
        await controller.drain()
        await controller.stop()
        return controller

    controller = run(scenario())
    assert controller.stats["samples"] == 0
    assert controller.stats["events_dropped_stale"] == 1
    assert controller.stats["sessions"] == 2


def test_permission_denied_stops_session(config, clock):
    async def scenario():
        controller, sampler = make_controller(config, clock)
        await controller.start()
        sampler.fail(PositionError(PositionErrorKind.PERMISSION_DENIED, "denied"))
        await asyncio.wait_for(controller.stopped.wait(), timeout=2.0)
        return controller

    controller = run(scenario())
    assert not controller.running
    assert controller.board.state.status == "Status: Stopped (location permission denied)"
    assert controller.stats["errors"] == 1


def test_transient_errors_keep_monitoring(config, clock):
    async def scenario():
        controller, sampler = make_controller(config, clock)
        await controller.start()
        sampler.fail(PositionError(PositionErrorKind.UNAVAILABLE, "no signal"))
        await controller.drain()
        speed_text = controller.board.state.speed_text
        controller.process(ImpactPollFailed(controller.generation, RelayError("offline")))
        impact_text = controller.board.state.impact_status
        running = controller.running
        await controller.stop()
        return controller, speed_text, impact_text, running

    controller, speed_text, impact_text, running = run(scenario())
    assert running
    assert speed_text == "Speed: Error"
    assert "offline" in impact_text
    assert controller.stats["position_errors"] == 1


def test_manual_alert_and_test_alert(config, clock):
    relay = FakeRelay()

    async def scenario():
        controller, _ = make_controller(config, clock, relay)
        first = await controller.send_test_alert()
        task = controller.resend_alert()
        second = await task
        return first, second

    first, second = run(scenario())
    assert first.delivered and second.delivered
    assert len(relay.sent) == 2


def test_session_is_journaled(config, clock, tmp_path):
    journal = LocalJournal(str(tmp_path), "trip")

    async def scenario():
        controller, sampler = make_controller(config, clock, journal=journal)
        await controller.start()
        await drive_crash(controller, sampler, clock)
        await controller.stop()

    run(scenario())
    journal.close()
    kinds = [r["kind"] for r in journal.iter_records()]
    for kind in ("session_start", "sample", "deceleration", "impact", "crash", "dispatch", "session_stop"):
        assert kind in kinds
    assert kinds.index("deceleration") < kinds.index("crash") < kinds.index("dispatch")
