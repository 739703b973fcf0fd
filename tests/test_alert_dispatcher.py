from datetime import datetime, timezone

import pytest

from alert_dispatcher import (
    UNKNOWN_LOCATION,
    AlertDispatcher,
    build_alert_request,
    compose_message,
    format_alert_time,
    map_link,
)
from dashboard import StatusBoard
from fakes import FakeRelay, FakeResponse, FakeSampler, FakeSession, run
from location_sampler import PositionError, PositionErrorKind
from monitor_config import ConfigError
from relay_client import RelayError, RelayHTTPClient

WHEN = datetime(2024, 3, 1, 4, 5, 6, tzinfo=timezone.utc)


def test_alert_time_is_philippine_time():
    assert format_alert_time(WHEN) == "2024-03-01 12:05:06 PM PHT"


def test_message_with_coordinates():
    text = compose_message("Juan", WHEN, 14.5995, 120.9842)
    assert text.startswith("This is an automatic crash detection alert from Juan's phone.")
    assert "Lat: 14.59950, Lon: 120.98420" in text
    assert map_link(14.5995, 120.9842) in text
    assert "2024-03-01 12:05:06 PM PHT" in text


def test_message_without_coordinates():
    text = compose_message("Juan", WHEN)
    assert UNKNOWN_LOCATION in text
    assert "maps" not in text


def test_build_request_requires_endpoint_and_recipients(config):
    with pytest.raises(ConfigError) as exc:
        build_alert_request(config.with_overrides(backend_url="", recipients_raw="123"), None, WHEN)
    assert exc.value.problems == ["relay endpoint is not configured", "no emergency contacts saved"]


def test_build_request_defaults_user_name(config, fix):
    request = build_alert_request(config.with_overrides(user_name=""), fix, WHEN)
    assert request.user_name == "User"
    assert request.recipients == ("639171234567", "639181234567")
    assert request.has_coordinates


def test_dispatch_error_keeps_location_visible(config, fix):
    board = StatusBoard()
    board.show_crash()
    session = FakeSession(FakeResponse(500, {"error": "sender blocked"}, reason="Internal Server Error"))
    relay = RelayHTTPClient(config.backend_url, session=session)
    dispatcher = AlertDispatcher(FakeSampler(fix=fix), relay, board)

    result = run(dispatcher.dispatch(config))

    assert result.error == "sender blocked"
    assert not result.delivered
    assert board.state.crash_location == "Location: Lat: 14.59950, Lon: 120.98420"
    assert board.state.map_link == "https://www.google.com/maps?q=14.5995,120.9842"
    assert board.state.dispatch_status == "Error sending SMS: sender blocked"
    assert board.state.crash_visible
    assert len(session.calls) == 1


def test_dispatch_without_location_still_sends(config):
    board = StatusBoard()
    relay = FakeRelay()
    sampler = FakeSampler(fix_error=PositionError(PositionErrorKind.TIMEOUT, "no fix within 15s"))
    dispatcher = AlertDispatcher(sampler, relay, board)

    result = run(dispatcher.dispatch(config))

    assert result.delivered
    assert result.location_error == "no fix within 15s"
    assert board.state.crash_location == "Location: Error fetching location (no fix within 15s)"
    recipients, message = relay.sent[0]
    assert recipients == ["639171234567", "639181234567"]
    assert UNKNOWN_LOCATION in message
    assert board.state.dispatch_status == "SMS sent: 2 succeeded, 0 failed"


def test_config_error_makes_no_network_call(config, fix):
    board = StatusBoard()
    relay = FakeRelay()
    dispatcher = AlertDispatcher(FakeSampler(fix=fix), relay, board)

    result = run(dispatcher.dispatch(config.with_overrides(recipients_raw="555")))

    assert relay.sent == []
    assert "no emergency contacts saved" in result.error
    assert board.state.dispatch_status.startswith("Configuration error:")
    assert dispatcher.stats == {"dispatches": 1, "delivered": 0, "failed": 1}


def test_relay_error_is_counted(config, fix):
    dispatcher = AlertDispatcher(FakeSampler(fix=fix), FakeRelay(RelayError("quota exceeded", 429)), StatusBoard())
    result = run(dispatcher.dispatch(config))
    assert result.error == "quota exceeded"
    assert result.to_record()["has_coordinates"] is True
    assert dispatcher.stats["failed"] == 1


def test_dispatch_stops_writing_once_no_longer_current(config, fix):
    board = StatusBoard()
    board.show_crash()
    relay = FakeRelay()
    dispatcher = AlertDispatcher(FakeSampler(fix=fix), relay, board)
    answers = iter([True, False, False])

    result = run(dispatcher.dispatch(config, is_current=lambda: next(answers)))

    assert result.delivered
    assert len(relay.sent) == 1
    assert board.state.crash_location == "Location: Lat: 14.59950, Lon: 120.98420"
    assert board.state.dispatch_status == ""
    assert dispatcher.stats["stale_board_writes"] == 2
