import pytest
import requests

from fakes import FakeResponse, FakeSession
from relay_client import (
    ImpactReading,
    RelayError,
    RelayHTTPClient,
    extract_error_message,
    parse_delivery_report,
    parse_impact_state,
)


def make_client(*responses):
    session = FakeSession(*responses)
    return RelayHTTPClient("http://relay.test/", session=session), session


@pytest.mark.parametrize(
    "body, expected",
    [
        ({"result": [{"error": "first"}], "error": "second"}, "first"),
        ({"result": [{"success": False}], "error": "second", "message": "third"}, "second"),
        ({"message": "third"}, "third"),
        ({"error": 42, "message": "third"}, "third"),
        ({"error": "   "}, "fallback"),
        ({}, "fallback"),
        (None, "fallback"),
        (["not", "a", "dict"], "fallback"),
    ],
)
def test_error_message_rules_in_order(body, expected):
    assert extract_error_message(body, "fallback") == expected


def test_parse_impact_state():
    reading = parse_impact_state({"impactState": [True, False, True, False]})
    assert reading.any_impact
    assert reading.locations == ["Front", "Left"]
    assert reading.describe() == "Impact detected at: Front, Left"


@pytest.mark.parametrize(
    "body",
    [{}, {"impactState": [True, False]}, {"impactState": [1, 0, 0, 0]}, None],
)
def test_malformed_impact_state(body):
    with pytest.raises(RelayError):
        parse_impact_state(body)


def test_no_impact_description():
    assert ImpactReading(state=(False,) * 4).describe() == "No impact detected"


def test_delivery_report_counts_partial_success():
    report = parse_delivery_report({
        "result": [
            {"success": True, "number": "639171234567"},
            {"success": False, "error": "invalid number", "number": "639181234567"},
        ]
    })
    assert report.succeeded == 1
    assert report.failed == 1
    assert not report.all_ok
    assert report.summary() == "SMS sent: 1 succeeded, 1 failed (invalid number)"


def test_send_sms_posts_once():
    client, session = make_client(FakeResponse(200, {"result": [{"success": True}]}))
    report = client.send_sms(["639171234567"], "hello")
    assert report.all_ok
    assert len(session.calls) == 1
    call = session.calls[0]
    assert call["url"] == "http://relay.test/api/send-philsms"
    assert call["json"] == {"recipients": ["639171234567"], "message": "hello"}
    assert call["timeout"] == client.send_timeout


def test_send_sms_reports_body_error_text():
    client, _ = make_client(FakeResponse(500, {"error": "sender blocked"}, reason="Internal Server Error"))
    with pytest.raises(RelayError) as exc:
        client.send_sms(["639171234567"], "hello")
    assert exc.value.message == "sender blocked"
    assert exc.value.status_code == 500


def test_send_sms_falls_back_to_status_text():
    client, _ = make_client(FakeResponse(503, reason="Service Unavailable", json_error=True))
    with pytest.raises(RelayError) as exc:
        client.send_sms(["639171234567"], "hello")
    assert exc.value.message == "HTTP 503 Service Unavailable"


def test_send_sms_network_failure():
    client, _ = make_client(requests.ConnectionError("refused"))
    with pytest.raises(RelayError, match="Relay unreachable"):
        client.send_sms(["639171234567"], "hello")


def test_send_sms_non_json_success_is_an_error():
    client, _ = make_client(FakeResponse(200, json_error=True))
    with pytest.raises(RelayError, match="non-JSON"):
        client.send_sms(["639171234567"], "hello")


def test_latest_impact():
    client, session = make_client(FakeResponse(200, {"impactState": [False, True, False, False]}))
    reading = client.latest_impact()
    assert reading.locations == ["Back"]
    assert session.calls[0]["url"] == "http://relay.test/api/latest-impact"


def test_latest_impact_http_error():
    client, _ = make_client(FakeResponse(404, {"message": "not found"}))
    with pytest.raises(RelayError, match="not found"):
        client.latest_impact()


def test_close_releases_session():
    client, session = make_client()
    client.close()
    assert session.closed
