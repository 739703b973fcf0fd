# relay_client.py
"""
HTTP client for the crash-alert backend.

The same backend serves the helmet's latest impact state and relays SMS
messages through a third-party provider.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import requests

logger = logging.getLogger("CrashMonitor.Relay")

IMPACT_POLL_TIMEOUT = 4.0  # seconds
RELAY_POST_TIMEOUT = 20.0  # seconds

IMPACT_PATH = "/api/latest-impact"
SEND_PATH_TEMPLATE = "/api/send-{provider}"

# Sensor order in the impact vector
IMPACT_LOCATIONS = ("Front", "Back", "Left", "Right")


class RelayError(Exception):
    """Impact backend or relay failure with the most specific message available."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


# ------------------------------
# Error-message extraction
# ------------------------------

def _first_result_error(body: Any) -> Optional[Any]:
    result = body.get("result") if isinstance(body, dict) else None
    if isinstance(result, list) and result and isinstance(result[0], dict):
        return result[0].get("error")
    return None


def _top_level(key: str) -> Callable[[Any], Optional[Any]]:
    def rule(body: Any) -> Optional[Any]:
        return body.get(key) if isinstance(body, dict) else None
    return rule


# Tried in order; the first non-empty string wins
ERROR_MESSAGE_RULES: List[Callable[[Any], Optional[Any]]] = [
    _first_result_error,
    _top_level("error"),
    _top_level("message"),
]


def extract_error_message(body: Any, fallback: str) -> str:
    """Return the first error string found in a parsed JSON body, else the fallback."""
    for rule in ERROR_MESSAGE_RULES:
        value = rule(body)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return fallback


# ------------------------------
# Response models
# ------------------------------

@dataclass(frozen=True)
class ImpactReading:
    """Latest helmet sensor state: front, back, left, right"""
    state: tuple

    @property
    def any_impact(self) -> bool:
        return any(self.state)

    @property
    def locations(self) -> List[str]:
        return [name for name, hit in zip(IMPACT_LOCATIONS, self.state) if hit]

    def describe(self) -> str:
        if not self.any_impact:
            return "No impact detected"
        return f"Impact detected at: {', '.join(self.locations)}"


def parse_impact_state(body: Any) -> ImpactReading:
    """Validate a `{impactState: [bool x4]}` body."""
    state = body.get("impactState") if isinstance(body, dict) else None
    if not (isinstance(state, list) and len(state) == 4 and all(isinstance(v, bool) for v in state)):
        raise RelayError(f"Malformed impact state: {state!r}")
    return ImpactReading(state=tuple(state))


@dataclass
class DeliveryReport:
    """Per-recipient outcome of one relay submission"""
    succeeded: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)
    details: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def all_ok(self) -> bool:
        return self.failed == 0 and self.succeeded > 0

    def summary(self) -> str:
        text = f"SMS sent: {self.succeeded} succeeded, {self.failed} failed"
        if self.errors:
            text += f" ({'; '.join(self.errors)})"
        return text


def parse_delivery_report(body: Any) -> DeliveryReport:
    """Count successes and failures in a `{result: [...]}` body."""
    result = body.get("result") if isinstance(body, dict) else None
    if not isinstance(result, list) or not result:
        raise RelayError("Malformed relay response: missing result list")

    report = DeliveryReport()
    for item in result:
        if not isinstance(item, dict):
            raise RelayError("Malformed relay response: result entry is not an object")
        report.details.append(item)
        if item.get("success") is True:
            report.succeeded += 1
        else:
            report.failed += 1
            err = item.get("error")
            if isinstance(err, str) and err:
                report.errors.append(err)
    return report


# ------------------------------
# Client
# ------------------------------

class RelayHTTPClient:
    """
    Blocking HTTP client for the backend (run it through asyncio.to_thread).
    """

    def __init__(
        self,
        base_url: str,
        provider: str = "philsms",
        impact_timeout: float = IMPACT_POLL_TIMEOUT,
        send_timeout: float = RELAY_POST_TIMEOUT,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.provider = provider
        self.impact_timeout = impact_timeout
        self.send_timeout = send_timeout
        self.headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        self._session = session

    @property
    def send_url(self) -> str:
        return self.base_url + SEND_PATH_TEMPLATE.format(provider=self.provider)

    @property
    def impact_url(self) -> str:
        return self.base_url + IMPACT_PATH

    def _get_session(self):
        if self._session is None:
            self._session = requests.Session()
            self._session.headers.update(self.headers)
        return self._session

    def latest_impact(self) -> ImpactReading:
        """
        GET the helmet's latest impact vector.

        Raises:
            RelayError: On network failure, non-2xx status or a malformed body
        """
        session = self._get_session()
        try:
            response = session.get(self.impact_url, timeout=self.impact_timeout)
        except requests.RequestException as e:
            raise RelayError(f"Impact backend unreachable: {e}") from e

        body = _json_or_none(response)
        if not response.ok:
            raise RelayError(
                extract_error_message(body, f"HTTP {response.status_code}"),
                status_code=response.status_code,
            )
        return parse_impact_state(body)

    def send_sms(self, recipients: List[str], message: str) -> DeliveryReport:
        """
        POST one alert to the relay. Single attempt.

        Raises:
            RelayError: With the most specific error text the response offers
        """
        session = self._get_session()
        payload = {"recipients": list(recipients), "message": message}
        try:
            response = session.post(self.send_url, json=payload, timeout=self.send_timeout)
        except requests.RequestException as e:
            raise RelayError(f"Relay unreachable: {e}") from e

        body = _json_or_none(response)
        if not response.ok:
            raise RelayError(
                extract_error_message(body, f"HTTP {response.status_code} {response.reason or ''}".strip()),
                status_code=response.status_code,
            )
        if body is None:
            raise RelayError("Relay returned a non-JSON response", status_code=response.status_code)
        return parse_delivery_report(body)

    def close(self):
        """Close the HTTP session"""
        if self._session:
            self._session.close()
            self._session = None


def _json_or_none(response) -> Optional[Any]:
    try:
        return response.json()
    except ValueError:
        return None
