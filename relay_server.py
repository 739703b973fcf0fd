# relay_server.py
"""
Impact store and SMS relay backend (Flask).

The helmet posts its impact vector here, the monitor polls it back and
submits crash alerts, which are forwarded to the SMS provider.
"""

from dotenv import load_dotenv
load_dotenv()

import logging
import os
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, List, Optional, Tuple

import requests
from flask import Flask, jsonify, make_response, request

from monitor_config import normalize_phone_number

logger = logging.getLogger("CrashMonitor.RelayServer")

# ===============================
# CONFIG
# ===============================
PORT = int(os.getenv("PORT", "3000"))
DEFAULT_PROVIDER_NAME = "philsms"
DEFAULT_PROVIDER_URL = "https://app.philsms.com/api/v3/sms/send"
PROVIDER_TIMEOUT = 15.0  # seconds


@dataclass(frozen=True)
class ProviderSettings:
    name: str = DEFAULT_PROVIDER_NAME
    url: str = DEFAULT_PROVIDER_URL
    api_token: str = ""
    sender_id: str = ""
    timeout: float = PROVIDER_TIMEOUT

    @property
    def configured(self) -> bool:
        return bool(self.api_token and self.sender_id and self.url)

    @classmethod
    def from_env(cls) -> "ProviderSettings":
        return cls(
            name=os.getenv("SMS_PROVIDER_NAME", DEFAULT_PROVIDER_NAME),
            url=os.getenv("SMS_PROVIDER_URL", DEFAULT_PROVIDER_URL),
            api_token=os.getenv("SMS_API_TOKEN", ""),
            sender_id=os.getenv("SMS_SENDER_ID", ""),
        )


class ImpactStore:
    """Latest helmet impact vector: [front, back, left, right]"""

    def __init__(self):
        self._lock = threading.Lock()
        self.state: List[bool] = [False, False, False, False]
        self.last_updated = _now_iso()

    def update(self, state: List[bool]) -> None:
        with self._lock:
            self.state = list(state)
            self.last_updated = _now_iso()

    def snapshot(self) -> Tuple[List[bool], str]:
        with self._lock:
            return list(self.state), self.last_updated


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def is_impact_vector(value: Any) -> bool:
    return isinstance(value, list) and len(value) == 4 and all(isinstance(v, bool) for v in value)


# ===============================
# SMS provider call
# ===============================
def send_via_provider(settings: ProviderSettings, recipients: List[str], message: str) -> Tuple[int, Optional[Any]]:
    """
    One POST to the SMS provider for the whole batch.

    Returns the HTTP status and the parsed JSON body (None when not JSON).
    Raises requests.RequestException on network failure.
    """
    payload = {
        "recipient": ",".join(recipients),
        "sender_id": settings.sender_id,
        "type": "plain",
        "message": message,
    }
    headers = {
        "Content-Type": "application/json",
        "Accept": "application/json",
        "Authorization": f"Bearer {settings.api_token}",
    }
    r = requests.post(settings.url, json=payload, headers=headers, timeout=settings.timeout)
    try:
        body = r.json()
    except ValueError:
        body = None
    return r.status_code, body


def _provider_ok(status: int, body: Any) -> bool:
    if not 200 <= status < 300 or not isinstance(body, dict):
        return False
    return body.get("status", "success") == "success"


# ===============================
# App
# ===============================
def create_app(settings: Optional[ProviderSettings] = None, store: Optional[ImpactStore] = None) -> Flask:
    app = Flask(__name__)
    settings = settings or ProviderSettings.from_env()
    store = store or ImpactStore()
    app.config["PROVIDER_SETTINGS"] = settings
    app.config["IMPACT_STORE"] = store

    if not settings.configured:
        logger.warning("SMS provider not configured (SMS_API_TOKEN / SMS_SENDER_ID); send route disabled.")

    @app.after_request
    def add_cors_headers(response):
        response.headers["Access-Control-Allow-Origin"] = "*"
        response.headers["Access-Control-Allow-Methods"] = "GET,POST,OPTIONS"
        response.headers["Access-Control-Allow-Headers"] = "Content-Type"
        return response

    @app.route("/")
    def index():
        return "Crash alert backend is running!"

    # ---------- Helmet impact ----------

    @app.route("/api/impact", methods=["POST", "OPTIONS"])
    def post_impact():
        if request.method == "OPTIONS":
            return make_response("", 204)

        data = request.get_json(force=True, silent=True)
        if not is_impact_vector(data):
            logger.warning(f"Invalid data format for /api/impact: {data!r}")
            return make_response(jsonify({
                "message": "Invalid data format. Expecting a JSON array with 4 boolean elements."
            }), 400)

        store.update(data)
        logger.info(f"Updated impact state: {data}")
        return jsonify({"message": "Impact array received successfully", "state": data}), 200

    @app.route("/api/latest-impact", methods=["GET"])
    def latest_impact():
        state, updated = store.snapshot()
        return jsonify({"impactState": state, "lastUpdated": updated}), 200

    # ---------- SMS relay ----------

    @app.route("/api/send-<provider>", methods=["POST", "OPTIONS"])
    def send_sms(provider):
        if request.method == "OPTIONS":
            return make_response("", 204)
        if provider != settings.name:
            return make_response(jsonify({"error": f"Unknown provider: {provider}"}), 404)
        if not settings.configured:
            return make_response(jsonify({"error": "SMS provider is not configured on the server."}), 503)

        data = request.get_json(force=True, silent=True) or {}
        recipients = data.get("recipients") if isinstance(data, dict) else None
        message = data.get("message") if isinstance(data, dict) else None
        if not isinstance(recipients, list) or not recipients or not message:
            return make_response(jsonify({"error": "Missing required data (recipients, message)."}), 400)

        numbers = []
        for raw in recipients:
            num = normalize_phone_number(raw)
            if num is None:
                logger.warning(f"Invalid or unexpected number format: {raw}. Skipping.")
                continue
            numbers.append(num)
        if not numbers:
            return make_response(jsonify({"error": "No valid recipient numbers found after formatting."}), 400)

        number_text = ",".join(numbers)
        logger.info(f"Sending SMS via {settings.name} to {number_text}")
        try:
            status, body = send_via_provider(settings, numbers, message)
        except requests.RequestException as e:
            logger.error(f"Network error calling {settings.name}: {e}")
            return make_response(jsonify({
                "result": [{"success": False, "error": f"Backend Fetch/Network Error: {e}", "number": number_text}]
            }), 500)

        if body is None:
            logger.error(f"{settings.name} returned a non-JSON response (HTTP {status})")
            return make_response(jsonify({
                "result": [{"success": False, "error": f"Provider returned a non-JSON response (HTTP {status})", "number": number_text}]
            }), 502)

        if not _provider_ok(status, body):
            detail = body.get("message") if isinstance(body, dict) else None
            logger.error(f"{settings.name} error: HTTP {status}, response: {body}")
            code = status if status >= 400 else 500
            return make_response(jsonify({
                "result": [{"success": False, "error": f"Provider Error: {detail or 'Unknown API error'}", "number": number_text}]
            }), code)

        logger.info(f"{settings.name} success: {body}")
        return jsonify({"result": [{"success": True, "details": body, "number": number_text}]}), 200

    return app


# ===============================
# Start server
# ===============================
def main(port: int = PORT) -> None:
    """Console entry point (`crash-relay`)."""
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
    app = create_app()
    logger.info(f"Crash alert backend listening on port {port}")
    logger.info("  Helmet should POST to: /api/impact")
    logger.info("  Monitor polls: /api/latest-impact, sends via: /api/send-<provider>")
    app.run(host="0.0.0.0", port=port)


if __name__ == "__main__":
    main()
