# monitor_config.py
"""
Configuration for the crash monitor.

Defaults live as module constants, can be overridden from the environment
(CRASH_* variables, optionally from a .env file) and finally from CLI flags.
The merged result is an immutable MonitorConfig snapshot taken per session.
"""

import logging
import os
import re
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

from dotenv import load_dotenv

logger = logging.getLogger("CrashMonitor.Config")

# ------------------------------
# Defaults
# ------------------------------

DEFAULT_SPEED_LIMIT_KMH = 60.0
DEFAULT_MIN_SPEED_BEFORE_KMH = 30.0
DEFAULT_MAX_SPEED_AFTER_KMH = 5.0
DEFAULT_MIN_DECELERATION_KMH = 25.0
DEFAULT_CORRELATION_WINDOW_MS = 2000.0
DEFAULT_IMPACT_POLL_MS = 1000.0
DEFAULT_RELAY_PROVIDER = "philsms"
DEFAULT_DASHBOARD_CHANNEL = "crash-monitor"
DEFAULT_USER_NAME = "User"

# Accepted local mobile formats: 09XXXXXXXXX or +639XXXXXXXXX
PH_MOBILE_PATTERN = re.compile(r"^(09\d{9}|\+639\d{9})$")

ENV_PREFIX = "CRASH_"


class ConfigError(ValueError):
    """Raised when the monitor configuration is missing or invalid."""

    def __init__(self, problems: List[str]):
        self.problems = list(problems)
        super().__init__("; ".join(self.problems))


# ------------------------------
# Phone numbers
# ------------------------------

def clean_phone_numbers(raw: Optional[str]) -> List[str]:
    """Split a comma-separated contact list and keep the entries in an accepted format."""
    if not raw:
        return []
    return [n.strip() for n in raw.split(",") if PH_MOBILE_PATTERN.match(n.strip())]


def normalize_phone_number(number: str) -> Optional[str]:
    """Map an accepted local number to the canonical 639XXXXXXXXX form."""
    num = str(number).strip()
    if num.startswith("+63") and len(num) == 13:
        return num[1:]
    if num.startswith("09") and len(num) == 11:
        return "63" + num[1:]
    if num.startswith("639") and len(num) == 12:
        return num
    return None


def normalize_recipients(raw: Optional[str]) -> List[str]:
    """Clean then normalize a raw contact list, dropping duplicates but keeping order."""
    out: List[str] = []
    for num in clean_phone_numbers(raw):
        canonical = normalize_phone_number(num)
        if canonical and canonical not in out:
            out.append(canonical)
    return out


# ------------------------------
# Config snapshot
# ------------------------------

@dataclass(frozen=True)
class MonitorConfig:
    """Immutable configuration snapshot for one monitoring session"""
    user_name: str = ""
    recipients_raw: str = ""
    speed_limit_kmh: Optional[float] = DEFAULT_SPEED_LIMIT_KMH

    # Hard-braking rule
    min_speed_before_kmh: float = DEFAULT_MIN_SPEED_BEFORE_KMH
    max_speed_after_kmh: float = DEFAULT_MAX_SPEED_AFTER_KMH
    min_deceleration_kmh: float = DEFAULT_MIN_DECELERATION_KMH

    # Fusion
    correlation_window_ms: float = DEFAULT_CORRELATION_WINDOW_MS

    # Backend (impact state + SMS relay)
    backend_url: str = ""
    relay_provider: str = DEFAULT_RELAY_PROVIDER
    impact_poll_ms: float = DEFAULT_IMPACT_POLL_MS

    # Live dashboard (optional)
    ably_api_key: str = ""
    dashboard_channel: str = DEFAULT_DASHBOARD_CHANNEL

    @property
    def recipients(self) -> List[str]:
        return normalize_recipients(self.recipients_raw)

    @property
    def display_name(self) -> str:
        return self.user_name.strip() or DEFAULT_USER_NAME

    @property
    def impact_poll_interval(self) -> float:
        """Impact poll interval in seconds"""
        return self.impact_poll_ms / 1000.0

    def problems(self, require_backend: bool = True) -> List[str]:
        """List every invalid or missing field (empty list when valid)."""
        found: List[str] = []

        if not self.user_name.strip():
            found.append("user name is required")
        if not self.recipients_raw.strip():
            found.append("recipient list is required")
        elif not self.recipients:
            found.append(
                "no valid PH phone numbers; use 09xxxxxxxxx or +639xxxxxxxxx, comma-separated"
            )
        if self.speed_limit_kmh is None:
            found.append("speed limit is required")

        positive = {
            "speed limit": self.speed_limit_kmh,
            "minimum speed before braking": self.min_speed_before_kmh,
            "minimum deceleration": self.min_deceleration_kmh,
            "correlation window": self.correlation_window_ms,
            "impact poll interval": self.impact_poll_ms,
        }
        for name, value in positive.items():
            if value is None:
                continue
            if not _is_number(value) or value <= 0:
                found.append(f"{name} must be a positive number (got {value!r})")

        if not _is_number(self.max_speed_after_kmh) or self.max_speed_after_kmh < 0:
            found.append(
                f"maximum speed after braking must be zero or more (got {self.max_speed_after_kmh!r})"
            )

        if require_backend or self.backend_url:
            if not is_absolute_url(self.backend_url):
                found.append(f"backend URL must be an absolute http(s) URL (got {self.backend_url!r})")

        return found

    def validate(self, require_backend: bool = True) -> "MonitorConfig":
        """Raise ConfigError listing every problem; return self when valid."""
        found = self.problems(require_backend=require_backend)
        if found:
            raise ConfigError(found)
        return self

    def with_overrides(self, **overrides: Any) -> "MonitorConfig":
        """Return a copy with the non-None overrides applied"""
        changes = {k: v for k, v in overrides.items() if v is not None}
        return replace(self, **changes)

    def to_log_dict(self) -> Dict[str, Any]:
        """Loggable view of the config (secrets masked)"""
        return {
            "user_name": self.display_name,
            "recipients": self.recipients,
            "speed_limit_kmh": self.speed_limit_kmh,
            "min_speed_before_kmh": self.min_speed_before_kmh,
            "max_speed_after_kmh": self.max_speed_after_kmh,
            "min_deceleration_kmh": self.min_deceleration_kmh,
            "correlation_window_ms": self.correlation_window_ms,
            "backend_url": self.backend_url,
            "relay_provider": self.relay_provider,
            "impact_poll_ms": self.impact_poll_ms,
            "dashboard": bool(self.ably_api_key),
        }


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and value == value


def is_absolute_url(url: str) -> bool:
    if not url:
        return False
    parsed = urlparse(url)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


# ------------------------------
# Environment loading
# ------------------------------

_ENV_FIELDS = {
    "USER_NAME": ("user_name", str),
    "RECIPIENTS": ("recipients_raw", str),
    "SPEED_LIMIT": ("speed_limit_kmh", float),
    "MIN_SPEED_BEFORE": ("min_speed_before_kmh", float),
    "MAX_SPEED_AFTER": ("max_speed_after_kmh", float),
    "MIN_DECELERATION": ("min_deceleration_kmh", float),
    "CORRELATION_WINDOW_MS": ("correlation_window_ms", float),
    "BACKEND_URL": ("backend_url", str),
    "RELAY_PROVIDER": ("relay_provider", str),
    "IMPACT_POLL_MS": ("impact_poll_ms", float),
    "ABLY_API_KEY": ("ably_api_key", str),
    "ABLY_CHANNEL": ("dashboard_channel", str),
}


def load_config(
    env: Optional[Dict[str, str]] = None,
    env_file: Optional[str] = ".env",
) -> MonitorConfig:
    """
    Build a MonitorConfig from defaults and CRASH_* environment variables.

    Args:
        env: Mapping to read instead of os.environ (used by tests)
        env_file: .env file merged into os.environ first; None skips it

    Raises:
        ConfigError: If a numeric variable cannot be parsed
    """
    if env is None:
        if env_file:
            load_dotenv(env_file)
        env = dict(os.environ)

    values: Dict[str, Any] = {}
    bad: List[str] = []
    for suffix, (attr, kind) in _ENV_FIELDS.items():
        raw = env.get(ENV_PREFIX + suffix)
        if raw is None or raw.strip() == "":
            continue
        if kind is float:
            try:
                values[attr] = float(raw)
            except ValueError:
                bad.append(f"{ENV_PREFIX + suffix} is not a number: {raw!r}")
        else:
            values[attr] = raw.strip()

    if bad:
        raise ConfigError(bad)

    config = MonitorConfig(**values)
    logger.debug(f"Loaded config from environment: {config.to_log_dict()}")
    return config
