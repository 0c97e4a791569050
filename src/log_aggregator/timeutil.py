"""Time helpers shared by the log aggregation engine."""

import math
import re
from datetime import datetime, timezone
from typing import Optional, Tuple

# Very loose check: YYYY-MM-DDTHH:MM:SS anywhere in the token
_RFC3339_HINT = re.compile(r"\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}")

_RFC3339_PARTS = re.compile(
    r"^(?P<base>\d{4}-\d{2}-\d{2}[Tt ]\d{2}:\d{2}:\d{2})"
    r"(?:\.(?P<frac>\d+))?"
    r"(?P<tz>[Zz]|[+-]\d{2}:?\d{2})?$"
)

_DURATION = re.compile(r"^(\d+)([smhd])$")

_UNIT_SECONDS = {"s": 1, "m": 60, "h": 3600, "d": 86400}

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_duration(duration: str) -> int:
    """Parse a duration such as "30s", "5m", "1h" or "2d" into seconds.

    Raises:
        ValueError: if the string does not match the expected format
    """
    match = _DURATION.match(str(duration).strip())
    if not match:
        raise ValueError(f'Invalid duration format: {duration}. Use format like "5m", "1h", "30s"')
    return int(match.group(1)) * _UNIT_SECONDS[match.group(2)]


def looks_like_rfc3339(token: str) -> bool:
    if not token or len(token) < 20:
        return False
    return bool(_RFC3339_HINT.search(token))


def parse_rfc3339(value: Optional[str]) -> Optional[datetime]:
    """Parse an RFC3339 timestamp into an aware UTC datetime.

    Kubelet prefixes log lines with nanosecond precision
    (``2024-05-01T10:00:00.123456789Z``); fractions are truncated to
    microseconds. Naive values are taken as UTC. Returns None when the value
    cannot be parsed.
    """
    if not value:
        return None
    match = _RFC3339_PARTS.match(str(value).strip())
    if not match:
        return None
    text = match.group("base").replace("t", "T").replace(" ", "T")
    frac = match.group("frac")
    if frac:
        text += "." + frac[:6].ljust(6, "0")
    tz = match.group("tz")
    if not tz or tz in ("Z", "z"):
        text += "+00:00"
    elif ":" not in tz:
        text += tz[:3] + ":" + tz[3:]
    else:
        text += tz
    try:
        return datetime.fromisoformat(text).astimezone(timezone.utc)
    except ValueError:
        return None


def format_rfc3339(value: datetime) -> str:
    """Format a datetime as RFC3339 in UTC with a ``Z`` suffix."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    if value.microsecond:
        return value.strftime("%Y-%m-%dT%H:%M:%S.%fZ")
    return value.strftime("%Y-%m-%dT%H:%M:%SZ")


def seconds_since(timestamp: str, now: Optional[datetime] = None) -> Optional[int]:
    """Whole seconds elapsed since ``timestamp`` rounded up, at least 1."""
    parsed = parse_rfc3339(timestamp)
    if parsed is None:
        return None
    now = now or utc_now()
    return max(1, math.ceil((now - parsed).total_seconds()))


def sort_key(timestamp: Optional[str]) -> datetime:
    # unparseable timestamps sort first
    return parse_rfc3339(timestamp) or _EPOCH


def precise_sort_key(timestamp: Optional[str]) -> Tuple[datetime, int]:
    """Like ``sort_key`` but keeps the nanoseconds that datetime truncates.

    RFC3339Nano drops trailing zeros, so fractions of different lengths must be
    compared as numbers rather than as text.
    """
    parsed = parse_rfc3339(timestamp)
    if parsed is None:
        return _EPOCH, 0
    match = _RFC3339_PARTS.match(str(timestamp).strip())
    frac = (match.group("frac") or "") if match else ""
    return parsed, int(frac[6:9].ljust(3, "0"))
