"""Turn raw per-container log text into structured, filtered LogLines."""

import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any, List, Optional, Tuple

from models import LogLine

from .filters import LogFilters
from .timeutil import format_rfc3339, looks_like_rfc3339, precise_sort_key, utc_now

_NOT_JSON = object()

Signature = Tuple[Tuple[datetime, int], str]


@dataclass
class PollCursor:
    """Progress of one container's poll loop.

    Owned by exactly one loop; never shared.
    """
    last_since_timestamp: Optional[str] = None
    last_signature: Optional[Signature] = None

    def admit(self, signature: Signature) -> bool:
        """Advance the cursor if ``signature`` is strictly newer."""
        if self.last_signature is not None and signature <= self.last_signature:
            return False
        self.last_signature = signature
        return True


def split_timestamp(raw: str) -> Tuple[Optional[str], str]:
    """Split a leading RFC3339 token (as added by ``timestamps=true``) off a line.

    Returns ``(None, raw)`` when the first token does not look like a timestamp.
    """
    space = raw.find(" ")
    token = raw[:space] if space >= 0 else ""
    if looks_like_rfc3339(token):
        return token, raw[space + 1:]
    return None, raw


def parse_json_message(message: str) -> Any:
    trimmed = message.strip()
    if not trimmed or trimmed[0] not in "{[":
        return _NOT_JSON
    try:
        return json.loads(trimmed)
    except ValueError:
        return _NOT_JSON


def dedupe_signature(timestamp: str, message: str) -> Signature:
    """Order by the parsed instant, then by message."""
    return precise_sort_key(timestamp), message


def process_log_text(
    log_text: Optional[str],
    namespace: str,
    pod: str,
    container: str,
    filters: LogFilters,
    cursor: Optional[PollCursor] = None,
    fetched_at: Optional[datetime] = None,
) -> List[LogLine]:
    """Parse the text of one log fetch into LogLines.

    Lines without a recognizable timestamp are stamped with ``fetched_at``.
    When a cursor is given, lines whose dedupe signature does not exceed the
    last emitted one are skipped and the cursor's since-timestamp advances to
    the newest real timestamp seen.
    """
    if not log_text:
        return []

    fallback_ts = format_rfc3339(fetched_at or utc_now())
    emitted: List[LogLine] = []
    for raw in str(log_text).split("\n"):
        raw = raw.rstrip()
        if not raw:
            continue

        ts, message = split_timestamp(raw)
        if ts is not None and cursor is not None:
            cursor.last_since_timestamp = ts
        if ts is None:
            ts = fallback_ts

        if not filters.message_selected(message):
            continue

        payload = parse_json_message(message)
        if payload is not _NOT_JSON and filters.json_paths and not filters.payload_selected(payload):
            continue

        if cursor is not None and not cursor.admit(dedupe_signature(ts, message)):
            continue

        emitted.append(
            LogLine(
                type="log",
                timestamp=ts,
                namespace=namespace,
                pod=pod,
                container=container,
                message=message,
                payload=None if payload is _NOT_JSON else payload,
            )
        )
    return emitted
