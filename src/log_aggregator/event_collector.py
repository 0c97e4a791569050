"""Cluster events scoped to the target pods or their owner.

Events are best-effort enrichment: list and watch failures are logged and
recorded as diagnostics but never fail the aggregation.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Collection, Dict, List, Optional

from loguru import logger

from interfaces.cluster_api import ClusterApi, WatchStream
from models import ClusterEvent, LogLine
from utils.api_error import describe_exception

from .accumulator import DiagnosticLog, LineAccumulator
from .timeutil import format_rfc3339, parse_rfc3339, sort_key, utc_now

DEFAULT_EVENTS_PER_POD = 10


def event_cutoff(
    since_seconds: Optional[int] = None,
    since_time: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Optional[datetime]:
    """Oldest event time to keep; ``since_time`` takes precedence over ``since``."""
    if since_time:
        parsed = parse_rfc3339(since_time)
        if parsed is not None:
            return parsed
    if since_seconds:
        return (now or utc_now()) - timedelta(seconds=since_seconds)
    return None


@dataclass
class EventScope:
    """Time, type and involvement predicate shared by snapshot and watch mode.

    ``pod_names`` is a live view (typically the coordinator's target map), so
    pods discovered after the scope was built are covered too.
    """
    pod_names: Collection[str] = field(default_factory=set)
    owner_kind: Optional[str] = None
    owner_name: Optional[str] = None
    event_type: str = "All"
    cutoff: Optional[datetime] = None

    @property
    def has_owner(self) -> bool:
        return bool(self.owner_kind and self.owner_name)

    def field_selector(self) -> Optional[str]:
        if not self.has_owner:
            return None
        return f"involvedObject.kind={self.owner_kind},involvedObject.name={self.owner_name}"

    def involves(self, event: ClusterEvent) -> bool:
        if self.has_owner and event.involved_kind == self.owner_kind and event.involved_name == self.owner_name:
            return True
        return event.involved_kind == "Pod" and event.involved_name in self.pod_names

    def matches(self, event: ClusterEvent) -> bool:
        if self.event_type != "All" and event.type and event.type != self.event_type:
            return False
        if self.cutoff is not None:
            ts = parse_rfc3339(event.timestamp)
            if ts is not None and ts < self.cutoff:
                return False
        return self.involves(event)


def event_message(event: ClusterEvent) -> str:
    prefix = f"[{event.reason}] " if event.reason else ""
    return f"{prefix}{event.message or ''}".strip()


def event_to_line(event: ClusterEvent, namespace: str) -> LogLine:
    return LogLine(
        type="event",
        timestamp=event.timestamp or format_rfc3339(utc_now()),
        namespace=event.namespace or namespace,
        pod=event.involved_name or "-",
        message=event_message(event),
    )


def select_recent_events(
    events: List[ClusterEvent],
    scope: EventScope,
    per_object_limit: int,
) -> List[ClusterEvent]:
    """Keep the newest ``per_object_limit`` matching events per involved object."""
    grouped: Dict[str, List[ClusterEvent]] = {}
    for event in events:
        if not scope.matches(event):
            continue
        grouped.setdefault(event.involved_name or "-", []).append(event)

    selected: List[ClusterEvent] = []
    for bucket in grouped.values():
        bucket.sort(key=lambda e: sort_key(e.timestamp), reverse=True)
        selected.extend(bucket[:per_object_limit])
    return selected


async def collect_event_snapshot(
    api: ClusterApi,
    namespace: str,
    scope: EventScope,
    sink: LineAccumulator,
    diagnostics: Optional[DiagnosticLog] = None,
    per_object_limit: int = DEFAULT_EVENTS_PER_POD,
) -> int:
    """List namespace events once and append the matching ones to ``sink``."""
    try:
        events = await api.list_events(namespace)
    except asyncio.CancelledError:
        raise
    except Exception as e:
        message = f"events in {namespace}: {describe_exception(e)}"
        if diagnostics is not None:
            diagnostics.record(message)
        logger.warning(f"Event list failed for {message}")
        return 0

    selected = select_recent_events(events, scope, max(1, per_object_limit))
    added = sink.extend(event_to_line(event, namespace) for event in selected)
    logger.debug(f"Collected {added} of {len(events)} events in namespace {namespace}")
    return added


class EventWatcher:
    """Long-lived event watch feeding matching events into the accumulator."""

    def __init__(
        self,
        api: ClusterApi,
        namespace: str,
        scope: EventScope,
        sink: LineAccumulator,
        diagnostics: Optional[DiagnosticLog] = None,
        timeout_seconds: Optional[int] = None,
    ):
        self.api = api
        self.namespace = namespace
        self.scope = scope
        self.sink = sink
        self.diagnostics = diagnostics if diagnostics is not None else DiagnosticLog()
        self.timeout_seconds = timeout_seconds
        self.received = 0

        self._stream: Optional[WatchStream] = None
        self._task: Optional[asyncio.Task] = None
        self._stopped = False

    async def _run(self) -> None:
        try:
            self._stream = self.api.watch_events(
                self.namespace,
                field_selector=self.scope.field_selector(),
                timeout_seconds=self.timeout_seconds,
            )
            if self._stopped:
                self._stream.stop()
                return
            async for event in self._stream:
                if self._stopped or self.sink.sealed:
                    break
                self.received += 1
                if self.scope.matches(event):
                    self.sink.append(event_to_line(event, self.namespace))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            message = f"event watch in {self.namespace}: {describe_exception(e)}"
            self.diagnostics.record(message)
            logger.warning(f"Event watch failed for {message}")

    def start(self) -> "EventWatcher":
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name=f"event-watch:{self.namespace}")
        return self

    def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        if self._stream is not None:
            self._stream.stop()

    async def join(self, timeout: Optional[float] = None) -> None:
        task = self._task
        if task is None or task.done():
            return
        done, _ = await asyncio.wait({task}, timeout=timeout)
        if not done:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
