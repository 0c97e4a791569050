"""Cursor driven periodic log fetch for a single (pod, container)."""

import asyncio
import math
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from loguru import logger

from interfaces.cluster_api import ClusterApi
from models import LogLine
from utils.api_error import describe_exception

from .accumulator import DiagnosticLog, LineAccumulator
from .filters import LogFilters
from .line_processor import PollCursor, process_log_text
from .timeutil import parse_rfc3339, seconds_since, utc_now


@dataclass(frozen=True)
class LogFetchOptions:
    """Static log window requested by the caller."""
    tail_lines: Optional[int] = None
    since_seconds: Optional[int] = None
    since_time: Optional[str] = None
    previous: bool = False


def loop_key(pod: str, container: str) -> str:
    return f"{pod}|{container}"


class ContainerPollLoop:
    """Fetch one container's logs every ``interval`` seconds until stopped.

    Each fetch re-requests a window that overlaps the previous one; the
    private PollCursor guarantees a (timestamp, message) pair is emitted at
    most once over the lifetime of the loop. Fetch errors are recorded and
    the loop simply tries again on the next tick.
    """

    def __init__(
        self,
        api: ClusterApi,
        namespace: str,
        pod: str,
        container: str,
        options: LogFetchOptions,
        filters: LogFilters,
        sink: LineAccumulator,
        diagnostics: Optional[DiagnosticLog] = None,
        interval: float = 1.0,
    ):
        self.api = api
        self.namespace = namespace
        self.pod = pod
        self.container = container
        self.options = options
        self.filters = filters
        self.sink = sink
        self.diagnostics = diagnostics if diagnostics is not None else DiagnosticLog()
        self.interval = interval

        self.cursor = PollCursor()
        self.fetch_count = 0
        self.error_count = 0
        self.success_count = 0

        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @property
    def key(self) -> str:
        return loop_key(self.pod, self.container)

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    def compute_since_seconds(self, now: Optional[datetime] = None) -> Optional[int]:
        """Window for the next fetch.

        After the first timestamped line the window reaches back to the
        cursor plus a one second cushion; before that the caller's static
        ``since``/``since_time`` applies, otherwise the fetch is unbounded.
        """
        now = now or utc_now()
        last = parse_rfc3339(self.cursor.last_since_timestamp)
        if last is not None:
            return max(1, math.ceil((now - last).total_seconds()) + 1)
        return self._static_since_seconds(now)

    async def _fetch(self, previous: bool, cursor: Optional[PollCursor]) -> bool:
        if cursor is None:
            # previous-instance and snapshot fetches use the static window only
            since_seconds = self._static_since_seconds()
            tail_lines = self.options.tail_lines
        else:
            since_seconds = self.compute_since_seconds()
            tail_lines = self.options.tail_lines if cursor.last_since_timestamp is None else None

        self.fetch_count += 1
        fetched_at = utc_now()
        try:
            text = await self.api.read_pod_log(
                self.namespace,
                self.pod,
                self.container,
                previous=previous,
                tail_lines=tail_lines,
                since_seconds=since_seconds,
                timestamps=True,
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.error_count += 1
            message = f"{self.namespace}/{self.pod}/{self.container}: {describe_exception(e)}"
            self.diagnostics.record(message)
            logger.warning(f"Log fetch failed for {message}")
            return False

        self.success_count += 1
        lines: List[LogLine] = process_log_text(
            text,
            namespace=self.namespace,
            pod=self.pod,
            container=self.container,
            filters=self.filters,
            cursor=cursor,
            fetched_at=fetched_at,
        )
        if self.sink.sealed:
            logger.debug(f"Discarding {len(lines)} late lines from {self.key}")
            return True
        self.sink.extend(lines)
        logger.debug(
            f"Fetched {len(lines)} lines from {self.key} "
            f"(since_seconds={since_seconds}, tail_lines={tail_lines}, previous={previous})"
        )
        return True

    def _static_since_seconds(self, now: Optional[datetime] = None) -> Optional[int]:
        if self.options.since_seconds:
            return max(1, self.options.since_seconds)
        if self.options.since_time:
            return seconds_since(self.options.since_time, now)
        return None

    async def fetch_snapshot(self) -> bool:
        """Fetch exactly once with the caller's window. Returns True on success."""
        return await self._fetch(previous=self.options.previous, cursor=None)

    async def _run(self) -> None:
        if self.options.previous:
            await self._fetch(previous=True, cursor=None)
        while not self._stop_event.is_set():
            await self._fetch(previous=False, cursor=self.cursor)
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
        logger.debug(f"Poll loop {self.key} stopped after {self.fetch_count} fetches")

    def start(self) -> "ContainerPollLoop":
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name=f"poll-loop:{self.key}")
        return self

    def stop(self) -> None:
        """Signal the loop to stop; no further fetches are issued. Idempotent."""
        self._stop_event.set()

    async def join(self, timeout: Optional[float] = None) -> None:
        """Wait for the loop task to finish, cancelling it after ``timeout``."""
        task = self._task
        if task is None or task.done():
            return
        done, _ = await asyncio.wait({task}, timeout=timeout)
        if not done:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
