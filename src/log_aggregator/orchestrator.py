"""Entry point of the aggregation engine: mode selection, lifecycle and output shaping."""

import asyncio
import math
from typing import Iterable, List, Optional, Tuple

from loguru import logger

from interfaces.cluster_api import ClusterApi
from models import KubeLogOutput, KubeLogRequest, KubeLogStats, LogLine, TargetPod

from .accumulator import DiagnosticLog, LineAccumulator
from .discovery import (
    PodSelection,
    WatchCoordinator,
    discover_pods,
    resolve_label_selector,
    validate_selection,
)
from .errors import InvalidParameterError, LogFetchError
from .event_collector import (
    DEFAULT_EVENTS_PER_POD,
    EventScope,
    EventWatcher,
    collect_event_snapshot,
    event_cutoff,
)
from .filters import LogFilters
from .poll_loop import ContainerPollLoop, LogFetchOptions
from .timeutil import parse_duration, parse_rfc3339

# extra seconds granted to server-side watch timeouts beyond the run duration
WATCH_TIMEOUT_SLACK = 5


def build_fetch_options(request: KubeLogRequest) -> LogFetchOptions:
    since_seconds = None
    if request.since:
        try:
            since_seconds = parse_duration(request.since)
        except ValueError as e:
            raise InvalidParameterError(str(e)) from e
    if request.since_time and parse_rfc3339(request.since_time) is None:
        raise InvalidParameterError(f"Invalid since_time: {request.since_time}. Use RFC3339, e.g. 2024-01-01T10:00:00Z")
    return LogFetchOptions(
        tail_lines=request.tail_lines if request.tail_lines else None,
        since_seconds=since_seconds,
        since_time=request.since_time or None,
        previous=request.previous,
    )


def render_text(lines: Iterable[LogLine], timestamps: bool = True) -> str:
    """Flatten lines to ``<timestamp> <scope>: <message>``, one per line."""
    rendered = []
    for line in lines:
        if line.type == "event":
            scope = f"[event] {line.namespace}/{line.pod}"
        else:
            scope = f"{line.namespace}/{line.pod}"
            if line.container:
                scope += f"/{line.container}"
        prefix = f"{line.timestamp} " if timestamps else ""
        rendered.append(f"{prefix}{scope}: {line.message}")
    return "\n".join(rendered)


class KubeLogAggregator:
    """Aggregate logs and events of a dynamic pod set.

    A zero duration runs in snapshot mode: one fetch per selected container
    plus one event list, no polling loops and no watches. A positive
    duration runs in streaming mode until the duration elapses or
    ``max_lines`` lines have been collected, tracking pods as they come and go.
    """

    def __init__(
        self,
        api: ClusterApi,
        poll_interval: float = 1.0,
        stop_tick: float = 0.25,
        teardown_grace: float = 2.0,
        default_event_limit: int = DEFAULT_EVENTS_PER_POD,
        max_duration_seconds: Optional[float] = None,
    ):
        self.api = api
        self.poll_interval = poll_interval
        self.stop_tick = stop_tick
        self.teardown_grace = teardown_grace
        self.default_event_limit = default_event_limit
        self.max_duration_seconds = max_duration_seconds

    async def run(self, request: KubeLogRequest) -> KubeLogOutput:
        selection = PodSelection.from_request(request)
        validate_selection(selection)
        options = build_fetch_options(request)
        filters = LogFilters.from_request(request)

        label_selector = await resolve_label_selector(self.api, selection)
        targets = await discover_pods(self.api, selection, label_selector, filters)

        sink = LineAccumulator(request.max_lines)
        diagnostics = DiagnosticLog()
        scope = EventScope(
            pod_names=set(targets),
            owner_kind=selection.owner_kind,
            owner_name=selection.owner_name,
            event_type=request.event_type,
            cutoff=event_cutoff(options.since_seconds, options.since_time),
        )

        def make_loop(pod: TargetPod, container: str) -> ContainerPollLoop:
            return ContainerPollLoop(
                self.api,
                namespace=pod.namespace or selection.namespace,
                pod=pod.name,
                container=container,
                options=options,
                filters=filters,
                sink=sink,
                diagnostics=diagnostics,
                interval=self.poll_interval,
            )

        if request.is_snapshot:
            pods, containers = await self._run_snapshot(
                request, selection, targets, make_loop, filters, scope, sink, diagnostics
            )
        else:
            pods, containers = await self._run_streaming(
                request, selection, label_selector, targets, make_loop, filters, scope, sink, diagnostics
            )

        lines = sink.finalize()
        logger.info(
            f"kube_log finished in {selection.namespace}: pods={pods} containers={containers} "
            f"lines={len(lines)} dropped={sink.dropped}"
        )
        return KubeLogOutput(
            namespace=selection.namespace,
            stats=KubeLogStats(pods=pods, containers=containers, lines=len(lines), dropped_lines=sink.dropped),
            lines=lines,
            diagnostics=diagnostics.entries() if not lines else [],
        )

    async def _run_snapshot(
        self, request, selection, targets, make_loop, filters, scope, sink, diagnostics
    ) -> Tuple[int, int]:
        loops: List[ContainerPollLoop] = [
            make_loop(pod, container)
            for pod in targets.values()
            for container in pod.containers
            if container and filters.container_selected(container)
        ]
        logger.info(f"Snapshot of {len(loops)} containers across {len(targets)} pods")

        jobs = [loop.fetch_snapshot() for loop in loops]
        if request.include_events:
            jobs.append(
                collect_event_snapshot(
                    self.api,
                    selection.namespace,
                    scope,
                    sink,
                    diagnostics,
                    per_object_limit=request.tail_lines or self.default_event_limit,
                )
            )
        results = await asyncio.gather(*jobs)

        succeeded = sum(1 for ok in results[:len(loops)] if ok)
        if loops and not succeeded and len(sink) == 0:
            raise LogFetchError(
                f"All {len(loops)} container log fetches failed",
                diagnostics=diagnostics.entries(),
            )
        return len(targets), len(loops)

    def _effective_duration(self, requested: float) -> float:
        if self.max_duration_seconds and requested > self.max_duration_seconds:
            logger.warning(f"duration_seconds={requested} capped to {self.max_duration_seconds}")
            return float(self.max_duration_seconds)
        return float(requested)

    async def _run_streaming(
        self, request, selection, label_selector, targets, make_loop, filters, scope, sink, diagnostics
    ) -> Tuple[int, int]:
        duration = self._effective_duration(request.duration_seconds)
        watch_timeout = int(math.ceil(duration)) + WATCH_TIMEOUT_SLACK

        coordinator = WatchCoordinator(
            self.api,
            selection,
            label_selector,
            filters,
            loop_factory=make_loop,
            diagnostics=diagnostics,
            timeout_seconds=watch_timeout,
        )
        for pod in targets.values():
            coordinator.track(pod)
        # events follow the live target set
        scope.pod_names = coordinator.targets

        watcher = None
        if request.include_events:
            watcher = EventWatcher(
                self.api, selection.namespace, scope, sink, diagnostics, timeout_seconds=watch_timeout
            ).start()
        coordinator.start()

        try:
            reason = await self._wait_for_stop(sink, duration)
            logger.info(f"Streaming stopped ({reason}) with {len(sink)} lines collected")
        except asyncio.CancelledError:
            logger.info(f"Streaming cancelled with {len(sink)} lines collected")
            raise
        finally:
            # children must stop even when the call itself is cancelled
            coordinator.stop()
            if watcher is not None:
                watcher.stop()
            loops = coordinator.registry.stop_all() + coordinator.retired

            joins = [coordinator.join(self.teardown_grace)]
            if watcher is not None:
                joins.append(watcher.join(self.teardown_grace))
            joins.extend(loop.join(self.teardown_grace) for loop in loops)
            await asyncio.gather(*joins)

        return len(coordinator.seen_pods), coordinator.registry.started_total

    async def _wait_for_stop(self, sink: LineAccumulator, duration: float) -> str:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + duration
        while True:
            if sink.is_full():
                return "max_lines"
            if loop.time() >= deadline:
                return "duration"
            await asyncio.sleep(self.stop_tick)
