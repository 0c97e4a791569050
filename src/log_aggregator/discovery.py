"""Pod discovery and, in streaming mode, dynamic membership tracking.

The coordinator owns the target set and the ActiveLoopRegistry. Watch
notifications are applied one at a time on the event loop through
``handle_event``, which is the only code path that adds or removes poll loops
while a run is in progress.
"""

import asyncio
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Set

from loguru import logger

from interfaces.cluster_api import ClusterApi, PodWatchEvent, WatchStream
from models import KubeLogRequest, TargetPod
from utils.api_error import describe_exception

from .accumulator import DiagnosticLog
from .errors import NoPodsFoundError, OwnerResolutionError, SelectionError
from .filters import LogFilters
from .poll_loop import ContainerPollLoop, loop_key

SUPPORTED_OWNER_KINDS = ("Deployment", "DaemonSet", "StatefulSet", "ReplicaSet", "Job")

LoopFactory = Callable[[TargetPod, str], ContainerPollLoop]


@dataclass(frozen=True)
class PodSelection:
    namespace: str
    pod_name: Optional[str] = None
    label_selector: Optional[str] = None
    owner_kind: Optional[str] = None
    owner_name: Optional[str] = None

    @classmethod
    def from_request(cls, request: KubeLogRequest) -> "PodSelection":
        return cls(
            namespace=request.namespace or "default",
            pod_name=(request.pod_name or "").strip() or None,
            label_selector=(request.label_selector or "").strip() or None,
            owner_kind=(request.owner_kind or "").strip() or None,
            owner_name=(request.owner_name or "").strip() or None,
        )

    @property
    def field_selector(self) -> Optional[str]:
        return f"metadata.name={self.pod_name}" if self.pod_name else None


def validate_selection(selection: PodSelection) -> None:
    """Fail fast on missing or contradictory pod selection criteria."""
    if selection.owner_kind and not selection.owner_name:
        raise SelectionError(f"ownerKind '{selection.owner_kind}' was provided without a matching ownerName")
    if selection.owner_name and not selection.owner_kind:
        raise SelectionError(f"ownerName '{selection.owner_name}' was provided without a matching ownerKind")
    if selection.owner_kind and selection.owner_kind not in SUPPORTED_OWNER_KINDS:
        raise SelectionError(
            f"Unsupported owner kind: {selection.owner_kind}. "
            f"Supported kinds: {', '.join(SUPPORTED_OWNER_KINDS)}"
        )
    if not (selection.pod_name or selection.label_selector or selection.owner_kind):
        raise SelectionError(
            "no pod identification method provided: set pod_name, label_selector, or owner_kind with owner_name"
        )


def combine_selectors(*selectors: Optional[str]) -> Optional[str]:
    parts = [s.strip() for s in selectors if s and s.strip()]
    return ",".join(parts) or None


async def resolve_label_selector(api: ClusterApi, selection: PodSelection) -> Optional[str]:
    """Effective label selector: the owner's pod selector ANDed with the explicit one."""
    owner_selector = None
    if selection.owner_kind and selection.owner_name:
        try:
            owner_selector = await api.get_owner_selector(
                selection.namespace, selection.owner_kind, selection.owner_name
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise OwnerResolutionError(
                f"Failed to resolve owner selector for {selection.owner_kind}/{selection.owner_name}: "
                f"{describe_exception(e)}"
            ) from e
        if not owner_selector:
            raise OwnerResolutionError(
                f"{selection.owner_kind}/{selection.owner_name} has no pod selector labels"
            )
    return combine_selectors(owner_selector, selection.label_selector)


def no_pods_message(selection: PodSelection, label_selector: Optional[str], filters: LogFilters) -> str:
    criteria = []
    if selection.pod_name:
        criteria.append(f"pod_name={selection.pod_name}")
    if label_selector:
        criteria.append(f"label_selector={label_selector}")
    if selection.owner_kind:
        criteria.append(f"owner={selection.owner_kind}/{selection.owner_name}")
    if filters.pod is not None:
        criteria.append(f"pod_pattern={filters.pod.pattern}")
    return (
        f"No pods matched {', '.join(criteria)} in namespace '{selection.namespace}'. "
        "Check the namespace, verify the labels with a pod list, "
        "or relax pod_pattern; the owner may also have zero replicas."
    )


def pod_selected(pod: TargetPod, selection: PodSelection, filters: LogFilters) -> bool:
    if selection.pod_name and pod.name != selection.pod_name:
        return False
    return filters.pod_selected(pod.name)


async def discover_pods(
    api: ClusterApi,
    selection: PodSelection,
    label_selector: Optional[str],
    filters: LogFilters,
) -> Dict[str, TargetPod]:
    """List the initial target set; an empty result is fatal."""
    pods = await api.list_pods(
        selection.namespace,
        label_selector=label_selector,
        field_selector=selection.field_selector,
    )
    targets = {pod.name: pod for pod in pods if pod.name and pod_selected(pod, selection, filters)}
    if not targets:
        raise NoPodsFoundError(no_pods_message(selection, label_selector, filters))
    logger.info(f"Discovered {len(targets)} pods in {selection.namespace} (selector={label_selector})")
    return targets


class ActiveLoopRegistry:
    """Poll loops currently tailing, keyed by ``pod|container``."""

    def __init__(self):
        self._loops: Dict[str, ContainerPollLoop] = {}
        self._ever: Set[str] = set()

    def __contains__(self, key: str) -> bool:
        return key in self._loops

    def __len__(self) -> int:
        return len(self._loops)

    def keys(self) -> List[str]:
        return list(self._loops.keys())

    def loops(self) -> List[ContainerPollLoop]:
        return list(self._loops.values())

    @property
    def started_total(self) -> int:
        return len(self._ever)

    def add(self, loop: ContainerPollLoop) -> bool:
        if loop.key in self._loops:
            return False
        self._loops[loop.key] = loop
        self._ever.add(loop.key)
        return True

    def remove_pod(self, pod_name: str) -> List[ContainerPollLoop]:
        prefix = f"{pod_name}|"
        removed = [self._loops.pop(key) for key in list(self._loops) if key.startswith(prefix)]
        for loop in removed:
            loop.stop()
        return removed

    def stop_all(self) -> List[ContainerPollLoop]:
        removed = list(self._loops.values())
        self._loops.clear()
        for loop in removed:
            loop.stop()
        return removed


class WatchCoordinator:
    """Tracks pod membership and keeps exactly one poll loop per (pod, container)."""

    def __init__(
        self,
        api: ClusterApi,
        selection: PodSelection,
        label_selector: Optional[str],
        filters: LogFilters,
        loop_factory: LoopFactory,
        diagnostics: Optional[DiagnosticLog] = None,
        timeout_seconds: Optional[int] = None,
    ):
        self.api = api
        self.selection = selection
        self.label_selector = label_selector
        self.filters = filters
        self.loop_factory = loop_factory
        self.diagnostics = diagnostics if diagnostics is not None else DiagnosticLog()
        self.timeout_seconds = timeout_seconds

        self.targets: Dict[str, TargetPod] = {}
        self.registry = ActiveLoopRegistry()
        self.seen_pods: Set[str] = set()
        self.retired: List[ContainerPollLoop] = []

        self._stream: Optional[WatchStream] = None
        self._task: Optional[asyncio.Task] = None
        self._stopped = False

    def track(self, pod: TargetPod) -> List[ContainerPollLoop]:
        """Add or refresh a pod and start loops for containers not yet tailed."""
        self.targets[pod.name] = pod
        self.seen_pods.add(pod.name)
        started = []
        for container in pod.containers:
            if not container or not self.filters.container_selected(container):
                continue
            if loop_key(pod.name, container) in self.registry:
                continue
            loop = self.loop_factory(pod, container)
            if self.registry.add(loop):
                loop.start()
                started.append(loop)
        if started:
            logger.info(f"Tailing {pod.namespace}/{pod.name}: {', '.join(l.container for l in started)}")
        return started

    def untrack(self, pod_name: str) -> List[ContainerPollLoop]:
        """Forget a pod and stop every loop tailing it."""
        self.targets.pop(pod_name, None)
        removed = self.registry.remove_pod(pod_name)
        self.retired.extend(removed)
        if removed:
            logger.info(f"Stopped {len(removed)} poll loops for deleted pod {pod_name}")
        return removed

    def handle_event(self, event: PodWatchEvent) -> None:
        if self._stopped:
            return
        pod = event.pod
        if not pod or not pod.name:
            return
        if event.type in ("ADDED", "MODIFIED"):
            if pod_selected(pod, self.selection, self.filters):
                self.track(pod)
        elif event.type == "DELETED":
            self.untrack(pod.name)

    async def _run(self) -> None:
        try:
            self._stream = self.api.watch_pods(
                self.selection.namespace,
                label_selector=self.label_selector,
                field_selector=self.selection.field_selector,
                timeout_seconds=self.timeout_seconds,
            )
            if self._stopped:
                self._stream.stop()
                return
            async for event in self._stream:
                if self._stopped:
                    break
                self.handle_event(event)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            message = f"pod watch in {self.selection.namespace}: {describe_exception(e)}"
            self.diagnostics.record(message)
            logger.warning(f"Pod watch failed for {message}")

    def start(self) -> "WatchCoordinator":
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name=f"pod-watch:{self.selection.namespace}")
        return self

    def stop(self) -> None:
        """Stop the pod watch; poll loops are stopped separately via the registry."""
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
