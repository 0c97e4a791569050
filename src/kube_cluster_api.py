"""ClusterApi backed by the official Kubernetes python client.

The client is blocking: request/response calls are moved off the event loop
with ``asyncio.to_thread`` and watches are pumped on a daemon thread that
hands every notification to the loop with ``call_soon_threadsafe``.
"""

import asyncio
import threading
from typing import Any, Callable, Dict, List, Optional

from kubernetes import watch
from kubernetes.client.rest import ApiException
from loguru import logger

from interfaces.cluster_api import ClusterApi, PodWatchEvent, WatchStream
from log_aggregator.timeutil import format_rfc3339
from models import ClusterEvent, TargetPod
from utils.api_error import ClusterApiError
from utils.utils import handle_api_exception

_END = object()


def _compact(**kwargs) -> Dict[str, Any]:
    return {k: v for k, v in kwargs.items() if v is not None}


def _timestamp(value) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return format_rfc3339(value)


def match_labels_selector(match_labels: Optional[Dict[str, str]]) -> str:
    if not match_labels:
        return ""
    return ",".join(f"{k}={v}" for k, v in sorted(match_labels.items()))


def pod_to_target(pod) -> TargetPod:
    metadata = pod.metadata
    spec = pod.spec
    containers = [c.name for c in (getattr(spec, "containers", None) or []) if c.name]
    return TargetPod(
        name=metadata.name,
        namespace=metadata.namespace or "",
        containers=containers,
        labels=dict(metadata.labels or {}),
    )


def event_to_cluster_event(event) -> ClusterEvent:
    """Project a CoreV1Event; the timestamp prefers lastTimestamp, then eventTime, then firstTimestamp."""
    metadata = event.metadata
    involved = event.involved_object
    source = event.source
    timestamp = event.last_timestamp or getattr(event, "event_time", None) or event.first_timestamp
    return ClusterEvent(
        namespace=(metadata.namespace if metadata else None) or "",
        name=metadata.name if metadata else None,
        type=event.type,
        reason=event.reason,
        message=event.message,
        timestamp=_timestamp(timestamp),
        first_timestamp=_timestamp(event.first_timestamp),
        count=event.count,
        involved_kind=involved.kind if involved else None,
        involved_name=involved.name if involved else None,
        involved_namespace=involved.namespace if involved else None,
        source_component=source.component if source else None,
        source_host=source.host if source else None,
    )


class ThreadedWatchStream(WatchStream):
    """Runs ``watch.Watch().stream`` on a daemon thread and exposes it as an async iterator.

    Must be created from within a running event loop. ``transform`` maps a raw
    watch notification to the item to yield, or None to skip it.
    """

    def __init__(
        self,
        list_func: Callable,
        transform: Callable[[Dict[str, Any]], Any],
        name: str,
        **kwargs,
    ):
        self._loop = asyncio.get_running_loop()
        self._queue: asyncio.Queue = asyncio.Queue()
        self._transform = transform
        self._watch = watch.Watch()
        self._stop_requested = threading.Event()
        self._finished = False
        self._thread = threading.Thread(
            target=self._pump, args=(list_func, kwargs), name=name, daemon=True
        )
        self._thread.start()

    def _put(self, item) -> None:
        try:
            self._loop.call_soon_threadsafe(self._queue.put_nowait, item)
        except RuntimeError:
            # event loop already closed
            logger.debug("Watch notification dropped after event loop shutdown")

    def _pump(self, list_func: Callable, kwargs: Dict[str, Any]) -> None:
        try:
            for raw in self._watch.stream(list_func, **kwargs):
                if self._stop_requested.is_set():
                    break
                item = self._transform(raw)
                if item is not None:
                    self._put(item)
        except ApiException as e:
            if not self._stop_requested.is_set():
                self._put(ClusterApiError.from_api_exception(e))
        except Exception as e:
            if not self._stop_requested.is_set():
                self._put(e)
        finally:
            self._put(_END)

    async def __anext__(self):
        if self._finished:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _END:
            self._finished = True
            raise StopAsyncIteration
        if isinstance(item, BaseException):
            self._finished = True
            raise item
        return item

    def stop(self) -> None:
        if self._stop_requested.is_set():
            return
        self._stop_requested.set()
        self._watch.stop()
        self._put(_END)


def _pod_watch_item(raw: Dict[str, Any]) -> Optional[PodWatchEvent]:
    event_type = raw.get("type")
    obj = raw.get("object")
    if event_type not in ("ADDED", "MODIFIED", "DELETED") or obj is None or isinstance(obj, dict):
        return None
    return PodWatchEvent(type=event_type, pod=pod_to_target(obj))


def _event_watch_item(raw: Dict[str, Any]) -> Optional[ClusterEvent]:
    obj = raw.get("object")
    if raw.get("type") not in ("ADDED", "MODIFIED") or obj is None or isinstance(obj, dict):
        return None
    return event_to_cluster_event(obj)


class KubernetesClusterApi(ClusterApi):
    """ClusterApi implementation over CoreV1Api and AppsV1Api."""

    def __init__(self, core_v1, apps_v1, request_timeout: Optional[int] = 30):
        self.core_v1 = core_v1
        self.apps_v1 = apps_v1
        self.request_timeout = request_timeout

    # ---- blocking internals ----

    @handle_api_exception
    def _list_pods(self, namespace, label_selector, field_selector) -> List[TargetPod]:
        resp = self.core_v1.list_namespaced_pod(
            namespace,
            **_compact(
                label_selector=label_selector,
                field_selector=field_selector,
                _request_timeout=self.request_timeout,
            ),
        )
        return [pod_to_target(pod) for pod in resp.items or []]

    @handle_api_exception
    def _read_pod_log(self, namespace, pod, container, previous, tail_lines, since_seconds, timestamps) -> str:
        text = self.core_v1.read_namespaced_pod_log(
            pod,
            namespace,
            **_compact(
                container=container,
                previous=previous or None,
                tail_lines=tail_lines,
                since_seconds=since_seconds,
                timestamps=timestamps,
                _request_timeout=self.request_timeout,
            ),
        )
        if isinstance(text, bytes):
            text = text.decode("utf-8", "replace")
        return text or ""

    @handle_api_exception
    def _list_events(self, namespace, field_selector, limit) -> List[ClusterEvent]:
        kwargs = _compact(field_selector=field_selector, limit=limit, _request_timeout=self.request_timeout)
        if namespace:
            resp = self.core_v1.list_namespaced_event(namespace, **kwargs)
        else:
            resp = self.core_v1.list_event_for_all_namespaces(**kwargs)
        return [event_to_cluster_event(e) for e in resp.items or []]

    @handle_api_exception
    def _get_owner_selector(self, namespace, kind, name) -> str:
        if kind == "Job":
            return f"job-name={name}"
        readers = {
            "Deployment": self.apps_v1.read_namespaced_deployment,
            "DaemonSet": self.apps_v1.read_namespaced_daemon_set,
            "StatefulSet": self.apps_v1.read_namespaced_stateful_set,
            "ReplicaSet": self.apps_v1.read_namespaced_replica_set,
        }
        reader = readers.get(kind)
        if reader is None:
            raise ValueError(f"Unsupported owner kind: {kind}")
        owner = reader(name, namespace, _request_timeout=self.request_timeout)
        selector = owner.spec.selector if owner.spec else None
        return match_labels_selector(selector.match_labels if selector else None)

    # ---- ClusterApi ----

    async def list_pods(self, namespace, label_selector=None, field_selector=None) -> List[TargetPod]:
        return await asyncio.to_thread(self._list_pods, namespace, label_selector, field_selector)

    def watch_pods(self, namespace, label_selector=None, field_selector=None, timeout_seconds=None) -> WatchStream:
        logger.debug(f"Opening pod watch in {namespace} (labels={label_selector}, fields={field_selector})")
        return ThreadedWatchStream(
            self.core_v1.list_namespaced_pod,
            _pod_watch_item,
            name=f"pod-watch-{namespace}",
            **_compact(
                namespace=namespace,
                label_selector=label_selector,
                field_selector=field_selector,
                timeout_seconds=timeout_seconds,
            ),
        )

    async def read_pod_log(
        self,
        namespace,
        pod,
        container=None,
        previous=False,
        tail_lines=None,
        since_seconds=None,
        timestamps=True,
    ) -> str:
        return await asyncio.to_thread(
            self._read_pod_log, namespace, pod, container, previous, tail_lines, since_seconds, timestamps
        )

    async def list_events(self, namespace=None, field_selector=None, limit=None) -> List[ClusterEvent]:
        return await asyncio.to_thread(self._list_events, namespace, field_selector, limit)

    def watch_events(self, namespace, field_selector=None, timeout_seconds=None) -> WatchStream:
        logger.debug(f"Opening event watch in {namespace} (fields={field_selector})")
        return ThreadedWatchStream(
            self.core_v1.list_namespaced_event,
            _event_watch_item,
            name=f"event-watch-{namespace}",
            **_compact(namespace=namespace, field_selector=field_selector, timeout_seconds=timeout_seconds),
        )

    async def get_owner_selector(self, namespace, kind, name) -> str:
        return await asyncio.to_thread(self._get_owner_selector, namespace, kind, name)
