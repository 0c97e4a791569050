"""Abstract boundary to the Kubernetes API consumed by the log aggregation engine.

Every call is a suspension point: implementations backed by a blocking client
must move the work off the event loop. Watches are exposed as async iterators
that can be stopped from the consumer side at any time.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional

from models import ClusterEvent, TargetPod


@dataclass(frozen=True)
class PodWatchEvent:
    """A single pod watch notification (ADDED / MODIFIED / DELETED)."""
    type: str
    pod: TargetPod


class WatchStream(ABC):
    """Async iterator over watch notifications with an idempotent ``stop()``."""

    def __aiter__(self) -> "WatchStream":
        return self

    @abstractmethod
    async def __anext__(self):
        raise NotImplementedError

    @abstractmethod
    def stop(self) -> None:
        """Stop the watch. Safe to call more than once."""
        raise NotImplementedError


class ClusterApi(ABC):
    """Kubernetes API operations needed to discover pods and read logs/events."""

    @abstractmethod
    async def list_pods(
        self,
        namespace: str,
        label_selector: Optional[str] = None,
        field_selector: Optional[str] = None,
    ) -> List[TargetPod]:
        raise NotImplementedError

    @abstractmethod
    def watch_pods(
        self,
        namespace: str,
        label_selector: Optional[str] = None,
        field_selector: Optional[str] = None,
        timeout_seconds: Optional[int] = None,
    ) -> WatchStream:
        """Open a pod watch yielding PodWatchEvent items."""
        raise NotImplementedError

    @abstractmethod
    async def read_pod_log(
        self,
        namespace: str,
        pod: str,
        container: Optional[str] = None,
        previous: bool = False,
        tail_lines: Optional[int] = None,
        since_seconds: Optional[int] = None,
        timestamps: bool = True,
    ) -> str:
        raise NotImplementedError

    @abstractmethod
    async def list_events(
        self,
        namespace: Optional[str] = None,
        field_selector: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[ClusterEvent]:
        """List events of one namespace, or of all namespaces when None."""
        raise NotImplementedError

    @abstractmethod
    def watch_events(
        self,
        namespace: str,
        field_selector: Optional[str] = None,
        timeout_seconds: Optional[int] = None,
    ) -> WatchStream:
        """Open an event watch yielding ClusterEvent items."""
        raise NotImplementedError

    @abstractmethod
    async def get_owner_selector(self, namespace: str, kind: str, name: str) -> str:
        """Translate an owner reference into an equivalent label selector."""
        raise NotImplementedError
