"""Multi-pod / multi-container log and event aggregation engine."""

from .errors import (
    InvalidParameterError,
    KubeLogError,
    LogFetchError,
    NoPodsFoundError,
    OwnerResolutionError,
    SelectionError,
)
from .orchestrator import KubeLogAggregator, render_text

__all__ = [
    "InvalidParameterError",
    "KubeLogAggregator",
    "KubeLogError",
    "LogFetchError",
    "NoPodsFoundError",
    "OwnerResolutionError",
    "SelectionError",
    "render_text",
]
