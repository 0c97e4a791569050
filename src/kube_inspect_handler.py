"""pod_logs / show_events tools: single container logs and namespace events."""

from typing import Any, Dict, Literal, Optional

from fastmcp import FastMCP, Context
from loguru import logger
from pydantic import Field

from kube_log_handler import get_cluster_api
from log_aggregator.timeutil import parse_duration, sort_key
from models import (
    ErrorModel,
    EventSummary,
    InspectErrorCodes,
    PodLogsOptions,
    PodLogsOutput,
    ShowEventsOutput,
)
from utils.api_error import ClusterApiError, describe_exception
from utils.utils import unwrap_field

DEFAULT_EVENT_LIST_LIMIT = 100


def split_log_lines(text: str):
    return [line for line in (text or "").split("\n") if line.strip()]


def pod_log_error(error: Exception, pod_name: str, namespace: str, container: Optional[str]) -> ErrorModel:
    """将 API 错误转换为更易读的提示（容器不存在 / Pod 不存在 / 其他）。"""
    message = error.message if isinstance(error, ClusterApiError) else describe_exception(error)
    lowered = message.lower()
    if container and "container" in lowered and ("not found" in lowered or "not valid" in lowered):
        return ErrorModel(
            error_code=InspectErrorCodes.CONTAINER_NOT_FOUND,
            error_message=f"Container '{container}' not found in pod '{pod_name}'",
        )
    if "not found" in lowered or getattr(error, "status", None) == 404:
        return ErrorModel(
            error_code=InspectErrorCodes.POD_NOT_FOUND,
            error_message=f"Pod '{pod_name}' not found in namespace '{namespace}'",
        )
    return ErrorModel(
        error_code=InspectErrorCodes.LOG_FETCH_FAILED,
        error_message=f"Failed to fetch container logs: {describe_exception(error)}",
    )


def event_field_selector(
        resource_type: Optional[str],
        resource_name: Optional[str],
        event_type: Optional[str],
) -> Optional[str]:
    selectors = []
    if resource_name:
        selectors.append(f"involvedObject.name={resource_name}")
    if resource_type:
        # pod -> Pod, deployment -> Deployment
        selectors.append(f"involvedObject.kind={resource_type[:1].upper()}{resource_type[1:]}")
    if event_type:
        selectors.append(f"type={event_type}")
    return ",".join(selectors) or None


class KubeInspectHandler:
    """Handler for single pod log and event listing tools."""

    def __init__(self, server: FastMCP, settings: Optional[Dict[str, Any]] = None):
        self.settings = settings or {}
        self.default_namespace = self.settings.get("default_namespace") or "default"

        if server is None:
            return
        self.server = server

        self.server.tool(
            name="pod_logs",
            description="""Return stdout / stderr logs of one container in a pod (similar to `kubectl logs`).

    Usage Suggestions:
    - Use kube_log to follow several pods or containers at once.
    - container defaults to the pod's first container."""
        )(self.pod_logs)

        self.server.tool(
            name="show_events",
            description="""Show Kubernetes events, newest first, optionally filtered by resource type, name and event type.

    Usage Suggestions:
    - Omit namespace to list events of all namespaces.
    - resource_type accepts lower case kinds such as pod or deployment."""
        )(self.show_events)

        logger.info("Kube Inspect Handler initialized")

    async def pod_logs(
            self,
            ctx: Context,
            pod_name: str = Field(..., description="Pod 名称"),
            namespace: Optional[str] = Field(None, description="命名空间"),
            container: Optional[str] = Field(None, description="容器名，默认第一个容器"),
            tail_lines: Optional[int] = Field(None, ge=0, description="尾部行数"),
            since: Optional[str] = Field(None, description='相对时间，例如 "5m"、"1h"'),
            previous: bool = Field(False, description="上一个容器实例的日志"),
            timestamps: bool = Field(False, description="是否带时间戳"),
    ) -> PodLogsOutput:
        """获取单个容器的日志"""
        ns = unwrap_field(namespace) or self.default_namespace
        container = unwrap_field(container)
        tail_lines = unwrap_field(tail_lines)
        since = unwrap_field(since)
        previous = bool(unwrap_field(previous, False))
        timestamps = bool(unwrap_field(timestamps, False))

        output = PodLogsOutput(
            pod_name=pod_name,
            namespace=ns,
            container=container or "default",
            options=PodLogsOptions(tail_lines=tail_lines, since=since, previous=previous, timestamps=timestamps),
        )

        since_seconds = None
        if since:
            try:
                since_seconds = parse_duration(since)
            except ValueError as e:
                output.error = ErrorModel(error_code=InspectErrorCodes.INVALID_PARAMETER, error_message=str(e))
                return output

        try:
            cluster_api = get_cluster_api(ctx)
        except RuntimeError as e:
            output.error = ErrorModel(error_code=InspectErrorCodes.CLUSTER_API_UNAVAILABLE, error_message=str(e))
            return output

        try:
            text = await cluster_api.read_pod_log(
                ns,
                pod_name,
                container=container,
                previous=previous,
                tail_lines=tail_lines,
                since_seconds=since_seconds,
                timestamps=timestamps,
            )
        except Exception as e:
            logger.warning(f"pod_logs failed for {ns}/{pod_name}: {describe_exception(e)}")
            output.error = pod_log_error(e, pod_name, ns, container)
            return output

        output.logs = split_log_lines(text)
        output.line_count = len(output.logs)
        return output

    async def show_events(
            self,
            ctx: Context,
            namespace: Optional[str] = Field(None, description="命名空间，不指定时查询所有命名空间"),
            resource_type: Optional[str] = Field(None, description="资源类型，例如 pod、deployment"),
            resource_name: Optional[str] = Field(None, description="资源名称"),
            event_type: Optional[Literal["Normal", "Warning"]] = Field(None, description="事件类型"),
            limit: int = Field(DEFAULT_EVENT_LIST_LIMIT, ge=1, description="最多返回的事件数，默认 100"),
    ) -> ShowEventsOutput:
        """查询 Kubernetes 事件，按时间倒序"""
        namespace = unwrap_field(namespace)
        resource_type = unwrap_field(resource_type)
        resource_name = unwrap_field(resource_name)
        event_type = unwrap_field(event_type)
        limit = unwrap_field(limit, DEFAULT_EVENT_LIST_LIMIT)

        output = ShowEventsOutput(
            filters={
                "namespace": namespace or "all",
                "resource_type": resource_type,
                "resource_name": resource_name,
                "event_type": event_type,
            }
        )

        try:
            cluster_api = get_cluster_api(ctx)
        except RuntimeError as e:
            output.error = ErrorModel(error_code=InspectErrorCodes.CLUSTER_API_UNAVAILABLE, error_message=str(e))
            return output

        try:
            events = await cluster_api.list_events(
                namespace,
                field_selector=event_field_selector(resource_type, resource_name, event_type),
                limit=limit,
            )
        except Exception as e:
            logger.warning(f"show_events failed: {describe_exception(e)}")
            output.error = ErrorModel(
                error_code=InspectErrorCodes.EVENT_LIST_FAILED,
                error_message=f"Failed to fetch events: {describe_exception(e)}",
            )
            return output

        events = sorted(events, key=lambda e: sort_key(e.timestamp or e.first_timestamp), reverse=True)
        output.events = events
        output.summary = EventSummary(
            total=len(events),
            normal=sum(1 for e in events if e.type == "Normal"),
            warning=sum(1 for e in events if e.type == "Warning"),
        )
        return output
