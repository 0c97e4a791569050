"""kube_log tool: aggregated logs and events across a dynamic set of pods and containers."""

import time
from typing import Any, Dict, List, Literal, Optional, Union

from fastmcp import FastMCP, Context
from loguru import logger
from pydantic import Field

from interfaces.cluster_api import ClusterApi
from log_aggregator import KubeLogAggregator, KubeLogError, render_text
from log_aggregator.timeutil import format_rfc3339, utc_now
from models import (
    ErrorModel,
    ExecutionLog,
    JsonPathFilter,
    KubeLogErrorCodes,
    KubeLogOutput,
    KubeLogRequest,
    enable_execution_log_ctx,
)
from utils.api_error import describe_exception
from utils.utils import unwrap_field


def _now_iso() -> str:
    return format_rfc3339(utc_now())


def get_cluster_api(ctx: Context) -> ClusterApi:
    """从 lifespan providers 中获取 ClusterApi。"""
    lifespan_context = ctx.request_context.lifespan_context
    if isinstance(lifespan_context, dict):
        providers = lifespan_context.get("providers", {})
    else:
        providers = getattr(lifespan_context, "providers", {})

    cluster_api = providers.get("cluster_api")
    if cluster_api is None:
        k8s_client = providers.get("k8s_client") or {}
        reason = k8s_client.get("error") or "not initialized"
        raise RuntimeError(f"Kubernetes client not available in runtime providers: {reason}")
    return cluster_api


class KubeLogHandler:
    """Handler for the kube_log aggregation tool."""

    def __init__(self, server: FastMCP, settings: Optional[Dict[str, Any]] = None):
        """Initialize the kube_log handler.

        Args:
            server: FastMCP server instance
            settings: Configuration settings
        """
        self.settings = settings or {}
        self.enable_execution_log = self.settings.get("enable_execution_log", False)
        self.default_namespace = self.settings.get("default_namespace") or "default"

        if server is None:
            return
        self.server = server

        self.server.tool(
            name="kube_log",
            description="""Aggregate logs (and optionally Kubernetes events) from many pods and containers at once.

    Function Description:
    - Selects pods by pod_name, label_selector, or owner_kind + owner_name (Deployment, DaemonSet, StatefulSet, ReplicaSet, Job).
    - Filters pods, containers and messages with regex patterns; invalid regex falls back to literal substring match.
    - JSON log lines are parsed; json_path_filters match fields such as "level" or "http.status".
    - duration_seconds=0 (default) returns a one-shot snapshot. duration_seconds>0 keeps tailing, follows
      pods as they are created or deleted, and returns when the duration elapses or max_lines is reached.
    - Lines from all sources are merged and returned sorted by timestamp.

    Usage Suggestions:
    - Use tail_lines or since ("5m", "1h") to bound the initial window.
    - Use event_type="Warning" to only merge warning events.
    - Use output_style="text" for a compact "<timestamp> <namespace>/<pod>/<container>: <message>" listing."""
        )(self.kube_log)

        logger.info("Kube Log Handler initialized")

    def build_aggregator(self, cluster_api: ClusterApi) -> KubeLogAggregator:
        return KubeLogAggregator(
            cluster_api,
            poll_interval=self.settings.get("poll_interval_seconds", 1.0),
            stop_tick=self.settings.get("stop_tick_seconds", 0.25),
            teardown_grace=self.settings.get("teardown_grace_seconds", 2.0),
            default_event_limit=self.settings.get("default_event_limit", 10),
            max_duration_seconds=self.settings.get("max_duration_seconds"),
        )

    async def kube_log(
            self,
            ctx: Context,
            namespace: Optional[str] = Field(None, description="命名空间，默认使用服务配置的 default_namespace"),
            pod_name: Optional[str] = Field(None, description="Pod 名称"),
            label_selector: Optional[str] = Field(None, description="Label selector，例如 app=nginx,tier=web"),
            owner_kind: Optional[Literal["Deployment", "DaemonSet", "StatefulSet", "ReplicaSet", "Job"]] = Field(
                None, description="Owner 类型，需与 owner_name 一起使用"),
            owner_name: Optional[str] = Field(None, description="Owner 名称"),
            pod_pattern: Optional[str] = Field(None, description="Pod 名称正则"),
            container_pattern: Optional[str] = Field(None, description="容器名正则"),
            message_pattern: Optional[str] = Field(None, description="只保留匹配该正则的日志"),
            exclude_pattern: Optional[str] = Field(None, description="丢弃匹配该正则的日志"),
            json_path_filters: Optional[List[JsonPathFilter]] = Field(
                None, description='JSON 字段过滤，例如 [{"path": "level", "equals": "error"}]'),
            tail_lines: Optional[int] = Field(None, ge=0, description="每个容器首次拉取的尾部行数"),
            since: Optional[str] = Field(None, description='相对时间窗口，例如 "30s"、"5m"、"1h"、"2d"'),
            since_time: Optional[str] = Field(None, description="RFC3339 起始时间，例如 2024-01-01T10:00:00Z"),
            timestamps: bool = Field(True, description="text 输出是否带时间戳"),
            previous: bool = Field(False, description="是否包含上一个容器实例的日志"),
            duration_seconds: float = Field(0, ge=0, description="流式聚合时长（秒），0 表示快照"),
            max_lines: Optional[int] = Field(None, ge=1, description="最多返回的行数"),
            include_events: bool = Field(True, description="是否合并 Kubernetes 事件"),
            event_type: Literal["Normal", "Warning", "All"] = Field("All", description="事件类型过滤"),
            output_style: Literal["structured", "text"] = Field("structured", description="structured 或 text"),
    ) -> Union[KubeLogOutput, str]:
        """聚合多个 Pod / 容器的日志与事件

        Args:
            ctx: FastMCP context containing lifespan providers

        Returns:
            KubeLogOutput，output_style 为 text 且成功时返回文本
        """
        enable_execution_log_ctx.set(self.enable_execution_log)

        start_ms = int(time.time() * 1000)
        execution_log = ExecutionLog(
            tool_call_id=f"kube_log_{start_ms}",
            start_time=_now_iso(),
        )

        def finish(output: KubeLogOutput, error: Optional[str] = None) -> KubeLogOutput:
            execution_log.end_time = _now_iso()
            execution_log.duration_ms = int(time.time() * 1000) - start_ms
            if error:
                execution_log.error = error
            if enable_execution_log_ctx.get():
                output.execution_log = execution_log
            return output

        ns = unwrap_field(namespace) or self.default_namespace
        try:
            request = KubeLogRequest(
                namespace=ns,
                pod_name=unwrap_field(pod_name),
                label_selector=unwrap_field(label_selector),
                owner_kind=unwrap_field(owner_kind),
                owner_name=unwrap_field(owner_name),
                pod_pattern=unwrap_field(pod_pattern),
                container_pattern=unwrap_field(container_pattern),
                message_pattern=unwrap_field(message_pattern),
                exclude_pattern=unwrap_field(exclude_pattern),
                json_path_filters=unwrap_field(json_path_filters) or [],
                tail_lines=unwrap_field(tail_lines),
                since=unwrap_field(since),
                since_time=unwrap_field(since_time),
                timestamps=unwrap_field(timestamps, True),
                previous=unwrap_field(previous, False),
                duration_seconds=unwrap_field(duration_seconds, 0),
                max_lines=unwrap_field(max_lines),
                include_events=unwrap_field(include_events, True),
                event_type=unwrap_field(event_type, "All"),
                output_style=unwrap_field(output_style, "structured"),
            )
        except ValueError as e:
            return finish(
                KubeLogOutput(
                    namespace=ns,
                    error=ErrorModel(error_code=KubeLogErrorCodes.INVALID_PARAMETER, error_message=str(e)),
                ),
                str(e),
            )

        execution_log.metadata = {
            "mode": "snapshot" if request.is_snapshot else "streaming",
            "namespace": request.namespace,
        }

        try:
            cluster_api = get_cluster_api(ctx)
        except RuntimeError as e:
            logger.error(f"kube_log unavailable: {e}")
            return finish(
                KubeLogOutput(
                    namespace=request.namespace,
                    error=ErrorModel(error_code=KubeLogErrorCodes.CLUSTER_API_UNAVAILABLE, error_message=str(e)),
                ),
                str(e),
            )

        try:
            execution_log.messages.append(
                f"Aggregating logs in {request.namespace} ({execution_log.metadata['mode']})"
            )
            output = await self.build_aggregator(cluster_api).run(request)
        except KubeLogError as e:
            logger.warning(f"kube_log failed: {e.error_code}: {e.message}")
            execution_log.messages.extend(e.diagnostics)
            return finish(
                KubeLogOutput(
                    namespace=request.namespace,
                    diagnostics=e.diagnostics,
                    error=ErrorModel(error_code=e.error_code, error_message=e.message),
                ),
                e.message,
            )
        except Exception as e:
            logger.exception(f"kube_log unexpected failure: {e}")
            return finish(
                KubeLogOutput(
                    namespace=request.namespace,
                    error=ErrorModel(error_code=KubeLogErrorCodes.INTERNAL_ERROR, error_message=describe_exception(e)),
                ),
                describe_exception(e),
            )

        execution_log.messages.append(
            f"Collected {output.stats.lines} lines from {output.stats.containers} containers "
            f"across {output.stats.pods} pods"
        )
        output = finish(output)
        if request.output_style == "text":
            return render_text(output.lines, timestamps=request.timestamps)
        return output
