from contextvars import ContextVar
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


# Per-request switch for attaching ExecutionLog to tool responses
enable_execution_log_ctx: ContextVar[bool] = ContextVar("enable_execution_log", default=False)


class ErrorModel(BaseModel):
    error_code: str = Field(...)
    error_message: str = Field(...)


class ExecutionLog(BaseModel):
    """Execution trace of a single tool call."""
    tool_call_id: str = Field(..., description="工具调用的唯一标识")
    start_time: str = Field(..., description="开始时间，ISO 8601 (UTC)")
    end_time: Optional[str] = Field(None, description="结束时间，ISO 8601 (UTC)")
    duration_ms: Optional[int] = Field(None, description="执行耗时（毫秒）")
    messages: List[str] = Field(default_factory=list, description="执行过程记录")
    error: Optional[str] = Field(None, description="错误信息")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="附加信息")


# ==================== 集群资源投影 ====================

class TargetPod(BaseModel):
    """Lightweight projection of a pod spec, keyed by pod name."""
    name: str = Field(..., description="Pod 名称")
    namespace: str = Field(..., description="Pod 所在命名空间")
    containers: List[str] = Field(default_factory=list, description="容器名列表")
    labels: Dict[str, str] = Field(default_factory=dict, description="Pod labels")


class ClusterEvent(BaseModel):
    """Projection of a core/v1 Event."""
    namespace: str = Field(..., description="事件所在命名空间")
    name: Optional[str] = Field(None, description="事件对象名")
    type: Optional[str] = Field(None, description="Normal / Warning")
    reason: Optional[str] = Field(None, description="事件原因")
    message: Optional[str] = Field(None, description="事件消息")
    timestamp: Optional[str] = Field(None, description="lastTimestamp / eventTime / firstTimestamp，RFC3339")
    first_timestamp: Optional[str] = Field(None, description="首次出现时间")
    count: Optional[int] = Field(None, description="出现次数")
    involved_kind: Optional[str] = Field(None, description="关联对象类型")
    involved_name: Optional[str] = Field(None, description="关联对象名")
    involved_namespace: Optional[str] = Field(None, description="关联对象命名空间")
    source_component: Optional[str] = Field(None, description="事件来源组件")
    source_host: Optional[str] = Field(None, description="事件来源节点")


# ==================== kube_log 相关模型 ====================

class JsonPathFilter(BaseModel):
    path: str = Field(..., description="点分隔的 JSON 路径，例如 level 或 http.status")
    equals: Optional[str] = Field(None, description="字段值需完全相等（按字符串比较）")
    regex: Optional[str] = Field(None, description="字段值需匹配的正则")


class LogLine(BaseModel):
    """A merged output line: either a container log line or a cluster event."""
    model_config = ConfigDict(frozen=True)

    type: Literal["log", "event"] = Field(..., description="log 或 event")
    timestamp: str = Field(..., description="RFC3339 时间戳")
    namespace: str = Field(..., description="命名空间")
    pod: str = Field(..., description="Pod 名称")
    container: Optional[str] = Field(None, description="容器名，仅 log 类型")
    message: str = Field(..., description="日志消息")
    payload: Optional[Any] = Field(None, description="消息为 JSON 时解析后的结构")


class KubeLogRequest(BaseModel):
    """Input of a single multi-pod log aggregation run."""
    namespace: str = Field("default", description="命名空间")
    pod_name: Optional[str] = Field(None, description="显式指定 Pod 名称")
    label_selector: Optional[str] = Field(None, description="Label selector，例如 app=demo")
    owner_kind: Optional[str] = Field(None, description="Owner 类型：Deployment / DaemonSet / StatefulSet / ReplicaSet / Job")
    owner_name: Optional[str] = Field(None, description="Owner 名称")
    pod_pattern: Optional[str] = Field(None, description="Pod 名称正则或子串")
    container_pattern: Optional[str] = Field(None, description="容器名正则或子串")
    message_pattern: Optional[str] = Field(None, description="日志消息需匹配的正则或子串")
    exclude_pattern: Optional[str] = Field(None, description="排除匹配的日志消息")
    json_path_filters: List[JsonPathFilter] = Field(default_factory=list, description="JSON 日志字段过滤")
    tail_lines: Optional[int] = Field(None, ge=0, description="首次拉取的尾部行数")
    since: Optional[str] = Field(None, description="相对时长，例如 5m、1h")
    since_time: Optional[str] = Field(None, description="RFC3339 起始时间")
    timestamps: bool = Field(True, description="文本输出是否带时间戳")
    previous: bool = Field(False, description="是否拉取上一个容器实例的日志")
    duration_seconds: float = Field(0, ge=0, description="流式聚合时长，0 表示快照模式")
    max_lines: Optional[int] = Field(None, ge=1, description="最多返回的行数")
    include_events: bool = Field(True, description="是否合并 Kubernetes 事件")
    event_type: Literal["Normal", "Warning", "All"] = Field("All", description="事件类型过滤")
    output_style: Literal["structured", "text"] = Field("structured", description="输出结构")

    @property
    def is_snapshot(self) -> bool:
        return not self.duration_seconds or self.duration_seconds <= 0


class KubeLogStats(BaseModel):
    pods: int = Field(0, description="参与聚合的 Pod 数")
    containers: int = Field(0, description="拉取过日志的容器数")
    lines: int = Field(0, description="返回的行数")
    dropped_lines: int = Field(0, description="因 max_lines 被丢弃的行数")


class KubeLogOutput(BaseModel):
    namespace: Optional[str] = Field(None, description="命名空间")
    stats: KubeLogStats = Field(default_factory=KubeLogStats)
    lines: List[LogLine] = Field(default_factory=list, description="按时间升序排列的日志与事件")
    diagnostics: List[str] = Field(default_factory=list, description="结果为空时的诊断信息")
    error: Optional[ErrorModel] = Field(None, description="错误信息")
    execution_log: Optional[ExecutionLog] = Field(None, description="执行日志")


# kube_log 错误码定义
class KubeLogErrorCodes:
    INVALID_SELECTION = "INVALID_SELECTION"
    INVALID_PARAMETER = "INVALID_PARAMETER"
    OWNER_NOT_RESOLVED = "OWNER_NOT_RESOLVED"
    NO_PODS_FOUND = "NO_PODS_FOUND"
    LOG_FETCH_FAILED = "LOG_FETCH_FAILED"
    CLUSTER_API_UNAVAILABLE = "CLUSTER_API_UNAVAILABLE"
    INTERNAL_ERROR = "INTERNAL_ERROR"


# ==================== pod_logs / show_events 相关模型 ====================

class PodLogsOptions(BaseModel):
    tail_lines: Optional[int] = None
    since: Optional[str] = None
    previous: bool = False
    timestamps: bool = False


class PodLogsOutput(BaseModel):
    pod_name: str = Field(..., description="Pod 名称")
    namespace: str = Field(..., description="命名空间")
    container: str = Field("default", description="容器名，未指定时为 default")
    line_count: int = Field(0, description="日志行数")
    logs: List[str] = Field(default_factory=list, description="日志行")
    options: PodLogsOptions = Field(default_factory=PodLogsOptions)
    error: Optional[ErrorModel] = Field(None, description="错误信息")


class EventSummary(BaseModel):
    total: int = 0
    normal: int = 0
    warning: int = 0


class ShowEventsOutput(BaseModel):
    summary: EventSummary = Field(default_factory=EventSummary)
    filters: Dict[str, Any] = Field(default_factory=dict, description="生效的过滤条件")
    events: List[ClusterEvent] = Field(default_factory=list, description="按时间倒序排列的事件")
    error: Optional[ErrorModel] = Field(None, description="错误信息")


class InspectErrorCodes:
    POD_NOT_FOUND = "POD_NOT_FOUND"
    CONTAINER_NOT_FOUND = "CONTAINER_NOT_FOUND"
    INVALID_PARAMETER = "INVALID_PARAMETER"
    LOG_FETCH_FAILED = "LOG_FETCH_FAILED"
    EVENT_LIST_FAILED = "EVENT_LIST_FAILED"
    CLUSTER_API_UNAVAILABLE = "CLUSTER_API_UNAVAILABLE"
