"""
使用 Pydantic 进行强类型配置管理。
"""

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Configs(BaseSettings):
    """
    应用配置模型，从环境变量或 .env 文件加载，命令行参数优先。
    """

    # .env 文件路径
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="allow"  # 允许额外的字段
    )

    # Kubernetes 连接
    kubeconfig_path: str = Field("~/.kube/config", description="kubeconfig 文件路径，不存在时使用集群内配置")
    kube_context: Optional[str] = Field(None, description="kubeconfig 中使用的 context")
    default_namespace: str = Field("default", description="工具未指定命名空间时使用")
    request_timeout: int = Field(30, ge=1, description="单次 Kubernetes API 请求超时（秒）")

    # 服务
    transport: str = Field("stdio", description="stdio / sse / http")
    host: str = Field("localhost")
    port: int = Field(8000)

    # 聚合引擎
    poll_interval_seconds: float = Field(1.0, gt=0, description="每个容器的日志轮询间隔（秒）")
    stop_tick_seconds: float = Field(0.25, gt=0, description="停止条件检查间隔（秒）")
    teardown_grace_seconds: float = Field(2.0, ge=0, description="停止后等待后台任务退出的时间（秒）")
    default_event_limit: int = Field(10, ge=1, description="快照模式下每个对象保留的事件数")
    max_duration_seconds: float = Field(300, gt=0, description="流式聚合时长上限（秒）")

    # 可观测
    enable_execution_log: bool = Field(False, description="在工具输出中附带 ExecutionLog")
    fastmcp_log_level: str = Field("INFO")

    def __init__(self, args_dict: Optional[dict] = None, **values):
        """
        初始化配置实例。

        Args:
            args_dict: 命令行参数字典（可选），值为 None 的项会被忽略
            **values: 其他配置值
        """
        if args_dict:
            # 将args_dict合并到values中
            values.update({k: v for k, v in args_dict.items() if v is not None})
        super().__init__(**values)


def get_settings(args_dict: Optional[dict] = None) -> Configs:
    """
    返回一个 Configs 实例。

    Args:
        args_dict: 命令行参数字典（可选）

    Returns:
        Configs 实例
    """
    return Configs(args_dict)
