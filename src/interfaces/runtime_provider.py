"""Abstract interface for runtime provider management in FastMCP.

This module defines the core interface for managing MCP server runtime providers:
configuration hand-off, client initialization and resource lifecycle.
"""

from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Any
from fastmcp import FastMCP


class RuntimeProvider(ABC):
    """Abstract base class for runtime provider management.

    RuntimeProvider 基于 FastMCP 的 lifespan 机制，在服务启动时初始化
    Kubernetes 客户端等提供者（providers），并在工具调用期间通过
    ``ctx.request_context.lifespan_context`` 暴露给各个 handler。
    """

    @abstractmethod
    @asynccontextmanager
    async def init_runtime(self, app: FastMCP) -> AsyncIterator[Dict[str, Any]]:
        """
        抽象的运行时初始化方法，由子类实现。

        Args:
            app: FastMCP服务器实例

        Yields:
            包含运行时上下文对象的字典
        """
        raise NotImplementedError

    @abstractmethod
    def initialize_providers(self, config: Dict[str, Any]) -> Dict[str, Any]:
        """
        初始化所有提供者，由子类实现。

        Args:
            config: 配置字典

        Returns:
            初始化后的提供者字典
        """
        raise NotImplementedError
