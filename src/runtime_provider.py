"""Runtime provider for the Kubernetes log aggregation MCP server."""

import os
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Any

from fastmcp import FastMCP
from kubernetes import client, config as k8s_config
from loguru import logger

from interfaces.runtime_provider import RuntimeProvider
from kube_cluster_api import KubernetesClusterApi


class KubeLogRuntimeProvider(RuntimeProvider):
    """Builds the Kubernetes clients used by the kube_log / pod_logs / show_events tools."""

    @asynccontextmanager
    async def init_runtime(self, app: FastMCP) -> AsyncIterator[Dict[str, Any]]:
        """Initialize runtime context for the log aggregation handlers."""
        logger.info("Initializing kube-log runtime...")

        # 获取配置
        config = getattr(app, "_config", {}) or {}

        providers = self.initialize_providers(config)

        lifespan_context = {
            "config": config,
            "providers": providers,
        }

        try:
            yield lifespan_context
        finally:
            logger.info("kube-log runtime cleanup completed")

    def load_kube_config(self, config: Dict[str, Any]) -> str:
        """加载 kubeconfig，文件不存在时回退到集群内配置。返回实际使用的来源。"""
        kubeconfig_path = config.get("kubeconfig_path") or "~/.kube/config"
        expanded = os.path.expanduser(kubeconfig_path)
        if os.path.exists(expanded):
            k8s_config.load_kube_config(config_file=expanded, context=config.get("kube_context"))
            return expanded
        k8s_config.load_incluster_config()
        return "in-cluster"

    def initialize_providers(self, config: Dict[str, Any]) -> Dict[str, Any]:
        """Initialize Kubernetes client providers.

        加载失败时服务照常启动，provider 标记为未初始化并记录错误，
        工具调用时返回 CLUSTER_API_UNAVAILABLE。
        """
        providers: Dict[str, Any] = {}
        try:
            source = self.load_kube_config(config)
            core_v1 = client.CoreV1Api()
            apps_v1 = client.AppsV1Api()
            providers["k8s_client"] = {
                "client": {
                    "core_v1": core_v1,
                    "apps_v1": apps_v1,
                },
                "type": "kubernetes",
                "kubeconfig": source,
                "initialized": True,
            }
            providers["cluster_api"] = KubernetesClusterApi(
                core_v1, apps_v1, request_timeout=config.get("request_timeout", 30)
            )
            logger.info(f"Kubernetes client initialized with kubeconfig: {source}")
        except Exception as e:
            logger.warning(f"Failed to initialize Kubernetes client: {e}")
            providers["k8s_client"] = {
                "client": None,
                "type": "kubernetes",
                "kubeconfig": config.get("kubeconfig_path"),
                "initialized": False,
                "error": str(e),
            }
            providers["cluster_api"] = None
        return providers
