# Copyright aliyun.com, Inc. or its affiliates. All Rights Reserved.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Kubernetes log aggregation MCP Server.

Entry point: builds the settings from CLI arguments, environment and .env,
creates the FastMCP server with the Kubernetes runtime provider as lifespan,
and registers the kube_log, pod_logs and show_events tools.
"""

import argparse
import os
import sys
from typing import Dict, Any, Optional, Literal

import yaml
from dotenv import load_dotenv
from loguru import logger
from fastmcp import FastMCP

from config import Configs
from runtime_provider import KubeLogRuntimeProvider
from kube_log_handler import KubeLogHandler
from kube_inspect_handler import KubeInspectHandler

__version__ = "0.1.0"

MAIN_SERVER_NAME = "kube-log-mcp-server"
MAIN_SERVER_INSTRUCTIONS = """
Kubernetes Log Aggregation MCP Server

Read-only tools for troubleshooting workloads from their logs and events:

1. **kube_log**:
   - Aggregate logs from every pod and container selected by name, label selector
     or owner (Deployment / DaemonSet / StatefulSet / ReplicaSet / Job)
   - Regex and JSON field filtering, merged Kubernetes events
   - One-shot snapshot, or streaming for a bounded duration while pods come and go

2. **pod_logs**:
   - Logs of a single container (like `kubectl logs`)

3. **show_events**:
   - Events of a namespace or of the whole cluster, newest first

All output lines are sorted by timestamp.
"""

MAIN_SERVER_DEPENDENCIES = [
    "fastmcp",
    "pydantic",
    "pydantic-settings",
    "loguru",
    "kubernetes",
    "pyyaml",
    "python-dotenv",
]


def create_main_server(
    settings_dict: Optional[Dict[str, Any]] = None,
    transport: Literal["stdio", "sse", "http"] = "stdio",
    host: str = "127.0.0.1",
    port: int = 8000,
) -> FastMCP:
    """Create and configure the MCP server instance.

    Args:
        settings_dict: Server settings shared with the handlers
        transport: Transport method ("stdio", "sse" or "http")
        host: Host for SSE/HTTP transport
        port: Port for SSE/HTTP transport

    Returns:
        Configured FastMCP server instance
    """
    settings: Dict[str, Any] = settings_dict or {}

    runtime_provider = KubeLogRuntimeProvider()

    main_mcp = FastMCP(
        name=MAIN_SERVER_NAME,
        instructions=MAIN_SERVER_INSTRUCTIONS,
        lifespan=runtime_provider.init_runtime,
    )

    # Attach config for lifespan provider access
    setattr(main_mcp, "_config", settings)

    # Register kube_log tool
    KubeLogHandler(main_mcp, settings)
    # Register pod_logs / show_events tools
    KubeInspectHandler(main_mcp, settings)

    return main_mcp


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Kubernetes multi-pod log and event aggregation MCP Server"
    )
    parser.add_argument(
        "--transport",
        "-t",
        type=str,
        choices=["stdio", "sse", "http"],
        default=None,
        help="Transport method (default: stdio)"
    )
    parser.add_argument(
        "--host",
        type=str,
        default=None,
        help="Host for SSE/HTTP transport (default: localhost)"
    )
    parser.add_argument(
        "--port",
        "-p",
        type=int,
        default=None,
        help="Port for SSE/HTTP transport (default: 8000)"
    )
    parser.add_argument(
        "--kubeconfig",
        dest="kubeconfig_path",
        type=str,
        help="Path to kubeconfig (default: from env KUBECONFIG_PATH or ~/.kube/config, in-cluster if missing)"
    )
    parser.add_argument(
        "--context",
        dest="kube_context",
        type=str,
        help="kubeconfig context to use (default: current context)"
    )
    parser.add_argument(
        "--namespace",
        "-n",
        dest="default_namespace",
        type=str,
        help="Namespace used when a tool call does not name one (default: default)"
    )
    parser.add_argument(
        "--config",
        "-c",
        dest="config_file",
        type=str,
        help="Path to a YAML settings file (keys as in Configs; CLI arguments take precedence)"
    )
    parser.add_argument(
        "--enable-execution-log",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Enable ExecutionLog in tool responses for detailed execution tracking (default: false)"
    )
    parser.add_argument(
        "--version",
        "-v",
        action="version",
        version=f"%(prog)s {__version__}"
    )
    return parser


def load_settings_file(path: str) -> Dict[str, Any]:
    """读取 YAML 配置文件，顶层必须是映射。"""
    with open(os.path.expanduser(path), "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Settings file {path} must contain a mapping at the top level")
    return data


def build_settings(args: argparse.Namespace) -> Dict[str, Any]:
    """配置优先级：命令行参数 > YAML 配置文件 > 环境变量 / .env > 默认值"""
    cli_args = vars(args).copy()
    config_file = cli_args.pop("config_file", None)
    file_settings = load_settings_file(config_file) if config_file else {}
    configs = Configs(cli_args, **file_settings)
    return configs.model_dump()


def main():
    """Run the MCP server with CLI argument support."""
    # 加载.env文件
    load_dotenv()

    args = build_arg_parser().parse_args()

    # Configure logging
    logger.remove()
    logger.add(sys.stderr, level=os.getenv('FASTMCP_LOG_LEVEL', 'INFO'))

    settings_dict = build_settings(args)

    logger.info(f"Starting {MAIN_SERVER_NAME} {__version__}")
    logger.info(
        f"kubeconfig: {settings_dict['kubeconfig_path']}, context: {settings_dict.get('kube_context') or 'current'}, "
        f"default namespace: {settings_dict['default_namespace']}"
    )

    try:
        main_server = create_main_server(
            settings_dict=settings_dict,
            transport=settings_dict["transport"],
            host=settings_dict["host"],
            port=settings_dict["port"],
        )

        transport = settings_dict["transport"]
        logger.info(f"Starting main server with {transport} transport...")
        if transport == "stdio":
            main_server.run()
        elif transport in ("http", "sse"):
            logger.info(f"Server will be available at http://{settings_dict['host']}:{settings_dict['port']}")
            main_server.run(transport=transport, host=settings_dict["host"], port=settings_dict["port"])
        else:
            logger.error(f"Unsupported transport: {transport}")
            sys.exit(2)

    except KeyboardInterrupt:
        logger.info("Received shutdown signal...")
        sys.exit(0)
    except Exception as e:
        logger.error(f"Main server error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
