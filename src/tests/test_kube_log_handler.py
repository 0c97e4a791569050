import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

import kube_log_handler as module_under_test
from fakes import FakeClusterApi, FakeContext, FakeServer, make_pod
from models import KubeLogOutput


def make_handler_and_tool(settings=None):
    server = FakeServer()
    handler = module_under_test.KubeLogHandler(server, settings or {"default_namespace": "default"})
    tool = server.tools["kube_log"]
    return handler, tool


def make_ctx(cluster_api):
    return FakeContext({"config": {}, "providers": {"cluster_api": cluster_api}})


def demo_api():
    return FakeClusterApi(
        pods=[make_pod("web-1", labels={"app": "web"})],
        logs={("web-1", "app"): "2024-05-01T10:00:00Z hello\n2024-05-01T10:00:01Z world\n"},
    )


@pytest.mark.asyncio
async def test_kube_log_structured_output():
    _, tool = make_handler_and_tool()

    result = await tool(make_ctx(demo_api()), label_selector="app=web", include_events=False)

    assert isinstance(result, KubeLogOutput)
    assert result.error is None
    assert result.namespace == "default"
    assert [l.message for l in result.lines] == ["hello", "world"]
    assert result.stats.pods == 1
    assert result.execution_log is None


@pytest.mark.asyncio
async def test_kube_log_text_output():
    _, tool = make_handler_and_tool()

    result = await tool(make_ctx(demo_api()), pod_name="web-1", include_events=False, output_style="text")

    assert result == (
        "2024-05-01T10:00:00Z default/web-1/app: hello\n"
        "2024-05-01T10:00:01Z default/web-1/app: world"
    )


@pytest.mark.asyncio
async def test_kube_log_uses_configured_default_namespace():
    api = FakeClusterApi(pods=[make_pod("web-1", namespace="prod")])
    _, tool = make_handler_and_tool({"default_namespace": "prod"})

    result = await tool(make_ctx(api), pod_name="web-1", include_events=False)

    assert result.error is None
    assert result.namespace == "prod"
    assert api.list_pods_calls[0]["namespace"] == "prod"


@pytest.mark.asyncio
async def test_kube_log_selection_error():
    _, tool = make_handler_and_tool()

    result = await tool(make_ctx(demo_api()), namespace="default")

    assert result.error.error_code == "INVALID_SELECTION"
    assert "no pod identification method provided" in result.error.error_message


@pytest.mark.asyncio
async def test_kube_log_no_pods_error():
    _, tool = make_handler_and_tool()

    result = await tool(make_ctx(demo_api()), label_selector="app=missing")

    assert result.error.error_code == "NO_PODS_FOUND"
    assert result.lines == []


@pytest.mark.asyncio
async def test_kube_log_invalid_parameters():
    _, tool = make_handler_and_tool()
    ctx = make_ctx(demo_api())

    bad_since = await tool(ctx, pod_name="web-1", since="soon")
    assert bad_since.error.error_code == "INVALID_PARAMETER"

    bad_max = await tool(ctx, pod_name="web-1", max_lines=0)
    assert bad_max.error.error_code == "INVALID_PARAMETER"


@pytest.mark.asyncio
async def test_kube_log_cluster_api_unavailable():
    _, tool = make_handler_and_tool()
    ctx = FakeContext(
        {
            "config": {},
            "providers": {
                "cluster_api": None,
                "k8s_client": {"client": None, "initialized": False, "error": "kubeconfig not found"},
            },
        }
    )

    result = await tool(ctx, pod_name="web-1")

    assert result.error.error_code == "CLUSTER_API_UNAVAILABLE"
    assert "kubeconfig not found" in result.error.error_message


@pytest.mark.asyncio
async def test_kube_log_unexpected_error_is_internal():
    api = demo_api()
    api.list_pods_error = RuntimeError("connection reset")
    _, tool = make_handler_and_tool()

    result = await tool(make_ctx(api), pod_name="web-1")

    assert result.error.error_code == "INTERNAL_ERROR"
    assert "connection reset" in result.error.error_message


@pytest.mark.asyncio
async def test_kube_log_execution_log_when_enabled():
    _, tool = make_handler_and_tool({"enable_execution_log": True})

    result = await tool(make_ctx(demo_api()), pod_name="web-1", include_events=False)

    assert result.execution_log is not None
    assert result.execution_log.tool_call_id.startswith("kube_log_")
    assert result.execution_log.metadata["mode"] == "snapshot"
    assert result.execution_log.duration_ms is not None
    assert "api_calls" not in result.execution_log.model_dump()
    assert any("Collected 2 lines" in m for m in result.execution_log.messages)


@pytest.mark.asyncio
async def test_kube_log_handler_builds_aggregator_from_settings():
    handler, _ = make_handler_and_tool(
        {"poll_interval_seconds": 2.5, "stop_tick_seconds": 0.5, "max_duration_seconds": 60}
    )
    aggregator = handler.build_aggregator(FakeClusterApi())
    assert aggregator.poll_interval == 2.5
    assert aggregator.stop_tick == 0.5
    assert aggregator.max_duration_seconds == 60
