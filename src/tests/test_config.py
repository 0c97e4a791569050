import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

import main_server
import runtime_provider as runtime_module
from config import Configs, get_settings
from kube_cluster_api import KubernetesClusterApi


def test_configs_defaults(monkeypatch):
    monkeypatch.delenv("DEFAULT_NAMESPACE", raising=False)
    settings = Configs()
    assert settings.kubeconfig_path == "~/.kube/config"
    assert settings.default_namespace == "default"
    assert settings.poll_interval_seconds == 1.0
    assert settings.max_duration_seconds == 300
    assert settings.enable_execution_log is False
    assert "allow_write" not in Configs.model_fields


def test_args_dict_overrides_and_ignores_none(monkeypatch):
    monkeypatch.setenv("DEFAULT_NAMESPACE", "from-env")
    settings = get_settings({"default_namespace": None, "port": 9000})
    assert settings.default_namespace == "from-env"
    assert settings.port == 9000

    settings = get_settings({"default_namespace": "from-cli"})
    assert settings.default_namespace == "from-cli"


def test_build_settings_with_yaml_file(tmp_path, monkeypatch):
    monkeypatch.delenv("DEFAULT_NAMESPACE", raising=False)
    settings_file = tmp_path / "settings.yaml"
    settings_file.write_text("default_namespace: staging\npoll_interval_seconds: 2.0\nport: 7000\n")

    args = main_server.build_arg_parser().parse_args(["--config", str(settings_file), "--port", "8100"])
    settings = main_server.build_settings(args)

    assert settings["default_namespace"] == "staging"
    assert settings["poll_interval_seconds"] == 2.0
    assert settings["port"] == 8100
    assert "config_file" not in settings


def test_settings_file_must_be_mapping(tmp_path):
    settings_file = tmp_path / "settings.yaml"
    settings_file.write_text("- a\n- b\n")
    with pytest.raises(ValueError, match="mapping"):
        main_server.load_settings_file(str(settings_file))


def test_create_main_server_attaches_config():
    server = main_server.create_main_server({"default_namespace": "prod"})
    assert server.name == main_server.MAIN_SERVER_NAME
    assert getattr(server, "_config") == {"default_namespace": "prod"}


def test_runtime_provider_failure_marks_client_unavailable(monkeypatch, tmp_path):
    def fail_incluster():
        raise RuntimeError("Service host/port is not set.")

    monkeypatch.setattr(runtime_module.k8s_config, "load_incluster_config", fail_incluster)
    provider = runtime_module.KubeLogRuntimeProvider()

    providers = provider.initialize_providers({"kubeconfig_path": str(tmp_path / "missing")})

    assert providers["cluster_api"] is None
    assert providers["k8s_client"]["initialized"] is False
    assert "Service host/port" in providers["k8s_client"]["error"]


def test_runtime_provider_loads_kubeconfig(monkeypatch, tmp_path):
    kubeconfig = tmp_path / "config"
    kubeconfig.write_text("apiVersion: v1\n")
    loaded = {}

    def fake_load(config_file=None, context=None):
        loaded.update(config_file=config_file, context=context)

    monkeypatch.setattr(runtime_module.k8s_config, "load_kube_config", fake_load)
    provider = runtime_module.KubeLogRuntimeProvider()

    providers = provider.initialize_providers(
        {"kubeconfig_path": str(kubeconfig), "kube_context": "dev", "request_timeout": 12}
    )

    assert loaded == {"config_file": str(kubeconfig), "context": "dev"}
    assert providers["k8s_client"]["initialized"] is True
    assert isinstance(providers["cluster_api"], KubernetesClusterApi)
    assert providers["cluster_api"].request_timeout == 12


@pytest.mark.asyncio
async def test_init_runtime_yields_lifespan_context(monkeypatch):
    provider = runtime_module.KubeLogRuntimeProvider()
    monkeypatch.setattr(provider, "initialize_providers", lambda config: {"cluster_api": None})

    class App:
        _config = {"default_namespace": "prod"}

    async with provider.init_runtime(App()) as context:
        assert context == {"config": {"default_namespace": "prod"}, "providers": {"cluster_api": None}}
