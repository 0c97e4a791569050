import asyncio
import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from fakes import FakeClusterApi, make_pod
from interfaces.cluster_api import PodWatchEvent
from log_aggregator.discovery import (
    ActiveLoopRegistry,
    PodSelection,
    WatchCoordinator,
    combine_selectors,
    discover_pods,
    resolve_label_selector,
    validate_selection,
)
from log_aggregator.errors import NoPodsFoundError, OwnerResolutionError, SelectionError
from log_aggregator.filters import LogFilters
from log_aggregator.poll_loop import loop_key
from models import KubeLogRequest


class RecordingLoop:
    """Poll loop double that only records lifecycle calls."""

    def __init__(self, pod, container):
        self.pod = pod.name
        self.container = container
        self.started = False
        self.stop_calls = 0

    @property
    def key(self):
        return loop_key(self.pod, self.container)

    def start(self):
        self.started = True
        return self

    def stop(self):
        self.stop_calls += 1


def make_coordinator(api=None, filters=None, selection=None):
    created = []

    def factory(pod, container):
        loop = RecordingLoop(pod, container)
        created.append(loop)
        return loop

    coordinator = WatchCoordinator(
        api or FakeClusterApi(),
        selection or PodSelection(namespace="default", label_selector="app=web"),
        "app=web",
        filters or LogFilters(),
        loop_factory=factory,
        timeout_seconds=10,
    )
    return coordinator, created


class TestValidateSelection:
    def test_requires_some_selection(self):
        with pytest.raises(SelectionError, match="no pod identification method provided"):
            validate_selection(PodSelection(namespace="default"))

    def test_owner_kind_needs_name(self):
        with pytest.raises(SelectionError, match="ownerKind"):
            validate_selection(PodSelection(namespace="default", owner_kind="Deployment"))
        with pytest.raises(SelectionError, match="ownerName"):
            validate_selection(PodSelection(namespace="default", owner_name="web"))

    def test_unsupported_owner_kind(self):
        with pytest.raises(SelectionError, match="Unsupported owner kind: CronJob"):
            validate_selection(PodSelection(namespace="default", owner_kind="CronJob", owner_name="x"))

    def test_valid_selections(self):
        validate_selection(PodSelection(namespace="default", pod_name="web-1"))
        validate_selection(PodSelection(namespace="default", label_selector="app=web"))
        validate_selection(PodSelection(namespace="default", owner_kind="Job", owner_name="migrate"))


def test_selection_from_request_strips_blanks():
    selection = PodSelection.from_request(KubeLogRequest(namespace="prod", pod_name="  ", label_selector=" app=web "))
    assert selection == PodSelection(namespace="prod", label_selector="app=web")
    assert PodSelection(namespace="prod", pod_name="web-1").field_selector == "metadata.name=web-1"


def test_combine_selectors():
    assert combine_selectors("app=web", None, " tier=fe ") == "app=web,tier=fe"
    assert combine_selectors(None, "") is None


@pytest.mark.asyncio
async def test_resolve_label_selector_combines_owner_and_explicit():
    api = FakeClusterApi(owner_selectors={("Deployment", "web"): "app=web"})
    selection = PodSelection(namespace="default", label_selector="tier=fe", owner_kind="Deployment", owner_name="web")
    assert await resolve_label_selector(api, selection) == "app=web,tier=fe"


@pytest.mark.asyncio
async def test_resolve_label_selector_failures():
    api = FakeClusterApi(owner_selectors={("DaemonSet", "empty"): ""})
    with pytest.raises(OwnerResolutionError, match="Deployment/missing"):
        await resolve_label_selector(
            api, PodSelection(namespace="default", owner_kind="Deployment", owner_name="missing")
        )
    with pytest.raises(OwnerResolutionError, match="no pod selector labels"):
        await resolve_label_selector(
            api, PodSelection(namespace="default", owner_kind="DaemonSet", owner_name="empty")
        )


@pytest.mark.asyncio
async def test_discover_pods_applies_selector_and_pattern():
    api = FakeClusterApi(
        pods=[
            make_pod("web-1", labels={"app": "web"}),
            make_pod("web-canary", labels={"app": "web"}),
            make_pod("db-0", labels={"app": "db"}),
            make_pod("web-2", namespace="other", labels={"app": "web"}),
        ]
    )
    selection = PodSelection(namespace="default", label_selector="app=web")
    targets = await discover_pods(api, selection, "app=web", LogFilters.build(pod_pattern=r"web-\d"))
    assert list(targets) == ["web-1"]


@pytest.mark.asyncio
async def test_discover_pods_empty_is_fatal_with_hint():
    api = FakeClusterApi(pods=[make_pod("db-0", labels={"app": "db"})])
    selection = PodSelection(namespace="default", label_selector="app=web")
    with pytest.raises(NoPodsFoundError) as excinfo:
        await discover_pods(api, selection, "app=web", LogFilters())
    assert "label_selector=app=web" in excinfo.value.message
    assert "namespace 'default'" in excinfo.value.message


def test_registry_rejects_duplicates_and_tracks_total():
    registry = ActiveLoopRegistry()
    pod = make_pod("web-1", containers=["app", "proxy"])
    assert registry.add(RecordingLoop(pod, "app"))
    assert not registry.add(RecordingLoop(pod, "app"))
    assert registry.add(RecordingLoop(pod, "proxy"))
    assert len(registry) == 2

    removed = registry.remove_pod("web-1")
    assert {l.container for l in removed} == {"app", "proxy"}
    assert all(l.stop_calls == 1 for l in removed)
    assert len(registry) == 0
    assert registry.started_total == 2


def test_coordinator_track_is_idempotent_per_container():
    coordinator, created = make_coordinator(filters=LogFilters.build(container_pattern="^(app|proxy)$"))

    coordinator.track(make_pod("web-1", containers=["app"]))
    coordinator.track(make_pod("web-1", containers=["app"]))
    coordinator.track(make_pod("web-1", containers=["app", "proxy", "init-db"]))

    assert sorted(coordinator.registry.keys()) == ["web-1|app", "web-1|proxy"]
    assert len(created) == 2
    assert all(loop.started for loop in created)


def test_coordinator_handles_add_modify_delete():
    coordinator, created = make_coordinator(filters=LogFilters.build(pod_pattern="^web"))

    coordinator.handle_event(PodWatchEvent("ADDED", make_pod("web-1")))
    coordinator.handle_event(PodWatchEvent("ADDED", make_pod("cache-1")))
    coordinator.handle_event(PodWatchEvent("MODIFIED", make_pod("web-2", containers=["app", "sidecar"])))
    assert sorted(coordinator.registry.keys()) == ["web-1|app", "web-2|app", "web-2|sidecar"]
    assert set(coordinator.targets) == {"web-1", "web-2"}

    coordinator.handle_event(PodWatchEvent("DELETED", make_pod("web-2")))
    assert coordinator.registry.keys() == ["web-1|app"]
    assert "web-2" not in coordinator.targets
    assert {l.key for l in coordinator.retired} == {"web-2|app", "web-2|sidecar"}
    assert all(l.stop_calls == 1 for l in coordinator.retired)
    assert coordinator.seen_pods == {"web-1", "web-2"}
    assert coordinator.registry.started_total == 3


def test_coordinator_ignores_other_pods_when_pod_name_given():
    coordinator, _ = make_coordinator(selection=PodSelection(namespace="default", pod_name="web-1"))
    coordinator.handle_event(PodWatchEvent("ADDED", make_pod("web-2")))
    assert len(coordinator.registry) == 0


@pytest.mark.asyncio
async def test_coordinator_consumes_pod_watch():
    api = FakeClusterApi()
    coordinator, _ = make_coordinator(api=api)
    coordinator.start()

    api.pod_watch.push(PodWatchEvent("ADDED", make_pod("web-3")))
    await asyncio.sleep(0.02)
    assert "web-3|app" in coordinator.registry

    coordinator.stop()
    coordinator.stop()
    await coordinator.join(1.0)
    assert api.pod_watch.stop_calls == 1
    assert api.pod_watch_calls == [
        {"namespace": "default", "label_selector": "app=web", "field_selector": None, "timeout_seconds": 10}
    ]

    # notifications after stop are ignored
    coordinator.handle_event(PodWatchEvent("ADDED", make_pod("web-4")))
    assert "web-4|app" not in coordinator.registry


@pytest.mark.asyncio
async def test_coordinator_watch_failure_is_diagnostic():
    api = FakeClusterApi()
    coordinator, _ = make_coordinator(api=api)
    coordinator.start()
    api.pod_watch.push(RuntimeError("watch closed"))
    await coordinator.join(1.0)
    assert coordinator.diagnostics.entries() == ["pod watch in default: RuntimeError: watch closed"]
