from __future__ import annotations

import threading
from types import SimpleNamespace
from typing import Any
from unittest.mock import MagicMock, patch

import pytest
from kubernetes.client import ApiException, V1OwnerReference

from configwave.src.config import load_config
from configwave.src.constants import (
    CONFIG_HASH_ANNOTATION,
    FINALIZER,
    ConfigKind,
    WorkloadKind,
)
from configwave.src.controller import (
    WATCHED_KINDS,
    ReferenceIndex,
    WorkloadController,
    build_controller,
)
from configwave.src.reconciler import (
    ReconcileResult,
    WorkloadKey,
    WorkloadReconciler,
    template_annotations,
)
from configwave.src.refs import ObjectRef
from configwave.src.workqueue import WorkQueue
from configwave.tests.fakes import (
    NAMESPACE,
    FakeCluster,
    make_config_map,
    make_deployment,
    seed_examples,
)

DEPLOYMENT_KEY = WorkloadKey(WorkloadKind.DEPLOYMENT, NAMESPACE, "example")


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class RecordingStop:
    """Stop event whose ``wait`` returns immediately and records the timeout."""

    def __init__(self) -> None:
        self.waits: list[float] = []
        self._set = False

    def is_set(self) -> bool:
        return self._set

    def set(self) -> None:
        self._set = True

    def wait(self, timeout: float | None = None) -> bool:
        if timeout is not None:
            self.waits.append(timeout)
        return self._set


class FakeLister:
    """Serves ``list_call`` with scripted listings (or exceptions) per kind."""

    def __init__(self, responses: dict[Any, list[Any]] | None = None) -> None:
        self.responses = responses or {}
        self.list_calls: list[Any] = []

    def list_call(self, kind: Any, namespace: str | None) -> tuple[Any, dict[str, Any]]:
        return self._list, {"kind": kind}

    def _list(self, kind: Any, **kwargs: Any) -> Any:
        self.list_calls.append(kind)
        script = self.responses.get(kind) or [listing("1")]
        response = script.pop(0) if len(script) > 1 else script[0]
        if isinstance(response, Exception):
            raise response
        return response


def listing(resource_version: str, items: list[Any] | None = None) -> SimpleNamespace:
    return SimpleNamespace(
        metadata=SimpleNamespace(resource_version=resource_version), items=items or []
    )


def _make_controller(
    cluster: Any = None,
    reconciler: Any = None,
    queue_factory: Any = WorkQueue,
) -> WorkloadController:
    return WorkloadController(
        cluster=cluster or FakeLister(),
        reconciler=reconciler or MagicMock(),
        namespace=NAMESPACE,
        worker_count=1,
        resync_seconds=0,
        watch_timeout_seconds=5,
        queue_factory=queue_factory,
    )


def _drain(queue: WorkQueue[WorkloadKey]) -> list[WorkloadKey]:
    keys = []
    while (key := queue.get(timeout=0)) is not None:
        keys.append(key)
        queue.done(key)
    return keys


# ---------------------------------------------------------------------------
# Event handling
# ---------------------------------------------------------------------------


def test_reference_index_tracks_updates_and_removals() -> None:
    index = ReferenceIndex()
    cm = ObjectRef(ConfigKind.CONFIG_MAP, "shared")
    other = WorkloadKey(WorkloadKind.DAEMON_SET, NAMESPACE, "agent")

    index.update(DEPLOYMENT_KEY, frozenset({cm}))
    index.update(other, frozenset({cm}))
    assert index.lookup(NAMESPACE, cm) == {DEPLOYMENT_KEY, other}
    assert index.lookup("elsewhere", cm) == set()

    index.update(DEPLOYMENT_KEY, frozenset())
    assert index.lookup(NAMESPACE, cm) == {other}

    index.remove(other)
    assert index.lookup(NAMESPACE, cm) == set()
    assert index.known_workloads() == [DEPLOYMENT_KEY]


def test_workload_event_indexes_references_and_enqueues() -> None:
    controller = _make_controller()

    keys = controller.handle_workload_event(
        WorkloadKind.DEPLOYMENT, "ADDED", make_deployment(enabled=True)
    )

    assert keys == [DEPLOYMENT_KEY]
    assert controller.index.lookup(NAMESPACE, ObjectRef(ConfigKind.SECRET, "example2")) == {
        DEPLOYMENT_KEY
    }
    assert _drain(controller.queue) == [DEPLOYMENT_KEY]


def test_deleted_workload_is_dropped_from_index_but_still_reconciled() -> None:
    controller = _make_controller()
    controller.handle_workload_event(
        WorkloadKind.DEPLOYMENT, "ADDED", make_deployment(enabled=True)
    )
    _drain(controller.queue)

    controller.handle_workload_event(WorkloadKind.DEPLOYMENT, "DELETED", make_deployment())

    assert controller.index.known_workloads() == []
    assert _drain(controller.queue) == [DEPLOYMENT_KEY]


def test_config_event_enqueues_referencing_and_owning_workloads() -> None:
    controller = _make_controller()
    controller.handle_workload_event(
        WorkloadKind.DEPLOYMENT, "ADDED", make_deployment(enabled=True)
    )
    _drain(controller.queue)
    config_map = make_config_map("example1")
    config_map.metadata.owner_references = [
        V1OwnerReference(api_version="apps/v1", kind="StatefulSet", name="db", uid="u1"),
        V1OwnerReference(api_version="v1", kind="Bundle", name="ignored", uid="u2"),
    ]

    keys = controller.handle_config_event(ConfigKind.CONFIG_MAP, "MODIFIED", config_map)

    assert keys == [
        DEPLOYMENT_KEY,
        WorkloadKey(WorkloadKind.STATEFUL_SET, NAMESPACE, "db"),
    ]


def test_unrelated_config_event_enqueues_nothing() -> None:
    controller = _make_controller()

    keys = controller.handle_config_event(ConfigKind.SECRET, "ADDED", make_config_map("lonely"))

    assert keys == []
    assert len(controller.queue) == 0


def test_unmanaged_workload_is_reconciled_but_not_indexed() -> None:
    controller = _make_controller()
    controller.handle_workload_event(
        WorkloadKind.DEPLOYMENT, "ADDED", make_deployment(enabled=True)
    )

    # Opting out without a finalizer drops the workload from the index.
    keys = controller.handle_workload_event(WorkloadKind.DEPLOYMENT, "MODIFIED", make_deployment())

    assert keys == [DEPLOYMENT_KEY]
    assert controller.index.known_workloads() == []
    _drain(controller.queue)
    edited = make_config_map("example1")
    assert controller.handle_config_event(ConfigKind.CONFIG_MAP, "MODIFIED", edited) == []
    assert len(controller.queue) == 0


def test_opted_out_workload_with_finalizer_stays_indexed() -> None:
    controller = _make_controller()
    releasing = make_deployment()
    releasing.metadata.finalizers = [FINALIZER]

    controller.handle_workload_event(WorkloadKind.DEPLOYMENT, "MODIFIED", releasing)

    assert controller.index.known_workloads() == [DEPLOYMENT_KEY]


@pytest.mark.parametrize("event_type", ["BOOKMARK", "ERROR", ""])
def test_dispatch_ignores_non_object_events(event_type: str) -> None:
    controller = _make_controller()

    assert controller.dispatch(WorkloadKind.DEPLOYMENT, event_type, make_deployment()) == []
    assert len(controller.queue) == 0


def test_objects_without_identity_are_ignored() -> None:
    controller = _make_controller()
    nameless = SimpleNamespace(metadata=SimpleNamespace(name=None, namespace=NAMESPACE))

    assert controller.dispatch(WorkloadKind.DEPLOYMENT, "ADDED", nameless) == []
    assert controller.dispatch(ConfigKind.CONFIG_MAP, "ADDED", nameless) == []


# ---------------------------------------------------------------------------
# Workers
# ---------------------------------------------------------------------------


def test_process_next_returns_false_when_queue_is_empty() -> None:
    controller = _make_controller()

    assert controller.process_next(timeout=0) is False


@pytest.mark.parametrize(
    "result",
    [ReconcileResult(requeue=True), ReconcileResult(error=RuntimeError("boom"))],
)
def test_process_next_requeues_with_backoff(result: ReconcileResult) -> None:
    clock = FakeClock()
    reconciler = MagicMock()
    reconciler.reconcile_one.return_value = result
    controller = _make_controller(
        reconciler=reconciler, queue_factory=lambda: WorkQueue(clock=clock)
    )
    controller.queue.add(DEPLOYMENT_KEY)

    assert controller.process_next(timeout=0) is True

    assert controller.queue.num_requeues(DEPLOYMENT_KEY) == 1
    assert controller.queue.get(timeout=0) is None
    clock.now = 1.0
    assert controller.queue.get(timeout=0) == DEPLOYMENT_KEY


def test_process_next_forgets_backoff_after_success() -> None:
    reconciler = MagicMock()
    reconciler.reconcile_one.side_effect = [ReconcileResult(requeue=True), ReconcileResult()]
    clock = FakeClock()
    controller = _make_controller(
        reconciler=reconciler, queue_factory=lambda: WorkQueue(clock=clock)
    )
    controller.queue.add(DEPLOYMENT_KEY)
    controller.process_next(timeout=0)
    clock.now = 5.0

    controller.process_next(timeout=0)

    assert controller.queue.num_requeues(DEPLOYMENT_KEY) == 0
    assert reconciler.reconcile_one.call_count == 2


def test_listed_workload_is_reconciled_end_to_end() -> None:
    cluster = FakeCluster()
    seed_examples(cluster)
    stored = cluster.add_workload(WorkloadKind.DEPLOYMENT, make_deployment(enabled=True))
    controller = _make_controller(cluster=cluster, reconciler=WorkloadReconciler(cluster))

    controller._sync_from_list(WorkloadKind.DEPLOYMENT, listing("7", [stored]))
    assert controller.process_next(timeout=0) is True

    assert CONFIG_HASH_ANNOTATION in template_annotations(cluster.workload("example"))

    # A later ConfigMap change maps back to the workload through the index.
    keys = controller.handle_config_event(
        ConfigKind.CONFIG_MAP, "MODIFIED", cluster.config(ConfigKind.CONFIG_MAP, "example2")
    )
    assert keys == [DEPLOYMENT_KEY]


def test_resync_requeues_every_known_workload() -> None:
    controller = _make_controller()
    controller.handle_workload_event(
        WorkloadKind.DEPLOYMENT, "ADDED", make_deployment(enabled=True)
    )
    _drain(controller.queue)
    controller.resync_seconds = 60
    stop = MagicMock()
    stop.is_set.return_value = False
    stop.wait.side_effect = [False, True]

    controller._resync_loop(stop)

    assert _drain(controller.queue) == [DEPLOYMENT_KEY]
    assert stop.wait.call_args_list[0].kwargs == {"timeout": 60}


# ---------------------------------------------------------------------------
# Watches
# ---------------------------------------------------------------------------


def test_sync_from_list_drops_workloads_missing_from_fresh_listing() -> None:
    controller = _make_controller()
    controller.handle_workload_event(
        WorkloadKind.DEPLOYMENT, "ADDED", make_deployment("gone", enabled=True)
    )
    controller.handle_workload_event(
        WorkloadKind.STATEFUL_SET, "ADDED", make_deployment("db", enabled=True)
    )

    controller._sync_from_list(
        WorkloadKind.DEPLOYMENT, listing("2", [make_deployment("kept", enabled=True)])
    )

    assert controller.index.known_workloads() == [
        WorkloadKey(WorkloadKind.DEPLOYMENT, NAMESPACE, "kept"),
        WorkloadKey(WorkloadKind.STATEFUL_SET, NAMESPACE, "db"),
    ]


def test_watch_streams_from_list_version_and_tracks_event_versions() -> None:
    updated = make_deployment()
    updated.metadata.resource_version = "42"
    lister = FakeLister({WorkloadKind.DEPLOYMENT: [listing("100", [make_deployment()])]})
    controller = _make_controller(cluster=lister)
    stop = RecordingStop()
    versions_seen: list[Any] = []
    mock_watcher = MagicMock()

    def patched_stream(func: Any, **kwargs: Any) -> Any:
        versions_seen.append(kwargs["resource_version"])
        if len(versions_seen) == 1:
            return iter([{"type": "MODIFIED", "object": updated}])
        stop.set()
        return iter([])

    mock_watcher.stream.side_effect = patched_stream

    with patch("configwave.src.controller.watch.Watch", return_value=mock_watcher):
        controller.watch_kind(WorkloadKind.DEPLOYMENT, stop)

    assert versions_seen == ["100", "42"]
    assert mock_watcher.stream.call_args.kwargs["timeout_seconds"] == 5
    assert mock_watcher.stream.call_args.kwargs["kind"] is WorkloadKind.DEPLOYMENT
    assert mock_watcher.stop.call_count == 2
    assert _drain(controller.queue) == [DEPLOYMENT_KEY]


def test_watch_relists_and_resumes_after_410() -> None:
    lister = FakeLister({ConfigKind.CONFIG_MAP: [listing("100"), listing("200")]})
    controller = _make_controller(cluster=lister)
    stop = RecordingStop()
    versions_seen: list[Any] = []
    mock_watcher = MagicMock()

    def patched_stream(func: Any, **kwargs: Any) -> Any:
        versions_seen.append(kwargs["resource_version"])
        if len(versions_seen) == 1:
            raise ApiException(status=410, reason="Gone")
        stop.set()
        return iter([])

    mock_watcher.stream.side_effect = patched_stream

    with patch("configwave.src.controller.watch.Watch", return_value=mock_watcher):
        controller.watch_kind(ConfigKind.CONFIG_MAP, stop)

    assert versions_seen == ["100", "200"]
    assert lister.list_calls == [ConfigKind.CONFIG_MAP, ConfigKind.CONFIG_MAP]
    assert stop.waits == []


def test_watch_retries_initial_list_with_backoff() -> None:
    lister = FakeLister(
        {ConfigKind.SECRET: [ApiException(status=500, reason="temporary"), listing("100")]}
    )
    controller = _make_controller(cluster=lister)
    stop = RecordingStop()
    mock_watcher = MagicMock()

    def patched_stream(func: Any, **kwargs: Any) -> Any:
        stop.set()
        return iter([])

    mock_watcher.stream.side_effect = patched_stream

    with (
        patch("configwave.src.controller.watch.Watch", return_value=mock_watcher),
        patch("configwave.src.controller.random.random", return_value=0.5),
    ):
        controller.watch_kind(ConfigKind.SECRET, stop)

    assert len(lister.list_calls) == 2
    assert stop.waits == [pytest.approx(1.0)]
    assert mock_watcher.stream.call_count == 1


def test_watch_applies_exponential_backoff_on_api_error() -> None:
    controller = _make_controller()
    stop = RecordingStop()
    mock_watcher = MagicMock()
    call_count = 0

    def patched_stream(func: Any, **kwargs: Any) -> Any:
        nonlocal call_count
        call_count += 1
        if call_count <= 3:
            raise ApiException(status=500, reason="Internal Server Error")
        stop.set()
        return iter([])

    mock_watcher.stream.side_effect = patched_stream

    with (
        patch("configwave.src.controller.watch.Watch", return_value=mock_watcher),
        patch("configwave.src.controller.random.random", return_value=0.5),
    ):
        controller.watch_kind(WorkloadKind.DAEMON_SET, stop)

    assert stop.waits == [pytest.approx(1.0), pytest.approx(2.0), pytest.approx(4.0)]


def test_watch_handles_unexpected_exception_with_backoff() -> None:
    controller = _make_controller()
    stop = RecordingStop()
    mock_watcher = MagicMock()
    call_count = 0

    def patched_stream(func: Any, **kwargs: Any) -> Any:
        nonlocal call_count
        call_count += 1
        if call_count == 1:
            raise RuntimeError("stream decode failed")
        stop.set()
        return iter([])

    mock_watcher.stream.side_effect = patched_stream

    with (
        patch("configwave.src.controller.watch.Watch", return_value=mock_watcher),
        patch("configwave.src.controller.random.random", return_value=0.5),
    ):
        controller.watch_kind(WorkloadKind.DEPLOYMENT, stop)

    assert stop.waits == [pytest.approx(1.0)]
    assert call_count == 2


def test_watch_stops_controller_on_rbac_denied_list() -> None:
    lister = FakeLister({ConfigKind.SECRET: [ApiException(status=403, reason="forbidden")]})
    controller = _make_controller(cluster=lister)
    watch_factory = MagicMock()

    with patch("configwave.src.controller.watch.Watch", watch_factory):
        controller.watch_kind(ConfigKind.SECRET, RecordingStop())

    watch_factory.assert_not_called()
    assert controller._fatal.is_set()


def test_watch_stops_controller_on_rbac_denied_stream() -> None:
    controller = _make_controller()
    stop = RecordingStop()
    mock_watcher = MagicMock()
    mock_watcher.stream.side_effect = ApiException(status=401, reason="unauthorized")

    with patch("configwave.src.controller.watch.Watch", return_value=mock_watcher):
        controller.watch_kind(WorkloadKind.DEPLOYMENT, stop)

    assert stop.waits == []
    assert controller._fatal.is_set()
    assert mock_watcher.stop.called


def test_ready_only_after_every_kind_synced() -> None:
    controller = _make_controller()
    stop = threading.Event()

    for kind in WATCHED_KINDS[:-1]:
        controller._mark_synced(kind, stop)
        assert not controller.ready.is_set()

    controller._mark_synced(WATCHED_KINDS[-1], stop)
    assert controller.ready.is_set()


def test_sync_after_stop_does_not_mark_ready() -> None:
    controller = _make_controller()
    stop = threading.Event()
    stop.set()

    for kind in WATCHED_KINDS:
        controller._mark_synced(kind, stop)

    assert not controller.ready.is_set()


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


def test_run_forever_returns_after_fatal_rbac_error() -> None:
    denied = ApiException(status=403, reason="forbidden")
    lister = FakeLister({kind: [denied] for kind in WATCHED_KINDS})
    controller = _make_controller(cluster=lister)
    watch_factory = MagicMock()

    with patch("configwave.src.controller.watch.Watch", watch_factory):
        controller.run_forever(shutdown_event=threading.Event())

    watch_factory.assert_not_called()
    assert not controller.ready.is_set()
    assert controller.queue.shutting_down


class GatedLister(FakeLister):
    """Lister whose calls block while ``gate`` is cleared."""

    def __init__(self) -> None:
        super().__init__()
        self.gate = threading.Event()
        self.gate.set()
        self.blocked = threading.Event()

    def _list(self, kind: Any, **kwargs: Any) -> Any:
        if not self.gate.is_set():
            self.blocked.set()
            self.gate.wait(timeout=5)
        return super()._list(kind, **kwargs)


def _stream_until_ready(controller: WorkloadController, shutdown_event: threading.Event) -> Any:
    """Stream side effect that shuts the run down once every watch has synced."""

    def stream(func: Any, **kwargs: Any) -> Any:
        if not shutdown_event.is_set():
            assert controller.ready.wait(timeout=5)
            shutdown_event.set()
        return iter([])

    return stream


def test_run_forever_stops_on_shutdown_event() -> None:
    controller = _make_controller()
    shutdown_event = threading.Event()
    mock_watcher = MagicMock()
    mock_watcher.stream.side_effect = _stream_until_ready(controller, shutdown_event)

    with patch("configwave.src.controller.watch.Watch", return_value=mock_watcher):
        controller.run_forever(shutdown_event=shutdown_event)

    assert mock_watcher.stream.called
    assert shutdown_event.is_set()
    assert not controller.ready.is_set()


def test_ready_does_not_carry_over_into_next_run() -> None:
    lister = GatedLister()
    controller = _make_controller(cluster=lister)
    first_shutdown = threading.Event()
    mock_watcher = MagicMock()
    mock_watcher.stream.side_effect = _stream_until_ready(controller, first_shutdown)

    with patch("configwave.src.controller.watch.Watch", return_value=mock_watcher):
        controller.run_forever(shutdown_event=first_shutdown)
        assert not controller.ready.is_set()

        lister.gate.clear()
        second_shutdown = threading.Event()
        second_run = threading.Thread(
            target=controller.run_forever, args=(second_shutdown,), daemon=True
        )
        second_run.start()
        try:
            assert lister.blocked.wait(timeout=5)
            assert not controller.ready.is_set()
        finally:
            second_shutdown.set()
            lister.gate.set()
            second_run.join(timeout=10)

    assert not second_run.is_alive()
    assert not controller.ready.is_set()


def test_run_forever_recreates_queue_after_request_stop() -> None:
    created: list[WorkQueue[WorkloadKey]] = []

    def factory() -> WorkQueue[WorkloadKey]:
        queue: WorkQueue[WorkloadKey] = WorkQueue()
        created.append(queue)
        return queue

    denied = ApiException(status=403, reason="forbidden")
    controller = _make_controller(
        cluster=FakeLister({kind: [denied] for kind in WATCHED_KINDS}), queue_factory=factory
    )
    controller.request_stop()
    assert created[0].shutting_down

    with patch("configwave.src.controller.watch.Watch", MagicMock()):
        controller.run_forever(shutdown_event=threading.Event())

    assert len(created) == 2
    assert controller.queue is created[1]


def test_build_controller_applies_config() -> None:
    config = load_config(
        {
            "WATCH_NAMESPACE": "apps",
            "WORKER_COUNT": "4",
            "RESYNC_SECONDS": "120",
            "WATCH_TIMEOUT_SECONDS": "15",
        }
    )

    controller = build_controller(config, core_api=MagicMock(), apps_api=MagicMock())

    assert controller.namespace == "apps"
    assert controller.worker_count == 4
    assert controller.resync_seconds == 120
    assert controller.watch_timeout_seconds == 15
    assert controller.reconciler.cluster is controller.cluster
