from __future__ import annotations

import logging
import random
import threading
import time
from collections.abc import Callable
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException, AppsV1Api, CoreV1Api

from configwave.src.config import ControllerConfig
from configwave.src.constants import ConfigKind, WorkloadKind
from configwave.src.finalizer import has_finalizer, is_enabled
from configwave.src.kube import ClusterClient
from configwave.src.metrics import METRICS
from configwave.src.reconciler import WorkloadKey, WorkloadReconciler
from configwave.src.refs import ObjectRef, extract_references
from configwave.src.workqueue import WorkQueue

WatchedKind = WorkloadKind | ConfigKind
WATCHED_KINDS: tuple[WatchedKind, ...] = (*WorkloadKind, *ConfigKind)
_WORKLOAD_KIND_NAMES = {kind.value: kind for kind in WorkloadKind}


class ReferenceIndex:
    """Maps ConfigMaps and Secrets back to the workloads whose templates reference them.

    Fed from workload watch events, so a configuration object that a workload
    references but does not (yet) carry an owner reference for, such as a
    required ConfigMap created after the workload, still triggers a pass.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._by_workload: dict[WorkloadKey, frozenset[ObjectRef]] = {}
        self._by_object: dict[tuple[str, ObjectRef], set[WorkloadKey]] = {}

    def update(self, key: WorkloadKey, refs: frozenset[ObjectRef]) -> None:
        with self._lock:
            self._remove_locked(key)
            self._by_workload[key] = refs
            for ref in refs:
                self._by_object.setdefault((key.namespace, ref), set()).add(key)

    def remove(self, key: WorkloadKey) -> None:
        with self._lock:
            self._remove_locked(key)

    def _remove_locked(self, key: WorkloadKey) -> None:
        for ref in self._by_workload.pop(key, frozenset()):
            holders = self._by_object.get((key.namespace, ref))
            if holders is None:
                continue
            holders.discard(key)
            if not holders:
                del self._by_object[(key.namespace, ref)]

    def lookup(self, namespace: str, ref: ObjectRef) -> set[WorkloadKey]:
        with self._lock:
            return set(self._by_object.get((namespace, ref), set()))

    def known_workloads(self) -> list[WorkloadKey]:
        with self._lock:
            return sorted(self._by_workload)


class WorkloadController:
    """Wires Kubernetes watches to the workload reconciler.

    One list-then-watch thread per kind (Deployment, StatefulSet, DaemonSet,
    ConfigMap, Secret) turns events into workload keys on a de-duplicating
    work queue; ``worker_count`` threads drain the queue through
    :meth:`WorkloadReconciler.reconcile_one`.  Because reconciliation is
    level-triggered, dropped, duplicated or reordered events only cost an
    extra pass; the periodic resync covers anything a watch gap missed.

    Watch loop behaviour per kind:

    1. Retry the initial list with jittered exponential backoff (1 s to 30 s).
    2. Feed every listed object through the event handlers, then stream
       changes from the list's ``resourceVersion``.
    3. On ``410 Gone`` re-list and resume from the fresh resourceVersion.
    4. On ``401``/``403`` stop the whole controller: RBAC errors do not heal
       by retrying.

    ``ready`` is set once every kind has completed its initial list.
    """

    def __init__(
        self,
        cluster: ClusterClient,
        reconciler: WorkloadReconciler,
        namespace: str | None = None,
        worker_count: int = 2,
        resync_seconds: int = 600,
        watch_timeout_seconds: int = 30,
        queue_factory: Callable[[], WorkQueue[WorkloadKey]] = WorkQueue,
        logger: logging.Logger | None = None,
    ) -> None:
        self.cluster = cluster
        self.reconciler = reconciler
        self.namespace = namespace
        self.worker_count = worker_count
        self.resync_seconds = resync_seconds
        self.watch_timeout_seconds = watch_timeout_seconds
        self.logger = logger or logging.getLogger(__name__)
        self._queue_factory = queue_factory
        self.queue: WorkQueue[WorkloadKey] = queue_factory()
        self.index = ReferenceIndex()

        self.ready = threading.Event()
        self._external_stop = threading.Event()
        self._fatal = threading.Event()
        self._synced: set[WatchedKind] = set()
        self._active_watchers: set[watch.Watch] = set()
        self._state_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Event handling
    # ------------------------------------------------------------------

    def handle_workload_event(
        self, kind: WorkloadKind, event_type: str, workload: Any
    ) -> list[WorkloadKey]:
        """Refresh the reference index for *workload* and enqueue its key.

        Only workloads that are opted in or still carry the finalizer are
        indexed; changes to configuration objects never fan out to the rest.
        """
        metadata = getattr(workload, "metadata", None)
        name = getattr(metadata, "name", None)
        namespace = getattr(metadata, "namespace", None)
        if not name or not namespace:
            return []

        key = WorkloadKey(kind=kind, namespace=namespace, name=name)
        if event_type == "DELETED" or not (is_enabled(workload) or has_finalizer(workload)):
            self.index.remove(key)
        else:
            template = getattr(getattr(workload, "spec", None), "template", None)
            refs = frozenset(ref.key for ref in extract_references(template))
            self.index.update(key, refs)
        self.queue.add(key)
        return [key]

    def handle_config_event(self, kind: ConfigKind, event_type: str, obj: Any) -> list[WorkloadKey]:
        """Enqueue every workload that owns or references the changed object."""
        metadata = getattr(obj, "metadata", None)
        name = getattr(metadata, "name", None)
        namespace = getattr(metadata, "namespace", None)
        if not name or not namespace:
            return []

        keys = self.index.lookup(namespace, ObjectRef(kind=kind, name=name))
        for owner in getattr(metadata, "owner_references", None) or []:
            workload_kind = _WORKLOAD_KIND_NAMES.get(getattr(owner, "kind", None) or "")
            owner_name = getattr(owner, "name", None)
            if workload_kind is None or not owner_name:
                continue
            keys.add(WorkloadKey(kind=workload_kind, namespace=namespace, name=owner_name))

        ordered = sorted(keys)
        for key in ordered:
            self.queue.add(key)
        if ordered:
            self.logger.debug(
                "%s event for %s %s/%s enqueued %d workload(s)",
                event_type,
                kind.value,
                namespace,
                name,
                len(ordered),
            )
        return ordered

    def dispatch(self, kind: WatchedKind, event_type: str, obj: Any) -> list[WorkloadKey]:
        if event_type not in {"ADDED", "MODIFIED", "DELETED"}:
            return []
        if isinstance(kind, WorkloadKind):
            return self.handle_workload_event(kind, event_type, obj)
        return self.handle_config_event(kind, event_type, obj)

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------

    def process_next(self, timeout: float | None = 1.0) -> bool:
        """Reconcile one queued key; return False when nothing was processed."""
        key = self.queue.get(timeout=timeout)
        if key is None:
            return False
        try:
            result = self.reconciler.reconcile_one(key)
            if result.requeue or result.error is not None:
                delay = self.queue.add_rate_limited(key)
                METRICS.requeues_total.inc()
                self.logger.info(
                    "Requeueing %s in %.1fs (%s)",
                    key,
                    delay,
                    "conflict" if result.error is None else type(result.error).__name__,
                )
            else:
                self.queue.forget(key)
        finally:
            self.queue.done(key)
        return True

    def _worker_loop(self, stop: threading.Event) -> None:
        while not self._should_stop(stop) and not self.queue.shutting_down:
            try:
                self.process_next(timeout=1.0)
            except Exception:
                self.logger.exception("Unexpected error in reconcile worker")

    def _resync_loop(self, stop: threading.Event) -> None:
        while not stop.wait(timeout=self.resync_seconds):
            if self._should_stop(stop):
                return
            known = self.index.known_workloads()
            self.logger.info("Periodic resync: requeueing %d workload(s)", len(known))
            for key in known:
                self.queue.add(key)

    # ------------------------------------------------------------------
    # Watches
    # ------------------------------------------------------------------

    def request_stop(self) -> None:
        """Request a cooperative stop and immediately interrupt open watch streams."""
        self._external_stop.set()
        self._interrupt()

    def _interrupt(self) -> None:
        with self._state_lock:
            watchers = list(self._active_watchers)
        for watcher in watchers:
            watcher.stop()
        self.queue.shutdown()

    def _should_stop(self, stop: threading.Event) -> bool:
        return stop.is_set() or self._external_stop.is_set() or self._fatal.is_set()

    def _mark_synced(self, kind: WatchedKind, stop: threading.Event) -> None:
        with self._state_lock:
            if self._should_stop(stop):
                return
            self._synced.add(kind)
            if len(self._synced) == len(WATCHED_KINDS):
                self.ready.set()
                self.logger.info("All watches synced; controller ready")

    def _list(self, kind: WatchedKind) -> Any:
        func, kwargs = self.cluster.list_call(kind, self.namespace)
        return func(**kwargs)

    def _sync_from_list(self, kind: WatchedKind, listing: Any) -> None:
        """Feed a full listing through the handlers.

        Workloads that were indexed but are absent from a fresh listing were
        deleted while the watch was down; they are dropped from the index.
        """
        items = getattr(listing, "items", None) or []
        if isinstance(kind, WorkloadKind):
            listed: set[WorkloadKey] = set()
            for item in items:
                listed.update(self.dispatch(kind, "ADDED", item))
            for key in self.index.known_workloads():
                if key.kind is kind and key not in listed:
                    self.index.remove(key)
            return
        for item in items:
            self.dispatch(kind, "ADDED", item)

    def _access_denied(self, kind: WatchedKind, exc: ApiException, phase: str) -> bool:
        if exc.status not in {401, 403}:
            return False
        self.logger.error(
            "Kubernetes API access denied during %s %s (status=%s). "
            "Check controller RBAC and service account permissions.",
            kind.value,
            phase,
            exc.status,
        )
        METRICS.watch_errors_total.labels(kind=kind.value).inc()
        self._fatal.set()
        return True

    def _initial_list(self, kind: WatchedKind, stop: threading.Event) -> str | None:
        backoff_seconds = 1
        while not self._should_stop(stop):
            try:
                listing = self._list(kind)
                self._sync_from_list(kind, listing)
                resource_version = getattr(
                    getattr(listing, "metadata", None), "resource_version", None
                )
                self._mark_synced(kind, stop)
                self.logger.info(
                    "Starting %s watch from resourceVersion %s", kind.value, resource_version
                )
                return resource_version
            except ApiException as exc:
                if self._access_denied(kind, exc, "initial list"):
                    return None
                self.logger.exception("Initial %s list failed", kind.value)
                METRICS.watch_errors_total.labels(kind=kind.value).inc()
            except Exception:
                self.logger.exception("Unexpected error during initial %s list", kind.value)
                METRICS.watch_errors_total.labels(kind=kind.value).inc()

            jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
            stop.wait(timeout=jittered)
            backoff_seconds = min(backoff_seconds * 2, 30)
        return None

    def watch_kind(self, kind: WatchedKind, stop: threading.Event) -> None:
        """List-then-watch *kind* until stopped."""
        resource_version = self._initial_list(kind, stop)
        if self._should_stop(stop):
            return

        backoff_seconds = 1
        stream_count = 0
        while not self._should_stop(stop):
            watcher = watch.Watch()
            with self._state_lock:
                self._active_watchers.add(watcher)
            try:
                if stream_count > 0:
                    METRICS.watch_reconnects_total.labels(kind=kind.value).inc()
                stream_count += 1
                func, kwargs = self.cluster.list_call(kind, self.namespace)
                stream = watcher.stream(
                    func,
                    resource_version=resource_version,
                    timeout_seconds=self.watch_timeout_seconds,
                    **kwargs,
                )
                for event in stream:
                    if self._should_stop(stop):
                        break
                    obj = event.get("object")
                    if obj is None:
                        continue
                    metadata = getattr(obj, "metadata", None)
                    if metadata is not None and getattr(metadata, "resource_version", None):
                        resource_version = metadata.resource_version
                    self.dispatch(kind, str(event.get("type", "")), obj)

                backoff_seconds = 1
            except ApiException as exc:
                # 410 Gone: the resourceVersion was compacted away; re-list to
                # get a fresh snapshot and resume from there.
                if exc.status == 410:
                    self.logger.warning("%s watch resource version expired, re-listing", kind.value)
                    try:
                        fresh = self._list(kind)
                        resource_version = getattr(
                            getattr(fresh, "metadata", None), "resource_version", None
                        )
                        self._sync_from_list(kind, fresh)
                    except ApiException as relist_exc:
                        if self._access_denied(kind, relist_exc, "410 re-list"):
                            return
                        self.logger.exception("Failed to re-list %s after 410", kind.value)
                        METRICS.watch_errors_total.labels(kind=kind.value).inc()
                        resource_version = None
                    continue

                if self._access_denied(kind, exc, "watch"):
                    return

                self.logger.exception("Kubernetes API %s watch error", kind.value)
                METRICS.watch_errors_total.labels(kind=kind.value).inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            except Exception:
                self.logger.exception("Unexpected %s watch error", kind.value)
                METRICS.watch_errors_total.labels(kind=kind.value).inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            finally:
                watcher.stop()
                with self._state_lock:
                    self._active_watchers.discard(watcher)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        """Run watches, workers and resync until shutdown or a fatal API error."""
        stop = shutdown_event or threading.Event()
        self._external_stop.clear()
        self._fatal.clear()
        with self._state_lock:
            self._synced.clear()
            self.ready.clear()
        if self.queue.shutting_down:
            self.queue = self._queue_factory()

        # Threads of this run stop on run_stop so a later run after a
        # leadership handoff never shares them.
        run_stop = threading.Event()
        threads: list[threading.Thread] = []
        for kind in WATCHED_KINDS:
            threads.append(
                threading.Thread(
                    target=self.watch_kind,
                    args=(kind, run_stop),
                    name=f"watch-{kind.value.lower()}",
                    daemon=True,
                )
            )
        for index in range(self.worker_count):
            threads.append(
                threading.Thread(
                    target=self._worker_loop,
                    args=(run_stop,),
                    name=f"reconcile-worker-{index}",
                    daemon=True,
                )
            )
        if self.resync_seconds > 0:
            threads.append(
                threading.Thread(
                    target=self._resync_loop,
                    args=(run_stop,),
                    name="resync",
                    daemon=True,
                )
            )
        for thread in threads:
            thread.start()

        while not self._should_stop(stop):
            stop.wait(timeout=0.5)

        if self._fatal.is_set():
            self.logger.error("Stopping controller after fatal Kubernetes API error")
        run_stop.set()
        with self._state_lock:
            self.ready.clear()
        self._interrupt()
        deadline = time.monotonic() + self.watch_timeout_seconds
        for thread in threads:
            thread.join(timeout=max(0.0, deadline - time.monotonic()))
        self.ready.clear()
        self.logger.info("Controller loop stopped")


def build_controller(
    config: ControllerConfig, core_api: CoreV1Api, apps_api: AppsV1Api
) -> WorkloadController:
    cluster = ClusterClient(core_api=core_api, apps_api=apps_api)
    return WorkloadController(
        cluster=cluster,
        reconciler=WorkloadReconciler(cluster),
        namespace=config.namespace,
        worker_count=config.worker_count,
        resync_seconds=config.resync_seconds,
        watch_timeout_seconds=config.watch_timeout_seconds,
    )
