from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Protocol

from kubernetes.client import ApiException, V1ObjectMeta

from configwave.src.constants import (
    CONFIG_HASH_ANNOTATION,
    EVENT_MESSAGE_TEMPLATE,
    EVENT_REASON_CONFIG_CHANGED,
    ConfigKind,
    WorkloadKind,
)
from configwave.src.finalizer import (
    FinalizerState,
    FinalizerTransition,
    add_finalizer,
    plan_transition,
    remove_finalizer,
)
from configwave.src.hashing import compute_hash, resolve_references
from configwave.src.kube import is_conflict, is_not_found
from configwave.src.metrics import METRICS
from configwave.src.owner_refs import OwnerReferenceReconciler, WorkloadIdentity
from configwave.src.refs import ObjectRef, extract_references


class ClusterAPI(Protocol):
    def get_workload(self, kind: WorkloadKind, namespace: str, name: str) -> Any | None: ...

    def replace_workload(self, kind: WorkloadKind, workload: Any) -> Any: ...

    def get_config_object(self, kind: ConfigKind, namespace: str, name: str) -> Any | None: ...

    def replace_config_object(self, kind: ConfigKind, obj: Any) -> Any: ...

    def list_config_objects(self, kind: ConfigKind, namespace: str) -> list[Any]: ...

    def record_event(
        self,
        kind: WorkloadKind,
        workload: Any,
        reason: str,
        message: str,
        event_type: str = "Normal",
    ) -> None: ...


@dataclass(frozen=True, order=True)
class WorkloadKey:
    kind: WorkloadKind
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.kind.value} {self.namespace}/{self.name}"


@dataclass(frozen=True)
class ReconcileResult:
    """Outcome of one reconciliation pass.

    ``requeue`` asks for another pass after backoff without treating the pass
    as failed (optimistic-concurrency conflicts).  ``error`` carries any other
    failure; the key is retried with backoff as well.
    """

    requeue: bool = False
    error: Exception | None = None

    @property
    def label(self) -> str:
        if self.error is not None:
            return "error"
        return "requeue" if self.requeue else "success"


def template_annotations(workload: Any) -> dict[str, str]:
    template = getattr(getattr(workload, "spec", None), "template", None)
    annotations = getattr(getattr(template, "metadata", None), "annotations", None)
    if not isinstance(annotations, dict):
        return {}
    return dict(annotations)


def set_config_hash(workload: Any, config_hash: str) -> bool:
    annotations = template_annotations(workload)
    if annotations.get(CONFIG_HASH_ANNOTATION) == config_hash:
        return False
    template = workload.spec.template
    if template.metadata is None:
        template.metadata = V1ObjectMeta()
    annotations[CONFIG_HASH_ANNOTATION] = config_hash
    template.metadata.annotations = annotations
    return True


def clear_config_hash(workload: Any) -> bool:
    annotations = template_annotations(workload)
    if CONFIG_HASH_ANNOTATION not in annotations:
        return False
    del annotations[CONFIG_HASH_ANNOTATION]
    workload.spec.template.metadata.annotations = annotations
    return True


class WorkloadReconciler:
    """Level-triggered reconciliation of a single workload key.

    Every pass re-reads the workload and its configuration objects, so the
    outcome depends only on current cluster state.  Each write is idempotent;
    a pass abandoned half way is completed by the next one.

    Order of work for an opted-in workload:

    1. Extract references from the pod template and fetch each object.
    2. Compute the config hash unless a required reference is missing.
    3. Write the hash annotation and, if absent, the finalizer in a single
       workload update; emit an event when the hash changed.
    4. Reconcile owner references on every desired or already linked object.

    Opted-out and deleting workloads have every owner reference orphaned
    before the finalizer is removed.
    """

    def __init__(
        self,
        cluster: ClusterAPI,
        owner_refs: OwnerReferenceReconciler | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.cluster = cluster
        self.logger = logger or logging.getLogger(__name__)
        self.owner_refs = owner_refs or OwnerReferenceReconciler(cluster)

    def reconcile_one(self, key: WorkloadKey) -> ReconcileResult:
        """Run one pass for *key*; never raises for cluster API failures."""
        started = time.monotonic()
        try:
            result = self._reconcile(key)
        except ApiException as exc:
            if is_conflict(exc):
                self.logger.debug("Conflict reconciling %s; requeueing", key)
                result = ReconcileResult(requeue=True)
            elif is_not_found(exc):
                self.logger.debug("%s disappeared during reconciliation", key)
                result = ReconcileResult()
            else:
                self.logger.exception("Failed to reconcile %s", key)
                result = ReconcileResult(error=exc)
        except Exception as exc:
            self.logger.exception("Unexpected error reconciling %s", key)
            result = ReconcileResult(error=exc)

        METRICS.reconcile_total.labels(kind=key.kind.value, result=result.label).inc()
        METRICS.reconcile_duration_seconds.labels(kind=key.kind.value).observe(
            time.monotonic() - started
        )
        return result

    def _reconcile(self, key: WorkloadKey) -> ReconcileResult:
        workload = self.cluster.get_workload(key.kind, key.namespace, key.name)
        if workload is None:
            self.logger.debug("%s not found; nothing to do", key)
            return ReconcileResult()

        owner = WorkloadIdentity.from_object(key.kind, workload)
        transition = plan_transition(workload)
        if transition.manages_children:
            self._sync_children(key, workload, owner, transition)
        else:
            self._release_children(key, workload, owner, transition)
        return ReconcileResult()

    def _sync_children(
        self,
        key: WorkloadKey,
        workload: Any,
        owner: WorkloadIdentity,
        transition: FinalizerTransition,
    ) -> None:
        references = extract_references(workload.spec.template)
        found: dict[ObjectRef, Any] = {}

        def fetch(ref: ObjectRef) -> Any | None:
            obj = self.cluster.get_config_object(ref.kind, key.namespace, ref.name)
            if obj is not None:
                found[ref] = obj
            return obj

        resolution = resolve_references(references, fetch)

        config_hash: str | None = None
        hash_changed = False
        if resolution.hash_blocked:
            METRICS.missing_required_total.labels(kind=key.kind.value).inc()
            self.logger.info(
                "Keeping current config hash on %s; required references missing: %s",
                key,
                ", ".join(str(ref) for ref in resolution.missing_required),
            )
        elif resolution.objects:
            config_hash = compute_hash(resolution.objects)
            hash_changed = set_config_hash(workload, config_hash)
        else:
            hash_changed = clear_config_hash(workload)

        finalizer_added = transition.add_finalizer and add_finalizer(workload)
        if hash_changed or finalizer_added:
            updated = self.cluster.replace_workload(key.kind, workload)
            if finalizer_added:
                METRICS.finalizer_mutations_total.labels(action="add").inc()
                self.logger.info("Added finalizer to %s", key)
            if hash_changed:
                METRICS.hash_updates_total.labels(kind=key.kind.value).inc()
            if hash_changed and config_hash is not None:
                message = EVENT_MESSAGE_TEMPLATE.format(config_hash=config_hash)
                self.logger.info("%s: %s", key, message)
                self.cluster.record_event(
                    key.kind,
                    updated if updated is not None else workload,
                    reason=EVENT_REASON_CONFIG_CHANGED,
                    message=message,
                )
            elif hash_changed:
                self.logger.info("Removed config hash from %s; no references resolved", key)

        self.owner_refs.reconcile(owner, desired=resolution.found, found=found)

    def _release_children(
        self,
        key: WorkloadKey,
        workload: Any,
        owner: WorkloadIdentity,
        transition: FinalizerTransition,
    ) -> None:
        if transition.orphan_children:
            self.owner_refs.orphan_all(owner)

        finalizer_removed = transition.remove_finalizer and remove_finalizer(workload)
        # The hash only lives on opted-in workloads; a workload being deleted
        # keeps its template untouched.
        hash_removed = transition.target is FinalizerState.ABSENT and clear_config_hash(workload)
        if not (finalizer_removed or hash_removed):
            return

        self.cluster.replace_workload(key.kind, workload)
        if finalizer_removed:
            METRICS.finalizer_mutations_total.labels(action="remove").inc()
            self.logger.info(
                "Removed finalizer from %s (%s -> %s)",
                key,
                transition.current.value,
                transition.target.value,
            )
        if hash_removed:
            self.logger.info("Removed config hash from opted-out %s", key)
