from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol

from kubernetes.client import ApiException, V1OwnerReference

from configwave.src.constants import ConfigKind, WorkloadKind
from configwave.src.kube import is_conflict, is_not_found
from configwave.src.metrics import METRICS
from configwave.src.refs import ObjectRef


class ConfigObjectStore(Protocol):
    def get_config_object(self, kind: ConfigKind, namespace: str, name: str) -> Any | None: ...

    def replace_config_object(self, kind: ConfigKind, obj: Any) -> Any: ...

    def list_config_objects(self, kind: ConfigKind, namespace: str) -> list[Any]: ...


@dataclass(frozen=True)
class WorkloadIdentity:
    """The fields of a workload that an owner reference points at."""

    kind: WorkloadKind
    namespace: str
    name: str
    uid: str

    @classmethod
    def from_object(cls, kind: WorkloadKind, workload: Any) -> WorkloadIdentity:
        metadata = workload.metadata
        return cls(kind=kind, namespace=metadata.namespace, name=metadata.name, uid=metadata.uid)

    def owner_reference(self) -> V1OwnerReference:
        # controller=False: a ConfigMap may be shared by several workloads and
        # may already have a managing controller of its own.
        return V1OwnerReference(
            api_version=self.kind.api_version,
            kind=self.kind.value,
            name=self.name,
            uid=self.uid,
            controller=False,
            block_owner_deletion=True,
        )

    def __str__(self) -> str:
        return f"{self.kind.value} {self.namespace}/{self.name}"


class OwnerRefAction(str, Enum):
    ADD = "add"
    REMOVE = "remove"


@dataclass(frozen=True)
class OwnerRefMutation:
    ref: ObjectRef
    action: OwnerRefAction


def _owner_references(obj: Any) -> list[Any]:
    metadata = getattr(obj, "metadata", None)
    refs = getattr(metadata, "owner_references", None)
    return list(refs) if isinstance(refs, list) else []


def has_owner_reference(obj: Any, uid: str) -> bool:
    return any(getattr(ref, "uid", None) == uid for ref in _owner_references(obj))


def add_owner_reference(obj: Any, owner: WorkloadIdentity) -> bool:
    """Append an owner reference for *owner* unless one already exists; return True if changed."""
    if has_owner_reference(obj, owner.uid):
        return False
    obj.metadata.owner_references = _owner_references(obj) + [owner.owner_reference()]
    return True


def remove_owner_reference(obj: Any, uid: str) -> bool:
    """Drop owner references with *uid*, keeping every other entry; return True if changed."""
    refs = _owner_references(obj)
    kept = [ref for ref in refs if getattr(ref, "uid", None) != uid]
    if len(kept) == len(refs):
        return False
    obj.metadata.owner_references = kept
    return True


def plan_owner_reference_mutations(
    owner_uid: str,
    desired: Iterable[ObjectRef],
    related: Mapping[ObjectRef, Any],
) -> list[OwnerRefMutation]:
    """Diff the linked set against *desired*.

    *related* maps every object that is either desired or already linked to
    the workload onto its current state; objects that no longer exist map to
    ``None`` and are skipped.
    """
    wanted = set(desired)
    mutations: list[OwnerRefMutation] = []
    for ref in sorted(set(related) | wanted):
        obj = related.get(ref)
        if obj is None:
            continue
        linked = has_owner_reference(obj, owner_uid)
        if ref in wanted and not linked:
            mutations.append(OwnerRefMutation(ref=ref, action=OwnerRefAction.ADD))
        elif ref not in wanted and linked:
            mutations.append(OwnerRefMutation(ref=ref, action=OwnerRefAction.REMOVE))
    return mutations


class OwnerReferenceReconciler:
    """Keeps owner references from configuration objects to one workload in sync.

    Only entries carrying the workload's UID are ever added or removed.  Each
    mutation re-reads the object, applies the change and replaces it with the
    fresh resourceVersion, retrying a few times on ``409 Conflict`` before
    giving the conflict back to the caller.
    """

    def __init__(
        self,
        cluster: ConfigObjectStore,
        max_conflict_retries: int = 3,
        logger: logging.Logger | None = None,
    ) -> None:
        self.cluster = cluster
        self.max_conflict_retries = max(1, max_conflict_retries)
        self.logger = logger or logging.getLogger(__name__)

    def linked_objects(self, owner: WorkloadIdentity) -> dict[ObjectRef, Any]:
        """Return every ConfigMap and Secret in the owner's namespace that links back to it."""
        linked: dict[ObjectRef, Any] = {}
        for kind in ConfigKind:
            for obj in self.cluster.list_config_objects(kind, owner.namespace):
                name = getattr(getattr(obj, "metadata", None), "name", None)
                if name and has_owner_reference(obj, owner.uid):
                    linked[ObjectRef(kind=kind, name=name)] = obj
        return linked

    def reconcile(
        self,
        owner: WorkloadIdentity,
        desired: Iterable[ObjectRef],
        found: Mapping[ObjectRef, Any] | None = None,
    ) -> list[OwnerRefMutation]:
        """Add and remove owner references so exactly *desired* link to *owner*.

        *found* may carry objects the caller has already read; anything else in
        *desired* is fetched.  Returns the mutations that were written.
        """
        wanted = set(desired)
        related: dict[ObjectRef, Any] = self.linked_objects(owner)
        for ref in wanted:
            if ref in related:
                continue
            obj = (found or {}).get(ref)
            if obj is None:
                obj = self.cluster.get_config_object(ref.kind, owner.namespace, ref.name)
            related[ref] = obj

        applied: list[OwnerRefMutation] = []
        for mutation in plan_owner_reference_mutations(owner.uid, wanted, related):
            if self._apply(owner, mutation):
                applied.append(mutation)
        return applied

    def orphan_all(self, owner: WorkloadIdentity) -> list[OwnerRefMutation]:
        return self.reconcile(owner, desired=())

    def _apply(self, owner: WorkloadIdentity, mutation: OwnerRefMutation) -> bool:
        ref = mutation.ref
        for attempt in range(1, self.max_conflict_retries + 1):
            obj = self.cluster.get_config_object(ref.kind, owner.namespace, ref.name)
            if obj is None:
                return False

            if mutation.action is OwnerRefAction.ADD:
                changed = add_owner_reference(obj, owner)
            else:
                changed = remove_owner_reference(obj, owner.uid)
            if not changed:
                return False

            try:
                self.cluster.replace_config_object(ref.kind, obj)
            except ApiException as exc:
                if is_not_found(exc):
                    return False
                if is_conflict(exc) and attempt < self.max_conflict_retries:
                    self.logger.debug(
                        "Conflict updating owner references on %s/%s (attempt %d); re-reading",
                        owner.namespace,
                        ref,
                        attempt,
                    )
                    continue
                raise

            METRICS.owner_reference_mutations_total.labels(action=mutation.action.value).inc()
            verb = "Added" if mutation.action is OwnerRefAction.ADD else "Removed"
            self.logger.info(
                "%s owner reference to %s on %s/%s", verb, owner, owner.namespace, ref
            )
            return True
        return False
