from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

from configwave.src.constants import FINALIZER, REQUIRED_ANNOTATION


class FinalizerState(str, Enum):
    """Lifecycle of the cleanup finalizer on a workload.

    ``ABSENT``   no finalizer, workload live.
    ``ACTIVE``   finalizer present, workload live.
    ``DELETING`` deletion requested while the finalizer is present.
    ``CLEANED``  deletion requested and the finalizer is gone; the API server
                 finishes deleting the object once no other finalizer blocks it.
    """

    ABSENT = "Absent"
    ACTIVE = "Active"
    DELETING = "Deleting"
    CLEANED = "Cleaned"


@dataclass(frozen=True)
class FinalizerTransition:
    current: FinalizerState
    target: FinalizerState
    add_finalizer: bool = False
    orphan_children: bool = False
    remove_finalizer: bool = False

    @property
    def manages_children(self) -> bool:
        """True when the workload's references should be linked and hashed."""
        return self.target is FinalizerState.ACTIVE


def _metadata_list(workload: Any, attribute: str) -> list[str]:
    value = getattr(getattr(workload, "metadata", None), attribute, None)
    return list(value) if isinstance(value, list) else []


def is_enabled(workload: Any) -> bool:
    annotations = getattr(getattr(workload, "metadata", None), "annotations", None)
    if not isinstance(annotations, dict):
        return False
    return str(annotations.get(REQUIRED_ANNOTATION, "")).strip().lower() == "true"


def is_deleting(workload: Any) -> bool:
    return getattr(getattr(workload, "metadata", None), "deletion_timestamp", None) is not None


def has_finalizer(workload: Any) -> bool:
    return FINALIZER in _metadata_list(workload, "finalizers")


def add_finalizer(workload: Any) -> bool:
    if has_finalizer(workload):
        return False
    workload.metadata.finalizers = _metadata_list(workload, "finalizers") + [FINALIZER]
    return True


def remove_finalizer(workload: Any) -> bool:
    finalizers = _metadata_list(workload, "finalizers")
    if FINALIZER not in finalizers:
        return False
    workload.metadata.finalizers = [f for f in finalizers if f != FINALIZER]
    return True


def observe_state(workload: Any) -> FinalizerState:
    """Derive the current state from the live object; nothing is stored between passes."""
    present = has_finalizer(workload)
    if is_deleting(workload):
        return FinalizerState.DELETING if present else FinalizerState.CLEANED
    return FinalizerState.ACTIVE if present else FinalizerState.ABSENT


def plan_transition(workload: Any) -> FinalizerTransition:
    """Decide which finalizer transition applies to *workload* right now.

    Before the finalizer is removed every owner reference to the workload has
    to be orphaned; ``orphan_children`` is also set for opted-out workloads
    without a finalizer so that links left over from an interrupted pass are
    cleared.
    """
    current = observe_state(workload)
    if current is FinalizerState.CLEANED:
        return FinalizerTransition(current=current, target=FinalizerState.CLEANED)
    if current is FinalizerState.DELETING:
        return FinalizerTransition(
            current=current,
            target=FinalizerState.CLEANED,
            orphan_children=True,
            remove_finalizer=True,
        )

    if is_enabled(workload):
        return FinalizerTransition(
            current=current,
            target=FinalizerState.ACTIVE,
            add_finalizer=current is FinalizerState.ABSENT,
        )
    return FinalizerTransition(
        current=current,
        target=FinalizerState.ABSENT,
        orphan_children=True,
        remove_finalizer=current is FinalizerState.ACTIVE,
    )
