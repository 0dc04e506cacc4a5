from __future__ import annotations

import json
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from hashlib import sha256
from typing import Any

from configwave.src.constants import ConfigKind
from configwave.src.refs import ObjectRef, Reference


@dataclass(frozen=True)
class ResolvedObject:
    """The hash-relevant view of a configuration object: identity plus data.

    ``binary_data`` carries ConfigMap ``binaryData`` apart from ``data`` so that
    moving a key between the two maps changes the hash.
    """

    kind: ConfigKind
    name: str
    data: dict[str, str]
    binary_data: dict[str, str] = field(default_factory=dict)

    @property
    def key(self) -> ObjectRef:
        return ObjectRef(kind=self.kind, name=self.name)


@dataclass(frozen=True)
class Resolution:
    """Outcome of fetching every referenced configuration object.

    ``objects`` holds the objects that exist.  Missing references are split by
    whether the pod template requires them: a missing required reference
    withholds the hash update, a missing optional one is simply left out.
    """

    objects: tuple[ResolvedObject, ...]
    missing_required: tuple[ObjectRef, ...] = ()
    missing_optional: tuple[ObjectRef, ...] = ()

    @property
    def hash_blocked(self) -> bool:
        return bool(self.missing_required)

    @property
    def found(self) -> frozenset[ObjectRef]:
        return frozenset(obj.key for obj in self.objects)


def _normalize(raw: Any) -> dict[str, str]:
    if not isinstance(raw, dict):
        return {}
    return {k: ("" if v is None else str(v)) for k, v in raw.items() if isinstance(k, str)}


def read_data(kind: ConfigKind, obj: Any) -> dict[str, str]:
    """Return the ``data`` payload of a ConfigMap or Secret as ``dict[str, str]``.

    Secret values stay base64 encoded as returned by the API; ``stringData`` is
    folded in for objects that have not round-tripped through the server yet.
    """
    data = _normalize(getattr(obj, "data", None))
    if kind is ConfigKind.SECRET:
        data.update(_normalize(getattr(obj, "string_data", None)))
    return data


def read_binary_data(kind: ConfigKind, obj: Any) -> dict[str, str]:
    """Return ConfigMap ``binaryData``; Secrets have none."""
    if kind is not ConfigKind.CONFIG_MAP:
        return {}
    return _normalize(getattr(obj, "binary_data", None))


def resolve_references(
    references: Iterable[Reference],
    fetch: Callable[[ObjectRef], Any | None],
) -> Resolution:
    """Fetch each referenced object; ``fetch`` returns None when it does not exist."""
    objects: list[ResolvedObject] = []
    missing_required: list[ObjectRef] = []
    missing_optional: list[ObjectRef] = []
    for reference in references:
        obj = fetch(reference.key)
        if obj is None:
            if reference.required:
                missing_required.append(reference.key)
            else:
                missing_optional.append(reference.key)
            continue
        objects.append(
            ResolvedObject(
                kind=reference.kind,
                name=reference.name,
                data=read_data(reference.kind, obj),
                binary_data=read_binary_data(reference.kind, obj),
            )
        )
    return Resolution(
        objects=tuple(sorted(objects, key=lambda o: (o.kind.value, o.name))),
        missing_required=tuple(missing_required),
        missing_optional=tuple(missing_optional),
    )


def compute_hash(objects: Iterable[ResolvedObject]) -> str:
    """Return a SHA-256 hex digest over the kind, name, data and binary data of *objects*.

    Objects are ordered by kind then name and each data mapping by key before
    serialization, so discovery order never changes the digest.
    """
    ordered = sorted(objects, key=lambda o: (o.kind.value, o.name))
    payload = [
        {
            "kind": obj.kind.value,
            "name": obj.name,
            "data": [[key, obj.data[key]] for key in sorted(obj.data)],
            "binaryData": [[key, obj.binary_data[key]] for key in sorted(obj.binary_data)],
        }
        for obj in ordered
    ]
    stable_payload = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return sha256(stable_payload.encode("utf-8")).hexdigest()
