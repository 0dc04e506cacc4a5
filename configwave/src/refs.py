from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass
from enum import Enum
from typing import Any

from configwave.src.constants import ConfigKind


class UsageKind(str, Enum):
    """How a pod template consumes a configuration object."""

    VOLUME = "volume"
    VOLUME_PROJECTION = "volume-projection"
    ENV_SINGLE_KEY = "env-single-key"
    ENV_FROM_ALL_KEYS = "env-from-all-keys"


@dataclass(frozen=True, order=True)
class ObjectRef:
    """Identity of a configuration object inside the workload's namespace."""

    kind: ConfigKind
    name: str

    def __str__(self) -> str:
        return f"{self.kind.value}/{self.name}"


@dataclass(frozen=True)
class Reference:
    """A configuration object referenced by a pod template.

    ``usages`` collects every way the template consumes the object and
    ``required`` is True when at least one of those sightings is not marked
    ``optional``.
    """

    kind: ConfigKind
    name: str
    usages: frozenset[UsageKind]
    required: bool

    @property
    def key(self) -> ObjectRef:
        return ObjectRef(kind=self.kind, name=self.name)


def _items(value: Any) -> list[Any]:
    if isinstance(value, (list, tuple)):
        return [item for item in value if item is not None]
    return []


def _name_of(source: Any, attribute: str = "name") -> str | None:
    name = getattr(source, attribute, None)
    if isinstance(name, str) and name:
        return name
    return None


def _is_required(source: Any) -> bool:
    # Kubernetes treats an unset ``optional`` as false.
    return getattr(source, "optional", None) is not True


def _volume_sightings(volumes: list[Any]) -> Iterator[tuple[ConfigKind, str, UsageKind, bool]]:
    for volume in volumes:
        config_map = getattr(volume, "config_map", None)
        name = _name_of(config_map)
        if name:
            yield ConfigKind.CONFIG_MAP, name, UsageKind.VOLUME, _is_required(config_map)

        secret = getattr(volume, "secret", None)
        name = _name_of(secret, "secret_name")
        if name:
            yield ConfigKind.SECRET, name, UsageKind.VOLUME, _is_required(secret)

        projected = getattr(volume, "projected", None)
        for source in _items(getattr(projected, "sources", None)):
            config_map = getattr(source, "config_map", None)
            name = _name_of(config_map)
            if name:
                yield (
                    ConfigKind.CONFIG_MAP,
                    name,
                    UsageKind.VOLUME_PROJECTION,
                    _is_required(config_map),
                )
            secret = getattr(source, "secret", None)
            name = _name_of(secret)
            if name:
                yield ConfigKind.SECRET, name, UsageKind.VOLUME_PROJECTION, _is_required(secret)


def _container_sightings(
    containers: list[Any],
) -> Iterator[tuple[ConfigKind, str, UsageKind, bool]]:
    for container in containers:
        for env_from in _items(getattr(container, "env_from", None)):
            config_map_ref = getattr(env_from, "config_map_ref", None)
            name = _name_of(config_map_ref)
            if name:
                yield (
                    ConfigKind.CONFIG_MAP,
                    name,
                    UsageKind.ENV_FROM_ALL_KEYS,
                    _is_required(config_map_ref),
                )
            secret_ref = getattr(env_from, "secret_ref", None)
            name = _name_of(secret_ref)
            if name:
                yield ConfigKind.SECRET, name, UsageKind.ENV_FROM_ALL_KEYS, _is_required(secret_ref)

        for env_var in _items(getattr(container, "env", None)):
            value_from = getattr(env_var, "value_from", None)
            key_ref = getattr(value_from, "config_map_key_ref", None)
            name = _name_of(key_ref)
            if name:
                yield ConfigKind.CONFIG_MAP, name, UsageKind.ENV_SINGLE_KEY, _is_required(key_ref)
            key_ref = getattr(value_from, "secret_key_ref", None)
            name = _name_of(key_ref)
            if name:
                yield ConfigKind.SECRET, name, UsageKind.ENV_SINGLE_KEY, _is_required(key_ref)


def extract_references(pod_template: Any) -> tuple[Reference, ...]:
    """Return every ConfigMap and Secret a pod template consumes.

    Walks volumes (including projected sources), and the ``envFrom`` and
    ``env[].valueFrom`` entries of both init and regular containers.  Repeated
    sightings of the same object collapse into one :class:`Reference`.
    Malformed or partially populated fields are skipped, never raised on.
    The result is sorted by kind then name.
    """
    spec = getattr(pod_template, "spec", None)
    containers = _items(getattr(spec, "init_containers", None)) + _items(
        getattr(spec, "containers", None)
    )

    usages: dict[ObjectRef, set[UsageKind]] = {}
    required: dict[ObjectRef, bool] = {}
    sightings = list(_volume_sightings(_items(getattr(spec, "volumes", None))))
    sightings.extend(_container_sightings(containers))
    for kind, name, usage, is_required in sightings:
        key = ObjectRef(kind=kind, name=name)
        usages.setdefault(key, set()).add(usage)
        required[key] = required.get(key, False) or is_required

    return tuple(
        Reference(
            kind=key.kind,
            name=key.name,
            usages=frozenset(usages[key]),
            required=required[key],
        )
        for key in sorted(usages)
    )
