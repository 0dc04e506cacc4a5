from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from kubernetes import client, config
from kubernetes.client import (
    ApiException,
    AppsV1Api,
    CoreV1Api,
    CoreV1Event,
    V1EventSource,
    V1ObjectMeta,
    V1ObjectReference,
)
from kubernetes.config.config_exception import ConfigException

from configwave.src.constants import EVENT_COMPONENT, ConfigKind, WorkloadKind

LOGGER = logging.getLogger(__name__)

_WORKLOAD_RESOURCES: dict[WorkloadKind, str] = {
    WorkloadKind.DEPLOYMENT: "deployment",
    WorkloadKind.STATEFUL_SET: "stateful_set",
    WorkloadKind.DAEMON_SET: "daemon_set",
}
_CONFIG_RESOURCES: dict[ConfigKind, str] = {
    ConfigKind.CONFIG_MAP: "config_map",
    ConfigKind.SECRET: "secret",
}


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def build_clients() -> tuple[CoreV1Api, AppsV1Api]:
    """Return CoreV1 and AppsV1 API clients using the active kube configuration."""
    return client.CoreV1Api(), client.AppsV1Api()


def is_not_found(exc: ApiException) -> bool:
    return exc.status == 404


def is_conflict(exc: ApiException) -> bool:
    return exc.status == 409


class ClusterClient:
    """Thin per-kind facade over the CoreV1 and AppsV1 APIs.

    Reads return ``None`` when the object does not exist.  Writes use
    ``replace`` with the resourceVersion of the object that was read, so a
    write based on a stale read fails with ``409 Conflict`` instead of
    silently overwriting a concurrent change.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        apps_api: AppsV1Api,
        component: str = EVENT_COMPONENT,
        now_fn: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self.core_api = core_api
        self.apps_api = apps_api
        self.component = component
        self.now_fn = now_fn

    def _workload_call(self, verb: str, kind: WorkloadKind) -> Callable[..., Any]:
        return getattr(self.apps_api, f"{verb}_namespaced_{_WORKLOAD_RESOURCES[kind]}")

    def _config_call(self, verb: str, kind: ConfigKind) -> Callable[..., Any]:
        return getattr(self.core_api, f"{verb}_namespaced_{_CONFIG_RESOURCES[kind]}")

    def get_workload(self, kind: WorkloadKind, namespace: str, name: str) -> Any | None:
        try:
            return self._workload_call("read", kind)(name=name, namespace=namespace)
        except ApiException as exc:
            if is_not_found(exc):
                return None
            raise

    def replace_workload(self, kind: WorkloadKind, workload: Any) -> Any:
        metadata = workload.metadata
        return self._workload_call("replace", kind)(
            name=metadata.name,
            namespace=metadata.namespace,
            body=workload,
        )

    def get_config_object(self, kind: ConfigKind, namespace: str, name: str) -> Any | None:
        try:
            return self._config_call("read", kind)(name=name, namespace=namespace)
        except ApiException as exc:
            if is_not_found(exc):
                return None
            raise

    def replace_config_object(self, kind: ConfigKind, obj: Any) -> Any:
        metadata = obj.metadata
        return self._config_call("replace", kind)(
            name=metadata.name,
            namespace=metadata.namespace,
            body=obj,
        )

    def list_config_objects(self, kind: ConfigKind, namespace: str) -> list[Any]:
        listing = self._config_call("list", kind)(namespace=namespace)
        return list(getattr(listing, "items", None) or [])

    def list_call(
        self, kind: WorkloadKind | ConfigKind, namespace: str | None
    ) -> tuple[Callable[..., Any], dict[str, Any]]:
        """Return the list function and kwargs used to list or watch *kind*.

        The bound API method is returned unwrapped because ``watch.Watch``
        reads the method docstring to deserialize streamed objects.
        """
        if isinstance(kind, WorkloadKind):
            api: Any = self.apps_api
            resource = _WORKLOAD_RESOURCES[kind]
        else:
            api = self.core_api
            resource = _CONFIG_RESOURCES[kind]
        if namespace:
            return getattr(api, f"list_namespaced_{resource}"), {"namespace": namespace}
        return getattr(api, f"list_{resource}_for_all_namespaces"), {}

    def record_event(
        self,
        kind: WorkloadKind,
        workload: Any,
        reason: str,
        message: str,
        event_type: str = "Normal",
    ) -> None:
        """Create a core/v1 Event against *workload*.

        Events are informational: a failure to record one is logged and does
        not fail the reconciliation that produced it.
        """
        metadata = workload.metadata
        now = self.now_fn()
        event = CoreV1Event(
            metadata=V1ObjectMeta(
                generate_name=f"{metadata.name}.",
                namespace=metadata.namespace,
            ),
            involved_object=V1ObjectReference(
                api_version=kind.api_version,
                kind=kind.value,
                name=metadata.name,
                namespace=metadata.namespace,
                uid=metadata.uid,
                resource_version=metadata.resource_version,
            ),
            reason=reason,
            message=message,
            type=event_type,
            source=V1EventSource(component=self.component),
            reporting_component=self.component,
            first_timestamp=now,
            last_timestamp=now,
            count=1,
        )
        try:
            self.core_api.create_namespaced_event(namespace=metadata.namespace, body=event)
        except ApiException as exc:
            LOGGER.warning(
                "Failed to record %s event for %s %s/%s: %s",
                reason,
                kind.value,
                metadata.namespace,
                metadata.name,
                exc.reason,
            )
