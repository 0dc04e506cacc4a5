from __future__ import annotations

from enum import Enum

REQUIRED_ANNOTATION = "wave.pusher.com/update-on-config-change"
CONFIG_HASH_ANNOTATION = "wave.pusher.com/config-hash"
FINALIZER = "wave.pusher.com/finalizer"

EVENT_COMPONENT = "configwave"
EVENT_REASON_CONFIG_CHANGED = "ConfigChanged"
EVENT_MESSAGE_TEMPLATE = "Configuration hash updated to {config_hash}"


class ConfigKind(str, Enum):
    """The two configuration object kinds a pod template can reference."""

    CONFIG_MAP = "ConfigMap"
    SECRET = "Secret"


class WorkloadKind(str, Enum):
    """Workload kinds that own a pod template and honour the opt-in annotation."""

    DEPLOYMENT = "Deployment"
    STATEFUL_SET = "StatefulSet"
    DAEMON_SET = "DaemonSet"

    @property
    def api_version(self) -> str:
        return "apps/v1"
