from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass


class ConfigError(ValueError):
    """Raised when the controller configuration is invalid."""


@dataclass(frozen=True)
class LeaderElectionConfig:
    enabled: bool
    namespace: str
    lease_name: str
    identity: str
    lease_duration_seconds: int
    renew_deadline_seconds: int
    retry_period_seconds: int
    controller_stop_timeout_seconds: int


@dataclass(frozen=True)
class ControllerConfig:
    """Immutable controller configuration loaded at startup.

    Attributes:
        namespace:       Namespace to watch; ``None`` watches every namespace.
        worker_count:    Number of reconcile worker threads.
        resync_seconds:  Interval for requeueing every known workload (0 = off).
        watch_timeout_seconds: Server-side timeout of a single watch stream.
        health_port:     Port of the health and metrics HTTP server.
        log_level:       Root log level name.
        leader_election: Lease-based leader election settings.
    """

    namespace: str | None
    worker_count: int
    resync_seconds: int
    watch_timeout_seconds: int
    health_port: int
    log_level: str
    leader_election: LeaderElectionConfig


def parse_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def env_int(
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
    env: Mapping[str, str] | None = None,
) -> int:
    values = env if env is not None else os.environ
    raw = values.get(name)
    if raw is None or not raw.strip():
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ConfigError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ConfigError(f"{name} must be <= {maximum}, got: {value}")
    return value


def default_identity(env: Mapping[str, str] | None = None) -> str:
    """Return a unique identity for this replica, defaulting to the pod name.

    In Kubernetes the ``HOSTNAME`` env var is set to the pod name, giving each
    replica a stable identity for lease ownership.
    """
    values = env if env is not None else os.environ
    return values.get("HOSTNAME") or values.get("POD_NAME") or "unknown"


def _load_leader_election(
    values: Mapping[str, str], watch_namespace: str | None
) -> LeaderElectionConfig:
    lease_duration = env_int(
        "LEADER_ELECTION_LEASE_DURATION_SECONDS", 15, minimum=1, env=values
    )
    renew_deadline = env_int(
        "LEADER_ELECTION_RENEW_DEADLINE_SECONDS", 10, minimum=1, env=values
    )
    retry_period = env_int("LEADER_ELECTION_RETRY_PERIOD_SECONDS", 2, minimum=1, env=values)
    if renew_deadline >= lease_duration:
        raise ConfigError(
            "LEADER_ELECTION_RENEW_DEADLINE_SECONDS must be smaller than "
            "LEADER_ELECTION_LEASE_DURATION_SECONDS"
        )
    if retry_period >= renew_deadline:
        raise ConfigError(
            "LEADER_ELECTION_RETRY_PERIOD_SECONDS must be smaller than "
            "LEADER_ELECTION_RENEW_DEADLINE_SECONDS"
        )

    namespace = (
        values.get("LEADER_ELECTION_NAMESPACE", "").strip() or watch_namespace or "default"
    )
    return LeaderElectionConfig(
        enabled=parse_bool(values.get("LEADER_ELECTION_ENABLED"), default=True),
        namespace=namespace,
        lease_name=values.get("LEADER_ELECTION_LEASE_NAME", "").strip() or "configwave-leader",
        identity=values.get("LEADER_ELECTION_IDENTITY", "").strip() or default_identity(values),
        lease_duration_seconds=lease_duration,
        renew_deadline_seconds=renew_deadline,
        retry_period_seconds=retry_period,
        # Must exceed the watch timeout so a leadership handoff never leaves
        # two sets of watches running.
        controller_stop_timeout_seconds=env_int(
            "LEADER_ELECTION_CONTROLLER_STOP_TIMEOUT_SECONDS", 45, minimum=1, env=values
        ),
    )


def load_config(env: Mapping[str, str] | None = None) -> ControllerConfig:
    """Load controller config from the environment.

    Raises :class:`ConfigError` naming the offending variable when a value is
    malformed or out of range.
    """
    values = env if env is not None else os.environ

    namespace = values.get("WATCH_NAMESPACE", "").strip() or None
    log_level = values.get("LOG_LEVEL", "INFO").strip().upper() or "INFO"

    return ControllerConfig(
        namespace=namespace,
        worker_count=env_int("WORKER_COUNT", 2, minimum=1, maximum=64, env=values),
        resync_seconds=env_int("RESYNC_SECONDS", 600, minimum=0, env=values),
        watch_timeout_seconds=env_int(
            "WATCH_TIMEOUT_SECONDS", 30, minimum=1, maximum=3600, env=values
        ),
        health_port=env_int("HEALTH_PORT", 8080, minimum=1, maximum=65535, env=values),
        log_level=log_level,
        leader_election=_load_leader_election(values, namespace),
    )
