from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported by the controller on ``/metrics``.

    Reconcile counters carry a ``result`` label (``success``, ``requeue``,
    ``error``) so operators can alert on sustained requeue or error rates.
    """

    reconcile_total: Counter = field(
        default_factory=lambda: Counter(
            "configwave_reconcile_total",
            "Total workload reconciliations by result",
            ["kind", "result"],
        )
    )
    reconcile_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "configwave_reconcile_duration_seconds",
            "Seconds spent reconciling a single workload key",
            ["kind"],
            buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, float("inf")),
        )
    )
    hash_updates_total: Counter = field(
        default_factory=lambda: Counter(
            "configwave_hash_updates_total",
            "Total pod template config hash updates (each one triggers a rollout)",
            ["kind"],
        )
    )
    missing_required_total: Counter = field(
        default_factory=lambda: Counter(
            "configwave_missing_required_references_total",
            "Total reconciliations that withheld a hash update because a required "
            "ConfigMap or Secret was missing",
            ["kind"],
        )
    )
    owner_reference_mutations_total: Counter = field(
        default_factory=lambda: Counter(
            "configwave_owner_reference_mutations_total",
            "Total owner reference additions and removals on ConfigMaps and Secrets",
            ["action"],
        )
    )
    finalizer_mutations_total: Counter = field(
        default_factory=lambda: Counter(
            "configwave_finalizer_mutations_total",
            "Total finalizer additions and removals on workloads",
            ["action"],
        )
    )
    queue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "configwave_queue_depth",
            "Current number of workload keys waiting to be reconciled",
        )
    )
    requeues_total: Counter = field(
        default_factory=lambda: Counter(
            "configwave_requeues_total",
            "Total workload keys requeued with backoff after a conflict or error",
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "configwave_watch_errors_total",
            "Total Kubernetes watch errors",
            ["kind"],
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "configwave_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
            ["kind"],
        )
    )
    leader_transitions_total: Counter = field(
        default_factory=lambda: Counter(
            "configwave_leader_transitions_total",
            "Total leadership state transitions",
            ["transition"],
        )
    )
    leader_state: Gauge = field(
        default_factory=lambda: Gauge(
            "configwave_leader_state",
            "Whether this controller replica is currently leader (1=yes, 0=no)",
        )
    )
    leader_acquire_latency_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "configwave_leader_acquire_latency_seconds",
            "Seconds spent waiting to acquire leadership",
            buckets=(0.5, 1, 2, 5, 10, 20, 30, 60, float("inf")),
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "configwave",
            "Build information for the controller",
        )
    )


METRICS = ControllerMetrics()
