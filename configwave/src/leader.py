from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from datetime import UTC, datetime

from kubernetes.client import CoordinationV1Api, V1Lease, V1LeaseSpec, V1ObjectMeta
from kubernetes.client.exceptions import ApiException

from configwave.src.config import LeaderElectionConfig
from configwave.src.kube import is_conflict, is_not_found
from configwave.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=UTC)


class LeaseLock:
    """Read-modify-write access to one ``coordination.k8s.io/v1`` Lease.

    Every method returns False instead of raising on conflicts and API errors;
    the elector simply tries again on its next tick.
    """

    def __init__(
        self,
        coordination_api: CoordinationV1Api,
        namespace: str,
        name: str,
        identity: str,
        lease_duration_seconds: int,
        now_fn: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self.coordination_api = coordination_api
        self.namespace = namespace
        self.name = name
        self.identity = identity
        self.lease_duration_seconds = lease_duration_seconds
        self.now_fn = now_fn

    def try_acquire_or_renew(self) -> bool:
        now = self.now_fn()
        try:
            lease = self.coordination_api.read_namespaced_lease(
                name=self.name, namespace=self.namespace
            )
        except ApiException as exc:
            if is_not_found(exc):
                return self._create(now)
            LOGGER.warning("Failed to read lease %s: %s", self.name, exc.reason)
            return False

        spec = lease.spec
        if spec is not None and spec.holder_identity not in (None, self.identity):
            duration = spec.lease_duration_seconds or self.lease_duration_seconds
            if spec.renew_time is not None:
                elapsed = (now - _as_utc(spec.renew_time)).total_seconds()
                if elapsed < duration:
                    return False
            LOGGER.info(
                "Lease %s held by %s has expired; taking over", self.name, spec.holder_identity
            )
        return self._write(lease, now)

    def _create(self, now: datetime) -> bool:
        lease = V1Lease(
            metadata=V1ObjectMeta(name=self.name, namespace=self.namespace),
            spec=V1LeaseSpec(
                holder_identity=self.identity,
                lease_duration_seconds=self.lease_duration_seconds,
                acquire_time=now,
                renew_time=now,
            ),
        )
        try:
            self.coordination_api.create_namespaced_lease(namespace=self.namespace, body=lease)
        except ApiException as exc:
            if is_conflict(exc):
                LOGGER.debug("Lease %s created concurrently, will retry", self.name)
            else:
                LOGGER.warning("Failed to create lease %s: %s", self.name, exc.reason)
            return False
        LOGGER.info("Created leader lease %s", self.name)
        return True

    def _write(self, lease: V1Lease, now: datetime) -> bool:
        if lease.spec is None:
            lease.spec = V1LeaseSpec()
        spec = lease.spec
        if spec.holder_identity != self.identity or spec.acquire_time is None:
            spec.acquire_time = now
            spec.lease_transitions = (spec.lease_transitions or 0) + 1
        spec.holder_identity = self.identity
        spec.renew_time = now
        spec.lease_duration_seconds = self.lease_duration_seconds
        try:
            self.coordination_api.replace_namespaced_lease(
                name=self.name, namespace=self.namespace, body=lease
            )
        except ApiException as exc:
            if is_conflict(exc):
                LOGGER.debug("Lease %s update conflict, will retry", self.name)
            else:
                LOGGER.warning("Failed to update lease %s: %s", self.name, exc.reason)
            return False
        return True

    def release(self) -> None:
        """Clear the holder so another replica can take over without waiting for expiry."""
        try:
            lease = self.coordination_api.read_namespaced_lease(
                name=self.name, namespace=self.namespace
            )
            if lease.spec is None or lease.spec.holder_identity != self.identity:
                return
            lease.spec.holder_identity = None
            self.coordination_api.replace_namespaced_lease(
                name=self.name, namespace=self.namespace, body=lease
            )
            LOGGER.info("Released leader lease %s", self.name)
        except ApiException as exc:
            LOGGER.warning("Failed to release leader lease %s: %s", self.name, exc.reason)


class LeaderElector:
    """Runs callbacks as this replica gains and loses a Lease.

    Each retry period the elector acquires or renews the lease.  A failed
    renewal is tolerated until ``renew_deadline_seconds`` have passed since
    the last success; after that leadership is given up and
    ``on_stopped_leading`` runs so the controller stops before another
    replica's lease takes effect.  On shutdown the lease is released.
    """

    def __init__(
        self,
        lock: LeaseLock,
        renew_deadline_seconds: int,
        retry_period_seconds: int,
    ) -> None:
        if renew_deadline_seconds >= lock.lease_duration_seconds:
            raise ValueError("renew_deadline_seconds must be smaller than lease_duration_seconds")
        if retry_period_seconds >= renew_deadline_seconds:
            raise ValueError("retry_period_seconds must be smaller than renew_deadline_seconds")
        self.lock = lock
        self.renew_deadline_seconds = renew_deadline_seconds
        self.retry_period_seconds = retry_period_seconds
        self._is_leader = False

    @classmethod
    def from_config(
        cls, config: LeaderElectionConfig, coordination_api: CoordinationV1Api
    ) -> LeaderElector:
        lock = LeaseLock(
            coordination_api=coordination_api,
            namespace=config.namespace,
            name=config.lease_name,
            identity=config.identity,
            lease_duration_seconds=config.lease_duration_seconds,
        )
        return cls(
            lock=lock,
            renew_deadline_seconds=config.renew_deadline_seconds,
            retry_period_seconds=config.retry_period_seconds,
        )

    @property
    def is_leader(self) -> bool:
        return self._is_leader

    def _became_leader(self, waited_seconds: float) -> None:
        self._is_leader = True
        LOGGER.info("Became leader (identity=%s)", self.lock.identity)
        METRICS.leader_state.set(1)
        METRICS.leader_transitions_total.labels(transition="acquired").inc()
        METRICS.leader_acquire_latency_seconds.observe(waited_seconds)

    def _lost_leadership(self) -> None:
        self._is_leader = False
        METRICS.leader_state.set(0)
        METRICS.leader_transitions_total.labels(transition="lost").inc()

    def run(
        self,
        on_started_leading: Callable[[], None],
        on_stopped_leading: Callable[[], None],
        stop_event: threading.Event,
    ) -> None:
        """Block until *stop_event* is set, invoking the callbacks on transitions."""
        LOGGER.info(
            "Starting leader election for lease %s/%s (identity=%s)",
            self.lock.namespace,
            self.lock.name,
            self.lock.identity,
        )
        METRICS.leader_state.set(0)
        waiting_since = time.monotonic()
        last_renewal = waiting_since

        while not stop_event.is_set():
            try:
                held = self.lock.try_acquire_or_renew()
            except Exception:
                LOGGER.exception("Unexpected error in leader election cycle")
                held = False

            now = time.monotonic()
            if held:
                last_renewal = now
                if not self._is_leader:
                    self._became_leader(now - waiting_since)
                    on_started_leading()
            elif self._is_leader:
                since_renewal = now - last_renewal
                if since_renewal < self.renew_deadline_seconds:
                    LOGGER.warning(
                        "Lease renewal failed; holding leadership for up to %ss (elapsed %.2fs)",
                        self.renew_deadline_seconds,
                        since_renewal,
                    )
                else:
                    LOGGER.warning(
                        "Lost leader lease after %.2fs without successful renewal", since_renewal
                    )
                    self._lost_leadership()
                    waiting_since = now
                    on_stopped_leading()
            stop_event.wait(timeout=self.retry_period_seconds)

        if self._is_leader:
            self.lock.release()
            self._lost_leadership()
            on_stopped_leading()
