from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, wait
from typing import Protocol

from kube_watchtower.src.config import EligibilityPolicy, UnknownDigestPolicy
from kube_watchtower.src.credentials import CredentialResolver, RegistryCredential
from kube_watchtower.src.inventory import InventoryReader
from kube_watchtower.src.metrics import METRICS
from kube_watchtower.src.models import (
    ContainerObservation,
    CycleCancelled,
    CycleSummary,
    UpdateOutcome,
    WorkloadRef,
    check_cancelled,
)
from kube_watchtower.src.notifier import NotificationReporter
from kube_watchtower.src.reference import ImageReference
from kube_watchtower.src.registry import DigestFetchError
from kube_watchtower.src.rollout import RolloutError, RolloutExecutor


class DigestResolver(Protocol):
    def get_digest(
        self,
        reference: ImageReference,
        credential: RegistryCredential | None = None,
        cancel: threading.Event | None = None,
    ) -> str: ...


def update_needed(
    local_digest: str | None,
    remote_digest: str,
    unknown_digest: UnknownDigestPolicy = UnknownDigestPolicy.UPDATE,
) -> bool:
    """Decide whether a container should be moved to ``remote_digest``.

    Digests compare as exact strings, algorithm prefix included. Without a
    local digest the ``unknown_digest`` policy decides.
    """
    if local_digest:
        return local_digest != remote_digest
    return unknown_digest is UnknownDigestPolicy.UPDATE


class _CycleState:
    """Outcomes and counters of one cycle, shared by the worker threads."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.outcomes: list[UpdateOutcome] = []
        self.scanned = 0
        self.updated = 0
        self.failed = 0

    def mark_scanned(self) -> None:
        with self._lock:
            self.scanned += 1

    def record(self, outcome: UpdateOutcome) -> None:
        with self._lock:
            self.outcomes.append(outcome)
            if outcome.success:
                self.updated += 1
            else:
                self.failed += 1

    def record_crash(self) -> None:
        with self._lock:
            self.failed += 1

    def summary(self) -> CycleSummary:
        with self._lock:
            return CycleSummary(
                scanned=self.scanned,
                updated=self.updated,
                failed=self.failed,
                outcomes=tuple(self.outcomes),
            )


class ReconciliationEngine:
    """Runs reconciliation cycles: inventory, compare, update, report.

    Each call to :meth:`run_cycle` is independent. Workloads are checked on a
    pool of ``max_concurrency`` threads; containers of the same workload are
    handled one after another so two rollouts never patch one object at the
    same time. A failing container only produces a failure outcome; the rest
    of the cycle carries on. The reporter is called once, after every
    workload task has finished.
    """

    def __init__(
        self,
        policy: EligibilityPolicy,
        inventory: InventoryReader,
        credentials: CredentialResolver,
        registry: DigestResolver,
        executor: RolloutExecutor,
        reporter: NotificationReporter,
        max_concurrency: int = 1,
        logger: logging.Logger | None = None,
    ) -> None:
        self.policy = policy
        self.inventory = inventory
        self.credentials = credentials
        self.registry = registry
        self.executor = executor
        self.reporter = reporter
        self.max_concurrency = max(1, max_concurrency)
        self.logger = logger or logging.getLogger(__name__)
        self.ready = threading.Event()

    def run_cycle(self, cancel: threading.Event | None = None) -> CycleSummary:
        """Run one reconciliation cycle and return its counters.

        Inventory listing errors propagate to the caller. ``CycleCancelled``
        propagates too, after the outcomes gathered so far were reported.
        """
        started = time.monotonic()
        self.logger.debug("Starting image update check...")
        try:
            workloads = self.inventory.list_workloads(cancel)
        except CycleCancelled:
            METRICS.cycles_total.labels(result="cancelled").inc()
            raise
        except Exception:
            METRICS.cycles_total.labels(result="error").inc()
            raise
        self.ready.set()

        state = _CycleState()
        cancelled = self._fan_out(workloads, state, cancel)

        summary = state.summary()
        notified = self.reporter.report(list(summary.outcomes), summary.scanned)
        self.logger.info(
            "Session done Failed=%d Scanned=%d Updated=%d notify=%s",
            summary.failed,
            summary.scanned,
            summary.updated,
            "yes" if notified else "no",
        )
        METRICS.cycle_duration_seconds.observe(time.monotonic() - started)

        if cancelled:
            METRICS.cycles_total.labels(result="cancelled").inc()
            raise CycleCancelled("reconciliation cycle cancelled")
        METRICS.cycles_total.labels(result="success").inc()
        METRICS.last_success_timestamp.set_to_current_time()
        return summary

    def _fan_out(
        self,
        workloads: list[WorkloadRef],
        state: _CycleState,
        cancel: threading.Event | None,
    ) -> bool:
        """Check every workload and wait for all of them. Returns True if cancelled."""
        cancelled = False
        with ThreadPoolExecutor(
            max_workers=self.max_concurrency, thread_name_prefix="reconcile"
        ) as pool:
            futures = {
                pool.submit(self._check_workload, workload, state, cancel): workload
                for workload in workloads
            }
            wait(futures)

        for future, workload in futures.items():
            error = future.exception()
            if error is None:
                continue
            if isinstance(error, CycleCancelled):
                cancelled = True
                continue
            state.record_crash()
            self.logger.error(
                "Unexpected error while checking %s",
                workload,
                exc_info=(type(error), error, error.__traceback__),
            )
        return cancelled

    def _check_workload(
        self, workload: WorkloadRef, state: _CycleState, cancel: threading.Event | None
    ) -> None:
        for container in workload.containers:
            check_cancelled(cancel)
            self._check_container(workload, container, state, cancel)

    def _eligible(self, workload: WorkloadRef, container: ContainerObservation) -> bool:
        if not self.policy.container_allowed(container.name):
            self.logger.debug(
                "Skipping disabled container: %s/%s/%s (%s)",
                workload.namespace,
                workload.name,
                container.name,
                workload.kind.value,
            )
            return False
        if not self.policy.namespace_allowed(workload.namespace):
            self.logger.debug("Skipping disabled namespace: %s", workload.namespace)
            return False
        if not self.policy.tag_allowed(container.reference.tag):
            self.logger.debug(
                "Skipping container %s/%s/%s: tag %s is not tracked",
                workload.namespace,
                workload.name,
                container.name,
                container.reference.tag,
            )
            return False
        return True

    def _check_container(
        self,
        workload: WorkloadRef,
        container: ContainerObservation,
        state: _CycleState,
        cancel: threading.Event | None,
    ) -> None:
        if not self._eligible(workload, container):
            return

        state.mark_scanned()
        try:
            self._reconcile_container(workload, container, state, cancel)
        except CycleCancelled:
            raise
        except Exception as exc:
            METRICS.updates_total.labels(kind=workload.kind.value, result="failure").inc()
            self.logger.error(
                "Unexpected error while checking %s container %s",
                workload,
                container.name,
                exc_info=True,
            )
            state.record(UpdateOutcome(image=container.image, success=False, error=str(exc)))

    def _reconcile_container(
        self,
        workload: WorkloadRef,
        container: ContainerObservation,
        state: _CycleState,
        cancel: threading.Event | None,
    ) -> None:
        METRICS.containers_scanned_total.inc()
        self.logger.debug(
            "Checking container: %s/%s/%s (%s) image=%s current=%s",
            workload.namespace,
            workload.name,
            container.name,
            workload.kind.value,
            container.image,
            container.local_digest,
        )

        credential = None
        if workload.pull_secrets:
            credential = self.credentials.resolve(
                workload.namespace,
                workload.pull_secrets,
                container.reference.repository,
                cancel,
            )

        try:
            remote_digest = self.registry.get_digest(container.reference, credential, cancel)
        except DigestFetchError as exc:
            METRICS.digest_errors_total.inc()
            self.logger.error(
                "Failed to check image update for %s/%s/%s: %s",
                workload.namespace,
                workload.name,
                container.name,
                exc,
            )
            state.record(UpdateOutcome(image=container.image, success=False, error=str(exc)))
            return

        if not update_needed(container.local_digest, remote_digest, self.policy.unknown_digest):
            self.logger.debug(
                "No update needed: %s/%s/%s", workload.namespace, workload.name, container.name
            )
            return

        self.logger.info(
            "Found new %s image (%s)", container.reference.name, remote_digest[:19]
        )
        new_image = container.reference.pinned(remote_digest)
        try:
            self.executor.update(workload, container.name, new_image, cancel)
        except RolloutError as exc:
            METRICS.updates_total.labels(kind=workload.kind.value, result="failure").inc()
            self.logger.error("Update failed for %s container %s: %s", workload, container.name, exc)
            state.record(UpdateOutcome(image=container.image, success=False, error=str(exc)))
            return

        METRICS.updates_total.labels(kind=workload.kind.value, result="success").inc()
        state.record(UpdateOutcome(image=container.image, success=True))
