from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from kubernetes.client import ApiException

from kube_watchtower.src.kube import ClusterClient, TransportError
from kube_watchtower.src.metrics import METRICS
from kube_watchtower.src.models import CycleCancelled, WorkloadKind, WorkloadRef, check_cancelled

UPDATED_AT_ANNOTATION = "kube-watchtower.io/updated-at"
REVISIONS_TO_KEEP = 2


class RolloutError(RuntimeError):
    """Base class for failures while updating a workload."""


class ContainerNotFoundError(RolloutError):
    """The named container (or its workload) is absent from the current spec."""


class PatchRejectedError(RolloutError):
    """The API server refused the image patch; a later cycle may retry."""


class RolloutTimeoutError(RolloutError):
    """Workload status did not converge before the rollout deadline."""


def utc_now_rfc3339() -> str:
    """Return the current UTC time as a compact RFC 3339 string (e.g. ``2024-01-15T08:30:00Z``)."""
    return datetime.now(UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def _generation_observed(workload: Any) -> bool:
    generation = getattr(workload.metadata, "generation", None) or 0
    observed = getattr(workload.status, "observed_generation", None) or 0
    return generation <= observed


def _desired_replicas(workload: Any) -> int:
    replicas = getattr(workload.spec, "replicas", None)
    return 1 if replicas is None else replicas


def deployment_rollout_complete(deployment: Any) -> bool:
    if not _generation_observed(deployment):
        return False
    desired = _desired_replicas(deployment)
    status = deployment.status
    return (
        (status.updated_replicas or 0) == desired
        and (status.replicas or 0) == desired
        and (status.available_replicas or 0) == desired
    )


def stateful_set_rollout_complete(stateful_set: Any) -> bool:
    if not _generation_observed(stateful_set):
        return False
    desired = _desired_replicas(stateful_set)
    status = stateful_set.status
    return (
        (status.updated_replicas or 0) == desired
        and (status.replicas or 0) == desired
        and (status.ready_replicas or 0) == desired
    )


def daemon_set_rollout_complete(daemon_set: Any) -> bool:
    if not _generation_observed(daemon_set):
        return False
    status = daemon_set.status
    desired = status.desired_number_scheduled or 0
    return (
        (status.updated_number_scheduled or 0) == desired
        and (status.number_ready or 0) == desired
        and (status.number_available or 0) == desired
    )


COMPLETION_CHECKS: dict[WorkloadKind, Callable[[Any], bool]] = {
    WorkloadKind.DEPLOYMENT: deployment_rollout_complete,
    WorkloadKind.STATEFUL_SET: stateful_set_rollout_complete,
    WorkloadKind.DAEMON_SET: daemon_set_rollout_complete,
}


def _owned_by(obj: Any, owner: Any) -> bool:
    owner_uid = getattr(owner.metadata, "uid", None)
    for ref in getattr(obj.metadata, "owner_references", None) or []:
        if owner_uid and ref.uid == owner_uid:
            return True
        if not owner_uid and ref.name == owner.metadata.name:
            return True
    return False


class RolloutExecutor:
    """Applies a digest-pinned image to one container and waits for the rollout.

    The sequence is patch, poll, clean up. Polling is a bounded loop: every
    ``poll_interval_seconds`` it reads the workload and applies the per-kind
    check from :data:`COMPLETION_CHECKS`, until the check passes or
    ``timeout_seconds`` elapse. The wait happens on the cycle's cancellation
    event so a shutdown interrupts it immediately.

    Cleanup runs only after a successful rollout and never raises: a stale
    revision left behind is logged, the update still counts as a success.
    """

    def __init__(
        self,
        cluster: ClusterClient,
        cleanup: bool = True,
        timeout_seconds: float = 300.0,
        poll_interval_seconds: float = 2.0,
        logger: logging.Logger | None = None,
        now_fn: Callable[[], str] = utc_now_rfc3339,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.cluster = cluster
        self.cleanup_enabled = cleanup
        self.timeout_seconds = timeout_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self.logger = logger or logging.getLogger(__name__)
        self.now_fn = now_fn
        self.monotonic = monotonic

    def update(
        self,
        workload: WorkloadRef,
        container_name: str,
        new_image: str,
        cancel: threading.Event | None = None,
    ) -> None:
        """Patch ``container_name`` to ``new_image`` and block until the rollout completes."""
        check_cancelled(cancel)
        current = self._read(workload)
        declared = {c.name for c in current.spec.template.spec.containers or []}
        if container_name not in declared:
            raise ContainerNotFoundError(f"container {container_name} not found in {workload}")

        self.logger.info(
            "Updating %s container %s to %s",
            workload,
            container_name,
            new_image,
        )
        check_cancelled(cancel)
        try:
            self.cluster.patch_container_image(
                workload.kind,
                workload.namespace,
                workload.name,
                container_name,
                new_image,
                annotations={UPDATED_AT_ANNOTATION: self.now_fn()},
            )
        except ApiException as exc:
            if exc.status == 404:
                raise ContainerNotFoundError(f"{workload} no longer exists") from exc
            raise PatchRejectedError(
                f"failed to update {workload}: {exc.status} {exc.reason}"
            ) from exc
        except TransportError as exc:
            raise PatchRejectedError(f"failed to update {workload}: {exc}") from exc

        self.logger.info("Waiting for rollout of %s", workload)
        started = self.monotonic()
        final = self.wait_for_rollout(workload, cancel)
        METRICS.rollout_duration_seconds.labels(kind=workload.kind.value).observe(
            self.monotonic() - started
        )

        if self.cleanup_enabled:
            check_cancelled(cancel)
            self.logger.info("Removing old resources for %s/%s", workload.namespace, workload.name)
            self.cleanup(workload, final)

        self.logger.debug("Update completed: %s container %s", workload, container_name)

    def _read(self, workload: WorkloadRef) -> Any:
        try:
            return self.cluster.get_workload(workload.kind, workload.namespace, workload.name)
        except ApiException as exc:
            if exc.status == 404:
                raise ContainerNotFoundError(f"{workload} no longer exists") from exc
            raise RolloutError(f"failed to read {workload}: {exc.status} {exc.reason}") from exc
        except TransportError as exc:
            raise RolloutError(f"failed to read {workload}: {exc}") from exc

    def wait_for_rollout(self, workload: WorkloadRef, cancel: threading.Event | None = None) -> Any:
        """Poll until the workload reports a complete rollout and return its final state.

        Raises :class:`RolloutTimeoutError` at the deadline and
        :class:`CycleCancelled` as soon as ``cancel`` is set. Server-side
        (5xx) and connection errors are retried until the deadline; other API
        errors abort the wait.
        """
        is_complete = COMPLETION_CHECKS[workload.kind]
        waiter = cancel or threading.Event()
        deadline = self.monotonic() + self.timeout_seconds

        while True:
            remaining = deadline - self.monotonic()
            if remaining <= 0:
                raise RolloutTimeoutError(
                    f"timeout waiting for rollout of {workload} after {self.timeout_seconds:.0f}s"
                )
            if waiter.wait(timeout=min(self.poll_interval_seconds, remaining)):
                raise CycleCancelled(f"rollout wait for {workload} cancelled")

            try:
                current = self.cluster.get_workload(
                    workload.kind, workload.namespace, workload.name
                )
            except ApiException as exc:
                if exc.status is not None and exc.status >= 500:
                    self.logger.warning(
                        "Transient error reading %s during rollout: %s", workload, exc.reason
                    )
                    continue
                if exc.status == 404:
                    raise ContainerNotFoundError(f"{workload} was deleted mid-rollout") from exc
                raise RolloutError(f"failed to read {workload}: {exc.reason}") from exc
            except TransportError as exc:
                self.logger.warning(
                    "Transient error reading %s during rollout: %s", workload, exc
                )
                continue

            if is_complete(current):
                return current

    def cleanup(self, workload: WorkloadRef, current: Any) -> None:
        """Delete revision objects the finished rollout made obsolete."""
        try:
            if workload.kind is WorkloadKind.DEPLOYMENT:
                self._cleanup_replica_sets(workload, current)
            else:
                self._cleanup_controller_revisions(workload, current)
        except ApiException as exc:
            METRICS.cleanup_errors_total.inc()
            self.logger.warning("Cleanup warning for %s: %s", workload, exc.reason)
        except TransportError as exc:
            METRICS.cleanup_errors_total.inc()
            self.logger.warning("Cleanup warning for %s: %s", workload, exc)

    def _cleanup_replica_sets(self, workload: WorkloadRef, deployment: Any) -> None:
        for replica_set in self.cluster.list_replica_sets(workload.namespace):
            if not _owned_by(replica_set, deployment):
                continue
            if (getattr(replica_set.spec, "replicas", None) or 0) != 0:
                continue
            self._delete("ReplicaSet", workload, replica_set.metadata.name)

    def _cleanup_controller_revisions(self, workload: WorkloadRef, owner: Any) -> None:
        revisions = [
            revision
            for revision in self.cluster.list_controller_revisions(workload.namespace)
            if _owned_by(revision, owner)
        ]
        revisions.sort(key=lambda revision: revision.revision or 0, reverse=True)
        for stale in revisions[REVISIONS_TO_KEEP:]:
            self._delete("ControllerRevision", workload, stale.metadata.name)

    def _delete(self, kind: str, workload: WorkloadRef, name: str) -> None:
        try:
            self.cluster.delete_object(kind, workload.namespace, name)
            self.logger.debug("Deleted %s %s/%s", kind, workload.namespace, name)
        except ApiException as exc:
            if exc.status == 404:
                return
            METRICS.cleanup_errors_total.inc()
            self.logger.warning(
                "Cleanup warning: failed to delete %s %s/%s: %s",
                kind,
                workload.namespace,
                name,
                exc.reason,
            )
        except TransportError as exc:
            METRICS.cleanup_errors_total.inc()
            self.logger.warning(
                "Cleanup warning: failed to delete %s %s/%s: %s",
                kind,
                workload.namespace,
                name,
                exc,
            )
