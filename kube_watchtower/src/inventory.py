from __future__ import annotations

import logging
import threading
from typing import Any

from kubernetes.client import ApiException

from kube_watchtower.src.config import EligibilityPolicy
from kube_watchtower.src.kube import ClusterClient, TransportError, format_label_selector
from kube_watchtower.src.models import (
    ContainerObservation,
    WorkloadKind,
    WorkloadRef,
    check_cancelled,
)
from kube_watchtower.src.reference import digest_from_image_id, parse_reference

PULL_ALWAYS = "Always"


def available_count(kind: WorkloadKind, workload: Any) -> int:
    """Return how many pods of a workload are currently available."""
    status = getattr(workload, "status", None)
    if kind is WorkloadKind.DAEMON_SET:
        return getattr(status, "number_available", None) or 0
    return getattr(status, "available_replicas", None) or 0


def _pod_is_ready(pod: Any) -> bool:
    status = getattr(pod, "status", None)
    if getattr(status, "phase", None) != "Running":
        return False
    conditions = getattr(status, "conditions", None) or []
    return any(c.type == "Ready" and c.status == "True" for c in conditions)


class InventoryReader:
    """Builds the per-cycle working set of workloads and containers to check."""

    kinds: tuple[WorkloadKind, ...] = (
        WorkloadKind.DEPLOYMENT,
        WorkloadKind.DAEMON_SET,
        WorkloadKind.STATEFUL_SET,
    )

    def __init__(
        self,
        cluster: ClusterClient,
        policy: EligibilityPolicy,
        logger: logging.Logger | None = None,
    ) -> None:
        self.cluster = cluster
        self.policy = policy
        self.logger = logger or logging.getLogger(__name__)

    def _list_kind(self, kind: WorkloadKind, cancel: threading.Event | None) -> list[Any]:
        if not self.policy.included_namespaces:
            check_cancelled(cancel)
            return self.cluster.list_workloads(kind)

        items: list[Any] = []
        for namespace in sorted(self.policy.included_namespaces):
            check_cancelled(cancel)
            items.extend(self.cluster.list_workloads(kind, namespace))
        return items

    def list_workloads(self, cancel: threading.Event | None = None) -> list[WorkloadRef]:
        """List monitored workloads with their ``Always``-pull containers.

        Listing failures propagate: without an inventory the cycle has nothing
        to reconcile. Pod lookups for running digests are best effort.
        """
        result: list[WorkloadRef] = []
        for kind in self.kinds:
            for workload in self._list_kind(kind, cancel):
                ref = self._process_workload(kind, workload, cancel)
                if ref is not None:
                    result.append(ref)
        self.logger.debug("Found %d workloads to monitor", len(result))
        return result

    def _process_workload(
        self, kind: WorkloadKind, workload: Any, cancel: threading.Event | None
    ) -> WorkloadRef | None:
        metadata = workload.metadata
        namespace, name = metadata.namespace, metadata.name

        if not self.policy.namespace_allowed(namespace):
            self.logger.debug("Skipping disabled namespace: %s", namespace)
            return None

        available = available_count(kind, workload)
        if available <= 0:
            self.logger.debug(
                "Skipping %s: %s/%s (available replicas: %d)",
                kind.value,
                namespace,
                name,
                available,
            )
            return None

        pod_spec = workload.spec.template.spec
        containers: list[tuple[str, str, str | None]] = []
        for container in pod_spec.containers or []:
            if container.image_pull_policy != PULL_ALWAYS:
                self.logger.debug(
                    "Skipping container: %s/%s/%s (image pull policy: %s)",
                    namespace,
                    name,
                    container.name,
                    container.image_pull_policy,
                )
                continue
            containers.append((container.name, container.image, container.image_pull_policy))

        if not containers:
            return None

        digests = self._running_digests(namespace, name, workload.spec.selector, cancel)
        observations = tuple(
            ContainerObservation(
                name=container_name,
                image=image,
                reference=parse_reference(image),
                pull_policy=pull_policy,
                running_digest=digests.get(container_name),
            )
            for container_name, image, pull_policy in containers
        )
        secrets = tuple(
            ref.name for ref in (pod_spec.image_pull_secrets or []) if getattr(ref, "name", None)
        )
        return WorkloadRef(
            kind=kind,
            namespace=namespace,
            name=name,
            containers=observations,
            pull_secrets=secrets,
        )

    def _running_digests(
        self, namespace: str, name: str, selector: Any, cancel: threading.Event | None
    ) -> dict[str, str]:
        """Map container name to running digest, read from one ready pod."""
        label_selector = format_label_selector(selector)
        if not label_selector:
            self.logger.debug("Workload %s/%s has no label selector", namespace, name)
            return {}

        check_cancelled(cancel)
        try:
            pods = self.cluster.list_pods_by_selector(namespace, label_selector)
        except ApiException as exc:
            self.logger.debug(
                "Unable to get current digest for %s/%s: %s", namespace, name, exc.reason
            )
            return {}
        except TransportError as exc:
            self.logger.debug(
                "Unable to get current digest for %s/%s: %s", namespace, name, exc
            )
            return {}

        pod = next((p for p in pods if _pod_is_ready(p)), None)
        if pod is None:
            self.logger.debug("No ready pods found for %s/%s", namespace, name)
            return {}

        digests: dict[str, str] = {}
        for status in pod.status.container_statuses or []:
            digest = digest_from_image_id(status.image_id)
            if digest:
                digests[status.name] = digest
        return digests
