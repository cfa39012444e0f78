from __future__ import annotations

import threading
from dataclasses import dataclass, field
from enum import Enum

from kube_watchtower.src.reference import ImageReference


class WorkloadKind(str, Enum):
    """Workload kinds the watcher inventories and updates."""

    DEPLOYMENT = "Deployment"
    DAEMON_SET = "DaemonSet"
    STATEFUL_SET = "StatefulSet"


class CycleCancelled(Exception):
    """Raised at a remote-call boundary once the cycle's cancellation event is set."""


def check_cancelled(cancel: threading.Event | None) -> None:
    if cancel is not None and cancel.is_set():
        raise CycleCancelled("reconciliation cycle cancelled")


@dataclass(frozen=True)
class ContainerObservation:
    """One container of a workload as seen during the current cycle."""

    name: str
    image: str
    reference: ImageReference
    pull_policy: str | None
    running_digest: str | None = None

    @property
    def local_digest(self) -> str | None:
        """Digest the container is known to run: observed first, declared pin second."""
        return self.running_digest or self.reference.digest


@dataclass(frozen=True)
class WorkloadRef:
    kind: WorkloadKind
    namespace: str
    name: str
    containers: tuple[ContainerObservation, ...] = ()
    pull_secrets: tuple[str, ...] = ()

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name} ({self.kind.value})"


@dataclass(frozen=True)
class UpdateOutcome:
    """Result of one container check that reached the registry or the cluster."""

    image: str
    success: bool
    error: str | None = None


@dataclass(frozen=True)
class CycleSummary:
    scanned: int
    updated: int
    failed: int
    outcomes: tuple[UpdateOutcome, ...] = field(default=(), compare=False)
