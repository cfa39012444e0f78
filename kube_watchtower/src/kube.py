from __future__ import annotations

import logging
from typing import Any

from kubernetes import client, config
from kubernetes.client import AppsV1Api, CoreV1Api
from kubernetes.config.config_exception import ConfigException
from urllib3.exceptions import HTTPError

from kube_watchtower.src.models import WorkloadKind

LOGGER = logging.getLogger(__name__)

# Raised by the client's HTTP layer on connection failures and request
# timeouts, where no API status is available.
TransportError = HTTPError

# AppsV1Api method suffix per workload kind, e.g. ``list_namespaced_<suffix>``.
_KIND_API_SUFFIX: dict[WorkloadKind, str] = {
    WorkloadKind.DEPLOYMENT: "deployment",
    WorkloadKind.DAEMON_SET: "daemon_set",
    WorkloadKind.STATEFUL_SET: "stateful_set",
}

_REVISION_API_SUFFIX: dict[str, str] = {
    "ReplicaSet": "replica_set",
    "ControllerRevision": "controller_revision",
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


def format_label_selector(selector: Any) -> str:
    """Render a ``V1LabelSelector`` as the string form accepted by list calls.

    ``matchLabels`` become ``k=v`` clauses and ``matchExpressions`` use the
    set-based syntax (``k in (a,b)``, ``k notin (a)``, ``k``, ``!k``).
    """
    if selector is None:
        return ""

    clauses: list[str] = []
    match_labels = getattr(selector, "match_labels", None) or {}
    for key in sorted(match_labels):
        clauses.append(f"{key}={match_labels[key]}")

    for expression in getattr(selector, "match_expressions", None) or []:
        key = expression.key
        operator = expression.operator
        values = ",".join(sorted(expression.values or []))
        if operator == "In":
            clauses.append(f"{key} in ({values})")
        elif operator == "NotIn":
            clauses.append(f"{key} notin ({values})")
        elif operator == "Exists":
            clauses.append(key)
        elif operator == "DoesNotExist":
            clauses.append(f"!{key}")
        else:
            LOGGER.warning("Ignoring unsupported selector operator %s on key %s", operator, key)
    return ",".join(clauses)


def build_image_patch(
    container_name: str, image: str, annotations: dict[str, str] | None = None
) -> dict[str, Any]:
    """Return a strategic-merge patch body that swaps one container's image.

    Containers merge by ``name``, so only the named container changes. Pod
    template annotations in the same patch force a new revision even when the
    image string happens to be unchanged.
    """
    template: dict[str, Any] = {
        "spec": {"containers": [{"name": container_name, "image": image}]}
    }
    if annotations:
        template["metadata"] = {"annotations": dict(annotations)}
    return {"spec": {"template": template}}


class ClusterClient:
    """Thin wrapper over the ``kubernetes`` client used by the reconciliation engine.

    Workload kinds are dispatched through a method-name table instead of one
    branch per kind. Every call passes ``_request_timeout`` so no cluster
    request blocks a cycle indefinitely.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        apps_api: AppsV1Api,
        request_timeout_seconds: float = 30.0,
    ) -> None:
        self.core_api = core_api
        self.apps_api = apps_api
        self.request_timeout_seconds = request_timeout_seconds

    def _apps_call(self, verb: str, suffix: str) -> Any:
        return getattr(self.apps_api, f"{verb}_{suffix}")

    def check_connection(self) -> None:
        """Raise if the API server cannot be reached with the loaded credentials."""
        self.core_api.get_api_resources(_request_timeout=self.request_timeout_seconds)

    def list_workloads(self, kind: WorkloadKind, namespace: str | None = None) -> list[Any]:
        suffix = _KIND_API_SUFFIX[kind]
        if namespace is None:
            result = self._apps_call("list", f"{suffix}_for_all_namespaces")(
                _request_timeout=self.request_timeout_seconds
            )
        else:
            result = self._apps_call("list_namespaced", suffix)(
                namespace=namespace, _request_timeout=self.request_timeout_seconds
            )
        return list(result.items or [])

    def get_workload(self, kind: WorkloadKind, namespace: str, name: str) -> Any:
        return self._apps_call("read_namespaced", _KIND_API_SUFFIX[kind])(
            name=name, namespace=namespace, _request_timeout=self.request_timeout_seconds
        )

    def patch_container_image(
        self,
        kind: WorkloadKind,
        namespace: str,
        name: str,
        container_name: str,
        image: str,
        annotations: dict[str, str] | None = None,
    ) -> None:
        body = build_image_patch(container_name, image, annotations)
        self._apps_call("patch_namespaced", _KIND_API_SUFFIX[kind])(
            name=name,
            namespace=namespace,
            body=body,
            _request_timeout=self.request_timeout_seconds,
        )

    def list_pods_by_selector(self, namespace: str, selector: str) -> list[Any]:
        result = self.core_api.list_namespaced_pod(
            namespace=namespace,
            label_selector=selector,
            _request_timeout=self.request_timeout_seconds,
        )
        return list(result.items or [])

    def list_replica_sets(self, namespace: str) -> list[Any]:
        result = self.apps_api.list_namespaced_replica_set(
            namespace=namespace, _request_timeout=self.request_timeout_seconds
        )
        return list(result.items or [])

    def list_controller_revisions(self, namespace: str) -> list[Any]:
        result = self.apps_api.list_namespaced_controller_revision(
            namespace=namespace, _request_timeout=self.request_timeout_seconds
        )
        return list(result.items or [])

    def delete_object(self, kind: str, namespace: str, name: str) -> None:
        """Delete a revision object (``ReplicaSet`` or ``ControllerRevision``)."""
        suffix = _REVISION_API_SUFFIX.get(kind)
        if suffix is None:
            raise ValueError(f"Refusing to delete unsupported kind {kind!r}")
        self._apps_call("delete_namespaced", suffix)(
            name=name, namespace=namespace, _request_timeout=self.request_timeout_seconds
        )

    def get_secret(self, namespace: str, name: str) -> Any:
        return self.core_api.read_namespaced_secret(
            name=name, namespace=namespace, _request_timeout=self.request_timeout_seconds
        )
