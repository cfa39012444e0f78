from __future__ import annotations

import threading
from types import SimpleNamespace
from typing import Any

import pytest
from kubernetes.client import ApiException
from urllib3.exceptions import MaxRetryError, ReadTimeoutError

from kube_watchtower.src.models import CycleCancelled, WorkloadKind, WorkloadRef
from kube_watchtower.src.rollout import (
    UPDATED_AT_ANNOTATION,
    ContainerNotFoundError,
    PatchRejectedError,
    RolloutError,
    RolloutExecutor,
    RolloutTimeoutError,
    daemon_set_rollout_complete,
    deployment_rollout_complete,
    stateful_set_rollout_complete,
    utc_now_rfc3339,
)


class FakeClock:
    """Monotonic clock that advances a fixed step on every read."""

    def __init__(self, step: float = 1.0) -> None:
        self.now = 0.0
        self.step = step

    def __call__(self) -> float:
        self.now += self.step
        return self.now


def make_deployment(
    *,
    uid: str = "uid-web",
    generation: int = 2,
    observed: int = 2,
    replicas: int | None = 2,
    updated: int = 2,
    current: int = 2,
    available: int = 2,
    containers: tuple[str, ...] = ("nginx",),
) -> SimpleNamespace:
    return SimpleNamespace(
        metadata=SimpleNamespace(name="web", uid=uid, generation=generation),
        spec=SimpleNamespace(
            replicas=replicas,
            template=SimpleNamespace(
                spec=SimpleNamespace(containers=[SimpleNamespace(name=n) for n in containers])
            ),
        ),
        status=SimpleNamespace(
            observed_generation=observed,
            updated_replicas=updated,
            replicas=current,
            available_replicas=available,
        ),
    )


def make_owned(name: str, owner_uid: str, **extra: Any) -> SimpleNamespace:
    return SimpleNamespace(
        metadata=SimpleNamespace(
            name=name,
            owner_references=[SimpleNamespace(uid=owner_uid, name="web")],
        ),
        **extra,
    )


class FakeCluster:
    def __init__(
        self,
        states: list[Any],
        patch_error: Exception | None = None,
        replica_sets: list[Any] | None = None,
        revisions: list[Any] | None = None,
        delete_errors: dict[str, Exception] | None = None,
    ) -> None:
        self.states = list(states)
        self.patch_error = patch_error
        self.replica_sets = replica_sets or []
        self.revisions = revisions or []
        self.delete_errors = delete_errors or {}
        self.patches: list[dict[str, Any]] = []
        self.deleted: list[tuple[str, str]] = []
        self.reads = 0

    def get_workload(self, kind: WorkloadKind, namespace: str, name: str) -> Any:
        self.reads += 1
        state = self.states[0] if len(self.states) == 1 else self.states.pop(0)
        if isinstance(state, Exception):
            raise state
        return state

    def patch_container_image(
        self,
        kind: WorkloadKind,
        namespace: str,
        name: str,
        container_name: str,
        image: str,
        annotations: dict[str, str] | None = None,
    ) -> None:
        if self.patch_error is not None:
            raise self.patch_error
        self.patches.append(
            {"container": container_name, "image": image, "annotations": annotations}
        )

    def list_replica_sets(self, namespace: str) -> list[Any]:
        return list(self.replica_sets)

    def list_controller_revisions(self, namespace: str) -> list[Any]:
        return list(self.revisions)

    def delete_object(self, kind: str, namespace: str, name: str) -> None:
        if name in self.delete_errors:
            raise self.delete_errors[name]
        self.deleted.append((kind, name))


WEB = WorkloadRef(kind=WorkloadKind.DEPLOYMENT, namespace="default", name="web")


def make_executor(cluster: FakeCluster, **kwargs: Any) -> RolloutExecutor:
    kwargs.setdefault("poll_interval_seconds", 0)
    kwargs.setdefault("now_fn", lambda: "2026-01-01T00:00:00Z")
    return RolloutExecutor(cluster, **kwargs)  # type: ignore[arg-type]


class TestCompletionChecks:
    def test_deployment_complete_when_all_counters_match(self) -> None:
        assert deployment_rollout_complete(make_deployment()) is True

    def test_deployment_waits_for_observed_generation(self) -> None:
        assert deployment_rollout_complete(make_deployment(generation=3, observed=2)) is False

    def test_deployment_waits_for_old_replicas_to_go(self) -> None:
        assert deployment_rollout_complete(make_deployment(current=3)) is False

    def test_deployment_defaults_desired_replicas_to_one(self) -> None:
        deployment = make_deployment(replicas=None, updated=1, current=1, available=1)
        assert deployment_rollout_complete(deployment) is True

    def test_stateful_set_uses_ready_replicas(self) -> None:
        stateful_set = SimpleNamespace(
            metadata=SimpleNamespace(generation=1),
            spec=SimpleNamespace(replicas=3),
            status=SimpleNamespace(
                observed_generation=1, updated_replicas=3, replicas=3, ready_replicas=2
            ),
        )
        assert stateful_set_rollout_complete(stateful_set) is False
        stateful_set.status.ready_replicas = 3
        assert stateful_set_rollout_complete(stateful_set) is True

    def test_daemon_set_compares_against_desired_scheduled(self) -> None:
        daemon_set = SimpleNamespace(
            metadata=SimpleNamespace(generation=4),
            spec=SimpleNamespace(),
            status=SimpleNamespace(
                observed_generation=4,
                desired_number_scheduled=5,
                updated_number_scheduled=5,
                number_ready=5,
                number_available=4,
            ),
        )
        assert daemon_set_rollout_complete(daemon_set) is False
        daemon_set.status.number_available = 5
        assert daemon_set_rollout_complete(daemon_set) is True


def test_utc_now_rfc3339_format() -> None:
    stamp = utc_now_rfc3339()
    assert stamp.endswith("Z")
    assert "." not in stamp
    assert len(stamp) == len("2026-01-01T00:00:00Z")


class TestRolloutExecutorUpdate:
    def test_patches_image_with_annotation_and_waits(self) -> None:
        cluster = FakeCluster(
            [make_deployment(), make_deployment(generation=3, observed=2), make_deployment()]
        )
        executor = make_executor(cluster, cleanup=False)

        executor.update(WEB, "nginx", "nginx:latest@sha256:bbb")

        assert cluster.patches == [
            {
                "container": "nginx",
                "image": "nginx:latest@sha256:bbb",
                "annotations": {UPDATED_AT_ANNOTATION: "2026-01-01T00:00:00Z"},
            }
        ]
        assert cluster.reads == 3

    def test_missing_container_is_rejected_before_patching(self) -> None:
        cluster = FakeCluster([make_deployment(containers=("app",))])
        executor = make_executor(cluster)

        with pytest.raises(ContainerNotFoundError, match="container nginx not found"):
            executor.update(WEB, "nginx", "nginx:latest@sha256:bbb")
        assert cluster.patches == []

    def test_deleted_workload_reports_not_found(self) -> None:
        cluster = FakeCluster([ApiException(status=404, reason="Not Found")])
        executor = make_executor(cluster)

        with pytest.raises(ContainerNotFoundError, match="no longer exists"):
            executor.update(WEB, "nginx", "nginx:latest@sha256:bbb")

    def test_rejected_patch_is_a_rollout_error(self) -> None:
        cluster = FakeCluster(
            [make_deployment()], patch_error=ApiException(status=422, reason="Invalid")
        )
        executor = make_executor(cluster)

        with pytest.raises(PatchRejectedError, match="422 Invalid"):
            executor.update(WEB, "nginx", "nginx:latest@sha256:bbb")

    def test_unreachable_apiserver_on_patch_is_a_rejected_patch(self) -> None:
        cluster = FakeCluster(
            [make_deployment()],
            patch_error=MaxRetryError(None, "/apis/apps/v1/namespaces/default/deployments/web"),
        )
        executor = make_executor(cluster)

        with pytest.raises(PatchRejectedError, match="Max retries exceeded"):
            executor.update(WEB, "nginx", "nginx:latest@sha256:bbb")

    def test_unreachable_apiserver_on_first_read_is_a_rollout_error(self) -> None:
        cluster = FakeCluster([MaxRetryError(None, "/apis/apps/v1")])
        executor = make_executor(cluster)

        with pytest.raises(RolloutError, match="failed to read"):
            executor.update(WEB, "nginx", "nginx:latest@sha256:bbb")
        assert cluster.patches == []

    def test_rollout_timeout(self) -> None:
        stuck = make_deployment(updated=1)
        cluster = FakeCluster([stuck])
        executor = make_executor(cluster, timeout_seconds=5, monotonic=FakeClock(step=1.0))

        with pytest.raises(RolloutTimeoutError, match="timeout waiting for rollout"):
            executor.update(WEB, "nginx", "nginx:latest@sha256:bbb")
        assert len(cluster.patches) == 1

    def test_cancellation_interrupts_wait(self) -> None:
        cluster = FakeCluster([make_deployment(), make_deployment(updated=1)])
        cancel = threading.Event()
        executor = make_executor(cluster, poll_interval_seconds=5, timeout_seconds=60)

        original_patch = cluster.patch_container_image

        def patch_then_cancel(*args: Any, **kwargs: Any) -> None:
            original_patch(*args, **kwargs)
            cancel.set()

        cluster.patch_container_image = patch_then_cancel  # type: ignore[method-assign]

        with pytest.raises(CycleCancelled):
            executor.update(WEB, "nginx", "nginx:latest@sha256:bbb", cancel)

    def test_server_errors_while_polling_are_retried(self) -> None:
        cluster = FakeCluster(
            [
                make_deployment(),
                ApiException(status=503, reason="Unavailable"),
                make_deployment(),
            ]
        )
        executor = make_executor(cluster, cleanup=False)

        executor.update(WEB, "nginx", "nginx:latest@sha256:bbb")

        assert cluster.reads == 3

    def test_connection_errors_while_polling_are_retried(self) -> None:
        cluster = FakeCluster(
            [
                make_deployment(),
                ReadTimeoutError(None, "/apis/apps/v1", "Read timed out."),
                MaxRetryError(None, "/apis/apps/v1"),
                make_deployment(),
            ]
        )
        executor = make_executor(cluster, cleanup=False)

        executor.update(WEB, "nginx", "nginx:latest@sha256:bbb")

        assert cluster.reads == 4

    def test_client_errors_while_polling_abort(self) -> None:
        cluster = FakeCluster([make_deployment(), ApiException(status=403, reason="Forbidden")])
        executor = make_executor(cluster)

        with pytest.raises(RolloutError, match="Forbidden"):
            executor.update(WEB, "nginx", "nginx:latest@sha256:bbb")


class TestCleanup:
    def test_deletes_scaled_down_owned_replica_sets(self) -> None:
        replica_sets = [
            make_owned("web-old", "uid-web", spec=SimpleNamespace(replicas=0)),
            make_owned("web-new", "uid-web", spec=SimpleNamespace(replicas=2)),
            make_owned("other-old", "uid-other", spec=SimpleNamespace(replicas=0)),
        ]
        cluster = FakeCluster([make_deployment()], replica_sets=replica_sets)
        executor = make_executor(cluster)

        executor.update(WEB, "nginx", "nginx:latest@sha256:bbb")

        assert cluster.deleted == [("ReplicaSet", "web-old")]

    def test_cleanup_disabled_leaves_revisions(self) -> None:
        replica_sets = [make_owned("web-old", "uid-web", spec=SimpleNamespace(replicas=0))]
        cluster = FakeCluster([make_deployment()], replica_sets=replica_sets)
        executor = make_executor(cluster, cleanup=False)

        executor.update(WEB, "nginx", "nginx:latest@sha256:bbb")

        assert cluster.deleted == []

    def test_keeps_two_newest_controller_revisions(self) -> None:
        stateful_set = SimpleNamespace(
            metadata=SimpleNamespace(name="db", uid="uid-db"),
        )
        revisions = [
            make_owned(f"db-{n}", "uid-db", revision=n) for n in (3, 1, 4, 2)
        ] + [make_owned("other-9", "uid-other", revision=9)]
        cluster = FakeCluster([], revisions=revisions)
        executor = make_executor(cluster)
        ref = WorkloadRef(kind=WorkloadKind.STATEFUL_SET, namespace="default", name="db")

        executor.cleanup(ref, stateful_set)

        assert sorted(cluster.deleted) == [
            ("ControllerRevision", "db-1"),
            ("ControllerRevision", "db-2"),
        ]

    def test_delete_failures_do_not_fail_the_update(self) -> None:
        replica_sets = [
            make_owned("web-a", "uid-web", spec=SimpleNamespace(replicas=0)),
            make_owned("web-b", "uid-web", spec=SimpleNamespace(replicas=0)),
            make_owned("web-c", "uid-web", spec=SimpleNamespace(replicas=0)),
            make_owned("web-d", "uid-web", spec=SimpleNamespace(replicas=0)),
        ]
        cluster = FakeCluster(
            [make_deployment()],
            replica_sets=replica_sets,
            delete_errors={
                "web-a": ApiException(status=404, reason="Not Found"),
                "web-b": ApiException(status=500, reason="boom"),
                "web-c": MaxRetryError(None, "/apis/apps/v1"),
            },
        )
        executor = make_executor(cluster)

        executor.update(WEB, "nginx", "nginx:latest@sha256:bbb")

        assert cluster.deleted == [("ReplicaSet", "web-d")]

    def test_listing_failure_is_logged_not_raised(self) -> None:
        class BrokenCluster(FakeCluster):
            def list_replica_sets(self, namespace: str) -> list[Any]:
                raise ApiException(status=500, reason="boom")

        cluster = BrokenCluster([make_deployment()])
        executor = make_executor(cluster)

        executor.update(WEB, "nginx", "nginx:latest@sha256:bbb")

        assert cluster.deleted == []
