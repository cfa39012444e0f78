from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class WatchtowerMetrics:
    """Prometheus metrics exported by the watcher on ``/metrics``.

    Update counters carry a ``kind`` label so operators can see which
    workload kind is failing to roll out.
    """

    cycles_total: Counter = field(
        default_factory=lambda: Counter(
            "kube_watchtower_cycles_total",
            "Total reconciliation cycles by result",
            ["result"],
        )
    )
    containers_scanned_total: Counter = field(
        default_factory=lambda: Counter(
            "kube_watchtower_containers_scanned_total",
            "Total eligible containers compared against their registry",
        )
    )
    updates_total: Counter = field(
        default_factory=lambda: Counter(
            "kube_watchtower_updates_total",
            "Total container image updates by workload kind and result",
            ["kind", "result"],
        )
    )
    digest_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "kube_watchtower_digest_errors_total",
            "Total failed registry digest lookups",
        )
    )
    cleanup_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "kube_watchtower_cleanup_errors_total",
            "Total revision objects that could not be cleaned up",
        )
    )
    cycle_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "kube_watchtower_cycle_duration_seconds",
            "Seconds spent in one reconciliation cycle",
            buckets=(1, 5, 15, 30, 60, 120, 300, 600, 1800, float("inf")),
        )
    )
    rollout_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "kube_watchtower_rollout_duration_seconds",
            "Seconds from image patch to observed rollout completion",
            ["kind"],
            buckets=(2, 5, 10, 30, 60, 120, 300, 600, float("inf")),
        )
    )
    last_success_timestamp: Gauge = field(
        default_factory=lambda: Gauge(
            "kube_watchtower_last_success_timestamp_seconds",
            "Unix time of the last reconciliation cycle that completed",
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "kube_watchtower",
            "Build information for the watcher",
        )
    )


METRICS = WatchtowerMetrics()
