from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported by the service controller on ``/metrics``."""

    nodesync_latency_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "service_controller_nodesync_latency_seconds",
            "Seconds taken to resync load balancer backends for all services after a node change",
            buckets=(1, 2, 4, 8, 16, 32, 64, 128, 256, 512, 1024, 2048, 4096, 8192, 16384),
        )
    )
    update_loadbalancer_host_latency_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "service_controller_update_loadbalancer_host_latency_seconds",
            "Seconds taken to update the backends of a single load balancer",
            buckets=(1, 2, 4, 8, 16, 32, 64, 128, 256, 512, 1024, 2048, 4096, 8192, 16384),
        )
    )
    loadbalancer_sync_total: Counter = field(
        default_factory=lambda: Counter(
            "service_controller_loadbalancer_sync_total",
            "Total load balancer backend update attempts",
        )
    )
    nodesync_error_total: Counter = field(
        default_factory=lambda: Counter(
            "service_controller_nodesync_error_total",
            "Total load balancer backend updates that failed during node resync",
        )
    )
    sync_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "service_controller_sync_errors_total",
            "Total failed reconciliation passes",
            ["queue"],
        )
    )
    workqueue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "service_controller_workqueue_depth",
            "Current number of keys waiting in a work queue",
            ["name"],
        )
    )
    workqueue_adds_total: Counter = field(
        default_factory=lambda: Counter(
            "service_controller_workqueue_adds_total",
            "Total keys added to a work queue",
            ["name"],
        )
    )
    workqueue_retries_total: Counter = field(
        default_factory=lambda: Counter(
            "service_controller_workqueue_retries_total",
            "Total rate-limited re-queues of a work queue key",
            ["name"],
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "service_controller_watch_errors_total",
            "Total Kubernetes list/watch errors",
            ["resource"],
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "service_controller_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
            ["resource"],
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "service_controller",
            "Build information for the service controller",
        )
    )


METRICS = ControllerMetrics()
