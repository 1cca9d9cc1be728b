from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Info


@dataclass(frozen=True)
class ReloaderMetrics:
    """Prometheus metrics exported by the controller on ``/metrics``.

    Resource-side counters carry a ``kind`` label (``ConfigMap``/``Secret``);
    workload-side counters carry ``workload_kind`` so operators can alert on
    restart failures per Deployment, StatefulSet and DaemonSet.
    """

    updates_total: Counter = field(
        default_factory=lambda: Counter(
            "cre_updates_total",
            "Total update notifications evaluated by the change detector",
            ["kind"],
        )
    )
    ignored_updates_total: Counter = field(
        default_factory=lambda: Counter(
            "cre_ignored_updates_total",
            "Total update notifications that did not trigger a rollout",
            ["kind", "reason"],
        )
    )
    rollouts_total: Counter = field(
        default_factory=lambda: Counter(
            "cre_rollouts_total",
            "Total rollout events processed by the coordinator",
        )
    )
    restarts_total: Counter = field(
        default_factory=lambda: Counter(
            "cre_workload_restarts_total",
            "Total workload rolling restarts triggered",
            ["workload_kind"],
        )
    )
    restart_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "cre_workload_restart_errors_total",
            "Total workload restarts abandoned after failed patch attempts",
            ["workload_kind"],
        )
    )
    list_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "cre_workload_list_errors_total",
            "Total workload listings abandoned after failed attempts",
            ["workload_kind"],
        )
    )
    retry_total: Counter = field(
        default_factory=lambda: Counter(
            "cre_retry_total",
            "Total retry attempts scheduled after failed API calls",
        )
    )
    handler_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "cre_handler_errors_total",
            "Total unexpected errors raised while handling an update notification",
            ["kind"],
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "cre_watch_errors_total",
            "Total Kubernetes list/watch errors",
            ["kind"],
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "cre_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
            ["kind"],
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "cre",
            "Build information for the controller",
        )
    )


METRICS = ReloaderMetrics()
