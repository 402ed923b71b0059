from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Info


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported by the controller on ``/metrics``.

    Reconcile outcomes share one counter labelled by ``result`` so the
    skip / requeue / create ratio can be graphed directly.
    """

    reconcile_total: Counter = field(
        default_factory=lambda: Counter(
            "telegraf_controller_reconcile_total",
            "Pod reconciliations by outcome",
            ["result"],
        )
    )
    reconcile_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "telegraf_controller_reconcile_errors_total",
            "Pod reconciliations that raised and were scheduled for retry",
        )
    )
    secrets_created_total: Counter = field(
        default_factory=lambda: Counter(
            "telegraf_controller_secrets_created_total",
            "Telegraf configuration secrets created",
        )
    )
    config_build_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "telegraf_controller_config_build_errors_total",
            "Telegraf configuration documents that could not be built",
            ["reason"],
        )
    )
    annotation_warnings_total: Counter = field(
        default_factory=lambda: Counter(
            "telegraf_controller_annotation_warnings_total",
            "Advisory warnings produced while applying pod annotations",
        )
    )
    class_reloads_total: Counter = field(
        default_factory=lambda: Counter(
            "telegraf_controller_class_reloads_total",
            "Class data reload attempts by result",
            ["result"],
        )
    )
    classes_loaded: Gauge = field(
        default_factory=lambda: Gauge(
            "telegraf_controller_classes_loaded",
            "Number of telegraf classes currently served",
        )
    )
    queue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "telegraf_controller_queue_depth",
            "Pods waiting in the reconcile queue, including delayed retries",
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "telegraf_controller_watch_errors_total",
            "Total Kubernetes watch errors",
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "telegraf_controller_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "telegraf_controller",
            "Build information for the controller",
        )
    )


METRICS = ControllerMetrics()
