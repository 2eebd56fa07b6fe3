from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Info


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported by the controller on ``/metrics``.

    Watch metrics carry a ``resource`` label (``selectivedeployments``,
    ``nodes``, ``deployments``, ``daemonsets``, ``statefulsets``) so a single
    misbehaving subscription can be alerted on independently.
    """

    events_enqueued_total: Counter = field(
        default_factory=lambda: Counter(
            "sdcontroller_events_enqueued_total",
            "Total envelopes added to the work queue",
            ["source", "operation"],
        )
    )
    events_suppressed_total: Counter = field(
        default_factory=lambda: Counter(
            "sdcontroller_events_suppressed_total",
            "Total selective deployment events dropped before the queue",
            ["reason"],
        )
    )
    dispatch_total: Counter = field(
        default_factory=lambda: Counter(
            "sdcontroller_dispatch_total",
            "Total envelopes handed to the reconciliation dispatcher",
            ["operation"],
        )
    )
    dispatch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "sdcontroller_dispatch_errors_total",
            "Total dispatcher callbacks that raised",
        )
    )
    lookup_retries_total: Counter = field(
        default_factory=lambda: Counter(
            "sdcontroller_lookup_retries_total",
            "Total cache lookups re-queued with backoff after a read failure",
        )
    )
    dropped_items_total: Counter = field(
        default_factory=lambda: Counter(
            "sdcontroller_dropped_items_total",
            "Total envelopes dropped after exhausting lookup retries",
        )
    )
    recovery_triggers_total: Counter = field(
        default_factory=lambda: Counter(
            "sdcontroller_recovery_triggers_total",
            "Total selective deployments re-queued by node or workload signals",
            ["signal"],
        )
    )
    self_heal_total: Counter = field(
        default_factory=lambda: Counter(
            "sdcontroller_self_heal_total",
            "Total corrective writes against workload controllers",
            ["kind", "action", "result"],
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "sdcontroller_watch_errors_total",
            "Total Kubernetes list/watch errors",
            ["resource"],
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "sdcontroller_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
            ["resource"],
        )
    )
    watch_events_total: Counter = field(
        default_factory=lambda: Counter(
            "sdcontroller_watch_events_total",
            "Total watch events received",
            ["resource", "type"],
        )
    )
    unhandled_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "sdcontroller_unhandled_errors_total",
            "Total errors surfaced through the process-wide error reporter",
            ["context"],
        )
    )
    queue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "sdcontroller_queue_depth",
            "Current number of envelopes waiting in the work queue",
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "sdcontroller",
            "Build information for the controller",
        )
    )


METRICS = ControllerMetrics()
