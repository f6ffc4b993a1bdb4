from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Info


@dataclass(frozen=True)
class AgentMetrics:
    """Prometheus metrics exported by the agent on ``/metrics``."""

    pod_events_total: Counter = field(
        default_factory=lambda: Counter(
            "reboot_agent_pod_events_total",
            "Total pod watch events consumed, by event type",
            ["type"],
        )
    )
    reboot_requests_total: Counter = field(
        default_factory=lambda: Counter(
            "reboot_agent_reboot_requests_total",
            "Total pod modifications carrying the reboot annotation",
        )
    )
    restarts_total: Counter = field(
        default_factory=lambda: Counter(
            "reboot_agent_restarts_total",
            "Total deployment restart operations, by result",
            ["result"],
        )
    )
    conflict_retries_total: Counter = field(
        default_factory=lambda: Counter(
            "reboot_agent_conflict_retries_total",
            "Total deployment replace conflicts that were backed off and retried",
        )
    )
    inflight_restarts: Gauge = field(
        default_factory=lambda: Gauge(
            "reboot_agent_inflight_restarts",
            "Restart operations currently dispatched and not yet finished",
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "reboot_agent_watch_errors_total",
            "Total Kubernetes pod watch errors",
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "reboot_agent_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "reboot_agent",
            "Build information for the agent",
        )
    )


METRICS = AgentMetrics()
