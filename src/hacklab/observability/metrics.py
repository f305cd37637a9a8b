"""Prometheus metrics for HackLab.

Exposes metrics for monitoring lab provisioning, teardown, status sync
and flag verification.
"""

from __future__ import annotations

from prometheus_client import (
    REGISTRY,
    CollectorRegistry,
    Counter,
    Histogram,
    Info,
    start_http_server,
)


class MetricsCollector:
    """Prometheus metrics collector for HackLab.

    Provides metrics for:
    - Workload starts, stops and deploy latency per kind
    - Reconciler pruning
    - Flag submissions
    - Orchestrator API failures
    """

    def __init__(
        self,
        namespace: str = "hacklab",
        registry: CollectorRegistry | None = None,
    ) -> None:
        """Initialize metrics.

        Args:
            namespace: Prometheus namespace prefix for all metrics.
            registry: Registry to attach metrics to (default: global registry).
        """
        self.namespace = namespace
        self.registry = registry if registry is not None else REGISTRY

        self.info = Info(
            f"{namespace}_build",
            "HackLab build information",
            registry=self.registry,
        )

        self.workload_starts_total = Counter(
            f"{namespace}_workload_starts_total",
            "Total workload start attempts",
            ["category", "kind", "outcome"],
            registry=self.registry,
        )

        self.workload_stops_total = Counter(
            f"{namespace}_workload_stops_total",
            "Total workloads stopped or evicted",
            ["category", "kind", "reason"],
            registry=self.registry,
        )

        self.deploy_duration = Histogram(
            f"{namespace}_workload_deploy_duration_seconds",
            "Time from start request to a routable workload",
            ["category", "kind"],
            buckets=[1.0, 2.5, 5.0, 10.0, 20.0, 30.0, 60.0, 90.0, 180.0],
            registry=self.registry,
        )

        self.reconciler_pruned_total = Counter(
            f"{namespace}_reconciler_pruned_total",
            "Records removed by the status reconciler",
            ["category", "reason"],  # reason: not_found, not_running, expired
            registry=self.registry,
        )

        self.flag_submissions_total = Counter(
            f"{namespace}_flag_submissions_total",
            "Flag submissions by result",
            ["result"],  # correct, incorrect, already_solved, error
            registry=self.registry,
        )

        self.orchestrator_errors_total = Counter(
            f"{namespace}_orchestrator_errors_total",
            "Orchestrator API errors surfaced to callers",
            ["operation", "retryable"],
            registry=self.registry,
        )

    def set_build_info(
        self,
        version: str,
        commit: str = "unknown",
        build_date: str = "unknown",
    ) -> None:
        """Set build information metrics."""
        self.info.info(
            {
                "version": version,
                "commit": commit,
                "build_date": build_date,
            }
        )

    def record_start(
        self,
        category: str,
        kind: str,
        outcome: str,
        duration_seconds: float | None = None,
    ) -> None:
        """Record a workload start attempt.

        Args:
            category: Workload category (lab, os).
            kind: Lab or OS type.
            outcome: success or failure.
            duration_seconds: Deploy latency, observed only for successes.
        """
        self.workload_starts_total.labels(
            category=category,
            kind=kind,
            outcome=outcome,
        ).inc()

        if duration_seconds is not None:
            self.deploy_duration.labels(category=category, kind=kind).observe(duration_seconds)

    def record_stop(self, category: str, kind: str, reason: str) -> None:
        self.workload_stops_total.labels(category=category, kind=kind, reason=reason).inc()

    def record_pruned(self, category: str, reason: str) -> None:
        self.reconciler_pruned_total.labels(category=category, reason=reason).inc()

    def record_flag_submission(self, result: str) -> None:
        self.flag_submissions_total.labels(result=result).inc()

    def record_orchestrator_error(self, operation: str, retryable: bool) -> None:
        self.orchestrator_errors_total.labels(
            operation=operation,
            retryable=str(retryable).lower(),
        ).inc()


# Global metrics instance
_metrics: MetricsCollector | None = None


def get_metrics() -> MetricsCollector:
    """Get the global metrics collector.

    Returns:
        The global MetricsCollector instance.
    """
    global _metrics  # noqa: PLW0603
    if _metrics is None:
        _metrics = MetricsCollector()
    return _metrics


def start_metrics_server(port: int = 9090) -> None:
    """Start a standalone Prometheus metrics HTTP server."""
    start_http_server(port)
