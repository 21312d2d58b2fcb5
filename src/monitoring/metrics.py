"""
Prometheus Metrics

Defines and exports metrics for the chat integrity service.
"""

import time

import structlog
from prometheus_client import REGISTRY, CollectorRegistry, Counter, Gauge, Histogram, Info

logger = structlog.get_logger()

# Singleton metrics instance
_metrics: "Metrics | None" = None


class Metrics:
    """
    Prometheus metrics for the chat integrity service.

    Tracks:
    - Heal outcomes and health scores
    - Sweep runs, per-chat outcomes and retention purges
    - Completion service liveness
    """

    def __init__(self, registry: CollectorRegistry = REGISTRY):
        """Initialize Prometheus metrics."""
        # Healing
        self.conversation_heals_total = Counter(
            "listopia_conversation_heals_total",
            "Total validate-and-heal runs by outcome",
            ["status"],  # healthy | healed | recovery_branch_created | conflict
            registry=registry,
        )

        self.conversation_health_score = Histogram(
            "listopia_conversation_health_score",
            "Health score observed before healing",
            buckets=[0, 20, 40, 60, 80, 90, 100],
            registry=registry,
        )

        # Sweep
        self.sweep_runs_total = Counter(
            "listopia_conversation_sweep_runs_total",
            "Total conversation health sweeps",
            ["status"],  # completed | cancelled
            registry=registry,
        )

        self.sweep_duration_seconds = Histogram(
            "listopia_conversation_sweep_duration_seconds",
            "Conversation health sweep duration in seconds",
            buckets=[1.0, 5.0, 10.0, 30.0, 60.0, 300.0, 600.0, 1800.0],
            registry=registry,
        )

        self.sweep_chats_total = Counter(
            "listopia_conversation_sweep_chats_total",
            "Chats processed by the sweep by outcome",
            ["outcome"],
            registry=registry,
        )

        self.sweep_last_success_timestamp_seconds = Gauge(
            "listopia_conversation_sweep_last_success_timestamp_seconds",
            "Unix timestamp of the last completed sweep",
            registry=registry,
        )

        self.retention_purged_total = Counter(
            "listopia_retention_purged_total",
            "Recovery records removed by retention",
            ["kind"],  # checkpoint | recovery_context
            registry=registry,
        )

        # Completion service
        self.completion_service_up = Gauge(
            "listopia_completion_service_up",
            "1 when the last completion service probe succeeded",
            registry=registry,
        )

        self.completion_probe_latency_seconds = Histogram(
            "listopia_completion_probe_latency_seconds",
            "Completion service probe latency in seconds",
            buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
            registry=registry,
        )

        # System info
        self.build_info = Info(
            "listopia_build_info",
            "Build information",
            registry=registry,
        )

        logger.info("Prometheus metrics initialized")

    def set_build_info(self, version: str, commit: str | None = None) -> None:
        """Set build information."""
        self.build_info.info({
            "version": version,
            "commit": commit or "unknown",
        })

    # Convenience methods for tracking
    def track_heal(self, status: str, health_score: int | None = None) -> None:
        self.conversation_heals_total.labels(status=status).inc()
        if health_score is not None:
            self.conversation_health_score.observe(health_score)

    def track_sweep_chat(self, outcome: str) -> None:
        self.sweep_chats_total.labels(outcome=outcome).inc()

    def track_sweep(self, *, cancelled: bool, duration: float) -> None:
        """Track a finished sweep run."""
        self.sweep_runs_total.labels(status="cancelled" if cancelled else "completed").inc()
        self.sweep_duration_seconds.observe(duration)
        if not cancelled:
            self.sweep_last_success_timestamp_seconds.set(time.time())

    def track_retention(self, *, checkpoints: int, recovery_contexts: int) -> None:
        if checkpoints:
            self.retention_purged_total.labels(kind="checkpoint").inc(checkpoints)
        if recovery_contexts:
            self.retention_purged_total.labels(kind="recovery_context").inc(recovery_contexts)

    def track_completion_probe(self, *, healthy: bool, latency_ms: float | None) -> None:
        self.completion_service_up.set(1 if healthy else 0)
        if latency_ms is not None:
            self.completion_probe_latency_seconds.observe(latency_ms / 1000)


def get_metrics() -> Metrics:
    """Get or create the singleton metrics instance."""
    global _metrics
    if _metrics is None:
        _metrics = Metrics()
    return _metrics

