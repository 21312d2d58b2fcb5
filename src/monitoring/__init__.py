"""
Monitoring Module

Provides Prometheus metrics and health checks.
"""

from src.monitoring.metrics import (
    Metrics,
    get_metrics,
)
from src.monitoring.health import (
    ComponentHealth,
    HealthCheck,
    HealthStatus,
    get_health_checker,
)

__all__ = [
    "Metrics",
    "get_metrics",
    "ComponentHealth",
    "HealthCheck",
    "HealthStatus",
    "get_health_checker",
]
