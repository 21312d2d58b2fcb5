"""
Health Checks

Provides health check endpoints for monitoring system status.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any
import asyncio
import time

import structlog

from src.kernel.time import utc_now

logger = structlog.get_logger()

# Singleton instance
_health_checker: "HealthCheck | None" = None


class HealthStatus(str, Enum):
    """Health check status."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


@dataclass
class ComponentHealth:
    """Health status of a single component."""

    name: str
    status: HealthStatus
    message: str | None = None
    latency_ms: float | None = None
    details: dict[str, Any] = field(default_factory=dict)
    checked_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "name": self.name,
            "status": self.status.value,
            "message": self.message,
            "latency_ms": self.latency_ms,
            "details": self.details,
            "checked_at": self.checked_at.isoformat(),
        }


@dataclass
class SystemHealth:
    """Overall system health."""

    status: HealthStatus
    components: list[ComponentHealth]
    version: str | None = None
    uptime_seconds: float | None = None
    checked_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "status": self.status.value,
            "components": [c.to_dict() for c in self.components],
            "version": self.version,
            "uptime_seconds": self.uptime_seconds,
            "checked_at": self.checked_at.isoformat(),
        }


class HealthCheck:
    """
    System health checker.

    Checks health of:
    - The chat database
    - The external completion service (non-critical)
    """

    def __init__(self, completion_probe=None, version: str = "0.1.0"):
        """Initialize health checker."""
        self._start_time = utc_now()
        self._version = version
        self._completion_probe = completion_probe

    @property
    def uptime_seconds(self) -> float:
        """Get uptime in seconds."""
        return (utc_now() - self._start_time).total_seconds()

    async def check_all(self) -> SystemHealth:
        """Check health of all components concurrently."""
        checks = await asyncio.gather(
            self.check_database(),
            self.check_completion_service(),
            return_exceptions=True,
        )

        components = []
        for check in checks:
            if isinstance(check, Exception):
                logger.error("Health check failed", error=str(check))
                components.append(ComponentHealth(
                    name="unknown",
                    status=HealthStatus.UNHEALTHY,
                    message=str(check),
                ))
            else:
                components.append(check)

        # Determine overall status
        statuses = [c.status for c in components]
        if HealthStatus.UNHEALTHY in statuses:
            overall = HealthStatus.UNHEALTHY
        elif HealthStatus.DEGRADED in statuses:
            overall = HealthStatus.DEGRADED
        else:
            overall = HealthStatus.HEALTHY

        return SystemHealth(
            status=overall,
            components=components,
            version=self._version,
            uptime_seconds=self.uptime_seconds,
        )

    async def check_database(self) -> ComponentHealth:
        """Check chat database health."""
        start = time.perf_counter()

        try:
            from sqlalchemy import text

            from src.db.client import get_db_session

            async with get_db_session() as session:
                result = await session.scalar(text("SELECT 1"))

            latency = (time.perf_counter() - start) * 1000

            if result == 1:
                return ComponentHealth(
                    name="database",
                    status=HealthStatus.HEALTHY,
                    latency_ms=latency,
                )
            return ComponentHealth(
                name="database",
                status=HealthStatus.UNHEALTHY,
                message="Unexpected query result",
                latency_ms=latency,
            )

        except Exception as e:
            latency = (time.perf_counter() - start) * 1000
            return ComponentHealth(
                name="database",
                status=HealthStatus.UNHEALTHY,
                message=str(e),
                latency_ms=latency,
            )

    async def check_completion_service(self) -> ComponentHealth:
        """Check the completion service; never critical for serving traffic."""
        probe = self._completion_probe
        if probe is None:
            from src.contexts.conversation_integrity.infrastructure.completion_probe import (
                get_completion_probe,
            )

            probe = get_completion_probe()

        health = await probe.check()
        if health.status == HealthStatus.UNHEALTHY:
            # Non-critical component
            health.status = HealthStatus.DEGRADED
        return health

    async def liveness(self) -> dict[str, Any]:
        """
        Liveness check - is the service running?

        Returns immediately, no external dependencies.
        """
        return {
            "status": "alive",
            "timestamp": utc_now().isoformat(),
        }

    async def readiness(self) -> dict[str, Any]:
        """Readiness check: the database must be reachable."""
        database = await self.check_database()
        ready = database.status == HealthStatus.HEALTHY

        return {
            "status": "ready" if ready else "not_ready",
            "timestamp": utc_now().isoformat(),
            "details": database.to_dict() if not ready else None,
        }


async def get_health_checker() -> HealthCheck:
    """Get or create the singleton health checker."""
    global _health_checker
    if _health_checker is None:
        _health_checker = HealthCheck()
    return _health_checker
