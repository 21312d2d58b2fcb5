"""HTTP liveness probe for the external completion service."""

from __future__ import annotations

import time

import httpx
import structlog

from src.config import get_settings
from src.monitoring.health import ComponentHealth, HealthStatus

logger = structlog.get_logger()

_COMPONENT = "completion_service"


class HttpCompletionProbe:
    """GETs the completion service health URL; any non-2xx is unhealthy."""

    def __init__(
        self,
        health_url: str | None,
        *,
        timeout_seconds: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._health_url = health_url
        self._timeout_seconds = timeout_seconds
        self._transport = transport

    async def check(self) -> ComponentHealth:
        if not self._health_url:
            return ComponentHealth(
                name=_COMPONENT,
                status=HealthStatus.DEGRADED,
                message="Completion service health URL not configured",
            )

        start = time.perf_counter()
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout_seconds,
                transport=self._transport,
            ) as client:
                response = await client.get(self._health_url)
        except httpx.HTTPError as exc:
            latency = (time.perf_counter() - start) * 1000
            logger.warning(
                "Completion service probe failed",
                url=self._health_url,
                error=str(exc),
            )
            return ComponentHealth(
                name=_COMPONENT,
                status=HealthStatus.UNHEALTHY,
                message=str(exc) or exc.__class__.__name__,
                latency_ms=latency,
            )

        latency = (time.perf_counter() - start) * 1000
        if response.is_success:
            return ComponentHealth(
                name=_COMPONENT,
                status=HealthStatus.HEALTHY,
                latency_ms=latency,
                details={"status_code": response.status_code},
            )
        return ComponentHealth(
            name=_COMPONENT,
            status=HealthStatus.UNHEALTHY,
            message=f"Unexpected status {response.status_code}",
            latency_ms=latency,
            details={"status_code": response.status_code},
        )


def get_completion_probe() -> HttpCompletionProbe:
    settings = get_settings()
    return HttpCompletionProbe(
        settings.completion_service_health_url,
        timeout_seconds=settings.completion_probe_timeout_seconds,
    )
