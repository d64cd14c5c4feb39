"""Bounded health polling for the deployed service.

The monitor repeatedly asks the container runtime for the service status and
classifies the outcome:

- HEALTHY as soon as a query reports healthy
- UNHEALTHY as soon as a query reports unhealthy (remaining attempts unused)
- TIMED_OUT when every attempt reported only running/unknown

Polling happens inside the caller's await; nothing keeps running after
``poll`` returns.

Example usage:
    >>> monitor = HealthMonitor(compose, service_name="theia")
    >>> result = await monitor.poll(max_attempts=30, interval=2.0)
    >>> result.verdict
    <HealthVerdict.HEALTHY: 'healthy'>
"""

from __future__ import annotations

import asyncio
import time
from enum import Enum
from typing import Protocol

from pydantic import BaseModel, Field

from deployguard.logging import get_logger
from deployguard.pipeline.container import ServiceStatus


class HealthVerdict(str, Enum):
    """Classification of a completed health poll."""

    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    TIMED_OUT = "timed_out"


class StatusSource(Protocol):
    """Anything able to report the status of a service."""

    async def status_of(self, service_name: str) -> ServiceStatus: ...


class HealthPollResult(BaseModel):
    """Result of a health poll.

    Attributes:
        verdict: Final classification
        attempts: Number of status queries issued
        observed: Status reported by each query, in order
        elapsed_seconds: Wall-clock time spent polling
    """

    verdict: HealthVerdict = Field(description="Poll verdict")
    attempts: int = Field(ge=0, description="Queries issued")
    observed: list[ServiceStatus] = Field(default_factory=list, description="Observed statuses")
    elapsed_seconds: float = Field(default=0.0, ge=0.0, description="Elapsed time")

    @property
    def healthy(self) -> bool:
        return self.verdict == HealthVerdict.HEALTHY


class HealthMonitor:
    """Polls a status source on a fixed schedule.

    Attributes:
        source: Status source (normally a ComposeManager)
        service_name: Service whose status is polled
        logger: Structured logger instance
    """

    def __init__(self, source: StatusSource, service_name: str) -> None:
        self.source = source
        self.service_name = service_name
        self.logger = get_logger(__name__)

    async def poll(self, max_attempts: int, interval: float) -> HealthPollResult:
        """Query the service status until a verdict or attempts run out.

        Args:
            max_attempts: Maximum number of status queries
            interval: Seconds to wait between consecutive queries

        Returns:
            HealthPollResult with verdict and query history

        Raises:
            ValueError: If max_attempts is below 1 or interval is negative
        """
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {max_attempts}")
        if interval < 0:
            raise ValueError(f"interval must be >= 0, got {interval}")

        start_time = time.monotonic()
        observed: list[ServiceStatus] = []

        self.logger.info(
            "health_poll_started",
            service_name=self.service_name,
            max_attempts=max_attempts,
            interval_seconds=interval,
        )

        for attempt in range(1, max_attempts + 1):
            status = await self.source.status_of(self.service_name)
            observed.append(status)

            if status in (ServiceStatus.HEALTHY, ServiceStatus.UNHEALTHY):
                verdict = HealthVerdict(status.value)
                return self._finish(verdict, observed, start_time)

            self.logger.debug(
                "health_poll_waiting",
                service_name=self.service_name,
                attempt=attempt,
                status=status.value,
            )

            if attempt < max_attempts:
                await asyncio.sleep(interval)

        return self._finish(HealthVerdict.TIMED_OUT, observed, start_time)

    def _finish(
        self,
        verdict: HealthVerdict,
        observed: list[ServiceStatus],
        start_time: float,
    ) -> HealthPollResult:
        elapsed = time.monotonic() - start_time
        log = self.logger.info if verdict == HealthVerdict.HEALTHY else self.logger.error
        log(
            f"health_poll_{verdict.value}",
            service_name=self.service_name,
            attempts=len(observed),
            elapsed_seconds=round(elapsed, 2),
        )
        return HealthPollResult(
            verdict=verdict,
            attempts=len(observed),
            observed=observed,
            elapsed_seconds=elapsed,
        )
