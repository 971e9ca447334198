"""Health checks for the evaluation service."""

from __future__ import annotations

import asyncio
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import StrEnum
from typing import Any

from .cache import FlagCache


class HealthStatus(StrEnum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


@dataclass
class CheckResult:
    status: HealthStatus
    message: str | None = None
    duration_ms: float = 0.0


@dataclass
class HealthResponse:
    """Aggregated result of one health run."""

    status: HealthStatus
    checks: dict[str, CheckResult] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": str(self.status),
            "checks": {
                name: {
                    "status": str(result.status),
                    "message": result.message,
                    "duration_ms": round(result.duration_ms, 2),
                }
                for name, result in self.checks.items()
            },
            "timestamp": self.timestamp.isoformat(),
        }


class HealthCheck(ABC):
    """A single dependency check.

    ``check`` raises on failure. A failing non-critical check degrades the
    service instead of marking it unhealthy.
    """

    critical: bool = True

    @property
    @abstractmethod
    def name(self) -> str: ...

    @abstractmethod
    async def check(self) -> None: ...


class CacheHealthCheck(HealthCheck):
    """Pings the server-side cache backend. Evaluations survive a cache outage."""

    critical = False

    def __init__(self, cache: FlagCache, name: str = "cache") -> None:
        self._cache = cache
        self._name = name

    @property
    def name(self) -> str:
        return self._name

    async def check(self) -> None:
        if not await self._cache.is_healthy():
            raise RuntimeError("cache backend unreachable")


class HealthChecker:
    """Runs registered checks concurrently, each bounded by ``timeout`` seconds."""

    def __init__(self, timeout: float = 2.0) -> None:
        self._checks: list[HealthCheck] = []
        self._timeout = timeout

    def add(self, check: HealthCheck) -> None:
        self._checks.append(check)

    async def _run_check(self, check: HealthCheck) -> CheckResult:
        failed = HealthStatus.UNHEALTHY if check.critical else HealthStatus.DEGRADED
        started = time.perf_counter()
        try:
            await asyncio.wait_for(check.check(), timeout=self._timeout)
        except asyncio.TimeoutError:
            message: str | None = f"timed out after {self._timeout}s"
            status = failed
        except Exception as e:
            message = str(e)
            status = failed
        else:
            message = None
            status = HealthStatus.HEALTHY
        return CheckResult(status, message, (time.perf_counter() - started) * 1000)

    async def run_all(self) -> HealthResponse:
        results = await asyncio.gather(*(self._run_check(c) for c in self._checks))
        checks = {c.name: r for c, r in zip(self._checks, results)}
        statuses = {r.status for r in results}
        if HealthStatus.UNHEALTHY in statuses:
            overall = HealthStatus.UNHEALTHY
        elif HealthStatus.DEGRADED in statuses:
            overall = HealthStatus.DEGRADED
        else:
            overall = HealthStatus.HEALTHY
        return HealthResponse(status=overall, checks=checks)
