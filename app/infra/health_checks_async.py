# app/infra/health_checks_async.py
"""
Health checks behind /ready and /health/detailed.

Critical checks decide readiness; non-critical ones can only degrade the
overall status.
"""
from __future__ import annotations
import time
from typing import Dict, Any
from enum import Enum

from app.infra.db_async import get_pool
from app.infra.logging_config import get_logger
from app.infra.migrations_async import REQUIRED_TABLES

logger = get_logger(__name__)


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


def _result(status: HealthStatus, details: str, **extra: Any) -> Dict[str, Any]:
    return {"status": status, "details": details, **extra}


def _failed(details: str, exc: Exception) -> Dict[str, Any]:
    return _result(HealthStatus.UNHEALTHY, details, error=str(exc)[:200])


class AsyncHealthCheck:
    """One named probe; ``check()`` returns a dict with at least status and details"""

    def __init__(self, name: str, critical: bool = True):
        self.name = name
        self.critical = critical

    async def check(self) -> Dict[str, Any]:
        raise NotImplementedError


class AsyncDatabaseHealthCheck(AsyncHealthCheck):
    """Postgres answers, and the dispatch tables have been migrated"""

    # Round trip slower than this (seconds) is reported as degraded
    SLOW_THRESHOLD = 1.0

    def __init__(self):
        super().__init__("database", critical=True)

    async def check(self) -> Dict[str, Any]:
        started = time.monotonic()
        try:
            pool = await get_pool()
            async with pool.acquire() as conn:
                if await conn.fetchval("SELECT 1") != 1:
                    return _result(HealthStatus.UNHEALTHY, "Unexpected reply to SELECT 1")
                missing = [
                    table for table in REQUIRED_TABLES
                    if await conn.fetchval("SELECT to_regclass($1)", table) is None
                ]
        except Exception as exc:
            logger.error(f"Database health check failed: {exc.__class__.__name__}", exc_info=True)
            return _failed("Database connection failed", exc)

        if missing:
            return _result(
                HealthStatus.UNHEALTHY,
                "Schema not migrated (run python -m app.infra.migrate)",
                error=f"Missing: {', '.join(missing)}",
            )

        elapsed = time.monotonic() - started
        if elapsed > self.SLOW_THRESHOLD:
            return _result(HealthStatus.DEGRADED, f"Slow database response: {elapsed:.3f}s", response_time=elapsed)
        return _result(HealthStatus.HEALTHY, "Database operational", response_time=elapsed)


class AsyncDispatchBacklogHealthCheck(AsyncHealthCheck):
    """How many notifications are due but still undelivered"""

    # Backlog above this many rows is reported as degraded
    BACKLOG_WARN = 1000

    def __init__(self):
        super().__init__("dispatch_backlog", critical=False)

    async def check(self) -> Dict[str, Any]:
        try:
            pool = await get_pool()
            async with pool.acquire() as conn:
                row = await conn.fetchrow(
                    """
                    SELECT count(*) AS due, min(scheduled_for) AS oldest
                    FROM scheduled_notifications
                    WHERE is_sent = false AND scheduled_for <= now()
                    """
                )
        except Exception as exc:
            logger.error(f"Backlog health check failed: {exc.__class__.__name__}", exc_info=True)
            return _failed("Backlog query failed", exc)

        due = row["due"] if row else 0
        oldest = row["oldest"] if row else None
        return _result(
            HealthStatus.DEGRADED if due > self.BACKLOG_WARN else HealthStatus.HEALTHY,
            f"{due} due notification(s)",
            due=due,
            oldest_due=oldest.isoformat() if oldest else None,
        )


class AsyncHealthChecker:
    """Run a set of checks and fold them into one status"""

    def __init__(self, checks: list[AsyncHealthCheck] | None = None):
        if checks is None:
            checks = [AsyncDatabaseHealthCheck(), AsyncDispatchBacklogHealthCheck()]
        self.checks = checks

    async def run_checks(self, include_non_critical: bool = True) -> Dict[str, Any]:
        """
        Returns ``{"status": "healthy" | "degraded" | "unhealthy", "checks": {...}, "timestamp": float}``.

        Only a failing critical check makes the result unhealthy.
        """
        overall = HealthStatus.HEALTHY
        results: Dict[str, Any] = {}

        for check in self.checks:
            if check.critical or include_non_critical:
                result = await check.check()
                results[check.name] = result

                if result["status"] == HealthStatus.UNHEALTHY and check.critical:
                    overall = HealthStatus.UNHEALTHY
                elif result["status"] != HealthStatus.HEALTHY and overall is HealthStatus.HEALTHY:
                    overall = HealthStatus.DEGRADED

        return {"status": overall.value, "checks": results, "timestamp": time.time()}


_async_health_checker = AsyncHealthChecker()


def get_async_health_checker() -> AsyncHealthChecker:
    return _async_health_checker
