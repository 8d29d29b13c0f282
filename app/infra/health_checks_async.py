# app/infra/health_checks_async.py
from __future__ import annotations
import time
from typing import Dict, Any
from enum import Enum

from app.config import settings
from app.infra.db_async import get_pool
from app.infra.logging_config import get_logger

logger = get_logger(__name__)

REQUIRED_TABLES = ("jobs", "agents", "profiles", "checkout_sessions", "notification_requests", "delivery_reminders")


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class AsyncHealthCheck:
    """Base class for async health checks"""

    def __init__(self, name: str, critical: bool = True):
        self.name = name
        self.critical = critical

    async def check(self) -> Dict[str, Any]:
        """
        Perform health check.
        Returns dict with 'status', 'details', and optionally 'error'
        """
        raise NotImplementedError


class AsyncDatabaseHealthCheck(AsyncHealthCheck):
    """Check database connectivity, required tables and schema version"""

    def __init__(self):
        super().__init__("database", critical=True)

    async def check(self) -> Dict[str, Any]:
        start = time.time()

        try:
            pool = await get_pool()
            async with pool.acquire() as conn:
                result = await conn.fetchval("SELECT 1")
                if result != 1:
                    return {
                        "status": HealthStatus.UNHEALTHY,
                        "details": "Unexpected query result",
                        "error": f"Expected 1, got {result}"
                    }

                missing_tables = []
                for table in REQUIRED_TABLES:
                    if await conn.fetchval("SELECT to_regclass($1)", table) is None:
                        missing_tables.append(table)

                if missing_tables:
                    return {
                        "status": HealthStatus.UNHEALTHY,
                        "details": "Missing required tables",
                        "error": f"Missing: {', '.join(missing_tables)}"
                    }

                schema_version = await conn.fetchval("SELECT max(version) FROM schema_migrations")

                duration = time.time() - start
                if schema_version != settings.expected_schema_version:
                    return {
                        "status": HealthStatus.DEGRADED,
                        "details": f"Schema {schema_version}, expected {settings.expected_schema_version}",
                        "response_time": duration
                    }
                if duration > 1.0:
                    return {
                        "status": HealthStatus.DEGRADED,
                        "details": f"Slow database response: {duration:.3f}s",
                        "response_time": duration
                    }

                return {
                    "status": HealthStatus.HEALTHY,
                    "details": "Database operational",
                    "schema_version": schema_version,
                    "response_time": duration
                }

        except Exception as exc:
            logger.error("Database health check failed", exc_info=True)
            return {
                "status": HealthStatus.UNHEALTHY,
                "details": "Database connection failed",
                "error": str(exc)[:200]
            }


class AsyncJobStoreHealthCheck(AsyncHealthCheck):
    """Job pool overview: open and in-progress counts"""

    def __init__(self):
        super().__init__("job_store", critical=False)

    async def check(self) -> Dict[str, Any]:
        try:
            pool = await get_pool()
            async with pool.acquire() as conn:
                row = await conn.fetchrow(
                    """
                    SELECT
                      count(*) FILTER (WHERE status = 'awaiting_agent' AND state = 'prepaid') AS open_jobs,
                      count(*) FILTER (WHERE state = 'processing') AS in_progress
                    FROM jobs
                    WHERE NOT deleted
                    """
                )
                return {
                    "status": HealthStatus.HEALTHY,
                    "details": "Job store operational",
                    "open_jobs": row["open_jobs"],
                    "in_progress": row["in_progress"],
                }

        except Exception as exc:
            logger.error("Job store health check failed", exc_info=True)
            return {
                "status": HealthStatus.DEGRADED,
                "details": "Job store check failed",
                "error": str(exc)[:200]
            }


class AsyncNotificationOutboxHealthCheck(AsyncHealthCheck):
    """Pending notification requests older than 15 minutes mean the collaborator is stalled"""

    def __init__(self, stale_minutes: int = 15):
        super().__init__("notification_outbox", critical=False)
        self.stale_minutes = stale_minutes

    async def check(self) -> Dict[str, Any]:
        try:
            pool = await get_pool()
            async with pool.acquire() as conn:
                stale = await conn.fetchval(
                    "SELECT count(*) FROM notification_requests "
                    "WHERE status = 'pending' AND created_at < now() - make_interval(mins => $1)",
                    self.stale_minutes,
                )
                status = HealthStatus.DEGRADED if stale else HealthStatus.HEALTHY
                return {
                    "status": status,
                    "details": f"{stale} stale notification request(s)" if stale else "Outbox draining",
                    "stale_requests": stale,
                }

        except Exception as exc:
            logger.error("Notification outbox health check failed", exc_info=True)
            return {
                "status": HealthStatus.DEGRADED,
                "details": "Notification outbox check failed",
                "error": str(exc)[:200]
            }


class AsyncHealthChecker:
    """Aggregate async health checks"""

    def __init__(self, checks: list[AsyncHealthCheck] | None = None):
        if checks is None:
            checks = [
                AsyncDatabaseHealthCheck(),
                AsyncJobStoreHealthCheck(),
                AsyncNotificationOutboxHealthCheck(),
            ]
        self.checks = checks

    async def run_checks(self, include_non_critical: bool = True) -> Dict[str, Any]:
        """
        Run all health checks.

        Returns:
            {
                "status": "healthy" | "degraded" | "unhealthy",
                "checks": {...},
                "timestamp": float
            }
        """
        results = {}
        overall_status = HealthStatus.HEALTHY

        for check in self.checks:
            if not include_non_critical and not check.critical:
                continue

            result = await check.check()
            results[check.name] = result

            if result["status"] == HealthStatus.UNHEALTHY and check.critical:
                overall_status = HealthStatus.UNHEALTHY
            elif result["status"] != HealthStatus.HEALTHY and overall_status == HealthStatus.HEALTHY:
                overall_status = HealthStatus.DEGRADED

        return {
            "status": overall_status.value,
            "checks": results,
            "timestamp": time.time()
        }
