# chatrelay/infra/health_checks_async.py
from __future__ import annotations
import time
from typing import Dict, Any, Optional
from enum import Enum

from chatrelay.infra.db_async import get_pool
from chatrelay.infra.logging_config import get_logger
from chatrelay.infra.schema_validator import get_schema_info

logger = get_logger(__name__)

REQUIRED_TABLES = ("channel_connections", "conversations", "cache_entries")


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
    """Database connectivity and required tables"""

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

            duration = time.time() - start
            if duration > 1.0:
                return {
                    "status": HealthStatus.DEGRADED,
                    "details": f"Slow database response: {duration:.3f}s",
                    "response_time": duration
                }

            return {
                "status": HealthStatus.HEALTHY,
                "details": "Database operational",
                "response_time": duration
            }

        except Exception as exc:
            logger.error("Database health check failed", exc_info=True)
            return {
                "status": HealthStatus.UNHEALTHY,
                "details": "Database connection failed",
                "error": str(exc)[:200]
            }


class AsyncCacheHealthCheck(AsyncHealthCheck):
    """Shared cache round trip. Non-critical: dedup and locks fail open."""

    def __init__(self, cache):
        super().__init__("cache", critical=False)
        self.cache = cache

    async def check(self) -> Dict[str, Any]:
        key = "chatrelay:health:probe"
        try:
            await self.cache.set(key, "1", 30)
            await self.cache.get(key)
            await self.cache.delete(key)
            return {
                "status": HealthStatus.HEALTHY,
                "details": f"Cache operational ({type(self.cache).__name__})",
            }
        except Exception as exc:
            logger.error("Cache health check failed", exc_info=True)
            return {
                "status": HealthStatus.DEGRADED,
                "details": "Cache unavailable, dedup and creation locks degraded",
                "error": str(exc)[:200]
            }


class ConnectorRegistryHealthCheck(AsyncHealthCheck):
    """Live connectors held by this process"""

    def __init__(self, registry):
        super().__init__("connectors", critical=False)
        self.registry = registry

    async def check(self) -> Dict[str, Any]:
        states: dict[str, int] = {}
        for key in self.registry.keys():
            connector = self.registry.get(key)
            if connector is not None:
                states[connector.state.value] = states.get(connector.state.value, 0) + 1
        return {
            "status": HealthStatus.HEALTHY,
            "details": f"{len(self.registry)} live connector(s)",
            "states": states,
        }


class AsyncHealthChecker:
    """Aggregate async health checks"""

    def __init__(self, cache=None, registry=None):
        self.checks: list[AsyncHealthCheck] = [AsyncDatabaseHealthCheck()]
        if cache is not None:
            self.checks.append(AsyncCacheHealthCheck(cache))
        if registry is not None:
            self.checks.append(ConnectorRegistryHealthCheck(registry))

    async def run_checks(self, include_non_critical: bool = True) -> Dict[str, Any]:
        """
        Run all health checks.

        Returns:
            {
                "status": "healthy" | "degraded" | "unhealthy",
                "checks": {...},
                "schema": {...},
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
            elif result["status"] == HealthStatus.DEGRADED and overall_status == HealthStatus.HEALTHY:
                overall_status = HealthStatus.DEGRADED

        schema_info: Optional[dict]
        try:
            schema_info = await get_schema_info()
        except Exception as exc:
            logger.warning(f"Schema info unavailable: {exc}")
            schema_info = None

        return {
            "status": overall_status.value,
            "checks": results,
            "schema": schema_info,
            "timestamp": time.time()
        }
