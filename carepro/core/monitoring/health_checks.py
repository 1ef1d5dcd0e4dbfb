"""
Health check system with timings and dependency monitoring.
"""

import asyncio
import time
from typing import Dict, Any, Optional
import structlog
from sqlalchemy import text
from sqlmodel import Session
from redis import Redis
from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError

from carepro.core.settings import settings
from .prometheus_metrics import observe_health_check_duration, set_health_check_status

logger = structlog.get_logger(__name__)


class HealthCheckResult:
    """Result of a health check with timing and status information."""

    def __init__(self, service: str, healthy: bool, duration_ms: float,
                 details: Optional[Dict[str, Any]] = None, error: Optional[str] = None):
        self.service = service
        self.healthy = healthy
        self.duration_ms = duration_ms
        self.details = details or {}
        self.error = error

    def to_dict(self) -> Dict[str, Any]:
        return {
            "service": self.service,
            "healthy": self.healthy,
            "duration_ms": round(self.duration_ms, 2),
            "details": self.details,
            "error": self.error,
        }


class HealthChecker:
    """Dependency checks with latency thresholds."""

    def __init__(self, engine=None, redis_url: Optional[str] = None):
        self.engine = engine
        self.redis_url = redis_url or settings.redis_url

        # Health check thresholds (in milliseconds)
        self.thresholds = {
            "database": 1000,
            "redis": 500,
        }

    def _record(self, service: str, start_time: float, healthy: bool,
                details: Optional[Dict[str, Any]] = None, error: Optional[str] = None) -> HealthCheckResult:
        duration_ms = (time.time() - start_time) * 1000
        if healthy and duration_ms >= self.thresholds[service]:
            healthy = False
            error = f"response slower than {self.thresholds[service]}ms"

        observe_health_check_duration("readiness", service, duration_ms / 1000)
        set_health_check_status(service, healthy)

        return HealthCheckResult(
            service=service,
            healthy=healthy,
            duration_ms=duration_ms,
            details=details,
            error=error
        )

    async def check_database(self) -> HealthCheckResult:
        """Check database connectivity and response time."""
        start_time = time.time()

        if self.engine is None:
            from carepro.db.session import engine
            self.engine = engine

        try:
            with Session(self.engine) as session:
                row = session.execute(text("SELECT 1")).fetchone()
            healthy = bool(row and row[0] == 1)
            return self._record("database", start_time, healthy, details={"query_test": "passed" if healthy else "failed"})
        except SQLAlchemyError as e:
            logger.warning("Database health check failed", error=str(e))
            return self._record("database", start_time, False, error=str(e))

    async def check_redis(self) -> HealthCheckResult:
        """Check Redis (Celery broker) connectivity and response time."""
        start_time = time.time()
        redis_client = Redis.from_url(self.redis_url, socket_timeout=1)

        try:
            healthy = bool(redis_client.ping())
            return self._record("redis", start_time, healthy, details={"ping_test": "passed" if healthy else "failed"})
        except RedisError as e:
            logger.warning("Redis health check failed", error=str(e))
            return self._record("redis", start_time, False, error=str(e))
        finally:
            redis_client.close()

    async def check_all(self) -> Dict[str, Any]:
        """Run all health checks and return combined status."""
        start_time = time.time()

        checks = await asyncio.gather(
            self.check_database(),
            self.check_redis(),
        )

        results = {check.service: check.to_dict() for check in checks}

        return {
            "healthy": all(check.healthy for check in checks),
            "timestamp": time.time(),
            "total_duration_ms": round((time.time() - start_time) * 1000, 2),
            "services": results,
            "gateway_provider": settings.gateway_provider,
        }


# Global health checker instance
health_checker = HealthChecker()


async def basic_health_check() -> Dict[str, Any]:
    """Basic health check for /healthz endpoint."""
    return {
        "status": "healthy",
        "timestamp": time.time(),
        "service": "carepro-billing",
        "version": settings.app_version,
    }


async def readiness_check() -> Dict[str, Any]:
    """Readiness check for /readyz endpoint."""
    return await health_checker.check_all()
