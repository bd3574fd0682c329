"""
Health check endpoints for Kubernetes readiness/liveness probes.

Checks:
- Database connectivity
- Audit retry backlog
"""
from typing import Any, Dict, Optional

import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from upi_orders.database.connection import get_session_factory

logger = structlog.get_logger(__name__)

# Backlog size above which the audit trail is reported as degraded
AUDIT_BACKLOG_WARNING = 100


class HealthCheckError(Exception):
    """Raised when health check fails."""

    pass


class HealthCheck:
    """
    Health check service for monitoring system dependencies.

    The audit backlog never makes the service unhealthy; orders keep
    flowing while audit writes are retried.
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        audit_trail: Any = None,
    ) -> None:
        self.session_factory = session_factory
        self.audit_trail = audit_trail

    async def check_database(self) -> Dict[str, Any]:
        """
        Check database connectivity.

        Raises:
            HealthCheckError: If database check fails
        """
        try:
            session_factory = self.session_factory or get_session_factory()
            async with session_factory() as db:
                result = await db.execute(text("SELECT 1"))
                result.scalar()

                return {
                    "status": "healthy",
                    "service": "database",
                    "message": "Database connection successful",
                }

        except Exception as e:
            logger.error("database_health_check_failed", error=str(e))
            raise HealthCheckError(f"Database health check failed: {str(e)}")

    def check_audit_backlog(self) -> Dict[str, Any]:
        pending = self.audit_trail.pending_count if self.audit_trail is not None else 0
        return {
            "status": "degraded" if pending > AUDIT_BACKLOG_WARNING else "healthy",
            "service": "audit",
            "pending_entries": pending,
        }

    async def check_all(self) -> Dict[str, Any]:
        """
        Run all health checks.

        Returns:
            Dict[str, Any]: Overall health status
        """
        checks = {}
        all_healthy = True

        try:
            checks["database"] = await self.check_database()
        except HealthCheckError as e:
            checks["database"] = {
                "status": "unhealthy",
                "service": "database",
                "error": str(e),
            }
            all_healthy = False

        checks["audit"] = self.check_audit_backlog()

        return {
            "status": "healthy" if all_healthy else "unhealthy",
            "checks": checks,
        }

    async def liveness(self) -> Dict[str, Any]:
        """
        Liveness probe endpoint.

        Does not check external dependencies.
        """
        return {
            "status": "alive",
            "message": "Application is running",
        }

    async def readiness(self) -> Dict[str, Any]:
        """Readiness probe: ready when the database is reachable."""
        return await self.check_all()
