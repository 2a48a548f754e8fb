"""
Health check endpoints for Kubernetes readiness/liveness probes.

Checks:
- Database connectivity
- Gateway configuration (keys present and distinct, endpoints set)
"""
from typing import Any, Dict

import structlog
from sqlalchemy import text

from crowdfund.config import get_settings
from crowdfund.database.connection import get_session_factory

logger = structlog.get_logger(__name__)


class HealthCheckError(Exception):
    """Raised when health check fails."""

    pass


class HealthCheck:
    """Health check service for the donation backend's dependencies."""

    def __init__(self) -> None:
        self.settings = get_settings()

    async def check_database(self) -> Dict[str, Any]:
        """
        Check database connectivity.

        Raises:
            HealthCheckError: If database check fails
        """
        try:
            session_factory = get_session_factory()
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
            raise HealthCheckError(f"Database health check failed: {str(e)}") from e

    async def check_gateways(self) -> Dict[str, Any]:
        """
        Check that gateway configuration is usable.

        No network call is made; a misconfigured key pair or a missing
        endpoint is what keeps callbacks from ever verifying.

        Raises:
            HealthCheckError: If the configuration is invalid
        """
        try:
            gateway = self.settings.zalopay_gateway()
        except ValueError as e:
            logger.error("gateway_health_check_failed", error=str(e))
            raise HealthCheckError(f"Gateway configuration invalid: {str(e)}") from e

        return {
            "status": "healthy",
            "service": "gateways",
            "zalopay_app_id": gateway.app_id,
            "stripe_configured": bool(self.settings.stripe_secret_key),
            "stripe_test_mode": self.settings.is_test_mode,
        }

    async def check_all(self) -> Dict[str, Any]:
        """Run all health checks."""
        checks = {}
        all_healthy = True

        for name, check in (
            ("database", self.check_database),
            ("gateways", self.check_gateways),
        ):
            try:
                checks[name] = await check()
            except HealthCheckError as e:
                checks[name] = {
                    "status": "unhealthy",
                    "service": name,
                    "error": str(e),
                }
                all_healthy = False

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
        """Readiness probe endpoint; verifies all dependencies."""
        return await self.check_all()
