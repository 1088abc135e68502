"""FastAPI application factory for the ledger record read surface."""

from fastapi import FastAPI

from veiled_perps.config import AppSettings
from veiled_perps.db import DatabaseHealthPort, LedgerRecordRepositoryPort

from .routers import api_create_custodies_router, api_create_health_router, api_create_positions_router


def create_api_application(
    settings: AppSettings,
    db_health_service: DatabaseHealthPort,
    record_repository: LedgerRecordRepositoryPort,
) -> FastAPI:
    """Create the FastAPI application instance for the service.

    Args:
        settings: Validated application settings used for runtime metadata.
        db_health_service: Database health service used by health endpoints.
        record_repository: Ledger record repository for position and custody reads.

    Returns:
        FastAPI: Framework application instance with foundation metadata.

    Raises:
        ValueError: Raised when a router dependency is missing.
    """
    application = FastAPI(title="Veiled Perps")

    @application.get("/", tags=["foundation"])
    def foundation_index() -> dict[str, str]:
        """Return a minimal foundation response for bootstrap verification.

        Returns:
            dict[str, str]: Minimal response for API framework verification.
        """

        return {
            "service": "veiled-perps",
            "status": "foundation-ready",
            "environment": settings.environment_name,
        }

    application.include_router(api_create_health_router(db_health_service=db_health_service))
    application.include_router(api_create_positions_router(settings=settings, record_repository=record_repository))
    application.include_router(api_create_custodies_router(record_repository=record_repository))

    return application
