"""Health endpoint reporting whether the ledger record store can serve reads."""

from fastapi import APIRouter, status
from fastapi.responses import JSONResponse

from veiled_perps.db import HEALTH_STATUS_OK, DatabaseHealthPort


def api_create_health_router(db_health_service: DatabaseHealthPort) -> APIRouter:
    """Create health-check router over the record store.

    The endpoint answers 200 only when the record tables are reachable and
    present; an unmigrated or unreachable store answers 503.

    Args:
        db_health_service: Record store health service.

    Returns:
        APIRouter: Router exposing `/health` endpoint.

    Raises:
        ValueError: Raised when db_health_service is invalid.
    """

    if db_health_service is None:
        raise ValueError("db_health_service must not be None")

    router = APIRouter(tags=["health"])

    @router.get("/health")
    def api_health_status() -> JSONResponse:
        """Return application and record store health state.

        Returns:
            JSONResponse: Health payload naming the record store state and target.
        """

        target = db_health_service.db_connection_label()
        try:
            record_health = db_health_service.db_check_health()
        except ConnectionError as error:
            payload = {
                "status": "degraded",
                "app": "up",
                "record_store": "down",
                "detail": str(error),
                "target": target,
            }
            return JSONResponse(content=payload, status_code=status.HTTP_503_SERVICE_UNAVAILABLE)

        is_ready = record_health.status == HEALTH_STATUS_OK
        payload = {
            "status": "ok" if is_ready else "degraded",
            "app": "up",
            "record_store": record_health.status,
            "detail": record_health.detail,
            "target": target,
        }
        status_code = status.HTTP_200_OK if is_ready else status.HTTP_503_SERVICE_UNAVAILABLE
        return JSONResponse(content=payload, status_code=status_code)

    return router
