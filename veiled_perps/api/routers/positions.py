"""Position record API router over the persisted public layout."""
# pylint: disable=duplicate-code

from __future__ import annotations

from fastapi import APIRouter, Query, status
from fastapi.responses import JSONResponse

from veiled_perps.config import AppSettings
from veiled_perps.db import LedgerEventRow, LedgerRecordRepositoryPort, PositionRecordRow


def api_create_positions_router(
    settings: AppSettings,
    record_repository: LedgerRecordRepositoryPort,
) -> APIRouter:
    """Create router exposing position list, detail and event endpoints.

    Args:
        settings: Runtime settings used for pagination defaults.
        record_repository: DB-layer ledger record repository.

    Returns:
        APIRouter: Router exposing `/positions` endpoints.

    Raises:
        ValueError: Raised when dependencies are invalid.
    """

    if settings is None:
        raise ValueError("settings must not be None")
    if record_repository is None:
        raise ValueError("record_repository must not be None")

    router = APIRouter(prefix="/positions", tags=["positions"])

    @router.get("")
    def api_position_list(
        owner: str | None = Query(default=None),
        is_active: bool | None = Query(default=None),
        limit: int = Query(default=settings.api_default_limit, ge=1),
        offset: int = Query(default=0, ge=0),
    ) -> JSONResponse:
        """List persisted positions.

        Args:
            owner: Optional owner filter.
            is_active: Optional active-flag filter.
            limit: Max rows to return.
            offset: Rows to skip.

        Returns:
            JSONResponse: Position list envelope payload.

        Raises:
            RuntimeError: Raised when repository read fails.
        """

        normalized_owner = owner.strip() if owner is not None else None
        applied_limit = min(limit, settings.api_max_limit)
        position_rows = record_repository.db_position_list(
            owner=normalized_owner or None,
            is_active=is_active,
            limit=applied_limit,
            offset=offset,
        )

        payload = {
            "items": [api_serialize_position_row(position_row) for position_row in position_rows],
            "page": {
                "limit": limit,
                "applied_limit": applied_limit,
                "offset": offset,
                "returned": len(position_rows),
            },
            "filters": {
                "owner": normalized_owner or None,
                "is_active": is_active,
            },
        }
        return JSONResponse(content=payload, status_code=status.HTTP_200_OK)

    @router.get("/{position_id}")
    def api_position_detail(position_id: str) -> JSONResponse:
        """Return one position with ciphertexts in hex and the nonce as decimal text.

        Returns:
            JSONResponse: Position payload or 404 when absent.
        """

        position_row = record_repository.db_position_get(position_id)
        if position_row is None:
            payload = {
                "status": "error",
                "message": "position not found",
            }
            return JSONResponse(content=payload, status_code=status.HTTP_404_NOT_FOUND)

        return JSONResponse(content=api_serialize_position_row(position_row), status_code=status.HTTP_200_OK)

    @router.get("/{position_id}/events")
    def api_position_events(
        position_id: str,
        limit: int = Query(default=settings.api_default_limit, ge=1),
        offset: int = Query(default=0, ge=0),
    ) -> JSONResponse:
        """List ledger events recorded for one position in append order.

        Returns:
            JSONResponse: Event list envelope payload or 404 when the position is unknown.

        Raises:
            RuntimeError: Raised when repository read fails.
        """

        if record_repository.db_position_get(position_id) is None:
            payload = {
                "status": "error",
                "message": "position not found",
            }
            return JSONResponse(content=payload, status_code=status.HTTP_404_NOT_FOUND)

        applied_limit = min(limit, settings.api_max_limit)
        event_rows = record_repository.db_event_list_for_position(position_id, limit=applied_limit, offset=offset)
        payload = {
            "position_id": position_id,
            "items": [api_serialize_event_row(event_row) for event_row in event_rows],
            "page": {
                "limit": limit,
                "applied_limit": applied_limit,
                "offset": offset,
                "returned": len(event_rows),
            },
        }
        return JSONResponse(content=payload, status_code=status.HTTP_200_OK)

    return router


def api_serialize_position_row(position_row: PositionRecordRow) -> dict[str, object]:
    """Serialize one position row to a JSON payload.

    Nonces exceed JSON-safe integer precision, so they are rendered as decimal text.

    Args:
        position_row: Typed position row.

    Returns:
        dict[str, object]: JSON-serializable position payload.
    """

    side, size_usd, collateral, entry_price, leverage = position_row.ciphertexts
    return {
        "position_id": position_row.position_id,
        "owner": position_row.owner,
        "pool_id": position_row.pool_id,
        "custody_id": position_row.custody_id,
        "collateral_custody_id": position_row.collateral_custody_id,
        "ciphertexts": {
            "side": side.hex(),
            "size_usd": size_usd.hex(),
            "collateral": collateral.hex(),
            "entry_price": entry_price.hex(),
            "leverage": leverage.hex(),
        },
        "nonce": str(position_row.nonce),
        "is_active": position_row.is_active,
        "open_time": position_row.open_time,
        "update_time": position_row.update_time,
        "updated_at_utc": position_row.updated_at_utc.isoformat() if position_row.updated_at_utc is not None else None,
    }


def api_serialize_event_row(event_row: LedgerEventRow) -> dict[str, object]:
    """Serialize one ledger event row; the offset is rendered as decimal text."""

    return {
        "ledger_event_id": event_row.ledger_event_id,
        "event_name": event_row.event_name,
        "computation_offset": str(event_row.computation_offset) if event_row.computation_offset is not None else None,
        "position_id": event_row.position_id,
        "payload": event_row.payload,
        "recorded_at_utc": event_row.recorded_at_utc.isoformat() if event_row.recorded_at_utc is not None else None,
    }
