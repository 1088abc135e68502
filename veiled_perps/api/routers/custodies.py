"""Custody record API router exposing asset totals and utilization."""

from __future__ import annotations

from fastapi import APIRouter, status
from fastapi.responses import JSONResponse

from veiled_perps.db import CustodyRecordRow, LedgerRecordRepositoryPort


def api_create_custodies_router(record_repository: LedgerRecordRepositoryPort) -> APIRouter:
    """Create router exposing custody detail reads.

    Args:
        record_repository: DB-layer ledger record repository.

    Returns:
        APIRouter: Router exposing `/custodies/{custody_id}`.

    Raises:
        ValueError: Raised when record_repository is None.
    """

    if record_repository is None:
        raise ValueError("record_repository must not be None")

    router = APIRouter(prefix="/custodies", tags=["custodies"])

    @router.get("/{custody_id}")
    def api_custody_detail(custody_id: str) -> JSONResponse:
        """Return custody asset totals or 404 when absent."""

        custody_row = record_repository.db_custody_get(custody_id)
        if custody_row is None:
            payload = {
                "status": "error",
                "message": "custody not found",
            }
            return JSONResponse(content=payload, status_code=status.HTTP_404_NOT_FOUND)
        return JSONResponse(content=api_serialize_custody_row(custody_row), status_code=status.HTTP_200_OK)

    return router


def api_serialize_custody_row(custody_row: CustodyRecordRow) -> dict[str, object]:
    """Serialize one custody row; token amounts are rendered as decimal text."""

    return {
        "custody_id": custody_row.custody_id,
        "pool_id": custody_row.pool_id,
        "mint": custody_row.mint,
        "token_account": custody_row.token_account,
        "is_stable": custody_row.is_stable,
        "is_active": custody_row.is_active,
        "assets": {
            "collateral": str(custody_row.collateral),
            "protocol_fees": str(custody_row.protocol_fees),
            "owned": str(custody_row.owned),
            "locked": str(custody_row.locked),
        },
        "utilization_bps": custody_row.utilization_bps,
        "max_utilization_bps": custody_row.max_utilization,
        "borrow_rate": {
            "current_rate": str(custody_row.current_rate),
            "cumulative_interest": str(custody_row.cumulative_interest),
        },
        "updated_at_utc": custody_row.updated_at_utc.isoformat() if custody_row.updated_at_utc is not None else None,
    }
