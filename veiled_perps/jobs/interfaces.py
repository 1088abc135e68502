"""Typed interfaces for job-layer orchestration responsibilities."""

from __future__ import annotations

from collections.abc import Callable
from typing import Protocol

from veiled_perps.domain.events import LedgerEvent
from veiled_perps.domain.models import (
    ComputationDefinitionRecord,
    ComputationRecord,
    OpenPositionRequest,
    PositionRecord,
    UpdatePositionRequest,
)


class LedgerProgramPort(Protocol):
    """Ledger program surface used by client-side workflows."""

    def program_subscribe(self, listener: Callable[[LedgerEvent], None]) -> Callable[[], None]:
        """Register an event listener and return its unsubscribe function.

        Args:
            listener: Callable invoked with each committed event, possibly from another thread.

        Returns:
            Callable[[], None]: Unsubscribe function.
        """

    def program_get_computation(self, computation_offset: int) -> ComputationRecord | None:
        """Return the ledger record of one queued computation, or None when unknown."""

    def program_get_position(self, position_id: str) -> PositionRecord:
        """Return one position record.

        Raises:
            PositionNotFoundError: Raised when no such position exists.
        """

    def program_open_position(self, request: OpenPositionRequest) -> str:
        """Submit an open; see `LedgerProgram.program_open_position`."""

    def program_update_position(self, request: UpdatePositionRequest) -> None:
        """Submit a collateral update."""

    def program_calculate_pnl(self, owner: str, position_id: str, computation_offset: int, current_price: int) -> None:
        """Submit a read-only PnL computation."""

    def program_close_position(self, owner: str, position_id: str, computation_offset: int, receiving_account: str) -> None:
        """Submit a close."""

    def program_liquidate(self, liquidator: str, position_id: str, computation_offset: int, receiving_account: str) -> None:
        """Submit a liquidation check."""

    def program_init_computation_definition(self, admin: str, name: str) -> ComputationDefinitionRecord:
        """Register one computation definition; re-registration is a no-op."""

    def program_finalize_computation_definition(self, admin: str, name: str) -> ComputationDefinitionRecord:
        """Finalize one computation definition.

        Raises:
            KeyUnavailableError: Raised when the cluster key is not published yet.
        """
