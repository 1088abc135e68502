"""Typed interfaces for ledger-program collaborators."""

from __future__ import annotations

from collections.abc import Callable
from typing import Protocol

from veiled_perps.domain.events import LedgerEvent
from veiled_perps.domain.models import CustodyRecord, PositionRecord

LedgerEventListener = Callable[[LedgerEvent], None]


class LedgerRecordSinkPort(Protocol):
    """Port receiving the public records touched by one committed transaction."""

    def sink_write_transaction(
        self,
        positions: list[PositionRecord],
        custodies: list[CustodyRecord],
        events: list[LedgerEvent],
    ) -> None:
        """Persist records and events of one transaction atomically.

        Args:
            positions: Position records touched by the transaction.
            custodies: Custody records touched by the transaction.
            events: Events emitted by the transaction, in order.

        Raises:
            RuntimeError: Raised when persistence fails; the ledger transaction is rolled back.
        """
