"""Typed interfaces for database-layer services.

All SQL and ORM access must remain in the db package and its submodules.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol

from veiled_perps.domain import CustodyRecord, HealthStatus, LedgerEvent, PositionRecord


class DatabaseHealthPort(Protocol):
    """Port definition for database connectivity verification."""

    def db_connection_label(self) -> str:
        """Return a stable label for the active database connection target.

        Returns:
            str: Database target label for diagnostics.

        Raises:
            RuntimeError: Raised when connection metadata is unavailable.
        """

    def db_check_health(self) -> HealthStatus:
        """Check the record store and report whether it can serve ledger reads.

        Returns:
            HealthStatus: `ok` when the record tables are present, otherwise a status naming the gap.

        Raises:
            ConnectionError: Raised when database cannot be reached.
        """


@dataclass(frozen=True)
class PositionRecordRow:
    """Persisted public layout of one position.

    Attributes:
        position_id: Position identifier.
        owner: Owner identity.
        pool_id: Pool reference.
        custody_id: Traded asset custody reference.
        collateral_custody_id: Collateral custody reference.
        ciphertexts: Side, size, collateral, entry price and leverage ciphertexts.
        nonce: Nonce of the stored ciphertexts.
        is_active: Active flag.
        open_time: Open submission timestamp.
        update_time: Last transition timestamp.
        updated_at_utc: Last write timestamp.
    """

    position_id: str
    owner: str
    pool_id: str
    custody_id: str
    collateral_custody_id: str
    ciphertexts: tuple[bytes, ...]
    nonce: int
    is_active: bool
    open_time: int
    update_time: int
    updated_at_utc: datetime | None


@dataclass(frozen=True)
class CustodyRecordRow:
    """Persisted asset totals of one custody.

    Attributes:
        custody_id: Custody identifier.
        pool_id: Owning pool.
        mint: Backing token mint.
        token_account: Custody token account.
        is_stable: Stablecoin flag.
        is_active: Activation flag.
        collateral: Trader collateral total.
        protocol_fees: Retained protocol fees.
        owned: Pool-owned liquidity.
        locked: Reserved liquidity.
        max_utilization: Utilization cap in basis points.
        current_rate: Current borrow rate.
        cumulative_interest: Accumulated borrow interest.
        updated_at_utc: Last write timestamp.
    """

    custody_id: str
    pool_id: str
    mint: str
    token_account: str
    is_stable: bool
    is_active: bool
    collateral: int
    protocol_fees: int
    owned: int
    locked: int
    max_utilization: int
    current_rate: int
    cumulative_interest: int
    updated_at_utc: datetime | None

    @property
    def utilization_bps(self) -> int:
        """Return locked over owned liquidity in basis points, 0 when nothing is owned."""

        if self.owned <= 0:
            return 0
        return self.locked * 10_000 // self.owned


@dataclass(frozen=True)
class LedgerEventRow:
    """Persisted ledger event.

    Attributes:
        ledger_event_id: Monotonic row identifier.
        event_name: Event type name.
        computation_offset: Related computation offset when present.
        position_id: Related position when present.
        payload: Event field values.
        recorded_at_utc: Write timestamp.
    """

    ledger_event_id: int
    event_name: str
    computation_offset: int | None
    position_id: str | None
    payload: dict[str, Any]
    recorded_at_utc: datetime | None


class LedgerRecordRepositoryPort(Protocol):
    """Port for persisting and reading the public ledger record layout."""

    def sink_write_transaction(
        self,
        positions: list[PositionRecord],
        custodies: list[CustodyRecord],
        events: list[LedgerEvent],
    ) -> None:
        """Persist the records touched by one committed ledger transaction atomically.

        Raises:
            RuntimeError: Raised when persistence fails.
        """

    def db_position_upsert(self, position: PositionRecord) -> None:
        """Insert or replace one position row."""

    def db_position_get(self, position_id: str) -> PositionRecordRow | None:
        """Fetch one position row by id."""

    def db_position_list(
        self,
        owner: str | None,
        is_active: bool | None,
        limit: int,
        offset: int,
    ) -> list[PositionRecordRow]:
        """List position rows ordered by id."""

    def db_custody_upsert(self, custody: CustodyRecord) -> None:
        """Insert or replace one custody row."""

    def db_custody_get(self, custody_id: str) -> CustodyRecordRow | None:
        """Fetch one custody row by id."""

    def db_event_append(self, events: list[LedgerEvent]) -> None:
        """Append ledger events in order."""

    def db_event_list_for_position(self, position_id: str, limit: int, offset: int) -> list[LedgerEventRow]:
        """List events for one position in append order."""
