"""Database service persisting the public ledger record layout.

Position ciphertexts are stored verbatim; nothing in this layer can read
the encrypted trading fields.
"""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any

from sqlalchemy import Connection, Engine, text
from sqlalchemy.exc import SQLAlchemyError

from veiled_perps.domain import CustodyRecord, LedgerEvent, PositionRecord, domain_event_name, domain_event_payload

from .interfaces import CustodyRecordRow, LedgerEventRow, LedgerRecordRepositoryPort, PositionRecordRow

_POSITION_COLUMNS = (
    "position_id, owner, pool_id, custody_id, collateral_custody_id, "
    "side_ciphertext, size_usd_ciphertext, collateral_ciphertext, entry_price_ciphertext, leverage_ciphertext, "
    "nonce, is_active, open_time, update_time, updated_at_utc"
)

_CUSTODY_COLUMNS = (
    "custody_id, pool_id, mint, token_account, is_stable, is_active, collateral, protocol_fees, owned, locked, "
    "max_utilization, current_rate, cumulative_interest, updated_at_utc"
)


class SQLAlchemyLedgerRecordService(LedgerRecordRepositoryPort):
    """SQLAlchemy-backed ledger record store.

    Serves as the ledger program's record sink and as the read repository
    behind the API.
    """

    def __init__(self, engine: Engine):
        """Initialize ledger record service.

        Args:
            engine: SQLAlchemy engine used for all persistence operations.

        Raises:
            ValueError: Raised when engine is None.
        """

        if engine is None:
            raise ValueError("engine must not be None")
        self._engine = engine

    def sink_write_transaction(
        self,
        positions: list[PositionRecord],
        custodies: list[CustodyRecord],
        events: list[LedgerEvent],
    ) -> None:
        """Persist the records of one committed ledger transaction in one database transaction.

        Args:
            positions: Touched position records.
            custodies: Touched custody records.
            events: Emitted events in order.

        Raises:
            RuntimeError: Raised when persistence fails.
        """

        try:
            with self._engine.begin() as connection:
                for position in positions:
                    self._db_position_upsert(connection, position)
                for custody in custodies:
                    self._db_custody_upsert(connection, custody)
                self._db_event_append(connection, events)
        except SQLAlchemyError as error:
            raise RuntimeError("failed to persist ledger transaction records") from error

    def db_position_upsert(self, position: PositionRecord) -> None:
        """Insert or replace one position row.

        Raises:
            RuntimeError: Raised when persistence fails.
        """

        try:
            with self._engine.begin() as connection:
                self._db_position_upsert(connection, position)
        except SQLAlchemyError as error:
            raise RuntimeError("failed to upsert position record") from error

    def db_position_get(self, position_id: str) -> PositionRecordRow | None:
        """Fetch one position row.

        Args:
            position_id: Position identifier.

        Returns:
            PositionRecordRow | None: Matching row or None.

        Raises:
            RuntimeError: Raised when database read fails.
        """

        try:
            with self._engine.connect() as connection:
                row = connection.execute(
                    text(f"SELECT {_POSITION_COLUMNS} FROM position_record WHERE position_id = :position_id"),
                    {"position_id": position_id},
                ).mappings().first()
        except SQLAlchemyError as error:
            raise RuntimeError("failed to read position record") from error
        return None if row is None else self._db_map_position_row(row)

    def db_position_list(
        self,
        owner: str | None,
        is_active: bool | None,
        limit: int,
        offset: int,
    ) -> list[PositionRecordRow]:
        """List position rows ordered by id.

        Args:
            owner: Optional owner filter.
            is_active: Optional active-flag filter.
            limit: Maximum rows to return.
            offset: Rows to skip.

        Returns:
            list[PositionRecordRow]: Matching rows.

        Raises:
            ValueError: Raised when pagination values are negative.
            RuntimeError: Raised when database read fails.
        """

        self._db_validate_page(limit, offset)
        filters: list[str] = []
        params: dict[str, Any] = {"limit": limit, "offset": offset}
        if owner is not None:
            filters.append("owner = :owner")
            params["owner"] = owner
        if is_active is not None:
            filters.append("is_active = :is_active")
            params["is_active"] = is_active
        where_clause = f"WHERE {' AND '.join(filters)} " if filters else ""

        try:
            with self._engine.connect() as connection:
                rows = connection.execute(
                    text(
                        f"SELECT {_POSITION_COLUMNS} FROM position_record "
                        f"{where_clause}"
                        "ORDER BY position_id "
                        "LIMIT :limit OFFSET :offset"
                    ),
                    params,
                ).mappings().all()
        except SQLAlchemyError as error:
            raise RuntimeError("failed to list position records") from error
        return [self._db_map_position_row(row) for row in rows]

    def db_custody_upsert(self, custody: CustodyRecord) -> None:
        """Insert or replace one custody row.

        Raises:
            RuntimeError: Raised when persistence fails.
        """

        try:
            with self._engine.begin() as connection:
                self._db_custody_upsert(connection, custody)
        except SQLAlchemyError as error:
            raise RuntimeError("failed to upsert custody record") from error

    def db_custody_get(self, custody_id: str) -> CustodyRecordRow | None:
        """Fetch one custody row.

        Raises:
            RuntimeError: Raised when database read fails.
        """

        try:
            with self._engine.connect() as connection:
                row = connection.execute(
                    text(f"SELECT {_CUSTODY_COLUMNS} FROM custody_record WHERE custody_id = :custody_id"),
                    {"custody_id": custody_id},
                ).mappings().first()
        except SQLAlchemyError as error:
            raise RuntimeError("failed to read custody record") from error
        if row is None:
            return None
        return CustodyRecordRow(
            custody_id=row["custody_id"],
            pool_id=row["pool_id"],
            mint=row["mint"],
            token_account=row["token_account"],
            is_stable=bool(row["is_stable"]),
            is_active=bool(row["is_active"]),
            collateral=int(row["collateral"]),
            protocol_fees=int(row["protocol_fees"]),
            owned=int(row["owned"]),
            locked=int(row["locked"]),
            max_utilization=int(row["max_utilization"]),
            current_rate=int(row["current_rate"]),
            cumulative_interest=int(row["cumulative_interest"]),
            updated_at_utc=_db_parse_timestamp(row["updated_at_utc"]),
        )

    def db_event_append(self, events: list[LedgerEvent]) -> None:
        """Append ledger events in order.

        Raises:
            RuntimeError: Raised when persistence fails.
        """

        try:
            with self._engine.begin() as connection:
                self._db_event_append(connection, events)
        except SQLAlchemyError as error:
            raise RuntimeError("failed to append ledger events") from error

    def db_event_list_for_position(self, position_id: str, limit: int, offset: int) -> list[LedgerEventRow]:
        """List events for one position in append order.

        Args:
            position_id: Position identifier.
            limit: Maximum rows to return.
            offset: Rows to skip.

        Returns:
            list[LedgerEventRow]: Matching events.

        Raises:
            ValueError: Raised when pagination values are negative.
            RuntimeError: Raised when database read fails.
        """

        self._db_validate_page(limit, offset)
        try:
            with self._engine.connect() as connection:
                rows = connection.execute(
                    text(
                        "SELECT ledger_event_id, event_name, computation_offset, position_id, payload, recorded_at_utc "
                        "FROM ledger_event "
                        "WHERE position_id = :position_id "
                        "ORDER BY ledger_event_id "
                        "LIMIT :limit OFFSET :offset"
                    ),
                    {"position_id": position_id, "limit": limit, "offset": offset},
                ).mappings().all()
        except SQLAlchemyError as error:
            raise RuntimeError("failed to list ledger events") from error

        return [
            LedgerEventRow(
                ledger_event_id=int(row["ledger_event_id"]),
                event_name=row["event_name"],
                computation_offset=None if row["computation_offset"] is None else int(row["computation_offset"]),
                position_id=row["position_id"],
                payload=json.loads(row["payload"]),
                recorded_at_utc=_db_parse_timestamp(row["recorded_at_utc"]),
            )
            for row in rows
        ]

    def _db_position_upsert(self, connection: Connection, position: PositionRecord) -> None:
        connection.execute(
            text(
                "INSERT INTO position_record ("
                "position_id, owner, pool_id, custody_id, collateral_custody_id, "
                "side_ciphertext, size_usd_ciphertext, collateral_ciphertext, entry_price_ciphertext, leverage_ciphertext, "
                "nonce, is_active, open_time, update_time, updated_at_utc"
                ") VALUES ("
                ":position_id, :owner, :pool_id, :custody_id, :collateral_custody_id, "
                ":side_ciphertext, :size_usd_ciphertext, :collateral_ciphertext, :entry_price_ciphertext, :leverage_ciphertext, "
                ":nonce, :is_active, :open_time, :update_time, CURRENT_TIMESTAMP"
                ") "
                "ON CONFLICT (position_id) DO UPDATE SET "
                "side_ciphertext = EXCLUDED.side_ciphertext, "
                "size_usd_ciphertext = EXCLUDED.size_usd_ciphertext, "
                "collateral_ciphertext = EXCLUDED.collateral_ciphertext, "
                "entry_price_ciphertext = EXCLUDED.entry_price_ciphertext, "
                "leverage_ciphertext = EXCLUDED.leverage_ciphertext, "
                "nonce = EXCLUDED.nonce, "
                "is_active = EXCLUDED.is_active, "
                "update_time = EXCLUDED.update_time, "
                "updated_at_utc = CURRENT_TIMESTAMP"
            ),
            {
                "position_id": position.position_id,
                "owner": position.owner,
                "pool_id": position.pool_id,
                "custody_id": position.custody_id,
                "collateral_custody_id": position.collateral_custody_id,
                "side_ciphertext": position.side_ciphertext,
                "size_usd_ciphertext": position.size_usd_ciphertext,
                "collateral_ciphertext": position.collateral_ciphertext,
                "entry_price_ciphertext": position.entry_price_ciphertext,
                "leverage_ciphertext": position.leverage_ciphertext,
                "nonce": str(position.nonce),
                "is_active": position.is_active,
                "open_time": position.open_time,
                "update_time": position.update_time,
            },
        )

    def _db_custody_upsert(self, connection: Connection, custody: CustodyRecord) -> None:
        connection.execute(
            text(
                "INSERT INTO custody_record ("
                "custody_id, pool_id, mint, token_account, is_stable, is_active, collateral, protocol_fees, "
                "owned, locked, max_utilization, current_rate, cumulative_interest, updated_at_utc"
                ") VALUES ("
                ":custody_id, :pool_id, :mint, :token_account, :is_stable, :is_active, :collateral, :protocol_fees, "
                ":owned, :locked, :max_utilization, :current_rate, :cumulative_interest, CURRENT_TIMESTAMP"
                ") "
                "ON CONFLICT (custody_id) DO UPDATE SET "
                "is_active = EXCLUDED.is_active, "
                "collateral = EXCLUDED.collateral, "
                "protocol_fees = EXCLUDED.protocol_fees, "
                "owned = EXCLUDED.owned, "
                "locked = EXCLUDED.locked, "
                "max_utilization = EXCLUDED.max_utilization, "
                "current_rate = EXCLUDED.current_rate, "
                "cumulative_interest = EXCLUDED.cumulative_interest, "
                "updated_at_utc = CURRENT_TIMESTAMP"
            ),
            {
                "custody_id": custody.custody_id,
                "pool_id": custody.pool_id,
                "mint": custody.mint,
                "token_account": custody.token_account,
                "is_stable": custody.is_stable,
                "is_active": custody.is_active,
                "collateral": custody.assets.collateral,
                "protocol_fees": custody.assets.protocol_fees,
                "owned": custody.assets.owned,
                "locked": custody.assets.locked,
                "max_utilization": custody.pricing.max_utilization,
                "current_rate": custody.borrow_rate_state.current_rate,
                "cumulative_interest": custody.borrow_rate_state.cumulative_interest,
            },
        )

    def _db_event_append(self, connection: Connection, events: list[LedgerEvent]) -> None:
        for event in events:
            computation_offset = getattr(event, "computation_offset", None)
            connection.execute(
                text(
                    "INSERT INTO ledger_event (event_name, computation_offset, position_id, payload, recorded_at_utc) "
                    "VALUES (:event_name, :computation_offset, :position_id, :payload, CURRENT_TIMESTAMP)"
                ),
                {
                    "event_name": domain_event_name(event),
                    "computation_offset": None if computation_offset is None else str(computation_offset),
                    "position_id": getattr(event, "position_id", None),
                    "payload": json.dumps(domain_event_payload(event), default=_db_json_default),
                },
            )

    def _db_map_position_row(self, row: Any) -> PositionRecordRow:
        return PositionRecordRow(
            position_id=row["position_id"],
            owner=row["owner"],
            pool_id=row["pool_id"],
            custody_id=row["custody_id"],
            collateral_custody_id=row["collateral_custody_id"],
            ciphertexts=(
                bytes(row["side_ciphertext"]),
                bytes(row["size_usd_ciphertext"]),
                bytes(row["collateral_ciphertext"]),
                bytes(row["entry_price_ciphertext"]),
                bytes(row["leverage_ciphertext"]),
            ),
            nonce=int(row["nonce"]),
            is_active=bool(row["is_active"]),
            open_time=int(row["open_time"]),
            update_time=int(row["update_time"]),
            updated_at_utc=_db_parse_timestamp(row["updated_at_utc"]),
        )

    def _db_validate_page(self, limit: int, offset: int) -> None:
        if limit < 0:
            raise ValueError("limit must be >= 0")
        if offset < 0:
            raise ValueError("offset must be >= 0")


def _db_parse_timestamp(value: Any) -> datetime | None:
    """Normalize driver timestamp values; SQLite returns text for raw queries."""

    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def _db_json_default(value: Any) -> Any:
    if isinstance(value, bytes):
        return value.hex()
    if hasattr(value, "value"):
        return value.value
    raise TypeError(f"unsupported payload value type: {type(value).__name__}")
