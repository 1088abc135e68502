"""SQLAlchemy Core table definitions for the public ledger record layout.

Amounts are stored as `NUMERIC(20, 0)` so unsigned 64-bit token values fit
on every backend. Nonces and computation offsets are stored as decimal text.
"""

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Engine,
    Index,
    Integer,
    LargeBinary,
    MetaData,
    Numeric,
    Table,
    Text,
    text,
)

db_record_metadata = MetaData()

AMOUNT_TYPE = Numeric(20, 0)

position_record_table = Table(
    "position_record",
    db_record_metadata,
    Column("position_id", Text(), primary_key=True),
    Column("owner", Text(), nullable=False),
    Column("pool_id", Text(), nullable=False),
    Column("custody_id", Text(), nullable=False),
    Column("collateral_custody_id", Text(), nullable=False),
    Column("side_ciphertext", LargeBinary(), nullable=False),
    Column("size_usd_ciphertext", LargeBinary(), nullable=False),
    Column("collateral_ciphertext", LargeBinary(), nullable=False),
    Column("entry_price_ciphertext", LargeBinary(), nullable=False),
    Column("leverage_ciphertext", LargeBinary(), nullable=False),
    Column("nonce", Text(), nullable=False),
    Column("is_active", Boolean(), nullable=False),
    Column("open_time", AMOUNT_TYPE, nullable=False),
    Column("update_time", AMOUNT_TYPE, nullable=False),
    Column("updated_at_utc", DateTime(timezone=True), nullable=False, server_default=text("CURRENT_TIMESTAMP")),
)
Index("ix_position_record_owner", position_record_table.c.owner)

custody_record_table = Table(
    "custody_record",
    db_record_metadata,
    Column("custody_id", Text(), primary_key=True),
    Column("pool_id", Text(), nullable=False),
    Column("mint", Text(), nullable=False),
    Column("token_account", Text(), nullable=False),
    Column("is_stable", Boolean(), nullable=False),
    Column("is_active", Boolean(), nullable=False),
    Column("collateral", AMOUNT_TYPE, nullable=False),
    Column("protocol_fees", AMOUNT_TYPE, nullable=False),
    Column("owned", AMOUNT_TYPE, nullable=False),
    Column("locked", AMOUNT_TYPE, nullable=False),
    Column("max_utilization", Integer(), nullable=False),
    Column("current_rate", AMOUNT_TYPE, nullable=False),
    Column("cumulative_interest", AMOUNT_TYPE, nullable=False),
    Column("updated_at_utc", DateTime(timezone=True), nullable=False, server_default=text("CURRENT_TIMESTAMP")),
)

ledger_event_table = Table(
    "ledger_event",
    db_record_metadata,
    Column("ledger_event_id", Integer(), primary_key=True, autoincrement=True),
    Column("event_name", Text(), nullable=False),
    Column("computation_offset", Text(), nullable=True),
    Column("position_id", Text(), nullable=True),
    Column("payload", Text(), nullable=False),
    Column("recorded_at_utc", DateTime(timezone=True), nullable=False, server_default=text("CURRENT_TIMESTAMP")),
)
Index("ix_ledger_event_position_id", ledger_event_table.c.position_id)


def db_create_schema(engine: Engine) -> None:
    """Create record tables that do not exist yet.

    Migrations own the schema in deployed databases; this helper serves
    local runs against SQLite.

    Args:
        engine: SQLAlchemy engine.

    Raises:
        ValueError: Raised when engine is None.
    """

    if engine is None:
        raise ValueError("engine must not be None")
    db_record_metadata.create_all(engine)
