"""Ledger record schema baseline

Revision ID: 20261019_01
Revises: None
Create Date: 2026-10-19
"""
# pylint: disable=no-member,invalid-name,wrong-import-order

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261019_01"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""

    op.create_table(
        "position_record",
        sa.Column("position_id", sa.Text(), primary_key=True),
        sa.Column("owner", sa.Text(), nullable=False),
        sa.Column("pool_id", sa.Text(), nullable=False),
        sa.Column("custody_id", sa.Text(), nullable=False),
        sa.Column("collateral_custody_id", sa.Text(), nullable=False),
        sa.Column("side_ciphertext", sa.LargeBinary(), nullable=False),
        sa.Column("size_usd_ciphertext", sa.LargeBinary(), nullable=False),
        sa.Column("collateral_ciphertext", sa.LargeBinary(), nullable=False),
        sa.Column("entry_price_ciphertext", sa.LargeBinary(), nullable=False),
        sa.Column("leverage_ciphertext", sa.LargeBinary(), nullable=False),
        sa.Column("nonce", sa.Text(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("open_time", sa.Numeric(20, 0), nullable=False),
        sa.Column("update_time", sa.Numeric(20, 0), nullable=False),
        sa.Column("updated_at_utc", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
    )
    op.create_index("ix_position_record_owner", "position_record", ["owner"])

    op.create_table(
        "custody_record",
        sa.Column("custody_id", sa.Text(), primary_key=True),
        sa.Column("pool_id", sa.Text(), nullable=False),
        sa.Column("mint", sa.Text(), nullable=False),
        sa.Column("token_account", sa.Text(), nullable=False),
        sa.Column("is_stable", sa.Boolean(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("collateral", sa.Numeric(20, 0), nullable=False),
        sa.Column("protocol_fees", sa.Numeric(20, 0), nullable=False),
        sa.Column("owned", sa.Numeric(20, 0), nullable=False),
        sa.Column("locked", sa.Numeric(20, 0), nullable=False),
        sa.Column("max_utilization", sa.Integer(), nullable=False),
        sa.Column("current_rate", sa.Numeric(20, 0), nullable=False),
        sa.Column("cumulative_interest", sa.Numeric(20, 0), nullable=False),
        sa.Column("updated_at_utc", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
    )

    op.create_table(
        "ledger_event",
        sa.Column("ledger_event_id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("event_name", sa.Text(), nullable=False),
        sa.Column("computation_offset", sa.Text(), nullable=True),
        sa.Column("position_id", sa.Text(), nullable=True),
        sa.Column("payload", sa.Text(), nullable=False),
        sa.Column("recorded_at_utc", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
    )
    op.create_index("ix_ledger_event_position_id", "ledger_event", ["position_id"])


def downgrade() -> None:
    """Downgrade schema."""

    op.drop_index("ix_ledger_event_position_id", table_name="ledger_event")
    op.drop_table("ledger_event")
    op.drop_table("custody_record")
    op.drop_index("ix_position_record_owner", table_name="position_record")
    op.drop_table("position_record")
