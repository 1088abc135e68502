"""Tests for the SQLAlchemy ledger record store used as the program record sink."""

from __future__ import annotations

import asyncio

import pytest
from conftest import ASSET_PRICE, ORACLE_AUTHORITY, TRADER, harness_build_ledger, harness_run_with_cluster

from veiled_perps.db import SQLAlchemyLedgerRecordService, db_create_engine, db_create_schema
from veiled_perps.domain.constants import CIPHERTEXT_SIZE, SIDE_LONG, ZERO_CIPHERTEXT
from veiled_perps.domain.models import PositionRecord


def _records_build_service() -> SQLAlchemyLedgerRecordService:
    """Create a record store on a fresh in-memory SQLite database.

    Returns:
        SQLAlchemyLedgerRecordService: Service with created tables.
    """

    engine = db_create_engine("sqlite://")
    db_create_schema(engine)
    return SQLAlchemyLedgerRecordService(engine)


def _records_build_position(position_id: str, owner: str, is_active: bool, nonce: int) -> PositionRecord:
    return PositionRecord(
        position_id=position_id,
        owner=owner,
        pool_id="pool",
        custody_id="asset",
        collateral_custody_id="stable",
        owner_encryption_key=b"\x07" * 32,
        side_ciphertext=b"\x01" * CIPHERTEXT_SIZE,
        nonce=nonce,
        is_active=is_active,
        open_time=1_700_000_000,
        update_time=1_700_000_000,
    )


class _SwitchableRecordSink:
    """Record sink that accepts writes until switched to failing."""

    def __init__(self):
        self.is_failing = False
        self.write_count = 0

    def sink_write_transaction(self, positions, custodies, events) -> None:
        """Count the write or raise a deterministic persistence failure.

        Raises:
            RuntimeError: Raised once the sink is switched to failing.
        """

        if self.is_failing:
            raise RuntimeError("failed to persist ledger transaction records")
        self.write_count += 1


def test_position_upsert_round_trips_full_width_nonce_and_ciphertexts() -> None:
    """A 128-bit nonce and raw ciphertexts survive storage unchanged; upserts replace state.

    Returns:
        None: Assertions validate stored values.

    Raises:
        AssertionError: Raised when stored values differ.
    """

    service = _records_build_service()
    nonce = 2**127 + 12345
    service.db_position_upsert(_records_build_position("p1", TRADER, is_active=True, nonce=nonce))

    stored = service.db_position_get("p1")

    assert stored is not None
    assert stored.nonce == nonce
    assert stored.ciphertexts[0] == b"\x01" * CIPHERTEXT_SIZE
    assert stored.ciphertexts[1] == ZERO_CIPHERTEXT
    assert stored.updated_at_utc is not None

    service.db_position_upsert(_records_build_position("p1", TRADER, is_active=False, nonce=5))
    replaced = service.db_position_get("p1")
    assert replaced.is_active is False
    assert replaced.nonce == 5
    assert service.db_position_get("missing") is None


def test_position_list_filters_and_paginates() -> None:
    """Owner and active filters combine; pages are ordered by position id.

    Returns:
        None: Assertions validate filtering and pagination.

    Raises:
        AssertionError: Raised when listed rows differ.
    """

    service = _records_build_service()
    service.db_position_upsert(_records_build_position("p1", TRADER, is_active=True, nonce=1))
    service.db_position_upsert(_records_build_position("p2", TRADER, is_active=False, nonce=2))
    service.db_position_upsert(_records_build_position("p3", "other", is_active=True, nonce=3))

    assert [row.position_id for row in service.db_position_list(TRADER, None, 10, 0)] == ["p1", "p2"]
    assert [row.position_id for row in service.db_position_list(None, True, 10, 0)] == ["p1", "p3"]
    assert [row.position_id for row in service.db_position_list(None, None, 1, 1)] == ["p2"]
    with pytest.raises(ValueError):
        service.db_position_list(None, None, -1, 0)


def test_program_transactions_are_mirrored_into_the_record_store() -> None:
    """Custodies, positions and events committed by the ledger appear in the store.

    Returns:
        None: Assertions validate mirrored records.

    Raises:
        AssertionError: Raised when persisted records diverge from ledger state.
    """

    service = _records_build_service()
    harness = harness_build_ledger(record_sink=service)
    orchestrator = harness.harness_build_orchestrator()
    client = harness.harness_build_client(TRADER, orchestrator)

    opened = asyncio.run(
        harness_run_with_cluster(
            harness.cluster,
            client.client_open_position(
                harness.pool_id,
                harness.asset_custody_id,
                harness.stable_custody_id,
                harness.accounts[TRADER],
                side=SIDE_LONG,
                size_usd=1_000_000_000,
                collateral=100_000_000,
                entry_price=ASSET_PRICE,
            ),
        )
    )

    position = harness.program.program_get_position(opened.position_id)
    stored_position = service.db_position_get(opened.position_id)
    assert stored_position.is_active is True
    assert stored_position.nonce == position.nonce
    assert stored_position.ciphertexts == position.ciphertexts

    stored_custody = service.db_custody_get(harness.stable_custody_id)
    assert stored_custody.locked == 1_000_000_000
    assert stored_custody.collateral == 100_000_000
    assert stored_custody.utilization_bps == 1_000

    events = service.db_event_list_for_position(opened.position_id, 10, 0)
    assert [event.event_name for event in events] == [
        "OpenPositionEvent",
        "PositionOpenedEvent",
        "ComputationResolvedEvent",
    ]
    assert events[1].computation_offset == opened.computation_offset
    assert events[2].payload["status"] == "finalized"
    assert events[2].payload["result"]["event"] == "PositionOpenedEvent"


def test_record_sink_failure_rolls_back_ledger_transaction() -> None:
    """A failing record write aborts the ledger transaction that produced it.

    Returns:
        None: Assertions validate rollback on persistence failure.

    Raises:
        AssertionError: Raised when ledger state changes despite the failure.
    """

    record_sink = _SwitchableRecordSink()
    harness = harness_build_ledger(record_sink=record_sink)
    write_count = record_sink.write_count
    record_sink.is_failing = True

    with pytest.raises(RuntimeError):
        harness.program.program_set_custom_oracle_price(
            ORACLE_AUTHORITY,
            harness.asset_custody_id,
            110_000_000,
            0,
            harness.clock.now,
        )

    assert harness.program.program_get_custody(harness.asset_custody_id).oracle_price.price == ASSET_PRICE
    assert record_sink.write_count == write_count
