"""Tests for position and custody read endpoints over a mirrored SQLite record store."""

from __future__ import annotations

import asyncio

from conftest import ASSET_PRICE, TRADER, harness_build_ledger, harness_run_with_cluster
from fastapi.testclient import TestClient

from veiled_perps.api.application import create_api_application
from veiled_perps.config import AppSettings
from veiled_perps.db import SQLAlchemyLedgerRecordService, db_create_engine, db_create_schema
from veiled_perps.domain import HealthStatus
from veiled_perps.domain.constants import SIDE_LONG


class _HealthyDatabaseService:
    def db_connection_label(self) -> str:
        return "sqlite://"

    def db_check_health(self) -> HealthStatus:
        return HealthStatus(status="ok", detail="database connectivity verified")


def _api_build_client_with_open_position(api_max_limit: int = 200):
    """Open one position through the ledger and expose its mirrored records over HTTP.

    Args:
        api_max_limit: Maximum list limit configured on the application.

    Returns:
        tuple: Test client, ledger harness and the opened position result.

    Raises:
        AssertionError: Raised when the ledger workflow fails.
    """

    engine = db_create_engine("sqlite://")
    db_create_schema(engine)
    record_service = SQLAlchemyLedgerRecordService(engine)
    harness = harness_build_ledger(record_sink=record_service)
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

    settings = AppSettings(
        environment_name="test",
        database_url="sqlite://",
        api_default_limit=1,
        api_max_limit=api_max_limit,
    )
    application = create_api_application(settings, _HealthyDatabaseService(), record_service)
    return TestClient(application), harness, opened


def test_api_position_list_returns_envelope_with_clamped_limit() -> None:
    """List positions with owner filter and report the applied limit.

    Returns:
        None: Assertions validate envelope fields.

    Raises:
        AssertionError: Raised when envelope values differ.
    """

    client, _, opened = _api_build_client_with_open_position(api_max_limit=2)

    response = client.get("/positions", params={"owner": f" {TRADER} ", "limit": 10})

    assert response.status_code == 200
    body = response.json()
    assert [item["position_id"] for item in body["items"]] == [opened.position_id]
    assert body["page"] == {"limit": 10, "applied_limit": 2, "offset": 0, "returned": 1}
    assert body["filters"] == {"owner": TRADER, "is_active": None}

    inactive = client.get("/positions", params={"is_active": "false"})
    assert inactive.json()["items"] == []


def test_api_position_detail_renders_ciphertexts_and_nonce_as_text() -> None:
    """Detail payload carries hex ciphertexts and a decimal-string nonce.

    Returns:
        None: Assertions validate serialized position fields.

    Raises:
        AssertionError: Raised when serialized values differ from ledger state.
    """

    client, harness, opened = _api_build_client_with_open_position()
    position = harness.program.program_get_position(opened.position_id)

    response = client.get(f"/positions/{opened.position_id}")

    assert response.status_code == 200
    body = response.json()
    assert body["nonce"] == str(position.nonce)
    assert body["is_active"] is True
    assert body["ciphertexts"]["side"] == position.ciphertexts[0].hex()
    assert body["ciphertexts"]["leverage"] == position.ciphertexts[4].hex()
    assert set(body["ciphertexts"]) == {"side", "size_usd", "collateral", "entry_price", "leverage"}


def test_api_position_detail_exposes_only_the_public_layout() -> None:
    """Detail payload carries references, ciphertexts, nonce, flag and timestamps and nothing else.

    Returns:
        None: Assertions validate the payload key set.

    Raises:
        AssertionError: Raised when plaintext custody backing appears in the payload.
    """

    client, harness, opened = _api_build_client_with_open_position()
    backing = harness.program.program_get_position_backing(opened.position_id)

    body = client.get(f"/positions/{opened.position_id}").json()

    assert set(body) == {
        "position_id",
        "owner",
        "pool_id",
        "custody_id",
        "collateral_custody_id",
        "ciphertexts",
        "nonce",
        "is_active",
        "open_time",
        "update_time",
        "updated_at_utc",
    }
    assert backing.locked_amount == 1_000_000_000
    assert backing.deposited_collateral == 100_000_000
    rendered = client.get("/positions", params={"owner": TRADER}).text
    for hidden in (str(backing.locked_amount), str(backing.deposited_collateral)):
        assert hidden not in rendered


def test_api_position_events_list_in_append_order() -> None:
    """Events for a position are listed in the order they were recorded.

    Returns:
        None: Assertions validate event listing.

    Raises:
        AssertionError: Raised when event order differs.
    """

    client, _, opened = _api_build_client_with_open_position()

    response = client.get(f"/positions/{opened.position_id}/events", params={"limit": 10})

    assert response.status_code == 200
    body = response.json()
    assert body["position_id"] == opened.position_id
    assert [item["event_name"] for item in body["items"]] == [
        "OpenPositionEvent",
        "PositionOpenedEvent",
        "ComputationResolvedEvent",
    ]
    assert body["items"][1]["computation_offset"] == str(opened.computation_offset)


def test_api_custody_detail_reports_assets_and_utilization() -> None:
    """Custody payload exposes asset totals as text and utilization in bps.

    Returns:
        None: Assertions validate custody serialization.

    Raises:
        AssertionError: Raised when custody values differ.
    """

    client, harness, _ = _api_build_client_with_open_position()

    response = client.get(f"/custodies/{harness.stable_custody_id}")

    assert response.status_code == 200
    body = response.json()
    assert body["assets"]["locked"] == "1000000000"
    assert body["assets"]["collateral"] == "100000000"
    assert body["utilization_bps"] == 1_000
    assert body["is_stable"] is True


def test_api_unknown_records_return_not_found() -> None:
    """Unknown position, position events and custody ids return 404.

    Returns:
        None: Assertions validate not-found handling.

    Raises:
        AssertionError: Raised when unknown ids do not return 404.
    """

    client, _, _ = _api_build_client_with_open_position()

    assert client.get("/positions/missing").status_code == 404
    assert client.get("/positions/missing/events").status_code == 404
    missing_custody = client.get("/custodies/missing")
    assert missing_custody.status_code == 404
    assert missing_custody.json() == {"status": "error", "message": "custody not found"}
