"""Tests for ledger program instructions, callbacks and custody accounting."""

from __future__ import annotations

import asyncio
import dataclasses

import pytest
from conftest import (
    ADMIN,
    ASSET_PRICE,
    LIQUIDATOR,
    LIQUIDITY_PROVIDER,
    ORACLE_AUTHORITY,
    POOL_LIQUIDITY,
    TRADER,
    TRADER_BALANCE,
    LedgerHarness,
    harness_build_ledger,
    harness_run_with_cluster,
)

from veiled_perps.crypto import ClusterKeyCache, EncryptionSession
from veiled_perps.domain import Fees, Permissions
from veiled_perps.domain.constants import SIDE_LONG, SIDE_SHORT, ZERO_CIPHERTEXT
from veiled_perps.domain.errors import (
    ComputationFailedError,
    CustodyInactiveError,
    InvalidConfigError,
    LeverageOutOfRangeError,
    OraclePriceError,
    PermissionDeniedError,
    PoolInactiveError,
    PositionInactiveError,
    PositionNotFoundError,
    StaleOracleError,
    UtilizationExceededError,
    ZeroCiphertextError,
)
from veiled_perps.domain.models import ComputationStatus, OpenPositionRequest
from veiled_perps.jobs.position_client import client_generate_output_nonce

SIZE_USD = 1_000_000_000
COLLATERAL = 100_000_000


async def _ledger_open(harness: LedgerHarness, side: int = SIDE_LONG, size_usd: int = SIZE_USD, collateral: int = COLLATERAL):
    orchestrator = harness.harness_build_orchestrator()
    client = harness.harness_build_client(TRADER, orchestrator)
    opened = await harness_run_with_cluster(
        harness.cluster,
        client.client_open_position(
            harness.pool_id,
            harness.asset_custody_id,
            harness.stable_custody_id,
            harness.accounts[TRADER],
            side=side,
            size_usd=size_usd,
            collateral=collateral,
            entry_price=ASSET_PRICE,
        ),
    )
    return client, opened


def _ledger_submit_open_without_processing(harness: LedgerHarness, computation_offset: int) -> str:
    """Submit an open directly to the program, leaving the computation queued.

    Returns:
        str: Pending position identifier.
    """

    session = EncryptionSession(key_cache=ClusterKeyCache(key_source=harness.program))
    asyncio.run(session.session_establish())
    encrypted = session.session_encrypt([SIDE_LONG, SIZE_USD, COLLATERAL, ASSET_PRICE])
    return harness.program.program_open_position(
        OpenPositionRequest(
            owner=TRADER,
            pool_id=harness.pool_id,
            custody_id=harness.asset_custody_id,
            collateral_custody_id=harness.stable_custody_id,
            funding_account=harness.accounts[TRADER],
            computation_offset=computation_offset,
            encrypted_side=encrypted.ciphertexts[0],
            encrypted_size=encrypted.ciphertexts[1],
            encrypted_collateral=encrypted.ciphertexts[2],
            encrypted_entry_price=encrypted.ciphertexts[3],
            caller_public_key=session.public_key,
            input_nonce=encrypted.nonce,
            output_nonce=client_generate_output_nonce(encrypted.nonce),
            size_usd=SIZE_USD,
            transfer_amount=COLLATERAL,
        )
    )


def test_open_position_escrows_collateral_and_activates_on_finalization(ledger_harness: LedgerHarness) -> None:
    """A 10x long finalizes with a fresh nonce, decryptable state and locked liquidity.

    Returns:
        None: Assertions validate position and custody state.

    Raises:
        AssertionError: Raised when open effects differ.
    """

    async def _scenario():
        client, opened = await _ledger_open(ledger_harness)
        return opened, await client.client_decrypt_position(opened.position_id)

    opened, state = asyncio.run(_scenario())

    position = ledger_harness.program.program_get_position(opened.position_id)
    custody = ledger_harness.program.program_get_custody(ledger_harness.stable_custody_id)
    assert position.is_active is True
    assert position.nonce == opened.nonce != 0
    assert ledger_harness.program.program_get_position_backing(opened.position_id).deposited_collateral == COLLATERAL
    assert state.as_fields() == [SIDE_LONG, SIZE_USD, COLLATERAL, ASSET_PRICE, 100_000]
    assert custody.assets.locked == SIZE_USD
    assert custody.assets.collateral == COLLATERAL
    assert ledger_harness.harness_balance(TRADER) == TRADER_BALANCE - COLLATERAL
    assert ledger_harness.harness_custody_balance() == POOL_LIQUIDITY + COLLATERAL


def test_open_position_rejects_leverage_above_initial_limit(ledger_harness: LedgerHarness) -> None:
    """A 20x open is rejected before any token moves or computation is queued.

    Returns:
        None: Assertions validate rejection without side effects.

    Raises:
        AssertionError: Raised when the open is accepted or leaves state behind.
    """

    with pytest.raises(LeverageOutOfRangeError):
        asyncio.run(_ledger_open(ledger_harness, size_usd=2 * SIZE_USD))

    assert ledger_harness.cluster.cluster_pending_offsets() == []
    assert ledger_harness.program.program_list_positions(owner=TRADER) == []
    assert ledger_harness.harness_balance(TRADER) == TRADER_BALANCE
    assert ledger_harness.program.program_get_custody(ledger_harness.stable_custody_id).assets.locked == 0


def test_open_position_over_utilization_cap_rolls_back_deposit() -> None:
    """Locking beyond 80% utilization fails and the already-moved deposit is restored.

    Returns:
        None: Assertions validate transaction rollback.

    Raises:
        AssertionError: Raised when partial effects remain.
    """

    harness = harness_build_ledger(pool_liquidity=5_000_000_000)

    with pytest.raises(UtilizationExceededError):
        asyncio.run(_ledger_open(harness, size_usd=5_000_000_000, collateral=500_000_000))

    custody = harness.program.program_get_custody(harness.stable_custody_id)
    assert harness.harness_balance(TRADER) == TRADER_BALANCE
    assert custody.assets.collateral == 0
    assert custody.assets.locked == 0
    assert harness.harness_custody_balance() == 5_000_000_000
    assert harness.cluster.cluster_pending_offsets() == []


def test_update_position_changes_collateral_and_nonce(ledger_harness: LedgerHarness) -> None:
    """Adding collateral re-encrypts state under a new nonce with lower leverage.

    Returns:
        None: Assertions validate updated state.

    Raises:
        AssertionError: Raised when update effects differ.
    """

    async def _scenario():
        client, opened = await _ledger_open(ledger_harness)
        updated = await harness_run_with_cluster(
            ledger_harness.cluster,
            client.client_update_collateral(opened.position_id, 50_000_000, True, ledger_harness.accounts[TRADER]),
        )
        return opened, updated, await client.client_decrypt_position(opened.position_id)

    opened, updated, state = asyncio.run(_scenario())

    assert updated.nonce not in (0, opened.nonce)
    assert state.collateral == 150_000_000
    assert state.leverage == 66_666
    backing = ledger_harness.program.program_get_position_backing(opened.position_id)
    assert backing.deposited_collateral == 150_000_000
    assert ledger_harness.harness_balance(TRADER) == TRADER_BALANCE - 150_000_000


def test_close_position_pays_profit_once_and_rejects_second_close(ledger_harness: LedgerHarness) -> None:
    """A long closed after a 10% rise receives margin plus profit; a second close is refused.

    Returns:
        None: Assertions validate settlement and single close.

    Raises:
        AssertionError: Raised when settlement differs or the second close is accepted.
    """

    async def _scenario():
        client, opened = await _ledger_open(ledger_harness)
        ledger_harness.harness_set_asset_price(110_000_000)
        closed = await harness_run_with_cluster(
            ledger_harness.cluster,
            client.client_close_position(opened.position_id, ledger_harness.accounts[TRADER]),
        )
        with pytest.raises(PositionInactiveError):
            await client.client_close_position(opened.position_id, ledger_harness.accounts[TRADER])
        return opened, closed

    opened, closed = asyncio.run(_scenario())

    assert closed.profit_usd == 100_000_000
    assert closed.transfer_amount == 200_000_000
    assert closed.paid_out_tokens == 200_000_000
    assert ledger_harness.harness_balance(TRADER) == TRADER_BALANCE + 100_000_000
    custody = ledger_harness.program.program_get_custody(ledger_harness.stable_custody_id)
    assert custody.assets.locked == 0
    assert custody.assets.collateral == 0
    assert custody.assets.owned == POOL_LIQUIDITY - 100_000_000
    assert ledger_harness.program.program_get_position(opened.position_id).is_active is False


def test_liquidation_refuses_healthy_position_and_splits_underwater_margin() -> None:
    """Healthy positions fail with NOT_LIQUIDATABLE; a 5% drop pays liquidator and owner.

    Returns:
        None: Assertions validate liquidation outcomes.

    Raises:
        AssertionError: Raised when eligibility or payouts differ.
    """

    harness = harness_build_ledger(fees=Fees(liquidation=100))

    async def _scenario():
        _, opened = await _ledger_open(harness)
        liquidator = harness.harness_build_client(LIQUIDATOR, harness.harness_build_orchestrator())
        with pytest.raises(ComputationFailedError) as error_info:
            await harness_run_with_cluster(
                harness.cluster,
                liquidator.client_liquidate(opened.position_id, harness.accounts[LIQUIDATOR]),
            )
        assert error_info.value.reason_code == "NOT_LIQUIDATABLE"
        assert harness.program.program_get_position(opened.position_id).is_active is True

        harness.harness_set_asset_price(95_000_000)
        return await harness_run_with_cluster(
            harness.cluster,
            liquidator.client_liquidate(opened.position_id, harness.accounts[LIQUIDATOR]),
        )

    liquidated = asyncio.run(_scenario())

    assert liquidated.liquidator == LIQUIDATOR
    assert liquidated.liquidator_reward == 10_000_000
    assert liquidated.owner_amount == 40_000_000
    assert harness.harness_balance(LIQUIDATOR) == 10_000_000
    assert harness.harness_balance(TRADER) == TRADER_BALANCE - COLLATERAL + 40_000_000
    assert harness.program.program_get_position(liquidated.position_id).is_active is False


def test_short_position_opens_and_reports_loss_through_pnl(ledger_harness: LedgerHarness) -> None:
    """PnL reveals a short's loss after a price rise without changing its nonce.

    Returns:
        None: Assertions validate the read-only PnL computation.

    Raises:
        AssertionError: Raised when PnL or nonce differs.
    """

    async def _scenario():
        client, opened = await _ledger_open(ledger_harness, side=SIDE_SHORT)
        pnl = await harness_run_with_cluster(
            ledger_harness.cluster,
            client.client_calculate_pnl(opened.position_id, 105_000_000),
        )
        return opened, pnl

    opened, pnl = asyncio.run(_scenario())

    assert pnl.profit_usd == 0
    assert pnl.loss_usd == 50_000_000
    assert pnl.current_leverage == 200_000
    assert ledger_harness.program.program_get_position(opened.position_id).nonce == opened.nonce


def test_abort_refunds_escrow_once_and_records_failure(ledger_harness: LedgerHarness) -> None:
    """A cluster abort returns deposit and lock; the pending position stays inactive.

    Returns:
        None: Assertions validate refund and failure record.

    Raises:
        AssertionError: Raised when escrow is not refunded.
    """

    position_id = _ledger_submit_open_without_processing(ledger_harness, computation_offset=42)
    assert ledger_harness.harness_balance(TRADER) == TRADER_BALANCE - COLLATERAL

    ledger_harness.cluster.cluster_abort(42, "CLUSTER_ABORTED")

    record = ledger_harness.program.program_get_computation(42)
    custody = ledger_harness.program.program_get_custody(ledger_harness.stable_custody_id)
    assert record.status is ComputationStatus.FAILED
    assert record.failure_code == "CLUSTER_ABORTED"
    assert ledger_harness.harness_balance(TRADER) == TRADER_BALANCE
    assert custody.assets.locked == 0
    assert custody.assets.collateral == 0
    assert ledger_harness.program.program_get_position(position_id).is_active is False


def test_computation_offset_is_single_use(ledger_harness: LedgerHarness) -> None:
    """Reusing a computation offset is rejected at submission.

    Returns:
        None: Assertions validate offset uniqueness.

    Raises:
        AssertionError: Raised when the offset is accepted twice.
    """

    _ledger_submit_open_without_processing(ledger_harness, computation_offset=7)

    with pytest.raises(InvalidConfigError) as error_info:
        _ledger_submit_open_without_processing(ledger_harness, computation_offset=7)

    assert error_info.value.error_code == "COMPUTATION_OFFSET_IN_USE"


def test_liquidity_withdrawal_respects_locked_funds(ledger_harness: LedgerHarness) -> None:
    """LPs may withdraw free liquidity but not funds backing open positions.

    Returns:
        None: Assertions validate withdrawal limits.

    Raises:
        AssertionError: Raised when a withdrawal breaks the utilization cap.
    """

    asyncio.run(_ledger_open(ledger_harness))
    receiving_account = ledger_harness.accounts[LIQUIDITY_PROVIDER]

    with pytest.raises(UtilizationExceededError):
        ledger_harness.program.program_remove_liquidity(
            LIQUIDITY_PROVIDER,
            ledger_harness.pool_id,
            ledger_harness.stable_custody_id,
            lp_token_account="liquidity_provider_lp",
            receiving_account=receiving_account,
            lp_amount_in=9_000_000_000,
            min_amount_out=0,
        )

    removed = ledger_harness.program.program_remove_liquidity(
        LIQUIDITY_PROVIDER,
        ledger_harness.pool_id,
        ledger_harness.stable_custody_id,
        lp_token_account="liquidity_provider_lp",
        receiving_account=receiving_account,
        lp_amount_in=1_000_000_000,
        min_amount_out=1_000_000_000,
    )

    assert removed.amount_out == 1_000_000_000
    assert ledger_harness.harness_balance(LIQUIDITY_PROVIDER) == 1_000_000_000
    assert ledger_harness.program.program_get_custody(ledger_harness.stable_custody_id).assets.owned == 9_000_000_000


def test_permissions_and_oracle_freshness_gate_opens(ledger_harness: LedgerHarness) -> None:
    """Disabled opens, non-admin configuration and stale prices are all refused.

    Returns:
        None: Assertions validate admission checks.

    Raises:
        AssertionError: Raised when a gated instruction is accepted.
    """

    with pytest.raises(PermissionDeniedError):
        ledger_harness.program.program_set_permissions(TRADER, Permissions())

    ledger_harness.program.program_set_permissions(ADMIN, Permissions(allow_open_position=False))
    with pytest.raises(PermissionDeniedError):
        asyncio.run(_ledger_open(ledger_harness))

    ledger_harness.program.program_set_permissions(ADMIN, Permissions())
    ledger_harness.clock.now += 61
    with pytest.raises(StaleOracleError):
        asyncio.run(_ledger_open(ledger_harness))

    assert ledger_harness.harness_balance(TRADER) == TRADER_BALANCE


def test_zero_ciphertext_output_fails_open_and_refunds_escrow(ledger_harness: LedgerHarness) -> None:
    """An open output carrying an all-zero field is rejected and the deposit returned.

    Returns:
        None: Assertions validate rejection and refund.

    Raises:
        AssertionError: Raised when the forged output is applied.
    """

    position_id = _ledger_submit_open_without_processing(ledger_harness, computation_offset=43)
    output = ledger_harness.cluster.cluster_compute(43)
    forged = dataclasses.replace(output, ciphertexts=(ZERO_CIPHERTEXT,) + tuple(output.ciphertexts[1:]))

    with pytest.raises(ZeroCiphertextError):
        ledger_harness.cluster.cluster_deliver(43, forged)

    record = ledger_harness.program.program_get_computation(43)
    custody = ledger_harness.program.program_get_custody(ledger_harness.stable_custody_id)
    position = ledger_harness.program.program_get_position(position_id)
    assert record.status is ComputationStatus.FAILED
    assert record.failure_code == "ZERO_CIPHERTEXT"
    assert position.is_active is False
    assert position.nonce == 0
    assert ledger_harness.harness_balance(TRADER) == TRADER_BALANCE
    assert custody.assets.locked == 0
    assert custody.assets.collateral == 0


def test_wide_oracle_confidence_rejects_open(ledger_harness: LedgerHarness) -> None:
    """A price whose confidence exceeds the custody error bound cannot back an open.

    Returns:
        None: Assertions validate the oracle gate.

    Raises:
        AssertionError: Raised when the open is accepted.
    """

    ledger_harness.program.program_set_custom_oracle_price(
        ORACLE_AUTHORITY,
        ledger_harness.asset_custody_id,
        ASSET_PRICE,
        ASSET_PRICE // 50,
        ledger_harness.clock.now,
    )

    with pytest.raises(OraclePriceError):
        asyncio.run(_ledger_open(ledger_harness))

    assert ledger_harness.harness_balance(TRADER) == TRADER_BALANCE
    assert ledger_harness.program.program_list_positions() == []


def test_unknown_position_is_reported_as_not_found(ledger_harness: LedgerHarness) -> None:
    """Reads and instructions naming a missing position raise `PositionNotFoundError`.

    Returns:
        None: Assertions validate lookup failures.

    Raises:
        AssertionError: Raised when a missing position is accepted.
    """

    with pytest.raises(PositionNotFoundError):
        ledger_harness.program.program_get_position("missing")
    with pytest.raises(PositionNotFoundError):
        ledger_harness.program.program_get_position_backing("missing")
    with pytest.raises(PositionNotFoundError):
        ledger_harness.program.program_close_position(TRADER, "missing", 99, ledger_harness.accounts[TRADER])

    assert ledger_harness.program.program_get_computation(99) is None


def test_deactivated_pool_and_custody_refuse_opens(ledger_harness: LedgerHarness) -> None:
    """Opens are refused while the pool or the traded custody is switched off.

    Returns:
        None: Assertions validate activation gates.

    Raises:
        AssertionError: Raised when an inactive pool or custody accepts an open.
    """

    ledger_harness.program.program_set_pool_active(ADMIN, ledger_harness.pool_id, False)
    with pytest.raises(PoolInactiveError):
        asyncio.run(_ledger_open(ledger_harness))

    ledger_harness.program.program_set_pool_active(ADMIN, ledger_harness.pool_id, True)
    ledger_harness.program.program_set_custody_active(ADMIN, ledger_harness.asset_custody_id, False)
    with pytest.raises(CustodyInactiveError):
        asyncio.run(_ledger_open(ledger_harness))

    ledger_harness.program.program_set_custody_active(ADMIN, ledger_harness.asset_custody_id, True)
    _, opened = asyncio.run(_ledger_open(ledger_harness))

    assert ledger_harness.program.program_get_position(opened.position_id).is_active is True
    assert ledger_harness.harness_balance(TRADER) == TRADER_BALANCE - COLLATERAL


def test_position_backing_tracks_lock_and_clears_on_close(ledger_harness: LedgerHarness) -> None:
    """Locked liquidity and collateral are held beside the record and zeroed on close.

    Returns:
        None: Assertions validate backing bookkeeping.

    Raises:
        AssertionError: Raised when backing amounts drift from custody totals.
    """

    async def _scenario():
        client, opened = await _ledger_open(ledger_harness)
        opened_backing = ledger_harness.program.program_get_position_backing(opened.position_id)
        await harness_run_with_cluster(
            ledger_harness.cluster,
            client.client_close_position(opened.position_id, ledger_harness.accounts[TRADER]),
        )
        return opened, opened_backing

    opened, opened_backing = asyncio.run(_scenario())

    assert opened_backing.locked_amount == SIZE_USD
    assert opened_backing.deposited_collateral == COLLATERAL
    assert opened_backing.owner_token_account == ledger_harness.accounts[TRADER]
    closed_backing = ledger_harness.program.program_get_position_backing(opened.position_id)
    assert closed_backing.locked_amount == 0
    assert closed_backing.deposited_collateral == 0
    assert not hasattr(ledger_harness.program.program_get_position(opened.position_id), "locked_amount")
