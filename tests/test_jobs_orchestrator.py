"""Tests for computation ticket submission, waiting, timeout recovery and cleanup."""

from __future__ import annotations

import asyncio
import dataclasses

import pytest
from conftest import ASSET_PRICE, TRADER, TRADER_BALANCE, LedgerHarness, harness_run_with_cluster

from veiled_perps.domain.constants import SIDE_LONG, ZERO_CIPHERTEXT
from veiled_perps.domain.errors import (
    ComputationFailedError,
    ComputationTimeoutError,
    LeverageOutOfRangeError,
    MutatingTicketPendingError,
    NonceMismatchError,
    ZeroCiphertextError,
)
from veiled_perps.domain.events import PositionClosedEvent
from veiled_perps.domain.models import (
    ComputationRecord,
    ComputationStatus,
    OperationKind,
    TicketStatus,
)
from veiled_perps.jobs import ComputationOrchestrator, OrchestratorConfig

SIZE_USD = 1_000_000_000
COLLATERAL_AMOUNT = 100_000_000


async def _orchestrator_open(harness: LedgerHarness, orchestrator: ComputationOrchestrator):
    client = harness.harness_build_client(TRADER, orchestrator)
    opened = await harness_run_with_cluster(
        harness.cluster,
        client.client_open_position(
            harness.pool_id,
            harness.asset_custody_id,
            harness.stable_custody_id,
            harness.accounts[TRADER],
            side=SIDE_LONG,
            size_usd=SIZE_USD,
            collateral=COLLATERAL_AMOUNT,
            entry_price=ASSET_PRICE,
        ),
    )
    return client, opened


class _PollingOnlyProgram:
    """Program stub that never delivers events and reports a finalized record on the second poll."""

    def __init__(self, computation_offset: int):
        self.computation_offset = computation_offset
        self.poll_count = 0

    def program_subscribe(self, listener):
        return lambda: None

    def program_get_computation(self, computation_offset: int) -> ComputationRecord | None:
        """Return a queued record first, then a finalized one.

        Args:
            computation_offset: Requested offset.

        Returns:
            ComputationRecord | None: Stub record.
        """

        self.poll_count += 1
        status = ComputationStatus.QUEUED if self.poll_count < 2 else ComputationStatus.FINALIZED
        return ComputationRecord(
            computation_offset=computation_offset,
            operation_kind=OperationKind.PNL,
            definition_name="calculate_pnl",
            position_id="position",
            submitter=TRADER,
            expected_nonce=1,
            queued_at=0,
            status=status,
            result="pnl-result" if status is ComputationStatus.FINALIZED else None,
        )


def test_client_workflow_releases_ticket_and_subscription(ledger_harness: LedgerHarness) -> None:
    """A finalized open leaves no pending tickets and no ledger listeners behind.

    Returns:
        None: Assertions validate resource cleanup.

    Raises:
        AssertionError: Raised when resources leak.
    """

    orchestrator = ledger_harness.harness_build_orchestrator()

    _, opened = asyncio.run(_orchestrator_open(ledger_harness, orchestrator))

    assert opened.nonce != 0
    assert orchestrator.orchestrator_pending_offsets() == []
    assert ledger_harness.program.program_listener_count() == 0


def test_submit_rejection_fails_ticket_and_releases_resources(ledger_harness: LedgerHarness) -> None:
    """A validation error at submission fails the ticket and cleans up immediately.

    Returns:
        None: Assertions validate ticket state and cleanup.

    Raises:
        AssertionError: Raised when the ticket stays pending.
    """

    orchestrator = ledger_harness.harness_build_orchestrator()
    ticket = orchestrator.orchestrator_new_ticket(OperationKind.OPEN)

    def _reject() -> None:
        raise LeverageOutOfRangeError("initial leverage outside bounds")

    with pytest.raises(LeverageOutOfRangeError):
        asyncio.run(orchestrator.orchestrator_submit(ticket, _reject))

    assert ticket.status is TicketStatus.FAILED
    assert ticket.failure_code == "LEVERAGE_OUT_OF_RANGE"
    assert [event["status"] for event in ticket.timeline] == ["created", "started", "rejected"]
    assert orchestrator.orchestrator_pending_offsets() == []
    assert ledger_harness.program.program_listener_count() == 0

    with pytest.raises(ValueError):
        asyncio.run(orchestrator.orchestrator_submit(ticket, lambda: None))


def test_second_mutating_ticket_for_position_is_refused(ledger_harness: LedgerHarness) -> None:
    """Only one mutating ticket per position may be outstanding; PnL reads are not exclusive.

    Returns:
        None: Assertions validate exclusivity and close cleanup.

    Raises:
        AssertionError: Raised when a second mutating ticket is accepted.
    """

    orchestrator = ledger_harness.harness_build_orchestrator()

    async def _scenario() -> None:
        first = orchestrator.orchestrator_new_ticket(OperationKind.UPDATE, position_id="position-1")
        await orchestrator.orchestrator_submit(first, lambda: None)
        assert orchestrator.orchestrator_pending_mutating("position-1") == first.computation_offset

        with pytest.raises(MutatingTicketPendingError):
            await orchestrator.orchestrator_submit(
                orchestrator.orchestrator_new_ticket(OperationKind.CLOSE, position_id="position-1"),
                lambda: None,
            )
        await orchestrator.orchestrator_submit(
            orchestrator.orchestrator_new_ticket(OperationKind.PNL, position_id="position-1"),
            lambda: None,
        )
        await orchestrator.orchestrator_submit(
            orchestrator.orchestrator_new_ticket(OperationKind.UPDATE, position_id="position-2"),
            lambda: None,
        )
        assert len(orchestrator.orchestrator_pending_offsets()) == 3
        assert ledger_harness.program.program_listener_count() == 1

        orchestrator.orchestrator_close()

    asyncio.run(_scenario())

    assert orchestrator.orchestrator_pending_offsets() == []
    assert orchestrator.orchestrator_pending_mutating("position-1") is None
    assert ledger_harness.program.program_listener_count() == 0


def test_timed_out_ticket_rechecks_to_finalized_after_late_delivery(ledger_harness: LedgerHarness) -> None:
    """A close that finalizes after the wait expired is reported finalized on re-check.

    Returns:
        None: Assertions validate timeout and recovery.

    Raises:
        AssertionError: Raised when the late result is lost.
    """

    orchestrator = ledger_harness.harness_build_orchestrator()

    async def _scenario() -> ComputationTimeoutError:
        client, opened = await _orchestrator_open(ledger_harness, orchestrator)
        with pytest.raises(ComputationTimeoutError) as error_info:
            await client.client_close_position(opened.position_id, ledger_harness.accounts[TRADER], timeout_seconds=0.05)
        return error_info.value

    timeout_error = asyncio.run(_scenario())
    ticket = timeout_error.ticket

    assert ticket.status is TicketStatus.TIMED_OUT
    assert orchestrator.orchestrator_pending_offsets() == []
    assert ledger_harness.program.program_listener_count() == 0
    assert orchestrator.orchestrator_recheck(ticket).status is TicketStatus.TIMED_OUT

    result = ledger_harness.cluster.cluster_process(timeout_error.computation_offset)

    assert result.accepted is True
    rechecked = orchestrator.orchestrator_recheck(ticket)
    assert rechecked.status is TicketStatus.FINALIZED
    assert isinstance(rechecked.result, PositionClosedEvent)


def test_late_finalization_after_newer_update_is_rejected_with_refund(ledger_harness: LedgerHarness) -> None:
    """A timed-out update delivered after a newer update fails with a nonce mismatch.

    The stale escrow is refunded and only the newer collateral stays deposited.

    Returns:
        None: Assertions validate stale rejection and refund.

    Raises:
        AssertionError: Raised when the stale output is applied.
    """

    orchestrator = ledger_harness.harness_build_orchestrator()
    trader_account = ledger_harness.accounts[TRADER]

    async def _scenario():
        client, opened = await _orchestrator_open(ledger_harness, orchestrator)
        with pytest.raises(ComputationTimeoutError) as error_info:
            await client.client_update_collateral(opened.position_id, 20_000_000, True, trader_account, timeout_seconds=0.05)
        stale_offset = error_info.value.computation_offset
        stale_output = ledger_harness.cluster.cluster_compute(stale_offset)

        update_task = asyncio.create_task(client.client_update_collateral(opened.position_id, 10_000_000, True, trader_account))
        while len(ledger_harness.cluster.cluster_pending_offsets()) < 2:
            await asyncio.sleep(0.005)
        fresh_offset = next(offset for offset in ledger_harness.cluster.cluster_pending_offsets() if offset != stale_offset)
        ledger_harness.cluster.cluster_process(fresh_offset)
        updated = await update_task
        return opened, error_info.value.ticket, stale_offset, stale_output, updated

    opened, stale_ticket, stale_offset, stale_output, updated = asyncio.run(_scenario())

    with pytest.raises(NonceMismatchError):
        ledger_harness.cluster.cluster_deliver(stale_offset, stale_output)

    position = ledger_harness.program.program_get_position(opened.position_id)
    assert position.nonce == updated.nonce
    assert ledger_harness.program.program_get_position_backing(opened.position_id).deposited_collateral == (
        COLLATERAL_AMOUNT + 10_000_000
    )
    assert ledger_harness.harness_balance(TRADER) == TRADER_BALANCE - COLLATERAL_AMOUNT - 10_000_000

    rechecked = orchestrator.orchestrator_recheck(stale_ticket)
    assert rechecked.status is TicketStatus.FAILED
    assert rechecked.failure_code == "NONCE_MISMATCH"


def test_failed_computation_raises_with_reason_code(ledger_harness: LedgerHarness) -> None:
    """An aborted computation surfaces as `ComputationFailedError` with the abort reason.

    Returns:
        None: Assertions validate failure propagation.

    Raises:
        AssertionError: Raised when the failure is not reported.
    """

    orchestrator = ledger_harness.harness_build_orchestrator()

    async def _scenario() -> None:
        client, opened = await _orchestrator_open(ledger_harness, orchestrator)
        close_task = asyncio.create_task(client.client_close_position(opened.position_id, ledger_harness.accounts[TRADER]))
        while not ledger_harness.cluster.cluster_pending_offsets():
            await asyncio.sleep(0.005)
        ledger_harness.cluster.cluster_abort(ledger_harness.cluster.cluster_pending_offsets()[0], "CLUSTER_ABORTED")
        with pytest.raises(ComputationFailedError) as error_info:
            await close_task
        assert error_info.value.reason_code == "CLUSTER_ABORTED"

    asyncio.run(_scenario())

    assert orchestrator.orchestrator_pending_offsets() == []
    assert ledger_harness.program.program_listener_count() == 0


def test_zero_ciphertext_finalization_fails_update_with_refund(ledger_harness: LedgerHarness) -> None:
    """An update output with an all-zero field surfaces as a failed computation.

    The position keeps its previous state and the update deposit is returned.

    Returns:
        None: Assertions validate failure propagation and refund.

    Raises:
        AssertionError: Raised when the forged output is applied.
    """

    orchestrator = ledger_harness.harness_build_orchestrator()
    trader_account = ledger_harness.accounts[TRADER]

    async def _scenario():
        client, opened = await _orchestrator_open(ledger_harness, orchestrator)
        update_task = asyncio.create_task(client.client_update_collateral(opened.position_id, 20_000_000, True, trader_account))
        while not ledger_harness.cluster.cluster_pending_offsets():
            await asyncio.sleep(0.005)
        offset = ledger_harness.cluster.cluster_pending_offsets()[0]
        output = ledger_harness.cluster.cluster_compute(offset)
        forged = dataclasses.replace(output, ciphertexts=tuple(output.ciphertexts[:4]) + (ZERO_CIPHERTEXT,))
        with pytest.raises(ZeroCiphertextError):
            ledger_harness.cluster.cluster_deliver(offset, forged)
        with pytest.raises(ComputationFailedError) as error_info:
            await update_task
        return opened, error_info.value

    opened, failure = asyncio.run(_scenario())

    assert failure.reason_code == "ZERO_CIPHERTEXT"
    position = ledger_harness.program.program_get_position(opened.position_id)
    assert position.nonce == opened.nonce
    assert ZERO_CIPHERTEXT not in position.ciphertexts
    assert ledger_harness.program.program_get_position_backing(opened.position_id).deposited_collateral == COLLATERAL_AMOUNT
    assert ledger_harness.harness_balance(TRADER) == TRADER_BALANCE - COLLATERAL_AMOUNT
    assert orchestrator.orchestrator_pending_offsets() == []
    assert ledger_harness.program.program_listener_count() == 0


def test_cancelled_wait_releases_ticket_and_subscription(ledger_harness: LedgerHarness) -> None:
    """Cancelling a caller mid-wait frees local resources; the queued close still finalizes.

    Returns:
        None: Assertions validate cleanup after cancellation.

    Raises:
        AssertionError: Raised when the cancelled ticket stays registered.
    """

    orchestrator = ledger_harness.harness_build_orchestrator()

    async def _scenario():
        client, opened = await _orchestrator_open(ledger_harness, orchestrator)
        close_task = asyncio.create_task(client.client_close_position(opened.position_id, ledger_harness.accounts[TRADER]))
        while not ledger_harness.cluster.cluster_pending_offsets():
            await asyncio.sleep(0.005)
        assert orchestrator.orchestrator_pending_mutating(opened.position_id) is not None
        close_task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await close_task
        return opened

    opened = asyncio.run(_scenario())

    assert orchestrator.orchestrator_pending_offsets() == []
    assert orchestrator.orchestrator_pending_mutating(opened.position_id) is None
    assert ledger_harness.program.program_listener_count() == 0

    offset = ledger_harness.cluster.cluster_pending_offsets()[0]
    assert ledger_harness.cluster.cluster_process(offset).accepted is True
    assert ledger_harness.program.program_get_position(opened.position_id).is_active is False


def test_await_falls_back_to_polling_the_ledger_record() -> None:
    """Without events, the wait resolves from the polled computation record.

    Returns:
        None: Assertions validate poll-based resolution.

    Raises:
        AssertionError: Raised when polling does not resolve the ticket.
    """

    program = _PollingOnlyProgram(computation_offset=5)
    orchestrator = ComputationOrchestrator(
        program=program,
        config=OrchestratorConfig(timeout_seconds=2.0, poll_interval_seconds=0.01),
    )
    ticket = orchestrator.orchestrator_new_ticket(OperationKind.PNL, position_id="position", computation_offset=5)

    result = asyncio.run(orchestrator.orchestrator_execute(ticket, lambda: None))

    assert result == "pnl-result"
    assert ticket.status is TicketStatus.FINALIZED
    assert program.poll_count == 2


def test_orchestrator_rejects_invalid_wait_configuration(ledger_harness: LedgerHarness) -> None:
    """Non-positive timeout and poll intervals are rejected.

    Returns:
        None: Assertions validate configuration checks.

    Raises:
        AssertionError: Raised when invalid configuration is accepted.
    """

    with pytest.raises(ValueError):
        ComputationOrchestrator(program=ledger_harness.program, config=OrchestratorConfig(timeout_seconds=0))
    with pytest.raises(ValueError):
        ComputationOrchestrator(program=ledger_harness.program, config=OrchestratorConfig(poll_interval_seconds=0))
