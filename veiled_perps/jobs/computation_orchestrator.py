"""Computation ticket orchestration: submit, await finalization, re-check.

Submission and finalization are two separate steps linked only by the
computation offset. `orchestrator_submit` runs the ledger instruction and
returns once the request is queued; `orchestrator_await` waits on a
per-offset future resolved by ledger events, falling back to polling the
ledger record, until the computation resolves or the timeout expires.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from veiled_perps.domain.errors import (
    ComputationFailedError,
    ComputationTimeoutError,
    MutatingTicketPendingError,
    PerpsError,
)
from veiled_perps.domain.events import ComputationResolvedEvent, LedgerEvent
from veiled_perps.domain.models import (
    ComputationRecord,
    ComputationStatus,
    ComputationTicket,
    OperationKind,
    TicketStatus,
)
from veiled_perps.domain.timeline import domain_append_stage_event

from .interfaces import LedgerProgramPort

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OrchestratorConfig:
    """Ticket wait configuration.

    Attributes:
        timeout_seconds: Default wait before a ticket is reported timed out.
        poll_interval_seconds: Interval between ledger record polls while waiting.
    """

    timeout_seconds: float = 300.0
    poll_interval_seconds: float = 2.0


@dataclass
class _PendingTicket:
    ticket: ComputationTicket
    future: asyncio.Future
    loop: asyncio.AbstractEventLoop


def job_generate_computation_offset() -> int:
    """Return a random unsigned 64-bit computation offset."""

    return secrets.randbits(64)


class ComputationOrchestrator:
    """Owns outstanding computation tickets of one client process."""

    def __init__(self, program: LedgerProgramPort, config: OrchestratorConfig | None = None):
        """Initialize orchestrator dependencies.

        Args:
            program: Ledger program port.
            config: Optional wait configuration.

        Raises:
            ValueError: Raised when program is None or config values are invalid.
        """

        if program is None:
            raise ValueError("program must not be None")
        self._program = program
        self._config = config or OrchestratorConfig()
        if self._config.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        if self._config.poll_interval_seconds <= 0:
            raise ValueError("poll_interval_seconds must be > 0")

        self._pending: dict[int, _PendingTicket] = {}
        self._mutating_offsets: dict[str, int] = {}
        self._unsubscribe: Callable[[], None] | None = None

    def orchestrator_new_ticket(
        self,
        operation_kind: OperationKind,
        position_id: str | None = None,
        computation_offset: int | None = None,
    ) -> ComputationTicket:
        """Create a ticket with a fresh single-use offset.

        Args:
            operation_kind: Position operation.
            position_id: Target position.
            computation_offset: Optional explicit offset.

        Returns:
            ComputationTicket: Ticket in `created` state.
        """

        offset = job_generate_computation_offset() if computation_offset is None else computation_offset
        ticket = ComputationTicket(computation_offset=offset, operation_kind=operation_kind, position_id=position_id)
        domain_append_stage_event(ticket.timeline, stage="ticket", status="created")
        return ticket

    def orchestrator_pending_offsets(self) -> list[int]:
        """Return offsets of tickets still holding local wait resources.

        Returns:
            list[int]: Pending computation offsets in submission order.
        """

        return list(self._pending.keys())

    def orchestrator_pending_mutating(self, position_id: str) -> int | None:
        """Return the offset of the outstanding mutating ticket for a position, if any."""

        return self._mutating_offsets.get(position_id)

    async def orchestrator_submit(self, ticket: ComputationTicket, submit: Callable[[], Any]) -> Any:
        """Run the ledger instruction that queues a ticket's computation.

        Resubmitting a ticket is refused; recovery always uses a new ticket
        with a new offset.

        Args:
            ticket: Ticket in `created` state.
            submit: Callable running the ledger instruction with the ticket offset.

        Returns:
            Any: Value returned by `submit`.

        Raises:
            MutatingTicketPendingError: Raised when another mutating ticket is
                outstanding for the same position.
            ValueError: Raised when the ticket was already submitted.
            PerpsValidationError: Raised when the ledger rejects the instruction;
                nothing was queued.
        """

        if ticket.status is not TicketStatus.CREATED:
            raise ValueError(f"ticket {ticket.computation_offset} was already submitted; use a new ticket")

        is_exclusive = ticket.operation_kind.is_mutating and ticket.position_id is not None
        if is_exclusive:
            pending_offset = self._mutating_offsets.get(ticket.position_id)
            if pending_offset is not None:
                raise MutatingTicketPendingError(
                    f"position {ticket.position_id} already has mutating computation {pending_offset} outstanding"
                )

        loop = asyncio.get_running_loop()
        offset = ticket.computation_offset
        self._pending[offset] = _PendingTicket(ticket=ticket, future=loop.create_future(), loop=loop)
        if is_exclusive:
            self._mutating_offsets[ticket.position_id] = offset
        self._orchestrator_ensure_subscribed()

        domain_append_stage_event(ticket.timeline, stage="submit", status="started")
        try:
            outcome = submit()
        except PerpsError as error:
            self._orchestrator_release(ticket)
            ticket.status = TicketStatus.FAILED
            ticket.failure_code = error.error_code
            domain_append_stage_event(
                ticket.timeline,
                stage="submit",
                status="rejected",
                details={"error_code": error.error_code},
            )
            raise
        except BaseException:
            self._orchestrator_release(ticket)
            raise

        ticket.status = TicketStatus.SUBMITTED
        ticket.submitted_at_monotonic = loop.time()
        domain_append_stage_event(ticket.timeline, stage="submit", status="completed")
        logger.info(
            "computation ticket submitted",
            extra={
                "computation_offset": offset,
                "position_id": ticket.position_id,
                "operation_kind": ticket.operation_kind.value,
            },
        )
        return outcome

    async def orchestrator_await(self, ticket: ComputationTicket, timeout_seconds: float | None = None) -> Any:
        """Wait until a submitted ticket resolves.

        Local resources for the ticket are released on every outcome,
        including cancellation.

        Args:
            ticket: Submitted ticket.
            timeout_seconds: Optional wait override.

        Returns:
            Any: Operation result event.

        Raises:
            ValueError: Raised when the ticket is not pending in this orchestrator.
            ComputationTimeoutError: Raised when the wait expires; the outcome is unknown.
            ComputationFailedError: Raised when the ledger recorded a failure.
        """

        pending = self._pending.get(ticket.computation_offset)
        if pending is None or pending.ticket is not ticket or ticket.status is not TicketStatus.SUBMITTED:
            raise ValueError(f"ticket {ticket.computation_offset} is not awaiting finalization")

        wait_seconds = self._config.timeout_seconds if timeout_seconds is None else timeout_seconds
        deadline = pending.loop.time() + wait_seconds
        domain_append_stage_event(ticket.timeline, stage="await", status="started", details={"timeout_seconds": wait_seconds})
        try:
            while True:
                remaining = deadline - pending.loop.time()
                if remaining <= 0:
                    return self._orchestrator_time_out(ticket, wait_seconds)

                done, _ = await asyncio.wait({pending.future}, timeout=min(self._config.poll_interval_seconds, remaining))
                if done:
                    resolved_event: ComputationResolvedEvent = pending.future.result()
                    return self._orchestrator_resolve(
                        ticket,
                        is_finalized=resolved_event.status == ComputationStatus.FINALIZED.value,
                        result=resolved_event.result,
                        failure_code=resolved_event.failure_code,
                    )

                record = self._program.program_get_computation(ticket.computation_offset)
                if record is not None and record.status is not ComputationStatus.QUEUED:
                    return self._orchestrator_resolve_from_record(ticket, record)
        finally:
            self._orchestrator_release(ticket)

    async def orchestrator_execute(
        self,
        ticket: ComputationTicket,
        submit: Callable[[], Any],
        timeout_seconds: float | None = None,
    ) -> Any:
        """Submit a ticket and wait for its result."""

        await self.orchestrator_submit(ticket, submit)
        return await self.orchestrator_await(ticket, timeout_seconds=timeout_seconds)

    def orchestrator_recheck(self, ticket: ComputationTicket) -> ComputationTicket:
        """Re-read the ledger record of a ticket, typically after a timeout.

        A computation that finalized after the wait expired is reported as
        finalized here; one still queued leaves the ticket unchanged.

        Args:
            ticket: Previously submitted ticket.

        Returns:
            ComputationTicket: The same ticket, updated in place.
        """

        record = self._program.program_get_computation(ticket.computation_offset)
        if record is None or record.status is ComputationStatus.QUEUED:
            domain_append_stage_event(ticket.timeline, stage="recheck", status="pending")
            return ticket

        if record.status is ComputationStatus.FINALIZED:
            ticket.status = TicketStatus.FINALIZED
            ticket.result = record.result
        else:
            ticket.status = TicketStatus.FAILED
            ticket.failure_code = record.failure_code
        domain_append_stage_event(ticket.timeline, stage="recheck", status=ticket.status.value)
        return ticket

    def orchestrator_close(self) -> None:
        """Cancel outstanding waits and drop the ledger subscription."""

        for pending in list(self._pending.values()):
            if not pending.future.done():
                pending.future.cancel()
            self._orchestrator_release(pending.ticket)
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def _orchestrator_ensure_subscribed(self) -> None:
        if self._unsubscribe is None:
            self._unsubscribe = self._program.program_subscribe(self._orchestrator_on_event)

    def _orchestrator_on_event(self, event: LedgerEvent) -> None:
        if not isinstance(event, ComputationResolvedEvent):
            return
        pending = self._pending.get(event.computation_offset)
        if pending is None:
            return
        pending.loop.call_soon_threadsafe(_orchestrator_set_future_result, pending.future, event)

    def _orchestrator_release(self, ticket: ComputationTicket) -> None:
        offset = ticket.computation_offset
        self._pending.pop(offset, None)
        if ticket.position_id is not None and self._mutating_offsets.get(ticket.position_id) == offset:
            del self._mutating_offsets[ticket.position_id]
        if not self._pending and self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def _orchestrator_resolve_from_record(self, ticket: ComputationTicket, record: ComputationRecord) -> Any:
        return self._orchestrator_resolve(
            ticket,
            is_finalized=record.status is ComputationStatus.FINALIZED,
            result=record.result,
            failure_code=record.failure_code,
        )

    def _orchestrator_resolve(
        self,
        ticket: ComputationTicket,
        is_finalized: bool,
        result: Any,
        failure_code: str | None,
    ) -> Any:
        log_extra = {
            "computation_offset": ticket.computation_offset,
            "position_id": ticket.position_id,
            "operation_kind": ticket.operation_kind.value,
        }
        if is_finalized:
            ticket.status = TicketStatus.FINALIZED
            ticket.result = result
            domain_append_stage_event(ticket.timeline, stage="await", status="finalized")
            logger.info("computation ticket finalized", extra=log_extra)
            return result

        ticket.status = TicketStatus.FAILED
        ticket.failure_code = failure_code
        domain_append_stage_event(ticket.timeline, stage="await", status="failed", details={"failure_code": failure_code})
        logger.warning("computation ticket failed with %s", failure_code, extra=log_extra)
        raise ComputationFailedError(
            f"computation {ticket.computation_offset} failed with {failure_code}",
            reason_code=failure_code or "UNKNOWN",
            computation_offset=ticket.computation_offset,
        )

    def _orchestrator_time_out(self, ticket: ComputationTicket, wait_seconds: float) -> Any:
        ticket.status = TicketStatus.TIMED_OUT
        domain_append_stage_event(ticket.timeline, stage="await", status="timed_out")
        logger.warning(
            "computation ticket timed out after %ss",
            wait_seconds,
            extra={"computation_offset": ticket.computation_offset, "position_id": ticket.position_id},
        )
        raise ComputationTimeoutError(
            f"computation {ticket.computation_offset} did not finalize within {wait_seconds}s; "
            "outcome unknown, re-check the offset before resubmitting",
            computation_offset=ticket.computation_offset,
            ticket=ticket,
        )


def _orchestrator_set_future_result(future: asyncio.Future, event: ComputationResolvedEvent) -> None:
    if not future.done():
        future.set_result(event)
