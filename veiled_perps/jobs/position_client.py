"""Client workflows for private positions.

Each workflow encrypts its inputs under the session secret, submits one
ledger instruction through the orchestrator and waits for the result
event. Validation failures surface immediately; lifecycle failures surface
after the wait as `ComputationFailedError` or `ComputationTimeoutError`.
"""

from __future__ import annotations

import logging

from veiled_perps.adapters.circuits import PositionState
from veiled_perps.crypto.cipher import crypto_generate_nonce, crypto_nonce_to_int
from veiled_perps.crypto.session import EncryptionSession
from veiled_perps.domain.addresses import domain_derive_address
from veiled_perps.domain.errors import PermissionDeniedError
from veiled_perps.domain.events import (
    PnlCalculatedEvent,
    PositionClosedEvent,
    PositionLiquidatedEvent,
    PositionOpenedEvent,
    PositionUpdatedEvent,
)
from veiled_perps.domain.models import OpenPositionRequest, OperationKind, UpdatePositionRequest

from .computation_orchestrator import ComputationOrchestrator
from .interfaces import LedgerProgramPort

logger = logging.getLogger(__name__)


class PrivatePositionClient:
    """Position workflows on behalf of one identity and its encryption session."""

    def __init__(
        self,
        program: LedgerProgramPort,
        orchestrator: ComputationOrchestrator,
        session: EncryptionSession,
        owner: str,
    ):
        """Initialize client dependencies.

        Args:
            program: Ledger program port.
            orchestrator: Ticket orchestrator.
            session: Encryption session bound to the cluster key.
            owner: Identity the client acts as.

        Raises:
            ValueError: Raised when dependencies are missing or owner is blank.
        """

        if program is None:
            raise ValueError("program must not be None")
        if orchestrator is None:
            raise ValueError("orchestrator must not be None")
        if session is None:
            raise ValueError("session must not be None")
        if not owner.strip():
            raise ValueError("owner must not be blank")
        self._program = program
        self._orchestrator = orchestrator
        self._session = session
        self._owner = owner

    @property
    def owner(self) -> str:
        """Return the identity that signs this client's requests."""

        return self._owner

    async def client_open_position(
        self,
        pool_id: str,
        custody_id: str,
        collateral_custody_id: str,
        funding_account: str,
        side: int,
        size_usd: int,
        collateral: int,
        entry_price: int,
        timeout_seconds: float | None = None,
    ) -> PositionOpenedEvent:
        """Open an encrypted position.

        Args:
            pool_id: Pool reference.
            custody_id: Traded asset custody.
            collateral_custody_id: Collateral custody.
            funding_account: Token account the collateral is drawn from.
            side: 1 long, 2 short.
            size_usd: Notional in USD, scaled by 10^6.
            collateral: Collateral tokens.
            entry_price: Entry price, scaled by 10^6.
            timeout_seconds: Optional wait override.

        Returns:
            PositionOpenedEvent: Finalized open with the position nonce.

        Raises:
            PerpsValidationError: Raised when the ledger rejects the open.
            ComputationFailedError: Raised when the computation failed.
            ComputationTimeoutError: Raised when finalization did not arrive in time.
        """

        await self._session.session_establish()
        encrypted = self._session.session_encrypt([side, size_usd, collateral, entry_price])
        output_nonce = client_generate_output_nonce(encrypted.nonce)
        ticket = self._orchestrator.orchestrator_new_ticket(OperationKind.OPEN)
        ticket.position_id = domain_derive_address("position", self._owner, pool_id, custody_id, ticket.computation_offset)
        request = OpenPositionRequest(
            owner=self._owner,
            pool_id=pool_id,
            custody_id=custody_id,
            collateral_custody_id=collateral_custody_id,
            funding_account=funding_account,
            computation_offset=ticket.computation_offset,
            encrypted_side=encrypted.ciphertexts[0],
            encrypted_size=encrypted.ciphertexts[1],
            encrypted_collateral=encrypted.ciphertexts[2],
            encrypted_entry_price=encrypted.ciphertexts[3],
            caller_public_key=self._session.public_key,
            input_nonce=encrypted.nonce,
            output_nonce=output_nonce,
            size_usd=size_usd,
            transfer_amount=collateral,
        )
        return await self._orchestrator.orchestrator_execute(
            ticket,
            lambda: self._program.program_open_position(request),
            timeout_seconds=timeout_seconds,
        )

    async def client_update_collateral(
        self,
        position_id: str,
        amount: int,
        is_add: bool,
        token_account: str,
        timeout_seconds: float | None = None,
    ) -> PositionUpdatedEvent:
        """Add or remove collateral.

        The direction flag travels both encrypted and in plaintext so the
        computation can detect a mismatch with the token movement.

        Raises:
            MutatingTicketPendingError: Raised when another mutating ticket is outstanding.
            PerpsValidationError: Raised when the ledger rejects the update.
            ComputationFailedError: Raised when the computation failed.
            ComputationTimeoutError: Raised when finalization did not arrive in time.
        """

        await self._session.session_establish()
        position = self._program.program_get_position(position_id)
        encrypted = self._session.session_encrypt([amount, int(is_add)])
        output_nonce = client_generate_output_nonce(encrypted.nonce, position.nonce)
        ticket = self._orchestrator.orchestrator_new_ticket(OperationKind.UPDATE, position_id=position_id)
        request = UpdatePositionRequest(
            owner=self._owner,
            position_id=position_id,
            token_account=token_account,
            computation_offset=ticket.computation_offset,
            encrypted_amount=encrypted.ciphertexts[0],
            encrypted_is_add=encrypted.ciphertexts[1],
            caller_public_key=self._session.public_key,
            input_nonce=encrypted.nonce,
            output_nonce=output_nonce,
            transfer_amount=amount,
            is_add=is_add,
        )
        return await self._orchestrator.orchestrator_execute(
            ticket,
            lambda: self._program.program_update_position(request),
            timeout_seconds=timeout_seconds,
        )

    async def client_calculate_pnl(
        self,
        position_id: str,
        current_price: int,
        timeout_seconds: float | None = None,
    ) -> PnlCalculatedEvent:
        """Reveal profit, loss and leverage at a price without changing the position."""

        ticket = self._orchestrator.orchestrator_new_ticket(OperationKind.PNL, position_id=position_id)
        return await self._orchestrator.orchestrator_execute(
            ticket,
            lambda: self._program.program_calculate_pnl(self._owner, position_id, ticket.computation_offset, current_price),
            timeout_seconds=timeout_seconds,
        )

    async def client_close_position(
        self,
        position_id: str,
        receiving_account: str,
        timeout_seconds: float | None = None,
    ) -> PositionClosedEvent:
        """Close a position and settle to `receiving_account`."""

        ticket = self._orchestrator.orchestrator_new_ticket(OperationKind.CLOSE, position_id=position_id)
        return await self._orchestrator.orchestrator_execute(
            ticket,
            lambda: self._program.program_close_position(
                self._owner,
                position_id,
                ticket.computation_offset,
                receiving_account,
            ),
            timeout_seconds=timeout_seconds,
        )

    async def client_liquidate(
        self,
        position_id: str,
        receiving_account: str,
        timeout_seconds: float | None = None,
    ) -> PositionLiquidatedEvent:
        """Liquidate another owner's position if the computation finds it eligible.

        Raises:
            ComputationFailedError: Raised with reason `NOT_LIQUIDATABLE` when the
                position is still healthy.
        """

        ticket = self._orchestrator.orchestrator_new_ticket(OperationKind.LIQUIDATE, position_id=position_id)
        return await self._orchestrator.orchestrator_execute(
            ticket,
            lambda: self._program.program_liquidate(
                self._owner,
                position_id,
                ticket.computation_offset,
                receiving_account,
            ),
            timeout_seconds=timeout_seconds,
        )

    async def client_decrypt_position(self, position_id: str) -> PositionState:
        """Decrypt the current state of an owned position.

        Raises:
            PermissionDeniedError: Raised when the position is encrypted for another key.
            DecryptionFailedError: Raised when the ciphertexts do not authenticate.
        """

        await self._session.session_establish()
        position = self._program.program_get_position(position_id)
        if position.owner_encryption_key != self._session.public_key:
            raise PermissionDeniedError(f"position {position_id} is not encrypted for this session")
        values = self._session.session_decrypt(position.ciphertexts, position.nonce)
        return PositionState.from_fields(values)


def client_generate_output_nonce(*excluded_nonces: int) -> int:
    """Return a fresh non-zero nonce differing from every excluded nonce."""

    while True:
        candidate = crypto_nonce_to_int(crypto_generate_nonce())
        if candidate != 0 and candidate not in excluded_nonces:
            return candidate
