"""In-process stand-in for the threshold computation cluster.

The cluster owns an x25519 keypair, accepts queued computation requests,
decrypts their inputs with secrets shared with the caller and the position
owner, runs the reference circuits and calls back into the ledger program.
Requests are processed only when the cluster is stepped, so callers decide
when finalization happens.
"""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from dataclasses import dataclass

from veiled_perps.crypto.cipher import crypto_decrypt_fields, crypto_encrypt_fields, crypto_nonce_from_int
from veiled_perps.crypto.key_exchange import KeyPair, crypto_derive_shared_secret, crypto_generate_keypair
from veiled_perps.domain.constants import (
    COMP_DEF_CALCULATE_PNL,
    COMP_DEF_CHECK_LIQUIDATION,
    COMP_DEF_CLOSE_POSITION,
    COMP_DEF_INIT_POSITION,
    COMP_DEF_UPDATE_POSITION,
    COMPUTATION_DEFINITION_NAMES,
)
from veiled_perps.domain.errors import DecryptionFailedError, PerpsError
from veiled_perps.domain.models import (
    CloseOutput,
    ComputationOutput,
    ComputationRequest,
    EncryptedStateOutput,
    LiquidationOutput,
    PnlOutput,
)

from .circuits import (
    PositionState,
    circuit_calculate_pnl,
    circuit_check_liquidation,
    circuit_close_position,
    circuit_init_position,
    circuit_update_position,
)
from .interfaces import ComputationCallbackPort, ComputationQueuePort

logger = logging.getLogger(__name__)

ABORT_DECRYPTION_FAILED = "DECRYPTION_FAILED"
ABORT_UNKNOWN_DEFINITION = "UNKNOWN_DEFINITION"


@dataclass(frozen=True)
class ClusterProcessResult:
    """Outcome of processing one request.

    Attributes:
        computation_offset: Processed offset.
        accepted: Whether the ledger applied the callback.
        error_code: Rejection or abort reason when not accepted.
    """

    computation_offset: int
    accepted: bool
    error_code: str | None = None


class SimulatedMpcCluster(ComputationQueuePort):
    """Computation cluster simulated in process memory."""

    def __init__(self, keypair: KeyPair | None = None):
        """Initialize cluster with an optional fixed keypair.

        Args:
            keypair: Optional cluster keypair; generated when omitted.
        """

        self._keypair = keypair or crypto_generate_keypair()
        self._callback: ComputationCallbackPort | None = None
        self._queue: OrderedDict[int, ComputationRequest] = OrderedDict()

    @property
    def public_key(self) -> bytes:
        """Return the published cluster x25519 public key."""

        return self._keypair.public_key

    def cluster_attach(self, callback: ComputationCallbackPort) -> None:
        """Bind the ledger program that receives callbacks.

        Args:
            callback: Ledger callback surface.
        """

        self._callback = callback

    def queue_enqueue(self, request: ComputationRequest) -> None:
        """Queue a request keyed by its computation offset.

        Args:
            request: Encrypted computation request forwarded by the ledger program.
        """

        self._queue[request.computation_offset] = request

    def cluster_pending_offsets(self) -> list[int]:
        """Return queued offsets in arrival order."""

        return list(self._queue.keys())

    def cluster_process(self, computation_offset: int) -> ClusterProcessResult:
        """Run one queued computation and deliver its callback.

        A ledger rejection is logged and reported in the result; the ledger
        has already recorded the failure for that offset.

        Args:
            computation_offset: Offset to process.

        Returns:
            ClusterProcessResult: Callback outcome.

        Raises:
            KeyError: Raised when the offset is not queued.
            RuntimeError: Raised when no ledger program is attached.
        """

        callback = self._cluster_require_callback()
        request = self._queue.pop(computation_offset)
        if request.definition_name not in COMPUTATION_DEFINITION_NAMES:
            callback.program_abort_computation(computation_offset, ABORT_UNKNOWN_DEFINITION)
            return ClusterProcessResult(computation_offset, accepted=False, error_code=ABORT_UNKNOWN_DEFINITION)
        try:
            output = self._cluster_execute(request)
        except DecryptionFailedError as error:
            logger.warning(
                "computation aborted: %s",
                error,
                extra={"computation_offset": computation_offset},
            )
            callback.program_abort_computation(computation_offset, ABORT_DECRYPTION_FAILED)
            return ClusterProcessResult(computation_offset, accepted=False, error_code=ABORT_DECRYPTION_FAILED)

        try:
            callback.program_finalize_computation(computation_offset, output)
        except PerpsError as error:
            reason_code = getattr(error, "reason_code", None) or error.error_code
            logger.warning(
                "ledger rejected computation callback: %s",
                error,
                extra={"computation_offset": computation_offset},
            )
            return ClusterProcessResult(computation_offset, accepted=False, error_code=reason_code)
        return ClusterProcessResult(computation_offset, accepted=True)

    def cluster_process_all(self) -> list[ClusterProcessResult]:
        """Process every queued request in arrival order."""

        return [self.cluster_process(offset) for offset in list(self._queue.keys())]

    async def cluster_serve(self, stop_event: asyncio.Event, interval_seconds: float = 0.05) -> None:
        """Process queued requests until `stop_event` is set.

        Args:
            stop_event: Event ending the loop.
            interval_seconds: Idle wait between queue scans.
        """

        while not stop_event.is_set():
            for offset in list(self._queue.keys()):
                try:
                    self.cluster_process(offset)
                except PerpsError:
                    logger.exception("computation callback failed", extra={"computation_offset": offset})
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
            except asyncio.TimeoutError:
                continue

    def cluster_abort(self, computation_offset: int, reason_code: str) -> None:
        """Drop one queued request and report an abort to the ledger.

        Args:
            computation_offset: Offset to abort.
            reason_code: Abort reason.

        Raises:
            KeyError: Raised when the offset is not queued.
        """

        callback = self._cluster_require_callback()
        self._queue.pop(computation_offset)
        callback.program_abort_computation(computation_offset, reason_code)

    def cluster_deliver(self, computation_offset: int, output: ComputationOutput) -> None:
        """Deliver an arbitrary output for a queued offset.

        Used to replay or forge callbacks against the ledger's consistency checks.

        Raises:
            ConsistencyError: Raised when the ledger rejects the output.
        """

        callback = self._cluster_require_callback()
        self._queue.pop(computation_offset, None)
        callback.program_finalize_computation(computation_offset, output)

    def cluster_compute(self, computation_offset: int) -> ComputationOutput:
        """Compute the output for a queued offset without delivering it.

        Raises:
            KeyError: Raised when the offset is not queued.
        """

        return self._cluster_execute(self._queue[computation_offset])

    def _cluster_require_callback(self) -> ComputationCallbackPort:
        if self._callback is None:
            raise RuntimeError("cluster is not attached to a ledger program")
        return self._callback

    def _cluster_execute(self, request: ComputationRequest) -> ComputationOutput:
        arguments = request.plaintext_arguments
        definition_name = request.definition_name

        if definition_name == COMP_DEF_INIT_POSITION:
            side, size_usd, collateral, entry_price = self._cluster_decrypt_inputs(request)
            status, state = circuit_init_position(
                side=side,
                size_usd=size_usd,
                collateral=collateral,
                entry_price=entry_price,
                collateral_price=arguments["collateral_price"],
            )
            return self._cluster_encrypt_state(request, status, state)

        state = self._cluster_decrypt_state(request)
        if definition_name == COMP_DEF_UPDATE_POSITION:
            amount, is_add = self._cluster_decrypt_inputs(request)
            status, new_state = circuit_update_position(
                state=state,
                amount=amount,
                is_add=bool(is_add),
                is_add_asserted=arguments["is_add"],
                max_leverage=arguments["max_leverage"],
                collateral_price=arguments["collateral_price"],
            )
            return self._cluster_encrypt_state(request, status, new_state)

        if definition_name == COMP_DEF_CALCULATE_PNL:
            valuation = circuit_calculate_pnl(state, arguments["current_price"], arguments["collateral_price"])
            return PnlOutput(
                profit_usd=valuation.profit_usd,
                loss_usd=valuation.loss_usd,
                current_leverage=valuation.current_leverage,
            )

        if definition_name == COMP_DEF_CLOSE_POSITION:
            settlement = circuit_close_position(
                state,
                exit_price=arguments["current_price"],
                collateral_price=arguments["collateral_price"],
                fee_bps=arguments["fee_bps"],
            )
            return CloseOutput(
                profit_usd=settlement.profit_usd,
                loss_usd=settlement.loss_usd,
                transfer_amount=settlement.transfer_amount,
                fee_amount=settlement.fee_amount,
            )

        if definition_name == COMP_DEF_CHECK_LIQUIDATION:
            check = circuit_check_liquidation(
                state,
                current_price=arguments["current_price"],
                collateral_price=arguments["collateral_price"],
                max_leverage=arguments["max_leverage"],
                liquidation_fee_bps=arguments["fee_bps"],
            )
            return LiquidationOutput(
                is_liquidatable=check.is_liquidatable,
                liquidator_reward=check.liquidator_reward,
                owner_amount=check.owner_amount,
            )

        raise ValueError(f"unknown computation definition {definition_name}")

    def _cluster_decrypt_inputs(self, request: ComputationRequest) -> list[int]:
        if request.caller_public_key is None:
            raise DecryptionFailedError("computation request carries no caller key")
        shared_secret = crypto_derive_shared_secret(self._keypair.private_key, request.caller_public_key)
        return crypto_decrypt_fields(shared_secret, crypto_nonce_from_int(request.input_nonce), request.encrypted_inputs)

    def _cluster_decrypt_state(self, request: ComputationRequest) -> PositionState:
        if request.owner_encryption_key is None:
            raise DecryptionFailedError("computation request carries no owner key")
        shared_secret = crypto_derive_shared_secret(self._keypair.private_key, request.owner_encryption_key)
        values = crypto_decrypt_fields(
            shared_secret,
            crypto_nonce_from_int(request.position_nonce),
            request.position_ciphertexts,
        )
        return PositionState.from_fields(values)

    def _cluster_encrypt_state(self, request: ComputationRequest, status: int, state: PositionState) -> EncryptedStateOutput:
        owner_key = request.owner_encryption_key or request.caller_public_key
        if owner_key is None:
            raise DecryptionFailedError("computation request carries no owner key")
        shared_secret = crypto_derive_shared_secret(self._keypair.private_key, owner_key)
        ciphertexts = crypto_encrypt_fields(shared_secret, crypto_nonce_from_int(request.output_nonce), state.as_fields())
        return EncryptedStateOutput(status=status, ciphertexts=tuple(ciphertexts), nonce=request.output_nonce)
