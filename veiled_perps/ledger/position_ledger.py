"""Authoritative encrypted position records and their nonce-guarded transitions."""

from __future__ import annotations

import logging
from collections.abc import MutableMapping, Sequence

from veiled_perps.domain.constants import CIPHERTEXT_SIZE, POSITION_FIELD_COUNT, ZERO_CIPHERTEXT
from veiled_perps.domain.errors import (
    ConsistencyError,
    InvalidConfigError,
    NonceMismatchError,
    NonceReuseError,
    PermissionDeniedError,
    PositionInactiveError,
    PositionNotFoundError,
    ZeroCiphertextError,
)
from veiled_perps.domain.models import PositionBacking, PositionRecord

logger = logging.getLogger(__name__)


class PositionLedger:
    """Create, read and advance position records.

    Ciphertexts and the nonce change only through `position_apply_state`,
    which requires the caller to present the nonce it observed at
    submission time. Each record has a `PositionBacking` kept beside it
    for custody bookkeeping; backings are never handed to the record sink.
    """

    def __init__(
        self,
        positions: MutableMapping[str, PositionRecord],
        backings: MutableMapping[str, PositionBacking],
    ):
        """Initialize ledger over position and backing mappings.

        Args:
            positions: Mutable mapping of position id to record, owned by the ledger program.
            backings: Mutable mapping of position id to custody backing, owned by the ledger program.

        Raises:
            ValueError: Raised when a mapping is None.
        """

        if positions is None:
            raise ValueError("positions must not be None")
        if backings is None:
            raise ValueError("backings must not be None")
        self._positions = positions
        self._backings = backings

    def position_create_pending(
        self,
        position_id: str,
        owner: str,
        pool_id: str,
        custody_id: str,
        collateral_custody_id: str,
        owner_encryption_key: bytes,
        owner_token_account: str,
        now: int,
    ) -> PositionRecord:
        """Create an inactive position with uninitialized ciphertexts and an empty backing.

        Args:
            position_id: Derived position identifier.
            owner: Owner identity.
            pool_id: Pool reference.
            custody_id: Traded asset custody.
            collateral_custody_id: Collateral custody.
            owner_encryption_key: Key the cluster encrypts position state for.
            owner_token_account: Account that receives the owner share of a liquidation.
            now: Unix time in seconds.

        Returns:
            PositionRecord: Newly created record.

        Raises:
            InvalidConfigError: Raised when the position id is already taken.
        """

        if position_id in self._positions:
            raise InvalidConfigError(f"position {position_id} already exists", "POSITION_EXISTS")

        record = PositionRecord(
            position_id=position_id,
            owner=owner,
            pool_id=pool_id,
            custody_id=custody_id,
            collateral_custody_id=collateral_custody_id,
            owner_encryption_key=owner_encryption_key,
            open_time=now,
            update_time=now,
        )
        self._positions[position_id] = record
        self._backings[position_id] = PositionBacking(position_id=position_id, owner_token_account=owner_token_account)
        return record

    def position_get(self, position_id: str) -> PositionRecord:
        """Return one position record.

        Raises:
            PositionNotFoundError: Raised when no such position exists.
        """

        record = self._positions.get(position_id)
        if record is None:
            raise PositionNotFoundError(f"position {position_id} does not exist")
        return record

    def position_get_backing(self, position_id: str) -> PositionBacking:
        """Return the custody backing of one position.

        Raises:
            PositionNotFoundError: Raised when no such position exists.
        """

        backing = self._backings.get(position_id)
        if backing is None:
            raise PositionNotFoundError(f"position {position_id} does not exist")
        return backing

    def position_require_active(self, position_id: str, owner: str | None = None) -> PositionRecord:
        """Return an active position, optionally checking ownership.

        Args:
            position_id: Position identifier.
            owner: Identity that must own the position, when given.

        Returns:
            PositionRecord: Active record.

        Raises:
            PositionNotFoundError: Raised when no such position exists.
            PositionInactiveError: Raised when the position is closed or not yet opened.
            PermissionDeniedError: Raised when `owner` does not own the position.
        """

        record = self.position_get(position_id)
        if not record.is_active:
            raise PositionInactiveError(f"position {position_id} is not active")
        if owner is not None and record.owner != owner:
            raise PermissionDeniedError(f"{owner} does not own position {position_id}")
        return record

    def position_list(self) -> list[PositionRecord]:
        """Return all position records in creation order."""

        return list(self._positions.values())

    def position_check_submission_nonces(self, record: PositionRecord, input_nonce: int, output_nonce: int) -> None:
        """Reject output nonces that would repeat a known nonce.

        Raises:
            NonceReuseError: Raised when the output nonce is zero, equals the input
                nonce, or equals the current position nonce.
        """

        if output_nonce == 0:
            raise NonceReuseError("output nonce must be non-zero")
        if output_nonce == input_nonce:
            raise NonceReuseError("output nonce must differ from the input nonce")
        if output_nonce == record.nonce:
            raise NonceReuseError(f"output nonce repeats the current nonce of position {record.position_id}")

    def position_validate_state_output(
        self,
        record: PositionRecord,
        expected_nonce: int,
        requested_nonce: int,
        ciphertexts: Sequence[bytes],
        output_nonce: int,
    ) -> None:
        """Check a cluster state output before it is applied.

        Args:
            record: Target position.
            expected_nonce: Position nonce observed when the computation was queued.
            requested_nonce: Output nonce the submitter asked the cluster to use.
            ciphertexts: Output ciphertexts.
            output_nonce: Nonce the output claims.

        Raises:
            NonceMismatchError: Raised when the position advanced since submission or
                the output nonce does not match the requested one.
            ZeroCiphertextError: Raised when any output field is all-zero.
            ConsistencyError: Raised when the output shape is malformed.
        """

        if record.nonce != expected_nonce:
            raise NonceMismatchError(
                f"position {record.position_id} nonce advanced since submission; stale finalization rejected"
            )
        if output_nonce != requested_nonce or output_nonce == record.nonce:
            raise NonceMismatchError(f"output nonce for position {record.position_id} does not match the requested nonce")
        if len(ciphertexts) != POSITION_FIELD_COUNT:
            raise ConsistencyError(
                f"expected {POSITION_FIELD_COUNT} ciphertexts, got {len(ciphertexts)}",
                "MALFORMED_OUTPUT",
            )
        for value in ciphertexts:
            if len(value) != CIPHERTEXT_SIZE:
                raise ConsistencyError(f"ciphertext must be {CIPHERTEXT_SIZE} bytes", "MALFORMED_OUTPUT")
            if value == ZERO_CIPHERTEXT:
                raise ZeroCiphertextError(f"output for position {record.position_id} contains an all-zero ciphertext")

    def position_apply_state(
        self,
        record: PositionRecord,
        ciphertexts: Sequence[bytes],
        nonce: int,
        now: int,
        activate: bool = False,
    ) -> None:
        """Write validated ciphertexts and advance the nonce."""

        (
            record.side_ciphertext,
            record.size_usd_ciphertext,
            record.collateral_ciphertext,
            record.entry_price_ciphertext,
            record.leverage_ciphertext,
        ) = tuple(ciphertexts)
        record.nonce = nonce
        record.update_time = now
        if activate:
            record.is_active = True
        logger.debug("position state advanced", extra={"position_id": record.position_id})

    def position_deactivate(self, record: PositionRecord, now: int) -> None:
        """Flip a position inactive and clear its backing; the record is kept for audit.

        Raises:
            PositionInactiveError: Raised when the position is already inactive.
        """

        if not record.is_active:
            raise PositionInactiveError(f"position {record.position_id} is not active")
        record.is_active = False
        backing = self.position_get_backing(record.position_id)
        backing.locked_amount = 0
        backing.deposited_collateral = 0
        record.update_time = now
