"""Typed interfaces for external collaborators of the ledger program."""

from __future__ import annotations

from typing import Any, Protocol

from veiled_perps.domain.models import ComputationOutput, ComputationRequest


class TokenCustodyPort(Protocol):
    """Port definition for fungible token mints, accounts and transfers."""

    def token_create_mint(self, mint_id: str, authority: str) -> None:
        """Register a new mint.

        Args:
            mint_id: Mint identifier.
            authority: Identity allowed to mint.

        Raises:
            InvalidConfigError: Raised when the mint already exists.
        """

    def token_create_account(self, account_id: str, mint_id: str, owner: str) -> None:
        """Register a token account for one mint.

        Args:
            account_id: Account identifier.
            mint_id: Mint the account holds.
            owner: Account owner identity.

        Raises:
            InvalidConfigError: Raised when the account exists or the mint is unknown.
        """

    def token_mint_to(self, mint_id: str, account_id: str, amount: int) -> None:
        """Mint new tokens into an account.

        Raises:
            InvalidConfigError: Raised when mint and account do not match.
        """

    def token_transfer(self, source_account: str, destination_account: str, amount: int) -> None:
        """Move tokens between two accounts of the same mint.

        Raises:
            InsufficientFundsError: Raised when the source balance is too low.
            InvalidConfigError: Raised when accounts are unknown or hold different mints.
        """

    def token_burn(self, account_id: str, amount: int) -> None:
        """Burn tokens from an account.

        Raises:
            InsufficientFundsError: Raised when the balance is too low.
        """

    def token_balance(self, account_id: str) -> int:
        """Return the balance of one account.

        Raises:
            InvalidConfigError: Raised when the account is unknown.
        """

    def token_account_exists(self, account_id: str) -> bool:
        """Return whether an account is registered."""

    def token_account_owner(self, account_id: str) -> str:
        """Return the owner identity of one account."""

    def token_snapshot(self) -> Any:
        """Return an opaque snapshot of all balances for transaction rollback."""

    def token_restore(self, snapshot: Any) -> None:
        """Restore balances captured by `token_snapshot`."""


class ClusterKeySourcePort(Protocol):
    """Port definition for reading the cluster's published public key."""

    def cluster_key_fetch(self) -> bytes:
        """Return the published cluster public key.

        Returns:
            bytes: 32-byte x25519 public key.

        Raises:
            KeyUnavailableError: Raised when the key account is absent or unreachable.
        """


class ComputationQueuePort(Protocol):
    """Port definition for forwarding encrypted computations to the cluster."""

    def queue_enqueue(self, request: ComputationRequest) -> None:
        """Accept one computation request keyed by its offset.

        Args:
            request: Encrypted computation request.
        """


class ComputationCallbackPort(Protocol):
    """Port definition for the ledger callbacks the cluster invokes."""

    def program_finalize_computation(self, computation_offset: int, output: ComputationOutput) -> Any:
        """Apply a computation result.

        Raises:
            ConsistencyError: Raised when the result contradicts ledger state.
            ComputationFailedError: Raised when the result is rejected.
        """

    def program_abort_computation(self, computation_offset: int, reason_code: str) -> Any:
        """Record a cluster-side abort.

        Raises:
            DuplicateFinalizationError: Raised when the offset is already resolved.
        """
