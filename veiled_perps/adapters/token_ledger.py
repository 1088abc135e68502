"""In-memory fungible token ledger backing custody and LP accounts."""

from __future__ import annotations

from dataclasses import dataclass

from veiled_perps.domain.errors import InsufficientFundsError, InvalidConfigError

from .interfaces import TokenCustodyPort


@dataclass
class _TokenAccount:
    mint_id: str
    owner: str
    balance: int = 0


class InMemoryTokenLedger(TokenCustodyPort):
    """Token mints and accounts kept in process memory.

    Snapshots are plain dictionaries of balances and supplies, so the ledger
    program can roll back every token movement of a rejected transaction.
    """

    def __init__(self):
        self._mint_authorities: dict[str, str] = {}
        self._mint_supplies: dict[str, int] = {}
        self._accounts: dict[str, _TokenAccount] = {}

    def token_create_mint(self, mint_id: str, authority: str) -> None:
        """Register a mint with zero supply.

        Raises:
            InvalidConfigError: Raised when the mint already exists.
        """

        if mint_id in self._mint_authorities:
            raise InvalidConfigError(f"mint {mint_id} already exists")
        self._mint_authorities[mint_id] = authority
        self._mint_supplies[mint_id] = 0

    def token_create_account(self, account_id: str, mint_id: str, owner: str) -> None:
        """Open an empty account for one mint.

        Args:
            account_id: New account identifier.
            mint_id: Mint the account holds.
            owner: Identity allowed to spend from the account.

        Raises:
            InvalidConfigError: Raised when the account exists or the mint is unknown.
        """

        if account_id in self._accounts:
            raise InvalidConfigError(f"token account {account_id} already exists")
        if mint_id not in self._mint_authorities:
            raise InvalidConfigError(f"mint {mint_id} does not exist")
        self._accounts[account_id] = _TokenAccount(mint_id=mint_id, owner=owner)

    def token_mint_to(self, mint_id: str, account_id: str, amount: int) -> None:
        """Create new tokens in an account and grow the mint supply.

        Raises:
            InvalidConfigError: Raised when the account is unknown, holds another mint, or amount is negative.
        """

        account = self._token_get_account(account_id)
        if account.mint_id != mint_id:
            raise InvalidConfigError(f"token account {account_id} does not hold mint {mint_id}")
        _token_require_amount(amount)
        account.balance += amount
        self._mint_supplies[mint_id] += amount

    def token_transfer(self, source_account: str, destination_account: str, amount: int) -> None:
        """Move tokens between two accounts of the same mint.

        Args:
            source_account: Debited account.
            destination_account: Credited account.
            amount: Token amount in base units.

        Raises:
            InvalidConfigError: Raised when an account is unknown, mints differ, or amount is negative.
            InsufficientFundsError: Raised when the source balance is below `amount`.
        """

        source = self._token_get_account(source_account)
        destination = self._token_get_account(destination_account)
        if source.mint_id != destination.mint_id:
            raise InvalidConfigError("token transfer between different mints")
        _token_require_amount(amount)
        if source.balance < amount:
            raise InsufficientFundsError(
                f"token account {source_account} balance {source.balance} is below transfer amount {amount}"
            )
        source.balance -= amount
        destination.balance += amount

    def token_burn(self, account_id: str, amount: int) -> None:
        """Destroy tokens held in an account and shrink the mint supply.

        Raises:
            InvalidConfigError: Raised when the account is unknown or amount is negative.
            InsufficientFundsError: Raised when the balance is below `amount`.
        """

        account = self._token_get_account(account_id)
        _token_require_amount(amount)
        if account.balance < amount:
            raise InsufficientFundsError(f"token account {account_id} balance {account.balance} is below burn amount {amount}")
        account.balance -= amount
        self._mint_supplies[account.mint_id] -= amount

    def token_balance(self, account_id: str) -> int:
        """Return the balance of one account.

        Raises:
            InvalidConfigError: Raised when the account is unknown.
        """

        return self._token_get_account(account_id).balance

    def token_account_exists(self, account_id: str) -> bool:
        """Return whether an account was created."""

        return account_id in self._accounts

    def token_account_owner(self, account_id: str) -> str:
        """Return the owner identity of one account.

        Raises:
            InvalidConfigError: Raised when the account is unknown.
        """

        return self._token_get_account(account_id).owner

    def token_supply(self, mint_id: str) -> int:
        """Return the circulating supply of one mint.

        Raises:
            InvalidConfigError: Raised when the mint is unknown.
        """

        if mint_id not in self._mint_supplies:
            raise InvalidConfigError(f"mint {mint_id} does not exist")
        return self._mint_supplies[mint_id]

    def token_snapshot(self) -> dict[str, dict[str, int]]:
        """Capture balances, supplies, accounts and mints for a later restore.

        Returns:
            dict[str, dict[str, int]]: Plain-dictionary copy of the whole token state.
        """

        return {
            "balances": {account_id: account.balance for account_id, account in self._accounts.items()},
            "supplies": dict(self._mint_supplies),
            "accounts": {account_id: (account.mint_id, account.owner) for account_id, account in self._accounts.items()},
            "mints": dict(self._mint_authorities),
        }

    def token_restore(self, snapshot: dict[str, dict]) -> None:
        """Replace the token state with one captured by `token_snapshot`."""

        self._mint_authorities = dict(snapshot["mints"])
        self._mint_supplies = dict(snapshot["supplies"])
        self._accounts = {
            account_id: _TokenAccount(mint_id=mint_id, owner=owner, balance=snapshot["balances"][account_id])
            for account_id, (mint_id, owner) in snapshot["accounts"].items()
        }

    def _token_get_account(self, account_id: str) -> _TokenAccount:
        account = self._accounts.get(account_id)
        if account is None:
            raise InvalidConfigError(f"token account {account_id} does not exist")
        return account


def _token_require_amount(amount: int) -> None:
    if amount < 0:
        raise InvalidConfigError("token amount must be >= 0")
