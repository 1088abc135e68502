"""Custody asset bookkeeping synchronized with position transitions.

Token balance of a custody token account always equals
`collateral + owned + protocol_fees` of its custody record; every method
here moves tokens and adjusts the matching totals together.
"""

from __future__ import annotations

import logging

from veiled_perps.adapters.interfaces import TokenCustodyPort
from veiled_perps.domain.constants import BPS_POWER, RATE_POWER, SECONDS_PER_HOUR
from veiled_perps.domain.errors import (
    ConsistencyError,
    InsufficientAmountReturnedError,
    InsufficientLiquidityError,
    InvalidConfigError,
    UtilizationExceededError,
)
from veiled_perps.domain.models import (
    BorrowRateParams,
    CustodyEscrow,
    CustodyRecord,
    Fees,
    OracleParams,
    OracleType,
    PricingParams,
)

logger = logging.getLogger(__name__)

FEE_OPEN_POSITION = "open_position"
FEE_CLOSE_POSITION = "close_position"
FEE_LIQUIDATION = "liquidation"
FEE_ADD_LIQUIDITY = "add_liquidity"
FEE_REMOVE_LIQUIDITY = "remove_liquidity"


def custody_validate_params(
    oracle: OracleParams,
    pricing: PricingParams,
    fees: Fees,
    borrow_rate: BorrowRateParams,
) -> None:
    """Validate custody parameters before registration.

    Raises:
        InvalidConfigError: Raised when any parameter is out of range.
    """

    fee_values = {
        "open_position": fees.open_position,
        "close_position": fees.close_position,
        "liquidation": fees.liquidation,
        "protocol_share": fees.protocol_share,
        "add_liquidity": fees.add_liquidity,
        "remove_liquidity": fees.remove_liquidity,
    }
    for fee_name, fee_value in fee_values.items():
        if fee_value < 0 or fee_value > BPS_POWER:
            raise InvalidConfigError(f"fee {fee_name} must be within [0, {BPS_POWER}] bps")

    if pricing.min_initial_leverage < BPS_POWER:
        raise InvalidConfigError("min_initial_leverage must be >= 10000 bps")
    if not pricing.min_initial_leverage <= pricing.max_initial_leverage <= pricing.max_leverage:
        raise InvalidConfigError("leverage bounds must satisfy min_initial <= max_initial <= max_leverage")
    if not 0 <= pricing.trade_spread_long < BPS_POWER or not 0 <= pricing.trade_spread_short < BPS_POWER:
        raise InvalidConfigError("trade spreads must be within [0, 10000) bps")
    if not 0 <= pricing.max_utilization <= BPS_POWER:
        raise InvalidConfigError("max_utilization must be within [0, 10000] bps")

    if oracle.oracle_type is not OracleType.NONE:
        if not oracle.oracle_authority.strip():
            raise InvalidConfigError("oracle_authority must not be blank")
        if oracle.max_price_age_sec <= 0:
            raise InvalidConfigError("max_price_age_sec must be > 0")
        if oracle.max_price_error < 0:
            raise InvalidConfigError("max_price_error must be >= 0")

    if not 0 < borrow_rate.optimal_utilization < RATE_POWER:
        raise InvalidConfigError("optimal_utilization must be within (0, RATE_POWER)")
    if min(borrow_rate.base_rate, borrow_rate.slope1, borrow_rate.slope2) < 0:
        raise InvalidConfigError("borrow rate parameters must be >= 0")


def custody_utilization_bps(custody: CustodyRecord) -> int:
    """Return `locked / owned` in basis points, or 0 when nothing is owned."""

    if custody.assets.owned <= 0:
        return 0
    return custody.assets.locked * BPS_POWER // custody.assets.owned


def custody_min_owned(custody: CustodyRecord, locked: int | None = None) -> int:
    """Return the smallest `owned` that keeps locked funds within the utilization cap.

    A `max_utilization` of 0 or 10000 caps only at `owned >= locked`.

    Args:
        custody: Custody record.
        locked: Optional locked amount to evaluate instead of the current one.

    Returns:
        int: Minimum owned amount.
    """

    locked_amount = custody.assets.locked if locked is None else locked
    max_utilization = custody.pricing.max_utilization
    if max_utilization <= 0 or max_utilization >= BPS_POWER:
        return locked_amount
    return -(-locked_amount * BPS_POWER // max_utilization)


def custody_check_invariants(custody: CustodyRecord, token_balance: int) -> None:
    """Assert asset totals are consistent with the cap and the token account.

    Raises:
        ConsistencyError: Raised when any invariant is broken.
    """

    assets = custody.assets
    if min(assets.collateral, assets.owned, assets.locked, assets.protocol_fees) < 0:
        raise ConsistencyError(f"custody {custody.custody_id} has negative asset totals", "CUSTODY_INVARIANT")
    if assets.locked > assets.owned:
        raise ConsistencyError(f"custody {custody.custody_id} locked exceeds owned", "CUSTODY_INVARIANT")
    if assets.owned < custody_min_owned(custody):
        raise ConsistencyError(f"custody {custody.custody_id} utilization exceeds cap", "CUSTODY_INVARIANT")
    if token_balance != assets.collateral + assets.owned + assets.protocol_fees:
        raise ConsistencyError(f"custody {custody.custody_id} token balance does not match asset totals", "CUSTODY_INVARIANT")


class CustodyAccounting:
    """Token movements and asset bookkeeping for custodies."""

    def __init__(self, tokens: TokenCustodyPort):
        """Initialize custody accounting.

        Args:
            tokens: Token custody port.

        Raises:
            ValueError: Raised when tokens is None.
        """

        if tokens is None:
            raise ValueError("tokens must not be None")
        self._tokens = tokens

    def accounting_lock_funds(self, custody: CustodyRecord, amount: int, now: int) -> None:
        """Reserve liquidity for a position payoff.

        Raises:
            UtilizationExceededError: Raised when the lock breaks the utilization cap.
            InsufficientLiquidityError: Raised when locked would exceed owned.
        """

        new_locked = custody.assets.locked + amount
        if new_locked > custody.assets.owned:
            raise InsufficientLiquidityError(f"custody {custody.custody_id} cannot lock {amount}: owned {custody.assets.owned}")
        if custody.assets.owned < custody_min_owned(custody, new_locked):
            raise UtilizationExceededError(
                f"custody {custody.custody_id} locking {amount} would exceed {custody.pricing.max_utilization} bps utilization"
            )

        self.accounting_update_borrow_rate(custody, now)
        custody.assets.locked = new_locked
        self.accounting_update_borrow_rate(custody, now)

    def accounting_unlock_funds(self, custody: CustodyRecord, amount: int, now: int) -> None:
        """Release reserved liquidity, flooring at zero."""

        self.accounting_update_borrow_rate(custody, now)
        custody.assets.locked = max(0, custody.assets.locked - amount)
        self.accounting_update_borrow_rate(custody, now)

    def accounting_cumulative_interest(self, custody: CustodyRecord, now: int) -> int:
        """Return cumulative interest accrued up to `now`."""

        state = custody.borrow_rate_state
        if now > state.last_update:
            return state.cumulative_interest + (now - state.last_update) * state.current_rate // SECONDS_PER_HOUR
        return state.cumulative_interest

    def accounting_update_borrow_rate(self, custody: CustodyRecord, now: int) -> None:
        """Accrue interest and recompute the hourly rate from utilization."""

        state = custody.borrow_rate_state
        if custody.assets.owned == 0:
            state.current_rate = 0
            state.last_update = max(now, state.last_update)
            return

        if now > state.last_update:
            state.cumulative_interest = self.accounting_cumulative_interest(custody, now)
            state.last_update = now

        curve = custody.borrow_rate
        utilization = custody.assets.locked * RATE_POWER // custody.assets.owned
        if utilization < curve.optimal_utilization:
            hourly_rate = utilization * curve.slope1 // curve.optimal_utilization
        else:
            excess_utilization = utilization - curve.optimal_utilization
            hourly_rate = curve.slope1 + excess_utilization * curve.slope2 // (RATE_POWER - curve.optimal_utilization)
        state.current_rate = hourly_rate + curve.base_rate

    def accounting_collect_fee(self, custody: CustodyRecord, fee_amount: int, fee_kind: str) -> int:
        """Book a fee already sitting in the custody token account outside any total.

        The protocol share goes to `protocol_fees`; the rest accrues to LPs in `owned`.

        Returns:
            int: Protocol share of the fee.
        """

        protocol_part = fee_amount * custody.fees.protocol_share // BPS_POWER
        custody.assets.protocol_fees += protocol_part
        custody.assets.owned += fee_amount - protocol_part
        _accounting_add_stat(custody.statistics.collected_fees, fee_kind, fee_amount)
        return protocol_part

    def accounting_add_liquidity(
        self,
        custody: CustodyRecord,
        lp_mint: str,
        funding_account: str,
        lp_token_account: str,
        amount_in: int,
        min_lp_amount_out: int,
        now: int,
    ) -> tuple[int, int]:
        """Deposit liquidity and mint LP tokens 1:1 with the amount net of fee.

        Returns:
            tuple[int, int]: Fee amount and LP tokens minted.

        Raises:
            InvalidConfigError: Raised when the amount is not positive.
            InsufficientAmountReturnedError: Raised when LP output is below `min_lp_amount_out`.
            InsufficientFundsError: Raised when the funding balance is too low.
        """

        if amount_in <= 0:
            raise InvalidConfigError("amount_in must be > 0")
        fee_amount = amount_in * custody.fees.add_liquidity // BPS_POWER
        lp_amount_out = amount_in - fee_amount
        if lp_amount_out < min_lp_amount_out:
            raise InsufficientAmountReturnedError(f"lp output {lp_amount_out} is below minimum {min_lp_amount_out}")

        self._tokens.token_transfer(funding_account, custody.token_account, amount_in)
        custody.assets.owned += lp_amount_out
        self.accounting_collect_fee(custody, fee_amount, FEE_ADD_LIQUIDITY)
        _accounting_add_stat(custody.statistics.volume, FEE_ADD_LIQUIDITY, amount_in)
        self._tokens.token_mint_to(lp_mint, lp_token_account, lp_amount_out)
        self.accounting_update_borrow_rate(custody, now)
        return fee_amount, lp_amount_out

    def accounting_remove_liquidity(
        self,
        custody: CustodyRecord,
        lp_token_account: str,
        receiving_account: str,
        lp_amount_in: int,
        min_amount_out: int,
        now: int,
    ) -> tuple[int, int]:
        """Burn LP tokens and pay out the amount net of fee.

        Returns:
            tuple[int, int]: Fee amount and tokens paid out.

        Raises:
            InvalidConfigError: Raised when the amount is not positive.
            InsufficientAmountReturnedError: Raised when the payout is below `min_amount_out`.
            InsufficientLiquidityError: Raised when the payout would leave owned below locked.
            UtilizationExceededError: Raised when the payout would break the utilization cap.
        """

        if lp_amount_in <= 0:
            raise InvalidConfigError("lp_amount_in must be > 0")
        fee_amount = lp_amount_in * custody.fees.remove_liquidity // BPS_POWER
        amount_out = lp_amount_in - fee_amount
        if amount_out < min_amount_out:
            raise InsufficientAmountReturnedError(f"output {amount_out} is below minimum {min_amount_out}")

        protocol_part = fee_amount * custody.fees.protocol_share // BPS_POWER
        owned_after = custody.assets.owned - amount_out - protocol_part
        if owned_after < custody.assets.locked:
            raise InsufficientLiquidityError(
                f"custody {custody.custody_id} cannot release {amount_out}: locked {custody.assets.locked}"
            )
        if owned_after < custody_min_owned(custody):
            raise UtilizationExceededError(f"custody {custody.custody_id} withdrawal would exceed the utilization cap")

        self._tokens.token_burn(lp_token_account, lp_amount_in)
        self._tokens.token_transfer(custody.token_account, receiving_account, amount_out)
        custody.assets.owned = owned_after
        custody.assets.protocol_fees += protocol_part
        _accounting_add_stat(custody.statistics.collected_fees, FEE_REMOVE_LIQUIDITY, fee_amount)
        _accounting_add_stat(custody.statistics.volume, FEE_REMOVE_LIQUIDITY, lp_amount_in)
        self.accounting_update_borrow_rate(custody, now)
        return fee_amount, amount_out

    def accounting_escrow_deposit(self, custody: CustodyRecord, escrow: CustodyEscrow, amount: int, fee_amount: int) -> None:
        """Move a position deposit and its open fee into the custody and record them on the escrow.

        Raises:
            InsufficientFundsError: Raised when the funding balance is too low.
        """

        total_amount = amount + fee_amount
        if total_amount > 0:
            self._tokens.token_transfer(escrow.funding_account, custody.token_account, total_amount)
        custody.assets.collateral += total_amount
        escrow.deposited_amount += amount
        escrow.fee_amount += fee_amount

    def accounting_escrow_lock(self, custody: CustodyRecord, escrow: CustodyEscrow, amount: int, now: int) -> None:
        """Lock liquidity on behalf of an escrow."""

        self.accounting_lock_funds(custody, amount, now)
        escrow.locked_amount += amount

    def accounting_commit_escrow(self, custody: CustodyRecord, escrow: CustodyEscrow, fee_kind: str) -> None:
        """Finalize an escrow: deposits stay as collateral, the fee is booked."""

        if escrow.fee_amount:
            custody.assets.collateral -= escrow.fee_amount
            self.accounting_collect_fee(custody, escrow.fee_amount, fee_kind)

    def accounting_refund_escrow(self, custody: CustodyRecord, escrow: CustodyEscrow, now: int) -> bool:
        """Return an escrow's deposit and fee to the funder and release its lock.

        Refunds apply at most once per escrow.

        Returns:
            bool: Whether a refund was applied.
        """

        if escrow.refunded:
            return False

        total_amount = escrow.deposited_amount + escrow.fee_amount
        if total_amount > 0:
            self._tokens.token_transfer(custody.token_account, escrow.funding_account, total_amount)
            custody.assets.collateral -= total_amount
        if escrow.locked_amount > 0:
            self.accounting_unlock_funds(custody, escrow.locked_amount, now)
        escrow.refunded = True
        logger.info("escrow refunded: %s tokens, %s unlocked", total_amount, escrow.locked_amount)
        return True

    def accounting_record_volume(self, custody: CustodyRecord, volume_kind: str, amount_usd: int) -> None:
        """Add USD volume to the custody statistics under `volume_kind`."""

        _accounting_add_stat(custody.statistics.volume, volume_kind, amount_usd)

    def accounting_record_trade_result(self, custody: CustodyRecord, profit_usd: int, loss_usd: int) -> None:
        """Accumulate realized trader profit and loss on the custody statistics."""

        custody.statistics.profit_usd += profit_usd
        custody.statistics.loss_usd += loss_usd

    def accounting_withdraw_collateral(self, custody: CustodyRecord, receiving_account: str, amount: int) -> None:
        """Pay out part of a position's collateral."""

        if amount <= 0:
            return
        self._tokens.token_transfer(custody.token_account, receiving_account, amount)
        custody.assets.collateral -= amount

    def accounting_settle(
        self,
        custody: CustodyRecord,
        deposited_amount: int,
        payouts: list[tuple[str, int]],
        fee_amount: int,
        fee_kind: str,
    ) -> list[int]:
        """Release a position's collateral, pay settlement amounts and book the fee.

        Payouts are clamped in order to what the deposit plus the pool's free
        liquidity can cover, so `owned` never drops below the utilization floor.
        Whatever the deposit does not pay out accrues to the pool.

        Args:
            custody: Collateral custody.
            deposited_amount: Collateral tokens held for the position.
            payouts: Ordered `(account, token_amount)` pairs.
            fee_amount: Fee in tokens charged on the settlement.
            fee_kind: Statistics key of the fee.

        Returns:
            list[int]: Token amounts actually paid, in payout order.
        """

        free_liquidity = max(0, custody.assets.owned - custody_min_owned(custody))
        budget = deposited_amount + free_liquidity
        paid_amounts: list[int] = []
        for account, requested_amount in payouts:
            paid_amount = max(0, min(requested_amount, budget))
            budget -= paid_amount
            paid_amounts.append(paid_amount)
            if paid_amount > 0:
                self._tokens.token_transfer(custody.token_account, account, paid_amount)

        total_paid = sum(paid_amounts)
        protocol_part = min(fee_amount * custody.fees.protocol_share // BPS_POWER, budget)
        custody.assets.collateral -= deposited_amount
        custody.assets.owned += deposited_amount - total_paid - protocol_part
        custody.assets.protocol_fees += protocol_part
        _accounting_add_stat(custody.statistics.collected_fees, fee_kind, fee_amount)
        return paid_amounts


def _accounting_add_stat(statistics: dict[str, int], key: str, amount: int) -> None:
    statistics[key] = statistics.get(key, 0) + amount
