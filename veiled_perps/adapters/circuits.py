"""Reference arithmetic of the five position circuits.

These functions run inside the computation cluster on decrypted values.
All amounts are integers: USD and prices scaled by 10^6, leverage in basis
points. Division truncates toward zero as in the on-cluster arithmetic.
"""

from __future__ import annotations

from dataclasses import dataclass

from veiled_perps.domain.constants import BPS_POWER, PRICE_POWER, SIDE_LONG, SIDE_SHORT, UNBOUNDED_LEVERAGE

INIT_STATUS_OK = 0
INIT_STATUS_INVALID_SIDE = 1
INIT_STATUS_ZERO_SIZE = 2
INIT_STATUS_ZERO_COLLATERAL = 3
INIT_STATUS_ZERO_PRICE = 4

UPDATE_STATUS_OK = 0
UPDATE_STATUS_INSUFFICIENT_COLLATERAL = 1
UPDATE_STATUS_MAX_LEVERAGE = 2
UPDATE_STATUS_FLAG_MISMATCH = 3


@dataclass(frozen=True)
class PositionState:
    """Decrypted position state in ciphertext field order.

    Attributes:
        side: 1 long, 2 short.
        size_usd: Notional in USD.
        collateral: Collateral amount in tokens.
        entry_price: Entry price.
        leverage: Effective leverage in basis points.
    """

    side: int
    size_usd: int
    collateral: int
    entry_price: int
    leverage: int

    def as_fields(self) -> list[int]:
        """Return the five fields in ciphertext order."""

        return [self.side, self.size_usd, self.collateral, self.entry_price, self.leverage]

    @classmethod
    def from_fields(cls, values: list[int]) -> "PositionState":
        """Build a state from five decrypted fields in ciphertext order."""

        side, size_usd, collateral, entry_price, leverage = values
        return cls(side=side, size_usd=size_usd, collateral=collateral, entry_price=entry_price, leverage=leverage)


@dataclass(frozen=True)
class MarkToMarket:
    """Unrealized PnL of a position at one price, all in USD."""

    profit_usd: int
    loss_usd: int
    margin_usd: int
    current_leverage: int


@dataclass(frozen=True)
class LiquidationCheck:
    is_liquidatable: bool
    liquidator_reward: int
    owner_amount: int


@dataclass(frozen=True)
class CloseSettlement:
    profit_usd: int
    loss_usd: int
    transfer_amount: int
    fee_amount: int


def circuit_leverage_bps(size_usd: int, collateral: int, collateral_price: int) -> int:
    """Return leverage in basis points, or 0 when collateral has no value.

    Args:
        size_usd: Notional in USD.
        collateral: Collateral tokens.
        collateral_price: Collateral token price.

    Returns:
        int: `size_usd * 10000 / collateral_usd`.
    """

    collateral_usd = collateral * collateral_price // PRICE_POWER
    if collateral_usd <= 0:
        return 0
    return size_usd * BPS_POWER // collateral_usd


def circuit_init_position(
    side: int,
    size_usd: int,
    collateral: int,
    entry_price: int,
    collateral_price: int,
) -> tuple[int, PositionState]:
    """Validate open inputs and build the initial state.

    The last failing check wins the status code.

    Args:
        side: Requested side.
        size_usd: Requested notional.
        collateral: Deposited collateral tokens.
        entry_price: Caller-supplied entry price.
        collateral_price: Plaintext collateral oracle price.

    Returns:
        tuple[int, PositionState]: Status code and initial state.
    """

    status = INIT_STATUS_OK
    if side not in (SIDE_LONG, SIDE_SHORT):
        status = INIT_STATUS_INVALID_SIDE
    if size_usd == 0:
        status = INIT_STATUS_ZERO_SIZE
    if collateral == 0:
        status = INIT_STATUS_ZERO_COLLATERAL
    if entry_price == 0 or collateral_price == 0:
        status = INIT_STATUS_ZERO_PRICE

    state = PositionState(
        side=side,
        size_usd=size_usd,
        collateral=collateral,
        entry_price=entry_price,
        leverage=circuit_leverage_bps(size_usd, collateral, collateral_price),
    )
    return status, state


def circuit_update_position(
    state: PositionState,
    amount: int,
    is_add: bool,
    is_add_asserted: bool,
    max_leverage: int,
    collateral_price: int,
) -> tuple[int, PositionState]:
    """Apply a collateral delta and recompute leverage.

    The state is returned unchanged unless the status is OK.

    Args:
        state: Current state.
        amount: Encrypted delta.
        is_add: Encrypted direction flag.
        is_add_asserted: Plaintext direction flag the ledger moved tokens by.
        max_leverage: Custody liquidation threshold.
        collateral_price: Plaintext collateral oracle price.

    Returns:
        tuple[int, PositionState]: Status code and resulting state.
    """

    status = UPDATE_STATUS_OK
    if is_add:
        new_collateral = state.collateral + amount
    elif amount > state.collateral:
        status = UPDATE_STATUS_INSUFFICIENT_COLLATERAL
        new_collateral = state.collateral
    else:
        new_collateral = state.collateral - amount

    new_leverage = circuit_leverage_bps(state.size_usd, new_collateral, collateral_price)
    if status == UPDATE_STATUS_OK and (new_leverage == 0 or new_leverage > max_leverage):
        status = UPDATE_STATUS_MAX_LEVERAGE
    if status == UPDATE_STATUS_OK and bool(is_add) != bool(is_add_asserted):
        status = UPDATE_STATUS_FLAG_MISMATCH

    if status != UPDATE_STATUS_OK:
        return status, state
    return status, PositionState(
        side=state.side,
        size_usd=state.size_usd,
        collateral=new_collateral,
        entry_price=state.entry_price,
        leverage=new_leverage,
    )


def circuit_mark_to_market(state: PositionState, current_price: int, collateral_price: int) -> MarkToMarket:
    """Value a position at the current price.

    Args:
        state: Position state.
        current_price: Traded asset price.
        collateral_price: Collateral token price.

    Returns:
        MarkToMarket: Profit, loss, remaining margin and current leverage.
    """

    profit_usd = 0
    loss_usd = 0
    if state.entry_price > 0:
        price_delta = current_price - state.entry_price
        if state.side == SIDE_SHORT:
            price_delta = -price_delta
        pnl_usd = abs(price_delta) * state.size_usd // state.entry_price
        if price_delta > 0:
            profit_usd = pnl_usd
        else:
            loss_usd = pnl_usd

    collateral_usd = state.collateral * collateral_price // PRICE_POWER
    if profit_usd > 0:
        margin_usd = collateral_usd + profit_usd
    elif loss_usd < collateral_usd:
        margin_usd = collateral_usd - loss_usd
    else:
        margin_usd = 0

    if margin_usd > 0:
        current_leverage = state.size_usd * BPS_POWER // margin_usd
    else:
        current_leverage = UNBOUNDED_LEVERAGE
    return MarkToMarket(
        profit_usd=profit_usd,
        loss_usd=loss_usd,
        margin_usd=margin_usd,
        current_leverage=current_leverage,
    )


def circuit_calculate_pnl(state: PositionState, current_price: int, collateral_price: int) -> MarkToMarket:
    """Return the revealed PnL view of a position."""

    return circuit_mark_to_market(state, current_price, collateral_price)


def circuit_check_liquidation(
    state: PositionState,
    current_price: int,
    collateral_price: int,
    max_leverage: int,
    liquidation_fee_bps: int,
) -> LiquidationCheck:
    """Decide liquidation eligibility and split the remaining margin.

    A position is liquidatable when current leverage reaches `max_leverage`.
    The liquidator reward is `liquidation_fee_bps` of notional, capped at
    the remaining margin; the owner receives the rest.

    Returns:
        LiquidationCheck: Eligibility and USD split.
    """

    valuation = circuit_mark_to_market(state, current_price, collateral_price)
    if valuation.current_leverage < max_leverage:
        return LiquidationCheck(is_liquidatable=False, liquidator_reward=0, owner_amount=0)

    reward = min(state.size_usd * liquidation_fee_bps // BPS_POWER, valuation.margin_usd)
    return LiquidationCheck(
        is_liquidatable=True,
        liquidator_reward=reward,
        owner_amount=valuation.margin_usd - reward,
    )


def circuit_close_position(
    state: PositionState,
    exit_price: int,
    collateral_price: int,
    fee_bps: int,
) -> CloseSettlement:
    """Compute final PnL, close fee and owner transfer.

    Returns:
        CloseSettlement: USD settlement; transfer is margin minus fee, floored at zero.
    """

    valuation = circuit_mark_to_market(state, exit_price, collateral_price)
    fee_amount = state.size_usd * fee_bps // BPS_POWER
    return CloseSettlement(
        profit_usd=valuation.profit_usd,
        loss_usd=valuation.loss_usd,
        transfer_amount=max(0, valuation.margin_usd - fee_amount),
        fee_amount=fee_amount,
    )
