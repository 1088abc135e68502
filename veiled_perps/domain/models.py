"""Typed domain models shared across runtime layers.

Configuration-like values (permissions, oracle, pricing, fee, borrow-rate
parameters) are frozen. Ledger records (protocol, pool, custody, position,
computation) are mutable and owned by the ledger program, which hands out
copies from its query methods.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union

from .constants import CIPHERTEXT_SIZE, ZERO_CIPHERTEXT


@dataclass(frozen=True)
class AppMetadata:
    """Static application metadata for runtime identification.

    Attributes:
        application_name: Human-readable app name.
        environment_name: Runtime environment label.
    """

    application_name: str
    environment_name: str


@dataclass(frozen=True)
class HealthStatus:
    """Health response contract used by health-check surfaces.

    Attributes:
        status: Overall status text for service health.
        detail: Additional message suitable for operational diagnostics.
    """

    status: str
    detail: str


class OracleType(str, Enum):
    """Price source configured for one custody."""

    NONE = "none"
    CUSTOM = "custom"


class OperationKind(str, Enum):
    """Position operation a computation belongs to."""

    OPEN = "open"
    UPDATE = "update"
    PNL = "pnl"
    CLOSE = "close"
    LIQUIDATE = "liquidate"

    @property
    def is_mutating(self) -> bool:
        """Return whether the operation advances position state."""

        return self is not OperationKind.PNL


class ComputationStatus(str, Enum):
    """Ledger-side resolution state of one queued computation."""

    QUEUED = "queued"
    FINALIZED = "finalized"
    FAILED = "failed"


class TicketStatus(str, Enum):
    """Client-side state of one computation ticket."""

    CREATED = "created"
    SUBMITTED = "submitted"
    FINALIZED = "finalized"
    TIMED_OUT = "timed_out"
    FAILED = "failed"


@dataclass(frozen=True)
class Permissions:
    """Global instruction permission flags.

    Attributes:
        allow_add_liquidity: Liquidity deposits accepted.
        allow_remove_liquidity: Liquidity withdrawals accepted.
        allow_open_position: New positions accepted.
        allow_close_position: Position closes accepted.
        allow_liquidation: Liquidations accepted.
        allow_collateral_withdrawal: Collateral removal through update accepted.
    """

    allow_add_liquidity: bool = True
    allow_remove_liquidity: bool = True
    allow_open_position: bool = True
    allow_close_position: bool = True
    allow_liquidation: bool = True
    allow_collateral_withdrawal: bool = True


@dataclass(frozen=True)
class OracleParams:
    """Oracle configuration for one custody.

    Attributes:
        oracle_type: Price source type.
        oracle_authority: Identity allowed to publish custom prices.
        max_price_error: Maximum confidence/price ratio in basis points.
        max_price_age_sec: Maximum accepted price age in seconds.
    """

    oracle_type: OracleType = OracleType.CUSTOM
    oracle_authority: str = ""
    max_price_error: int = 100
    max_price_age_sec: int = 60


@dataclass(frozen=True)
class PricingParams:
    """Pricing and risk limits for one custody, all in basis points."""

    trade_spread_long: int = 0
    trade_spread_short: int = 0
    min_initial_leverage: int = 10_000
    max_initial_leverage: int = 100_000
    max_leverage: int = 150_000
    max_utilization: int = 8_000


@dataclass(frozen=True)
class Fees:
    """Fee schedule in basis points."""

    open_position: int = 0
    close_position: int = 0
    liquidation: int = 0
    protocol_share: int = 0
    add_liquidity: int = 0
    remove_liquidity: int = 0


@dataclass(frozen=True)
class BorrowRateParams:
    """Two-slope borrow-rate curve scaled by `RATE_POWER`.

    Attributes:
        base_rate: Hourly rate floor.
        slope1: Rate added up to optimal utilization.
        slope2: Rate added between optimal and full utilization.
        optimal_utilization: Utilization kink.
    """

    base_rate: int = 0
    slope1: int = 0
    slope2: int = 0
    optimal_utilization: int = 800_000_000


@dataclass(frozen=True)
class OraclePriceRecord:
    """Published custom oracle price.

    Attributes:
        price: Price scaled by `PRICE_POWER`.
        confidence: Confidence interval in price units.
        publish_time: Unix publish timestamp in seconds.
    """

    price: int
    confidence: int
    publish_time: int


@dataclass
class ProtocolState:
    """Protocol singleton.

    Attributes:
        admin: Admin identity.
        permissions: Global instruction permissions.
        pool_ids: Registered pool identifiers.
        inception_time: Initialization timestamp.
    """

    admin: str
    permissions: Permissions
    pool_ids: list[str]
    inception_time: int


@dataclass
class PoolRecord:
    """Named liquidity venue."""

    pool_id: str
    name: str
    lp_mint: str
    custody_ids: list[str]
    is_active: bool
    aum_usd: int
    inception_time: int


@dataclass
class CustodyAssets:
    """Running token totals held by one custody.

    Attributes:
        collateral: Trader collateral deposited into the custody token account.
        protocol_fees: Fees retained for the protocol.
        owned: Liquidity owned by the pool.
        locked: Liquidity reserved for open position payoffs.
    """

    collateral: int = 0
    protocol_fees: int = 0
    owned: int = 0
    locked: int = 0


@dataclass
class BorrowRateState:
    """Borrow-rate accumulator."""

    current_rate: int = 0
    cumulative_interest: int = 0
    last_update: int = 0


@dataclass
class CustodyStatistics:
    """Per-custody accumulated fee, volume and trade statistics."""

    collected_fees: dict[str, int] = field(default_factory=dict)
    volume: dict[str, int] = field(default_factory=dict)
    profit_usd: int = 0
    loss_usd: int = 0


@dataclass
class CustodyRecord:
    """One collateral asset inside a pool.

    Attributes:
        custody_id: Derived custody identifier.
        pool_id: Owning pool.
        mint: Backing token mint.
        token_account: Custody token account.
        is_stable: Whether the asset is a stablecoin.
        is_active: Activation flag.
        oracle: Oracle configuration.
        pricing: Pricing parameters.
        fees: Fee schedule.
        borrow_rate: Borrow-rate curve.
        assets: Running asset totals.
        borrow_rate_state: Borrow-rate accumulator.
        statistics: Fee, volume and trade statistics.
        oracle_price: Latest published custom oracle price.
    """

    custody_id: str
    pool_id: str
    mint: str
    token_account: str
    is_stable: bool
    is_active: bool
    oracle: OracleParams
    pricing: PricingParams
    fees: Fees
    borrow_rate: BorrowRateParams
    assets: CustodyAssets = field(default_factory=CustodyAssets)
    borrow_rate_state: BorrowRateState = field(default_factory=BorrowRateState)
    statistics: CustodyStatistics = field(default_factory=CustodyStatistics)
    oracle_price: OraclePriceRecord | None = None


@dataclass
class PositionRecord:
    """Encrypted perpetual position.

    Trading fields are 32-byte ciphertexts readable only with the owner's
    shared secret and the position nonce. The nonce is the only scalar that
    changes with trading activity; custody backing lives in `PositionBacking`.

    Attributes:
        position_id: Derived position identifier.
        owner: Owner identity.
        pool_id: Pool reference.
        custody_id: Traded asset custody reference.
        collateral_custody_id: Collateral custody reference.
        owner_encryption_key: Owner x25519 public key the state is encrypted for.
        side_ciphertext: Encrypted side.
        size_usd_ciphertext: Encrypted USD size.
        collateral_ciphertext: Encrypted collateral amount.
        entry_price_ciphertext: Encrypted entry price.
        leverage_ciphertext: Encrypted effective leverage.
        nonce: Encryption nonce of the current ciphertexts as an integer.
        is_active: Active flag.
        open_time: Open submission timestamp.
        update_time: Last transition timestamp.
    """

    position_id: str
    owner: str
    pool_id: str
    custody_id: str
    collateral_custody_id: str
    owner_encryption_key: bytes
    side_ciphertext: bytes = ZERO_CIPHERTEXT
    size_usd_ciphertext: bytes = ZERO_CIPHERTEXT
    collateral_ciphertext: bytes = ZERO_CIPHERTEXT
    entry_price_ciphertext: bytes = ZERO_CIPHERTEXT
    leverage_ciphertext: bytes = ZERO_CIPHERTEXT
    nonce: int = 0
    is_active: bool = False
    open_time: int = 0
    update_time: int = 0

    @property
    def ciphertexts(self) -> tuple[bytes, bytes, bytes, bytes, bytes]:
        """Return the five ciphertext fields in circuit order."""

        return (
            self.side_ciphertext,
            self.size_usd_ciphertext,
            self.collateral_ciphertext,
            self.entry_price_ciphertext,
            self.leverage_ciphertext,
        )

    @property
    def is_initialized(self) -> bool:
        """Return whether no ciphertext field holds the reserved all-zero value."""

        return all(len(value) == CIPHERTEXT_SIZE and value != ZERO_CIPHERTEXT for value in self.ciphertexts)


@dataclass
class PositionBacking:
    """Custody backing of one position, held inside the ledger and never published.

    Attributes:
        position_id: Position the backing belongs to.
        owner_token_account: Account that receives the owner share of a liquidation.
        locked_amount: Collateral custody liquidity reserved for the position.
        deposited_collateral: Collateral tokens held for the position.
    """

    position_id: str
    owner_token_account: str
    locked_amount: int = 0
    deposited_collateral: int = 0


@dataclass(frozen=True)
class ComputationDefinitionRecord:
    """Registered computation definition."""

    name: str
    is_finalized: bool
    registered_at: int


@dataclass(frozen=True)
class OpenPositionRequest:
    """Open instruction arguments.

    `size_usd` and `transfer_amount` are plaintext for custody bookkeeping;
    side, size, collateral and entry price travel encrypted.

    Attributes:
        owner: Position owner.
        pool_id: Pool reference.
        custody_id: Traded asset custody.
        collateral_custody_id: Collateral custody.
        funding_account: Token account the collateral is drawn from.
        computation_offset: Single-use computation offset.
        encrypted_side: Side ciphertext.
        encrypted_size: Size ciphertext.
        encrypted_collateral: Collateral ciphertext.
        encrypted_entry_price: Entry price ciphertext.
        caller_public_key: Caller x25519 public key.
        input_nonce: Nonce used for the encrypted inputs.
        output_nonce: Nonce the cluster must use for the output state.
        size_usd: Public USD size.
        transfer_amount: Collateral tokens to deposit.
    """

    owner: str
    pool_id: str
    custody_id: str
    collateral_custody_id: str
    funding_account: str
    computation_offset: int
    encrypted_side: bytes
    encrypted_size: bytes
    encrypted_collateral: bytes
    encrypted_entry_price: bytes
    caller_public_key: bytes
    input_nonce: int
    output_nonce: int
    size_usd: int
    transfer_amount: int


@dataclass(frozen=True)
class UpdatePositionRequest:
    """Collateral adjustment instruction arguments.

    Attributes:
        owner: Position owner.
        position_id: Target position.
        token_account: Funding account for adds, receiving account for removes.
        computation_offset: Single-use computation offset.
        encrypted_amount: Delta ciphertext.
        encrypted_is_add: Direction flag ciphertext.
        caller_public_key: Caller x25519 public key.
        input_nonce: Nonce used for the encrypted inputs.
        output_nonce: Nonce the cluster must use for the output state.
        transfer_amount: Plaintext collateral delta in tokens.
        is_add: Plaintext direction flag asserted by the caller.
    """

    owner: str
    position_id: str
    token_account: str
    computation_offset: int
    encrypted_amount: bytes
    encrypted_is_add: bytes
    caller_public_key: bytes
    input_nonce: int
    output_nonce: int
    transfer_amount: int
    is_add: bool


@dataclass(frozen=True)
class ComputationRequest:
    """Encrypted computation forwarded by the ledger to the cluster.

    Attributes:
        computation_offset: Offset correlating request and callback.
        definition_name: Computation definition to run.
        encrypted_inputs: Caller-encrypted input ciphertexts.
        caller_public_key: Key the inputs are encrypted for.
        input_nonce: Nonce of the encrypted inputs.
        output_nonce: Nonce for the encrypted output state.
        owner_encryption_key: Key the position state is encrypted for.
        position_ciphertexts: Current position state ciphertexts.
        position_nonce: Nonce of the current position state.
        plaintext_arguments: Public arguments such as prices and limits.
    """

    computation_offset: int
    definition_name: str
    encrypted_inputs: tuple[bytes, ...]
    caller_public_key: bytes | None
    input_nonce: int
    output_nonce: int
    owner_encryption_key: bytes | None
    position_ciphertexts: tuple[bytes, ...]
    position_nonce: int
    plaintext_arguments: dict[str, Any]


@dataclass(frozen=True)
class EncryptedStateOutput:
    """Open and update callback payload."""

    status: int
    ciphertexts: tuple[bytes, ...]
    nonce: int


@dataclass(frozen=True)
class PnlOutput:
    """PnL callback payload; exactly one of profit or loss is non-zero unless at parity."""

    profit_usd: int
    loss_usd: int
    current_leverage: int


@dataclass(frozen=True)
class CloseOutput:
    """Close callback payload in USD."""

    profit_usd: int
    loss_usd: int
    transfer_amount: int
    fee_amount: int


@dataclass(frozen=True)
class LiquidationOutput:
    """Liquidation check callback payload in USD."""

    is_liquidatable: bool
    liquidator_reward: int
    owner_amount: int


ComputationOutput = Union[EncryptedStateOutput, PnlOutput, CloseOutput, LiquidationOutput]


@dataclass
class CustodyEscrow:
    """Submission-time custody effects of one computation.

    Attributes:
        collateral_custody_id: Custody holding the deposit.
        funding_account: Account refunded on failure.
        deposited_amount: Collateral tokens deposited at submission.
        fee_amount: Open fee tokens deposited at submission.
        locked_amount: Liquidity locked at submission.
        refunded: Whether the escrow was already returned.
    """

    collateral_custody_id: str
    funding_account: str
    deposited_amount: int = 0
    fee_amount: int = 0
    locked_amount: int = 0
    refunded: bool = False


@dataclass
class ComputationRecord:
    """Ledger-side record of one queued computation.

    Attributes:
        computation_offset: Offset chosen by the submitter.
        operation_kind: Position operation.
        definition_name: Computation definition.
        position_id: Target position.
        submitter: Identity that queued the computation.
        expected_nonce: Position nonce the finalization must still match.
        queued_at: Queue timestamp.
        status: Resolution state.
        failure_code: Reason code when failed.
        escrow: Submission-time custody effects.
        settlement_account: Account that receives settlement payouts.
        context: Public values captured at submission and used at finalization.
        resolved_at: Resolution timestamp.
        result: Operation result event once finalized.
    """

    computation_offset: int
    operation_kind: OperationKind
    definition_name: str
    position_id: str
    submitter: str
    expected_nonce: int
    queued_at: int
    status: ComputationStatus = ComputationStatus.QUEUED
    failure_code: str | None = None
    escrow: CustodyEscrow | None = None
    settlement_account: str | None = None
    context: dict[str, Any] = field(default_factory=dict)
    resolved_at: int | None = None
    result: Any = None


@dataclass
class ComputationTicket:
    """Client-side handle for one outstanding computation.

    Attributes:
        computation_offset: Single-use offset.
        operation_kind: Position operation.
        position_id: Target position when known.
        submitted_at_monotonic: Event-loop time at submission.
        status: Ticket state.
        result: Result event once finalized.
        failure_code: Failure reason code once failed.
        timeline: Structured stage events.
    """

    computation_offset: int
    operation_kind: OperationKind
    position_id: str | None
    submitted_at_monotonic: float | None = None
    status: TicketStatus = TicketStatus.CREATED
    result: Any = None
    failure_code: str | None = None
    timeline: list[dict[str, Any]] = field(default_factory=list)
