"""Ledger program: instruction handlers, computation callbacks and queries.

Every instruction and callback runs as one transaction over the whole
ledger state and the token ledger. A transaction either commits all of its
effects (state, token movements, queued computations, persisted records)
or none of them. Events are delivered to subscribers after commit.
"""

from __future__ import annotations

import copy
import logging
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field, fields

from veiled_perps.adapters.interfaces import ComputationQueuePort, TokenCustodyPort
from veiled_perps.domain.addresses import domain_derive_address
from veiled_perps.domain.constants import (
    BPS_POWER,
    CIPHERTEXT_SIZE,
    COMP_DEF_CALCULATE_PNL,
    COMP_DEF_CHECK_LIQUIDATION,
    COMP_DEF_CLOSE_POSITION,
    COMP_DEF_INIT_POSITION,
    COMP_DEF_UPDATE_POSITION,
    COMPUTATION_DEFINITION_NAMES,
    MAX_CUSTODIES,
    MAX_POOL_NAME_LEN,
    MAX_POOLS,
    PUBLIC_KEY_SIZE,
)
from veiled_perps.domain.errors import (
    ComputationDefinitionMissingError,
    ComputationFailedError,
    ConsistencyError,
    CustodyInactiveError,
    DuplicateFinalizationError,
    InsufficientFundsError,
    InvalidConfigError,
    KeyUnavailableError,
    LeverageOutOfRangeError,
    NonceMismatchError,
    OraclePriceError,
    PerpsError,
    PermissionDeniedError,
    PoolInactiveError,
    PositionInactiveError,
)
from veiled_perps.domain.events import (
    AddLiquidityEvent,
    ComputationResolvedEvent,
    LedgerEvent,
    OpenPositionEvent,
    PnlCalculatedEvent,
    PositionClosedEvent,
    PositionLiquidatedEvent,
    PositionOpenedEvent,
    PositionUpdatedEvent,
    RemoveLiquidityEvent,
    UpdatePositionEvent,
)
from veiled_perps.domain.models import (
    BorrowRateParams,
    CloseOutput,
    ComputationDefinitionRecord,
    ComputationOutput,
    ComputationRecord,
    ComputationRequest,
    ComputationStatus,
    CustodyEscrow,
    CustodyRecord,
    EncryptedStateOutput,
    Fees,
    LiquidationOutput,
    OpenPositionRequest,
    OperationKind,
    OracleParams,
    OraclePriceRecord,
    OracleType,
    Permissions,
    PnlOutput,
    PoolRecord,
    PositionBacking,
    PositionRecord,
    PricingParams,
    ProtocolState,
    UpdatePositionRequest,
)

from .custody_accounting import (
    FEE_CLOSE_POSITION,
    FEE_LIQUIDATION,
    FEE_OPEN_POSITION,
    CustodyAccounting,
    custody_check_invariants,
    custody_validate_params,
)
from .interfaces import LedgerEventListener, LedgerRecordSinkPort
from .oracle import oracle_get_price, oracle_tokens_to_usd, oracle_usd_to_tokens
from .position_ledger import PositionLedger

logger = logging.getLogger(__name__)

REASON_INVALID_POSITION_PARAMS = "INVALID_POSITION_PARAMS"
REASON_NOT_LIQUIDATABLE = "NOT_LIQUIDATABLE"
REASON_UNEXPECTED_OUTPUT = "UNEXPECTED_OUTPUT"

_UPDATE_STATUS_REASONS = {
    1: "INSUFFICIENT_COLLATERAL",
    2: "MAX_LEVERAGE_EXCEEDED",
    3: "COLLATERAL_FLAG_MISMATCH",
}


@dataclass
class _LedgerState:
    protocol: ProtocolState | None = None
    pools: dict[str, PoolRecord] = field(default_factory=dict)
    custodies: dict[str, CustodyRecord] = field(default_factory=dict)
    positions: dict[str, PositionRecord] = field(default_factory=dict)
    backings: dict[str, PositionBacking] = field(default_factory=dict)
    computations: dict[int, ComputationRecord] = field(default_factory=dict)
    definitions: dict[str, ComputationDefinitionRecord] = field(default_factory=dict)
    cluster_public_key: bytes | None = None


@dataclass
class _Transaction:
    now: int
    position_ids: list[str] = field(default_factory=list)
    custody_ids: list[str] = field(default_factory=list)
    events: list[LedgerEvent] = field(default_factory=list)
    requests: list[ComputationRequest] = field(default_factory=list)

    def touch_position(self, position_id: str) -> None:
        """Mark a position for mirroring to the record sink at commit."""

        if position_id not in self.position_ids:
            self.position_ids.append(position_id)

    def touch_custody(self, custody_id: str) -> None:
        """Mark a custody for mirroring to the record sink at commit."""

        if custody_id not in self.custody_ids:
            self.custody_ids.append(custody_id)


def _ledger_restore_state(target: _LedgerState, snapshot: _LedgerState) -> None:
    """Restore ledger state in place so collaborators keep valid references."""

    for state_field in fields(_LedgerState):
        current_value = getattr(target, state_field.name)
        snapshot_value = getattr(snapshot, state_field.name)
        if isinstance(current_value, dict):
            current_value.clear()
            current_value.update(snapshot_value)
        else:
            setattr(target, state_field.name, snapshot_value)


class LedgerProgram:
    """Authoritative ledger for pools, custodies and encrypted positions."""

    def __init__(
        self,
        tokens: TokenCustodyPort,
        computation_queue: ComputationQueuePort,
        record_sink: LedgerRecordSinkPort | None = None,
        clock: Callable[[], int] | None = None,
    ):
        """Initialize ledger program dependencies.

        Args:
            tokens: Token custody port.
            computation_queue: Queue the program forwards computation requests to.
            record_sink: Optional store receiving committed records.
            clock: Optional unix-seconds clock.

        Raises:
            ValueError: Raised when tokens or computation_queue is None.
        """

        if tokens is None:
            raise ValueError("tokens must not be None")
        if computation_queue is None:
            raise ValueError("computation_queue must not be None")

        self._tokens = tokens
        self._computation_queue = computation_queue
        self._record_sink = record_sink
        self._clock = clock or (lambda: int(time.time()))
        self._state = _LedgerState()
        self._positions = PositionLedger(self._state.positions, self._state.backings)
        self._accounting = CustodyAccounting(tokens)
        self._lock = threading.RLock()
        self._listeners: list[LedgerEventListener] = []
        self._in_transaction = False

    @contextmanager
    def _program_transaction(self) -> Iterator[_Transaction]:
        with self._lock:
            if self._in_transaction:
                raise RuntimeError("ledger transactions must not nest")
            transaction = _Transaction(now=self._clock())
            state_snapshot = copy.deepcopy(self._state)
            token_snapshot = self._tokens.token_snapshot()
            self._in_transaction = True
            try:
                yield transaction
                self._program_commit(transaction)
            except BaseException:
                _ledger_restore_state(self._state, state_snapshot)
                self._tokens.token_restore(token_snapshot)
                raise
            finally:
                self._in_transaction = False
        self._program_publish(transaction.events)

    def _program_commit(self, transaction: _Transaction) -> None:
        for custody_id in transaction.custody_ids:
            custody = self._state.custodies[custody_id]
            custody_check_invariants(custody, self._tokens.token_balance(custody.token_account))

        if self._record_sink is not None:
            self._record_sink.sink_write_transaction(
                positions=[copy.deepcopy(self._state.positions[position_id]) for position_id in transaction.position_ids],
                custodies=[copy.deepcopy(self._state.custodies[custody_id]) for custody_id in transaction.custody_ids],
                events=list(transaction.events),
            )

        for request in transaction.requests:
            self._computation_queue.queue_enqueue(request)

    def _program_publish(self, events: list[LedgerEvent]) -> None:
        listeners = list(self._listeners)
        for event in events:
            for listener in listeners:
                try:
                    listener(event)
                except Exception:  # pylint: disable=broad-exception-caught
                    logger.exception("ledger event listener failed for %s", type(event).__name__)

    def program_subscribe(self, listener: LedgerEventListener) -> Callable[[], None]:
        """Register an event listener.

        Args:
            listener: Callable invoked with each committed event.

        Returns:
            Callable[[], None]: Function removing the listener; safe to call twice.
        """

        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def program_listener_count(self) -> int:
        """Return the number of registered event listeners."""

        with self._lock:
            return len(self._listeners)

    def program_initialize(self, admin: str) -> ProtocolState:
        """Create the protocol singleton with every permission enabled.

        Raises:
            InvalidConfigError: Raised when already initialized or admin is blank.
        """

        if not admin.strip():
            raise InvalidConfigError("admin must not be blank")
        with self._program_transaction() as transaction:
            if self._state.protocol is not None:
                raise InvalidConfigError("protocol is already initialized", "ALREADY_INITIALIZED")
            self._state.protocol = ProtocolState(
                admin=admin,
                permissions=Permissions(),
                pool_ids=[],
                inception_time=transaction.now,
            )
            logger.info("protocol initialized")
            return copy.deepcopy(self._state.protocol)

    def program_set_permissions(self, admin: str, permissions: Permissions) -> None:
        """Replace global permission flags.

        Raises:
            PermissionDeniedError: Raised when caller is not the admin.
        """

        with self._program_transaction():
            protocol = self._program_require_admin(admin)
            protocol.permissions = permissions

    def program_add_pool(self, admin: str, name: str) -> PoolRecord:
        """Register a named pool and create its LP mint.

        Args:
            admin: Caller identity.
            name: Unique pool name.

        Returns:
            PoolRecord: Created pool.

        Raises:
            PermissionDeniedError: Raised when caller is not the admin.
            InvalidConfigError: Raised when the name is blank, too long, taken,
                or the pool limit is reached.
        """

        normalized_name = name.strip()
        if not normalized_name or len(normalized_name) > MAX_POOL_NAME_LEN:
            raise InvalidConfigError(f"pool name must be 1..{MAX_POOL_NAME_LEN} characters")

        with self._program_transaction() as transaction:
            protocol = self._program_require_admin(admin)
            if len(protocol.pool_ids) >= MAX_POOLS:
                raise InvalidConfigError(f"pool limit {MAX_POOLS} reached")
            pool_id = domain_derive_address("pool", normalized_name)
            if pool_id in self._state.pools:
                raise InvalidConfigError(f"pool {normalized_name} already exists")

            lp_mint = domain_derive_address("lp_token_mint", pool_id)
            self._tokens.token_create_mint(lp_mint, authority=pool_id)
            pool = PoolRecord(
                pool_id=pool_id,
                name=normalized_name,
                lp_mint=lp_mint,
                custody_ids=[],
                is_active=True,
                aum_usd=0,
                inception_time=transaction.now,
            )
            self._state.pools[pool_id] = pool
            protocol.pool_ids.append(pool_id)
            logger.info("pool %s added", normalized_name)
            return copy.deepcopy(pool)

    def program_add_custody(
        self,
        admin: str,
        pool_id: str,
        mint: str,
        is_stable: bool,
        oracle: OracleParams,
        pricing: PricingParams,
        fees: Fees,
        borrow_rate: BorrowRateParams,
    ) -> CustodyRecord:
        """Register a collateral asset in a pool and create its token account.

        Args:
            admin: Caller identity.
            pool_id: Owning pool.
            mint: Backing token mint; must already exist in the token ledger.
            is_stable: Whether the asset is a stablecoin.
            oracle: Oracle configuration.
            pricing: Pricing and risk limits.
            fees: Fee schedule.
            borrow_rate: Borrow-rate curve.

        Returns:
            CustodyRecord: Created custody.

        Raises:
            PermissionDeniedError: Raised when caller is not the admin.
            PoolInactiveError: Raised when the pool does not exist.
            InvalidConfigError: Raised when parameters are invalid, the custody
                exists, or the custody limit is reached.
        """

        custody_validate_params(oracle, pricing, fees, borrow_rate)
        with self._program_transaction() as transaction:
            self._program_require_admin(admin)
            pool = self._state.pools.get(pool_id)
            if pool is None:
                raise PoolInactiveError(f"pool {pool_id} does not exist")
            if len(pool.custody_ids) >= MAX_CUSTODIES:
                raise InvalidConfigError(f"custody limit {MAX_CUSTODIES} reached for pool {pool.name}")
            custody_id = domain_derive_address("custody", pool_id, mint)
            if custody_id in self._state.custodies:
                raise InvalidConfigError(f"custody for mint {mint} already exists in pool {pool.name}")

            token_account = domain_derive_address("custody_token_account", custody_id)
            self._tokens.token_create_account(token_account, mint, owner=custody_id)
            custody = CustodyRecord(
                custody_id=custody_id,
                pool_id=pool_id,
                mint=mint,
                token_account=token_account,
                is_stable=is_stable,
                is_active=True,
                oracle=oracle,
                pricing=pricing,
                fees=fees,
                borrow_rate=borrow_rate,
            )
            custody.borrow_rate_state.last_update = transaction.now
            self._state.custodies[custody_id] = custody
            pool.custody_ids.append(custody_id)
            transaction.touch_custody(custody_id)
            logger.info("custody %s added to pool %s", mint, pool.name)
            return copy.deepcopy(custody)

    def program_set_pool_active(self, admin: str, pool_id: str, is_active: bool) -> None:
        """Toggle pool activation.

        Args:
            admin: Caller identity; must be the protocol admin.
            pool_id: Pool identifier.
            is_active: New activation flag.

        Raises:
            PermissionDeniedError: Raised when caller is not the admin.
            PoolInactiveError: Raised when the pool does not exist.
        """

        with self._program_transaction():
            self._program_require_admin(admin)
            pool = self._state.pools.get(pool_id)
            if pool is None:
                raise PoolInactiveError(f"pool {pool_id} does not exist")
            pool.is_active = is_active

    def program_set_custody_active(self, admin: str, custody_id: str, is_active: bool) -> None:
        """Toggle custody activation.

        Args:
            admin: Caller identity; must be the protocol admin.
            custody_id: Custody identifier.
            is_active: New activation flag.

        Raises:
            PermissionDeniedError: Raised when caller is not the admin.
            CustodyInactiveError: Raised when the custody does not exist.
        """

        with self._program_transaction() as transaction:
            self._program_require_admin(admin)
            custody = self._state.custodies.get(custody_id)
            if custody is None:
                raise CustodyInactiveError(f"custody {custody_id} does not exist")
            custody.is_active = is_active
            transaction.touch_custody(custody_id)

    def program_set_custom_oracle_price(
        self,
        authority: str,
        custody_id: str,
        price: int,
        confidence: int,
        publish_time: int,
    ) -> None:
        """Publish a custom oracle price for one custody.

        Raises:
            CustodyInactiveError: Raised when the custody does not exist.
            OraclePriceError: Raised when the custody oracle is not custom or the price is invalid.
            PermissionDeniedError: Raised when caller is not the oracle authority.
        """

        if price <= 0 or confidence < 0:
            raise OraclePriceError("price must be > 0 and confidence >= 0")
        with self._program_transaction() as transaction:
            custody = self._state.custodies.get(custody_id)
            if custody is None:
                raise CustodyInactiveError(f"custody {custody_id} does not exist")
            if custody.oracle.oracle_type is not OracleType.CUSTOM:
                raise OraclePriceError(f"custody {custody_id} does not use a custom oracle")
            if authority != custody.oracle.oracle_authority:
                raise PermissionDeniedError(f"{authority} is not the oracle authority of custody {custody_id}")
            custody.oracle_price = OraclePriceRecord(price=price, confidence=confidence, publish_time=publish_time)
            self._program_refresh_aum(self._state.pools[custody.pool_id])
            transaction.touch_custody(custody_id)

    def program_publish_cluster_key(self, public_key: bytes) -> None:
        """Store the cluster public key at its well-known location.

        Raises:
            InvalidConfigError: Raised when the key is malformed.
        """

        if len(public_key) != PUBLIC_KEY_SIZE:
            raise InvalidConfigError(f"cluster public key must be {PUBLIC_KEY_SIZE} bytes")
        with self._program_transaction():
            self._state.cluster_public_key = bytes(public_key)
        logger.info("cluster public key published")

    def cluster_key_fetch(self) -> bytes:
        """Return the published cluster public key.

        Raises:
            KeyUnavailableError: Raised when no key has been published yet.
        """

        with self._lock:
            public_key = self._state.cluster_public_key
        if public_key is None:
            raise KeyUnavailableError("cluster public key is not published yet")
        return public_key

    def program_init_computation_definition(self, admin: str, name: str) -> ComputationDefinitionRecord:
        """Register a computation definition; re-registration is a no-op.

        Raises:
            PermissionDeniedError: Raised when caller is not the admin.
            InvalidConfigError: Raised when the name is unknown.
        """

        if name not in COMPUTATION_DEFINITION_NAMES:
            raise InvalidConfigError(f"unknown computation definition {name}")
        with self._program_transaction() as transaction:
            self._program_require_admin(admin)
            existing = self._state.definitions.get(name)
            if existing is not None:
                return existing
            definition = ComputationDefinitionRecord(name=name, is_finalized=False, registered_at=transaction.now)
            self._state.definitions[name] = definition
            return definition

    def program_finalize_computation_definition(self, admin: str, name: str) -> ComputationDefinitionRecord:
        """Finalize a registered definition; finalizing twice is a no-op.

        Raises:
            PermissionDeniedError: Raised when caller is not the admin.
            ComputationDefinitionMissingError: Raised when the definition was never registered.
            KeyUnavailableError: Raised when the cluster key is not published yet.
        """

        with self._program_transaction():
            self._program_require_admin(admin)
            definition = self._state.definitions.get(name)
            if definition is None:
                raise ComputationDefinitionMissingError(f"computation definition {name} is not registered")
            if definition.is_finalized:
                return definition
            if self._state.cluster_public_key is None:
                raise KeyUnavailableError("cluster public key is not published yet")
            finalized = ComputationDefinitionRecord(name=name, is_finalized=True, registered_at=definition.registered_at)
            self._state.definitions[name] = finalized
            return finalized

    def program_add_liquidity(
        self,
        owner: str,
        pool_id: str,
        custody_id: str,
        funding_account: str,
        lp_token_account: str,
        amount_in: int,
        min_lp_amount_out: int,
    ) -> AddLiquidityEvent:
        """Deposit liquidity into a custody and mint LP tokens.

        Returns:
            AddLiquidityEvent: Committed liquidity event.

        Raises:
            PermissionDeniedError: Raised when liquidity deposits are disabled.
            PoolInactiveError: Raised when the pool is missing or inactive.
            CustodyInactiveError: Raised when the custody is missing or inactive.
            InsufficientAmountReturnedError: Raised when LP output is below the minimum.
            InsufficientFundsError: Raised when the funding account balance is too low.
        """

        with self._program_transaction() as transaction:
            self._program_require_permission("allow_add_liquidity")
            pool, custody = self._program_require_pool_custody(pool_id, custody_id)
            if not self._tokens.token_account_exists(lp_token_account):
                self._tokens.token_create_account(lp_token_account, pool.lp_mint, owner=owner)
            fee_amount, lp_amount_out = self._accounting.accounting_add_liquidity(
                custody,
                lp_mint=pool.lp_mint,
                funding_account=funding_account,
                lp_token_account=lp_token_account,
                amount_in=amount_in,
                min_lp_amount_out=min_lp_amount_out,
                now=transaction.now,
            )
            self._program_refresh_aum(pool)
            transaction.touch_custody(custody_id)
            event = AddLiquidityEvent(
                owner=owner,
                pool_id=pool_id,
                custody_id=custody_id,
                amount_in=amount_in,
                fee_amount=fee_amount,
                lp_amount_out=lp_amount_out,
            )
            transaction.events.append(event)
            return event

    def program_remove_liquidity(
        self,
        owner: str,
        pool_id: str,
        custody_id: str,
        lp_token_account: str,
        receiving_account: str,
        lp_amount_in: int,
        min_amount_out: int,
    ) -> RemoveLiquidityEvent:
        """Burn LP tokens and withdraw liquidity from a custody.

        Returns:
            RemoveLiquidityEvent: Committed liquidity event.

        Raises:
            PermissionDeniedError: Raised when withdrawals are disabled or the LP account is not the owner's.
            InsufficientLiquidityError: Raised when the withdrawal would leave owned below locked.
            UtilizationExceededError: Raised when the withdrawal would break the utilization cap.
        """

        with self._program_transaction() as transaction:
            self._program_require_permission("allow_remove_liquidity")
            pool, custody = self._program_require_pool_custody(pool_id, custody_id)
            if self._tokens.token_account_exists(lp_token_account):
                if self._tokens.token_account_owner(lp_token_account) != owner:
                    raise PermissionDeniedError(f"{owner} does not own LP account {lp_token_account}")
            fee_amount, amount_out = self._accounting.accounting_remove_liquidity(
                custody,
                lp_token_account=lp_token_account,
                receiving_account=receiving_account,
                lp_amount_in=lp_amount_in,
                min_amount_out=min_amount_out,
                now=transaction.now,
            )
            self._program_refresh_aum(pool)
            transaction.touch_custody(custody_id)
            event = RemoveLiquidityEvent(
                owner=owner,
                pool_id=pool_id,
                custody_id=custody_id,
                lp_amount_in=lp_amount_in,
                fee_amount=fee_amount,
                amount_out=amount_out,
            )
            transaction.events.append(event)
            return event

    def program_open_position(self, request: OpenPositionRequest) -> str:
        """Validate an open, escrow its deposit and queue `init_position`.

        The position is created inactive with uninitialized ciphertexts and
        becomes active only when the computation finalizes.

        Args:
            request: Open instruction arguments.

        Returns:
            str: Position identifier.

        Raises:
            PermissionDeniedError: Raised when opens are disabled.
            PoolInactiveError: Raised when the pool is missing or inactive.
            CustodyInactiveError: Raised when either custody is missing or inactive.
            ComputationDefinitionMissingError: Raised when `init_position` is not finalized.
            NonceReuseError: Raised when the output nonce repeats a known nonce.
            StaleOracleError: Raised when a custody price is stale.
            OraclePriceError: Raised when a custody price is unusable.
            LeverageOutOfRangeError: Raised when initial leverage is outside the custody bounds.
            UtilizationExceededError: Raised when the lock breaks the utilization cap.
            InsufficientFundsError: Raised when the funding account cannot cover deposit and fee.
        """

        with self._program_transaction() as transaction:
            now = transaction.now
            self._program_require_new_offset(request.computation_offset)
            self._program_require_permission("allow_open_position")
            _, custody = self._program_require_pool_custody(request.pool_id, request.custody_id)
            _, collateral_custody = self._program_require_pool_custody(request.pool_id, request.collateral_custody_id)
            self._program_require_definition(COMP_DEF_INIT_POSITION)
            encrypted_inputs = (
                request.encrypted_side,
                request.encrypted_size,
                request.encrypted_collateral,
                request.encrypted_entry_price,
            )
            _program_require_encrypted_inputs(encrypted_inputs, request.caller_public_key)
            if request.size_usd <= 0 or request.transfer_amount <= 0:
                raise InvalidConfigError("size_usd and transfer_amount must be > 0")

            position_id = domain_derive_address(
                "position",
                request.owner,
                request.pool_id,
                request.custody_id,
                request.computation_offset,
            )
            position = self._positions.position_create_pending(
                position_id=position_id,
                owner=request.owner,
                pool_id=request.pool_id,
                custody_id=request.custody_id,
                collateral_custody_id=request.collateral_custody_id,
                owner_encryption_key=bytes(request.caller_public_key),
                owner_token_account=request.funding_account,
                now=now,
            )
            self._positions.position_check_submission_nonces(position, request.input_nonce, request.output_nonce)

            oracle_get_price(custody, now)
            collateral_price = oracle_get_price(collateral_custody, now).price
            collateral_usd = oracle_tokens_to_usd(request.transfer_amount, collateral_price)
            if collateral_usd <= 0:
                raise LeverageOutOfRangeError("collateral has no USD value")
            initial_leverage = request.size_usd * BPS_POWER // collateral_usd
            pricing = custody.pricing
            if not pricing.min_initial_leverage <= initial_leverage <= pricing.max_initial_leverage:
                raise LeverageOutOfRangeError(
                    f"initial leverage {initial_leverage} bps outside "
                    f"[{pricing.min_initial_leverage}, {pricing.max_initial_leverage}]"
                )

            fee_usd = request.size_usd * custody.fees.open_position // BPS_POWER
            fee_tokens = oracle_usd_to_tokens(fee_usd, collateral_price)
            lock_tokens = oracle_usd_to_tokens(request.size_usd, collateral_price)

            escrow = CustodyEscrow(
                collateral_custody_id=collateral_custody.custody_id,
                funding_account=request.funding_account,
            )
            self._accounting.accounting_escrow_deposit(collateral_custody, escrow, request.transfer_amount, fee_tokens)
            self._accounting.accounting_escrow_lock(collateral_custody, escrow, lock_tokens, now)

            self._program_queue_computation(
                transaction,
                record=ComputationRecord(
                    computation_offset=request.computation_offset,
                    operation_kind=OperationKind.OPEN,
                    definition_name=COMP_DEF_INIT_POSITION,
                    position_id=position_id,
                    submitter=request.owner,
                    expected_nonce=position.nonce,
                    queued_at=now,
                    escrow=escrow,
                    context={"output_nonce": request.output_nonce, "size_usd": request.size_usd},
                ),
                request=ComputationRequest(
                    computation_offset=request.computation_offset,
                    definition_name=COMP_DEF_INIT_POSITION,
                    encrypted_inputs=encrypted_inputs,
                    caller_public_key=bytes(request.caller_public_key),
                    input_nonce=request.input_nonce,
                    output_nonce=request.output_nonce,
                    owner_encryption_key=position.owner_encryption_key,
                    position_ciphertexts=position.ciphertexts,
                    position_nonce=position.nonce,
                    plaintext_arguments={"collateral_price": collateral_price},
                ),
            )
            transaction.touch_position(position_id)
            transaction.touch_custody(collateral_custody.custody_id)
            transaction.events.append(
                OpenPositionEvent(
                    computation_offset=request.computation_offset,
                    owner=request.owner,
                    position_id=position_id,
                    pool_id=request.pool_id,
                    custody_id=request.custody_id,
                    collateral_amount=request.transfer_amount,
                    size_usd=request.size_usd,
                )
            )
            return position_id

    def program_update_position(self, request: UpdatePositionRequest) -> None:
        """Validate a collateral adjustment and queue `update_position`.

        Added collateral is escrowed at submission; removed collateral is paid
        out when the computation finalizes.

        Raises:
            PositionNotFoundError: Raised when the position does not exist.
            PositionInactiveError: Raised when the position is not active.
            PermissionDeniedError: Raised when caller is not the owner or withdrawals are disabled.
            NonceReuseError: Raised when the output nonce repeats a known nonce.
            InsufficientFundsError: Raised when a removal exceeds the deposited collateral
                or an add exceeds the funding balance.
        """

        with self._program_transaction() as transaction:
            now = transaction.now
            self._program_require_new_offset(request.computation_offset)
            position = self._positions.position_require_active(request.position_id, owner=request.owner)
            _, custody = self._program_require_pool_custody(position.pool_id, position.custody_id)
            _, collateral_custody = self._program_require_pool_custody(position.pool_id, position.collateral_custody_id)
            self._program_require_definition(COMP_DEF_UPDATE_POSITION)
            encrypted_inputs = (request.encrypted_amount, request.encrypted_is_add)
            _program_require_encrypted_inputs(encrypted_inputs, request.caller_public_key)
            self._positions.position_check_submission_nonces(position, request.input_nonce, request.output_nonce)
            if request.transfer_amount <= 0:
                raise InvalidConfigError("transfer_amount must be > 0")

            collateral_price = oracle_get_price(collateral_custody, now).price
            escrow = CustodyEscrow(
                collateral_custody_id=collateral_custody.custody_id,
                funding_account=request.token_account,
            )
            if request.is_add:
                self._accounting.accounting_escrow_deposit(collateral_custody, escrow, request.transfer_amount, 0)
            else:
                self._program_require_permission("allow_collateral_withdrawal")
                backing = self._positions.position_get_backing(position.position_id)
                if request.transfer_amount > backing.deposited_collateral:
                    raise InsufficientFundsError(
                        f"position {position.position_id} holds {backing.deposited_collateral} collateral tokens"
                    )

            self._program_queue_computation(
                transaction,
                record=ComputationRecord(
                    computation_offset=request.computation_offset,
                    operation_kind=OperationKind.UPDATE,
                    definition_name=COMP_DEF_UPDATE_POSITION,
                    position_id=position.position_id,
                    submitter=request.owner,
                    expected_nonce=position.nonce,
                    queued_at=now,
                    escrow=escrow,
                    settlement_account=request.token_account,
                    context={
                        "output_nonce": request.output_nonce,
                        "is_add": request.is_add,
                        "transfer_amount": request.transfer_amount,
                    },
                ),
                request=ComputationRequest(
                    computation_offset=request.computation_offset,
                    definition_name=COMP_DEF_UPDATE_POSITION,
                    encrypted_inputs=encrypted_inputs,
                    caller_public_key=bytes(request.caller_public_key),
                    input_nonce=request.input_nonce,
                    output_nonce=request.output_nonce,
                    owner_encryption_key=position.owner_encryption_key,
                    position_ciphertexts=position.ciphertexts,
                    position_nonce=position.nonce,
                    plaintext_arguments={
                        "is_add": request.is_add,
                        "max_leverage": custody.pricing.max_leverage,
                        "collateral_price": collateral_price,
                    },
                ),
            )
            transaction.touch_position(position.position_id)
            transaction.touch_custody(collateral_custody.custody_id)
            transaction.events.append(
                UpdatePositionEvent(
                    computation_offset=request.computation_offset,
                    owner=request.owner,
                    position_id=position.position_id,
                    collateral_delta=request.transfer_amount,
                    is_add=request.is_add,
                )
            )

    def program_calculate_pnl(self, owner: str, position_id: str, computation_offset: int, current_price: int) -> None:
        """Queue a read-only `calculate_pnl` computation.

        No custody state, ciphertext or nonce changes, now or on finalization.

        Raises:
            PositionInactiveError: Raised when the position is not active.
            OraclePriceError: Raised when the current price is not positive.
        """

        if current_price <= 0:
            raise OraclePriceError("current price must be > 0")
        with self._program_transaction() as transaction:
            self._program_require_new_offset(computation_offset)
            position = self._positions.position_require_active(position_id, owner=owner)
            _, collateral_custody = self._program_require_pool_custody(position.pool_id, position.collateral_custody_id)
            self._program_require_definition(COMP_DEF_CALCULATE_PNL)
            collateral_price = oracle_get_price(collateral_custody, transaction.now).price
            self._program_queue_computation(
                transaction,
                record=ComputationRecord(
                    computation_offset=computation_offset,
                    operation_kind=OperationKind.PNL,
                    definition_name=COMP_DEF_CALCULATE_PNL,
                    position_id=position_id,
                    submitter=owner,
                    expected_nonce=position.nonce,
                    queued_at=transaction.now,
                ),
                request=self._program_build_state_request(
                    position,
                    computation_offset,
                    COMP_DEF_CALCULATE_PNL,
                    {"current_price": current_price, "collateral_price": collateral_price},
                ),
            )

    def program_close_position(self, owner: str, position_id: str, computation_offset: int, receiving_account: str) -> None:
        """Queue `close_position` for an active position.

        Raises:
            PermissionDeniedError: Raised when closes are disabled or caller is not the owner.
            PositionInactiveError: Raised when the position is not active.
            StaleOracleError: Raised when a custody price is stale.
        """

        with self._program_transaction() as transaction:
            self._program_require_new_offset(computation_offset)
            self._program_require_permission("allow_close_position")
            position = self._positions.position_require_active(position_id, owner=owner)
            custody, collateral_custody = self._program_require_position_custodies(position)
            self._program_require_definition(COMP_DEF_CLOSE_POSITION)
            current_price = oracle_get_price(custody, transaction.now).price
            collateral_price = oracle_get_price(collateral_custody, transaction.now).price
            self._program_queue_computation(
                transaction,
                record=ComputationRecord(
                    computation_offset=computation_offset,
                    operation_kind=OperationKind.CLOSE,
                    definition_name=COMP_DEF_CLOSE_POSITION,
                    position_id=position_id,
                    submitter=owner,
                    expected_nonce=position.nonce,
                    queued_at=transaction.now,
                    settlement_account=receiving_account,
                    context={"current_price": current_price, "collateral_price": collateral_price},
                ),
                request=self._program_build_state_request(
                    position,
                    computation_offset,
                    COMP_DEF_CLOSE_POSITION,
                    {
                        "current_price": current_price,
                        "collateral_price": collateral_price,
                        "fee_bps": custody.fees.close_position,
                    },
                ),
            )

    def program_liquidate(self, liquidator: str, position_id: str, computation_offset: int, receiving_account: str) -> None:
        """Queue `check_liquidation`; eligibility is decided inside the computation.

        Raises:
            PermissionDeniedError: Raised when liquidations are disabled.
            PositionInactiveError: Raised when the position is not active.
            StaleOracleError: Raised when a custody price is stale.
        """

        with self._program_transaction() as transaction:
            self._program_require_new_offset(computation_offset)
            self._program_require_permission("allow_liquidation")
            position = self._positions.position_require_active(position_id)
            custody, collateral_custody = self._program_require_position_custodies(position)
            self._program_require_definition(COMP_DEF_CHECK_LIQUIDATION)
            current_price = oracle_get_price(custody, transaction.now).price
            collateral_price = oracle_get_price(collateral_custody, transaction.now).price
            self._program_queue_computation(
                transaction,
                record=ComputationRecord(
                    computation_offset=computation_offset,
                    operation_kind=OperationKind.LIQUIDATE,
                    definition_name=COMP_DEF_CHECK_LIQUIDATION,
                    position_id=position_id,
                    submitter=liquidator,
                    expected_nonce=position.nonce,
                    queued_at=transaction.now,
                    settlement_account=receiving_account,
                    context={"current_price": current_price, "collateral_price": collateral_price},
                ),
                request=self._program_build_state_request(
                    position,
                    computation_offset,
                    COMP_DEF_CHECK_LIQUIDATION,
                    {
                        "current_price": current_price,
                        "collateral_price": collateral_price,
                        "max_leverage": custody.pricing.max_leverage,
                        "fee_bps": custody.fees.liquidation,
                    },
                ),
            )

    def program_finalize_computation(self, computation_offset: int, output: ComputationOutput) -> LedgerEvent:
        """Apply a computation output for a queued offset.

        A rejected output leaves position state untouched; the rejection is
        committed as a failed resolution (refunding any escrow exactly once)
        before the error is raised to the caller.

        Args:
            computation_offset: Offset being finalized.
            output: Cluster output.

        Returns:
            LedgerEvent: Operation result event.

        Raises:
            ConsistencyError: Raised when the offset is unknown.
            DuplicateFinalizationError: Raised when the offset was already resolved.
            NonceMismatchError: Raised when the position advanced since submission.
            ZeroCiphertextError: Raised when the output carries an all-zero ciphertext.
            ComputationFailedError: Raised when the circuit reports a failure status
                or the position is not liquidatable.
        """

        try:
            with self._program_transaction() as transaction:
                record = self._program_require_queued(computation_offset)
                result_event = self._program_apply_output(transaction, record, output)
                record.status = ComputationStatus.FINALIZED
                record.resolved_at = transaction.now
                record.result = result_event
                transaction.touch_position(record.position_id)
                transaction.events.append(
                    ComputationResolvedEvent(
                        computation_offset=computation_offset,
                        operation_kind=record.operation_kind.value,
                        position_id=record.position_id,
                        status=ComputationStatus.FINALIZED.value,
                        result=result_event,
                    )
                )
        except DuplicateFinalizationError:
            raise
        except PerpsError as error:
            if error.error_code == "UNKNOWN_COMPUTATION":
                raise
            reason_code = getattr(error, "reason_code", None) or error.error_code
            self._program_record_failure(computation_offset, reason_code)
            logger.warning(
                "computation finalization rejected: %s",
                error,
                extra={"computation_offset": computation_offset},
            )
            raise

        logger.info(
            "computation finalized",
            extra={"computation_offset": computation_offset, "position_id": record.position_id},
        )
        return result_event

    def program_abort_computation(self, computation_offset: int, reason_code: str) -> None:
        """Record a cluster-side abort and refund any escrow.

        Raises:
            ConsistencyError: Raised when the offset is unknown.
            DuplicateFinalizationError: Raised when the offset was already resolved.
        """

        with self._lock:
            self._program_require_queued(computation_offset)
        self._program_record_failure(computation_offset, reason_code)
        logger.warning(
            "computation aborted with %s",
            reason_code,
            extra={"computation_offset": computation_offset},
        )

    def _program_apply_output(
        self,
        transaction: _Transaction,
        record: ComputationRecord,
        output: ComputationOutput,
    ) -> LedgerEvent:
        position = self._positions.position_get(record.position_id)
        offset = record.computation_offset

        if record.operation_kind is OperationKind.PNL:
            if not isinstance(output, PnlOutput):
                raise ConsistencyError("calculate_pnl expects a PnL output", REASON_UNEXPECTED_OUTPUT)
            event = PnlCalculatedEvent(
                computation_offset=offset,
                position_id=position.position_id,
                profit_usd=output.profit_usd,
                loss_usd=output.loss_usd,
                current_leverage=output.current_leverage,
            )
            transaction.events.append(event)
            return event

        if record.operation_kind in (OperationKind.OPEN, OperationKind.UPDATE):
            if not isinstance(output, EncryptedStateOutput):
                raise ConsistencyError("state computations expect an encrypted state output", REASON_UNEXPECTED_OUTPUT)
            if record.operation_kind is OperationKind.UPDATE and not position.is_active:
                raise PositionInactiveError(f"position {position.position_id} is not active")
            self._positions.position_validate_state_output(
                position,
                expected_nonce=record.expected_nonce,
                requested_nonce=record.context["output_nonce"],
                ciphertexts=output.ciphertexts,
                output_nonce=output.nonce,
            )
            if record.operation_kind is OperationKind.OPEN:
                return self._program_apply_open(transaction, record, position, output)
            return self._program_apply_update(transaction, record, position, output)

        if not position.is_active:
            raise PositionInactiveError(f"position {position.position_id} is not active")
        if position.nonce != record.expected_nonce:
            raise NonceMismatchError(f"position {position.position_id} nonce advanced since submission; stale finalization rejected")

        if record.operation_kind is OperationKind.CLOSE:
            if not isinstance(output, CloseOutput):
                raise ConsistencyError("close_position expects a close output", REASON_UNEXPECTED_OUTPUT)
            return self._program_apply_close(transaction, record, position, output)

        if not isinstance(output, LiquidationOutput):
            raise ConsistencyError("check_liquidation expects a liquidation output", REASON_UNEXPECTED_OUTPUT)
        return self._program_apply_liquidation(transaction, record, position, output)

    def _program_apply_open(
        self,
        transaction: _Transaction,
        record: ComputationRecord,
        position: PositionRecord,
        output: EncryptedStateOutput,
    ) -> LedgerEvent:
        if output.status != 0:
            raise ComputationFailedError(
                f"init_position reported status {output.status}",
                reason_code=REASON_INVALID_POSITION_PARAMS,
                computation_offset=record.computation_offset,
            )
        escrow = record.escrow
        collateral_custody = self._state.custodies[escrow.collateral_custody_id]
        self._accounting.accounting_commit_escrow(collateral_custody, escrow, FEE_OPEN_POSITION)
        self._accounting.accounting_record_volume(collateral_custody, FEE_OPEN_POSITION, record.context["size_usd"])
        backing = self._positions.position_get_backing(position.position_id)
        backing.locked_amount = escrow.locked_amount
        backing.deposited_collateral = escrow.deposited_amount
        self._positions.position_apply_state(position, output.ciphertexts, output.nonce, transaction.now, activate=True)
        transaction.touch_custody(collateral_custody.custody_id)
        event = PositionOpenedEvent(
            computation_offset=record.computation_offset,
            position_id=position.position_id,
            nonce=output.nonce,
        )
        transaction.events.append(event)
        return event

    def _program_apply_update(
        self,
        transaction: _Transaction,
        record: ComputationRecord,
        position: PositionRecord,
        output: EncryptedStateOutput,
    ) -> LedgerEvent:
        if output.status != 0:
            raise ComputationFailedError(
                f"update_position reported status {output.status}",
                reason_code=_UPDATE_STATUS_REASONS.get(output.status, REASON_INVALID_POSITION_PARAMS),
                computation_offset=record.computation_offset,
            )
        collateral_custody = self._state.custodies[position.collateral_custody_id]
        transfer_amount = record.context["transfer_amount"]
        backing = self._positions.position_get_backing(position.position_id)
        if record.context["is_add"]:
            self._accounting.accounting_commit_escrow(collateral_custody, record.escrow, FEE_OPEN_POSITION)
            backing.deposited_collateral += transfer_amount
        else:
            self._accounting.accounting_withdraw_collateral(collateral_custody, record.settlement_account, transfer_amount)
            backing.deposited_collateral -= transfer_amount
        self._positions.position_apply_state(position, output.ciphertexts, output.nonce, transaction.now)
        transaction.touch_custody(collateral_custody.custody_id)
        event = PositionUpdatedEvent(
            computation_offset=record.computation_offset,
            position_id=position.position_id,
            nonce=output.nonce,
        )
        transaction.events.append(event)
        return event

    def _program_apply_close(
        self,
        transaction: _Transaction,
        record: ComputationRecord,
        position: PositionRecord,
        output: CloseOutput,
    ) -> LedgerEvent:
        collateral_custody = self._state.custodies[position.collateral_custody_id]
        collateral_price = record.context["collateral_price"]
        backing = self._positions.position_get_backing(position.position_id)
        self._accounting.accounting_unlock_funds(collateral_custody, backing.locked_amount, transaction.now)
        paid_amounts = self._accounting.accounting_settle(
            collateral_custody,
            deposited_amount=backing.deposited_collateral,
            payouts=[(record.settlement_account, oracle_usd_to_tokens(output.transfer_amount, collateral_price))],
            fee_amount=oracle_usd_to_tokens(output.fee_amount, collateral_price),
            fee_kind=FEE_CLOSE_POSITION,
        )
        self._accounting.accounting_record_volume(collateral_custody, FEE_CLOSE_POSITION, output.transfer_amount)
        self._accounting.accounting_record_trade_result(collateral_custody, output.profit_usd, output.loss_usd)
        self._positions.position_deactivate(position, transaction.now)
        transaction.touch_custody(collateral_custody.custody_id)
        event = PositionClosedEvent(
            computation_offset=record.computation_offset,
            position_id=position.position_id,
            profit_usd=output.profit_usd,
            loss_usd=output.loss_usd,
            transfer_amount=output.transfer_amount,
            fee_amount=output.fee_amount,
            paid_out_tokens=paid_amounts[0],
        )
        transaction.events.append(event)
        return event

    def _program_apply_liquidation(
        self,
        transaction: _Transaction,
        record: ComputationRecord,
        position: PositionRecord,
        output: LiquidationOutput,
    ) -> LedgerEvent:
        if not output.is_liquidatable:
            raise ComputationFailedError(
                f"position {position.position_id} is not liquidatable",
                reason_code=REASON_NOT_LIQUIDATABLE,
                computation_offset=record.computation_offset,
            )
        collateral_custody = self._state.custodies[position.collateral_custody_id]
        collateral_price = record.context["collateral_price"]
        reward_tokens = oracle_usd_to_tokens(output.liquidator_reward, collateral_price)
        protocol_part = reward_tokens * collateral_custody.fees.protocol_share // BPS_POWER
        owner_tokens = oracle_usd_to_tokens(output.owner_amount, collateral_price)

        backing = self._positions.position_get_backing(position.position_id)
        self._accounting.accounting_unlock_funds(collateral_custody, backing.locked_amount, transaction.now)
        paid_amounts = self._accounting.accounting_settle(
            collateral_custody,
            deposited_amount=backing.deposited_collateral,
            payouts=[
                (record.settlement_account, reward_tokens - protocol_part),
                (backing.owner_token_account, owner_tokens),
            ],
            fee_amount=reward_tokens,
            fee_kind=FEE_LIQUIDATION,
        )
        self._accounting.accounting_record_volume(
            collateral_custody,
            FEE_LIQUIDATION,
            output.liquidator_reward + output.owner_amount,
        )
        self._positions.position_deactivate(position, transaction.now)
        transaction.touch_custody(collateral_custody.custody_id)
        event = PositionLiquidatedEvent(
            computation_offset=record.computation_offset,
            position_id=position.position_id,
            liquidator=record.submitter,
            liquidator_reward=output.liquidator_reward,
            owner_amount=output.owner_amount,
            paid_out_tokens=sum(paid_amounts),
        )
        transaction.events.append(event)
        return event

    def _program_record_failure(self, computation_offset: int, reason_code: str) -> None:
        with self._program_transaction() as transaction:
            record = self._program_require_queued(computation_offset)
            record.status = ComputationStatus.FAILED
            record.failure_code = reason_code
            record.resolved_at = transaction.now
            if record.escrow is not None:
                custody = self._state.custodies[record.escrow.collateral_custody_id]
                self._accounting.accounting_refund_escrow(custody, record.escrow, transaction.now)
                transaction.touch_custody(custody.custody_id)
            transaction.touch_position(record.position_id)
            transaction.events.append(
                ComputationResolvedEvent(
                    computation_offset=computation_offset,
                    operation_kind=record.operation_kind.value,
                    position_id=record.position_id,
                    status=ComputationStatus.FAILED.value,
                    failure_code=reason_code,
                )
            )

    def program_get_protocol(self) -> ProtocolState | None:
        """Return a copy of the protocol singleton.

        Returns:
            ProtocolState | None: Protocol state, or None before `program_initialize`.
        """

        with self._lock:
            return copy.deepcopy(self._state.protocol)

    def program_get_pool(self, pool_id: str) -> PoolRecord | None:
        """Return a copy of one pool record.

        Args:
            pool_id: Pool identifier.

        Returns:
            PoolRecord | None: Pool record, or None when unknown.
        """

        with self._lock:
            return copy.deepcopy(self._state.pools.get(pool_id))

    def program_get_custody(self, custody_id: str) -> CustodyRecord | None:
        """Return a copy of one custody record.

        Args:
            custody_id: Custody identifier.

        Returns:
            CustodyRecord | None: Custody record, or None when unknown.
        """

        with self._lock:
            return copy.deepcopy(self._state.custodies.get(custody_id))

    def program_get_position(self, position_id: str) -> PositionRecord:
        """Return a copy of one position record.

        Raises:
            PositionNotFoundError: Raised when no such position exists.
        """

        with self._lock:
            return copy.deepcopy(self._positions.position_get(position_id))

    def program_get_position_backing(self, position_id: str) -> PositionBacking:
        """Return a copy of the custody backing held for one position.

        Backings stay inside the ledger: they are not part of the position
        record and are never written to the record sink.

        Args:
            position_id: Position identifier.

        Returns:
            PositionBacking: Locked liquidity, deposited collateral and payout account.

        Raises:
            PositionNotFoundError: Raised when no such position exists.
        """

        with self._lock:
            return copy.deepcopy(self._positions.position_get_backing(position_id))

    def program_list_positions(self, owner: str | None = None) -> list[PositionRecord]:
        """Return copies of position records, optionally for one owner.

        Args:
            owner: Optional owner filter.

        Returns:
            list[PositionRecord]: Matching records in creation order.
        """

        with self._lock:
            records = self._positions.position_list()
            return [copy.deepcopy(record) for record in records if owner is None or record.owner == owner]

    def program_get_computation(self, computation_offset: int) -> ComputationRecord | None:
        """Return a copy of the computation queued at `computation_offset`.

        Args:
            computation_offset: Computation offset.

        Returns:
            ComputationRecord | None: Computation record, or None when the offset was never used.
        """

        with self._lock:
            return copy.deepcopy(self._state.computations.get(computation_offset))

    def program_get_computation_definition(self, name: str) -> ComputationDefinitionRecord | None:
        """Return one computation definition.

        Args:
            name: Definition name.

        Returns:
            ComputationDefinitionRecord | None: Frozen definition record, or None when not registered.
        """

        with self._lock:
            return self._state.definitions.get(name)

    def _program_require_admin(self, caller: str) -> ProtocolState:
        protocol = self._state.protocol
        if protocol is None:
            raise InvalidConfigError("protocol is not initialized", "NOT_INITIALIZED")
        if caller != protocol.admin:
            raise PermissionDeniedError(f"{caller} is not the protocol admin")
        return protocol

    def _program_require_permission(self, flag_name: str) -> None:
        protocol = self._state.protocol
        if protocol is None:
            raise InvalidConfigError("protocol is not initialized", "NOT_INITIALIZED")
        if not getattr(protocol.permissions, flag_name):
            raise PermissionDeniedError(f"{flag_name} is disabled")

    def _program_require_pool_custody(self, pool_id: str, custody_id: str) -> tuple[PoolRecord, CustodyRecord]:
        pool = self._state.pools.get(pool_id)
        if pool is None or not pool.is_active:
            raise PoolInactiveError(f"pool {pool_id} is missing or inactive")
        custody = self._state.custodies.get(custody_id)
        if custody is None or not custody.is_active or custody.pool_id != pool_id:
            raise CustodyInactiveError(f"custody {custody_id} is missing, inactive or not in pool {pool_id}")
        return pool, custody

    def _program_require_position_custodies(self, position: PositionRecord) -> tuple[CustodyRecord, CustodyRecord]:
        _, custody = self._program_require_pool_custody(position.pool_id, position.custody_id)
        _, collateral_custody = self._program_require_pool_custody(position.pool_id, position.collateral_custody_id)
        return custody, collateral_custody

    def _program_require_definition(self, name: str) -> None:
        definition = self._state.definitions.get(name)
        if definition is None or not definition.is_finalized:
            raise ComputationDefinitionMissingError(f"computation definition {name} is not finalized")

    def _program_require_new_offset(self, computation_offset: int) -> None:
        if computation_offset < 0 or computation_offset >= 2**64:
            raise InvalidConfigError("computation offset must be an unsigned 64-bit value")
        if computation_offset in self._state.computations:
            raise InvalidConfigError(f"computation offset {computation_offset} was already used", "COMPUTATION_OFFSET_IN_USE")

    def _program_require_queued(self, computation_offset: int) -> ComputationRecord:
        record = self._state.computations.get(computation_offset)
        if record is None:
            raise ConsistencyError(f"computation offset {computation_offset} is unknown", "UNKNOWN_COMPUTATION")
        if record.status is not ComputationStatus.QUEUED:
            raise DuplicateFinalizationError(f"computation offset {computation_offset} was already resolved")
        return record

    def _program_queue_computation(
        self,
        transaction: _Transaction,
        record: ComputationRecord,
        request: ComputationRequest,
    ) -> None:
        self._state.computations[record.computation_offset] = record
        transaction.requests.append(request)
        logger.info(
            "computation queued",
            extra={
                "computation_offset": record.computation_offset,
                "position_id": record.position_id,
                "operation_kind": record.operation_kind.value,
            },
        )

    def _program_build_state_request(
        self,
        position: PositionRecord,
        computation_offset: int,
        definition_name: str,
        plaintext_arguments: dict,
    ) -> ComputationRequest:
        return ComputationRequest(
            computation_offset=computation_offset,
            definition_name=definition_name,
            encrypted_inputs=(),
            caller_public_key=None,
            input_nonce=0,
            output_nonce=0,
            owner_encryption_key=position.owner_encryption_key,
            position_ciphertexts=position.ciphertexts,
            position_nonce=position.nonce,
            plaintext_arguments=plaintext_arguments,
        )

    def _program_refresh_aum(self, pool: PoolRecord) -> None:
        aum_usd = 0
        for custody_id in pool.custody_ids:
            custody = self._state.custodies[custody_id]
            if custody.oracle_price is not None:
                aum_usd += oracle_tokens_to_usd(custody.assets.owned, custody.oracle_price.price)
        pool.aum_usd = aum_usd


def _program_require_encrypted_inputs(ciphertexts: tuple[bytes, ...], caller_public_key: bytes) -> None:
    if len(caller_public_key) != PUBLIC_KEY_SIZE:
        raise InvalidConfigError(f"caller public key must be {PUBLIC_KEY_SIZE} bytes")
    for value in ciphertexts:
        if len(value) != CIPHERTEXT_SIZE:
            raise InvalidConfigError(f"encrypted inputs must be {CIPHERTEXT_SIZE} bytes each")
