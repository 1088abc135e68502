"""Project-native typed exceptions for the encrypted-position protocol.

Every error carries a stable `error_code` so API responses and ledger failure
events can report a specific reason without parsing messages.
"""

from __future__ import annotations

from typing import Any


class PerpsError(Exception):
    """Base exception for protocol failures.

    Attributes:
        error_code: Stable machine-readable reason code.
    """

    default_error_code = "PERPS_ERROR"

    def __init__(self, message: str, error_code: str | None = None):
        super().__init__(message)
        self.error_code = error_code or self.default_error_code


class PerpsValidationError(PerpsError, ValueError):
    """Precondition failure; the instruction is rejected whole with no side effects."""

    default_error_code = "VALIDATION_ERROR"


class PoolInactiveError(PerpsValidationError):
    """Pool is missing or deactivated."""

    default_error_code = "POOL_INACTIVE"


class CustodyInactiveError(PerpsValidationError):
    """Custody is missing, deactivated, or does not belong to the pool."""

    default_error_code = "CUSTODY_INACTIVE"


class PermissionDeniedError(PerpsValidationError):
    """Global permission flag disabled, or caller lacks admin/owner authority."""

    default_error_code = "PERMISSION_DENIED"


class UtilizationExceededError(PerpsValidationError):
    """Locking funds would push custody utilization above its cap."""

    default_error_code = "UTILIZATION_EXCEEDED"


class LeverageOutOfRangeError(PerpsValidationError):
    """Initial leverage falls outside `[min_initial_leverage, max_initial_leverage]`."""

    default_error_code = "LEVERAGE_OUT_OF_RANGE"


class PositionNotFoundError(PerpsValidationError, LookupError):
    """Position record does not exist."""

    default_error_code = "POSITION_NOT_FOUND"


class PositionInactiveError(PerpsValidationError):
    """Operation targets a closed, liquidated, or not yet opened position."""

    default_error_code = "POSITION_INACTIVE"


class StaleOracleError(PerpsValidationError):
    """Oracle price is older than `max_price_age_sec` or was never published."""

    default_error_code = "STALE_ORACLE"


class OraclePriceError(PerpsValidationError):
    """Oracle price confidence exceeds `max_price_error`, or oracle is unusable."""

    default_error_code = "ORACLE_PRICE_ERROR"


class InsufficientLiquidityError(PerpsValidationError):
    """Custody cannot release the requested amount without breaking `locked <= owned`."""

    default_error_code = "INSUFFICIENT_LIQUIDITY"


class InsufficientAmountReturnedError(PerpsValidationError):
    """Slippage bound (`min_out`) not met."""

    default_error_code = "INSUFFICIENT_AMOUNT_RETURNED"


class InsufficientFundsError(PerpsValidationError):
    """Token account balance does not cover a transfer or burn."""

    default_error_code = "INSUFFICIENT_FUNDS"


class InvalidConfigError(PerpsValidationError):
    """Pool, custody, or instruction parameters are malformed."""

    default_error_code = "INVALID_CONFIG"


class NonceReuseError(PerpsValidationError):
    """Submitted output nonce is zero, equals the input nonce, or equals the current position nonce."""

    default_error_code = "NONCE_REUSE"


class MutatingTicketPendingError(PerpsValidationError):
    """A mutating computation is already outstanding for this position."""

    default_error_code = "MUTATING_TICKET_PENDING"


class ComputationDefinitionMissingError(PerpsValidationError):
    """Computation definition was never registered or not yet finalized."""

    default_error_code = "COMPUTATION_DEFINITION_MISSING"


class ComputationLifecycleError(PerpsError, RuntimeError):
    """Failure after a computation was queued; submission-time custody effects are in flight.

    Attributes:
        computation_offset: Offset of the affected computation, when known.
    """

    default_error_code = "COMPUTATION_LIFECYCLE_ERROR"

    def __init__(self, message: str, error_code: str | None = None, computation_offset: int | None = None):
        super().__init__(message=message, error_code=error_code)
        self.computation_offset = computation_offset


class ComputationTimeoutError(ComputationLifecycleError, TimeoutError):
    """Finalization did not arrive in time; the outcome is unknown, not failed.

    Attributes:
        ticket: Timed-out ticket, usable to re-check the same offset later.
    """

    default_error_code = "COMPUTATION_TIMEOUT"

    def __init__(self, message: str, computation_offset: int | None = None, ticket: Any = None):
        super().__init__(message=message, computation_offset=computation_offset)
        self.ticket = ticket


class ComputationFailedError(ComputationLifecycleError):
    """The cluster aborted or the ledger rejected the finalization.

    Attributes:
        reason_code: Failure reason code recorded by the ledger.
    """

    default_error_code = "COMPUTATION_FAILED"

    def __init__(self, message: str, reason_code: str, computation_offset: int | None = None):
        super().__init__(message=message, error_code=self.default_error_code, computation_offset=computation_offset)
        self.reason_code = reason_code


class ConsistencyError(PerpsError, RuntimeError):
    """Finalization contradicts current ledger state and must be rejected."""

    default_error_code = "CONSISTENCY_ERROR"


class NonceMismatchError(ConsistencyError):
    """Finalization expects a prior nonce that no longer matches the position."""

    default_error_code = "NONCE_MISMATCH"


class ZeroCiphertextError(ConsistencyError):
    """A ciphertext field is all-zero where an initialized value is required."""

    default_error_code = "ZERO_CIPHERTEXT"


class DuplicateFinalizationError(ConsistencyError):
    """A computation offset was already resolved."""

    default_error_code = "DUPLICATE_FINALIZATION"


class KeyExchangeError(PerpsError, ConnectionError):
    """Cluster public key could not be obtained."""

    default_error_code = "KEY_EXCHANGE_ERROR"


class KeyUnavailableError(KeyExchangeError):
    """Cluster key account is absent or the ledger is unreachable; retry with backoff."""

    default_error_code = "KEY_UNAVAILABLE"


class KeyFetchTimeoutError(KeyExchangeError, TimeoutError):
    """Bounded key-fetch retries were exhausted."""

    default_error_code = "KEY_FETCH_TIMEOUT"


class DecryptionFailedError(PerpsError, ValueError):
    """Ciphertext did not authenticate under the given secret and nonce."""

    default_error_code = "DECRYPTION_FAILED"


class FieldRangeError(PerpsError, ValueError):
    """Plaintext value is negative or does not fit the fixed field width."""

    default_error_code = "FIELD_RANGE_ERROR"
