"""Ledger events emitted after a transaction commits.

Events carry only public values: identities, nonces, plaintext transfer
amounts and the outputs the cluster is authorized to reveal.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Union


@dataclass(frozen=True)
class AddLiquidityEvent:
    owner: str
    pool_id: str
    custody_id: str
    amount_in: int
    fee_amount: int
    lp_amount_out: int


@dataclass(frozen=True)
class RemoveLiquidityEvent:
    owner: str
    pool_id: str
    custody_id: str
    lp_amount_in: int
    fee_amount: int
    amount_out: int


@dataclass(frozen=True)
class OpenPositionEvent:
    """Open request queued; the position stays inactive until finalized."""

    computation_offset: int
    owner: str
    position_id: str
    pool_id: str
    custody_id: str
    collateral_amount: int
    size_usd: int


@dataclass(frozen=True)
class PositionOpenedEvent:
    computation_offset: int
    position_id: str
    nonce: int


@dataclass(frozen=True)
class UpdatePositionEvent:
    """Collateral update queued."""

    computation_offset: int
    owner: str
    position_id: str
    collateral_delta: int
    is_add: bool


@dataclass(frozen=True)
class PositionUpdatedEvent:
    computation_offset: int
    position_id: str
    nonce: int


@dataclass(frozen=True)
class PnlCalculatedEvent:
    computation_offset: int
    position_id: str
    profit_usd: int
    loss_usd: int
    current_leverage: int


@dataclass(frozen=True)
class PositionClosedEvent:
    """Settlement of a close, with USD outputs and the token amounts actually moved."""

    computation_offset: int
    position_id: str
    profit_usd: int
    loss_usd: int
    transfer_amount: int
    fee_amount: int
    paid_out_tokens: int


@dataclass(frozen=True)
class PositionLiquidatedEvent:
    computation_offset: int
    position_id: str
    liquidator: str
    liquidator_reward: int
    owner_amount: int
    paid_out_tokens: int


@dataclass(frozen=True)
class ComputationResolvedEvent:
    """Finalization record for one computation offset.

    Attributes:
        computation_offset: Resolved offset.
        operation_kind: Operation kind value.
        position_id: Target position.
        status: `finalized` or `failed`.
        failure_code: Reason code when failed.
        result: Operation result event when finalized.
    """

    computation_offset: int
    operation_kind: str
    position_id: str
    status: str
    failure_code: str | None = None
    result: Any = None


LedgerEvent = Union[
    AddLiquidityEvent,
    RemoveLiquidityEvent,
    OpenPositionEvent,
    PositionOpenedEvent,
    UpdatePositionEvent,
    PositionUpdatedEvent,
    PnlCalculatedEvent,
    PositionClosedEvent,
    PositionLiquidatedEvent,
    ComputationResolvedEvent,
]


def domain_event_name(event: LedgerEvent) -> str:
    """Return the event type name used in persisted event rows.

    Args:
        event: Ledger event.

    Returns:
        str: Event class name.
    """

    return type(event).__name__


def domain_event_payload(event: LedgerEvent) -> dict[str, Any]:
    """Serialize one event into a JSON-compatible dictionary.

    Nested result events of `ComputationResolvedEvent` are reduced to their
    type name and fields.

    Args:
        event: Ledger event.

    Returns:
        dict[str, Any]: Event field values.
    """

    payload = asdict(event)
    if isinstance(event, ComputationResolvedEvent) and event.result is not None:
        payload["result"] = {"event": domain_event_name(event.result), **asdict(event.result)}
    return payload
