"""Domain contracts, errors and events used across layer boundaries."""

from .addresses import domain_derive_address
from .events import (
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
    domain_event_name,
    domain_event_payload,
)
from .models import (
    AppMetadata,
    BorrowRateParams,
    BorrowRateState,
    CloseOutput,
    ComputationDefinitionRecord,
    ComputationOutput,
    ComputationRecord,
    ComputationRequest,
    ComputationStatus,
    ComputationTicket,
    CustodyAssets,
    CustodyEscrow,
    CustodyRecord,
    CustodyStatistics,
    EncryptedStateOutput,
    Fees,
    HealthStatus,
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
    TicketStatus,
    UpdatePositionRequest,
)
from .timeline import domain_append_stage_event, domain_build_stage_event

__all__ = [
    "AddLiquidityEvent",
    "AppMetadata",
    "BorrowRateParams",
    "BorrowRateState",
    "CloseOutput",
    "ComputationDefinitionRecord",
    "ComputationOutput",
    "ComputationRecord",
    "ComputationRequest",
    "ComputationResolvedEvent",
    "ComputationStatus",
    "ComputationTicket",
    "CustodyAssets",
    "CustodyEscrow",
    "CustodyRecord",
    "CustodyStatistics",
    "EncryptedStateOutput",
    "Fees",
    "HealthStatus",
    "LedgerEvent",
    "LiquidationOutput",
    "OpenPositionEvent",
    "OpenPositionRequest",
    "OperationKind",
    "OracleParams",
    "OraclePriceRecord",
    "OracleType",
    "Permissions",
    "PnlCalculatedEvent",
    "PnlOutput",
    "PoolRecord",
    "PositionBacking",
    "PositionClosedEvent",
    "PositionLiquidatedEvent",
    "PositionOpenedEvent",
    "PositionRecord",
    "PositionUpdatedEvent",
    "PricingParams",
    "ProtocolState",
    "RemoveLiquidityEvent",
    "TicketStatus",
    "UpdatePositionEvent",
    "UpdatePositionRequest",
    "domain_append_stage_event",
    "domain_build_stage_event",
    "domain_derive_address",
    "domain_event_name",
    "domain_event_payload",
]
