"""Adapter layer for the token custody, key source and computation cluster collaborators."""

from .circuits import (
	CloseSettlement,
	LiquidationCheck,
	MarkToMarket,
	PositionState,
	circuit_calculate_pnl,
	circuit_check_liquidation,
	circuit_close_position,
	circuit_init_position,
	circuit_leverage_bps,
	circuit_mark_to_market,
	circuit_update_position,
)
from .interfaces import ClusterKeySourcePort, ComputationCallbackPort, ComputationQueuePort, TokenCustodyPort
from .mpc_cluster import ClusterProcessResult, SimulatedMpcCluster
from .token_ledger import InMemoryTokenLedger

__all__ = [
	"CloseSettlement",
	"ClusterKeySourcePort",
	"ClusterProcessResult",
	"ComputationCallbackPort",
	"ComputationQueuePort",
	"InMemoryTokenLedger",
	"LiquidationCheck",
	"MarkToMarket",
	"PositionState",
	"SimulatedMpcCluster",
	"TokenCustodyPort",
	"circuit_calculate_pnl",
	"circuit_check_liquidation",
	"circuit_close_position",
	"circuit_init_position",
	"circuit_leverage_bps",
	"circuit_mark_to_market",
	"circuit_update_position",
]
