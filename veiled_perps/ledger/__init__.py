"""Ledger layer package for the encrypted position program."""

from .custody_accounting import (
	CustodyAccounting,
	custody_check_invariants,
	custody_min_owned,
	custody_utilization_bps,
	custody_validate_params,
)
from .interfaces import LedgerEventListener, LedgerRecordSinkPort
from .oracle import oracle_get_price, oracle_tokens_to_usd, oracle_usd_to_tokens
from .position_ledger import PositionLedger
from .program import LedgerProgram

__all__ = [
	"CustodyAccounting",
	"LedgerEventListener",
	"LedgerProgram",
	"LedgerRecordSinkPort",
	"PositionLedger",
	"custody_check_invariants",
	"custody_min_owned",
	"custody_utilization_bps",
	"custody_validate_params",
	"oracle_get_price",
	"oracle_tokens_to_usd",
	"oracle_usd_to_tokens",
]
