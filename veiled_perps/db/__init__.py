"""Database layer package for all SQL and persistence boundaries."""

from .health import HEALTH_STATUS_OK, HEALTH_STATUS_SCHEMA_MISSING, SQLAlchemyRecordStoreHealthService
from .interfaces import (
	CustodyRecordRow,
	DatabaseHealthPort,
	LedgerEventRow,
	LedgerRecordRepositoryPort,
	PositionRecordRow,
)
from .ledger_records import SQLAlchemyLedgerRecordService
from .schema import db_create_schema, db_record_metadata
from .session import db_create_engine

__all__ = [
	"CustodyRecordRow",
	"DatabaseHealthPort",
	"HEALTH_STATUS_OK",
	"HEALTH_STATUS_SCHEMA_MISSING",
	"LedgerEventRow",
	"LedgerRecordRepositoryPort",
	"PositionRecordRow",
	"SQLAlchemyLedgerRecordService",
	"SQLAlchemyRecordStoreHealthService",
	"db_create_engine",
	"db_create_schema",
	"db_record_metadata",
]
