"""Record store readiness check used by the health endpoint."""

from sqlalchemy import Engine, func, inspect, select
from sqlalchemy.exc import SQLAlchemyError

from veiled_perps.domain import HealthStatus

from .interfaces import DatabaseHealthPort
from .schema import custody_record_table, db_record_metadata, ledger_event_table, position_record_table

HEALTH_STATUS_OK = "ok"
HEALTH_STATUS_SCHEMA_MISSING = "schema_missing"


class SQLAlchemyRecordStoreHealthService(DatabaseHealthPort):
    """Report whether the ledger record tables are reachable and migrated.

    A reachable database without the record tables is reported as
    `schema_missing` rather than healthy, since the ledger record sink
    cannot mirror transactions into it.
    """

    def __init__(self, engine: Engine):
        """Initialize record store health service.

        Args:
            engine: SQLAlchemy engine bound to the record store.

        Raises:
            ValueError: Raised when engine is None.
        """

        if engine is None:
            raise ValueError("engine must not be None")
        self._engine = engine

    def db_connection_label(self) -> str:
        """Return the record store URL with the password masked.

        Returns:
            str: Rendered engine URL string.
        """

        return self._engine.url.render_as_string(hide_password=True)

    def db_check_health(self) -> HealthStatus:
        """Verify the record tables exist and count the mirrored records.

        Returns:
            HealthStatus: `ok` with record counts, or `schema_missing` naming absent tables.

        Raises:
            ConnectionError: Raised when the record store cannot be reached.
        """

        try:
            with self._engine.connect() as connection:
                present_tables = set(inspect(connection).get_table_names())
                missing_tables = sorted(set(db_record_metadata.tables) - present_tables)
                if missing_tables:
                    return HealthStatus(
                        status=HEALTH_STATUS_SCHEMA_MISSING,
                        detail=f"record tables missing: {', '.join(missing_tables)}",
                    )
                position_count = connection.execute(select(func.count()).select_from(position_record_table)).scalar_one()
                custody_count = connection.execute(select(func.count()).select_from(custody_record_table)).scalar_one()
                event_count = connection.execute(select(func.count()).select_from(ledger_event_table)).scalar_one()
        except SQLAlchemyError as error:
            raise ConnectionError("record store connectivity check failed") from error

        return HealthStatus(
            status=HEALTH_STATUS_OK,
            detail=f"record store ready: {position_count} positions, {custody_count} custodies, {event_count} events",
        )
