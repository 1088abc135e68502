"""Database engine utilities.

This module centralizes database connectivity primitives to enforce the db-layer
boundary for all SQLAlchemy usage.
"""

from sqlalchemy import Engine, create_engine
from sqlalchemy.engine import make_url
from sqlalchemy.pool import StaticPool


def db_create_engine(database_url: str) -> Engine:
    """Create the SQLAlchemy engine for the ledger record store.

    SQLite engines are shareable across threads; an in-memory SQLite URL is
    bound to a single connection so every caller sees the same database.

    Args:
        database_url: SQLAlchemy database URL.

    Returns:
        Engine: Configured SQLAlchemy engine.

    Raises:
        ValueError: Raised when the database URL is blank.
    """

    if not database_url.strip():
        raise ValueError("database_url must not be blank")

    parsed_url = make_url(database_url)
    if parsed_url.get_backend_name() != "sqlite":
        return create_engine(database_url, pool_pre_ping=True)

    if parsed_url.database in (None, "", ":memory:"):
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_engine(database_url, connect_args={"check_same_thread": False})
