"""Main module entrypoint for local runtime execution.

This module validates startup configuration and launches the FastAPI service.
"""

import argparse
import logging

import uvicorn

from veiled_perps.bootstrap import bootstrap_create_application
from veiled_perps.config import UnavailableConfig, config_resolve_settings
from veiled_perps.db import db_create_engine, db_create_schema

logger = logging.getLogger(__name__)


def main() -> None:
    """Run selected runtime command with validated startup configuration.

    Raises:
        SystemExit: Raised with the failure reason when configuration is unavailable.
    """

    argument_parser = argparse.ArgumentParser(description="Veiled Perps runtime entrypoint")
    argument_parser.add_argument(
        "command",
        nargs="?",
        default="api",
        choices=("api", "create-schema"),
        help="Runtime command: `api` starts the record API, `create-schema` creates record tables "
        "without migrations (local SQLite runs)",
        type=str,
    )
    parsed_arguments = argument_parser.parse_args()

    resolution = config_resolve_settings()
    if isinstance(resolution, UnavailableConfig):
        logger.error("startup configuration unavailable: %s", resolution.reason)
        raise SystemExit(resolution.reason)
    settings = resolution.config

    if parsed_arguments.command == "create-schema":
        db_create_schema(db_create_engine(database_url=settings.database_url))
        return

    application = bootstrap_create_application(settings)
    uvicorn.run(
        application,
        host=settings.application_host,
        port=settings.application_port,
    )


if __name__ == "__main__":
    main()
