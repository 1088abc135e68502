"""Application bootstrap wiring for startup validation and dependency assembly."""

from __future__ import annotations

from dataclasses import dataclass

from fastapi import FastAPI
from sqlalchemy import Engine

from veiled_perps.adapters import InMemoryTokenLedger, SimulatedMpcCluster
from veiled_perps.api import create_api_application
from veiled_perps.config import AppSettings, config_configure_logging, config_require, config_resolve_settings
from veiled_perps.crypto import ClusterKeyCache, EncryptionSession, KeyFetchRetryStrategy
from veiled_perps.db import SQLAlchemyLedgerRecordService, SQLAlchemyRecordStoreHealthService, db_create_engine
from veiled_perps.jobs import (
    ComputationDefinitionRegistrar,
    ComputationOrchestrator,
    OrchestratorConfig,
    PrivatePositionClient,
)
from veiled_perps.ledger import LedgerProgram


@dataclass
class LedgerRuntime:
    """In-process ledger runtime with its collaborators wired together.

    Attributes:
        settings: Validated runtime settings.
        engine: Record store engine.
        record_service: Record store the ledger writes committed records to.
        tokens: Token custody ledger.
        cluster: Simulated computation cluster attached to the program.
        program: Ledger program.
        key_cache: Shared cluster public key cache.
        orchestrator: Computation ticket orchestrator.
    """

    settings: AppSettings
    engine: Engine
    record_service: SQLAlchemyLedgerRecordService
    tokens: InMemoryTokenLedger
    cluster: SimulatedMpcCluster
    program: LedgerProgram
    key_cache: ClusterKeyCache
    orchestrator: ComputationOrchestrator


def bootstrap_create_runtime(settings: AppSettings) -> LedgerRuntime:
    """Assemble the ledger program, simulated cluster and record store.

    The cluster is attached to the program and its public key is published,
    so computation definitions can be finalized right away.

    Args:
        settings: Validated runtime settings.

    Returns:
        LedgerRuntime: Wired runtime.
    """

    engine = db_create_engine(database_url=settings.database_url)
    record_service = SQLAlchemyLedgerRecordService(engine=engine)
    tokens = InMemoryTokenLedger()
    cluster = SimulatedMpcCluster()
    program = LedgerProgram(tokens=tokens, computation_queue=cluster, record_sink=record_service)
    cluster.cluster_attach(program)
    program.program_publish_cluster_key(cluster.public_key)

    key_cache = ClusterKeyCache(
        key_source=program,
        retry_strategy=KeyFetchRetryStrategy(
            retry_attempts=settings.cluster_key_retry_attempts,
            backoff_base_seconds=settings.cluster_key_retry_base_seconds,
            max_backoff_seconds=settings.cluster_key_retry_max_seconds,
            jitter_min_multiplier=settings.cluster_key_jitter_min_multiplier,
            jitter_max_multiplier=settings.cluster_key_jitter_max_multiplier,
        ),
    )
    orchestrator = ComputationOrchestrator(
        program=program,
        config=OrchestratorConfig(
            timeout_seconds=settings.computation_timeout_seconds,
            poll_interval_seconds=settings.computation_poll_interval_seconds,
        ),
    )
    return LedgerRuntime(
        settings=settings,
        engine=engine,
        record_service=record_service,
        tokens=tokens,
        cluster=cluster,
        program=program,
        key_cache=key_cache,
        orchestrator=orchestrator,
    )


def bootstrap_create_registrar(runtime: LedgerRuntime, admin: str) -> ComputationDefinitionRegistrar:
    """Build the computation definition registrar for one admin identity."""

    return ComputationDefinitionRegistrar(
        program=runtime.program,
        admin=admin,
        retry_attempts=runtime.settings.comp_def_finalize_retry_attempts,
        backoff_seconds=runtime.settings.comp_def_finalize_backoff_seconds,
    )


def bootstrap_create_position_client(runtime: LedgerRuntime, owner: str) -> PrivatePositionClient:
    """Build a position client with a fresh encryption session for `owner`.

    Args:
        runtime: Wired runtime.
        owner: Identity the client acts as.

    Returns:
        PrivatePositionClient: Client sharing the runtime orchestrator and key cache.
    """

    return PrivatePositionClient(
        program=runtime.program,
        orchestrator=runtime.orchestrator,
        session=EncryptionSession(key_cache=runtime.key_cache),
        owner=owner,
    )


def bootstrap_create_application(settings: AppSettings | None = None) -> FastAPI:
    """Assemble the record API after validating startup configuration.

    Args:
        settings: Already resolved settings; loaded from the environment when omitted.

    Returns:
        FastAPI: Fully initialized FastAPI application instance.

    Raises:
        SettingsLoadError: Raised when startup configuration validation fails.
    """

    if settings is None:
        settings = config_require(config_resolve_settings())
    config_configure_logging(log_format=settings.log_format, log_level=settings.log_level)
    engine = db_create_engine(database_url=settings.database_url)
    return create_api_application(
        settings=settings,
        db_health_service=SQLAlchemyRecordStoreHealthService(engine=engine),
        record_repository=SQLAlchemyLedgerRecordService(engine=engine),
    )
