"""Shared ledger fixtures: one pool with a traded asset custody and a stable collateral custody."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field

import pytest

from veiled_perps.adapters import InMemoryTokenLedger, SimulatedMpcCluster
from veiled_perps.crypto import ClusterKeyCache, EncryptionSession, KeyFetchRetryStrategy
from veiled_perps.domain import BorrowRateParams, Fees, OracleParams, PricingParams
from veiled_perps.domain.constants import COMPUTATION_DEFINITION_NAMES
from veiled_perps.jobs import ComputationOrchestrator, OrchestratorConfig, PrivatePositionClient
from veiled_perps.ledger import LedgerProgram

ADMIN = "admin"
ORACLE_AUTHORITY = "oracle"
TRADER = "trader"
LIQUIDATOR = "liquidator"
LIQUIDITY_PROVIDER = "liquidity_provider"

START_TIME = 1_700_000_000
ASSET_PRICE = 100_000_000
STABLE_PRICE = 1_000_000
POOL_LIQUIDITY = 10_000_000_000
TRADER_BALANCE = 1_000_000_000


@dataclass
class FixedClock:
    """Mutable unix-seconds clock injected into the ledger program."""

    now: int = START_TIME

    def __call__(self) -> int:
        return self.now


@dataclass
class LedgerHarness:
    """Wired ledger program, simulated cluster and funded accounts.

    Attributes:
        tokens: Token custody ledger.
        cluster: Simulated cluster attached to the program.
        program: Ledger program.
        clock: Program clock.
        pool_id: Pool identifier.
        asset_custody_id: Traded asset custody.
        stable_custody_id: Collateral custody.
        stable_mint: Collateral mint.
        accounts: Stable token account per identity.
    """

    tokens: InMemoryTokenLedger
    cluster: SimulatedMpcCluster
    program: LedgerProgram
    clock: FixedClock
    pool_id: str
    asset_custody_id: str
    stable_custody_id: str
    stable_mint: str
    accounts: dict[str, str] = field(default_factory=dict)

    def harness_fund(self, identity: str, amount: int) -> str:
        """Create and fund a stable token account for `identity`."""

        account_id = f"{identity}_stable"
        if not self.tokens.token_account_exists(account_id):
            self.tokens.token_create_account(account_id, self.stable_mint, owner=identity)
        self.tokens.token_mint_to(self.stable_mint, account_id, amount)
        self.accounts[identity] = account_id
        return account_id

    def harness_set_asset_price(self, price: int) -> None:
        """Publish fresh prices for both custodies."""

        self.program.program_set_custom_oracle_price(ORACLE_AUTHORITY, self.asset_custody_id, price, 0, self.clock.now)
        self.program.program_set_custom_oracle_price(
            ORACLE_AUTHORITY,
            self.stable_custody_id,
            STABLE_PRICE,
            0,
            self.clock.now,
        )

    def harness_build_orchestrator(self, poll_interval_seconds: float = 0.01) -> ComputationOrchestrator:
        return ComputationOrchestrator(
            program=self.program,
            config=OrchestratorConfig(timeout_seconds=5.0, poll_interval_seconds=poll_interval_seconds),
        )

    def harness_build_client(self, owner: str, orchestrator: ComputationOrchestrator) -> PrivatePositionClient:
        """Build a position client with its own session keypair."""

        key_cache = ClusterKeyCache(
            key_source=self.program,
            retry_strategy=KeyFetchRetryStrategy(retry_attempts=1),
        )
        return PrivatePositionClient(
            program=self.program,
            orchestrator=orchestrator,
            session=EncryptionSession(key_cache=key_cache),
            owner=owner,
        )

    def harness_balance(self, identity: str) -> int:
        return self.tokens.token_balance(self.accounts[identity])

    def harness_custody_balance(self) -> int:
        custody = self.program.program_get_custody(self.stable_custody_id)
        return self.tokens.token_balance(custody.token_account)


def harness_build_ledger(
    fees: Fees | None = None,
    pricing: PricingParams | None = None,
    record_sink=None,
    pool_liquidity: int = POOL_LIQUIDITY,
) -> LedgerHarness:
    """Build an initialized ledger with finalized definitions, prices and pool liquidity.

    Args:
        fees: Optional fee schedule for both custodies.
        pricing: Optional pricing limits for both custodies.
        record_sink: Optional record sink passed to the program.
        pool_liquidity: Stable liquidity deposited by the liquidity provider.

    Returns:
        LedgerHarness: Ready-to-trade harness.
    """

    tokens = InMemoryTokenLedger()
    cluster = SimulatedMpcCluster()
    clock = FixedClock()
    program = LedgerProgram(tokens=tokens, computation_queue=cluster, record_sink=record_sink, clock=clock)
    cluster.cluster_attach(program)
    program.program_publish_cluster_key(cluster.public_key)
    program.program_initialize(ADMIN)
    for definition_name in COMPUTATION_DEFINITION_NAMES:
        program.program_init_computation_definition(ADMIN, definition_name)
        program.program_finalize_computation_definition(ADMIN, definition_name)

    tokens.token_create_mint("asset_mint", authority=ADMIN)
    tokens.token_create_mint("stable_mint", authority=ADMIN)
    pool = program.program_add_pool(ADMIN, "main")
    oracle = OracleParams(oracle_authority=ORACLE_AUTHORITY)
    asset_custody = program.program_add_custody(
        ADMIN,
        pool.pool_id,
        "asset_mint",
        is_stable=False,
        oracle=oracle,
        pricing=pricing or PricingParams(),
        fees=fees or Fees(),
        borrow_rate=BorrowRateParams(),
    )
    stable_custody = program.program_add_custody(
        ADMIN,
        pool.pool_id,
        "stable_mint",
        is_stable=True,
        oracle=oracle,
        pricing=pricing or PricingParams(),
        fees=fees or Fees(),
        borrow_rate=BorrowRateParams(),
    )
    harness = LedgerHarness(
        tokens=tokens,
        cluster=cluster,
        program=program,
        clock=clock,
        pool_id=pool.pool_id,
        asset_custody_id=asset_custody.custody_id,
        stable_custody_id=stable_custody.custody_id,
        stable_mint="stable_mint",
    )
    harness.harness_set_asset_price(ASSET_PRICE)
    if pool_liquidity > 0:
        funding_account = harness.harness_fund(LIQUIDITY_PROVIDER, pool_liquidity)
        program.program_add_liquidity(
            LIQUIDITY_PROVIDER,
            pool.pool_id,
            stable_custody.custody_id,
            funding_account=funding_account,
            lp_token_account="liquidity_provider_lp",
            amount_in=pool_liquidity,
            min_lp_amount_out=0,
        )
    harness.harness_fund(TRADER, TRADER_BALANCE)
    harness.harness_fund(LIQUIDATOR, 0)
    return harness


async def harness_run_with_cluster(cluster: SimulatedMpcCluster, awaitable):
    """Await `awaitable` while the simulated cluster serves its queue in the background."""

    stop_event = asyncio.Event()
    serve_task = asyncio.create_task(cluster.cluster_serve(stop_event, interval_seconds=0.005))
    try:
        return await awaitable
    finally:
        stop_event.set()
        await serve_task


@pytest.fixture
def ledger_harness() -> LedgerHarness:
    """Provide a funded ledger with default fees and pricing."""

    return harness_build_ledger()
