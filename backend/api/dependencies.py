"""
Service container for the HTTP surface and the scheduler.

Everything is wired once from VaultXConfig + SecretsManager. Routes receive
the container through FastAPI's dependency injection, so tests can swap in
a container built from fakes via ``app.dependency_overrides``.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from web3 import AsyncWeb3

from account_abstraction.builder import UserOperationBuilder
from account_abstraction.relayer import Relayer
from agents.execution_orchestrator import ExecutionOrchestrator
from agents.position_monitor import PositionMonitor
from agents.security_policy import PolicyEngine, build_default_allowlist
from data_sources.morpho import MorphoReader
from infrastructure.audit import AuditLog, InMemoryAuditLog, SupabaseAuditLog
from infrastructure.config import SecretsManager, VaultXConfig, get_config, get_secrets
from infrastructure.errors import SigningError
from infrastructure.rate_limiter import RequestRateLimiter, get_signer_gate
from infrastructure.rpc import get_async_web3
from infrastructure.store import CooldownLedger, InMemoryKeyedStore, WalletLease
from integrations.privy_signer import PrivySigner
from services.borrow_service import MorphoCallBuilder
from services.erc20 import AllowanceChecker
from services.history_store import InMemoryHistoryStore, SupabaseHistoryStore
from services.migration_service import MigrationPlanner
from services.rebalance_service import RebalancePlanner
from services.swap_service import SwapBuilder, UniswapV3Quoter

logger = logging.getLogger("Container")


@dataclass
class VaultXContainer:
    config: VaultXConfig
    secrets: SecretsManager
    w3: AsyncWeb3
    store: object
    policy: PolicyEngine
    orchestrator: ExecutionOrchestrator
    reader: MorphoReader
    migrator: MigrationPlanner
    rebalancer: RebalancePlanner
    swaps: SwapBuilder
    history: object
    audit: AuditLog
    monitor: PositionMonitor
    offline_limiter: RequestRateLimiter

    async def morpho_calls(self) -> MorphoCallBuilder:
        """Call builder bound to the live market params."""
        params = await self.reader.get_market_params()
        return MorphoCallBuilder(
            morpho=self.config.contracts.morpho,
            market_params=params,
            loan_token=params.loan_token,
            collateral_token=params.collateral_token,
            decimals=self.config.contracts.token_decimals,
        )


def _build_signer(config: VaultXConfig, secrets: SecretsManager, store) -> Optional[PrivySigner]:
    if not config.privy.enabled:
        logger.warning("[Container] PRIVY_APP_ID not set, autonomous execution disabled")
        return None
    try:
        return PrivySigner(
            app_id=config.privy.app_id,
            app_secret=secrets.get("PRIVY_APP_SECRET", ""),
            authorization_key=secrets.get("PRIVY_AUTHORIZATION_KEY", ""),
            store=store,
            gate=get_signer_gate(),
            api_url=config.privy.api_url,
            wallet_id_ttl=config.privy.wallet_id_ttl,
        )
    except SigningError as e:
        logger.error(f"[Container] Privy signer unavailable: {e.message}")
        return None


def _build_persistence(config: VaultXConfig, secrets: SecretsManager):
    if config.storage.use_supabase:
        from infrastructure.supabase_rest import SupabaseKeyedStore, SupabaseREST
        client = SupabaseREST(config.storage.supabase_url, secrets.get("SUPABASE_KEY", ""))
        return SupabaseKeyedStore(client), SupabaseHistoryStore(client), SupabaseAuditLog(client)
    return InMemoryKeyedStore(), InMemoryHistoryStore(), InMemoryAuditLog()


def build_container(
    config: Optional[VaultXConfig] = None,
    secrets: Optional[SecretsManager] = None,
    w3: Optional[AsyncWeb3] = None,
) -> VaultXContainer:
    config = config or get_config()
    secrets = secrets or get_secrets()
    w3 = w3 or get_async_web3(config.chain.rpc_url)
    contracts = config.contracts

    store, history, audit = _build_persistence(config, secrets)
    policy = PolicyEngine(build_default_allowlist(contracts))

    builder = UserOperationBuilder(w3, contracts.entry_point, config.chain.chain_id)
    relayer = Relayer(
        w3,
        contracts.entry_point,
        config.chain.chain_id,
        secrets.get("RELAYER_PRIVATE_KEY"),
        config.relayer.beneficiary,
        gas_buffer_percent=config.relayer.gas_buffer_percent,
        receipt_timeout=config.relayer.receipt_timeout,
    )
    orchestrator = ExecutionOrchestrator(
        policy,
        builder,
        relayer,
        signer=_build_signer(config, secrets, store),
        delegation_implementation=contracts.delegation_implementation,
        retry_policy=config.relay_retry,
        wait_for_receipt=config.relayer.wait_for_receipt,
    )

    reader = MorphoReader(w3, contracts.morpho, contracts.market_id, contracts.token_decimals)
    swaps = SwapBuilder(
        UniswapV3Quoter(w3, contracts.quoter),
        AllowanceChecker(w3, zero_first_tokens=[contracts.loan_token]),
        contracts.swap_router,
    )
    rebalancer = RebalancePlanner(
        contracts.morpho, swaps, contracts.swap_fee_tier, contracts.token_decimals, config.rebalance
    )
    migrator = MigrationPlanner(contracts.morpho, contracts.migration_helper, contracts.token_decimals)

    monitor = PositionMonitor(
        reader=reader,
        rebalancer=rebalancer,
        migrator=migrator,
        policy=policy,
        orchestrator=orchestrator,
        history=history,
        audit=audit,
        cooldowns=CooldownLedger(store, config.monitor.cooldown_seconds),
        leases=WalletLease(store, config.monitor.lease_ttl_seconds),
        config=config.monitor,
    )

    return VaultXContainer(
        config=config,
        secrets=secrets,
        w3=w3,
        store=store,
        policy=policy,
        orchestrator=orchestrator,
        reader=reader,
        migrator=migrator,
        rebalancer=rebalancer,
        swaps=swaps,
        history=history,
        audit=audit,
        monitor=monitor,
        offline_limiter=RequestRateLimiter(
            store, limit=config.api.offline_requests_per_minute, window_seconds=60, prefix="offline"
        ),
    )


_container: Optional[VaultXContainer] = None


def get_container() -> VaultXContainer:
    """Process-wide container (FastAPI dependency)"""
    global _container
    if _container is None:
        _container = build_container()
        logger.info(f"[Container] Services wired for chain {_container.config.chain.chain_id}")
    return _container
