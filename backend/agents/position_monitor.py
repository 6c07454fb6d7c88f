"""
Position Monitor - the autonomous half of VaultX
Watches every borrower's Morpho position and deleverages when LTV runs hot

Responsibilities:
- Discover wallets from transaction history (anyone who supplied or borrowed)
- Skip wallets on cooldown or leased by an overlapping run
- Read a fresh snapshot and classify the position
- Plan a rebalance (or, when enabled, a migration to Fluid)
- Validate the plan against the call allowlist before anything is signed
- Execute through the orchestrator and record history, audit and cooldown

One wallet's failure never stops the batch. Persistence failures are logged
and never change the outcome of an execution that already happened.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from agents.execution_orchestrator import ExecutionOrchestrator
from agents.security_policy import PolicyEngine
from data_sources.morpho import MorphoReader, PositionSnapshot
from infrastructure.audit import AuditEvent, AuditLog
from infrastructure.config import MonitorConfig
from infrastructure.errors import VaultXError
from infrastructure.store import CooldownLedger, WalletLease
from services.history_store import RebalanceLogEntry, TransactionRecord
from services.migration_service import MigrationPlanner, MigrationRequest
from services.rebalance_service import RebalancePlanner

logger = logging.getLogger("PositionMonitor")


def _describe(error: Exception) -> str:
    return error.message if isinstance(error, VaultXError) else str(error) or repr(error)


class PositionStatus(str, Enum):
    NO_POSITION = "no_position"
    HEALTHY = "healthy"
    NEEDS_REBALANCE = "needs_rebalance"
    NEEDS_MIGRATION = "needs_migration"


def classify_position(snapshot: PositionSnapshot, config: MonitorConfig) -> PositionStatus:
    """Only positions with both collateral and debt are actionable."""
    if snapshot.collateral <= 0 or snapshot.debt <= 0:
        return PositionStatus.NO_POSITION

    ltv = snapshot.current_ltv
    if config.auto_migration_enabled and ltv >= config.migration_ltv_threshold:
        return PositionStatus.NEEDS_MIGRATION
    if ltv > config.ltv_rebalance_threshold:
        return PositionStatus.NEEDS_REBALANCE
    return PositionStatus.HEALTHY


@dataclass
class MonitorDetail:
    address: str
    action: str                  # rebalanced | migrated | skipped | error | healthy
    reason: Optional[str] = None
    ltv_before: Optional[float] = None
    ltv_after: Optional[float] = None
    tx_hash: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "address": self.address,
            "action": self.action,
            "reason": self.reason,
            "ltvBefore": self.ltv_before,
            "ltvAfter": self.ltv_after,
            "txHash": self.tx_hash,
        }
        return {k: v for k, v in data.items() if v is not None}


@dataclass
class MonitorSummary:
    users_checked: int = 0
    rebalances_triggered: int = 0
    skipped: int = 0
    errors: int = 0
    details: List[MonitorDetail] = field(default_factory=list)

    def counts(self) -> Dict[str, int]:
        return {
            "usersChecked": self.users_checked,
            "rebalancesTriggered": self.rebalances_triggered,
            "skipped": self.skipped,
            "errors": self.errors,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {**self.counts(), "details": [d.to_dict() for d in self.details]}

    def skip(self, address: str, reason: str, ltv: Optional[float] = None):
        self.skipped += 1
        self.details.append(MonitorDetail(address, "skipped", reason=reason, ltv_before=ltv))

    def fail(self, address: str, reason: str, ltv: Optional[float] = None):
        self.errors += 1
        self.details.append(MonitorDetail(address, "error", reason=reason, ltv_before=ltv))


class PositionMonitor:
    """Evaluates every known borrower once per run."""

    def __init__(
        self,
        reader: MorphoReader,
        rebalancer: RebalancePlanner,
        migrator: MigrationPlanner,
        policy: PolicyEngine,
        orchestrator: ExecutionOrchestrator,
        history,
        audit: AuditLog,
        cooldowns: CooldownLedger,
        leases: WalletLease,
        config: Optional[MonitorConfig] = None,
    ):
        self.reader = reader
        self.rebalancer = rebalancer
        self.migrator = migrator
        self.policy = policy
        self.orchestrator = orchestrator
        self.history = history
        self.audit = audit
        self.cooldowns = cooldowns
        self.leases = leases
        self.config = config or MonitorConfig()

    async def discover_wallets(self) -> List[str]:
        wallets = await self.history.distinct_wallets()
        return wallets[: self.config.max_users_per_run]

    async def run(self) -> MonitorSummary:
        summary = MonitorSummary()
        wallets = await self.discover_wallets()
        logger.info(f"[Monitor] Checking {len(wallets)} wallet(s)")

        for wallet in wallets:
            summary.users_checked += 1
            # _evaluate records the planned action before building its calls
            context = {"action": "rebalance"}
            try:
                await self._process_wallet(wallet, summary, context)
            except Exception as e:
                message = _describe(e)
                logger.error(f"[Monitor] Error processing {wallet}: {message}")
                await self._log_rebalance(RebalanceLogEntry(wallet, "error", reason=message))
                await self.audit.record(
                    AuditEvent.OFFLINE_EXECUTION_FAILED, wallet, context["action"], error=message
                )
                summary.fail(wallet, message)

        logger.info(
            f"[Monitor] Done: checked={summary.users_checked} "
            f"rebalanced={summary.rebalances_triggered} skipped={summary.skipped} errors={summary.errors}"
        )
        return summary

    async def _process_wallet(self, wallet: str, summary: MonitorSummary, context: Dict[str, str]):
        if await self.cooldowns.is_cooling_down(wallet):
            summary.skip(wallet, "On cooldown")
            return

        token = await self.leases.acquire(wallet)
        if not token:
            summary.skip(wallet, "Wallet is being processed by another run")
            return

        try:
            await self._evaluate(wallet, summary, context)
        finally:
            await self.leases.release(wallet, token)

    async def _evaluate(self, wallet: str, summary: MonitorSummary, context: Dict[str, str]):
        snapshot = await self.reader.fetch_snapshot(wallet)
        status = classify_position(snapshot, self.config)
        ltv = snapshot.current_ltv

        if status == PositionStatus.NO_POSITION:
            summary.skip(wallet, "No active position")
            return
        if status == PositionStatus.HEALTHY:
            summary.details.append(MonitorDetail(wallet, "healthy", ltv_before=ltv))
            return

        if status == PositionStatus.NEEDS_MIGRATION:
            action = context["action"] = "migrate"
            plan = self.migrator.build_migration_calls(MigrationRequest(user_address=wallet), snapshot)
            ltv_after = None
        else:
            action = context["action"] = "rebalance"
            plan = await self.rebalancer.build_rebalance_calls(snapshot)
            ltv_after = plan.calculation.estimated_new_ltv

        logger.info(f"[Monitor] {action} {wallet} - LTV: {ltv:.2f}%")

        check = self.policy.validate(plan.calls)
        if not check.valid:
            reason = f"Policy violation: {check.error}"
            await self.audit.record(AuditEvent.POLICY_VIOLATION, wallet, action, error=check.error)
            await self._log_rebalance(RebalanceLogEntry(
                wallet, "error", reason=reason, details={"ltvBefore": ltv}
            ))
            summary.fail(wallet, reason, ltv)
            return

        result = await self.orchestrator.execute_autonomous(wallet, plan.calls)
        calculation = plan.calculation.to_dict()

        # The transaction is on-chain: nothing below may turn this into a failure
        await self._mark_cooldown(wallet)
        await self._save_history(TransactionRecord(
            wallet_address=wallet,
            action=action,
            tx_hash=result.tx_hash,
            executed_by=self.config.executed_by,
            metadata={**calculation, "userOpHash": result.user_op_hash},
        ))
        outcome = "rebalanced" if action == "rebalance" else "migrated"
        await self._log_rebalance(RebalanceLogEntry(
            wallet, outcome, details={**calculation, "txHash": result.tx_hash}
        ))
        await self.audit.record(
            AuditEvent.OFFLINE_EXECUTION, wallet, action,
            txHash=result.tx_hash, ltvBefore=ltv, ltvAfter=ltv_after,
        )

        summary.rebalances_triggered += 1
        summary.details.append(MonitorDetail(
            wallet, outcome, ltv_before=ltv, ltv_after=ltv_after, tx_hash=result.tx_hash
        ))

    # ============================================
    # PERSISTENCE (never raises)
    # ============================================

    async def _mark_cooldown(self, wallet: str):
        try:
            await self.cooldowns.mark(wallet)
        except Exception as e:
            logger.error(f"[Monitor] Failed to set cooldown for {wallet}: {_describe(e)}")

    async def _save_history(self, record: TransactionRecord):
        try:
            await self.history.add(record)
        except Exception as e:
            logger.error(f"[Monitor] Failed to save history: {_describe(e)}")

    async def _log_rebalance(self, entry: RebalanceLogEntry):
        try:
            await self.history.log_rebalance(entry)
        except Exception as e:
            logger.error(f"[Monitor] Failed to log rebalance result: {_describe(e)}")
