"""
Execution Orchestrator - prepare -> sign -> submit for user operations

Two entry points:

- User-present: prepare_for_user() returns the unsigned operation and its
  hash; the wallet owner signs in the browser and hands it back to
  submit_signed().
- Autonomous: execute_autonomous() validates, signs with the custodial
  Privy wallet and relays in one go. Policy validation always runs before
  the first signature request, including the EIP-7702 authorization.

Each run is tracked by an Execution whose state only moves forward:
PREPARED -> SIGNED -> SUBMITTED -> CONFIRMED, with FAILED reachable from
any non-terminal state.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Sequence

from web3 import Web3

from account_abstraction.builder import UserOperationBuilder
from account_abstraction.constants import NEXUS_IMPLEMENTATION
from account_abstraction.encoding import Call
from account_abstraction.relayer import Relayer
from account_abstraction.user_operation import Authorization, UserOperation
from agents.security_policy import PolicyEngine
from infrastructure.config import RelayRetryPolicy
from infrastructure.errors import (
    InvalidTransitionError,
    RelayError,
    SigningError,
    ValidationError,
    VaultXError,
    call_with_retry,
)

logger = logging.getLogger("Orchestrator")


class ExecutionState(str, Enum):
    PREPARED = "prepared"
    SIGNED = "signed"
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    FAILED = "failed"


_TRANSITIONS = {
    ExecutionState.PREPARED: {ExecutionState.SIGNED, ExecutionState.FAILED},
    ExecutionState.SIGNED: {ExecutionState.SUBMITTED, ExecutionState.FAILED},
    ExecutionState.SUBMITTED: {ExecutionState.CONFIRMED, ExecutionState.FAILED},
    ExecutionState.CONFIRMED: set(),
    ExecutionState.FAILED: set(),
}


@dataclass
class Execution:
    """One user operation on its way to the chain."""
    user_op: UserOperation
    user_op_hash: str
    authorization: Optional[Authorization] = None
    state: ExecutionState = ExecutionState.PREPARED
    tx_hash: Optional[str] = None
    error: Optional[str] = None
    history: list = field(default_factory=list)

    @property
    def wallet(self) -> str:
        return self.user_op.sender

    @property
    def is_terminal(self) -> bool:
        return not _TRANSITIONS[self.state]

    def _advance(self, target: ExecutionState):
        if target not in _TRANSITIONS[self.state]:
            raise InvalidTransitionError(self.state.value, target.value)
        self.history.append((self.state, datetime.now().isoformat()))
        self.state = target

    def mark_signed(self, signature: str):
        self._advance(ExecutionState.SIGNED)
        self.user_op = self.user_op.with_signature(signature)

    def mark_submitted(self, tx_hash: str):
        self._advance(ExecutionState.SUBMITTED)
        self.tx_hash = tx_hash

    def mark_confirmed(self):
        self._advance(ExecutionState.CONFIRMED)

    def mark_failed(self, error: str):
        self._advance(ExecutionState.FAILED)
        self.error = error


@dataclass
class ExecutionResult:
    tx_hash: str
    user_op_hash: str
    state: ExecutionState

    def to_wire(self) -> Dict[str, str]:
        return {"txHash": self.tx_hash, "userOpHash": self.user_op_hash}


@dataclass
class PreparedOperation:
    user_op: UserOperation
    user_op_hash: str
    authorization: Optional[Authorization] = None

    def to_wire(self) -> Dict[str, Any]:
        wire: Dict[str, Any] = {
            "userOp": self.user_op.to_wire(),
            "userOpHash": self.user_op_hash,
        }
        if self.authorization is not None:
            wire["authorization"] = self.authorization.to_wire()
        return wire


class ExecutionOrchestrator:
    """Drives user operations from calls to an on-chain receipt."""

    def __init__(
        self,
        policy: PolicyEngine,
        builder: UserOperationBuilder,
        relayer: Relayer,
        signer=None,
        delegation_implementation: str = NEXUS_IMPLEMENTATION,
        retry_policy: Optional[RelayRetryPolicy] = None,
        wait_for_receipt: bool = True,
    ):
        self.policy = policy
        self.builder = builder
        self.relayer = relayer
        self.signer = signer
        self.delegation_implementation = Web3.to_checksum_address(delegation_implementation)
        self.retry_policy = retry_policy or RelayRetryPolicy()
        self.wait_for_receipt = wait_for_receipt

    @property
    def entry_point(self) -> str:
        return self.builder.entry_point_address

    @property
    def chain_id(self) -> int:
        return self.builder.chain_id

    async def is_smart_account(self, wallet: str) -> bool:
        """A delegated EOA carries 0xef0100 || implementation as its code."""
        code = await self.builder.w3.eth.get_code(Web3.to_checksum_address(wallet))
        return len(code) > 0

    # ============================================
    # USER-PRESENT FLOW
    # ============================================

    async def prepare_for_user(
        self,
        wallet: str,
        calls: Sequence[Call],
        authorization: Optional[Authorization] = None,
    ) -> PreparedOperation:
        self.policy.ensure_valid(calls)
        user_op = await self.builder.prepare(wallet, calls, authorization)
        return PreparedOperation(
            user_op=user_op,
            user_op_hash=user_op.hash(self.entry_point, self.chain_id),
            authorization=authorization,
        )

    async def submit_signed(
        self,
        user_op: UserOperation,
        authorization: Optional[Authorization] = None,
    ) -> ExecutionResult:
        if not user_op.is_signed:
            raise ValidationError("UserOperation signature is required")

        execution = Execution(
            user_op=user_op,
            user_op_hash=user_op.hash(self.entry_point, self.chain_id),
            authorization=authorization,
            state=ExecutionState.SIGNED,
        )
        return await self._submit(execution)

    # ============================================
    # AUTONOMOUS FLOW
    # ============================================

    async def execute_autonomous(self, wallet: str, calls: Sequence[Call]) -> ExecutionResult:
        if self.signer is None:
            raise SigningError("Custodial signer is not configured")

        # Nothing below may run for a plan the policy rejects
        self.policy.ensure_valid(calls)

        wallet = Web3.to_checksum_address(wallet)
        wallet_id = await self.signer.get_wallet_id(wallet)

        authorization = None
        if not await self.is_smart_account(wallet):
            logger.info(f"[Orchestrator] {wallet[:10]}... has no code, signing EIP-7702 authorization")
            authorization = await self.signer.sign_7702_authorization(
                wallet_id, self.delegation_implementation, self.chain_id
            )

        user_op = await self.builder.prepare(wallet, calls, authorization)
        execution = Execution(
            user_op=user_op,
            user_op_hash=user_op.hash(self.entry_point, self.chain_id),
            authorization=authorization,
        )

        try:
            signature = await self.signer.sign_user_op_hash(wallet_id, execution.user_op_hash)
            execution.mark_signed(signature)
        except VaultXError as e:
            execution.mark_failed(e.message)
            raise

        return await self._submit(execution)

    # ============================================
    # SUBMISSION
    # ============================================

    async def _submit(self, execution: Execution) -> ExecutionResult:
        policy = self.retry_policy
        try:
            tx_hash = await call_with_retry(
                self.relayer.send,
                execution.user_op,
                execution.authorization,
                max_attempts=policy.max_attempts,
                delay=policy.delay_seconds,
                backoff=policy.backoff,
            )
        except VaultXError as e:
            execution.mark_failed(e.message)
            logger.error(f"[Orchestrator] Relay failed for {execution.user_op_hash[:10]}...: {e.message}")
            raise

        execution.mark_submitted(tx_hash)

        if self.wait_for_receipt:
            try:
                await self.relayer.wait_for_outcome(tx_hash, execution.user_op_hash)
            except RelayError as e:
                execution.mark_failed(e.message)
                raise
            execution.mark_confirmed()

        logger.info(
            f"[Orchestrator] {execution.wallet[:10]}... userOp {execution.user_op_hash[:10]}... "
            f"{execution.state.value} in {tx_hash}"
        )
        return ExecutionResult(
            tx_hash=tx_hash,
            user_op_hash=execution.user_op_hash,
            state=execution.state,
        )
