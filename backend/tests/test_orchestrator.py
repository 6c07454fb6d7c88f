"""
Execution Orchestrator Tests
State machine, policy-before-signing and EIP-7702 authorization handling

Run: python -m pytest tests/test_orchestrator.py -v
"""

import pytest

from account_abstraction.constants import ENTRY_POINT_V07, NEXUS_IMPLEMENTATION
from account_abstraction.user_operation import Authorization, UserOperation
from agents.execution_orchestrator import (
    Execution,
    ExecutionOrchestrator,
    ExecutionState,
    PreparedOperation,
)
from infrastructure.config import RelayRetryPolicy
from infrastructure.errors import (
    InvalidTransitionError,
    PolicyViolationError,
    RelayError,
    SigningError,
    ValidationError,
)
from services.erc20 import build_approve_call

ATTACKER = "0x000000000000000000000000000000000000dEaD"
SIGNATURE = "0x" + "33" * 65
TX_HASH = "0x" + "44" * 32


class FakeBuilder:
    def __init__(self, w3):
        self.w3 = w3
        self.entry_point_address = ENTRY_POINT_V07
        self.chain_id = 42161
        self.prepared = []

    async def prepare(self, wallet, calls, authorization=None):
        self.prepared.append((wallet, list(calls), authorization))
        return UserOperation(sender=wallet, nonce=len(self.prepared), call_data="0xdeadbeef",
                             call_gas_limit=100_000, verification_gas_limit=500_000,
                             pre_verification_gas=50_000)


class FakeSigner:
    def __init__(self, fail_signing=False):
        self.fail_signing = fail_signing
        self.requests = []

    async def get_wallet_id(self, address):
        self.requests.append(("wallet_id", address))
        return "wallet-1"

    async def sign_7702_authorization(self, wallet_id, contract, chain_id):
        self.requests.append(("authorization", contract, chain_id))
        return Authorization(contract, chain_id, 0, 0, 1, 2)

    async def sign_user_op_hash(self, wallet_id, user_op_hash):
        self.requests.append(("sign", user_op_hash))
        if self.fail_signing:
            raise SigningError("Privy request failed (503)")
        return SIGNATURE


class FakeRelayer:
    def __init__(self, send_errors=(), outcome_error=None):
        self.send_errors = list(send_errors)
        self.outcome_error = outcome_error
        self.sent = []

    async def send(self, user_op, authorization=None):
        self.sent.append((user_op, authorization))
        if self.send_errors:
            raise self.send_errors.pop(0)
        return TX_HASH

    async def wait_for_outcome(self, tx_hash, user_op_hash):
        if self.outcome_error:
            raise self.outcome_error
        return None


@pytest.fixture
def builder(mock_w3):
    return FakeBuilder(mock_w3)


@pytest.fixture
def signer():
    return FakeSigner()


@pytest.fixture
def relayer():
    return FakeRelayer()


@pytest.fixture
def orchestrator(policy_engine, builder, relayer, signer):
    return ExecutionOrchestrator(policy_engine, builder, relayer, signer)


@pytest.fixture
def good_calls(contracts):
    return [build_approve_call(contracts.loan_token, contracts.morpho, 1_000_000)]


@pytest.fixture
def bad_calls(contracts):
    return [build_approve_call(contracts.loan_token, ATTACKER, 1_000_000)]


# =============================================================================
# TEST: Execution state machine
# =============================================================================

class TestExecutionStateMachine:

    @pytest.fixture
    def execution(self, wallet):
        op = UserOperation(sender=wallet, nonce=0, call_data="0x")
        return Execution(user_op=op, user_op_hash="0x" + "00" * 32)

    def test_happy_path(self, execution):
        execution.mark_signed(SIGNATURE)
        execution.mark_submitted(TX_HASH)
        execution.mark_confirmed()
        assert execution.state == ExecutionState.CONFIRMED
        assert execution.is_terminal
        assert [s for s, _ in execution.history] == [
            ExecutionState.PREPARED, ExecutionState.SIGNED, ExecutionState.SUBMITTED,
        ]

    def test_cannot_submit_unsigned(self, execution):
        with pytest.raises(InvalidTransitionError):
            execution.mark_submitted(TX_HASH)

    def test_failed_is_terminal(self, execution):
        execution.mark_failed("boom")
        assert execution.is_terminal
        with pytest.raises(InvalidTransitionError):
            execution.mark_signed(SIGNATURE)

    def test_cannot_go_backwards(self, execution):
        execution.mark_signed(SIGNATURE)
        execution.mark_submitted(TX_HASH)
        with pytest.raises(InvalidTransitionError):
            execution.mark_signed(SIGNATURE)

    def test_signature_applied_on_sign(self, execution):
        execution.mark_signed(SIGNATURE)
        assert execution.user_op.signature == SIGNATURE


# =============================================================================
# TEST: User-present flow
# =============================================================================

class TestUserPresentFlow:

    @pytest.mark.asyncio
    async def test_prepare_returns_hash_of_unsigned_op(self, orchestrator, wallet, good_calls):
        prepared = await orchestrator.prepare_for_user(wallet, good_calls)
        assert isinstance(prepared, PreparedOperation)
        assert prepared.user_op_hash == prepared.user_op.hash(ENTRY_POINT_V07, 42161)
        wire = prepared.to_wire()
        assert wire["userOp"]["signature"] == "0x"
        assert "authorization" not in wire

    @pytest.mark.asyncio
    async def test_prepare_rejects_policy_violation(self, orchestrator, builder, wallet, bad_calls):
        with pytest.raises(PolicyViolationError):
            await orchestrator.prepare_for_user(wallet, bad_calls)
        assert builder.prepared == []

    @pytest.mark.asyncio
    async def test_submit_requires_signature(self, orchestrator, relayer, wallet):
        op = UserOperation(sender=wallet, nonce=0, call_data="0x")
        with pytest.raises(ValidationError, match="signature is required"):
            await orchestrator.submit_signed(op)
        assert relayer.sent == []

    @pytest.mark.asyncio
    async def test_submit_signed(self, orchestrator, relayer, wallet):
        op = UserOperation(sender=wallet, nonce=0, call_data="0x").with_signature(SIGNATURE)
        auth = Authorization(NEXUS_IMPLEMENTATION, 42161, 0, 0, 1, 2)
        result = await orchestrator.submit_signed(op, auth)
        assert result.tx_hash == TX_HASH
        assert result.state == ExecutionState.CONFIRMED
        assert relayer.sent == [(op, auth)]
        assert result.to_wire() == {"txHash": TX_HASH, "userOpHash": op.hash(ENTRY_POINT_V07, 42161)}


# =============================================================================
# TEST: Autonomous flow
# =============================================================================

class TestAutonomousFlow:

    @pytest.mark.asyncio
    async def test_policy_violation_signs_nothing(self, orchestrator, signer, relayer, wallet, bad_calls):
        with pytest.raises(PolicyViolationError):
            await orchestrator.execute_autonomous(wallet, bad_calls)
        assert signer.requests == []
        assert relayer.sent == []

    @pytest.mark.asyncio
    async def test_undelegated_wallet_gets_authorization(self, orchestrator, signer, builder, relayer,
                                                         wallet, good_calls):
        result = await orchestrator.execute_autonomous(wallet, good_calls)
        assert ("authorization", orchestrator.delegation_implementation, 42161) in signer.requests
        auth = builder.prepared[0][2]
        assert auth is not None
        assert relayer.sent[0][1] == auth
        assert result.state == ExecutionState.CONFIRMED

    @pytest.mark.asyncio
    async def test_delegated_wallet_skips_authorization(self, orchestrator, signer, builder, mock_w3,
                                                        wallet, good_calls):
        mock_w3.eth.get_code.return_value = bytes.fromhex("ef0100") + bytes.fromhex(NEXUS_IMPLEMENTATION[2:])
        await orchestrator.execute_autonomous(wallet, good_calls)
        assert not any(r[0] == "authorization" for r in signer.requests)
        assert builder.prepared[0][2] is None

    @pytest.mark.asyncio
    async def test_signs_the_prepared_hash(self, orchestrator, signer, relayer, wallet, good_calls):
        result = await orchestrator.execute_autonomous(wallet, good_calls)
        assert ("sign", result.user_op_hash) in signer.requests
        assert relayer.sent[0][0].signature == SIGNATURE

    @pytest.mark.asyncio
    async def test_no_signer_configured(self, policy_engine, builder, relayer, wallet, good_calls):
        orchestrator = ExecutionOrchestrator(policy_engine, builder, relayer, signer=None)
        with pytest.raises(SigningError):
            await orchestrator.execute_autonomous(wallet, good_calls)

    @pytest.mark.asyncio
    async def test_signing_failure_never_submits(self, policy_engine, builder, relayer, wallet, good_calls):
        orchestrator = ExecutionOrchestrator(policy_engine, builder, relayer, FakeSigner(fail_signing=True))
        with pytest.raises(SigningError):
            await orchestrator.execute_autonomous(wallet, good_calls)
        assert relayer.sent == []


# =============================================================================
# TEST: Submission and retries
# =============================================================================

class TestSubmission:

    @pytest.mark.asyncio
    async def test_inner_revert_propagates(self, policy_engine, builder, signer, wallet, good_calls):
        relayer = FakeRelayer(outcome_error=RelayError("Insufficient balance", tx_hash=TX_HASH))
        orchestrator = ExecutionOrchestrator(policy_engine, builder, relayer, signer)
        with pytest.raises(RelayError, match="Insufficient balance"):
            await orchestrator.execute_autonomous(wallet, good_calls)

    @pytest.mark.asyncio
    async def test_default_policy_does_not_resubmit(self, policy_engine, builder, signer, wallet, good_calls):
        relayer = FakeRelayer(send_errors=[RelayError("connection reset", transient=True)])
        orchestrator = ExecutionOrchestrator(policy_engine, builder, relayer, signer)
        with pytest.raises(RelayError):
            await orchestrator.execute_autonomous(wallet, good_calls)
        assert len(relayer.sent) == 1

    @pytest.mark.asyncio
    async def test_transient_failure_retried_when_enabled(self, policy_engine, builder, signer,
                                                          wallet, good_calls):
        relayer = FakeRelayer(send_errors=[RelayError("connection reset", transient=True)])
        retry = RelayRetryPolicy(max_attempts=2, delay_seconds=0)
        orchestrator = ExecutionOrchestrator(policy_engine, builder, relayer, signer, retry_policy=retry)
        result = await orchestrator.execute_autonomous(wallet, good_calls)
        assert result.tx_hash == TX_HASH
        assert len(relayer.sent) == 2

    @pytest.mark.asyncio
    async def test_revert_never_retried(self, policy_engine, builder, signer, wallet, good_calls):
        relayer = FakeRelayer(send_errors=[RelayError("handleOps would revert: AA23")])
        retry = RelayRetryPolicy(max_attempts=3, delay_seconds=0)
        orchestrator = ExecutionOrchestrator(policy_engine, builder, relayer, signer, retry_policy=retry)
        with pytest.raises(RelayError):
            await orchestrator.execute_autonomous(wallet, good_calls)
        assert len(relayer.sent) == 1

    @pytest.mark.asyncio
    async def test_no_wait_stops_at_submitted(self, policy_engine, builder, relayer, signer, wallet, good_calls):
        orchestrator = ExecutionOrchestrator(policy_engine, builder, relayer, signer, wait_for_receipt=False)
        result = await orchestrator.execute_autonomous(wallet, good_calls)
        assert result.state == ExecutionState.SUBMITTED
