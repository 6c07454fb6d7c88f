"""
Relayer Tests
handleOps submission and UserOperationEvent parsing

Run: python -m pytest tests/test_relayer.py -v
"""

import pytest
from eth_abi import encode
from web3 import Web3

from account_abstraction.constants import ENTRY_POINT_ABI, ENTRY_POINT_V07, NEXUS_IMPLEMENTATION
from account_abstraction.relayer import (
    USER_OPERATION_EVENT_TOPIC,
    USER_OPERATION_REVERT_TOPIC,
    Relayer,
    parse_user_operation_outcome,
)
from account_abstraction.user_operation import Authorization, UserOperation
from infrastructure.errors import RelayError, SigningError

RELAYER_KEY = "0x" + "11" * 32
USER_OP_HASH = "0x" + "ab" * 32
OTHER_HASH = "0x" + "cd" * 32


def event_log(user_op_hash: str, success: bool, gas_cost: int = 1_000, gas_used: int = 90_000):
    return {
        "topics": [USER_OPERATION_EVENT_TOPIC, user_op_hash, "0x" + "00" * 32, "0x" + "00" * 32],
        "data": encode(["uint256", "bool", "uint256", "uint256"], [0, success, gas_cost, gas_used]),
    }


def revert_log(user_op_hash: str, reason: str):
    revert_data = bytes.fromhex("08c379a0") + encode(["string"], [reason])
    return {
        "topics": [USER_OPERATION_REVERT_TOPIC, user_op_hash, "0x" + "00" * 32],
        "data": encode(["uint256", "bytes"], [0, revert_data]),
    }


async def _priority_fee():
    return 1_000_000


@pytest.fixture
def relayer(mock_w3):
    r = Relayer(mock_w3, ENTRY_POINT_V07, 42161, RELAYER_KEY, beneficiary=ENTRY_POINT_V07)
    # Provider-less contract so handleOps calldata is real
    r.entry_point = Web3().eth.contract(address=r.entry_point_address, abi=ENTRY_POINT_ABI)
    return r


@pytest.fixture
def signed_op(wallet):
    return UserOperation(
        sender=wallet,
        nonce=1,
        call_data="0xdeadbeef",
        call_gas_limit=100_000,
        verification_gas_limit=500_000,
        pre_verification_gas=50_000,
    ).with_signature("0x" + "22" * 65)


# =============================================================================
# TEST: Receipt parsing
# =============================================================================

class TestParseOutcome:

    def test_success_event(self):
        outcome = parse_user_operation_outcome({"logs": [event_log(USER_OP_HASH, True)]}, USER_OP_HASH)
        assert outcome["found"]
        assert outcome["success"] is True
        assert outcome["actual_gas_used"] == 90_000

    def test_revert_reason_decoded(self):
        receipt = {"logs": [revert_log(USER_OP_HASH, "Insufficient balance"), event_log(USER_OP_HASH, False)]}
        outcome = parse_user_operation_outcome(receipt, USER_OP_HASH)
        assert outcome["success"] is False
        assert outcome["revert_reason"] == "Insufficient balance"

    def test_other_operations_ignored(self):
        outcome = parse_user_operation_outcome({"logs": [event_log(OTHER_HASH, False)]}, USER_OP_HASH)
        assert not outcome["found"]

    def test_hash_match_is_case_insensitive(self):
        outcome = parse_user_operation_outcome({"logs": [event_log(USER_OP_HASH, True)]}, USER_OP_HASH.upper().replace("0X", "0x"))
        assert outcome["found"]


# =============================================================================
# TEST: send
# =============================================================================

class TestSend:

    @pytest.mark.asyncio
    async def test_missing_key_raises_signing_error(self, mock_w3, signed_op):
        relayer = Relayer(mock_w3, ENTRY_POINT_V07, 42161, None, beneficiary=ENTRY_POINT_V07)
        with pytest.raises(SigningError):
            await relayer.send(signed_op)

    @pytest.mark.asyncio
    async def test_unsigned_op_rejected(self, relayer, wallet):
        op = UserOperation(sender=wallet, nonce=0, call_data="0x")
        with pytest.raises(RelayError, match="not signed"):
            await relayer.send(op)

    @pytest.mark.asyncio
    async def test_send_returns_tx_hash(self, relayer, mock_w3, signed_op):
        mock_w3.eth.max_priority_fee = _priority_fee()
        tx_hash = await relayer.send(signed_op)
        assert tx_hash == "0x" + "ab" * 32
        mock_w3.eth.send_raw_transaction.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_transaction_targets_entry_point(self, relayer, mock_w3, signed_op):
        mock_w3.eth.max_priority_fee = _priority_fee()
        await relayer.send(signed_op)
        tx = mock_w3.eth.estimate_gas.call_args.args[0]
        assert tx["to"] == ENTRY_POINT_V07
        assert tx["data"] == relayer.encode_handle_ops(signed_op)
        assert "authorizationList" not in tx

    @pytest.mark.asyncio
    async def test_authorization_makes_type_4(self, relayer, mock_w3, signed_op):
        mock_w3.eth.max_priority_fee = _priority_fee()
        auth = Authorization(NEXUS_IMPLEMENTATION, 42161, 0, 1, 5, 6)
        tx = await relayer._build_transaction(relayer.encode_handle_ops(signed_op), auth)
        assert tx["type"] == 4
        assert tx["authorizationList"] == [auth.to_transaction_entry()]
        assert tx["gas"] == 300_000 * 120 // 100
        assert tx["nonce"] == 7

    @pytest.mark.asyncio
    async def test_connection_error_is_transient(self, relayer, mock_w3, signed_op):
        mock_w3.eth.max_priority_fee = _priority_fee()
        mock_w3.eth.send_raw_transaction.side_effect = ConnectionError("reset by peer")
        with pytest.raises(RelayError) as exc:
            await relayer.send(signed_op)
        assert exc.value.retryable


# =============================================================================
# TEST: wait_for_outcome
# =============================================================================

class TestWaitForOutcome:

    @pytest.mark.asyncio
    async def test_confirmed(self, relayer, mock_w3):
        mock_w3.eth.wait_for_transaction_receipt.return_value = {
            "status": 1, "blockNumber": 100, "logs": [event_log(USER_OP_HASH, True)],
        }
        receipt = await relayer.wait_for_outcome("0x01", USER_OP_HASH)
        assert receipt.confirmed
        assert receipt.success is True
        assert receipt.block_number == 100

    @pytest.mark.asyncio
    async def test_inner_revert_reported_verbatim(self, relayer, mock_w3):
        mock_w3.eth.wait_for_transaction_receipt.return_value = {
            "status": 1,
            "logs": [revert_log(USER_OP_HASH, "Insufficient balance"), event_log(USER_OP_HASH, False)],
        }
        with pytest.raises(RelayError) as exc:
            await relayer.wait_for_outcome("0x01", USER_OP_HASH)
        assert exc.value.message == "Insufficient balance"
        assert not exc.value.retryable

    @pytest.mark.asyncio
    async def test_reverted_transaction(self, relayer, mock_w3):
        mock_w3.eth.wait_for_transaction_receipt.return_value = {"status": 0, "logs": []}
        with pytest.raises(RelayError, match="handleOps transaction reverted"):
            await relayer.wait_for_outcome("0x01", USER_OP_HASH)
