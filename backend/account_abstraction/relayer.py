"""
EntryPoint Relayer

Packs a signed UserOperation into a single handleOps transaction sent from
the relayer account. When the wallet is being delegated in the same step the
EIP-7702 authorization rides along as a type-4 authorizationList.

After inclusion the receipt is scanned for the EntryPoint's
UserOperationEvent; a failed inner call is reported with the decoded
UserOperationRevertReason, verbatim.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from eth_abi import decode
from eth_account import Account
from eth_utils import keccak, to_bytes
from web3 import AsyncWeb3, Web3
from web3.exceptions import ContractLogicError, TimeExhausted, Web3RPCError

from account_abstraction.constants import (
    ENTRY_POINT_ABI,
    USER_OPERATION_EVENT,
    USER_OPERATION_REVERT_REASON,
)
from account_abstraction.encoding import decode_revert_reason, hexstr
from account_abstraction.user_operation import Authorization, UserOperation
from infrastructure.errors import RelayError, SigningError

logger = logging.getLogger("Relayer")

USER_OPERATION_EVENT_TOPIC = "0x" + keccak(text=USER_OPERATION_EVENT).hex()
USER_OPERATION_REVERT_TOPIC = "0x" + keccak(text=USER_OPERATION_REVERT_REASON).hex()

# Transport-level failures that may be retried
TRANSIENT_ERRORS = (asyncio.TimeoutError, ConnectionError, OSError, TimeExhausted)


@dataclass
class RelayReceipt:
    tx_hash: str
    confirmed: bool
    success: Optional[bool] = None
    actual_gas_cost: Optional[int] = None
    actual_gas_used: Optional[int] = None
    block_number: Optional[int] = None


def _topic_hex(topic: Any) -> str:
    return hexstr(topic).lower() if not isinstance(topic, str) else topic.lower()


def parse_user_operation_outcome(receipt: Dict, user_op_hash: str) -> Dict[str, Any]:
    """
    Find the UserOperationEvent for ``user_op_hash`` in a handleOps receipt.

    Returns {"found", "success", "actual_gas_cost", "actual_gas_used", "revert_reason"}.
    """
    target = user_op_hash.lower()
    outcome = {
        "found": False,
        "success": None,
        "actual_gas_cost": None,
        "actual_gas_used": None,
        "revert_reason": None,
    }

    for log in receipt.get("logs", []):
        topics = [_topic_hex(t) for t in log.get("topics", [])]
        if len(topics) < 2 or topics[1] != target:
            continue
        data = log.get("data", b"")
        raw = to_bytes(hexstr=data) if isinstance(data, str) else bytes(data)

        if topics[0] == USER_OPERATION_EVENT_TOPIC:
            _nonce, success, gas_cost, gas_used = decode(["uint256", "bool", "uint256", "uint256"], raw)
            outcome.update(found=True, success=success, actual_gas_cost=gas_cost, actual_gas_used=gas_used)
        elif topics[0] == USER_OPERATION_REVERT_TOPIC:
            _nonce, reason = decode(["uint256", "bytes"], raw)
            outcome["revert_reason"] = decode_revert_reason(reason)

    return outcome


class Relayer:
    """Submits handleOps transactions from the relayer key."""

    def __init__(
        self,
        w3: AsyncWeb3,
        entry_point: str,
        chain_id: int,
        private_key: Optional[str],
        beneficiary: str,
        gas_buffer_percent: int = 20,
        receipt_timeout: int = 120,
    ):
        self.w3 = w3
        self.entry_point_address = Web3.to_checksum_address(entry_point)
        self.chain_id = chain_id
        self.beneficiary = Web3.to_checksum_address(beneficiary)
        self.gas_buffer_percent = gas_buffer_percent
        self.receipt_timeout = receipt_timeout
        self.entry_point = w3.eth.contract(address=self.entry_point_address, abi=ENTRY_POINT_ABI)
        self._account = Account.from_key(private_key) if private_key else None
        self._send_lock = asyncio.Lock()

    @property
    def address(self) -> Optional[str]:
        return self._account.address if self._account else None

    def encode_handle_ops(self, user_op: UserOperation) -> str:
        return self.entry_point.encode_abi(
            "handleOps", args=[[user_op.pack()], self.beneficiary]
        )

    async def _build_transaction(
        self,
        data: str,
        authorization: Optional[Authorization],
    ) -> Dict[str, Any]:
        tx: Dict[str, Any] = {
            "from": self._account.address,
            "to": self.entry_point_address,
            "data": data,
            "value": 0,
            "chainId": self.chain_id,
        }
        if authorization is not None:
            tx["authorizationList"] = [authorization.to_transaction_entry()]

        try:
            estimated = await self.w3.eth.estimate_gas(tx)
        except (ContractLogicError, Web3RPCError) as e:
            reason = getattr(e, "message", None) or str(e)
            raise RelayError(f"handleOps would revert: {reason}")

        block = await self.w3.eth.get_block("latest")
        base_fee = block.get("baseFeePerGas", 0) or 0
        priority_fee = await self.w3.eth.max_priority_fee

        tx.update({
            "gas": estimated * (100 + self.gas_buffer_percent) // 100,
            "maxPriorityFeePerGas": priority_fee,
            "maxFeePerGas": base_fee * 2 + priority_fee,
            "nonce": await self.w3.eth.get_transaction_count(self._account.address, "pending"),
            "type": 4 if authorization is not None else 2,
        })
        tx.pop("from")
        return tx

    async def send(
        self,
        user_op: UserOperation,
        authorization: Optional[Authorization] = None,
    ) -> str:
        """Send handleOps and return the transaction hash."""
        if self._account is None:
            raise SigningError("Relayer private key is not configured")
        if not user_op.is_signed:
            raise RelayError("UserOperation is not signed")

        data = self.encode_handle_ops(user_op)

        logger.info("[Relayer] Sending handleOps transaction...")
        try:
            # One relayer nonce at a time
            async with self._send_lock:
                tx = await self._build_transaction(data, authorization)
                signed = self._account.sign_transaction(tx)
                tx_hash = await self.w3.eth.send_raw_transaction(signed.raw_transaction)
        except RelayError:
            raise
        except TRANSIENT_ERRORS as e:
            raise RelayError(f"Relay transport failure: {e}", transient=True)
        except (ContractLogicError, Web3RPCError) as e:
            raise RelayError(getattr(e, "message", None) or str(e))

        tx_hash = hexstr(tx_hash)
        logger.info(f"[Relayer] Transaction sent: {tx_hash}")
        return tx_hash

    async def wait_for_outcome(self, tx_hash: str, user_op_hash: str) -> RelayReceipt:
        """Wait for inclusion and surface inner reverts as RelayError."""
        try:
            receipt = await self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.receipt_timeout)
        except TRANSIENT_ERRORS as e:
            raise RelayError(f"Timed out waiting for receipt: {e}", tx_hash=tx_hash, transient=True)

        if receipt.get("status") == 0:
            raise RelayError("handleOps transaction reverted", tx_hash=tx_hash)

        outcome = parse_user_operation_outcome(receipt, user_op_hash)
        if outcome["found"] and outcome["success"] is False:
            reason = outcome["revert_reason"] or "UserOperation execution reverted"
            logger.warning(f"[Relayer] UserOp {user_op_hash[:10]}... reverted: {reason}")
            raise RelayError(reason, tx_hash=tx_hash, details={"user_op_hash": user_op_hash})

        return RelayReceipt(
            tx_hash=tx_hash,
            confirmed=True,
            success=outcome["success"] if outcome["found"] else None,
            actual_gas_cost=outcome["actual_gas_cost"],
            actual_gas_used=outcome["actual_gas_used"],
            block_number=receipt.get("blockNumber"),
        )
