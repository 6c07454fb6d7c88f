"""
UserOperation Builder & Gas Estimator

Turns a list of calls into an unsigned EntryPoint v0.7 UserOperation:

1. Encode the calls as ERC-7821 execute(mode, executionData)
2. Read the EntryPoint nonce for (sender, key 0)
3. Simulate eth_estimateGas from the EntryPoint to the sender with the
   placeholder signature. When the wallet is not yet delegated, a state
   override installs the EIP-7702 delegation code for the simulation.
4. Derive gas limits; fees stay at 0 because the relayer pays

Any simulation revert raises SimulationError. Nothing is retried.
"""

import logging
from typing import Optional, Sequence

from eth_utils import to_bytes
from web3 import AsyncWeb3, Web3
from web3.exceptions import ContractLogicError, Web3RPCError

from account_abstraction.constants import (
    ACCOUNT_EXECUTE_ABI,
    ENTRY_POINT_ABI,
    EXECUTE_USER_OP_SELECTOR,
    MAX_VERIFICATION_GAS,
    MOCK_SIGNATURE,
    PRE_VERIFICATION_GAS,
)
from account_abstraction.encoding import (
    Call,
    delegation_code,
    encode_erc7821_calls,
    subtract_base_and_calldata_gas,
)
from account_abstraction.user_operation import Authorization, UserOperation
from infrastructure.errors import SimulationError

logger = logging.getLogger("UserOpBuilder")

_codec = Web3()
_account_execute = _codec.eth.contract(abi=ACCOUNT_EXECUTE_ABI)


class UserOperationBuilder:
    """Builds gas-estimated, unsigned user operations."""

    def __init__(
        self,
        w3: AsyncWeb3,
        entry_point: str,
        chain_id: int,
        nonce_key: int = 0,
    ):
        self.w3 = w3
        self.entry_point_address = Web3.to_checksum_address(entry_point)
        self.chain_id = chain_id
        self.nonce_key = nonce_key
        self.entry_point = w3.eth.contract(address=self.entry_point_address, abi=ENTRY_POINT_ABI)

    async def get_nonce(self, sender: str) -> int:
        """Authoritative at call time only; concurrent submissions can race it."""
        return await self.entry_point.functions.getNonce(
            Web3.to_checksum_address(sender), self.nonce_key
        ).call()

    async def prepare(
        self,
        wallet: str,
        calls: Sequence[Call],
        authorization: Optional[Authorization] = None,
    ) -> UserOperation:
        sender = Web3.to_checksum_address(wallet)
        call_data = encode_erc7821_calls(calls)
        nonce = await self.get_nonce(sender)

        draft = UserOperation(
            sender=sender,
            nonce=nonce,
            call_data=call_data,
            signature=MOCK_SIGNATURE,
        )

        call_gas_limit = await self.estimate_call_gas(draft, authorization)

        logger.info(
            f"[UserOpBuilder] Prepared op for {sender[:10]}... nonce={nonce} "
            f"calls={len(calls)} callGas={call_gas_limit}"
        )

        # The placeholder signature never leaves the builder
        return UserOperation(
            sender=sender,
            nonce=nonce,
            call_data=call_data,
            call_gas_limit=call_gas_limit,
            verification_gas_limit=MAX_VERIFICATION_GAS,
            pre_verification_gas=PRE_VERIFICATION_GAS,
            max_fee_per_gas=0,
            max_priority_fee_per_gas=0,
        )

    def simulation_calldata(self, user_op: UserOperation) -> str:
        """
        Calldata the EntryPoint would send to the account.

        An executeUserOp call needs the operation's own hash, so the hash of
        the draft (placeholder signature, zero gas) is computed first and the
        call re-encoded around it.
        """
        data = user_op.call_data
        if not data.lower().startswith(EXECUTE_USER_OP_SELECTOR):
            return data
        user_op_hash = user_op.hash(self.entry_point_address, self.chain_id)
        return _account_execute.encode_abi(
            "executeUserOp",
            args=[user_op.pack(), to_bytes(hexstr=user_op_hash)],
        )

    async def estimate_call_gas(
        self,
        user_op: UserOperation,
        authorization: Optional[Authorization] = None,
    ) -> int:
        data = self.simulation_calldata(user_op)

        tx = {
            "from": self.entry_point_address,
            "to": user_op.sender,
            "data": data,
            "maxFeePerGas": 0,
            "maxPriorityFeePerGas": 0,
        }
        state_override = None
        if authorization is not None:
            state_override = {
                user_op.sender: {"code": delegation_code(authorization.contract_address)}
            }

        try:
            estimated = await self.w3.eth.estimate_gas(tx, None, state_override)
        except (ContractLogicError, Web3RPCError) as e:
            reason = getattr(e, "message", None) or str(e)
            logger.warning(f"[UserOpBuilder] Simulation reverted for {user_op.sender[:10]}...: {reason}")
            raise SimulationError(reason, {"sender": user_op.sender})

        return max(0, subtract_base_and_calldata_gas(estimated, data))
