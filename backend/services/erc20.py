"""
ERC20 helpers: approve call building and allowance-aware approvals.
"""

import logging
from typing import Iterable, List, Optional

from web3 import AsyncWeb3, Web3
from web3.exceptions import Web3Exception

from account_abstraction.encoding import Call

logger = logging.getLogger("ERC20")

MAX_UINT256 = (1 << 256) - 1

ERC20_ABI = [
    {
        "inputs": [
            {"name": "spender", "type": "address"},
            {"name": "amount", "type": "uint256"}
        ],
        "name": "approve",
        "outputs": [{"name": "", "type": "bool"}],
        "stateMutability": "nonpayable",
        "type": "function"
    },
    {
        "inputs": [
            {"name": "owner", "type": "address"},
            {"name": "spender", "type": "address"}
        ],
        "name": "allowance",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function"
    },
    {
        "inputs": [{"name": "account", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function"
    }
]

_codec = Web3()
_erc20 = _codec.eth.contract(abi=ERC20_ABI)


def build_approve_call(token: str, spender: str, amount: int) -> Call:
    data = _erc20.encode_abi("approve", args=[Web3.to_checksum_address(spender), amount])
    return Call(to=token, data=data)


class AllowanceChecker:
    """
    Emits the approve calls needed for ``spender`` to pull ``amount``.

    Tokens listed in ``zero_first_tokens`` revert when an allowance is moved
    from one non-zero value to another, so they are reset to zero first.
    """

    def __init__(self, w3: AsyncWeb3, zero_first_tokens: Optional[Iterable[str]] = None):
        self.w3 = w3
        self.zero_first_tokens = {t.lower() for t in (zero_first_tokens or [])}

    async def allowance(self, token: str, owner: str, spender: str) -> int:
        contract = self.w3.eth.contract(address=Web3.to_checksum_address(token), abi=ERC20_ABI)
        return await contract.functions.allowance(
            Web3.to_checksum_address(owner), Web3.to_checksum_address(spender)
        ).call()

    async def approve_calls_if_necessary(self, token: str, owner: str, spender: str, amount: int) -> List[Call]:
        try:
            current = await self.allowance(token, owner, spender)
        except (Web3Exception, OSError, ValueError) as e:
            # Unknown allowance: approve anyway, the simulation will catch a bad batch
            logger.warning(f"[ERC20] Allowance check failed for {token[:10]}...: {e}")
            return [build_approve_call(token, spender, amount)]

        if current >= amount:
            return []

        if token.lower() in self.zero_first_tokens and current > 0:
            return [
                build_approve_call(token, spender, 0),
                build_approve_call(token, spender, amount),
            ]

        return [build_approve_call(token, spender, amount)]
