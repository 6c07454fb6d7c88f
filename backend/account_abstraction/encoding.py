"""
Call encoding helpers

- Call: one (to, value, data) entry of a batch
- ERC-7821 execute(mode, executionData) encoding for single and batch calls
- Calldata gas accounting and EIP-7702 delegation code
- Revert reason decoding
"""

from dataclasses import dataclass
from typing import Dict, List, Sequence, Union

from eth_abi import decode, encode
from eth_abi.exceptions import DecodingError
from eth_abi.packed import encode_packed
from eth_utils import function_signature_to_4byte_selector, to_bytes
from web3 import Web3

from account_abstraction.constants import (
    BASE_GAS,
    DELEGATION_PREFIX,
    ERC7821_ABI,
    ERROR_STRING_SELECTOR,
    EXECUTION_MODE,
)

# Provider-less instance, only used for ABI encoding
_codec = Web3()
_erc7821 = _codec.eth.contract(abi=ERC7821_ABI)


@dataclass(frozen=True)
class Call:
    """A single call inside a user operation batch."""
    to: str
    data: str = "0x"
    value: int = 0

    def __post_init__(self):
        object.__setattr__(self, "to", Web3.to_checksum_address(self.to))
        if not isinstance(self.data, str) or not self.data.startswith("0x"):
            raise ValueError(f"Calldata must be a 0x-prefixed hex string, got {self.data!r}")
        object.__setattr__(self, "value", int(self.value))

    @property
    def selector(self) -> str:
        return self.data[:10].lower()

    def to_dict(self) -> Dict[str, str]:
        return {"to": self.to, "data": self.data, "value": str(self.value)}


def hexstr(data: Union[bytes, str]) -> str:
    if isinstance(data, str):
        return data if data.startswith("0x") else "0x" + data
    return "0x" + bytes(data).hex()


def selector(signature: str) -> str:
    """4-byte selector of a canonical function signature, 0x-prefixed."""
    return "0x" + function_signature_to_4byte_selector(signature).hex()


def encode_erc7821_calls(calls: Sequence[Call]) -> str:
    """
    Encode calls as ERC-7821 ``execute(bytes32 mode, bytes executionData)``.

    One call uses single mode with abi.encodePacked(address, uint256, bytes);
    more than one uses the default batch mode with abi.encode((address,uint256,bytes)[]).
    """
    if not calls:
        raise ValueError("At least one call is required")

    if len(calls) == 1:
        call = calls[0]
        mode = EXECUTION_MODE["single"]
        execution_data = encode_packed(
            ["address", "uint256", "bytes"],
            [call.to, call.value, to_bytes(hexstr=call.data)],
        )
    else:
        mode = EXECUTION_MODE["default"]
        execution_data = encode(
            ["(address,uint256,bytes)[]"],
            [[(c.to, c.value, to_bytes(hexstr=c.data)) for c in calls]],
        )

    return _erc7821.encode_abi("execute", args=[mode, execution_data])


def calculate_calldata_gas(data: str) -> int:
    """4 gas per zero byte, 16 per non-zero byte."""
    return sum(4 if b == 0 else 16 for b in to_bytes(hexstr=data))


def subtract_base_and_calldata_gas(gas: int, data: str) -> int:
    return gas - BASE_GAS - calculate_calldata_gas(data)


def delegation_code(implementation: str) -> str:
    """EIP-7702 delegation designator for ``implementation``."""
    return DELEGATION_PREFIX + implementation[2:].lower()


def decode_revert_reason(data: Union[bytes, str]) -> str:
    """Decode Error(string) revert data; anything else is returned as hex."""
    raw = to_bytes(hexstr=data) if isinstance(data, str) else bytes(data)
    if not raw:
        return "reverted without reason"
    if hexstr(raw[:4]) == ERROR_STRING_SELECTOR:
        try:
            (reason,) = decode(["string"], raw[4:])
            return reason
        except DecodingError:
            pass
    return hexstr(raw)
