"""
UserOperation (EntryPoint v0.7) and EIP-7702 Authorization models

Big integers cross the HTTP boundary as decimal strings so 256-bit values
survive JSON round trips.
"""

from dataclasses import dataclass, replace
from typing import Any, Dict, Tuple

from eth_abi import encode
from eth_utils import keccak, to_bytes
from web3 import Web3

from account_abstraction.constants import EMPTY_SIGNATURE, MOCK_SIGNATURE
from infrastructure.errors import ValidationError


def parse_uint(value: Any, field_name: str, bits: int = 256) -> int:
    """Parse an int, decimal string or 0x-hex string into a bounded unsigned int."""
    try:
        if isinstance(value, bool):
            raise TypeError("bool is not an integer")
        if isinstance(value, int):
            parsed = value
        elif isinstance(value, str):
            text = value.strip()
            parsed = int(text, 16) if text.lower().startswith("0x") else int(text)
        else:
            raise TypeError(f"unsupported type {type(value).__name__}")
    except (TypeError, ValueError) as e:
        raise ValidationError(f"Invalid {field_name}: {value!r}", {"field": field_name}) from e

    if parsed < 0 or parsed >= (1 << bits):
        raise ValidationError(f"{field_name} out of range", {"field": field_name})
    return parsed


def _pack_uint128_pair(high: int, low: int) -> bytes:
    return ((high << 128) | low).to_bytes(32, "big")


@dataclass(frozen=True)
class UserOperation:
    sender: str
    nonce: int
    call_data: str
    call_gas_limit: int = 0
    verification_gas_limit: int = 0
    pre_verification_gas: int = 0
    max_fee_per_gas: int = 0
    max_priority_fee_per_gas: int = 0
    signature: str = EMPTY_SIGNATURE

    # camelCase wire name -> attribute
    WIRE_FIELDS = {
        "sender": "sender",
        "nonce": "nonce",
        "callData": "call_data",
        "callGasLimit": "call_gas_limit",
        "verificationGasLimit": "verification_gas_limit",
        "preVerificationGas": "pre_verification_gas",
        "maxFeePerGas": "max_fee_per_gas",
        "maxPriorityFeePerGas": "max_priority_fee_per_gas",
        "signature": "signature",
    }

    @property
    def is_signed(self) -> bool:
        return self.signature not in (EMPTY_SIGNATURE, MOCK_SIGNATURE, "")

    def with_signature(self, signature: str) -> "UserOperation":
        """Attach the signature. An operation is signed exactly once."""
        if self.is_signed:
            raise ValidationError("UserOperation is already signed")
        if not signature or not signature.startswith("0x") or len(signature) <= 2:
            raise ValidationError("Signature must be a non-empty 0x-prefixed hex string")
        return replace(self, signature=signature)

    def with_gas(self, call_gas_limit: int, verification_gas_limit: int,
                 pre_verification_gas: int) -> "UserOperation":
        return replace(
            self,
            call_gas_limit=call_gas_limit,
            verification_gas_limit=verification_gas_limit,
            pre_verification_gas=pre_verification_gas,
        )

    # ── Packing / hashing ──

    @property
    def account_gas_limits(self) -> bytes:
        return _pack_uint128_pair(self.verification_gas_limit, self.call_gas_limit)

    @property
    def gas_fees(self) -> bytes:
        return _pack_uint128_pair(self.max_priority_fee_per_gas, self.max_fee_per_gas)

    def pack(self) -> Tuple:
        """PackedUserOperation tuple as consumed by handleOps / executeUserOp."""
        return (
            Web3.to_checksum_address(self.sender),
            self.nonce,
            b"",
            to_bytes(hexstr=self.call_data),
            self.account_gas_limits,
            self.pre_verification_gas,
            self.gas_fees,
            b"",
            to_bytes(hexstr=self.signature),
        )

    def hash(self, entry_point: str, chain_id: int) -> str:
        """EntryPoint v0.7 userOpHash. The signature is not part of the hash."""
        inner = keccak(encode(
            ["address", "uint256", "bytes32", "bytes32", "bytes32", "uint256", "bytes32", "bytes32"],
            [
                Web3.to_checksum_address(self.sender),
                self.nonce,
                keccak(b""),
                keccak(to_bytes(hexstr=self.call_data)),
                self.account_gas_limits,
                self.pre_verification_gas,
                self.gas_fees,
                keccak(b""),
            ],
        ))
        outer = keccak(encode(
            ["bytes32", "address", "uint256"],
            [inner, Web3.to_checksum_address(entry_point), chain_id],
        ))
        return "0x" + outer.hex()

    # ── Wire form ──

    def to_wire(self) -> Dict[str, str]:
        wire = {}
        for wire_name, attr in self.WIRE_FIELDS.items():
            value = getattr(self, attr)
            wire[wire_name] = str(value) if isinstance(value, int) else value
        return wire

    @classmethod
    def from_wire(cls, raw: Dict[str, Any]) -> "UserOperation":
        if not isinstance(raw, dict):
            raise ValidationError("userOp must be an object")
        missing = [k for k in ("sender", "nonce", "callData") if k not in raw]
        if missing:
            raise ValidationError(f"userOp missing fields: {', '.join(missing)}")

        try:
            sender = Web3.to_checksum_address(raw["sender"])
        except (TypeError, ValueError) as e:
            raise ValidationError(f"Invalid sender address: {raw['sender']!r}") from e

        call_data = raw["callData"]
        if not isinstance(call_data, str) or not call_data.startswith("0x"):
            raise ValidationError("callData must be a 0x-prefixed hex string")

        return cls(
            sender=sender,
            nonce=parse_uint(raw["nonce"], "nonce"),
            call_data=call_data,
            call_gas_limit=parse_uint(raw.get("callGasLimit", 0), "callGasLimit", 128),
            verification_gas_limit=parse_uint(raw.get("verificationGasLimit", 0), "verificationGasLimit", 128),
            pre_verification_gas=parse_uint(raw.get("preVerificationGas", 0), "preVerificationGas"),
            max_fee_per_gas=parse_uint(raw.get("maxFeePerGas", 0), "maxFeePerGas", 128),
            max_priority_fee_per_gas=parse_uint(raw.get("maxPriorityFeePerGas", 0), "maxPriorityFeePerGas", 128),
            signature=raw.get("signature") or EMPTY_SIGNATURE,
        )


@dataclass(frozen=True)
class Authorization:
    """Signed EIP-7702 delegation of an EOA to a smart account implementation."""
    contract_address: str
    chain_id: int
    nonce: int
    y_parity: int
    r: int
    s: int

    def to_wire(self) -> Dict[str, Any]:
        return {
            "address": self.contract_address,
            "chainId": self.chain_id,
            "nonce": str(self.nonce),
            "yParity": self.y_parity,
            "r": hex(self.r),
            "s": hex(self.s),
        }

    @classmethod
    def from_wire(cls, raw: Dict[str, Any]) -> "Authorization":
        """Accepts both the camelCase client shape and the signer's snake_case shape."""
        if not isinstance(raw, dict):
            raise ValidationError("authorization must be an object")
        address = raw.get("address") or raw.get("contract") or raw.get("contractAddress")
        if not address:
            raise ValidationError("authorization missing contract address")
        chain_id = raw.get("chainId", raw.get("chain_id"))
        y_parity = raw.get("yParity", raw.get("y_parity", raw.get("v")))
        if chain_id is None or y_parity is None or "r" not in raw or "s" not in raw:
            raise ValidationError("authorization missing chainId, yParity, r or s")
        y_parity = parse_uint(y_parity, "yParity")
        # Legacy v (27/28) -> parity
        if y_parity >= 27:
            y_parity -= 27
        try:
            contract_address = Web3.to_checksum_address(address)
        except (TypeError, ValueError) as e:
            raise ValidationError(f"Invalid authorization address: {address!r}") from e
        return cls(
            contract_address=contract_address,
            chain_id=parse_uint(chain_id, "chainId"),
            nonce=parse_uint(raw.get("nonce", 0), "nonce", 64),
            y_parity=y_parity,
            r=parse_uint(raw["r"], "r"),
            s=parse_uint(raw["s"], "s"),
        )

    def to_transaction_entry(self) -> Dict[str, Any]:
        """Entry for a type-4 transaction's authorizationList."""
        return {
            "chainId": self.chain_id,
            "address": self.contract_address,
            "nonce": self.nonce,
            "yParity": self.y_parity,
            "r": self.r,
            "s": self.s,
        }

