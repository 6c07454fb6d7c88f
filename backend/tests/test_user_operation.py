"""
UserOperation / Authorization / call encoding tests

Run: python -m pytest tests/test_user_operation.py -v
"""

import pytest
from eth_abi import decode, encode
from eth_utils import to_bytes
from web3 import Web3

from account_abstraction.constants import (
    ENTRY_POINT_V07,
    EXECUTION_MODE,
    MOCK_SIGNATURE,
    NEXUS_IMPLEMENTATION,
)
from account_abstraction.encoding import (
    Call,
    calculate_calldata_gas,
    decode_revert_reason,
    delegation_code,
    encode_erc7821_calls,
    selector,
    subtract_base_and_calldata_gas,
)
from account_abstraction.user_operation import Authorization, UserOperation, parse_uint
from infrastructure.errors import ValidationError

SENDER = Web3.to_checksum_address("0xa30a689ec0f9d717c5ba1098455b031b868b720f")
TARGET = Web3.to_checksum_address("0x5e047deb5eb22f4e4a7f2207087369468575e3ef")
UINT256_MAX = (1 << 256) - 1


def make_op(**overrides) -> UserOperation:
    fields = dict(
        sender=SENDER,
        nonce=3,
        call_data="0xdeadbeef",
        call_gas_limit=120_000,
        verification_gas_limit=500_000,
        pre_verification_gas=50_000,
    )
    fields.update(overrides)
    return UserOperation(**fields)


# =============================================================================
# TEST: Signing lifecycle
# =============================================================================

class TestSignature:

    def test_new_operation_is_unsigned(self):
        assert not make_op().is_signed

    def test_placeholder_signature_is_not_a_signature(self):
        assert not make_op(signature=MOCK_SIGNATURE).is_signed

    def test_with_signature_returns_signed_copy(self):
        op = make_op()
        signed = op.with_signature("0x" + "11" * 65)
        assert signed.is_signed
        assert not op.is_signed

    def test_cannot_sign_twice(self):
        signed = make_op().with_signature("0x" + "11" * 65)
        with pytest.raises(ValidationError, match="already signed"):
            signed.with_signature("0x" + "22" * 65)

    def test_empty_signature_rejected(self):
        with pytest.raises(ValidationError):
            make_op().with_signature("0x")


# =============================================================================
# TEST: Packing and hashing
# =============================================================================

class TestPackingAndHash:

    def test_account_gas_limits_packs_verification_high(self):
        packed = make_op().account_gas_limits
        assert int.from_bytes(packed[:16], "big") == 500_000
        assert int.from_bytes(packed[16:], "big") == 120_000

    def test_gas_fees_packs_priority_high(self):
        packed = make_op(max_fee_per_gas=7, max_priority_fee_per_gas=2).gas_fees
        assert int.from_bytes(packed[:16], "big") == 2
        assert int.from_bytes(packed[16:], "big") == 7

    def test_hash_ignores_signature(self):
        op = make_op()
        assert op.hash(ENTRY_POINT_V07, 42161) == op.with_signature("0x" + "11" * 65).hash(ENTRY_POINT_V07, 42161)

    def test_hash_depends_on_chain_and_nonce(self):
        op = make_op()
        base = op.hash(ENTRY_POINT_V07, 42161)
        assert base != op.hash(ENTRY_POINT_V07, 1)
        assert base != make_op(nonce=4).hash(ENTRY_POINT_V07, 42161)

    def test_hash_is_32_bytes_hex(self):
        h = make_op().hash(ENTRY_POINT_V07, 42161)
        assert h.startswith("0x") and len(h) == 66

    def test_pack_has_empty_init_code_and_paymaster(self):
        packed = make_op().pack()
        assert packed[2] == b""
        assert packed[7] == b""


# =============================================================================
# TEST: Wire form
# =============================================================================

class TestWireForm:

    def test_integers_serialized_as_decimal_strings(self):
        wire = make_op().to_wire()
        assert wire["nonce"] == "3"
        assert wire["callGasLimit"] == "120000"
        assert wire["signature"] == "0x"

    def test_round_trip_preserves_256_bit_nonce(self):
        op = make_op(nonce=UINT256_MAX)
        assert UserOperation.from_wire(op.to_wire()) == op

    def test_from_wire_accepts_hex_quantities(self):
        op = UserOperation.from_wire({"sender": SENDER, "nonce": "0x10", "callData": "0x"})
        assert op.nonce == 16

    def test_from_wire_rejects_missing_fields(self):
        with pytest.raises(ValidationError, match="callData"):
            UserOperation.from_wire({"sender": SENDER, "nonce": "1"})

    def test_from_wire_rejects_overflow(self):
        wire = make_op().to_wire()
        wire["callGasLimit"] = str(1 << 128)
        with pytest.raises(ValidationError):
            UserOperation.from_wire(wire)

    def test_parse_uint_rejects_negative_and_bool(self):
        with pytest.raises(ValidationError):
            parse_uint("-1", "nonce")
        with pytest.raises(ValidationError):
            parse_uint(True, "nonce")


class TestAuthorization:

    def test_from_signer_shape(self):
        auth = Authorization.from_wire({
            "contract": NEXUS_IMPLEMENTATION,
            "chain_id": 42161,
            "nonce": 0,
            "r": "0x" + "01" * 32,
            "s": "0x" + "02" * 32,
            "y_parity": 1,
        })
        assert auth.contract_address == NEXUS_IMPLEMENTATION
        assert auth.chain_id == 42161
        assert auth.y_parity == 1

    def test_round_trip(self):
        auth = Authorization(NEXUS_IMPLEMENTATION, 42161, 5, 0, 123, 456)
        assert Authorization.from_wire(auth.to_wire()) == auth

    def test_legacy_v_normalized(self):
        auth = Authorization.from_wire({
            "address": NEXUS_IMPLEMENTATION, "chainId": 42161, "nonce": "0",
            "r": "1", "s": "2", "v": 28,
        })
        assert auth.y_parity == 1

    def test_missing_signature_parts_rejected(self):
        with pytest.raises(ValidationError):
            Authorization.from_wire({"address": NEXUS_IMPLEMENTATION, "chainId": 42161})

    def test_transaction_entry_uses_ints(self):
        entry = Authorization(NEXUS_IMPLEMENTATION, 42161, 5, 1, 123, 456).to_transaction_entry()
        assert entry == {
            "chainId": 42161, "address": NEXUS_IMPLEMENTATION, "nonce": 5,
            "yParity": 1, "r": 123, "s": 456,
        }


# =============================================================================
# TEST: ERC-7821 encoding
# =============================================================================

class TestErc7821Encoding:

    EXECUTE = selector("execute(bytes32,bytes)")

    def _decode(self, calldata: str):
        assert calldata.startswith(self.EXECUTE)
        return decode(["bytes32", "bytes"], to_bytes(hexstr="0x" + calldata[10:]))

    def test_single_call_uses_packed_single_mode(self):
        call = Call(to=TARGET, data="0xabcdef01", value=0)
        mode, data = self._decode(encode_erc7821_calls([call]))
        assert mode == EXECUTION_MODE["single"]
        assert data == to_bytes(hexstr=TARGET) + (0).to_bytes(32, "big") + bytes.fromhex("abcdef01")

    def test_batch_uses_abi_encoded_tuple_array(self):
        calls = [Call(to=TARGET, data="0x01"), Call(to=SENDER, data="0x0203", value=5)]
        mode, data = self._decode(encode_erc7821_calls(calls))
        assert mode == EXECUTION_MODE["default"]
        expected = encode(
            ["(address,uint256,bytes)[]"],
            [[(TARGET, 0, b"\x01"), (SENDER, 5, b"\x02\x03")]],
        )
        assert data == expected

    def test_no_calls_rejected(self):
        with pytest.raises(ValueError):
            encode_erc7821_calls([])

    def test_call_requires_hex_data(self):
        with pytest.raises(ValueError):
            Call(to=TARGET, data="abcd")


class TestGasHelpers:

    def test_calldata_gas_counts_zero_and_nonzero_bytes(self):
        # 2 zero bytes, 2 non-zero bytes
        assert calculate_calldata_gas("0x0000ffff") == 2 * 4 + 2 * 16

    def test_subtract_base_and_calldata_gas(self):
        assert subtract_base_and_calldata_gas(100_000, "0x00ff") == 100_000 - 21_000 - 20

    def test_delegation_code(self):
        code = delegation_code(NEXUS_IMPLEMENTATION)
        assert code == "0xef0100" + NEXUS_IMPLEMENTATION[2:].lower()
        assert len(to_bytes(hexstr=code)) == 23


class TestRevertReason:

    def test_error_string_decoded(self):
        data = bytes.fromhex("08c379a0") + encode(["string"], ["insufficient collateral"])
        assert decode_revert_reason(data) == "insufficient collateral"

    def test_custom_error_returned_as_hex(self):
        assert decode_revert_reason("0x12345678") == "0x12345678"

    def test_empty_revert(self):
        assert decode_revert_reason(b"") == "reverted without reason"
