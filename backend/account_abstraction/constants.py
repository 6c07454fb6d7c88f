"""
Account abstraction constants: EntryPoint v0.7, ERC-7821 execution modes,
placeholder signature and ABIs.
"""

from eth_utils import function_signature_to_4byte_selector

ENTRY_POINT_V07 = "0x0000000071727De22E5E9d8BAf0edAc6f37da032"

# Biconomy Nexus 1.2.0, installed as the EIP-7702 delegate
NEXUS_IMPLEMENTATION = "0x00000000383e8cBe298514674Ea60Ee1d1de50ac"

MAX_VERIFICATION_GAS = 500_000
PRE_VERIFICATION_GAS = 50_000
BASE_GAS = 21_000

# ERC-7821 execution modes
EXECUTION_MODE = {
    "single": bytes.fromhex("00" * 32),
    "default": bytes.fromhex("01" + "00" * 31),
    "op_data": bytes.fromhex("0100000000007821" + "0001" + "00" * 22),
}

# Non-functional signature used only while simulating gas
MOCK_SIGNATURE = (
    "0xfffffffffffffffffffffffffffffff0000000000000000000000000000000007"
    "aaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaa1c"
)

EMPTY_SIGNATURE = "0x"

DELEGATION_PREFIX = "0xef0100"

PACKED_USER_OP_TUPLE = "(address,uint256,bytes,bytes,bytes32,uint256,bytes32,bytes,bytes)"

EXECUTE_USER_OP_SELECTOR = "0x" + function_signature_to_4byte_selector(
    f"executeUserOp({PACKED_USER_OP_TUPLE},bytes32)"
).hex()


_PACKED_USER_OP_COMPONENTS = [
    {"name": "sender", "type": "address"},
    {"name": "nonce", "type": "uint256"},
    {"name": "initCode", "type": "bytes"},
    {"name": "callData", "type": "bytes"},
    {"name": "accountGasLimits", "type": "bytes32"},
    {"name": "preVerificationGas", "type": "uint256"},
    {"name": "gasFees", "type": "bytes32"},
    {"name": "paymasterAndData", "type": "bytes"},
    {"name": "signature", "type": "bytes"},
]

ERC7821_ABI = [
    {
        "inputs": [
            {"name": "mode", "type": "bytes32"},
            {"name": "executionData", "type": "bytes"}
        ],
        "name": "execute",
        "outputs": [],
        "stateMutability": "payable",
        "type": "function"
    }
]

ACCOUNT_EXECUTE_ABI = [
    {
        "inputs": [
            {"components": _PACKED_USER_OP_COMPONENTS, "name": "userOp", "type": "tuple"},
            {"name": "userOpHash", "type": "bytes32"}
        ],
        "name": "executeUserOp",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function"
    }
]

ENTRY_POINT_ABI = [
    {
        "inputs": [
            {"name": "sender", "type": "address"},
            {"name": "key", "type": "uint192"}
        ],
        "name": "getNonce",
        "outputs": [{"name": "nonce", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function"
    },
    {
        "inputs": [
            {"components": _PACKED_USER_OP_COMPONENTS, "name": "ops", "type": "tuple[]"},
            {"name": "beneficiary", "type": "address"}
        ],
        "name": "handleOps",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function"
    }
]

# EntryPoint events parsed from the handleOps receipt
USER_OPERATION_EVENT = "UserOperationEvent(bytes32,address,address,uint256,bool,uint256,uint256)"
USER_OPERATION_REVERT_REASON = "UserOperationRevertReason(bytes32,address,uint256,bytes)"

# Error(string)
ERROR_STRING_SELECTOR = "0x08c379a0"
