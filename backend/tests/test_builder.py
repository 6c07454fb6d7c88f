"""
UserOperation Builder Tests
Nonce lookup, gas estimation and EIP-7702 simulation overrides

Run: python -m pytest tests/test_builder.py -v
"""

import pytest
from unittest.mock import AsyncMock
from web3.exceptions import ContractLogicError

from account_abstraction.builder import UserOperationBuilder
from account_abstraction.constants import (
    ENTRY_POINT_V07,
    MAX_VERIFICATION_GAS,
    NEXUS_IMPLEMENTATION,
    PRE_VERIFICATION_GAS,
)
from account_abstraction.encoding import calculate_calldata_gas, delegation_code, encode_erc7821_calls
from account_abstraction.user_operation import Authorization, UserOperation
from infrastructure.errors import SimulationError
from services.erc20 import build_approve_call


@pytest.fixture
def builder(mock_w3):
    b = UserOperationBuilder(mock_w3, ENTRY_POINT_V07, 42161)
    b.entry_point.functions.getNonce.return_value.call = AsyncMock(return_value=9)
    return b


@pytest.fixture
def calls(contracts):
    return [build_approve_call(contracts.loan_token, contracts.morpho, 1_000_000)]


# =============================================================================
# TEST: prepare
# =============================================================================

class TestPrepare:

    @pytest.mark.asyncio
    async def test_nonce_read_from_entry_point(self, builder, wallet, calls):
        op = await builder.prepare(wallet, calls)
        assert op.nonce == 9
        builder.entry_point.functions.getNonce.assert_called_with(wallet, 0)

    @pytest.mark.asyncio
    async def test_gas_limits(self, builder, wallet, calls):
        op = await builder.prepare(wallet, calls)
        assert op.call_gas_limit == 300_000 - 21_000 - calculate_calldata_gas(op.call_data)
        assert op.verification_gas_limit == MAX_VERIFICATION_GAS
        assert op.pre_verification_gas == PRE_VERIFICATION_GAS

    @pytest.mark.asyncio
    async def test_fees_are_zero(self, builder, wallet, calls):
        op = await builder.prepare(wallet, calls)
        assert op.max_fee_per_gas == 0
        assert op.max_priority_fee_per_gas == 0

    @pytest.mark.asyncio
    async def test_result_is_unsigned(self, builder, wallet, calls):
        op = await builder.prepare(wallet, calls)
        assert not op.is_signed
        assert op.signature == "0x"

    @pytest.mark.asyncio
    async def test_lowercase_wallet_checksummed(self, builder, wallet, calls):
        op = await builder.prepare(wallet.lower(), calls)
        assert op.sender == wallet


# =============================================================================
# TEST: Simulation
# =============================================================================

class TestSimulation:

    @pytest.mark.asyncio
    async def test_simulated_from_entry_point(self, builder, mock_w3, wallet, calls):
        op = await builder.prepare(wallet, calls)
        tx, block, override = mock_w3.eth.estimate_gas.call_args.args
        assert tx["from"] == ENTRY_POINT_V07
        assert tx["to"] == wallet
        assert tx["data"] == op.call_data
        assert override is None

    @pytest.mark.asyncio
    async def test_authorization_installs_delegation_code(self, builder, mock_w3, wallet, calls):
        auth = Authorization(NEXUS_IMPLEMENTATION, 42161, 0, 0, 1, 2)
        await builder.prepare(wallet, calls, auth)
        override = mock_w3.eth.estimate_gas.call_args.args[2]
        assert override == {wallet: {"code": delegation_code(NEXUS_IMPLEMENTATION)}}

    @pytest.mark.asyncio
    async def test_revert_raises_simulation_error(self, builder, mock_w3, wallet, calls):
        mock_w3.eth.estimate_gas.side_effect = ContractLogicError("execution reverted: insufficient collateral")
        with pytest.raises(SimulationError) as exc:
            await builder.prepare(wallet, calls)
        assert "insufficient collateral" in exc.value.message
        assert exc.value.status_code == 422

    @pytest.mark.asyncio
    async def test_small_estimate_floors_at_zero(self, builder, mock_w3, wallet, calls):
        mock_w3.eth.estimate_gas.return_value = 10_000
        op = await builder.prepare(wallet, calls)
        assert op.call_gas_limit == 0

    def test_plain_execute_calldata_not_rewritten(self, builder, wallet, calls):
        op = UserOperation(sender=wallet, nonce=0, call_data=encode_erc7821_calls(calls))
        assert builder.simulation_calldata(op) == op.call_data
