"""
Pytest Configuration for VaultX Backend Tests

Run all tests: python -m pytest tests/ -v
Run unit tests only: python -m pytest tests/ -v -m "not integration"
Run integration tests: python -m pytest tests/ -v -m integration
"""

import sys
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest
from web3 import Web3

# Add backend to path
sys.path.insert(0, str(Path(__file__).parent.parent))

# Load environment
from dotenv import load_dotenv
load_dotenv(Path(__file__).parent.parent / ".env")

from agents.security_policy import PolicyEngine, build_default_allowlist
from data_sources.morpho import MarketParams, MarketState, PositionSnapshot, RawPosition
from infrastructure.config import ContractsConfig


# =============================================================================
# FIXTURES - Shared across all test files
# =============================================================================

WALLET = Web3.to_checksum_address("0xa30a689ec0f9d717c5ba1098455b031b868b720f")
OTHER_WALLET = Web3.to_checksum_address("0x5e047deb5eb22f4e4a7f2207087369468575e3ef")
ORACLE = "0x1111111111111111111111111111111111111111"
IRM = "0x2222222222222222222222222222222222222222"
LLTV_77 = 770_000_000_000_000_000


@pytest.fixture
def contracts():
    """Arbitrum deployment used by the default allowlist"""
    return ContractsConfig()


@pytest.fixture
def policy_engine(contracts):
    return PolicyEngine(build_default_allowlist(contracts))


@pytest.fixture
def wallet():
    return WALLET


@pytest.fixture
def market_params(contracts):
    return MarketParams(
        loan_token=Web3.to_checksum_address(contracts.loan_token),
        collateral_token=Web3.to_checksum_address(contracts.collateral_token),
        oracle=ORACLE,
        irm=IRM,
        lltv=LLTV_77,
    )


def make_snapshot(
    market_params: MarketParams,
    collateral_raw: int,
    borrow_shares: int,
    oracle_price: float,
    wallet: str = WALLET,
    total_borrow_assets: int = 10**12,
    total_borrow_shares: int = 10**12,
) -> PositionSnapshot:
    """Snapshot with 1:1 borrow shares unless totals are given."""
    state = MarketState(
        total_supply_assets=2 * 10**12,
        total_supply_shares=2 * 10**12,
        total_borrow_assets=total_borrow_assets,
        total_borrow_shares=total_borrow_shares,
        last_update=1_700_000_000,
        fee=0,
    )
    position = RawPosition(supply_shares=0, borrow_shares=borrow_shares, collateral=collateral_raw)
    return PositionSnapshot.build(wallet, market_params, state, position, oracle_price)


@pytest.fixture
def snapshot_factory(market_params):
    def factory(collateral_raw: int, borrow_shares: int, oracle_price: float, **kwargs):
        return make_snapshot(market_params, collateral_raw, borrow_shares, oracle_price, **kwargs)
    return factory


@pytest.fixture
def mock_w3():
    """AsyncWeb3 stand-in: only the eth namespace calls the code paths touch"""
    w3 = MagicMock()
    w3.eth.estimate_gas = AsyncMock(return_value=300_000)
    w3.eth.get_code = AsyncMock(return_value=b"")
    w3.eth.get_block = AsyncMock(return_value={"baseFeePerGas": 10_000_000})
    w3.eth.get_transaction_count = AsyncMock(return_value=7)
    w3.eth.send_raw_transaction = AsyncMock(return_value=bytes.fromhex("ab" * 32))
    w3.eth.wait_for_transaction_receipt = AsyncMock()
    return w3
