"""
Morpho Blue market reader

Reads market params, market state, the user's position and the market
oracle's price, and returns a PositionSnapshot. Raw tuples are validated and
converted into typed dataclasses here, once, at the RPC boundary.

Snapshots are never cached: each evaluation reads fresh on-chain state.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Tuple

from eth_utils import to_bytes
from web3 import AsyncWeb3, Web3

from infrastructure.errors import ExternalAPIError
from services.position_math import (
    PositionMetrics,
    borrow_assets_from_shares,
    compute_position_metrics,
    lltv_percent,
    oracle_price_to_float,
    to_units,
)

logger = logging.getLogger("MorphoReader")

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

_MARKET_PARAMS_COMPONENTS = [
    {"name": "loanToken", "type": "address"},
    {"name": "collateralToken", "type": "address"},
    {"name": "oracle", "type": "address"},
    {"name": "irm", "type": "address"},
    {"name": "lltv", "type": "uint256"},
]

MORPHO_ABI = [
    {
        "inputs": [{"name": "id", "type": "bytes32"}],
        "name": "idToMarketParams",
        "outputs": [
            {"name": "loanToken", "type": "address"},
            {"name": "collateralToken", "type": "address"},
            {"name": "oracle", "type": "address"},
            {"name": "irm", "type": "address"},
            {"name": "lltv", "type": "uint256"}
        ],
        "stateMutability": "view",
        "type": "function"
    },
    {
        "inputs": [{"name": "id", "type": "bytes32"}],
        "name": "market",
        "outputs": [
            {"name": "totalSupplyAssets", "type": "uint128"},
            {"name": "totalSupplyShares", "type": "uint128"},
            {"name": "totalBorrowAssets", "type": "uint128"},
            {"name": "totalBorrowShares", "type": "uint128"},
            {"name": "lastUpdate", "type": "uint128"},
            {"name": "fee", "type": "uint128"}
        ],
        "stateMutability": "view",
        "type": "function"
    },
    {
        "inputs": [
            {"name": "id", "type": "bytes32"},
            {"name": "user", "type": "address"}
        ],
        "name": "position",
        "outputs": [
            {"name": "supplyShares", "type": "uint256"},
            {"name": "borrowShares", "type": "uint128"},
            {"name": "collateral", "type": "uint128"}
        ],
        "stateMutability": "view",
        "type": "function"
    },
    {
        "inputs": [
            {"components": _MARKET_PARAMS_COMPONENTS, "name": "marketParams", "type": "tuple"},
            {"name": "assets", "type": "uint256"},
            {"name": "onBehalf", "type": "address"},
            {"name": "data", "type": "bytes"}
        ],
        "name": "supplyCollateral",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function"
    },
    {
        "inputs": [
            {"components": _MARKET_PARAMS_COMPONENTS, "name": "marketParams", "type": "tuple"},
            {"name": "assets", "type": "uint256"},
            {"name": "shares", "type": "uint256"},
            {"name": "onBehalf", "type": "address"},
            {"name": "receiver", "type": "address"}
        ],
        "name": "borrow",
        "outputs": [
            {"name": "", "type": "uint256"},
            {"name": "", "type": "uint256"}
        ],
        "stateMutability": "nonpayable",
        "type": "function"
    },
    {
        "inputs": [
            {"components": _MARKET_PARAMS_COMPONENTS, "name": "marketParams", "type": "tuple"},
            {"name": "assets", "type": "uint256"},
            {"name": "shares", "type": "uint256"},
            {"name": "onBehalf", "type": "address"},
            {"name": "data", "type": "bytes"}
        ],
        "name": "repay",
        "outputs": [
            {"name": "", "type": "uint256"},
            {"name": "", "type": "uint256"}
        ],
        "stateMutability": "nonpayable",
        "type": "function"
    },
    {
        "inputs": [
            {"components": _MARKET_PARAMS_COMPONENTS, "name": "marketParams", "type": "tuple"},
            {"name": "assets", "type": "uint256"},
            {"name": "onBehalf", "type": "address"},
            {"name": "receiver", "type": "address"}
        ],
        "name": "withdrawCollateral",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function"
    },
    {
        "inputs": [
            {"name": "authorized", "type": "address"},
            {"name": "newIsAuthorized", "type": "bool"}
        ],
        "name": "setAuthorization",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function"
    }
]

ORACLE_ABI = [
    {
        "inputs": [],
        "name": "price",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function"
    }
]


# ============================================
# TYPED MARKET DATA
# ============================================

@dataclass(frozen=True)
class MarketParams:
    loan_token: str
    collateral_token: str
    oracle: str
    irm: str
    lltv: int

    @classmethod
    def from_tuple(cls, raw) -> "MarketParams":
        if raw is None or len(raw) != 5:
            raise ExternalAPIError("morpho", message=f"Malformed market params: {raw!r}")
        return cls(
            loan_token=Web3.to_checksum_address(raw[0]),
            collateral_token=Web3.to_checksum_address(raw[1]),
            oracle=Web3.to_checksum_address(raw[2]),
            irm=Web3.to_checksum_address(raw[3]),
            lltv=int(raw[4]),
        )

    def as_tuple(self) -> Tuple[str, str, str, str, int]:
        return (self.loan_token, self.collateral_token, self.oracle, self.irm, self.lltv)

    @property
    def lltv_percent(self) -> float:
        return lltv_percent(self.lltv)


@dataclass(frozen=True)
class MarketState:
    total_supply_assets: int
    total_supply_shares: int
    total_borrow_assets: int
    total_borrow_shares: int
    last_update: int
    fee: int

    @classmethod
    def from_tuple(cls, raw) -> "MarketState":
        if raw is None or len(raw) != 6:
            raise ExternalAPIError("morpho", message=f"Malformed market state: {raw!r}")
        return cls(*(int(v) for v in raw))


@dataclass(frozen=True)
class RawPosition:
    supply_shares: int
    borrow_shares: int
    collateral: int

    @classmethod
    def from_tuple(cls, raw) -> "RawPosition":
        if raw is None or len(raw) != 3:
            raise ExternalAPIError("morpho", message=f"Malformed position: {raw!r}")
        return cls(*(int(v) for v in raw))


@dataclass(frozen=True)
class PositionSnapshot:
    """One wallet's Morpho position with the market data needed to judge it."""
    wallet: str
    market_params: MarketParams
    market_state: MarketState
    position: RawPosition
    collateral: float        # collateral token units
    debt: float              # loan token units
    oracle_price: float      # loan units per collateral unit
    lltv: float              # percent

    @classmethod
    def build(cls, wallet: str, params: MarketParams, state: MarketState,
              position: RawPosition, oracle_price: float, decimals: int = 6) -> "PositionSnapshot":
        return cls(
            wallet=Web3.to_checksum_address(wallet),
            market_params=params,
            market_state=state,
            position=position,
            collateral=to_units(position.collateral, decimals),
            debt=borrow_assets_from_shares(
                position.borrow_shares,
                state.total_borrow_assets,
                state.total_borrow_shares,
                decimals,
            ),
            oracle_price=oracle_price,
            lltv=params.lltv_percent,
        )

    @property
    def metrics(self) -> PositionMetrics:
        return compute_position_metrics(self.collateral, self.debt, self.oracle_price, self.lltv)

    @property
    def current_ltv(self) -> float:
        return self.metrics.current_ltv

    @property
    def max_withdrawable(self) -> float:
        return self.metrics.max_withdrawable

    @property
    def liquidation_price(self) -> float:
        return self.metrics.liquidation_price

    @property
    def has_position(self) -> bool:
        return self.position.collateral > 0 or self.position.borrow_shares > 0

    def summary(self) -> dict:
        m = self.metrics
        return {
            "wallet": self.wallet,
            "collateral": self.collateral,
            "debt": self.debt,
            "oraclePrice": self.oracle_price,
            "lltv": self.lltv,
            "currentLTV": m.current_ltv,
            "maxWithdrawable": m.max_withdrawable,
            "liquidationPrice": m.liquidation_price,
            "percentDropToLiquidation": m.percent_drop_to_liquidation,
        }


# ============================================
# READER
# ============================================

class MorphoReader:
    """Reads Morpho Blue state for a single market."""

    def __init__(self, w3: AsyncWeb3, morpho_address: str, market_id: str, decimals: int = 6):
        self.w3 = w3
        self.morpho = w3.eth.contract(address=Web3.to_checksum_address(morpho_address), abi=MORPHO_ABI)
        self.market_id = to_bytes(hexstr=market_id)
        self.decimals = decimals

    async def get_market_params(self) -> MarketParams:
        raw = await self.morpho.functions.idToMarketParams(self.market_id).call()
        return MarketParams.from_tuple(raw)

    async def get_market_state(self) -> MarketState:
        raw = await self.morpho.functions.market(self.market_id).call()
        return MarketState.from_tuple(raw)

    async def get_position(self, wallet: str) -> RawPosition:
        raw = await self.morpho.functions.position(self.market_id, Web3.to_checksum_address(wallet)).call()
        return RawPosition.from_tuple(raw)

    async def get_oracle_price(self, params: MarketParams) -> float:
        if params.oracle == ZERO_ADDRESS:
            return 0.0
        oracle = self.w3.eth.contract(address=params.oracle, abi=ORACLE_ABI)
        raw = await oracle.functions.price().call()
        return oracle_price_to_float(int(raw))

    async def fetch_snapshot(self, wallet: str) -> PositionSnapshot:
        try:
            params, state, position = await asyncio.gather(
                self.get_market_params(),
                self.get_market_state(),
                self.get_position(wallet),
            )
            price = await self.get_oracle_price(params)
        except ExternalAPIError:
            raise
        except Exception as e:
            logger.error(f"[MorphoReader] Failed to read market data for {wallet[:10]}...: {e}")
            raise ExternalAPIError("morpho", message=f"Failed to fetch market data: {e}")

        snapshot = PositionSnapshot.build(wallet, params, state, position, price, self.decimals)
        logger.debug(
            f"[MorphoReader] {wallet[:10]}... collateral={snapshot.collateral:.6f} "
            f"debt={snapshot.debt:.2f} price={price:.2f}"
        )
        return snapshot
