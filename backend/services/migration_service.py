"""
Migration Service - atomic Morpho -> Fluid position migration

The user operation carries exactly three calls:
  1. morpho.setAuthorization(migrationHelper, true)   - authorize helper
  2. migrationHelper.migrate(params)                  - flash loan + migrate
  3. morpho.setAuthorization(migrationHelper, false)  - revoke authorization

Inside migrate() the helper flash-borrows the loan token from Morpho, repays
the user's debt by shares, withdraws the collateral, opens (or tops up) the
Fluid vault position and repays the flash loan.
"""

import logging
from dataclasses import dataclass, field
from typing import List

from web3 import Web3

from account_abstraction.encoding import Call
from data_sources.morpho import PositionSnapshot
from infrastructure.errors import ValidationError
from services.borrow_service import MorphoCallBuilder
from services.position_math import round_units

logger = logging.getLogger("MigrationService")

_MARKET_PARAMS_COMPONENTS = [
    {"name": "loanToken", "type": "address"},
    {"name": "collateralToken", "type": "address"},
    {"name": "oracle", "type": "address"},
    {"name": "irm", "type": "address"},
    {"name": "lltv", "type": "uint256"},
]

MIGRATION_HELPER_ABI = [
    {
        "inputs": [
            {
                "components": [
                    {"name": "user", "type": "address"},
                    {"components": _MARKET_PARAMS_COMPONENTS, "name": "sourceMarket", "type": "tuple"},
                    {"name": "repayDebtAmount", "type": "uint256"},
                    {"name": "repayDebtShares", "type": "uint256"},
                    {"name": "collateralAmount", "type": "uint256"},
                    {"name": "borrowAmount", "type": "uint256"},
                    {"name": "fluidNftId", "type": "uint256"}
                ],
                "name": "params",
                "type": "tuple"
            }
        ],
        "name": "migrate",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function"
    }
]

_codec = Web3()
_helper = _codec.eth.contract(abi=MIGRATION_HELPER_ABI)


@dataclass
class MigrationRequest:
    user_address: str
    fluid_nft_id: int = 0          # 0 opens a new Fluid position
    borrow_buffer_bps: int = 0

    def __post_init__(self):
        if self.fluid_nft_id < 0:
            raise ValidationError("fluidNftId must be non-negative")
        if not 0 <= self.borrow_buffer_bps < 10_000:
            raise ValidationError("borrowBufferBps must be between 0 and 9999")


@dataclass
class MigrationCalculation:
    debt_to_repay: float
    collateral_to_migrate: float
    borrow_on_fluid: float
    estimated_collateral_value: float
    oracle_price: float
    current_ltv: float

    def to_dict(self) -> dict:
        return {
            "debtToRepay": self.debt_to_repay,
            "collateralToMigrate": self.collateral_to_migrate,
            "borrowOnFluid": self.borrow_on_fluid,
            "estimatedUSDTValue": self.estimated_collateral_value,
            "oraclePrice": self.oracle_price,
            "currentLTV": self.current_ltv,
        }


@dataclass
class MigrationPlan:
    calls: List[Call]
    calculation: MigrationCalculation
    kind: str = field(default="migration", init=False)


class MigrationPlanner:
    def __init__(self, morpho: str, migration_helper: str, decimals: int = 6):
        self.morpho = Web3.to_checksum_address(morpho)
        self.helper = Web3.to_checksum_address(migration_helper)
        self.decimals = decimals

    def build_migrate_call(self, request: MigrationRequest, snapshot: PositionSnapshot) -> Call:
        params = snapshot.market_params
        data = _helper.encode_abi("migrate", args=[(
            Web3.to_checksum_address(request.user_address),
            params.as_tuple(),
            0,                                   # repayDebtAmount: repay by shares
            snapshot.position.borrow_shares,     # exact shares for a full repay
            snapshot.position.collateral,        # exact on-chain collateral
            round_units(snapshot.debt, self.decimals),
            request.fluid_nft_id,
        )])
        return Call(to=self.helper, data=data)

    def build_migration_calls(self, request: MigrationRequest, snapshot: PositionSnapshot) -> MigrationPlan:
        if snapshot.collateral <= 0:
            raise ValidationError("No collateral to migrate")
        if snapshot.debt <= 0:
            raise ValidationError("No debt to migrate")

        morpho_calls = MorphoCallBuilder(
            morpho=self.morpho,
            market_params=snapshot.market_params,
            loan_token=snapshot.market_params.loan_token,
            collateral_token=snapshot.market_params.collateral_token,
            decimals=self.decimals,
        )

        calls = [
            morpho_calls.set_authorization(self.helper, True),
            self.build_migrate_call(request, snapshot),
            morpho_calls.set_authorization(self.helper, False),
        ]

        debt = snapshot.debt
        borrow_on_fluid = (
            debt * (10_000 - request.borrow_buffer_bps) / 10_000
            if request.borrow_buffer_bps > 0 else debt
        )
        current_ltv = (
            debt / (snapshot.collateral * snapshot.oracle_price) * 100
            if snapshot.oracle_price > 0 else 0.0
        )

        logger.info(
            f"[MigrationService] {request.user_address[:10]}... migrate "
            f"{snapshot.collateral:.6f} collateral / {debt:.2f} debt to Fluid"
        )
        return MigrationPlan(
            calls=calls,
            calculation=MigrationCalculation(
                debt_to_repay=debt,
                collateral_to_migrate=snapshot.collateral,
                borrow_on_fluid=borrow_on_fluid,
                estimated_collateral_value=snapshot.collateral * snapshot.oracle_price,
                oracle_price=snapshot.oracle_price,
                current_ltv=current_ltv,
            ),
        )
