"""
Borrow Service - Morpho Blue call builders

Builds the call batches behind the borrow dashboard: supply collateral,
borrow, repay (by amount or in full by shares), withdraw collateral, and the
combined supply+borrow / repay+withdraw flows.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from web3 import Web3

from account_abstraction.encoding import Call
from data_sources.morpho import MORPHO_ABI, MarketParams, RawPosition
from infrastructure.errors import ValidationError
from services.erc20 import MAX_UINT256, build_approve_call
from services.position_math import from_units

logger = logging.getLogger("BorrowService")

VALID_ACTIONS = ("supply", "borrow", "repay", "withdraw")

_codec = Web3()
_morpho = _codec.eth.contract(abi=MORPHO_ABI)


def parse_amount(amount, decimals: int = 6, field_name: str = "amount") -> int:
    try:
        value = float(amount)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid {field_name}")
    if value != value or value <= 0:
        raise ValidationError(f"Invalid {field_name}")
    return from_units(value, decimals)


@dataclass
class BorrowRequest:
    action: str
    amount: str
    user_address: str
    max: bool = False
    position: Optional[RawPosition] = None


@dataclass
class BorrowCallsResult:
    calls: List[Call]
    action: str
    amount: int


@dataclass
class MorphoCallBuilder:
    """Morpho Blue calls for one market."""
    morpho: str
    market_params: MarketParams
    loan_token: str
    collateral_token: str
    decimals: int = 6
    _params: tuple = field(init=False, repr=False)

    def __post_init__(self):
        self.morpho = Web3.to_checksum_address(self.morpho)
        self._params = self.market_params.as_tuple()

    def _call(self, fn: str, *args) -> Call:
        return Call(to=self.morpho, data=_morpho.encode_abi(fn, args=list(args)))

    # ── Primitive calls ──

    def supply_collateral(self, assets: int, user: str) -> Call:
        return self._call("supplyCollateral", self._params, assets, Web3.to_checksum_address(user), b"")

    def borrow(self, assets: int, user: str) -> Call:
        user = Web3.to_checksum_address(user)
        return self._call("borrow", self._params, assets, 0, user, user)

    def repay(self, assets: int, shares: int, user: str) -> Call:
        return self._call("repay", self._params, assets, shares, Web3.to_checksum_address(user), b"")

    def withdraw_collateral(self, assets: int, user: str) -> Call:
        user = Web3.to_checksum_address(user)
        return self._call("withdrawCollateral", self._params, assets, user, user)

    def set_authorization(self, authorized: str, is_authorized: bool) -> Call:
        return self._call("setAuthorization", Web3.to_checksum_address(authorized), is_authorized)

    # ── Flows ──

    def build_supply_calls(self, amount: str, user: str) -> List[Call]:
        assets = parse_amount(amount, self.decimals)
        return [
            build_approve_call(self.collateral_token, self.morpho, assets),
            self.supply_collateral(assets, user),
        ]

    def build_borrow_calls(self, amount: str, user: str) -> List[Call]:
        return [self.borrow(parse_amount(amount, self.decimals), user)]

    def build_repay_calls(self, amount: str, user: str, max: bool = False,
                          position: Optional[RawPosition] = None) -> List[Call]:
        if max:
            # Full repay by shares so no dust is left behind
            shares = position.borrow_shares if position else 0
            return [
                build_approve_call(self.loan_token, self.morpho, MAX_UINT256),
                self.repay(0, shares, user),
            ]
        assets = parse_amount(amount, self.decimals)
        return [
            build_approve_call(self.loan_token, self.morpho, assets),
            self.repay(assets, 0, user),
        ]

    def build_repay_raw(self, assets: int, user: str) -> List[Call]:
        """Approve + repay an exact raw amount."""
        return [
            build_approve_call(self.loan_token, self.morpho, assets),
            self.repay(assets, 0, user),
        ]

    def build_withdraw_calls(self, amount: str, user: str, max: bool = False,
                             position: Optional[RawPosition] = None) -> List[Call]:
        assets = (position.collateral if position else 0) if max else parse_amount(amount, self.decimals)
        return [self.withdraw_collateral(assets, user)]

    def build_action_calls(self, request: BorrowRequest) -> BorrowCallsResult:
        action = request.action
        if action not in VALID_ACTIONS:
            raise ValidationError("Invalid action")
        if not request.user_address:
            raise ValidationError("Missing user address")
        if not (action in ("repay", "withdraw") and request.max):
            parse_amount(request.amount, self.decimals)

        position = request.position
        if action == "supply":
            calls = self.build_supply_calls(request.amount, request.user_address)
            amount = parse_amount(request.amount, self.decimals)
        elif action == "borrow":
            calls = self.build_borrow_calls(request.amount, request.user_address)
            amount = parse_amount(request.amount, self.decimals)
        elif action == "repay":
            calls = self.build_repay_calls(request.amount, request.user_address, request.max, position)
            amount = (position.borrow_shares if position else 0) if request.max else parse_amount(request.amount, self.decimals)
        else:
            calls = self.build_withdraw_calls(request.amount, request.user_address, request.max, position)
            amount = (position.collateral if position else 0) if request.max else parse_amount(request.amount, self.decimals)

        logger.info(f"[BorrowService] {action} for {request.user_address[:10]}...: {len(calls)} call(s)")
        return BorrowCallsResult(calls=calls, action=action, amount=amount)

    def build_supply_and_borrow_calls(self, supply_amount: str, borrow_amount: str, user: str) -> List[Call]:
        calls: List[Call] = []
        if _positive(supply_amount):
            calls.extend(self.build_supply_calls(supply_amount, user))
        if _positive(borrow_amount):
            calls.extend(self.build_borrow_calls(borrow_amount, user))
        return calls

    def build_repay_and_withdraw_calls(self, repay_amount: str, withdraw_amount: str, user: str,
                                       repay_max: bool = False, withdraw_max: bool = False,
                                       position: Optional[RawPosition] = None) -> List[Call]:
        calls: List[Call] = []
        if _positive(repay_amount) or repay_max:
            calls.extend(self.build_repay_calls(repay_amount, user, repay_max, position))
        if _positive(withdraw_amount) or withdraw_max:
            calls.extend(self.build_withdraw_calls(withdraw_amount, user, withdraw_max, position))
        return calls


def _positive(amount) -> bool:
    try:
        return float(amount or 0) > 0
    except (TypeError, ValueError):
        return False
