"""
Swap Service - Uniswap V3 single-hop swaps

- Quotes through the V3 Quoter (eth_call on quoteExactInputSingle)
- Applies slippage to derive amountOutMinimum
- Builds exactInputSingle with a deadline, preceded by approvals only
  when the router's current allowance is short
"""

import logging
import math
import time
from dataclasses import dataclass
from typing import Callable, List, Protocol

from web3 import AsyncWeb3, Web3
from web3.exceptions import Web3Exception

from account_abstraction.encoding import Call
from infrastructure.errors import ExternalAPIError, ValidationError
from services.erc20 import AllowanceChecker
from services.position_math import from_units, to_units

logger = logging.getLogger("SwapService")

DEFAULT_FEE = 500

ROUTER_ABI = [
    {
        "inputs": [
            {
                "components": [
                    {"name": "tokenIn", "type": "address"},
                    {"name": "tokenOut", "type": "address"},
                    {"name": "fee", "type": "uint24"},
                    {"name": "recipient", "type": "address"},
                    {"name": "deadline", "type": "uint256"},
                    {"name": "amountIn", "type": "uint256"},
                    {"name": "amountOutMinimum", "type": "uint256"},
                    {"name": "sqrtPriceLimitX96", "type": "uint160"}
                ],
                "name": "params",
                "type": "tuple"
            }
        ],
        "name": "exactInputSingle",
        "outputs": [{"name": "amountOut", "type": "uint256"}],
        "stateMutability": "payable",
        "type": "function"
    }
]

QUOTER_ABI = [
    {
        "inputs": [
            {"name": "tokenIn", "type": "address"},
            {"name": "tokenOut", "type": "address"},
            {"name": "fee", "type": "uint24"},
            {"name": "amountIn", "type": "uint256"},
            {"name": "sqrtPriceLimitX96", "type": "uint160"}
        ],
        "name": "quoteExactInputSingle",
        "outputs": [{"name": "amountOut", "type": "uint256"}],
        "stateMutability": "nonpayable",
        "type": "function"
    }
]

_codec = Web3()
_router = _codec.eth.contract(abi=ROUTER_ABI)


@dataclass
class SwapParams:
    token_in: str
    token_out: str
    amount_in: str
    recipient: str
    decimals_in: int = 6
    decimals_out: int = 6
    slippage: float = 0.5      # percent
    deadline_minutes: int = 30
    fee: int = DEFAULT_FEE

    def validate(self) -> None:
        if not self.token_in or not self.token_out:
            raise ValidationError("Missing token addresses")
        if self.token_in.lower() == self.token_out.lower():
            raise ValidationError("Cannot swap same token")
        try:
            amount = float(self.amount_in)
        except (TypeError, ValueError):
            raise ValidationError("Invalid amount")
        if math.isnan(amount) or amount <= 0:
            raise ValidationError("Invalid amount")
        if not 0 <= float(self.slippage) <= 50:
            raise ValidationError("Invalid slippage (0-50%)")
        if not 1 <= int(self.deadline_minutes) <= 4320:
            raise ValidationError("Invalid deadline (1-4320 minutes)")


@dataclass
class SwapQuote:
    amount_out: float
    amount_out_raw: int


@dataclass
class SwapCallsResult:
    calls: List[Call]
    amount_in: int
    amount_out_minimum: int
    quote: SwapQuote


class SwapQuoter(Protocol):
    async def quote_exact_input_single(self, token_in: str, token_out: str,
                                       fee: int, amount_in: int) -> int: ...


class UniswapV3Quoter:
    """QuoterV1: quoteExactInputSingle is non-view, so it is read via eth_call."""

    def __init__(self, w3: AsyncWeb3, quoter_address: str):
        self.contract = w3.eth.contract(address=Web3.to_checksum_address(quoter_address), abi=QUOTER_ABI)

    async def quote_exact_input_single(self, token_in: str, token_out: str,
                                       fee: int, amount_in: int) -> int:
        try:
            return await self.contract.functions.quoteExactInputSingle(
                Web3.to_checksum_address(token_in),
                Web3.to_checksum_address(token_out),
                fee,
                amount_in,
                0,
            ).call()
        except (Web3Exception, OSError) as e:
            logger.error(f"[SwapService] Quote failed: {e}")
            raise ExternalAPIError("uniswap-quoter", message=f"Quote failed: {e}")


def apply_slippage(amount_out_raw: int, slippage_percent: float) -> int:
    """amountOut * floor((1 - slippage) * 10000) / 10000, in integer math."""
    multiplier = math.floor((1 - float(slippage_percent) / 100) * 10000)
    return amount_out_raw * multiplier // 10000


class SwapBuilder:
    def __init__(
        self,
        quoter: SwapQuoter,
        allowances: AllowanceChecker,
        router_address: str,
        clock: Callable[[], float] = time.time,
    ):
        self.quoter = quoter
        self.allowances = allowances
        self.router = Web3.to_checksum_address(router_address)
        self._clock = clock

    async def get_quote(self, params: SwapParams) -> SwapQuote:
        amount_in = from_units(float(params.amount_in), params.decimals_in)
        raw = await self.quoter.quote_exact_input_single(
            params.token_in, params.token_out, params.fee, amount_in
        )
        return SwapQuote(amount_out=to_units(raw, params.decimals_out), amount_out_raw=raw)

    def build_swap_call(self, params: SwapParams, amount_in: int, amount_out_minimum: int) -> Call:
        deadline = int(self._clock()) + int(params.deadline_minutes) * 60
        data = _router.encode_abi("exactInputSingle", args=[(
            Web3.to_checksum_address(params.token_in),
            Web3.to_checksum_address(params.token_out),
            params.fee,
            Web3.to_checksum_address(params.recipient),
            deadline,
            amount_in,
            amount_out_minimum,
            0,
        )])
        return Call(to=self.router, data=data)

    async def build_swap_calls_with_quote(self, params: SwapParams) -> SwapCallsResult:
        params.validate()
        quote = await self.get_quote(params)
        amount_in = from_units(float(params.amount_in), params.decimals_in)
        amount_out_minimum = apply_slippage(quote.amount_out_raw, params.slippage)

        calls: List[Call] = await self.allowances.approve_calls_if_necessary(
            params.token_in, params.recipient, self.router, amount_in
        )
        calls.append(self.build_swap_call(params, amount_in, amount_out_minimum))

        logger.info(
            f"[SwapService] {params.amount_in} in -> min {amount_out_minimum} out "
            f"({len(calls)} call(s))"
        )
        return SwapCallsResult(
            calls=calls,
            amount_in=amount_in,
            amount_out_minimum=amount_out_minimum,
            quote=quote,
        )
