# infrastructure/rpc.py
"""
Centralized RPC configuration for VaultX.
AsyncWeb3 clients pointed at Arbitrum One.
"""
from typing import Optional

from web3 import AsyncWeb3, AsyncHTTPProvider

from infrastructure.config import get_config


def get_async_web3(rpc_url: Optional[str] = None) -> AsyncWeb3:
    """Build an AsyncWeb3 instance for the given (or configured) endpoint."""
    chain = get_config().chain
    return AsyncWeb3(AsyncHTTPProvider(rpc_url or chain.rpc_url, request_kwargs={"timeout": chain.request_timeout}))
