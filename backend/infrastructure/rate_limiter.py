"""
Rate Limiting - Token buckets for the custodial signer and public endpoints

DESIGN:
- Token bucket algorithm for smooth rate limiting
- SignerGate: one asyncio.Lock + one bucket around the shared signing
  credential, callers await their turn instead of being rejected
- Fixed-window request limiter backed by the keyed store for HTTP routes
"""

import asyncio
import time
import logging
from typing import Any, Awaitable, Callable, Dict, Optional
from dataclasses import dataclass

from infrastructure.errors import RateLimitError

logger = logging.getLogger("RateLimiter")


@dataclass
class TokenBucket:
    """
    Token bucket for rate limiting.
    Allows bursting while maintaining average rate.
    """
    tokens: float
    max_tokens: float
    tokens_per_sec: float
    last_refill: float
    clock: Callable[[], float] = time.monotonic

    @classmethod
    def full(cls, max_tokens: float, tokens_per_sec: float,
             clock: Callable[[], float] = time.monotonic) -> "TokenBucket":
        return cls(
            tokens=max_tokens,
            max_tokens=max_tokens,
            tokens_per_sec=tokens_per_sec,
            last_refill=clock(),
            clock=clock,
        )

    def refill(self):
        """Add tokens based on time elapsed."""
        now = self.clock()
        elapsed = now - self.last_refill
        self.tokens = min(self.max_tokens, self.tokens + elapsed * self.tokens_per_sec)
        self.last_refill = now

    def try_consume(self) -> bool:
        """Try to consume a token. Returns True if successful."""
        self.refill()
        if self.tokens >= 1:
            self.tokens -= 1
            return True
        return False

    def time_until_available(self) -> float:
        """Calculate seconds until a token is available."""
        self.refill()
        if self.tokens >= 1:
            return 0
        needed = 1 - self.tokens
        return needed / self.tokens_per_sec


class SignerGate:
    """
    Serializes access to a single shared signing credential.

    At most one signature request is in flight, and the request rate never
    exceeds the bucket's refill rate.
    """

    def __init__(self, tokens_per_sec: float = 2.0, burst: int = 5):
        self._lock = asyncio.Lock()
        self._bucket = TokenBucket.full(burst, tokens_per_sec)
        self._stats = {"immediate": 0, "waited": 0, "total_wait_ms": 0}

    async def run(self, fn: Callable[[], Awaitable[Any]]) -> Any:
        async with self._lock:
            wait = self._bucket.time_until_available()
            if wait > 0:
                self._stats["waited"] += 1
                self._stats["total_wait_ms"] += int(wait * 1000)
                logger.debug(f"[SignerGate] Waiting {wait:.2f}s for signing slot")
                await asyncio.sleep(wait)
            else:
                self._stats["immediate"] += 1
            self._bucket.try_consume()
            return await fn()

    @property
    def locked(self) -> bool:
        return self._lock.locked()

    def get_stats(self) -> Dict:
        return dict(self._stats)


class RequestRateLimiter:
    """
    Fixed-window per-key request counter stored in a KeyedStore.

    Used by the autonomous execution route: N requests per key per window.
    """

    def __init__(self, store, limit: int = 10, window_seconds: int = 60, prefix: str = "ratelimit"):
        self.store = store
        self.limit = limit
        self.window_seconds = window_seconds
        self.prefix = prefix

    async def check(self, key: str) -> None:
        """Count one request for ``key``; raise RateLimitError when over limit."""
        bucket_key = f"{self.prefix}:{key.lower()}"
        count = await self.store.incr(bucket_key, ttl=self.window_seconds)
        if count > self.limit:
            logger.warning(f"[RateLimiter] {key} exceeded {self.limit}/{self.window_seconds}s")
            raise RateLimitError(retry_after=self.window_seconds)

    async def remaining(self, key: str) -> int:
        current = await self.store.get(f"{self.prefix}:{key.lower()}")
        return max(0, self.limit - int(current or 0))


_signer_gate: Optional[SignerGate] = None


def get_signer_gate() -> SignerGate:
    """Process-wide signer gate"""
    global _signer_gate
    if _signer_gate is None:
        from infrastructure.config import get_config
        privy = get_config().privy
        _signer_gate = SignerGate(privy.signs_per_second, privy.burst)
    return _signer_gate
