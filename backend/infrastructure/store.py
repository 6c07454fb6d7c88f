"""
Keyed Store - TTL key/value storage shared by cooldowns, leases, rate limits
and cached wallet ids.

Any backend works as long as it honours the KeyedStore protocol. The
in-memory store is the default for tests and single-process deployments.
"""

import asyncio
import logging
import time
import uuid
from typing import Any, Callable, Dict, Optional, Protocol, Tuple

logger = logging.getLogger("KeyedStore")


class KeyedStore(Protocol):
    """Async key/value store with per-key TTL (seconds)."""

    async def get(self, key: str) -> Optional[Any]: ...

    async def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None: ...

    async def set_if_absent(self, key: str, value: Any, ttl: Optional[float] = None) -> bool: ...

    async def delete(self, key: str) -> None: ...

    async def delete_if_value(self, key: str, value: Any) -> bool: ...

    async def incr(self, key: str, ttl: Optional[float] = None) -> int: ...


class InMemoryKeyedStore:
    """
    Dict-backed KeyedStore.

    Expiry is checked lazily on access against an injectable clock so tests
    can move time forward without sleeping.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._data: Dict[str, Tuple[Any, Optional[float]]] = {}
        self._clock = clock
        self._lock = asyncio.Lock()

    def _live(self, key: str) -> Optional[Tuple[Any, Optional[float]]]:
        entry = self._data.get(key)
        if entry is None:
            return None
        _, expires_at = entry
        if expires_at is not None and self._clock() >= expires_at:
            del self._data[key]
            return None
        return entry

    def _expiry(self, ttl: Optional[float]) -> Optional[float]:
        return self._clock() + ttl if ttl else None

    async def get(self, key: str) -> Optional[Any]:
        entry = self._live(key)
        return entry[0] if entry else None

    async def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        self._data[key] = (value, self._expiry(ttl))

    async def set_if_absent(self, key: str, value: Any, ttl: Optional[float] = None) -> bool:
        async with self._lock:
            if self._live(key) is not None:
                return False
            self._data[key] = (value, self._expiry(ttl))
            return True

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def delete_if_value(self, key: str, value: Any) -> bool:
        """Delete ``key`` only while it still holds ``value``."""
        async with self._lock:
            entry = self._live(key)
            if entry is None or entry[0] != value:
                return False
            del self._data[key]
            return True

    async def incr(self, key: str, ttl: Optional[float] = None) -> int:
        """Increment a counter; the TTL is set when the counter is created."""
        async with self._lock:
            entry = self._live(key)
            if entry is None:
                self._data[key] = (1, self._expiry(ttl))
                return 1
            value, expires_at = entry
            self._data[key] = (int(value) + 1, expires_at)
            return int(value) + 1

    def __len__(self) -> int:
        return sum(1 for k in list(self._data) if self._live(k) is not None)


# ============================================
# WALLET LEASE
# ============================================

class WalletLease:
    """
    Per-wallet mutual exclusion across overlapping monitor runs.

    Every acquire stores a fresh token; release only deletes the lease while
    it still holds that token, so a run that outlived its TTL cannot drop the
    lease a later run has taken since.

    Usage:
        lease = WalletLease(store, ttl=300)
        token = await lease.acquire(wallet)
        if token:
            try:
                ...
            finally:
                await lease.release(wallet, token)
    """

    def __init__(self, store: KeyedStore, ttl: float = 300, owner: str = "monitor"):
        self.store = store
        self.ttl = ttl
        self.owner = owner

    @staticmethod
    def _key(wallet: str) -> str:
        return f"lease:{wallet.lower()}"

    async def acquire(self, wallet: str) -> Optional[str]:
        """Return the lease token, or None when another run holds the wallet."""
        token = f"{self.owner}:{uuid.uuid4().hex}"
        if not await self.store.set_if_absent(self._key(wallet), {"token": token}, ttl=self.ttl):
            logger.info(f"[WalletLease] {wallet[:10]}... already leased")
            return None
        return token

    async def release(self, wallet: str, token: str) -> bool:
        released = await self.store.delete_if_value(self._key(wallet), {"token": token})
        if not released:
            logger.warning(f"[WalletLease] {wallet[:10]}... lease expired before release")
        return released


# ============================================
# COOLDOWN LEDGER
# ============================================

class CooldownLedger:
    """Records the last successful autonomous action per wallet."""

    def __init__(self, store: KeyedStore, window_seconds: float = 3600,
                 clock: Callable[[], float] = time.time):
        self.store = store
        self.window_seconds = window_seconds
        self._clock = clock

    @staticmethod
    def _key(wallet: str) -> str:
        return f"cooldown:{wallet.lower()}"

    async def is_cooling_down(self, wallet: str) -> bool:
        return await self.store.get(self._key(wallet)) is not None

    async def last_action_at(self, wallet: str) -> Optional[float]:
        return await self.store.get(self._key(wallet))

    async def mark(self, wallet: str) -> None:
        await self.store.set(self._key(wallet), self._clock(), ttl=self.window_seconds)
