"""
Supabase REST Wrapper (no SDK dependency)
Mimics supabase-py's .table().select().eq().execute() chaining
using httpx + PostgREST query params.

Used by: audit log, history store, SupabaseKeyedStore (cooldowns/leases)
"""

import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import httpx

from infrastructure.errors import PersistenceError

logger = logging.getLogger("SupabaseREST")


class QueryResult:
    """Mimics supabase execute() result with .data attribute"""
    def __init__(self, data, count=None):
        self.data = data if data else []
        self.count = count


class TableQuery:
    """Chainable query builder for PostgREST API"""

    def __init__(self, client: "SupabaseREST", table: str):
        self._client = client
        self._base_url = f"{client.url}/rest/v1/{table}"
        self._params = {}
        self._method = "GET"
        self._body = None
        self._extra_headers = {}
        self._want_single = False

    def _headers(self):
        h = {
            "apikey": self._client.key,
            "Authorization": f"Bearer {self._client.key}",
            "Content-Type": "application/json",
            "Prefer": "return=representation",
        }
        h.update(self._extra_headers)
        return h

    # ── Query builders ──

    def select(self, columns: str = "*"):
        self._method = "GET"
        self._params["select"] = columns
        return self

    def insert(self, data, ignore_duplicates: bool = False):
        self._method = "POST"
        self._body = data
        if ignore_duplicates:
            self._extra_headers["Prefer"] = "resolution=ignore-duplicates,return=representation"
        return self

    def update(self, data: dict):
        self._method = "PATCH"
        self._body = data
        return self

    def upsert(self, data: dict, on_conflict: str = None):
        self._method = "POST"
        self._body = data
        self._extra_headers["Prefer"] = "resolution=merge-duplicates,return=representation"
        if on_conflict:
            self._params["on_conflict"] = on_conflict
        return self

    def delete(self):
        self._method = "DELETE"
        return self

    # ── Filters ──

    def eq(self, column: str, value):
        self._params[column] = f"eq.{value}"
        return self

    def lt(self, column: str, value):
        self._params[column] = f"lt.{value}"
        return self

    def in_(self, column: str, values):
        self._params[column] = f"in.({','.join(str(v) for v in values)})"
        return self

    # ── Modifiers ──

    def order(self, column: str, desc: bool = False):
        direction = "desc" if desc else "asc"
        self._params["order"] = f"{column}.{direction}"
        return self

    def limit(self, count: int):
        self._params["limit"] = str(count)
        return self

    def single(self):
        """Return single row (first match)"""
        self._want_single = True
        self._params["limit"] = "1"
        return self

    # ── Execute ──

    async def execute(self) -> QueryResult:
        """Execute the query; any non-2xx answer raises PersistenceError."""
        try:
            resp = await self._client.http.request(
                self._method,
                self._base_url,
                headers=self._headers(),
                params=self._params,
                json=self._body if self._method in ("POST", "PATCH") else None,
            )
        except httpx.HTTPError as e:
            logger.error(f"[SupabaseREST] Request failed: {e}")
            raise PersistenceError(f"Supabase request to {self._base_url} failed", e)

        if resp.status_code not in (200, 201, 204):
            logger.error(f"[SupabaseREST] {self._method} {self._base_url}: {resp.status_code} {resp.text[:300]}")
            raise PersistenceError(f"Supabase {self._method} returned {resp.status_code}")

        data = resp.json() if resp.text else []
        if self._want_single and isinstance(data, list):
            data = data[0] if data else None
        return QueryResult(data)


class SupabaseREST:
    """Lightweight async Supabase REST client mimicking SDK interface."""

    def __init__(self, url: str, key: str, http: Optional[httpx.AsyncClient] = None):
        self.url = (url or "").rstrip("/")
        self.key = key or ""
        self.http = http or httpx.AsyncClient(timeout=30.0)

        if self.is_available:
            logger.info(f"[SupabaseREST] Configured for {self.url[:40]}...")
        else:
            logger.warning("[SupabaseREST] Missing SUPABASE_URL or SUPABASE_KEY")

    @property
    def is_available(self) -> bool:
        return bool(self.url and self.key)

    def table(self, name: str) -> TableQuery:
        return TableQuery(self, name)

    async def close(self):
        await self.http.aclose()


# ============================================
# KEYED STORE OVER POSTGREST
# ============================================

def _iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat()


class SupabaseKeyedStore:
    """
    KeyedStore backed by an ``agent_kv`` table
    (key text primary key, value jsonb, expires_at timestamptz).

    set_if_absent relies on the primary key: the insert is ignored on
    conflict, so only one writer observes a returned row.
    """

    TABLE = "agent_kv"

    def __init__(self, client: SupabaseREST):
        self.client = client

    @staticmethod
    def _expires(ttl: Optional[float]) -> Optional[str]:
        if not ttl:
            return None
        return _iso(datetime.now(timezone.utc) + timedelta(seconds=ttl))

    async def _purge_expired(self, key: str) -> None:
        await (self.client.table(self.TABLE).delete()
               .eq("key", key).lt("expires_at", _iso(datetime.now(timezone.utc)))
               .execute())

    async def get(self, key: str) -> Optional[Any]:
        result = await self.client.table(self.TABLE).select("value,expires_at").eq("key", key).single().execute()
        row = result.data
        if not row:
            return None
        expires_at = row.get("expires_at")
        if expires_at and datetime.fromisoformat(expires_at.replace("Z", "+00:00")) <= datetime.now(timezone.utc):
            return None
        value = row.get("value")
        return json.loads(value) if isinstance(value, str) else value

    async def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        await self.client.table(self.TABLE).upsert(
            {"key": key, "value": value, "expires_at": self._expires(ttl)},
            on_conflict="key",
        ).execute()

    async def set_if_absent(self, key: str, value: Any, ttl: Optional[float] = None) -> bool:
        await self._purge_expired(key)
        result = await self.client.table(self.TABLE).insert(
            {"key": key, "value": value, "expires_at": self._expires(ttl)},
            ignore_duplicates=True,
        ).execute()
        return bool(result.data)

    async def delete(self, key: str) -> None:
        await self.client.table(self.TABLE).delete().eq("key", key).execute()

    async def delete_if_value(self, key: str, value: Any) -> bool:
        query = self.client.table(self.TABLE).delete().eq("key", key)
        if isinstance(value, dict):
            # value->>field filters match the stored jsonb object field by field
            for field_name, expected in value.items():
                query = query.eq(f"value->>{field_name}", expected)
        else:
            query = query.eq("value", json.dumps(value))
        result = await query.execute()
        return bool(result.data)

    async def incr(self, key: str, ttl: Optional[float] = None) -> int:
        # Read-modify-write; fine for coarse request limits, not for money
        current = await self.get(key)
        if current is None:
            await self.set(key, 1, ttl)
            return 1
        result = await self.client.table(self.TABLE).update({"value": int(current) + 1}).eq("key", key).execute()
        if not result.data:
            await self.set(key, 1, ttl)
            return 1
        return int(current) + 1
