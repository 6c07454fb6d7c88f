"""
Supabase REST Tests
PostgREST query strings, error mapping and the keyed store / history
tables (httpx MockTransport, no network)

Run: python -m pytest tests/test_supabase_rest.py -v
"""

import json

import httpx
import pytest

from infrastructure.errors import PersistenceError
from infrastructure.supabase_rest import SupabaseKeyedStore, SupabaseREST
from services.history_store import SupabaseHistoryStore, TransactionRecord

URL = "https://db.supabase.test"


class PostgrestStub:
    """Records requests, answers with a queue of canned responses."""

    def __init__(self):
        self.requests = []
        self.responses = []

    def reply(self, status=200, body=None):
        self.responses.append((status, body))

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        status, body = self.responses.pop(0) if self.responses else (200, [])
        if body is None:
            return httpx.Response(status, text="")
        return httpx.Response(status, json=body)


@pytest.fixture
def stub():
    return PostgrestStub()


@pytest.fixture
def client(stub):
    return SupabaseREST(URL, "service-key", http=httpx.AsyncClient(transport=httpx.MockTransport(stub)))


class TestQueryBuilder:

    @pytest.mark.asyncio
    async def test_select_filters_and_headers(self, client, stub):
        stub.reply(200, [{"a": 1}])
        result = await (client.table("t").select("a").eq("w", "0xabc")
                        .order("created_at", desc=True).limit(5).execute())
        assert result.data == [{"a": 1}]

        request = stub.requests[0]
        assert request.method == "GET"
        assert request.url.path == "/rest/v1/t"
        params = dict(request.url.params)
        assert params == {"select": "a", "w": "eq.0xabc", "order": "created_at.desc", "limit": "5"}
        assert request.headers["apikey"] == "service-key"
        assert request.headers["authorization"] == "Bearer service-key"

    @pytest.mark.asyncio
    async def test_single_unwraps_first_row(self, client, stub):
        stub.reply(200, [{"a": 1}])
        result = await client.table("t").select().single().execute()
        assert result.data == {"a": 1}

    @pytest.mark.asyncio
    async def test_single_empty_is_none(self, client, stub):
        stub.reply(200, [])
        result = await client.table("t").select().single().execute()
        assert not result.data

    @pytest.mark.asyncio
    async def test_in_filter(self, client, stub):
        await client.table("t").select().in_("action", ["supply", "borrow"]).execute()
        assert stub.requests[0].url.params["action"] == "in.(supply,borrow)"

    @pytest.mark.asyncio
    async def test_upsert_prefers_merge(self, client, stub):
        await client.table("t").upsert({"key": "k"}, on_conflict="key").execute()
        request = stub.requests[0]
        assert request.method == "POST"
        assert request.url.params["on_conflict"] == "key"
        assert request.headers["prefer"].startswith("resolution=merge-duplicates")
        assert json.loads(request.content) == {"key": "k"}

    @pytest.mark.asyncio
    async def test_error_status_raises(self, client, stub):
        stub.reply(500, {"message": "boom"})
        with pytest.raises(PersistenceError):
            await client.table("t").select().execute()

    @pytest.mark.asyncio
    async def test_empty_body_is_empty_list(self, client, stub):
        stub.reply(204, None)
        result = await client.table("t").delete().eq("key", "k").execute()
        assert result.data == []

    def test_availability(self):
        assert not SupabaseREST("", "", http=httpx.AsyncClient()).is_available


class TestSupabaseKeyedStore:

    @pytest.mark.asyncio
    async def test_get_missing(self, client, stub):
        stub.reply(200, [])
        assert await SupabaseKeyedStore(client).get("k") is None

    @pytest.mark.asyncio
    async def test_get_expired_row(self, client, stub):
        stub.reply(200, [{"value": 1, "expires_at": "2000-01-01T00:00:00Z"}])
        assert await SupabaseKeyedStore(client).get("k") is None

    @pytest.mark.asyncio
    async def test_get_live_row(self, client, stub):
        stub.reply(200, [{"value": {"n": 2}, "expires_at": None}])
        assert await SupabaseKeyedStore(client).get("k") == {"n": 2}

    @pytest.mark.asyncio
    async def test_set_if_absent_won(self, client, stub):
        stub.reply(204, None)
        stub.reply(201, [{"key": "k"}])
        assert await SupabaseKeyedStore(client).set_if_absent("k", 1, ttl=60)
        insert = stub.requests[1]
        assert insert.headers["prefer"].startswith("resolution=ignore-duplicates")
        assert json.loads(insert.content)["expires_at"] is not None

    @pytest.mark.asyncio
    async def test_set_if_absent_lost(self, client, stub):
        stub.reply(204, None)
        stub.reply(201, [])
        assert not await SupabaseKeyedStore(client).set_if_absent("k", 1)

    @pytest.mark.asyncio
    async def test_delete_if_value_filters_on_json_field(self, client, stub):
        stub.reply(200, [{"key": "lease:0xabc"}])
        assert await SupabaseKeyedStore(client).delete_if_value("lease:0xabc", {"token": "monitor:1"})
        request = stub.requests[0]
        assert request.method == "DELETE"
        assert request.url.params["key"] == "eq.lease:0xabc"
        assert request.url.params["value->>token"] == "eq.monitor:1"

    @pytest.mark.asyncio
    async def test_delete_if_value_no_match(self, client, stub):
        stub.reply(200, [])
        assert not await SupabaseKeyedStore(client).delete_if_value("lease:0xabc", {"token": "monitor:1"})


class TestSupabaseHistoryStore:

    @pytest.mark.asyncio
    async def test_add_writes_row(self, client, stub, wallet):
        await SupabaseHistoryStore(client).add(TransactionRecord(wallet, "supply", "0x01", "user"))
        request = stub.requests[0]
        assert request.url.path == "/rest/v1/transaction_history"
        row = json.loads(request.content)
        assert row["wallet_address"] == wallet.lower()
        assert row["tx_hash"] == "0x01"

    @pytest.mark.asyncio
    async def test_distinct_wallets_dedupes(self, client, stub):
        stub.reply(200, [
            {"wallet_address": "0xAA"}, {"wallet_address": "0xaa"}, {"wallet_address": "0xbb"},
        ])
        assert await SupabaseHistoryStore(client).distinct_wallets() == ["0xaa", "0xbb"]
