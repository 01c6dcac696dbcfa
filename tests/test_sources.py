"""Tests for source readers, the token provider and ingest."""

import httpx
import pytest

from devsync.errors import AuthenticationError, ConfigurationError, SourceError, ThrottledError
from devsync.sources.api import DefenderApiReader, IntuneApiReader
from devsync.sources.auth import ClientCredentialsTokenProvider
from devsync.sources.ingest import SourceIngestor
from devsync.sources.store import intune_store_reader
from devsync.sync.writer import SyncStoreWriter

GRAPH = "https://graph.test/v1.0"
DEFENDER = "https://defender.test"


class FakeClock:
    def __init__(self, now: float = 1_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class TokenServer:
    """Mock token endpoint that hands out numbered tokens."""

    def __init__(self, status: int = 200, expires_in: int = 3600) -> None:
        self.status = status
        self.expires_in = expires_in
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.status != 200:
            return httpx.Response(self.status, json={"error": "invalid_client"})
        return httpx.Response(200, json={
            "access_token": f"token-{len(self.requests)}",
            "expires_in": self.expires_in,
        })


def _provider(handler, clock=None, **overrides):
    params = {
        "tenant_id": "tenant",
        "client_id": "client",
        "client_secret": "secret",
        "scope": "https://graph.microsoft.com/.default",
    }
    params.update(overrides)
    return ClientCredentialsTokenProvider(
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        clock=clock or FakeClock(),
        **params,
    )


class TestTokenProvider:
    @pytest.mark.asyncio
    async def test_token_is_cached(self):
        server = TokenServer()
        provider = _provider(server)

        assert await provider.get_access_token() == "token-1"
        assert await provider.get_access_token() == "token-1"
        assert len(server.requests) == 1
        assert provider.has_cached_token()

        body = server.requests[0].content.decode()
        assert "grant_type=client_credentials" in body
        assert server.requests[0].url.path == "/tenant/oauth2/v2.0/token"

    @pytest.mark.asyncio
    async def test_refresh_five_minutes_before_expiry(self):
        server = TokenServer(expires_in=3600)
        clock = FakeClock(1_000.0)
        provider = _provider(server, clock=clock)

        await provider.get_access_token()
        clock.now += 3600 - 300 - 1
        assert await provider.get_access_token() == "token-1"

        clock.now += 1
        assert not provider.has_cached_token()
        assert await provider.get_access_token() == "token-2"

    @pytest.mark.asyncio
    async def test_clear_cache(self):
        server = TokenServer()
        provider = _provider(server)

        await provider.get_access_token()
        provider.clear_cache()

        assert not provider.has_cached_token()
        assert await provider.get_access_token() == "token-2"

    @pytest.mark.asyncio
    async def test_missing_credentials(self):
        provider = _provider(TokenServer(), client_secret=None)

        with pytest.raises(ConfigurationError, match="client_secret"):
            await provider.get_access_token()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [401, 403])
    async def test_rejected_credentials(self, status):
        provider = _provider(TokenServer(status=status))

        with pytest.raises(AuthenticationError):
            await provider.get_access_token()
        assert not provider.has_cached_token()

    @pytest.mark.asyncio
    async def test_token_server_error(self):
        with pytest.raises(SourceError):
            await _provider(TokenServer(status=500)).get_access_token()


class GraphServer:
    """Mock Graph / Defender API: token endpoint plus a paged collection."""

    def __init__(self, pages: list[list[dict]], path: str, base: str) -> None:
        self.pages = pages
        self.path = path
        self.base = base
        self.throttle_first = 0
        self.status: int | None = None
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/oauth2/v2.0/token"):
            return httpx.Response(200, json={"access_token": "api-token", "expires_in": 3600})

        self.requests.append(request)
        if self.status is not None:
            return httpx.Response(self.status, text="nope")
        if self.throttle_first:
            self.throttle_first -= 1
            return httpx.Response(429, headers={"Retry-After": "7"})

        index = int(request.url.params.get("page", "0"))
        payload = {"value": self.pages[index]}
        if index + 1 < len(self.pages):
            payload["@odata.nextLink"] = f"{self.base}{self.path}?page={index + 1}"
        return httpx.Response(200, json=payload)


def _api_reader(cls, server, base, sleep):
    client = httpx.AsyncClient(transport=httpx.MockTransport(server))
    provider = ClientCredentialsTokenProvider("t", "c", "s", "scope", http_client=client, clock=FakeClock())
    return cls(client, provider, base_url=base, page_size=2, sleep=sleep)


class TestApiReaders:
    @pytest.mark.asyncio
    async def test_intune_follows_next_link(self, sleep):
        server = GraphServer(
            [
                [{"id": "a1", "azureADDeviceId": "K1"}, {"id": "a2", "azureADDeviceId": "K2"}],
                [{"id": "a3", "azureADDeviceId": None}],
            ],
            path="/v1.0/deviceManagement/managedDevices",
            base="https://graph.test",
        )
        reader = _api_reader(IntuneApiReader, server, GRAPH, sleep)

        result = await reader.fetch_all()

        assert [d.id for d in result.devices] == ["a1", "a2", "a3"]
        assert result.devices[2].identity_key is None
        assert result.cost == 2.0
        first = server.requests[0]
        assert first.url.path == "/v1.0/deviceManagement/managedDevices"
        assert first.url.params["$top"] == "2"
        assert first.headers["Authorization"] == "Bearer api-token"

    @pytest.mark.asyncio
    async def test_defender_honours_retry_after(self, sleep):
        server = GraphServer([[{"id": "b1", "aadDeviceId": "K1"}]], path="/api/machines", base=DEFENDER)
        server.throttle_first = 2
        reader = _api_reader(DefenderApiReader, server, DEFENDER, sleep)

        result = await reader.fetch_all()

        assert [d.id for d in result.devices] == ["b1"]
        assert sleep.delays == [7.0, 7.0]
        assert result.cost == 3.0

    @pytest.mark.asyncio
    async def test_throttling_gives_up_after_three_retries(self, sleep):
        server = GraphServer([[]], path="/api/machines", base=DEFENDER)
        server.throttle_first = 10
        reader = _api_reader(DefenderApiReader, server, DEFENDER, sleep)

        with pytest.raises(SourceError, match="throttled"):
            await reader.fetch_all()
        assert len(server.requests) == 4

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [401, 403])
    async def test_auth_failure(self, sleep, status):
        server = GraphServer([[]], path="/api/machines", base=DEFENDER)
        server.status = status
        reader = _api_reader(DefenderApiReader, server, DEFENDER, sleep)

        with pytest.raises(AuthenticationError):
            await reader.fetch_all()
        assert not reader.token_provider.has_cached_token()

    @pytest.mark.asyncio
    async def test_server_error(self, sleep):
        server = GraphServer([[]], path="/api/machines", base=DEFENDER)
        server.status = 500
        reader = _api_reader(DefenderApiReader, server, DEFENDER, sleep)

        with pytest.raises(SourceError, match="500"):
            await reader.fetch_all()

    @pytest.mark.asyncio
    async def test_invalid_payload(self, sleep):
        server = GraphServer([[{"deviceName": "no id"}]], path="/api/machines", base=DEFENDER)
        reader = _api_reader(DefenderApiReader, server, DEFENDER, sleep)

        with pytest.raises(SourceError, match="Invalid defender device payload"):
            await reader.fetch_all()


class TestStoreReader:
    @pytest.mark.asyncio
    async def test_reads_all_pages(self, fake_store, sleep):
        fake_store.seed("devices_intune", [{"id": f"a{i}", "azureADDeviceId": f"K{i}"} for i in range(7)])

        result = await intune_store_reader(fake_store, page_size=3, sleep=sleep).fetch_all()

        assert len(result.devices) == 7
        assert result.cost == 3.0

    @pytest.mark.asyncio
    async def test_retries_throttled_page(self, fake_store, sleep):
        fake_store.seed("devices_intune", [{"id": "a1"}])
        fake_store.read_errors = [ThrottledError(retry_after=2.5)]

        result = await intune_store_reader(fake_store, sleep=sleep).fetch_all()

        assert len(result.devices) == 1
        assert sleep.delays == [2.5]

    @pytest.mark.asyncio
    async def test_bad_document_is_source_error(self, fake_store, sleep):
        fake_store.seed("devices_intune", [{"id": "a1"}])
        fake_store.collections["devices_intune"]["a1"] = {"deviceName": "lost id"}

        with pytest.raises(SourceError):
            await intune_store_reader(fake_store, sleep=sleep).fetch_all()


class TestIngest:
    @pytest.mark.asyncio
    async def test_replaces_source_collection(self, fake_store, sleep):
        fake_store.seed("devices_defender", [{"id": "old-1"}, {"id": "old-2"}])
        server = GraphServer(
            [[{"id": "b1", "aadDeviceId": "K1"}, {"id": "b2", "aadDeviceId": None}]],
            path="/api/machines",
            base=DEFENDER,
        )
        reader = _api_reader(DefenderApiReader, server, DEFENDER, sleep)
        writer = SyncStoreWriter(fake_store, "devices_defender", key_field="id", sleep=sleep)

        result = await SourceIngestor(reader, writer).ingest()

        assert result.source == "defender"
        assert result.fetched == 2
        assert result.deleted == 2
        assert result.written == 2
        assert {d["id"] for d in fake_store.documents("devices_defender")} == {"b1", "b2"}
        assert fake_store.documents("devices_defender")[0]["aadDeviceId"] == "K1"

    @pytest.mark.asyncio
    async def test_write_errors_keyed_by_device_id(self, fake_store, sleep):
        server = GraphServer([[{"id": "b1"}, {"id": "b2"}]], path="/api/machines", base=DEFENDER)
        reader = _api_reader(DefenderApiReader, server, DEFENDER, sleep)
        writer = SyncStoreWriter(fake_store, "devices_defender", key_field="id", sleep=sleep)
        fake_store.upsert_status = lambda doc, attempt: 400 if doc["id"] == "b2" else 200

        result = await SourceIngestor(reader, writer).ingest()

        assert result.written == 1
        assert result.failed == 1
        assert result.errors == [{"syncKey": "b2", "error": "HTTP 400: Injected failure"}]
