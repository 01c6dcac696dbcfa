"""Source readers that page through the Microsoft Graph and Defender APIs.

Both APIs return OData pages (``value`` plus ``@odata.nextLink``). Cost for
these readers is the number of HTTP requests issued.
"""

import asyncio
import time
from typing import Any, Callable

import httpx

from devsync.errors import AuthenticationError, SourceError
from devsync.models import DefenderDevice, ManagedDevice
from devsync.sources.auth import ClientCredentialsTokenProvider
from devsync.sources.base import DeviceT, FetchResult, SourceReader
from devsync.utils.logging import get_logger
from devsync.utils.retry import RetryPolicy, Sleep

logger = get_logger(__name__)


def _retry_after(response: httpx.Response) -> float | None:
    value = response.headers.get("Retry-After")
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None


class ODataApiReader(SourceReader[DeviceT]):
    """Follows ``@odata.nextLink`` until the collection is exhausted."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        token_provider: ClientCredentialsTokenProvider,
        url: str,
        device_factory: Callable[[dict[str, Any]], DeviceT],
        name: str,
        page_size: int = 100,
        retry_policy: RetryPolicy | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.http_client = http_client
        self.token_provider = token_provider
        self.url = url
        self.device_factory = device_factory
        self.name = name
        self.page_size = page_size
        self.retry_policy = retry_policy or RetryPolicy()
        self._sleep = sleep

    async def fetch_all(self) -> FetchResult[DeviceT]:
        start = time.perf_counter()
        raw: list[dict[str, Any]] = []
        requests = 0
        next_url: str | None = self.url
        params: dict[str, Any] | None = {"$top": self.page_size}

        logger.info(f"Fetching all {self.name} devices from {self.url}")
        while next_url:
            payload, attempts = await self._get_page(next_url, params)
            requests += attempts
            page = payload.get("value", [])
            raw.extend(page)
            logger.debug(f"Fetched {self.name} page: {len(page)} devices ({len(raw)} total)")
            next_url = payload.get("@odata.nextLink")
            # nextLink already carries the query string
            params = None

        try:
            devices = self._parse(raw)
        except ValueError as e:
            raise SourceError(f"Invalid {self.name} device payload: {e}") from e

        elapsed = (time.perf_counter() - start) * 1000
        logger.info(
            f"Fetched {len(devices)} {self.name} devices "
            f"({requests} requests, {elapsed:.0f}ms)"
        )
        return FetchResult(devices=devices, cost=float(requests))

    async def _get_page(
        self, url: str, params: dict[str, Any] | None
    ) -> tuple[dict[str, Any], int]:
        """GET one page, retrying on 429. Returns the payload and requests made."""
        policy = self.retry_policy
        attempts = 0
        retry_number = 0

        while True:
            token = await self.token_provider.get_access_token()
            attempts += 1
            try:
                response = await self.http_client.get(
                    url,
                    params=params,
                    headers={"Authorization": f"Bearer {token}", "Accept": "application/json"},
                )
            except httpx.TimeoutException as e:
                raise SourceError(f"{self.name} API request timeout: {e}") from e
            except httpx.HTTPError as e:
                raise SourceError(f"{self.name} API network error: {e}") from e

            if response.status_code == 429:
                if retry_number >= policy.max_retries:
                    raise SourceError(
                        f"{self.name} API throttled (429) after {retry_number} retries"
                    )
                delay = policy.delay_for(retry_number, _retry_after(response))
                logger.warning(f"{self.name} API throttled (429), retrying in {delay:.1f}s")
                await self._sleep(delay)
                retry_number += 1
                continue

            if response.status_code in (401, 403):
                self.token_provider.clear_cache()
                raise AuthenticationError(
                    f"{self.name} API rejected the access token (HTTP {response.status_code})"
                )

            if response.status_code >= 400:
                raise SourceError(
                    f"{self.name} API request failed with status {response.status_code}: "
                    f"{response.text[:200]}"
                )

            return response.json(), attempts


class IntuneApiReader(ODataApiReader[ManagedDevice]):
    """Intune managed devices from Microsoft Graph."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        token_provider: ClientCredentialsTokenProvider,
        base_url: str = "https://graph.microsoft.com/v1.0",
        **kwargs: Any,
    ) -> None:
        super().__init__(
            http_client,
            token_provider,
            url=f"{base_url.rstrip('/')}/deviceManagement/managedDevices",
            device_factory=ManagedDevice.from_dict,
            name="intune",
            **kwargs,
        )


class DefenderApiReader(ODataApiReader[DefenderDevice]):
    """Defender for Endpoint machines."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        token_provider: ClientCredentialsTokenProvider,
        base_url: str = "https://api.securitycenter.microsoft.com",
        **kwargs: Any,
    ) -> None:
        super().__init__(
            http_client,
            token_provider,
            url=f"{base_url.rstrip('/')}/api/machines",
            device_factory=DefenderDevice.from_dict,
            name="defender",
            **kwargs,
        )
