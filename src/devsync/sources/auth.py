"""OAuth 2.0 client-credentials tokens for Microsoft Graph and Defender.

One provider per API. The provider keeps a single cached token and reuses it
until five minutes before it expires. The clock and the HTTP client are
injected so callers (and tests) control both.
"""

import time
from dataclasses import dataclass
from typing import Callable

import httpx

from devsync.config import CredentialsConfig
from devsync.errors import AuthenticationError, ConfigurationError, SourceError
from devsync.utils.logging import get_logger

logger = get_logger(__name__)

TOKEN_ENDPOINT = "https://login.microsoftonline.com/{tenant_id}/oauth2/v2.0/token"
TOKEN_EXPIRY_BUFFER = 5 * 60  # seconds


@dataclass
class CachedToken:
    access_token: str
    expires_at: float  # clock() value after which the token must be refreshed


class ClientCredentialsTokenProvider:
    """Acquires and caches an access token for one scope."""

    def __init__(
        self,
        tenant_id: str | None,
        client_id: str | None,
        client_secret: str | None,
        scope: str,
        http_client: httpx.AsyncClient,
        clock: Callable[[], float] = time.time,
        token_endpoint: str = TOKEN_ENDPOINT,
    ) -> None:
        self.tenant_id = tenant_id
        self.client_id = client_id
        self.client_secret = client_secret
        self.scope = scope
        self.http_client = http_client
        self.clock = clock
        self.token_endpoint = token_endpoint
        self._cached: CachedToken | None = None

    @classmethod
    def from_config(
        cls,
        credentials: CredentialsConfig,
        http_client: httpx.AsyncClient,
        clock: Callable[[], float] = time.time,
    ) -> "ClientCredentialsTokenProvider":
        return cls(
            tenant_id=credentials.tenant_id,
            client_id=credentials.client_id,
            client_secret=credentials.client_secret,
            scope=credentials.scope,
            http_client=http_client,
            clock=clock,
        )

    def _is_valid(self, token: CachedToken) -> bool:
        return self.clock() < token.expires_at

    def has_cached_token(self) -> bool:
        return self._cached is not None and self._is_valid(self._cached)

    def clear_cache(self) -> None:
        logger.debug(f"Clearing token cache for {self.scope}")
        self._cached = None

    async def get_access_token(self) -> str:
        """Return the cached token, or request a new one if it is stale."""
        if self._cached is not None and self._is_valid(self._cached):
            logger.debug(f"Using cached access token for {self.scope}")
            return self._cached.access_token

        missing = [
            name for name, value in (
                ("tenant_id", self.tenant_id),
                ("client_id", self.client_id),
                ("client_secret", self.client_secret),
            )
            if not value
        ]
        if missing:
            raise ConfigurationError(
                f"Missing credentials for {self.scope}: {', '.join(missing)}"
            )

        url = self.token_endpoint.format(tenant_id=self.tenant_id)
        logger.info(f"Requesting new access token for {self.scope}")
        start = time.perf_counter()

        try:
            response = await self.http_client.post(
                url,
                data={
                    "grant_type": "client_credentials",
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "scope": self.scope,
                },
            )
        except httpx.TimeoutException as e:
            raise SourceError(f"Token request timeout: {e}") from e
        except httpx.HTTPError as e:
            raise SourceError(f"Token request network error: {e}") from e

        if response.status_code in (401, 403):
            raise AuthenticationError(
                f"Token request rejected for {self.scope} (HTTP {response.status_code})"
            )
        if response.status_code >= 400:
            raise SourceError(f"Token request failed with status {response.status_code}")

        payload = response.json()
        expires_in = float(payload.get("expires_in", 3600))
        self._cached = CachedToken(
            access_token=payload["access_token"],
            expires_at=self.clock() + expires_in - TOKEN_EXPIRY_BUFFER,
        )

        elapsed = (time.perf_counter() - start) * 1000
        logger.info(
            f"Access token acquired for {self.scope} "
            f"(expires in {int(expires_in // 60)} min, {elapsed:.0f}ms)"
        )
        return self._cached.access_token
