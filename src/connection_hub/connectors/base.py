from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import httpx

from ..core.errors import TransientError
from ..core.logging import get_logger
from ..core.models import AccountProfile, ExchangeResult, Provider, TokenSet

logger = get_logger(__name__)


# PUBLIC_INTERFACE
class ProviderAdapter(ABC):
    """Executes provider-specific network calls for one registered provider.

    Adapters raise only classified errors: ``AuthError`` when the provider
    rejects a credential, ``TransientError`` / ``RateLimited`` otherwise.
    """

    def __init__(self, provider: Provider, timeout: float = 20.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.provider = provider
        self.timeout = timeout
        self._transport = transport

    def _client(self, headers: Optional[Dict[str, str]] = None) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, headers=headers, transport=self._transport)

    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Perform one HTTP call, mapping network failures and timeouts to TransientError."""
        headers = kwargs.pop("headers", None)
        try:
            async with self._client(headers=headers) as client:
                return await client.request(method, url, **kwargs)
        except httpx.TimeoutException as ex:
            logger.warning("Provider call timed out", extra={"provider": self.provider.id})
            raise TransientError(f"{self.provider.name} request timed out") from ex
        except httpx.HTTPError as ex:
            logger.warning("Provider call failed", extra={"provider": self.provider.id, "error": type(ex).__name__})
            raise TransientError(f"{self.provider.name} request failed") from ex

    # PUBLIC_INTERFACE
    @abstractmethod
    def build_authorize_url(self, state: str, redirect_uri: str) -> str:
        """Return the provider authorization URL embedding ``state``."""
        raise NotImplementedError

    # PUBLIC_INTERFACE
    @abstractmethod
    async def exchange_code(self, code: str, redirect_uri: str) -> ExchangeResult:
        """Exchange an authorization code for tokens and the account profile."""
        raise NotImplementedError

    # PUBLIC_INTERFACE
    @abstractmethod
    async def refresh(self, refresh_token: str) -> TokenSet:
        """Obtain a new access token. Providers that do not rotate keep the old refresh token."""
        raise NotImplementedError

    # PUBLIC_INTERFACE
    @abstractmethod
    async def validate_api_key(self, api_key: str, api_secret: Optional[str] = None) -> AccountProfile:
        """Validate an API key against the provider; raise AuthError when it is rejected."""
        raise NotImplementedError

    # PUBLIC_INTERFACE
    async def revoke(self, token: str) -> bool:
        """Best-effort provider-side revocation. Returns True if the provider confirmed it."""
        return False
