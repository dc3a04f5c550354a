from __future__ import annotations

from typing import Dict, Optional

from ..core.errors import AuthError, UnsupportedAuthType
from ..core.logging import get_logger
from ..core.models import AccountProfile, ExchangeResult, TokenSet
from ..core.observability import mask_secret_value
from ..core.response import classify_upstream_status
from .base import ProviderAdapter

logger = get_logger(__name__)


class ApiKeyAdapter(ProviderAdapter):
    """Validates raw API keys with one authenticated test call."""

    def build_headers(self, api_key: str, api_secret: Optional[str] = None) -> Dict[str, str]:
        cfg = self.provider.api_key
        headers: Dict[str, str] = {"Accept": "application/json"}
        if cfg is None or cfg.location != "header":
            return headers
        headers[cfg.key_name] = f"{cfg.key_prefix} {api_key}" if cfg.key_prefix else api_key
        if api_secret and cfg.secret_name:
            headers[cfg.secret_name] = api_secret
        return headers

    def build_params(self, api_key: str, api_secret: Optional[str] = None) -> Dict[str, str]:
        cfg = self.provider.api_key
        if cfg is None or cfg.location != "query":
            return {}
        params = {cfg.key_name: api_key}
        if api_secret and cfg.secret_name:
            params[cfg.secret_name] = api_secret
        return params

    async def validate_api_key(self, api_key: str, api_secret: Optional[str] = None) -> AccountProfile:
        if not api_key:
            raise AuthError("API key is required")
        cfg = self.provider.api_key
        if cfg is None or not cfg.test_url:
            # Nothing to test against; accept the key as given
            return AccountProfile()
        resp = await self._send(
            cfg.test_method,
            cfg.test_url,
            headers=self.build_headers(api_key, api_secret),
            params=self.build_params(api_key, api_secret) or None,
        )
        if resp.status_code == cfg.expected_status:
            logger.info("API key validated", extra={"provider": self.provider.id, "key": mask_secret_value(api_key)})
            return AccountProfile()
        if resp.status_code == 429 or resp.status_code >= 500:
            _, exc = classify_upstream_status(resp.status_code, headers=resp.headers, default_message=f"{self.provider.name} key validation failed")
            raise exc
        raise AuthError(f"{self.provider.name} rejected the API key (HTTP {resp.status_code})")

    def build_authorize_url(self, state: str, redirect_uri: str) -> str:
        raise UnsupportedAuthType(f"{self.provider.name} uses API keys, not OAuth2")

    async def exchange_code(self, code: str, redirect_uri: str) -> ExchangeResult:
        raise UnsupportedAuthType(f"{self.provider.name} uses API keys, not OAuth2")

    async def refresh(self, refresh_token: str) -> TokenSet:
        raise UnsupportedAuthType(f"{self.provider.name} API keys do not expire")
