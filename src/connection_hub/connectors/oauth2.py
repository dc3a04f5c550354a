from __future__ import annotations

import re
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlencode

import httpx

from ..core.errors import AuthError, HubError, TransientError, UnsupportedAuthType
from ..core.logging import get_logger
from ..core.models import AccountProfile, ExchangeResult, Provider, TokenSet
from ..core.response import classify_upstream_status
from ..core.security import compute_expiry, utcnow
from .base import ProviderAdapter

logger = get_logger(__name__)

# OAuth error codes meaning the grant or client itself was rejected
_AUTH_ERROR_CODES = {
    "invalid_grant",
    "invalid_client",
    "unauthorized_client",
    "access_denied",
    "bad_verification_code",
    "invalid_code",
    "invalid_refresh_token",
    "invalid_auth",
    "token_revoked",
}


def _json_or_empty(resp: httpx.Response) -> Dict[str, Any]:
    try:
        data = resp.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def _lookup(data: Dict[str, Any], path: Optional[str]) -> Optional[str]:
    """Resolve a dotted path (e.g. 'user.id') in a profile payload."""
    if not path:
        return None
    current: Any = data
    for part in path.split("."):
        if not isinstance(current, dict):
            return None
        current = current.get(part)
    if current is None or isinstance(current, (dict, list)):
        return None
    return str(current)


class OAuth2Adapter(ProviderAdapter):
    """Generic authorization-code adapter driven entirely by the Provider definition."""

    def __init__(
        self,
        provider: Provider,
        client_id: str,
        client_secret: Optional[str] = None,
        timeout: float = 20.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        super().__init__(provider, timeout=timeout, transport=transport)
        self.client_id = client_id
        self.client_secret = client_secret
        self.clock = clock

    def build_authorize_url(self, state: str, redirect_uri: str) -> str:
        endpoints = self.provider.endpoints
        if not endpoints.authorize_url:
            raise UnsupportedAuthType(f"{self.provider.name} has no authorization endpoint")
        params: Dict[str, str] = {
            "client_id": self.client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "state": state,
        }
        if self.provider.scopes:
            params["scope"] = self.provider.scope_separator.join(self.provider.scopes)
        params.update(self.provider.auth_params)
        return f"{endpoints.authorize_url}?{urlencode(params)}"

    def _raise_for_token_error(self, resp: httpx.Response, body: Dict[str, Any], action: str) -> None:
        error_code = body.get("error")
        if isinstance(error_code, str) and error_code in _AUTH_ERROR_CODES:
            raise AuthError(f"{self.provider.name} rejected the {action} ({error_code})")
        if resp.status_code >= 400:
            _, exc = classify_upstream_status(resp.status_code, headers=resp.headers, default_message=f"{self.provider.name} {action} failed")
            raise exc
        if not body.get("access_token"):
            if error_code:
                raise AuthError(f"{self.provider.name} rejected the {action} ({error_code})")
            raise TransientError(f"{self.provider.name} {action} returned no access token")

    def _parse_scopes(self, raw: Any) -> List[str]:
        if isinstance(raw, list):
            return [str(s) for s in raw]
        if isinstance(raw, str) and raw:
            return [s for s in re.split(r"[,\s]+", raw) if s]
        return list(self.provider.scopes)

    def _token_set(self, body: Dict[str, Any], previous_refresh_token: Optional[str] = None) -> TokenSet:
        expires_in = body.get("expires_in")
        return TokenSet(
            access_token=body["access_token"],
            refresh_token=body.get("refresh_token") or previous_refresh_token,
            token_type=body.get("token_type") or "Bearer",
            expires_at=compute_expiry(int(expires_in), now=self.clock()) if expires_in is not None else None,
            scopes=self._parse_scopes(body.get("scope")),
        )

    async def _token_request(self, data: Dict[str, str], action: str) -> Dict[str, Any]:
        url = self.provider.endpoints.effective_refresh_url if action == "refresh" else self.provider.endpoints.token_url
        if not url:
            raise UnsupportedAuthType(f"{self.provider.name} has no token endpoint")
        data = {**data, "client_id": self.client_id}
        if self.client_secret:
            data["client_secret"] = self.client_secret
        resp = await self._send("POST", url, data=data, headers={"Accept": "application/json"})
        body = _json_or_empty(resp)
        self._raise_for_token_error(resp, body, action)
        return body

    async def exchange_code(self, code: str, redirect_uri: str) -> ExchangeResult:
        body = await self._token_request(
            {"grant_type": "authorization_code", "code": code, "redirect_uri": redirect_uri},
            action="code exchange",
        )
        tokens = self._token_set(body)
        profile = await self.fetch_profile(tokens.access_token)
        return ExchangeResult(tokens=tokens, profile=profile)

    async def refresh(self, refresh_token: str) -> TokenSet:
        body = await self._token_request(
            {"grant_type": "refresh_token", "refresh_token": refresh_token},
            action="refresh",
        )
        return self._token_set(body, previous_refresh_token=refresh_token)

    # PUBLIC_INTERFACE
    async def fetch_profile(self, access_token: str) -> AccountProfile:
        """Fetch and map the account profile. Failures yield an empty profile."""
        url = self.provider.endpoints.userinfo_url
        if not url:
            return AccountProfile()
        try:
            resp = await self._send(
                "GET",
                url,
                headers={"Authorization": f"Bearer {access_token}", "Accept": "application/json"},
            )
        except HubError:
            return AccountProfile()
        if resp.status_code >= 400:
            logger.warning("Failed to fetch user info", extra={"provider": self.provider.id, "upstream_status": resp.status_code})
            return AccountProfile()
        data = _json_or_empty(resp)
        mapping = self.provider.profile_mapping
        return AccountProfile(
            account_id=_lookup(data, mapping.account_id),
            email=_lookup(data, mapping.email),
            name=_lookup(data, mapping.name),
        )

    async def validate_api_key(self, api_key: str, api_secret: Optional[str] = None) -> AccountProfile:
        raise UnsupportedAuthType(f"{self.provider.name} uses OAuth2, not API keys")

    async def revoke(self, token: str) -> bool:
        url = self.provider.endpoints.revoke_url
        if not url:
            return False
        try:
            resp = await self._send("POST", url, data={"token": token})
        except TransientError:
            logger.warning("Token revocation failed", extra={"provider": self.provider.id})
            return False
        return resp.is_success
