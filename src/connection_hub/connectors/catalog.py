from __future__ import annotations

from typing import List, Optional

import httpx

from ..core.logging import get_logger
from ..core.models import ApiKeyConfig, AuthType, ProfileMapping, Provider, ProviderEndpoints, RateLimit
from ..core.settings import Settings
from .apikey import ApiKeyAdapter
from .base import ProviderAdapter
from .oauth2 import OAuth2Adapter
from .registry import ProviderRegistry

logger = get_logger(__name__)

_GOOGLE_AUTHORIZE = "https://accounts.google.com/o/oauth2/v2/auth"
_GOOGLE_TOKEN = "https://oauth2.googleapis.com/token"
_GOOGLE_USERINFO = "https://www.googleapis.com/oauth2/v2/userinfo"
_GOOGLE_REVOKE = "https://oauth2.googleapis.com/revoke"

BUILTIN_PROVIDERS: List[Provider] = [
    Provider(
        id="alpaca",
        name="Alpaca",
        auth_type=AuthType.OAUTH2,
        category="brokerage",
        description="Commission-free trading and market data",
        scopes=["account:write", "trading", "data"],
        endpoints=ProviderEndpoints(
            authorize_url="https://app.alpaca.markets/oauth/authorize",
            token_url="https://api.alpaca.markets/oauth/token",
            userinfo_url="https://api.alpaca.markets/v2/account",
        ),
        profile_mapping=ProfileMapping(account_id="account_number", email=None, name=None),
        icon_url="https://alpaca.markets/favicon.ico",
        docs_url="https://docs.alpaca.markets",
    ),
    Provider(
        id="google-calendar",
        name="Google Calendar",
        auth_type=AuthType.OAUTH2,
        category="calendar",
        scopes=["https://www.googleapis.com/auth/calendar"],
        endpoints=ProviderEndpoints(
            authorize_url=_GOOGLE_AUTHORIZE,
            token_url=_GOOGLE_TOKEN,
            userinfo_url=_GOOGLE_USERINFO,
            revoke_url=_GOOGLE_REVOKE,
        ),
        auth_params={"access_type": "offline", "prompt": "consent"},
        rate_limit=RateLimit(requests_per_minute=600),
        icon_url="https://www.gstatic.com/images/branding/product/2x/calendar_2020q4_48dp.png",
        docs_url="https://developers.google.com/calendar",
    ),
    Provider(
        id="gmail",
        name="Gmail",
        auth_type=AuthType.OAUTH2,
        category="email",
        scopes=[
            "https://www.googleapis.com/auth/gmail.readonly",
            "https://www.googleapis.com/auth/gmail.send",
        ],
        endpoints=ProviderEndpoints(
            authorize_url=_GOOGLE_AUTHORIZE,
            token_url=_GOOGLE_TOKEN,
            userinfo_url=_GOOGLE_USERINFO,
            revoke_url=_GOOGLE_REVOKE,
        ),
        auth_params={"access_type": "offline", "prompt": "consent"},
        icon_url="https://ssl.gstatic.com/ui/v1/icons/mail/rfr/gmail.ico",
        docs_url="https://developers.google.com/gmail",
    ),
    Provider(
        id="github",
        name="GitHub",
        auth_type=AuthType.OAUTH2,
        category="code",
        scopes=["repo", "user:email"],
        endpoints=ProviderEndpoints(
            authorize_url="https://github.com/login/oauth/authorize",
            token_url="https://github.com/login/oauth/access_token",
            userinfo_url="https://api.github.com/user",
        ),
        profile_mapping=ProfileMapping(account_id="id", email="email", name="name"),
        icon_url="https://github.githubassets.com/assets/GitHub-Mark-ea2971cee799.png",
        docs_url="https://docs.github.com",
    ),
    Provider(
        id="linear",
        name="Linear",
        auth_type=AuthType.OAUTH2,
        category="tasks",
        scopes=["read", "write"],
        scope_separator=",",
        endpoints=ProviderEndpoints(
            authorize_url="https://linear.app/oauth/authorize",
            token_url="https://api.linear.app/oauth/token",
            revoke_url="https://api.linear.app/oauth/revoke",
        ),
        icon_url="https://linear.app/favicon.ico",
        docs_url="https://developers.linear.app",
    ),
    Provider(
        id="notion",
        name="Notion",
        auth_type=AuthType.OAUTH2,
        category="notes",
        endpoints=ProviderEndpoints(
            authorize_url="https://api.notion.com/v1/oauth/authorize",
            token_url="https://api.notion.com/v1/oauth/token",
        ),
        auth_params={"owner": "user"},
        rate_limit=RateLimit(concurrent=1),
        icon_url="https://www.notion.so/images/favicon.ico",
        docs_url="https://developers.notion.com",
    ),
    Provider(
        id="slack",
        name="Slack",
        auth_type=AuthType.OAUTH2,
        category="communication",
        scopes=["chat:write", "channels:read", "users:read"],
        scope_separator=",",
        endpoints=ProviderEndpoints(
            authorize_url="https://slack.com/oauth/v2/authorize",
            token_url="https://slack.com/api/oauth.v2.access",
            revoke_url="https://slack.com/api/auth.revoke",
        ),
        rate_limit=RateLimit(requests_per_minute=60),
        icon_url="https://a.slack-edge.com/80588/marketing/img/icons/icon_slack_hash_colored.png",
        docs_url="https://api.slack.com",
    ),
    Provider(
        id="polygon",
        name="Polygon.io",
        auth_type=AuthType.APIKEY,
        category="market-data",
        api_key=ApiKeyConfig(
            location="query",
            key_name="apiKey",
            test_url="https://api.polygon.io/v3/reference/tickers?limit=1",
        ),
        docs_url="https://polygon.io/docs",
    ),
    Provider(
        id="alpha-vantage",
        name="Alpha Vantage",
        auth_type=AuthType.APIKEY,
        category="market-data",
        api_key=ApiKeyConfig(
            location="query",
            key_name="apikey",
            test_url="https://www.alphavantage.co/query?function=GLOBAL_QUOTE&symbol=IBM",
        ),
        rate_limit=RateLimit(requests_per_minute=5),
        docs_url="https://www.alphavantage.co/documentation",
    ),
]


# PUBLIC_INTERFACE
def build_adapter(provider: Provider, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None) -> ProviderAdapter:
    """Create the generic adapter matching a provider's auth type."""
    timeout = settings.oauth.HTTP_TIMEOUT_SECONDS
    if provider.auth_type == AuthType.APIKEY:
        return ApiKeyAdapter(provider, timeout=timeout, transport=transport)
    client_id, client_secret = settings.client_credentials(provider.id)
    if not client_id:
        logger.warning("OAuth client id not configured", extra={"provider": provider.id})
    return OAuth2Adapter(provider, client_id=client_id, client_secret=client_secret, timeout=timeout, transport=transport)


# PUBLIC_INTERFACE
def build_default_registry(settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None) -> ProviderRegistry:
    """Register the built-in catalog with adapters configured from settings."""
    registry = ProviderRegistry()
    for provider in BUILTIN_PROVIDERS:
        registry.register(provider, build_adapter(provider, settings, transport=transport))
    return registry
