import asyncio
import itertools
from datetime import datetime, timedelta, timezone
from typing import List, Optional

import pytest

from connection_hub.connectors.base import ProviderAdapter
from connection_hub.connectors.catalog import BUILTIN_PROVIDERS
from connection_hub.connectors.registry import ProviderRegistry
from connection_hub.core.errors import AuthError
from connection_hub.core.models import (
    AccountProfile,
    Connection,
    ConnectionStatus,
    CredentialBlob,
    ExchangeResult,
    TokenSet,
)
from connection_hub.core.security import CredentialCipher
from connection_hub.core.store import InMemoryCredentialStore
from connection_hub.services.connection_manager import ConnectionManager
from connection_hub.services.token_refresh import TokenRefreshScheduler

START = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


class FixedClock:
    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakeAdapter(ProviderAdapter):
    """Scriptable adapter; yields to the event loop inside every provider call."""

    def __init__(self, provider, clock):
        super().__init__(provider)
        self.clock = clock
        self.exchange_calls: List[tuple] = []
        self.refresh_calls: List[str] = []
        self.revoked: List[str] = []
        self.exchange_error: Optional[Exception] = None
        self.refresh_error: Optional[Exception] = None
        self.refresh_delay = 0.0
        self.rotate_refresh_token = True

    def build_authorize_url(self, state, redirect_uri):
        return f"https://auth.example.test/authorize?state={state}&redirect_uri={redirect_uri}"

    async def exchange_code(self, code, redirect_uri):
        self.exchange_calls.append((code, redirect_uri))
        await asyncio.sleep(0)
        if self.exchange_error:
            raise self.exchange_error
        return ExchangeResult(
            tokens=TokenSet(
                access_token=f"at-{code}",
                refresh_token="rt-1",
                expires_at=self.clock() + timedelta(hours=1),
                scopes=["data"],
            ),
            profile=AccountProfile(account_id="acct-1", email="u1@example.com", name="User One"),
        )

    async def refresh(self, refresh_token):
        self.refresh_calls.append(refresh_token)
        await asyncio.sleep(self.refresh_delay)
        if self.refresh_error:
            raise self.refresh_error
        return TokenSet(
            access_token=f"at-refreshed-{len(self.refresh_calls)}",
            refresh_token="rt-rotated" if self.rotate_refresh_token else None,
            expires_at=self.clock() + timedelta(hours=1),
        )

    async def validate_api_key(self, api_key, api_secret=None):
        await asyncio.sleep(0)
        if api_key != "good-key":
            raise AuthError("key rejected")
        return AccountProfile(account_id="polygon-acct")

    async def revoke(self, token):
        self.revoked.append(token)
        return True


def _builtin(provider_id):
    return next(p for p in BUILTIN_PROVIDERS if p.id == provider_id)


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def store():
    return InMemoryCredentialStore()


@pytest.fixture
def cipher():
    return CredentialCipher("test-encryption-key")


@pytest.fixture
def adapters(clock):
    return {pid: FakeAdapter(_builtin(pid), clock) for pid in ("alpaca", "github", "polygon")}


@pytest.fixture
def registry(adapters):
    reg = ProviderRegistry()
    for pid, adapter in adapters.items():
        reg.register(adapter.provider, adapter)
    return reg


@pytest.fixture
def manager(registry, store, cipher, clock):
    states = (f"s{i}" for i in itertools.count(1))
    ids = (f"conn-{i}" for i in itertools.count(1))
    return ConnectionManager(
        registry,
        store,
        cipher,
        default_redirect_uri="http://localhost:3001/connections/oauth/callback",
        clock=clock,
        state_factory=lambda: next(states),
        id_factory=lambda: next(ids),
    )


@pytest.fixture
def scheduler(store, registry, cipher, clock):
    return TokenRefreshScheduler(store, registry, cipher, lookahead=timedelta(minutes=20), clock=clock)


@pytest.fixture
def seed(store, cipher, clock):
    """Insert an OAuth connection with encrypted tokens."""
    counter = itertools.count(1)

    def _seed(
        status=ConnectionStatus.ACTIVE,
        expires_in=timedelta(minutes=5),
        refresh_token="rt-0",
        user_id="u1",
        provider_id="alpaca",
        **fields,
    ) -> Connection:
        record = Connection(
            id=f"seeded-{next(counter)}",
            user_id=user_id,
            provider_id=provider_id,
            auth_type="oauth2",
            status=status,
            credentials=CredentialBlob(
                access_token=cipher.encrypt("at-0"),
                refresh_token=cipher.encrypt(refresh_token),
                expires_at=clock() + expires_in if expires_in is not None else None,
            ),
            created_at=clock(),
            updated_at=clock(),
            **fields,
        )
        return store.insert(record)

    return _seed
