"""
Connection manager: install, API-key configuration, OAuth callback and the
user-facing connection queries.

Every public operation returns a ConnectionResult. Classified errors become
``success=False`` results carrying the error code; unexpected adapter
exceptions are logged and reported as upstream errors.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, List, Optional, TypeVar

from pydantic import BaseModel, Field

from ..connectors.base import ProviderAdapter
from ..connectors.registry import ProviderRegistry
from ..core.errors import (
    AuthError,
    ConnectionNotFound,
    HubError,
    InvalidCredentials,
    ProviderNotFound,
    StateExpired,
    StateNotFound,
    StateReplay,
    TransientError,
    UnsupportedAuthType,
)
from ..core.lifecycle import ensure_transition
from ..core.logging import get_logger
from ..core.models import (
    AccountProfile,
    AuthType,
    Connection,
    ConnectionResult,
    ConnectionStatus,
    ConnectionView,
    CredentialBlob,
    ExchangeResult,
    OAuthState,
    Provider,
)
from ..core.observability import increment_metric
from ..core.security import CredentialCipher, ensure_aware, generate_state_token, is_expired, utcnow
from ..core.store import CredentialStore, DuplicateConnection

logger = get_logger(__name__)

T = TypeVar("T")


class InstallOptions(BaseModel):
    redirect_uri: Optional[str] = Field(default=None, description="OAuth redirect URI; defaults to the service callback")
    metadata: Dict[str, str] = Field(default_factory=dict, description="Caller-supplied string metadata stored on the connection")
    source: str = Field(default="web", description="Where the install was started from")
    api_key: Optional[str] = Field(default=None, description="API key, for API-key providers")
    api_secret: Optional[str] = Field(default=None, description="API secret, for providers that use one")


def _failure(exc: HubError, requires_action: Optional[str] = None) -> ConnectionResult:
    return ConnectionResult(success=False, error=exc.message, code=exc.code, requires_action=requires_action)


class ConnectionManager:
    """Owns the connection state machine for install, configure and callback flows."""

    def __init__(
        self,
        registry: ProviderRegistry,
        store: CredentialStore,
        cipher: CredentialCipher,
        default_redirect_uri: str,
        state_ttl_seconds: int = 600,
        clock: Callable[[], datetime] = utcnow,
        state_factory: Callable[[], str] = generate_state_token,
        id_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
        write_attempts: int = 3,
    ):
        self.registry = registry
        self.store = store
        self.cipher = cipher
        self.default_redirect_uri = default_redirect_uri
        self.state_ttl = timedelta(seconds=state_ttl_seconds)
        self.clock = clock
        self.state_factory = state_factory
        self.id_factory = id_factory
        self.write_attempts = write_attempts

    def _provider(self, provider_id: str) -> Provider:
        provider = self.registry.get(provider_id)
        if provider is None:
            raise ProviderNotFound(provider_id)
        return provider

    def _adapter(self, provider: Provider) -> ProviderAdapter:
        adapter = self.registry.adapter_for(provider.id)
        if adapter is None:
            raise UnsupportedAuthType(f"No adapter registered for provider '{provider.id}'")
        return adapter

    async def _guarded(self, provider: Provider, call: Awaitable[T]) -> T:
        """Await an adapter call; anything outside the error taxonomy becomes TransientError."""
        try:
            return await call
        except HubError:
            raise
        except Exception as ex:
            logger.exception("Unexpected provider adapter failure", extra={"provider": provider.id})
            raise TransientError(f"{provider.name} request failed unexpectedly") from ex

    def _new_connection(
        self,
        user_id: str,
        provider: Provider,
        status: ConnectionStatus,
        metadata: Optional[Dict[str, str]] = None,
        **fields,
    ) -> Connection:
        now = self.clock()
        return Connection(
            id=self.id_factory(),
            user_id=user_id,
            provider_id=provider.id,
            auth_type=provider.auth_type,
            status=status,
            metadata=metadata or {},
            created_at=now,
            updated_at=now,
            **fields,
        )

    def _insert_live(self, record: Connection) -> Connection:
        """Insert a new record, or return the live one another writer stored first."""
        try:
            return self.store.insert(record)
        except DuplicateConnection:
            current = self.store.find_active(record.user_id, record.provider_id)
            if current is None:
                raise TransientError("Connection was modified concurrently; please retry")
            logger.info("Reusing connection created concurrently", extra={"connection_id": current.id})
            return current

    # PUBLIC_INTERFACE
    async def install_connection(self, user_id: str, provider_id: str, options: Optional[InstallOptions] = None) -> ConnectionResult:
        """Start connecting a provider for a user.

        OAuth2 providers get a persisted single-use state and an authorization URL.
        API-key providers are configured directly when a key is supplied.
        An already ACTIVE connection is returned as-is.
        """
        options = options or InstallOptions()
        try:
            provider = self._provider(provider_id)
            if provider.auth_type == AuthType.APIKEY and options.api_key:
                return await self.configure_api_key(user_id, provider_id, options.api_key, options.api_secret)

            existing = self.store.find_active(user_id, provider_id)
            if existing is not None and existing.status == ConnectionStatus.ACTIVE:
                return ConnectionResult(success=True, connection=existing)

            if provider.auth_type == AuthType.APIKEY:
                return _failure(
                    UnsupportedAuthType(f"{provider.name} requires an API key; use configure-apikey"),
                    requires_action="api_key",
                )

            adapter = self._adapter(provider)
            redirect_uri = options.redirect_uri or self.default_redirect_uri
            metadata = {**options.metadata, "source": options.source}
            state_value = self.state_factory()
            authorization_url = adapter.build_authorize_url(state_value, redirect_uri)

            connection = existing
            if connection is None:
                connection = self._insert_live(
                    self._new_connection(user_id, provider, ConnectionStatus.PENDING, metadata=metadata)
                )
                if connection.status == ConnectionStatus.ACTIVE:
                    return ConnectionResult(success=True, connection=connection)
            now = self.clock()
            self.store.save_state(
                OAuthState(
                    state=state_value,
                    user_id=user_id,
                    provider_id=provider_id,
                    connection_id=connection.id,
                    redirect_uri=redirect_uri,
                    source=options.source,
                    created_at=now,
                    expires_at=now + self.state_ttl,
                )
            )
            increment_metric("connections_installed_total", 1.0)
            logger.info("OAuth install started", extra={"provider": provider_id, "connection_id": connection.id})
            return ConnectionResult(
                success=True,
                connection=connection,
                authorization_url=authorization_url,
                state=state_value,
                requires_action="oauth",
            )
        except HubError as ex:
            logger.info("Install failed", extra={"provider": provider_id, "code": ex.code})
            return _failure(ex)

    # PUBLIC_INTERFACE
    async def configure_api_key(
        self, user_id: str, provider_id: str, api_key: str, api_secret: Optional[str] = None
    ) -> ConnectionResult:
        """Validate an API key with the provider and store it on an ACTIVE connection.

        Nothing is persisted when validation fails.
        """
        try:
            provider = self._provider(provider_id)
            if provider.auth_type != AuthType.APIKEY:
                raise UnsupportedAuthType(f"{provider.name} does not use API keys")
            adapter = self._adapter(provider)
            try:
                profile = await self._guarded(provider, adapter.validate_api_key(api_key, api_secret))
            except AuthError as ex:
                raise InvalidCredentials(ex.message) from ex
            connection = self._store_api_key(user_id, provider, api_key, api_secret, profile)
            increment_metric("connections_installed_total", 1.0)
            logger.info("API key configured", extra={"provider": provider_id, "connection_id": connection.id})
            return ConnectionResult(success=True, connection=connection)
        except HubError as ex:
            logger.info("API key configuration failed", extra={"provider": provider_id, "code": ex.code})
            return _failure(ex)

    def _store_api_key(
        self,
        user_id: str,
        provider: Provider,
        api_key: str,
        api_secret: Optional[str],
        profile: AccountProfile,
    ) -> Connection:
        credentials = CredentialBlob(api_key=self.cipher.encrypt(api_key), api_secret=self.cipher.encrypt(api_secret))
        for _ in range(self.write_attempts):
            existing = self.store.find_active(user_id, provider.id)
            if existing is None:
                try:
                    return self.store.insert(
                        self._new_connection(
                            user_id,
                            provider,
                            ConnectionStatus.ACTIVE,
                            metadata={"source": "apikey"},
                            credentials=credentials,
                            account_id=profile.account_id,
                            account_email=profile.email,
                            account_name=profile.name,
                        )
                    )
                except DuplicateConnection:
                    continue
            ensure_transition(existing.status, ConnectionStatus.ACTIVE)
            updated = existing.model_copy(
                update={
                    "status": ConnectionStatus.ACTIVE,
                    "credentials": credentials,
                    "account_id": profile.account_id or existing.account_id,
                    "account_email": profile.email or existing.account_email,
                    "account_name": profile.name or existing.account_name,
                    "error_count": 0,
                    "error_message": None,
                    "updated_at": self.clock(),
                }
            )
            if self.store.compare_and_swap(existing.id, existing.version, updated):
                return self.store.get(existing.id) or updated
        raise TransientError("Connection was modified concurrently; please retry")

    # PUBLIC_INTERFACE
    async def handle_oauth_callback(self, code: str, state: str) -> ConnectionResult:
        """Consume the state exactly once, exchange the code and activate the connection."""
        increment_metric("oauth_callbacks_total", 1.0)
        try:
            now = self.clock()
            record = self.store.get_state(state)
            if record is None:
                raise StateNotFound()
            if record.consumed:
                raise StateReplay()
            if ensure_aware(record.expires_at) <= now:
                raise StateExpired()
            if not self.store.consume_state(state, now):
                latest = self.store.get_state(state)
                if latest is not None and not latest.consumed:
                    raise StateExpired()
                raise StateReplay()

            provider = self._provider(record.provider_id)
            adapter = self._adapter(provider)
            result = await self._guarded(provider, adapter.exchange_code(code, record.redirect_uri))
            connection = self._activate(record, provider, result)
            logger.info("OAuth connection activated", extra={"provider": provider.id, "connection_id": connection.id})
            return ConnectionResult(success=True, connection=connection)
        except HubError as ex:
            logger.info("OAuth callback failed", extra={"code": ex.code})
            return _failure(ex)

    def _activate(self, record: OAuthState, provider: Provider, result: ExchangeResult) -> Connection:
        tokens, profile = result.tokens, result.profile
        credentials = CredentialBlob(
            access_token=self.cipher.encrypt(tokens.access_token),
            refresh_token=self.cipher.encrypt(tokens.refresh_token),
            token_type=tokens.token_type,
            expires_at=tokens.expires_at,
        )
        activated = {
            "credentials": credentials,
            "granted_scopes": tokens.scopes,
            "error_count": 0,
            "error_message": None,
        }
        for _ in range(self.write_attempts):
            current = self.store.get(record.connection_id) if record.connection_id else None
            if current is None or current.status == ConnectionStatus.REVOKED:
                current = self.store.find_active(record.user_id, record.provider_id)
            if current is None:
                try:
                    return self.store.insert(
                        self._new_connection(
                            record.user_id,
                            provider,
                            ConnectionStatus.ACTIVE,
                            metadata={"source": record.source},
                            account_id=profile.account_id,
                            account_email=profile.email,
                            account_name=profile.name,
                            **activated,
                        )
                    )
                except DuplicateConnection:
                    continue
            ensure_transition(current.status, ConnectionStatus.ACTIVE)
            updated = current.model_copy(
                update={
                    **activated,
                    "status": ConnectionStatus.ACTIVE,
                    "account_id": profile.account_id or current.account_id,
                    "account_email": profile.email or current.account_email,
                    "account_name": profile.name or current.account_name,
                    "metadata": {**current.metadata, "source": record.source},
                    "updated_at": self.clock(),
                }
            )
            if self.store.compare_and_swap(current.id, current.version, updated):
                return self.store.get(current.id) or updated
        raise TransientError("Connection was modified concurrently; please retry")

    # PUBLIC_INTERFACE
    def get_user_connections(self, user_id: str) -> List[Connection]:
        """Return the user's connections, newest first."""
        return self.store.list_for_user(user_id)

    # PUBLIC_INTERFACE
    def list_connection_views(self, user_id: str) -> List[ConnectionView]:
        """Return list rows joined with provider display fields."""
        views: List[ConnectionView] = []
        for connection in self.get_user_connections(user_id):
            provider = self.registry.get(connection.provider_id)
            views.append(
                ConnectionView(
                    id=connection.id,
                    provider_id=connection.provider_id,
                    name=provider.name if provider else connection.provider_id,
                    icon=provider.icon_url if provider else None,
                    account_email=connection.account_email,
                    status=connection.status,
                    connected_at=connection.created_at,
                    last_synced_at=connection.last_synced_at,
                    error=connection.error_message,
                )
            )
        return views

    def get_owned(self, user_id: str, connection_id: str) -> Connection:
        """Load a connection belonging to this user or raise ConnectionNotFound."""
        connection = self.store.get(connection_id)
        if connection is None or connection.user_id != user_id:
            raise ConnectionNotFound(connection_id)
        return connection

    # PUBLIC_INTERFACE
    async def revoke_connection(self, user_id: str, connection_id: str) -> ConnectionResult:
        """Explicitly revoke a connection; provider-side revocation is best effort."""
        try:
            current = self.get_owned(user_id, connection_id)
            if current.status == ConnectionStatus.REVOKED:
                return ConnectionResult(success=True, connection=current)
            token = self.cipher.decrypt(current.credentials.refresh_token or current.credentials.access_token)
            for _ in range(self.write_attempts):
                ensure_transition(current.status, ConnectionStatus.REVOKED)
                updated = current.model_copy(
                    update={
                        "status": ConnectionStatus.REVOKED,
                        "credentials": CredentialBlob(),
                        "error_message": "Revoked by user",
                        "updated_at": self.clock(),
                    }
                )
                if self.store.compare_and_swap(current.id, current.version, updated):
                    break
                current = self.get_owned(user_id, connection_id)
                if current.status == ConnectionStatus.REVOKED:
                    return ConnectionResult(success=True, connection=current)
            else:
                raise TransientError("Connection was modified concurrently; please retry")

            provider = self.registry.get(current.provider_id)
            adapter = self.registry.adapter_for(current.provider_id)
            if token and provider is not None and adapter is not None:
                try:
                    await self._guarded(provider, adapter.revoke(token))
                except HubError as ex:
                    logger.warning("Provider-side revocation failed", extra={"provider": provider.id, "code": ex.code})
            logger.info("Connection revoked", extra={"connection_id": connection_id})
            return ConnectionResult(success=True, connection=self.store.get(connection_id))
        except HubError as ex:
            return _failure(ex)

    # PUBLIC_INTERFACE
    def get_access_token(self, user_id: str, provider_id: str) -> Optional[str]:
        """Return the decrypted access token of the user's ACTIVE connection and record its use.

        An ACTIVE connection whose token expired and cannot be refreshed is moved to EXPIRED.
        """
        current = self.store.find_active(user_id, provider_id)
        if current is None or current.status != ConnectionStatus.ACTIVE:
            return None
        now = self.clock()
        if current.auth_type == AuthType.APIKEY:
            secret = current.credentials.api_key
        else:
            secret = current.credentials.access_token
            if is_expired(current.credentials.expires_at, now):
                if not current.has_refresh_token:
                    expired = current.model_copy(
                        update={"status": ConnectionStatus.EXPIRED, "error_message": "Access token expired", "updated_at": now}
                    )
                    self.store.compare_and_swap(current.id, current.version, expired)
                return None
        used = current.model_copy(update={"last_used_at": now, "api_call_count": current.api_call_count + 1})
        if not self.store.compare_and_swap(current.id, current.version, used):
            logger.debug("Usage update lost to a concurrent write", extra={"connection_id": current.id})
        return self.cipher.decrypt(secret)

    # PUBLIC_INTERFACE
    def purge_expired_states(self) -> int:
        """Delete OAuth states past their TTL. Returns the number removed."""
        removed = self.store.purge_expired_states(self.clock())
        if removed:
            logger.info("Purged expired OAuth states", extra={"count": removed})
        return removed
