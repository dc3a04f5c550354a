from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from .security import utcnow


class AuthType(str, Enum):
    OAUTH2 = "oauth2"
    APIKEY = "apikey"


class ConnectionStatus(str, Enum):
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    EXPIRED = "EXPIRED"
    ERROR = "ERROR"
    REVOKED = "REVOKED"


class ProviderEndpoints(BaseModel):
    model_config = ConfigDict(frozen=True)

    authorize_url: Optional[str] = Field(default=None, description="OAuth authorization endpoint")
    token_url: Optional[str] = Field(default=None, description="OAuth token endpoint (code exchange)")
    refresh_url: Optional[str] = Field(default=None, description="Refresh endpoint; defaults to token_url")
    userinfo_url: Optional[str] = Field(default=None, description="Endpoint returning the account profile")
    revoke_url: Optional[str] = Field(default=None, description="Token revocation endpoint")

    @property
    def effective_refresh_url(self) -> Optional[str]:
        return self.refresh_url or self.token_url


class ProfileMapping(BaseModel):
    """Dotted paths into the provider's profile payload."""

    model_config = ConfigDict(frozen=True)

    account_id: Optional[str] = Field(default="id")
    email: Optional[str] = Field(default="email")
    name: Optional[str] = Field(default="name")


class ApiKeyConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    location: Literal["header", "query"] = Field(default="header", description="Where the key is presented")
    key_name: str = Field(default="Authorization", description="Header or query parameter carrying the key")
    key_prefix: Optional[str] = Field(default=None, description="Scheme such as 'Bearer' placed before the key")
    secret_name: Optional[str] = Field(default=None, description="Header carrying the api secret, if the provider uses one")
    test_url: Optional[str] = Field(default=None, description="Cheap authenticated endpoint used to validate a key")
    test_method: str = Field(default="GET")
    expected_status: int = Field(default=200)


class RateLimit(BaseModel):
    model_config = ConfigDict(frozen=True)

    concurrent: Optional[int] = Field(default=None, ge=1, description="Max in-flight refreshes for this provider")
    requests_per_minute: Optional[int] = Field(default=None, ge=1)


class Provider(BaseModel):
    """Immutable description of an external service."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    auth_type: AuthType
    category: str = "other"
    description: Optional[str] = None
    scopes: List[str] = Field(default_factory=list)
    scope_separator: str = " "
    endpoints: ProviderEndpoints = Field(default_factory=ProviderEndpoints)
    auth_params: Dict[str, str] = Field(default_factory=dict, description="Extra authorize query parameters")
    profile_mapping: ProfileMapping = Field(default_factory=ProfileMapping)
    api_key: Optional[ApiKeyConfig] = None
    rate_limit: RateLimit = Field(default_factory=RateLimit)
    icon_url: Optional[str] = None
    docs_url: Optional[str] = None


class CredentialBlob(BaseModel):
    """Encrypted credential material. Every secret field holds Fernet ciphertext."""

    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    api_key: Optional[str] = None
    api_secret: Optional[str] = None
    token_type: Optional[str] = None
    expires_at: Optional[datetime] = None


class Connection(BaseModel):
    id: str
    user_id: str
    provider_id: str
    auth_type: AuthType
    status: ConnectionStatus = ConnectionStatus.PENDING
    credentials: CredentialBlob = Field(default_factory=CredentialBlob)
    account_email: Optional[str] = None
    account_id: Optional[str] = None
    account_name: Optional[str] = None
    granted_scopes: List[str] = Field(default_factory=list)
    metadata: Dict[str, str] = Field(default_factory=dict)
    sync_enabled: bool = True
    last_synced_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None
    last_refreshed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    error_count: int = Field(default=0, ge=0)
    api_call_count: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    version: int = Field(default=1, ge=1)

    @field_validator("metadata", mode="before")
    @classmethod
    def _stringify_metadata(cls, value):
        if value is None:
            return {}
        return {str(k): str(v) for k, v in dict(value).items()}

    @property
    def has_refresh_token(self) -> bool:
        return self.credentials.refresh_token is not None


class OAuthState(BaseModel):
    state: str
    user_id: str
    provider_id: str
    connection_id: Optional[str] = None
    redirect_uri: str
    source: str = "web"
    created_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime
    consumed: bool = False
    consumed_at: Optional[datetime] = None


class HealthReport(BaseModel):
    connection_id: str
    status: ConnectionStatus
    is_healthy: bool
    can_sync: bool
    needs_reauth: bool
    last_error: Optional[str] = None


class HealthStats(BaseModel):
    total: int = 0
    active: int = 0
    expired: int = 0
    error: int = 0
    revoked: int = 0
    pending: int = 0
    needs_attention: int = 0


class TokenSet(BaseModel):
    """Plaintext tokens as returned by a provider. Never persisted as-is."""

    access_token: str
    refresh_token: Optional[str] = None
    token_type: Optional[str] = "Bearer"
    expires_at: Optional[datetime] = None
    scopes: List[str] = Field(default_factory=list)


class AccountProfile(BaseModel):
    account_id: Optional[str] = None
    email: Optional[str] = None
    name: Optional[str] = None
    extra: Dict[str, str] = Field(default_factory=dict)


class ExchangeResult(BaseModel):
    tokens: TokenSet
    profile: AccountProfile = Field(default_factory=AccountProfile)


class RefreshSummary(BaseModel):
    candidates: int = 0
    refreshed: int = 0
    skipped: int = 0
    failed_transient: int = 0
    revoked: int = 0
    escalated: int = 0
    expired: int = 0
    deferred: int = 0
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None


class ConnectionView(BaseModel):
    """List-row shape of a connection joined with its provider's display fields."""

    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)

    id: str
    provider_id: str
    name: str
    icon: Optional[str] = None
    account_email: Optional[str] = None
    status: ConnectionStatus
    connected_at: datetime
    last_synced_at: Optional[datetime] = None
    error: Optional[str] = None


class ConnectionResult(BaseModel):
    """Outcome of a connection manager operation."""

    success: bool
    connection: Optional[Connection] = None
    authorization_url: Optional[str] = None
    state: Optional[str] = None
    requires_action: Optional[str] = None
    error: Optional[str] = None
    code: Optional[str] = None
