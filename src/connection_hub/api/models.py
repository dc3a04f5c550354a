from __future__ import annotations

from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)


class InstallRequest(_CamelModel):
    """Body of POST /connections/install."""
    provider_id: str = Field(..., description="Provider id (e.g., 'alpaca', 'github')")
    redirect_uri: Optional[str] = Field(default=None, description="OAuth redirect URI override")
    metadata: Dict[str, str] = Field(default_factory=dict, description="String metadata stored on the connection")
    source: str = Field(default="web", description="Where the install was started from")
    api_key: Optional[str] = Field(default=None, description="API key for API-key providers")
    api_secret: Optional[str] = Field(default=None, description="API secret, if the provider uses one")


class ConfigureApiKeyRequest(_CamelModel):
    """Body of POST /connections/configure-apikey."""
    provider_id: str = Field(..., description="Provider id")
    api_key: str = Field(..., min_length=1, description="API key to validate and store")
    api_secret: Optional[str] = Field(default=None, description="API secret, if the provider uses one")


class ErrorResponse(BaseModel):
    """Standardized error payload for all endpoints."""
    status: str = Field("error", description="Error status, always 'error'")
    success: bool = Field(False, description="Always false")
    code: str = Field(..., description="Machine-readable error code (e.g., PROVIDER_NOT_FOUND, STATE_REPLAY, RATE_LIMITED)")
    error: str = Field(..., description="Human-readable description of the error")
    retry_after: Optional[float] = Field(default=None, description="Seconds to wait before retrying (for rate limiting)")


class ProviderInfo(_CamelModel):
    """Public provider descriptor for GET /providers."""
    id: str
    name: str
    auth_type: str
    category: str
    description: Optional[str] = None
    scopes: List[str] = Field(default_factory=list)
    icon: Optional[str] = None
    docs_url: Optional[str] = None
