from __future__ import annotations

from typing import Dict, Optional, Union

from fastapi import HTTPException, status


class HubError(Exception):
    """Base class for classified connection errors.

    Each subclass carries a stable machine-readable ``code`` and the HTTP status
    the API layer answers with.
    """

    code: str = "INTERNAL"
    http_status: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message: str = "Internal error"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class ProviderNotFound(HubError):
    code = "PROVIDER_NOT_FOUND"
    http_status = status.HTTP_404_NOT_FOUND

    def __init__(self, provider_id: str):
        self.provider_id = provider_id
        super().__init__(f"Provider '{provider_id}' not found")


class UnsupportedAuthType(HubError):
    code = "UNSUPPORTED_AUTH_TYPE"
    http_status = status.HTTP_400_BAD_REQUEST
    default_message = "Operation not supported for this provider's auth type"


class InvalidCredentials(HubError):
    code = "INVALID_CREDENTIALS"
    http_status = status.HTTP_400_BAD_REQUEST
    default_message = "Invalid API key"


class StateNotFound(HubError):
    code = "STATE_NOT_FOUND"
    http_status = status.HTTP_400_BAD_REQUEST
    default_message = "Invalid OAuth state"


class StateExpired(HubError):
    code = "STATE_EXPIRED"
    http_status = status.HTTP_400_BAD_REQUEST
    default_message = "OAuth state expired"


class StateReplay(HubError):
    code = "STATE_REPLAY"
    http_status = status.HTTP_409_CONFLICT
    default_message = "OAuth state already used"


class AuthError(HubError):
    """The provider rejected the credential (revoked grant, bad refresh token, 401/403)."""

    code = "AUTH_FAILED"
    http_status = status.HTTP_401_UNAUTHORIZED
    default_message = "Authorization with upstream service failed."


class TransientError(HubError):
    """Network failure, timeout or 5xx from the provider. Safe to retry later."""

    code = "UPSTREAM_ERROR"
    http_status = status.HTTP_502_BAD_GATEWAY
    default_message = "Upstream service error"


class RateLimited(TransientError):
    code = "RATE_LIMITED"
    http_status = status.HTTP_429_TOO_MANY_REQUESTS
    default_message = "Rate limit reached. Please retry later."

    def __init__(self, message: Optional[str] = None, retry_after: Optional[Union[int, float]] = None):
        self.retry_after = retry_after
        super().__init__(message)


class ConnectionNotFound(HubError):
    code = "CONNECTION_NOT_FOUND"
    http_status = status.HTTP_404_NOT_FOUND

    def __init__(self, connection_id: str):
        self.connection_id = connection_id
        super().__init__(f"Connection '{connection_id}' not found")


class InvalidTransition(HubError):
    code = "INVALID_TRANSITION"
    http_status = status.HTTP_409_CONFLICT


class StoreUnavailable(HubError):
    """The credential store itself failed. Aborts whole jobs."""

    code = "STORE_UNAVAILABLE"
    http_status = status.HTTP_503_SERVICE_UNAVAILABLE
    default_message = "Credential store unavailable"


_CLASSIFIED = (
    ProviderNotFound,
    UnsupportedAuthType,
    InvalidCredentials,
    StateNotFound,
    StateExpired,
    StateReplay,
    AuthError,
    TransientError,
    RateLimited,
    ConnectionNotFound,
    InvalidTransition,
    StoreUnavailable,
)
ERROR_HTTP_STATUS: Dict[str, int] = {cls.code: cls.http_status for cls in _CLASSIFIED}


# PUBLIC_INTERFACE
def http_status_for(code: Optional[str]) -> int:
    """HTTP status the API answers with for a classified error code."""
    return ERROR_HTTP_STATUS.get(code or "", status.HTTP_500_INTERNAL_SERVER_ERROR)


class UnauthorizedError(HTTPException):
    def __init__(self, message: str = "Unauthorized"):
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=message,
            headers={"WWW-Authenticate": "Bearer"},
        )


class MissingUserError(HTTPException):
    def __init__(self, header_name: str):
        super().__init__(status_code=422, detail=f"Missing {header_name} header")
