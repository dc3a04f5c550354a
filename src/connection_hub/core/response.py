from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Mapping, Optional, Tuple, Union

from .errors import AuthError, HubError, RateLimited, TransientError


# PUBLIC_INTERFACE
def ok(**fields: Any) -> Dict[str, Any]:
    """Produce a standardized success payload: ``{"success": true, ...fields}``."""
    return {"success": True, **fields}


# PUBLIC_INTERFACE
def error_payload(
    code: str,
    message: str,
    retry_after: Optional[Union[int, float]] = None,
    details: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Produce a standardized error payload.

    - status: always "error"
    - success: always False
    - code: machine-readable error code (e.g., PROVIDER_NOT_FOUND, STATE_REPLAY, RATE_LIMITED)
    - error: human-readable message
    - retry_after: optional seconds to wait (if rate limited)
    - details: optional structured extra info (safe; should not include secrets)
    """
    payload: Dict[str, Any] = {
        "status": "error",
        "success": False,
        "code": code,
        "error": message,
    }
    if retry_after is not None:
        payload["retry_after"] = retry_after
    if details:
        payload["details"] = details
    return payload


# PUBLIC_INTERFACE
def hub_error_payload(exc: HubError) -> Dict[str, Any]:
    """Render a classified error as the standard error payload."""
    return error_payload(code=exc.code, message=exc.message, retry_after=getattr(exc, "retry_after", None))


# PUBLIC_INTERFACE
def job_payload(success: bool, timestamp: datetime, **fields: Any) -> Dict[str, Any]:
    """Payload for the scheduled refresh trigger: ``{success, timestamp, ...}``."""
    return {"success": success, "timestamp": timestamp.isoformat(), **fields}


def _retry_after(headers: Optional[Mapping[str, Any]]) -> Optional[float]:
    if not headers:
        return None
    # Handle common header keys
    for k in ("retry-after", "Retry-After", "x-rate-limit-reset", "X-Rate-Limit-Reset"):
        if k in headers:
            try:
                # May be seconds or a date; only seconds are honored
                return float(headers[k])
            except (TypeError, ValueError):
                return None
    return None


# PUBLIC_INTERFACE
def classify_upstream_status(
    upstream_status: int,
    headers: Optional[Mapping[str, Any]] = None,
    default_message: str = "Upstream service error",
) -> Tuple[bool, HubError]:
    """Map an upstream HTTP error status to a classified error.

    Returns ``(is_auth_failure, error)``. 401/403 are authorization failures,
    429 is rate limiting, everything else is transient.
    """
    if upstream_status in (401, 403):
        return True, AuthError(f"{default_message} (HTTP {upstream_status})")
    if upstream_status == 429:
        return False, RateLimited(retry_after=_retry_after(headers))
    return False, TransientError(f"{default_message} (HTTP {upstream_status})")
