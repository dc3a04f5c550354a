from __future__ import annotations

from typing import Any, Dict, Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse, RedirectResponse

from ...container import HubContainer
from ...core.errors import http_status_for
from ...core.logging import get_logger
from ...core.models import AuthType, Connection, ConnectionResult
from ...core.response import error_payload, ok
from ...services.connection_manager import InstallOptions
from ..deps import get_hub, get_user_id
from ..models import ConfigureApiKeyRequest, ErrorResponse, InstallRequest

logger = get_logger(__name__)


def public_connection(connection: Optional[Connection]) -> Optional[Dict[str, Any]]:
    """Serialize a connection without its credential blob."""
    if connection is None:
        return None
    return connection.model_dump(mode="json", exclude={"credentials"})


def failure_response(result: ConnectionResult) -> JSONResponse:
    details = {"requires_action": result.requires_action} if result.requires_action else None
    return JSONResponse(
        status_code=http_status_for(result.code),
        content=error_payload(code=result.code or "INTERNAL", message=result.error or "Request failed", details=details),
    )


def _ui_redirect(base_url: str, **params: str) -> RedirectResponse:
    separator = "&" if "?" in base_url else "?"
    return RedirectResponse(url=f"{base_url}{separator}{urlencode(params)}", status_code=307)


# PUBLIC_INTERFACE
def get_router() -> APIRouter:
    """Connection lifecycle endpoints."""
    router = APIRouter(prefix="/connections", tags=["Connections"])
    error_responses = {400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}, 422: {"description": "Validation Error"}}

    @router.post(
        "/install",
        summary="Install a connection",
        description="Start an OAuth flow (returns authorizationUrl and state) or configure an API-key provider when apiKey is supplied.",
        responses=error_responses,
    )
    async def install(body: InstallRequest, user_id: str = Depends(get_user_id), hub: HubContainer = Depends(get_hub)):
        options = InstallOptions(
            redirect_uri=body.redirect_uri,
            metadata=body.metadata,
            source=body.source,
            api_key=body.api_key,
            api_secret=body.api_secret,
        )
        result = await hub.manager.install_connection(user_id, body.provider_id, options)
        if not result.success:
            return failure_response(result)
        if result.authorization_url:
            return ok(
                authorizationUrl=result.authorization_url,
                state=result.state,
                connectionId=result.connection.id if result.connection else None,
            )
        return ok(connection=public_connection(result.connection))

    @router.post(
        "/configure-apikey",
        summary="Configure an API key",
        description="Validate an API key with the provider and store it encrypted on an ACTIVE connection.",
        responses=error_responses,
    )
    async def configure_apikey(body: ConfigureApiKeyRequest, user_id: str = Depends(get_user_id), hub: HubContainer = Depends(get_hub)):
        result = await hub.manager.configure_api_key(user_id, body.provider_id, body.api_key, body.api_secret)
        if not result.success:
            return failure_response(result)
        return ok(connection=public_connection(result.connection))

    @router.get(
        "/oauth/callback",
        summary="OAuth callback",
        description="Complete the OAuth flow and redirect the browser to the connections page with success=connected or error=<reason>.",
        status_code=307,
    )
    async def oauth_callback(
        code: Optional[str] = Query(default=None, description="Authorization code"),
        state: Optional[str] = Query(default=None, description="State issued at install time"),
        error: Optional[str] = Query(default=None, description="Error reported by the provider"),
        hub: HubContainer = Depends(get_hub),
    ):
        ui_url = hub.settings.api.CONNECTIONS_UI_URL
        if error:
            logger.info("Provider returned an OAuth error", extra={"error": error})
            return _ui_redirect(ui_url, error=error)
        if not code or not state:
            return _ui_redirect(ui_url, error="missing_parameters")
        result = await hub.manager.handle_oauth_callback(code, state)
        if not result.success:
            return _ui_redirect(ui_url, error=(result.code or "callback_failed").lower())
        return _ui_redirect(ui_url, success="connected")

    @router.get(
        "",
        summary="List connections",
        description="List the caller's connections joined with provider display fields, newest first.",
    )
    def list_connections(user_id: str = Depends(get_user_id), hub: HubContainer = Depends(get_hub)):
        views = [v.model_dump(mode="json", by_alias=True) for v in hub.manager.list_connection_views(user_id)]
        return {"connections": views, "count": len(views)}

    @router.get(
        "/health",
        summary="Connection health",
        description="Health report per connection plus aggregate stats.",
    )
    def connection_health(user_id: str = Depends(get_user_id), hub: HubContainer = Depends(get_hub)):
        connections = hub.manager.get_user_connections(user_id)
        reports = [hub.health.evaluate(c).model_dump(mode="json") for c in connections]
        return ok(reports=reports, stats=hub.health.summarize(connections).model_dump())

    @router.post(
        "/{connection_id}/revoke",
        summary="Revoke a connection",
        responses=error_responses,
    )
    async def revoke(connection_id: str, user_id: str = Depends(get_user_id), hub: HubContainer = Depends(get_hub)):
        result = await hub.manager.revoke_connection(user_id, connection_id)
        if not result.success:
            return failure_response(result)
        return ok(connection=public_connection(result.connection))

    @router.post(
        "/{connection_id}/reconnect",
        summary="Reconnect a connection",
        description="Refresh tokens when possible; otherwise start a new authorization.",
        responses=error_responses,
    )
    async def reconnect(connection_id: str, user_id: str = Depends(get_user_id), hub: HubContainer = Depends(get_hub)):
        connection = hub.manager.get_owned(user_id, connection_id)
        if connection.auth_type == AuthType.APIKEY:
            return ok(success=False, requiresAuth=True, requiresAction="api_key", message="Re-enter the API key to reconnect")
        if connection.has_refresh_token:
            refreshed = await hub.scheduler.refresh_connection(connection_id)
            if refreshed.success:
                return ok(message="Connection reconnected successfully", connection=public_connection(refreshed.connection))
        install = await hub.manager.install_connection(user_id, connection.provider_id)
        if not install.success:
            return failure_response(install)
        if install.authorization_url:
            return ok(
                success=False,
                requiresAuth=True,
                message="Re-authentication required",
                authorizationUrl=install.authorization_url,
                state=install.state,
            )
        return ok(
            success=False,
            requiresAuth=False,
            message="Token refresh failed; try again later",
            connection=public_connection(install.connection),
        )

    return router
