from __future__ import annotations

from datetime import datetime
from typing import Callable, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from ..connectors.registry import ProviderRegistry
from ..container import build_container
from ..core.errors import HubError
from ..core.logging import get_logger
from ..core.observability import RequestContextMiddleware, metrics_snapshot
from ..core.response import hub_error_payload, ok
from ..core.security import utcnow
from ..core.settings import Settings, get_settings
from ..core.store import CredentialStore
from .routes import connections, cron, providers

logger = get_logger(__name__)

openapi_tags = [
    {"name": "Connections", "description": "Install, authorize, list and revoke external account connections"},
    {"name": "Providers", "description": "Catalog of supported providers"},
    {"name": "Jobs", "description": "Externally triggered background jobs"},
    {"name": "Service", "description": "Health and metrics"},
]


# PUBLIC_INTERFACE
def create_app(
    settings: Optional[Settings] = None,
    store: Optional[CredentialStore] = None,
    registry: Optional[ProviderRegistry] = None,
    clock: Callable[[], datetime] = utcnow,
) -> FastAPI:
    """Build the FastAPI application with its component container on ``app.state.hub``."""
    settings = settings or get_settings()
    app = FastAPI(
        title=settings.api.API_TITLE,
        description=settings.api.API_DESCRIPTION,
        version=settings.api.API_VERSION,
        openapi_tags=openapi_tags,
    )
    app.state.hub = build_container(settings, store=store, registry=registry, clock=clock)

    # CORS: allow configured origins/methods/headers; defaults are permissive but can be tightened via env
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.api.CORS_ALLOW_ORIGINS,
        allow_credentials=True,
        allow_methods=settings.api.CORS_ALLOW_METHODS,
        allow_headers=settings.api.CORS_ALLOW_HEADERS,
    )
    # Correlation ID / request context middleware
    app.add_middleware(RequestContextMiddleware, user_header_name=settings.api.USER_HEADER_NAME, logger=logger)

    @app.exception_handler(HubError)
    async def hub_error_handler(request: Request, exc: HubError):
        return JSONResponse(status_code=exc.http_status, content=hub_error_payload(exc))

    @app.get("/", summary="Health Check", tags=["Service"])
    def health_check():
        """Health check endpoint that returns service status and environment."""
        return ok(message="Healthy", env=settings.api.ENV)

    @app.get("/_metrics", summary="Metrics (basic)", tags=["Service"])
    def metrics():
        """Return basic service metrics (process-local) for quick visibility."""
        return ok(metrics=metrics_snapshot())

    app.include_router(connections.get_router())
    app.include_router(providers.get_router())
    app.include_router(cron.get_router())
    return app
