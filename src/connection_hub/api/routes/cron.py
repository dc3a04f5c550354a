from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header
from fastapi.responses import JSONResponse

from ...container import HubContainer
from ...core.errors import HubError, UnauthorizedError
from ...core.logging import get_logger
from ...core.response import job_payload
from ...core.security import verify_bearer
from ..deps import get_hub

logger = get_logger(__name__)


def require_cron_secret(
    authorization: Optional[str] = Header(default=None),
    hub: HubContainer = Depends(get_hub),
) -> None:
    """Reject the trigger unless it presents the configured CRON_SECRET as a bearer token."""
    if not verify_bearer(authorization, hub.settings.security.CRON_SECRET):
        logger.warning("Rejected unauthenticated refresh trigger")
        raise UnauthorizedError()


# PUBLIC_INTERFACE
def get_router() -> APIRouter:
    """Scheduled job triggers, called by an external timer."""
    router = APIRouter(prefix="/cron", tags=["Jobs"])

    @router.api_route(
        "/refresh-tokens",
        methods=["GET", "POST"],
        summary="Run token refresh",
        description="Refresh OAuth tokens expiring within the lookahead window. Requires 'Authorization: Bearer <CRON_SECRET>'.",
        dependencies=[Depends(require_cron_secret)],
        responses={401: {"description": "Unauthorized"}, 500: {"description": "Job failed"}},
    )
    async def refresh_tokens(hub: HubContainer = Depends(get_hub)):
        clock = hub.manager.clock
        try:
            summary = await hub.scheduler.run()
            purged = hub.manager.purge_expired_states()
        except Exception as ex:
            code = ex.code if isinstance(ex, HubError) else type(ex).__name__
            logger.exception("Token refresh job failed", extra={"code": code})
            return JSONResponse(
                status_code=500,
                content=job_payload(False, clock(), error=f"Token refresh failed: {code}"),
            )
        return job_payload(
            True,
            clock(),
            message="Token refresh completed",
            summary=summary.model_dump(mode="json"),
            purgedStates=purged,
        )

    return router
