from __future__ import annotations

from fastapi import Depends, Request

from ..container import HubContainer
from ..core.errors import MissingUserError
from ..core.observability import user_id_ctx


# PUBLIC_INTERFACE
def get_hub(request: Request) -> HubContainer:
    """Return the component container built by the app factory."""
    return request.app.state.hub


# PUBLIC_INTERFACE
def get_user_id(request: Request, hub: HubContainer = Depends(get_hub)) -> str:
    """Resolve the caller's user id from the trusted gateway header."""
    header_name = hub.settings.api.USER_HEADER_NAME
    user_id = (request.headers.get(header_name) or "").strip()
    if not user_id:
        raise MissingUserError(header_name)
    user_id_ctx.set(user_id)
    return user_id
