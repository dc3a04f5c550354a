from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query

from ...container import HubContainer
from ...core.models import AuthType
from ...core.response import ok
from ..deps import get_hub
from ..models import ProviderInfo


# PUBLIC_INTERFACE
def get_router() -> APIRouter:
    """Provider catalog endpoints."""
    router = APIRouter(prefix="/providers", tags=["Providers"])

    @router.get(
        "",
        summary="List providers",
        description="List registered providers, optionally filtered by search text, category or auth type.",
    )
    def list_providers(
        q: Optional[str] = Query(default=None, description="Case-insensitive match on id, name or category"),
        category: Optional[str] = Query(default=None, description="Only providers in this category"),
        auth_type: Optional[AuthType] = Query(default=None, alias="authType", description="oauth2 or apikey"),
        hub: HubContainer = Depends(get_hub),
    ):
        registry = hub.registry
        providers = registry.search(q) if q else registry.list()
        if category:
            providers = [p for p in providers if p.category == category]
        if auth_type:
            providers = [p for p in providers if p.auth_type == auth_type]
        items = [
            ProviderInfo(
                id=p.id,
                name=p.name,
                auth_type=p.auth_type.value,
                category=p.category,
                description=p.description,
                scopes=p.scopes,
                icon=p.icon_url,
                docs_url=p.docs_url,
            ).model_dump(by_alias=True)
            for p in providers
        ]
        return ok(providers=items, count=len(items), categories=registry.categories())

    return router
