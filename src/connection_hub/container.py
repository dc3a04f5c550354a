from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from .connectors.catalog import build_default_registry
from .connectors.registry import ProviderRegistry
from .core.db import ensure_indexes, get_db
from .core.logging import get_logger
from .core.security import CredentialCipher, utcnow
from .core.settings import Settings
from .core.store import CredentialStore, InMemoryCredentialStore, MongoCredentialStore
from .services.connection_manager import ConnectionManager
from .services.health import HealthEvaluator
from .services.token_refresh import TokenRefreshScheduler

logger = get_logger(__name__)


@dataclass
class HubContainer:
    """Explicitly constructed components shared by request handlers and jobs."""

    settings: Settings
    store: CredentialStore
    registry: ProviderRegistry
    cipher: CredentialCipher
    manager: ConnectionManager
    scheduler: TokenRefreshScheduler
    health: HealthEvaluator


# PUBLIC_INTERFACE
def build_store(settings: Settings) -> CredentialStore:
    """Create the credential store selected by STORE_BACKEND."""
    if settings.store.STORE_BACKEND == "mongo":
        db = get_db(settings)
        ensure_indexes(db)
        return MongoCredentialStore(db)
    logger.warning("Using in-memory credential store; data is not persisted")
    return InMemoryCredentialStore()


# PUBLIC_INTERFACE
def build_container(
    settings: Settings,
    store: Optional[CredentialStore] = None,
    registry: Optional[ProviderRegistry] = None,
    clock: Callable[[], datetime] = utcnow,
) -> HubContainer:
    """Wire settings, store, registry, manager and scheduler together."""
    store = store if store is not None else build_store(settings)
    registry = registry if registry is not None else build_default_registry(settings)
    cipher = CredentialCipher(settings.security.ENCRYPTION_KEY)
    manager = ConnectionManager(
        registry,
        store,
        cipher,
        default_redirect_uri=settings.default_redirect_uri(),
        state_ttl_seconds=settings.oauth.OAUTH_STATE_TTL_SECONDS,
        clock=clock,
    )
    scheduler = TokenRefreshScheduler.from_settings(store, registry, cipher, settings, clock=clock)
    return HubContainer(
        settings=settings,
        store=store,
        registry=registry,
        cipher=cipher,
        manager=manager,
        scheduler=scheduler,
        health=HealthEvaluator(),
    )
