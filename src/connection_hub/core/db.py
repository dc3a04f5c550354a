from __future__ import annotations

from typing import Dict, Optional

from pymongo import ASCENDING, MongoClient
from pymongo.database import Database

from .logging import get_logger
from .settings import Settings, get_settings

logger = get_logger(__name__)

_clients: Dict[str, MongoClient] = {}


# PUBLIC_INTERFACE
def get_mongo_client(settings: Optional[Settings] = None) -> MongoClient:
    """Return a process-wide MongoClient for the configured URL."""
    settings = settings or get_settings()
    url = settings.store.MONGODB_URL
    client = _clients.get(url)
    if client is None:
        logger.info("Connecting to MongoDB...")
        client = MongoClient(url, tz_aware=True)
        _clients[url] = client
    return client


# PUBLIC_INTERFACE
def get_db(settings: Optional[Settings] = None) -> Database:
    """Get the configured MongoDB database handle."""
    settings = settings or get_settings()
    return get_mongo_client(settings)[settings.store.MONGODB_DB]


# PUBLIC_INTERFACE
def ensure_indexes(db: Database) -> None:
    """Create the indexes the credential store queries rely on.

    OAuth states carry a TTL index so unconsumed states are evicted by the server.
    The unique ``live_key`` index backs the one-live-connection rule.
    """
    connections = db["connections"]
    connections.create_index([("user_id", ASCENDING), ("provider_id", ASCENDING)])
    connections.create_index(
        [("auth_type", ASCENDING), ("status", ASCENDING), ("credentials.expires_at", ASCENDING)]
    )
    # One non-REVOKED connection per (user_id, provider_id); REVOKED records carry no live_key
    connections.create_index(
        "live_key",
        unique=True,
        partialFilterExpression={"live_key": {"$exists": True}},
    )
    db["oauth_states"].create_index("expires_at", expireAfterSeconds=0)
