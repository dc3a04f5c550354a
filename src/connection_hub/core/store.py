"""
Credential store port and its implementations.

- CredentialStore: the storage contract the connection manager and the refresh
  job run against. Single-record writes are atomic; ``compare_and_swap`` and
  ``consume_state`` are the only conditional writes.
- InMemoryCredentialStore: thread-safe, ephemeral; used for local development and tests.
- MongoCredentialStore: durable pymongo implementation.

Every successful write stores ``version = previous + 1``. Records handed out are
copies; mutating them never changes stored state.
"""
from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, FrozenSet, Iterator, List, Optional

from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError

from .errors import StoreUnavailable
from .logging import get_logger
from .models import AuthType, Connection, ConnectionStatus, OAuthState
from .security import ensure_aware

logger = get_logger(__name__)


class DuplicateConnection(ValueError):
    """Another non-REVOKED connection already holds this (user_id, provider_id)."""


def live_key(record: Connection) -> Optional[str]:
    """Uniqueness key of a live connection; REVOKED records have none."""
    if record.status == ConnectionStatus.REVOKED:
        return None
    return f"{record.user_id}:{record.provider_id}"


@dataclass(frozen=True)
class DueCriteria:
    """Selects OAuth connections whose access token expires before ``expires_before``."""

    expires_before: datetime
    auth_type: AuthType = AuthType.OAUTH2
    statuses: FrozenSet[ConnectionStatus] = field(
        default_factory=lambda: frozenset({ConnectionStatus.ACTIVE, ConnectionStatus.EXPIRED})
    )
    has_refresh_token: bool = True


class CredentialStore(ABC):
    """Durable, atomically-updatable storage for Connection and OAuthState records."""

    @abstractmethod
    def get(self, connection_id: str) -> Optional[Connection]:
        ...

    @abstractmethod
    def insert(self, record: Connection) -> Connection:
        """Store a new record.

        Raises ValueError if the id is taken and DuplicateConnection if the
        user already has a non-REVOKED connection for the provider.
        """

    @abstractmethod
    def upsert(self, record: Connection) -> Connection:
        """Unconditional write. Returns the stored record with its new version."""

    @abstractmethod
    def compare_and_swap(self, connection_id: str, expected_version: int, new_record: Connection) -> bool:
        """Write new_record only if the stored version still equals expected_version.

        Raises DuplicateConnection when the write would leave two live records for one user and provider.
        """

    @abstractmethod
    def list_due(self, criteria: DueCriteria) -> List[Connection]:
        ...

    @abstractmethod
    def list_expired(self, now: datetime) -> List[Connection]:
        """ACTIVE OAuth connections whose token expired and that cannot be refreshed."""

    @abstractmethod
    def find_active(self, user_id: str, provider_id: str) -> Optional[Connection]:
        """The user's non-REVOKED connection for a provider, if any."""

    @abstractmethod
    def list_for_user(self, user_id: str) -> List[Connection]:
        """All of a user's connections, newest first."""

    @abstractmethod
    def save_state(self, state: OAuthState) -> None:
        ...

    @abstractmethod
    def get_state(self, state: str) -> Optional[OAuthState]:
        ...

    @abstractmethod
    def consume_state(self, state: str, now: datetime) -> bool:
        """Flip consumed False -> True if the state exists, is unconsumed and unexpired."""

    @abstractmethod
    def purge_expired_states(self, now: datetime) -> int:
        ...


def _is_due(record: Connection, criteria: DueCriteria) -> bool:
    expires_at = record.credentials.expires_at
    if record.auth_type != criteria.auth_type or record.status not in criteria.statuses:
        return False
    if criteria.has_refresh_token and not record.has_refresh_token:
        return False
    return expires_at is not None and ensure_aware(expires_at) <= criteria.expires_before


class InMemoryCredentialStore(CredentialStore):
    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._connections: Dict[str, Connection] = {}
        self._states: Dict[str, OAuthState] = {}

    def _put(self, record: Connection, version: int) -> Connection:
        key = live_key(record)
        if key is not None:
            for other in self._connections.values():
                if other.id != record.id and live_key(other) == key:
                    raise DuplicateConnection(f"Connection '{other.id}' is already live for {key}")
        stored = record.model_copy(deep=True, update={"version": version})
        self._connections[record.id] = stored
        return stored.model_copy(deep=True)

    def get(self, connection_id: str) -> Optional[Connection]:
        with self._lock:
            record = self._connections.get(connection_id)
            return record.model_copy(deep=True) if record else None

    def insert(self, record: Connection) -> Connection:
        with self._lock:
            if record.id in self._connections:
                raise ValueError(f"Connection '{record.id}' already exists")
            return self._put(record, 1)

    def upsert(self, record: Connection) -> Connection:
        with self._lock:
            current = self._connections.get(record.id)
            return self._put(record, current.version + 1 if current else 1)

    def compare_and_swap(self, connection_id: str, expected_version: int, new_record: Connection) -> bool:
        with self._lock:
            current = self._connections.get(connection_id)
            if current is None or current.version != expected_version:
                return False
            self._put(new_record, expected_version + 1)
            return True

    def list_due(self, criteria: DueCriteria) -> List[Connection]:
        with self._lock:
            return [r.model_copy(deep=True) for r in self._connections.values() if _is_due(r, criteria)]

    def list_expired(self, now: datetime) -> List[Connection]:
        with self._lock:
            return [
                r.model_copy(deep=True)
                for r in self._connections.values()
                if r.auth_type == AuthType.OAUTH2
                and r.status == ConnectionStatus.ACTIVE
                and not r.has_refresh_token
                and r.credentials.expires_at is not None
                and ensure_aware(r.credentials.expires_at) <= now
            ]

    def find_active(self, user_id: str, provider_id: str) -> Optional[Connection]:
        with self._lock:
            for r in self._connections.values():
                if r.user_id == user_id and r.provider_id == provider_id and r.status != ConnectionStatus.REVOKED:
                    return r.model_copy(deep=True)
        return None

    def list_for_user(self, user_id: str) -> List[Connection]:
        with self._lock:
            records = [r.model_copy(deep=True) for r in self._connections.values() if r.user_id == user_id]
        return sorted(records, key=lambda r: r.created_at, reverse=True)

    def save_state(self, state: OAuthState) -> None:
        with self._lock:
            self._states[state.state] = state.model_copy(deep=True)

    def get_state(self, state: str) -> Optional[OAuthState]:
        with self._lock:
            found = self._states.get(state)
            return found.model_copy(deep=True) if found else None

    def consume_state(self, state: str, now: datetime) -> bool:
        with self._lock:
            found = self._states.get(state)
            if found is None or found.consumed or ensure_aware(found.expires_at) <= now:
                return False
            self._states[state] = found.model_copy(update={"consumed": True, "consumed_at": now})
            return True

    def purge_expired_states(self, now: datetime) -> int:
        with self._lock:
            expired = [k for k, s in self._states.items() if ensure_aware(s.expires_at) <= now]
            for key in expired:
                del self._states[key]
            return len(expired)


def _to_doc(record: Connection) -> Dict[str, Any]:
    doc = record.model_dump()
    doc["_id"] = record.id
    doc["status"] = record.status.value
    doc["auth_type"] = record.auth_type.value
    key = live_key(record)
    if key is not None:
        doc["live_key"] = key
    return doc


def _write_ops(doc: Dict[str, Any]) -> Dict[str, Any]:
    """$set the document; a REVOKED record also drops its live_key."""
    ops: Dict[str, Any] = {"$set": doc}
    if "live_key" not in doc:
        ops["$unset"] = {"live_key": ""}
    return ops


def _from_doc(doc: Optional[Dict[str, Any]]) -> Optional[Connection]:
    if not doc:
        return None
    doc = dict(doc)
    doc.pop("_id", None)
    doc.pop("live_key", None)
    return Connection(**doc)


def _is_live_key_violation(ex: DuplicateKeyError) -> bool:
    pattern = (ex.details or {}).get("keyPattern") or {}
    return "live_key" in pattern or "live_key" in str(ex)


class MongoCredentialStore(CredentialStore):
    """pymongo-backed store. Conditional writes are single-document filtered updates.

    A unique partial index on ``live_key`` keeps one non-REVOKED connection per
    user and provider (see ``db.ensure_indexes``).
    """

    def __init__(self, db: Database):
        self.connections = db["connections"]
        self.states = db["oauth_states"]

    @contextmanager
    def _guard(self, operation: str) -> Iterator[None]:
        try:
            yield
        except DuplicateKeyError as ex:
            if _is_live_key_violation(ex):
                raise DuplicateConnection(f"A live connection already exists ({operation})") from ex
            raise
        except PyMongoError as ex:
            logger.error("Credential store operation failed", extra={"operation": operation, "error": type(ex).__name__})
            raise StoreUnavailable(f"Credential store unavailable during {operation}") from ex

    def get(self, connection_id: str) -> Optional[Connection]:
        with self._guard("get"):
            return _from_doc(self.connections.find_one({"_id": connection_id}))

    def insert(self, record: Connection) -> Connection:
        stored = record.model_copy(update={"version": 1})
        try:
            with self._guard("insert"):
                self.connections.insert_one(_to_doc(stored))
        except DuplicateKeyError as ex:
            raise ValueError(f"Connection '{record.id}' already exists") from ex
        return stored

    def upsert(self, record: Connection) -> Connection:
        doc = _to_doc(record)
        doc.pop("version", None)
        ops = _write_ops(doc)
        ops["$inc"] = {"version": 1}
        with self._guard("upsert"):
            after = self.connections.find_one_and_update(
                {"_id": record.id},
                ops,
                upsert=True,
                return_document=ReturnDocument.AFTER,
            )
        return _from_doc(after)

    def compare_and_swap(self, connection_id: str, expected_version: int, new_record: Connection) -> bool:
        doc = _to_doc(new_record)
        doc["version"] = expected_version + 1
        with self._guard("compare_and_swap"):
            result = self.connections.update_one({"_id": connection_id, "version": expected_version}, _write_ops(doc))
        return result.matched_count == 1

    def list_due(self, criteria: DueCriteria) -> List[Connection]:
        query: Dict[str, Any] = {
            "auth_type": criteria.auth_type.value,
            "status": {"$in": sorted(s.value for s in criteria.statuses)},
            "credentials.expires_at": {"$ne": None, "$lte": criteria.expires_before},
        }
        if criteria.has_refresh_token:
            query["credentials.refresh_token"] = {"$ne": None}
        with self._guard("list_due"):
            return [_from_doc(d) for d in self.connections.find(query)]

    def list_expired(self, now: datetime) -> List[Connection]:
        query = {
            "auth_type": AuthType.OAUTH2.value,
            "status": ConnectionStatus.ACTIVE.value,
            "credentials.refresh_token": None,
            "credentials.expires_at": {"$ne": None, "$lte": now},
        }
        with self._guard("list_expired"):
            return [_from_doc(d) for d in self.connections.find(query)]

    def find_active(self, user_id: str, provider_id: str) -> Optional[Connection]:
        query = {
            "user_id": user_id,
            "provider_id": provider_id,
            "status": {"$ne": ConnectionStatus.REVOKED.value},
        }
        with self._guard("find_active"):
            return _from_doc(self.connections.find_one(query))

    def list_for_user(self, user_id: str) -> List[Connection]:
        with self._guard("list_for_user"):
            cursor = self.connections.find({"user_id": user_id}).sort("created_at", -1)
            return [_from_doc(d) for d in cursor]

    def save_state(self, state: OAuthState) -> None:
        doc = state.model_dump()
        doc["_id"] = state.state
        with self._guard("save_state"):
            self.states.replace_one({"_id": state.state}, doc, upsert=True)

    def get_state(self, state: str) -> Optional[OAuthState]:
        with self._guard("get_state"):
            doc = self.states.find_one({"_id": state})
        if not doc:
            return None
        doc.pop("_id", None)
        return OAuthState(**doc)

    def consume_state(self, state: str, now: datetime) -> bool:
        with self._guard("consume_state"):
            result = self.states.update_one(
                {"_id": state, "consumed": False, "expires_at": {"$gt": now}},
                {"$set": {"consumed": True, "consumed_at": now}},
            )
        return result.matched_count == 1

    def purge_expired_states(self, now: datetime) -> int:
        with self._guard("purge_expired_states"):
            result = self.states.delete_many({"expires_at": {"$lte": now}})
        return result.deleted_count
