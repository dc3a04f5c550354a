"""
Batch refresh of OAuth access tokens.

A run selects connections whose tokens expire within the lookahead window and
refreshes them with bounded concurrency (a global cap plus a per-provider cap).
Each connection is isolated: its failure is classified, recorded on the record
and counted in the summary. Writes are compare-and-swap on the version read
just before the provider call, so overlapping runs resolve to one winner.
A store failure aborts the run.
"""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from ..connectors.registry import ProviderRegistry
from ..core.errors import AuthError, ConnectionNotFound, HubError, StoreUnavailable, TransientError
from ..core.lifecycle import can_transition
from ..core.logging import get_logger
from ..core.models import (
    Connection,
    ConnectionResult,
    ConnectionStatus,
    CredentialBlob,
    RefreshSummary,
    TokenSet,
)
from ..core.observability import increment_metric, observe_latency
from ..core.security import CredentialCipher, ensure_aware, utcnow
from ..core.settings import Settings
from ..core.store import CredentialStore, DueCriteria
from .health import HealthEvaluator

logger = get_logger(__name__)

REFRESHED = "refreshed"
SKIPPED = "skipped"
FAILED_TRANSIENT = "failed_transient"
REVOKED = "revoked"
ESCALATED = "escalated"
DEFERRED = "deferred"

_REFRESHABLE = frozenset({ConnectionStatus.ACTIVE, ConnectionStatus.EXPIRED})


@dataclass
class _Outcome:
    kind: str
    error: Optional[HubError] = None


class TokenRefreshScheduler:
    """Refreshes due OAuth connections. Invoked by an external timer."""

    def __init__(
        self,
        store: CredentialStore,
        registry: ProviderRegistry,
        cipher: CredentialCipher,
        lookahead: timedelta = timedelta(minutes=20),
        call_timeout: float = 30.0,
        max_concurrency: int = 8,
        per_provider_concurrency: int = 2,
        error_threshold: int = 5,
        soft_deadline: float = 600.0,
        clock: Callable[[], datetime] = utcnow,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.registry = registry
        self.cipher = cipher
        self.lookahead = lookahead
        self.call_timeout = call_timeout
        self.max_concurrency = max_concurrency
        self.per_provider_concurrency = per_provider_concurrency
        self.error_threshold = error_threshold
        self.soft_deadline = soft_deadline
        self.clock = clock
        self.monotonic = monotonic

    # PUBLIC_INTERFACE
    @classmethod
    def from_settings(
        cls,
        store: CredentialStore,
        registry: ProviderRegistry,
        cipher: CredentialCipher,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
    ) -> "TokenRefreshScheduler":
        """Build a scheduler using the refresh section of the settings."""
        cfg = settings.refresh
        return cls(
            store,
            registry,
            cipher,
            lookahead=timedelta(minutes=cfg.REFRESH_LOOKAHEAD_MINUTES),
            call_timeout=cfg.REFRESH_TIMEOUT_SECONDS,
            max_concurrency=cfg.REFRESH_MAX_CONCURRENCY,
            per_provider_concurrency=cfg.REFRESH_PER_PROVIDER_CONCURRENCY,
            error_threshold=cfg.REFRESH_ERROR_THRESHOLD,
            soft_deadline=cfg.REFRESH_SOFT_DEADLINE_SECONDS,
            clock=clock,
        )

    def _provider_limit(self, provider_id: str) -> int:
        provider = self.registry.get(provider_id)
        if provider is not None and provider.rate_limit.concurrent:
            return provider.rate_limit.concurrent
        return self.per_provider_concurrency

    # PUBLIC_INTERFACE
    async def run(self) -> RefreshSummary:
        """Run one refresh pass and return its summary. Raises StoreUnavailable on store failure."""
        started = self.clock()
        summary = RefreshSummary(started_at=started)
        t0 = self.monotonic()
        deadline = t0 + self.soft_deadline

        summary.expired = self._sweep_expired(started)
        candidates = self.store.list_due(DueCriteria(expires_before=started + self.lookahead))
        summary.candidates = len(candidates)
        logger.info("Token refresh run started", extra={"candidates": summary.candidates})

        pool = asyncio.Semaphore(self.max_concurrency)
        per_provider: Dict[str, asyncio.Semaphore] = {}

        async def worker(candidate: Connection) -> str:
            async with pool:
                if self.monotonic() >= deadline:
                    return DEFERRED
                sem = per_provider.setdefault(candidate.provider_id, asyncio.Semaphore(self._provider_limit(candidate.provider_id)))
                async with sem:
                    if self.monotonic() >= deadline:
                        return DEFERRED
                    outcome = await self._refresh_one(candidate.id, started + self.lookahead)
                    return outcome.kind

        results = await asyncio.gather(*(worker(c) for c in candidates), return_exceptions=True)
        for result in results:
            if isinstance(result, BaseException):
                if not isinstance(result, StoreUnavailable):
                    logger.error("Token refresh worker crashed", extra={"error": type(result).__name__})
                raise result
            setattr(summary, result, getattr(summary, result) + 1)

        summary.finished_at = self.clock()
        observe_latency("token_refresh_run_ms_sum", (self.monotonic() - t0) * 1000.0)
        logger.info("Token refresh run finished", extra=summary.model_dump(mode="json"))
        return summary

    def _sweep_expired(self, now: datetime) -> int:
        """Move ACTIVE connections with an expired, unrefreshable token to EXPIRED."""
        moved = 0
        for connection in self.store.list_expired(now):
            updated = connection.model_copy(
                update={"status": ConnectionStatus.EXPIRED, "error_message": "Access token expired", "updated_at": now}
            )
            if self.store.compare_and_swap(connection.id, connection.version, updated):
                moved += 1
        return moved

    # PUBLIC_INTERFACE
    async def refresh_connection(self, connection_id: str) -> ConnectionResult:
        """Refresh one connection on demand. ERROR connections are eligible too."""
        current = self.store.get(connection_id)
        if current is None:
            exc = ConnectionNotFound(connection_id)
            return ConnectionResult(success=False, error=exc.message, code=exc.code)
        if not current.has_refresh_token or current.status == ConnectionStatus.REVOKED:
            return ConnectionResult(
                success=False,
                connection=current,
                error="Re-authentication required",
                code=AuthError.code,
                requires_action="oauth",
            )
        outcome = await self._refresh_one(connection_id, None, allow_error_status=True)
        latest = self.store.get(connection_id)
        if outcome.kind == REFRESHED:
            return ConnectionResult(success=True, connection=latest)
        if outcome.kind == SKIPPED and outcome.error is None:
            # Someone else updated the record first
            return ConnectionResult(success=latest is not None and latest.status == ConnectionStatus.ACTIVE, connection=latest)
        error = outcome.error or TransientError("Token refresh failed")
        return ConnectionResult(
            success=False,
            connection=latest,
            error=error.message,
            code=error.code,
            requires_action="oauth" if outcome.kind == REVOKED else None,
        )

    async def _refresh_one(
        self,
        connection_id: str,
        due_before: Optional[datetime],
        allow_error_status: bool = False,
    ) -> _Outcome:
        current = self.store.get(connection_id)
        eligible = _REFRESHABLE | {ConnectionStatus.ERROR} if allow_error_status else _REFRESHABLE
        if current is None or current.status not in eligible or not current.has_refresh_token:
            return _Outcome(SKIPPED)
        expires_at = current.credentials.expires_at
        if due_before is not None and expires_at is not None and ensure_aware(expires_at) > due_before:
            # Already refreshed by an overlapping run
            return _Outcome(SKIPPED)

        adapter = self.registry.adapter_for(current.provider_id)
        refresh_token = self.cipher.decrypt(current.credentials.refresh_token)
        if adapter is None:
            logger.warning("No adapter for provider; skipping refresh", extra={"provider": current.provider_id})
            return _Outcome(SKIPPED)
        if refresh_token is None:
            return self._record_failure(current, TransientError("Stored refresh token could not be decrypted"))

        try:
            tokens = await asyncio.wait_for(adapter.refresh(refresh_token), timeout=self.call_timeout)
        except asyncio.TimeoutError:
            return self._record_failure(current, TransientError(f"Refresh timed out after {self.call_timeout:g}s"))
        except AuthError as ex:
            return self._record_revoked(current, ex)
        except HubError as ex:
            return self._record_failure(current, ex)
        except Exception as ex:
            logger.exception("Unexpected refresh failure", extra={"connection_id": current.id, "provider": current.provider_id})
            return self._record_failure(current, TransientError(f"Unexpected refresh failure: {type(ex).__name__}"))
        return self._record_success(current, tokens)

    def _record_success(self, current: Connection, tokens: TokenSet) -> _Outcome:
        now = self.clock()
        updated = current.model_copy(
            update={
                "status": ConnectionStatus.ACTIVE,
                "credentials": CredentialBlob(
                    access_token=self.cipher.encrypt(tokens.access_token),
                    refresh_token=self.cipher.encrypt(tokens.refresh_token) if tokens.refresh_token else current.credentials.refresh_token,
                    token_type=tokens.token_type,
                    expires_at=tokens.expires_at,
                ),
                "granted_scopes": tokens.scopes or current.granted_scopes,
                "error_count": 0,
                "error_message": None,
                "last_refreshed_at": now,
                "updated_at": now,
            }
        )
        if not self.store.compare_and_swap(current.id, current.version, updated):
            logger.debug("Refresh result discarded; record changed concurrently", extra={"connection_id": current.id})
            return _Outcome(SKIPPED)
        increment_metric("token_refresh_total", 1.0)
        logger.info("Token refreshed", extra={"connection_id": current.id, "provider": current.provider_id})
        return _Outcome(REFRESHED)

    def _record_revoked(self, current: Connection, error: AuthError) -> _Outcome:
        updated = current.model_copy(
            update={
                "status": ConnectionStatus.REVOKED,
                "error_message": error.message,
                "updated_at": self.clock(),
            }
        )
        if not self.store.compare_and_swap(current.id, current.version, updated):
            logger.debug("Revocation discarded; record changed concurrently", extra={"connection_id": current.id})
            return _Outcome(SKIPPED)
        increment_metric("token_refresh_revoked_total", 1.0)
        logger.warning("Refresh token rejected; connection revoked", extra={"connection_id": current.id, "provider": current.provider_id})
        return _Outcome(REVOKED, error)

    def _record_failure(self, current: Connection, error: HubError) -> _Outcome:
        error_count = current.error_count + 1
        escalate = error_count > self.error_threshold and current.status != ConnectionStatus.ERROR
        status = ConnectionStatus.ERROR if escalate and can_transition(current.status, ConnectionStatus.ERROR) else current.status
        updated = current.model_copy(
            update={
                "status": status,
                "error_count": error_count,
                "error_message": error.message,
                "updated_at": self.clock(),
            }
        )
        if not self.store.compare_and_swap(current.id, current.version, updated):
            logger.debug("Failure record discarded; record changed concurrently", extra={"connection_id": current.id})
            return _Outcome(SKIPPED)
        increment_metric("token_refresh_failed_total", 1.0)
        if status == ConnectionStatus.ERROR and escalate:
            report = HealthEvaluator.evaluate(updated)
            logger.warning("Connection escalated to ERROR", extra={"provider": current.provider_id, **report.model_dump(mode="json")})
            return _Outcome(ESCALATED, error)
        logger.info(
            "Token refresh failed",
            extra={"connection_id": current.id, "provider": current.provider_id, "code": error.code, "error_count": error_count},
        )
        return _Outcome(FAILED_TRANSIENT, error)
