import asyncio
from datetime import timedelta

import pytest

from connection_hub.core.errors import AuthError, StoreUnavailable, TransientError
from connection_hub.core.models import ConnectionStatus
from connection_hub.core.settings import Settings
from connection_hub.services.token_refresh import TokenRefreshScheduler


@pytest.mark.asyncio
async def test_due_connection_is_refreshed(scheduler, seed, store, cipher, clock):
    connection = seed(expires_in=timedelta(minutes=5))
    summary = await scheduler.run()
    assert summary.candidates == 1
    assert summary.refreshed == 1
    stored = store.get(connection.id)
    assert stored.status == ConnectionStatus.ACTIVE
    assert stored.version == connection.version + 1
    assert stored.last_refreshed_at == clock()
    assert stored.credentials.expires_at == clock() + timedelta(hours=1)
    assert cipher.decrypt(stored.credentials.access_token) == "at-refreshed-1"
    assert cipher.decrypt(stored.credentials.refresh_token) == "rt-rotated"


@pytest.mark.asyncio
async def test_non_rotating_provider_keeps_refresh_token(scheduler, seed, store, cipher, adapters):
    adapters["alpaca"].rotate_refresh_token = False
    connection = seed()
    await scheduler.run()
    assert cipher.decrypt(store.get(connection.id).credentials.refresh_token) == "rt-0"


@pytest.mark.asyncio
async def test_connection_outside_lookahead_is_untouched(store, registry, cipher, clock, seed, adapters):
    scheduler = TokenRefreshScheduler(store, registry, cipher, lookahead=timedelta(minutes=15), clock=clock)
    connection = seed(expires_in=timedelta(minutes=20))
    summary = await scheduler.run()
    assert summary.candidates == 0
    assert store.get(connection.id).version == connection.version
    assert adapters["alpaca"].refresh_calls == []


@pytest.mark.asyncio
async def test_rejected_refresh_token_revokes_connection(scheduler, seed, store, adapters):
    adapters["alpaca"].refresh_error = AuthError("invalid_grant")
    connection = seed()
    summary = await scheduler.run()
    assert summary.revoked == 1
    stored = store.get(connection.id)
    assert stored.status == ConnectionStatus.REVOKED
    assert stored.error_message == "invalid_grant"

    again = await scheduler.run()
    assert again.candidates == 0
    assert adapters["alpaca"].refresh_calls == ["rt-0"]


@pytest.mark.asyncio
async def test_overlapping_runs_produce_one_write(scheduler, seed, store):
    connection = seed()
    first, second = await asyncio.gather(scheduler.run(), scheduler.run())
    assert first.refreshed + second.refreshed == 1
    assert first.skipped + second.skipped == 1
    assert store.get(connection.id).version == connection.version + 1


@pytest.mark.asyncio
async def test_transient_failure_counts_errors(scheduler, seed, store, adapters):
    adapters["alpaca"].refresh_error = TransientError("provider down")
    connection = seed()
    summary = await scheduler.run()
    assert summary.failed_transient == 1
    stored = store.get(connection.id)
    assert stored.status == ConnectionStatus.ACTIVE
    assert stored.error_count == 1
    assert stored.error_message == "provider down"


@pytest.mark.asyncio
async def test_repeated_failures_escalate_to_error(scheduler, seed, store, adapters):
    adapters["alpaca"].refresh_error = TransientError("provider down")
    connection = seed(error_count=5)
    summary = await scheduler.run()
    assert summary.escalated == 1
    stored = store.get(connection.id)
    assert stored.status == ConnectionStatus.ERROR
    assert stored.error_count == 6
    assert (await scheduler.run()).candidates == 0


@pytest.mark.asyncio
async def test_slow_provider_times_out(store, registry, cipher, clock, seed, adapters):
    adapters["alpaca"].refresh_delay = 1.0
    scheduler = TokenRefreshScheduler(store, registry, cipher, call_timeout=0.01, clock=clock)
    connection = seed()
    summary = await scheduler.run()
    assert summary.failed_transient == 1
    assert "timed out" in store.get(connection.id).error_message


@pytest.mark.asyncio
async def test_unexpected_adapter_exception_is_isolated(scheduler, seed, store, adapters):
    adapters["alpaca"].refresh_error = RuntimeError("boom")
    failing = seed()
    healthy = seed(provider_id="github", user_id="u2")
    summary = await scheduler.run()
    assert summary.failed_transient == 1
    assert summary.refreshed == 1
    assert store.get(failing.id).error_count == 1
    assert store.get(healthy.id).last_refreshed_at is not None


@pytest.mark.asyncio
async def test_past_deadline_candidates_are_deferred(store, registry, cipher, clock, seed, adapters):
    scheduler = TokenRefreshScheduler(store, registry, cipher, soft_deadline=0.0, clock=clock)
    seed()
    seed(user_id="u2")
    summary = await scheduler.run()
    assert summary.deferred == 2
    assert adapters["alpaca"].refresh_calls == []


@pytest.mark.asyncio
async def test_per_provider_concurrency_is_bounded(store, registry, cipher, clock, seed, adapters):
    in_flight = 0
    peak = 0

    async def tracking_refresh(refresh_token):
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0.01)
        in_flight -= 1
        return await original(refresh_token)

    original = adapters["alpaca"].refresh
    adapters["alpaca"].refresh = tracking_refresh
    scheduler = TokenRefreshScheduler(store, registry, cipher, per_provider_concurrency=2, clock=clock)
    for i in range(5):
        seed(user_id=f"u{i}")
    summary = await scheduler.run()
    assert summary.refreshed == 5
    assert peak == 2


@pytest.mark.asyncio
async def test_store_failure_aborts_run(scheduler, seed, store, monkeypatch):
    seed()

    def unavailable(*args, **kwargs):
        raise StoreUnavailable("mongo down")

    monkeypatch.setattr(store, "compare_and_swap", unavailable)
    with pytest.raises(StoreUnavailable):
        await scheduler.run()


@pytest.mark.asyncio
async def test_expired_unrefreshable_tokens_are_swept(scheduler, seed, store):
    connection = seed(refresh_token=None, expires_in=timedelta(minutes=-1))
    summary = await scheduler.run()
    assert summary.expired == 1
    assert summary.candidates == 0
    assert store.get(connection.id).status == ConnectionStatus.EXPIRED


@pytest.mark.asyncio
async def test_expired_refreshable_connection_returns_to_active(scheduler, seed, store):
    connection = seed(status=ConnectionStatus.EXPIRED, expires_in=timedelta(minutes=-30))
    summary = await scheduler.run()
    assert summary.refreshed == 1
    assert store.get(connection.id).status == ConnectionStatus.ACTIVE


@pytest.mark.asyncio
async def test_refresh_connection_recovers_error_status(scheduler, seed, store):
    connection = seed(status=ConnectionStatus.ERROR, error_count=6, expires_in=timedelta(hours=2))
    result = await scheduler.refresh_connection(connection.id)
    assert result.success
    stored = store.get(connection.id)
    assert stored.status == ConnectionStatus.ACTIVE
    assert stored.error_count == 0


@pytest.mark.asyncio
async def test_refresh_connection_failures(scheduler, seed, adapters):
    missing = await scheduler.refresh_connection("nope")
    assert missing.code == "CONNECTION_NOT_FOUND"

    no_token = seed(refresh_token=None)
    result = await scheduler.refresh_connection(no_token.id)
    assert result.code == "AUTH_FAILED"
    assert result.requires_action == "oauth"

    adapters["github"].refresh_error = AuthError("invalid_grant")
    rejected = seed(provider_id="github", user_id="u2")
    result = await scheduler.refresh_connection(rejected.id)
    assert not result.success
    assert result.code == "AUTH_FAILED"
    assert result.requires_action == "oauth"
    assert result.connection.status == ConnectionStatus.REVOKED


def test_from_settings():
    settings = Settings()
    scheduler = TokenRefreshScheduler.from_settings(None, None, None, settings)
    assert scheduler.lookahead == timedelta(minutes=settings.refresh.REFRESH_LOOKAHEAD_MINUTES)
    assert scheduler.error_threshold == settings.refresh.REFRESH_ERROR_THRESHOLD
