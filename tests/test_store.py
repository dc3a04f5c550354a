from datetime import timedelta

import pytest

from connection_hub.core.models import ConnectionStatus, OAuthState
from connection_hub.core.store import DueCriteria, DuplicateConnection


def test_insert_get_returns_copies(store, seed):
    record = seed()
    assert record.version == 1
    fetched = store.get(record.id)
    fetched.error_count = 99
    assert store.get(record.id).error_count == 0


def test_insert_rejects_duplicate_ids(store, seed):
    record = seed()
    with pytest.raises(ValueError):
        store.insert(record)


def test_upsert_bumps_version(store, seed):
    record = seed()
    stored = store.upsert(record.model_copy(update={"error_count": 1}))
    assert stored.version == 2
    assert store.get(record.id).error_count == 1


def test_compare_and_swap_only_matches_expected_version(store, seed):
    record = seed()
    changed = record.model_copy(update={"error_count": 3})
    assert store.compare_and_swap(record.id, 1, changed) is True
    assert store.get(record.id).version == 2
    assert store.compare_and_swap(record.id, 1, changed.model_copy(update={"error_count": 4})) is False
    assert store.get(record.id).error_count == 3
    assert store.compare_and_swap("missing", 1, changed) is False


def test_list_due_filters(store, seed, clock):
    due = seed(expires_in=timedelta(minutes=5))
    seed(expires_in=timedelta(minutes=30), user_id="u2")
    seed(refresh_token=None, user_id="u3")
    seed(status=ConnectionStatus.REVOKED, user_id="u4")
    seed(status=ConnectionStatus.ERROR, user_id="u5")
    expired = seed(status=ConnectionStatus.EXPIRED, expires_in=timedelta(minutes=-5), user_id="u6")
    found = store.list_due(DueCriteria(expires_before=clock() + timedelta(minutes=20)))
    assert {c.id for c in found} == {due.id, expired.id}


def test_list_expired_only_unrefreshable_active(store, seed, clock):
    stale = seed(refresh_token=None, expires_in=timedelta(minutes=-1))
    seed(refresh_token="rt", expires_in=timedelta(minutes=-1), user_id="u2")
    seed(refresh_token=None, expires_in=timedelta(minutes=10), user_id="u3")
    seed(refresh_token=None, expires_in=None, user_id="u4")
    assert [c.id for c in store.list_expired(clock())] == [stale.id]


def test_find_active_ignores_revoked(store, seed):
    seed(status=ConnectionStatus.REVOKED)
    assert store.find_active("u1", "alpaca") is None
    live = seed(status=ConnectionStatus.EXPIRED)
    assert store.find_active("u1", "alpaca").id == live.id


def test_one_live_connection_per_user_and_provider(store, seed):
    first = seed(status=ConnectionStatus.PENDING)
    with pytest.raises(DuplicateConnection):
        seed()
    assert [c.id for c in store.list_for_user("u1")] == [first.id]

    store.upsert(first.model_copy(update={"status": ConnectionStatus.REVOKED}))
    second = seed()
    assert store.find_active("u1", "alpaca").id == second.id


def test_compare_and_swap_cannot_revive_a_second_live_record(store, seed):
    revoked = seed(status=ConnectionStatus.REVOKED)
    seed()
    revived = revoked.model_copy(update={"status": ConnectionStatus.ACTIVE})
    with pytest.raises(DuplicateConnection):
        store.compare_and_swap(revoked.id, revoked.version, revived)
    assert store.get(revoked.id).status == ConnectionStatus.REVOKED


def test_list_for_user_newest_first(store, seed, clock):
    first = seed()
    clock.advance(minutes=1)
    second = seed(provider_id="github")
    seed(user_id="other")
    assert [c.id for c in store.list_for_user("u1")] == [second.id, first.id]


def _state(clock, value="s1", ttl=600):
    return OAuthState(
        state=value,
        user_id="u1",
        provider_id="alpaca",
        redirect_uri="http://localhost/cb",
        created_at=clock(),
        expires_at=clock() + timedelta(seconds=ttl),
    )


def test_consume_state_exactly_once(store, clock):
    store.save_state(_state(clock))
    assert store.consume_state("s1", clock()) is True
    assert store.consume_state("s1", clock()) is False
    consumed = store.get_state("s1")
    assert consumed.consumed is True
    assert consumed.consumed_at == clock()
    assert store.consume_state("unknown", clock()) is False


def test_consume_state_rejects_expired(store, clock):
    store.save_state(_state(clock, ttl=60))
    clock.advance(seconds=61)
    assert store.consume_state("s1", clock()) is False
    assert store.get_state("s1").consumed is False


def test_purge_expired_states(store, clock):
    store.save_state(_state(clock, "old", ttl=60))
    store.save_state(_state(clock, "fresh", ttl=900))
    clock.advance(minutes=5)
    assert store.purge_expired_states(clock()) == 1
    assert store.get_state("old") is None
    assert store.get_state("fresh") is not None
