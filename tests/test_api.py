"""
API tests against the in-memory store and scripted provider adapters.
"""
from datetime import timedelta
from urllib.parse import parse_qs, urlparse

import pytest
from fastapi.testclient import TestClient

from connection_hub.api.main import create_app
from connection_hub.core.errors import StoreUnavailable
from connection_hub.core.models import ConnectionStatus
from connection_hub.core.settings import SecuritySettings, Settings

USER = {"X-User-ID": "u1"}
UI_URL = "http://localhost:3000/connections"


def _settings(cron_secret="cron-secret"):
    return Settings(security=SecuritySettings(ENCRYPTION_KEY="test-encryption-key", CRON_SECRET=cron_secret))


@pytest.fixture
def client(store, registry, clock):
    return TestClient(create_app(_settings(), store=store, registry=registry, clock=clock))


def _redirect_params(response):
    assert response.status_code == 307
    location = response.headers["location"]
    assert location.startswith(UI_URL)
    return {k: v[0] for k, v in parse_qs(urlparse(location).query).items()}


def test_health_check(client):
    r = client.get("/")
    assert r.status_code == 200
    assert r.json() == {"success": True, "message": "Healthy", "env": "development"}
    assert "X-Request-ID" in r.headers


def test_oauth_install_callback_and_list(client):
    r = client.post("/connections/install", json={"providerId": "alpaca"}, headers=USER)
    assert r.status_code == 200
    body = r.json()
    assert body["success"] is True
    assert body["connectionId"]
    assert parse_qs(urlparse(body["authorizationUrl"]).query)["state"] == [body["state"]]

    r = client.get(
        "/connections/oauth/callback",
        params={"code": "c1", "state": body["state"]},
        follow_redirects=False,
    )
    assert _redirect_params(r) == {"success": "connected"}

    r = client.get("/connections", headers=USER)
    assert r.status_code == 200
    listing = r.json()
    assert listing["count"] == 1
    row = listing["connections"][0]
    assert row["id"] == body["connectionId"]
    assert row["providerId"] == "alpaca"
    assert row["name"] == "Alpaca"
    assert row["status"] == "ACTIVE"
    assert row["accountEmail"] == "u1@example.com"
    assert "connectedAt" in row
    assert "credentials" not in row

    replay = client.get(
        "/connections/oauth/callback",
        params={"code": "c1", "state": body["state"]},
        follow_redirects=False,
    )
    assert _redirect_params(replay) == {"error": "state_replay"}


def test_callback_error_redirects(client):
    r = client.get("/connections/oauth/callback", params={"error": "access_denied"}, follow_redirects=False)
    assert _redirect_params(r) == {"error": "access_denied"}
    r = client.get("/connections/oauth/callback", params={"code": "c1"}, follow_redirects=False)
    assert _redirect_params(r) == {"error": "missing_parameters"}
    r = client.get("/connections/oauth/callback", params={"code": "c1", "state": "bogus"}, follow_redirects=False)
    assert _redirect_params(r) == {"error": "state_not_found"}


def test_missing_user_header_is_rejected(client):
    assert client.get("/connections").status_code == 422
    assert client.post("/connections/install", json={"providerId": "alpaca"}).status_code == 422


def test_unknown_provider(client):
    r = client.post("/connections/install", json={"providerId": "nope"}, headers=USER)
    assert r.status_code == 404
    assert r.json()["code"] == "PROVIDER_NOT_FOUND"
    assert r.json()["success"] is False


def test_api_key_install_requires_key(client):
    r = client.post("/connections/install", json={"providerId": "polygon"}, headers=USER)
    assert r.status_code == 400
    body = r.json()
    assert body["code"] == "UNSUPPORTED_AUTH_TYPE"
    assert body["details"] == {"requires_action": "api_key"}


def test_configure_api_key(client):
    r = client.post("/connections/configure-apikey", json={"providerId": "polygon", "apiKey": "good-key"}, headers=USER)
    assert r.status_code == 200
    connection = r.json()["connection"]
    assert connection["status"] == "ACTIVE"
    assert connection["auth_type"] == "apikey"
    assert "credentials" not in connection

    bad = client.post("/connections/configure-apikey", json={"providerId": "polygon", "apiKey": "bad-key"}, headers=USER)
    assert bad.status_code == 400
    assert bad.json()["code"] == "INVALID_CREDENTIALS"

    empty = client.post("/connections/configure-apikey", json={"providerId": "polygon", "apiKey": ""}, headers=USER)
    assert empty.status_code == 422


def test_revoke_connection(client):
    created = client.post(
        "/connections/configure-apikey", json={"providerId": "polygon", "apiKey": "good-key"}, headers=USER
    ).json()["connection"]
    other = client.post(f"/connections/{created['id']}/revoke", headers={"X-User-ID": "u2"})
    assert other.status_code == 404
    assert other.json()["code"] == "CONNECTION_NOT_FOUND"

    r = client.post(f"/connections/{created['id']}/revoke", headers=USER)
    assert r.status_code == 200
    assert r.json()["connection"]["status"] == "REVOKED"


def test_reconnect_refreshes_when_possible(client, seed, store):
    connection = seed(status=ConnectionStatus.ERROR, error_count=6)
    r = client.post(f"/connections/{connection.id}/reconnect", headers=USER)
    assert r.status_code == 200
    assert r.json()["success"] is True
    assert r.json()["connection"]["status"] == "ACTIVE"
    assert store.get(connection.id).error_count == 0


def test_reconnect_without_refresh_token_starts_oauth(client, seed):
    connection = seed(status=ConnectionStatus.EXPIRED, refresh_token=None, expires_in=timedelta(minutes=-1))
    r = client.post(f"/connections/{connection.id}/reconnect", headers=USER)
    body = r.json()
    assert body["success"] is False
    assert body["requiresAuth"] is True
    assert body["authorizationUrl"].startswith("https://auth.example.test/authorize")


def test_reconnect_api_key_connection_asks_for_key(client):
    created = client.post(
        "/connections/configure-apikey", json={"providerId": "polygon", "apiKey": "good-key"}, headers=USER
    ).json()["connection"]
    body = client.post(f"/connections/{created['id']}/reconnect", headers=USER).json()
    assert body["requiresAuth"] is True
    assert body["requiresAction"] == "api_key"


def test_connection_health(client, seed):
    seed()
    seed(status=ConnectionStatus.ERROR, provider_id="github")
    r = client.get("/connections/health", headers=USER)
    assert r.status_code == 200
    stats = r.json()["stats"]
    assert stats["total"] == 2
    assert stats["active"] == 1
    assert stats["error"] == 1
    assert stats["needs_attention"] == 1
    assert len(r.json()["reports"]) == 2


def test_list_providers(client):
    r = client.get("/providers")
    body = r.json()
    assert body["count"] == 3
    assert [p["id"] for p in body["providers"]] == ["alpaca", "github", "polygon"]
    assert body["providers"][2]["authType"] == "apikey"
    assert [p["id"] for p in client.get("/providers", params={"authType": "apikey"}).json()["providers"]] == ["polygon"]
    assert [p["id"] for p in client.get("/providers", params={"q": "git"}).json()["providers"]] == ["github"]
    assert client.get("/providers", params={"category": "brokerage"}).json()["count"] == 1


def test_cron_requires_bearer_secret(client):
    assert client.post("/cron/refresh-tokens").status_code == 401
    wrong = client.post("/cron/refresh-tokens", headers={"Authorization": "Bearer nope"})
    assert wrong.status_code == 401
    assert wrong.headers["WWW-Authenticate"] == "Bearer"


def test_cron_without_configured_secret_rejects_everything(store, registry, clock):
    client = TestClient(create_app(_settings(cron_secret=None), store=store, registry=registry, clock=clock))
    assert client.get("/cron/refresh-tokens", headers={"Authorization": "Bearer "}).status_code == 401
    assert client.get("/cron/refresh-tokens", headers={"Authorization": "Bearer None"}).status_code == 401


def test_cron_runs_refresh(client, seed, clock):
    seed()
    for method in ("get", "post"):
        r = getattr(client, method)("/cron/refresh-tokens", headers={"Authorization": "Bearer cron-secret"})
        assert r.status_code == 200
        body = r.json()
        assert body["success"] is True
        assert body["message"] == "Token refresh completed"
        assert body["timestamp"] == clock().isoformat()
    first_summary = body["summary"]
    assert first_summary["candidates"] == 0


def test_cron_reports_refresh_counts(client, seed):
    seed()
    body = client.post("/cron/refresh-tokens", headers={"Authorization": "Bearer cron-secret"}).json()
    assert body["summary"]["candidates"] == 1
    assert body["summary"]["refreshed"] == 1
    assert body["purgedStates"] == 0


def test_cron_store_failure_returns_500(client, store, monkeypatch):
    def unavailable(*args, **kwargs):
        raise StoreUnavailable("mongo down")

    monkeypatch.setattr(store, "list_expired", unavailable)
    r = client.post("/cron/refresh-tokens", headers={"Authorization": "Bearer cron-secret"})
    assert r.status_code == 500
    assert r.json()["success"] is False
    assert r.json()["error"] == "Token refresh failed: STORE_UNAVAILABLE"


def test_metrics_endpoint(client):
    client.get("/")
    metrics = client.get("/_metrics").json()["metrics"]
    assert metrics["requests_total"] >= 1
    assert "token_refresh_total" in metrics
