import json
from types import SimpleNamespace

import pytest

from connection_hub import refresh_job
from connection_hub.core.errors import StoreUnavailable
from connection_hub.core.models import RefreshSummary


def _hub(run):
    async def _run():
        return run()

    return SimpleNamespace(
        scheduler=SimpleNamespace(run=_run),
        manager=SimpleNamespace(purge_expired_states=lambda: 2),
    )


@pytest.fixture
def wire(monkeypatch):
    def _wire(run):
        monkeypatch.setattr(refresh_job, "get_settings", lambda: None)
        monkeypatch.setattr(refresh_job, "build_container", lambda settings: _hub(run))

    return _wire


def _printed(capsys):
    return json.loads(capsys.readouterr().out.strip().splitlines()[-1])


@pytest.mark.asyncio
async def test_run_once_reports_summary(wire, capsys):
    wire(lambda: RefreshSummary(candidates=3, refreshed=3))
    assert await refresh_job._run_once() == 0
    payload = _printed(capsys)
    assert payload["success"] is True
    assert payload["summary"]["refreshed"] == 3
    assert payload["purgedStates"] == 2
    assert "timestamp" in payload


@pytest.mark.asyncio
async def test_run_once_reports_unexpected_failure(wire, capsys):
    def _boom():
        raise RuntimeError("scheduler crashed")

    wire(_boom)
    assert await refresh_job._run_once() == 1
    payload = _printed(capsys)
    assert payload == {
        "success": False,
        "timestamp": payload["timestamp"],
        "error": "Token refresh failed: RuntimeError",
    }


@pytest.mark.asyncio
async def test_run_once_reports_store_failure_code(wire, capsys):
    def _down():
        raise StoreUnavailable("down")

    wire(_down)
    assert await refresh_job._run_once() == 1
    assert _printed(capsys)["error"] == f"Token refresh failed: {StoreUnavailable.code}"
