"""
Tests for the lead API endpoints: API key gate, batch trigger and
scheduler status. The batch itself is patched out.
"""
from unittest.mock import MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from config.settings import config
from outputs import dashboard

HEADERS = {"X-Sentinel-Key": "test-key"}


@pytest.fixture
def client(monkeypatch):
    monkeypatch.setattr(config.outputs, "api_key", "test-key")
    # no `with` block: startup (tables, scheduler) is not run
    return TestClient(dashboard.app)


def test_health_needs_no_key(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_missing_or_wrong_key_is_401(client):
    assert client.post("/api/leads/process").status_code == 401
    assert client.post("/api/leads/process", headers={"X-Sentinel-Key": "nope"}).status_code == 401


def test_unconfigured_key_disables_api(client, monkeypatch):
    monkeypatch.setattr(config.outputs, "api_key", "")
    assert client.post("/api/leads/process", headers=HEADERS).status_code == 503


def test_process_returns_batch_result(client):
    batch = MagicMock(return_value={"success": True, "processed": 3, "created": 2})
    with patch.object(dashboard, "process_lead_emails", batch):
        response = client.post("/api/leads/process", headers=HEADERS)
    assert response.status_code == 200
    assert response.json()["created"] == 2
    batch.assert_called_once_with(dry_run=False)


def test_process_passes_dry_run(client):
    batch = MagicMock(return_value={"success": True, "dryRun": True, "preview": []})
    with patch.object(dashboard, "process_lead_emails", batch):
        response = client.post("/api/leads/process", headers=HEADERS, json={"dryRun": True})
    assert response.json()["dryRun"] is True
    batch.assert_called_once_with(dry_run=True)


def test_batch_failure_is_still_200(client):
    failure = {"success": False, "errorType": "batch_in_progress", "message": "busy"}
    with patch.object(dashboard, "process_lead_emails", MagicMock(return_value=failure)):
        response = client.post("/api/leads/process", headers=HEADERS)
    assert response.status_code == 200
    assert response.json() == failure


def test_scheduler_status(client):
    status = {"running": True, "job_count": 1, "jobs": [{"id": "lead_poll"}]}
    with patch.object(dashboard, "get_scheduler_status", return_value=status):
        response = client.get("/api/scheduler-status", headers=HEADERS)
    assert response.json()["jobs"][0]["id"] == "lead_poll"


def test_scheduler_status_when_stopped(client):
    assert client.get("/api/scheduler-status", headers=HEADERS).json() == {
        "running": False, "jobs": [], "job_count": 0,
    }
