"""
Tests for the check results API.
"""

import threading
import time
from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

import api_server
from check_errors import TransportError
from vsphere_check import CheckReport
from vsphere_checks import CheckResult


def make_report(*results):
    return CheckReport(
        started_at=datetime.now(timezone.utc),
        duration_seconds=0.5,
        passed=all(r.passed for r in results),
        results=list(results),
    )


@pytest.fixture(autouse=True)
def clean_state():
    api_server.reset_state()
    yield
    api_server.reset_state()


@pytest.fixture
def runs(monkeypatch):
    """Replace the check run with a counter returning a fixed report."""
    calls = []
    report = make_report(
        CheckResult(name="Nodes", passed=True),
        CheckResult(name="StorageClasses", passed=False, message="StorageClass 'slow' is invalid"),
    )

    def fake_run_once():
        calls.append(1)
        return report

    monkeypatch.setattr(api_server.vsphere_check, "run_once", fake_run_once)
    return calls


def test_startup_runs_checks(runs):
    with TestClient(api_server.app) as client:
        response = client.get("/api/v1/status")
    assert response.status_code == 200
    body = response.json()
    assert body["last_run_status"] == "Failed"
    assert "StorageClasses" in body["last_run_message"]
    assert body["is_currently_running"] is False
    assert len(runs) == 1


def test_get_checks(runs):
    with TestClient(api_server.app) as client:
        response = client.get("/api/v1/checks")
    assert response.status_code == 200
    body = response.json()
    assert body["passed"] is False
    assert [r["name"] for r in body["results"]] == ["Nodes", "StorageClasses"]


def test_get_single_check_case_insensitive(runs):
    with TestClient(api_server.app) as client:
        response = client.get("/api/v1/checks/storageclasses")
    assert response.status_code == 200
    assert response.json()["message"] == "StorageClass 'slow' is invalid"


def test_unknown_check_is_404(runs):
    with TestClient(api_server.app) as client:
        response = client.get("/api/v1/checks/Bogus")
    assert response.status_code == 404


def test_checks_unavailable_before_first_run(monkeypatch):
    def fail():
        raise TransportError("failed to connect to vcenter.example.com")

    monkeypatch.setattr(api_server.vsphere_check, "run_once", fail)
    with TestClient(api_server.app) as client:
        checks = client.get("/api/v1/checks")
        status = client.get("/api/v1/status").json()
    assert checks.status_code == 503
    assert status["last_run_status"] == "Failed (Exception)"
    assert "failed to connect" in status["last_run_message"]


def test_successful_run_status(monkeypatch):
    monkeypatch.setattr(
        api_server.vsphere_check, "run_once", lambda: make_report(CheckResult(name="Nodes", passed=True))
    )
    with TestClient(api_server.app) as client:
        status = client.get("/api/v1/status").json()
    assert status["last_run_status"] == "Success"
    assert status["last_run_timestamp_utc"] is not None


def test_trigger_run(runs):
    with TestClient(api_server.app) as client:
        response = client.post("/api/v1/checks/run")
    assert response.status_code == 202


def test_trigger_run_while_running_conflicts(runs):
    with TestClient(api_server.app) as client:
        api_server.app_state["is_running"] = True
        response = client.post("/api/v1/checks/run")
    assert response.status_code == 409


def wait_until(condition, timeout=5):
    deadline = time.monotonic() + timeout
    while not condition():
        assert time.monotonic() < deadline, "condition not met in time"
        time.sleep(0.01)


def test_triggered_run_is_tracked_until_done(runs, monkeypatch):
    release = threading.Event()

    def blocking_run_once():
        release.wait(5)
        return make_report(CheckResult(name="Nodes", passed=True))

    with TestClient(api_server.app) as client:
        monkeypatch.setattr(api_server.vsphere_check, "run_once", blocking_run_once)
        assert client.post("/api/v1/checks/run").status_code == 202
        assert len(api_server.background_tasks) == 1
        release.set()
        wait_until(lambda: not api_server.background_tasks)
        assert client.get("/api/v1/status").json()["last_run_status"] == "Success"
