import importlib
import sys
import threading
import time
from pathlib import Path

import pytest

from app.automation import audit, config, telemetry
from app.automation.ports import WorkItemResult
from app.automation.service import WorkflowService
from app.automation.session import PortalCredentials
from app.automation.workflow import WorkflowSettings, WorkflowStatus
from tests.fake_portal import FakeSession, succeed

FAST = WorkflowSettings(inter_item_delay=0, return_delay=0, poll_interval=0.01, idempotency_timeout=0.5)


def _configure_temp_paths(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    data_dir = tmp_path / "data"
    data_dir.mkdir(parents=True, exist_ok=True)
    db_path = data_dir / "portalflow.db"

    monkeypatch.setattr(config, "DATA_DIR", data_dir)
    monkeypatch.setattr(config, "LOG_DIR", data_dir / "logs")
    monkeypatch.setattr(config, "LOG_FILE", data_dir / "logs" / "latest.log")
    monkeypatch.setattr(config, "RUNS_DIR", data_dir / "runs")
    monkeypatch.setattr(config, "EXPORTS_DIR", data_dir / "exports")
    monkeypatch.setattr(config, "PLAYBOOK_FILE", data_dir / "playbook.json")
    monkeypatch.setattr(config, "DB_PATH", db_path)
    monkeypatch.setattr(audit, "DB_PATH", db_path)
    monkeypatch.setattr(telemetry, "RUNS_DIR", str(data_dir / "runs"))
    monkeypatch.setattr(telemetry, "EXPORTS_DIR", str(data_dir / "exports"))


def _reload_main_module():
    if "app.main" in sys.modules:
        del sys.modules["app.main"]
    return importlib.import_module("app.main")


def _fake_service(*, authenticated: bool = True) -> WorkflowService:
    return WorkflowService(
        session_builder=lambda credentials: FakeSession(),
        credentials_provider=(lambda: PortalCredentials("agent", "secret")) if authenticated else (lambda: None),
        processor=succeed,
        settings=FAST,
    )


def _client_with_service(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, service: WorkflowService):
    _configure_temp_paths(tmp_path, monkeypatch)
    main = _reload_main_module()
    main.app.config["WORKFLOW_SERVICE"] = service
    return main.app.test_client()


def _wait_for_status(client, status: str, timeout: float = 5.0) -> dict:
    deadline = time.monotonic() + timeout
    payload = client.get("/api/workflow/status").get_json()
    while payload["workflow"]["status"] != status and time.monotonic() < deadline:
        time.sleep(0.02)
        payload = client.get("/api/workflow/status").get_json()
    return payload


def test_automatic_run_through_api(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    service = _fake_service()
    client = _client_with_service(tmp_path, monkeypatch, service)

    resp = client.post("/api/workflow/start", json={"mode": "automatic", "items": ["a", "b"]})
    assert resp.status_code == 202
    body = resp.get_json()
    assert body["accepted"] is True
    run_id = body["state"]["run_id"]
    assert run_id is not None

    assert service.join(5.0)
    payload = _wait_for_status(client, WorkflowStatus.COMPLETED)
    assert payload["workflow"]["processed_count"] == 2
    assert payload["workflow"]["errors"] == []
    assert payload["statistics"]["total"] == 2
    assert payload["statistics"]["automatic"] == 2

    run = audit.get_run(run_id)
    assert run["status"] == "completed"
    assert run["processed_count"] == 2

    results = client.get(f"/api/results?run_id={run_id}").get_json()
    assert results["count"] == 2
    assert {row["item_id"] for row in results["results"]} == {"a", "b"}

    export = client.get(f"/api/results/export.xlsx?run_id={run_id}")
    assert export.status_code == 200
    assert export.data[:2] == b"PK"


def test_start_requires_credentials(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    client = _client_with_service(tmp_path, monkeypatch, _fake_service(authenticated=False))

    resp = client.post("/api/workflow/start", json={"mode": "automatic", "items": ["a"]})

    assert resp.status_code == 401
    assert resp.get_json()["error"] == "not authenticated"


def test_start_rejects_unknown_mode(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    client = _client_with_service(tmp_path, monkeypatch, _fake_service())

    resp = client.post("/api/workflow/start", json={"mode": "turbo", "items": ["a"]})

    assert resp.status_code == 400
    assert resp.get_json()["accepted"] is False


def test_manual_run_controls(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    service = _fake_service()
    client = _client_with_service(tmp_path, monkeypatch, service)

    assert client.post("/api/workflow/start", json={"mode": "manual", "items": "a,b,c"}).status_code == 202
    payload = _wait_for_status(client, WorkflowStatus.PAUSED)
    assert payload["workflow"]["current_item_id"] == "a"

    again = client.post("/api/workflow/start", json={"mode": "manual", "items": ["z"]})
    assert again.status_code == 409

    cont = client.post("/api/workflow/continue")
    assert cont.status_code == 200
    assert cont.get_json()["state"]["current_item_id"] is None

    payload = _wait_for_status(client, WorkflowStatus.PAUSED)
    deadline = time.monotonic() + 5.0
    while payload["workflow"]["processed_count"] < 2 and time.monotonic() < deadline:
        time.sleep(0.02)
        payload = client.get("/api/workflow/status").get_json()
    assert payload["workflow"]["processed_count"] == 2

    stop = client.post("/api/workflow/stop")
    assert stop.status_code == 200
    assert stop.get_json()["state"]["status"] == WorkflowStatus.IDLE
    assert service.join(5.0)

    run_id = payload["workflow"]["run_id"]
    assert audit.get_run(run_id)["status"] == "stopped"


def test_continue_without_paused_run(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    client = _client_with_service(tmp_path, monkeypatch, _fake_service())

    resp = client.post("/api/workflow/continue")

    assert resp.status_code == 400
    assert resp.get_json()["ok"] is False


def test_pause_and_resume_are_safe_when_idle(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    client = _client_with_service(tmp_path, monkeypatch, _fake_service())

    assert client.post("/api/workflow/pause").get_json()["state"]["status"] == WorkflowStatus.IDLE
    assert client.post("/api/workflow/resume").get_json()["state"]["status"] == WorkflowStatus.IDLE
    assert client.post("/api/workflow/stop").get_json()["state"]["status"] == WorkflowStatus.IDLE


def test_results_rejects_invalid_run_id(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    client = _client_with_service(tmp_path, monkeypatch, _fake_service())

    assert client.get("/api/results?run_id=abc").status_code == 400


def test_export_without_runs_is_not_found(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    client = _client_with_service(tmp_path, monkeypatch, _fake_service())

    resp = client.get("/api/results/export.xlsx")

    assert resp.status_code == 404
    assert resp.get_json()["ok"] is False


def test_restart_waits_for_previous_session_release(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    release = threading.Event()
    sessions: list = []

    def _build(credentials) -> FakeSession:
        session = FakeSession()
        sessions.append(session)
        return session

    def _uninterruptible(session, item_id, controls) -> WorkItemResult:
        release.wait(5.0)
        return WorkItemResult(item_id=item_id, success=True)

    service = WorkflowService(
        session_builder=_build,
        credentials_provider=lambda: PortalCredentials("agent", "secret"),
        processor=_uninterruptible,
        settings=WorkflowSettings(**{**FAST.__dict__, "release_timeout": 0.05}),
    )
    client = _client_with_service(tmp_path, monkeypatch, service)

    first = client.post("/api/workflow/start", json={"mode": "automatic", "items": ["a", "b"]})
    assert first.status_code == 202
    _wait_for_status(client, WorkflowStatus.PROCESSING)
    assert client.post("/api/workflow/stop").get_json()["state"]["status"] == WorkflowStatus.IDLE

    again = client.post("/api/workflow/start", json={"mode": "automatic", "items": ["c"]})
    assert again.status_code == 409
    assert again.get_json()["error"] == "previous run still releasing its session"
    assert len(sessions) == 1
    assert sessions[0].closed is False

    release.set()
    assert service.join(5.0)
    assert sessions[0].closed is True
    assert audit.get_run(first.get_json()["state"]["run_id"])["status"] == "stopped"

    resumed = client.post("/api/workflow/start", json={"mode": "automatic", "items": ["c"]})
    assert resumed.status_code == 202
    assert service.join(5.0)
    assert len(sessions) == 2
    assert service.status().status == WorkflowStatus.COMPLETED
