from __future__ import annotations

from pathlib import Path

import pytest
import requests

from app.automation import audit, config
from app.automation import healthcheck
from tests.test_api_workflow import _configure_temp_paths, _reload_main_module


class _Response:
    def __init__(self, status_code: int) -> None:
        self.status_code = status_code


def _portal_up(monkeypatch: pytest.MonkeyPatch, status_code: int = 200) -> None:
    monkeypatch.setattr(healthcheck.requests, "head", lambda *args, **kwargs: _Response(status_code))


def _portal_down(monkeypatch: pytest.MonkeyPatch) -> None:
    def _raise(*args, **kwargs):
        raise requests.ConnectionError("connection refused")

    monkeypatch.setattr(healthcheck.requests, "head", _raise)


def test_run_health_checks_happy_path(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _configure_temp_paths(tmp_path, monkeypatch)
    monkeypatch.setattr(config, "MIN_FREE_MB", 0)
    _portal_up(monkeypatch)

    audit.initialize_schema()

    result = healthcheck.run_health_checks(entrypoint="cli")
    assert result.ok is True
    assert result.checks["config"]["ok"] is True
    assert result.checks["filesystem"]["ok"] is True
    assert result.checks["database"]["ok"] is True
    assert result.checks["portal"]["status_code"] == 200


def test_run_health_checks_handles_invalid_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _configure_temp_paths(tmp_path, monkeypatch)
    monkeypatch.setattr(config, "MIN_FREE_MB", -1)
    _portal_up(monkeypatch)

    result = healthcheck.run_health_checks(entrypoint="cli")
    assert result.ok is False
    assert result.checks["config"]["ok"] is False


def test_portal_outage_only_fails_strict_entrypoint(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _configure_temp_paths(tmp_path, monkeypatch)
    monkeypatch.setattr(config, "MIN_FREE_MB", 0)
    _portal_down(monkeypatch)

    api_result = healthcheck.run_health_checks(entrypoint="api")
    cli_result = healthcheck.run_health_checks(entrypoint="cli")

    assert api_result.ok is True
    assert api_result.checks["portal"]["ok"] is False
    assert "connection refused" in api_result.checks["portal"]["error"]
    assert cli_result.ok is False


def test_portal_server_error_is_unhealthy(monkeypatch: pytest.MonkeyPatch) -> None:
    _portal_up(monkeypatch, status_code=502)

    assert healthcheck._probe_portal()["ok"] is False


def test_health_api_reports_status(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _configure_temp_paths(tmp_path, monkeypatch)
    monkeypatch.setattr(config, "MIN_FREE_MB", 0)
    _portal_up(monkeypatch)

    main = _reload_main_module()
    client = main.app.test_client()

    resp = client.get("/api/health")
    assert resp.status_code == 200
    payload = resp.get_json()
    assert payload["ok"] is True
    assert "filesystem" in payload["checks"]

    monkeypatch.setattr(audit, "initialize_schema", lambda: (_ for _ in ()).throw(RuntimeError("db error")))

    resp_unhealthy = client.get("/api/health")
    assert resp_unhealthy.status_code == 503
    data_unhealthy = resp_unhealthy.get_json()
    assert data_unhealthy["ok"] is False
    assert data_unhealthy["checks"]["database"]["ok"] is False
