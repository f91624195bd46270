from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import requests

from . import audit, config
from .config_validation import validate_runtime_config
from .logging_utils import _automation_event
from .utils import disk_has_room, ensure_dirs, log_line


@dataclass
class HealthResult:
    ok: bool
    checks: dict[str, dict[str, Any]]


def _probe_portal() -> dict[str, Any]:
    """HEAD the portal base URL; any HTTP answer counts as reachable."""

    try:
        response = requests.head(
            config.PORTAL_BASE_URL,
            timeout=config.PORTAL_PROBE_TIMEOUT_SECONDS,
            allow_redirects=True,
        )
    except requests.RequestException as exc:
        return {"ok": False, "url": config.PORTAL_BASE_URL, "error": str(exc)}
    return {
        "ok": response.status_code < 500,
        "url": config.PORTAL_BASE_URL,
        "status_code": response.status_code,
    }


def run_health_checks(entrypoint: str = "cli") -> HealthResult:
    checks: dict[str, dict[str, Any]] = {}

    try:
        validate_runtime_config(entrypoint or "cli", mode=None)
        checks["config"] = {"ok": True}
    except ValueError as exc:
        checks["config"] = {"ok": False, "error": str(exc)}

    ensure_dirs()
    fs_ok = disk_has_room(config.MIN_FREE_MB, config.DATA_DIR)
    checks["filesystem"] = {
        "ok": fs_ok,
        "data_dir": str(config.DATA_DIR),
        "min_free_mb": config.MIN_FREE_MB,
    }

    try:
        audit.initialize_schema()
        conn = audit.get_connection()
        conn.execute("SELECT COUNT(*) FROM runs")
        checks["database"] = {"ok": True}
    except Exception as exc:  # noqa: BLE001
        checks["database"] = {"ok": False, "error": str(exc)}

    checks["portal"] = _probe_portal()

    # The portal being down should not fail the API health endpoint; the CLI is strict.
    strict_portal = entrypoint == "cli"
    overall_ok = all(
        check.get("ok", False)
        for name, check in checks.items()
        if strict_portal or name != "portal"
    )

    _automation_event(
        "state" if overall_ok else "error",
        phase="health",
        context="healthcheck",
        ok=overall_ok,
        checks=checks,
    )

    return HealthResult(ok=overall_ok, checks=checks)


if __name__ == "__main__":  # pragma: no cover
    result = run_health_checks(entrypoint="cli")
    for name, info in result.checks.items():
        status = "OK" if info.get("ok") else "FAIL"
        log_line(f"[HEALTH] {name}: {status} {info}")
    raise SystemExit(0 if result.ok else 1)
