from __future__ import annotations

import os
import time
from typing import Any, Dict, Generator

from flask import Flask, Response, jsonify, request, send_file

from app.automation import audit, config
from app.automation.error_codes import AuthenticationError, ErrorCode, WorkflowStateError
from app.automation.export_excel import export_run_to_excel
from app.automation.healthcheck import run_health_checks
from app.automation.logging_utils import _automation_event
from app.automation.service import WorkflowService
from app.automation.utils import ensure_dirs, get_current_log_path

app = Flask(__name__)
app.secret_key = os.environ.get("SECRET_KEY", "dev-secret-change-me")

# Initialise storage paths and SQLite schema on import so WSGI entrypoints
# also have the expected environment ready.
ensure_dirs()
audit.initialize_schema()

app.config["WORKFLOW_SERVICE"] = WorkflowService()


def _service() -> WorkflowService:
    return app.config["WORKFLOW_SERVICE"]


def _request_payload() -> Dict[str, Any]:
    payload: Dict[str, Any] = {}
    payload.update(request.args or {})
    if request.is_json:
        payload.update(request.get_json(silent=True) or {})
    else:
        payload.update(request.form or {})
    return payload


def _tail_log_generator() -> Generator[str, None, None]:
    """Yield Server-Sent Event messages for appended log lines."""

    ensure_dirs()
    current_path = get_current_log_path()
    current_path.parent.mkdir(parents=True, exist_ok=True)
    current_path.touch(exist_ok=True)

    handle = current_path.open("r", encoding="utf-8", errors="ignore")
    handle.seek(0, os.SEEK_END)

    try:
        while True:
            latest_path = get_current_log_path()
            if latest_path != current_path:
                handle.close()
                current_path = latest_path
                current_path.parent.mkdir(parents=True, exist_ok=True)
                current_path.touch(exist_ok=True)
                handle = current_path.open("r", encoding="utf-8", errors="ignore")
                handle.seek(0, os.SEEK_END)

            line = handle.readline()
            if line:
                yield f"data: {line.rstrip()}\n\n"
            else:
                time.sleep(1)
                yield ": heartbeat\n\n"
    finally:
        handle.close()


@app.post("/api/workflow/start")
def api_workflow_start() -> Response:
    """Start a workflow run in the background."""

    payload = _request_payload()
    mode = str(payload.get("mode") or "").strip() or None
    raw_items = payload.get("items")
    if isinstance(raw_items, str):
        items = [part.strip() for part in raw_items.split(",") if part.strip()]
    elif isinstance(raw_items, list):
        items = [str(part).strip() for part in raw_items if str(part).strip()]
    else:
        items = []

    try:
        state = _service().start(mode, items=items or None, trigger="api")
    except WorkflowStateError as exc:
        return jsonify({"ok": False, "accepted": False, "error": str(exc)}), 409
    except AuthenticationError:
        return (
            jsonify({"ok": False, "accepted": False, "error": "not authenticated", "code": ErrorCode.NOT_AUTHENTICATED}),
            401,
        )
    except ValueError as exc:
        return jsonify({"ok": False, "accepted": False, "error": str(exc)}), 400

    return jsonify({"ok": True, "accepted": True, "state": state.to_dict()}), 202


@app.post("/api/workflow/pause")
def api_workflow_pause() -> Response:
    return jsonify({"ok": True, "state": _service().pause().to_dict()})


@app.post("/api/workflow/resume")
def api_workflow_resume() -> Response:
    return jsonify({"ok": True, "state": _service().resume().to_dict()})


@app.post("/api/workflow/stop")
def api_workflow_stop() -> Response:
    return jsonify({"ok": True, "state": _service().stop().to_dict()})


@app.post("/api/workflow/continue")
def api_workflow_continue() -> Response:
    """Process one more item of a paused manual-mode run."""

    try:
        state = _service().continue_next()
    except WorkflowStateError as exc:
        return jsonify({"ok": False, "error": str(exc), "state": _service().status().to_dict()}), 400
    return jsonify({"ok": True, "state": state.to_dict()})


@app.get("/api/workflow/status")
def api_workflow_status() -> Response:
    service = _service()
    return jsonify(
        {
            "ok": True,
            "workflow": service.status().to_dict(),
            "statistics": service.statistics(),
        }
    )


@app.get("/api/results")
def api_results() -> Response:
    raw_run_id = request.args.get("run_id")
    run_id = None
    if raw_run_id:
        try:
            run_id = int(raw_run_id)
        except ValueError:
            return jsonify({"ok": False, "error": "invalid run_id"}), 400
    rows = _service().results(run_id=run_id)
    return jsonify({"ok": True, "run_id": run_id, "count": len(rows), "results": rows})


@app.get("/api/results/export.xlsx")
def api_results_export() -> Response:
    raw_run_id = request.args.get("run_id")
    try:
        run_id = int(raw_run_id) if raw_run_id else None
    except ValueError:
        return jsonify({"ok": False, "error": "invalid run_id"}), 400
    try:
        path = export_run_to_excel(run_id)
    except FileNotFoundError as exc:
        return jsonify({"ok": False, "error": str(exc)}), 404
    _automation_event("state", phase="export", run_id=run_id, path=path)
    return send_file(path, as_attachment=True, download_name=os.path.basename(path))


@app.get("/api/health")
def api_health() -> Response:
    """Return a JSON health summary for configuration, filesystem, DB and portal."""

    result = run_health_checks(entrypoint="api")
    status = 200 if result.ok else 503
    return jsonify({"ok": result.ok, "checks": result.checks}), status


@app.get("/logs/stream")
def logs_stream() -> Response:
    """Stream log updates to the browser using SSE."""

    response = Response(_tail_log_generator(), mimetype="text/event-stream")
    response.headers["Cache-Control"] = "no-cache"
    response.headers["X-Accel-Buffering"] = "no"
    return response


if __name__ == "__main__":
    app.run(host="0.0.0.0", port=int(os.environ.get("PORT", 8080)))
