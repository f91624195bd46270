from __future__ import annotations

import json
import os
from pathlib import Path

import pytest

from app.automation import telemetry
from app.automation.error_codes import ErrorCode
from app.automation.ports import WorkItemResult


@pytest.fixture
def dirs(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    monkeypatch.setattr(telemetry, "RUNS_DIR", str(tmp_path / "runs"))
    monkeypatch.setattr(telemetry, "EXPORTS_DIR", str(tmp_path / "exports"))
    return tmp_path


def test_summary_counts_statuses_codes_and_attempts(dirs: Path) -> None:
    run = telemetry.RunTelemetry("automatic")
    run.add(WorkItemResult(item_id="1", success=True, attempts=1))
    run.add(WorkItemResult(item_id="2", success=False, error_code=ErrorCode.VERIFICATION, attempts=3))
    run.add(WorkItemResult(item_id="3", success=True, skip_reason=ErrorCode.ALREADY_HANDLED))

    summary = run.summary()

    assert summary["items"] == 3
    assert summary["count_succeeded"] == 1
    assert summary["count_failed"] == 1
    assert summary["count_skipped"] == 1
    assert summary["error_codes"] == {ErrorCode.VERIFICATION: 1}
    assert summary["attempts_total"] == 4
    assert summary["mean_item_seconds"] is not None

    path = run.finalize({"final_status": "completed"})
    payload = json.loads(Path(path).read_text(encoding="utf-8"))
    assert payload["mode"] == "automatic"
    assert payload["final_status"] == "completed"
    assert [item["status"] for item in payload["items"]] == ["succeeded", "failed", "skipped"]


def test_prune_old_exports_keeps_newest(dirs: Path) -> None:
    exports = dirs / "exports"
    exports.mkdir()
    for index in range(4):
        workbook = exports / f"results_run_{index}.xlsx"
        workbook.write_bytes(b"PK")
        os.utime(workbook, (1_000_000 + index, 1_000_000 + index))
    (exports / "notes.txt").write_text("keep me", encoding="utf-8")

    removed = telemetry.prune_old_exports(keep=2)

    assert sorted(Path(path).name for path in removed) == ["results_run_0.xlsx", "results_run_1.xlsx"]
    assert sorted(path.name for path in exports.iterdir()) == [
        "notes.txt",
        "results_run_2.xlsx",
        "results_run_3.xlsx",
    ]


def test_prune_without_exports_dir(dirs: Path) -> None:
    assert telemetry.prune_old_exports() == []
