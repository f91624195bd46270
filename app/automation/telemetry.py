"""Per-run telemetry: one JSON document per workflow run under ``RUNS_DIR``.

The audit database answers "was this item handled"; the telemetry file keeps
the shape of a run (how many attempts each item took, which error codes came
up, how long items took) for later analysis without touching the database.
"""

from __future__ import annotations

import json
import os
import time
import uuid
from collections import Counter
from typing import Any, Dict, List, Optional

from . import config
from .ports import WorkItemResult

RUNS_DIR = os.environ.get("RUNS_DIR", str(config.RUNS_DIR))
EXPORTS_DIR = os.environ.get("EXPORTS_DIR", str(config.EXPORTS_DIR))
MAX_EXPORTS = int(os.environ.get("EXPORTS_KEEP_MAX", "5"))


def result_status(result: WorkItemResult) -> str:
    if result.skipped:
        return "skipped"
    return "succeeded" if result.success else "failed"


class RunTelemetry:
    def __init__(self, mode: str) -> None:
        self.run_id = f"{time.strftime('%Y%m%d_%H%M%S')}_{uuid.uuid4().hex[:8]}"
        self.mode = mode
        self.started_at = time.time()
        self.items: List[Dict[str, Any]] = []
        self.statuses: Counter[str] = Counter()
        self.error_codes: Counter[str] = Counter()
        self.attempts_total = 0
        self._last_mark = time.monotonic()
        os.makedirs(RUNS_DIR, exist_ok=True)

    def add(self, result: WorkItemResult) -> None:
        now = time.monotonic()
        status = result_status(result)
        self.statuses[status] += 1
        if result.error_code:
            self.error_codes[result.error_code] += 1
        self.attempts_total += result.attempts
        self.items.append(
            {
                "status": status,
                # Time since the previous item finished, delays included.
                "elapsed_seconds": round(now - self._last_mark, 3),
                **result.to_dict(),
            }
        )
        self._last_mark = now

    def summary(self) -> Dict[str, Any]:
        timed = [item["elapsed_seconds"] for item in self.items if item["status"] != "skipped"]
        return {
            "items": len(self.items),
            **{f"count_{status}": count for status, count in sorted(self.statuses.items())},
            "error_codes": dict(self.error_codes),
            "attempts_total": self.attempts_total,
            "mean_item_seconds": round(sum(timed) / len(timed), 3) if timed else None,
        }

    def finalize(self, extra: Optional[Dict[str, Any]] = None) -> str:
        """Write the run document and return its path."""

        payload = {
            "run_id": self.run_id,
            "mode": self.mode,
            "started_at": self.started_at,
            "ended_at": time.time(),
            "summary": self.summary(),
            "items": self.items,
            **(extra or {}),
        }
        path = os.path.join(RUNS_DIR, f"run_{self.run_id}.json")
        with open(path, "w", encoding="utf-8") as handle:
            json.dump(payload, handle, ensure_ascii=False, indent=2)
        return path


def prune_old_exports(keep: int = MAX_EXPORTS) -> List[str]:
    """Delete the oldest workbooks beyond ``keep``; returns the removed paths."""

    if not os.path.isdir(EXPORTS_DIR):
        return []
    workbooks = sorted(
        (os.path.join(EXPORTS_DIR, name) for name in os.listdir(EXPORTS_DIR) if name.endswith(".xlsx")),
        key=os.path.getmtime,
    )
    removed: List[str] = []
    for path in workbooks[: max(0, len(workbooks) - keep)]:
        try:
            os.remove(path)
        except OSError:
            continue
        removed.append(path)
    return removed


__all__ = [
    "EXPORTS_DIR",
    "RUNS_DIR",
    "RunTelemetry",
    "prune_old_exports",
    "result_status",
]
