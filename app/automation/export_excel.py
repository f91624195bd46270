"""Excel export of audited item results."""

from __future__ import annotations

import os
from typing import Optional

import pandas as pd

from . import audit, telemetry
from .telemetry import prune_old_exports


def _status_column(df: pd.DataFrame) -> pd.Series:
    skipped = df["skip_reason"].notna()
    succeeded = df["success"].astype(bool) & ~skipped
    status = pd.Series("failed", index=df.index)
    status[succeeded] = "succeeded"
    status[skipped] = "skipped"
    return status


def export_run_to_excel(run_id: Optional[int] = None, dest_path: Optional[str] = None) -> str:
    """Write the results of ``run_id`` (default: latest run) to a workbook."""

    if run_id is None:
        run_id = audit.latest_run_id()
    if run_id is None:
        raise FileNotFoundError("No workflow runs available to export")

    rows = audit.list_item_results(run_id=run_id, limit=100_000)
    df = pd.DataFrame(rows)
    if df.empty:
        df = pd.DataFrame([{"info": f"No results recorded for run {run_id}"}])
        succeeded = failed = skipped = summary = pd.DataFrame()
    else:
        df = df.drop(columns=["extra"], errors="ignore").sort_values("id")
        df["status"] = _status_column(df)
        succeeded = df[df["status"] == "succeeded"].copy()
        failed = df[df["status"] == "failed"].copy()
        skipped = df[df["status"] == "skipped"].copy()
        summary = df.groupby("status").size().reset_index(name="count")

    os.makedirs(telemetry.EXPORTS_DIR, exist_ok=True)
    if not dest_path:
        dest_path = os.path.join(telemetry.EXPORTS_DIR, f"results_run_{run_id}.xlsx")

    with pd.ExcelWriter(dest_path, engine="openpyxl") as writer:
        df.to_excel(writer, index=False, sheet_name="All")
        succeeded.to_excel(writer, index=False, sheet_name="Succeeded")
        failed.to_excel(writer, index=False, sheet_name="Failed")
        skipped.to_excel(writer, index=False, sheet_name="Skipped")
        summary.to_excel(writer, index=False, sheet_name="Summary")

    prune_old_exports()
    return dest_path


__all__ = ["export_run_to_excel"]
