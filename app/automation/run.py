"""Command-line entry point: ``python -m app.automation.run``."""

from __future__ import annotations

import argparse
import time
from pathlib import Path
from typing import Callable, List, Optional, Sequence

from . import config
from .error_codes import AuthenticationError, WorkflowStateError
from .processors import VerifiedStepsProcessor, load_steps
from .service import WorkflowService
from .utils import ensure_dirs, log_line
from .workflow import TERMINAL_STATUSES, WorkflowState, WorkflowStatus


def _normalize_mode(raw: Optional[str]) -> str:
    mode = config.parse_mode(raw)
    if mode is not None:
        return mode
    default = config.parse_mode(config.WORKFLOW_MODE_DEFAULT) or config.MANUAL_MODE
    if raw:
        log_line(f"[RUN] Unknown mode={raw!r}; defaulting to {default!r}.")
    return default


def _parse_items(raw: Optional[str]) -> List[str]:
    if not raw:
        return []
    return [part.strip() for part in raw.split(",") if part.strip()]


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run the portal workflow automation")
    parser.add_argument(
        "--mode",
        default=None,
        help="manual (one item, then wait for confirmation) or automatic (drain the queue).",
    )
    parser.add_argument(
        "--items",
        default=None,
        help="Comma-separated item ids to process instead of reading the listing view.",
    )
    parser.add_argument(
        "--playbook",
        type=Path,
        default=None,
        help="JSON playbook of action steps (defaults to PORTALFLOW_PLAYBOOK_FILE).",
    )
    return parser


def _wait_for_checkpoint(service: WorkflowService, poll_interval: float) -> WorkflowState:
    """Block until the run pauses or ends."""

    while True:
        state = service.status()
        if state.status == WorkflowStatus.PAUSED or state.status in TERMINAL_STATUSES:
            return state
        if state.status == WorkflowStatus.IDLE:
            return state
        time.sleep(poll_interval)


def drive_manual_run(
    service: WorkflowService,
    *,
    prompt: Callable[[str], str] = input,
    poll_interval: float = 0.25,
) -> WorkflowState:
    """Ask the operator before each further item until the run ends."""

    while True:
        state = _wait_for_checkpoint(service, poll_interval)
        if state.status != WorkflowStatus.PAUSED:
            service.join()
            return service.status()
        answer = prompt(
            f"Item {state.current_item_id} done ({state.processed_count} processed). "
            "Continue with the next item? [Y/n] "
        )
        if answer.strip().lower() in {"n", "no", "q", "quit", "stop"}:
            service.stop()
            service.join()
            return service.status()
        try:
            service.continue_next()
        except WorkflowStateError as exc:
            log_line(f"[RUN] {exc}")


def main(argv: Optional[Sequence[str]] = None, *, service: Optional[WorkflowService] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    ensure_dirs()
    mode = _normalize_mode(args.mode)
    items = _parse_items(args.items)

    if service is None:
        processor = None
        if args.playbook is not None:
            processor = VerifiedStepsProcessor(load_steps(args.playbook))
        service = WorkflowService(processor=processor)

    try:
        service.start(mode, items=items or None, trigger="cli")
    except (AuthenticationError, WorkflowStateError, ValueError) as exc:
        log_line(f"[RUN] Could not start workflow: {exc}")
        return 2

    try:
        if config.is_manual_mode(mode):
            final = drive_manual_run(service, poll_interval=config.POLL_INTERVAL_SECONDS)
        else:
            service.join()
            final = service.status()
    except KeyboardInterrupt:
        service.stop()
        service.join()
        final = service.status()

    log_line(
        f"[RUN] Finished status={final.status} processed={final.processed_count} "
        f"seen={final.total_seen} errors={len(final.errors)}"
    )
    for message in final.errors:
        log_line(f"[RUN]   {message}")
    return 0 if final.status == WorkflowStatus.COMPLETED else 1


__all__ = ["drive_manual_run", "main"]


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
