"""Workflow controller: drives a queue of work items through one portal session.

One loop thread owns the session for the whole run. Callers (HTTP handlers,
the CLI) only ever flip flags and read snapshots; every wait inside the loop
is cooperative so ``stop()`` is observed within one polling interval.

Status transitions::

    idle -> navigating -> processing <-> paused -> completed
                    \\________________________/
                              error
"""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, Optional, Protocol, Tuple

from . import config
from .error_codes import ErrorCode, ListingNavigationError, SessionLostError, WorkflowStateError
from .logging_utils import _automation_event
from .ports import AuditSink, PortalSession, WorkItemResult, WorkItemSource, ensure_session
from .retry_policy import decide_continue
from .telemetry import RunTelemetry
from .utils import now_iso, short_error_message


class WorkflowStatus:
    IDLE = "idle"
    NAVIGATING = "navigating"
    PROCESSING = "processing"
    PAUSED = "paused"
    COMPLETED = "completed"
    ERROR = "error"


RUNNING_STATUSES = frozenset(
    {WorkflowStatus.NAVIGATING, WorkflowStatus.PROCESSING, WorkflowStatus.PAUSED}
)
TERMINAL_STATUSES = frozenset({WorkflowStatus.COMPLETED, WorkflowStatus.ERROR})


@dataclass(frozen=True)
class WorkflowState:
    status: str = WorkflowStatus.IDLE
    mode: str = config.MANUAL_MODE
    current_item_id: Optional[str] = None
    processed_count: int = 0
    total_seen: int = 0
    succeeded_count: int = 0
    failed_count: int = 0
    skipped_count: int = 0
    errors: Tuple[str, ...] = ()
    last_error: Optional[str] = None
    started_at: Optional[str] = None
    ended_at: Optional[str] = None
    run_id: Optional[int] = None

    @property
    def is_running(self) -> bool:
        return self.status in RUNNING_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "mode": self.mode,
            "is_running": self.is_running,
            "current_item_id": self.current_item_id,
            "processed_count": self.processed_count,
            "total_seen": self.total_seen,
            "succeeded_count": self.succeeded_count,
            "failed_count": self.failed_count,
            "skipped_count": self.skipped_count,
            "errors": list(self.errors),
            "last_error": self.last_error,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "run_id": self.run_id,
        }


@dataclass(frozen=True)
class WorkflowSettings:
    continue_on_error: bool = True
    inter_item_delay: float = 2.0
    return_delay: float = 1.0
    poll_interval: float = 0.25
    idempotency_timeout: float = 3.0
    max_surfaced_errors: int = 50
    # Grace a new start gives the previous loop to release its session.
    release_timeout: float = 0.5

    @classmethod
    def from_config(cls) -> "WorkflowSettings":
        return cls(
            continue_on_error=config.CONTINUE_ON_ERROR,
            inter_item_delay=config.INTER_ITEM_DELAY_SECONDS,
            return_delay=config.RETURN_DELAY_SECONDS,
            poll_interval=config.POLL_INTERVAL_SECONDS,
            idempotency_timeout=float(config.IDEMPOTENCY_CHECK_TIMEOUT_SECONDS),
            max_surfaced_errors=config.MAX_SURFACED_ERRORS,
            release_timeout=config.RELEASE_GRACE_SECONDS,
        )


@dataclass(frozen=True)
class ItemControls:
    """Cancellation hooks handed to the per-item processor."""

    cancelled: Callable[[], bool]
    # Sleeps up to the given seconds; False when the run was stopped meanwhile.
    wait: Callable[[float], bool]


class ItemProcessor(Protocol):
    def __call__(
        self, session: PortalSession, item_id: str, controls: ItemControls
    ) -> WorkItemResult: ...


SessionFactory = Callable[[], PortalSession]
FinishCallback = Callable[[WorkflowState], None]


class _RunControl:
    """Flags shared between one loop thread and the control methods."""

    def __init__(self) -> None:
        self.stop = threading.Event()
        self.wake = threading.Event()
        self.pause_requested = False


class WorkflowController:
    def __init__(
        self,
        session_factory: SessionFactory,
        source: WorkItemSource,
        processor: ItemProcessor,
        audit: Optional[AuditSink] = None,
        *,
        settings: Optional[WorkflowSettings] = None,
        telemetry_factory: Optional[Callable[[str], RunTelemetry]] = None,
        on_finish: Optional[FinishCallback] = None,
    ) -> None:
        self._session_factory = session_factory
        self._source = source
        self._processor = processor
        self._audit = audit
        self._settings = settings or WorkflowSettings.from_config()
        self._telemetry_factory = telemetry_factory
        self._on_finish = on_finish

        self._lock = threading.Lock()
        self._start_lock = threading.Lock()
        self._state = WorkflowState()
        self._run: Optional[_RunControl] = None
        self._thread: Optional[threading.Thread] = None

    # ------------------------------------------------------------------
    # Control surface
    # ------------------------------------------------------------------

    def start(
        self,
        mode: Optional[str] = None,
        *,
        background: bool = True,
        run_id: Optional[int] = None,
    ) -> WorkflowState:
        """Begin a run; raises :class:`WorkflowStateError` while one is active."""

        canonical = config.parse_mode(mode or config.WORKFLOW_MODE_DEFAULT)
        if canonical is None:
            raise ValueError(f"Unknown workflow mode: {mode!r}")

        with self._start_lock:
            self._reject_if_running()
            if not self.join(self._settings.release_timeout):
                _automation_event("state", phase="start_rejected", reason="previous_run_releasing")
                raise WorkflowStateError("previous run still releasing its session")

            with self._lock:
                if self._state.is_running:
                    raise WorkflowStateError("already running")
                ctx = _RunControl()
                self._run = ctx
                self._state = WorkflowState(
                    status=WorkflowStatus.NAVIGATING,
                    mode=canonical,
                    started_at=now_iso(),
                    run_id=run_id,
                )
                snapshot = self._state

            _automation_event("state", phase="start", mode=canonical, run_id=run_id, background=background)

            if background:
                thread = threading.Thread(
                    target=self._run_loop, args=(ctx,), name="workflow-loop", daemon=True
                )
                self._thread = thread
                thread.start()
                return snapshot

        self._run_loop(ctx)
        return self.status()

    def pause(self) -> WorkflowState:
        """Request a pause at the next item boundary."""

        with self._lock:
            ctx = self._run
            if ctx is None or self._state.status not in {
                WorkflowStatus.NAVIGATING,
                WorkflowStatus.PROCESSING,
            }:
                snapshot = self._state
                ignored = True
            else:
                ctx.pause_requested = True
                snapshot = self._state
                ignored = False
        _automation_event("state", phase="pause", status=snapshot.status, ignored=ignored)
        return snapshot

    def resume(self) -> WorkflowState:
        """Leave the paused state; a no-op unless the workflow is paused."""

        with self._lock:
            if self._state.status != WorkflowStatus.PAUSED:
                snapshot = self._state
                ignored = True
            else:
                snapshot = self._release_pause()
                ignored = False
        _automation_event("state", phase="resume", status=snapshot.status, ignored=ignored)
        return snapshot

    def continue_next(self) -> WorkflowState:
        """In manual mode, process exactly one more item and pause again."""

        with self._lock:
            if not config.is_manual_mode(self._state.mode):
                raise WorkflowStateError("continue is only available in manual mode")
            if self._state.status != WorkflowStatus.PAUSED:
                raise WorkflowStateError(
                    f"workflow is not waiting for continuation (status={self._state.status})"
                )
            snapshot = self._release_pause()
        _automation_event("state", phase="continue_next", status=snapshot.status)
        return snapshot

    def stop(self) -> WorkflowState:
        """Stop the run; the loop releases the session on its own thread."""

        with self._lock:
            ctx = self._run
            if ctx is not None:
                ctx.stop.set()
                ctx.wake.set()
            previous = self._state.status
            if previous in RUNNING_STATUSES:
                self._state = replace(
                    self._state,
                    status=WorkflowStatus.IDLE,
                    current_item_id=None,
                    ended_at=now_iso(),
                )
            snapshot = self._state
        _automation_event("state", phase="stop", from_status=previous, status=snapshot.status)
        return snapshot

    def status(self) -> WorkflowState:
        with self._lock:
            return self._state

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait for the loop thread; returns ``True`` when it has exited."""

        thread = self._thread
        if thread is None:
            return True
        thread.join(timeout)
        return not thread.is_alive()

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    def _run_loop(self, ctx: _RunControl) -> None:
        session: Optional[PortalSession] = None
        telemetry: Optional[RunTelemetry] = None
        executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="idempotency-check")
        try:
            telemetry = self._new_telemetry()
            try:
                session = self._session_factory()
            except SessionLostError:
                raise
            except Exception as exc:  # noqa: BLE001
                self._fail(
                    ctx,
                    ErrorCode.NOT_AUTHENTICATED,
                    f"Could not establish a portal session: {short_error_message(exc)}",
                )
                return

            if ctx.stop.is_set():
                return
            if not self._open_listing(ctx, session):
                return
            self._drain(ctx, session, telemetry, executor)
        except SessionLostError as exc:
            self._fail(ctx, ErrorCode.SESSION_LOST, f"Session lost: {exc}")
        except Exception as exc:  # noqa: BLE001
            self._fail(ctx, ErrorCode.INTERNAL, f"Workflow loop failed: {short_error_message(exc)}")
        finally:
            executor.shutdown(wait=False, cancel_futures=True)
            self._close_session(session)
            self._finalize_telemetry(telemetry)
            self._finish(ctx)

    def _drain(
        self,
        ctx: _RunControl,
        session: PortalSession,
        telemetry: Optional[RunTelemetry],
        executor: ThreadPoolExecutor,
    ) -> None:
        manual = config.is_manual_mode(self._state.mode)
        controls = ItemControls(cancelled=ctx.stop.is_set, wait=lambda seconds: self._sleep(ctx, seconds))

        while not ctx.stop.is_set():
            try:
                item_id = self._source.next()
            except SessionLostError:
                raise
            except ListingNavigationError as exc:
                if not ctx.stop.is_set():
                    self._fail(ctx, ErrorCode.LISTING_NAVIGATION, str(exc))
                return
            except Exception as exc:  # noqa: BLE001
                self._fail(ctx, ErrorCode.INTERNAL, f"Work item source failed: {short_error_message(exc)}")
                return
            if ctx.stop.is_set():
                return

            if item_id is None:
                self._update(
                    ctx,
                    status=WorkflowStatus.COMPLETED,
                    current_item_id=None,
                    ended_at=now_iso(),
                )
                return

            self._bump(ctx, total_seen=1)

            if self._was_handled(item_id, executor):
                result = WorkItemResult(
                    item_id=item_id,
                    success=True,
                    detail="already handled this period",
                    skip_reason=ErrorCode.ALREADY_HANDLED,
                )
                self._bump(ctx, skipped_count=1)
                self._record(result, telemetry)
                continue

            try:
                result = self._process_item(ctx, session, item_id, controls)
            except SessionLostError as exc:
                self._bump(ctx, processed_count=1, failed_count=1)
                self._record(
                    WorkItemResult(
                        item_id=item_id,
                        success=False,
                        detail=str(exc),
                        error_code=ErrorCode.SESSION_LOST,
                    ),
                    telemetry,
                )
                raise

            if result.success:
                self._bump(ctx, processed_count=1, succeeded_count=1)
            else:
                self._bump(ctx, processed_count=1, failed_count=1)
            self._record(result, telemetry)

            if not result.success:
                message = f"Item {item_id}: {result.detail or result.error_code or 'failed'}"
                self._append_error(ctx, message)
                if not decide_continue(
                    result.error_code,
                    continue_on_error=self._settings.continue_on_error,
                    item_id=item_id,
                ):
                    self._fail(ctx, result.error_code or ErrorCode.INTERNAL, message, surface=False)
                    return

            if ctx.stop.is_set():
                return
            if not self._sleep(ctx, self._settings.return_delay):
                return
            if not self._open_listing(ctx, session):
                return

            if manual or ctx.pause_requested:
                if not self._await_continue(ctx):
                    return
                continue

            self._update(ctx, status=WorkflowStatus.NAVIGATING, current_item_id=None)
            if not self._sleep(ctx, self._settings.inter_item_delay):
                return

    def _process_item(
        self,
        ctx: _RunControl,
        session: PortalSession,
        item_id: str,
        controls: ItemControls,
    ) -> WorkItemResult:
        self._update(ctx, status=WorkflowStatus.PROCESSING, current_item_id=item_id)
        _automation_event("state", phase="item_start", item_id=item_id)

        ensure_session(session.port, context="open_item")
        try:
            opened = session.open_item(item_id)
        except SessionLostError:
            raise
        except Exception as exc:  # noqa: BLE001
            _automation_event("error", phase="open_item", item_id=item_id, error=short_error_message(exc))
            opened = False
        if not opened:
            return WorkItemResult(
                item_id=item_id,
                success=False,
                detail="could not open item",
                error_code=ErrorCode.ITEM_OPEN,
            )

        try:
            result = self._processor(session, item_id, controls)
        except SessionLostError:
            raise
        except Exception as exc:  # noqa: BLE001
            _automation_event("error", phase="processor", item_id=item_id, error=short_error_message(exc))
            return WorkItemResult(
                item_id=item_id,
                success=False,
                detail=short_error_message(exc),
                error_code=ErrorCode.PROCESSOR,
            )

        if not isinstance(result, WorkItemResult):
            return WorkItemResult(
                item_id=item_id,
                success=False,
                detail="processor returned no result",
                error_code=ErrorCode.PROCESSOR,
            )
        _automation_event(
            "state",
            phase="item_done",
            item_id=item_id,
            success=result.success,
            error_code=result.error_code,
        )
        return result

    def _open_listing(self, ctx: _RunControl, session: PortalSession) -> bool:
        ensure_session(session.port, context="open_listing")
        try:
            ok = session.open_listing()
        except SessionLostError:
            raise
        except Exception as exc:  # noqa: BLE001
            _automation_event("error", phase="open_listing", error=short_error_message(exc))
            ok = False
        if not ok:
            self._fail(ctx, ErrorCode.LISTING_NAVIGATION, "Failed to navigate to the listing view")
        return ok

    def _await_continue(self, ctx: _RunControl) -> bool:
        # Cleared before publishing "paused" so a continuation is never lost.
        ctx.wake.clear()
        self._update(ctx, status=WorkflowStatus.PAUSED)
        _automation_event("state", phase="paused", item_id=self._state.current_item_id)
        while not ctx.stop.is_set():
            if ctx.wake.wait(self._settings.poll_interval):
                ctx.wake.clear()
                return not ctx.stop.is_set()
        return False

    def _sleep(self, ctx: _RunControl, seconds: float) -> bool:
        if seconds <= 0:
            return not ctx.stop.is_set()
        return not ctx.stop.wait(seconds)

    def _was_handled(self, item_id: str, executor: ThreadPoolExecutor) -> bool:
        """Advisory idempotency check; failures and timeouts count as "not handled"."""

        future = executor.submit(self._source.was_handled_this_period, item_id)
        try:
            handled = bool(future.result(timeout=self._settings.idempotency_timeout))
        except FutureTimeoutError:
            _automation_event(
                "error",
                phase="idempotency_check",
                kind=ErrorCode.COLLABORATOR,
                item_id=item_id,
                error="timeout",
                timeout=self._settings.idempotency_timeout,
            )
            return False
        except Exception as exc:  # noqa: BLE001
            _automation_event(
                "error",
                phase="idempotency_check",
                kind=ErrorCode.COLLABORATOR,
                item_id=item_id,
                error=short_error_message(exc),
            )
            return False
        if handled:
            _automation_event("state", phase="item_skipped", item_id=item_id, reason=ErrorCode.ALREADY_HANDLED)
        return handled

    def _record(self, result: WorkItemResult, telemetry: Optional[RunTelemetry]) -> None:
        _automation_event(
            "audit",
            item_id=result.item_id,
            success=result.success,
            skip_reason=result.skip_reason,
            error_code=result.error_code,
        )
        if self._audit is not None:
            try:
                self._audit.record(result)
            except Exception as exc:  # noqa: BLE001
                _automation_event(
                    "error",
                    phase="audit",
                    kind=ErrorCode.COLLABORATOR,
                    item_id=result.item_id,
                    error=short_error_message(exc),
                )
        if telemetry is not None:
            telemetry.add(result)

    # ------------------------------------------------------------------
    # State mutation. Updates from a stale or stopped run never touch
    # the published status.
    # ------------------------------------------------------------------

    def _update(self, ctx: _RunControl, **changes: Any) -> None:
        with self._lock:
            if ctx is not self._run:
                return
            if ctx.stop.is_set():
                for key in ("status", "current_item_id", "ended_at"):
                    changes.pop(key, None)
            if not changes:
                return
            previous = self._state.status
            self._state = replace(self._state, **changes)
            current = self._state.status
        if previous != current:
            _automation_event("state", phase="transition", from_status=previous, to_status=current)

    def _bump(self, ctx: _RunControl, **deltas: int) -> None:
        with self._lock:
            if ctx is not self._run:
                return
            self._state = replace(
                self._state,
                **{key: getattr(self._state, key) + delta for key, delta in deltas.items()},
            )

    def _append_error(self, ctx: _RunControl, message: str) -> None:
        limit = max(1, self._settings.max_surfaced_errors)
        with self._lock:
            if ctx is not self._run:
                return
            errors = (self._state.errors + (message,))[-limit:]
            self._state = replace(self._state, errors=errors, last_error=message)

    def _fail(self, ctx: _RunControl, error_code: str, message: str, *, surface: bool = True) -> None:
        _automation_event("error", phase="workflow", kind=error_code, message=message)
        if surface:
            self._append_error(ctx, message)
        else:
            with self._lock:
                if ctx is self._run:
                    self._state = replace(self._state, last_error=message)
        self._update(
            ctx,
            status=WorkflowStatus.ERROR,
            current_item_id=None,
            ended_at=now_iso(),
        )

    def _release_pause(self) -> WorkflowState:
        # Caller holds the lock.
        ctx = self._run
        if ctx is not None:
            ctx.pause_requested = False
            ctx.wake.set()
        self._state = replace(self._state, status=WorkflowStatus.NAVIGATING, current_item_id=None)
        return self._state

    def _reject_if_running(self) -> None:
        with self._lock:
            running = self._state.is_running
        if running:
            _automation_event("state", phase="start_rejected", reason="already running")
            raise WorkflowStateError("already running")

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def _new_telemetry(self) -> Optional[RunTelemetry]:
        if self._telemetry_factory is None:
            return None
        try:
            return self._telemetry_factory(self._state.mode)
        except Exception as exc:  # noqa: BLE001
            _automation_event("error", phase="telemetry", error=short_error_message(exc))
            return None

    def _finalize_telemetry(self, telemetry: Optional[RunTelemetry]) -> None:
        if telemetry is None:
            return
        state = self.status()
        try:
            path = telemetry.finalize({"final_status": state.status, "errors": list(state.errors)})
            _automation_event("state", phase="telemetry_written", path=path)
        except Exception as exc:  # noqa: BLE001
            _automation_event("error", phase="telemetry", error=short_error_message(exc))

    def _close_session(self, session: Optional[PortalSession]) -> None:
        if session is None:
            return
        try:
            session.close()
        except Exception as exc:  # noqa: BLE001
            _automation_event("error", phase="session_close", error=short_error_message(exc))

    def _finish(self, ctx: _RunControl) -> None:
        with self._lock:
            if ctx is not self._run:
                return
            state = self._state
        _automation_event(
            "state",
            phase="run_finished",
            status=state.status,
            processed=state.processed_count,
            total_seen=state.total_seen,
            errors=len(state.errors),
        )
        if self._on_finish is None:
            return
        try:
            self._on_finish(state)
        except Exception as exc:  # noqa: BLE001
            _automation_event("error", phase="on_finish", error=short_error_message(exc))


__all__ = [
    "ItemControls",
    "ItemProcessor",
    "RUNNING_STATUSES",
    "TERMINAL_STATUSES",
    "WorkflowController",
    "WorkflowSettings",
    "WorkflowState",
    "WorkflowStatus",
]
